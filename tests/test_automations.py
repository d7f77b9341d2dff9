from datetime import UTC, date, datetime, timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from dripline.core.exceptions import PermanentTransportError
from dripline.db import models
from dripline.db.models import AutomationType, Channel, SubscriptionStatus
from dripline.services import pipeline
from dripline.services.automations import handle_business_event, in_quiet_hours, run_automations
from dripline.services.execution_ledger import StageChangeKey, try_execute

from conftest import T0, FakeTransport, _make_engine, build_world


def _count(db, model):
    return db.scalar(select(func.count(model.id)))


@pytest.fixture
def booked_welcome(world, make_template, make_automation):
    template = make_template(subject="Welcome aboard, {{ firstName }}", body="See you on {{ eventDate }}")
    return make_automation(
        AutomationType.COMMUNICATION,
        channel=Channel.EMAIL,
        stage_id=world.booked.id,
        steps=[{"template_id": template.id}],
    )


@pytest.fixture
def deposit_paid(world, make_automation):
    return make_automation(
        AutomationType.STAGE_CHANGE,
        trigger_type="DEPOSIT_PAID",
        target_stage_id=world.booked.id,
    )


def test_duplicate_business_event_fires_once(db, world, transports, transport, make_campaign, booked_welcome, deposit_paid):
    booked_campaign = make_campaign(stage=world.booked)

    first = handle_business_event(db, world.project.id, "DEPOSIT_PAID", transports, now=T0)
    second = handle_business_event(db, world.project.id, "DEPOSIT_PAID", transports, now=T0)

    assert first.executed == 2
    assert second.executed == 0
    assert second.skipped == 1
    project = db.get(models.Project, world.project.id)
    assert project.stage_id == world.booked.id
    assert project.stage_entered_at == T0
    assert [message["subject"] for message in transport.sent] == ["Welcome aboard, Ada"]
    assert _count(db, models.AutomationExecution) == 2
    [log] = db.scalars(select(models.MessageLog)).all()
    assert (log.status, log.recipient, log.provider_id) == ("SENT", "ada@example.com", "email-msg-1")

    subscription = db.scalar(select(models.Subscription).where(models.Subscription.campaign_id == booked_campaign.id))
    assert subscription.status == SubscriptionStatus.ACTIVE

    # The regular tick sees the same stage communication as already executed.
    report = run_automations(db, world.tenant.id, transports, now=T0 + timedelta(minutes=5))
    assert report.duplicates == 1
    assert len(transport.sent) == 1


def test_stage_change_never_fires_twice_for_a_project(db, world, transports, booked_welcome, deposit_paid):
    handle_business_event(db, world.project.id, "DEPOSIT_PAID", transports, now=T0)
    project = db.get(models.Project, world.project.id)
    pipeline.move_project_to_stage(db, project, world.inquiry.id, now=T0 + timedelta(hours=1))

    report = handle_business_event(db, world.project.id, "DEPOSIT_PAID", transports, now=T0 + timedelta(hours=2))

    assert report.duplicates == 1
    assert db.get(models.Project, world.project.id).stage_id == world.inquiry.id


def test_stage_condition_limits_business_events(db, world, transports, make_automation):
    make_automation(
        AutomationType.STAGE_CHANGE,
        trigger_type="CONTRACT_SIGNED",
        target_stage_id=world.booked.id,
        stage_condition_id=world.booked.id,
    )

    report = handle_business_event(db, world.project.id, "CONTRACT_SIGNED", transports, now=T0)

    assert report.skipped == 1
    assert db.get(models.Project, world.project.id).stage_id == world.inquiry.id


def test_unknown_business_event_is_rejected(db, world, transports):
    with pytest.raises(ValueError):
        handle_business_event(db, world.project.id, "MOON_LANDING", transports, now=T0)


def test_field_trigger_moves_project_on_tick(db, world, transports, make_automation):
    make_automation(
        AutomationType.STAGE_CHANGE,
        trigger_type="EVENT_DATE_REACHED",
        target_stage_id=world.booked.id,
    )
    project = db.get(models.Project, world.project.id)
    project.event_date = T0 - timedelta(days=1)
    db.commit()

    first = run_automations(db, world.tenant.id, transports, now=T0)
    second = run_automations(db, world.tenant.id, transports, now=T0 + timedelta(minutes=5))

    assert first.executed == 1
    assert second.executed == 0
    assert db.get(models.Project, world.project.id).stage_id == world.booked.id


def test_communication_waits_for_step_delay(db, world, transports, transport, make_template, make_automation):
    template = make_template()
    make_automation(
        channel=Channel.EMAIL,
        stage_id=world.inquiry.id,
        steps=[{"template_id": template.id, "delay_minutes": 60}],
    )

    early = run_automations(db, world.tenant.id, transports, now=T0 + timedelta(minutes=30))
    on_time = run_automations(db, world.tenant.id, transports, now=T0 + timedelta(minutes=60))

    assert early.executed == 0
    assert on_time.executed == 1
    assert transport.sent[0]["text_body"] == "Hi Ada"


def test_quiet_hours_hold_messages_in_tenant_time(db, world, transports, transport, make_template, make_automation):
    template = make_template()
    make_automation(
        channel=Channel.EMAIL,
        stage_id=world.inquiry.id,
        steps=[{"template_id": template.id, "quiet_hours_start": 8, "quiet_hours_end": 12}],
    )

    # 10:00 in New York
    held = run_automations(db, world.tenant.id, transports, now=T0)
    # 13:00 in New York
    released = run_automations(db, world.tenant.id, transports, now=T0 + timedelta(hours=3))

    assert held.skipped == 1
    assert released.executed == 1
    assert len(transport.sent) == 1


@pytest.mark.parametrize(
    "start, end, hour, quiet",
    [
        (8, 12, 8, True),
        (8, 12, 12, True),
        (8, 12, 13, False),
        (22, 6, 23, True),
        (22, 6, 6, True),
        (22, 6, 7, False),
        (None, 6, 3, False),
    ],
)
def test_quiet_hour_windows(start, end, hour, quiet):
    assert in_quiet_hours(start, end, hour) is quiet


def test_sms_step_uses_phone_and_opt_in(db, world, transports, make_template, make_automation):
    template = make_template(channel=Channel.SMS, subject=None, body="Hi {{ firstName }}, thanks!")
    make_automation(channel=Channel.SMS, stage_id=world.inquiry.id, steps=[{"template_id": template.id}])

    run_automations(db, world.tenant.id, transports, now=T0)

    [message] = transports[Channel.SMS].sent
    assert message["to"] == "+15550100"
    assert message["text_body"] == "Hi Ada, thanks!"
    assert message["sender"] is None


def test_opted_out_recipient_is_skipped(db, world, transports, transport, make_template, make_automation):
    template = make_template()
    make_automation(channel=Channel.EMAIL, stage_id=world.inquiry.id, steps=[{"template_id": template.id}])
    db.get(models.Project, world.project.id).email_opt_in = False
    db.commit()

    report = run_automations(db, world.tenant.id, transports, now=T0)

    assert report.skipped == 1
    assert transport.sent == []
    assert _count(db, models.AutomationExecution) == 0


def test_mismatched_template_channel_is_skipped(db, world, transports, make_template, make_automation):
    template = make_template(channel=Channel.SMS)
    make_automation(channel=Channel.EMAIL, stage_id=world.inquiry.id, steps=[{"template_id": template.id}])

    report = run_automations(db, world.tenant.id, transports, now=T0)

    assert report.skipped == 1
    assert report.executed == 0


def test_failed_send_is_logged_and_not_repeated(db, world, make_template, make_automation):
    email = FakeTransport(failures=[PermanentTransportError("MessageRejected")])
    transports = {Channel.EMAIL: email}
    template = make_template()
    make_automation(channel=Channel.EMAIL, stage_id=world.inquiry.id, steps=[{"template_id": template.id}])

    run_automations(db, world.tenant.id, transports, now=T0)
    run_automations(db, world.tenant.id, transports, now=T0 + timedelta(minutes=5))

    [log] = db.scalars(select(models.MessageLog)).all()
    assert log.status == "FAILED"
    assert log.error == "MessageRejected"
    assert email.sent == []


def test_countdown_uses_tenant_local_event_day(db, world, transports, transport, make_template, make_automation):
    # 03:00 UTC on the 13th is still the evening of the 12th in New York.
    project = db.get(models.Project, world.project.id)
    project.event_date = datetime(2026, 1, 13, 3, 0, tzinfo=UTC)
    db.commit()
    template = make_template(subject="{{ daysBefore }} days", body="{{ daysRemaining }} days to go")
    make_automation(
        AutomationType.COUNTDOWN,
        channel=Channel.EMAIL,
        days_before=7,
        template_id=template.id,
    )

    first = run_automations(db, world.tenant.id, transports, now=T0)
    # Past UTC midnight but still the 5th locally.
    again = run_automations(db, world.tenant.id, transports, now=datetime(2026, 1, 6, 1, 0, tzinfo=UTC))
    next_day = run_automations(db, world.tenant.id, transports, now=T0 + timedelta(days=1))

    assert first.executed == 1
    assert again.duplicates == 1
    assert next_day.executed == 0 and next_day.duplicates == 0
    assert transport.sent[0]["text_body"] == "7 days to go"
    execution = db.scalar(select(models.AutomationExecution))
    assert execution.event_date == date(2026, 1, 12)
    assert execution.days_before == 7


def test_countdown_refires_when_event_date_moves(db, world, transports, transport, make_template, make_automation):
    project = db.get(models.Project, world.project.id)
    project.event_date = datetime(2026, 1, 12, 20, 0, tzinfo=UTC)
    db.commit()
    template = make_template()
    make_automation(AutomationType.COUNTDOWN, channel=Channel.EMAIL, days_before=7, template_id=template.id)
    run_automations(db, world.tenant.id, transports, now=T0)

    project.event_date = datetime(2026, 1, 13, 20, 0, tzinfo=UTC)
    db.commit()
    report = run_automations(db, world.tenant.id, transports, now=T0 + timedelta(days=1))

    assert report.executed == 1
    assert len(transport.sent) == 2


def test_one_failing_automation_does_not_block_others(db, world, transports, transport, make_template, make_automation):
    template = make_template(subject="Hi {{ firstName ", body="broken")
    make_automation(channel=Channel.EMAIL, stage_id=world.inquiry.id, steps=[{"template_id": template.id}])
    good = make_template()
    make_automation(channel=Channel.EMAIL, stage_id=world.inquiry.id, steps=[{"template_id": good.id}])

    report = run_automations(db, world.tenant.id, transports, now=T0)

    assert report.failed == 1
    assert report.executed == 1
    assert len(transport.sent) == 1


def test_failed_effect_keeps_its_reservation(db, world, make_automation):
    automation = make_automation("STAGE_CHANGE", trigger_type="DEPOSIT_PAID", target_stage_id=world.booked.id)
    key = StageChangeKey("DEPOSIT_PAID")
    calls = []

    def broken_send():
        calls.append("first")
        raise RuntimeError("transport down")

    with pytest.raises(RuntimeError):
        try_execute(db, world.project.id, automation.id, key, broken_send)
    again = try_execute(db, world.project.id, automation.id, key, lambda: calls.append("second"))

    assert again.executed is False
    assert calls == ["first"]
    assert db.scalar(select(func.count(models.AutomationExecution.id))) == 1


def test_sessions_racing_one_key_run_the_effect_once(tmp_path):
    engine = _make_engine(f"sqlite:///{tmp_path / 'executions.db'}")
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    first, second = factory(), factory()
    try:
        world = build_world(first)
        automation = models.Automation(
            tenant_id=world.tenant.id,
            name="Deposit paid",
            automation_type=AutomationType.STAGE_CHANGE,
            trigger_type="DEPOSIT_PAID",
            target_stage_id=world.booked.id,
        )
        first.add(automation)
        first.commit()
        key = StageChangeKey("DEPOSIT_PAID")
        effects = []

        won = try_execute(first, world.project.id, automation.id, key, lambda: effects.append("first"))
        lost = try_execute(second, world.project.id, automation.id, key, lambda: effects.append("second"))

        assert (won.executed, lost.executed) == (True, False)
        assert effects == ["first"]
        assert second.scalar(select(func.count(models.AutomationExecution.id))) == 1
    finally:
        first.close()
        second.close()
        engine.dispose()
