from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from dripline.core.config import settings
from dripline.db import models
from dripline.db.models import DeliveryStatus
from dripline.services import delivery_ledger, subscriptions

from conftest import T0, _make_engine, build_world


@pytest.fixture
def pending(db, world, make_campaign):
    campaign = make_campaign()
    subscription = subscriptions.enroll(db, campaign.id, world.project.id, now=T0)
    delivery, created = delivery_ledger.record_attempt(db, subscription, campaign.emails[0], now=T0)
    assert created is True
    return subscription, campaign.emails[0], delivery


def test_record_attempt_returns_existing_row(db, pending):
    subscription, email, delivery = pending

    again, created = delivery_ledger.record_attempt(db, subscription, email, now=T0 + timedelta(minutes=1))

    assert created is False
    assert again.id == delivery.id
    assert again.attempt_count == 1
    assert db.scalar(select(func.count(models.Delivery.id))) == 1


def test_record_attempt_dedupes_across_sessions(tmp_path):
    engine = _make_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    first, second = factory(), factory()
    try:
        world = build_world(first)
        campaign = models.Campaign(tenant_id=world.tenant.id, name="Once", target_stage_id=world.inquiry.id)
        campaign.emails = [models.CampaignEmail(sequence_index=0, subject="S", html_body="B")]
        first.add(campaign)
        first.commit()
        subscription = subscriptions.enroll(first, campaign.id, world.project.id, now=T0)

        theirs = second.get(models.Subscription, subscription.id)
        their_email = second.get(models.CampaignEmail, campaign.emails[0].id)
        _, won = delivery_ledger.record_attempt(first, subscription, campaign.emails[0], now=T0)
        _, lost = delivery_ledger.record_attempt(second, theirs, their_email, now=T0)

        assert (won, lost) == (True, False)
        assert second.scalar(select(func.count(models.Delivery.id))) == 1
    finally:
        first.close()
        second.close()
        engine.dispose()


@pytest.mark.parametrize(
    "start, target, applied",
    [
        (DeliveryStatus.PENDING, DeliveryStatus.SENT, True),
        (DeliveryStatus.SENT, DeliveryStatus.PENDING, False),
        (DeliveryStatus.SENT, DeliveryStatus.DELIVERED, True),
        (DeliveryStatus.SENT, DeliveryStatus.SENT, False),
        (DeliveryStatus.DELIVERED, DeliveryStatus.BOUNCED, False),
        (DeliveryStatus.DELIVERED, DeliveryStatus.SENT, False),
        (DeliveryStatus.FAILED, DeliveryStatus.SENT, False),
        (DeliveryStatus.BOUNCED, DeliveryStatus.DELIVERED, False),
    ],
)
def test_status_only_moves_forward(db, pending, start, target, applied):
    _, _, delivery = pending
    delivery.status = start

    assert delivery_ledger.update_status(db, delivery, target, T0) is applied
    assert delivery.status == (target if applied else start)


def test_mark_sent_stamps_provider_and_time(db, pending):
    _, _, delivery = pending
    delivery.last_error = "earlier timeout"

    delivery_ledger.mark_sent(db, delivery, "ses-123", T0)

    assert delivery.status == DeliveryStatus.SENT
    assert delivery.provider_id == "ses-123"
    assert delivery.sent_at == T0
    assert delivery.last_error is None
    assert delivery_ledger.find_by_provider_id(db, "ses-123") is delivery
    assert delivery_ledger.find_by_provider_id(db, "") is None


def test_bounce_after_send_stamps_bounced_at(db, pending):
    _, _, delivery = pending
    delivery_ledger.mark_sent(db, delivery, "ses-1", T0)

    assert delivery_ledger.update_status(db, delivery, DeliveryStatus.BOUNCED, T0 + timedelta(hours=1))
    assert delivery.bounced_at == T0 + timedelta(hours=1)


def test_engagement_keeps_first_timestamps(db, pending):
    _, _, delivery = pending
    clicked = T0 + timedelta(hours=2)

    delivery_ledger.record_engagement(db, delivery, "click", clicked)
    delivery_ledger.record_engagement(db, delivery, "open", clicked + timedelta(hours=1))
    delivery_ledger.record_engagement(db, delivery, "click", clicked + timedelta(hours=2))

    assert delivery.opened_at == clicked
    assert delivery.clicked_at == clicked
    with pytest.raises(ValueError):
        delivery_ledger.record_engagement(db, delivery, "forward", clicked)


def test_retry_delay_doubles(monkeypatch):
    monkeypatch.setattr(settings, "retry_backoff_seconds", 60)

    assert [delivery_ledger.retry_delay(n).total_seconds() for n in (1, 2, 3)] == [60, 120, 240]


def test_claim_retry_after_transient_failure(db, pending):
    _, _, delivery = pending
    delivery_ledger.note_transient_failure(db, delivery, "throttled", T0)
    db.commit()

    assert delivery_ledger.claim_retry(db, delivery, T0 + timedelta(minutes=5)) is True
    assert delivery.attempt_count == 2
    assert delivery.last_error is None
    # The winner now holds a fresh lease.
    assert delivery_ledger.claim_retry(db, delivery, T0 + timedelta(minutes=6)) is False


def test_claim_retry_waits_for_in_flight_lease(db, pending):
    _, _, delivery = pending
    lease = timedelta(seconds=settings.delivery_claim_ttl_seconds)

    assert delivery_ledger.claim_retry(db, delivery, T0 + lease - timedelta(seconds=1)) is False
    assert delivery_ledger.claim_retry(db, delivery, T0 + lease) is True


def test_claim_retry_ignores_finished_deliveries(db, pending):
    _, _, delivery = pending
    delivery_ledger.mark_sent(db, delivery, "ses-1", T0)

    assert delivery_ledger.claim_retry(db, delivery, T0 + timedelta(days=1)) is False
