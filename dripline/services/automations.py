"""Stage communications, stage-change triggers and event countdowns.

Every side effect goes through the execution ledger so repeated ticks and
duplicate business events fire each automation at most once per key.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from dripline.core.config import settings
from dripline.core.exceptions import NotFoundError, TransportError
from dripline.db import models
from dripline.db.models import AutomationType, Channel, ProjectStatus
from dripline.services import pipeline
from dripline.services.execution_ledger import (
    CommunicationKey,
    CountdownKey,
    ExecutionKey,
    StageChangeKey,
    try_execute,
)
from dripline.services.template_engine import build_variables, render_automation_message, sender_address
from dripline.services.transport import TransportMap
from dripline.utils.datetime import local_date, local_hour, utcnow
from dripline.utils.logger import logger

# Triggers that only fire when the business reports the event.
EVENT_TRIGGERS = frozenset(
    {"DEPOSIT_PAID", "FULL_PAYMENT_MADE", "CONTRACT_SIGNED", "ESTIMATE_ACCEPTED", "APPOINTMENT_BOOKED"}
)


def _event_date_reached(project: models.Project, now: datetime) -> bool:
    return project.event_date is not None and project.event_date <= now


# Triggers that can be read off the project itself on every tick.
FIELD_TRIGGERS: dict[str, Callable[[models.Project, datetime], bool]] = {
    "EVENT_DATE_REACHED": _event_date_reached,
    "PROJECT_DELIVERED": lambda project, now: project.status == ProjectStatus.COMPLETED,
    "CLIENT_ONBOARDED": lambda project, now: bool(project.email_opt_in or project.sms_opt_in),
    "PROJECT_BOOKED": lambda project, now: project.status == ProjectStatus.ACTIVE and project.stage_id is not None,
}


@dataclass
class AutomationReport:
    executed: int = 0
    duplicates: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        return asdict(self)


def in_quiet_hours(start: Optional[int], end: Optional[int], hour: int) -> bool:
    """Inclusive window check; windows such as 22..6 wrap past midnight."""

    if start is None or end is None:
        return False
    if start <= end:
        return start <= hour <= end
    return hour >= start or hour <= end


def _timezone(tenant: models.Tenant) -> str:
    return tenant.timezone or settings.default_timezone


def recipient_for(channel: str, project: models.Project) -> Optional[str]:
    contact = project.contact
    if contact is None:
        return None
    if channel == Channel.EMAIL:
        return contact.email if project.email_opt_in and contact.email else None
    if channel == Channel.SMS:
        return contact.phone if project.sms_opt_in and contact.phone else None
    return None


def deliver_message(
    db: Session,
    *,
    tenant: models.Tenant,
    project: models.Project,
    automation: models.Automation,
    template: models.Template,
    recipient: str,
    transports: TransportMap,
    now: datetime,
    step_id: Optional[int] = None,
    **extra,
) -> models.MessageLog:
    """Render and send one automation message and log the outcome."""

    channel = Channel(automation.channel)
    rendered = render_automation_message(template, build_variables(project, tenant, **extra))
    log = models.MessageLog(
        tenant_id=tenant.id,
        project_id=project.id,
        automation_id=automation.id,
        automation_step_id=step_id,
        channel=channel,
        recipient=recipient,
    )
    transport = transports.get(channel)
    try:
        if transport is None:
            raise TransportError(f"No transport configured for {channel}")
        result = transport.send(
            to=recipient,
            subject=rendered.subject,
            html_body=rendered.html_body,
            text_body=rendered.text_body or rendered.subject,
            sender=sender_address(tenant) if channel == Channel.EMAIL else None,
            reply_to=tenant.email_from_addr if channel == Channel.EMAIL else None,
        )
    except TransportError as exc:
        log.status = "FAILED"
        log.error = str(exc)[:1024]
        logger.warning("Automation %s message to project %s failed: %s", automation.id, project.id, exc)
    else:
        log.status = "SENT"
        log.provider_id = result.provider_id
        log.sent_at = now
        logger.info("Automation %s sent %s to project %s", automation.id, channel, project.id)
    db.add(log)
    db.commit()
    return log


def _fire(
    db: Session,
    report: AutomationReport,
    project: models.Project,
    automation: models.Automation,
    key: ExecutionKey,
    effect: Callable[[], object],
) -> None:
    result = try_execute(db, project.id, automation.id, key, effect, channel=automation.channel)
    if result.executed:
        report.executed += 1
    else:
        report.duplicates += 1


def send_step(
    db: Session,
    report: AutomationReport,
    automation: models.Automation,
    step: models.AutomationStep,
    project: models.Project,
    tenant: models.Tenant,
    transports: TransportMap,
    now: datetime,
) -> None:
    """Send a communication step to a project in the step's stage, if due."""

    if not step.enabled or project.stage_entered_at is None:
        return
    if project.stage_entered_at + timedelta(minutes=step.delay_minutes or 0) > now:
        return
    if in_quiet_hours(step.quiet_hours_start, step.quiet_hours_end, local_hour(now, _timezone(tenant))):
        report.skipped += 1
        return
    recipient = recipient_for(automation.channel, project)
    if recipient is None:
        report.skipped += 1
        return
    template = step.template or automation.template
    if template is None or template.channel != automation.channel or template.tenant_id != tenant.id:
        logger.warning("Automation %s step %s has no usable %s template", automation.id, step.id, automation.channel)
        report.skipped += 1
        return

    _fire(
        db,
        report,
        project,
        automation,
        CommunicationKey(step.id),
        lambda: deliver_message(
            db,
            tenant=tenant,
            project=project,
            automation=automation,
            template=template,
            recipient=recipient,
            transports=transports,
            now=now,
            step_id=step.id,
        ),
    )


def _stage_projects(db: Session, tenant_id: int, project_type: str, stage_id: int) -> list[models.Project]:
    stmt = select(models.Project).where(
        models.Project.tenant_id == tenant_id,
        models.Project.project_type == project_type,
        models.Project.stage_id == stage_id,
        models.Project.status == ProjectStatus.ACTIVE,
    )
    return list(db.scalars(stmt))


def _isolated(db: Session, report: AutomationReport, automation_id: int, project_id: int, action: Callable[[], None]):
    try:
        action()
    except Exception as exc:
        db.rollback()
        logger.exception("Automation %s failed for project %s", automation_id, project_id)
        report.failed += 1
        report.errors.append({"automation_id": automation_id, "project_id": project_id, "error": str(exc)})


def run_communication(
    db: Session,
    report: AutomationReport,
    automation: models.Automation,
    tenant: models.Tenant,
    transports: TransportMap,
    now: datetime,
    projects: Optional[list[models.Project]] = None,
) -> None:
    if automation.stage_id is None:
        return
    if projects is None:
        projects = _stage_projects(db, tenant.id, automation.project_type, automation.stage_id)
    for project in projects:
        if project.stage_id != automation.stage_id:
            continue
        for step in automation.steps:
            _isolated(
                db,
                report,
                automation.id,
                project.id,
                lambda step=step, project=project: send_step(
                    db, report, automation, step, project, tenant, transports, now
                ),
            )


def _enter_stage(
    db: Session,
    report: AutomationReport,
    project: models.Project,
    stage_id: int,
    tenant: models.Tenant,
    transports: TransportMap,
    now: datetime,
) -> list[models.Subscription]:
    """Move the project and run the new stage's communications for it."""

    enrolled = pipeline.move_project_to_stage(db, project, stage_id, now)
    for automation in _automations(db, tenant.id, AutomationType.COMMUNICATION):
        if automation.stage_id == stage_id and automation.project_type == project.project_type:
            run_communication(db, report, automation, tenant, transports, now, projects=[project])
    return enrolled


def fire_stage_change(
    db: Session,
    report: AutomationReport,
    automation: models.Automation,
    project: models.Project,
    tenant: models.Tenant,
    transports: TransportMap,
    now: datetime,
) -> None:
    if automation.target_stage_id is None:
        logger.warning("Stage-change automation %s has no target stage", automation.id)
        report.skipped += 1
        return
    if project.stage_id == automation.target_stage_id:
        report.skipped += 1
        return
    _fire(
        db,
        report,
        project,
        automation,
        StageChangeKey(automation.trigger_type),
        lambda: _enter_stage(db, report, project, automation.target_stage_id, tenant, transports, now),
    )


def run_field_stage_changes(
    db: Session,
    report: AutomationReport,
    automation: models.Automation,
    tenant: models.Tenant,
    transports: TransportMap,
    now: datetime,
) -> None:
    check = FIELD_TRIGGERS.get(automation.trigger_type or "")
    if check is None:
        return
    stmt = select(models.Project).where(
        models.Project.tenant_id == tenant.id,
        models.Project.project_type == automation.project_type,
        models.Project.status != ProjectStatus.ARCHIVED,
    )
    if automation.stage_condition_id is not None:
        stmt = stmt.where(models.Project.stage_id == automation.stage_condition_id)
    for project in db.scalars(stmt).all():
        if check(project, now):
            _isolated(
                db,
                report,
                automation.id,
                project.id,
                lambda project=project: fire_stage_change(db, report, automation, project, tenant, transports, now),
            )


def run_countdown(
    db: Session,
    report: AutomationReport,
    automation: models.Automation,
    tenant: models.Tenant,
    transports: TransportMap,
    now: datetime,
) -> None:
    """Fire for projects whose local event date is ``days_before`` days from today."""

    if automation.days_before is None or automation.days_before < 0:
        logger.warning("Countdown automation %s has no valid days_before", automation.id)
        return
    template = automation.template
    if template is None or template.channel != automation.channel:
        logger.warning("Countdown automation %s has no usable %s template", automation.id, automation.channel)
        return

    timezone = _timezone(tenant)
    today = local_date(now, timezone)
    stmt = select(models.Project).where(
        models.Project.tenant_id == tenant.id,
        models.Project.project_type == automation.project_type,
        models.Project.status == ProjectStatus.ACTIVE,
        models.Project.event_date.is_not(None),
    )
    if automation.stage_condition_id is not None:
        stmt = stmt.where(models.Project.stage_id == automation.stage_condition_id)

    for project in db.scalars(stmt).all():
        event_day = pipeline.event_date_key(project.event_date, timezone)
        if event_day - timedelta(days=automation.days_before) != today:
            continue
        recipient = recipient_for(automation.channel, project)
        if recipient is None:
            report.skipped += 1
            continue
        days_remaining = (event_day - today).days

        def effect(project=project, recipient=recipient, days_remaining=days_remaining):
            return deliver_message(
                db,
                tenant=tenant,
                project=project,
                automation=automation,
                template=template,
                recipient=recipient,
                transports=transports,
                now=now,
                daysRemaining=days_remaining,
                daysBefore=automation.days_before,
            )

        _isolated(
            db,
            report,
            automation.id,
            project.id,
            lambda project=project, event_day=event_day, effect=effect: _fire(
                db, report, project, automation, CountdownKey(event_day, automation.days_before), effect
            ),
        )


def _automations(db: Session, tenant_id: int, automation_type: AutomationType) -> list[models.Automation]:
    stmt = (
        select(models.Automation)
        .where(
            models.Automation.tenant_id == tenant_id,
            models.Automation.automation_type == automation_type,
            models.Automation.enabled.is_(True),
        )
        .order_by(models.Automation.id)
    )
    return list(db.scalars(stmt))


def _tenant(db: Session, tenant_id: int) -> models.Tenant:
    tenant = db.get(models.Tenant, tenant_id)
    if tenant is None:
        raise NotFoundError("Tenant", tenant_id)
    return tenant


def run_automations(
    db: Session,
    tenant_id: int,
    transports: TransportMap,
    now: Optional[datetime] = None,
) -> AutomationReport:
    """Evaluate every enabled automation for one tenant."""

    now = now or utcnow()
    tenant = _tenant(db, tenant_id)
    report = AutomationReport()
    runners = {
        AutomationType.COMMUNICATION: run_communication,
        AutomationType.STAGE_CHANGE: run_field_stage_changes,
        AutomationType.COUNTDOWN: run_countdown,
    }
    for automation_type, runner in runners.items():
        for automation in _automations(db, tenant.id, automation_type):
            try:
                runner(db, report, automation, tenant, transports, now)
            except Exception as exc:
                db.rollback()
                logger.exception("Automation %s failed for tenant %s", automation.id, tenant.id)
                report.failed += 1
                report.errors.append({"automation_id": automation.id, "error": str(exc)})

    logger.info(
        "Automations for tenant %s: executed=%s duplicates=%s skipped=%s failed=%s",
        tenant.id,
        report.executed,
        report.duplicates,
        report.skipped,
        report.failed,
    )
    return report


def handle_business_event(
    db: Session,
    project_id: int,
    trigger_type: str,
    transports: TransportMap,
    now: Optional[datetime] = None,
) -> AutomationReport:
    """Fire stage-change automations for a reported event such as ``DEPOSIT_PAID``."""

    now = now or utcnow()
    project = db.get(models.Project, project_id)
    if project is None:
        raise NotFoundError("Project", project_id)
    if trigger_type not in EVENT_TRIGGERS and trigger_type not in FIELD_TRIGGERS:
        raise ValueError(f"Unknown trigger type: {trigger_type}")
    tenant = _tenant(db, project.tenant_id)
    report = AutomationReport()
    for automation in _automations(db, tenant.id, AutomationType.STAGE_CHANGE):
        if automation.trigger_type != trigger_type or automation.project_type != project.project_type:
            continue
        if automation.stage_condition_id is not None and project.stage_id != automation.stage_condition_id:
            report.skipped += 1
            continue
        fire_stage_change(db, report, automation, project, tenant, transports, now)
    logger.info(
        "Business event %s for project %s: executed=%s duplicates=%s",
        trigger_type,
        project_id,
        report.executed,
        report.duplicates,
    )
    return report
