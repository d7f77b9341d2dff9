"""Periodic drip processing.

``run_due_subscriptions`` walks due subscriptions in id order and handles each
one in its own transaction, so one bad row never stops the batch.
"""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from dripline.core.config import settings
from dripline.core.exceptions import (
    DataIntegrityViolation,
    PermanentTransportError,
    TransientTransportError,
)
from dripline.db import models
from dripline.db.models import CampaignStatus, Channel, ProjectStatus, SubscriptionStatus
from dripline.services import automations, delivery_ledger, pipeline, subscriptions
from dripline.services.subscriptions import EndReason
from dripline.services.template_engine import render_campaign_email, sender_address
from dripline.services.transport import Transport, TransportMap
from dripline.utils.datetime import utcnow
from dripline.utils.logger import logger

# Months are counted as 30 days for the maximum campaign duration.
DAYS_PER_MONTH = 30


class Outcome(StrEnum):
    SENT = "sent"
    SKIPPED = "skipped"
    COMPLETED = "completed"
    RETRIED = "retried"
    FAILED = "failed"


@dataclass
class BatchReport:
    processed: int = 0
    sent: int = 0
    skipped: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    errors: list[dict] = field(default_factory=list)

    def record(self, outcome: Outcome) -> None:
        setattr(self, outcome.value, getattr(self, outcome.value) + 1)

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class TickReport:
    enrolled: int = 0
    drips: BatchReport = field(default_factory=BatchReport)
    automations: dict[int, dict] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {"enrolled": self.enrolled, "drips": self.drips.as_dict(), "automations": self.automations}


def due_subscription_ids(
    db: Session,
    now: datetime,
    after_id: int,
    limit: int,
    tenant_id: Optional[int] = None,
) -> list[int]:
    stmt = (
        select(models.Subscription.id)
        .join(models.Campaign, models.Campaign.id == models.Subscription.campaign_id)
        .where(
            models.Subscription.status == SubscriptionStatus.ACTIVE,
            models.Subscription.next_email_at.is_not(None),
            models.Subscription.next_email_at <= now,
            models.Subscription.id > after_id,
            models.Campaign.status == CampaignStatus.ACTIVE,
            models.Campaign.enabled.is_(True),
        )
        .order_by(models.Subscription.id)
        .limit(limit)
    )
    if tenant_id is not None:
        stmt = stmt.where(models.Campaign.tenant_id == tenant_id)
    return list(db.scalars(stmt))


def termination_reason(
    subscription: models.Subscription,
    campaign: models.Campaign,
    project: models.Project,
    now: datetime,
) -> Optional[EndReason]:
    if project.status != ProjectStatus.ACTIVE:
        return EndReason.PROJECT_INACTIVE
    if not project.email_opt_in:
        return EndReason.OPTED_OUT
    if project.contact is None or not project.contact.email:
        return EndReason.NO_RECIPIENT
    if project.event_date is not None and project.event_date <= now:
        return EndReason.EVENT_DATE_REACHED
    if now - subscription.started_at > timedelta(days=campaign.max_duration_months * DAYS_PER_MONTH):
        return EndReason.MAX_DURATION
    return None


def _due_email(
    db: Session,
    subscription: models.Subscription,
    campaign: models.Campaign,
    now: datetime,
) -> Optional[models.CampaignEmail]:
    """Return the approved email at the cursor if it is due, skipping unapproved ones."""

    emails = {email.sequence_index: email for email in campaign.emails}
    while subscription.status == SubscriptionStatus.ACTIVE:
        if subscription.next_email_at is None or subscription.next_email_at > now:
            return None
        email = emails.get(subscription.next_email_index)
        if email is None:
            if not emails or subscription.next_email_index > max(emails):
                subscriptions.terminate(db, subscription, EndReason.SEQUENCE_FINISHED, now)
                return None
            raise DataIntegrityViolation(
                f"Campaign {campaign.id} has no email at index {subscription.next_email_index}"
            )
        if email.is_approved:
            return email
        logger.info(
            "Subscription %s skipping %s email at index %s",
            subscription.id,
            email.approval_status,
            email.sequence_index,
        )
        subscriptions.advance(db, subscription, now)
    return None


@contextmanager
def _cursor_update(db: Session, subscription: models.Subscription):
    """Commit a cursor change made after the delivery outcome is already stored.

    If another session changed the subscription meanwhile (pause, unsubscribe,
    bounce), its change wins and the cursor catches up on a later tick from
    the delivery ledger.
    """

    subscription_id = subscription.id
    try:
        yield
        db.commit()
    except StaleDataError:
        db.rollback()
        logger.info("Subscription %s changed during delivery; cursor left for a later tick", subscription_id)


def _dispatch(
    db: Session,
    subscription: models.Subscription,
    email: models.CampaignEmail,
    delivery: models.Delivery,
    transport: Transport,
    now: datetime,
) -> Outcome:
    project = subscription.project
    tenant = subscription.campaign.tenant
    rendered = render_campaign_email(email, subscription, project, tenant)
    try:
        result = transport.send(
            to=project.contact.email,
            subject=rendered.subject,
            html_body=rendered.html_body,
            text_body=rendered.text_body,
            sender=sender_address(tenant),
            reply_to=tenant.email_from_addr,
        )
    except PermanentTransportError as exc:
        return _give_up(db, subscription, delivery, str(exc), now)
    except TransientTransportError as exc:
        if delivery.attempt_count >= settings.max_delivery_attempts:
            return _give_up(db, subscription, delivery, f"attempt limit reached: {exc}", now)
        delivery_ledger.note_transient_failure(db, delivery, str(exc), now)
        db.commit()
        retry_at = now + delivery_ledger.retry_delay(delivery.attempt_count)
        with _cursor_update(db, subscription):
            subscription.next_email_at = retry_at
        logger.warning(
            "Transient failure for delivery %s (attempt %s), retrying at %s: %s",
            delivery.id,
            delivery.attempt_count,
            retry_at,
            exc,
        )
        return Outcome.RETRIED

    delivery_ledger.mark_sent(db, delivery, result.provider_id, now)
    db.commit()
    with _cursor_update(db, subscription):
        subscriptions.advance(db, subscription, now)
    logger.info(
        "Sent email %s of campaign %s to project %s (tenant=%s, provider_id=%s)",
        email.sequence_index,
        subscription.campaign_id,
        project.id,
        tenant.id,
        result.provider_id,
    )
    return Outcome.SENT


def _give_up(
    db: Session,
    subscription: models.Subscription,
    delivery: models.Delivery,
    error: str,
    now: datetime,
) -> Outcome:
    delivery_ledger.mark_failed(db, delivery, error, now)
    db.commit()
    with _cursor_update(db, subscription):
        subscriptions.advance(db, subscription, now)
    logger.warning("Delivery %s failed permanently: %s", delivery.id, error)
    return Outcome.FAILED


def process_subscription(db: Session, subscription_id: int, transport: Transport, now: datetime) -> Outcome:
    """Handle one due subscription: terminate, skip, send or schedule a retry."""

    subscription = db.get(models.Subscription, subscription_id)
    if subscription is None or subscription.status != SubscriptionStatus.ACTIVE:
        return Outcome.SKIPPED
    campaign = subscription.campaign
    project = subscription.project
    if project is None:
        raise DataIntegrityViolation(f"Subscription {subscription_id} references a missing project")

    reason = termination_reason(subscription, campaign, project, now)
    if reason is not None:
        subscriptions.terminate(db, subscription, reason, now)
        db.commit()
        return Outcome.COMPLETED

    email = _due_email(db, subscription, campaign, now)
    if email is None:
        db.commit()
        if subscription.status == SubscriptionStatus.ACTIVE:
            return Outcome.SKIPPED
        return Outcome.COMPLETED

    # Persist any skipped positions before the insert that may roll back.
    db.commit()
    delivery, created = delivery_ledger.record_attempt(db, subscription, email, now)
    if not created:
        if delivery.status in delivery_ledger.HANDLED_STATUSES:
            logger.info("Email %s already handled for subscription %s; advancing", email.id, subscription.id)
            with _cursor_update(db, subscription):
                subscriptions.advance(db, subscription, now)
            return Outcome.SKIPPED
        if delivery.attempt_count >= settings.max_delivery_attempts:
            return _give_up(db, subscription, delivery, "attempt limit reached", now)
        if not delivery_ledger.claim_retry(db, delivery, now):
            return Outcome.SKIPPED
    return _dispatch(db, subscription, email, delivery, transport, now)


def run_due_subscriptions(
    db: Session,
    transport: Transport,
    now: Optional[datetime] = None,
    batch_size: Optional[int] = None,
    tenant_id: Optional[int] = None,
) -> BatchReport:
    """Process every subscription due at ``now``."""

    now = now or utcnow()
    limit = batch_size or settings.scheduler_batch_size
    report = BatchReport()
    last_id = 0
    while True:
        ids = due_subscription_ids(db, now, last_id, limit, tenant_id)
        if not ids:
            break
        for subscription_id in ids:
            report.processed += 1
            try:
                outcome = process_subscription(db, subscription_id, transport, now)
            except Exception as exc:
                db.rollback()
                logger.exception("Failed to process subscription %s", subscription_id)
                report.failed += 1
                report.errors.append({"subscription_id": subscription_id, "error": str(exc)})
                continue
            report.record(outcome)
        last_id = ids[-1]

    logger.info(
        "Drip batch done: processed=%s sent=%s skipped=%s completed=%s retried=%s failed=%s",
        report.processed,
        report.sent,
        report.skipped,
        report.completed,
        report.retried,
        report.failed,
    )
    return report


def enroll_waiting_projects(db: Session, now: datetime) -> int:
    stmt = select(models.Campaign).where(
        models.Campaign.status == CampaignStatus.ACTIVE,
        models.Campaign.is_current_version.is_(True),
        models.Campaign.enabled.is_(True),
    )
    total = 0
    for campaign in db.scalars(stmt).all():
        try:
            total += pipeline.enroll_stage_members(db, campaign, now)
        except Exception:
            db.rollback()
            logger.exception("Failed to enroll stage members for campaign %s", campaign.id)
    return total


def run_tick(db: Session, transports: TransportMap, now: Optional[datetime] = None) -> TickReport:
    """One scheduler tick: automations per tenant, stage enrollment, then drips."""

    now = now or utcnow()
    report = TickReport()
    for tenant_id in db.scalars(select(models.Tenant.id).order_by(models.Tenant.id)).all():
        report.automations[tenant_id] = automations.run_automations(db, tenant_id, transports, now).as_dict()
    report.enrolled = enroll_waiting_projects(db, now)
    report.drips = run_due_subscriptions(db, transports[Channel.EMAIL], now=now)
    return report
