"""Per-project progress through a campaign's email sequence."""
from __future__ import annotations

from datetime import datetime, timedelta
from enum import StrEnum
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dripline.core.config import settings
from dripline.core.exceptions import (
    AlreadyEnrolledError,
    DataIntegrityViolation,
    InvalidTransitionError,
    NotFoundError,
)
from dripline.db import models
from dripline.db.models import SubscriptionStatus
from dripline.services import campaign_store
from dripline.utils.datetime import at_local_hour, utcnow
from dripline.utils.logger import logger

TERMINAL_STATUSES = frozenset({SubscriptionStatus.COMPLETED, SubscriptionStatus.UNSUBSCRIBED})


class EndReason(StrEnum):
    SEQUENCE_FINISHED = "SEQUENCE_FINISHED"
    EVENT_DATE_REACHED = "EVENT_DATE_REACHED"
    MAX_DURATION = "MAX_DURATION"
    PROJECT_INACTIVE = "PROJECT_INACTIVE"
    NO_RECIPIENT = "NO_RECIPIENT"
    OPTED_OUT = "OPTED_OUT"
    UNSUBSCRIBED = "UNSUBSCRIBED"
    COMPLAINT = "COMPLAINT"
    BOUNCED = "BOUNCED"


# Reasons that end a subscription because the recipient no longer wants (or can get) mail.
UNSUBSCRIBE_REASONS = frozenset({EndReason.OPTED_OUT, EndReason.UNSUBSCRIBED, EndReason.COMPLAINT, EndReason.BOUNCED})


def get_subscription(db: Session, subscription_id: int) -> models.Subscription:
    subscription = db.get(models.Subscription, subscription_id)
    if subscription is None:
        raise NotFoundError("Subscription", subscription_id)
    return subscription


def get_by_token(db: Session, token: str) -> models.Subscription:
    subscription = db.scalar(select(models.Subscription).where(models.Subscription.unsubscribe_token == token))
    if subscription is None:
        raise NotFoundError("Subscription", token)
    return subscription


def tenant_timezone(campaign: models.Campaign) -> str:
    tenant = campaign.tenant
    return (tenant.timezone if tenant is not None else None) or settings.default_timezone


def email_due_at(
    campaign: models.Campaign,
    email: models.CampaignEmail,
    started_at: datetime,
    now: datetime,
) -> datetime:
    """When ``email`` becomes due for a subscription that started at ``started_at``.

    The offset is ``days_after_start`` when set, otherwise the email's position
    times the campaign cadence. ``send_at_hour`` pins the send to that hour in the
    tenant's timezone, never earlier than the raw offset. Overdue emails are due now.
    """

    if email.days_after_start is not None:
        offset_days = email.days_after_start
    else:
        offset_days = email.sequence_index * campaign.frequency_days
    due = started_at + timedelta(days=offset_days)
    if email.send_at_hour is not None:
        pinned = at_local_hour(due, email.send_at_hour, tenant_timezone(campaign))
        if pinned < due:
            pinned = at_local_hour(due + timedelta(days=1), email.send_at_hour, tenant_timezone(campaign))
        due = pinned
    return max(due, now)


def enroll(
    db: Session,
    campaign_id: int,
    project_id: int,
    now: Optional[datetime] = None,
) -> models.Subscription:
    """Start ``project`` on the campaign at index 0.

    Commits the session; the unique (campaign, project) pair makes concurrent
    enrollments collapse into one row and the loser gets ``AlreadyEnrolledError``.
    """

    now = now or utcnow()
    campaign = campaign_store.get_campaign(db, campaign_id)
    project = db.get(models.Project, project_id)
    if project is None:
        raise NotFoundError("Project", project_id)
    if project.tenant_id != campaign.tenant_id:
        raise DataIntegrityViolation(f"Project {project_id} and campaign {campaign_id} belong to different tenants")

    emails = campaign_store.get_emails(db, campaign.id)
    first = emails[0] if emails else None
    subscription = models.Subscription(
        campaign_id=campaign.id,
        project_id=project.id,
        contact_id=project.contact_id,
        started_at=now,
        next_email_index=0,
        next_email_at=email_due_at(campaign, first, now, now) if first is not None else now,
        status=SubscriptionStatus.ACTIVE,
    )
    db.add(subscription)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = db.scalar(
            select(models.Subscription.id).where(
                models.Subscription.campaign_id == campaign_id,
                models.Subscription.project_id == project_id,
            )
        )
        if existing is None:
            raise
        raise AlreadyEnrolledError(campaign_id, project_id)

    logger.info(
        "Enrolled project %s in campaign %s (tenant=%s) as subscription %s",
        project_id,
        campaign_id,
        campaign.tenant_id,
        subscription.id,
    )
    return subscription


def advance(db: Session, subscription: models.Subscription, now: Optional[datetime] = None) -> models.Subscription:
    """Move the cursor forward by exactly one email.

    Completes the subscription when no approved email remains at or after the
    new position; otherwise schedules the email at the new position.
    """

    now = now or utcnow()
    if subscription.status != SubscriptionStatus.ACTIVE:
        raise InvalidTransitionError("Subscription", subscription.status, "ADVANCE")

    campaign = subscription.campaign
    emails = campaign_store.get_emails(db, campaign.id)
    subscription.next_email_index += 1
    index = subscription.next_email_index

    if not any(email.is_approved for email in emails if email.sequence_index >= index):
        return terminate(db, subscription, EndReason.SEQUENCE_FINISHED, now)

    upcoming = next((email for email in emails if email.sequence_index == index), None)
    if upcoming is None:
        raise DataIntegrityViolation(f"Campaign {campaign.id} has no email at index {index}")
    subscription.next_email_at = email_due_at(campaign, upcoming, subscription.started_at, now)
    db.flush()
    logger.debug("Subscription %s advanced to index %s due %s", subscription.id, index, subscription.next_email_at)
    return subscription


def terminate(
    db: Session,
    subscription: models.Subscription,
    reason: EndReason,
    now: Optional[datetime] = None,
) -> models.Subscription:
    """End the subscription. A second call on an ended subscription does nothing."""

    if subscription.status in TERMINAL_STATUSES:
        return subscription
    now = now or utcnow()
    reason = EndReason(reason)
    if reason in UNSUBSCRIBE_REASONS:
        subscription.status = SubscriptionStatus.UNSUBSCRIBED
        subscription.unsubscribed_at = now
    else:
        subscription.status = SubscriptionStatus.COMPLETED
        subscription.completed_at = now
    subscription.end_reason = reason
    subscription.next_email_at = None
    db.flush()
    logger.info("Subscription %s ended: %s (%s)", subscription.id, subscription.status, reason)
    return subscription


def pause(db: Session, subscription: models.Subscription) -> models.Subscription:
    if subscription.status == SubscriptionStatus.PAUSED:
        return subscription
    if subscription.status != SubscriptionStatus.ACTIVE:
        raise InvalidTransitionError("Subscription", subscription.status, SubscriptionStatus.PAUSED)
    subscription.status = SubscriptionStatus.PAUSED
    db.flush()
    return subscription


def resume(db: Session, subscription: models.Subscription, now: Optional[datetime] = None) -> models.Subscription:
    if subscription.status == SubscriptionStatus.ACTIVE:
        return subscription
    if subscription.status != SubscriptionStatus.PAUSED:
        raise InvalidTransitionError("Subscription", subscription.status, SubscriptionStatus.ACTIVE)
    now = now or utcnow()
    subscription.status = SubscriptionStatus.ACTIVE
    if subscription.next_email_at is not None and subscription.next_email_at < now:
        subscription.next_email_at = now
    db.flush()
    return subscription


def unsubscribe_project(
    db: Session,
    project_id: int,
    reason: EndReason = EndReason.UNSUBSCRIBED,
    now: Optional[datetime] = None,
) -> int:
    """End every open subscription of a project. Returns how many were ended."""

    stmt = select(models.Subscription).where(
        models.Subscription.project_id == project_id,
        models.Subscription.status.in_([SubscriptionStatus.ACTIVE, SubscriptionStatus.PAUSED]),
    )
    ended = 0
    for subscription in db.scalars(stmt).all():
        terminate(db, subscription, reason, now)
        ended += 1
    return ended
