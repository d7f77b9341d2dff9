"""Append-mostly record of every (subscription, email) send.

The unique (subscription_id, email_id) pair is the only thing standing between
two overlapping ticks and a duplicate email, so ``record_attempt`` commits its
insert on its own and reports whether it won.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dripline.core.config import settings
from dripline.db import models
from dripline.db.models import DeliveryStatus
from dripline.utils.datetime import utcnow
from dripline.utils.logger import logger

ALLOWED_TRANSITIONS = {
    DeliveryStatus.PENDING: frozenset(
        {DeliveryStatus.SENT, DeliveryStatus.DELIVERED, DeliveryStatus.BOUNCED, DeliveryStatus.FAILED}
    ),
    DeliveryStatus.SENT: frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.BOUNCED, DeliveryStatus.FAILED}),
}

# Statuses that mean the email has been dealt with and must not be sent again.
HANDLED_STATUSES = frozenset(
    {DeliveryStatus.SENT, DeliveryStatus.DELIVERED, DeliveryStatus.BOUNCED, DeliveryStatus.FAILED}
)


def find(db: Session, subscription_id: int, email_id: int) -> Optional[models.Delivery]:
    return db.scalar(
        select(models.Delivery).where(
            models.Delivery.subscription_id == subscription_id,
            models.Delivery.email_id == email_id,
        )
    )


def find_by_provider_id(db: Session, provider_id: str) -> Optional[models.Delivery]:
    if not provider_id:
        return None
    return db.scalar(select(models.Delivery).where(models.Delivery.provider_id == provider_id))


def record_attempt(
    db: Session,
    subscription: models.Subscription,
    email: models.CampaignEmail,
    now: Optional[datetime] = None,
) -> tuple[models.Delivery, bool]:
    """Insert a PENDING delivery unless one already exists.

    Returns ``(delivery, created)``. Only the caller that gets ``created=True``
    owns the first send attempt.
    """

    now = now or utcnow()
    subscription_id, email_id = subscription.id, email.id
    delivery = models.Delivery(
        subscription_id=subscription_id,
        email_id=email_id,
        project_id=subscription.project_id,
        status=DeliveryStatus.PENDING,
        attempt_count=1,
        last_attempt_at=now,
    )
    db.add(delivery)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = find(db, subscription_id, email_id)
        if existing is None:
            raise
        logger.info(
            "Delivery for subscription %s email %s already recorded (id=%s, status=%s)",
            subscription_id,
            email_id,
            existing.id,
            existing.status,
        )
        return existing, False
    return delivery, True


def update_status(
    db: Session,
    delivery: models.Delivery,
    status: DeliveryStatus,
    at: Optional[datetime] = None,
) -> bool:
    """Apply a forward-only status change. Returns False when it is ignored."""

    at = at or utcnow()
    current = DeliveryStatus(delivery.status)
    target = DeliveryStatus(status)
    if target == current:
        return False
    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        logger.warning("Ignoring delivery %s status change %s -> %s", delivery.id, current, target)
        return False

    delivery.status = target
    if target == DeliveryStatus.SENT:
        delivery.sent_at = at
    elif target == DeliveryStatus.DELIVERED and delivery.sent_at is None:
        delivery.sent_at = at
    elif target == DeliveryStatus.BOUNCED:
        delivery.bounced_at = at
    db.flush()
    return True


def mark_sent(db: Session, delivery: models.Delivery, provider_id: str, at: Optional[datetime] = None) -> bool:
    delivery.provider_id = provider_id or delivery.provider_id
    delivery.last_error = None
    return update_status(db, delivery, DeliveryStatus.SENT, at)


def mark_failed(db: Session, delivery: models.Delivery, error: str, at: Optional[datetime] = None) -> bool:
    delivery.last_error = error[:1024]
    return update_status(db, delivery, DeliveryStatus.FAILED, at)


def note_transient_failure(db: Session, delivery: models.Delivery, error: str, at: Optional[datetime] = None) -> None:
    """Keep the delivery PENDING and remember why this attempt failed."""

    delivery.last_error = error[:1024]
    delivery.last_attempt_at = at or utcnow()
    db.flush()


def record_engagement(db: Session, delivery: models.Delivery, kind: str, at: Optional[datetime] = None) -> None:
    """Stamp the first open or click."""

    at = at or utcnow()
    if kind == "open":
        if delivery.opened_at is None:
            delivery.opened_at = at
    elif kind == "click":
        if delivery.clicked_at is None:
            delivery.clicked_at = at
        if delivery.opened_at is None:
            delivery.opened_at = at
    else:
        raise ValueError(f"Unknown engagement kind: {kind}")
    db.flush()


def retry_delay(attempt_count: int) -> timedelta:
    """Exponential backoff starting at ``retry_backoff_seconds``."""

    return timedelta(seconds=settings.retry_backoff_seconds * 2 ** max(attempt_count - 1, 0))


def claim_retry(db: Session, delivery: models.Delivery, now: Optional[datetime] = None) -> bool:
    """Take ownership of another attempt on a PENDING delivery.

    A delivery can be claimed after a recorded transient failure, or when the
    previous attempt's lease has expired without an outcome. The compare-and-set
    on ``attempt_count`` lets exactly one contender win. Commits the session.
    """

    now = now or utcnow()
    if delivery.status != DeliveryStatus.PENDING:
        return False
    lease = timedelta(seconds=settings.delivery_claim_ttl_seconds)
    lease_expired = delivery.last_attempt_at is None or delivery.last_attempt_at + lease <= now
    if delivery.last_error is None and not lease_expired:
        logger.info("Delivery %s has an attempt in flight; not claiming", delivery.id)
        return False

    seen_attempts = delivery.attempt_count
    result = db.execute(
        update(models.Delivery)
        .where(
            models.Delivery.id == delivery.id,
            models.Delivery.status == DeliveryStatus.PENDING,
            models.Delivery.attempt_count == seen_attempts,
        )
        .values(attempt_count=seen_attempts + 1, last_attempt_at=now, last_error=None)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(delivery)
    if result.rowcount != 1:
        logger.info("Delivery %s retry already claimed elsewhere", delivery.id)
        return False
    logger.info("Claimed delivery %s for attempt %s", delivery.id, delivery.attempt_count)
    return True
