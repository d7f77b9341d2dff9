"""Applies SES feedback (delivery, bounce, complaint, engagement) to deliveries."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from dripline.db import models
from dripline.db.models import DeliveryStatus
from dripline.services import delivery_ledger, subscriptions
from dripline.services.subscriptions import EndReason
from dripline.utils.datetime import ensure_utc, utcnow
from dripline.utils.logger import logger
from dripline.utils.sns import SnsEnvelopeError, dumps_payload

# SES event name -> (detail key holding the timestamp, result label)
_EVENTS = {
    "send": ("send", "sent"),
    "delivery": ("delivery", "delivered"),
    "bounce": ("bounce", "bounced"),
    "complaint": ("complaint", "complaint"),
    "reject": ("reject", "rejected"),
    "open": ("open", "opened"),
    "click": ("click", "clicked"),
}


def event_type(message: Dict[str, Any]) -> str:
    # Notifications use notificationType; configuration-set event publishing uses eventType.
    return (message.get("notificationType") or message.get("eventType") or "").lower()


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        logger.warning("Unparseable SES timestamp %r", value)
        return None


def event_time(message: Dict[str, Any], kind: str) -> datetime:
    detail_key = _EVENTS.get(kind, (kind, kind))[0]
    detail = message.get(detail_key) or {}
    mail = message.get("mail") or {}
    return _parse_timestamp(detail.get("timestamp")) or _parse_timestamp(mail.get("timestamp")) or utcnow()


def handle_ses_event(
    db: Session,
    message: Dict[str, Any],
    *,
    sns_message_id: Optional[str] = None,
    topic_arn: Optional[str] = None,
    signature_verified: Optional[bool] = None,
) -> str:
    """Record the event and apply it to the matching delivery. Returns a status label."""

    kind = event_type(message)
    provider_id = (message.get("mail") or {}).get("messageId")
    if not provider_id:
        raise SnsEnvelopeError("Missing messageId")

    delivery = delivery_ledger.find_by_provider_id(db, provider_id)
    db.add(
        models.DeliveryEvent(
            delivery_id=delivery.id if delivery else None,
            provider_message_id=provider_id,
            sns_message_id=sns_message_id,
            event_type=kind or "unknown",
            topic_arn=topic_arn,
            payload_json=dumps_payload(message),
            signature_verified=signature_verified,
        )
    )

    label = _EVENTS.get(kind, (kind, "ignored"))[1]
    if delivery is None:
        logger.warning("No delivery for SES message_id=%s (%s)", provider_id, kind)
        db.commit()
        return label

    at = event_time(message, kind)
    if kind == "send":
        delivery_ledger.update_status(db, delivery, DeliveryStatus.SENT, at)
    elif kind == "delivery":
        delivery_ledger.update_status(db, delivery, DeliveryStatus.DELIVERED, at)
    elif kind == "bounce":
        label = _apply_bounce(db, delivery, message.get("bounce") or {}, at)
    elif kind == "complaint":
        subscriptions.terminate(db, delivery.subscription, EndReason.COMPLAINT, at)
    elif kind == "reject":
        delivery_ledger.mark_failed(db, delivery, "Rejected by SES", at)
    elif kind in ("open", "click"):
        delivery_ledger.record_engagement(db, delivery, kind, at)
    else:
        logger.info("Ignoring SES event %r for message_id=%s", kind, provider_id)
    db.commit()
    return label


def _apply_bounce(db: Session, delivery: models.Delivery, bounce: Dict[str, Any], at: datetime) -> str:
    if bounce.get("bounceType") != "Permanent":
        logger.info("Transient bounce for delivery %s (%s)", delivery.id, bounce.get("bounceSubType"))
        return "soft_bounce"
    delivery_ledger.update_status(db, delivery, DeliveryStatus.BOUNCED, at)
    subscriptions.terminate(db, delivery.subscription, EndReason.BOUNCED, at)
    return "bounced"
