"""Inbound webhook handlers for SES/SNS notifications."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from dripline.core.config import settings
from dripline.db.session import get_db
from dripline.services.bounce_handler import handle_ses_event
from dripline.utils.logger import logger
from dripline.utils.sns import (
    SnsEnvelopeError,
    confirm_subscription,
    parse_ses_message,
    topic_allowed,
    verify_sns_signature,
)

router = APIRouter(prefix="/events", tags=["events"])


@router.post("/sns")
def handle_sns_notification(payload: dict, db: Session = Depends(get_db)) -> dict[str, str]:
    """Handle SES feedback delivered through SNS."""

    topic_arn = payload.get("TopicArn")
    if not topic_allowed(topic_arn, settings.sns_allowed_topic_arns):
        logger.warning("Rejected SNS message from topic %s", topic_arn)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Topic not allowed")

    verified = None
    if settings.sns_verify_signatures:
        verified, reason = verify_sns_signature(payload, settings.sns_timeout_seconds)
        if not verified:
            logger.warning("SNS signature check failed for %s: %s", payload.get("MessageId"), reason)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=reason)

    message_type = payload.get("Type")
    if message_type == "SubscriptionConfirmation":
        subscribe_url = payload.get("SubscribeURL")
        if not subscribe_url or not confirm_subscription(subscribe_url, settings.sns_timeout_seconds):
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Subscription confirmation failed")
        logger.info("Confirmed SNS subscription for topic %s", topic_arn)
        return {"status": "confirmed"}
    if message_type == "UnsubscribeConfirmation":
        return {"status": "ignored"}
    if message_type != "Notification":
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unsupported SNS message type")

    try:
        message = parse_ses_message(payload)
        result = handle_ses_event(
            db,
            message,
            sns_message_id=payload.get("MessageId"),
            topic_arn=topic_arn,
            signature_verified=verified,
        )
    except SnsEnvelopeError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return {"status": result}
