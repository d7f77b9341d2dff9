"""Subscription endpoints: enrollment, pause/resume and unsubscribe links."""
from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from fastapi.responses import HTMLResponse
from pydantic import BaseModel, ConfigDict
from sqlalchemy import select
from sqlalchemy.orm import Session

from dripline.db import models
from dripline.db.session import get_db
from dripline.services import subscriptions
from dripline.services.subscriptions import EndReason
from dripline.services.template_engine import render_template

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


class EnrollmentRequest(BaseModel):
    campaign_id: int
    project_id: int


class DeliveryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email_id: int
    status: str
    provider_id: str | None
    attempt_count: int
    last_error: str | None
    sent_at: datetime | None
    opened_at: datetime | None
    clicked_at: datetime | None
    bounced_at: datetime | None


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    campaign_id: int
    project_id: int
    status: str
    started_at: datetime
    next_email_index: int
    next_email_at: datetime | None
    end_reason: str | None
    completed_at: datetime | None
    unsubscribed_at: datetime | None


class SubscriptionDetail(SubscriptionResponse):
    deliveries: list[DeliveryResponse] = []


@router.post("/", response_model=SubscriptionResponse)
def enroll(payload: EnrollmentRequest, db: Session = Depends(get_db)) -> SubscriptionResponse:
    """Enroll a project; a second enrollment in the same campaign returns 409."""

    subscription = subscriptions.enroll(db, payload.campaign_id, payload.project_id)
    return SubscriptionResponse.model_validate(subscription)


@router.get("/", response_model=list[SubscriptionResponse])
def list_subscriptions(
    campaign_id: int | None = Query(default=None),
    project_id: int | None = Query(default=None),
    status: str | None = Query(default=None),
    db: Session = Depends(get_db),
) -> list[SubscriptionResponse]:
    stmt = select(models.Subscription).order_by(models.Subscription.id)
    if campaign_id is not None:
        stmt = stmt.where(models.Subscription.campaign_id == campaign_id)
    if project_id is not None:
        stmt = stmt.where(models.Subscription.project_id == project_id)
    if status is not None:
        stmt = stmt.where(models.Subscription.status == status.upper())
    return [SubscriptionResponse.model_validate(s) for s in db.scalars(stmt)]


@router.get("/{subscription_id}", response_model=SubscriptionDetail)
def get_subscription(subscription_id: int, db: Session = Depends(get_db)) -> SubscriptionDetail:
    return SubscriptionDetail.model_validate(subscriptions.get_subscription(db, subscription_id))


@router.post("/{subscription_id}/pause", response_model=SubscriptionResponse)
def pause(subscription_id: int, db: Session = Depends(get_db)) -> SubscriptionResponse:
    subscription = subscriptions.pause(db, subscriptions.get_subscription(db, subscription_id))
    db.commit()
    return SubscriptionResponse.model_validate(subscription)


@router.post("/{subscription_id}/resume", response_model=SubscriptionResponse)
def resume(subscription_id: int, db: Session = Depends(get_db)) -> SubscriptionResponse:
    subscription = subscriptions.resume(db, subscriptions.get_subscription(db, subscription_id))
    db.commit()
    return SubscriptionResponse.model_validate(subscription)


@router.api_route("/unsubscribe/{token}", methods=["GET", "POST"], response_class=HTMLResponse)
def unsubscribe(token: str, db: Session = Depends(get_db)) -> HTMLResponse:
    """Target of the link in every drip email. Safe to follow twice."""

    subscription = subscriptions.get_by_token(db, token)
    subscriptions.terminate(db, subscription, EndReason.UNSUBSCRIBED)
    db.commit()
    business_name = subscription.campaign.tenant.name if subscription.campaign.tenant else ""
    return HTMLResponse(render_template("unsubscribed.html", business_name=business_name))
