"""Campaign management endpoints."""
from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from dripline.db import models
from dripline.db.models import ApprovalStatus
from dripline.db.session import get_db
from dripline.services import campaign_store, pipeline, static_campaigns
from dripline.services.campaign_store import EmailDraft, EmailEdit

router = APIRouter(prefix="/campaigns", tags=["campaigns"])


class EmailIn(BaseModel):
    subject: str
    html_body: str
    text_body: str | None = None
    days_after_start: int | None = Field(default=None, ge=0)
    send_at_hour: int | None = Field(default=None, ge=0, le=23)
    approval_status: ApprovalStatus = ApprovalStatus.PENDING


class CampaignCreate(BaseModel):
    tenant_id: int
    name: str
    target_stage_id: int
    project_type: str = "WEDDING"
    frequency_days: int = Field(default=14, ge=1)
    max_duration_months: int = Field(default=12, ge=1)
    emails: list[EmailIn] = []


class StaticDraftCreate(BaseModel):
    tenant_id: int
    project_type: str = "WEDDING"
    target_stage_id: int


class EmailEditIn(BaseModel):
    sequence_index: int = Field(ge=0)
    subject: str | None = None
    html_body: str | None = None
    text_body: str | None = None
    days_after_start: int | None = Field(default=None, ge=0)
    send_at_hour: int | None = Field(default=None, ge=0, le=23)


class EmailPatch(BaseModel):
    subject: str | None = None
    html_body: str | None = None
    text_body: str | None = None
    days_after_start: int | None = Field(default=None, ge=0)
    send_at_hour: int | None = Field(default=None, ge=0, le=23)


class VersionCreate(BaseModel):
    edits: list[EmailEditIn]
    notes: str | None = None


class EmailRejection(BaseModel):
    reason: str | None = None


class EmailResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    sequence_index: int
    subject: str
    html_body: str
    text_body: str | None
    days_after_start: int | None
    send_at_hour: int | None
    approval_status: str
    has_manual_edits: bool
    rejection_reason: str | None


class CampaignResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: int
    name: str
    project_type: str
    target_stage_id: int
    status: str
    content_origin: str
    frequency_days: int
    frequency_weeks: int
    max_duration_months: int
    enabled: bool
    version: int
    lineage_key: str
    parent_campaign_id: int | None
    is_current_version: bool
    version_notes: str | None
    approved_at: datetime | None
    emails: list[EmailResponse] = []


class HistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    version: int
    change_type: str
    change_description: str
    affected_email_id: int | None
    created_at: datetime


class ActivationResponse(BaseModel):
    campaign: CampaignResponse
    enrolled: int


def _email_draft(email: EmailIn) -> EmailDraft:
    return EmailDraft(**email.model_dump())


@router.post("/", response_model=CampaignResponse)
def create_campaign(payload: CampaignCreate, db: Session = Depends(get_db)) -> CampaignResponse:
    """Create a draft campaign with its email sequence."""

    campaign = campaign_store.create_campaign(
        db,
        tenant_id=payload.tenant_id,
        name=payload.name,
        target_stage_id=payload.target_stage_id,
        project_type=payload.project_type,
        frequency_days=payload.frequency_days,
        max_duration_months=payload.max_duration_months,
        emails=[_email_draft(email) for email in payload.emails],
    )
    db.commit()
    db.refresh(campaign)
    return CampaignResponse.model_validate(campaign)


@router.post("/static-draft", response_model=CampaignResponse)
def create_static_draft(payload: StaticDraftCreate, db: Session = Depends(get_db)) -> CampaignResponse:
    """Return the tenant's built-in draft, creating it on first use."""

    campaign, _ = static_campaigns.get_or_create_static_draft(
        db, payload.tenant_id, payload.project_type, payload.target_stage_id
    )
    return CampaignResponse.model_validate(campaign)


@router.get("/", response_model=list[CampaignResponse])
def list_campaigns(
    tenant_id: int | None = Query(default=None),
    current_only: bool = Query(default=True),
    db: Session = Depends(get_db),
) -> list[CampaignResponse]:
    stmt = select(models.Campaign).order_by(models.Campaign.id.desc())
    if tenant_id is not None:
        stmt = stmt.where(models.Campaign.tenant_id == tenant_id)
    if current_only:
        stmt = stmt.where(models.Campaign.is_current_version.is_(True))
    return [CampaignResponse.model_validate(c) for c in db.scalars(stmt)]


@router.get("/{campaign_id}", response_model=CampaignResponse)
def get_campaign(campaign_id: int, db: Session = Depends(get_db)) -> CampaignResponse:
    return CampaignResponse.model_validate(campaign_store.get_campaign(db, campaign_id))


@router.get("/{campaign_id}/history", response_model=list[HistoryResponse])
def get_history(campaign_id: int, db: Session = Depends(get_db)) -> list[HistoryResponse]:
    campaign = campaign_store.get_campaign(db, campaign_id)
    stmt = (
        select(models.CampaignVersionHistory)
        .join(models.Campaign, models.Campaign.id == models.CampaignVersionHistory.campaign_id)
        .where(models.Campaign.lineage_key == campaign.lineage_key)
        .order_by(models.CampaignVersionHistory.id)
    )
    return [HistoryResponse.model_validate(entry) for entry in db.scalars(stmt)]


@router.post("/{campaign_id}/versions", response_model=CampaignResponse)
def create_version(campaign_id: int, payload: VersionCreate, db: Session = Depends(get_db)) -> CampaignResponse:
    """Supersede the campaign with an edited copy; sent content stays untouched."""

    edits = [EmailEdit(**edit.model_dump()) for edit in payload.edits]
    campaign = campaign_store.create_version(db, campaign_id, edits, notes=payload.notes)
    db.commit()
    db.refresh(campaign)
    return CampaignResponse.model_validate(campaign)


@router.post("/{campaign_id}/approve", response_model=CampaignResponse)
def approve_campaign(campaign_id: int, db: Session = Depends(get_db)) -> CampaignResponse:
    campaign = campaign_store.approve_campaign(db, campaign_id)
    db.commit()
    return CampaignResponse.model_validate(campaign)


@router.post("/{campaign_id}/activate", response_model=ActivationResponse)
def activate_campaign(campaign_id: int, db: Session = Depends(get_db)) -> ActivationResponse:
    """Activate and enroll the projects already waiting in the target stage."""

    campaign = campaign_store.activate_campaign(db, campaign_id)
    db.commit()
    enrolled = pipeline.enroll_stage_members(db, campaign)
    return ActivationResponse(campaign=CampaignResponse.model_validate(campaign), enrolled=enrolled)


@router.post("/{campaign_id}/pause", response_model=CampaignResponse)
def pause_campaign(campaign_id: int, db: Session = Depends(get_db)) -> CampaignResponse:
    campaign = campaign_store.pause_campaign(db, campaign_id)
    db.commit()
    return CampaignResponse.model_validate(campaign)


@router.patch("/emails/{email_id}", response_model=EmailResponse)
def edit_email(email_id: int, payload: EmailPatch, db: Session = Depends(get_db)) -> EmailResponse:
    """Edit an email that has never been sent; otherwise a new version is required."""

    email = campaign_store.edit_email(db, email_id, **payload.model_dump())
    db.commit()
    return EmailResponse.model_validate(email)


@router.post("/emails/{email_id}/approve", response_model=EmailResponse)
def approve_email(email_id: int, db: Session = Depends(get_db)) -> EmailResponse:
    email = campaign_store.approve_email(db, email_id)
    db.commit()
    return EmailResponse.model_validate(email)


@router.post("/emails/{email_id}/reject", response_model=EmailResponse)
def reject_email(email_id: int, payload: EmailRejection, db: Session = Depends(get_db)) -> EmailResponse:
    email = campaign_store.reject_email(db, email_id, payload.reason)
    db.commit()
    return EmailResponse.model_validate(email)
