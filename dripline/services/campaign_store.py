"""Campaign definitions, their email sequences and version lineage."""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Sequence

from sqlalchemy import exists, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dripline.core.exceptions import (
    ConflictError,
    DataIntegrityViolation,
    InvalidTransitionError,
    NotFoundError,
    VersionRequiredError,
)
from dripline.db import models
from dripline.db.models import ApprovalStatus, CampaignStatus, ContentOrigin
from dripline.utils.datetime import utcnow
from dripline.utils.logger import logger

_TRANSITIONS = {
    CampaignStatus.DRAFT: {CampaignStatus.APPROVED},
    CampaignStatus.APPROVED: {CampaignStatus.ACTIVE},
    CampaignStatus.ACTIVE: {CampaignStatus.PAUSED},
    CampaignStatus.PAUSED: {CampaignStatus.ACTIVE},
}


@dataclass
class EmailDraft:
    subject: str
    html_body: str
    text_body: Optional[str] = None
    days_after_start: Optional[int] = None
    send_at_hour: Optional[int] = None
    approval_status: ApprovalStatus = ApprovalStatus.PENDING


@dataclass
class EmailEdit:
    """Changes for the email at ``sequence_index``; ``None`` keeps the current value."""

    sequence_index: int
    subject: Optional[str] = None
    html_body: Optional[str] = None
    text_body: Optional[str] = None
    days_after_start: Optional[int] = None
    send_at_hour: Optional[int] = None


def get_campaign(db: Session, campaign_id: int) -> models.Campaign:
    campaign = db.get(models.Campaign, campaign_id)
    if campaign is None:
        raise NotFoundError("Campaign", campaign_id)
    return campaign


def get_emails(db: Session, campaign_id: int) -> list[models.CampaignEmail]:
    stmt = (
        select(models.CampaignEmail)
        .where(models.CampaignEmail.campaign_id == campaign_id)
        .order_by(models.CampaignEmail.sequence_index)
    )
    return list(db.scalars(stmt))


def get_email(db: Session, email_id: int) -> models.CampaignEmail:
    email = db.get(models.CampaignEmail, email_id)
    if email is None:
        raise NotFoundError("Campaign email", email_id)
    return email


def validate_sequence(emails: Iterable[models.CampaignEmail]) -> None:
    """Sequence indices must run 0..n-1 without gaps or repeats."""

    indices = sorted(email.sequence_index for email in emails)
    if indices != list(range(len(indices))):
        raise DataIntegrityViolation(f"Campaign email indices are not contiguous from 0: {indices}")


def has_deliveries(db: Session, email_id: int) -> bool:
    return bool(db.scalar(select(exists().where(models.Delivery.email_id == email_id))))


def _snapshot(campaign: models.Campaign) -> str:
    return json.dumps(
        {
            "name": campaign.name,
            "status": campaign.status,
            "version": campaign.version,
            "frequency_days": campaign.frequency_days,
            "max_duration_months": campaign.max_duration_months,
        }
    )


def _email_snapshot(email: models.CampaignEmail) -> str:
    return json.dumps(
        {
            "sequence_index": email.sequence_index,
            "subject": email.subject,
            "days_after_start": email.days_after_start,
            "approval_status": email.approval_status,
        }
    )


def record_history(
    db: Session,
    campaign: models.Campaign,
    change_type: str,
    description: str,
    *,
    affected_email_id: Optional[int] = None,
    previous_data: Optional[str] = None,
    new_data: Optional[str] = None,
) -> models.CampaignVersionHistory:
    entry = models.CampaignVersionHistory(
        campaign_id=campaign.id,
        version=campaign.version,
        change_type=change_type,
        change_description=description,
        affected_email_id=affected_email_id,
        previous_data=previous_data,
        new_data=new_data,
    )
    db.add(entry)
    return entry


def _build_emails(drafts: Sequence[EmailDraft], now: datetime) -> list[models.CampaignEmail]:
    emails = []
    for index, draft in enumerate(drafts):
        status = ApprovalStatus(draft.approval_status)
        emails.append(
            models.CampaignEmail(
                sequence_index=index,
                subject=draft.subject,
                html_body=draft.html_body,
                text_body=draft.text_body,
                days_after_start=draft.days_after_start,
                send_at_hour=draft.send_at_hour,
                approval_status=status,
                approved_at=now if status == ApprovalStatus.APPROVED else None,
            )
        )
    return emails


def create_campaign(
    db: Session,
    *,
    tenant_id: int,
    name: str,
    target_stage_id: int,
    emails: Sequence[EmailDraft],
    project_type: str = "WEDDING",
    frequency_days: int = 14,
    max_duration_months: int = 12,
    content_origin: ContentOrigin = ContentOrigin.MANUAL,
    now: Optional[datetime] = None,
) -> models.Campaign:
    """Create a version-1 draft campaign with its email sequence."""

    if frequency_days < 1:
        raise ValueError("frequency_days must be at least 1")
    stage = db.get(models.Stage, target_stage_id)
    if stage is None:
        raise NotFoundError("Stage", target_stage_id)
    if stage.tenant_id != tenant_id:
        raise DataIntegrityViolation(f"Stage {target_stage_id} does not belong to tenant {tenant_id}")
    now = now or utcnow()
    campaign = models.Campaign(
        tenant_id=tenant_id,
        name=name,
        target_stage_id=target_stage_id,
        project_type=project_type,
        frequency_days=frequency_days,
        max_duration_months=max_duration_months,
        content_origin=content_origin,
        status=CampaignStatus.DRAFT,
        version=1,
        is_current_version=True,
    )
    campaign.emails = _build_emails(emails, now)
    db.add(campaign)
    db.flush()
    record_history(db, campaign, "CREATED", f"Campaign created with {len(emails)} emails", new_data=_snapshot(campaign))
    logger.info("Created campaign %s (%s) for tenant %s", campaign.id, content_origin, tenant_id)
    return campaign


def get_or_create_draft(
    db: Session,
    *,
    tenant_id: int,
    name: str,
    target_stage_id: int,
    emails: Sequence[EmailDraft],
    project_type: str,
    content_origin: ContentOrigin,
    frequency_days: int = 14,
) -> tuple[models.Campaign, bool]:
    """Insert-if-absent for the single root draft per tenant, project type and origin.

    Commits the session. Returns ``(campaign, created)``.
    """

    if content_origin == ContentOrigin.MANUAL:
        raise ValueError("manual campaigns are not deduplicated as drafts")
    try:
        campaign = create_campaign(
            db,
            tenant_id=tenant_id,
            name=name,
            target_stage_id=target_stage_id,
            emails=emails,
            project_type=project_type,
            frequency_days=frequency_days,
            content_origin=content_origin,
        )
        db.commit()
        return campaign, True
    except IntegrityError as exc:
        db.rollback()
        conflict = exc

    existing = db.scalar(
        select(models.Campaign).where(
            models.Campaign.tenant_id == tenant_id,
            models.Campaign.project_type == project_type,
            models.Campaign.content_origin == content_origin,
            models.Campaign.status == CampaignStatus.DRAFT,
            models.Campaign.parent_campaign_id.is_(None),
        )
    )
    if existing is None:
        raise conflict
    logger.info("Reusing existing %s draft %s for tenant %s", content_origin, existing.id, tenant_id)
    return existing, False


def create_version(
    db: Session,
    campaign_id: int,
    edits: Sequence[EmailEdit],
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> models.Campaign:
    """Supersede the current version with a copy carrying ``edits``.

    The previous version's emails are left untouched so every delivery keeps
    pointing at the content that was actually sent.
    """

    now = now or utcnow()
    current = get_campaign(db, campaign_id)
    if not current.is_current_version:
        raise ConflictError(f"Campaign {campaign_id} is not the current version of its lineage")

    old_emails = get_emails(db, current.id)
    validate_sequence(old_emails)
    by_index = {email.sequence_index: email for email in old_emails}
    edits_by_index = {edit.sequence_index: edit for edit in edits}
    for index in edits_by_index:
        if index < 0 or index > len(old_emails):
            raise DataIntegrityViolation(f"Edit targets sequence index {index} outside 0..{len(old_emails)}")

    current.is_current_version = False
    db.flush()

    new_version = models.Campaign(
        tenant_id=current.tenant_id,
        project_type=current.project_type,
        name=current.name,
        target_stage_id=current.target_stage_id,
        status=CampaignStatus.DRAFT,
        content_origin=current.content_origin,
        frequency_days=current.frequency_days,
        max_duration_months=current.max_duration_months,
        enabled=current.enabled,
        version=current.version + 1,
        lineage_key=current.lineage_key,
        parent_campaign_id=current.id,
        is_current_version=True,
        version_notes=notes,
    )

    new_emails = []
    for index in range(len(old_emails) + (1 if len(old_emails) in edits_by_index else 0)):
        source = by_index.get(index)
        edit = edits_by_index.get(index)
        new_emails.append(_clone_email(source, edit, index, now))
    new_version.emails = new_emails

    db.add(new_version)
    db.flush()
    record_history(
        db,
        new_version,
        "VERSION_CREATED",
        f"Version {new_version.version} created from version {current.version} with {len(edits)} edited emails",
        previous_data=_snapshot(current),
        new_data=_snapshot(new_version),
    )
    logger.info(
        "Campaign lineage %s: version %s (id=%s) supersedes id=%s",
        current.lineage_key,
        new_version.version,
        new_version.id,
        current.id,
    )
    return new_version


def _clone_email(
    source: Optional[models.CampaignEmail],
    edit: Optional[EmailEdit],
    index: int,
    now: datetime,
) -> models.CampaignEmail:
    if source is None:
        # Appended email; only reachable through an edit at index == len(emails).
        return models.CampaignEmail(
            sequence_index=index,
            subject=edit.subject or "",
            html_body=edit.html_body or "",
            text_body=edit.text_body,
            days_after_start=edit.days_after_start,
            send_at_hour=edit.send_at_hour,
            approval_status=ApprovalStatus.PENDING,
            has_manual_edits=True,
            last_edited_at=now,
        )

    clone = models.CampaignEmail(
        sequence_index=index,
        subject=source.subject,
        html_body=source.html_body,
        text_body=source.text_body,
        days_after_start=source.days_after_start,
        send_at_hour=source.send_at_hour,
        approval_status=source.approval_status,
        approved_at=source.approved_at,
        rejection_reason=source.rejection_reason,
        original_subject=source.original_subject,
        original_html_body=source.original_html_body,
        original_text_body=source.original_text_body,
        has_manual_edits=source.has_manual_edits,
        last_edited_at=source.last_edited_at,
    )
    if edit is None:
        return clone

    if not clone.has_manual_edits:
        clone.original_subject = source.subject
        clone.original_html_body = source.html_body
        clone.original_text_body = source.text_body
    _apply_edit(clone, edit)
    clone.has_manual_edits = True
    clone.last_edited_at = now
    clone.approval_status = ApprovalStatus.PENDING
    clone.approved_at = None
    clone.rejection_reason = None
    return clone


def _apply_edit(email: models.CampaignEmail, edit: EmailEdit) -> None:
    if edit.subject is not None:
        email.subject = edit.subject
    if edit.html_body is not None:
        email.html_body = edit.html_body
    if edit.text_body is not None:
        email.text_body = edit.text_body
    if edit.days_after_start is not None:
        email.days_after_start = edit.days_after_start
    if edit.send_at_hour is not None:
        email.send_at_hour = edit.send_at_hour


def _require_mutable(db: Session, email: models.CampaignEmail) -> None:
    if not email.campaign.is_current_version:
        raise VersionRequiredError(email.id, "belongs to a superseded version")
    if has_deliveries(db, email.id):
        raise VersionRequiredError(email.id)


def edit_email(
    db: Session,
    email_id: int,
    *,
    subject: Optional[str] = None,
    html_body: Optional[str] = None,
    text_body: Optional[str] = None,
    days_after_start: Optional[int] = None,
    send_at_hour: Optional[int] = None,
    now: Optional[datetime] = None,
) -> models.CampaignEmail:
    """In-place edit, allowed only while no delivery references the email."""

    email = get_email(db, email_id)
    edit = EmailEdit(
        sequence_index=email.sequence_index,
        subject=subject,
        html_body=html_body,
        text_body=text_body,
        days_after_start=days_after_start,
        send_at_hour=send_at_hour,
    )
    _require_mutable(db, email)
    previous = _email_snapshot(email)
    if not email.has_manual_edits:
        email.original_subject = email.subject
        email.original_html_body = email.html_body
        email.original_text_body = email.text_body
    _apply_edit(email, edit)
    email.has_manual_edits = True
    email.last_edited_at = now or utcnow()
    email.approval_status = ApprovalStatus.PENDING
    email.approved_at = None
    db.flush()
    record_history(
        db,
        email.campaign,
        "EMAIL_EDITED",
        f"Email {email.sequence_index} edited in place",
        affected_email_id=email.id,
        previous_data=previous,
        new_data=_email_snapshot(email),
    )
    return email


def approve_email(db: Session, email_id: int, now: Optional[datetime] = None) -> models.CampaignEmail:
    email = get_email(db, email_id)
    _require_mutable(db, email)
    email.approval_status = ApprovalStatus.APPROVED
    email.approved_at = now or utcnow()
    email.rejection_reason = None
    db.flush()
    record_history(db, email.campaign, "EMAIL_APPROVED", f"Email {email.sequence_index} approved", affected_email_id=email.id)
    return email


def reject_email(db: Session, email_id: int, reason: Optional[str] = None) -> models.CampaignEmail:
    email = get_email(db, email_id)
    _require_mutable(db, email)
    email.approval_status = ApprovalStatus.REJECTED
    email.approved_at = None
    email.rejection_reason = reason
    db.flush()
    record_history(
        db,
        email.campaign,
        "EMAIL_REJECTED",
        f"Email {email.sequence_index} rejected: {reason or 'no reason given'}",
        affected_email_id=email.id,
    )
    return email


def _transition(db: Session, campaign: models.Campaign, target: CampaignStatus) -> models.Campaign:
    current = CampaignStatus(campaign.status)
    if target not in _TRANSITIONS.get(current, set()):
        raise InvalidTransitionError("Campaign", current, target)
    previous = _snapshot(campaign)
    campaign.status = target
    db.flush()
    record_history(
        db,
        campaign,
        f"STATUS_{target}",
        f"Status changed from {current} to {target}",
        previous_data=previous,
        new_data=_snapshot(campaign),
    )
    logger.info("Campaign %s moved %s -> %s", campaign.id, current, target)
    return campaign


def approve_campaign(db: Session, campaign_id: int, now: Optional[datetime] = None) -> models.Campaign:
    campaign = get_campaign(db, campaign_id)
    emails = get_emails(db, campaign.id)
    validate_sequence(emails)
    if not any(email.is_approved for email in emails):
        raise DataIntegrityViolation(f"Campaign {campaign.id} has no approved emails")
    _transition(db, campaign, CampaignStatus.APPROVED)
    campaign.approved_at = now or utcnow()
    return campaign


def activate_campaign(db: Session, campaign_id: int) -> models.Campaign:
    campaign = get_campaign(db, campaign_id)
    if not campaign.is_current_version:
        raise ConflictError(f"Campaign {campaign_id} has been superseded and cannot be activated")
    return _transition(db, campaign, CampaignStatus.ACTIVE)


def pause_campaign(db: Session, campaign_id: int) -> models.Campaign:
    return _transition(db, get_campaign(db, campaign_id), CampaignStatus.PAUSED)
