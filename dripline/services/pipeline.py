"""Project stage moves and stage-driven campaign enrollment."""
from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from sqlalchemy import exists, select
from sqlalchemy.orm import Session

from dripline.core.exceptions import AlreadyEnrolledError, DataIntegrityViolation, NotFoundError
from dripline.db import models
from dripline.db.models import CampaignStatus, ProjectStatus
from dripline.services import subscriptions
from dripline.utils.datetime import local_date, utcnow
from dripline.utils.logger import logger


def event_date_key(event_date: datetime, timezone: str) -> date:
    """Calendar date of the project's event in the tenant's timezone."""

    return local_date(event_date, timezone)


def is_enrollable(project: models.Project) -> bool:
    contact = project.contact
    return (
        project.status == ProjectStatus.ACTIVE
        and bool(project.email_opt_in)
        and contact is not None
        and bool(contact.email)
    )


def campaigns_for_stage(db: Session, tenant_id: int, stage_id: int, project_type: str) -> list[models.Campaign]:
    """Campaigns that take new enrollments for a stage: current, active and enabled."""

    stmt = select(models.Campaign).where(
        models.Campaign.tenant_id == tenant_id,
        models.Campaign.target_stage_id == stage_id,
        models.Campaign.project_type == project_type,
        models.Campaign.status == CampaignStatus.ACTIVE,
        models.Campaign.is_current_version.is_(True),
        models.Campaign.enabled.is_(True),
    )
    return list(db.scalars(stmt))


def in_lineage(db: Session, lineage_key: str, project_id: int) -> bool:
    """Whether the project is subscribed to any version of the lineage."""

    stmt = select(
        exists().where(
            models.Subscription.campaign_id == models.Campaign.id,
            models.Campaign.lineage_key == lineage_key,
            models.Subscription.project_id == project_id,
        )
    )
    return bool(db.scalar(stmt))


def enroll_project_for_stage(
    db: Session,
    project: models.Project,
    now: Optional[datetime] = None,
) -> list[models.Subscription]:
    if project.stage_id is None or not is_enrollable(project):
        return []
    enrolled = []
    for campaign in campaigns_for_stage(db, project.tenant_id, project.stage_id, project.project_type):
        if in_lineage(db, campaign.lineage_key, project.id):
            logger.debug("Project %s already follows lineage %s", project.id, campaign.lineage_key)
            continue
        try:
            enrolled.append(subscriptions.enroll(db, campaign.id, project.id, now))
        except AlreadyEnrolledError:
            logger.debug("Project %s already enrolled in campaign %s", project.id, campaign.id)
    return enrolled


def move_project_to_stage(
    db: Session,
    project: models.Project,
    stage_id: int,
    now: Optional[datetime] = None,
) -> list[models.Subscription]:
    """Move ``project`` into ``stage_id`` and enroll it in that stage's campaigns.

    The stage move is committed before enrolling so an enrollment conflict
    cannot roll it back. Returns the newly created subscriptions.
    """

    now = now or utcnow()
    stage = db.get(models.Stage, stage_id)
    if stage is None:
        raise NotFoundError("Stage", stage_id)
    if stage.tenant_id != project.tenant_id:
        raise DataIntegrityViolation(f"Stage {stage_id} does not belong to tenant {project.tenant_id}")

    previous = project.stage_id
    project.stage_id = stage.id
    project.stage_entered_at = now
    db.commit()
    logger.info("Project %s moved from stage %s to %s (tenant=%s)", project.id, previous, stage.id, project.tenant_id)
    return enroll_project_for_stage(db, project, now)


def enroll_stage_members(db: Session, campaign: models.Campaign, now: Optional[datetime] = None) -> int:
    """Enroll every eligible project already sitting in the campaign's stage."""

    if not (campaign.status == CampaignStatus.ACTIVE and campaign.is_current_version and campaign.enabled):
        return 0
    already = exists().where(
        models.Subscription.campaign_id == models.Campaign.id,
        models.Campaign.lineage_key == campaign.lineage_key,
        models.Subscription.project_id == models.Project.id,
    )
    stmt = (
        select(models.Project)
        .join(models.Contact, models.Contact.id == models.Project.contact_id)
        .where(
            models.Project.tenant_id == campaign.tenant_id,
            models.Project.stage_id == campaign.target_stage_id,
            models.Project.project_type == campaign.project_type,
            models.Project.status == ProjectStatus.ACTIVE,
            models.Project.email_opt_in.is_(True),
            models.Contact.email.is_not(None),
            ~already,
        )
        .order_by(models.Project.id)
    )
    count = 0
    for project in db.scalars(stmt).all():
        try:
            subscriptions.enroll(db, campaign.id, project.id, now)
            count += 1
        except AlreadyEnrolledError:
            continue
    if count:
        logger.info("Enrolled %s projects in campaign %s", count, campaign.id)
    return count
