"""Database models for the drip campaign and automation engine."""
from __future__ import annotations

import uuid
from enum import StrEnum

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    and_,
)
from sqlalchemy.orm import declarative_base, relationship

from dripline.db.types import UTCDateTime
from dripline.utils.datetime import utcnow

Base = declarative_base()


class CampaignStatus(StrEnum):
    DRAFT = "DRAFT"
    APPROVED = "APPROVED"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"


class ContentOrigin(StrEnum):
    STATIC = "STATIC"
    AI_GENERATED = "AI_GENERATED"
    MANUAL = "MANUAL"


class ApprovalStatus(StrEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class SubscriptionStatus(StrEnum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    UNSUBSCRIBED = "UNSUBSCRIBED"


class DeliveryStatus(StrEnum):
    PENDING = "PENDING"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    BOUNCED = "BOUNCED"
    FAILED = "FAILED"


class ProjectStatus(StrEnum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    ARCHIVED = "ARCHIVED"


class Channel(StrEnum):
    EMAIL = "EMAIL"
    SMS = "SMS"


class AutomationType(StrEnum):
    COMMUNICATION = "COMMUNICATION"
    STAGE_CHANGE = "STAGE_CHANGE"
    COUNTDOWN = "COUNTDOWN"


def _token() -> str:
    return uuid.uuid4().hex


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), unique=True, nullable=False)
    contact_email = Column(String(320), nullable=False)
    timezone = Column(String(64), nullable=False, default="America/New_York")
    email_from_name = Column(String(255), nullable=True)
    email_from_addr = Column(String(320), nullable=True)
    brand_primary = Column(String(32), nullable=True)
    brand_secondary = Column(String(32), nullable=True)
    logo_url = Column(String(1024), nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)

    stages = relationship("Stage", back_populates="tenant", cascade="all, delete-orphan")
    campaigns = relationship("Campaign", back_populates="tenant")
    projects = relationship("Project", back_populates="tenant")


class Stage(Base):
    __tablename__ = "stages"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    project_type = Column(String(50), nullable=False, default="WEDDING")
    name = Column(String(255), nullable=False)
    order_index = Column(Integer, nullable=False, default=0)

    tenant = relationship("Tenant", back_populates="stages")


class Contact(Base):
    __tablename__ = "contacts"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    first_name = Column(String(120), nullable=False)
    last_name = Column(String(120), nullable=False, default="")
    email = Column(String(320), nullable=True, index=True)
    phone = Column(String(32), nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Project(Base):
    """The subject of campaigns and automations: one contact's booking."""

    __tablename__ = "projects"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    contact_id = Column(Integer, ForeignKey("contacts.id"), nullable=False, index=True)
    project_type = Column(String(50), nullable=False, default="WEDDING")
    title = Column(String(255), nullable=False)
    event_date = Column(UTCDateTime, nullable=True)
    stage_id = Column(Integer, ForeignKey("stages.id"), nullable=True, index=True)
    stage_entered_at = Column(UTCDateTime, nullable=True)
    status = Column(String(50), nullable=False, default=ProjectStatus.ACTIVE)
    email_opt_in = Column(Boolean, nullable=False, default=True)
    sms_opt_in = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime, default=utcnow)

    tenant = relationship("Tenant", back_populates="projects")
    contact = relationship("Contact")
    stage = relationship("Stage")


class Template(Base):
    __tablename__ = "templates"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    channel = Column(String(10), nullable=False)
    subject = Column(String(255), nullable=True)
    html_body = Column(Text, nullable=True)
    text_body = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)


class Campaign(Base):
    __tablename__ = "drip_campaigns"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    project_type = Column(String(50), nullable=False, default="WEDDING")
    name = Column(String(255), nullable=False)
    target_stage_id = Column(Integer, ForeignKey("stages.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=CampaignStatus.DRAFT)
    content_origin = Column(String(20), nullable=False, default=ContentOrigin.MANUAL)
    frequency_days = Column(Integer, nullable=False, default=14)
    max_duration_months = Column(Integer, nullable=False, default=12)
    enabled = Column(Boolean, nullable=False, default=True)

    version = Column(Integer, nullable=False, default=1)
    lineage_key = Column(String(32), nullable=False, default=_token, index=True)
    parent_campaign_id = Column(Integer, ForeignKey("drip_campaigns.id"), nullable=True)
    is_current_version = Column(Boolean, nullable=False, default=True)
    version_notes = Column(Text, nullable=True)

    approved_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    tenant = relationship("Tenant", back_populates="campaigns")
    target_stage = relationship("Stage")
    parent = relationship("Campaign", remote_side=[id])
    emails = relationship(
        "CampaignEmail",
        back_populates="campaign",
        order_by="CampaignEmail.sequence_index",
        cascade="all, delete-orphan",
    )

    @property
    def frequency_weeks(self) -> int:
        """Display-only; days are the stored unit."""
        return -(-self.frequency_days // 7)


Index(
    "uq_drip_campaigns_current_version",
    Campaign.lineage_key,
    unique=True,
    postgresql_where=Campaign.is_current_version.is_(True),
    sqlite_where=Campaign.is_current_version.is_(True),
)

Index(
    "uq_drip_campaigns_root_draft",
    Campaign.tenant_id,
    Campaign.project_type,
    Campaign.content_origin,
    unique=True,
    postgresql_where=and_(
        Campaign.status == CampaignStatus.DRAFT.value,
        Campaign.parent_campaign_id.is_(None),
        Campaign.content_origin != ContentOrigin.MANUAL.value,
    ),
    sqlite_where=and_(
        Campaign.status == CampaignStatus.DRAFT.value,
        Campaign.parent_campaign_id.is_(None),
        Campaign.content_origin != ContentOrigin.MANUAL.value,
    ),
)


class CampaignEmail(Base):
    __tablename__ = "drip_campaign_emails"
    __table_args__ = (UniqueConstraint("campaign_id", "sequence_index", name="uq_drip_email_campaign_index"),)

    id = Column(Integer, primary_key=True)
    campaign_id = Column(Integer, ForeignKey("drip_campaigns.id"), nullable=False, index=True)
    sequence_index = Column(Integer, nullable=False)
    subject = Column(String(255), nullable=False)
    html_body = Column(Text, nullable=False)
    text_body = Column(Text, nullable=True)
    days_after_start = Column(Integer, nullable=True)
    send_at_hour = Column(Integer, nullable=True)

    approval_status = Column(String(20), nullable=False, default=ApprovalStatus.PENDING)
    approved_at = Column(UTCDateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)

    original_subject = Column(String(255), nullable=True)
    original_html_body = Column(Text, nullable=True)
    original_text_body = Column(Text, nullable=True)
    has_manual_edits = Column(Boolean, nullable=False, default=False)
    last_edited_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)

    campaign = relationship("Campaign", back_populates="emails")

    @property
    def is_approved(self) -> bool:
        return self.approval_status == ApprovalStatus.APPROVED


class CampaignVersionHistory(Base):
    __tablename__ = "drip_campaign_version_history"

    id = Column(Integer, primary_key=True)
    campaign_id = Column(Integer, ForeignKey("drip_campaigns.id"), nullable=False, index=True)
    version = Column(Integer, nullable=False)
    change_type = Column(String(50), nullable=False)
    change_description = Column(Text, nullable=False)
    affected_email_id = Column(Integer, ForeignKey("drip_campaign_emails.id"), nullable=True)
    previous_data = Column(Text, nullable=True)
    new_data = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)


class Subscription(Base):
    __tablename__ = "drip_subscriptions"
    __table_args__ = (
        UniqueConstraint("campaign_id", "project_id", name="uq_drip_subscription_campaign_project"),
        Index("ix_drip_subscriptions_due", "status", "next_email_at"),
    )

    id = Column(Integer, primary_key=True)
    campaign_id = Column(Integer, ForeignKey("drip_campaigns.id"), nullable=False, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    contact_id = Column(Integer, ForeignKey("contacts.id"), nullable=False)
    started_at = Column(UTCDateTime, nullable=False, default=utcnow)
    next_email_index = Column(Integer, nullable=False, default=0)
    next_email_at = Column(UTCDateTime, nullable=True)
    status = Column(String(20), nullable=False, default=SubscriptionStatus.ACTIVE)
    end_reason = Column(String(50), nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    unsubscribed_at = Column(UTCDateTime, nullable=True)
    unsubscribe_token = Column(String(32), nullable=False, unique=True, default=_token)
    row_version = Column(Integer, nullable=False)

    campaign = relationship("Campaign")
    project = relationship("Project")
    contact = relationship("Contact")
    deliveries = relationship("Delivery", back_populates="subscription")

    __mapper_args__ = {"version_id_col": row_version}


class Delivery(Base):
    __tablename__ = "drip_deliveries"
    __table_args__ = (UniqueConstraint("subscription_id", "email_id", name="uq_drip_delivery_subscription_email"),)

    id = Column(Integer, primary_key=True)
    subscription_id = Column(Integer, ForeignKey("drip_subscriptions.id"), nullable=False, index=True)
    email_id = Column(Integer, ForeignKey("drip_campaign_emails.id"), nullable=False, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    status = Column(String(20), nullable=False, default=DeliveryStatus.PENDING)
    provider_id = Column(String(255), nullable=True, index=True)
    attempt_count = Column(Integer, nullable=False, default=1)
    last_attempt_at = Column(UTCDateTime, nullable=True)
    last_error = Column(String(1024), nullable=True)
    sent_at = Column(UTCDateTime, nullable=True)
    opened_at = Column(UTCDateTime, nullable=True)
    clicked_at = Column(UTCDateTime, nullable=True)
    bounced_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    subscription = relationship("Subscription", back_populates="deliveries")
    email = relationship("CampaignEmail")


class DeliveryEvent(Base):
    """Raw transport callback, kept for audit whether or not it matched a delivery."""

    __tablename__ = "drip_delivery_events"

    id = Column(Integer, primary_key=True)
    delivery_id = Column(Integer, ForeignKey("drip_deliveries.id"), nullable=True, index=True)
    provider_message_id = Column(String(255), nullable=True, index=True)
    sns_message_id = Column(String(255), nullable=True, index=True)
    event_type = Column(String(50), nullable=False)
    topic_arn = Column(String(512), nullable=True)
    received_at = Column(UTCDateTime, default=utcnow)
    payload_json = Column(Text, nullable=False)
    signature_verified = Column(Boolean, nullable=True)


class Automation(Base):
    __tablename__ = "automations"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    project_type = Column(String(50), nullable=False, default="WEDDING")
    name = Column(String(255), nullable=False)
    automation_type = Column(String(20), nullable=False, default=AutomationType.COMMUNICATION)
    channel = Column(String(10), nullable=True)
    stage_id = Column(Integer, ForeignKey("stages.id"), nullable=True)
    trigger_type = Column(String(50), nullable=True)
    target_stage_id = Column(Integer, ForeignKey("stages.id"), nullable=True)
    days_before = Column(Integer, nullable=True)
    stage_condition_id = Column(Integer, ForeignKey("stages.id"), nullable=True)
    template_id = Column(Integer, ForeignKey("templates.id"), nullable=True)
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, default=utcnow)

    steps = relationship(
        "AutomationStep",
        back_populates="automation",
        order_by="AutomationStep.step_index",
        cascade="all, delete-orphan",
    )
    template = relationship("Template")


class AutomationStep(Base):
    __tablename__ = "automation_steps"

    id = Column(Integer, primary_key=True)
    automation_id = Column(Integer, ForeignKey("automations.id"), nullable=False, index=True)
    step_index = Column(Integer, nullable=False, default=0)
    delay_minutes = Column(Integer, nullable=False, default=0)
    template_id = Column(Integer, ForeignKey("templates.id"), nullable=True)
    enabled = Column(Boolean, nullable=False, default=True)
    quiet_hours_start = Column(Integer, nullable=True)
    quiet_hours_end = Column(Integer, nullable=True)

    automation = relationship("Automation", back_populates="steps")
    template = relationship("Template")


class AutomationExecution(Base):
    """Idempotency fence for automation firings. Insert-only."""

    __tablename__ = "automation_executions"
    __table_args__ = (
        UniqueConstraint("project_id", "automation_step_id", name="uq_automation_exec_communication"),
        UniqueConstraint("project_id", "automation_id", "trigger_type", name="uq_automation_exec_stage_change"),
        UniqueConstraint(
            "project_id", "automation_id", "event_date", "days_before", name="uq_automation_exec_countdown"
        ),
    )

    id = Column(Integer, primary_key=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    automation_id = Column(Integer, ForeignKey("automations.id"), nullable=False, index=True)
    automation_type = Column(String(20), nullable=False)
    automation_step_id = Column(Integer, ForeignKey("automation_steps.id"), nullable=True)
    trigger_type = Column(String(50), nullable=True)
    event_date = Column(Date, nullable=True)
    days_before = Column(Integer, nullable=True)
    channel = Column(String(10), nullable=True)
    executed_at = Column(UTCDateTime, default=utcnow)


class MessageLog(Base):
    """One row per automation message handed to a transport."""

    __tablename__ = "message_logs"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    automation_id = Column(Integer, ForeignKey("automations.id"), nullable=True)
    automation_step_id = Column(Integer, ForeignKey("automation_steps.id"), nullable=True)
    channel = Column(String(10), nullable=False)
    recipient = Column(String(320), nullable=False)
    status = Column(String(20), nullable=False)
    provider_id = Column(String(255), nullable=True, index=True)
    error = Column(String(1024), nullable=True)
    sent_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)
