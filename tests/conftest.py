"""Shared fixtures: SQLite sessions, a small tenant pipeline and fake transports."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from dripline.db import models
from dripline.db.models import ApprovalStatus, AutomationType, Channel
from dripline.services import campaign_store
from dripline.services.campaign_store import EmailDraft
from dripline.services.transport import SendResult, Transport

T0 = datetime(2026, 1, 5, 15, 0, tzinfo=UTC)


def _make_engine(url: str = "sqlite:///:memory:"):
    if url == "sqlite:///:memory:":
        engine = create_engine(
            url, future=True, connect_args={"check_same_thread": False}, poolclass=StaticPool
        )
    else:
        engine = create_engine(url, future=True)
    models.Base.metadata.create_all(bind=engine)
    return engine


def _make_db_session(url: str = "sqlite:///:memory:"):
    return sessionmaker(bind=_make_engine(url), expire_on_commit=False)()


class FakeTransport(Transport):
    """Records sends; raises queued exceptions first, one per call."""

    def __init__(self, channel: Channel = Channel.EMAIL, failures=None):
        self.channel = channel
        self.failures = list(failures or [])
        self.sent: list[dict] = []

    def send(self, *, to, subject, html_body, text_body, sender=None, reply_to=None):
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append(
            {
                "to": to,
                "subject": subject,
                "html_body": html_body,
                "text_body": text_body,
                "sender": sender,
                "reply_to": reply_to,
            }
        )
        return SendResult(provider_id=f"{self.channel.lower()}-msg-{len(self.sent)}")


@dataclass
class World:
    tenant: models.Tenant
    inquiry: models.Stage
    booked: models.Stage
    contact: models.Contact
    project: models.Project


def build_world(db, stage_entered_at=T0) -> World:
    tenant = models.Tenant(
        name="Golden Hour Studio",
        contact_email="owner@goldenhour.test",
        timezone="America/New_York",
        email_from_name="Golden Hour Studio",
        email_from_addr="hello@goldenhour.test",
    )
    db.add(tenant)
    db.flush()
    inquiry = models.Stage(tenant_id=tenant.id, name="Inquiry", order_index=0)
    booked = models.Stage(tenant_id=tenant.id, name="Booked", order_index=1)
    contact = models.Contact(
        tenant_id=tenant.id, first_name="Ada", last_name="Lovelace", email="ada@example.com", phone="+15550100"
    )
    db.add_all([inquiry, booked, contact])
    db.flush()
    project = models.Project(
        tenant_id=tenant.id,
        contact_id=contact.id,
        title="Ada & Charles",
        stage_id=inquiry.id,
        stage_entered_at=stage_entered_at,
        sms_opt_in=True,
    )
    db.add(project)
    db.commit()
    return World(tenant=tenant, inquiry=inquiry, booked=booked, contact=contact, project=project)


@pytest.fixture
def db():
    session = _make_db_session()
    yield session
    session.close()


@pytest.fixture
def world(db) -> World:
    return build_world(db)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def transports(transport):
    return {Channel.EMAIL: transport, Channel.SMS: FakeTransport(Channel.SMS)}


@pytest.fixture
def make_campaign(db, world):
    """Factory for campaigns targeting the Inquiry stage."""

    def factory(
        approvals=(ApprovalStatus.APPROVED,) * 3,
        frequency_days=7,
        activate=True,
        stage=None,
        subjects=None,
        **email_fields,
    ) -> models.Campaign:
        drafts = [
            EmailDraft(
                subject=(subjects[index] if subjects else f"Email {index} for {{{{ firstName }}}}"),
                html_body=f"<p>Body {index} for {{{{ firstName }}}}</p>",
                text_body=f"Body {index}",
                approval_status=status,
                **email_fields,
            )
            for index, status in enumerate(approvals)
        ]
        campaign = campaign_store.create_campaign(
            db,
            tenant_id=world.tenant.id,
            name="Inquiry nurture",
            target_stage_id=(stage or world.inquiry).id,
            emails=drafts,
            frequency_days=frequency_days,
            now=T0,
        )
        if activate:
            campaign_store.approve_campaign(db, campaign.id, now=T0)
            campaign_store.activate_campaign(db, campaign.id)
        db.commit()
        return campaign

    return factory


@pytest.fixture
def make_template(db, world):
    def factory(channel=Channel.EMAIL, subject="Hello {{ firstName }}", body="Hi {{ firstName }}") -> models.Template:
        template = models.Template(
            tenant_id=world.tenant.id,
            name=f"{channel} template",
            channel=channel,
            subject=subject,
            html_body=f"<p>{body}</p>",
            text_body=body,
        )
        db.add(template)
        db.commit()
        return template

    return factory


@pytest.fixture
def make_automation(db, world):
    def factory(automation_type=AutomationType.COMMUNICATION, steps=(), **fields) -> models.Automation:
        automation = models.Automation(
            tenant_id=world.tenant.id,
            name=f"{automation_type} automation",
            automation_type=automation_type,
            **fields,
        )
        automation.steps = [models.AutomationStep(step_index=index, **step) for index, step in enumerate(steps)]
        db.add(automation)
        db.commit()
        return automation

    return factory
