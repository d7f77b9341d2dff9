"""Built-in nurture sequences a tenant can start from without writing content."""
from __future__ import annotations

from sqlalchemy.orm import Session

from dripline.db import models
from dripline.db.models import ApprovalStatus, ContentOrigin
from dripline.services import campaign_store
from dripline.services.campaign_store import EmailDraft

WEDDING_SEQUENCE = [
    EmailDraft(
        subject="Thanks for reaching out, {{ firstName }}!",
        html_body=(
            "<p>Hi {{ firstName }},</p>"
            "<p>Thank you for getting in touch with {{ businessName }}. "
            "We would love to hear more about your plans for {{ weddingDate }}.</p>"
        ),
        text_body=(
            "Hi {{ firstName }},\n\nThank you for getting in touch with {{ businessName }}. "
            "We would love to hear more about your plans for {{ weddingDate }}."
        ),
        days_after_start=0,
    ),
    EmailDraft(
        subject="A few favourite moments from recent weddings",
        html_body=(
            "<p>Hi {{ firstName }},</p>"
            "<p>We put together some of our favourite moments from recent celebrations. "
            "Every wedding is different and we plan each one around the couple.</p>"
        ),
        text_body=(
            "Hi {{ firstName }},\n\nWe put together some of our favourite moments from recent celebrations. "
            "Every wedding is different and we plan each one around the couple."
        ),
    ),
    EmailDraft(
        subject="Questions couples ask us most",
        html_body=(
            "<p>Hi {{ firstName }},</p>"
            "<p>How long is the coverage? When do we get our gallery? Can we add an engagement session? "
            "Reply to this email and we will answer anything on your list.</p>"
        ),
        text_body=(
            "Hi {{ firstName }},\n\nHow long is the coverage? When do we get our gallery? "
            "Can we add an engagement session? Reply to this email and we will answer anything on your list."
        ),
    ),
    EmailDraft(
        subject="Is {{ weddingDate }} still open on your calendar?",
        html_body=(
            "<p>Hi {{ firstName }},</p>"
            "<p>Dates fill up quickly in wedding season. If you would like to hold {{ weddingDate }}, "
            "let us know and we will send over the details.</p>"
        ),
        text_body=(
            "Hi {{ firstName }},\n\nDates fill up quickly in wedding season. If you would like to hold "
            "{{ weddingDate }}, let us know and we will send over the details."
        ),
    ),
]

PORTRAIT_SEQUENCE = [
    EmailDraft(
        subject="Let's plan your session, {{ firstName }}",
        html_body=(
            "<p>Hi {{ firstName }},</p>"
            "<p>Thanks for your interest in a portrait session with {{ businessName }}. "
            "Tell us a little about what you have in mind.</p>"
        ),
        text_body=(
            "Hi {{ firstName }},\n\nThanks for your interest in a portrait session with {{ businessName }}. "
            "Tell us a little about what you have in mind."
        ),
        days_after_start=0,
    ),
    EmailDraft(
        subject="What to wear for your portraits",
        html_body=(
            "<p>Hi {{ firstName }},</p>"
            "<p>Solid colours and comfortable layers photograph best. "
            "Bring a second outfit if you would like some variety.</p>"
        ),
        text_body=(
            "Hi {{ firstName }},\n\nSolid colours and comfortable layers photograph best. "
            "Bring a second outfit if you would like some variety."
        ),
    ),
    EmailDraft(
        subject="Ready when you are",
        html_body=(
            "<p>Hi {{ firstName }},</p>"
            "<p>Whenever you are ready to pick a date, reply here and we will find a time that works.</p>"
        ),
        text_body=(
            "Hi {{ firstName }},\n\nWhenever you are ready to pick a date, reply here "
            "and we will find a time that works."
        ),
    ),
]

SEQUENCES = {
    "WEDDING": WEDDING_SEQUENCE,
    "PORTRAIT": PORTRAIT_SEQUENCE,
}


def get_or_create_static_draft(
    db: Session,
    tenant_id: int,
    project_type: str,
    target_stage_id: int,
    frequency_days: int = 7,
) -> tuple[models.Campaign, bool]:
    """Return the tenant's built-in draft for ``project_type``, creating it once."""

    try:
        sequence = SEQUENCES[project_type]
    except KeyError:
        raise ValueError(f"No built-in sequence for project type {project_type}") from None

    drafts = [
        EmailDraft(
            subject=draft.subject,
            html_body=draft.html_body,
            text_body=draft.text_body,
            days_after_start=draft.days_after_start,
            approval_status=ApprovalStatus.APPROVED,
        )
        for draft in sequence
    ]
    return campaign_store.get_or_create_draft(
        db,
        tenant_id=tenant_id,
        name=f"{project_type.title()} nurture sequence",
        target_stage_id=target_stage_id,
        emails=drafts,
        project_type=project_type,
        content_origin=ContentOrigin.STATIC,
        frequency_days=frequency_days,
    )
