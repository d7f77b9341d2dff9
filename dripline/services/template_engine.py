"""Email rendering powered by Jinja2.

Tenant-authored subjects and bodies are rendered in a sandbox; the branded
HTML shell around them is a regular template on disk.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, select_autoescape
from jinja2.sandbox import SandboxedEnvironment

from dripline.core.config import settings
from dripline.db import models

TEMPLATE_DIR = Path(__file__).resolve().parents[1] / "templates"

_env = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=select_autoescape(["html", "xml"]),
)
_content_env = SandboxedEnvironment(autoescape=False)


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    html_body: str
    text_body: str


def render_string(source: str | None, variables: dict[str, Any]) -> str:
    """Render tenant content such as ``Hi {{ firstName }}``."""

    if not source:
        return ""
    return _content_env.from_string(source).render(**variables)


def render_template(template_name: str, **context: Any) -> str:
    """Render a template file with the provided context."""

    template = _env.get_template(template_name)
    return template.render(**context)


def build_variables(project: models.Project, tenant: models.Tenant, **extra: Any) -> dict[str, Any]:
    contact = project.contact
    event_date = project.event_date.strftime("%B %d, %Y") if project.event_date else "Not set"
    variables = {
        "firstName": contact.first_name,
        "lastName": contact.last_name,
        "fullName": contact.full_name,
        "email": contact.email or "",
        "phone": contact.phone or "",
        "businessName": tenant.name or "Your Photographer",
        "projectTitle": project.title,
        "eventDate": event_date,
        "weddingDate": event_date,
    }
    variables.update(extra)
    return variables


def unsubscribe_url(subscription: models.Subscription) -> str:
    base = settings.public_base_url.rstrip("/")
    return f"{base}/subscriptions/unsubscribe/{subscription.unsubscribe_token}"


def render_campaign_email(
    email: models.CampaignEmail,
    subscription: models.Subscription,
    project: models.Project,
    tenant: models.Tenant,
) -> RenderedMessage:
    """Produce the final subject/html/text for one drip email."""

    variables = build_variables(project, tenant, unsubscribeUrl=unsubscribe_url(subscription))
    content_html = render_string(email.html_body, variables)
    html_body = render_template(
        "drip_email.html",
        content=content_html,
        business_name=variables["businessName"],
        logo_url=tenant.logo_url,
        brand_primary=tenant.brand_primary or "#1f2937",
        brand_secondary=tenant.brand_secondary or "#f3f4f6",
        unsubscribe_url=variables["unsubscribeUrl"],
    )
    text_body = render_string(email.text_body, variables)
    if text_body:
        text_body = f"{text_body}\n\nUnsubscribe: {variables['unsubscribeUrl']}"
    return RenderedMessage(
        subject=render_string(email.subject, variables),
        html_body=html_body,
        text_body=text_body,
    )


def render_automation_message(template: models.Template, variables: dict[str, Any]) -> RenderedMessage:
    return RenderedMessage(
        subject=render_string(template.subject, variables),
        html_body=render_string(template.html_body, variables),
        text_body=render_string(template.text_body, variables),
    )


def sender_address(tenant: models.Tenant) -> str:
    """Tenant display name on the verified SES sender."""

    return f"{tenant.email_from_name or tenant.name} <{settings.ses_sender_email}>"
