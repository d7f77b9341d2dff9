"""drip engine schema

Revision ID: 0001_drip_engine
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_drip_engine"
down_revision = None
branch_labels = None
depends_on = None

CURRENT_VERSION_WHERE = "is_current_version"
ROOT_DRAFT_WHERE = "status = 'DRAFT' AND parent_campaign_id IS NULL AND content_origin != 'MANUAL'"


def upgrade():
    op.create_table(
        "tenants",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("contact_email", sa.String(length=320), nullable=False),
        sa.Column("timezone", sa.String(length=64), nullable=False, server_default="America/New_York"),
        sa.Column("email_from_name", sa.String(length=255), nullable=True),
        sa.Column("email_from_addr", sa.String(length=320), nullable=True),
        sa.Column("brand_primary", sa.String(length=32), nullable=True),
        sa.Column("brand_secondary", sa.String(length=32), nullable=True),
        sa.Column("logo_url", sa.String(length=1024), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )
    op.create_index("ix_tenants_id", "tenants", ["id"], unique=False)

    op.create_table(
        "stages",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("project_type", sa.String(length=50), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("order_index", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_stages_tenant_id", "stages", ["tenant_id"], unique=False)

    op.create_table(
        "contacts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("first_name", sa.String(length=120), nullable=False),
        sa.Column("last_name", sa.String(length=120), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_contacts_tenant_id", "contacts", ["tenant_id"], unique=False)
    op.create_index("ix_contacts_email", "contacts", ["email"], unique=False)

    op.create_table(
        "projects",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("contact_id", sa.Integer(), nullable=False),
        sa.Column("project_type", sa.String(length=50), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("event_date", sa.DateTime(), nullable=True),
        sa.Column("stage_id", sa.Integer(), nullable=True),
        sa.Column("stage_entered_at", sa.DateTime(), nullable=True),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("email_opt_in", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("sms_opt_in", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"]),
        sa.ForeignKeyConstraint(["stage_id"], ["stages.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_projects_tenant_id", "projects", ["tenant_id"], unique=False)
    op.create_index("ix_projects_contact_id", "projects", ["contact_id"], unique=False)
    op.create_index("ix_projects_stage_id", "projects", ["stage_id"], unique=False)

    op.create_table(
        "templates",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("channel", sa.String(length=10), nullable=False),
        sa.Column("subject", sa.String(length=255), nullable=True),
        sa.Column("html_body", sa.Text(), nullable=True),
        sa.Column("text_body", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_templates_tenant_id", "templates", ["tenant_id"], unique=False)

    op.create_table(
        "drip_campaigns",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("project_type", sa.String(length=50), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("target_stage_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("content_origin", sa.String(length=20), nullable=False),
        sa.Column("frequency_days", sa.Integer(), nullable=False),
        sa.Column("max_duration_months", sa.Integer(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("lineage_key", sa.String(length=32), nullable=False),
        sa.Column("parent_campaign_id", sa.Integer(), nullable=True),
        sa.Column("is_current_version", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("version_notes", sa.Text(), nullable=True),
        sa.Column("approved_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.ForeignKeyConstraint(["target_stage_id"], ["stages.id"]),
        sa.ForeignKeyConstraint(["parent_campaign_id"], ["drip_campaigns.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_drip_campaigns_tenant_id", "drip_campaigns", ["tenant_id"], unique=False)
    op.create_index("ix_drip_campaigns_target_stage_id", "drip_campaigns", ["target_stage_id"], unique=False)
    op.create_index("ix_drip_campaigns_lineage_key", "drip_campaigns", ["lineage_key"], unique=False)
    op.create_index(
        "uq_drip_campaigns_current_version",
        "drip_campaigns",
        ["lineage_key"],
        unique=True,
        postgresql_where=sa.text(CURRENT_VERSION_WHERE),
        sqlite_where=sa.text(CURRENT_VERSION_WHERE),
    )
    op.create_index(
        "uq_drip_campaigns_root_draft",
        "drip_campaigns",
        ["tenant_id", "project_type", "content_origin"],
        unique=True,
        postgresql_where=sa.text(ROOT_DRAFT_WHERE),
        sqlite_where=sa.text(ROOT_DRAFT_WHERE),
    )

    op.create_table(
        "drip_campaign_emails",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("campaign_id", sa.Integer(), nullable=False),
        sa.Column("sequence_index", sa.Integer(), nullable=False),
        sa.Column("subject", sa.String(length=255), nullable=False),
        sa.Column("html_body", sa.Text(), nullable=False),
        sa.Column("text_body", sa.Text(), nullable=True),
        sa.Column("days_after_start", sa.Integer(), nullable=True),
        sa.Column("send_at_hour", sa.Integer(), nullable=True),
        sa.Column("approval_status", sa.String(length=20), nullable=False),
        sa.Column("approved_at", sa.DateTime(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("original_subject", sa.String(length=255), nullable=True),
        sa.Column("original_html_body", sa.Text(), nullable=True),
        sa.Column("original_text_body", sa.Text(), nullable=True),
        sa.Column("has_manual_edits", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_edited_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["campaign_id"], ["drip_campaigns.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("campaign_id", "sequence_index", name="uq_drip_email_campaign_index"),
    )
    op.create_index("ix_drip_campaign_emails_campaign_id", "drip_campaign_emails", ["campaign_id"], unique=False)

    op.create_table(
        "drip_campaign_version_history",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("campaign_id", sa.Integer(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("change_type", sa.String(length=50), nullable=False),
        sa.Column("change_description", sa.Text(), nullable=False),
        sa.Column("affected_email_id", sa.Integer(), nullable=True),
        sa.Column("previous_data", sa.Text(), nullable=True),
        sa.Column("new_data", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["campaign_id"], ["drip_campaigns.id"]),
        sa.ForeignKeyConstraint(["affected_email_id"], ["drip_campaign_emails.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_drip_campaign_version_history_campaign_id", "drip_campaign_version_history", ["campaign_id"], unique=False
    )

    op.create_table(
        "drip_subscriptions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("campaign_id", sa.Integer(), nullable=False),
        sa.Column("project_id", sa.Integer(), nullable=False),
        sa.Column("contact_id", sa.Integer(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("next_email_index", sa.Integer(), nullable=False),
        sa.Column("next_email_at", sa.DateTime(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("end_reason", sa.String(length=50), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("unsubscribed_at", sa.DateTime(), nullable=True),
        sa.Column("unsubscribe_token", sa.String(length=32), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["campaign_id"], ["drip_campaigns.id"]),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"]),
        sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("campaign_id", "project_id", name="uq_drip_subscription_campaign_project"),
        sa.UniqueConstraint("unsubscribe_token"),
    )
    op.create_index("ix_drip_subscriptions_campaign_id", "drip_subscriptions", ["campaign_id"], unique=False)
    op.create_index("ix_drip_subscriptions_project_id", "drip_subscriptions", ["project_id"], unique=False)
    op.create_index("ix_drip_subscriptions_due", "drip_subscriptions", ["status", "next_email_at"], unique=False)

    op.create_table(
        "drip_deliveries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("subscription_id", sa.Integer(), nullable=False),
        sa.Column("email_id", sa.Integer(), nullable=False),
        sa.Column("project_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("provider_id", sa.String(length=255), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False),
        sa.Column("last_attempt_at", sa.DateTime(), nullable=True),
        sa.Column("last_error", sa.String(length=1024), nullable=True),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.Column("opened_at", sa.DateTime(), nullable=True),
        sa.Column("clicked_at", sa.DateTime(), nullable=True),
        sa.Column("bounced_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["subscription_id"], ["drip_subscriptions.id"]),
        sa.ForeignKeyConstraint(["email_id"], ["drip_campaign_emails.id"]),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("subscription_id", "email_id", name="uq_drip_delivery_subscription_email"),
    )
    op.create_index("ix_drip_deliveries_subscription_id", "drip_deliveries", ["subscription_id"], unique=False)
    op.create_index("ix_drip_deliveries_email_id", "drip_deliveries", ["email_id"], unique=False)
    op.create_index("ix_drip_deliveries_provider_id", "drip_deliveries", ["provider_id"], unique=False)

    op.create_table(
        "drip_delivery_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("delivery_id", sa.Integer(), nullable=True),
        sa.Column("provider_message_id", sa.String(length=255), nullable=True),
        sa.Column("sns_message_id", sa.String(length=255), nullable=True),
        sa.Column("event_type", sa.String(length=50), nullable=False),
        sa.Column("topic_arn", sa.String(length=512), nullable=True),
        sa.Column("received_at", sa.DateTime(), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("signature_verified", sa.Boolean(), nullable=True),
        sa.ForeignKeyConstraint(["delivery_id"], ["drip_deliveries.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_drip_delivery_events_delivery_id", "drip_delivery_events", ["delivery_id"], unique=False)
    op.create_index(
        "ix_drip_delivery_events_provider_message_id", "drip_delivery_events", ["provider_message_id"], unique=False
    )
    op.create_index("ix_drip_delivery_events_sns_message_id", "drip_delivery_events", ["sns_message_id"], unique=False)

    op.create_table(
        "automations",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("project_type", sa.String(length=50), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("automation_type", sa.String(length=20), nullable=False),
        sa.Column("channel", sa.String(length=10), nullable=True),
        sa.Column("stage_id", sa.Integer(), nullable=True),
        sa.Column("trigger_type", sa.String(length=50), nullable=True),
        sa.Column("target_stage_id", sa.Integer(), nullable=True),
        sa.Column("days_before", sa.Integer(), nullable=True),
        sa.Column("stage_condition_id", sa.Integer(), nullable=True),
        sa.Column("template_id", sa.Integer(), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.ForeignKeyConstraint(["stage_id"], ["stages.id"]),
        sa.ForeignKeyConstraint(["target_stage_id"], ["stages.id"]),
        sa.ForeignKeyConstraint(["stage_condition_id"], ["stages.id"]),
        sa.ForeignKeyConstraint(["template_id"], ["templates.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_automations_tenant_id", "automations", ["tenant_id"], unique=False)

    op.create_table(
        "automation_steps",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("automation_id", sa.Integer(), nullable=False),
        sa.Column("step_index", sa.Integer(), nullable=False),
        sa.Column("delay_minutes", sa.Integer(), nullable=False),
        sa.Column("template_id", sa.Integer(), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("quiet_hours_start", sa.Integer(), nullable=True),
        sa.Column("quiet_hours_end", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["automation_id"], ["automations.id"]),
        sa.ForeignKeyConstraint(["template_id"], ["templates.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_automation_steps_automation_id", "automation_steps", ["automation_id"], unique=False)

    op.create_table(
        "automation_executions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("project_id", sa.Integer(), nullable=False),
        sa.Column("automation_id", sa.Integer(), nullable=False),
        sa.Column("automation_type", sa.String(length=20), nullable=False),
        sa.Column("automation_step_id", sa.Integer(), nullable=True),
        sa.Column("trigger_type", sa.String(length=50), nullable=True),
        sa.Column("event_date", sa.Date(), nullable=True),
        sa.Column("days_before", sa.Integer(), nullable=True),
        sa.Column("channel", sa.String(length=10), nullable=True),
        sa.Column("executed_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"]),
        sa.ForeignKeyConstraint(["automation_id"], ["automations.id"]),
        sa.ForeignKeyConstraint(["automation_step_id"], ["automation_steps.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("project_id", "automation_step_id", name="uq_automation_exec_communication"),
        sa.UniqueConstraint("project_id", "automation_id", "trigger_type", name="uq_automation_exec_stage_change"),
        sa.UniqueConstraint(
            "project_id", "automation_id", "event_date", "days_before", name="uq_automation_exec_countdown"
        ),
    )
    op.create_index("ix_automation_executions_project_id", "automation_executions", ["project_id"], unique=False)
    op.create_index(
        "ix_automation_executions_automation_id", "automation_executions", ["automation_id"], unique=False
    )

    op.create_table(
        "message_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("project_id", sa.Integer(), nullable=False),
        sa.Column("automation_id", sa.Integer(), nullable=True),
        sa.Column("automation_step_id", sa.Integer(), nullable=True),
        sa.Column("channel", sa.String(length=10), nullable=False),
        sa.Column("recipient", sa.String(length=320), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("provider_id", sa.String(length=255), nullable=True),
        sa.Column("error", sa.String(length=1024), nullable=True),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"]),
        sa.ForeignKeyConstraint(["automation_id"], ["automations.id"]),
        sa.ForeignKeyConstraint(["automation_step_id"], ["automation_steps.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_message_logs_tenant_id", "message_logs", ["tenant_id"], unique=False)
    op.create_index("ix_message_logs_project_id", "message_logs", ["project_id"], unique=False)
    op.create_index("ix_message_logs_provider_id", "message_logs", ["provider_id"], unique=False)


def downgrade():
    for table in (
        "message_logs",
        "automation_executions",
        "automation_steps",
        "automations",
        "drip_delivery_events",
        "drip_deliveries",
        "drip_subscriptions",
        "drip_campaign_version_history",
        "drip_campaign_emails",
        "drip_campaigns",
        "templates",
        "projects",
        "contacts",
        "stages",
        "tenants",
    ):
        op.drop_table(table)
