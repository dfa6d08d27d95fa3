"""initial_schema

Revision ID: 8f2a61c0d4b7
Revises:
Create Date: 2026-10-12 09:41:13.502118

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "8f2a61c0d4b7"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _id() -> sa.Column:
    return sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True)


def _fk(name: str, target: str, nullable: bool = False, ondelete: str | None = "CASCADE"):
    return sa.Column(
        name,
        postgresql.UUID(as_uuid=True),
        sa.ForeignKey(target, ondelete=ondelete),
        nullable=nullable,
    )


def _timestamps(updated: bool = True) -> list[sa.Column]:
    columns = [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now())
    ]
    if updated:
        columns.append(
            sa.Column(
                "updated_at",
                sa.DateTime(timezone=True),
                server_default=sa.func.now(),
                onupdate=sa.func.now(),
            )
        )
    return columns


def upgrade() -> None:
    """Create initial database schema."""
    # Users table
    op.create_table(
        "users",
        _id(),
        sa.Column("email", sa.String(255), unique=True, nullable=False),
        sa.Column("password_hash", sa.String(255)),
        sa.Column("full_name", sa.String(255)),
        sa.Column("is_super_admin", sa.Boolean, server_default=sa.false()),
        sa.Column("last_login_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )

    # Partners and their teams
    op.create_table(
        "partners",
        _id(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(100), unique=True, nullable=False),
        sa.Column("plan_tier", sa.String(20), server_default="starter"),
        sa.Column("is_billing_exempt", sa.Boolean, server_default=sa.false()),
        # stripe_connect_account_id, stripe_meter_id, per_minute_rate_cents
        sa.Column("settings", sa.JSON),
        sa.Column("branding", sa.JSON),
        *_timestamps(),
    )

    op.create_table(
        "partner_members",
        _id(),
        _fk("partner_id", "partners.id"),
        _fk("user_id", "users.id"),
        sa.Column("role", sa.String(20), server_default="member"),
        *_timestamps(updated=False),
        sa.UniqueConstraint("partner_id", "user_id", name="uq_partner_members_pair"),
    )
    op.create_index("ix_partner_members_user_id", "partner_members", ["user_id"])

    op.create_table(
        "partner_invitations",
        _id(),
        _fk("partner_id", "partners.id"),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("role", sa.String(20), server_default="member"),
        sa.Column("token", sa.String(64), unique=True, nullable=False),
        _fk("invited_by", "users.id", nullable=True, ondelete=None),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("accepted_at", sa.DateTime(timezone=True)),
        *_timestamps(updated=False),
    )

    op.create_table(
        "partner_credits",
        _id(),
        sa.Column(
            "partner_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("partners.id", ondelete="CASCADE"),
            unique=True,
            nullable=False,
        ),
        sa.Column("balance_cents", sa.Integer, server_default="0"),
        sa.Column("low_balance_threshold_cents", sa.Integer, server_default="1000"),
        *_timestamps(),
    )

    op.create_table(
        "partner_credit_transactions",
        _id(),
        _fk("partner_id", "partners.id"),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("amount_cents", sa.Integer, nullable=False),
        sa.Column("balance_after_cents", sa.Integer, nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("conversation_id", postgresql.UUID(as_uuid=True)),
        sa.Column("workspace_id", postgresql.UUID(as_uuid=True)),
        *_timestamps(updated=False),
    )

    # Provider credentials
    op.create_table(
        "partner_integrations",
        _id(),
        _fk("partner_id", "partners.id"),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("name", sa.String(255), server_default="Default"),
        sa.Column("api_keys", sa.JSON),
        sa.Column("config", sa.JSON),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        *_timestamps(updated=False),
    )

    # Workspaces
    op.create_table(
        "workspaces",
        _id(),
        _fk("partner_id", "partners.id"),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(100), nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("timezone", sa.String(64), server_default="UTC"),
        sa.Column("is_billing_exempt", sa.Boolean, server_default=sa.false()),
        sa.Column("stripe_customer_id", sa.String(255)),
        # Monthly usage counters
        sa.Column("current_month_minutes", sa.Integer, server_default="0"),
        sa.Column("current_month_cost", sa.Numeric(12, 4), server_default="0"),
        sa.Column("last_usage_reset_at", sa.DateTime(timezone=True)),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("partner_id", "slug", name="uq_workspaces_partner_slug"),
    )

    op.create_table(
        "workspace_members",
        _id(),
        _fk("workspace_id", "workspaces.id"),
        _fk("user_id", "users.id"),
        sa.Column("role", sa.String(20), server_default="member"),
        *_timestamps(updated=False),
        sa.UniqueConstraint("workspace_id", "user_id", name="uq_workspace_members_pair"),
    )
    op.create_index("ix_workspace_members_user_id", "workspace_members", ["user_id"])

    op.create_table(
        "workspace_invitations",
        _id(),
        _fk("workspace_id", "workspaces.id"),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("role", sa.String(20), server_default="member"),
        sa.Column("token", sa.String(64), unique=True, nullable=False),
        _fk("invited_by", "users.id", nullable=True, ondelete=None),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("accepted_at", sa.DateTime(timezone=True)),
        *_timestamps(updated=False),
    )

    op.create_table(
        "workspace_integration_assignments",
        _id(),
        _fk("workspace_id", "workspaces.id"),
        sa.Column("provider", sa.String(20), nullable=False),
        _fk("partner_integration_id", "partner_integrations.id"),
        *_timestamps(updated=False),
        sa.UniqueConstraint(
            "workspace_id", "provider", name="uq_workspace_integration_provider"
        ),
    )

    op.create_table(
        "departments",
        _id(),
        _fk("workspace_id", "workspaces.id"),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(100), nullable=False),
        sa.Column("description", sa.Text),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_departments_workspace_id", "departments", ["workspace_id"])

    # Agents
    op.create_table(
        "ai_agents",
        _id(),
        _fk("workspace_id", "workspaces.id"),
        _fk("department_id", "departments.id", nullable=True, ondelete="SET NULL"),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("config", sa.JSON),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        # Provider sync state
        sa.Column("external_agent_id", sa.String(255)),
        sa.Column("external_llm_id", sa.String(255)),
        sa.Column("external_phone_number", sa.String(32)),
        sa.Column("sync_status", sa.String(20), server_default="not_synced"),
        sa.Column("last_synced_at", sa.DateTime(timezone=True)),
        sa.Column("last_sync_error", sa.Text),
        _fk("created_by", "users.id", nullable=True, ondelete=None),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_ai_agents_workspace_id", "ai_agents", ["workspace_id"])
    op.create_index("ix_ai_agents_external_agent_id", "ai_agents", ["external_agent_id"])

    op.create_table(
        "leads",
        _id(),
        _fk("workspace_id", "workspaces.id"),
        sa.Column("first_name", sa.String(100)),
        sa.Column("last_name", sa.String(100)),
        sa.Column("phone", sa.String(32)),
        sa.Column("email", sa.String(255)),
        sa.Column("company", sa.String(255)),
        sa.Column("status", sa.String(20), server_default="new"),
        sa.Column("source", sa.String(50)),
        sa.Column("notes", sa.Text),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_leads_workspace_id", "leads", ["workspace_id"])

    # Conversations
    op.create_table(
        "conversations",
        _id(),
        _fk("workspace_id", "workspaces.id"),
        _fk("agent_id", "ai_agents.id", nullable=True, ondelete="SET NULL"),
        _fk("lead_id", "leads.id", nullable=True, ondelete="SET NULL"),
        sa.Column("external_id", sa.String(255)),
        sa.Column("direction", sa.String(20), server_default="inbound"),
        sa.Column("status", sa.String(20), server_default="initiated"),
        sa.Column("phone_number", sa.String(32)),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("ended_at", sa.DateTime(timezone=True)),
        sa.Column("duration_seconds", sa.Integer, server_default="0"),
        sa.Column("transcript", sa.Text),
        sa.Column("recording_url", sa.Text),
        sa.Column("summary", sa.Text),
        sa.Column("sentiment", sa.String(20)),
        # Billing; set once the call has been charged
        sa.Column("total_cost", sa.Numeric(12, 4)),
        sa.Column("cost_breakdown", sa.JSON),
        sa.Column("metadata", sa.JSON),
        *_timestamps(),
    )
    op.create_index("ix_conversations_workspace_id", "conversations", ["workspace_id"])
    op.create_index("ix_conversations_external_id", "conversations", ["external_id"])

    op.create_table(
        "usage_tracking",
        _id(),
        _fk("workspace_id", "workspaces.id"),
        _fk("conversation_id", "conversations.id", nullable=True, ondelete="SET NULL"),
        sa.Column("resource_type", sa.String(50), server_default="voice_minutes"),
        sa.Column("resource_provider", sa.String(20)),
        sa.Column("quantity", sa.Integer, nullable=False),
        sa.Column("cost_cents", sa.Integer, server_default="0"),
        sa.Column("billing_type", sa.String(20), nullable=False),
        *_timestamps(updated=False),
    )

    # Workspace billing
    op.create_table(
        "billing_plans",
        _id(),
        _fk("partner_id", "partners.id"),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("billing_type", sa.String(20), server_default="prepaid"),
        sa.Column("monthly_price_cents", sa.Integer, server_default="0"),
        sa.Column("included_minutes", sa.Integer, server_default="0"),
        sa.Column("overage_rate_cents", sa.Integer, server_default="0"),
        sa.Column("postpaid_minutes_limit", sa.Integer),
        sa.Column("stripe_price_id", sa.String(255)),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        *_timestamps(updated=False),
    )

    op.create_table(
        "workspace_subscriptions",
        _id(),
        sa.Column(
            "workspace_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("workspaces.id", ondelete="CASCADE"),
            unique=True,
            nullable=False,
        ),
        _fk("plan_id", "billing_plans.id", ondelete=None),
        sa.Column("status", sa.String(20), server_default="active"),
        sa.Column("stripe_subscription_id", sa.String(255)),
        sa.Column("stripe_customer_id", sa.String(255)),
        sa.Column("current_period_start", sa.DateTime(timezone=True)),
        sa.Column("current_period_end", sa.DateTime(timezone=True)),
        sa.Column("cancel_at_period_end", sa.Boolean, server_default=sa.false()),
        sa.Column("canceled_at", sa.DateTime(timezone=True)),
        # Prepaid usage
        sa.Column("minutes_used_this_period", sa.Integer, server_default="0"),
        sa.Column("overage_charges_cents", sa.Integer, server_default="0"),
        # Postpaid usage
        sa.Column("postpaid_minutes_used", sa.Integer, server_default="0"),
        sa.Column("pending_invoice_amount_cents", sa.Integer, server_default="0"),
        *_timestamps(),
    )
    op.create_index(
        "ix_workspace_subscriptions_stripe_id",
        "workspace_subscriptions",
        ["stripe_subscription_id"],
    )

    op.create_table(
        "workspace_credits",
        _id(),
        sa.Column(
            "workspace_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("workspaces.id", ondelete="CASCADE"),
            unique=True,
            nullable=False,
        ),
        sa.Column("balance_cents", sa.Integer, server_default="0"),
        sa.Column("low_balance_threshold_cents", sa.Integer, server_default="500"),
        *_timestamps(),
    )

    op.create_table(
        "workspace_credit_transactions",
        _id(),
        _fk("workspace_id", "workspaces.id"),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("amount_cents", sa.Integer, nullable=False),
        sa.Column("balance_after_cents", sa.Integer, nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("conversation_id", postgresql.UUID(as_uuid=True)),
        # Unique so replayed top-up webhooks are ignored
        sa.Column("stripe_payment_intent_id", sa.String(255), unique=True),
        sa.Column("stripe_refund_source_id", sa.String(255), unique=True),
        *_timestamps(updated=False),
    )
    op.create_index(
        "ix_workspace_credit_transactions_workspace_id",
        "workspace_credit_transactions",
        ["workspace_id"],
    )

    # Meter event outbox
    op.create_table(
        "stripe_usage_events",
        _id(),
        _fk("workspace_id", "workspaces.id"),
        sa.Column("conversation_id", postgresql.UUID(as_uuid=True)),
        sa.Column("minutes", sa.Integer, nullable=False),
        sa.Column("stripe_customer_id", sa.String(255)),
        sa.Column("stripe_account_id", sa.String(255)),
        sa.Column("event_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), server_default="pending"),
        sa.Column("stripe_event_id", sa.String(255)),
        sa.Column("retry_count", sa.Integer, server_default="0"),
        sa.Column("error_message", sa.Text),
        *_timestamps(),
    )
    op.create_index(
        "ix_stripe_usage_events_status", "stripe_usage_events", ["status", "retry_count"]
    )
    op.create_index(
        "ix_stripe_usage_events_workspace_id", "stripe_usage_events", ["workspace_id"]
    )

    # Campaigns
    op.create_table(
        "call_campaigns",
        _id(),
        _fk("workspace_id", "workspaces.id"),
        _fk("agent_id", "ai_agents.id", ondelete=None),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("status", sa.String(20), server_default="draft"),
        sa.Column("total_recipients", sa.Integer, server_default="0"),
        sa.Column("pending_calls", sa.Integer, server_default="0"),
        sa.Column("completed_calls", sa.Integer, server_default="0"),
        sa.Column("successful_calls", sa.Integer, server_default="0"),
        sa.Column("failed_calls", sa.Integer, server_default="0"),
        sa.Column("business_hours_config", sa.JSON),
        sa.Column("timezone", sa.String(64), server_default="UTC"),
        sa.Column("concurrency_limit", sa.Integer, server_default="5"),
        sa.Column("scheduled_start_at", sa.DateTime(timezone=True)),
        sa.Column("scheduled_expires_at", sa.DateTime(timezone=True)),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        _fk("created_by", "users.id", nullable=True, ondelete=None),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_call_campaigns_workspace_id", "call_campaigns", ["workspace_id"])

    op.create_table(
        "call_recipients",
        _id(),
        _fk("campaign_id", "call_campaigns.id"),
        _fk("workspace_id", "workspaces.id"),
        sa.Column("phone_number", sa.String(32), nullable=False),
        sa.Column("first_name", sa.String(100)),
        sa.Column("last_name", sa.String(100)),
        sa.Column("email", sa.String(255)),
        sa.Column("company", sa.String(255)),
        sa.Column("call_status", sa.String(20), server_default="pending"),
        sa.Column("call_outcome", sa.String(32)),
        sa.Column("external_call_id", sa.String(255)),
        sa.Column("attempts", sa.Integer, server_default="0"),
        sa.Column("call_started_at", sa.DateTime(timezone=True)),
        sa.Column("call_ended_at", sa.DateTime(timezone=True)),
        sa.Column("call_duration_seconds", sa.Integer),
        sa.Column("last_error", sa.Text),
        *_timestamps(),
    )
    op.create_index(
        "ix_call_recipients_campaign_status",
        "call_recipients",
        ["campaign_id", "call_status"],
    )
    op.create_index(
        "ix_call_recipients_external_call_id", "call_recipients", ["external_call_id"]
    )

    # Audit trail
    op.create_table(
        "audit_logs",
        _id(),
        sa.Column("user_id", postgresql.UUID(as_uuid=True)),
        sa.Column("partner_id", postgresql.UUID(as_uuid=True)),
        sa.Column("workspace_id", postgresql.UUID(as_uuid=True)),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", postgresql.UUID(as_uuid=True)),
        sa.Column("new_values", sa.JSON),
        *_timestamps(updated=False),
    )
    op.create_index("ix_audit_logs_workspace_id", "audit_logs", ["workspace_id"])


def downgrade() -> None:
    """Drop all tables in reverse dependency order."""
    for table in (
        "audit_logs",
        "call_recipients",
        "call_campaigns",
        "stripe_usage_events",
        "workspace_credit_transactions",
        "workspace_credits",
        "workspace_subscriptions",
        "billing_plans",
        "usage_tracking",
        "conversations",
        "leads",
        "ai_agents",
        "departments",
        "workspace_integration_assignments",
        "workspace_invitations",
        "workspace_members",
        "workspaces",
        "partner_integrations",
        "partner_credit_transactions",
        "partner_credits",
        "partner_invitations",
        "partner_members",
        "partners",
        "users",
    ):
        op.drop_table(table)
