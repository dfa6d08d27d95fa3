"""SQLAlchemy models for tenancy, agents, conversations, billing and campaigns.

Tenancy runs partner -> workspace -> department; users join partners and
workspaces through membership rows carrying a role.
"""

import secrets
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from control_plane.db.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _id_column() -> Mapped[UUID]:
    return mapped_column(Uuid, primary_key=True, default=uuid4)


def _created_at() -> Mapped[datetime]:
    return mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )


def _updated_at() -> Mapped[datetime]:
    return mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
    )


# =============================================================================
# Enums
# =============================================================================


class PlanTier(str, Enum):
    """Partner plan tiers."""

    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


class PartnerRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class WorkspaceRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    VIEWER = "viewer"


class AgentProvider(str, Enum):
    VAPI = "vapi"
    RETELL = "retell"


class SyncStatus(str, Enum):
    NOT_SYNCED = "not_synced"
    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


class ConversationStatus(str, Enum):
    INITIATED = "initiated"
    RINGING = "ringing"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    NO_ANSWER = "no_answer"
    BUSY = "busy"
    CANCELED = "canceled"


class CallDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class BillingType(str, Enum):
    """Plan billing model."""

    PREPAID = "prepaid"
    POSTPAID = "postpaid"


class DeductionSource(str, Enum):
    """Which balance a completed call was charged to."""

    POSTPAID = "postpaid"
    SUBSCRIPTION = "subscription"
    PARTNER = "partner"
    WORKSPACE = "workspace"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    PAUSED = "paused"


class CreditTransactionType(str, Enum):
    TOPUP = "topup"
    USAGE = "usage"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


class UsageEventStatus(str, Enum):
    """Stripe meter outbox status."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    RECONCILED = "reconciled"


class CampaignStatus(str, Enum):
    DRAFT = "draft"
    READY = "ready"
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RecipientStatus(str, Enum):
    PENDING = "pending"
    CALLING = "calling"
    COMPLETED = "completed"
    FAILED = "failed"


class CallOutcome(str, Enum):
    ANSWERED = "answered"
    VOICEMAIL = "voicemail"
    NO_ANSWER = "no_answer"
    BUSY = "busy"
    REJECTED = "rejected"
    INVALID_NUMBER = "invalid_number"
    NOT_CONNECTED = "not_connected"
    ERROR = "error"
    UNKNOWN = "unknown"


# =============================================================================
# Plan Configuration
# =============================================================================

PLAN_CONFIG: dict[PlanTier, dict[str, Any]] = {
    PlanTier.STARTER: {
        "name": "Starter",
        "price_dollars": 79,
        "monthly_minutes": 1000,
        "max_workspaces": 3,
    },
    PlanTier.PROFESSIONAL: {
        "name": "Professional",
        "price_dollars": 249,
        "monthly_minutes": 5000,
        "max_workspaces": 10,
    },
    PlanTier.ENTERPRISE: {
        "name": "Enterprise",
        "price_dollars": None,  # Custom pricing
        "monthly_minutes": 999999,
        "max_workspaces": None,
    },
}


# =============================================================================
# Users
# =============================================================================


class User(Base):
    """A person who can sign in; belongs to partners and workspaces."""

    __tablename__ = "users"

    id: Mapped[UUID] = _id_column()
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    password_hash: Mapped[str | None] = mapped_column(String(255))
    full_name: Mapped[str | None] = mapped_column(String(255))
    is_super_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()


# =============================================================================
# Partners
# =============================================================================


class Partner(Base):
    """White-label reseller owning workspaces."""

    __tablename__ = "partners"

    id: Mapped[UUID] = _id_column()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    plan_tier: Mapped[str] = mapped_column(String(20), default=PlanTier.STARTER)
    is_billing_exempt: Mapped[bool] = mapped_column(Boolean, default=False)
    # stripe_connect_account_id, stripe_meter_id, per_minute_rate_cents, ...
    settings: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    branding: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    @property
    def stripe_connect_account_id(self) -> str | None:
        return (self.settings or {}).get("stripe_connect_account_id") or None


class PartnerMember(Base):
    __tablename__ = "partner_members"

    id: Mapped[UUID] = _id_column()
    partner_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("partners.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[str] = mapped_column(String(20), default=PartnerRole.MEMBER)
    created_at: Mapped[datetime] = _created_at()

    __table_args__ = (
        UniqueConstraint("partner_id", "user_id", name="uq_partner_members_pair"),
        Index("ix_partner_members_user_id", "user_id"),
    )


class PartnerInvitation(Base):
    """Pending invite for a user to join a partner team."""

    __tablename__ = "partner_invitations"

    id: Mapped[UUID] = _id_column()
    partner_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("partners.id", ondelete="CASCADE"), nullable=False
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(20), default=PartnerRole.MEMBER)
    token: Mapped[str] = mapped_column(
        String(64), unique=True, default=lambda: secrets.token_urlsafe(32)
    )
    invited_by: Mapped[UUID | None] = mapped_column(Uuid, ForeignKey("users.id"))
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: utcnow() + timedelta(days=7)
    )
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = _created_at()

    @property
    def is_expired(self) -> bool:
        return utcnow() > as_utc(self.expires_at)


class PartnerCredits(Base):
    """Partner prepaid balance, charged for billing-exempt workspaces."""

    __tablename__ = "partner_credits"

    id: Mapped[UUID] = _id_column()
    partner_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("partners.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    balance_cents: Mapped[int] = mapped_column(Integer, default=0)
    low_balance_threshold_cents: Mapped[int] = mapped_column(Integer, default=1000)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()


class PartnerCreditTransaction(Base):
    __tablename__ = "partner_credit_transactions"

    id: Mapped[UUID] = _id_column()
    partner_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("partners.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    conversation_id: Mapped[UUID | None] = mapped_column(Uuid)
    workspace_id: Mapped[UUID | None] = mapped_column(Uuid)
    created_at: Mapped[datetime] = _created_at()


class PartnerIntegration(Base):
    """Provider credentials (VAPI/Retell) owned by a partner."""

    __tablename__ = "partner_integrations"

    id: Mapped[UUID] = _id_column()
    partner_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("partners.id", ondelete="CASCADE"), nullable=False
    )
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str] = mapped_column(String(255), default="Default")
    # default_secret_key, default_public_key
    api_keys: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    # shared_outbound_phone_number, ...
    config: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = _created_at()


# =============================================================================
# Workspaces
# =============================================================================


class Workspace(Base):
    """A customer's isolated environment under a partner."""

    __tablename__ = "workspaces"

    id: Mapped[UUID] = _id_column()
    partner_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("partners.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")
    is_billing_exempt: Mapped[bool] = mapped_column(Boolean, default=False)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255))

    # Monthly usage counters
    current_month_minutes: Mapped[int] = mapped_column(Integer, default=0)
    current_month_cost: Mapped[Decimal] = mapped_column(
        Numeric(12, 4), default=Decimal("0")
    )
    last_usage_reset_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )

    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("partner_id", "slug", name="uq_workspaces_partner_slug"),
    )


class WorkspaceMember(Base):
    __tablename__ = "workspace_members"

    id: Mapped[UUID] = _id_column()
    workspace_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[str] = mapped_column(String(20), default=WorkspaceRole.MEMBER)
    created_at: Mapped[datetime] = _created_at()

    __table_args__ = (
        UniqueConstraint("workspace_id", "user_id", name="uq_workspace_members_pair"),
        Index("ix_workspace_members_user_id", "user_id"),
    )


class WorkspaceInvitation(Base):
    __tablename__ = "workspace_invitations"

    id: Mapped[UUID] = _id_column()
    workspace_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(20), default=WorkspaceRole.MEMBER)
    token: Mapped[str] = mapped_column(
        String(64), unique=True, default=lambda: secrets.token_urlsafe(32)
    )
    invited_by: Mapped[UUID | None] = mapped_column(Uuid, ForeignKey("users.id"))
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: utcnow() + timedelta(days=7)
    )
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = _created_at()

    @property
    def is_expired(self) -> bool:
        return utcnow() > as_utc(self.expires_at)


class WorkspaceIntegrationAssignment(Base):
    """Which partner integration a workspace uses for a provider."""

    __tablename__ = "workspace_integration_assignments"

    id: Mapped[UUID] = _id_column()
    workspace_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    partner_integration_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("partner_integrations.id", ondelete="CASCADE"), nullable=False
    )
    created_at: Mapped[datetime] = _created_at()

    __table_args__ = (
        UniqueConstraint(
            "workspace_id", "provider", name="uq_workspace_integration_provider"
        ),
    )


class Department(Base):
    __tablename__ = "departments"

    id: Mapped[UUID] = _id_column()
    workspace_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (Index("ix_departments_workspace_id", "workspace_id"),)


# =============================================================================
# Agents, Leads, Conversations
# =============================================================================


class AIAgent(Base):
    """Agent configuration mirrored onto a VAPI or Retell agent."""

    __tablename__ = "ai_agents"

    id: Mapped[UUID] = _id_column()
    workspace_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    department_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("departments.id", ondelete="SET NULL")
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    config: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Provider sync state
    external_agent_id: Mapped[str | None] = mapped_column(String(255))
    external_llm_id: Mapped[str | None] = mapped_column(String(255))
    external_phone_number: Mapped[str | None] = mapped_column(String(32))
    sync_status: Mapped[str] = mapped_column(String(20), default=SyncStatus.NOT_SYNCED)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_sync_error: Mapped[str | None] = mapped_column(Text)

    created_by: Mapped[UUID | None] = mapped_column(Uuid, ForeignKey("users.id"))
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_ai_agents_workspace_id", "workspace_id"),
        Index("ix_ai_agents_external_agent_id", "external_agent_id"),
    )

    @property
    def is_synced(self) -> bool:
        return self.sync_status == SyncStatus.SYNCED and bool(self.external_agent_id)


class Lead(Base):
    __tablename__ = "leads"

    id: Mapped[UUID] = _id_column()
    workspace_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    first_name: Mapped[str | None] = mapped_column(String(100))
    last_name: Mapped[str | None] = mapped_column(String(100))
    phone: Mapped[str | None] = mapped_column(String(32))
    email: Mapped[str | None] = mapped_column(String(255))
    company: Mapped[str | None] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(20), default="new")
    source: Mapped[str | None] = mapped_column(String(50))
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (Index("ix_leads_workspace_id", "workspace_id"),)


class Conversation(Base):
    """A single call handled by an agent."""

    __tablename__ = "conversations"

    id: Mapped[UUID] = _id_column()
    workspace_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    agent_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("ai_agents.id", ondelete="SET NULL")
    )
    lead_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("leads.id", ondelete="SET NULL")
    )
    external_id: Mapped[str | None] = mapped_column(String(255))
    direction: Mapped[str] = mapped_column(String(20), default=CallDirection.INBOUND)
    status: Mapped[str] = mapped_column(String(20), default=ConversationStatus.INITIATED)
    phone_number: Mapped[str | None] = mapped_column(String(32))
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    duration_seconds: Mapped[int] = mapped_column(Integer, default=0)
    transcript: Mapped[str | None] = mapped_column(Text)
    recording_url: Mapped[str | None] = mapped_column(Text)
    summary: Mapped[str | None] = mapped_column(Text)
    sentiment: Mapped[str | None] = mapped_column(String(20))

    # Billing; a positive total_cost means the call has been billed
    total_cost: Mapped[Decimal | None] = mapped_column(Numeric(12, 4))
    cost_breakdown: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)

    call_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    __table_args__ = (
        Index("ix_conversations_workspace_id", "workspace_id"),
        Index("ix_conversations_external_id", "external_id"),
    )


class UsageTracking(Base):
    """Per-call usage ledger row."""

    __tablename__ = "usage_tracking"

    id: Mapped[UUID] = _id_column()
    workspace_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    conversation_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("conversations.id", ondelete="SET NULL")
    )
    resource_type: Mapped[str] = mapped_column(String(50), default="voice_minutes")
    resource_provider: Mapped[str | None] = mapped_column(String(20))
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    cost_cents: Mapped[int] = mapped_column(Integer, default=0)
    billing_type: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = _created_at()


# =============================================================================
# Workspace Billing
# =============================================================================


class BillingPlan(Base):
    """A workspace plan offered by a partner."""

    __tablename__ = "billing_plans"

    id: Mapped[UUID] = _id_column()
    partner_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("partners.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    billing_type: Mapped[str] = mapped_column(String(20), default=BillingType.PREPAID)
    monthly_price_cents: Mapped[int] = mapped_column(Integer, default=0)
    included_minutes: Mapped[int] = mapped_column(Integer, default=0)
    overage_rate_cents: Mapped[int] = mapped_column(Integer, default=0)
    # Postpaid only; None means unlimited
    postpaid_minutes_limit: Mapped[int | None] = mapped_column(Integer)
    stripe_price_id: Mapped[str | None] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = _created_at()


class WorkspaceSubscription(Base):
    """A workspace's subscription to a partner billing plan."""

    __tablename__ = "workspace_subscriptions"

    id: Mapped[UUID] = _id_column()
    workspace_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("workspaces.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    plan_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("billing_plans.id"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(20), default=SubscriptionStatus.ACTIVE)

    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255))
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255))

    current_period_start: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Prepaid usage
    minutes_used_this_period: Mapped[int] = mapped_column(Integer, default=0)
    overage_charges_cents: Mapped[int] = mapped_column(Integer, default=0)
    # Postpaid usage
    postpaid_minutes_used: Mapped[int] = mapped_column(Integer, default=0)
    pending_invoice_amount_cents: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    __table_args__ = (
        Index("ix_workspace_subscriptions_stripe_id", "stripe_subscription_id"),
    )

    @property
    def is_active(self) -> bool:
        return self.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)


class WorkspaceCredits(Base):
    """Workspace prepaid balance."""

    __tablename__ = "workspace_credits"

    id: Mapped[UUID] = _id_column()
    workspace_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("workspaces.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    balance_cents: Mapped[int] = mapped_column(Integer, default=0)
    low_balance_threshold_cents: Mapped[int] = mapped_column(Integer, default=500)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()


class WorkspaceCreditTransaction(Base):
    __tablename__ = "workspace_credit_transactions"

    id: Mapped[UUID] = _id_column()
    workspace_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    conversation_id: Mapped[UUID | None] = mapped_column(Uuid)
    # Unique so a replayed webhook can't top up twice
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(
        String(255), unique=True
    )
    # Voided invoice or credit note a refund came from; unique for redeliveries
    stripe_refund_source_id: Mapped[str | None] = mapped_column(
        String(255), unique=True
    )
    created_at: Mapped[datetime] = _created_at()

    __table_args__ = (
        Index("ix_workspace_credit_transactions_workspace_id", "workspace_id"),
    )


class StripeUsageEvent(Base):
    """Outbox row for a Stripe meter event."""

    __tablename__ = "stripe_usage_events"

    id: Mapped[UUID] = _id_column()
    workspace_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    conversation_id: Mapped[UUID | None] = mapped_column(Uuid)
    minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255))
    stripe_account_id: Mapped[str | None] = mapped_column(String(255))
    event_timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    status: Mapped[str] = mapped_column(String(20), default=UsageEventStatus.PENDING)
    stripe_event_id: Mapped[str | None] = mapped_column(String(255))
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    __table_args__ = (
        Index("ix_stripe_usage_events_status", "status", "retry_count"),
        Index("ix_stripe_usage_events_workspace_id", "workspace_id"),
    )


# =============================================================================
# Campaigns
# =============================================================================


class CallCampaign(Base):
    """Outbound calling campaign over a recipient list."""

    __tablename__ = "call_campaigns"

    id: Mapped[UUID] = _id_column()
    workspace_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    agent_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("ai_agents.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default=CampaignStatus.DRAFT)

    total_recipients: Mapped[int] = mapped_column(Integer, default=0)
    pending_calls: Mapped[int] = mapped_column(Integer, default=0)
    completed_calls: Mapped[int] = mapped_column(Integer, default=0)
    successful_calls: Mapped[int] = mapped_column(Integer, default=0)
    failed_calls: Mapped[int] = mapped_column(Integer, default=0)

    # {"enabled": bool, "schedule": {"monday": [{"start": "09:00", "end": "17:00"}]}}
    business_hours_config: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")
    concurrency_limit: Mapped[int] = mapped_column(Integer, default=5)
    scheduled_start_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    scheduled_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_by: Mapped[UUID | None] = mapped_column(Uuid, ForeignKey("users.id"))
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (Index("ix_call_campaigns_workspace_id", "workspace_id"),)


class CallRecipient(Base):
    __tablename__ = "call_recipients"

    id: Mapped[UUID] = _id_column()
    campaign_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("call_campaigns.id", ondelete="CASCADE"), nullable=False
    )
    workspace_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    phone_number: Mapped[str] = mapped_column(String(32), nullable=False)
    first_name: Mapped[str | None] = mapped_column(String(100))
    last_name: Mapped[str | None] = mapped_column(String(100))
    email: Mapped[str | None] = mapped_column(String(255))
    company: Mapped[str | None] = mapped_column(String(255))

    call_status: Mapped[str] = mapped_column(String(20), default=RecipientStatus.PENDING)
    call_outcome: Mapped[str | None] = mapped_column(String(32))
    external_call_id: Mapped[str | None] = mapped_column(String(255))
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    call_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    call_ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    call_duration_seconds: Mapped[int | None] = mapped_column(Integer)
    last_error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = _updated_at()

    __table_args__ = (
        Index("ix_call_recipients_campaign_status", "campaign_id", "call_status"),
        Index("ix_call_recipients_external_call_id", "external_call_id"),
    )

    @property
    def full_name(self) -> str | None:
        name = " ".join(p for p in (self.first_name, self.last_name) if p)
        return name or None


# =============================================================================
# Audit
# =============================================================================


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[UUID] = _id_column()
    user_id: Mapped[UUID | None] = mapped_column(Uuid)
    partner_id: Mapped[UUID | None] = mapped_column(Uuid)
    workspace_id: Mapped[UUID | None] = mapped_column(Uuid)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[UUID | None] = mapped_column(Uuid)
    new_values: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = _created_at()

    __table_args__ = (Index("ix_audit_logs_workspace_id", "workspace_id"),)
