"""Shared fixtures: in-memory database, app client, provider and Stripe fakes."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-that-is-32-bytes!")

from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID, uuid4

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from control_plane.auth.jwt import create_access_token
from control_plane.billing.stripe_client import StripeConnectClient, get_stripe_client
from control_plane.config import Settings, get_settings
from control_plane.db.database import Base, build_engine, get_db
from control_plane.db.models import (
    AgentProvider,
    AIAgent,
    BillingPlan,
    BillingType,
    CallCampaign,
    CallRecipient,
    CampaignStatus,
    Conversation,
    ConversationStatus,
    Partner,
    PartnerCredits,
    PartnerIntegration,
    PartnerMember,
    PartnerRole,
    SubscriptionStatus,
    SyncStatus,
    User,
    Workspace,
    WorkspaceCredits,
    WorkspaceIntegrationAssignment,
    WorkspaceMember,
    WorkspaceRole,
    WorkspaceSubscription,
    utcnow,
)
from control_plane.email import EmailSender, get_email_sender
from control_plane.integrations.base import get_provider_http_client
from control_plane.main import create_app

# =============================================================================
# Database
# =============================================================================


@pytest.fixture
async def engine():
    """Fresh in-memory SQLite database per test."""
    engine = build_engine("sqlite://")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db(engine) -> AsyncSession:
    """Session shared by the test body and the app under test."""
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session


# =============================================================================
# External Services
# =============================================================================


@pytest.fixture
def settings() -> Settings:
    """Settings the app sees; tests flip fields directly."""
    return Settings(
        app_env="test",
        cron_secret="",
        enable_stripe_metered_billing=False,
        public_api_url="https://api.test",
    )


@pytest.fixture
def stripe_client() -> MagicMock:
    """Stripe Connect client that never leaves the process."""
    client = MagicMock(spec=StripeConnectClient)
    client.create_customer.return_value = "cus_test123"
    client.create_meter_event.return_value = "evt_test"
    client.create_topup_payment_intent.return_value = {
        "payment_intent_id": "pi_test123",
        "client_secret": "pi_test123_secret",
    }
    client.credit_customer_balance.return_value = 5000
    client.get_customer_balance.return_value = 5000
    return client


@pytest.fixture
def email_sender() -> MagicMock:
    sender = MagicMock(spec=EmailSender)
    sender.send_workspace_invitation = AsyncMock(return_value=True)
    sender.send_partner_invitation = AsyncMock(return_value=True)
    return sender


class ProviderStub:
    """Canned VAPI/Retell responses keyed by (method, path).

    A route body may be a callable taking the request. Unknown routes get
    a 404 so a missing stub shows up as a provider error, not a hang.
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], tuple[int, Any]] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, json: Any = None, status_code: int = 200) -> None:
        self.routes[(method.upper(), path)] = (status_code, json)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key not in self.routes:
            return httpx.Response(
                404, json={"message": f"No stub for {request.method} {request.url.path}"}
            )
        status_code, body = self.routes[key]
        if callable(body):
            body = body(request)
        return httpx.Response(status_code, json=body)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [
            r for r in self.requests if r.method == method.upper() and r.url.path == path
        ]


@pytest.fixture
def provider() -> ProviderStub:
    return ProviderStub()


@pytest.fixture
async def http_client(provider: ProviderStub):
    async with httpx.AsyncClient(transport=httpx.MockTransport(provider.handler)) as client:
        yield client


# =============================================================================
# App
# =============================================================================


@pytest.fixture
def app(db, settings, stripe_client, email_sender, http_client):
    """The real app with storage and third parties swapped for fakes."""
    application = create_app()

    async def override_get_db():
        try:
            yield db
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    application.dependency_overrides[get_db] = override_get_db
    application.dependency_overrides[get_settings] = lambda: settings
    application.dependency_overrides[get_stripe_client] = lambda: stripe_client
    application.dependency_overrides[get_email_sender] = lambda: email_sender
    application.dependency_overrides[get_provider_http_client] = lambda: http_client
    return application


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def auth_headers(user: User, partner_slug: str | None = None) -> dict[str, str]:
    headers = {"Authorization": f"Bearer {create_access_token(user.id)}"}
    if partner_slug:
        headers["X-Partner-Slug"] = partner_slug
    return headers


# =============================================================================
# Factories
# =============================================================================


class Factory:
    """Inserts rows with sensible defaults; every method flushes."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _add(self, obj):
        self.db.add(obj)
        await self.db.flush()
        return obj

    async def user(self, email: str | None = None, **kwargs) -> User:
        return await self._add(
            User(email=email or f"user-{uuid4().hex[:8]}@example.com", **kwargs)
        )

    async def partner(self, name: str = "Acme Voice", **kwargs) -> Partner:
        kwargs.setdefault("slug", f"acme-{uuid4().hex[:6]}")
        kwargs.setdefault("settings", {})
        return await self._add(Partner(name=name, **kwargs))

    async def workspace(self, partner: Partner, slug: str = "main", **kwargs) -> Workspace:
        kwargs.setdefault("name", slug.title())
        kwargs.setdefault("current_month_minutes", 0)
        kwargs.setdefault("current_month_cost", Decimal("0"))
        return await self._add(Workspace(partner_id=partner.id, slug=slug, **kwargs))

    async def partner_member(
        self, partner: Partner, user: User, role: PartnerRole = PartnerRole.MEMBER
    ) -> PartnerMember:
        return await self._add(PartnerMember(partner_id=partner.id, user_id=user.id, role=role))

    async def workspace_member(
        self, workspace: Workspace, user: User, role: WorkspaceRole = WorkspaceRole.MEMBER
    ) -> WorkspaceMember:
        return await self._add(
            WorkspaceMember(workspace_id=workspace.id, user_id=user.id, role=role)
        )

    async def workspace_credits(self, workspace: Workspace, balance_cents: int) -> WorkspaceCredits:
        return await self._add(
            WorkspaceCredits(workspace_id=workspace.id, balance_cents=balance_cents)
        )

    async def partner_credits(self, partner: Partner, balance_cents: int) -> PartnerCredits:
        return await self._add(PartnerCredits(partner_id=partner.id, balance_cents=balance_cents))

    async def integration(
        self,
        partner: Partner,
        workspace: Workspace,
        provider: AgentProvider = AgentProvider.VAPI,
        api_key: str | None = "sk_test_provider",
        config: dict[str, Any] | None = None,
    ) -> PartnerIntegration:
        """Partner integration plus its assignment to ``workspace``."""
        integration = await self._add(
            PartnerIntegration(
                partner_id=partner.id,
                provider=provider,
                api_keys={"default_secret_key": api_key} if api_key else {},
                config=config or {},
            )
        )
        await self._add(
            WorkspaceIntegrationAssignment(
                workspace_id=workspace.id,
                provider=provider,
                partner_integration_id=integration.id,
            )
        )
        return integration

    async def agent(
        self,
        workspace: Workspace,
        provider: AgentProvider = AgentProvider.VAPI,
        external_agent_id: str | None = "asst_123",
        **kwargs,
    ) -> AIAgent:
        kwargs.setdefault("name", "Sales Agent")
        kwargs.setdefault("config", {"system_prompt": "You are helpful."})
        kwargs.setdefault(
            "sync_status", SyncStatus.SYNCED if external_agent_id else SyncStatus.NOT_SYNCED
        )
        return await self._add(
            AIAgent(
                workspace_id=workspace.id,
                provider=provider,
                external_agent_id=external_agent_id,
                **kwargs,
            )
        )

    async def campaign(
        self,
        workspace: Workspace,
        agent: AIAgent,
        status: CampaignStatus = CampaignStatus.DRAFT,
        **kwargs,
    ) -> CallCampaign:
        kwargs.setdefault("name", "Spring Outreach")
        kwargs.setdefault("concurrency_limit", 5)
        kwargs.setdefault("total_recipients", 0)
        kwargs.setdefault("pending_calls", 0)
        return await self._add(
            CallCampaign(workspace_id=workspace.id, agent_id=agent.id, status=status, **kwargs)
        )

    async def recipients(
        self, campaign: CallCampaign, phones: list[str], **kwargs
    ) -> list[CallRecipient]:
        # Distinct timestamps keep dial order deterministic
        start = utcnow()
        rows = [
            CallRecipient(
                campaign_id=campaign.id,
                workspace_id=campaign.workspace_id,
                phone_number=phone,
                created_at=start + timedelta(milliseconds=i),
                **kwargs,
            )
            for i, phone in enumerate(phones)
        ]
        self.db.add_all(rows)
        campaign.total_recipients += len(rows)
        if kwargs.get("call_status", "pending") == "pending":
            campaign.pending_calls += len(rows)
        await self.db.flush()
        return rows

    async def conversation(
        self,
        workspace: Workspace,
        agent: AIAgent | None = None,
        external_id: str = "call_123",
        **kwargs,
    ) -> Conversation:
        kwargs.setdefault("status", ConversationStatus.IN_PROGRESS)
        return await self._add(
            Conversation(
                workspace_id=workspace.id,
                agent_id=agent.id if agent else None,
                external_id=external_id,
                **kwargs,
            )
        )

    async def plan(
        self,
        partner: Partner,
        billing_type: BillingType = BillingType.PREPAID,
        **kwargs,
    ) -> BillingPlan:
        kwargs.setdefault("name", f"{billing_type.value.title()} Plan")
        return await self._add(
            BillingPlan(partner_id=partner.id, billing_type=billing_type, **kwargs)
        )

    async def subscription(
        self,
        workspace: Workspace,
        plan: BillingPlan,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        **kwargs,
    ) -> WorkspaceSubscription:
        return await self._add(
            WorkspaceSubscription(
                workspace_id=workspace.id, plan_id=plan.id, status=status, **kwargs
            )
        )


@pytest.fixture
def make(db) -> Factory:
    return Factory(db)


@dataclass
class Tenant:
    """A partner owner with one workspace, committed and ready for requests.

    IDs are captured up front: a failed request rolls the shared session
    back, which expires the ORM objects.
    """

    user: User
    partner: Partner
    workspace: Workspace
    headers: dict[str, str]
    user_id: UUID
    partner_id: UUID
    workspace_id: UUID
    base: str


@pytest.fixture
async def tenant(db, make: Factory) -> Tenant:
    user = await make.user(email="owner@example.com", full_name="Olive Owner")
    partner = await make.partner()
    workspace = await make.workspace(partner)
    await make.partner_member(partner, user, PartnerRole.OWNER)
    await make.workspace_member(workspace, user, WorkspaceRole.OWNER)
    await make.workspace_credits(workspace, 0)
    await db.commit()
    return Tenant(
        user=user,
        partner=partner,
        workspace=workspace,
        headers=auth_headers(user),
        user_id=user.id,
        partner_id=partner.id,
        workspace_id=workspace.id,
        base=f"/w/{workspace.slug}",
    )


@pytest.fixture
def member_headers(db, make: Factory, tenant: Tenant) -> Callable:
    """Build headers for a new user holding ``role`` in the tenant workspace."""

    async def build(role: WorkspaceRole) -> dict[str, str]:
        user = await make.user()
        await make.workspace_member(tenant.workspace, user, role)
        await db.commit()
        return auth_headers(user)

    return build


@pytest.fixture
def headers_for() -> Callable[..., dict[str, str]]:
    return auth_headers
