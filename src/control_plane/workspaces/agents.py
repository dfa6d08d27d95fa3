"""Agent API routes.

Every create, update and delete is mirrored onto the provider through
``safe_sync``; the sync outcome is returned with the agent instead of
failing the request.
"""

import logging
from datetime import datetime
from typing import Any, Literal
from uuid import UUID

import httpx
from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.audit import record_audit
from control_plane.auth.context import WorkspaceContext, require_workspace_permission
from control_plane.auth.permissions import Permission
from control_plane.billing.credits import has_sufficient_credits
from control_plane.billing.usage import check_monthly_minutes_limit
from control_plane.campaigns.service import validate_phone_e164
from control_plane.db.database import get_db
from control_plane.db.models import (
    AgentProvider,
    AIAgent,
    CallDirection,
    Conversation,
    ConversationStatus,
    Department,
    utcnow,
)
from control_plane.errors import (
    AppError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)
from control_plane.integrations.base import get_provider_http_client
from control_plane.integrations.calls import place_outbound_call, resolve_outbound_caller
from control_plane.integrations.sync import (
    SyncOperation,
    SyncResult,
    check_vapi_webhook,
    get_provider_api_key,
    safe_sync,
)
from control_plane.integrations.vapi import VapiClient, vapi_sip_uri, vapi_webhook_url
from control_plane.pagination import PageParams, PaginationMeta, page_params, paginate

logger = logging.getLogger("control-plane.agents")

router = APIRouter(prefix="/w/{workspace_slug}/agents", tags=["Agents"])


# =============================================================================
# Request/Response Models
# =============================================================================


class AgentCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    provider: AgentProvider
    department_id: UUID | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    external_phone_number: str | None = None
    is_active: bool = True


class AgentUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = None
    department_id: UUID | None = None
    config: dict[str, Any] | None = None
    external_phone_number: str | None = None
    is_active: bool | None = None


class AgentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID
    department_id: UUID | None
    name: str
    description: str | None
    provider: str
    config: dict[str, Any]
    is_active: bool
    external_agent_id: str | None
    external_phone_number: str | None
    sync_status: str
    last_synced_at: datetime | None
    last_sync_error: str | None
    created_at: datetime
    updated_at: datetime


class AgentMutationResponse(BaseModel):
    agent: AgentResponse
    sync_success: bool
    sync_error: str | None = None


class AgentListResponse(BaseModel):
    data: list[AgentResponse]
    meta: PaginationMeta


class OutboundCallRequest(BaseModel):
    phone_number: str
    customer_name: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class OutboundCallResponse(BaseModel):
    conversation_id: UUID
    external_call_id: str | None
    status: str


class AgentWebhookStatus(BaseModel):
    agent_id: UUID
    name: str
    external_agent_id: str | None
    current_url: str | None = None
    needs_resync: bool
    error: str | None = None


class WebhookStatusResponse(BaseModel):
    expected_url: str
    agents: list[AgentWebhookStatus]
    needs_resync_count: int


class ResyncWebhooksRequest(BaseModel):
    agent_ids: list[UUID] | None = None
    # Push even when the provider already has the right URL
    force: bool = False


class ResyncOutcome(BaseModel):
    agent_id: UUID
    name: str
    status: Literal["resynced", "skipped", "failed"]
    previous_url: str | None = None
    error: str | None = None


class ResyncWebhooksResponse(BaseModel):
    resynced: int
    skipped: int
    failed: int
    results: list[ResyncOutcome]


class AvailablePhoneNumber(BaseModel):
    id: str
    number: str | None
    name: str | None
    status: str | None
    assistant_id: str | None
    is_assigned_to_this_agent: bool


class PhoneNumberStatus(BaseModel):
    current_phone_number: str | None
    phone_number_id: str | None
    is_assigned: bool
    available_numbers: list[AvailablePhoneNumber]
    can_provision: bool
    provider_status: str | None = None


class PhoneNumberProvisioned(BaseModel):
    phone_number_id: str
    phone_number: str | None
    sip_uri: str
    display_number: str
    status: str | None
    attached: bool


def _mutation_response(agent: AIAgent, result: SyncResult) -> AgentMutationResponse:
    return AgentMutationResponse(
        agent=AgentResponse.model_validate(agent),
        sync_success=result.success,
        sync_error=result.error,
    )


async def _get_agent(db: AsyncSession, ctx: WorkspaceContext, agent_id: UUID) -> AIAgent:
    agent = (
        await db.execute(
            select(AIAgent)
            .where(AIAgent.id == agent_id)
            .where(AIAgent.workspace_id == ctx.workspace.id)
            .where(AIAgent.deleted_at.is_(None))
        )
    ).scalar_one_or_none()
    if agent is None:
        raise NotFoundError("Agent")
    return agent


async def _check_department(db: AsyncSession, ctx: WorkspaceContext, department_id: UUID) -> None:
    department = await db.get(Department, department_id)
    if (
        department is None
        or department.workspace_id != ctx.workspace.id
        or department.deleted_at is not None
    ):
        raise NotFoundError("Department")


# =============================================================================
# Routes
# =============================================================================


@router.get("", response_model=AgentListResponse)
async def list_agents(
    provider: AgentProvider | None = Query(None),
    department_id: UUID | None = Query(None),
    params: PageParams = Depends(page_params),
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.AGENT_READ)),
    db: AsyncSession = Depends(get_db),
):
    query = (
        select(AIAgent)
        .where(AIAgent.workspace_id == ctx.workspace.id)
        .where(AIAgent.deleted_at.is_(None))
        .order_by(AIAgent.created_at.desc())
    )
    if provider is not None:
        query = query.where(AIAgent.provider == provider)
    if department_id is not None:
        query = query.where(AIAgent.department_id == department_id)
    agents, meta = await paginate(db, query, params)
    return AgentListResponse(data=[AgentResponse.model_validate(a) for a in agents], meta=meta)


@router.post("", response_model=AgentMutationResponse, status_code=status.HTTP_201_CREATED)
async def create_agent(
    request: AgentCreate,
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.AGENT_CREATE)),
    db: AsyncSession = Depends(get_db),
    http_client: httpx.AsyncClient | None = Depends(get_provider_http_client),
):
    """Create an agent and push it to its provider."""
    if request.department_id is not None:
        await _check_department(db, ctx, request.department_id)

    agent = AIAgent(
        workspace_id=ctx.workspace.id,
        department_id=request.department_id,
        name=request.name,
        description=request.description,
        provider=request.provider,
        config=request.config,
        external_phone_number=request.external_phone_number,
        is_active=request.is_active,
        created_by=ctx.user.id,
    )
    db.add(agent)
    await db.flush()

    result = await safe_sync(db, agent, SyncOperation.CREATE, http_client=http_client)
    await record_audit(
        db,
        action="agent.created",
        entity_type="agent",
        entity_id=agent.id,
        user_id=ctx.user.id,
        workspace_id=ctx.workspace.id,
        new_values={"name": agent.name, "provider": agent.provider},
    )
    await db.flush()
    await db.refresh(agent)
    return _mutation_response(agent, result)


# =============================================================================
# Webhook URLs
# =============================================================================


async def _vapi_agents(
    db: AsyncSession, ctx: WorkspaceContext, agent_ids: list[UUID] | None = None
) -> list[AIAgent]:
    query = (
        select(AIAgent)
        .where(AIAgent.workspace_id == ctx.workspace.id)
        .where(AIAgent.provider == AgentProvider.VAPI)
        .where(AIAgent.deleted_at.is_(None))
        .order_by(AIAgent.created_at)
    )
    if agent_ids:
        query = query.where(AIAgent.id.in_(agent_ids))
    return list((await db.execute(query)).scalars().all())


@router.get("/webhook-status", response_model=WebhookStatusResponse)
async def get_webhook_status(
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.AGENT_READ)),
    db: AsyncSession = Depends(get_db),
    http_client: httpx.AsyncClient | None = Depends(get_provider_http_client),
):
    """Compare each VAPI assistant's ``serverUrl`` with this deployment's webhook."""
    agents = await _vapi_agents(db, ctx)
    api_key = await get_provider_api_key(db, ctx.workspace.id, AgentProvider.VAPI)
    client = VapiClient(api_key, http_client=http_client) if api_key else None

    statuses = []
    for agent in agents:
        entry = AgentWebhookStatus(
            agent_id=agent.id,
            name=agent.name,
            external_agent_id=agent.external_agent_id,
            needs_resync=False,
        )
        if not agent.external_agent_id:
            entry.error = "Agent not synced to VAPI"
        elif client is None:
            entry.error = "No VAPI API key configured"
        else:
            check = await check_vapi_webhook(agent, client)
            entry.current_url = check.current_url
            entry.needs_resync = check.needs_resync
            entry.error = check.error
        statuses.append(entry)

    return WebhookStatusResponse(
        expected_url=vapi_webhook_url(),
        agents=statuses,
        needs_resync_count=sum(1 for s in statuses if s.needs_resync),
    )


@router.post("/resync-webhooks", response_model=ResyncWebhooksResponse)
async def resync_webhooks(
    request: ResyncWebhooksRequest | None = None,
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.WORKSPACE_UPDATE)),
    db: AsyncSession = Depends(get_db),
    http_client: httpx.AsyncClient | None = Depends(get_provider_http_client),
):
    """Push VAPI agents again so their webhooks point at this deployment.

    Agents whose provider copy already has the right URL are skipped
    unless ``force`` is set.

    Raises:
        ValidationError: If the workspace has no VAPI key assigned.
    """
    request = request or ResyncWebhooksRequest()
    agents = await _vapi_agents(db, ctx, request.agent_ids)
    if not agents:
        return ResyncWebhooksResponse(resynced=0, skipped=0, failed=0, results=[])

    api_key = await get_provider_api_key(db, ctx.workspace.id, AgentProvider.VAPI)
    if not api_key:
        raise ValidationError("No VAPI API key configured for this workspace")
    client = VapiClient(api_key, http_client=http_client)

    results = []
    for agent in agents:
        outcome = ResyncOutcome(agent_id=agent.id, name=agent.name, status="skipped")
        results.append(outcome)
        if not agent.external_agent_id:
            outcome.error = "Agent not synced to VAPI"
            continue
        if not request.force:
            check = await check_vapi_webhook(agent, client)
            outcome.previous_url = check.current_url
            if not check.needs_resync:
                continue

        result = await safe_sync(db, agent, SyncOperation.UPDATE, http_client=http_client)
        outcome.status = "resynced" if result.success else "failed"
        outcome.error = result.error

    resynced = [r for r in results if r.status == "resynced"]
    if resynced:
        await record_audit(
            db,
            action="agent.webhooks_resynced",
            entity_type="workspace",
            entity_id=ctx.workspace.id,
            user_id=ctx.user.id,
            workspace_id=ctx.workspace.id,
            new_values={"agent_ids": [str(r.agent_id) for r in resynced]},
        )
        await db.flush()
    logger.info(
        f"Webhook resync for workspace {ctx.workspace.id}: "
        f"{len(resynced)} of {len(results)} agents pushed"
    )
    return ResyncWebhooksResponse(
        resynced=len(resynced),
        skipped=sum(1 for r in results if r.status == "skipped"),
        failed=sum(1 for r in results if r.status == "failed"),
        results=results,
    )


@router.get("/{agent_id}", response_model=AgentResponse)
async def get_agent(
    agent_id: UUID,
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.AGENT_READ)),
    db: AsyncSession = Depends(get_db),
):
    return AgentResponse.model_validate(await _get_agent(db, ctx, agent_id))


@router.patch("/{agent_id}", response_model=AgentMutationResponse)
async def update_agent(
    agent_id: UUID,
    request: AgentUpdate,
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.AGENT_UPDATE)),
    db: AsyncSession = Depends(get_db),
    http_client: httpx.AsyncClient | None = Depends(get_provider_http_client),
):
    agent = await _get_agent(db, ctx, agent_id)
    changes = request.model_dump(exclude_unset=True)
    if changes.get("department_id") is not None:
        await _check_department(db, ctx, changes["department_id"])

    for key, value in changes.items():
        setattr(agent, key, value)
    await db.flush()

    result = await safe_sync(db, agent, SyncOperation.UPDATE, http_client=http_client)
    await record_audit(
        db,
        action="agent.updated",
        entity_type="agent",
        entity_id=agent.id,
        user_id=ctx.user.id,
        workspace_id=ctx.workspace.id,
        new_values={
            k: v
            for k, v in request.model_dump(mode="json", exclude_unset=True).items()
            if k != "config"
        },
    )
    await db.flush()
    await db.refresh(agent)
    return _mutation_response(agent, result)


@router.delete("/{agent_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_agent(
    agent_id: UUID,
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.AGENT_DELETE)),
    db: AsyncSession = Depends(get_db),
    http_client: httpx.AsyncClient | None = Depends(get_provider_http_client),
):
    """Soft-delete the agent and remove it from the provider.

    A provider failure is recorded on the row but doesn't block the delete.
    """
    agent = await _get_agent(db, ctx, agent_id)
    result = await safe_sync(db, agent, SyncOperation.DELETE, http_client=http_client)
    if not result.success:
        logger.warning(f"Provider delete failed for agent {agent.id}: {result.error}")

    agent.deleted_at = utcnow()
    agent.is_active = False
    await record_audit(
        db,
        action="agent.deleted",
        entity_type="agent",
        entity_id=agent.id,
        user_id=ctx.user.id,
        workspace_id=ctx.workspace.id,
    )
    await db.flush()


@router.post(
    "/{agent_id}/outbound-call",
    response_model=OutboundCallResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_outbound_call(
    agent_id: UUID,
    request: OutboundCallRequest,
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.CALL_CREATE)),
    db: AsyncSession = Depends(get_db),
    http_client: httpx.AsyncClient | None = Depends(get_provider_http_client),
):
    """Place a single test call with the agent."""
    if not validate_phone_e164(request.phone_number):
        raise ValidationError(
            "Phone must be in E.164 format (e.g., +14155551234)",
            details={"phone_number": request.phone_number},
        )

    agent = await _get_agent(db, ctx, agent_id)
    if not agent.is_active:
        raise ValidationError("Agent is not active")
    if not agent.external_agent_id:
        raise ValidationError("Agent has not been synced with the voice provider")

    limit = await check_monthly_minutes_limit(db, ctx.workspace.id)
    if not limit.allowed:
        raise ValidationError(
            f"Monthly minutes limit reached ({limit.limit} minutes)",
            details={"limit": limit.limit, "current_usage": limit.current_usage},
        )
    if not await has_sufficient_credits(db, ctx.workspace.id, estimated_minutes=1):
        raise AppError("Insufficient credits to place a call", "INSUFFICIENT_CREDITS", 402)

    caller = await resolve_outbound_caller(db, agent)
    if caller is None:
        raise ValidationError("No outbound phone number configured for the agent")

    dispatch = await place_outbound_call(
        agent,
        caller,
        request.phone_number,
        customer_name=request.customer_name,
        metadata={**request.metadata, "workspace_id": str(ctx.workspace.id)},
        http_client=http_client,
    )
    if not dispatch.success:
        raise ExternalServiceError(
            agent.provider.upper(), dispatch.error or "Call failed", dispatch.status_code
        )

    conversation = Conversation(
        workspace_id=ctx.workspace.id,
        agent_id=agent.id,
        external_id=dispatch.external_call_id,
        direction=CallDirection.OUTBOUND,
        status=ConversationStatus.INITIATED,
        phone_number=request.phone_number,
        started_at=utcnow(),
        call_metadata={"provider": agent.provider, "initiated_by": str(ctx.user.id)},
    )
    db.add(conversation)
    await db.flush()
    logger.info(f"Outbound call {dispatch.external_call_id} started by user {ctx.user.id}")

    return OutboundCallResponse(
        conversation_id=conversation.id,
        external_call_id=dispatch.external_call_id,
        status=conversation.status,
    )


# =============================================================================
# Phone Numbers (VAPI)
# =============================================================================


async def _get_vapi_agent(db: AsyncSession, ctx: WorkspaceContext, agent_id: UUID) -> AIAgent:
    agent = await _get_agent(db, ctx, agent_id)
    if agent.provider != AgentProvider.VAPI:
        raise ValidationError("Phone numbers are only supported for VAPI agents")
    return agent


@router.get("/{agent_id}/phone-number", response_model=PhoneNumberStatus)
async def get_phone_number(
    agent_id: UUID,
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.AGENT_READ)),
    db: AsyncSession = Depends(get_db),
    http_client: httpx.AsyncClient | None = Depends(get_provider_http_client),
):
    """Current assignment plus the numbers on the workspace's VAPI account."""
    agent = await _get_vapi_agent(db, ctx, agent_id)
    phone_number_id = (agent.config or {}).get("phone_number_id")
    current = agent.external_phone_number
    api_key = await get_provider_api_key(db, ctx.workspace.id, AgentProvider.VAPI)

    provider_status = None
    available: list[AvailablePhoneNumber] = []
    if api_key:
        client = VapiClient(api_key, http_client=http_client)
        if phone_number_id:
            response = await client.get_phone_number(phone_number_id)
            if response.success and response.data:
                provider_status = response.data.get("status")
                fetched = response.data.get("number") or vapi_sip_uri(response.data)
                if fetched != current:
                    agent.external_phone_number = current = fetched
                    await db.flush()

        listing = await client.list_phone_numbers()
        if listing.success:
            available = [
                AvailablePhoneNumber(
                    id=n["id"],
                    number=n.get("number") or n.get("sipUri"),
                    name=n.get("name"),
                    status=n.get("status"),
                    assistant_id=n.get("assistantId"),
                    is_assigned_to_this_agent=(
                        agent.external_agent_id is not None
                        and n.get("assistantId") == agent.external_agent_id
                    ),
                )
                for n in listing.data or []
            ]
    elif phone_number_id and not current:
        current = vapi_sip_uri({"id": phone_number_id})

    return PhoneNumberStatus(
        current_phone_number=current,
        phone_number_id=phone_number_id,
        is_assigned=bool(phone_number_id),
        available_numbers=available,
        can_provision=bool(api_key and agent.external_agent_id),
        provider_status=provider_status,
    )


@router.post(
    "/{agent_id}/phone-number",
    response_model=PhoneNumberProvisioned,
    status_code=status.HTTP_201_CREATED,
)
async def provision_phone_number(
    agent_id: UUID,
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.AGENT_UPDATE)),
    db: AsyncSession = Depends(get_db),
    http_client: httpx.AsyncClient | None = Depends(get_provider_http_client),
):
    """Provision a free VAPI number and attach it to the agent's assistant.

    The number becomes the agent's outbound caller ID.
    """
    agent = await _get_vapi_agent(db, ctx, agent_id)
    if not agent.external_agent_id:
        raise ValidationError("Agent must be synced with VAPI before assigning a phone number")
    if (agent.config or {}).get("phone_number_id"):
        raise ValidationError(
            "Agent already has a phone number assigned. Release it first to get a new one."
        )
    api_key = await get_provider_api_key(db, ctx.workspace.id, AgentProvider.VAPI)
    if not api_key:
        raise ValidationError("No VAPI API key configured for this workspace")

    client = VapiClient(api_key, http_client=http_client)
    created = await client.create_free_phone_number(name=f"Agent: {agent.name}")
    if not created.success or not created.data:
        raise ExternalServiceError(
            "VAPI", created.error or "Failed to provision phone number", created.status_code
        )

    number = created.data
    attach = await client.assign_phone_number(number["id"], agent.external_agent_id)
    if not attach.success:
        # The number exists either way; attaching can be retried from the provider
        logger.error(f"Phone number {number['id']} not attached to {agent.id}: {attach.error}")

    sip_uri = vapi_sip_uri(number)
    display = number.get("number") or sip_uri
    agent.config = {**(agent.config or {}), "phone_number_id": number["id"]}
    agent.external_phone_number = display
    await record_audit(
        db,
        action="agent.phone_number_provisioned",
        entity_type="agent",
        entity_id=agent.id,
        user_id=ctx.user.id,
        workspace_id=ctx.workspace.id,
        new_values={"phone_number_id": number["id"], "phone_number": display},
    )
    await db.flush()

    return PhoneNumberProvisioned(
        phone_number_id=number["id"],
        phone_number=number.get("number"),
        sip_uri=sip_uri,
        display_number=display,
        status=number.get("status"),
        attached=attach.success,
    )


@router.delete("/{agent_id}/phone-number", status_code=status.HTTP_204_NO_CONTENT)
async def release_phone_number(
    agent_id: UUID,
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.AGENT_UPDATE)),
    db: AsyncSession = Depends(get_db),
    http_client: httpx.AsyncClient | None = Depends(get_provider_http_client),
):
    """Detach the number from the agent; the number stays on the VAPI account."""
    agent = await _get_vapi_agent(db, ctx, agent_id)
    config = dict(agent.config or {})
    phone_number_id = config.pop("phone_number_id", None)
    if not phone_number_id:
        raise ValidationError("No phone number is assigned to this agent")

    api_key = await get_provider_api_key(db, ctx.workspace.id, AgentProvider.VAPI)
    if api_key:
        detach = await VapiClient(api_key, http_client=http_client).assign_phone_number(
            phone_number_id, None
        )
        if not detach.success:
            logger.warning(f"Could not detach {phone_number_id} on VAPI: {detach.error}")

    agent.config = config
    agent.external_phone_number = None
    await record_audit(
        db,
        action="agent.phone_number_released",
        entity_type="agent",
        entity_id=agent.id,
        user_id=ctx.user.id,
        workspace_id=ctx.workspace.id,
        new_values={"phone_number_id": phone_number_id},
    )
    await db.flush()
