"""Campaign API routes.

Provides campaign CRUD, recipient import and start/pause controls under
``/w/{workspace_slug}/campaigns``.
"""

import logging
from datetime import datetime
from typing import Any
from uuid import UUID

import httpx
from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.audit import record_audit
from control_plane.auth.context import WorkspaceContext, require_workspace_permission
from control_plane.auth.permissions import Permission
from control_plane.campaigns.service import (
    NextCallsResult,
    add_recipients,
    pause_campaign,
    start_campaign,
)
from control_plane.db.database import get_db
from control_plane.db.models import AIAgent, CallCampaign, CallRecipient, CampaignStatus
from control_plane.errors import NotFoundError, ValidationError
from control_plane.integrations.base import get_provider_http_client
from control_plane.pagination import PageParams, PaginationMeta, page_params, paginate

logger = logging.getLogger("control-plane.campaigns")

router = APIRouter(prefix="/w/{workspace_slug}/campaigns", tags=["Campaigns"])


# =============================================================================
# Request/Response Models
# =============================================================================


class RecipientInput(BaseModel):
    phone_number: str = Field(..., min_length=1, max_length=32)
    first_name: str | None = Field(None, max_length=100)
    last_name: str | None = Field(None, max_length=100)
    email: str | None = Field(None, max_length=255)
    company: str | None = Field(None, max_length=255)


class CampaignCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    agent_id: UUID
    timezone: str = "UTC"
    business_hours_config: dict[str, Any] | None = None
    concurrency_limit: int = Field(5, ge=1, le=50)
    scheduled_start_at: datetime | None = None
    scheduled_expires_at: datetime | None = None
    recipients: list[RecipientInput] = Field(default_factory=list)


class RecipientsImport(BaseModel):
    recipients: list[RecipientInput]


class CampaignResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID
    agent_id: UUID
    name: str
    description: str | None
    status: str
    total_recipients: int
    pending_calls: int
    completed_calls: int
    successful_calls: int
    failed_calls: int
    business_hours_config: dict[str, Any] | None
    timezone: str
    concurrency_limit: int
    scheduled_start_at: datetime | None
    scheduled_expires_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime


class CampaignListResponse(BaseModel):
    data: list[CampaignResponse]
    meta: PaginationMeta


class RecipientResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    phone_number: str
    first_name: str | None
    last_name: str | None
    email: str | None
    company: str | None
    call_status: str
    call_outcome: str | None
    external_call_id: str | None
    attempts: int
    call_duration_seconds: int | None
    last_error: str | None


class RecipientListResponse(BaseModel):
    data: list[RecipientResponse]
    meta: PaginationMeta


class ImportResponse(BaseModel):
    added: int
    total_recipients: int


class CampaignActionResponse(BaseModel):
    campaign: CampaignResponse
    started: int = 0
    failed: int = 0
    remaining: int = 0
    concurrency_hit: bool = False
    outside_business_hours: bool = False
    errors: list[str] = Field(default_factory=list)


def _action_response(
    campaign: CallCampaign, result: NextCallsResult | None = None
) -> CampaignActionResponse:
    response = CampaignActionResponse(campaign=CampaignResponse.model_validate(campaign))
    if result is not None:
        response.started = result.started
        response.failed = result.failed
        response.remaining = result.remaining
        response.concurrency_hit = result.concurrency_hit
        response.outside_business_hours = result.outside_business_hours
        response.errors = result.errors
    return response


async def _get_campaign(db: AsyncSession, ctx: WorkspaceContext, campaign_id: UUID) -> CallCampaign:
    campaign = (
        await db.execute(
            select(CallCampaign)
            .where(CallCampaign.id == campaign_id)
            .where(CallCampaign.workspace_id == ctx.workspace.id)
            .where(CallCampaign.deleted_at.is_(None))
        )
    ).scalar_one_or_none()
    if campaign is None:
        raise NotFoundError("Campaign")
    return campaign


# =============================================================================
# Routes
# =============================================================================


@router.get("", response_model=CampaignListResponse)
async def list_campaigns(
    status_filter: str | None = Query(None, alias="status"),
    params: PageParams = Depends(page_params),
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.CAMPAIGN_READ)),
    db: AsyncSession = Depends(get_db),
):
    """List campaigns, newest first."""
    query = (
        select(CallCampaign)
        .where(CallCampaign.workspace_id == ctx.workspace.id)
        .where(CallCampaign.deleted_at.is_(None))
        .order_by(CallCampaign.created_at.desc())
    )
    if status_filter:
        query = query.where(CallCampaign.status == status_filter)
    campaigns, meta = await paginate(db, query, params)
    return CampaignListResponse(
        data=[CampaignResponse.model_validate(c) for c in campaigns], meta=meta
    )


@router.post("", response_model=CampaignResponse, status_code=status.HTTP_201_CREATED)
async def create_campaign(
    request: CampaignCreate,
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.CAMPAIGN_MANAGE)),
    db: AsyncSession = Depends(get_db),
):
    """Create a draft campaign, optionally importing recipients in the same call."""
    agent = (
        await db.execute(
            select(AIAgent)
            .where(AIAgent.id == request.agent_id)
            .where(AIAgent.workspace_id == ctx.workspace.id)
            .where(AIAgent.deleted_at.is_(None))
        )
    ).scalar_one_or_none()
    if agent is None:
        raise NotFoundError("Agent")

    if (
        request.scheduled_start_at
        and request.scheduled_expires_at
        and request.scheduled_expires_at <= request.scheduled_start_at
    ):
        raise ValidationError("scheduled_expires_at must be after scheduled_start_at")

    campaign = CallCampaign(
        workspace_id=ctx.workspace.id,
        agent_id=agent.id,
        name=request.name,
        description=request.description,
        status=CampaignStatus.DRAFT,
        timezone=request.timezone,
        business_hours_config=request.business_hours_config,
        concurrency_limit=request.concurrency_limit,
        scheduled_start_at=request.scheduled_start_at,
        scheduled_expires_at=request.scheduled_expires_at,
        total_recipients=0,
        pending_calls=0,
        created_by=ctx.user.id,
    )
    db.add(campaign)
    await db.flush()

    if request.recipients:
        await add_recipients(db, campaign, [r.model_dump() for r in request.recipients])

    await record_audit(
        db,
        action="campaign.created",
        entity_type="campaign",
        entity_id=campaign.id,
        user_id=ctx.user.id,
        workspace_id=ctx.workspace.id,
        new_values={"name": campaign.name, "recipients": campaign.total_recipients},
    )
    await db.flush()
    await db.refresh(campaign)
    logger.info(f"Campaign {campaign.id} created in workspace {ctx.workspace.id}")
    return CampaignResponse.model_validate(campaign)


@router.get("/{campaign_id}", response_model=CampaignResponse)
async def get_campaign(
    campaign_id: UUID,
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.CAMPAIGN_READ)),
    db: AsyncSession = Depends(get_db),
):
    return CampaignResponse.model_validate(await _get_campaign(db, ctx, campaign_id))


@router.get("/{campaign_id}/recipients", response_model=RecipientListResponse)
async def list_recipients(
    campaign_id: UUID,
    status_filter: str | None = Query(None, alias="status"),
    params: PageParams = Depends(page_params),
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.CAMPAIGN_READ)),
    db: AsyncSession = Depends(get_db),
):
    campaign = await _get_campaign(db, ctx, campaign_id)
    query = (
        select(CallRecipient)
        .where(CallRecipient.campaign_id == campaign.id)
        .order_by(CallRecipient.created_at, CallRecipient.id)
    )
    if status_filter:
        query = query.where(CallRecipient.call_status == status_filter)
    recipients, meta = await paginate(db, query, params)
    return RecipientListResponse(
        data=[RecipientResponse.model_validate(r) for r in recipients], meta=meta
    )


@router.post(
    "/{campaign_id}/recipients",
    response_model=ImportResponse,
    status_code=status.HTTP_201_CREATED,
)
async def import_recipients(
    campaign_id: UUID,
    request: RecipientsImport,
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.CAMPAIGN_MANAGE)),
    db: AsyncSession = Depends(get_db),
):
    """Bulk-import recipients. Numbers must be E.164 and unique within the import."""
    campaign = await _get_campaign(db, ctx, campaign_id)
    added = await add_recipients(db, campaign, [r.model_dump() for r in request.recipients])
    return ImportResponse(added=added, total_recipients=campaign.total_recipients)


@router.post("/{campaign_id}/start", response_model=CampaignActionResponse)
async def start(
    campaign_id: UUID,
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.CAMPAIGN_MANAGE)),
    db: AsyncSession = Depends(get_db),
    http_client: httpx.AsyncClient | None = Depends(get_provider_http_client),
):
    """Start (or resume) a campaign and dial the first batch."""
    campaign = await _get_campaign(db, ctx, campaign_id)
    result = await start_campaign(db, campaign, http_client=http_client)
    await record_audit(
        db,
        action="campaign.started",
        entity_type="campaign",
        entity_id=campaign.id,
        user_id=ctx.user.id,
        workspace_id=ctx.workspace.id,
    )
    await db.flush()
    await db.refresh(campaign)
    return _action_response(campaign, result)


@router.post("/{campaign_id}/pause", response_model=CampaignActionResponse)
async def pause(
    campaign_id: UUID,
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.CAMPAIGN_MANAGE)),
    db: AsyncSession = Depends(get_db),
):
    campaign = await _get_campaign(db, ctx, campaign_id)
    await pause_campaign(db, campaign)
    await record_audit(
        db,
        action="campaign.paused",
        entity_type="campaign",
        entity_id=campaign.id,
        user_id=ctx.user.id,
        workspace_id=ctx.workspace.id,
    )
    await db.flush()
    await db.refresh(campaign)
    return _action_response(campaign)
