"""Conversation (call log) API routes. Read-only; rows come from webhooks."""

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.auth.context import WorkspaceContext, require_workspace_permission
from control_plane.auth.permissions import Permission
from control_plane.db.database import get_db
from control_plane.db.models import CallDirection, Conversation, ConversationStatus
from control_plane.errors import NotFoundError
from control_plane.pagination import PageParams, PaginationMeta, page_params, paginate

router = APIRouter(prefix="/w/{workspace_slug}/conversations", tags=["Conversations"])


class ConversationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    workspace_id: UUID
    agent_id: UUID | None
    lead_id: UUID | None
    external_id: str | None
    direction: str
    status: str
    phone_number: str | None
    started_at: datetime | None
    ended_at: datetime | None
    duration_seconds: int
    summary: str | None
    sentiment: str | None
    recording_url: str | None
    total_cost: Decimal | None
    cost_breakdown: dict[str, Any] | None
    metadata: dict[str, Any] | None = Field(None, validation_alias="call_metadata")
    created_at: datetime


class ConversationDetailResponse(ConversationResponse):
    transcript: str | None


class ConversationListResponse(BaseModel):
    data: list[ConversationResponse]
    meta: PaginationMeta


@router.get("", response_model=ConversationListResponse)
async def list_conversations(
    agent_id: UUID | None = Query(None),
    status_filter: ConversationStatus | None = Query(None, alias="status"),
    direction: CallDirection | None = Query(None),
    started_after: datetime | None = Query(None),
    started_before: datetime | None = Query(None),
    params: PageParams = Depends(page_params),
    ctx: WorkspaceContext = Depends(
        require_workspace_permission(Permission.CONVERSATION_READ)
    ),
    db: AsyncSession = Depends(get_db),
):
    """List calls, newest first, filtered by agent, status, direction or start time."""
    query = (
        select(Conversation)
        .where(Conversation.workspace_id == ctx.workspace.id)
        .order_by(Conversation.created_at.desc())
    )
    if agent_id is not None:
        query = query.where(Conversation.agent_id == agent_id)
    if status_filter is not None:
        query = query.where(Conversation.status == status_filter)
    if direction is not None:
        query = query.where(Conversation.direction == direction)
    if started_after is not None:
        query = query.where(Conversation.started_at >= started_after)
    if started_before is not None:
        query = query.where(Conversation.started_at <= started_before)

    conversations, meta = await paginate(db, query, params)
    return ConversationListResponse(
        data=[ConversationResponse.model_validate(c) for c in conversations], meta=meta
    )


@router.get("/{conversation_id}", response_model=ConversationDetailResponse)
async def get_conversation(
    conversation_id: UUID,
    ctx: WorkspaceContext = Depends(
        require_workspace_permission(Permission.CONVERSATION_READ)
    ),
    db: AsyncSession = Depends(get_db),
):
    conversation = (
        await db.execute(
            select(Conversation)
            .where(Conversation.id == conversation_id)
            .where(Conversation.workspace_id == ctx.workspace.id)
        )
    ).scalar_one_or_none()
    if conversation is None:
        raise NotFoundError("Conversation")
    return ConversationDetailResponse.model_validate(conversation)
