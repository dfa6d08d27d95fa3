"""Lead API routes."""

import logging
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.audit import record_audit
from control_plane.auth.context import WorkspaceContext, require_workspace_permission
from control_plane.auth.permissions import Permission
from control_plane.campaigns.service import validate_phone_e164
from control_plane.db.database import get_db
from control_plane.db.models import Lead, utcnow
from control_plane.errors import NotFoundError
from control_plane.pagination import PageParams, PaginationMeta, page_params, paginate

logger = logging.getLogger("control-plane.leads")

router = APIRouter(prefix="/w/{workspace_slug}/leads", tags=["Leads"])

LEAD_STATUSES = ("new", "contacted", "qualified", "converted", "lost")


class LeadBase(BaseModel):
    first_name: str | None = Field(None, max_length=100)
    last_name: str | None = Field(None, max_length=100)
    phone: str | None = Field(None, max_length=32)
    email: EmailStr | None = None
    company: str | None = Field(None, max_length=255)
    source: str | None = Field(None, max_length=50)
    notes: str | None = None

    @field_validator("phone")
    @classmethod
    def phone_must_be_e164(cls, v: str | None) -> str | None:
        if v is not None and not validate_phone_e164(v):
            raise ValueError("Phone must be in E.164 format (e.g., +14155551234)")
        return v


class LeadCreate(LeadBase):
    status: str = "new"

    @field_validator("status")
    @classmethod
    def known_status(cls, v: str) -> str:
        if v not in LEAD_STATUSES:
            raise ValueError(f"Status must be one of: {', '.join(LEAD_STATUSES)}")
        return v


class LeadUpdate(LeadBase):
    status: str | None = None

    @field_validator("status")
    @classmethod
    def known_status(cls, v: str | None) -> str | None:
        if v is not None and v not in LEAD_STATUSES:
            raise ValueError(f"Status must be one of: {', '.join(LEAD_STATUSES)}")
        return v


class LeadResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID
    first_name: str | None
    last_name: str | None
    phone: str | None
    email: str | None
    company: str | None
    status: str
    source: str | None
    notes: str | None
    created_at: datetime
    updated_at: datetime


class LeadListResponse(BaseModel):
    data: list[LeadResponse]
    meta: PaginationMeta


async def _get_lead(db: AsyncSession, ctx: WorkspaceContext, lead_id: UUID) -> Lead:
    lead = (
        await db.execute(
            select(Lead)
            .where(Lead.id == lead_id)
            .where(Lead.workspace_id == ctx.workspace.id)
            .where(Lead.deleted_at.is_(None))
        )
    ).scalar_one_or_none()
    if lead is None:
        raise NotFoundError("Lead")
    return lead


@router.get("", response_model=LeadListResponse)
async def list_leads(
    search: str | None = Query(None, max_length=100),
    status_filter: str | None = Query(None, alias="status"),
    params: PageParams = Depends(page_params),
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.LEAD_READ)),
    db: AsyncSession = Depends(get_db),
):
    """List leads, newest first. ``search`` matches name, email, phone or company."""
    query = (
        select(Lead)
        .where(Lead.workspace_id == ctx.workspace.id)
        .where(Lead.deleted_at.is_(None))
        .order_by(Lead.created_at.desc())
    )
    if status_filter:
        query = query.where(Lead.status == status_filter)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.where(
            or_(
                Lead.first_name.ilike(pattern),
                Lead.last_name.ilike(pattern),
                Lead.email.ilike(pattern),
                Lead.phone.ilike(pattern),
                Lead.company.ilike(pattern),
            )
        )
    leads, meta = await paginate(db, query, params)
    return LeadListResponse(data=[LeadResponse.model_validate(lead) for lead in leads], meta=meta)


@router.post("", response_model=LeadResponse, status_code=status.HTTP_201_CREATED)
async def create_lead(
    request: LeadCreate,
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.LEAD_WRITE)),
    db: AsyncSession = Depends(get_db),
):
    lead = Lead(workspace_id=ctx.workspace.id, **request.model_dump())
    db.add(lead)
    await db.flush()
    await record_audit(
        db,
        action="lead.created",
        entity_type="lead",
        entity_id=lead.id,
        user_id=ctx.user.id,
        workspace_id=ctx.workspace.id,
    )
    await db.flush()
    await db.refresh(lead)
    return LeadResponse.model_validate(lead)


@router.get("/{lead_id}", response_model=LeadResponse)
async def get_lead(
    lead_id: UUID,
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.LEAD_READ)),
    db: AsyncSession = Depends(get_db),
):
    return LeadResponse.model_validate(await _get_lead(db, ctx, lead_id))


@router.patch("/{lead_id}", response_model=LeadResponse)
async def update_lead(
    lead_id: UUID,
    request: LeadUpdate,
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.LEAD_WRITE)),
    db: AsyncSession = Depends(get_db),
):
    lead = await _get_lead(db, ctx, lead_id)
    for key, value in request.model_dump(exclude_unset=True).items():
        setattr(lead, key, value)
    await db.flush()
    await db.refresh(lead)
    return LeadResponse.model_validate(lead)


@router.delete("/{lead_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_lead(
    lead_id: UUID,
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.LEAD_DELETE)),
    db: AsyncSession = Depends(get_db),
):
    lead = await _get_lead(db, ctx, lead_id)
    lead.deleted_at = utcnow()
    await record_audit(
        db,
        action="lead.deleted",
        entity_type="lead",
        entity_id=lead.id,
        user_id=ctx.user.id,
        workspace_id=ctx.workspace.id,
    )
    await db.flush()
