"""Workspace settings API routes (the workspace record itself)."""

import logging
from datetime import datetime
from decimal import Decimal
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.audit import record_audit
from control_plane.auth.context import WorkspaceContext, require_workspace_permission
from control_plane.auth.permissions import Permission
from control_plane.db.database import get_db
from control_plane.db.models import utcnow

logger = logging.getLogger("control-plane.workspaces")

router = APIRouter(prefix="/w/{workspace_slug}/settings", tags=["Workspace Settings"])


class WorkspaceSettingsUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = Field(None, max_length=1000)
    timezone: str | None = None

    @field_validator("timezone")
    @classmethod
    def known_timezone(cls, value: str | None) -> str | None:
        if value is None:
            return value
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {value}") from None
        return value


class WorkspaceSettingsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    partner_id: UUID
    name: str
    slug: str
    description: str | None
    timezone: str
    is_billing_exempt: bool
    current_month_minutes: int
    current_month_cost: Decimal
    created_at: datetime
    updated_at: datetime


@router.get("", response_model=WorkspaceSettingsResponse)
async def get_workspace_settings(
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.WORKSPACE_READ)),
):
    return WorkspaceSettingsResponse.model_validate(ctx.workspace)


@router.patch("", response_model=WorkspaceSettingsResponse)
async def update_workspace_settings(
    request: WorkspaceSettingsUpdate,
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.WORKSPACE_UPDATE)),
    db: AsyncSession = Depends(get_db),
):
    """Rename the workspace or change its description or timezone.

    The slug never changes; ``description`` may be cleared with null.
    """
    changes = {
        key: value
        for key, value in request.model_dump(exclude_unset=True).items()
        if value is not None or key == "description"
    }
    workspace = ctx.workspace
    for key, value in changes.items():
        setattr(workspace, key, value)

    if changes:
        await record_audit(
            db,
            action="workspace.updated",
            entity_type="workspace",
            entity_id=workspace.id,
            user_id=ctx.user.id,
            workspace_id=workspace.id,
            partner_id=workspace.partner_id,
            new_values=changes,
        )
    await db.flush()
    await db.refresh(workspace)
    return WorkspaceSettingsResponse.model_validate(workspace)


@router.delete("", status_code=status.HTTP_204_NO_CONTENT)
async def delete_workspace(
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.WORKSPACE_DELETE)),
    db: AsyncSession = Depends(get_db),
):
    """Soft-delete the workspace; it disappears from every lookup by slug."""
    workspace = ctx.workspace
    workspace.deleted_at = utcnow()
    await record_audit(
        db,
        action="workspace.deleted",
        entity_type="workspace",
        entity_id=workspace.id,
        user_id=ctx.user.id,
        workspace_id=workspace.id,
        partner_id=workspace.partner_id,
    )
    await db.flush()
    logger.info(f"Workspace {workspace.slug} deleted by user {ctx.user.id}")
