"""Workspace member and invitation API routes."""

import logging
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.audit import record_audit
from control_plane.auth.context import WorkspaceContext, require_workspace_permission
from control_plane.auth.permissions import Permission
from control_plane.db.database import get_db
from control_plane.db.models import (
    User,
    WorkspaceInvitation,
    WorkspaceMember,
    WorkspaceRole,
    utcnow,
)
from control_plane.email import EmailSender, get_email_sender
from control_plane.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError

logger = logging.getLogger("control-plane.members")

router = APIRouter(prefix="/w/{workspace_slug}/members", tags=["Members"])


class MemberResponse(BaseModel):
    id: UUID
    user_id: UUID
    email: str
    full_name: str | None
    role: str
    joined_at: datetime


class MemberListResponse(BaseModel):
    data: list[MemberResponse]


class InviteRequest(BaseModel):
    email: EmailStr
    role: WorkspaceRole = WorkspaceRole.MEMBER
    message: str | None = Field(None, max_length=1000)


class InvitationResponse(BaseModel):
    id: UUID
    email: str
    role: str
    expires_at: datetime
    email_sent: bool = False


class RoleUpdate(BaseModel):
    role: WorkspaceRole


async def _owner_count(db: AsyncSession, workspace_id: UUID) -> int:
    return (
        await db.execute(
            select(func.count())
            .select_from(WorkspaceMember)
            .where(WorkspaceMember.workspace_id == workspace_id)
            .where(WorkspaceMember.role == WorkspaceRole.OWNER)
        )
    ).scalar_one()


async def _get_member(db: AsyncSession, ctx: WorkspaceContext, member_id: UUID) -> WorkspaceMember:
    member = await db.get(WorkspaceMember, member_id)
    if member is None or member.workspace_id != ctx.workspace.id:
        raise NotFoundError("Member")
    return member


@router.get("", response_model=MemberListResponse)
async def list_members(
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.MEMBER_READ)),
    db: AsyncSession = Depends(get_db),
):
    rows = (
        await db.execute(
            select(WorkspaceMember, User)
            .join(User, User.id == WorkspaceMember.user_id)
            .where(WorkspaceMember.workspace_id == ctx.workspace.id)
            .order_by(WorkspaceMember.created_at)
        )
    ).all()
    return MemberListResponse(
        data=[
            MemberResponse(
                id=member.id,
                user_id=user.id,
                email=user.email,
                full_name=user.full_name,
                role=member.role,
                joined_at=member.created_at,
            )
            for member, user in rows
        ]
    )


@router.post("/invite", response_model=InvitationResponse, status_code=status.HTTP_201_CREATED)
async def invite_member(
    request: InviteRequest,
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.MEMBER_INVITE)),
    db: AsyncSession = Depends(get_db),
    email_sender: EmailSender = Depends(get_email_sender),
):
    """Invite someone by email; the invitation is valid for 7 days."""
    if request.role == WorkspaceRole.OWNER and ctx.role != WorkspaceRole.OWNER:
        raise AuthorizationError("Only owners can invite owners")

    email = request.email.lower()
    already_member = (
        await db.execute(
            select(WorkspaceMember.id)
            .join(User, User.id == WorkspaceMember.user_id)
            .where(WorkspaceMember.workspace_id == ctx.workspace.id)
            .where(func.lower(User.email) == email)
        )
    ).first()
    if already_member is not None:
        raise ConflictError("User is already a member of this workspace")

    pending = (
        await db.execute(
            select(WorkspaceInvitation)
            .where(WorkspaceInvitation.workspace_id == ctx.workspace.id)
            .where(WorkspaceInvitation.email == email)
            .where(WorkspaceInvitation.accepted_at.is_(None))
        )
    ).scalars().all()
    if any(not invitation.is_expired for invitation in pending):
        raise ConflictError("An invitation is already pending for this email")

    invitation = WorkspaceInvitation(
        workspace_id=ctx.workspace.id,
        email=email,
        role=request.role,
        invited_by=ctx.user.id,
    )
    db.add(invitation)
    await db.flush()

    email_sent = await email_sender.send_workspace_invitation(
        to_email=email,
        workspace_name=ctx.workspace.name,
        inviter_name=ctx.user.full_name or ctx.user.email,
        role=request.role.value,
        token=invitation.token,
        message=request.message,
    )
    await record_audit(
        db,
        action="member.invited",
        entity_type="workspace_invitation",
        entity_id=invitation.id,
        user_id=ctx.user.id,
        workspace_id=ctx.workspace.id,
        new_values={"email": email, "role": request.role.value},
    )
    await db.flush()

    return InvitationResponse(
        id=invitation.id,
        email=invitation.email,
        role=invitation.role,
        expires_at=invitation.expires_at,
        email_sent=email_sent,
    )


@router.patch("/{member_id}", response_model=MemberResponse)
async def update_member_role(
    member_id: UUID,
    request: RoleUpdate,
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.MEMBER_MANAGE)),
    db: AsyncSession = Depends(get_db),
):
    member = await _get_member(db, ctx, member_id)
    touches_owner = WorkspaceRole.OWNER in (member.role, request.role)
    if touches_owner and ctx.role != WorkspaceRole.OWNER:
        raise AuthorizationError("Only owners can grant or revoke the owner role")
    if (
        member.role == WorkspaceRole.OWNER
        and request.role != WorkspaceRole.OWNER
        and await _owner_count(db, ctx.workspace.id) <= 1
    ):
        raise ValidationError("A workspace must keep at least one owner")

    member.role = request.role
    await record_audit(
        db,
        action="member.role_changed",
        entity_type="workspace_member",
        entity_id=member.id,
        user_id=ctx.user.id,
        workspace_id=ctx.workspace.id,
        new_values={"role": request.role.value},
    )
    await db.flush()

    user = await db.get(User, member.user_id)
    return MemberResponse(
        id=member.id,
        user_id=user.id,
        email=user.email,
        full_name=user.full_name,
        role=member.role,
        joined_at=member.created_at,
    )


@router.delete("/{member_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_member(
    member_id: UUID,
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.MEMBER_MANAGE)),
    db: AsyncSession = Depends(get_db),
):
    member = await _get_member(db, ctx, member_id)
    if member.role == WorkspaceRole.OWNER:
        if ctx.role != WorkspaceRole.OWNER:
            raise AuthorizationError("Only owners can remove owners")
        if await _owner_count(db, ctx.workspace.id) <= 1:
            raise ValidationError("A workspace must keep at least one owner")

    await record_audit(
        db,
        action="member.removed",
        entity_type="workspace_member",
        entity_id=member.id,
        user_id=ctx.user.id,
        workspace_id=ctx.workspace.id,
        new_values={"user_id": str(member.user_id), "removed_at": utcnow().isoformat()},
    )
    await db.delete(member)
    await db.flush()
