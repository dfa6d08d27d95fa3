"""Invitation acceptance.

The signed-in user redeems a token from an invitation email. The
invitation's email must match the user's, and a token works once.
"""

import logging
from typing import Literal
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.audit import record_audit
from control_plane.auth.jwt import get_current_user
from control_plane.db.database import get_db
from control_plane.db.models import (
    Partner,
    PartnerInvitation,
    PartnerMember,
    User,
    Workspace,
    WorkspaceInvitation,
    WorkspaceMember,
    utcnow,
)
from control_plane.errors import AuthorizationError, NotFoundError, ValidationError

logger = logging.getLogger("control-plane.invitations")

router = APIRouter(prefix="/invitations", tags=["Invitations"])


class AcceptInvitationRequest(BaseModel):
    token: str
    type: Literal["workspace", "partner"] = "workspace"


class AcceptInvitationResponse(BaseModel):
    type: str
    role: str
    workspace_id: UUID | None = None
    workspace_slug: str | None = None
    partner_id: UUID | None = None
    partner_slug: str | None = None


def _check_invitation(invitation, user: User) -> None:
    if invitation is None:
        raise NotFoundError("Invitation")
    if invitation.accepted_at is not None:
        raise ValidationError("Invitation has already been accepted")
    if invitation.is_expired:
        raise ValidationError("Invitation has expired")
    if invitation.email.lower() != user.email.lower():
        raise AuthorizationError("This invitation was sent to a different email address")


async def _accept_workspace(db: AsyncSession, token: str, user: User) -> AcceptInvitationResponse:
    invitation = (
        await db.execute(select(WorkspaceInvitation).where(WorkspaceInvitation.token == token))
    ).scalar_one_or_none()
    _check_invitation(invitation, user)

    workspace = await db.get(Workspace, invitation.workspace_id)
    if workspace is None or workspace.deleted_at is not None:
        raise NotFoundError("Workspace")

    member = (
        await db.execute(
            select(WorkspaceMember)
            .where(WorkspaceMember.workspace_id == workspace.id)
            .where(WorkspaceMember.user_id == user.id)
        )
    ).scalar_one_or_none()
    if member is None:
        db.add(WorkspaceMember(workspace_id=workspace.id, user_id=user.id, role=invitation.role))
    invitation.accepted_at = utcnow()

    await record_audit(
        db,
        action="member.joined",
        entity_type="workspace_invitation",
        entity_id=invitation.id,
        user_id=user.id,
        workspace_id=workspace.id,
        partner_id=workspace.partner_id,
        new_values={"role": invitation.role},
    )
    await db.flush()
    logger.info(f"User {user.id} joined workspace {workspace.id} as {invitation.role}")
    return AcceptInvitationResponse(
        type="workspace",
        role=member.role if member else invitation.role,
        workspace_id=workspace.id,
        workspace_slug=workspace.slug,
        partner_id=workspace.partner_id,
    )


async def _accept_partner(db: AsyncSession, token: str, user: User) -> AcceptInvitationResponse:
    invitation = (
        await db.execute(select(PartnerInvitation).where(PartnerInvitation.token == token))
    ).scalar_one_or_none()
    _check_invitation(invitation, user)

    partner = await db.get(Partner, invitation.partner_id)
    member = (
        await db.execute(
            select(PartnerMember)
            .where(PartnerMember.partner_id == partner.id)
            .where(PartnerMember.user_id == user.id)
        )
    ).scalar_one_or_none()
    if member is None:
        db.add(PartnerMember(partner_id=partner.id, user_id=user.id, role=invitation.role))
    invitation.accepted_at = utcnow()

    await record_audit(
        db,
        action="partner_member.joined",
        entity_type="partner_invitation",
        entity_id=invitation.id,
        user_id=user.id,
        partner_id=partner.id,
        new_values={"role": invitation.role},
    )
    await db.flush()
    logger.info(f"User {user.id} joined partner {partner.id} as {invitation.role}")
    return AcceptInvitationResponse(
        type="partner",
        role=member.role if member else invitation.role,
        partner_id=partner.id,
        partner_slug=partner.slug,
    )


@router.post("/accept", response_model=AcceptInvitationResponse)
async def accept_invitation(
    request: AcceptInvitationRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if request.type == "partner":
        return await _accept_partner(db, request.token, user)
    return await _accept_workspace(db, request.token, user)
