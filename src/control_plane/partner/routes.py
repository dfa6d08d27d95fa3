"""Partner API routes.

Provides workspace management, dashboard stats and team invitations for
the caller's partner (``X-Partner-Slug`` picks one when the user has
several).
"""

import logging
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.audit import record_audit
from control_plane.auth.context import PartnerContext, require_partner_permission
from control_plane.auth.permissions import Permission
from control_plane.billing.credits import get_or_create_partner_credits
from control_plane.billing.plans import get_plan_max_workspaces
from control_plane.db.database import get_db
from control_plane.db.models import (
    AIAgent,
    Conversation,
    PartnerInvitation,
    PartnerMember,
    PartnerRole,
    User,
    Workspace,
    WorkspaceCredits,
    WorkspaceMember,
    WorkspaceRole,
    utcnow,
)
from control_plane.email import EmailSender, get_email_sender
from control_plane.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from control_plane.pagination import PageParams, PaginationMeta, page_params, paginate
from control_plane.slugs import slugify

logger = logging.getLogger("control-plane.partner")

router = APIRouter(prefix="/partner", tags=["Partner"])


# =============================================================================
# Request/Response Models
# =============================================================================


class WorkspaceCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    slug: str | None = Field(None, max_length=100)
    description: str | None = None
    timezone: str = "UTC"
    is_billing_exempt: bool = False


class WorkspaceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    partner_id: UUID
    name: str
    slug: str
    description: str | None
    timezone: str
    is_billing_exempt: bool
    current_month_minutes: int
    created_at: datetime


class WorkspaceListResponse(BaseModel):
    data: list[WorkspaceResponse]
    meta: PaginationMeta


class DashboardStats(BaseModel):
    total_workspaces: int
    max_workspaces: int | None
    total_agents: int
    total_team_members: int
    conversations_this_month: int
    minutes_this_month: int
    cost_this_month: float
    partner_credits_cents: int


class TeamWorkspaceAccess(BaseModel):
    workspace_id: UUID
    workspace_name: str
    workspace_slug: str
    role: str


class TeamMember(BaseModel):
    id: UUID
    role: str
    joined_at: datetime
    user_id: UUID
    email: str
    full_name: str | None
    workspace_access: list[TeamWorkspaceAccess]
    workspace_count: int
    # Owns at least one of the partner's workspaces
    is_workspace_owner: bool


class TeamListResponse(BaseModel):
    data: list[TeamMember]


class PartnerInviteRequest(BaseModel):
    email: EmailStr
    role: PartnerRole = PartnerRole.MEMBER
    message: str | None = Field(None, max_length=1000)


class PartnerInvitationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    role: str
    expires_at: datetime
    accepted_at: datetime | None
    created_at: datetime


class PartnerInvitationCreated(PartnerInvitationResponse):
    email_sent: bool = False


class PartnerInvitationListResponse(BaseModel):
    data: list[PartnerInvitationResponse]


def _month_start() -> datetime:
    return utcnow().replace(day=1, hour=0, minute=0, second=0, microsecond=0)


async def _count(db: AsyncSession, query) -> int:
    return (await db.execute(select(func.count()).select_from(query.subquery()))).scalar_one()


# =============================================================================
# Workspaces
# =============================================================================


@router.get("/workspaces", response_model=WorkspaceListResponse)
async def list_workspaces(
    params: PageParams = Depends(page_params),
    ctx: PartnerContext = Depends(require_partner_permission(Permission.PARTNER_WORKSPACES_READ)),
    db: AsyncSession = Depends(get_db),
):
    query = (
        select(Workspace)
        .where(Workspace.partner_id == ctx.partner.id)
        .where(Workspace.deleted_at.is_(None))
        .order_by(Workspace.created_at)
    )
    workspaces, meta = await paginate(db, query, params)
    return WorkspaceListResponse(
        data=[WorkspaceResponse.model_validate(w) for w in workspaces], meta=meta
    )


@router.post(
    "/workspaces", response_model=WorkspaceResponse, status_code=status.HTTP_201_CREATED
)
async def create_workspace(
    request: WorkspaceCreate,
    ctx: PartnerContext = Depends(
        require_partner_permission(Permission.PARTNER_WORKSPACES_CREATE)
    ),
    db: AsyncSession = Depends(get_db),
):
    """Create a workspace; the creator becomes its owner.

    Raises:
        ValidationError: When the partner's plan tier is at its workspace cap.
        ConflictError: When the slug is taken within the partner.
    """
    max_workspaces = get_plan_max_workspaces(ctx.partner.plan_tier)
    if max_workspaces is not None:
        current = await _count(
            db,
            select(Workspace.id)
            .where(Workspace.partner_id == ctx.partner.id)
            .where(Workspace.deleted_at.is_(None)),
        )
        if current >= max_workspaces:
            raise ValidationError(
                f"Workspace limit reached for the {ctx.partner.plan_tier} plan "
                f"({max_workspaces} workspaces)",
                details={"max_workspaces": max_workspaces, "current": current},
            )

    slug = slugify(request.slug or request.name, max_length=100)
    taken = (
        await db.execute(
            select(Workspace.id)
            .where(Workspace.partner_id == ctx.partner.id)
            .where(Workspace.slug == slug)
        )
    ).first()
    if taken is not None:
        raise ConflictError(f"A workspace with slug '{slug}' already exists")

    workspace = Workspace(
        partner_id=ctx.partner.id,
        name=request.name,
        slug=slug,
        description=request.description,
        timezone=request.timezone,
        is_billing_exempt=request.is_billing_exempt,
        current_month_minutes=0,
    )
    db.add(workspace)
    await db.flush()

    db.add(
        WorkspaceMember(workspace_id=workspace.id, user_id=ctx.user.id, role=WorkspaceRole.OWNER)
    )
    db.add(WorkspaceCredits(workspace_id=workspace.id))
    await record_audit(
        db,
        action="workspace.created",
        entity_type="workspace",
        entity_id=workspace.id,
        user_id=ctx.user.id,
        workspace_id=workspace.id,
        partner_id=ctx.partner.id,
        new_values={"name": workspace.name, "slug": slug},
    )
    await db.flush()
    await db.refresh(workspace)
    logger.info(f"Workspace {workspace.slug} created for partner {ctx.partner.slug}")
    return WorkspaceResponse.model_validate(workspace)


# =============================================================================
# Dashboard
# =============================================================================


@router.get("/dashboard/stats", response_model=DashboardStats)
async def get_dashboard_stats(
    ctx: PartnerContext = Depends(require_partner_permission(Permission.PARTNER_READ)),
    db: AsyncSession = Depends(get_db),
):
    """Aggregate counts across the partner's live workspaces."""
    workspace_ids = (
        select(Workspace.id)
        .where(Workspace.partner_id == ctx.partner.id)
        .where(Workspace.deleted_at.is_(None))
    )

    total_workspaces = await _count(db, workspace_ids)
    total_agents = await _count(
        db,
        select(AIAgent.id)
        .where(AIAgent.workspace_id.in_(workspace_ids))
        .where(AIAgent.deleted_at.is_(None)),
    )
    total_members = await _count(
        db, select(PartnerMember.id).where(PartnerMember.partner_id == ctx.partner.id)
    )
    conversations = await _count(
        db,
        select(Conversation.id)
        .where(Conversation.workspace_id.in_(workspace_ids))
        .where(Conversation.created_at >= _month_start()),
    )
    minutes, cost = (
        await db.execute(
            select(
                func.coalesce(func.sum(Workspace.current_month_minutes), 0),
                func.coalesce(func.sum(Workspace.current_month_cost), 0),
            )
            .where(Workspace.partner_id == ctx.partner.id)
            .where(Workspace.deleted_at.is_(None))
        )
    ).one()
    credits = await get_or_create_partner_credits(db, ctx.partner.id)

    return DashboardStats(
        total_workspaces=total_workspaces,
        max_workspaces=get_plan_max_workspaces(ctx.partner.plan_tier),
        total_agents=total_agents,
        total_team_members=total_members,
        conversations_this_month=conversations,
        minutes_this_month=int(minutes or 0),
        cost_this_month=float(cost or 0),
        partner_credits_cents=credits.balance_cents,
    )


# =============================================================================
# Team
# =============================================================================


@router.get("/team", response_model=TeamListResponse)
async def list_team(
    ctx: PartnerContext = Depends(require_partner_permission(Permission.PARTNER_TEAM_READ)),
    db: AsyncSession = Depends(get_db),
):
    """Partner members with the live workspaces each one belongs to."""
    members = (
        await db.execute(
            select(PartnerMember, User)
            .join(User, User.id == PartnerMember.user_id)
            .where(PartnerMember.partner_id == ctx.partner.id)
            .order_by(PartnerMember.role, PartnerMember.created_at)
        )
    ).all()

    access: dict[UUID, list[TeamWorkspaceAccess]] = {}
    memberships = await db.execute(
        select(WorkspaceMember.user_id, WorkspaceMember.role, Workspace)
        .join(Workspace, Workspace.id == WorkspaceMember.workspace_id)
        .where(Workspace.partner_id == ctx.partner.id)
        .where(Workspace.deleted_at.is_(None))
        .where(WorkspaceMember.user_id.in_([user.id for _, user in members]))
        .order_by(Workspace.created_at)
    )
    for user_id, role, workspace in memberships.all():
        access.setdefault(user_id, []).append(
            TeamWorkspaceAccess(
                workspace_id=workspace.id,
                workspace_name=workspace.name,
                workspace_slug=workspace.slug,
                role=role,
            )
        )

    team = []
    for member, user in members:
        workspaces = access.get(user.id, [])
        team.append(
            TeamMember(
                id=member.id,
                role=member.role,
                joined_at=member.created_at,
                user_id=user.id,
                email=user.email,
                full_name=user.full_name,
                workspace_access=workspaces,
                workspace_count=len(workspaces),
                is_workspace_owner=any(w.role == WorkspaceRole.OWNER for w in workspaces),
            )
        )
    return TeamListResponse(data=team)


# =============================================================================
# Team Invitations
# =============================================================================


@router.get("/invitations", response_model=PartnerInvitationListResponse)
async def list_invitations(
    ctx: PartnerContext = Depends(require_partner_permission(Permission.PARTNER_TEAM_READ)),
    db: AsyncSession = Depends(get_db),
):
    """Pending (unaccepted) invitations, newest first."""
    invitations = (
        await db.execute(
            select(PartnerInvitation)
            .where(PartnerInvitation.partner_id == ctx.partner.id)
            .where(PartnerInvitation.accepted_at.is_(None))
            .order_by(PartnerInvitation.created_at.desc())
        )
    ).scalars().all()
    return PartnerInvitationListResponse(
        data=[PartnerInvitationResponse.model_validate(i) for i in invitations]
    )


@router.post(
    "/invitations",
    response_model=PartnerInvitationCreated,
    status_code=status.HTTP_201_CREATED,
)
async def create_invitation(
    request: PartnerInviteRequest,
    ctx: PartnerContext = Depends(require_partner_permission(Permission.PARTNER_TEAM_INVITE)),
    db: AsyncSession = Depends(get_db),
    email_sender: EmailSender = Depends(get_email_sender),
):
    if request.role == PartnerRole.OWNER and ctx.role != PartnerRole.OWNER:
        raise AuthorizationError("Only owners can invite owners")

    email = request.email.lower()
    already_member = (
        await db.execute(
            select(PartnerMember.id)
            .join(User, User.id == PartnerMember.user_id)
            .where(PartnerMember.partner_id == ctx.partner.id)
            .where(func.lower(User.email) == email)
        )
    ).first()
    if already_member is not None:
        raise ConflictError("User is already a member of this partner")

    invitation = PartnerInvitation(
        partner_id=ctx.partner.id,
        email=email,
        role=request.role,
        invited_by=ctx.user.id,
    )
    db.add(invitation)
    await db.flush()

    email_sent = await email_sender.send_partner_invitation(
        to_email=email,
        partner_name=ctx.partner.name,
        inviter_name=ctx.user.full_name or ctx.user.email,
        role=request.role.value,
        token=invitation.token,
        message=request.message,
    )
    await record_audit(
        db,
        action="partner_member.invited",
        entity_type="partner_invitation",
        entity_id=invitation.id,
        user_id=ctx.user.id,
        partner_id=ctx.partner.id,
        new_values={"email": email, "role": request.role.value},
    )
    await db.flush()
    await db.refresh(invitation)

    response = PartnerInvitationCreated.model_validate(invitation)
    response.email_sent = email_sent
    return response


@router.delete("/invitations/{invitation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_invitation(
    invitation_id: UUID,
    ctx: PartnerContext = Depends(require_partner_permission(Permission.PARTNER_TEAM_INVITE)),
    db: AsyncSession = Depends(get_db),
):
    invitation = await db.get(PartnerInvitation, invitation_id)
    if invitation is None or invitation.partner_id != ctx.partner.id:
        raise NotFoundError("Invitation")
    if invitation.accepted_at is not None:
        raise ValidationError("Invitation has already been accepted")
    await db.delete(invitation)
    await record_audit(
        db,
        action="partner_member.invitation_revoked",
        entity_type="partner_invitation",
        entity_id=invitation_id,
        user_id=ctx.user.id,
        partner_id=ctx.partner.id,
    )
    await db.flush()
