"""Request context resolution.

Turns an authenticated user into ``{user, partner, partner role,
workspaces}`` by chained membership lookups, and provides the route
dependencies that enforce workspace and partner permissions.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from fastapi import Depends, Header, Path
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.auth.jwt import get_current_user
from control_plane.auth.permissions import (
    Permission,
    has_partner_permission,
    has_workspace_permission,
)
from control_plane.db.database import get_db
from control_plane.db.models import (
    Partner,
    PartnerMember,
    PartnerRole,
    User,
    Workspace,
    WorkspaceMember,
    WorkspaceRole,
)
from control_plane.errors import AuthorizationError, NotFoundError

logger = logging.getLogger("control-plane.auth")


@dataclass
class WorkspaceAccess:
    workspace: Workspace
    role: str


@dataclass
class AuthContext:
    """Everything a handler needs to know about who is calling."""

    user: User
    partner: Partner | None = None
    partner_role: str | None = None
    workspaces: list[WorkspaceAccess] = field(default_factory=list)

    @property
    def is_partner_admin(self) -> bool:
        return self.partner_role in (PartnerRole.OWNER, PartnerRole.ADMIN)


@dataclass
class WorkspaceContext:
    user: User
    workspace: Workspace
    partner: Partner
    role: str


@dataclass
class PartnerContext:
    user: User
    partner: Partner
    role: str


async def resolve_auth_context(
    db: AsyncSession, user: User, partner_slug: str | None = None
) -> AuthContext:
    """Load the user's partner membership and workspace memberships.

    Args:
        db: Database session.
        user: Authenticated user.
        partner_slug: Picks a partner when the user belongs to several;
            otherwise the oldest membership wins.
    """
    query = (
        select(Partner, PartnerMember.role)
        .join(PartnerMember, PartnerMember.partner_id == Partner.id)
        .where(PartnerMember.user_id == user.id)
        .order_by(PartnerMember.created_at)
    )
    if partner_slug:
        query = query.where(Partner.slug == partner_slug)
    partner_row = (await db.execute(query)).first()

    context = AuthContext(user=user)
    if partner_row is not None:
        context.partner, context.partner_role = partner_row

    ws_query = (
        select(Workspace, WorkspaceMember.role)
        .join(WorkspaceMember, WorkspaceMember.workspace_id == Workspace.id)
        .where(WorkspaceMember.user_id == user.id)
        .where(Workspace.deleted_at.is_(None))
        .order_by(Workspace.created_at)
    )
    if context.partner is not None:
        ws_query = ws_query.where(Workspace.partner_id == context.partner.id)
    for workspace, role in (await db.execute(ws_query)).all():
        context.workspaces.append(WorkspaceAccess(workspace=workspace, role=role))

    return context


async def get_auth_context(
    x_partner_slug: str | None = Header(None, alias="X-Partner-Slug"),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> AuthContext:
    return await resolve_auth_context(db, user, x_partner_slug)


async def resolve_workspace_context(
    db: AsyncSession,
    user: User,
    workspace_slug: str,
    partner_slug: str | None = None,
) -> WorkspaceContext:
    """Find the workspace by slug among those the user can reach.

    Direct membership gives the member's role. Owners and admins of the
    workspace's partner get admin access without a membership row; super
    admins get owner access.

    Raises:
        NotFoundError: If no reachable workspace has that slug.
    """
    query = select(Workspace, Partner).join(Partner, Partner.id == Workspace.partner_id)
    query = query.where(Workspace.slug == workspace_slug).where(
        Workspace.deleted_at.is_(None)
    )
    if partner_slug:
        query = query.where(Partner.slug == partner_slug)

    for workspace, partner in (await db.execute(query)).all():
        role = (
            await db.execute(
                select(WorkspaceMember.role)
                .where(WorkspaceMember.workspace_id == workspace.id)
                .where(WorkspaceMember.user_id == user.id)
            )
        ).scalar_one_or_none()

        if role is None:
            partner_role = (
                await db.execute(
                    select(PartnerMember.role)
                    .where(PartnerMember.partner_id == partner.id)
                    .where(PartnerMember.user_id == user.id)
                )
            ).scalar_one_or_none()
            if partner_role in (PartnerRole.OWNER, PartnerRole.ADMIN):
                role = WorkspaceRole.ADMIN

        if role is None and user.is_super_admin:
            role = WorkspaceRole.OWNER

        if role is not None:
            return WorkspaceContext(user=user, workspace=workspace, partner=partner, role=role)

    raise NotFoundError("Workspace")


def require_workspace_permission(
    permission: Permission,
) -> Callable[..., Awaitable[WorkspaceContext]]:
    """Dependency factory: resolve ``{workspace_slug}`` and check a permission.

    Usage:
        @router.get("/agents")
        async def list_agents(
            ctx: WorkspaceContext = Depends(
                require_workspace_permission(Permission.AGENT_READ)
            ),
        ):
            ...
    """

    async def dependency(
        workspace_slug: str = Path(...),
        x_partner_slug: str | None = Header(None, alias="X-Partner-Slug"),
        user: User = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
    ) -> WorkspaceContext:
        ctx = await resolve_workspace_context(db, user, workspace_slug, x_partner_slug)
        if not has_workspace_permission(ctx.role, permission):
            logger.info(
                f"Denied {permission.value} to user {user.id} "
                f"(role={ctx.role}) on workspace {ctx.workspace.id}"
            )
            raise AuthorizationError(f"Permission denied: {permission.value}")
        return ctx

    return dependency


def require_partner_permission(
    permission: Permission,
) -> Callable[..., Awaitable[PartnerContext]]:
    """Dependency factory for partner-scoped routes."""

    async def dependency(
        auth: AuthContext = Depends(get_auth_context),
    ) -> PartnerContext:
        if auth.partner is None or auth.partner_role is None:
            raise AuthorizationError("Not a member of any partner")
        if not has_partner_permission(auth.partner_role, permission):
            raise AuthorizationError(f"Permission denied: {permission.value}")
        return PartnerContext(user=auth.user, partner=auth.partner, role=auth.partner_role)

    return dependency
