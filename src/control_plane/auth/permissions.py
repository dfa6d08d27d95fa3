"""Role -> permission tables for workspace and partner roles."""

from enum import Enum

from control_plane.db.models import PartnerRole, WorkspaceRole


class Permission(str, Enum):
    # Workspace scope
    WORKSPACE_READ = "workspace:read"
    WORKSPACE_UPDATE = "workspace:update"
    WORKSPACE_DELETE = "workspace:delete"
    AGENT_READ = "workspace.agents:read"
    AGENT_CREATE = "workspace.agents:create"
    AGENT_UPDATE = "workspace.agents:update"
    AGENT_DELETE = "workspace.agents:delete"
    DEPARTMENT_READ = "workspace.departments:read"
    DEPARTMENT_MANAGE = "workspace.departments:manage"
    LEAD_READ = "workspace.leads:read"
    LEAD_WRITE = "workspace.leads:write"
    LEAD_DELETE = "workspace.leads:delete"
    CONVERSATION_READ = "workspace.conversations:read"
    CALL_CREATE = "workspace.calls:create"
    CAMPAIGN_READ = "workspace.campaigns:read"
    CAMPAIGN_MANAGE = "workspace.campaigns:manage"
    MEMBER_READ = "workspace.members:read"
    MEMBER_INVITE = "workspace.members:invite"
    MEMBER_MANAGE = "workspace.members:manage"
    BILLING_READ = "workspace.billing:read"
    BILLING_MANAGE = "workspace.billing:manage"

    # Partner scope
    PARTNER_READ = "partner:read"
    PARTNER_WORKSPACES_READ = "partner.workspaces:read"
    PARTNER_WORKSPACES_CREATE = "partner.workspaces:create"
    PARTNER_TEAM_READ = "partner.team:read"
    PARTNER_TEAM_INVITE = "partner.team:invite"


_VIEWER = {
    Permission.WORKSPACE_READ,
    Permission.AGENT_READ,
    Permission.DEPARTMENT_READ,
    Permission.LEAD_READ,
    Permission.CONVERSATION_READ,
    Permission.CAMPAIGN_READ,
    Permission.MEMBER_READ,
}

_MEMBER = _VIEWER | {
    Permission.LEAD_WRITE,
    Permission.CALL_CREATE,
    Permission.CAMPAIGN_MANAGE,
    Permission.AGENT_UPDATE,
}

_ADMIN = _MEMBER | {
    Permission.WORKSPACE_UPDATE,
    Permission.AGENT_CREATE,
    Permission.AGENT_DELETE,
    Permission.DEPARTMENT_MANAGE,
    Permission.LEAD_DELETE,
    Permission.MEMBER_INVITE,
    Permission.MEMBER_MANAGE,
    Permission.BILLING_READ,
}

_OWNER = _ADMIN | {
    Permission.WORKSPACE_DELETE,
    Permission.BILLING_MANAGE,
}

WORKSPACE_ROLE_PERMISSIONS: dict[WorkspaceRole, frozenset[Permission]] = {
    WorkspaceRole.VIEWER: frozenset(_VIEWER),
    WorkspaceRole.MEMBER: frozenset(_MEMBER),
    WorkspaceRole.ADMIN: frozenset(_ADMIN),
    WorkspaceRole.OWNER: frozenset(_OWNER),
}

_PARTNER_MEMBER = {
    Permission.PARTNER_READ,
    Permission.PARTNER_WORKSPACES_READ,
    Permission.PARTNER_TEAM_READ,
}

_PARTNER_ADMIN = _PARTNER_MEMBER | {
    Permission.PARTNER_WORKSPACES_CREATE,
    Permission.PARTNER_TEAM_INVITE,
}

PARTNER_ROLE_PERMISSIONS: dict[PartnerRole, frozenset[Permission]] = {
    PartnerRole.MEMBER: frozenset(_PARTNER_MEMBER),
    PartnerRole.ADMIN: frozenset(_PARTNER_ADMIN),
    PartnerRole.OWNER: frozenset(_PARTNER_ADMIN),
}


def has_workspace_permission(role: str | None, permission: Permission) -> bool:
    try:
        return permission in WORKSPACE_ROLE_PERMISSIONS[WorkspaceRole(role)]
    except ValueError:
        return False


def has_partner_permission(role: str | None, permission: Permission) -> bool:
    try:
        return permission in PARTNER_ROLE_PERMISSIONS[PartnerRole(role)]
    except ValueError:
        return False


def is_workspace_admin(role: str | None) -> bool:
    return role in (WorkspaceRole.OWNER, WorkspaceRole.ADMIN)
