"""Authentication and authorization.

Provides JWT tokens, password hashing, request context resolution and RBAC.
"""

from control_plane.auth.context import (
    AuthContext,
    PartnerContext,
    WorkspaceContext,
    get_auth_context,
    require_partner_permission,
    require_workspace_permission,
)
from control_plane.auth.jwt import create_token_pair, get_current_user
from control_plane.auth.permissions import Permission
from control_plane.auth.routes import router as auth_router

__all__ = [
    "AuthContext",
    "PartnerContext",
    "Permission",
    "WorkspaceContext",
    "auth_router",
    "create_token_pair",
    "get_auth_context",
    "get_current_user",
    "require_partner_permission",
    "require_workspace_permission",
]
