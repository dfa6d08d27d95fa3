"""Workspace-scoped API routes under ``/w/{workspace_slug}``."""

from control_plane.workspaces.agents import router as agents_router
from control_plane.workspaces.analytics import router as analytics_router
from control_plane.workspaces.conversations import router as conversations_router
from control_plane.workspaces.departments import router as departments_router
from control_plane.workspaces.invitations import router as invitations_router
from control_plane.workspaces.leads import router as leads_router
from control_plane.workspaces.members import router as members_router
from control_plane.workspaces.settings import router as settings_router

__all__ = [
    "agents_router",
    "analytics_router",
    "conversations_router",
    "departments_router",
    "invitations_router",
    "leads_router",
    "members_router",
    "settings_router",
]
