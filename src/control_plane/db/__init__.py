"""Database module.

Provides SQLAlchemy models, async session management, and utilities.
"""

from control_plane.db.database import (
    Base,
    async_session,
    dispose_engine,
    get_db,
    get_engine,
)
from control_plane.db.models import (
    AIAgent,
    CallCampaign,
    CallRecipient,
    Conversation,
    Partner,
    User,
    Workspace,
)

__all__ = [
    "AIAgent",
    "Base",
    "CallCampaign",
    "CallRecipient",
    "Conversation",
    "Partner",
    "User",
    "Workspace",
    "async_session",
    "dispose_engine",
    "get_db",
    "get_engine",
]
