"""Audit trail for mutating actions."""

import logging
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.db.models import AuditLog

logger = logging.getLogger("control-plane.audit")


async def record_audit(
    db: AsyncSession,
    *,
    action: str,
    entity_type: str,
    entity_id: UUID | None = None,
    user_id: UUID | None = None,
    workspace_id: UUID | None = None,
    partner_id: UUID | None = None,
    new_values: dict[str, Any] | None = None,
) -> AuditLog:
    """Add an audit row to the current transaction."""
    entry = AuditLog(
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        user_id=user_id,
        workspace_id=workspace_id,
        partner_id=partner_id,
        new_values=new_values,
    )
    db.add(entry)
    logger.debug(f"audit {action} {entity_type}:{entity_id} by {user_id}")
    return entry
