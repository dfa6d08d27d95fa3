"""Conversation bookkeeping shared by the provider webhooks."""

import logging
from datetime import datetime, timezone
from typing import Any

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.billing.stripe_client import StripeConnectClient
from control_plane.billing.usage import CallUsageData, UsageResult, process_call_completion
from control_plane.campaigns.service import CallEndOutcome, handle_campaign_call_ended
from control_plane.config import Settings
from control_plane.db.models import (
    AIAgent,
    CallDirection,
    Conversation,
    ConversationStatus,
    Workspace,
)

logger = logging.getLogger("control-plane.webhooks")


def from_millis(value: int | float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


async def find_conversation(db: AsyncSession, external_id: str) -> Conversation | None:
    return (
        await db.execute(
            select(Conversation)
            .where(Conversation.external_id == external_id)
            .order_by(Conversation.created_at)
            .limit(1)
        )
    ).scalar_one_or_none()


async def find_agent(db: AsyncSession, external_agent_id: str | None, provider: str) -> AIAgent | None:
    if not external_agent_id:
        return None
    return (
        await db.execute(
            select(AIAgent)
            .where(AIAgent.external_agent_id == external_agent_id)
            .where(AIAgent.provider == provider)
            .where(AIAgent.deleted_at.is_(None))
            .limit(1)
        )
    ).scalar_one_or_none()


async def create_conversation(
    db: AsyncSession,
    agent: AIAgent,
    external_id: str,
    direction: str | None,
    phone_number: str | None,
    started_at: datetime | None,
    metadata: dict[str, Any],
) -> Conversation:
    """Open a conversation for a call we didn't initiate (or missed the start of)."""
    try:
        direction = CallDirection(direction or CallDirection.INBOUND)
    except ValueError:
        direction = CallDirection.INBOUND
    conversation = Conversation(
        workspace_id=agent.workspace_id,
        agent_id=agent.id,
        external_id=external_id,
        direction=direction,
        status=ConversationStatus.IN_PROGRESS,
        phone_number=phone_number,
        started_at=started_at,
        call_metadata=metadata,
    )
    db.add(conversation)
    await db.flush()
    logger.info(f"Created conversation {conversation.id} for call {external_id}")
    return conversation


async def settle_ended_call(
    db: AsyncSession,
    conversation: Conversation,
    provider: str,
    outcome: CallEndOutcome,
    settings: Settings,
    stripe_client: StripeConnectClient | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> UsageResult:
    """Bill a finished call, then advance its campaign if it belongs to one.

    Billing and campaign failures are logged; the webhook still succeeds.
    """
    workspace = await db.get(Workspace, conversation.workspace_id)
    result = await process_call_completion(
        db,
        CallUsageData(
            conversation_id=conversation.id,
            workspace_id=workspace.id,
            partner_id=workspace.partner_id,
            duration_seconds=conversation.duration_seconds or 0,
            provider=provider,
            external_call_id=conversation.external_id,
        ),
        settings=settings,
        stripe_client=stripe_client,
    )
    if result.success:
        logger.info(
            f"Billing processed for call {conversation.external_id}: "
            f"{result.minutes_added} minutes, {result.amount_deducted_cents} cents"
        )
    else:
        logger.error(
            f"Billing failed for call {conversation.external_id}: "
            f"{result.error or result.reason}"
        )

    try:
        await handle_campaign_call_ended(
            db, conversation.external_id, outcome, http_client=http_client
        )
    except Exception:
        logger.exception(f"Campaign continuation failed for call {conversation.external_id}")
    return result
