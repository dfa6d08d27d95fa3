"""VAPI server-message webhooks.

VAPI wraps everything in ``{"message": {"type": ..., "call": {...}}}``.
Only ``status-update`` and ``end-of-call-report`` change state here.
"""

import logging
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.billing.stripe_client import StripeConnectClient
from control_plane.campaigns.service import CallEndOutcome, determine_vapi_outcome
from control_plane.config import Settings
from control_plane.db.models import AgentProvider, ConversationStatus, utcnow
from control_plane.webhooks.calls import (
    create_conversation,
    find_agent,
    find_conversation,
    parse_iso,
    settle_ended_call,
)

logger = logging.getLogger("control-plane.webhooks")


def _direction(call: dict[str, Any]) -> str:
    return "outbound" if call.get("type") == "outboundPhoneCall" else "inbound"


def vapi_duration_seconds(message: dict[str, Any]) -> int:
    """``durationSeconds`` when present, else the startedAt/endedAt gap."""
    duration = message.get("durationSeconds")
    if duration is not None:
        return max(0, int(duration))
    started = parse_iso(message.get("startedAt"))
    ended = parse_iso(message.get("endedAt"))
    if started is None or ended is None:
        return 0
    return max(0, int((ended - started).total_seconds()))


async def _find_or_open(db: AsyncSession, call: dict[str, Any], started_at=None):
    conversation = await find_conversation(db, call["id"])
    if conversation is not None:
        return conversation

    agent = await find_agent(db, call.get("assistantId"), AgentProvider.VAPI)
    if agent is None:
        logger.error(f"Agent not found for VAPI assistantId: {call.get('assistantId')}")
        return None
    customer = call.get("customer") or {}
    return await create_conversation(
        db,
        agent,
        external_id=call["id"],
        direction=_direction(call),
        phone_number=customer.get("number"),
        started_at=started_at or parse_iso(call.get("startedAt")) or utcnow(),
        metadata={
            "provider": AgentProvider.VAPI.value,
            "call_type": call.get("type"),
            "vapi_assistant_id": call.get("assistantId"),
        },
    )


async def handle_status_update(db: AsyncSession, message: dict[str, Any]) -> None:
    call = message.get("call") or {}
    if message.get("status") != "in-progress":
        return
    conversation = await _find_or_open(db, call)
    if conversation is None:
        return
    conversation.status = ConversationStatus.IN_PROGRESS
    conversation.started_at = conversation.started_at or utcnow()
    await db.flush()


async def handle_end_of_call_report(
    db: AsyncSession,
    message: dict[str, Any],
    settings: Settings,
    stripe_client: StripeConnectClient | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> None:
    call = message.get("call") or {}
    conversation = await _find_or_open(db, call, parse_iso(message.get("startedAt")))
    if conversation is None:
        return

    artifact = message.get("artifact") or {}
    ended_reason = message.get("endedReason")
    duration = vapi_duration_seconds(message)

    conversation.status = ConversationStatus.COMPLETED
    conversation.ended_at = parse_iso(message.get("endedAt")) or utcnow()
    conversation.duration_seconds = duration
    conversation.transcript = (
        message.get("transcript") or artifact.get("transcript") or conversation.transcript
    )
    conversation.recording_url = (
        message.get("recordingUrl")
        or artifact.get("recordingUrl")
        or conversation.recording_url
    )
    conversation.summary = message.get("summary") or conversation.summary
    conversation.call_metadata = {
        **(conversation.call_metadata or {}),
        "vapi_ended_reason": ended_reason,
        "vapi_cost": message.get("cost"),
    }
    await db.flush()

    outcome, success = determine_vapi_outcome(ended_reason)
    await settle_ended_call(
        db,
        conversation,
        AgentProvider.VAPI.value,
        CallEndOutcome(
            success=success,
            outcome=outcome,
            duration_seconds=duration,
            error=None if success else ended_reason,
        ),
        settings,
        stripe_client=stripe_client,
        http_client=http_client,
    )


async def handle_vapi_message(
    db: AsyncSession,
    payload: dict[str, Any],
    settings: Settings,
    stripe_client: StripeConnectClient | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> None:
    message = payload.get("message") or {}
    message_type = message.get("type")
    call = message.get("call") or {}
    if not call.get("id"):
        logger.info(f"VAPI {message_type} message without call id, ignoring")
        return

    logger.info(f"VAPI {message_type} for call {call['id']}")
    if message_type == "status-update":
        await handle_status_update(db, message)
    elif message_type == "end-of-call-report":
        await handle_end_of_call_report(db, message, settings, stripe_client, http_client)
    else:
        logger.debug(f"Ignoring VAPI message type: {message_type}")
