"""Retell webhook events.

Retell posts two kinds of payload to the same URL: call lifecycle events
(``{"event": ..., "call": {...}}``) and custom function calls
(``{"function": ..., "parameters": {...}}``).
"""

import logging
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.billing.stripe_client import StripeConnectClient
from control_plane.campaigns.service import CallEndOutcome, determine_retell_outcome
from control_plane.config import Settings
from control_plane.db.models import AgentProvider, ConversationStatus, utcnow
from control_plane.webhooks.calls import (
    create_conversation,
    find_agent,
    find_conversation,
    from_millis,
    settle_ended_call,
)

logger = logging.getLogger("control-plane.webhooks")


def retell_duration_seconds(call: dict[str, Any]) -> int:
    """Whole seconds between start and end timestamps (ms), never negative."""
    start = call.get("start_timestamp")
    end = call.get("end_timestamp")
    if start is None or end is None:
        return 0
    return max(0, int((end - start) // 1000))


def _call_metadata(call: dict[str, Any]) -> dict[str, Any]:
    return {
        "provider": AgentProvider.RETELL.value,
        "call_type": call.get("call_type"),
        "direction": call.get("direction") or "inbound",
        "retell_agent_id": call.get("agent_id"),
        "from_number": call.get("from_number"),
        "to_number": call.get("to_number"),
    }


async def _open_conversation(db: AsyncSession, call: dict[str, Any]):
    agent = await find_agent(db, call.get("agent_id"), AgentProvider.RETELL)
    if agent is None:
        logger.error(f"Agent not found for Retell agent_id: {call.get('agent_id')}")
        return None
    return await create_conversation(
        db,
        agent,
        external_id=call["call_id"],
        direction=call.get("direction"),
        phone_number=call.get("from_number") or call.get("to_number"),
        started_at=from_millis(call.get("start_timestamp")),
        metadata=_call_metadata(call),
    )


async def handle_call_started(db: AsyncSession, call: dict[str, Any]) -> None:
    conversation = await find_conversation(db, call["call_id"])
    if conversation is not None:
        conversation.status = ConversationStatus.IN_PROGRESS
        conversation.started_at = from_millis(call.get("start_timestamp")) or utcnow()
        await db.flush()
        logger.info(f"Conversation {conversation.id} marked as in_progress")
        return
    await _open_conversation(db, call)


async def handle_call_ended(
    db: AsyncSession,
    call: dict[str, Any],
    settings: Settings,
    stripe_client: StripeConnectClient | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> None:
    call_id = call["call_id"]
    conversation = await find_conversation(db, call_id)
    if conversation is None:
        logger.info(f"Conversation not found for call {call_id}, creating now")
        conversation = await _open_conversation(db, call)
        if conversation is None:
            return

    duration = retell_duration_seconds(call)
    conversation.status = ConversationStatus.COMPLETED
    conversation.ended_at = from_millis(call.get("end_timestamp")) or utcnow()
    conversation.duration_seconds = duration
    conversation.transcript = call.get("transcript") or conversation.transcript
    conversation.recording_url = call.get("recording_url") or conversation.recording_url
    conversation.call_metadata = {
        **(conversation.call_metadata or {}),
        "retell_disconnection_reason": call.get("disconnection_reason"),
        "retell_public_log_url": call.get("public_log_url"),
    }
    await db.flush()

    call_status = call.get("call_status")
    reason = call.get("disconnection_reason")
    outcome, success = determine_retell_outcome(call_status, reason)
    await settle_ended_call(
        db,
        conversation,
        AgentProvider.RETELL.value,
        CallEndOutcome(
            success=success,
            outcome=outcome,
            duration_seconds=duration,
            error=None if success else reason,
        ),
        settings,
        stripe_client=stripe_client,
        http_client=http_client,
    )


async def handle_call_analyzed(db: AsyncSession, call: dict[str, Any]) -> None:
    analysis = call.get("call_analysis")
    conversation = await find_conversation(db, call["call_id"])
    if conversation is None or not analysis:
        return

    conversation.summary = analysis.get("call_summary") or conversation.summary
    conversation.sentiment = analysis.get("user_sentiment") or conversation.sentiment
    conversation.call_metadata = {
        **(conversation.call_metadata or {}),
        "retell_analysis": {
            "call_successful": analysis.get("call_successful"),
            "in_voicemail": analysis.get("in_voicemail"),
            "custom_data": analysis.get("custom_analysis_data"),
        },
    }
    await db.flush()
    logger.info(f"Conversation {conversation.id} updated with analysis")


def handle_function_call(payload: dict[str, Any]) -> dict[str, Any]:
    """Answer a custom function tool call.

    No custom functions are registered yet, so every call is acknowledged
    with an empty result the agent can continue from.
    """
    name = payload.get("function")
    logger.info(f"Retell function call: {name} params={payload.get('parameters') or {}}")
    return {
        "success": True,
        "function": name,
        "result": f"Function '{name}' executed successfully",
        "data": {},
    }


async def handle_retell_event(
    db: AsyncSession,
    payload: dict[str, Any],
    settings: Settings,
    stripe_client: StripeConnectClient | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> None:
    event = payload.get("event")
    call = payload.get("call") or {}
    if not call.get("call_id"):
        logger.warning(f"Retell {event} event without call_id, ignoring")
        return

    logger.info(f"Retell {event} for call {call['call_id']}")
    if event == "call_started":
        await handle_call_started(db, call)
    elif event == "call_ended":
        await handle_call_ended(db, call, settings, stripe_client, http_client)
    elif event == "call_analyzed":
        await handle_call_analyzed(db, call)
    else:
        logger.info(f"Unhandled Retell event type: {event}")
