"""Outbound call placement through the agent's provider."""

import logging
from dataclasses import dataclass
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.db.models import AgentProvider, AIAgent
from control_plane.integrations.retell import RetellClient
from control_plane.integrations.sync import get_workspace_integration
from control_plane.integrations.vapi import VapiClient

logger = logging.getLogger("control-plane.calls")

_CONCURRENCY_MARKERS = ("concurrency", "concurrent", "too many")


@dataclass
class OutboundCaller:
    """Credentials and caller ID needed to dial out for an agent."""

    api_key: str
    # E.164 number for Retell, phone number ID for VAPI
    caller_id: str


@dataclass
class CallDispatchResult:
    success: bool
    external_call_id: str | None = None
    error: str | None = None
    status_code: int | None = None

    @property
    def is_concurrency_limit(self) -> bool:
        """Provider refused because too many calls are already live."""
        if self.status_code == 429:
            return True
        message = (self.error or "").lower()
        return any(marker in message for marker in _CONCURRENCY_MARKERS)


async def resolve_outbound_caller(db: AsyncSession, agent: AIAgent) -> OutboundCaller | None:
    """Find the API key and caller ID for ``agent``, or None if either is missing.

    The agent's own number wins over the integration's shared number.
    """
    integration = await get_workspace_integration(db, agent.workspace_id, agent.provider)
    if integration is None:
        return None
    api_key = (integration.api_keys or {}).get("default_secret_key")
    if not api_key:
        return None

    config = agent.config or {}
    shared = integration.config or {}
    if agent.provider == AgentProvider.VAPI:
        caller_id = config.get("phone_number_id") or shared.get(
            "shared_outbound_phone_number_id"
        )
    else:
        caller_id = agent.external_phone_number or shared.get(
            "shared_outbound_phone_number"
        )
    if not caller_id:
        return None
    return OutboundCaller(api_key=api_key, caller_id=caller_id)


async def place_outbound_call(
    agent: AIAgent,
    caller: OutboundCaller,
    to_number: str,
    customer_name: str | None = None,
    metadata: dict[str, Any] | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> CallDispatchResult:
    """Dial ``to_number`` with ``agent`` and return the provider call ID."""
    if not agent.external_agent_id:
        return CallDispatchResult(success=False, error="Agent is not synced with provider")

    if agent.provider == AgentProvider.VAPI:
        client = VapiClient(caller.api_key, http_client=http_client)
        response = await client.create_call(
            agent.external_agent_id,
            caller.caller_id,
            to_number,
            customer_name=customer_name,
            metadata=metadata,
        )
        call_id_key = "id"
    else:
        client = RetellClient(caller.api_key, http_client=http_client)
        response = await client.create_phone_call(
            caller.caller_id,
            to_number,
            override_agent_id=agent.external_agent_id,
            metadata=metadata,
            dynamic_variables={"customer_name": customer_name} if customer_name else None,
        )
        call_id_key = "call_id"

    if not response.success:
        return CallDispatchResult(
            success=False, error=response.error, status_code=response.status_code
        )

    call_id = (response.data or {}).get(call_id_key)
    logger.info(f"Outbound call {call_id} placed to {to_number} via {agent.provider}")
    return CallDispatchResult(success=True, external_call_id=call_id)
