"""Mirror agent rows onto their VAPI or Retell counterparts.

``safe_sync`` never raises: the outcome is written onto the agent row
(``sync_status``, ``last_sync_error``) and returned as a SyncResult.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from uuid import UUID

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.db.models import (
    AgentProvider,
    AIAgent,
    PartnerIntegration,
    SyncStatus,
    WorkspaceIntegrationAssignment,
    utcnow,
)
from control_plane.integrations.retell import (
    RetellClient,
    build_retell_agent_payload,
    build_retell_llm_payload,
)
from control_plane.integrations.vapi import (
    VapiClient,
    build_vapi_assistant_payload,
    vapi_webhook_url,
)

logger = logging.getLogger("control-plane.sync")


class SyncOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class SyncResult:
    success: bool
    external_agent_id: str | None = None
    external_llm_id: str | None = None
    error: str | None = None


# =============================================================================
# Credentials
# =============================================================================


async def get_workspace_integration(
    db: AsyncSession, workspace_id: UUID, provider: str
) -> PartnerIntegration | None:
    """Active partner integration assigned to the workspace for ``provider``."""
    return (
        await db.execute(
            select(PartnerIntegration)
            .join(
                WorkspaceIntegrationAssignment,
                WorkspaceIntegrationAssignment.partner_integration_id
                == PartnerIntegration.id,
            )
            .where(WorkspaceIntegrationAssignment.workspace_id == workspace_id)
            .where(WorkspaceIntegrationAssignment.provider == provider)
            .where(PartnerIntegration.is_active.is_(True))
        )
    ).scalar_one_or_none()


async def get_provider_api_key(
    db: AsyncSession, workspace_id: UUID, provider: str
) -> str | None:
    integration = await get_workspace_integration(db, workspace_id, provider)
    if integration is None:
        return None
    key = (integration.api_keys or {}).get("default_secret_key")
    return key or None


# =============================================================================
# Provider Operations
# =============================================================================


async def sync_vapi_agent(
    agent: AIAgent, operation: SyncOperation, client: VapiClient
) -> SyncResult:
    if operation == SyncOperation.DELETE:
        if not agent.external_agent_id:
            return SyncResult(success=True)
        response = await client.delete_assistant(agent.external_agent_id)
        return SyncResult(success=response.success, error=response.error)

    payload = build_vapi_assistant_payload(agent)
    if operation == SyncOperation.UPDATE and agent.external_agent_id:
        response = await client.update_assistant(agent.external_agent_id, payload)
        if response.success:
            return SyncResult(success=True, external_agent_id=response.data.get("id"))
        logger.info(
            f"Update of VAPI assistant {agent.external_agent_id} failed "
            f"({response.error}), creating a new one"
        )

    response = await client.create_assistant(payload)
    if not response.success:
        return SyncResult(success=False, error=response.error)
    return SyncResult(success=True, external_agent_id=response.data.get("id"))


async def sync_retell_agent(
    agent: AIAgent, operation: SyncOperation, client: RetellClient
) -> SyncResult:
    if operation == SyncOperation.DELETE:
        if not agent.external_agent_id:
            return SyncResult(success=True)
        response = await client.delete_agent(agent.external_agent_id)
        if response.success and agent.external_llm_id:
            llm_response = await client.delete_llm(agent.external_llm_id)
            if not llm_response.success:
                logger.warning(
                    f"Retell agent deleted but LLM {agent.external_llm_id} was not: "
                    f"{llm_response.error}"
                )
        return SyncResult(success=response.success, error=response.error)

    llm_payload = build_retell_llm_payload(agent)
    if operation == SyncOperation.UPDATE and agent.external_agent_id and agent.external_llm_id:
        llm_response = await client.update_llm(agent.external_llm_id, llm_payload)
        if llm_response.success:
            agent_response = await client.update_agent(
                agent.external_agent_id,
                build_retell_agent_payload(agent, agent.external_llm_id),
            )
            if agent_response.success:
                return SyncResult(
                    success=True,
                    external_agent_id=agent.external_agent_id,
                    external_llm_id=agent.external_llm_id,
                )
        logger.info(f"Update of Retell agent {agent.external_agent_id} failed, recreating")

    llm_response = await client.create_llm(llm_payload)
    if not llm_response.success:
        return SyncResult(success=False, error=llm_response.error)
    llm_id = llm_response.data.get("llm_id")

    agent_response = await client.create_agent(build_retell_agent_payload(agent, llm_id))
    if not agent_response.success:
        return SyncResult(success=False, external_llm_id=llm_id, error=agent_response.error)
    return SyncResult(
        success=True,
        external_agent_id=agent_response.data.get("agent_id"),
        external_llm_id=llm_id,
    )


# =============================================================================
# Entry Point
# =============================================================================


async def safe_sync(
    db: AsyncSession,
    agent: AIAgent,
    operation: SyncOperation = SyncOperation.CREATE,
    http_client: httpx.AsyncClient | None = None,
) -> SyncResult:
    """Sync one agent and record the outcome on the row.

    Args:
        db: Database session.
        agent: Agent to sync.
        operation: create, update or delete.
        http_client: Injected HTTP client (tests use a mock transport).
    """
    logger.info(f"Starting {operation.value} sync for agent {agent.id} ({agent.provider})")

    try:
        provider = AgentProvider(agent.provider)
    except ValueError:
        return SyncResult(success=False, error=f"Unsupported provider: {agent.provider}")

    api_key = await get_provider_api_key(db, agent.workspace_id, provider)
    if not api_key:
        result = SyncResult(
            success=False,
            error=(
                f"No {provider.value.upper()} API key configured. "
                "Please assign an API key in the agent settings."
            ),
        )
    else:
        try:
            if provider == AgentProvider.VAPI:
                result = await sync_vapi_agent(
                    agent, operation, VapiClient(api_key, http_client=http_client)
                )
            else:
                result = await sync_retell_agent(
                    agent, operation, RetellClient(api_key, http_client=http_client)
                )
        except Exception as e:
            logger.exception(f"Unexpected error syncing agent {agent.id}")
            result = SyncResult(success=False, error=str(e) or "Unknown error")

    if operation == SyncOperation.DELETE:
        if result.success:
            agent.external_agent_id = None
            agent.external_llm_id = None
            agent.sync_status = SyncStatus.NOT_SYNCED
        else:
            agent.last_sync_error = result.error
    elif result.success:
        agent.external_agent_id = result.external_agent_id or agent.external_agent_id
        agent.external_llm_id = result.external_llm_id or agent.external_llm_id
        agent.sync_status = SyncStatus.SYNCED
        agent.last_synced_at = utcnow()
        agent.last_sync_error = None
    else:
        agent.sync_status = SyncStatus.ERROR
        agent.last_sync_error = result.error

    await db.flush()
    logger.info(
        f"{operation.value} sync for agent {agent.id}: success={result.success}, "
        f"error={result.error or 'none'}"
    )
    return result


# =============================================================================
# Webhook URL Checks
# =============================================================================

_DEV_TUNNEL_MARKERS = ("localhost", "127.0.0.1", "ngrok")


@dataclass
class WebhookCheck:
    needs_resync: bool
    current_url: str | None = None
    error: str | None = None


def webhook_url_needs_resync(current_url: str | None, expected_url: str) -> bool:
    """True when the provider posts somewhere other than this deployment.

    Agents synced from a dev machine keep a localhost or ngrok ``serverUrl``
    until they are pushed again.
    """
    current = (current_url or "").rstrip("/").lower()
    if any(marker in current for marker in _DEV_TUNNEL_MARKERS):
        return True
    return current != expected_url.rstrip("/").lower()


async def check_vapi_webhook(agent: AIAgent, client: VapiClient) -> WebhookCheck:
    response = await client.get_assistant(agent.external_agent_id)
    if not response.success:
        return WebhookCheck(needs_resync=True, error=response.error)
    current_url = (response.data or {}).get("serverUrl")
    return WebhookCheck(
        needs_resync=webhook_url_needs_resync(current_url, vapi_webhook_url()),
        current_url=current_url,
    )
