"""Tests for provider clients, agent sync and outbound call dispatch."""

import json

import pytest

from control_plane.config import Settings
from control_plane.db.models import AgentProvider, SyncStatus
from control_plane.integrations.base import ProviderClient
from control_plane.integrations.calls import (
    CallDispatchResult,
    OutboundCaller,
    place_outbound_call,
    resolve_outbound_caller,
)
from control_plane.integrations.retell import (
    build_retell_agent_payload,
    build_retell_llm_payload,
)
from control_plane.integrations.sync import (
    SyncOperation,
    get_provider_api_key,
    safe_sync,
    webhook_url_needs_resync,
)
from control_plane.integrations.vapi import (
    build_vapi_assistant_payload,
    vapi_sip_uri,
    vapi_webhook_url,
)

SETTINGS = Settings(public_api_url="https://api.test")


@pytest.fixture
async def workspace(make):
    partner = await make.partner()
    workspace = await make.workspace(partner)
    return partner, workspace


def body(request) -> dict:
    return json.loads(request.content)


# =============================================================================
# Payload Mapping
# =============================================================================


class TestVapiPayload:
    """Tests for mapping agent config onto a VAPI assistant."""

    async def test_defaults_and_webhook(self, make, workspace):
        _, ws = workspace
        agent = await make.agent(ws, config={"system_prompt": "Be brief."})

        payload = build_vapi_assistant_payload(agent, SETTINGS)

        assert payload["name"] == "Sales Agent"
        assert payload["model"]["messages"] == [{"role": "system", "content": "Be brief."}]
        assert payload["model"]["model"] == "gpt-4o"
        assert payload["voice"] == {"provider": "11labs", "voiceId": "burt"}
        assert payload["serverUrl"] == "https://api.test/webhooks/vapi"
        assert payload["metadata"]["agent_id"] == str(agent.id)
        assert "firstMessage" not in payload

    async def test_long_names_are_truncated(self, make, workspace):
        _, ws = workspace
        agent = await make.agent(ws, name="x" * 60)
        assert len(build_vapi_assistant_payload(agent, SETTINGS)["name"]) == 40

    async def test_config_overrides(self, make, workspace):
        _, ws = workspace
        agent = await make.agent(
            ws,
            config={
                "system_prompt": "Hi",
                "first_message": "Hello there",
                "model": {"provider": "groq", "model": "llama-3.1-8b-instant", "temperature": 0.2},
                "voice": {"provider": "playht", "voice_id": "jennifer"},
                "max_duration_seconds": 600,
            },
        )

        payload = build_vapi_assistant_payload(agent, SETTINGS)

        assert payload["firstMessage"] == "Hello there"
        assert payload["model"]["provider"] == "groq"
        assert payload["model"]["temperature"] == 0.2
        assert payload["voice"]["voiceId"] == "jennifer"
        assert payload["maxDurationSeconds"] == 600


class TestWebhookUrls:
    def test_webhook_url_follows_public_url(self):
        assert vapi_webhook_url(SETTINGS) == "https://api.test/webhooks/vapi"

    @pytest.mark.parametrize(
        ("current", "needs_resync"),
        [
            ("https://api.test/webhooks/vapi", False),
            ("HTTPS://API.TEST/webhooks/vapi/", False),
            ("https://old.example.com/webhooks/vapi", True),
            ("http://localhost:8000/webhooks/vapi", True),
            ("https://3f2a.ngrok-free.app/webhooks/vapi", True),
            (None, True),
        ],
    )
    def test_needs_resync(self, current, needs_resync):
        expected = "https://api.test/webhooks/vapi"
        assert webhook_url_needs_resync(current, expected) is needs_resync

    def test_dev_expected_url_still_flags_tunnels(self):
        # A local deployment cannot tell a stale localhost URL from its own
        assert webhook_url_needs_resync(
            "http://localhost:8000/webhooks/vapi", "http://localhost:8000/webhooks/vapi"
        )

    def test_free_numbers_get_a_sip_uri(self):
        assert vapi_sip_uri({"id": "pn_1"}) == "sip:pn_1@sip.vapi.ai"
        assert vapi_sip_uri({"id": "pn_1", "sipUri": "sip:desk@x.test"}) == "sip:desk@x.test"


class TestRetellPayload:
    async def test_llm_payload(self, make, workspace):
        _, ws = workspace
        agent = await make.agent(
            ws,
            provider=AgentProvider.RETELL,
            config={"system_prompt": "Qualify leads", "first_message": "Hi!"},
        )

        payload = build_retell_llm_payload(agent)

        assert payload == {
            "general_prompt": "Qualify leads",
            "model": "gpt-4o",
            "begin_message": "Hi!",
        }

    async def test_agent_payload_points_at_llm(self, make, workspace):
        _, ws = workspace
        agent = await make.agent(
            ws, provider=AgentProvider.RETELL, config={"max_duration_seconds": 120}
        )

        payload = build_retell_agent_payload(agent, "llm_1", SETTINGS)

        assert payload["response_engine"] == {"type": "retell-llm", "llm_id": "llm_1"}
        assert payload["webhook_url"] == "https://api.test/webhooks/retell"
        assert payload["max_call_duration_ms"] == 120_000


# =============================================================================
# Provider Client
# =============================================================================


class TestProviderClient:
    """Tests for the shared JSON client."""

    async def test_sends_bearer_token(self, provider, http_client):
        provider.add("GET", "/ping", {"ok": True})
        client = ProviderClient("sk_abc", "https://api.example.com/", http_client)

        response = await client.request("GET", "/ping")

        assert response.success
        assert response.data == {"ok": True}
        assert provider.requests[0].headers["Authorization"] == "Bearer sk_abc"

    async def test_error_message_from_body(self, provider, http_client):
        provider.add("POST", "/thing", {"message": ["name is required", "bad voice"]}, 400)
        client = ProviderClient("sk", "https://api.example.com", http_client)

        response = await client.request("POST", "/thing", {})

        assert not response.success
        assert response.status_code == 400
        assert response.error == "name is required; bad voice"

    async def test_generic_error_message(self, provider, http_client):
        provider.add("POST", "/thing", None, 403)
        client = ProviderClient("sk", "https://api.example.com", http_client)
        client.provider_name = "VAPI"

        response = await client.request("POST", "/thing", {})
        assert response.error == "VAPI API error: 403 Forbidden"


# =============================================================================
# safe_sync
# =============================================================================


class TestSyncVapi:
    """Tests for mirroring agents onto VAPI assistants."""

    async def test_create_stores_assistant_id(self, db, make, workspace, provider, http_client):
        partner, ws = workspace
        await make.integration(partner, ws)
        agent = await make.agent(ws, external_agent_id=None)
        provider.add("POST", "/assistant", {"id": "asst_new"})

        result = await safe_sync(db, agent, SyncOperation.CREATE, http_client)

        assert result.success
        assert agent.external_agent_id == "asst_new"
        assert agent.sync_status == SyncStatus.SYNCED
        assert agent.last_synced_at is not None
        request = provider.calls("POST", "/assistant")[0]
        assert request.headers["Authorization"] == "Bearer sk_test_provider"
        assert body(request)["name"] == "Sales Agent"

    async def test_update_patches_existing(self, db, make, workspace, provider, http_client):
        partner, ws = workspace
        await make.integration(partner, ws)
        agent = await make.agent(ws, external_agent_id="asst_123")
        provider.add("PATCH", "/assistant/asst_123", {"id": "asst_123"})

        result = await safe_sync(db, agent, SyncOperation.UPDATE, http_client)

        assert result.success
        assert provider.calls("POST", "/assistant") == []
        assert agent.external_agent_id == "asst_123"

    async def test_failed_update_falls_back_to_create(
        self, db, make, workspace, provider, http_client
    ):
        partner, ws = workspace
        await make.integration(partner, ws)
        agent = await make.agent(ws, external_agent_id="asst_gone")
        provider.add("PATCH", "/assistant/asst_gone", {"message": "Not found"}, 404)
        provider.add("POST", "/assistant", {"id": "asst_fresh"})

        result = await safe_sync(db, agent, SyncOperation.UPDATE, http_client)

        assert result.success
        assert agent.external_agent_id == "asst_fresh"

    async def test_provider_error_is_recorded(self, db, make, workspace, provider, http_client):
        partner, ws = workspace
        await make.integration(partner, ws)
        agent = await make.agent(ws, external_agent_id=None)
        provider.add("POST", "/assistant", {"message": "Invalid voice"}, 400)

        result = await safe_sync(db, agent, SyncOperation.CREATE, http_client)

        assert not result.success
        assert agent.sync_status == SyncStatus.ERROR
        assert agent.last_sync_error == "Invalid voice"

    async def test_delete_clears_ids(self, db, make, workspace, provider, http_client):
        partner, ws = workspace
        await make.integration(partner, ws)
        agent = await make.agent(ws, external_agent_id="asst_123")
        provider.add("DELETE", "/assistant/asst_123", {"id": "asst_123"})

        result = await safe_sync(db, agent, SyncOperation.DELETE, http_client)

        assert result.success
        assert agent.external_agent_id is None
        assert agent.sync_status == SyncStatus.NOT_SYNCED

    async def test_missing_api_key(self, db, make, workspace, provider, http_client):
        _, ws = workspace
        agent = await make.agent(ws, external_agent_id=None)

        result = await safe_sync(db, agent, SyncOperation.CREATE, http_client)

        assert not result.success
        assert result.error == (
            "No VAPI API key configured. Please assign an API key in the agent settings."
        )
        assert agent.sync_status == SyncStatus.ERROR
        assert provider.requests == []

    async def test_inactive_integration_has_no_key(self, db, make, workspace):
        partner, ws = workspace
        integration = await make.integration(partner, ws)
        assert await get_provider_api_key(db, ws.id, "vapi") == "sk_test_provider"

        integration.is_active = False
        await db.flush()
        assert await get_provider_api_key(db, ws.id, "vapi") is None


class TestSyncRetell:
    """Tests for the two-step Retell LLM + agent sync."""

    async def test_create_makes_llm_then_agent(self, db, make, workspace, provider, http_client):
        partner, ws = workspace
        await make.integration(partner, ws, provider=AgentProvider.RETELL)
        agent = await make.agent(ws, provider=AgentProvider.RETELL, external_agent_id=None)
        provider.add("POST", "/create-retell-llm", {"llm_id": "llm_1"})
        provider.add("POST", "/create-agent", {"agent_id": "agent_1"})

        result = await safe_sync(db, agent, SyncOperation.CREATE, http_client)

        assert result.success
        assert agent.external_agent_id == "agent_1"
        assert agent.external_llm_id == "llm_1"
        agent_body = body(provider.calls("POST", "/create-agent")[0])
        assert agent_body["response_engine"]["llm_id"] == "llm_1"

    async def test_agent_failure_keeps_llm_id(self, db, make, workspace, provider, http_client):
        partner, ws = workspace
        await make.integration(partner, ws, provider=AgentProvider.RETELL)
        agent = await make.agent(ws, provider=AgentProvider.RETELL, external_agent_id=None)
        provider.add("POST", "/create-retell-llm", {"llm_id": "llm_1"})
        provider.add("POST", "/create-agent", {"error": "voice not found"}, 422)

        result = await safe_sync(db, agent, SyncOperation.CREATE, http_client)

        assert not result.success
        assert result.external_llm_id == "llm_1"
        assert agent.last_sync_error == "voice not found"

    async def test_update_patches_both(self, db, make, workspace, provider, http_client):
        partner, ws = workspace
        await make.integration(partner, ws, provider=AgentProvider.RETELL)
        agent = await make.agent(
            ws, provider=AgentProvider.RETELL, external_agent_id="agent_1", external_llm_id="llm_1"
        )
        provider.add("PATCH", "/update-retell-llm/llm_1", {"llm_id": "llm_1"})
        provider.add("PATCH", "/update-agent/agent_1", {"agent_id": "agent_1"})

        result = await safe_sync(db, agent, SyncOperation.UPDATE, http_client)

        assert result.success
        assert provider.calls("POST", "/create-agent") == []

    async def test_delete_removes_agent_and_llm(self, db, make, workspace, provider, http_client):
        partner, ws = workspace
        await make.integration(partner, ws, provider=AgentProvider.RETELL)
        agent = await make.agent(
            ws, provider=AgentProvider.RETELL, external_agent_id="agent_1", external_llm_id="llm_1"
        )
        provider.add("DELETE", "/delete-agent/agent_1", {})
        provider.add("DELETE", "/delete-retell-llm/llm_1", {})

        result = await safe_sync(db, agent, SyncOperation.DELETE, http_client)

        assert result.success
        assert agent.external_llm_id is None
        assert len(provider.calls("DELETE", "/delete-retell-llm/llm_1")) == 1


# =============================================================================
# Outbound Calls
# =============================================================================


class TestOutboundCalls:
    """Tests for resolving caller IDs and placing calls."""

    async def test_vapi_uses_agent_phone_number_id(self, db, make, workspace):
        partner, ws = workspace
        await make.integration(
            partner, ws, config={"shared_outbound_phone_number_id": "pn_shared"}
        )
        agent = await make.agent(ws, config={"phone_number_id": "pn_agent"})

        caller = await resolve_outbound_caller(db, agent)
        assert caller == OutboundCaller(api_key="sk_test_provider", caller_id="pn_agent")

    async def test_retell_falls_back_to_shared_number(self, db, make, workspace):
        partner, ws = workspace
        await make.integration(
            partner,
            ws,
            provider=AgentProvider.RETELL,
            config={"shared_outbound_phone_number": "+15550000000"},
        )
        agent = await make.agent(ws, provider=AgentProvider.RETELL)

        caller = await resolve_outbound_caller(db, agent)
        assert caller.caller_id == "+15550000000"

    async def test_no_caller_id(self, db, make, workspace):
        partner, ws = workspace
        await make.integration(partner, ws)
        agent = await make.agent(ws)
        assert await resolve_outbound_caller(db, agent) is None

    async def test_vapi_call(self, make, workspace, provider, http_client):
        _, ws = workspace
        agent = await make.agent(ws, external_agent_id="asst_123")
        provider.add("POST", "/call", {"id": "call_abc"})

        result = await place_outbound_call(
            agent,
            OutboundCaller("sk", "pn_1"),
            "+15551234567",
            customer_name="Ada",
            http_client=http_client,
        )

        assert result == CallDispatchResult(success=True, external_call_id="call_abc")
        sent = body(provider.calls("POST", "/call")[0])
        assert sent["assistantId"] == "asst_123"
        assert sent["customer"] == {"number": "+15551234567", "name": "Ada"}

    async def test_retell_call(self, make, workspace, provider, http_client):
        _, ws = workspace
        agent = await make.agent(ws, provider=AgentProvider.RETELL, external_agent_id="agent_1")
        provider.add("POST", "/v2/create-phone-call", {"call_id": "rc_1"})

        result = await place_outbound_call(
            agent, OutboundCaller("sk", "+15550000000"), "+15551234567", http_client=http_client
        )

        assert result.external_call_id == "rc_1"
        sent = body(provider.calls("POST", "/v2/create-phone-call")[0])
        assert sent["override_agent_id"] == "agent_1"
        assert sent["from_number"] == "+15550000000"

    async def test_unsynced_agent(self, make, workspace, http_client):
        _, ws = workspace
        agent = await make.agent(ws, external_agent_id=None)
        result = await place_outbound_call(
            agent, OutboundCaller("sk", "pn_1"), "+15551234567", http_client=http_client
        )
        assert result.error == "Agent is not synced with provider"

    def test_concurrency_detection(self):
        assert CallDispatchResult(False, status_code=429).is_concurrency_limit
        assert CallDispatchResult(False, error="Too many concurrent calls").is_concurrency_limit
        assert not CallDispatchResult(False, error="Invalid number", status_code=400).is_concurrency_limit
