"""API tests for /w/{slug}/agents."""

import json
from uuid import uuid4

import pytest
from sqlalchemy import select

from control_plane.db.models import (
    AgentProvider,
    AIAgent,
    AuditLog,
    Conversation,
    ConversationStatus,
    SyncStatus,
    WorkspaceCredits,
    WorkspaceRole,
)


@pytest.fixture
async def vapi_integration(db, make, tenant):
    integration = await make.integration(
        tenant.partner, tenant.workspace, config={"shared_outbound_phone_number_id": "pn_1"}
    )
    await db.commit()
    return integration


async def _fund(db, workspace_id, balance_cents: int) -> None:
    credits = (
        await db.execute(
            select(WorkspaceCredits).where(WorkspaceCredits.workspace_id == workspace_id)
        )
    ).scalar_one()
    credits.balance_cents = balance_cents
    await db.commit()


AGENT = {
    "name": "Front Desk",
    "provider": "vapi",
    "config": {"system_prompt": "Greet callers.", "first_message": "Hi there"},
}


# =============================================================================
# CRUD + Sync
# =============================================================================


class TestCreateAgent:
    """Tests for POST /w/{slug}/agents."""

    async def test_creates_and_syncs(self, client, db, tenant, provider, vapi_integration):
        provider.add("POST", "/assistant", {"id": "asst_new"})

        response = await client.post(f"{tenant.base}/agents", json=AGENT, headers=tenant.headers)

        assert response.status_code == 201
        body = response.json()
        assert body["sync_success"] is True
        assert body["agent"]["external_agent_id"] == "asst_new"
        assert body["agent"]["sync_status"] == SyncStatus.SYNCED
        audit = (await db.execute(select(AuditLog.action))).scalars().all()
        assert audit == ["agent.created"]

    async def test_sync_failure_keeps_the_agent(self, client, db, tenant, provider, vapi_integration):
        provider.add("POST", "/assistant", {"message": "Invalid voice"}, 400)

        response = await client.post(f"{tenant.base}/agents", json=AGENT, headers=tenant.headers)

        assert response.status_code == 201
        body = response.json()
        assert body["sync_success"] is False
        assert body["sync_error"] == "Invalid voice"
        assert body["agent"]["sync_status"] == SyncStatus.ERROR
        assert len((await db.execute(select(AIAgent))).scalars().all()) == 1

    async def test_without_integration(self, client, tenant, provider):
        response = await client.post(f"{tenant.base}/agents", json=AGENT, headers=tenant.headers)

        assert response.status_code == 201
        assert response.json()["sync_success"] is False
        assert provider.requests == []

    async def test_unknown_department(self, client, tenant):
        response = await client.post(
            f"{tenant.base}/agents",
            json={**AGENT, "department_id": str(uuid4())},
            headers=tenant.headers,
        )
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "Department not found"

    async def test_member_cannot_create(self, client, tenant, member_headers):
        headers = await member_headers(WorkspaceRole.MEMBER)
        response = await client.post(f"{tenant.base}/agents", json=AGENT, headers=headers)
        assert response.status_code == 403


class TestUpdateDeleteAgent:
    async def test_update_patches_provider(
        self, client, db, make, tenant, provider, vapi_integration, member_headers
    ):
        agent = await make.agent(tenant.workspace)
        await db.commit()
        provider.add("PATCH", "/assistant/asst_123", {"id": "asst_123"})
        headers = await member_headers(WorkspaceRole.MEMBER)

        response = await client.patch(
            f"{tenant.base}/agents/{agent.id}", json={"name": "Night Desk"}, headers=headers
        )

        assert response.status_code == 200
        assert response.json()["agent"]["name"] == "Night Desk"
        assert len(provider.calls("PATCH", "/assistant/asst_123")) == 1

    async def test_delete_soft_deletes(self, client, db, make, tenant, provider, vapi_integration):
        agent = await make.agent(tenant.workspace)
        await db.commit()
        provider.add("DELETE", "/assistant/asst_123", {"id": "asst_123"})
        url = f"{tenant.base}/agents/{agent.id}"

        response = await client.delete(url, headers=tenant.headers)

        assert response.status_code == 204
        assert agent.deleted_at is not None
        assert agent.is_active is False
        assert (await client.get(url, headers=tenant.headers)).status_code == 404

    async def test_list_filters_by_provider(self, client, db, make, tenant):
        await make.agent(tenant.workspace, name="Vapi One")
        await make.agent(tenant.workspace, provider="retell", name="Retell One")
        await db.commit()

        response = await client.get(
            f"{tenant.base}/agents", params={"provider": "retell"}, headers=tenant.headers
        )

        assert [a["name"] for a in response.json()["data"]] == ["Retell One"]


# =============================================================================
# Outbound Calls
# =============================================================================


class TestOutboundCall:
    """Tests for POST /w/{slug}/agents/{id}/outbound-call."""

    @pytest.fixture
    async def agent(self, db, make, tenant, vapi_integration):
        agent = await make.agent(tenant.workspace)
        await db.commit()
        return agent

    async def test_places_call(self, client, db, tenant, agent, provider):
        await _fund(db, tenant.workspace_id, 500)
        provider.add("POST", "/call", {"id": "call_out_1"})

        response = await client.post(
            f"{tenant.base}/agents/{agent.id}/outbound-call",
            json={"phone_number": "+15551234567", "customer_name": "Ada"},
            headers=tenant.headers,
        )

        assert response.status_code == 201
        body = response.json()
        assert body["external_call_id"] == "call_out_1"
        assert body["status"] == ConversationStatus.INITIATED
        conversation = (await db.execute(select(Conversation))).scalar_one()
        assert conversation.phone_number == "+15551234567"
        assert conversation.direction == "outbound"

    async def test_requires_credits(self, client, tenant, agent, provider):
        response = await client.post(
            f"{tenant.base}/agents/{agent.id}/outbound-call",
            json={"phone_number": "+15551234567"},
            headers=tenant.headers,
        )

        assert response.status_code == 402
        assert response.json()["error"]["code"] == "INSUFFICIENT_CREDITS"
        assert provider.calls("POST", "/call") == []

    async def test_rejects_bad_number(self, client, tenant, agent):
        response = await client.post(
            f"{tenant.base}/agents/{agent.id}/outbound-call",
            json={"phone_number": "555-1234"},
            headers=tenant.headers,
        )
        assert response.status_code == 400

    async def test_unsynced_agent(self, client, db, make, tenant, vapi_integration):
        agent = await make.agent(tenant.workspace, external_agent_id=None)
        await db.commit()

        response = await client.post(
            f"{tenant.base}/agents/{agent.id}/outbound-call",
            json={"phone_number": "+15551234567"},
            headers=tenant.headers,
        )

        assert response.status_code == 400
        assert "synced" in response.json()["error"]["message"]

    async def test_provider_rejection(self, client, db, tenant, agent, provider):
        await _fund(db, tenant.workspace_id, 500)
        provider.add("POST", "/call", {"message": "Number not allowed"}, 400)

        response = await client.post(
            f"{tenant.base}/agents/{agent.id}/outbound-call",
            json={"phone_number": "+15551234567"},
            headers=tenant.headers,
        )

        assert response.status_code == 502
        assert response.json()["error"]["code"] == "EXTERNAL_SERVICE_ERROR"
        assert (await db.execute(select(Conversation))).scalars().all() == []


# =============================================================================
# Webhook URLs
# =============================================================================


@pytest.fixture
def public_url(monkeypatch):
    monkeypatch.setenv("PUBLIC_API_URL", "https://api.test")
    return "https://api.test/webhooks/vapi"


class TestWebhookStatus:
    """Tests for GET /w/{slug}/agents/webhook-status."""

    async def test_flags_dev_tunnel_urls(
        self, client, db, make, tenant, provider, vapi_integration, public_url
    ):
        await make.agent(tenant.workspace, name="Live", external_agent_id="asst_live")
        await make.agent(tenant.workspace, name="Stale", external_agent_id="asst_dev")
        await make.agent(tenant.workspace, name="Draft", external_agent_id=None)
        await make.agent(
            tenant.workspace, provider=AgentProvider.RETELL, external_agent_id="ag_1"
        )
        await db.commit()
        provider.add("GET", "/assistant/asst_live", {"serverUrl": public_url + "/"})
        provider.add(
            "GET", "/assistant/asst_dev", {"serverUrl": "https://ab12.ngrok.io/webhooks/vapi"}
        )

        response = await client.get(f"{tenant.base}/agents/webhook-status", headers=tenant.headers)

        assert response.status_code == 200
        body = response.json()
        assert body["expected_url"] == public_url
        assert body["needs_resync_count"] == 1
        by_name = {a["name"]: a for a in body["agents"]}
        assert set(by_name) == {"Live", "Stale", "Draft"}
        assert by_name["Live"]["needs_resync"] is False
        assert by_name["Stale"]["needs_resync"] is True
        assert by_name["Stale"]["current_url"].startswith("https://ab12.ngrok.io")
        assert by_name["Draft"]["error"] == "Agent not synced to VAPI"

    async def test_missing_assistant_needs_resync(
        self, client, db, make, tenant, provider, vapi_integration, public_url
    ):
        await make.agent(tenant.workspace)
        await db.commit()

        response = await client.get(f"{tenant.base}/agents/webhook-status", headers=tenant.headers)

        agent = response.json()["agents"][0]
        assert agent["needs_resync"] is True
        assert agent["error"].startswith("No stub")

    async def test_without_integration(self, client, db, make, tenant, provider, public_url):
        await make.agent(tenant.workspace)
        await db.commit()

        response = await client.get(f"{tenant.base}/agents/webhook-status", headers=tenant.headers)

        assert response.json()["agents"][0]["error"] == "No VAPI API key configured"
        assert provider.requests == []


class TestResyncWebhooks:
    """Tests for POST /w/{slug}/agents/resync-webhooks."""

    async def test_pushes_only_mismatched_agents(
        self, client, db, make, tenant, provider, vapi_integration, public_url
    ):
        await make.agent(tenant.workspace, name="Live", external_agent_id="asst_live")
        stale = await make.agent(tenant.workspace, name="Stale", external_agent_id="asst_dev")
        await db.commit()
        provider.add("GET", "/assistant/asst_live", {"serverUrl": public_url})
        provider.add(
            "GET", "/assistant/asst_dev", {"serverUrl": "http://localhost:8000/webhooks/vapi"}
        )
        provider.add("PATCH", "/assistant/asst_dev", {"id": "asst_dev"})

        response = await client.post(
            f"{tenant.base}/agents/resync-webhooks", headers=tenant.headers
        )

        assert response.status_code == 200
        body = response.json()
        assert (body["resynced"], body["skipped"], body["failed"]) == (1, 1, 0)
        patch = provider.calls("PATCH", "/assistant/asst_dev")
        assert len(patch) == 1
        assert json.loads(patch[0].content)["serverUrl"] == public_url
        assert provider.calls("PATCH", "/assistant/asst_live") == []
        audit = (await db.execute(select(AuditLog))).scalar_one()
        assert audit.action == "agent.webhooks_resynced"
        assert audit.new_values == {"agent_ids": [str(stale.id)]}

    async def test_force_pushes_selected_agents(
        self, client, db, make, tenant, provider, vapi_integration, public_url
    ):
        chosen = await make.agent(tenant.workspace, external_agent_id="asst_a")
        await make.agent(tenant.workspace, external_agent_id="asst_b")
        await db.commit()
        provider.add("PATCH", "/assistant/asst_a", {"id": "asst_a"})

        response = await client.post(
            f"{tenant.base}/agents/resync-webhooks",
            json={"agent_ids": [str(chosen.id)], "force": True},
            headers=tenant.headers,
        )

        assert response.json()["resynced"] == 1
        assert provider.calls("GET", "/assistant/asst_a") == []
        assert provider.calls("PATCH", "/assistant/asst_b") == []

    async def test_requires_api_key(self, client, db, make, tenant, public_url):
        await make.agent(tenant.workspace)
        await db.commit()

        response = await client.post(
            f"{tenant.base}/agents/resync-webhooks", headers=tenant.headers
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == (
            "No VAPI API key configured for this workspace"
        )

    async def test_member_cannot_resync(self, client, tenant, member_headers):
        headers = await member_headers(WorkspaceRole.MEMBER)

        response = await client.post(f"{tenant.base}/agents/resync-webhooks", headers=headers)

        assert response.status_code == 403


# =============================================================================
# Phone Numbers
# =============================================================================


class TestPhoneNumber:
    """Tests for /w/{slug}/agents/{id}/phone-number."""

    @pytest.fixture
    async def agent(self, db, make, tenant, vapi_integration):
        agent = await make.agent(tenant.workspace)
        await db.commit()
        return agent

    async def test_provisions_and_attaches(self, client, db, tenant, agent, provider):
        provider.add("POST", "/phone-number", {"id": "pn_free", "status": "activating"})
        provider.add("PATCH", "/phone-number/pn_free", {"id": "pn_free"})

        response = await client.post(
            f"{tenant.base}/agents/{agent.id}/phone-number", headers=tenant.headers
        )

        assert response.status_code == 201
        body = response.json()
        assert body["phone_number"] is None
        assert body["display_number"] == "sip:pn_free@sip.vapi.ai"
        assert body["attached"] is True
        attach = provider.calls("PATCH", "/phone-number/pn_free")[0]
        assert json.loads(attach.content) == {"assistantId": "asst_123"}
        await db.refresh(agent)
        assert agent.config["phone_number_id"] == "pn_free"
        assert agent.external_phone_number == "sip:pn_free@sip.vapi.ai"

    async def test_provisioned_number_dials_out(self, client, db, tenant, agent, provider):
        provider.add("POST", "/phone-number", {"id": "pn_own", "number": "+15550001111"})
        provider.add("PATCH", "/phone-number/pn_own", {"id": "pn_own"})
        provider.add("POST", "/call", {"id": "call_1"})
        await _fund(db, tenant.workspace_id, 500)

        await client.post(f"{tenant.base}/agents/{agent.id}/phone-number", headers=tenant.headers)
        await client.post(
            f"{tenant.base}/agents/{agent.id}/outbound-call",
            json={"phone_number": "+15551234567"},
            headers=tenant.headers,
        )

        call = provider.calls("POST", "/call")[0]
        assert json.loads(call.content)["phoneNumberId"] == "pn_own"

    async def test_already_assigned(self, client, db, tenant, agent, provider):
        agent.config = {**agent.config, "phone_number_id": "pn_old"}
        await db.commit()

        response = await client.post(
            f"{tenant.base}/agents/{agent.id}/phone-number", headers=tenant.headers
        )

        assert response.status_code == 400
        assert provider.calls("POST", "/phone-number") == []

    async def test_provider_failure(self, client, db, tenant, agent, provider):
        provider.add("POST", "/phone-number", {"message": "Free number limit reached"}, 400)

        response = await client.post(
            f"{tenant.base}/agents/{agent.id}/phone-number", headers=tenant.headers
        )

        assert response.status_code == 502
        assert "Free number limit reached" in response.json()["error"]["message"]

    async def test_retell_agents_rejected(self, client, db, make, tenant):
        agent = await make.agent(tenant.workspace, provider=AgentProvider.RETELL)
        await db.commit()

        response = await client.get(
            f"{tenant.base}/agents/{agent.id}/phone-number", headers=tenant.headers
        )

        assert response.status_code == 400

    async def test_status_lists_account_numbers(self, client, db, tenant, agent, provider):
        agent.config = {**agent.config, "phone_number_id": "pn_1"}
        await db.commit()
        provider.add("GET", "/phone-number/pn_1", {"id": "pn_1", "status": "active"})
        provider.add(
            "GET",
            "/phone-number",
            [
                {"id": "pn_1", "assistantId": "asst_123", "status": "active"},
                {"id": "pn_2", "number": "+15550002222", "assistantId": None},
            ],
        )

        response = await client.get(
            f"{tenant.base}/agents/{agent.id}/phone-number", headers=tenant.headers
        )

        body = response.json()
        assert body["current_phone_number"] == "sip:pn_1@sip.vapi.ai"
        assert body["is_assigned"] is True
        assert body["provider_status"] == "active"
        assert [n["is_assigned_to_this_agent"] for n in body["available_numbers"]] == [
            True,
            False,
        ]

    async def test_release_detaches(self, client, db, tenant, agent, provider):
        agent.config = {**agent.config, "phone_number_id": "pn_1"}
        agent.external_phone_number = "+15550001111"
        await db.commit()
        provider.add("PATCH", "/phone-number/pn_1", {"id": "pn_1"})

        response = await client.delete(
            f"{tenant.base}/agents/{agent.id}/phone-number", headers=tenant.headers
        )

        assert response.status_code == 204
        assert json.loads(provider.calls("PATCH", "/phone-number/pn_1")[0].content) == {
            "assistantId": None
        }
        await db.refresh(agent)
        assert "phone_number_id" not in agent.config
        assert agent.external_phone_number is None
