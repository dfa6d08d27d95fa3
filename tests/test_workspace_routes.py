"""API tests for departments, leads and conversations."""

from decimal import Decimal

import pytest

from control_plane.db.models import CallDirection, ConversationStatus, Lead, WorkspaceRole


# =============================================================================
# Departments
# =============================================================================


class TestDepartments:
    async def test_create_slugifies_name(self, client, tenant):
        response = await client.post(
            f"{tenant.base}/departments",
            json={"name": "Customer Success", "description": "Renewals"},
            headers=tenant.headers,
        )

        assert response.status_code == 201
        assert response.json()["slug"] == "customer-success"

    async def test_duplicate_slug(self, client, tenant):
        url = f"{tenant.base}/departments"
        await client.post(url, json={"name": "Sales"}, headers=tenant.headers)

        response = await client.post(url, json={"name": "SALES"}, headers=tenant.headers)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "CONFLICT"

    async def test_list_sorted_by_name(self, client, tenant):
        url = f"{tenant.base}/departments"
        for name in ("Support", "Billing"):
            await client.post(url, json={"name": name}, headers=tenant.headers)

        response = await client.get(url, headers=tenant.headers)

        assert [d["name"] for d in response.json()["data"]] == ["Billing", "Support"]

    async def test_deleted_department_is_gone(self, client, tenant):
        url = f"{tenant.base}/departments"
        created = await client.post(url, json={"name": "Support"}, headers=tenant.headers)
        department_id = created.json()["id"]

        deleted = await client.delete(f"{url}/{department_id}", headers=tenant.headers)

        assert deleted.status_code == 204
        assert (await client.get(f"{url}/{department_id}", headers=tenant.headers)).status_code == 404

    async def test_member_cannot_manage(self, client, tenant, member_headers):
        headers = await member_headers(WorkspaceRole.MEMBER)
        response = await client.post(
            f"{tenant.base}/departments", json={"name": "Sales"}, headers=headers
        )
        assert response.status_code == 403


# =============================================================================
# Leads
# =============================================================================


class TestLeads:
    """Tests for /w/{slug}/leads."""

    @pytest.fixture
    async def leads(self, db, tenant):
        rows = [
            Lead(workspace_id=tenant.workspace_id, first_name="Ada", company="Initech"),
            Lead(workspace_id=tenant.workspace_id, first_name="Grace", status="qualified"),
        ]
        db.add_all(rows)
        await db.commit()
        return rows

    async def test_create(self, client, db, tenant, member_headers):
        headers = await member_headers(WorkspaceRole.MEMBER)

        response = await client.post(
            f"{tenant.base}/leads",
            json={"first_name": "Ada", "phone": "+14155551234", "source": "website"},
            headers=headers,
        )

        assert response.status_code == 201
        assert response.json()["status"] == "new"

    async def test_rejects_bad_phone_and_status(self, client, tenant):
        url = f"{tenant.base}/leads"
        bad_phone = await client.post(url, json={"phone": "4155551234"}, headers=tenant.headers)
        bad_status = await client.post(url, json={"status": "hot"}, headers=tenant.headers)

        assert bad_phone.status_code == 422
        assert bad_status.status_code == 422

    async def test_search_and_filter(self, client, tenant, leads):
        url = f"{tenant.base}/leads"

        by_company = await client.get(url, params={"search": "init"}, headers=tenant.headers)
        by_status = await client.get(url, params={"status": "qualified"}, headers=tenant.headers)

        assert [lead["first_name"] for lead in by_company.json()["data"]] == ["Ada"]
        assert [lead["first_name"] for lead in by_status.json()["data"]] == ["Grace"]

    async def test_update(self, client, tenant, leads):
        response = await client.patch(
            f"{tenant.base}/leads/{leads[0].id}",
            json={"status": "contacted", "notes": "Call back Friday"},
            headers=tenant.headers,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "contacted"
        assert response.json()["notes"] == "Call back Friday"

    async def test_delete_requires_admin(self, client, tenant, leads, member_headers):
        url = f"{tenant.base}/leads/{leads[0].id}"
        headers = await member_headers(WorkspaceRole.MEMBER)

        assert (await client.delete(url, headers=headers)).status_code == 403
        assert (await client.delete(url, headers=tenant.headers)).status_code == 204
        assert (await client.get(url, headers=tenant.headers)).status_code == 404


# =============================================================================
# Conversations
# =============================================================================


class TestConversations:
    """Tests for the read-only call log."""

    @pytest.fixture
    async def calls(self, db, make, tenant):
        agent = await make.agent(tenant.workspace)
        inbound = await make.conversation(
            tenant.workspace,
            agent,
            external_id="call_in",
            direction=CallDirection.INBOUND,
            status=ConversationStatus.COMPLETED,
            transcript="User: hello",
            total_cost=Decimal("0.30"),
            call_metadata={"provider": "vapi"},
        )
        outbound = await make.conversation(
            tenant.workspace, agent, external_id="call_out", direction=CallDirection.OUTBOUND
        )
        await db.commit()
        return inbound, outbound

    async def test_filter_by_direction(self, client, tenant, calls):
        response = await client.get(
            f"{tenant.base}/conversations", params={"direction": "inbound"}, headers=tenant.headers
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert [c["external_id"] for c in data] == ["call_in"]
        assert "transcript" not in data[0]

    async def test_detail_includes_transcript(self, client, tenant, calls):
        inbound, _ = calls

        response = await client.get(
            f"{tenant.base}/conversations/{inbound.id}", headers=tenant.headers
        )

        body = response.json()
        assert body["transcript"] == "User: hello"
        assert body["metadata"] == {"provider": "vapi"}
        assert Decimal(body["total_cost"]) == Decimal("0.30")

    async def test_other_workspace(self, client, db, make, tenant):
        other = await make.workspace(tenant.partner, slug="other")
        conversation = await make.conversation(other)
        await db.commit()

        response = await client.get(
            f"{tenant.base}/conversations/{conversation.id}", headers=tenant.headers
        )
        assert response.status_code == 404
