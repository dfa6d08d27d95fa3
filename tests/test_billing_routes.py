"""API tests for /w/{slug}/billing."""

import pytest

from control_plane.billing.credits import add_workspace_credits
from control_plane.db.models import BillingType, WorkspaceRole


class TestSummary:
    async def test_credit_workspace(self, client, db, tenant):
        tenant.workspace.current_month_minutes = 40
        await add_workspace_credits(db, tenant.workspace_id, 2500, "Welcome credit")
        await db.commit()

        response = await client.get(f"{tenant.base}/billing/summary", headers=tenant.headers)

        assert response.status_code == 200
        body = response.json()
        assert body["current_month_minutes"] == 40
        assert body["monthly_minutes_remaining"] == body["monthly_minutes_limit"] - 40
        assert body["within_limit"] is True
        assert body["credits_balance_cents"] == 2500
        assert body["subscription"] is None

    async def test_includes_active_subscription(self, client, db, make, tenant):
        plan = await make.plan(
            tenant.partner,
            BillingType.POSTPAID,
            postpaid_minutes_limit=1000,
            overage_rate_cents=12,
        )
        await make.subscription(tenant.workspace, plan, postpaid_minutes_used=75)
        await db.commit()

        response = await client.get(f"{tenant.base}/billing/summary", headers=tenant.headers)

        subscription = response.json()["subscription"]
        assert subscription["billing_type"] == "postpaid"
        assert subscription["postpaid_minutes_used"] == 75
        assert subscription["postpaid_minutes_limit"] == 1000

    async def test_requires_billing_read(self, client, tenant, member_headers):
        headers = await member_headers(WorkspaceRole.MEMBER)
        response = await client.get(f"{tenant.base}/billing/summary", headers=headers)
        assert response.status_code == 403


class TestCredits:
    async def test_low_balance_flag(self, client, db, tenant):
        await add_workspace_credits(db, tenant.workspace_id, 200, "Starter credit")
        await db.commit()

        response = await client.get(f"{tenant.base}/billing/credits", headers=tenant.headers)

        assert response.json() == {
            "balance_cents": 200,
            "low_balance_threshold_cents": 500,
            "is_low_balance": True,
        }

    async def test_transactions_newest_first(self, client, db, tenant):
        await add_workspace_credits(db, tenant.workspace_id, 1000, "First")
        await add_workspace_credits(
            db, tenant.workspace_id, 2000, "Second", stripe_payment_intent_id="pi_2"
        )
        await db.commit()

        response = await client.get(
            f"{tenant.base}/billing/credits/transactions", headers=tenant.headers
        )

        data = response.json()["data"]
        assert [t["description"] for t in data] == ["Second", "First"]
        assert data[0]["balance_after_cents"] == 3000
        assert data[0]["stripe_payment_intent_id"] == "pi_2"


# =============================================================================
# Top-ups
# =============================================================================


class TestTopup:
    """Tests for POST /w/{slug}/billing/credits/topup."""

    @pytest.fixture
    async def connected(self, db, tenant):
        tenant.partner.settings = {"stripe_connect_account_id": "acct_123"}
        await db.commit()

    async def test_creates_payment_intent(self, client, tenant, connected, stripe_client):
        response = await client.post(
            f"{tenant.base}/billing/credits/topup",
            json={"amount_cents": 5000},
            headers=tenant.headers,
        )

        assert response.status_code == 201
        assert response.json() == {
            "payment_intent_id": "pi_test123",
            "client_secret": "pi_test123_secret",
            "amount_cents": 5000,
        }
        stripe_client.create_topup_payment_intent.assert_called_once_with(
            "acct_123", "cus_test123", 5000, str(tenant.workspace_id)
        )
        assert tenant.workspace.stripe_customer_id == "cus_test123"

    async def test_reuses_existing_customer(self, client, db, tenant, connected, stripe_client):
        tenant.workspace.stripe_customer_id = "cus_existing"
        await db.commit()

        await client.post(
            f"{tenant.base}/billing/credits/topup",
            json={"amount_cents": 500},
            headers=tenant.headers,
        )

        stripe_client.create_customer.assert_not_called()
        assert stripe_client.create_topup_payment_intent.call_args.args[1] == "cus_existing"

    @pytest.mark.parametrize("amount", [499, 1_000_001])
    async def test_amount_bounds(self, client, tenant, connected, amount):
        response = await client.post(
            f"{tenant.base}/billing/credits/topup",
            json={"amount_cents": amount},
            headers=tenant.headers,
        )
        assert response.status_code == 422

    async def test_partner_not_connected(self, client, tenant, stripe_client):
        response = await client.post(
            f"{tenant.base}/billing/credits/topup",
            json={"amount_cents": 5000},
            headers=tenant.headers,
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Partner has not connected a Stripe account"
        stripe_client.create_topup_payment_intent.assert_not_called()

    async def test_stripe_failure(self, client, tenant, connected, stripe_client):
        stripe_client.create_topup_payment_intent.side_effect = RuntimeError("card_declined")

        response = await client.post(
            f"{tenant.base}/billing/credits/topup",
            json={"amount_cents": 5000},
            headers=tenant.headers,
        )

        assert response.status_code == 502
        assert response.json()["error"]["message"] == "Stripe error: card_declined"

    async def test_admin_cannot_top_up(self, client, tenant, connected, member_headers):
        headers = await member_headers(WorkspaceRole.ADMIN)
        response = await client.post(
            f"{tenant.base}/billing/credits/topup",
            json={"amount_cents": 5000},
            headers=headers,
        )
        assert response.status_code == 403
