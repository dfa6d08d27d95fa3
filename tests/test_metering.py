"""Tests for the Stripe meter outbox and connected-account customers."""

from datetime import datetime, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select

from control_plane.billing.metering import (
    MeterEventSubmission,
    add_customer_balance_credits,
    enqueue_usage_event,
    ensure_workspace_stripe_customer,
    get_customer_balance,
    get_or_create_meter_for_partner,
    retry_pending_usage_events,
    submit_meter_event,
)
from control_plane.billing.stripe_client import MeterInfo, get_connect_account_id
from control_plane.db.models import StripeUsageEvent, UsageEventStatus

CALL_ENDED = datetime(2025, 6, 2, 15, 30, tzinfo=timezone.utc)


@pytest.fixture
async def connected(make):
    partner = await make.partner(settings={"stripe_connect_account_id": "acct_123"})
    workspace = await make.workspace(partner)
    return partner, workspace


def outbox_row(workspace, **kwargs) -> StripeUsageEvent:
    kwargs.setdefault("stripe_customer_id", "cus_1")
    kwargs.setdefault("stripe_account_id", "acct_123")
    kwargs.setdefault("status", UsageEventStatus.PENDING)
    kwargs.setdefault("retry_count", 0)
    return StripeUsageEvent(
        workspace_id=workspace.id,
        conversation_id=uuid4(),
        minutes=3,
        event_timestamp=CALL_ENDED,
        **kwargs,
    )


class TestConnectAccountId:
    def test_reads_setting(self):
        assert get_connect_account_id({"stripe_connect_account_id": "acct_1"}) == "acct_1"

    def test_missing_or_blank(self):
        assert get_connect_account_id(None) is None
        assert get_connect_account_id({"stripe_connect_account_id": ""}) is None


# =============================================================================
# Customers and Meters
# =============================================================================


class TestEnsureWorkspaceCustomer:
    """Tests for creating the workspace's Stripe customer on demand."""

    async def test_creates_and_stores_customer(self, db, connected, stripe_client):
        partner, workspace = connected

        info = await ensure_workspace_stripe_customer(db, workspace.id, stripe_client)

        assert info.customer_id == "cus_test123"
        assert info.connect_account_id == "acct_123"
        assert workspace.stripe_customer_id == "cus_test123"
        args, kwargs = stripe_client.create_customer.call_args
        assert args == ("acct_123",)
        assert kwargs["metadata"]["workspace_slug"] == "main"

    async def test_reuses_existing_customer(self, db, connected, stripe_client):
        _, workspace = connected
        workspace.stripe_customer_id = "cus_existing"

        info = await ensure_workspace_stripe_customer(db, workspace.id, stripe_client)

        assert info.customer_id == "cus_existing"
        stripe_client.create_customer.assert_not_called()

    async def test_no_connect_account(self, db, make, stripe_client):
        workspace = await make.workspace(await make.partner())
        assert await ensure_workspace_stripe_customer(db, workspace.id, stripe_client) is None


class TestPartnerMeter:
    """Tests for caching the meter in partner settings."""

    async def test_creates_and_caches(self, db, connected, stripe_client):
        partner, _ = connected
        stripe_client.ensure_meter.return_value = MeterInfo(
            "mtr_1", "voice_call_minutes", "Voice Call Minutes"
        )

        meter = await get_or_create_meter_for_partner(db, partner.id, stripe_client)

        assert meter.id == "mtr_1"
        assert partner.settings["stripe_meter_id"] == "mtr_1"
        assert partner.settings["stripe_meter_event_name"] == "voice_call_minutes"
        assert partner.settings["stripe_connect_account_id"] == "acct_123"

    async def test_cached_meter_skips_stripe(self, db, make, stripe_client):
        partner = await make.partner(
            settings={
                "stripe_connect_account_id": "acct_123",
                "stripe_meter_id": "mtr_cached",
                "stripe_meter_event_name": "voice_call_minutes",
            }
        )

        meter = await get_or_create_meter_for_partner(db, partner.id, stripe_client)

        assert meter.id == "mtr_cached"
        stripe_client.ensure_meter.assert_not_called()

    async def test_no_connect_account(self, db, make, stripe_client):
        partner = await make.partner()
        assert await get_or_create_meter_for_partner(db, partner.id, stripe_client) is None


# =============================================================================
# Outbox
# =============================================================================


class TestSubmitMeterEvent:
    def _submission(self, workspace_id):
        return MeterEventSubmission(
            workspace_id=workspace_id,
            conversation_id="conv-1",
            minutes=4,
            stripe_customer_id="cus_1",
            stripe_account_id="acct_1",
            event_timestamp=CALL_ENDED,
        )

    def test_success(self, stripe_client):
        result = submit_meter_event(self._submission(uuid4()), stripe_client)
        assert result.success
        assert result.stripe_event_id == "evt_test"

    def test_failure_is_returned_not_raised(self, stripe_client):
        stripe_client.create_meter_event.side_effect = RuntimeError("rate limited")
        result = submit_meter_event(self._submission(uuid4()), stripe_client)
        assert not result.success
        assert result.error == "rate limited"


class TestEnqueueUsageEvent:
    """Tests for writing and immediately submitting outbox rows."""

    async def test_sent_row(self, db, connected, stripe_client):
        _, workspace = connected

        outcome = await enqueue_usage_event(
            db, workspace.id, uuid4(), 3, "cus_1", "acct_123", CALL_ENDED, stripe_client
        )

        assert outcome["submitted"]
        event = await db.get(StripeUsageEvent, outcome["event_id"])
        assert event.status == UsageEventStatus.SENT
        assert event.retry_count == 0

    async def test_failed_row_counts_attempt(self, db, connected, stripe_client):
        _, workspace = connected
        stripe_client.create_meter_event.side_effect = RuntimeError("boom")

        outcome = await enqueue_usage_event(
            db, workspace.id, uuid4(), 3, "cus_1", "acct_123", CALL_ENDED, stripe_client
        )

        assert not outcome["submitted"]
        assert outcome["error"] == "boom"
        event = await db.get(StripeUsageEvent, outcome["event_id"])
        assert event.status == UsageEventStatus.FAILED
        assert event.retry_count == 1


class TestRetryPendingUsageEvents:
    """Tests for the outbox retry batch."""

    async def test_resubmits_pending_and_failed(self, db, connected, stripe_client):
        _, workspace = connected
        pending = outbox_row(workspace)
        failed = outbox_row(workspace, status=UsageEventStatus.FAILED, retry_count=2)
        db.add_all([pending, failed])
        await db.flush()

        summary = await retry_pending_usage_events(db, client=stripe_client)

        assert summary == {"processed": 2, "succeeded": 2, "failed": 0}
        assert pending.status == UsageEventStatus.SENT
        assert failed.status == UsageEventStatus.SENT
        assert failed.stripe_event_id == "evt_test"

    async def test_failure_bumps_retry_count(self, db, connected, stripe_client):
        _, workspace = connected
        row = outbox_row(workspace, retry_count=1)
        db.add(row)
        await db.flush()
        stripe_client.create_meter_event.side_effect = RuntimeError("still down")

        summary = await retry_pending_usage_events(db, max_retries=5, client=stripe_client)

        assert summary["failed"] == 1
        assert row.retry_count == 2
        assert row.status == UsageEventStatus.PENDING
        assert row.error_message == "still down"

    async def test_last_attempt_marks_failed(self, db, connected, stripe_client):
        _, workspace = connected
        row = outbox_row(workspace, retry_count=4)
        db.add(row)
        await db.flush()
        stripe_client.create_meter_event.side_effect = RuntimeError("still down")

        await retry_pending_usage_events(db, max_retries=5, client=stripe_client)

        assert row.retry_count == 5
        assert row.status == UsageEventStatus.FAILED

    async def test_exhausted_and_sent_rows_are_skipped(self, db, connected, stripe_client):
        _, workspace = connected
        db.add_all(
            [
                outbox_row(workspace, status=UsageEventStatus.FAILED, retry_count=5),
                outbox_row(workspace, status=UsageEventStatus.SENT),
            ]
        )
        await db.flush()

        summary = await retry_pending_usage_events(db, max_retries=5, client=stripe_client)

        assert summary["processed"] == 0
        stripe_client.create_meter_event.assert_not_called()

    async def test_missing_ids_fail_without_calling_stripe(self, db, connected, stripe_client):
        _, workspace = connected
        row = outbox_row(workspace, stripe_customer_id=None)
        db.add(row)
        await db.flush()

        summary = await retry_pending_usage_events(db, client=stripe_client)

        assert summary["failed"] == 1
        assert row.status == UsageEventStatus.FAILED
        stripe_client.create_meter_event.assert_not_called()

    async def test_batch_size(self, db, connected, stripe_client):
        _, workspace = connected
        db.add_all([outbox_row(workspace) for _ in range(3)])
        await db.flush()

        summary = await retry_pending_usage_events(db, batch_size=2, client=stripe_client)
        assert summary["processed"] == 2
        remaining = (
            await db.execute(
                select(StripeUsageEvent).where(
                    StripeUsageEvent.status == UsageEventStatus.PENDING
                )
            )
        ).scalars().all()
        assert len(remaining) == 1


# =============================================================================
# Customer Balance
# =============================================================================


class TestCustomerBalance:
    async def test_credit_balance(self, db, connected, stripe_client):
        _, workspace = connected

        outcome = await add_customer_balance_credits(
            db, workspace.id, 5000, "Top-up", client=stripe_client
        )

        assert outcome == {"success": True, "new_balance": 5000}
        args = stripe_client.credit_customer_balance.call_args.args
        assert args[:3] == ("acct_123", "cus_test123", 5000)

    async def test_credit_without_connect_account(self, db, make, stripe_client):
        workspace = await make.workspace(await make.partner())
        outcome = await add_customer_balance_credits(
            db, workspace.id, 5000, "Top-up", client=stripe_client
        )
        assert not outcome["success"]

    async def test_stripe_error_is_reported(self, db, connected, stripe_client):
        _, workspace = connected
        stripe_client.credit_customer_balance.side_effect = RuntimeError("card declined")

        outcome = await add_customer_balance_credits(
            db, workspace.id, 5000, "Top-up", client=stripe_client
        )
        assert outcome == {"success": False, "error": "card declined"}

    async def test_get_balance(self, db, connected, stripe_client):
        _, workspace = connected
        assert await get_customer_balance(db, workspace.id, stripe_client) is None

        workspace.stripe_customer_id = "cus_1"
        assert await get_customer_balance(db, workspace.id, stripe_client) == 5000
