"""Stripe Billing Meter reporting through an outbox table.

Each billable call inserts a ``StripeUsageEvent`` row and tries to submit it
right away. Rows that fail stay in the outbox and are retried by the
``/cron/billing-usage-retry`` job until they hit the retry cap.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.billing.stripe_client import (
    DEFAULT_METER_DISPLAY_NAME,
    DEFAULT_METER_EVENT_NAME,
    MeterInfo,
    StripeConnectClient,
    get_connect_account_id,
    get_stripe_client,
)
from control_plane.db.models import (
    Partner,
    StripeUsageEvent,
    UsageEventStatus,
    Workspace,
)
from control_plane.errors import NotFoundError

logger = logging.getLogger("control-plane.metering")

DEFAULT_MAX_RETRIES = 5
DEFAULT_BATCH_SIZE = 100


@dataclass
class MeterEventSubmission:
    workspace_id: UUID
    conversation_id: str
    minutes: int
    stripe_customer_id: str
    stripe_account_id: str
    event_timestamp: datetime


@dataclass
class MeterEventResult:
    success: bool
    stripe_event_id: str | None = None
    error: str | None = None


@dataclass
class CustomerInfo:
    customer_id: str
    connect_account_id: str


# =============================================================================
# Meter Management
# =============================================================================


async def get_or_create_meter_for_partner(
    db: AsyncSession,
    partner_id: UUID,
    client: StripeConnectClient | None = None,
) -> MeterInfo | None:
    """Meter for the partner's connected account, cached in partner settings.

    Returns:
        None when the partner has no connected account.
    """
    partner = await db.get(Partner, partner_id)
    if partner is None:
        raise NotFoundError("Partner")

    settings = dict(partner.settings or {})
    connect_account_id = get_connect_account_id(settings)
    if not connect_account_id:
        logger.info(f"Partner {partner_id} has no Connect account, skipping meter creation")
        return None

    cached_id = settings.get("stripe_meter_id")
    cached_event = settings.get("stripe_meter_event_name")
    if cached_id and cached_event:
        return MeterInfo(cached_id, cached_event, DEFAULT_METER_DISPLAY_NAME)

    client = client or get_stripe_client()
    meter = client.ensure_meter(connect_account_id)

    settings["stripe_meter_id"] = meter.id
    settings["stripe_meter_event_name"] = meter.event_name
    # Reassign so the JSON column is marked dirty
    partner.settings = settings
    await db.flush()
    return meter


async def ensure_workspace_stripe_customer(
    db: AsyncSession,
    workspace_id: UUID,
    client: StripeConnectClient | None = None,
) -> CustomerInfo | None:
    """Workspace's customer on the partner's connected account, created on demand.

    Returns:
        None when the partner has no connected account.
    """
    workspace = await db.get(Workspace, workspace_id)
    if workspace is None:
        raise NotFoundError("Workspace")
    partner = await db.get(Partner, workspace.partner_id)

    connect_account_id = get_connect_account_id(partner.settings)
    if not connect_account_id:
        logger.info(
            f"Partner {partner.id} has no Connect account, cannot create workspace customer"
        )
        return None

    if workspace.stripe_customer_id:
        return CustomerInfo(workspace.stripe_customer_id, connect_account_id)

    client = client or get_stripe_client()
    customer_id = client.create_customer(
        connect_account_id,
        name=workspace.name,
        metadata={
            "workspace_id": str(workspace.id),
            "workspace_slug": workspace.slug,
            "partner_id": str(partner.id),
        },
    )
    workspace.stripe_customer_id = customer_id
    await db.flush()

    logger.info(
        f"Created Stripe customer {customer_id} for workspace {workspace_id} "
        f"on Connect account {connect_account_id}"
    )
    return CustomerInfo(customer_id, connect_account_id)


# =============================================================================
# Submission
# =============================================================================


def submit_meter_event(
    submission: MeterEventSubmission,
    client: StripeConnectClient | None = None,
    event_name: str = DEFAULT_METER_EVENT_NAME,
) -> MeterEventResult:
    """Send one meter event; never raises.

    The conversation ID is the Stripe identifier, so resubmitting the same
    call is deduplicated on Stripe's side.
    """
    client = client or get_stripe_client()
    try:
        event_id = client.create_meter_event(
            submission.stripe_account_id,
            submission.stripe_customer_id,
            submission.minutes,
            submission.event_timestamp,
            identifier=submission.conversation_id,
            event_name=event_name,
        )
    except Exception as e:
        logger.error(
            f"Failed to submit meter event for workspace {submission.workspace_id}: {e}"
        )
        return MeterEventResult(success=False, error=str(e) or type(e).__name__)

    logger.info(
        f"Submitted meter event for workspace {submission.workspace_id}: "
        f"{submission.minutes} minutes, event_id={event_id}"
    )
    return MeterEventResult(success=True, stripe_event_id=event_id)


async def enqueue_usage_event(
    db: AsyncSession,
    workspace_id: UUID,
    conversation_id: UUID,
    minutes: int,
    stripe_customer_id: str,
    stripe_account_id: str,
    event_timestamp: datetime,
    client: StripeConnectClient | None = None,
) -> dict[str, Any]:
    """Write the outbox row, then try to submit it immediately."""
    event = StripeUsageEvent(
        workspace_id=workspace_id,
        conversation_id=conversation_id,
        minutes=minutes,
        stripe_customer_id=stripe_customer_id,
        stripe_account_id=stripe_account_id,
        event_timestamp=event_timestamp,
        status=UsageEventStatus.PENDING,
        retry_count=0,
    )
    db.add(event)
    await db.flush()

    result = submit_meter_event(
        MeterEventSubmission(
            workspace_id=workspace_id,
            conversation_id=str(conversation_id),
            minutes=minutes,
            stripe_customer_id=stripe_customer_id,
            stripe_account_id=stripe_account_id,
            event_timestamp=event_timestamp,
        ),
        client,
    )

    if result.success:
        event.status = UsageEventStatus.SENT
        event.stripe_event_id = result.stripe_event_id
    else:
        event.status = UsageEventStatus.FAILED
        event.error_message = result.error
        event.retry_count += 1
    await db.flush()

    return {"event_id": event.id, "submitted": result.success, "error": result.error}


async def retry_pending_usage_events(
    db: AsyncSession,
    max_retries: int = DEFAULT_MAX_RETRIES,
    batch_size: int = DEFAULT_BATCH_SIZE,
    client: StripeConnectClient | None = None,
) -> dict[str, int]:
    """Resubmit pending/failed outbox rows, oldest first.

    Returns:
        Counts of ``processed``, ``succeeded`` and ``failed`` rows.
    """
    events = (
        (
            await db.execute(
                select(StripeUsageEvent)
                .where(
                    StripeUsageEvent.status.in_(
                        [UsageEventStatus.PENDING, UsageEventStatus.FAILED]
                    )
                )
                .where(StripeUsageEvent.retry_count < max_retries)
                .order_by(StripeUsageEvent.created_at)
                .limit(batch_size)
            )
        )
        .scalars()
        .all()
    )

    succeeded = 0
    failed = 0
    for event in events:
        if not event.stripe_customer_id or not event.stripe_account_id:
            event.status = UsageEventStatus.FAILED
            event.error_message = "Missing stripe_customer_id or stripe_account_id"
            failed += 1
            continue

        result = submit_meter_event(
            MeterEventSubmission(
                workspace_id=event.workspace_id,
                conversation_id=str(event.conversation_id or event.id),
                minutes=event.minutes,
                stripe_customer_id=event.stripe_customer_id,
                stripe_account_id=event.stripe_account_id,
                event_timestamp=event.event_timestamp,
            ),
            client,
        )

        if result.success:
            event.status = UsageEventStatus.SENT
            event.stripe_event_id = result.stripe_event_id
            event.error_message = None
            succeeded += 1
        else:
            event.retry_count += 1
            event.status = (
                UsageEventStatus.FAILED
                if event.retry_count >= max_retries
                else UsageEventStatus.PENDING
            )
            event.error_message = result.error
            failed += 1

    await db.flush()
    logger.info(
        f"Retry batch complete: {len(events)} processed, "
        f"{succeeded} succeeded, {failed} failed"
    )
    return {"processed": len(events), "succeeded": succeeded, "failed": failed}


# =============================================================================
# Customer Balance
# =============================================================================


async def add_customer_balance_credits(
    db: AsyncSession,
    workspace_id: UUID,
    amount_cents: int,
    description: str,
    metadata: dict[str, str] | None = None,
    client: StripeConnectClient | None = None,
) -> dict[str, Any]:
    """Mirror a credit top-up into the workspace's Stripe customer balance."""
    customer = await ensure_workspace_stripe_customer(db, workspace_id, client)
    if customer is None:
        return {"success": False, "error": "No Connect account configured for partner"}

    client = client or get_stripe_client()
    try:
        new_balance = client.credit_customer_balance(
            customer.connect_account_id,
            customer.customer_id,
            amount_cents,
            description,
            metadata,
        )
    except Exception as e:
        logger.error(f"Failed to add customer balance credits: {e}")
        return {"success": False, "error": str(e)}

    logger.info(
        f"Added {amount_cents} cents credit to workspace {workspace_id}, "
        f"new balance: {new_balance} cents"
    )
    return {"success": True, "new_balance": new_balance}


async def get_customer_balance(
    db: AsyncSession,
    workspace_id: UUID,
    client: StripeConnectClient | None = None,
) -> int | None:
    """Stripe-side credit balance in cents, or None if there's no customer."""
    workspace = await db.get(Workspace, workspace_id)
    if workspace is None or not workspace.stripe_customer_id:
        return None
    partner = await db.get(Partner, workspace.partner_id)
    connect_account_id = get_connect_account_id(partner.settings)
    if not connect_account_id:
        return None
    client = client or get_stripe_client()
    return client.get_customer_balance(connect_account_id, workspace.stripe_customer_id)
