"""Stripe Connect webhook events.

Events arrive from partners' connected accounts. Credit top-ups,
workspace subscriptions and metered-usage invoices are reconciled
against the local ledger here.
"""

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.billing.credits import add_workspace_credits
from control_plane.billing.metering import add_customer_balance_credits
from control_plane.billing.stripe_client import StripeConnectClient
from control_plane.config import Settings
from control_plane.db.models import (
    BillingPlan,
    BillingType,
    CreditTransactionType,
    StripeUsageEvent,
    SubscriptionStatus,
    UsageEventStatus,
    Workspace,
    WorkspaceSubscription,
    utcnow,
)

logger = logging.getLogger("control-plane.webhooks")

SUBSCRIPTION_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "trialing": SubscriptionStatus.TRIALING,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAUSED,
}


def map_subscription_status(stripe_status: str | None) -> SubscriptionStatus:
    return SUBSCRIPTION_STATUS_MAP.get(stripe_status or "", SubscriptionStatus.INCOMPLETE)


def _ts(value: int | None) -> datetime | None:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value else None


def _object_id(value: Any) -> str | None:
    """Stripe expands some references into objects; accept either form."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _parse_uuid(value: str | None) -> UUID | None:
    try:
        return UUID(value) if value else None
    except ValueError:
        return None


def _invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    subscription = _object_id(invoice.get("subscription"))
    if subscription:
        return subscription
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return _object_id(details.get("subscription"))


async def _workspace_for_customer(db: AsyncSession, customer: Any) -> Workspace | None:
    customer_id = _object_id(customer)
    if not customer_id:
        return None
    return (
        await db.execute(
            select(Workspace).where(Workspace.stripe_customer_id == customer_id).limit(1)
        )
    ).scalar_one_or_none()


async def _subscription_by_stripe_id(
    db: AsyncSession, stripe_subscription_id: str
) -> WorkspaceSubscription | None:
    return (
        await db.execute(
            select(WorkspaceSubscription).where(
                WorkspaceSubscription.stripe_subscription_id == stripe_subscription_id
            )
        )
    ).scalar_one_or_none()


def _period_filter(query, workspace_id: UUID, invoice: dict[str, Any]):
    query = query.where(StripeUsageEvent.workspace_id == workspace_id)
    start = _ts(invoice.get("period_start"))
    end = _ts(invoice.get("period_end"))
    if start and end:
        query = query.where(StripeUsageEvent.event_timestamp >= start).where(
            StripeUsageEvent.event_timestamp <= end
        )
    return query


# =============================================================================
# Payments
# =============================================================================


async def handle_payment_intent_succeeded(
    db: AsyncSession,
    intent: dict[str, Any],
    settings: Settings,
    client: StripeConnectClient | None = None,
) -> None:
    metadata = intent.get("metadata") or {}
    workspace_id = _parse_uuid(metadata.get("workspace_id"))
    if metadata.get("type") != "workspace_credits_topup" or workspace_id is None:
        logger.info(f"PaymentIntent {intent['id']} is not a workspace credits top-up, skipping")
        return

    try:
        amount_cents = int(metadata.get("amount_cents") or 0)
    except ValueError:
        amount_cents = 0
    if amount_cents <= 0:
        logger.error(f"Invalid amount_cents in PaymentIntent metadata: {metadata.get('amount_cents')}")
        return

    transaction = await add_workspace_credits(
        db,
        workspace_id,
        amount_cents,
        description=f"Credit top-up: ${amount_cents / 100:.2f}",
        transaction_type=CreditTransactionType.TOPUP,
        stripe_payment_intent_id=intent["id"],
    )
    if transaction is None:
        logger.info(f"Top-up already applied for PaymentIntent {intent['id']}")
        return

    logger.info(f"Top-up applied: workspace {workspace_id}, {amount_cents} cents")
    if settings.enable_stripe_metered_billing:
        result = await add_customer_balance_credits(
            db,
            workspace_id,
            amount_cents,
            f"Credit top-up: ${amount_cents / 100:.2f}",
            {"payment_intent_id": intent["id"]},
            client=client,
        )
        if not result["success"]:
            # Local credits stand; the Stripe balance can be fixed by hand
            logger.error(f"Failed to add to Stripe customer balance: {result['error']}")


# =============================================================================
# Subscriptions
# =============================================================================


async def handle_subscription_updated(db: AsyncSession, subscription: dict[str, Any]) -> None:
    """Upsert the workspace subscription from a created/updated event."""
    metadata = subscription.get("metadata") or {}
    workspace_id = _parse_uuid(metadata.get("workspace_id"))
    plan_id = _parse_uuid(metadata.get("plan_id"))
    if workspace_id is None or plan_id is None:
        logger.info(
            f"Subscription {subscription['id']} missing workspace_id/plan_id metadata, skipping"
        )
        return

    items = (subscription.get("items") or {}).get("data") or [{}]
    period_start = items[0].get("current_period_start") or subscription.get(
        "current_period_start"
    )
    period_end = items[0].get("current_period_end") or subscription.get("current_period_end")
    status = map_subscription_status(subscription.get("status"))

    values = {
        "plan_id": plan_id,
        "status": status,
        "stripe_subscription_id": subscription["id"],
        "stripe_customer_id": _object_id(subscription.get("customer")),
        "current_period_start": _ts(period_start),
        "current_period_end": _ts(period_end),
        "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
        "canceled_at": _ts(subscription.get("canceled_at")),
    }

    existing = (
        await db.execute(
            select(WorkspaceSubscription).where(
                WorkspaceSubscription.workspace_id == workspace_id
            )
        )
    ).scalar_one_or_none()
    if existing is None:
        db.add(WorkspaceSubscription(workspace_id=workspace_id, **values))
    else:
        # Usage counters reset on invoice payment, not here
        for key, value in values.items():
            setattr(existing, key, value)
    await db.flush()
    logger.info(
        f"Subscription {subscription['id']} synced for workspace {workspace_id}, "
        f"status: {status.value}"
    )


async def handle_subscription_deleted(db: AsyncSession, subscription: dict[str, Any]) -> None:
    workspace_id = _parse_uuid((subscription.get("metadata") or {}).get("workspace_id"))
    query = update(WorkspaceSubscription).values(
        status=SubscriptionStatus.CANCELED, canceled_at=utcnow()
    )
    if workspace_id is not None:
        query = query.where(WorkspaceSubscription.workspace_id == workspace_id)
    else:
        query = query.where(
            WorkspaceSubscription.stripe_subscription_id == subscription["id"]
        )
    result = await db.execute(query.execution_options(synchronize_session="fetch"))
    logger.info(f"Subscription {subscription['id']} canceled ({result.rowcount} rows)")


# =============================================================================
# Invoices
# =============================================================================


async def handle_invoice_payment_succeeded(db: AsyncSession, invoice: dict[str, Any]) -> None:
    metadata = invoice.get("metadata") or {}
    if metadata.get("type") == "postpaid_usage" and metadata.get("subscription_id"):
        subscription_id = _parse_uuid(metadata["subscription_id"])
        subscription = (
            await db.get(WorkspaceSubscription, subscription_id) if subscription_id else None
        )
        if subscription is None:
            logger.warning(f"Postpaid invoice {invoice['id']} for unknown subscription")
            return
        previous = subscription.postpaid_minutes_used
        subscription.postpaid_minutes_used = 0
        subscription.pending_invoice_amount_cents = 0
        await db.flush()
        logger.info(f"Postpaid period reset after invoice {invoice['id']}: {previous} min")
        return

    stripe_subscription_id = _invoice_subscription_id(invoice)
    if not stripe_subscription_id:
        return
    subscription = await _subscription_by_stripe_id(db, stripe_subscription_id)
    if subscription is None:
        logger.info(f"No workspace subscription for {stripe_subscription_id}, skipping")
        return

    subscription.minutes_used_this_period = 0
    subscription.overage_charges_cents = 0
    subscription.status = SubscriptionStatus.ACTIVE
    plan = await db.get(BillingPlan, subscription.plan_id)
    if plan is not None and plan.billing_type == BillingType.POSTPAID:
        subscription.postpaid_minutes_used = 0
        subscription.pending_invoice_amount_cents = 0
    await db.flush()
    logger.info(f"Usage reset for subscription {subscription.id} after invoice {invoice['id']}")


async def handle_invoice_payment_failed(db: AsyncSession, invoice: dict[str, Any]) -> None:
    stripe_subscription_id = _invoice_subscription_id(invoice)
    if not stripe_subscription_id:
        return
    subscription = await _subscription_by_stripe_id(db, stripe_subscription_id)
    if subscription is None:
        return
    subscription.status = SubscriptionStatus.PAST_DUE
    await db.flush()
    logger.warning(f"Subscription {subscription.id} past due after invoice {invoice['id']}")


async def handle_invoice_finalized(db: AsyncSession, invoice: dict[str, Any]) -> int:
    """Mark sent usage events in the invoice period as reconciled."""
    workspace = await _workspace_for_customer(db, invoice.get("customer"))
    if workspace is None:
        logger.info(f"No workspace for invoice {invoice['id']} customer, skipping reconciliation")
        return 0

    query = _period_filter(update(StripeUsageEvent), workspace.id, invoice)
    result = await db.execute(
        query.where(StripeUsageEvent.status == UsageEventStatus.SENT)
        .values(status=UsageEventStatus.RECONCILED, updated_at=utcnow())
        .execution_options(synchronize_session="fetch")
    )
    logger.info(f"Reconciled {result.rowcount} usage events for invoice {invoice['id']}")
    return result.rowcount


async def handle_invoice_voided(db: AsyncSession, invoice: dict[str, Any]) -> None:
    """Give the invoice total back as credits and un-bill its usage events."""
    workspace = await _workspace_for_customer(db, invoice.get("customer"))
    if workspace is None:
        logger.info(f"No workspace for invoice {invoice['id']} customer, skipping void handling")
        return

    total = invoice.get("total") or 0
    if total > 0:
        await add_workspace_credits(
            db,
            workspace.id,
            total,
            description=f"Invoice voided: {invoice['id']}",
            transaction_type=CreditTransactionType.REFUND,
            stripe_refund_source_id=invoice["id"],
        )

    query = _period_filter(update(StripeUsageEvent), workspace.id, invoice)
    await db.execute(
        query.where(
            StripeUsageEvent.status.in_([UsageEventStatus.SENT, UsageEventStatus.RECONCILED])
        )
        .values(
            status=UsageEventStatus.FAILED,
            error_message=f"Invoice {invoice['id']} was voided",
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session="fetch")
    )
    logger.info(f"Handled voided invoice {invoice['id']} for workspace {workspace.id}")


async def handle_credit_note_created(db: AsyncSession, credit_note: dict[str, Any]) -> None:
    amount = credit_note.get("amount") or 0
    if amount <= 0:
        return
    workspace = await _workspace_for_customer(db, credit_note.get("customer"))
    if workspace is None:
        logger.info(f"No workspace for credit note {credit_note['id']} customer, skipping")
        return
    await add_workspace_credits(
        db,
        workspace.id,
        amount,
        description=f"Credit note: {credit_note['id']} - {credit_note.get('reason') or 'Refund'}",
        transaction_type=CreditTransactionType.REFUND,
        stripe_refund_source_id=credit_note["id"],
    )


# =============================================================================
# Dispatch
# =============================================================================


async def handle_connect_event(
    db: AsyncSession,
    event: dict[str, Any],
    settings: Settings,
    client: StripeConnectClient | None = None,
) -> bool:
    """Route a verified event to its handler.

    Returns:
        False for event types this service doesn't act on.
    """
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}
    logger.info(f"Stripe Connect event {event.get('id')}: {event_type}")

    if event_type == "payment_intent.succeeded":
        await handle_payment_intent_succeeded(db, obj, settings, client)
    elif event_type in ("customer.subscription.created", "customer.subscription.updated"):
        await handle_subscription_updated(db, obj)
    elif event_type == "customer.subscription.deleted":
        await handle_subscription_deleted(db, obj)
    elif event_type == "invoice.payment_succeeded":
        await handle_invoice_payment_succeeded(db, obj)
    elif event_type == "invoice.payment_failed":
        await handle_invoice_payment_failed(db, obj)
    elif event_type in ("invoice.finalized", "invoice.voided", "credit_note.created"):
        # Meter reconciliation only applies once metered billing is on
        if not settings.enable_stripe_metered_billing:
            return True
        if event_type == "invoice.finalized":
            await handle_invoice_finalized(db, obj)
        elif event_type == "invoice.voided":
            await handle_invoice_voided(db, obj)
        else:
            await handle_credit_note_created(db, obj)
    else:
        logger.info(f"Unhandled Stripe Connect event type: {event_type}")
        return False
    return True
