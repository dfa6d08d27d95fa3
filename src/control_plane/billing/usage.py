"""Call usage processing and monthly limits.

Provider webhooks call ``process_call_completion`` once a call has ended.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.billing.credits import (
    UsageDeduction,
    deduct_workspace_usage,
    minutes_for_duration,
)
from control_plane.billing.metering import (
    enqueue_usage_event,
    ensure_workspace_stripe_customer,
)
from control_plane.billing.plans import get_plan_monthly_minutes_limit
from control_plane.billing.stripe_client import StripeConnectClient
from control_plane.config import Settings, get_settings
from control_plane.db.models import (
    Conversation,
    DeductionSource,
    Partner,
    UsageTracking,
    Workspace,
    utcnow,
)
from control_plane.errors import AppError, NotFoundError

logger = logging.getLogger("control-plane.billing")


@dataclass
class CallUsageData:
    conversation_id: UUID
    workspace_id: UUID
    partner_id: UUID
    duration_seconds: int
    provider: str
    external_call_id: str | None = None


@dataclass
class UsageResult:
    success: bool
    amount_deducted_cents: int = 0
    new_balance_cents: int | None = None
    minutes_added: int = 0
    deducted_from: DeductionSource | None = None
    reason: str | None = None
    error: str | None = None


@dataclass
class MonthlyLimitStatus:
    allowed: bool
    remaining: int
    limit: int
    current_usage: int


# =============================================================================
# Limits
# =============================================================================


async def check_monthly_minutes_limit(
    db: AsyncSession, workspace_id: UUID
) -> MonthlyLimitStatus:
    """Compare the workspace's month-to-date minutes with its partner's tier.

    Raises:
        NotFoundError: If the workspace doesn't exist.
    """
    workspace = await db.get(Workspace, workspace_id)
    if workspace is None:
        raise NotFoundError("Workspace")
    partner = await db.get(Partner, workspace.partner_id)

    limit = get_plan_monthly_minutes_limit(partner.plan_tier)
    current = workspace.current_month_minutes or 0
    return MonthlyLimitStatus(
        allowed=current < limit,
        remaining=max(0, limit - current),
        limit=limit,
        current_usage=current,
    )


# =============================================================================
# Usage Processing
# =============================================================================


def billable_meter_minutes(deduction: UsageDeduction) -> int:
    """Minutes Stripe should invoice for this call.

    Workspace-credit calls report everything, subscription calls only the
    overage; partner-funded and postpaid calls are billed elsewhere.
    """
    if deduction.deducted_from == DeductionSource.WORKSPACE:
        return deduction.minutes
    if deduction.deducted_from == DeductionSource.SUBSCRIPTION:
        return deduction.overage_minutes
    return 0


def _cost_breakdown(deduction: UsageDeduction) -> dict[str, Any]:
    minutes = deduction.minutes
    breakdown: dict[str, Any] = {
        "minutes": minutes,
        "rate_per_minute": (
            deduction.amount_deducted_cents / minutes / 100 if minutes else 0
        ),
        "total_cents": deduction.amount_deducted_cents,
        "billing_type": deduction.deducted_from.value,
    }
    if deduction.deducted_from == DeductionSource.POSTPAID:
        breakdown.update(
            postpaid_minutes_used=deduction.postpaid_minutes_used,
            postpaid_minutes_limit=deduction.postpaid_minutes_limit,
            pending_invoice_cents=deduction.pending_invoice_amount_cents,
        )
    if deduction.deducted_from == DeductionSource.SUBSCRIPTION:
        breakdown.update(
            included_minutes_used=deduction.included_minutes_used,
            overage_minutes=deduction.overage_minutes,
        )
    return breakdown


async def _send_meter_event_if_applicable(
    db: AsyncSession,
    workspace_id: UUID,
    conversation_id: UUID,
    deduction: UsageDeduction,
    client: StripeConnectClient | None,
) -> None:
    minutes = billable_meter_minutes(deduction)
    if minutes <= 0:
        return

    try:
        customer = await ensure_workspace_stripe_customer(db, workspace_id, client)
        if customer is None:
            logger.info(f"No Stripe customer for workspace {workspace_id}, meter skipped")
            return
        await enqueue_usage_event(
            db,
            workspace_id=workspace_id,
            conversation_id=conversation_id,
            minutes=minutes,
            stripe_customer_id=customer.customer_id,
            stripe_account_id=customer.connect_account_id,
            event_timestamp=utcnow(),
            client=client,
        )
    except Exception as e:
        # Billing already succeeded; the outbox retry covers submission
        logger.error(f"Failed to send meter event for workspace {workspace_id}: {e}")


async def _reload(db: AsyncSession, conversation: Conversation | None) -> None:
    """Refresh a conversation the rolled-back savepoint may have expired."""
    if conversation is not None and conversation in db:
        await db.refresh(conversation)


async def process_call_completion(
    db: AsyncSession,
    data: CallUsageData,
    settings: Settings | None = None,
    stripe_client: StripeConnectClient | None = None,
) -> UsageResult:
    """Bill a completed call exactly once.

    Steps:
        1. Skip if the conversation already carries a cost.
        2. Charge the right balance (see ``deduct_workspace_usage``).
        3. Bump the workspace's monthly counters and store the cost
           breakdown on the conversation.
        4. Report billable minutes to Stripe when metering is enabled.

    Returns:
        UsageResult; failures are reported in ``error`` rather than raised.
    """
    settings = settings or get_settings()
    conversation: Conversation | None = None
    try:
        conversation = await db.get(Conversation, data.conversation_id)
        if conversation is None:
            return UsageResult(success=False, error="Conversation not found")

        if conversation.total_cost is not None and conversation.total_cost > 0:
            logger.info(f"Conversation {conversation.id} already billed, skipping")
            return UsageResult(
                success=True,
                amount_deducted_cents=int(conversation.total_cost * 100),
                reason="Already processed (idempotent)",
            )

        minutes = minutes_for_duration(data.duration_seconds)
        # Charge, counters and ledger land together or not at all
        async with db.begin_nested():
            deduction = await deduct_workspace_usage(
                db,
                data.workspace_id,
                data.duration_seconds,
                conversation_id=conversation.id,
                description=f"{data.provider.upper()} call - {minutes} minutes",
                settings=settings,
            )
            cost_dollars = Decimal(deduction.amount_deducted_cents) / Decimal(100)

            await db.execute(
                update(Workspace)
                .where(Workspace.id == data.workspace_id)
                .values(
                    current_month_minutes=Workspace.current_month_minutes + minutes,
                    current_month_cost=Workspace.current_month_cost + cost_dollars,
                )
            )
            conversation.total_cost = cost_dollars
            conversation.cost_breakdown = _cost_breakdown(deduction)
            conversation.duration_seconds = data.duration_seconds
            db.add(
                UsageTracking(
                    workspace_id=data.workspace_id,
                    conversation_id=conversation.id,
                    resource_type="voice_minutes",
                    resource_provider=data.provider,
                    quantity=minutes,
                    cost_cents=deduction.amount_deducted_cents,
                    billing_type=deduction.deducted_from,
                )
            )
            await db.flush()

        logger.info(
            f"Usage processed: {minutes} min, {deduction.amount_deducted_cents} cents, "
            f"billed to: {deduction.deducted_from.value}"
        )

        if settings.enable_stripe_metered_billing:
            await _send_meter_event_if_applicable(
                db, data.workspace_id, conversation.id, deduction, stripe_client
            )

        return UsageResult(
            success=True,
            amount_deducted_cents=deduction.amount_deducted_cents,
            new_balance_cents=deduction.new_balance_cents,
            minutes_added=minutes,
            deducted_from=deduction.deducted_from,
        )
    except AppError as e:
        await _reload(db, conversation)
        logger.warning(f"Billing failed for conversation {data.conversation_id}: {e.message}")
        return UsageResult(success=False, error=e.message)
    except Exception as e:
        await _reload(db, conversation)
        logger.exception(f"Error processing call completion for {data.conversation_id}")
        return UsageResult(success=False, error=str(e) or "Unknown error")


# =============================================================================
# Monthly Reset
# =============================================================================


async def reset_workspace_monthly_usage(db: AsyncSession, workspace_id: UUID) -> None:
    await db.execute(
        update(Workspace)
        .where(Workspace.id == workspace_id)
        .values(
            current_month_minutes=0,
            current_month_cost=Decimal("0"),
            last_usage_reset_at=utcnow(),
        )
    )
    logger.info(f"Reset monthly usage for workspace {workspace_id}")


async def reset_all_workspaces_monthly_usage(
    db: AsyncSession, now: datetime | None = None
) -> int:
    """Zero every live workspace's monthly counters.

    Returns:
        Number of workspaces reset.
    """
    result = await db.execute(
        update(Workspace)
        .where(Workspace.deleted_at.is_(None))
        .values(
            current_month_minutes=0,
            current_month_cost=Decimal("0"),
            last_usage_reset_at=now or utcnow(),
        )
    )
    logger.info(f"Reset monthly usage for {result.rowcount} workspaces")
    return result.rowcount
