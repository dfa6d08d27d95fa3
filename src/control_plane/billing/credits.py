"""Workspace and partner credit balances, and the per-call deduction rules.

A completed call is charged to exactly one source, checked in order:

1. an active postpaid subscription (usage accrues to the next invoice),
2. an active prepaid subscription (included minutes, then metered overage),
3. the partner's credits, when the workspace is billing-exempt,
4. the workspace's own prepaid credits.
"""

import logging
import math
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.config import Settings, get_settings
from control_plane.db.models import (
    BillingPlan,
    BillingType,
    CreditTransactionType,
    DeductionSource,
    Partner,
    PartnerCredits,
    PartnerCreditTransaction,
    SubscriptionStatus,
    Workspace,
    WorkspaceCredits,
    WorkspaceCreditTransaction,
    WorkspaceSubscription,
)
from control_plane.errors import InsufficientCreditsError, NotFoundError

logger = logging.getLogger("control-plane.billing")


@dataclass
class UsageDeduction:
    """Outcome of charging one call."""

    deducted_from: DeductionSource
    minutes: int
    amount_deducted_cents: int
    new_balance_cents: int | None = None
    included_minutes_used: int = 0
    overage_minutes: int = 0
    postpaid_minutes_used: int | None = None
    postpaid_minutes_limit: int | None = None
    pending_invoice_amount_cents: int | None = None


def minutes_for_duration(duration_seconds: int) -> int:
    """Billable minutes: any started minute counts."""
    return math.ceil(max(duration_seconds, 0) / 60)


# =============================================================================
# Lookups
# =============================================================================


async def get_or_create_workspace_credits(
    db: AsyncSession, workspace_id: UUID, lock: bool = False
) -> WorkspaceCredits:
    query = select(WorkspaceCredits).where(WorkspaceCredits.workspace_id == workspace_id)
    if lock:
        query = query.with_for_update()
    credits = (await db.execute(query)).scalar_one_or_none()
    if credits is None:
        credits = WorkspaceCredits(workspace_id=workspace_id, balance_cents=0)
        db.add(credits)
        await db.flush()
    return credits


async def get_or_create_partner_credits(
    db: AsyncSession, partner_id: UUID, lock: bool = False
) -> PartnerCredits:
    query = select(PartnerCredits).where(PartnerCredits.partner_id == partner_id)
    if lock:
        query = query.with_for_update()
    credits = (await db.execute(query)).scalar_one_or_none()
    if credits is None:
        credits = PartnerCredits(partner_id=partner_id, balance_cents=0)
        db.add(credits)
        await db.flush()
    return credits


async def get_active_subscription(
    db: AsyncSession, workspace_id: UUID
) -> tuple[WorkspaceSubscription, BillingPlan] | None:
    """Active or trialing subscription with its plan, if any."""
    row = (
        await db.execute(
            select(WorkspaceSubscription, BillingPlan)
            .join(BillingPlan, BillingPlan.id == WorkspaceSubscription.plan_id)
            .where(WorkspaceSubscription.workspace_id == workspace_id)
            .where(
                WorkspaceSubscription.status.in_(
                    [SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING]
                )
            )
        )
    ).first()
    if row is None:
        return None
    return row[0], row[1]


def partner_rate_cents(partner: Partner, settings: Settings) -> int:
    rate = (partner.settings or {}).get("per_minute_rate_cents")
    if isinstance(rate, int) and rate >= 0:
        return rate
    return settings.partner_per_minute_rate_cents


# =============================================================================
# Balance Changes
# =============================================================================


async def add_workspace_credits(
    db: AsyncSession,
    workspace_id: UUID,
    amount_cents: int,
    description: str,
    transaction_type: CreditTransactionType = CreditTransactionType.TOPUP,
    stripe_payment_intent_id: str | None = None,
    stripe_refund_source_id: str | None = None,
) -> WorkspaceCreditTransaction | None:
    """Credit a workspace balance and write the ledger entry.

    Args:
        db: Database session.
        workspace_id: Workspace to credit.
        amount_cents: Positive amount to add.
        description: Ledger description.
        transaction_type: ``topup``, ``refund`` or ``adjustment``.
        stripe_payment_intent_id: Makes the credit idempotent per payment.
        stripe_refund_source_id: Invoice or credit note id; makes a refund
            idempotent per Stripe object.

    Returns:
        The new transaction, or None if this payment intent or refund source
        was already applied.
    """
    if amount_cents <= 0:
        raise ValueError("amount_cents must be positive")

    for column, reference in (
        (WorkspaceCreditTransaction.stripe_payment_intent_id, stripe_payment_intent_id),
        (WorkspaceCreditTransaction.stripe_refund_source_id, stripe_refund_source_id),
    ):
        if not reference:
            continue
        existing = await db.execute(
            select(WorkspaceCreditTransaction.id).where(column == reference)
        )
        if existing.first() is not None:
            logger.info(f"Stripe object {reference} already credited")
            return None

    credits = await get_or_create_workspace_credits(db, workspace_id, lock=True)
    credits.balance_cents += amount_cents

    transaction = WorkspaceCreditTransaction(
        workspace_id=workspace_id,
        type=transaction_type,
        amount_cents=amount_cents,
        balance_after_cents=credits.balance_cents,
        description=description,
        stripe_payment_intent_id=stripe_payment_intent_id,
        stripe_refund_source_id=stripe_refund_source_id,
    )
    db.add(transaction)
    await db.flush()

    logger.info(
        f"Credited {amount_cents} cents ({transaction_type}) to workspace "
        f"{workspace_id}, balance now {credits.balance_cents}"
    )
    return transaction


async def _charge_workspace_credits(
    db: AsyncSession,
    workspace_id: UUID,
    amount_cents: int,
    conversation_id: UUID | None,
    description: str,
) -> int:
    credits = await get_or_create_workspace_credits(db, workspace_id, lock=True)
    if credits.balance_cents < amount_cents:
        raise InsufficientCreditsError(amount_cents, credits.balance_cents)

    credits.balance_cents -= amount_cents
    db.add(
        WorkspaceCreditTransaction(
            workspace_id=workspace_id,
            type=CreditTransactionType.USAGE,
            amount_cents=-amount_cents,
            balance_after_cents=credits.balance_cents,
            description=description,
            conversation_id=conversation_id,
        )
    )
    return credits.balance_cents


async def _charge_partner_credits(
    db: AsyncSession,
    partner_id: UUID,
    workspace_id: UUID,
    amount_cents: int,
    conversation_id: UUID | None,
    description: str,
) -> int:
    credits = await get_or_create_partner_credits(db, partner_id, lock=True)
    if credits.balance_cents < amount_cents:
        raise InsufficientCreditsError(amount_cents, credits.balance_cents)

    credits.balance_cents -= amount_cents
    db.add(
        PartnerCreditTransaction(
            partner_id=partner_id,
            workspace_id=workspace_id,
            type=CreditTransactionType.USAGE,
            amount_cents=-amount_cents,
            balance_after_cents=credits.balance_cents,
            description=description,
            conversation_id=conversation_id,
        )
    )
    if credits.balance_cents < credits.low_balance_threshold_cents:
        logger.warning(
            f"Partner {partner_id} credits low: {credits.balance_cents} cents remaining"
        )
    return credits.balance_cents


# =============================================================================
# Deduction
# =============================================================================


async def deduct_workspace_usage(
    db: AsyncSession,
    workspace_id: UUID,
    duration_seconds: int,
    conversation_id: UUID | None = None,
    description: str | None = None,
    settings: Settings | None = None,
) -> UsageDeduction:
    """Charge a completed call to the right balance.

    Raises:
        NotFoundError: If the workspace doesn't exist.
        InsufficientCreditsError: If a prepaid balance can't cover the call.
    """
    settings = settings or get_settings()
    minutes = minutes_for_duration(duration_seconds)
    description = description or f"Call - {minutes} minutes"

    workspace = await db.get(Workspace, workspace_id)
    if workspace is None:
        raise NotFoundError("Workspace")

    active = await get_active_subscription(db, workspace_id)
    if active is not None:
        subscription, plan = active

        if plan.billing_type == BillingType.POSTPAID:
            amount = minutes * plan.overage_rate_cents
            subscription.postpaid_minutes_used += minutes
            subscription.pending_invoice_amount_cents += amount
            await db.flush()
            return UsageDeduction(
                deducted_from=DeductionSource.POSTPAID,
                minutes=minutes,
                amount_deducted_cents=amount,
                postpaid_minutes_used=subscription.postpaid_minutes_used,
                postpaid_minutes_limit=plan.postpaid_minutes_limit,
                pending_invoice_amount_cents=subscription.pending_invoice_amount_cents,
            )

        remaining_included = max(
            plan.included_minutes - subscription.minutes_used_this_period, 0
        )
        included = min(minutes, remaining_included)
        overage = minutes - included
        amount = overage * plan.overage_rate_cents

        subscription.minutes_used_this_period += minutes
        subscription.overage_charges_cents += amount
        await db.flush()
        return UsageDeduction(
            deducted_from=DeductionSource.SUBSCRIPTION,
            minutes=minutes,
            amount_deducted_cents=amount,
            included_minutes_used=included,
            overage_minutes=overage,
        )

    if workspace.is_billing_exempt:
        partner = await db.get(Partner, workspace.partner_id)
        amount = minutes * partner_rate_cents(partner, settings)
        balance = await _charge_partner_credits(
            db, partner.id, workspace_id, amount, conversation_id, description
        )
        await db.flush()
        return UsageDeduction(
            deducted_from=DeductionSource.PARTNER,
            minutes=minutes,
            amount_deducted_cents=amount,
            new_balance_cents=balance,
        )

    amount = minutes * settings.default_per_minute_rate_cents
    balance = await _charge_workspace_credits(
        db, workspace_id, amount, conversation_id, description
    )
    await db.flush()
    return UsageDeduction(
        deducted_from=DeductionSource.WORKSPACE,
        minutes=minutes,
        amount_deducted_cents=amount,
        new_balance_cents=balance,
    )


# =============================================================================
# Pre-call Checks
# =============================================================================


async def can_make_postpaid_call(
    db: AsyncSession, workspace_id: UUID
) -> tuple[bool, str | None]:
    """Gate new calls on the postpaid minutes limit.

    Returns:
        Tuple of (allowed, reason). Workspaces without a postpaid plan are
        always allowed here.
    """
    active = await get_active_subscription(db, workspace_id)
    if active is None:
        return True, None
    subscription, plan = active
    if plan.billing_type != BillingType.POSTPAID or plan.postpaid_minutes_limit is None:
        return True, None
    if subscription.postpaid_minutes_used >= plan.postpaid_minutes_limit:
        return (
            False,
            f"Postpaid limit reached ({plan.postpaid_minutes_limit} minutes). "
            "Usage resets after the next invoice is paid.",
        )
    return True, None


async def has_sufficient_credits(
    db: AsyncSession,
    workspace_id: UUID,
    estimated_minutes: int,
    settings: Settings | None = None,
) -> bool:
    """Whether the balance that would be charged can cover ``estimated_minutes``."""
    settings = settings or get_settings()
    workspace = await db.get(Workspace, workspace_id)
    if workspace is None:
        return False

    active = await get_active_subscription(db, workspace_id)
    if active is not None:
        _, plan = active
        if plan.billing_type == BillingType.POSTPAID:
            allowed, _ = await can_make_postpaid_call(db, workspace_id)
            return allowed
        # Prepaid overage is invoiced through the meter
        return True

    if workspace.is_billing_exempt:
        partner = await db.get(Partner, workspace.partner_id)
        credits = await get_or_create_partner_credits(db, partner.id)
        return credits.balance_cents >= estimated_minutes * partner_rate_cents(
            partner, settings
        )

    credits = await get_or_create_workspace_credits(db, workspace_id)
    return credits.balance_cents >= estimated_minutes * settings.default_per_minute_rate_cents
