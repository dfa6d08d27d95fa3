"""Workspace billing API routes.

Provides the usage summary, credit balance and ledger, and credit top-ups
paid through the partner's Stripe Connect account.
"""

import logging
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.audit import record_audit
from control_plane.auth.context import WorkspaceContext, require_workspace_permission
from control_plane.auth.permissions import Permission
from control_plane.billing.credits import (
    get_active_subscription,
    get_or_create_workspace_credits,
)
from control_plane.billing.metering import ensure_workspace_stripe_customer
from control_plane.billing.stripe_client import StripeConnectClient, get_stripe_client
from control_plane.billing.usage import check_monthly_minutes_limit
from control_plane.db.database import get_db
from control_plane.db.models import WorkspaceCreditTransaction
from control_plane.errors import ExternalServiceError, ValidationError
from control_plane.pagination import PageParams, PaginationMeta, page_params, paginate

logger = logging.getLogger("control-plane.billing")

router = APIRouter(prefix="/w/{workspace_slug}/billing", tags=["Billing"])

MIN_TOPUP_CENTS = 500
MAX_TOPUP_CENTS = 1_000_000


# =============================================================================
# Request/Response Models
# =============================================================================


class SubscriptionSummary(BaseModel):
    id: UUID
    plan_id: UUID
    plan_name: str
    billing_type: str
    status: str
    included_minutes: int
    minutes_used_this_period: int
    overage_rate_cents: int
    overage_charges_cents: int
    postpaid_minutes_used: int
    postpaid_minutes_limit: int | None
    pending_invoice_amount_cents: int
    current_period_start: datetime | None
    current_period_end: datetime | None


class BillingSummaryResponse(BaseModel):
    """Month-to-date usage against the partner tier, plus balances."""

    current_month_minutes: int
    current_month_cost: float
    monthly_minutes_limit: int
    monthly_minutes_remaining: int
    within_limit: bool
    credits_balance_cents: int
    is_billing_exempt: bool
    subscription: SubscriptionSummary | None = None


class CreditsResponse(BaseModel):
    balance_cents: int
    low_balance_threshold_cents: int
    is_low_balance: bool


class CreditTransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: str
    amount_cents: int
    balance_after_cents: int
    description: str | None
    conversation_id: UUID | None
    stripe_payment_intent_id: str | None
    created_at: datetime


class CreditTransactionListResponse(BaseModel):
    data: list[CreditTransactionResponse]
    meta: PaginationMeta


class TopupRequest(BaseModel):
    amount_cents: int = Field(..., ge=MIN_TOPUP_CENTS, le=MAX_TOPUP_CENTS)


class TopupResponse(BaseModel):
    payment_intent_id: str
    client_secret: str
    amount_cents: int


# =============================================================================
# Routes
# =============================================================================


@router.get("/summary", response_model=BillingSummaryResponse)
async def get_billing_summary(
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.BILLING_READ)),
    db: AsyncSession = Depends(get_db),
):
    workspace = ctx.workspace
    limit_status = await check_monthly_minutes_limit(db, workspace.id)
    credits = await get_or_create_workspace_credits(db, workspace.id)

    subscription = None
    active = await get_active_subscription(db, workspace.id)
    if active is not None:
        sub, plan = active
        subscription = SubscriptionSummary(
            id=sub.id,
            plan_id=plan.id,
            plan_name=plan.name,
            billing_type=plan.billing_type,
            status=sub.status,
            included_minutes=plan.included_minutes or 0,
            minutes_used_this_period=sub.minutes_used_this_period or 0,
            overage_rate_cents=plan.overage_rate_cents or 0,
            overage_charges_cents=sub.overage_charges_cents or 0,
            postpaid_minutes_used=sub.postpaid_minutes_used or 0,
            postpaid_minutes_limit=plan.postpaid_minutes_limit,
            pending_invoice_amount_cents=sub.pending_invoice_amount_cents or 0,
            current_period_start=sub.current_period_start,
            current_period_end=sub.current_period_end,
        )

    return BillingSummaryResponse(
        current_month_minutes=limit_status.current_usage,
        current_month_cost=float(workspace.current_month_cost or 0),
        monthly_minutes_limit=limit_status.limit,
        monthly_minutes_remaining=limit_status.remaining,
        within_limit=limit_status.allowed,
        credits_balance_cents=credits.balance_cents,
        is_billing_exempt=workspace.is_billing_exempt,
        subscription=subscription,
    )


@router.get("/credits", response_model=CreditsResponse)
async def get_credits(
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.BILLING_READ)),
    db: AsyncSession = Depends(get_db),
):
    credits = await get_or_create_workspace_credits(db, ctx.workspace.id)
    return CreditsResponse(
        balance_cents=credits.balance_cents,
        low_balance_threshold_cents=credits.low_balance_threshold_cents,
        is_low_balance=credits.balance_cents < credits.low_balance_threshold_cents,
    )


@router.get("/credits/transactions", response_model=CreditTransactionListResponse)
async def list_credit_transactions(
    params: PageParams = Depends(page_params),
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.BILLING_READ)),
    db: AsyncSession = Depends(get_db),
):
    """Credit ledger, newest first."""
    query = (
        select(WorkspaceCreditTransaction)
        .where(WorkspaceCreditTransaction.workspace_id == ctx.workspace.id)
        .order_by(WorkspaceCreditTransaction.created_at.desc())
    )
    transactions, meta = await paginate(db, query, params)
    return CreditTransactionListResponse(
        data=[CreditTransactionResponse.model_validate(t) for t in transactions],
        meta=meta,
    )


@router.post(
    "/credits/topup", response_model=TopupResponse, status_code=status.HTTP_201_CREATED
)
async def create_topup(
    request: TopupRequest,
    ctx: WorkspaceContext = Depends(require_workspace_permission(Permission.BILLING_MANAGE)),
    db: AsyncSession = Depends(get_db),
    stripe_client: StripeConnectClient = Depends(get_stripe_client),
):
    """Create a PaymentIntent on the partner's Connect account.

    Credits are applied by the ``payment_intent.succeeded`` webhook, not here.
    """
    customer = await ensure_workspace_stripe_customer(db, ctx.workspace.id, stripe_client)
    if customer is None:
        raise ValidationError("Partner has not connected a Stripe account")

    try:
        intent = stripe_client.create_topup_payment_intent(
            customer.connect_account_id,
            customer.customer_id,
            request.amount_cents,
            str(ctx.workspace.id),
        )
    except Exception as e:
        logger.error(f"Top-up PaymentIntent failed for workspace {ctx.workspace.id}: {e}")
        raise ExternalServiceError("Stripe", str(e)) from e

    await record_audit(
        db,
        action="billing.topup_requested",
        entity_type="workspace",
        entity_id=ctx.workspace.id,
        user_id=ctx.user.id,
        workspace_id=ctx.workspace.id,
        new_values={"amount_cents": request.amount_cents},
    )
    logger.info(
        f"Top-up PaymentIntent {intent['payment_intent_id']} created for workspace "
        f"{ctx.workspace.id}: {request.amount_cents} cents"
    )
    return TopupResponse(amount_cents=request.amount_cents, **intent)
