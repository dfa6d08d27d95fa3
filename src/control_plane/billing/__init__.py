"""Billing: credit balances, usage deduction, Stripe Connect metering."""

from control_plane.billing.credits import (
    UsageDeduction,
    add_workspace_credits,
    deduct_workspace_usage,
    has_sufficient_credits,
)
from control_plane.billing.metering import enqueue_usage_event, retry_pending_usage_events
from control_plane.billing.routes import router as billing_router
from control_plane.billing.stripe_client import StripeConnectClient, get_stripe_client
from control_plane.billing.usage import (
    CallUsageData,
    UsageResult,
    check_monthly_minutes_limit,
    process_call_completion,
)

__all__ = [
    "CallUsageData",
    "StripeConnectClient",
    "UsageDeduction",
    "UsageResult",
    "add_workspace_credits",
    "billing_router",
    "check_monthly_minutes_limit",
    "deduct_workspace_usage",
    "enqueue_usage_event",
    "get_stripe_client",
    "has_sufficient_credits",
    "process_call_completion",
    "retry_pending_usage_events",
]
