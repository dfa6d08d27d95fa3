"""Outbound call campaigns: lifecycle, recipient queue and business hours."""

from control_plane.campaigns.business_hours import is_within_business_hours
from control_plane.campaigns.routes import router as campaigns_router
from control_plane.campaigns.service import (
    CallEndOutcome,
    NextCallsResult,
    cleanup_expired_campaigns,
    determine_retell_outcome,
    determine_vapi_outcome,
    handle_campaign_call_ended,
    start_campaign,
    start_next_calls,
)

__all__ = [
    "CallEndOutcome",
    "NextCallsResult",
    "campaigns_router",
    "cleanup_expired_campaigns",
    "determine_retell_outcome",
    "determine_vapi_outcome",
    "handle_campaign_call_ended",
    "is_within_business_hours",
    "start_campaign",
    "start_next_calls",
]
