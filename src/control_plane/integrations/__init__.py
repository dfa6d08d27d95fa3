"""Voice provider integrations (VAPI, Retell).

Provides REST clients, agent sync, outbound calls and retry helpers.
"""

from control_plane.integrations.calls import (
    CallDispatchResult,
    place_outbound_call,
    resolve_outbound_caller,
)
from control_plane.integrations.retell import RetellClient
from control_plane.integrations.retry import RETRY_PROFILES, RetryOptions, with_retry
from control_plane.integrations.sync import SyncOperation, SyncResult, safe_sync
from control_plane.integrations.vapi import VapiClient

__all__ = [
    "RETRY_PROFILES",
    "CallDispatchResult",
    "RetellClient",
    "RetryOptions",
    "SyncOperation",
    "SyncResult",
    "VapiClient",
    "place_outbound_call",
    "resolve_outbound_caller",
    "safe_sync",
    "with_retry",
]
