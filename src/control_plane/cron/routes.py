"""Cron endpoints.

Called by an external scheduler. When ``CRON_SECRET`` is set every
request must carry ``Authorization: Bearer <CRON_SECRET>``. In production
the secret is mandatory and the jobs stay locked until it is configured.
"""

import logging
import secrets
import time
from datetime import datetime

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.billing.metering import retry_pending_usage_events
from control_plane.billing.stripe_client import StripeConnectClient, get_stripe_client
from control_plane.billing.usage import reset_all_workspaces_monthly_usage
from control_plane.campaigns.service import cleanup_expired_campaigns
from control_plane.config import Settings, get_settings
from control_plane.db.database import get_db
from control_plane.db.models import utcnow
from control_plane.errors import AuthenticationError

logger = logging.getLogger("control-plane.cron")

router = APIRouter(prefix="/cron", tags=["Cron"])


class UsageRetryResponse(BaseModel):
    success: bool = True
    message: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    duration_ms: int | None = None
    timestamp: datetime


class CronJobResponse(BaseModel):
    success: bool = True
    message: str
    affected: int
    timestamp: datetime


def verify_cron_secret(
    authorization: str | None = Header(None),
    settings: Settings = Depends(get_settings),
) -> None:
    if not settings.cron_secret:
        if settings.is_production:
            logger.error("CRON_SECRET is not set; refusing cron request")
            raise AuthenticationError("Unauthorized")
        return

    expected = f"Bearer {settings.cron_secret}".encode()
    if not secrets.compare_digest((authorization or "").encode(), expected):
        logger.warning("Unauthorized cron access attempt")
        raise AuthenticationError("Unauthorized")


@router.get("/billing-usage-retry")
async def describe_billing_usage_retry():
    return {
        "endpoint": "/cron/billing-usage-retry",
        "method": "POST",
        "description": "Retries pending and failed Stripe meter event submissions",
        "auth": "Authorization: Bearer <CRON_SECRET>",
    }


@router.post(
    "/billing-usage-retry",
    response_model=UsageRetryResponse,
    dependencies=[Depends(verify_cron_secret)],
)
async def run_billing_usage_retry(
    settings: Settings = Depends(get_settings),
    db: AsyncSession = Depends(get_db),
    client: StripeConnectClient = Depends(get_stripe_client),
):
    """Drain the meter-event outbox. A no-op while metered billing is off."""
    if not settings.enable_stripe_metered_billing:
        return UsageRetryResponse(
            message="Metered billing is not enabled, skipping retry",
            timestamp=utcnow(),
        )

    logger.info("Starting retry of pending usage events")
    started = time.monotonic()
    result = await retry_pending_usage_events(db, client=client)
    duration_ms = int((time.monotonic() - started) * 1000)

    return UsageRetryResponse(
        message=(
            f"Processed {result['processed']} events: {result['succeeded']} succeeded, "
            f"{result['failed']} failed"
        ),
        duration_ms=duration_ms,
        timestamp=utcnow(),
        **result,
    )


@router.post(
    "/campaigns-cleanup",
    response_model=CronJobResponse,
    dependencies=[Depends(verify_cron_secret)],
)
async def run_campaigns_cleanup(db: AsyncSession = Depends(get_db)):
    now = utcnow()
    cancelled = await cleanup_expired_campaigns(db, now)
    return CronJobResponse(
        message=f"Cancelled {cancelled} expired draft campaigns",
        affected=cancelled,
        timestamp=now,
    )


@router.post(
    "/monthly-usage-reset",
    response_model=CronJobResponse,
    dependencies=[Depends(verify_cron_secret)],
)
async def run_monthly_usage_reset(db: AsyncSession = Depends(get_db)):
    now = utcnow()
    reset = await reset_all_workspaces_monthly_usage(db, now)
    return CronJobResponse(
        message=f"Reset monthly usage for {reset} workspaces",
        affected=reset,
        timestamp=now,
    )
