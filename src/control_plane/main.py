"""FastAPI application for the voice agent control plane.

Provides:
- Partner → workspace tenancy with role-based access
- AI agent management synced to VAPI and Retell
- Usage billing (subscription minutes, prepaid credits, postpaid metering)
- Outbound call campaigns

Flow:
1. POST /auth/signup - Create account, partner and default workspace
2. POST /auth/login - Get JWT token
3. POST /w/{slug}/agents - Create an agent (synced to its provider)
4. POST /webhooks/{provider} - Calls report back; usage is billed
5. GET /w/{slug}/billing/summary - Check usage and balances
"""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.auth import auth_router
from control_plane.billing import billing_router
from control_plane.campaigns import campaigns_router
from control_plane.config import get_jwt_secret, get_settings, load_environment
from control_plane.cron import cron_router
from control_plane.db.database import dispose_engine, get_db
from control_plane.db.models import utcnow
from control_plane.errors import register_error_handlers
from control_plane.log import configure_logging
from control_plane.partner import partner_router
from control_plane.webhooks import webhooks_router
from control_plane.workspaces import (
    agents_router,
    analytics_router,
    conversations_router,
    departments_router,
    invitations_router,
    leads_router,
    members_router,
    settings_router,
)

logger = logging.getLogger("control-plane.api")


# =============================================================================
# App Lifecycle
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    load_environment()
    settings = get_settings()
    configure_logging(settings)
    get_jwt_secret()  # refuse to boot without a real signing key
    logger.info(
        f"Control plane starting (env={settings.app_env}, "
        f"metered_billing={settings.enable_stripe_metered_billing})"
    )
    yield
    logger.info("Control plane shutting down")
    await dispose_engine()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Voice Agent Control Plane API",
        description="Multi-tenant control plane for AI voice agents",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Browser dashboard origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)

    for router in (
        auth_router,
        partner_router,
        agents_router,
        departments_router,
        leads_router,
        conversations_router,
        members_router,
        settings_router,
        analytics_router,
        campaigns_router,
        billing_router,
        invitations_router,
        webhooks_router,
        cron_router,
    ):
        app.include_router(router)

    app.add_api_route("/health", health_check, methods=["GET"], response_model=HealthResponse)
    return app


# =============================================================================
# Health
# =============================================================================


class HealthResponse(BaseModel):
    status: str
    database: str
    timestamp: str


async def health_check(db: AsyncSession = Depends(get_db)):
    """Liveness plus a database round trip."""
    try:
        await db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as e:
        logger.error(f"Health check database error: {e}")
        database = "unavailable"

    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        database=database,
        timestamp=utcnow().isoformat(),
    )


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
