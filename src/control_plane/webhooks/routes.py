"""Webhook endpoints for Retell, VAPI and Stripe Connect."""

import logging

import httpx
from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.billing.stripe_client import StripeConnectClient, get_stripe_client
from control_plane.config import ConfigurationError, Settings, get_settings
from control_plane.db.database import get_db
from control_plane.integrations.base import get_provider_http_client
from control_plane.webhooks.retell import handle_function_call, handle_retell_event
from control_plane.webhooks.stripe_connect import handle_connect_event
from control_plane.webhooks.vapi import handle_vapi_message

logger = logging.getLogger("control-plane.webhooks")

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


def _handler_failed() -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Webhook handler failed"},
    )


async def _json_body(request: Request) -> dict | None:
    try:
        payload = await request.json()
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


@router.post("/retell")
async def retell_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    stripe_client: StripeConnectClient = Depends(get_stripe_client),
    http_client: httpx.AsyncClient | None = Depends(get_provider_http_client),
):
    """Handle Retell call events and custom function calls."""
    payload = await _json_body(request)
    if payload is None:
        return JSONResponse(status_code=400, content={"error": "Invalid JSON payload"})

    if "event" in payload:
        try:
            await handle_retell_event(db, payload, settings, stripe_client, http_client)
        except Exception:
            logger.exception("Error processing Retell webhook")
            await db.rollback()
            return _handler_failed()
        return {"received": True}

    if "function" in payload:
        return handle_function_call(payload)

    logger.warning("Unknown Retell payload type")
    return JSONResponse(status_code=400, content={"error": "Unknown payload type"})


@router.post("/vapi")
async def vapi_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    stripe_client: StripeConnectClient = Depends(get_stripe_client),
    http_client: httpx.AsyncClient | None = Depends(get_provider_http_client),
):
    """Handle VAPI server messages."""
    payload = await _json_body(request)
    if payload is None or not isinstance(payload.get("message"), dict):
        return JSONResponse(status_code=400, content={"error": "Invalid payload"})

    try:
        await handle_vapi_message(db, payload, settings, stripe_client, http_client)
    except Exception:
        logger.exception("Error processing VAPI webhook")
        await db.rollback()
        return _handler_failed()
    return {"received": True}


@router.post("/stripe-connect")
async def stripe_connect_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    stripe_client: StripeConnectClient = Depends(get_stripe_client),
):
    """Handle events from partners' connected Stripe accounts."""
    if not stripe_signature:
        return JSONResponse(status_code=400, content={"error": "Missing signature"})

    payload = await request.body()
    try:
        event = stripe_client.verify_webhook(payload, stripe_signature)
    except ConfigurationError:
        logger.error("STRIPE_CONNECT_WEBHOOK_SECRET is not configured")
        return JSONResponse(
            status_code=500, content={"error": "Webhook secret not configured"}
        )
    except ValueError as e:
        return JSONResponse(
            status_code=400,
            content={"error": f"Webhook signature verification failed: {e}"},
        )

    try:
        await handle_connect_event(db, event, settings, stripe_client)
    except Exception:
        logger.exception(f"Error handling Stripe Connect event {event.get('type')}")
        await db.rollback()
        return _handler_failed()
    return {"received": True}
