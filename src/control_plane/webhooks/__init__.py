"""Inbound webhooks from voice providers and Stripe Connect."""

from control_plane.webhooks.routes import router as webhooks_router

__all__ = ["webhooks_router"]
