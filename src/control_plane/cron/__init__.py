"""Scheduled maintenance endpoints."""

from control_plane.cron.routes import router as cron_router

__all__ = ["cron_router"]
