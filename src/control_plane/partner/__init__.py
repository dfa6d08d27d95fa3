"""Partner-scoped API routes."""

from control_plane.partner.routes import router as partner_router

__all__ = ["partner_router"]
