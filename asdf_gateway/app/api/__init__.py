"""API endpoints package for the gateway."""

from asdf_gateway.app.api.admin import router as admin_router

__all__ = [
    "admin_router",
]
