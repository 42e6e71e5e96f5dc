"""API routes module."""

from wayfare.api.routes.health import router as health_router
from wayfare.api.routes.webhooks import router as webhooks_router

__all__ = [
    "health_router",
    "webhooks_router",
]
