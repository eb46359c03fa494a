"""API routers."""

from newapi_sync.api.health import router as health_router
from newapi_sync.api.sync import router as sync_router

__all__ = ["health_router", "sync_router"]
