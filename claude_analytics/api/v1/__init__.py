"""API v1 package."""

from .analytics import router as analytics_router, get_dashboard
from .websocket import router as websocket_router

__all__ = ["analytics_router", "websocket_router", "get_dashboard"]
