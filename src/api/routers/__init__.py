"""API routers for the time-lapse appliance."""

from .health import router as health_router
from .captures import router as captures_router
from .videos import router as videos_router
from .settings import router as settings_router
from .websocket import router as websocket_router

__all__ = [
    "health_router",
    "captures_router",
    "videos_router",
    "settings_router",
    "websocket_router",
]
