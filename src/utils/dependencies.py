"""FastAPI dependency providers."""

from fastapi import Request

from src.services.capture_service import CaptureService
from src.services.config_store import ConfigStore
from src.services.event_service import EventService
from src.services.operation_orchestrator import OperationOrchestrator
from src.services.video_service import VideoService
from src.utils.config import AppSettings


async def get_settings_dependency(request: Request) -> AppSettings:
    """Get application settings from app state."""
    return request.app.state.settings


async def get_config_store(request: Request) -> ConfigStore:
    """Get camera configuration store from app state."""
    return request.app.state.config_store


async def get_capture_service(request: Request) -> CaptureService:
    """Get capture service instance from app state."""
    return request.app.state.capture_service


async def get_video_service(request: Request) -> VideoService:
    """Get video service instance from app state."""
    return request.app.state.video_service


async def get_orchestrator(request: Request) -> OperationOrchestrator:
    """Get operation orchestrator instance from app state."""
    return request.app.state.orchestrator


async def get_event_service(request: Request) -> EventService:
    """Get event service instance from app state."""
    return request.app.state.event_service
