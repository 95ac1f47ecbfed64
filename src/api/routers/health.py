"""Health check endpoints."""

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
import structlog

from src.services.capture_service import CaptureService
from src.services.event_service import EventService
from src.services.operation_orchestrator import OperationOrchestrator
from src.services.video_service import VideoService
from src.utils.config import AppSettings
from src.utils.dependencies import (
    get_capture_service,
    get_event_service,
    get_orchestrator,
    get_settings_dependency,
    get_video_service,
)
from src.utils.system_check import get_process_uptime


logger = structlog.get_logger().bind(component="health")
router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str
    timestamp: datetime
    version: str
    environment: str
    services: Dict[str, Any]
    uptime_seconds: Optional[float] = None


@router.get("/health", response_model=HealthResponse)
async def health_check(
    settings: AppSettings = Depends(get_settings_dependency),
    capture_service: CaptureService = Depends(get_capture_service),
    video_service: VideoService = Depends(get_video_service),
    orchestrator: OperationOrchestrator = Depends(get_orchestrator),
    event_service: EventService = Depends(get_event_service),
):
    """
    Health check with per-service detail.

    The encoder is reported as degraded rather than unhealthy when ffmpeg is
    missing: capture and streaming keep working without it.
    """
    from src.main import APP_VERSION

    services_status: Dict[str, Any] = {}

    captures = capture_service.get_status()
    services_status["captures"] = {
        "status": "healthy" if captures["writable"] else "unhealthy",
        "details": captures,
    }

    try:
        encoder = await video_service.health_check()
        services_status["encoder"] = {
            "status": "healthy" if encoder["healthy"] else "degraded",
            "details": encoder,
        }
    except OSError as e:
        logger.error("Encoder health check failed", error=str(e))
        services_status["encoder"] = {"status": "degraded", "details": {"error": str(e)}}

    services_status["orchestrator"] = {
        "status": "healthy",
        "details": orchestrator.get_status(),
    }

    services_status["event_service"] = {
        "status": "healthy" if event_service.running else "unhealthy",
        "details": {"event_counts": dict(event_service.event_counts)},
    }

    statuses = [s["status"] for s in services_status.values()]
    if all(s == "healthy" for s in statuses):
        overall_status = "healthy"
    elif any(s == "unhealthy" for s in statuses):
        overall_status = "unhealthy"
    else:
        overall_status = "degraded"

    return HealthResponse(
        status=overall_status,
        timestamp=datetime.now(),
        version=APP_VERSION,
        environment=settings.environment,
        services=services_status,
        uptime_seconds=round(get_process_uptime(), 1),
    )
