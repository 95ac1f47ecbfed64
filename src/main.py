"""
Time-lapse appliance - camera orchestration, live preview and video assembly.
Main application entry point.
"""

import asyncio
import os
import signal
import sys
from contextlib import asynccontextmanager
from datetime import datetime
from importlib.metadata import PackageNotFoundError, version

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from src.api.routers import (
    captures_router,
    health_router,
    settings_router,
    videos_router,
    websocket_router,
)
from src.api.routers.websocket import get_connection_manager
from src.config.constants import ProcessDefaults
from src.services.capture_service import CaptureService
from src.services.config_store import ConfigStore
from src.services.control_plane import ControlPlane
from src.services.event_service import EventService
from src.services.operation_orchestrator import OperationOrchestrator
from src.services.process_service import ProcessService
from src.services.stream_service import StreamService
from src.services.timelapse_engine import TimelapseEngine
from src.services.video_service import VideoService
from src.utils.config import get_settings, validate_settings_on_startup
from src.utils.errors import (
    TimelapseError,
    generic_exception_handler,
    http_exception_handler,
    timelapse_exception_handler,
)
from src.utils.logging_config import setup_logging
from src.utils.timing import StartupTimer, timed_async_operation


try:
    APP_VERSION = version("timelapse-appliance")
except PackageNotFoundError:
    APP_VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager for startup/shutdown."""
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_file, console=settings.debug_mode)
    logger = structlog.get_logger().bind(component="main")

    timer = StartupTimer()

    logger.info("=" * 60)
    logger.info("Starting time-lapse appliance", version=APP_VERSION)
    logger.info("=" * 60)

    # Validate configuration before proceeding
    timer.start("Settings validation")
    validation_result = validate_settings_on_startup(settings)

    for info_msg in validation_result["info"]:
        logger.info(info_msg)
    for warning_msg in validation_result["warnings"]:
        logger.warning(warning_msg)

    if not validation_result["valid"]:
        logger.error("=" * 60)
        logger.error("CONFIGURATION VALIDATION FAILED")
        logger.error("=" * 60)
        for error_msg in validation_result["errors"]:
            logger.error(f"  {error_msg}")
        logger.error("Please fix the configuration errors above and restart the application.")
        sys.exit(1)
    timer.end("Settings validation")

    # Camera configuration
    timer.start("Configuration store")
    config_store = ConfigStore(settings)
    try:
        await config_store.initialize()
    except TimelapseError as e:
        logger.error("Configuration store failed to initialize", error=e.message, details=e.details)
        sys.exit(1)
    app.state.settings = settings
    app.state.config_store = config_store
    timer.end("Configuration store")

    # Services
    timer.start("Core services initialization")
    event_service = EventService()
    process_service = ProcessService(
        kill_timeout=settings.helper_kill_timeout,
        max_buffer_size=settings.helper_buffer_size,
    )
    try:
        capture_service = CaptureService(process_service, settings)
        await capture_service.initialize()
    except TimelapseError as e:
        logger.error("Captures directory unusable", error=e.message, details=e.details)
        sys.exit(1)

    stream_service = StreamService(process_service, settings)
    engine = TimelapseEngine(capture_service, settle_delay=settings.settle_delay)
    orchestrator = OperationOrchestrator(
        stream_service, capture_service, engine, settle_delay=settings.settle_delay)

    video_service = VideoService(process_service, settings, event_service=event_service)
    try:
        await video_service.initialize()
    except TimelapseError as e:
        logger.error("Videos directory unusable", error=e.message, details=e.details)
        sys.exit(1)

    control_plane = ControlPlane(
        orchestrator, stream_service, capture_service, video_service,
        config_store, event_service, get_connection_manager(), settings,
    )
    await control_plane.start()

    app.state.event_service = event_service
    app.state.process_service = process_service
    app.state.capture_service = capture_service
    app.state.stream_service = stream_service
    app.state.orchestrator = orchestrator
    app.state.video_service = video_service
    app.state.control_plane = control_plane
    timer.end("Core services initialization")

    timer.start("Background services startup")
    await event_service.start()
    timer.end("Background services startup")

    timer.report()

    logger.info("=" * 60)
    logger.info("TIME-LAPSE APPLIANCE READY")
    logger.info(f"Server is accepting connections at http://{settings.host}:{settings.port}")
    logger.info(f"Health check endpoint: http://{settings.host}:{settings.port}/api/v1/health")
    logger.info("=" * 60)

    yield

    # Shutdown with proper error handling and timeouts
    logger.info("Shutting down gracefully")

    async def shutdown_with_timeout(coro, service_name: str, timeout: float = ProcessDefaults.SHUTDOWN_TIMEOUT):
        """Execute shutdown coroutine with timeout."""
        try:
            await asyncio.wait_for(coro, timeout=timeout)
            logger.info(f"{service_name} stopped successfully")
        except asyncio.TimeoutError:
            logger.warning(f"{service_name} shutdown timed out after {timeout}s")
        except Exception as e:
            logger.warning(f"Error stopping {service_name}", error=str(e))

    async with timed_async_operation("Shutdown complete"):
        await shutdown_with_timeout(control_plane.shutdown(), "Control plane")

        # Camera and encoder can stop in parallel
        await asyncio.gather(
            shutdown_with_timeout(orchestrator.shutdown(), "Orchestrator"),
            shutdown_with_timeout(video_service.shutdown(), "Video service",
                                  timeout=settings.kill_timeout + ProcessDefaults.SHUTDOWN_TIMEOUT),
            return_exceptions=True,
        )

        await shutdown_with_timeout(capture_service.shutdown(), "Capture service")
        await shutdown_with_timeout(process_service.shutdown(), "Helper processes")
        await shutdown_with_timeout(event_service.stop(), "Event service")


def create_application() -> FastAPI:
    """Create FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Time-lapse Appliance API",
        description="Camera orchestration, live preview and time-lapse video assembly",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
    )

    # API Routes
    app.include_router(health_router, prefix="/api/v1", tags=["Health"])
    app.include_router(captures_router, prefix="/api/v1/captures", tags=["Captures"])
    app.include_router(videos_router, prefix="/api/v1/videos", tags=["Videos"])
    app.include_router(settings_router, prefix="/api/v1/settings", tags=["Settings"])
    app.include_router(websocket_router, prefix="/ws", tags=["WebSocket"])

    # Prometheus metrics endpoint
    if settings.enable_metrics:
        @app.get("/metrics")
        async def metrics():
            return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Global exception handlers
    app.add_exception_handler(TimelapseError, timelapse_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)

    # Request validation error handler (Pydantic validation errors)
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger = structlog.get_logger().bind(component="main")
        logger.warning("Validation error", errors=exc.errors(), path=request.url.path)

        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "status": "error",
                "message": "Request validation failed",
                "error_code": "VALIDATION_ERROR",
                "kind": "validation",
                "details": {"validation_errors": [
                    {"loc": list(err.get("loc", ())), "msg": err.get("msg")} for err in exc.errors()
                ]},
                "timestamp": datetime.now().isoformat()
            }
        )

    # Generic exception handler (catches all unhandled exceptions) - Must be last
    app.add_exception_handler(Exception, generic_exception_handler)

    return app


def setup_signal_handlers():
    """Setup graceful shutdown signal handlers."""
    def signal_handler(signum, frame):
        logger = structlog.get_logger()
        logger.info("Received shutdown signal", signal=signum)
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


app = create_application()


if __name__ == "__main__":
    setup_signal_handlers()
    settings = get_settings()

    config = {
        "host": settings.host,
        "port": settings.port,
        "workers": 1,
        "log_level": settings.log_level,
        "access_log": True,
        "use_colors": False,
        "server_header": False,
    }

    if settings.environment == "development" and os.getenv("DISABLE_RELOAD", "false").lower() != "true":
        config.update({
            "reload": True,
            "reload_dirs": ["src"],
            "reload_excludes": ["*.log", "__pycache__", "*.pyc", ".pytest_cache", "captures/*", "videos/*"],
        })

    logger = structlog.get_logger()
    logger.info("=" * 60)
    logger.info("STARTING UVICORN SERVER")
    logger.info(f"Listening on: http://{settings.host}:{settings.port}")
    logger.info(f"Environment: {settings.environment}")
    logger.info("=" * 60)

    uvicorn.run("src.main:app", **config)
