"""Captured still endpoints."""

from typing import List

from fastapi import APIRouter, Depends
from fastapi.responses import FileResponse
import structlog

from src.models.capture import CaptureInfo
from src.services.capture_service import CaptureService
from src.utils.dependencies import get_capture_service
from src.utils.errors import success_response


logger = structlog.get_logger().bind(component="captures_api")
router = APIRouter()


@router.get("", response_model=List[CaptureInfo])
async def list_captures(capture_service: CaptureService = Depends(get_capture_service)):
    """List stored captures, newest first."""
    return await capture_service.list_captures()


@router.get("/{filename}")
async def download_capture(filename: str, capture_service: CaptureService = Depends(get_capture_service)):
    """Return one capture as a JPEG."""
    path = capture_service.resolve_capture(filename)
    return FileResponse(path, media_type="image/jpeg", filename=path.name)


@router.delete("")
async def clear_captures(capture_service: CaptureService = Depends(get_capture_service)):
    """Delete every stored capture."""
    cleared = await capture_service.clear_captures()
    logger.info("Captures cleared via API", count=cleared)
    return success_response({"cleared": cleared}, message=f"Cleared {cleared} images!")
