"""Generated video endpoints."""

from typing import List

from fastapi import APIRouter, Depends
from fastapi.responses import FileResponse
import structlog

from src.models.video import VideoInfo
from src.services.video_service import VideoService
from src.utils.dependencies import get_video_service
from src.utils.errors import success_response


logger = structlog.get_logger().bind(component="videos_api")
router = APIRouter()


@router.get("", response_model=List[VideoInfo])
async def list_videos(video_service: VideoService = Depends(get_video_service)):
    """List stored videos, newest first."""
    return await video_service.list_videos()


@router.get("/{filename}")
async def download_video(filename: str, video_service: VideoService = Depends(get_video_service)):
    """Stream a video file as plain bytes."""
    path = video_service.resolve_video(filename)
    return FileResponse(path, media_type="video/mp4", filename=path.name)


@router.delete("/{filename}")
async def delete_video(filename: str, video_service: VideoService = Depends(get_video_service)):
    """Delete a video."""
    await video_service.delete_video(filename)
    return success_response({"filename": filename}, message="Video deleted")
