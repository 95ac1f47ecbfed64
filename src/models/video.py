"""
Video encoding models.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class JobPhase(str, Enum):
    """Encoder job state machine."""
    IDLE = "idle"
    VALIDATING = "validating"
    SCANNING = "scanning"
    ENCODING = "encoding"
    VERIFYING = "verifying"
    CANCELLED = "cancelled"
    FAILED = "failed"


class VideoOptions(BaseModel):
    """Validated encoder options."""

    fps: float = Field(..., description="Output frame rate")
    quality: str = Field(..., description="low, medium or high")
    codec: str = Field(..., description="h264 or h265")
    bitrate: Optional[int] = Field(None, description="Custom bitrate in kbps")


class VideoResult(BaseModel):
    """Result of a completed encode."""

    output_path: str
    filename: str
    size_bytes: int
    duration_seconds: int = Field(..., description="Real time covered by the frames")
    frame_count: int
    fps: float
    codec: str
    quality: str
    processing_time_ms: int
    created_at: datetime
    correlation_id: str

    def to_event(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class VideoInfo(BaseModel):
    """Listing entry for a stored video."""

    filename: str
    size: int
    created: datetime
    modified: datetime
