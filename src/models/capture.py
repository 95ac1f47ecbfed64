"""
Capture and stream models.
"""
from datetime import datetime
from typing import Any, Dict, Literal, Tuple

from pydantic import BaseModel, ConfigDict, Field, computed_field

from src.config.constants import RESOLUTION_PRESETS
from src.utils.timestamps import iso_timestamp


def resolution_for(quality: str) -> Tuple[int, int]:
    return RESOLUTION_PRESETS.get(quality, RESOLUTION_PRESETS["medium"])


class StreamSettings(BaseModel):
    """Settings the live preview was started with."""

    model_config = ConfigDict(frozen=True)

    quality: Literal["low", "medium", "high"] = "medium"
    fps: int = Field(15, ge=1, le=60)
    rotation: int = 0

    @computed_field
    @property
    def resolution(self) -> str:
        width, height = resolution_for(self.quality)
        return f"{width}x{height}"


class CaptureSettings(BaseModel):
    """Per-capture camera parameters."""

    model_config = ConfigDict(frozen=True)

    quality: Literal["low", "medium", "high"] = "high"
    rotation: int = 0
    flip_horizontal: bool = False
    flip_vertical: bool = False

    @computed_field
    @property
    def resolution(self) -> str:
        width, height = resolution_for(self.quality)
        return f"{width}x{height}"


class CaptureRecord(BaseModel):
    """A still written to the captures directory."""

    filename: str = Field(..., description="timelapse_<safe ISO timestamp>.jpg")
    filepath: str = Field(..., description="Absolute path")
    resolution: str
    captured_at: datetime

    def to_event(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "filepath": self.filepath,
            "resolution": self.resolution,
            "timestamp": iso_timestamp(self.captured_at),
        }


class CaptureInfo(BaseModel):
    """Listing entry for a stored capture."""

    filename: str
    size: int
    created: datetime
