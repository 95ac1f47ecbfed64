"""
Camera configuration snapshot.

The snapshot is immutable: consumers get one at the start of an operation and
keep it for the operation's lifetime. Field names are snake_case; the UI speaks
camelCase, which is accepted and produced through aliases.
"""
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from src.config.constants import RESOLUTION_PRESETS, TimelapseDefaults, VideoLimits
from src.models.capture import CaptureSettings, StreamSettings
from src.utils.validators import parse_bitrate, parse_bool, validate_time_of_day

Quality = Literal["low", "medium", "high"]

LEGACY_FIELDS = (
    "capture_interval",
    "image_quality",
    "stream_fps",
    "stream_quality",
    "schedule_enabled",
    "start_time",
    "stop_time",
    "video_fps",
    "video_quality",
)


# Read from AppSettings at startup; saved values apply after a restart
RESTART_REQUIRED_FIELDS = ("debug_mode", "log_level", "mock_camera")


class CameraConfig(BaseModel):
    """Every option the appliance recognizes, with defaults."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    # Capture
    capture_interval: int = Field(
        TimelapseDefaults.CAPTURE_INTERVAL,
        ge=TimelapseDefaults.MIN_CAPTURE_INTERVAL,
        le=TimelapseDefaults.MAX_CAPTURE_INTERVAL,
        description="Seconds between time-lapse captures"
    )
    image_quality: Quality = Field("high", description="Capture resolution preset")

    # Stream
    stream_fps: int = Field(15, ge=1, le=60, description="Live preview frame rate")
    stream_quality: Quality = Field("medium", description="Live preview resolution preset")

    # Schedule (reported, not enforced)
    schedule_enabled: bool = False
    start_time: str = "08:00"
    stop_time: str = "18:00"

    # Video
    video_fps: float = Field(30, ge=VideoLimits.MIN_FPS, le=VideoLimits.MAX_FPS)
    video_quality: Quality = "medium"
    video_codec: Literal["h264", "h265"] = "h264"
    video_bitrate: Optional[int] = Field(None, description="Custom bitrate in kbps, presets when unset")

    # Orientation
    rotation: int = Field(0, description="Degrees: 0, 90, 180 or 270")
    flip_horizontal: bool = False
    flip_vertical: bool = False

    # Storage policy (advisory)
    auto_cleanup: bool = True
    max_images: int = Field(1000, ge=1)
    cleanup_older_than_days: int = Field(7, ge=1)
    max_storage_gb: float = Field(10, gt=0)

    # Observability
    debug_mode: bool = False
    log_level: Literal["debug", "info", "warning", "error"] = "info"
    mock_camera: bool = False

    @field_validator("image_quality", "stream_quality", "video_quality", "video_codec", "log_level",
                     mode="before")
    @classmethod
    def normalize_choice(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("schedule_enabled", "flip_horizontal", "flip_vertical", "auto_cleanup",
                     "debug_mode", "mock_camera", mode="before")
    @classmethod
    def validate_bool(cls, v):
        return parse_bool(v)

    @field_validator("start_time", "stop_time", mode="before")
    @classmethod
    def validate_time(cls, v):
        return validate_time_of_day(v)

    @field_validator("video_bitrate", mode="before")
    @classmethod
    def validate_bitrate(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        return parse_bitrate(v)

    @field_validator("rotation", mode="before")
    @classmethod
    def validate_rotation(cls, v):
        if isinstance(v, bool):
            raise ValueError("Rotation must be 0, 90, 180 or 270")
        try:
            degrees = int(str(v).strip())
        except ValueError:
            raise ValueError(f"Invalid rotation: {v!r}") from None
        if degrees not in (0, 90, 180, 270):
            raise ValueError("Rotation must be 0, 90, 180 or 270")
        return degrees

    def stream_settings(self) -> StreamSettings:
        return StreamSettings(quality=self.stream_quality, fps=self.stream_fps, rotation=self.rotation)

    def capture_settings(self) -> CaptureSettings:
        return CaptureSettings(
            quality=self.image_quality,
            rotation=self.rotation,
            flip_horizontal=self.flip_horizontal,
            flip_vertical=self.flip_vertical,
        )

    def video_options(self) -> Dict[str, Any]:
        """Encoder options derived from this snapshot."""
        options: Dict[str, Any] = {
            "fps": self.video_fps,
            "quality": self.video_quality,
            "codec": self.video_codec,
        }
        if self.video_bitrate is not None:
            options["bitrate"] = self.video_bitrate
        return options

    def legacy_view(self) -> Dict[str, Any]:
        """The camelCase subset sent with ``configUpdate``."""
        data = self.model_dump(by_alias=True)
        return {to_camel(name): data[to_camel(name)] for name in LEGACY_FIELDS}

    def extended_view(self) -> Dict[str, Any]:
        """Every option, camelCase."""
        view = self.model_dump(by_alias=True)
        view["captureResolution"] = "x".join(str(n) for n in RESOLUTION_PRESETS[self.image_quality])
        return view
