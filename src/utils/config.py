"""
Configuration utilities and settings for the time-lapse appliance.
Handles environment variables, settings validation and startup checks.

Field names match their environment variables (case-insensitive), so
``OUTPUT_DIR=/data/captures`` populates ``output_dir``.
"""

import os
import shutil
from pathlib import Path
from typing import List, Optional

import structlog
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.config.constants import ProcessDefaults, StreamDefaults, TimelapseDefaults, VideoLimits

logger = structlog.get_logger().bind(component="config")


class AppSettings(BaseSettings):
    """
    Application settings with validation.

    Loaded from environment variables or the .env file that also backs the
    camera configuration store. Unknown keys in that file are ignored here.
    """

    # Server Configuration
    host: str = Field(
        default="0.0.0.0",
        description="API server bind address."
    )
    port: int = Field(
        default=3000,
        description="API server port. Must be between 1 and 65535.",
        ge=1,
        le=65535
    )
    environment: str = Field(
        default="production",
        description="Application environment: development or production"
    )
    cors_origins: str = Field(
        default="*",
        description="Comma-separated list of allowed CORS origins"
    )

    # Logging
    log_level: str = Field(
        default="info",
        description="Logging level: debug, info, warning, error, critical"
    )
    log_file: Optional[str] = Field(
        default=None,
        description="Optional log file path"
    )
    debug_mode: bool = Field(
        default=False,
        description="Use the human-readable console log renderer"
    )

    # Storage
    output_dir: str = Field(
        default="./captures",
        description="Captures root. Time-lapse stills are written here and the encoder only reads from here."
    )
    videos_dir: str = Field(
        default="./videos",
        description="Videos root. Only the encoder writes here."
    )
    temp_dir: Optional[str] = Field(
        default=None,
        description="Parent of the encoder's temporary symlink directories. System temp when unset."
    )
    config_file: str = Field(
        default=".env",
        description="Persisted KEY=VALUE camera configuration"
    )
    config_template: str = Field(
        default=".env.example",
        description="Template copied to config_file on first start"
    )

    # Camera
    camera_path: str = Field(
        default="fswebcam",
        description="Still capture binary"
    )
    camera_device: str = Field(
        default="/dev/video0",
        description="V4L2 device shared by the camera and the streamer"
    )
    capture_timeout: float = Field(
        default=TimelapseDefaults.CAPTURE_TIMEOUT,
        description="Seconds before a still capture is killed",
        gt=0
    )
    settle_delay: float = Field(
        default=TimelapseDefaults.SETTLE_DELAY,
        description="Seconds to wait after stopping the preview before capturing",
        ge=0,
        le=10
    )
    mock_camera: bool = Field(
        default=False,
        description="Write placeholder images instead of invoking the camera binary"
    )

    # Streamer
    mjpg_streamer_path: str = Field(
        default="/usr/local/bin/mjpg_streamer",
        description="mjpg-streamer binary"
    )
    mjpg_streamer_www: str = Field(
        default="/usr/local/share/mjpg-streamer/www/",
        description="Web root served by output_http.so"
    )
    mjpg_streamer_port: int = Field(
        default=StreamDefaults.PORT,
        ge=1,
        le=65535
    )
    stream_ready_signal: str = Field(
        default=StreamDefaults.READY_SIGNAL,
        description="Substring on the streamer's stderr meaning it is serving"
    )
    stream_startup_timeout: float = Field(
        default=StreamDefaults.STARTUP_TIMEOUT,
        gt=0
    )
    stream_kill_timeout: float = Field(
        default=StreamDefaults.KILL_TIMEOUT,
        gt=0
    )
    stream_host: Optional[str] = Field(
        default=None,
        description="Host used in the live stream URL. Autodetected when unset."
    )

    # Encoder
    ffmpeg_path: str = Field(
        default="ffmpeg",
        description="Encoder binary"
    )
    max_input_images: int = Field(default=VideoLimits.MAX_INPUT_IMAGES, ge=1)
    max_video_duration: int = Field(
        default=VideoLimits.MAX_VIDEO_DURATION,
        description="Maximum seconds of real time covered by one video",
        ge=1
    )
    max_video_size: int = Field(default=VideoLimits.MAX_VIDEO_SIZE, ge=1)
    process_timeout: int = Field(
        default=VideoLimits.PROCESS_TIMEOUT,
        description="Seconds before the encoder is killed",
        ge=VideoLimits.MIN_PROCESS_TIMEOUT
    )
    kill_timeout: float = Field(
        default=VideoLimits.KILL_TIMEOUT,
        description="Seconds between graceful and forceful termination of the encoder",
        gt=0
    )
    max_stderr_size: int = Field(default=VideoLimits.MAX_STDERR_SIZE, ge=1024)
    min_disk_space: int = Field(default=VideoLimits.MIN_DISK_SPACE, ge=0)
    max_memory_usage: int = Field(default=VideoLimits.MAX_MEMORY_USAGE, ge=1)

    # Helper processes
    helper_kill_timeout: float = Field(default=ProcessDefaults.KILL_TIMEOUT, gt=0)
    helper_buffer_size: int = Field(default=ProcessDefaults.MAX_BUFFER_SIZE, ge=1024)

    # Control plane
    system_info_interval: float = Field(
        default=5.0,
        description="Seconds between systemInfoUpdate broadcasts",
        gt=0
    )
    enable_metrics: bool = Field(default=True)

    @field_validator('environment')
    @classmethod
    def validate_environment(cls, v):
        """Validate environment setting."""
        valid_envs = ['development', 'production', 'testing']
        if v.lower() not in valid_envs:
            raise ValueError(f"Environment must be one of {valid_envs}, got: {v}")
        return v.lower()

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level setting."""
        valid_levels = ['debug', 'info', 'warning', 'error', 'critical']
        if v.lower() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}, got: {v}")
        return v.lower()

    @field_validator('output_dir', 'videos_dir')
    @classmethod
    def validate_directory(cls, v):
        """Reject empty directory settings."""
        if not v or not v.strip():
            raise ValueError("Directory path cannot be empty")
        return v.strip()

    @property
    def captures_path(self) -> Path:
        return Path(self.output_dir).resolve()

    @property
    def videos_path(self) -> Path:
        return Path(self.videos_dir).resolve()

    @property
    def cors_origins_list(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )


# Global settings instance
_settings: Optional[AppSettings] = None


def get_settings() -> AppSettings:
    """Get global settings instance."""
    global _settings
    if _settings is None:
        _settings = AppSettings()
    return _settings


def reload_settings() -> AppSettings:
    """Reload settings from environment variables and the .env file.

    Returns:
        Newly loaded AppSettings instance.
    """
    global _settings
    _settings = AppSettings()
    return _settings


def _ensure_writable_directory(label: str, path: Path, errors: List[str], info: List[str]) -> None:
    if not path.exists():
        try:
            path.mkdir(parents=True, exist_ok=True)
            info.append(f"Created {label} directory: {path}")
        except OSError as e:
            errors.append(f"Cannot create {label} directory {path}: {e}")
            return
    if not path.is_dir():
        errors.append(f"{label.capitalize()} path is not a directory: {path}")
    elif not os.access(path, os.W_OK):
        errors.append(f"{label.capitalize()} directory not writable: {path}")


def validate_settings_on_startup(settings: Optional[AppSettings] = None) -> dict:
    """
    Startup validation of the settings.

    Creates missing storage directories and checks that they are writable.
    Missing helper binaries are warnings: the appliance still serves the UI
    and reports the failure when the helper is first used.

    Returns:
        dict: {"valid": bool, "errors": [...], "warnings": [...], "info": [...]}
    """
    if settings is None:
        settings = get_settings()

    errors: List[str] = []
    warnings: List[str] = []
    info: List[str] = []

    # ========================================================================
    # Storage
    # ========================================================================

    _ensure_writable_directory("captures", settings.captures_path, errors, info)
    _ensure_writable_directory("videos", settings.videos_path, errors, info)
    if settings.temp_dir:
        _ensure_writable_directory("temp", Path(settings.temp_dir), errors, info)

    try:
        videos = settings.videos_path
        captures = settings.captures_path
        if videos == captures or captures in videos.parents or videos in captures.parents:
            warnings.append("Captures and videos directories overlap")
    except OSError as e:
        warnings.append(f"Could not compare storage directories: {e}")

    # ========================================================================
    # Helper binaries
    # ========================================================================

    if not settings.mock_camera and shutil.which(settings.camera_path) is None:
        warnings.append(f"Camera binary not found: {settings.camera_path}")
    if shutil.which(settings.mjpg_streamer_path) is None:
        warnings.append(f"Streamer binary not found: {settings.mjpg_streamer_path}")
    if shutil.which(settings.ffmpeg_path) is None:
        warnings.append(f"Encoder binary not found: {settings.ffmpeg_path}")

    if settings.port < 1024 and settings.port not in (80, 443):
        warnings.append(
            f"Using privileged port {settings.port} (< 1024) may require root privileges"
        )

    if settings.mock_camera:
        info.append("Mock camera enabled")

    is_valid = len(errors) == 0

    if errors:
        logger.error("Settings validation FAILED", errors=errors, warnings=warnings)
    elif warnings:
        logger.warning("Settings validation succeeded with warnings", warnings=warnings)
    else:
        logger.info("Settings validation succeeded", info_count=len(info))

    return {
        "valid": is_valid,
        "errors": errors,
        "warnings": warnings,
        "info": info
    }
