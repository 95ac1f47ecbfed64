"""
Input validation for the encoder.

Rejects input folders outside the captures root, output paths outside the
videos root, and options outside the allowed ranges. Nothing reaches the
encoder's argument list without passing through here.
"""
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

from src.config.constants import VideoDefaults, VideoLimits
from src.models.video import VideoOptions
from src.utils.config import AppSettings
from src.utils.errors import SecurityError, ValidationError
from src.utils.validators import is_safe_filename, is_within_root, parse_bitrate

logger = structlog.get_logger().bind(component="VideoValidator")


class VideoValidator:
    """Validates encoder inputs against the configured roots and limits."""

    def __init__(self, settings: AppSettings):
        self.captures_root = settings.captures_path
        self.videos_root = settings.videos_path

    def validate_input_folder(self, input_folder: Optional[Any]) -> Path:
        """Resolve ``input_folder`` (relative to the captures root) and confine it there."""
        if input_folder is None or input_folder == "":
            return self.captures_root
        if not isinstance(input_folder, (str, Path)):
            raise ValidationError("inputFolder", "Input folder must be a string")

        raw = str(input_folder)
        if "\x00" in raw:
            raise SecurityError("Input folder contains a null byte")
        if raw.startswith("~"):
            logger.error("Rejected home-relative input folder", input_folder=raw)
            raise SecurityError("Home directory references are not allowed",
                                details={"input_folder": raw})

        resolved = (self.captures_root / raw).resolve()
        if ".." in resolved.parts or "~" in resolved.parts:
            raise SecurityError("Input folder contains traversal components",
                                details={"input_folder": raw})
        if not is_within_root(resolved, self.captures_root):
            logger.error("Rejected input folder outside captures root",
                         input_folder=raw, resolved=str(resolved), root=str(self.captures_root))
            raise SecurityError("Input folder is outside the captures directory",
                                details={"input_folder": raw})
        if not resolved.is_dir():
            raise ValidationError("inputFolder", "Input folder does not exist", value=raw)
        return resolved

    def validate_output_path(self, output_path: Path) -> Path:
        if not is_safe_filename(output_path.name):
            raise SecurityError("Invalid output filename", details={"filename": output_path.name})
        resolved = output_path.resolve()
        if not is_within_root(resolved, self.videos_root) or resolved == self.videos_root:
            logger.error("Rejected output path outside videos root", output=str(resolved))
            raise SecurityError("Output path is outside the videos directory",
                                details={"output": str(resolved)})
        return resolved

    def validate_options(self, options: Optional[Dict[str, Any]]) -> VideoOptions:
        options = options or {}
        if not isinstance(options, dict):
            raise ValidationError("options", "Options must be an object")

        return VideoOptions(
            fps=self.validate_fps(options.get("fps")),
            quality=self.validate_choice("quality", options.get("quality"),
                                         VideoDefaults.ALLOWED_QUALITIES, VideoDefaults.QUALITY),
            codec=self.validate_choice("codec", options.get("codec"),
                                       VideoDefaults.ALLOWED_CODECS, VideoDefaults.CODEC),
            bitrate=self.validate_bitrate(options.get("bitrate")),
        )

    @staticmethod
    def validate_fps(fps: Any) -> float:
        if fps is None:
            return float(VideoDefaults.FPS)
        if isinstance(fps, bool) or not isinstance(fps, (int, float)):
            raise ValidationError("fps", "FPS must be a number", value=str(fps))
        if not VideoLimits.MIN_FPS <= fps <= VideoLimits.MAX_FPS:
            raise ValidationError(
                "fps", f"FPS must be between {VideoLimits.MIN_FPS} and {VideoLimits.MAX_FPS}", value=fps
            )
        return float(fps)

    @staticmethod
    def validate_choice(field: str, value: Any, allowed, default: str) -> str:
        if value is None:
            return default
        if not isinstance(value, str) or value.lower() not in allowed:
            raise ValidationError(field, f"Must be one of {sorted(allowed)}", value=str(value))
        return value.lower()

    @staticmethod
    def validate_bitrate(bitrate: Any) -> Optional[int]:
        if bitrate is None or (isinstance(bitrate, str) and not bitrate.strip()):
            return None
        try:
            return parse_bitrate(bitrate)
        except ValueError as e:
            raise ValidationError("bitrate", str(e), value=str(bitrate))
