"""Application-wide constants.

Priorities, camera presets and encoder limits live here so the services and the
settings layer agree on one set of defaults.
"""

from typing import Dict, Final, FrozenSet, Tuple


class OperationPriorities:
    """Scheduling priorities for camera operations. Higher wins."""

    USER_CAPTURE: Final[int] = 80
    """One-shot capture requested from the UI"""

    TIMELAPSE: Final[int] = 60
    """Periodic capture session"""

    STREAM: Final[int] = 20
    """Live preview"""


RESOLUTION_PRESETS: Final[Dict[str, Tuple[int, int]]] = {
    "low": (640, 480),
    "medium": (1280, 720),
    "high": (1920, 1080),
}


class StreamDefaults:
    """Live preview (mjpg-streamer) defaults."""

    PORT: Final[int] = 8080
    """HTTP port served by the output plugin"""

    FPS: Final[int] = 15
    """Default preview frame rate"""

    READY_SIGNAL: Final[str] = "o: commands.............: enabled"
    """Substring printed on stderr once the streamer is serving"""

    STARTUP_TIMEOUT: Final[float] = 5.0
    """Seconds to wait for the ready signal before carrying on with a warning"""

    KILL_TIMEOUT: Final[float] = 1.0
    """Grace period between SIGTERM and SIGKILL when stopping the preview"""


class TimelapseDefaults:
    """Capture cadence defaults."""

    CAPTURE_INTERVAL: Final[int] = 5
    """Seconds between captures"""

    MIN_CAPTURE_INTERVAL: Final[int] = 1
    MAX_CAPTURE_INTERVAL: Final[int] = 3600

    SETTLE_DELAY: Final[float] = 0.5
    """Seconds to let the camera device close after stopping the preview"""

    CAPTURE_TIMEOUT: Final[float] = 30.0
    """Hard limit for a single still capture"""

    CONTINUE_NEXT_DELAY: Final[float] = 0.1
    """Pause before the queue advances after a session is stopped"""


class VideoLimits:
    """Encoder resource limits."""

    MAX_INPUT_IMAGES: Final[int] = 10000
    MAX_VIDEO_DURATION: Final[int] = 3600
    """Seconds of real time covered by the input frames"""

    MAX_VIDEO_SIZE: Final[int] = 2 * 1024 * 1024 * 1024
    PROCESS_TIMEOUT: Final[int] = 1800
    MIN_PROCESS_TIMEOUT: Final[int] = 10
    KILL_TIMEOUT: Final[int] = 10
    MAX_STDERR_SIZE: Final[int] = 1024 * 1024
    MIN_DISK_SPACE: Final[int] = 1024 * 1024 * 1024
    MAX_MEMORY_USAGE: Final[int] = 512 * 1024 * 1024

    MIN_FPS: Final[float] = 0.1
    MAX_FPS: Final[float] = 120.0
    MIN_BITRATE: Final[int] = 100
    """kbps"""

    MAX_BITRATE: Final[int] = 50000
    """kbps"""


class VideoDefaults:
    """Encoder option defaults and allow-lists."""

    FPS: Final[int] = 30
    QUALITY: Final[str] = "medium"
    CODEC: Final[str] = "h264"

    ALLOWED_CODECS: Final[FrozenSet[str]] = frozenset({"h264", "h265"})
    ALLOWED_QUALITIES: Final[FrozenSet[str]] = frozenset({"low", "medium", "high"})
    ALLOWED_EXTENSIONS: Final[FrozenSet[str]] = frozenset({".jpg", ".jpeg"})

    CODEC_LIBRARIES: Final[Dict[str, str]] = {"h264": "libx264", "h265": "libx265"}


QUALITY_PRESETS: Final[Dict[str, Dict[str, Dict[str, object]]]] = {
    "h264": {
        "low": {"crf": 32, "preset": "faster", "maxrate": "1000k", "bufsize": "2000k"},
        "medium": {"crf": 26, "preset": "medium", "maxrate": "2500k", "bufsize": "5000k"},
        "high": {"crf": 20, "preset": "slow", "maxrate": "5000k", "bufsize": "10000k"},
    },
    "h265": {
        "low": {"crf": 35, "preset": "faster", "maxrate": "800k", "bufsize": "1600k"},
        "medium": {"crf": 28, "preset": "medium", "maxrate": "2000k", "bufsize": "4000k"},
        "high": {"crf": 22, "preset": "slow", "maxrate": "4000k", "bufsize": "8000k"},
    },
}


class ProcessDefaults:
    """Helper process supervision defaults."""

    KILL_TIMEOUT: Final[float] = 5.0
    MAX_BUFFER_SIZE: Final[int] = 64 * 1024
    """Bytes of stdout/stderr kept per helper (oldest discarded)"""

    READ_CHUNK_SIZE: Final[int] = 4096
    DRAIN_TIMEOUT: Final[float] = 1.0
    """Seconds to wait for pipe readers after the process exited"""

    SHUTDOWN_TIMEOUT: Final[float] = 5.0
    """Per-service budget during application shutdown"""
