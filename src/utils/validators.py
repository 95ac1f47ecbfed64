"""
Small value parsers shared by the settings store and the encoder.

All of them raise ValueError on bad input; callers wrap that in the
appropriate ValidationError with the field name.
"""
import re
from pathlib import Path
from typing import Union

from src.config.constants import VideoLimits

BITRATE_PATTERN = re.compile(r'^(\d+(?:\.\d+)?)([km])?$')
TIME_OF_DAY_PATTERN = re.compile(r'^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$')

TRUE_VALUES = frozenset({"true", "1"})
FALSE_VALUES = frozenset({"false", "0"})


def parse_bitrate(value: Union[int, float, str]) -> int:
    """Normalize ``N``, ``Nk`` or ``Nm`` (case-insensitive) to integer kbps.

    >>> parse_bitrate("5m")
    5000
    """
    if isinstance(value, bool):
        raise ValueError("Bitrate must be a number or a string like 5000k")

    if isinstance(value, (int, float)):
        kbps = float(value)
    elif isinstance(value, str):
        match = BITRATE_PATTERN.match(value.strip().lower())
        if not match:
            raise ValueError(f"Invalid bitrate format: {value!r}")
        kbps = float(match.group(1))
        if match.group(2) == "m":
            kbps *= 1000
    else:
        raise ValueError("Bitrate must be a number or a string like 5000k")

    if kbps <= 0:
        raise ValueError("Bitrate must be positive")

    rounded = round(kbps)
    if abs(kbps - rounded) > 0.1:
        raise ValueError(f"Bitrate must be a whole number of kbps, got {kbps}")

    if not VideoLimits.MIN_BITRATE <= rounded <= VideoLimits.MAX_BITRATE:
        raise ValueError(
            f"Bitrate must be between {VideoLimits.MIN_BITRATE} and {VideoLimits.MAX_BITRATE} kbps"
        )
    return int(rounded)


def parse_bool(value: Union[bool, int, str]) -> bool:
    """Parse ``true``/``false``/``1``/``0`` (case-insensitive)."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    text = str(value).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean: {value!r}")


def validate_time_of_day(value: str) -> str:
    """Validate an ``HH:MM`` value."""
    if not isinstance(value, str) or not TIME_OF_DAY_PATTERN.match(value.strip()):
        raise ValueError(f"Invalid time format (expected HH:MM): {value!r}")
    return value.strip()


def is_within_root(path: Path, root: Path) -> bool:
    """True when the resolved ``path`` is ``root`` or lies below it."""
    path = path.resolve()
    root = root.resolve()
    return path == root or root in path.parents


def is_safe_filename(filename: str) -> bool:
    """Plain file name with no traversal or directory component."""
    return bool(filename) and ".." not in filename and "/" not in filename \
        and "\\" not in filename and "\x00" not in filename
