"""
Capture and video filename timestamps.

Capture files are named ``timelapse_YYYY-MM-DDTHH-MM-SS-mmmZ.jpg``: an ISO-8601
UTC instant with millisecond precision where ``:`` and ``.`` are replaced by
``-``. The filename is the timestamp of record, so the parser here is the exact
inverse of the formatter.
"""
import re
from datetime import datetime, timezone
from typing import Optional

CAPTURE_PREFIX = "timelapse_"
CAPTURE_TIMESTAMP_PATTERN = re.compile(
    r'timelapse_(\d{4}-\d{2}-\d{2})T(\d{2})-(\d{2})-(\d{2})-(\d{3})Z'
)


def iso_timestamp(moment: datetime) -> str:
    """ISO-8601 UTC with milliseconds and a ``Z`` suffix."""
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def safe_timestamp(moment: datetime) -> str:
    return iso_timestamp(moment).replace(":", "-").replace(".", "-")


def capture_filename(moment: Optional[datetime] = None) -> str:
    """Build a capture filename for ``moment`` (now when omitted)."""
    moment = moment or datetime.now(timezone.utc)
    return f"{CAPTURE_PREFIX}{safe_timestamp(moment)}.jpg"


def parse_capture_timestamp(filename: str) -> Optional[datetime]:
    """Parse the instant encoded in a capture filename, or None if it does not match."""
    match = CAPTURE_TIMESTAMP_PATTERN.search(filename)
    if not match:
        return None
    date, hours, minutes, seconds, millis = match.groups()
    try:
        return datetime.strptime(
            f"{date}T{hours}:{minutes}:{seconds}.{millis}",
            "%Y-%m-%dT%H:%M:%S.%f"
        ).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def video_timestamp(moment: datetime) -> str:
    """First 19 characters of the safe ISO form, e.g. ``2025-06-25T13-43-41``."""
    return safe_timestamp(moment).rstrip("Z")[:19]


def video_filename(first: datetime, last: datetime) -> str:
    return f"timelapse_{video_timestamp(first)}_to_{video_timestamp(last)}.mp4"


def format_duration(total_seconds: float) -> str:
    """Format seconds as ``HH:MM:SS``."""
    total = max(0, int(total_seconds))
    hours, remainder = divmod(total, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"
