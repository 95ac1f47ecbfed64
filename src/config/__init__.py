"""Configuration module for the time-lapse appliance.

Hardware, scheduling and encoder constants shared by the services.
"""

from .constants import (
    OperationPriorities,
    ProcessDefaults,
    QUALITY_PRESETS,
    RESOLUTION_PRESETS,
    StreamDefaults,
    TimelapseDefaults,
    VideoDefaults,
    VideoLimits,
)

__all__ = [
    "OperationPriorities",
    "ProcessDefaults",
    "QUALITY_PRESETS",
    "RESOLUTION_PRESETS",
    "StreamDefaults",
    "TimelapseDefaults",
    "VideoDefaults",
    "VideoLimits",
]
