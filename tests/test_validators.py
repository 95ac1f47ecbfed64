"""
Tests for value parsers and capture/video filename timestamps.
"""

from datetime import datetime, timezone
from pathlib import Path

import pytest

from src.utils.timestamps import (
    capture_filename,
    format_duration,
    iso_timestamp,
    parse_capture_timestamp,
    video_filename,
    video_timestamp,
)
from src.utils.validators import (
    is_safe_filename,
    is_within_root,
    parse_bitrate,
    parse_bool,
    validate_time_of_day,
)

MOMENT = datetime(2025, 6, 25, 13, 43, 41, 407000, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Bitrate
# ---------------------------------------------------------------------------

class TestParseBitrate:

    @pytest.mark.parametrize("value", ["5000", "5000k", "5000K", "5m", "5M", 5000, 5000.0])
    def test_equivalent_forms(self, value):
        assert parse_bitrate(value) == 5000

    def test_fractional_megabits(self):
        assert parse_bitrate("2.5m") == 2500

    @pytest.mark.parametrize("value", ["99", "50001", "60m", 0, -5])
    def test_out_of_range(self, value):
        with pytest.raises(ValueError):
            parse_bitrate(value)

    @pytest.mark.parametrize("value", ["fast", "5000kbps", "5g", "", True, None, [5000]])
    def test_malformed(self, value):
        with pytest.raises(ValueError):
            parse_bitrate(value)


# ---------------------------------------------------------------------------
# Booleans and times of day
# ---------------------------------------------------------------------------

class TestParseBool:

    @pytest.mark.parametrize("value", [True, "true", "TRUE", "1", 1])
    def test_truthy(self, value):
        assert parse_bool(value) is True

    @pytest.mark.parametrize("value", [False, "false", "False", "0", 0])
    def test_falsy(self, value):
        assert parse_bool(value) is False

    @pytest.mark.parametrize("value", ["yes", "on", 2, ""])
    def test_rejects_other_values(self, value):
        with pytest.raises(ValueError):
            parse_bool(value)


class TestTimeOfDay:

    @pytest.mark.parametrize("value", ["00:00", "9:05", "23:59", " 08:00 "])
    def test_valid(self, value):
        assert validate_time_of_day(value) == value.strip()

    @pytest.mark.parametrize("value", ["24:00", "12:60", "noon", "1200", 800])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            validate_time_of_day(value)


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

class TestPaths:

    def test_within_root(self, tmp_path):
        assert is_within_root(tmp_path / "a" / "b.jpg", tmp_path)
        assert is_within_root(tmp_path, tmp_path)

    def test_traversal_escapes_root(self, tmp_path):
        assert not is_within_root(tmp_path / ".." / "etc", tmp_path)

    def test_sibling_with_common_prefix_is_outside(self, tmp_path):
        root = tmp_path / "captures"
        assert not is_within_root(Path(str(root) + "-other"), root)

    @pytest.mark.parametrize("name", ["video.mp4", "timelapse_2025-06-25T13-43-41.mp4"])
    def test_safe_filenames(self, name):
        assert is_safe_filename(name)

    @pytest.mark.parametrize("name", ["", "../x.mp4", "a/b.mp4", "a\\b.mp4", "x\x00.mp4"])
    def test_unsafe_filenames(self, name):
        assert not is_safe_filename(name)


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

class TestTimestamps:

    def test_iso_timestamp_has_millis_and_z(self):
        assert iso_timestamp(MOMENT) == "2025-06-25T13:43:41.407Z"

    def test_capture_filename(self):
        assert capture_filename(MOMENT) == "timelapse_2025-06-25T13-43-41-407Z.jpg"

    def test_parse_is_inverse_of_format(self):
        assert parse_capture_timestamp(capture_filename(MOMENT)) == MOMENT

    @pytest.mark.parametrize("name", ["holiday.jpg", "timelapse_2025-06-25.jpg",
                                      "timelapse_2025-13-45T13-43-41-407Z.jpg"])
    def test_parse_rejects_foreign_names(self, name):
        assert parse_capture_timestamp(name) is None

    def test_video_timestamp_drops_millis(self):
        assert video_timestamp(MOMENT) == "2025-06-25T13-43-41"

    def test_video_filename(self):
        last = MOMENT.replace(hour=14, minute=0, second=0)
        assert video_filename(MOMENT, last) == \
            "timelapse_2025-06-25T13-43-41_to_2025-06-25T14-00-00.mp4"

    @pytest.mark.parametrize("seconds,expected", [
        (0, "00:00:00"), (59.9, "00:00:59"), (3661, "01:01:01"), (-5, "00:00:00"),
    ])
    def test_format_duration(self, seconds, expected):
        assert format_duration(seconds) == expected
