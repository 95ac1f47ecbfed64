"""
Tests for encoder input validation and pre-flight resource checks.
"""

import pytest

from src.services.resource_monitor import ResourceMonitor
from src.services.video_validator import VideoValidator
from src.utils.errors import ResourceError, SecurityError, ValidationError

from tests.conftest import make_captures


# ---------------------------------------------------------------------------
# Input folder
# ---------------------------------------------------------------------------

class TestInputFolder:

    def test_default_is_captures_root(self, settings):
        validator = VideoValidator(settings)
        assert validator.validate_input_folder(None) == settings.captures_path
        assert validator.validate_input_folder("") == settings.captures_path

    def test_subfolder_is_allowed(self, settings):
        (settings.captures_path / "session1").mkdir()
        validator = VideoValidator(settings)
        assert validator.validate_input_folder("session1") == settings.captures_path / "session1"

    def test_absolute_path_inside_root(self, settings):
        validator = VideoValidator(settings)
        assert validator.validate_input_folder(str(settings.captures_path)) == settings.captures_path

    @pytest.mark.parametrize("folder", ["../etc", "../../", "/etc", "~", "~/captures", "a\x00b"])
    def test_escapes_are_rejected(self, settings, folder):
        with pytest.raises(SecurityError):
            VideoValidator(settings).validate_input_folder(folder)

    def test_symlink_out_of_root_is_rejected(self, settings, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (settings.captures_path / "link").symlink_to(outside)
        with pytest.raises(SecurityError):
            VideoValidator(settings).validate_input_folder("link")

    def test_missing_folder(self, settings):
        with pytest.raises(ValidationError):
            VideoValidator(settings).validate_input_folder("does-not-exist")

    def test_wrong_type(self, settings):
        with pytest.raises(ValidationError):
            VideoValidator(settings).validate_input_folder(42)


# ---------------------------------------------------------------------------
# Output path
# ---------------------------------------------------------------------------

class TestOutputPath:

    def test_inside_videos_root(self, settings):
        path = settings.videos_path / "timelapse_a_to_b.mp4"
        assert VideoValidator(settings).validate_output_path(path) == path.resolve()

    def test_outside_videos_root(self, settings, tmp_path):
        with pytest.raises(SecurityError):
            VideoValidator(settings).validate_output_path(tmp_path / "elsewhere.mp4")

    def test_videos_root_itself(self, settings):
        with pytest.raises(SecurityError):
            VideoValidator(settings).validate_output_path(settings.videos_path)


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------

class TestOptions:

    def test_defaults(self, settings):
        options = VideoValidator(settings).validate_options(None)
        assert options.fps == 30
        assert options.quality == "medium"
        assert options.codec == "h264"
        assert options.bitrate is None

    @pytest.mark.parametrize("fps", [0.1, 1, 24, 120])
    def test_fps_bounds_accepted(self, settings, fps):
        assert VideoValidator(settings).validate_options({"fps": fps}).fps == fps

    @pytest.mark.parametrize("fps", [0, 0.05, 121, -1, "30", True])
    def test_fps_rejected(self, settings, fps):
        with pytest.raises(ValidationError) as exc_info:
            VideoValidator(settings).validate_options({"fps": fps})
        assert exc_info.value.field == "fps"

    def test_choices_are_case_insensitive(self, settings):
        options = VideoValidator(settings).validate_options({"quality": "HIGH", "codec": "H265"})
        assert options.quality == "high"
        assert options.codec == "h265"

    @pytest.mark.parametrize("key,value", [("quality", "ultra"), ("codec", "vp9"), ("codec", 264)])
    def test_unknown_choice(self, settings, key, value):
        with pytest.raises(ValidationError):
            VideoValidator(settings).validate_options({key: value})

    @pytest.mark.parametrize("bitrate", ["5000", "5000k", "5m", 5000])
    def test_bitrate_forms(self, settings, bitrate):
        assert VideoValidator(settings).validate_options({"bitrate": bitrate}).bitrate == 5000

    def test_blank_bitrate_means_preset(self, settings):
        assert VideoValidator(settings).validate_options({"bitrate": "  "}).bitrate is None

    @pytest.mark.parametrize("bitrate", ["50", "100m", "fast"])
    def test_bitrate_rejected(self, settings, bitrate):
        with pytest.raises(ValidationError) as exc_info:
            VideoValidator(settings).validate_options({"bitrate": bitrate})
        assert exc_info.value.field == "bitrate"

    def test_options_must_be_an_object(self, settings):
        with pytest.raises(ValidationError):
            VideoValidator(settings).validate_options(["fps", 30])


# ---------------------------------------------------------------------------
# Resource checks
# ---------------------------------------------------------------------------

class TestResourceMonitor:

    def test_passes_with_images(self, settings):
        make_captures(settings.captures_path, [0, 1, 2])
        report = ResourceMonitor(settings).check(settings.captures_path)
        assert report["image_count"] == 3

    def test_no_images(self, settings):
        with pytest.raises(ResourceError) as exc_info:
            ResourceMonitor(settings).check(settings.captures_path)
        assert exc_info.value.resource == "images"

    def test_too_many_images(self, make_settings):
        settings = make_settings(max_input_images=2)
        make_captures(settings.captures_path, [0, 1, 2])
        with pytest.raises(ResourceError, match="too many images"):
            ResourceMonitor(settings).check(settings.captures_path)

    def test_all_failures_are_reported(self, make_settings):
        settings = make_settings(min_disk_space=2 ** 62, max_memory_usage=1)
        with pytest.raises(ResourceError) as exc_info:
            ResourceMonitor(settings).check(settings.captures_path)

        failures = {f["resource"] for f in exc_info.value.details["failures"]}
        assert failures == {"disk", "memory", "images"}
        assert exc_info.value.kind == "resource"

    def test_counts_only_jpegs(self, settings):
        make_captures(settings.captures_path, [0])
        (settings.captures_path / "readme.txt").write_text("x")
        (settings.captures_path / "sub.jpg").mkdir()
        assert ResourceMonitor.count_images(settings.captures_path) == 1
