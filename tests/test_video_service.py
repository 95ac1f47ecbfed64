"""
Tests for the video encoder service.

ffmpeg is replaced by shell scripts (see conftest): a well-behaved one that
prints progress and writes its output, a slow one for cancellation and a
failing one that reports a full disk.
"""

import asyncio
from pathlib import Path

import pytest

from src.models.video import VideoOptions
from src.services.event_service import EventService
from src.services.process_service import ProcessService
from src.services.video_service import VideoService
from src.utils.errors import (
    EncodeCancelledError,
    NotFoundError,
    ProcessError,
    ResourceError,
    SecurityError,
    ValidationError,
)

from tests.conftest import make_captures, wait_for


class SpyProcessService(ProcessService):
    """Records every spawned helper."""

    def __init__(self):
        super().__init__(kill_timeout=1, max_buffer_size=4096)
        self.spawned = []

    async def spawn(self, executable, args, **kwargs):
        self.spawned.append((executable, list(args)))
        return await super().spawn(executable, args, **kwargs)


@pytest.fixture
def process_service():
    return SpyProcessService()


@pytest.fixture
def event_service():
    return EventService()


@pytest.fixture
def events(event_service):
    received = []
    for event_type in ("video.started", "video.progress", "video.completed",
                       "video.failed", "video.cancelled"):
        event_service.subscribe(event_type, lambda data, t=event_type: received.append((t, data)))
    return received


@pytest.fixture
def make_service(process_service, event_service):
    async def _make(settings):
        service = VideoService(process_service, settings, event_service=event_service)
        await service.initialize()
        return service
    return _make


def leftovers(settings):
    """Names left in the videos and temp directories."""
    return (sorted(p.name for p in settings.videos_path.iterdir()),
            sorted(p.name for p in Path(settings.temp_dir).iterdir()))


# ---------------------------------------------------------------------------
# Successful encode
# ---------------------------------------------------------------------------

class TestCreateVideo:

    async def test_five_frames_over_twelve_seconds(self, settings, make_service, events):
        make_captures(settings.captures_path, [0, 3, 6, 9, 12])
        service = await make_service(settings)

        result = await service.create_video(options={"fps": 30})

        assert result.frame_count == 5
        assert result.duration_seconds == 12
        assert result.fps == 30
        assert result.codec == "h264"
        assert result.filename == "timelapse_2025-06-25T13-43-41_to_2025-06-25T13-43-53.mp4"
        assert (settings.videos_path / result.filename).read_bytes() == b"fake-mp4-data"
        assert result.size_bytes == len(b"fake-mp4-data")

        videos, temp = leftovers(settings)
        assert videos == [result.filename]
        assert temp == []

        kinds = [kind for kind, _ in events]
        assert kinds[0] == "video.started"
        assert kinds[-1] == "video.completed"
        assert events[-1][1]["result"]["filename"] == result.filename

        assert service.metrics["jobs_completed"] == 1
        assert service.is_processing is False

    async def test_progress_is_monotonic_and_ends_at_100(self, settings, make_service):
        make_captures(settings.captures_path, [0, 5, 10, 15, 20])
        service = await make_service(settings)
        progress = []

        await service.create_video(on_progress=lambda p: progress.append(p["progress"]))

        assert progress == sorted(progress)
        assert progress[-1] == 100
        assert len(progress) == len(set(progress))

    async def test_duration_rounds_up(self, settings, make_service):
        make_captures(settings.captures_path, [0, 0.5, 1.2])
        service = await make_service(settings)
        result = await service.create_video()
        assert result.duration_seconds == 2

    async def test_frames_sorted_by_timestamp_not_mtime(self, settings, make_service):
        paths = make_captures(settings.captures_path, [10, 0, 5])
        for path in paths:
            path.touch()
        service = await make_service(settings)

        result = await service.create_video()
        assert result.frame_count == 3
        assert result.filename.startswith("timelapse_2025-06-25T13-43-41_to_")

    async def test_foreign_jpegs_are_skipped(self, settings, make_service):
        make_captures(settings.captures_path, [0, 1])
        (settings.captures_path / "holiday.jpg").write_bytes(b"x")
        service = await make_service(settings)

        result = await service.create_video()
        assert result.frame_count == 2

    async def test_subfolder_input(self, settings, make_service):
        session = settings.captures_path / "session1"
        session.mkdir()
        make_captures(session, [0, 1, 2])
        service = await make_service(settings)

        result = await service.create_video(input_folder="session1")
        assert result.frame_count == 3


# ---------------------------------------------------------------------------
# Argument construction
# ---------------------------------------------------------------------------

class TestArguments:

    def test_preset_arguments(self, settings, process_service, tmp_path):
        service = VideoService(process_service, settings)
        args = service.build_arguments(
            tmp_path, VideoOptions(fps=30, quality="medium", codec="h264"), tmp_path / "out.mp4")

        assert args == [
            "-y", "-framerate", "1", "-i", str(tmp_path / "frame_%03d.jpg"),
            "-c:v", "libx264", "-pix_fmt", "yuv420p",
            "-crf", "26", "-preset", "medium", "-maxrate", "2500k", "-bufsize", "5000k",
            "-r", "30", str(tmp_path / "out.mp4"),
        ]

    def test_custom_bitrate_replaces_preset(self, settings, process_service, tmp_path):
        service = VideoService(process_service, settings)
        args = service.build_arguments(
            tmp_path, VideoOptions(fps=2.5, quality="high", codec="h265", bitrate=5000), tmp_path / "o.mp4")

        assert "-crf" not in args
        assert args[args.index("-c:v") + 1] == "libx265"
        assert args[args.index("-b:v") + 1] == "5000k"
        assert args[args.index("-bufsize") + 1] == "10000k"
        assert args[args.index("-r") + 1] == "2.5"


# ---------------------------------------------------------------------------
# Rejections before the encoder runs
# ---------------------------------------------------------------------------

class TestRejections:

    async def test_traversal_never_reaches_encoder(self, settings, make_service, process_service, events):
        make_captures(settings.captures_path, [0, 1])
        service = await make_service(settings)

        with pytest.raises(SecurityError):
            await service.create_video(input_folder="../etc")

        assert process_service.spawned == []
        assert events[-1][0] == "video.failed"
        assert events[-1][1]["error"]["kind"] == "security"
        assert service.metrics["jobs_failed"] == 1

    async def test_invalid_options(self, settings, make_service, process_service):
        make_captures(settings.captures_path, [0, 1])
        service = await make_service(settings)

        with pytest.raises(ValidationError):
            await service.create_video(options={"fps": 500})
        assert process_service.spawned == []

    async def test_no_images(self, settings, make_service):
        service = await make_service(settings)
        with pytest.raises(ResourceError):
            await service.create_video()

    async def test_only_foreign_images(self, settings, make_service):
        (settings.captures_path / "holiday.jpg").write_bytes(b"x")
        service = await make_service(settings)
        with pytest.raises(ResourceError, match="valid capture timestamp"):
            await service.create_video()

    async def test_span_over_duration_limit(self, make_settings, make_service):
        settings = make_settings(max_video_duration=60)
        make_captures(settings.captures_path, [0, 61])
        service = await make_service(settings)

        with pytest.raises(ResourceError) as exc_info:
            await service.create_video()
        assert exc_info.value.resource == "duration"

    async def test_missing_ffmpeg(self, make_settings, make_service):
        settings = make_settings(ffmpeg_path="/nonexistent/ffmpeg")
        make_captures(settings.captures_path, [0, 1])
        service = await make_service(settings)

        with pytest.raises(ProcessError, match="ffmpeg is not available"):
            await service.create_video()


# ---------------------------------------------------------------------------
# Failures and cancellation
# ---------------------------------------------------------------------------

class TestFailures:

    async def test_encoder_failure_is_translated(self, make_settings, make_service, fake_bin, events):
        settings = make_settings(ffmpeg_path=fake_bin.ffmpeg_failing)
        make_captures(settings.captures_path, [0, 1])
        service = await make_service(settings)

        with pytest.raises(ProcessError) as exc_info:
            await service.create_video()

        assert exc_info.value.message == "Not enough disk space to create video. Free up space and retry."
        assert exc_info.value.exit_code == 1
        assert leftovers(settings) == ([], [])
        assert events[-1][0] == "video.failed"

    async def test_oversized_output_is_removed(self, make_settings, make_service):
        settings = make_settings(max_video_size=4)
        make_captures(settings.captures_path, [0, 1])
        service = await make_service(settings)

        with pytest.raises(ResourceError) as exc_info:
            await service.create_video()

        assert exc_info.value.resource == "video_size"
        assert leftovers(settings) == ([], [])

    async def test_cancel_during_encode(self, make_settings, make_service, fake_bin, events):
        settings = make_settings(ffmpeg_path=fake_bin.ffmpeg_slow)
        make_captures(settings.captures_path, [0, 1, 2, 3, 4])
        service = await make_service(settings)

        task = asyncio.create_task(service.create_video())
        assert await wait_for(lambda: any(kind == "video.progress" for kind, _ in events), timeout=5)
        assert service.get_status()["phase"] == "encoding"

        assert await service.cancel() is True
        with pytest.raises(EncodeCancelledError):
            await task

        assert leftovers(settings) == ([], [])
        assert events[-1][0] == "video.cancelled"
        assert service.metrics["jobs_cancelled"] == 1
        assert service.is_processing is False

    async def test_cancel_when_idle(self, settings, make_service):
        service = await make_service(settings)
        assert await service.cancel() is False

    async def test_cancel_after_encoder_exit_is_refused(self, settings, make_service, events):
        # five progress lines against ten frames keep the encoder below 100%
        make_captures(settings.captures_path, list(range(10)))
        service = await make_service(settings)
        answers = []

        async def on_progress(payload):
            if payload["progress"] == 100:
                answers.append((payload["phase"], await service.cancel()))

        result = await service.create_video(on_progress=on_progress)

        assert answers == [("verifying", False)]
        assert (settings.videos_path / result.filename).exists()
        assert events[-1][0] == "video.completed"
        assert service.metrics["jobs_completed"] == 1
        assert service.metrics["jobs_cancelled"] == 0

    async def test_jobs_are_serialized(self, make_settings, make_service, fake_bin):
        settings = make_settings(ffmpeg_path=fake_bin.ffmpeg_slow)
        make_captures(settings.captures_path, [0, 1])
        service = await make_service(settings)

        first = asyncio.create_task(service.create_video())
        assert await wait_for(lambda: service.is_processing and service.get_status()["phase"] == "encoding",
                              timeout=5)
        second = asyncio.create_task(service.create_video(options={"fps": 10}))
        await asyncio.sleep(0.1)

        # the second job waits on the encoder lock
        assert not second.done()

        await service.cancel()
        with pytest.raises(EncodeCancelledError):
            await first
        assert await wait_for(lambda: service.get_status()["phase"] == "encoding", timeout=5)
        await service.cancel()
        with pytest.raises(EncodeCancelledError):
            await second


# ---------------------------------------------------------------------------
# Stored videos
# ---------------------------------------------------------------------------

class TestStoredVideos:

    async def test_list_hides_partials(self, settings, make_service):
        service = await make_service(settings)
        (settings.videos_path / "a.mp4").write_bytes(b"1")
        (settings.videos_path / ".b.partial.mp4").write_bytes(b"2")
        (settings.videos_path / "notes.txt").write_bytes(b"3")

        assert [v.filename for v in await service.list_videos()] == ["a.mp4"]

    async def test_delete(self, settings, make_service):
        service = await make_service(settings)
        (settings.videos_path / "a.mp4").write_bytes(b"1")

        assert await service.delete_video("a.mp4") is True
        assert await service.list_videos() == []
        with pytest.raises(NotFoundError):
            await service.delete_video("a.mp4")

    @pytest.mark.parametrize("name", ["../a.mp4", ".hidden.mp4", "a/b.mp4"])
    async def test_resolve_rejects_unsafe_names(self, settings, make_service, name):
        service = await make_service(settings)
        with pytest.raises(SecurityError):
            service.resolve_video(name)

    async def test_health_check(self, settings, make_service):
        service = await make_service(settings)
        health = await service.health_check()
        assert health["ffmpeg"]["installed"] is True
        assert health["processing"] is False
