"""
Time-lapse appliance test suite - shared fixtures.

External binaries (fswebcam, mjpg_streamer, ffmpeg) are replaced by small POSIX
shell scripts so the real subprocess supervision path runs in every test that
touches a helper. Scheduling tests use the in-memory fakes defined here.
"""

import asyncio
import stat
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace
from typing import List, Optional

import pytest

from src.config.constants import StreamDefaults
from src.models.capture import CaptureInfo, CaptureRecord, CaptureSettings, StreamSettings
from src.utils.config import AppSettings
from src.utils.timestamps import capture_filename

# ---------------------------------------------------------------------------
# Fake helper executables
# ---------------------------------------------------------------------------

FAKE_CAMERA = """#!/bin/sh
for last; do :; done
printf 'fake-jpeg-data' > "$last"
"""

FAKE_STREAMER = """#!/bin/sh
echo "MJPG Streamer Version: test" >&2
echo "{ready}" >&2
exec sleep 60
""".format(ready=StreamDefaults.READY_SIGNAL)

FAKE_FFMPEG = """#!/bin/sh
if [ "$1" = "-version" ]; then
  echo "ffmpeg version 6.0-test Copyright (c) 2000-2023"
  exit 0
fi
for last; do :; done
i=1
while [ $i -le 5 ]; do
  printf 'frame=    %d fps=0.0 q=28.0 size=       0kB time=00:00:00.%02d bitrate=N/A speed=1x\\r' $i $i >&2
  i=$((i+1))
done
printf 'fake-mp4-data' > "$last"
"""

FAKE_FFMPEG_SLOW = """#!/bin/sh
if [ "$1" = "-version" ]; then
  echo "ffmpeg version 6.0-test"
  exit 0
fi
printf 'frame=    1 fps=0.0 q=28.0 size=       0kB time=00:00:00.03 bitrate=N/A\\r' >&2
exec sleep 30
"""

FAKE_FFMPEG_FAILING = """#!/bin/sh
if [ "$1" = "-version" ]; then
  echo "ffmpeg version 6.0-test"
  exit 0
fi
echo "av_interleaved_write_frame(): No space left on device" >&2
exit 1
"""


def write_script(directory: Path, name: str, body: str) -> str:
    path = directory / name
    path.write_text(body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


@pytest.fixture
def fake_bin(tmp_path):
    """Directory of fake helper binaries."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    return SimpleNamespace(
        camera=write_script(bin_dir, "fswebcam", FAKE_CAMERA),
        streamer=write_script(bin_dir, "mjpg_streamer", FAKE_STREAMER),
        ffmpeg=write_script(bin_dir, "ffmpeg", FAKE_FFMPEG),
        ffmpeg_slow=write_script(bin_dir, "ffmpeg_slow", FAKE_FFMPEG_SLOW),
        ffmpeg_failing=write_script(bin_dir, "ffmpeg_failing", FAKE_FFMPEG_FAILING),
    )


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@pytest.fixture
def make_settings(tmp_path, fake_bin):
    """Factory for AppSettings rooted in tmp_path, independent of the environment's .env."""
    captures = tmp_path / "captures"
    videos = tmp_path / "videos"
    temp = tmp_path / "tmp"
    for directory in (captures, videos, temp):
        directory.mkdir(exist_ok=True)

    def _make(**overrides) -> AppSettings:
        values = dict(
            output_dir=str(captures),
            videos_dir=str(videos),
            temp_dir=str(temp),
            config_file=str(tmp_path / "camera.env"),
            config_template=str(tmp_path / "camera.env.example"),
            camera_path=fake_bin.camera,
            mjpg_streamer_path=fake_bin.streamer,
            mjpg_streamer_www=str(tmp_path / "www"),
            ffmpeg_path=fake_bin.ffmpeg,
            capture_timeout=5,
            settle_delay=0.01,
            stream_startup_timeout=2,
            stream_kill_timeout=1,
            stream_host="camera.local",
            process_timeout=10,
            kill_timeout=1,
            min_disk_space=0,
            max_memory_usage=64 * 1024 * 1024 * 1024,
            helper_kill_timeout=1,
        )
        values.update(overrides)
        return AppSettings(_env_file=None, **values)

    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings()


# ---------------------------------------------------------------------------
# Capture files
# ---------------------------------------------------------------------------

BASE_TIME = datetime(2025, 6, 25, 13, 43, 41, 123000, tzinfo=timezone.utc)


def make_captures(folder: Path, offsets_seconds: List[float], start: datetime = BASE_TIME) -> List[Path]:
    """Write placeholder captures at ``start + offset`` for each offset."""
    paths = []
    for offset in offsets_seconds:
        path = folder / capture_filename(start + timedelta(seconds=offset))
        path.write_bytes(b"fake-jpeg-data")
        paths.append(path)
    return paths


# ---------------------------------------------------------------------------
# In-memory fakes for scheduling tests
# ---------------------------------------------------------------------------

class FakeStream:
    """Stream adapter stand-in: starts and stops instantly."""

    def __init__(self, start_ok: bool = True):
        self.running = False
        self.start_ok = start_ok
        self.settings: Optional[StreamSettings] = None
        self.starts = 0
        self.stops = 0

    @property
    def active(self) -> bool:
        return self.running

    def current_settings(self):
        return self.settings

    def stream_url(self, host):
        return f"http://{host}:8080/?action=stream"

    async def start(self, settings, on_event=None) -> bool:
        if self.running or not self.start_ok:
            return False
        self.running = True
        self.settings = settings
        self.starts += 1
        if on_event is not None:
            await on_event("stream-ready", "Live preview is ready")
        return True

    async def stop(self) -> bool:
        if not self.running:
            return False
        self.running = False
        self.settings = None
        self.stops += 1
        return True

    def get_status(self):
        return {"active": self.running}


class FakeCapture:
    """Capture adapter stand-in that records calls and can be told to fail."""

    def __init__(self, stream: Optional[FakeStream] = None, failures=None, delay: float = 0):
        self.stream = stream
        self.failures = list(failures or [])
        self.delay = delay
        self.records: List[CaptureRecord] = []
        self.stream_running_during_capture: List[bool] = []

    async def capture(self, settings, correlation_id=None) -> CaptureRecord:
        if self.stream is not None:
            self.stream_running_during_capture.append(self.stream.running)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            error = self.failures.pop(0)
            if error is not None:
                raise error
        moment = datetime.now(timezone.utc) + timedelta(milliseconds=len(self.records))
        record = CaptureRecord(
            filename=capture_filename(moment),
            filepath=f"/captures/{capture_filename(moment)}",
            resolution=settings.resolution,
            captured_at=moment,
        )
        self.records.append(record)
        return record

    async def list_captures(self):
        return [CaptureInfo(filename=r.filename, size=14, created=r.captured_at) for r in self.records]

    async def clear_captures(self) -> int:
        count = len(self.records)
        self.records.clear()
        return count


def fast_config(interval: float = 0.05):
    """Camera config stand-in with a sub-second cadence."""
    return SimpleNamespace(
        capture_interval=interval,
        capture_settings=lambda: CaptureSettings(quality="high"),
        stream_settings=lambda: StreamSettings(quality="medium", fps=15),
    )


class Recorder:
    """Collects operation notifications."""

    def __init__(self):
        self.events = []
        self.errors = []
        self.images = []

    def on_notification(self, event, message=None):
        self.events.append((event, message))

    def on_error(self, error):
        self.errors.append(error)

    def on_image_captured(self, data):
        self.images.append(data)

    def names(self):
        return [event for event, _ in self.events]


@pytest.fixture
def recorder():
    return Recorder()


async def wait_for(predicate, timeout: float = 3.0, interval: float = 0.01) -> bool:
    """Poll ``predicate`` until it is truthy or ``timeout`` elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return bool(predicate())


@pytest.fixture(autouse=True)
def _isolate_cwd(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
