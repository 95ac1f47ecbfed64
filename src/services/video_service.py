"""
Video generation from captured stills via ffmpeg.

One job at a time, guarded by its own lock:

    idle -> validating -> scanning -> encoding -> verifying -> idle
    encoding -> cancelled -> idle
    * -> failed -> idle

Frames are sorted by the timestamp in their filename and presented to ffmpeg
as a dense ``frame_000.jpg, frame_001.jpg, ...`` sequence of symlinks in a
temporary directory. ffmpeg writes to a hidden ``.partial`` file next to the
final name; only a verified encode is renamed into place.
"""
import asyncio
import math
import os
import re
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiofiles.os
import structlog
from prometheus_client import Counter, Histogram
from structlog.contextvars import bound_contextvars

from src.config.constants import QUALITY_PRESETS, VideoDefaults
from src.models.video import JobPhase, VideoInfo, VideoOptions, VideoResult
from src.services.base_service import BaseService
from src.services.event_service import EventService
from src.services.process_service import ProcessHandle, ProcessService
from src.services.resource_monitor import ResourceMonitor
from src.services.video_validator import VideoValidator
from src.utils.callbacks import invoke_callback
from src.utils.config import AppSettings
from src.utils.errors import (
    EncodeCancelledError,
    FilesystemError,
    NotFoundError,
    ProcessError,
    ResourceError,
    SecurityError,
    TimelapseError,
)
from src.utils.logging_config import new_correlation_id
from src.utils.system_check import check_ffmpeg
from src.utils.timestamps import parse_capture_timestamp, video_filename
from src.utils.validators import is_safe_filename, is_within_root

logger = structlog.get_logger().bind(component="VideoService")

FRAME_PATTERN = re.compile(r'frame=\s*(\d+)')
TIME_PATTERN = re.compile(r'time=(\d+):(\d+):(\d+\.\d+)')

# Prometheus metrics - initialized once
try:
    VIDEO_JOBS = Counter('timelapse_video_jobs_total', 'Encoder jobs by outcome', ['outcome'])
    VIDEO_DURATION = Histogram('timelapse_video_processing_seconds', 'Encoder job wall time')
except ValueError:
    # Metrics already registered (happens during reload)
    from prometheus_client import REGISTRY
    VIDEO_JOBS = REGISTRY._names_to_collectors['timelapse_video_jobs_total']
    VIDEO_DURATION = REGISTRY._names_to_collectors['timelapse_video_processing_seconds']


CANCELLABLE_PHASES = frozenset({JobPhase.VALIDATING, JobPhase.SCANNING, JobPhase.ENCODING})

@dataclass
class EncoderJob:
    """State of the job currently holding the encoder lock."""

    correlation_id: str
    phase: JobPhase = JobPhase.VALIDATING
    started: float = field(default_factory=time.perf_counter)
    frame_count: int = 0
    progress: int = 0
    time_seconds: float = 0.0
    temp_dir: Optional[Path] = None
    partial_path: Optional[Path] = None
    handle: Optional[ProcessHandle] = None
    cancel_requested: bool = False

    def summary(self) -> Dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "phase": self.phase.value,
            "frame_count": self.frame_count,
            "progress": self.progress,
            "elapsed_seconds": round(time.perf_counter() - self.started, 1),
        }


ProgressCallback = Optional[Callable[[Dict[str, Any]], Any]]


class VideoService(BaseService):
    """Assembles captured frames into an MP4."""

    def __init__(self, process_service: ProcessService, settings: AppSettings,
                 event_service: Optional[EventService] = None):
        super().__init__()
        self.process_service = process_service
        self.event_service = event_service
        self.settings = settings
        self.validator = VideoValidator(settings)
        self.resource_monitor = ResourceMonitor(settings)

        self.ffmpeg_path = settings.ffmpeg_path
        self.captures_root = settings.captures_path
        self.videos_root = settings.videos_path
        self.temp_root = settings.temp_dir
        self.process_timeout = settings.process_timeout
        self.kill_timeout = settings.kill_timeout
        self.max_stderr_size = settings.max_stderr_size
        self.max_video_duration = settings.max_video_duration
        self.max_video_size = settings.max_video_size

        self._lock = asyncio.Lock()
        self._current_job: Optional[EncoderJob] = None
        self.metrics = {
            "jobs_completed": 0,
            "jobs_failed": 0,
            "jobs_cancelled": 0,
            "total_processing_time_ms": 0,
            "average_processing_time_ms": 0,
        }

    async def initialize(self) -> None:
        try:
            await aiofiles.os.makedirs(str(self.videos_root), exist_ok=True)
        except OSError as e:
            raise FilesystemError("create", str(self.videos_root), str(e))
        await super().initialize()
        logger.info("Video service initialized", videos_dir=str(self.videos_root))

    async def shutdown(self) -> None:
        await self.cancel()
        await super().shutdown()

    @property
    def is_processing(self) -> bool:
        return self._current_job is not None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def create_video(self, input_folder: Optional[str] = None,
                           options: Optional[Dict[str, Any]] = None,
                           on_progress: ProgressCallback = None) -> VideoResult:
        """Encode the captures in ``input_folder`` (default: the captures root).

        Raises:
            ValidationError, SecurityError, ResourceError, ProcessError,
            EncodeCancelledError, FilesystemError
        """
        correlation_id = new_correlation_id()
        with bound_contextvars(correlation_id=correlation_id):
            async with self._lock:
                job = EncoderJob(correlation_id=correlation_id)
                self._current_job = job
                try:
                    return await self._run_job(job, input_folder, options, on_progress)
                finally:
                    await self._cleanup(job)
                    self._current_job = None

    async def cancel(self) -> bool:
        """Cancel the active job.

        Returns False when nothing is running or the encoder has already
        finished and the job is past the point where it can be abandoned.
        """
        job = self._current_job
        if job is None or job.cancel_requested:
            return False
        if job.phase not in CANCELLABLE_PHASES:
            logger.info("Too late to cancel video generation", correlation_id=job.correlation_id,
                        phase=job.phase.value)
            return False

        job.cancel_requested = True
        logger.info("Cancelling video generation", correlation_id=job.correlation_id,
                    phase=job.phase.value)
        if job.handle is not None:
            await self.process_service.kill(job.handle, "user_cancel", kill_timeout=self.kill_timeout)
        return True

    async def list_videos(self) -> List[VideoInfo]:
        """Stored videos, newest first. In-progress partial files are hidden."""
        videos = []
        try:
            paths = [p for p in self.videos_root.iterdir()
                     if p.suffix.lower() == ".mp4" and not p.name.startswith(".") and p.is_file()]
        except FileNotFoundError:
            return []
        except OSError as e:
            raise FilesystemError("list", str(self.videos_root), str(e))

        for path in paths:
            try:
                stat = path.stat()
            except FileNotFoundError:
                continue
            videos.append(VideoInfo(
                filename=path.name,
                size=stat.st_size,
                created=datetime.fromtimestamp(getattr(stat, "st_birthtime", stat.st_ctime)),
                modified=datetime.fromtimestamp(stat.st_mtime),
            ))
        videos.sort(key=lambda v: (v.modified, v.filename), reverse=True)
        return videos

    def resolve_video(self, filename: str) -> Path:
        """Validate a video filename and return its path."""
        if not is_safe_filename(filename) or filename.startswith("."):
            logger.error("Rejected video filename", filename=filename)
            raise SecurityError("Invalid filename", details={"filename": filename})
        path = self.videos_root / filename
        if not is_within_root(path, self.videos_root):
            logger.error("Rejected video path outside videos root", filename=filename)
            raise SecurityError("Path outside videos directory", details={"filename": filename})
        if path.suffix.lower() != ".mp4" or not path.is_file():
            raise NotFoundError("video", filename)
        return path

    async def delete_video(self, filename: str) -> bool:
        path = self.resolve_video(filename)
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            raise NotFoundError("video", filename)
        except OSError as e:
            raise FilesystemError("delete", str(path), str(e))
        logger.info("Video deleted", filename=filename)
        return True

    def get_status(self) -> Dict[str, Any]:
        job = self._current_job
        return {
            "processing": job is not None,
            "phase": job.phase.value if job else JobPhase.IDLE.value,
            "job": job.summary() if job else None,
            "metrics": dict(self.metrics),
        }

    async def health_check(self) -> Dict[str, Any]:
        ffmpeg = await asyncio.to_thread(check_ffmpeg, self.ffmpeg_path)
        videos_writable = os.access(self.videos_root, os.W_OK)
        return {
            "healthy": ffmpeg["installed"] and videos_writable,
            "ffmpeg": ffmpeg,
            "videos_dir": str(self.videos_root),
            "videos_dir_writable": videos_writable,
            **self.get_status(),
        }

    def build_arguments(self, frames_dir: Path, options: VideoOptions, output_path: Path) -> List[str]:
        """ffmpeg argument list. Order matters: input options precede ``-i``."""
        args = [
            "-y",
            "-framerate", "1",
            "-i", str(frames_dir / "frame_%03d.jpg"),
            "-c:v", VideoDefaults.CODEC_LIBRARIES[options.codec],
            "-pix_fmt", "yuv420p",
        ]
        if options.bitrate:
            args += [
                "-b:v", f"{options.bitrate}k",
                "-maxrate", f"{options.bitrate}k",
                "-bufsize", f"{options.bitrate * 2}k",
            ]
        else:
            preset = QUALITY_PRESETS[options.codec][options.quality]
            args += [
                "-crf", str(preset["crf"]),
                "-preset", str(preset["preset"]),
                "-maxrate", str(preset["maxrate"]),
                "-bufsize", str(preset["bufsize"]),
            ]
        args += ["-r", _format_fps(options.fps), str(output_path)]
        return args

    # ------------------------------------------------------------------
    # Job phases
    # ------------------------------------------------------------------

    async def _run_job(self, job: EncoderJob, input_folder: Optional[str],
                       options: Optional[Dict[str, Any]], on_progress: ProgressCallback) -> VideoResult:
        await self._emit("video.started", {
            "correlation_id": job.correlation_id,
            "phase": JobPhase.VALIDATING.value,
            "message": "Validating video generation request...",
        })
        try:
            job.phase = JobPhase.VALIDATING
            folder = self.validator.validate_input_folder(input_folder)
            video_options = self.validator.validate_options(options)
            self.resource_monitor.check(folder)

            job.phase = JobPhase.SCANNING
            frames = self._scan_frames(folder)
            job.frame_count = len(frames)
            first, last = frames[0][0], frames[-1][0]
            duration_seconds = math.ceil((last - first).total_seconds())
            if duration_seconds > self.max_video_duration:
                raise ResourceError(
                    "duration",
                    f"Capture span of {duration_seconds}s exceeds the {self.max_video_duration}s limit",
                    limit=self.max_video_duration,
                )

            output_path = self.validator.validate_output_path(
                self.videos_root / video_filename(first, last))
            job.partial_path = output_path.with_name(f".{output_path.stem}.partial.mp4")

            await self._ensure_encoder_available(job)
            job.temp_dir = self._link_frames(job, frames)
            self._raise_if_cancelled(job)

            logger.info("Starting encode", frames=len(frames), output=output_path.name,
                        fps=video_options.fps, codec=video_options.codec,
                        quality=video_options.quality, bitrate=video_options.bitrate)

            job.phase = JobPhase.ENCODING
            await self._encode(job, self.build_arguments(job.temp_dir, video_options, job.partial_path),
                               on_progress)

            job.phase = JobPhase.VERIFYING
            size = self._verify_output(job.partial_path)
            os.replace(job.partial_path, output_path)

            if job.progress < 100:
                await self._report_progress(job, 100, on_progress)

            processing_ms = int((time.perf_counter() - job.started) * 1000)
            result = VideoResult(
                output_path=str(output_path),
                filename=output_path.name,
                size_bytes=size,
                duration_seconds=duration_seconds,
                frame_count=len(frames),
                fps=video_options.fps,
                codec=video_options.codec,
                quality=video_options.quality,
                processing_time_ms=processing_ms,
                created_at=datetime.now(timezone.utc),
                correlation_id=job.correlation_id,
            )
            self._record_outcome("completed", processing_ms)
            logger.info("Video created", filename=result.filename, size=size,
                        frames=result.frame_count, processing_time_ms=processing_ms)
            await self._emit("video.completed", {
                "correlation_id": job.correlation_id,
                "phase": "complete",
                "progress": 100,
                "message": f"Video created: {result.filename}",
                "result": result.to_event(),
            })
            return result

        except EncodeCancelledError as e:
            job.phase = JobPhase.CANCELLED
            self._record_outcome("cancelled", self._elapsed_ms(job))
            logger.info("Video generation cancelled", frames=job.frame_count)
            await self._emit("video.cancelled", {
                "correlation_id": job.correlation_id,
                "phase": "cancelled",
                "message": e.message,
            })
            raise
        except TimelapseError as e:
            job.phase = JobPhase.FAILED
            self._record_outcome("failed", self._elapsed_ms(job))
            log = logger.error if e.kind in ("security", "process", "filesystem") else logger.warning
            log("Video generation failed", error=e.message, kind=e.kind, details=e.details)
            await self._emit("video.failed", {
                "correlation_id": job.correlation_id,
                "phase": "error",
                "message": e.message,
                "error": e.to_dict(),
            })
            raise
        except OSError as e:
            job.phase = JobPhase.FAILED
            self._record_outcome("failed", self._elapsed_ms(job))
            error = FilesystemError("encode", str(self.videos_root), str(e))
            logger.error("Video generation failed", error=str(e), error_type=type(e).__name__)
            await self._emit("video.failed", {
                "correlation_id": job.correlation_id,
                "phase": "error",
                "message": error.message,
                "error": error.to_dict(),
            })
            raise error from e

    def _scan_frames(self, folder: Path) -> List[Tuple[datetime, Path]]:
        frames: List[Tuple[datetime, Path]] = []
        skipped = 0
        try:
            entries = list(folder.iterdir())
        except OSError as e:
            raise FilesystemError("list", str(folder), str(e))

        for path in entries:
            if path.suffix.lower() not in VideoDefaults.ALLOWED_EXTENSIONS or not path.is_file():
                continue
            captured_at = parse_capture_timestamp(path.name)
            if captured_at is None:
                skipped += 1
                continue
            frames.append((captured_at, path))

        if skipped:
            logger.warning("Skipped images without a capture timestamp", count=skipped)
        if not frames:
            raise ResourceError("images", "No images with a valid capture timestamp found", limit=1)

        frames.sort(key=lambda frame: (frame[0], frame[1].name))
        return frames

    def _link_frames(self, job: EncoderJob, frames: List[Tuple[datetime, Path]]) -> Path:
        try:
            temp_dir = Path(tempfile.mkdtemp(prefix=f"ffmpeg_input_{job.correlation_id}_",
                                             dir=self.temp_root))
        except OSError as e:
            raise FilesystemError("create", self.temp_root or tempfile.gettempdir(), str(e))

        job.temp_dir = temp_dir
        try:
            for index, (_, source) in enumerate(frames):
                (temp_dir / f"frame_{index:03d}.jpg").symlink_to(source.resolve())
        except OSError as e:
            raise FilesystemError("symlink", str(temp_dir), str(e))

        logger.debug("Frame links created", temp_dir=str(temp_dir), frames=len(frames))
        return temp_dir

    async def _ensure_encoder_available(self, job: EncoderJob) -> None:
        try:
            await self.process_service.run(self.ffmpeg_path, ["-version"], name="ffmpeg-version",
                                           timeout=10, correlation_id=job.correlation_id)
        except ProcessError as e:
            raise ProcessError("ffmpeg is not available. Please install ffmpeg and try again.",
                               exit_code=e.exit_code, details={"ffmpeg_path": self.ffmpeg_path})

    async def _encode(self, job: EncoderJob, args: List[str], on_progress: ProgressCallback) -> None:
        total = job.frame_count

        async def handle_line(line: str) -> None:
            time_match = TIME_PATTERN.search(line)
            if time_match:
                hours, minutes, seconds = time_match.groups()
                job.time_seconds = int(hours) * 3600 + int(minutes) * 60 + float(seconds)
            frame_match = FRAME_PATTERN.search(line)
            if frame_match and total:
                percent = min(100, round(int(frame_match.group(1)) * 100 / total))
                if percent > job.progress:
                    await self._report_progress(job, percent, on_progress)

        handle = await self.process_service.spawn(
            self.ffmpeg_path,
            args,
            name="ffmpeg",
            timeout=self.process_timeout,
            on_stderr_line=handle_line,
            max_buffer_size=self.max_stderr_size,
            correlation_id=job.correlation_id,
        )
        job.handle = handle
        if job.cancel_requested:
            await self.process_service.kill(handle, "user_cancel", kill_timeout=self.kill_timeout)

        result = await handle.wait()
        job.handle = None

        self._raise_if_cancelled(job)
        if result.timed_out:
            raise ProcessError(f"Encoder exceeded the {self.process_timeout}s timeout",
                               signal=result.signal, stderr=handle.stderr.text,
                               details={"timeout": self.process_timeout})
        if result.code != 0:
            raise ProcessError(
                self._parse_error_message(handle.stderr.text, result.code, result.signal),
                exit_code=result.code, signal=result.signal, stderr=handle.stderr.text
            )

    def _verify_output(self, partial_path: Path) -> int:
        try:
            size = partial_path.stat().st_size
        except FileNotFoundError:
            raise ProcessError("Encoder finished but produced no output file")
        except OSError as e:
            raise FilesystemError("stat", str(partial_path), str(e))

        if size == 0:
            raise ProcessError("Encoder produced an empty output file")
        if size > self.max_video_size:
            partial_path.unlink(missing_ok=True)
            raise ResourceError(
                "video_size",
                f"Video size {size} bytes exceeds the {self.max_video_size} byte limit",
                limit=self.max_video_size,
            )
        return size

    async def _cleanup(self, job: EncoderJob) -> None:
        if job.handle is not None and job.handle.running:
            await self.process_service.kill(job.handle, "cleanup", kill_timeout=self.kill_timeout)
        if job.partial_path is not None:
            try:
                job.partial_path.unlink(missing_ok=True)
            except OSError as e:
                logger.error("Failed to remove partial output", path=str(job.partial_path), error=str(e))
        if job.temp_dir is not None:
            shutil.rmtree(job.temp_dir, ignore_errors=True)
            if job.temp_dir.exists():
                logger.error("Failed to remove frame directory", temp_dir=str(job.temp_dir))
            else:
                logger.debug("Frame directory removed", temp_dir=str(job.temp_dir))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _raise_if_cancelled(self, job: EncoderJob) -> None:
        if job.cancel_requested:
            raise EncodeCancelledError(job.correlation_id)

    async def _report_progress(self, job: EncoderJob, percent: int, on_progress: ProgressCallback) -> None:
        job.progress = percent
        payload = {
            "correlation_id": job.correlation_id,
            "phase": job.phase.value,
            "progress": percent,
            "time_seconds": job.time_seconds,
            "message": f"Encoding video... {percent}%",
        }
        await invoke_callback(on_progress, payload)
        await self._emit("video.progress", payload)

    async def _emit(self, event_type: str, data: Dict[str, Any]) -> None:
        if self.event_service is not None:
            await self.event_service.emit_event(event_type, data)

    def _record_outcome(self, outcome: str, processing_ms: int) -> None:
        self.metrics[f"jobs_{outcome}"] += 1
        VIDEO_JOBS.labels(outcome=outcome).inc()
        if outcome == "completed":
            self.metrics["total_processing_time_ms"] += processing_ms
            self.metrics["average_processing_time_ms"] = round(
                self.metrics["total_processing_time_ms"] / self.metrics["jobs_completed"]
            )
            VIDEO_DURATION.observe(processing_ms / 1000)

    @staticmethod
    def _elapsed_ms(job: EncoderJob) -> int:
        return int((time.perf_counter() - job.started) * 1000)

    @staticmethod
    def _parse_error_message(stderr: str, returncode: Optional[int], signal: Optional[str]) -> str:
        """Turn ffmpeg's stderr into a short user-facing message."""
        lowered = stderr.lower()

        if "no space left" in lowered:
            return "Not enough disk space to create video. Free up space and retry."
        if "permission denied" in lowered:
            return "Permission denied accessing files. Check file permissions."
        if "unknown encoder" in lowered:
            return "The requested codec is not supported by this ffmpeg build."
        if "invalid data found" in lowered or "corrupt" in lowered:
            return "Unable to read one or more image files. Check the captures for corrupted images."

        if returncode is None:
            return f"Encoder was terminated by {signal}"

        lines = [line.strip() for line in stderr.strip().splitlines() if line.strip()]
        if lines:
            return f"Encoder failed (code {returncode}): {lines[-1][:200]}"
        return f"Encoder exited with code {returncode}"


def _format_fps(fps: float) -> str:
    return str(int(fps)) if float(fps).is_integer() else f"{fps:g}"
