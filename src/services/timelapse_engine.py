"""
Time-lapse cadence loop.

Each tick pauses the live preview if it is running, takes a still, restarts
the preview with the settings it had, and reports progress. The next tick is
scheduled ``capture_interval`` seconds after the previous one finished. A
failed capture is reported and the loop carries on.
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import structlog

from src.models.operation import Operation
from src.utils.callbacks import invoke_callback
from src.utils.errors import TimelapseError
from src.utils.timestamps import format_duration

logger = structlog.get_logger().bind(component="TimelapseEngine")


class TimelapseEngine:
    """Drives one time-lapse session at a time."""

    def __init__(self, capture_service, settle_delay: float):
        self.capture_service = capture_service
        self.settle_delay = settle_delay

        self.running = False
        self.started_at: Optional[datetime] = None
        self.stopped_at: Optional[datetime] = None
        self.image_count = 0
        self.interval: float = 0

        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._next_capture_at: Optional[float] = None
        self._stream = None
        self._paused_preview = None
        self._operation: Optional[Operation] = None
        self._on_finished: Optional[Callable[..., Any]] = None

    async def start(self, operation: Operation, stream, *, image_count: int = 0,
                    started_at: Optional[datetime] = None,
                    on_finished: Optional[Callable[..., Any]] = None) -> bool:
        """Begin a session, or resume one when ``image_count``/``started_at`` are given.

        ``stream`` is only held for the duration of the session. ``on_finished``
        is called with ``(operation, error)`` if the loop dies on an unexpected
        error; a normal ``stop()`` does not call it.
        """
        if self.running:
            logger.warning("Time-lapse already running")
            return False

        # A previous session may still be finishing its last capture
        await self.wait_stopped()

        self._stream = stream
        self._operation = operation
        self._on_finished = on_finished
        self.running = True
        self.started_at = started_at or datetime.now(timezone.utc)
        self.stopped_at = None
        self.image_count = image_count
        self.interval = operation.config.capture_interval
        self._stop_event = asyncio.Event()

        logger.info("Time-lapse started", interval=self.interval, image_count=image_count,
                    resumed=started_at is not None,
                    stream_running=bool(stream is not None and stream.running))

        self._task = asyncio.create_task(self._run(operation))
        return True

    def stop(self) -> bool:
        """Stop after any in-flight capture. Returns whether a session was stopped."""
        if not self.running:
            return False

        self.running = False
        self.stopped_at = datetime.now(timezone.utc)
        self._next_capture_at = None
        if self._stop_event is not None:
            self._stop_event.set()

        logger.info("Time-lapse stopped", image_count=self.image_count,
                    session_time=self.session_time())
        return True

    def release_preview(self) -> bool:
        """Keep a preview paused by the current tick stopped after its capture.

        Returns False when no preview is paused.
        """
        if self._paused_preview is None:
            return False
        self._paused_preview = None
        logger.info("Paused preview released", image_count=self.image_count)
        return True

    async def wait_stopped(self) -> None:
        """Wait until the loop (including an in-flight capture) has finished."""
        task = self._task
        if task is not None and not task.done():
            await asyncio.wait([task])

    def session_time(self) -> str:
        if self.started_at is None:
            return "00:00:00"
        end = self.stopped_at if not self.running and self.stopped_at else datetime.now(timezone.utc)
        return format_duration((end - self.started_at).total_seconds())

    def next_capture_in(self) -> Optional[int]:
        if not self.running or self._next_capture_at is None:
            return None
        remaining = self._next_capture_at - asyncio.get_running_loop().time()
        return max(0, round(remaining))

    def snapshot(self) -> Dict[str, Any]:
        """Counters needed to resume this session later."""
        return {"image_count": self.image_count, "started_at": self.started_at}

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "image_count": self.image_count,
            "session_time": self.session_time(),
            "interval": self.interval,
            "next_capture_in": self.next_capture_in(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }

    # ------------------------------------------------------------------

    async def _run(self, operation: Operation) -> None:
        loop = asyncio.get_running_loop()
        failure: Optional[BaseException] = None
        try:
            while self.running:
                await self._tick(operation)
                if not self.running:
                    break
                self._next_capture_at = loop.time() + self.interval
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            self.running = False
            raise
        except Exception as e:
            logger.error("Time-lapse loop failed", error=str(e), error_type=type(e).__name__,
                         exc_info=True)
            self.running = False
            self.stopped_at = datetime.now(timezone.utc)
            failure = e
        finally:
            self._next_capture_at = None
            self._paused_preview = None
            self._stream = None

        if failure is not None:
            await operation.report_error(failure)
            await invoke_callback(self._on_finished, operation, failure)

    async def _tick(self, operation: Operation) -> None:
        stream = self._stream

        if stream is not None and stream.running:
            self._paused_preview = stream.current_settings()
            await operation.notify("stream-paused", "Live preview paused for image capture...")
            await stream.stop()
            await asyncio.sleep(self.settle_delay)

        captured = False
        try:
            record = await self.capture_service.capture(
                operation.config.capture_settings(),
                correlation_id=operation.correlation_id,
            )
        except TimelapseError as e:
            logger.error("Time-lapse capture failed", error=e.message, kind=e.kind,
                         image_count=self.image_count)
            await operation.notify("capture-error", e.message)
            await operation.report_error(e)
        else:
            captured = True
            self.image_count += 1
            await operation.notify("image-captured", record.filename)
            await operation.image_captured({
                "imageCount": self.image_count,
                "sessionTime": self.session_time(),
                "filename": record.filename,
                "filepath": record.filepath,
            })

        resume_settings, self._paused_preview = self._paused_preview, None
        if resume_settings is not None:
            restarted = await stream.start(resume_settings, operation.notify)
            if not restarted:
                logger.warning("Could not restart stream after capture", captured=captured)
