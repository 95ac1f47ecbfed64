"""
Camera operation scheduler.

The camera can be held by either the streamer or the still camera, never both.
The orchestrator serializes every hand-over: one operation is current at a
time, a higher-priority arrival pre-empts it, and pre-empted or queued work
resumes when the current operation finishes.

Kinds:
    stream     bring the live preview up; completes as soon as it is up
    capture    one still, pausing and restoring the preview around it
    timelapse  runs until stopped; pausing keeps its image count and clock
"""
import asyncio
import heapq
from typing import Any, Dict, List, Optional, Tuple

import structlog
from structlog.contextvars import bound_contextvars

from src.config.constants import TimelapseDefaults
from src.models.operation import Callback, Operation, OperationKind, OperationState
from src.services.timelapse_engine import TimelapseEngine
from src.utils.errors import ProcessError, StateError, TimelapseError, ValidationError

logger = structlog.get_logger().bind(component="OperationOrchestrator")


class OperationOrchestrator:
    """Priority scheduler owning the camera."""

    def __init__(self, stream_service, capture_service, engine: TimelapseEngine,
                 settle_delay: float = TimelapseDefaults.SETTLE_DELAY,
                 continue_delay: float = TimelapseDefaults.CONTINUE_NEXT_DELAY):
        self.stream = stream_service
        self.capture = capture_service
        self.engine = engine
        self.settle_delay = settle_delay
        self.continue_delay = continue_delay

        self.current: Optional[Operation] = None
        self._queue: List[Tuple[Tuple[int, float, int], Operation]] = []
        self._lock = asyncio.Lock()
        self._background: set = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def enqueue(self, op: Operation) -> Operation:
        """Start, pre-empt or queue ``op`` and return it.

        Raises:
            ValidationError: unknown kind or non-integer priority.
        """
        if not isinstance(op.kind, OperationKind):
            raise ValidationError("kind", f"Unknown operation kind: {op.kind}")
        if isinstance(op.priority, bool) or not isinstance(op.priority, int):
            raise ValidationError("priority", "Priority must be an integer", value=op.priority)

        async with self._lock:
            with bound_contextvars(correlation_id=op.correlation_id):
                if self.current is None:
                    logger.info("Starting operation", **op.summary())
                    await self._activate(op)
                elif op.priority > self.current.priority:
                    preempted = self.current
                    logger.info("Pre-empting operation", preempted=preempted.kind.value,
                                preempted_priority=preempted.priority, **op.summary())
                    await self._pause(preempted)
                    self._push(preempted)
                    await self._activate(op)
                else:
                    self._push(op)
                    logger.info("Operation queued", queue_length=len(self._queue), **op.summary())
                    await op.notify("queued", f"Operation queued (priority {op.priority})")
        return op

    async def request_stream(self, config, on_notification: Callback = None,
                             on_error: Callback = None, priority: Optional[int] = None) -> Operation:
        return await self.enqueue(Operation(
            kind=OperationKind.STREAM, config=config, priority=priority,
            on_notification=on_notification, on_error=on_error,
        ))

    async def request_capture(self, config, on_notification: Callback = None,
                              on_image_captured: Callback = None, on_error: Callback = None,
                              priority: Optional[int] = None) -> Operation:
        return await self.enqueue(Operation(
            kind=OperationKind.CAPTURE, config=config, priority=priority,
            on_notification=on_notification, on_image_captured=on_image_captured,
            on_error=on_error,
        ))

    async def request_timelapse(self, config, on_notification: Callback = None,
                                on_image_captured: Callback = None, on_error: Callback = None,
                                priority: Optional[int] = None) -> Operation:
        return await self.enqueue(Operation(
            kind=OperationKind.TIMELAPSE, config=config, priority=priority,
            on_notification=on_notification, on_image_captured=on_image_captured,
            on_error=on_error,
        ))

    async def stop_timelapse(self) -> bool:
        """Stop the running time-lapse. Returns False if none was running.

        An in-flight capture finishes first. The queue advances shortly after.
        """
        async with self._lock:
            if not self.engine.stop():
                return False
            await self.engine.wait_stopped()

            op = self.current
            if op is not None and op.kind == OperationKind.TIMELAPSE:
                with bound_contextvars(correlation_id=op.correlation_id):
                    op.progress.update(self.engine.snapshot())
                    op.state = OperationState.COMPLETED
                    self.current = None
                    logger.info("Time-lapse operation completed", image_count=self.engine.image_count)
                    await op.notify("completed", "Time-lapse stopped")

        self._spawn(self._delayed_continue())
        return True

    async def stop_stream(self) -> bool:
        """Stop the live preview. Returns False if it was not running.

        A preview the time-lapse engine has paused for a capture counts as
        running: it is released and not restarted after the capture.
        """
        async with self._lock:
            stopped = await self.stream.stop()
            released = self.engine.release_preview()
            return stopped or released

    async def cancel_queued(self, kind: OperationKind) -> int:
        """Drop queued operations of ``kind`` that never started. Returns how many."""
        async with self._lock:
            dropped = [op for _, op in self._queue if op.kind == kind and not op.started]
            if not dropped:
                return 0
            self._queue = [entry for entry in self._queue if entry[1] not in dropped]
            heapq.heapify(self._queue)
            for op in dropped:
                op.state = OperationState.CANCELLED
                logger.info("Queued operation cancelled", **op.summary())
                await op.notify("cancelled", f"{op.kind.value} cancelled")
            return len(dropped)

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    def queued_operations(self) -> List[Operation]:
        return [op for _, op in sorted(self._queue, key=lambda entry: entry[0])]

    def get_status(self) -> Dict[str, Any]:
        return {
            "current": self.current.summary() if self.current else None,
            "queue_length": len(self._queue),
            "queue": [op.summary() for op in self.queued_operations()],
            "timelapse": self.engine.get_status(),
            "stream": self.stream.get_status(),
        }

    async def shutdown(self) -> None:
        """Stop the engine and the stream and drop queued work."""
        for task in list(self._background):
            task.cancel()
        async with self._lock:
            if self.engine.stop():
                await self.engine.wait_stopped()
            await self.stream.stop()
            dropped = len(self._queue)
            self._queue.clear()
            self.current = None
        logger.info("Orchestrator shut down", dropped_operations=dropped)

    # ------------------------------------------------------------------
    # Transitions (called with the lock held)
    # ------------------------------------------------------------------

    def _push(self, op: Operation) -> None:
        if op.state != OperationState.PAUSED:
            op.state = OperationState.QUEUED
        heapq.heappush(self._queue, (op.sort_key, op))

    async def _activate(self, op: Operation) -> None:
        """Start ``op`` for the first time, or resume it after pre-emption."""
        resuming = op.started
        self.current = op
        op.state = OperationState.RUNNING
        op.started = True

        with bound_contextvars(correlation_id=op.correlation_id):
            try:
                if resuming:
                    await op.notify("resumed", f"{op.kind.value} resumed")
                else:
                    await op.notify("running", f"{op.kind.value} started")

                if op.kind == OperationKind.STREAM:
                    await self._run_stream(op, resuming)
                elif op.kind == OperationKind.CAPTURE:
                    await self._run_capture(op)
                else:
                    await self._run_timelapse(op, resuming)
            except Exception as e:
                await self._fail(op, e)

    async def _pause(self, op: Operation) -> None:
        if op.kind == OperationKind.STREAM:
            op.progress["was_active"] = self.stream.running
            op.progress["stream_settings"] = self.stream.current_settings()
            await self.stream.stop()
        elif op.kind == OperationKind.TIMELAPSE:
            op.progress.update(self.engine.snapshot())
            self.engine.stop()
            await self.engine.wait_stopped()

        op.state = OperationState.PAUSED
        self.current = None
        logger.info("Operation paused", kind=op.kind.value, progress={
            k: v for k, v in op.progress.items() if k in ("image_count", "was_active")
        })
        await op.notify("paused", f"{op.kind.value} paused")

    async def _complete(self, op: Operation, message: str) -> None:
        op.state = OperationState.COMPLETED
        if self.current is op:
            self.current = None
        logger.info("Operation completed", kind=op.kind.value)
        await op.notify("completed", message)
        await self._continue_next()

    async def _fail(self, op: Operation, error: BaseException) -> None:
        op.state = OperationState.FAILED
        if self.current is op:
            self.current = None

        if isinstance(error, StateError):
            logger.info("Operation not applicable", kind=op.kind.value, reason=error.message)
        elif isinstance(error, TimelapseError):
            logger.error("Operation failed", kind=op.kind.value, error=error.message,
                         error_kind=error.kind)
        else:
            logger.error("Operation failed", kind=op.kind.value, error=str(error),
                         error_type=type(error).__name__, exc_info=True)

        message = error.message if isinstance(error, TimelapseError) else str(error)
        await op.notify("failed", message)
        await op.report_error(error)
        await self._continue_next()

    async def _continue_next(self) -> None:
        if self.current is not None or not self._queue:
            return
        _, op = heapq.heappop(self._queue)
        logger.info("Advancing queue", remaining=len(self._queue), **op.summary())
        await self._activate(op)

    # ------------------------------------------------------------------
    # Per-kind behaviour
    # ------------------------------------------------------------------

    async def _run_stream(self, op: Operation, resuming: bool) -> None:
        if resuming and not op.progress.get("was_active"):
            await self._complete(op, "Live preview was not active")
            return

        settings = op.progress.get("stream_settings") or op.config.stream_settings()
        if self.stream.running:
            raise StateError("Live preview is already running")
        if not await self.stream.start(settings, op.notify):
            raise ProcessError("Live preview failed to start")

        op.progress["was_active"] = True
        op.progress["stream_settings"] = settings
        await self._complete(op, "Live preview started")

    async def _run_capture(self, op: Operation) -> None:
        was_streaming = self.stream.running
        stream_settings = self.stream.current_settings() if was_streaming else None

        if was_streaming:
            await op.notify("stream-paused", "Live preview paused for image capture...")
            await self.stream.stop()
            await asyncio.sleep(self.settle_delay)

        try:
            record = await self.capture.capture(op.config.capture_settings(),
                                                correlation_id=op.correlation_id)
            op.progress["record"] = record
            await op.notify("image-captured", record.filename)
            await op.image_captured(record.to_event())
        except TimelapseError as e:
            await op.notify("capture-error", e.message)
            raise
        finally:
            if stream_settings is not None:
                if not await self.stream.start(stream_settings, op.notify):
                    logger.warning("Could not restart stream after capture")

        await self._complete(op, "Image captured")

    async def _run_timelapse(self, op: Operation, resuming: bool) -> None:
        if resuming:
            started = await self.engine.start(
                op, self.stream,
                image_count=op.progress.get("image_count", 0),
                started_at=op.progress.get("started_at"),
                on_finished=self._on_timelapse_failed,
            )
        else:
            started = await self.engine.start(op, self.stream, on_finished=self._on_timelapse_failed)
        if not started:
            raise StateError("Time-lapse is already running")

    # ------------------------------------------------------------------
    # Background hand-offs
    # ------------------------------------------------------------------

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _delayed_continue(self) -> None:
        await asyncio.sleep(self.continue_delay)
        async with self._lock:
            await self._continue_next()

    def _on_timelapse_failed(self, op: Operation, error: BaseException) -> None:
        # Called from the engine's own task; the lock may be held by a pause
        # that is waiting for that task, so finish the bookkeeping separately.
        self._spawn(self._finish_failed_timelapse(op, error))

    async def _finish_failed_timelapse(self, op: Operation, error: BaseException) -> None:
        async with self._lock:
            op.state = OperationState.FAILED
            if self.current is op:
                self.current = None
            else:
                self._queue = [entry for entry in self._queue if entry[1] is not op]
                heapq.heapify(self._queue)
            await op.notify("failed", str(error))
            await self._continue_next()
