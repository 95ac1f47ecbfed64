"""
Control plane: the UI's command and event channel.

Commands arrive as ``{"type": <command>, "data": <payload>}`` messages and are
translated into orchestrator, encoder, capture-store and configuration calls.
State changes flow back out as broadcasts. The transport (the WebSocket
connection manager) only has to provide ``send(client, message)`` and
``broadcast(message)``.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from pydantic.alias_generators import to_camel
from structlog.contextvars import bound_contextvars

from src.models.config import RESTART_REQUIRED_FIELDS, CameraConfig
from src.models.operation import Operation, OperationKind, OperationState
from src.services.capture_service import CaptureService
from src.services.config_store import ConfigStore
from src.services.event_service import EventService
from src.services.operation_orchestrator import OperationOrchestrator
from src.services.stream_service import StreamService
from src.services.video_service import VideoService
from src.utils.config import AppSettings
from src.utils.errors import EncodeCancelledError, StateError, TimelapseError
from src.utils.logging_config import new_correlation_id
from src.utils.system_check import get_memory_usage, get_process_uptime, get_server_ip
from src.utils.timestamps import format_duration, iso_timestamp

logger = structlog.get_logger().bind(component="ControlPlane")

VIDEO_EVENTS = ("video.started", "video.progress", "video.completed", "video.cancelled", "video.failed")

VIDEO_STATUS = {
    "video.started": "in-progress",
    "video.progress": "in-progress",
    "video.completed": "complete",
    "video.cancelled": "cancelled",
    "video.failed": "error",
}


class ControlPlane:
    """Dispatches UI commands and broadcasts appliance state."""

    def __init__(self, orchestrator: OperationOrchestrator, stream_service: StreamService,
                 capture_service: CaptureService, video_service: VideoService,
                 config_store: ConfigStore, event_service: EventService, manager,
                 settings: AppSettings):
        self.orchestrator = orchestrator
        self.stream = stream_service
        self.capture = capture_service
        self.video = video_service
        self.config_store = config_store
        self.event_service = event_service
        self.manager = manager
        self.settings = settings
        self.stream_host = settings.stream_host or get_server_ip()

        self._stream_paused = False
        self._video_requested = False
        self._tasks: set = set()
        self._subscriptions: list = []
        self._commands: Dict[str, Callable[[Any, Any], Awaitable[None]]] = {
            "startCapture": self.start_capture,
            "stopCapture": self.stop_capture,
            "toggleStream": self.toggle_stream,
            "captureNow": self.capture_now,
            "generateVideo": self.generate_video,
            "cancelVideoGeneration": self.cancel_video,
            "refreshImages": self.refresh_images,
            "clearImages": self.clear_images,
            "refreshVideos": self.refresh_videos,
            "deleteVideo": self.delete_video,
            "saveConfig": self.save_config,
            "resetConfigToDefaults": self.reset_config,
            "requestExtendedConfig": self.request_extended_config,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        for event_type in VIDEO_EVENTS:
            handler = self._video_event_handler(event_type)
            self.event_service.subscribe(event_type, handler)
            self._subscriptions.append((event_type, handler))
        self.event_service.add_periodic_task(
            "system_info", self.settings.system_info_interval, self.broadcast_system_info)
        logger.info("Control plane started", stream_host=self.stream_host)

    async def shutdown(self) -> None:
        for event_type, handler in self._subscriptions:
            self.event_service.unsubscribe(event_type, handler)
        self._subscriptions.clear()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Control plane stopped")

    # ------------------------------------------------------------------
    # Transport entry points
    # ------------------------------------------------------------------

    async def on_connect(self, client) -> None:
        """Send the initial state to a newly connected client."""
        await self.send(client, "statusUpdate", self.status_payload())
        await self.send(client, "configUpdate", self.config_store.legacy_view())
        await self.send(client, "streamStatusUpdate", self.stream_status())
        await self.send(client, "liveStreamUrl", self.live_stream_url())

    async def handle_message(self, client, message: Dict[str, Any]) -> None:
        """Route one client message. Commands run as their own tasks."""
        message_type = message.get("type")
        data = message.get("data")

        if message_type == "ping":
            await self.send(client, "pong", None)
            return

        handler = self._commands.get(message_type)
        if handler is None:
            await self.send(client, "error", {"message": f"Unknown message type: {message_type}"})
            return

        task = asyncio.create_task(self._run_command(message_type, handler, client, data))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_command(self, name: str, handler, client, data) -> None:
        with bound_contextvars(correlation_id=new_correlation_id()):
            logger.debug("Handling command", command=name)
            try:
                await handler(client, data)
            except StateError as e:
                await self.notify(client, e.message, "info")
            except TimelapseError as e:
                logger.warning("Command failed", command=name, error=e.message, kind=e.kind)
                await self.notify(client, e.message, "error")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Command failed", command=name, error=str(e),
                             error_type=type(e).__name__, exc_info=True)
                await self.notify(client, "Internal server error", "error")

    async def send(self, client, event: str, data: Any) -> None:
        await self.manager.send(client, {"type": event, "data": data})

    async def broadcast(self, event: str, data: Any = None) -> None:
        await self.manager.broadcast({"type": event, "data": data})

    async def notify(self, client, message: str, kind: str = "info") -> None:
        await self.send(client, "notification", {"message": message, "type": kind})

    # ------------------------------------------------------------------
    # Payloads
    # ------------------------------------------------------------------

    def status_payload(self) -> Dict[str, Any]:
        engine = self.orchestrator.engine
        running = engine.running
        next_in = engine.next_capture_in()
        if next_in is not None:
            next_capture = f"in {next_in}s"
        elif running:
            next_capture = f"in {int(engine.interval)}s"
        else:
            next_capture = "--"

        current = self.orchestrator.current
        return {
            "captureStatus": "Running" if running else "Stopped",
            "imageCount": engine.image_count,
            "sessionTime": engine.session_time(),
            "nextCapture": next_capture,
            "currentOperation": current.kind.value if current else None,
            "queueLength": self.orchestrator.queue_length,
        }

    def stream_status(self) -> str:
        if self.stream.active:
            return "Streaming"
        if self.stream.running:
            return "Starting"
        if self._stream_paused:
            return "Paused for capture"
        return "Stopped"

    def live_stream_url(self) -> str:
        return self.stream.stream_url(self.stream_host) if self.stream.active else ""

    async def broadcast_system_info(self) -> None:
        await self.broadcast("systemInfoUpdate", {
            "memoryUsage": f"{get_memory_usage() / 1024 / 1024:.2f} MB",
            "systemUptime": format_duration(get_process_uptime()),
            "streamStatus": self.stream_status(),
        })

    # ------------------------------------------------------------------
    # Operation callbacks
    # ------------------------------------------------------------------

    def _operation_callbacks(self, client, image_captured: bool = True) -> Dict[str, Callable]:
        async def on_notification(event: str, message: Optional[str]) -> None:
            await self._on_operation_event(client, event, message)

        async def on_image_captured(data: Dict[str, Any]) -> None:
            await self.broadcast("statusUpdate", self.status_payload())

        async def on_error(error: BaseException) -> None:
            if isinstance(error, StateError):
                return
            message = error.message if isinstance(error, TimelapseError) else str(error)
            await self.notify(client, message, "error")

        callbacks = {"on_notification": on_notification, "on_error": on_error}
        if image_captured:
            callbacks["on_image_captured"] = on_image_captured
        return callbacks

    async def _on_operation_event(self, client, event: str, message: Optional[str]) -> None:
        if event == "queued":
            await self.notify(client, message, "info")
        elif event == "stream-paused":
            self._stream_paused = True
            await self.broadcast("streamStatusUpdate", "Paused for capture")
            await self.broadcast("notification", {"message": message, "type": "info"})
        elif event == "stream-ready":
            self._stream_paused = False
            await self.broadcast("streamStatusUpdate", "Streaming")
            await self.broadcast("liveStreamUrl", self.live_stream_url())
        elif event == "stream-stopped":
            await self.broadcast("liveStreamUrl", "")
            if not self._stream_paused:
                await self.broadcast("streamStatusUpdate", "Stopped")
        elif event == "stream-error":
            self._stream_paused = False
            await self.broadcast("streamStatusUpdate", "Stopped")
            await self.broadcast("liveStreamUrl", "")
            await self.notify(client, f"Stream error: {message}", "error")
        elif event == "capture-error":
            await self.broadcast("notification", {"message": f"Capture failed: {message}", "type": "error"})
        elif event in ("paused", "resumed", "completed", "failed"):
            await self.broadcast("statusUpdate", self.status_payload())

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def start_capture(self, client, data) -> None:
        if self._timelapse_pending():
            raise StateError("Capture is already running.")

        op = await self.orchestrator.request_timelapse(
            self.config_store.snapshot, **self._operation_callbacks(client))
        if op.state == OperationState.RUNNING:
            await self.broadcast("statusUpdate", self.status_payload())
            await self.notify(client, "Time-lapse capture started!", "success")

    async def stop_capture(self, client, data) -> None:
        if not await self.orchestrator.stop_timelapse():
            raise StateError("Capture is not running.")
        await self.broadcast("statusUpdate", self.status_payload())
        await self.notify(client, "Time-lapse capture stopped.", "success")

    async def toggle_stream(self, client, data) -> None:
        if await self.orchestrator.cancel_queued(OperationKind.STREAM):
            await self.notify(client, "Queued live preview request cancelled.", "info")
            return

        if self.stream.running or (self._stream_paused and self.orchestrator.engine.running):
            await self.orchestrator.stop_stream()
            self._stream_paused = False
            await self.broadcast("streamStatusUpdate", "Stopped")
            await self.broadcast("liveStreamUrl", "")
            await self.notify(client, "Live preview stopped.", "success")
            return

        op = await self.orchestrator.request_stream(
            self.config_store.snapshot, **self._operation_callbacks(client, image_captured=False))
        if op.state == OperationState.COMPLETED:
            await self.broadcast("streamStatusUpdate", self.stream_status())
            await self.notify(client, "Live preview started!", "success")

    async def capture_now(self, client, data) -> None:
        op = await self.orchestrator.request_capture(
            self.config_store.snapshot, **self._operation_callbacks(client))
        record = op.progress.get("record")
        if op.state == OperationState.COMPLETED and record is not None:
            await self.notify(client, f"Image captured: {record.filename}", "success")
            await self.broadcast("imageListUpdate", await self._image_list())

    async def generate_video(self, client, data) -> None:
        if self._video_requested or self.video.is_processing:
            raise StateError("Video generation is already in progress.")

        data = data if isinstance(data, dict) else {}
        options = self.config_store.snapshot.video_options()
        for key in ("fps", "quality", "codec", "bitrate"):
            if data.get(key) not in (None, ""):
                options[key] = data[key]

        self._video_requested = True
        try:
            result = await self.video.create_video(data.get("inputFolder"), options)
        except TimelapseError as e:
            if isinstance(e, EncodeCancelledError):
                await self.notify(client, "Video generation cancelled.", "info")
            else:
                await self.notify(client, f"Video generation failed: {e.message}", "error")
            return
        finally:
            self._video_requested = False

        await self.notify(client, f"Time-lapse video generated: {result.filename}", "success")
        await self.broadcast("videoListUpdate", await self._video_list())

    async def cancel_video(self, client, data) -> None:
        if not await self.video.cancel():
            if self.video.is_processing:
                raise StateError("Video generation is finishing and can no longer be cancelled.")
            raise StateError("No video generation in progress.")
        await self.notify(client, "Cancelling video generation...", "info")

    async def refresh_images(self, client, data) -> None:
        images = await self._image_list()
        await self.broadcast("imageListUpdate", images)
        await self.notify(client, f"Found {len(images)} images.", "info")

    async def clear_images(self, client, data) -> None:
        cleared = await self.capture.clear_captures()
        await self.broadcast("statusUpdate", self.status_payload())
        await self.notify(client, f"Cleared {cleared} images!", "success")
        await self.broadcast("imagesCleared")

    async def refresh_videos(self, client, data) -> None:
        videos = await self._video_list()
        await self.send(client, "videoListUpdate", videos)
        await self.notify(client, f"Found {len(videos)} videos.", "info")

    async def delete_video(self, client, data) -> None:
        filename = data.get("filename") if isinstance(data, dict) else data
        await self.video.delete_video(str(filename or ""))
        await self.notify(client, f"Deleted {filename}.", "success")
        await self.broadcast("videoListUpdate", await self._video_list())

    async def save_config(self, client, data) -> None:
        before = self.config_store.snapshot
        after = await self.config_store.update(data if isinstance(data, dict) else {})
        await self.broadcast("configUpdate", self.config_store.legacy_view())
        await self.send(client, "extendedConfig", self.config_store.extended_view())
        await self.notify(client, "Configuration saved!" + _restart_notice(before, after), "success")

    async def reset_config(self, client, data) -> None:
        before = self.config_store.snapshot
        after = await self.config_store.reset_to_defaults()
        await self.broadcast("configUpdate", self.config_store.legacy_view())
        await self.send(client, "extendedConfig", self.config_store.extended_view())
        await self.notify(client, "Configuration reset to defaults." + _restart_notice(before, after),
                          "success")

    async def request_extended_config(self, client, data) -> None:
        await self.send(client, "extendedConfig", self.config_store.extended_view())

    # ------------------------------------------------------------------

    def _timelapse_pending(self) -> bool:
        if self.orchestrator.engine.running:
            return True
        return any(op.kind == OperationKind.TIMELAPSE for op in self._pending_operations())

    def _pending_operations(self):
        current: Optional[Operation] = self.orchestrator.current
        pending = list(self.orchestrator.queued_operations())
        if current is not None:
            pending.append(current)
        return pending

    async def _image_list(self):
        return [
            {"filename": c.filename, "size": c.size, "created": iso_timestamp(c.created.astimezone())}
            for c in await self.capture.list_captures()
        ]

    async def _video_list(self):
        return [
            {"filename": v.filename, "size": v.size, "created": iso_timestamp(v.created.astimezone())}
            for v in await self.video.list_videos()
        ]

    def _video_event_handler(self, event_type: str):
        async def handler(data: Dict[str, Any]) -> None:
            payload = {
                "status": VIDEO_STATUS[event_type],
                "phase": data.get("phase"),
                "message": data.get("message"),
            }
            if "progress" in data:
                payload["progress"] = data["progress"]
            if "result" in data:
                payload["result"] = data["result"]
            if "error" in data:
                payload["error"] = data["error"]
            await self.broadcast("videoGenerationStatus", payload)
        return handler


def _restart_notice(before: CameraConfig, after: CameraConfig) -> str:
    changed = [to_camel(name) for name in RESTART_REQUIRED_FIELDS
               if getattr(before, name) != getattr(after, name)]
    if not changed:
        return ""
    return f" Restart the appliance to apply: {', '.join(changed)}."
