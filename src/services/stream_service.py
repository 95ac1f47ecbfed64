"""
Live preview via mjpg-streamer.

Owns at most one streamer process. The preview counts as active once the
streamer has printed its ready line and stops being active when the process
exits.
"""
from typing import Any, Callable, Dict, List, Optional

import structlog

from src.models.capture import StreamSettings
from src.services.process_service import ProcessExit, ProcessHandle, ProcessService
from src.utils.callbacks import invoke_callback
from src.utils.config import AppSettings
from src.utils.errors import ProcessError

logger = structlog.get_logger().bind(component="StreamService")

EventCallback = Optional[Callable[[str, Optional[str]], Any]]


class StreamService:
    """Start and stop the streaming helper."""

    def __init__(self, process_service: ProcessService, settings: AppSettings):
        self.process_service = process_service
        self.executable = settings.mjpg_streamer_path
        self.www_dir = settings.mjpg_streamer_www
        self.port = settings.mjpg_streamer_port
        self.device = settings.camera_device
        self.ready_signal = settings.stream_ready_signal
        self.startup_timeout = settings.stream_startup_timeout
        self.kill_timeout = settings.stream_kill_timeout

        self._handle: Optional[ProcessHandle] = None
        self._settings: Optional[StreamSettings] = None
        self._on_event: EventCallback = None

    @property
    def active(self) -> bool:
        """True while a streamer that has signalled readiness is running."""
        return self._handle is not None and self._handle.ready

    @property
    def running(self) -> bool:
        """True while a streamer process exists, ready or not. It holds the camera either way."""
        return self._handle is not None

    def current_settings(self) -> Optional[StreamSettings]:
        return self._settings

    def build_arguments(self, settings: StreamSettings) -> List[str]:
        input_plugin = f"input_uvc.so -d {self.device} -r {settings.resolution} -f {settings.fps}"
        if settings.rotation:
            input_plugin += f" -rot {settings.rotation}"
        return [
            "-i", input_plugin,
            "-o", f"output_http.so -w {self.www_dir} -p {self.port}",
        ]

    def stream_url(self, host: str) -> str:
        return f"http://{host}:{self.port}/?action=stream"

    async def start(self, settings: StreamSettings, on_event: EventCallback = None) -> bool:
        """Start the streamer and wait (bounded) for its ready signal.

        Returns False if a streamer is already running or the process could
        not be started. If the ready signal has not arrived within the startup
        timeout the streamer is left running and readiness may still follow.
        """
        if self._handle is not None:
            logger.warning("Stream already active", pid=self._handle.pid)
            return False

        args = self.build_arguments(settings)
        self._settings = settings
        self._on_event = on_event

        try:
            handle = await self.process_service.spawn(
                self.executable,
                args,
                name="mjpg_streamer",
                ready_signal=self.ready_signal,
                on_stderr_line=self._log_line,
                on_ready=self._handle_ready,
                on_exit=self._handle_exit,
            )
        except ProcessError as e:
            self._settings = None
            self._on_event = None
            logger.error("Failed to start stream", error=e.message)
            await invoke_callback(on_event, "stream-error", e.message)
            return False

        self._handle = handle
        logger.info("Starting stream", pid=handle.pid, resolution=settings.resolution, fps=settings.fps)

        if await handle.wait_ready(self.startup_timeout):
            return True
        if handle.running:
            logger.warning("Stream ready signal not seen in time, continuing",
                           timeout=self.startup_timeout, pid=handle.pid)
            return True
        return False

    async def stop(self) -> bool:
        """Stop the streamer. Returns False if none was running."""
        handle = self._handle
        if handle is None:
            return False

        await self.process_service.kill(handle, "stop", kill_timeout=self.kill_timeout)
        await handle.wait()
        return True

    def get_status(self) -> Dict[str, Any]:
        return {
            "active": self.active,
            "starting": self.running and not self.active,
            "pid": self._handle.pid if self._handle else None,
            "settings": self._settings.model_dump() if self._settings else None,
        }

    # ------------------------------------------------------------------

    def _log_line(self, line: str) -> None:
        logger.debug("mjpg_streamer", line=line)

    async def _handle_ready(self) -> None:
        logger.info("Stream ready", port=self.port)
        await invoke_callback(self._on_event, "stream-ready", "Live preview is ready")

    async def _handle_exit(self, result: ProcessExit) -> None:
        handle = self._handle
        on_event = self._on_event
        was_ready = handle.ready if handle else False

        self._handle = None
        self._settings = None
        self._on_event = None

        if result.reason is None and (not was_ready or not result.success):
            stderr_tail = handle.stderr.text.strip().splitlines()[-1:] if handle else []
            detail = f"code {result.code}" if result.code is not None else result.signal
            message = f"Streamer exited unexpectedly ({detail})"
            if stderr_tail:
                message = f"{message}: {stderr_tail[0]}"
            logger.error("Stream process failed", code=result.code, signal=result.signal,
                         was_ready=was_ready)
            await invoke_callback(on_event, "stream-error", message)

        logger.info("Stream stopped", code=result.code, signal=result.signal)
        await invoke_callback(on_event, "stream-stopped", "Live preview stopped")
