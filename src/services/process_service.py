"""
Helper process supervision.

Runs external executables (camera, streamer, encoder) with an argument list,
never through a shell. Output is split into logical lines on ``\\n`` and ``\\r``
and delivered to per-stream callbacks; a bounded tail of each stream is kept
for error reporting. Readiness is detected by a substring match on stderr.
Every handle reports its exit exactly once.
"""
import asyncio
import codecs
import re
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog

from src.config.constants import ProcessDefaults
from src.utils.callbacks import invoke_callback
from src.utils.errors import ProcessError

logger = structlog.get_logger().bind(component="ProcessService")

LINE_SPLIT = re.compile(r'\r\n|\r|\n')


class BoundedBuffer:
    """Keeps the most recent ``max_size`` characters of a stream."""

    def __init__(self, max_size: int):
        self.max_size = max_size
        self.truncated = False
        self._data = ""

    def append(self, text: str) -> None:
        self._data += text
        if len(self._data) > self.max_size:
            self._data = self._data[-self.max_size:]
            self.truncated = True

    @property
    def text(self) -> str:
        return self._data

    def __len__(self) -> int:
        return len(self._data)


@dataclass(frozen=True)
class ProcessExit:
    """How a helper process ended."""

    code: Optional[int]
    signal: Optional[str] = None
    timed_out: bool = False
    reason: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.code == 0 and not self.timed_out


class ProcessHandle:
    """A running helper process."""

    def __init__(self, name: str, process: asyncio.subprocess.Process, max_buffer_size: int,
                 correlation_id: Optional[str] = None):
        self.name = name
        self.process = process
        self.pid = process.pid
        self.correlation_id = correlation_id
        self.stdout = BoundedBuffer(max_buffer_size)
        self.stderr = BoundedBuffer(max_buffer_size)
        self.ready = False
        self.exit: Optional[ProcessExit] = None
        self.kill_reason: Optional[str] = None
        self.timed_out = False
        self._ready_event = asyncio.Event()
        self._exited = asyncio.Event()
        self._monitor: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self.exit is None

    async def wait(self) -> ProcessExit:
        """Wait until the exit has been delivered."""
        await self._exited.wait()
        return self.exit

    async def wait_ready(self, timeout: float) -> bool:
        """Wait for the ready signal, the process exit or the timeout, whichever comes first."""
        if self.ready or not self.running:
            return self.ready
        waiters = [
            asyncio.ensure_future(self._ready_event.wait()),
            asyncio.ensure_future(self._exited.wait()),
        ]
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
        return self.ready

    def __repr__(self) -> str:
        return f"<ProcessHandle {self.name} pid={self.pid} running={self.running}>"


LineCallback = Optional[Callable[[str], Any]]


class ProcessService:
    """Supervisor for external helper executables."""

    def __init__(self, kill_timeout: float = ProcessDefaults.KILL_TIMEOUT,
                 max_buffer_size: int = ProcessDefaults.MAX_BUFFER_SIZE):
        self.kill_timeout = kill_timeout
        self.max_buffer_size = max_buffer_size
        self._handles: Dict[int, ProcessHandle] = {}

    @property
    def active_count(self) -> int:
        return len(self._handles)

    async def spawn(
        self,
        executable: str,
        args: Sequence[Any],
        *,
        name: Optional[str] = None,
        ready_signal: Optional[str] = None,
        timeout: Optional[float] = None,
        on_stdout_line: LineCallback = None,
        on_stderr_line: LineCallback = None,
        on_ready: Optional[Callable[[], Any]] = None,
        on_exit: Optional[Callable[[ProcessExit], Any]] = None,
        max_buffer_size: Optional[int] = None,
        correlation_id: Optional[str] = None,
    ) -> ProcessHandle:
        """Start ``executable`` with ``args`` and supervise it in the background.

        Raises:
            ProcessError: the executable does not exist or could not be started.
        """
        name = name or Path(executable).name
        cmd = [str(executable), *[str(arg) for arg in args]]

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except FileNotFoundError:
            logger.error("Helper executable not found", name=name, executable=executable)
            raise ProcessError(f"Executable not found: {executable}",
                               details={"executable": executable})
        except PermissionError as e:
            logger.error("Helper executable not permitted", name=name, executable=executable, error=str(e))
            raise ProcessError(f"Executable not permitted: {executable}",
                               details={"executable": executable})
        except OSError as e:
            logger.error("Failed to spawn helper", name=name, executable=executable,
                         error=str(e), error_type=type(e).__name__)
            raise ProcessError(f"Failed to start {name}: {e}", details={"executable": executable})

        handle = ProcessHandle(name, process, max_buffer_size or self.max_buffer_size, correlation_id)
        self._handles[handle.pid] = handle

        logger.info("Helper process started", name=name, pid=handle.pid, args=cmd[1:])

        handle._monitor = asyncio.create_task(
            self._supervise(handle, ready_signal, timeout, on_stdout_line, on_stderr_line,
                            on_ready, on_exit)
        )
        return handle

    async def run(self, executable: str, args: Sequence[Any], *, name: Optional[str] = None,
                  timeout: Optional[float] = None, correlation_id: Optional[str] = None) -> ProcessHandle:
        """Spawn and wait for the process.

        Raises:
            ProcessError: spawn failure, timeout, or non-zero exit.
        """
        handle = await self.spawn(executable, args, name=name, timeout=timeout,
                                  correlation_id=correlation_id)
        result = await handle.wait()
        if result.timed_out:
            raise ProcessError(f"{handle.name} timed out after {timeout}s",
                               signal=result.signal, stderr=handle.stderr.text,
                               details={"timeout": timeout})
        if result.code != 0:
            raise ProcessError(
                f"{handle.name} exited with code {result.code}" if result.code is not None
                else f"{handle.name} was terminated by {result.signal}",
                exit_code=result.code, signal=result.signal, stderr=handle.stderr.text
            )
        return handle

    async def kill(self, handle: ProcessHandle, reason: str = "requested",
                   kill_timeout: Optional[float] = None) -> bool:
        """Terminate gracefully, then forcefully after ``kill_timeout``.

        Returns False when the process had already exited.
        """
        if not handle.running or handle.process.returncode is not None:
            return False

        kill_timeout = self.kill_timeout if kill_timeout is None else kill_timeout
        handle.kill_reason = handle.kill_reason or reason
        logger.info("Stopping helper process", name=handle.name, pid=handle.pid, reason=reason)

        self._send_signal(handle, signal.SIGTERM)
        try:
            await asyncio.wait_for(handle._exited.wait(), timeout=kill_timeout)
        except asyncio.TimeoutError:
            logger.warning("Helper did not exit after SIGTERM, sending SIGKILL",
                           name=handle.name, pid=handle.pid, kill_timeout=kill_timeout)
            self._send_signal(handle, signal.SIGKILL)
            await handle._exited.wait()
        return True

    async def shutdown(self) -> None:
        """Kill every live helper."""
        handles: List[ProcessHandle] = list(self._handles.values())
        if handles:
            logger.info("Stopping remaining helper processes", count=len(handles))
            await asyncio.gather(*(self.kill(h, "shutdown") for h in handles))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _send_signal(handle: ProcessHandle, sig: int) -> None:
        try:
            handle.process.send_signal(sig)
        except ProcessLookupError:
            pass

    async def _supervise(self, handle: ProcessHandle, ready_signal: Optional[str],
                         timeout: Optional[float], on_stdout_line: LineCallback,
                         on_stderr_line: LineCallback, on_ready, on_exit) -> None:
        process = handle.process
        readers = [
            asyncio.create_task(self._read_stream(handle, process.stdout, handle.stdout,
                                                  on_stdout_line, None, None)),
            asyncio.create_task(self._read_stream(handle, process.stderr, handle.stderr,
                                                  on_stderr_line, ready_signal, on_ready)),
        ]

        try:
            if timeout:
                await asyncio.wait_for(process.wait(), timeout=timeout)
            else:
                await process.wait()
        except asyncio.TimeoutError:
            handle.timed_out = True
            handle.kill_reason = "timeout"
            logger.warning("Helper process timed out, killing", name=handle.name,
                           pid=handle.pid, timeout=timeout)
            self._send_signal(handle, signal.SIGKILL)
            await process.wait()

        # Grandchildren may still hold the pipes open
        done, pending = await asyncio.wait(readers, timeout=ProcessDefaults.DRAIN_TIMEOUT)
        for reader in pending:
            reader.cancel()

        returncode = process.returncode
        signal_name = None
        if returncode is not None and returncode < 0:
            try:
                signal_name = signal.Signals(-returncode).name
            except ValueError:
                signal_name = f"SIG{-returncode}"
            returncode = None

        result = ProcessExit(
            code=returncode,
            signal=signal_name,
            timed_out=handle.timed_out,
            reason=handle.kill_reason,
        )
        handle.exit = result
        self._handles.pop(handle.pid, None)

        log = logger.info if result.success or handle.kill_reason else logger.warning
        log("Helper process exited", name=handle.name, pid=handle.pid, code=result.code,
            signal=result.signal, timed_out=result.timed_out, reason=result.reason,
            stderr_truncated=handle.stderr.truncated)

        await invoke_callback(on_exit, result, helper=handle.name)
        handle._exited.set()

    async def _read_stream(self, handle: ProcessHandle, stream: asyncio.StreamReader,
                           buffer: BoundedBuffer, on_line: LineCallback,
                           ready_signal: Optional[str], on_ready) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        while True:
            chunk = await stream.read(ProcessDefaults.READ_CHUNK_SIZE)
            if not chunk:
                break
            text = decoder.decode(chunk)
            buffer.append(text)
            pending += text
            *lines, pending = LINE_SPLIT.split(pending)
            for line in lines:
                await self._handle_line(handle, line, on_line, ready_signal, on_ready)
            if len(pending) > buffer.max_size:
                pending = pending[-buffer.max_size:]

        pending += decoder.decode(b"", final=True)
        if pending:
            await self._handle_line(handle, pending, on_line, ready_signal, on_ready)

    async def _handle_line(self, handle: ProcessHandle, line: str, on_line: LineCallback,
                           ready_signal: Optional[str], on_ready) -> None:
        if not line:
            return
        if ready_signal and not handle.ready and ready_signal in line:
            handle.ready = True
            handle._ready_event.set()
            logger.info("Helper process ready", name=handle.name, pid=handle.pid)
            await invoke_callback(on_ready, helper=handle.name)
        await invoke_callback(on_line, line, helper=handle.name)
