"""
Tests for helper process supervision.

Uses /bin/sh as the helper so spawning, line splitting, readiness, timeouts and
the SIGTERM-then-SIGKILL escalation run against a real child process.
"""

import asyncio

import pytest

from src.services.process_service import BoundedBuffer, ProcessService
from src.utils.errors import ProcessError

SH = "/bin/sh"


@pytest.fixture
def process_service():
    return ProcessService(kill_timeout=0.5, max_buffer_size=4096)


# ---------------------------------------------------------------------------
# BoundedBuffer
# ---------------------------------------------------------------------------

class TestBoundedBuffer:

    def test_keeps_everything_under_limit(self):
        buf = BoundedBuffer(10)
        buf.append("abc")
        buf.append("def")
        assert buf.text == "abcdef"
        assert buf.truncated is False

    def test_keeps_most_recent_tail(self):
        buf = BoundedBuffer(5)
        buf.append("abcdefgh")
        assert buf.text == "defgh"
        assert len(buf) == 5
        assert buf.truncated is True


# ---------------------------------------------------------------------------
# Output handling
# ---------------------------------------------------------------------------

class TestOutput:

    async def test_lines_split_on_newline_and_carriage_return(self, process_service):
        lines = []
        handle = await process_service.spawn(
            SH, ["-c", r"printf 'a\rb\nc\r\nd'"], on_stdout_line=lines.append)
        result = await handle.wait()

        assert result.success
        assert lines == ["a", "b", "c", "d"]

    async def test_stderr_is_captured_separately(self, process_service):
        out, err = [], []
        handle = await process_service.spawn(
            SH, ["-c", "echo to-out; echo to-err >&2"],
            on_stdout_line=out.append, on_stderr_line=err.append)
        await handle.wait()

        assert out == ["to-out"]
        assert err == ["to-err"]
        assert "to-err" in handle.stderr.text

    async def test_stderr_buffer_is_bounded(self, process_service):
        handle = await process_service.spawn(
            SH, ["-c", "i=0; while [ $i -lt 200 ]; do echo line-$i >&2; i=$((i+1)); done"],
            max_buffer_size=64)
        await handle.wait()

        assert len(handle.stderr) <= 64
        assert handle.stderr.truncated is True
        assert handle.stderr.text.rstrip().endswith("line-199")

    async def test_arguments_are_not_shell_interpreted(self, process_service):
        lines = []
        handle = await process_service.spawn(
            SH, ["-c", 'echo "$1"', "sh", "$(id); rm -rf /"], on_stdout_line=lines.append)
        await handle.wait()
        assert lines == ["$(id); rm -rf /"]


# ---------------------------------------------------------------------------
# Readiness
# ---------------------------------------------------------------------------

class TestReadiness:

    async def test_ready_signal_on_stderr(self, process_service):
        ready_calls = []
        handle = await process_service.spawn(
            SH, ["-c", "echo booting >&2; echo 'server READY now' >&2; exec sleep 5"],
            ready_signal="READY", on_ready=lambda: ready_calls.append(True))

        assert await handle.wait_ready(2) is True
        assert handle.ready is True
        assert handle.running is True
        assert ready_calls == [True]

        assert await process_service.kill(handle, "test") is True
        assert handle.exit.signal == "SIGTERM"
        assert handle.exit.code is None
        assert handle.exit.reason == "test"

    async def test_wait_ready_returns_false_when_process_exits_first(self, process_service):
        handle = await process_service.spawn(SH, ["-c", "echo nope >&2; exit 1"], ready_signal="READY")
        assert await handle.wait_ready(2) is False
        result = await handle.wait()
        assert result.code == 1
        assert result.success is False

    async def test_wait_ready_times_out(self, process_service):
        handle = await process_service.spawn(SH, ["-c", "exec sleep 5"], ready_signal="READY")
        assert await handle.wait_ready(0.2) is False
        await process_service.kill(handle, "test")


# ---------------------------------------------------------------------------
# Termination
# ---------------------------------------------------------------------------

class TestTermination:

    async def test_timeout_kills_with_sigkill(self, process_service):
        handle = await process_service.spawn(SH, ["-c", "exec sleep 5"], timeout=0.2)
        result = await handle.wait()

        assert result.timed_out is True
        assert result.signal == "SIGKILL"
        assert result.success is False
        assert handle.kill_reason == "timeout"

    async def test_escalates_to_sigkill_when_sigterm_ignored(self, process_service):
        handle = await process_service.spawn(SH, ["-c", "trap '' TERM; exec sleep 5"])
        await asyncio.sleep(0.1)

        assert await process_service.kill(handle, "stubborn", kill_timeout=0.2) is True
        assert handle.exit.signal == "SIGKILL"

    async def test_kill_after_exit_returns_false(self, process_service):
        handle = await process_service.spawn(SH, ["-c", "exit 0"])
        await handle.wait()
        assert await process_service.kill(handle) is False

    async def test_exit_callback_fires_once(self, process_service):
        exits = []
        handle = await process_service.spawn(SH, ["-c", "exec sleep 5"], on_exit=exits.append)
        await process_service.kill(handle, "test")
        await process_service.kill(handle, "again")
        await handle.wait()

        assert len(exits) == 1
        assert exits[0].reason == "test"

    async def test_shutdown_kills_all_helpers(self, process_service):
        handles = [await process_service.spawn(SH, ["-c", "exec sleep 5"]) for _ in range(3)]
        assert process_service.active_count == 3

        await process_service.shutdown()

        assert process_service.active_count == 0
        assert all(not h.running for h in handles)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class TestErrors:

    async def test_missing_executable(self, process_service):
        with pytest.raises(ProcessError) as exc_info:
            await process_service.spawn("/nonexistent/helper", [])
        assert "not found" in exc_info.value.message
        assert exc_info.value.kind == "process"

    async def test_run_raises_on_non_zero_exit(self, process_service):
        with pytest.raises(ProcessError) as exc_info:
            await process_service.run(SH, ["-c", "echo broken >&2; exit 3"])
        assert exc_info.value.exit_code == 3
        assert "broken" in exc_info.value.details["stderr"]

    async def test_run_raises_on_timeout(self, process_service):
        with pytest.raises(ProcessError) as exc_info:
            await process_service.run(SH, ["-c", "exec sleep 5"], timeout=0.2)
        assert "timed out" in exc_info.value.message

    async def test_run_returns_handle_on_success(self, process_service):
        handle = await process_service.run(SH, ["-c", "echo ok"])
        assert handle.exit.success
        assert handle.stdout.text.strip() == "ok"
