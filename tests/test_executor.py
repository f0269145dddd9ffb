"""Tests for process execution. These spawn real processes."""

from __future__ import annotations

import asyncio
import sys
import time

import pytest

from cmdgate.errors import ExecutionFailure, ExecutionTimeout
from cmdgate.executor import ExecutionResult, Executor

PY = sys.executable


@pytest.fixture
def executor() -> Executor:
    return Executor()


class TestExecutor:
    """Executor.run against the interpreter running the tests."""

    @pytest.mark.asyncio
    async def test_captures_stdout_and_stderr(self, executor) -> None:
        result = await executor.run(
            PY,
            ["-c", "import sys; print('out'); print('err', file=sys.stderr)"],
            timeout=10,
        )
        assert result == ExecutionResult(stdout="out\n", stderr="err\n")

    @pytest.mark.asyncio
    async def test_args_are_not_shell_parsed(self, executor) -> None:
        payload = "a; echo pwned | cat $(whoami) `id` > /tmp/x"
        result = await executor.run(PY, ["-c", "import sys; print(sys.argv[1])", payload], timeout=10)
        assert result.stdout == payload + "\n"

    @pytest.mark.asyncio
    async def test_nonzero_exit_raises(self, executor) -> None:
        with pytest.raises(ExecutionFailure) as exc_info:
            await executor.run(
                PY,
                ["-c", "import sys; print('partial'); sys.stderr.write('boom'); sys.exit(3)"],
                timeout=10,
            )
        err = exc_info.value
        assert err.exit_code == 3
        assert err.stdout == "partial\n"
        assert err.stderr == "boom"
        assert "boom" in str(err)
        assert str(err).startswith("Command execution failed:")
        assert err.kind == "execution_failure"

    @pytest.mark.asyncio
    async def test_missing_binary_raises(self, executor) -> None:
        with pytest.raises(ExecutionFailure, match="Command not found") as exc_info:
            await executor.run("/nonexistent/cmdgate-test-binary", [], timeout=5)
        assert exc_info.value.exit_code == 127

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, executor) -> None:
        started = time.monotonic()
        with pytest.raises(ExecutionTimeout) as exc_info:
            await executor.run(PY, ["-c", "import time; time.sleep(30)"], timeout=0.5)
        assert time.monotonic() - started < 10
        assert exc_info.value.timeout == 0.5
        assert exc_info.value.kind == "timeout"
        assert "timed out" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_timeout_is_an_execution_failure(self, executor) -> None:
        with pytest.raises(ExecutionFailure):
            await executor.run(PY, ["-c", "import time; time.sleep(30)"], timeout=0.3)

    @pytest.mark.asyncio
    async def test_nul_byte_in_argument_raises_execution_failure(self, executor) -> None:
        with pytest.raises(ExecutionFailure, match="null byte") as exc_info:
            await executor.run(PY, ["-c", "print(1)", "a\x00b"], timeout=5)
        assert exc_info.value.exit_code is None
        assert exc_info.value.kind == "execution_failure"

    @pytest.mark.asyncio
    async def test_cancelled_run_kills_child(self, executor, tmp_path) -> None:
        marker = tmp_path / "still-running"
        script = f"import time, pathlib; time.sleep(1.5); pathlib.Path({str(marker)!r}).write_text('x')"
        task = asyncio.create_task(executor.run(PY, ["-c", script], timeout=30))
        await asyncio.sleep(0.3)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await asyncio.sleep(2.0)
        assert not marker.exists()

    @pytest.mark.asyncio
    async def test_invalid_utf8_is_replaced(self, executor) -> None:
        result = await executor.run(
            PY, ["-c", "import sys; sys.stdout.buffer.write(b'ok\\xff')"], timeout=10
        )
        assert result.stdout == "ok�"

    @pytest.mark.asyncio
    async def test_stdin_is_closed(self, executor) -> None:
        result = await executor.run(
            PY, ["-c", "import sys; print(repr(sys.stdin.read()))"], timeout=10
        )
        assert result.stdout == "''\n"


class TestExecutionResult:
    """The result data class."""

    def test_to_dict(self) -> None:
        assert ExecutionResult("a", "b").to_dict() == {"stdout": "a", "stderr": "b"}

    def test_frozen(self) -> None:
        result = ExecutionResult("a")
        with pytest.raises(AttributeError):
            result.stdout = "b"  # type: ignore[misc]
