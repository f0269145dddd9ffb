"""Process execution for whitelisted commands.

Uses asyncio.create_subprocess_exec, never a shell. The command and its
arguments go to the OS as a literal argument vector, so characters a
shell would interpret reach the child process as plain data.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from cmdgate.errors import ExecutionFailure, ExecutionTimeout

logger = structlog.get_logger()


@dataclass(frozen=True)
class ExecutionResult:
    """Captured output of a command that exited with status 0."""

    stdout: str = ""
    stderr: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"stdout": self.stdout, "stderr": self.stderr}


class Executor:
    """Runs a single process to completion with a wall-clock timeout.

    Holds no mutable state, so one instance can serve any number of
    concurrent runs.
    """

    async def run(
        self,
        command: str,
        args: Sequence[str],
        timeout: float,
    ) -> ExecutionResult:
        """Execute ``command`` with ``args`` and capture its output.

        Output is captured in full; there is no size cap.

        Args:
            command: Program name or path, resolved via PATH by the OS.
            args: Argument vector passed verbatim.
            timeout: Seconds before the process is killed.

        Returns:
            ExecutionResult with decoded stdout and stderr.

        Raises:
            ExecutionTimeout: If the process outlives ``timeout``.
            ExecutionFailure: If the process cannot start or exits nonzero.
        """
        argv = list(args)
        try:
            proc = await asyncio.create_subprocess_exec(
                command,
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise ExecutionFailure(command, argv, f"Command not found: {command}", exit_code=127)
        except PermissionError:
            raise ExecutionFailure(command, argv, f"Permission denied: {command}", exit_code=126)
        except (OSError, ValueError) as e:
            # ValueError: arguments the OS cannot represent, e.g. an embedded NUL byte
            raise ExecutionFailure(command, argv, str(e))

        logger.debug("process_started", command=command, pid=proc.pid)
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await _kill(proc)
            logger.warning("process_timed_out", command=command, timeout=timeout)
            raise ExecutionTimeout(command, argv, timeout)
        except asyncio.CancelledError:
            await _kill(proc)
            logger.warning("process_cancelled", command=command, pid=proc.pid)
            raise

        out = stdout.decode("utf-8", errors="replace")
        err = stderr.decode("utf-8", errors="replace")

        if proc.returncode != 0:
            detail = f"{command} exited with status {proc.returncode}"
            if err.strip():
                detail += f": {err.strip()}"
            raise ExecutionFailure(
                command, argv, detail, exit_code=proc.returncode, stdout=out, stderr=err
            )

        return ExecutionResult(stdout=out, stderr=err)


async def _kill(proc: asyncio.subprocess.Process) -> None:
    """Kill a child process and reap it."""
    try:
        proc.kill()
    except ProcessLookupError:
        pass  # already exited
    await proc.wait()
