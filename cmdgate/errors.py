"""Exception taxonomy for the command engine.

Every error carries a short ``kind`` string so the socket transport can
report it without knowing the concrete class.
"""

from __future__ import annotations


class CommandError(Exception):
    """Base class for all engine errors."""

    kind = "error"


class UnauthorizedCommand(CommandError):
    """Raised when a command has no whitelist entry."""

    kind = "unauthorized"

    def __init__(self, command: str) -> None:
        self.command = command
        super().__init__(f"Command not whitelisted: {command}")


class ForbiddenCommand(CommandError):
    """Raised when a command is explicitly blocked."""

    kind = "forbidden"

    def __init__(self, command: str) -> None:
        self.command = command
        super().__init__(f"Command is forbidden: {command}")


class PendingCommandNotFound(CommandError):
    """Raised on approve/deny of an unknown or already-resolved id."""

    kind = "not_found"

    def __init__(self, command_id: str) -> None:
        self.command_id = command_id
        super().__init__(f"No pending command with ID: {command_id}")


class CommandDenied(CommandError):
    """Delivered to the original caller when its pending command is denied."""

    kind = "denied"

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class ExecutionFailure(CommandError):
    """Raised when a process cannot be spawned or exits nonzero."""

    kind = "execution_failure"

    def __init__(
        self,
        command: str,
        args: list[str],
        detail: str,
        *,
        exit_code: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        self.command = command
        # Exception.args is taken; keep the argument vector separately
        self.argv = list(args)
        self.detail = detail
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(f"Command execution failed: {detail}")


class ExecutionTimeout(ExecutionFailure):
    """Raised when a process outlives its wall-clock timeout."""

    kind = "timeout"

    def __init__(self, command: str, args: list[str], timeout: float) -> None:
        self.timeout = timeout
        super().__init__(command, args, f"timed out after {timeout:g} seconds")
