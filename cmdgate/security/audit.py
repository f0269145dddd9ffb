"""Structured JSON audit logging using structlog.

Every command request is logged: attempts, immediate successes,
denials, errors, timeouts, and each approval-queue transition. Entries
go to a JSONL file for post-hoc review.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import Any

import structlog

from cmdgate.events import CommandEvents, EventNotifier
from cmdgate.security.approval import PendingCommand


class AuditLogger:
    """Structured audit logger for command execution events."""

    def __init__(self, log_path: str) -> None:
        """Initialize the audit logger.

        Args:
            log_path: Path to the JSONL audit log file.
        """
        self._log_path = Path(log_path)
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self._log_path, "a", buffering=1)  # noqa: SIM115

        self._logger = structlog.wrap_logger(
            structlog.PrintLogger(file=self._file),
            processors=[
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.JSONRenderer(default=str),
            ],
        )

    def __enter__(self) -> AuditLogger:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def attach(self, notifier: EventNotifier) -> None:
        """Subscribe to every approval-queue event on ``notifier``."""
        notifier.subscribe(CommandEvents.PENDING, self.log_pending)
        notifier.subscribe(CommandEvents.APPROVED, self.log_approved)
        notifier.subscribe(CommandEvents.DENIED, self.log_queue_denied)
        notifier.subscribe(CommandEvents.FAILED, self.log_queue_failed)

    def log_attempt(
        self, command: str, args: Sequence[str], requested_by: str | None = None
    ) -> None:
        """Log that a command is being requested."""
        self._logger.info(
            "command_attempt", command=command, args=list(args), requested_by=requested_by
        )

    def log_success(self, command: str, args: Sequence[str], result: dict[str, Any]) -> None:
        """Log an immediate (no approval needed) successful execution."""
        self._logger.info(
            "command_success", command=command, args=list(args), result=_truncate_result(result)
        )

    def log_denied(self, command: str, args: Sequence[str], reason: str) -> None:
        """Log a request rejected by policy."""
        self._logger.warning("command_denied", command=command, args=list(args), reason=reason)

    def log_error(self, command: str, args: Sequence[str], error: str) -> None:
        """Log an execution failure."""
        self._logger.error("command_error", command=command, args=list(args), error=error)

    def log_timeout(self, command: str, args: Sequence[str], timeout: float) -> None:
        """Log an execution timeout."""
        self._logger.warning("command_timeout", command=command, args=list(args), timeout=timeout)

    def log_pending(self, pending: PendingCommand) -> None:
        self._logger.info("approval_pending", **pending.to_dict())

    def log_approved(self, payload: dict[str, Any]) -> None:
        self._logger.info("approval_granted", **_truncate_result(payload))

    def log_queue_denied(self, payload: dict[str, Any]) -> None:
        self._logger.warning("approval_denied", **payload)

    def log_queue_failed(self, payload: dict[str, Any]) -> None:
        self._logger.error(
            "approval_failed", command_id=payload["command_id"], error=str(payload["error"])
        )

    def close(self) -> None:
        """Close the audit log file."""
        self._file.close()


def _truncate_result(result: dict, max_len: int = 2000) -> dict:
    """Truncate string values in a result dict to prevent log bloat."""
    truncated = {}
    for k, v in result.items():
        if isinstance(v, str) and len(v) > max_len:
            truncated[k] = v[:max_len] + f"... (truncated, {len(v)} total)"
        else:
            truncated[k] = v
    return truncated
