"""Human-in-the-loop approval queue for commands that need sign-off.

A command classified REQUIRES_APPROVAL is parked here with a future
that the original caller awaits. An external approve or deny resolves
it exactly once: the entry is taken out of the map under a lock before
anything else happens, so a second resolution of the same id always
sees NotFound.

Pending entries never expire. A caller can wait indefinitely, and
callers still waiting when the process exits are abandoned.
"""

from __future__ import annotations

import asyncio
import threading
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

from cmdgate.errors import CommandDenied, ExecutionFailure, PendingCommandNotFound
from cmdgate.events import CommandEvents, EventNotifier
from cmdgate.executor import ExecutionResult, Executor

logger = structlog.get_logger()

DEFAULT_DENY_REASON = "Command denied"


@dataclass
class PendingCommand:
    """A command awaiting an approve or deny decision."""

    id: str
    command: str
    args: list[str]
    timeout: float
    future: asyncio.Future[ExecutionResult] = field(repr=False, compare=False)
    requested_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    requested_by: str | None = None

    async def wait(self) -> ExecutionResult:
        """Suspend until the command is approved and run, or denied."""
        return await self.future

    def resolve(self, result: ExecutionResult) -> None:
        if not self.future.done():
            self.future.set_result(result)

    def reject(self, error: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(error)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-safe dict (without the continuation)."""
        return {
            "id": self.id,
            "command": self.command,
            "args": list(self.args),
            "requestedAt": self.requested_at.isoformat(),
            "requestedBy": self.requested_by,
        }


class ApprovalQueue:
    """Pending commands keyed by id, with approve/deny transitions."""

    def __init__(
        self,
        executor: Executor,
        notifier: EventNotifier,
        default_deny_reason: str = DEFAULT_DENY_REASON,
    ) -> None:
        """Initialize the queue.

        Args:
            executor: Runs approved commands.
            notifier: Receives pending/approved/denied/failed events.
            default_deny_reason: Reason used when deny() is given none.
        """
        self._executor = executor
        self._notifier = notifier
        self._default_deny_reason = default_deny_reason
        self._pending: dict[str, PendingCommand] = {}
        self._lock = threading.Lock()

    def enqueue(
        self,
        command: str,
        args: Sequence[str],
        *,
        timeout: float,
        requested_by: str | None = None,
    ) -> PendingCommand:
        """Park a command and announce it.

        Must be called from a running event loop; the continuation is a
        future on that loop.

        Args:
            command: The command exactly as submitted.
            args: The argument vector exactly as submitted.
            timeout: Execution timeout to apply once approved.
            requested_by: Optional identity of the requester.

        Returns:
            The new PendingCommand. Await ``pending.wait()`` for the outcome.
        """
        future: asyncio.Future[ExecutionResult] = asyncio.get_running_loop().create_future()
        with self._lock:
            command_id = str(uuid.uuid4())
            while command_id in self._pending:
                command_id = str(uuid.uuid4())
            pending = PendingCommand(
                id=command_id,
                command=command,
                args=list(args),
                timeout=timeout,
                future=future,
                requested_by=requested_by,
            )
            self._pending[command_id] = pending

        logger.info(
            "command_pending",
            command_id=command_id,
            command=command,
            requested_by=requested_by,
        )
        self._notifier.emit(CommandEvents.PENDING, pending)
        return pending

    def get(self, command_id: str) -> PendingCommand | None:
        """Look up a pending command without resolving it."""
        with self._lock:
            return self._pending.get(command_id)

    def list(self) -> list[PendingCommand]:
        """Return a snapshot of all unresolved commands."""
        with self._lock:
            return list(self._pending.values())

    def __contains__(self, command_id: object) -> bool:
        with self._lock:
            return command_id in self._pending

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def _take(self, command_id: str) -> PendingCommand:
        """Remove and return an entry. This is the irrevocable step of every resolution."""
        with self._lock:
            pending = self._pending.pop(command_id, None)
        if pending is None:
            raise PendingCommandNotFound(command_id)
        return pending

    async def approve(self, command_id: str) -> ExecutionResult:
        """Approve a pending command and run it.

        Runs the originally submitted command and arguments without
        re-validating them. The outcome goes both to the original caller
        and to the approver.

        Raises:
            PendingCommandNotFound: If the id is unknown or already resolved.
            ExecutionFailure: If the approved command fails or times out.
        """
        pending = self._take(command_id)
        logger.info("command_approved", command_id=command_id, command=pending.command)

        try:
            result = await self._executor.run(pending.command, pending.args, pending.timeout)
        except ExecutionFailure as e:
            self._notifier.emit(CommandEvents.FAILED, {"command_id": command_id, "error": e})
            pending.reject(e)
            raise
        except asyncio.CancelledError:
            # The entry is already gone; don't leave the original caller hanging
            pending.future.cancel()
            raise
        except Exception as e:
            logger.exception("approved_command_crashed", command_id=command_id)
            self._notifier.emit(CommandEvents.FAILED, {"command_id": command_id, "error": e})
            pending.reject(e)
            raise

        self._notifier.emit(
            CommandEvents.APPROVED,
            {"command_id": command_id, "stdout": result.stdout, "stderr": result.stderr},
        )
        pending.resolve(result)
        return result

    def deny(self, command_id: str, reason: str | None = None) -> None:
        """Deny a pending command. The original caller receives CommandDenied.

        Raises:
            PendingCommandNotFound: If the id is unknown or already resolved.
        """
        pending = self._take(command_id)
        reason = reason or self._default_deny_reason
        logger.info("command_denied", command_id=command_id, command=pending.command, reason=reason)

        self._notifier.emit(CommandEvents.DENIED, {"command_id": command_id, "reason": reason})
        pending.reject(CommandDenied(reason))
