"""The command engine: classification, execution and the approval workflow.

Owns the whitelist, the approval queue, the executor and the event
notifier for one engine instance, and exposes the operations the
transport layer calls.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

import structlog

from cmdgate.config import EngineConfig, SecurityLevel, WhitelistConfig
from cmdgate.errors import ExecutionFailure, ExecutionTimeout, ForbiddenCommand, UnauthorizedCommand
from cmdgate.events import EventHandler, EventNotifier
from cmdgate.executor import ExecutionResult, Executor
from cmdgate.security.approval import ApprovalQueue, PendingCommand
from cmdgate.security.audit import AuditLogger
from cmdgate.security.validator import check_command, classify
from cmdgate.security.whitelist import WhitelistEntry, WhitelistRegistry, build_registry

logger = structlog.get_logger()


class CommandService:
    """Policy-gated command execution with a pending-approval queue."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        whitelist: WhitelistConfig | None = None,
        *,
        registry: WhitelistRegistry | None = None,
        executor: Executor | None = None,
        notifier: EventNotifier | None = None,
        audit: AuditLogger | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            config: Engine configuration. Defaults apply if omitted.
            whitelist: Policy config used to build the registry when no
                ``registry`` is given. Omit both for the default policy.
            registry: A ready-made registry, used as-is.
            executor: Process runner. Replaceable for tests.
            notifier: Event fan-out. A fresh one is created if omitted.
            audit: Optional audit logger; attached to the notifier.
        """
        self._config = config or EngineConfig()
        if registry is None:
            registry = build_registry(whitelist or WhitelistConfig())
        self._registry = registry
        self._executor = executor or Executor()
        self._notifier = notifier or EventNotifier()
        self._queue = ApprovalQueue(
            self._executor,
            self._notifier,
            default_deny_reason=self._config.default_deny_reason,
        )
        self._audit = audit
        if audit is not None:
            audit.attach(self._notifier)

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def registry(self) -> WhitelistRegistry:
        return self._registry

    @property
    def queue(self) -> ApprovalQueue:
        return self._queue

    @property
    def notifier(self) -> EventNotifier:
        return self._notifier

    def subscribe(self, event: str, handler: EventHandler) -> None:
        """Register a handler for a lifecycle event (see CommandEvents)."""
        self._notifier.subscribe(event, handler)

    def classify(self, command: str, args: Sequence[str] = ()) -> SecurityLevel | None:
        """Classify without executing. None means not whitelisted."""
        return classify(command, args, self._registry)

    async def execute(
        self,
        command: str,
        args: Sequence[str] | None = None,
        *,
        timeout: float | None = None,
        requested_by: str | None = None,
    ) -> ExecutionResult:
        """Run a command if policy allows it.

        Pipeline:
        1. Log the attempt
        2. Classify against the whitelist
        3. Safe: execute now. Requires approval: queue and wait.

        Args:
            command: The command name or path.
            args: Argument vector, passed to the process verbatim.
            timeout: Seconds before the process is killed. Defaults to
                the configured ``default_timeout``.
            requested_by: Optional requester identity, recorded on the
                pending entry and in the audit log.

        Returns:
            The captured output.

        Raises:
            UnauthorizedCommand: If the command is not whitelisted.
            ForbiddenCommand: If the command is blocked.
            CommandDenied: If the command was queued and then denied.
            ExecutionTimeout: If execution exceeded the timeout.
            ExecutionFailure: If the process failed to start or exited nonzero.
        """
        argv = list(args or [])
        effective_timeout = timeout or self._config.default_timeout

        if self._audit:
            self._audit.log_attempt(command, argv, requested_by)

        try:
            level = check_command(command, argv, self._registry)
        except (UnauthorizedCommand, ForbiddenCommand) as e:
            if self._audit:
                self._audit.log_denied(command, argv, reason=e.kind)
            raise

        if level is SecurityLevel.REQUIRES_APPROVAL:
            pending = self._queue.enqueue(
                command, argv, timeout=effective_timeout, requested_by=requested_by
            )
            return await pending.wait()

        return await self._run_now(command, argv, effective_timeout)

    async def _run_now(self, command: str, argv: list[str], timeout: float) -> ExecutionResult:
        """Execute a Safe command on the immediate path, with audit logging."""
        try:
            result = await self._executor.run(command, argv, timeout)
        except ExecutionTimeout:
            if self._audit:
                self._audit.log_timeout(command, argv, timeout)
            raise
        except ExecutionFailure as e:
            if self._audit:
                self._audit.log_error(command, argv, error=str(e))
            raise

        if self._audit:
            self._audit.log_success(command, argv, result=result.to_dict())
        return result

    # -- Whitelist management --

    def get_whitelist(self) -> list[WhitelistEntry]:
        return self._registry.list()

    def add_to_whitelist(self, entry: WhitelistEntry | Mapping[str, Any]) -> None:
        """Add or replace an entry. Mappings are parsed from the wire shape.

        Raises:
            pydantic.ValidationError: If a mapping is malformed.
        """
        if not isinstance(entry, WhitelistEntry):
            entry = WhitelistEntry.from_dict(entry)
        self._registry.add(entry)
        logger.info("whitelist_updated", command=entry.command, level=entry.level.value)

    def update_security_level(self, command: str, level: SecurityLevel | str) -> None:
        """Change the level of an existing entry; unknown commands are ignored.

        Raises:
            ValueError: If ``level`` is not a valid security level name.
        """
        self._registry.update_level(command, SecurityLevel(level))

    def remove_from_whitelist(self, command: str) -> None:
        self._registry.remove(command)

    # -- Approval workflow --

    def get_pending_commands(self) -> list[PendingCommand]:
        return self._queue.list()

    async def approve_command(self, command_id: str) -> ExecutionResult:
        """Approve and run a pending command. See ApprovalQueue.approve."""
        return await self._queue.approve(command_id)

    def deny_command(self, command_id: str, reason: str | None = None) -> None:
        """Deny a pending command. See ApprovalQueue.deny."""
        self._queue.deny(command_id, reason)
