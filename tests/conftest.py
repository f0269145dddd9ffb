"""Shared fixtures: a recording executor and engine instances built on it."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

import pytest

from cmdgate.config import EngineConfig
from cmdgate.events import EventNotifier
from cmdgate.executor import ExecutionResult, Executor
from cmdgate.service import CommandService


class FakeExecutor(Executor):
    """Records every run instead of spawning a process."""

    def __init__(
        self,
        result: ExecutionResult | None = None,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.result = result
        self.error = error
        self.delay = delay
        self.calls: list[tuple[str, list[str], float]] = []

    async def run(self, command: str, args: Sequence[str], timeout: float) -> ExecutionResult:
        self.calls.append((command, list(args), timeout))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.result is not None:
            return self.result
        return ExecutionResult(stdout=f"ran {command} {' '.join(args)}".strip() + "\n")


async def wait_for_pending(service: CommandService, count: int = 1) -> list:
    """Yield to the loop until ``count`` commands are pending."""
    for _ in range(200):
        pending = service.get_pending_commands()
        if len(pending) >= count:
            return pending
        await asyncio.sleep(0.005)
    raise AssertionError(f"expected {count} pending commands, found {len(service.get_pending_commands())}")


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def notifier() -> EventNotifier:
    return EventNotifier()


@pytest.fixture
def service(fake_executor: FakeExecutor, notifier: EventNotifier) -> CommandService:
    """Engine with the default whitelist and a recording executor."""
    return CommandService(
        EngineConfig(default_timeout=5, audit_log_path=None),
        executor=fake_executor,
        notifier=notifier,
    )
