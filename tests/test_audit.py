"""Tests for the audit logger."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from cmdgate.config import EngineConfig
from cmdgate.errors import ExecutionFailure, ForbiddenCommand
from cmdgate.events import EventNotifier
from cmdgate.security.audit import AuditLogger, _truncate_result
from cmdgate.service import CommandService

from conftest import FakeExecutor, wait_for_pending


def _entries(log_file: Path) -> list[dict]:
    return [json.loads(line) for line in log_file.read_text().splitlines() if line.strip()]


class TestAuditLogger:
    """Direct calls to the log methods."""

    def test_log_attempt_writes_jsonl(self, tmp_path: Path) -> None:
        log_file = tmp_path / "audit.jsonl"
        with AuditLogger(str(log_file)) as audit:
            audit.log_attempt("ls", ["-la"], requested_by="alice")

        [entry] = _entries(log_file)
        assert entry["event"] == "command_attempt"
        assert entry["command"] == "ls"
        assert entry["args"] == ["-la"]
        assert entry["requested_by"] == "alice"
        assert entry["level"] == "info"
        assert "timestamp" in entry

    def test_log_success(self, tmp_path: Path) -> None:
        log_file = tmp_path / "audit.jsonl"
        with AuditLogger(str(log_file)) as audit:
            audit.log_success("pwd", [], {"stdout": "/root\n", "stderr": ""})

        [entry] = _entries(log_file)
        assert entry["event"] == "command_success"
        assert entry["result"]["stdout"] == "/root\n"

    def test_log_denied(self, tmp_path: Path) -> None:
        log_file = tmp_path / "audit.jsonl"
        with AuditLogger(str(log_file)) as audit:
            audit.log_denied("rm", ["-rf", "/"], reason="forbidden")

        [entry] = _entries(log_file)
        assert entry["event"] == "command_denied"
        assert entry["reason"] == "forbidden"
        assert entry["level"] == "warning"

    def test_log_error(self, tmp_path: Path) -> None:
        log_file = tmp_path / "audit.jsonl"
        with AuditLogger(str(log_file)) as audit:
            audit.log_error("cat", ["x"], error="Command execution failed: boom")

        [entry] = _entries(log_file)
        assert entry["event"] == "command_error"
        assert entry["level"] == "error"

    def test_log_timeout(self, tmp_path: Path) -> None:
        log_file = tmp_path / "audit.jsonl"
        with AuditLogger(str(log_file)) as audit:
            audit.log_timeout("find", ["/"], 30)

        [entry] = _entries(log_file)
        assert entry["event"] == "command_timeout"
        assert entry["timeout"] == 30

    def test_creates_parent_directory(self, tmp_path: Path) -> None:
        log_file = tmp_path / "nested" / "dir" / "audit.jsonl"
        with AuditLogger(str(log_file)) as audit:
            audit.log_attempt("ls", [])
        assert log_file.exists()

    def test_appends(self, tmp_path: Path) -> None:
        log_file = tmp_path / "audit.jsonl"
        with AuditLogger(str(log_file)) as audit:
            audit.log_attempt("ls", [])
        with AuditLogger(str(log_file)) as audit:
            audit.log_attempt("pwd", [])
        assert [e["command"] for e in _entries(log_file)] == ["ls", "pwd"]


class TestAuditThroughService:
    """The audit trail produced by the engine."""

    @pytest.mark.asyncio
    async def test_safe_command_trail(self, tmp_path: Path) -> None:
        log_file = tmp_path / "audit.jsonl"
        with AuditLogger(str(log_file)) as audit:
            service = CommandService(
                EngineConfig(audit_log_path=None), executor=FakeExecutor(), audit=audit
            )
            await service.execute("ls", ["-la"])

        assert [e["event"] for e in _entries(log_file)] == ["command_attempt", "command_success"]

    @pytest.mark.asyncio
    async def test_rejected_command_trail(self, tmp_path: Path) -> None:
        log_file = tmp_path / "audit.jsonl"
        with AuditLogger(str(log_file)) as audit:
            service = CommandService(
                EngineConfig(audit_log_path=None), executor=FakeExecutor(), audit=audit
            )
            with pytest.raises(ForbiddenCommand):
                await service.execute("rm", ["-rf", "/"])

        entries = _entries(log_file)
        assert [e["event"] for e in entries] == ["command_attempt", "command_denied"]
        assert entries[1]["reason"] == "forbidden"

    @pytest.mark.asyncio
    async def test_failed_command_trail(self, tmp_path: Path) -> None:
        log_file = tmp_path / "audit.jsonl"
        error = ExecutionFailure("cat", ["x"], "cat exited with status 1: nope", exit_code=1)
        with AuditLogger(str(log_file)) as audit:
            service = CommandService(
                EngineConfig(audit_log_path=None), executor=FakeExecutor(error=error), audit=audit
            )
            with pytest.raises(ExecutionFailure):
                await service.execute("cat", ["x"])

        entries = _entries(log_file)
        assert entries[-1]["event"] == "command_error"
        assert "status 1" in entries[-1]["error"]

    @pytest.mark.asyncio
    async def test_approval_trail(self, tmp_path: Path) -> None:
        log_file = tmp_path / "audit.jsonl"
        with AuditLogger(str(log_file)) as audit:
            service = CommandService(
                EngineConfig(audit_log_path=None),
                executor=FakeExecutor(),
                notifier=EventNotifier(),
                audit=audit,
            )
            task = asyncio.create_task(service.execute("mv", ["a", "b"], requested_by="bob"))
            [pending] = await wait_for_pending(service)
            await service.approve_command(pending.id)
            await task

        entries = _entries(log_file)
        assert [e["event"] for e in entries] == [
            "command_attempt",
            "approval_pending",
            "approval_granted",
        ]
        assert entries[1]["id"] == pending.id
        assert entries[1]["requestedBy"] == "bob"
        assert entries[2]["command_id"] == pending.id

    @pytest.mark.asyncio
    async def test_denial_and_failure_trail(self, tmp_path: Path) -> None:
        log_file = tmp_path / "audit.jsonl"
        error = ExecutionFailure("cp", [], "cp exited with status 1: missing operand", exit_code=1)
        with AuditLogger(str(log_file)) as audit:
            service = CommandService(
                EngineConfig(audit_log_path=None), executor=FakeExecutor(error=error), audit=audit
            )
            denied = asyncio.create_task(service.execute("mv", []))
            [pending] = await wait_for_pending(service)
            service.deny_command(pending.id, "nope")

            failed = asyncio.create_task(service.execute("cp", []))
            [pending] = await wait_for_pending(service)
            with pytest.raises(ExecutionFailure):
                await service.approve_command(pending.id)
            await asyncio.gather(denied, failed, return_exceptions=True)

        events = [e["event"] for e in _entries(log_file)]
        assert "approval_denied" in events
        assert "approval_failed" in events
        failed_entry = next(e for e in _entries(log_file) if e["event"] == "approval_failed")
        assert "missing operand" in failed_entry["error"]


class TestTruncateResult:
    """Tests for result truncation."""

    def test_short_values_unchanged(self) -> None:
        result = {"stdout": "short", "stderr": ""}
        assert _truncate_result(result) == result

    def test_long_values_truncated(self) -> None:
        result = {"stdout": "x" * 5000}
        truncated = _truncate_result(result)
        assert len(truncated["stdout"]) < 5000
        assert "truncated" in truncated["stdout"]
        assert "5000 total" in truncated["stdout"]

    def test_non_string_values_unchanged(self) -> None:
        result = {"exit_code": 1, "nested": {"a": 1}}
        assert _truncate_result(result) == result
