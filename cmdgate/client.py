"""Asyncio client for the cmdgate Unix socket server.

Requests are matched to responses by id, so several calls can be in
flight on one connection; an ``execute`` that is waiting for approval
does not hold up anything else. Lifecycle events pushed by the server
are queued and exposed through ``events()``.
"""

from __future__ import annotations

import asyncio
import itertools
import json
from collections.abc import AsyncIterator, Sequence
from typing import Any

import structlog

logger = structlog.get_logger()


class RemoteCommandError(Exception):
    """An error response from the server."""

    def __init__(self, kind: str, message: str) -> None:
        self.kind = kind
        self.message = message
        super().__init__(f"{kind}: {message}")


class CommandClient:
    """Connection to a running cmdgate server.

    Example::

        async with CommandClient("/run/cmdgate/cmdgate.sock") as client:
            pending = await client.get_pending_commands()
            await client.approve_command(pending[0]["id"])
    """

    def __init__(self, socket_path: str) -> None:
        self._socket_path = socket_path
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._read_task: asyncio.Task[None] | None = None
        self._responses: dict[int, asyncio.Future[Any]] = {}
        self._events: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        self._ids = itertools.count(1)

    async def __aenter__(self) -> CommandClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def connect(self) -> None:
        """Open the socket connection.

        Raises:
            FileNotFoundError: If no socket exists at the path.
            ConnectionRefusedError: If nothing is listening.
        """
        self._reader, self._writer = await asyncio.open_unix_connection(self._socket_path)
        self._read_task = asyncio.create_task(self._read_loop())

    async def close(self) -> None:
        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            self._writer = None
        if self._read_task is not None:
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass
            self._read_task = None

    async def _read_loop(self) -> None:
        """Route server lines to waiting calls or the event queue."""
        assert self._reader is not None
        try:
            while True:
                line = await self._reader.readline()
                if not line:
                    break
                try:
                    message = json.loads(line.decode().strip())
                except json.JSONDecodeError:
                    logger.warning("client_bad_line", line=line[:200])
                    continue
                if not isinstance(message, dict):
                    logger.warning("client_bad_line", line=line[:200])
                    continue

                if message.get("type") == "event":
                    self._events.put_nowait(message)
                    continue

                future = self._responses.pop(message.get("id"), None)
                if future is None or future.done():
                    continue
                if "error" in message:
                    err = message["error"] or {}
                    future.set_exception(
                        RemoteCommandError(err.get("kind", "error"), err.get("message", ""))
                    )
                else:
                    future.set_result(message.get("result"))
        except (ConnectionError, OSError) as e:
            logger.warning("client_connection_lost", error=str(e))
        finally:
            for future in self._responses.values():
                if not future.done():
                    future.set_exception(ConnectionError("Connection to cmdgate server closed"))
            self._responses.clear()
            self._events.put_nowait(None)

    async def call(self, op: str, **params: Any) -> Any:
        """Send one request and wait for its response.

        Raises:
            RemoteCommandError: If the server answers with an error.
            ConnectionError: If the connection closes before the answer.
        """
        if self._writer is None:
            raise ConnectionError("Not connected")
        request_id = next(self._ids)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._responses[request_id] = future

        payload = {"id": request_id, "op": op, "params": params}
        self._writer.write((json.dumps(payload) + "\n").encode())
        await self._writer.drain()
        return await future

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        """Yield lifecycle events until the connection closes."""
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    # -- Engine operations --

    async def execute(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        timeout: float | None = None,
        requested_by: str | None = None,
    ) -> dict[str, str]:
        params: dict[str, Any] = {"command": command, "args": list(args)}
        if timeout is not None:
            params["timeout"] = timeout
        if requested_by is not None:
            params["requestedBy"] = requested_by
        return await self.call("execute", **params)

    async def get_whitelist(self) -> list[dict[str, Any]]:
        return await self.call("getWhitelist")

    async def add_to_whitelist(self, entry: dict[str, Any]) -> None:
        await self.call("addToWhitelist", entry=entry)

    async def update_security_level(self, command: str, level: str) -> None:
        await self.call("updateSecurityLevel", command=command, securityLevel=level)

    async def remove_from_whitelist(self, command: str) -> None:
        await self.call("removeFromWhitelist", command=command)

    async def get_pending_commands(self) -> list[dict[str, Any]]:
        return await self.call("getPendingCommands")

    async def approve_command(self, command_id: str) -> dict[str, str]:
        return await self.call("approveCommand", commandId=command_id)

    async def deny_command(self, command_id: str, reason: str | None = None) -> None:
        params: dict[str, Any] = {"commandId": command_id}
        if reason is not None:
            params["reason"] = reason
        await self.call("denyCommand", **params)
