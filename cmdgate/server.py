"""Unix socket server exposing the command engine.

Listens on a Unix domain socket. Every connected client may issue
requests concurrently and receives every lifecycle event as it happens,
so one client can submit a command while another approves it.

Wire protocol (newline-delimited JSON):

  Client -> Server:
    {"id": 1, "op": "execute", "params": {"command": "mv", "args": ["a", "b"]}}
    {"id": 2, "op": "approveCommand", "params": {"commandId": "..."}}

  Server -> Client:
    {"type": "event", "event": "command:pending", "data": {...}}
    {"type": "response", "id": 2, "result": {"stdout": "", "stderr": ""}}
    {"type": "response", "id": 1, "result": {"stdout": "", "stderr": ""}}
    {"type": "response", "id": 3, "error": {"kind": "forbidden", "message": "..."}}

Supported ops: execute, getWhitelist, addToWhitelist, updateSecurityLevel,
removeFromWhitelist, getPendingCommands, approveCommand, denyCommand.
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Any

import structlog

from cmdgate.errors import CommandError
from cmdgate.events import CommandEvents
from cmdgate.security.approval import PendingCommand
from cmdgate.service import CommandService

logger = structlog.get_logger()


class BadRequest(Exception):
    """Raised for malformed requests; reported to the client, never fatal."""

    def __init__(self, kind: str, message: str) -> None:
        self.kind = kind
        super().__init__(message)


def _event_data(payload: Any) -> Any:
    """Make an event payload JSON-safe."""
    if isinstance(payload, PendingCommand):
        return payload.to_dict()
    if isinstance(payload, dict):
        return {k: str(v) if isinstance(v, BaseException) else v for k, v in payload.items()}
    return payload


class CommandServer:
    """Serves CommandService operations over a Unix domain socket."""

    def __init__(self, service: CommandService, socket_path: str) -> None:
        """Initialize the server.

        Args:
            service: The engine instance to expose.
            socket_path: Filesystem path for the Unix domain socket.
        """
        self._service = service
        self._socket_path = socket_path
        self._server: asyncio.AbstractServer | None = None
        self._writers: set[asyncio.StreamWriter] = set()
        self._tasks: set[asyncio.Task[None]] = set()
        self._shutdown = asyncio.Event()
        self._forwarders: list[tuple[str, Any]] = []
        self._ops = {
            "execute": self._op_execute,
            "getWhitelist": self._op_get_whitelist,
            "addToWhitelist": self._op_add_to_whitelist,
            "updateSecurityLevel": self._op_update_security_level,
            "removeFromWhitelist": self._op_remove_from_whitelist,
            "getPendingCommands": self._op_get_pending_commands,
            "approveCommand": self._op_approve_command,
            "denyCommand": self._op_deny_command,
        }

    @property
    def socket_path(self) -> str:
        return self._socket_path

    async def start(self) -> None:
        """Start the Unix socket server and begin forwarding events."""
        path = Path(self._socket_path)
        if path.exists():
            path.unlink()
        path.parent.mkdir(parents=True, exist_ok=True)

        self._server = await asyncio.start_unix_server(
            self._handle_connection,
            path=self._socket_path,
        )
        # Owner + group read/write, no world access
        os.chmod(self._socket_path, 0o660)

        for event in CommandEvents.ALL:
            forwarder = self._make_forwarder(event)
            self._service.subscribe(event, forwarder)
            self._forwarders.append((event, forwarder))
        logger.info("server_listening", socket=self._socket_path)

    async def serve_forever(self) -> None:
        """Block until stop() is called."""
        await self._shutdown.wait()

    async def stop(self) -> None:
        """Shut down the socket server and disconnect all clients."""
        self._shutdown.set()
        for event, forwarder in self._forwarders:
            self._service.notifier.unsubscribe(event, forwarder)
        self._forwarders.clear()
        if self._server:
            self._server.close()
        for writer in list(self._writers):
            writer.close()
        self._writers.clear()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._server:
            await self._server.wait_closed()
            self._server = None
        path = Path(self._socket_path)
        if path.exists():
            path.unlink()
        logger.info("server_stopped")

    def _make_forwarder(self, event: str):
        def forward(payload: Any) -> None:
            self._broadcast({"type": "event", "event": event, "data": _event_data(payload)})

        return forward

    def _broadcast(self, message: dict[str, Any]) -> None:
        for writer in list(self._writers):
            self._send(writer, message)

    def _send(self, writer: asyncio.StreamWriter, message: dict[str, Any]) -> None:
        """Write a JSON line to a client (non-blocking enqueue)."""
        if writer.is_closing():
            self._writers.discard(writer)
            return
        try:
            writer.write((json.dumps(message, default=str) + "\n").encode())
        except (ConnectionError, OSError):
            self._writers.discard(writer)

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Read requests from one client until it disconnects."""
        self._writers.add(writer)
        logger.info("client_connected", clients=len(self._writers))
        try:
            while not self._shutdown.is_set():
                line = await reader.readline()
                if not line:
                    break
                if not line.strip():
                    continue
                # Requests run concurrently; a parked execute must not block approvals
                task = asyncio.create_task(self._handle_request(writer, line))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        except (ConnectionError, OSError) as e:
            logger.warning("client_read_error", error=str(e))
        finally:
            self._writers.discard(writer)
            if not writer.is_closing():
                writer.close()
            logger.info("client_disconnected", clients=len(self._writers))

    async def _handle_request(self, writer: asyncio.StreamWriter, line: bytes) -> None:
        """Parse, dispatch and answer a single request line."""
        request_id: Any = None
        response: dict[str, Any]
        try:
            try:
                data = json.loads(line.decode())
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise BadRequest("bad_request", f"Invalid JSON: {e}")
            if not isinstance(data, dict):
                raise BadRequest("bad_request", "Request must be a JSON object")
            request_id = data.get("id")
            result = await self._dispatch(data.get("op"), data.get("params") or {})
            response = {"type": "response", "id": request_id, "result": result}
        except (CommandError, BadRequest) as e:
            response = _error_response(request_id, e.kind, str(e))
        except ValueError as e:
            # Includes pydantic.ValidationError from malformed whitelist entries
            response = _error_response(request_id, "bad_request", str(e))
        except Exception as e:
            logger.exception("request_failed", request_id=request_id)
            response = _error_response(request_id, "internal", str(e))

        self._send(writer, response)
        if not writer.is_closing():
            try:
                await writer.drain()
            except (ConnectionError, OSError):
                self._writers.discard(writer)

    async def _dispatch(self, op: Any, params: Any) -> Any:
        handler = self._ops.get(op)
        if handler is None:
            raise BadRequest("unknown_op", f"Unknown op: {op!r}")
        if not isinstance(params, dict):
            raise BadRequest("bad_request", "params must be a JSON object")
        logger.debug("request_received", op=op)
        return await handler(params)

    # -- Ops --

    async def _op_execute(self, params: dict[str, Any]) -> dict[str, Any]:
        args = params.get("args") or []
        if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
            raise BadRequest("bad_request", "args must be a list of strings")
        timeout = params.get("timeout")
        if timeout is not None and (
            isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0
        ):
            raise BadRequest("bad_request", "timeout must be a positive number of seconds")
        result = await self._service.execute(
            _require_str(params, "command"),
            args,
            timeout=timeout,
            requested_by=params.get("requestedBy"),
        )
        return result.to_dict()

    async def _op_get_whitelist(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in self._service.get_whitelist()]

    async def _op_add_to_whitelist(self, params: dict[str, Any]) -> None:
        entry = params.get("entry")
        if not isinstance(entry, dict):
            raise BadRequest("bad_request", "Missing parameter: 'entry'")
        self._service.add_to_whitelist(entry)

    async def _op_update_security_level(self, params: dict[str, Any]) -> None:
        self._service.update_security_level(
            _require_str(params, "command"),
            _require_str(params, "securityLevel"),
        )

    async def _op_remove_from_whitelist(self, params: dict[str, Any]) -> None:
        self._service.remove_from_whitelist(_require_str(params, "command"))

    async def _op_get_pending_commands(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        return [pending.to_dict() for pending in self._service.get_pending_commands()]

    async def _op_approve_command(self, params: dict[str, Any]) -> dict[str, Any]:
        result = await self._service.approve_command(_require_str(params, "commandId"))
        return result.to_dict()

    async def _op_deny_command(self, params: dict[str, Any]) -> None:
        reason = params.get("reason")
        if reason is not None and not isinstance(reason, str):
            raise BadRequest("bad_request", "reason must be a string")
        self._service.deny_command(_require_str(params, "commandId"), reason)


def _require_str(params: dict[str, Any], name: str) -> str:
    value = params.get(name)
    if not isinstance(value, str) or not value:
        raise BadRequest("bad_request", f"Missing parameter: {name!r}")
    return value


def _error_response(request_id: Any, kind: str, message: str) -> dict[str, Any]:
    return {"type": "response", "id": request_id, "error": {"kind": kind, "message": message}}
