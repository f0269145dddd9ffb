"""CLI entry point for cmdgate using Click."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys

import click
import structlog

from cmdgate import __version__
from cmdgate.config import ApprovalMode, EngineConfig, load_all_config
from cmdgate.errors import CommandError

logger = structlog.get_logger()

DEFAULT_SOCKET = "/run/cmdgate/cmdgate.sock"


def _configure_logging(log_level: str) -> None:
    """Configure structlog for console output on stderr."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if sys.stderr.isatty() else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def _config_path(config_dir: str | None) -> str:
    return config_dir or os.environ.get("CMDGATE_CONFIG", "./config")


def _build_service(config_path: str):
    """Build the engine from the config directory.

    Returns:
        Tuple of (EngineConfig, CommandService, AuditLogger | None).
    """
    from cmdgate.security.audit import AuditLogger
    from cmdgate.service import CommandService

    engine_cfg, whitelist_cfg = load_all_config(config_path)
    audit = AuditLogger(engine_cfg.audit_log_path) if engine_cfg.audit_log_path else None
    service = CommandService(engine_cfg, whitelist_cfg, audit=audit)
    return engine_cfg, service, audit


config_dir_option = click.option(
    "--config-dir",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    default=None,
    help="Path to configuration directory. Defaults to CMDGATE_CONFIG env or ./config/",
)
log_level_option = click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Logging level. Defaults to CMDGATE_LOG_LEVEL env or WARNING.",
)
socket_option = click.option(
    "--socket",
    "socket_path",
    type=click.Path(),
    default=None,
    help=f"Unix socket path of the server. Defaults to CMDGATE_SOCKET env or {DEFAULT_SOCKET}.",
)


def _socket_path(socket_path: str | None) -> str:
    return socket_path or os.environ.get("CMDGATE_SOCKET", DEFAULT_SOCKET)


@click.group()
@click.version_option(version=__version__, prog_name="cmdgate")
def cli() -> None:
    """cmdgate - policy-gated command execution with human approval."""


@cli.command()
@config_dir_option
@log_level_option
@socket_option
def serve(config_dir: str | None, log_level: str | None, socket_path: str | None) -> None:
    """Start the command server on a Unix socket.

    Clients submit commands with ``cmdgate send`` and resolve queued
    ones with ``cmdgate approve`` / ``cmdgate deny``.
    """
    _configure_logging(log_level or os.environ.get("CMDGATE_LOG_LEVEL", "INFO"))

    try:
        engine_cfg, service, audit = _build_service(_config_path(config_dir))
    except FileNotFoundError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Startup error: {e}", err=True)
        logger.exception("startup_failed")
        sys.exit(1)

    sock = socket_path or os.environ.get("CMDGATE_SOCKET") or engine_cfg.socket_path
    try:
        asyncio.run(_run_server(service, sock))
    finally:
        if audit:
            audit.close()
        logger.info("server_exited")


async def _run_server(service, socket_path: str) -> None:
    """Async entry point for server mode."""
    from cmdgate.server import CommandServer

    server = CommandServer(service, socket_path)
    await server.start()

    # Graceful shutdown on SIGTERM / SIGINT
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.ensure_future(server.stop()))

    logger.info(
        "server_started",
        socket=socket_path,
        whitelist=len(service.registry),
        default_timeout=service.config.default_timeout,
    )
    await server.serve_forever()


@cli.command()
@config_dir_option
def check_config(config_dir: str | None) -> None:
    """Validate configuration files without starting the server."""
    try:
        engine_cfg, whitelist_cfg = load_all_config(_config_path(config_dir))
    except Exception as e:
        click.echo(f"FAIL: {e}", err=True)
        sys.exit(1)

    click.echo("Configuration OK")
    click.echo(f"  Default timeout: {engine_cfg.default_timeout:g}s")
    click.echo(f"  Approval mode: {engine_cfg.approval_mode.value}")
    click.echo(f"  Audit log: {engine_cfg.audit_log_path or 'disabled'}")
    click.echo(f"  Socket: {engine_cfg.socket_path}")
    click.echo(f"  Default whitelist: {'included' if whitelist_cfg.include_defaults else 'excluded'}")
    click.echo(f"  Configured commands: {len(whitelist_cfg.commands)}")
    for entry in whitelist_cfg.commands:
        click.echo(f"    - {entry.command} ({entry.security_level.value})")


@cli.command()
@config_dir_option
def whitelist(config_dir: str | None) -> None:
    """Show the effective command whitelist."""
    from cmdgate.security.whitelist import build_registry
    from cmdgate.ui.terminal import TerminalUI

    try:
        _engine_cfg, whitelist_cfg = load_all_config(_config_path(config_dir))
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    TerminalUI().display_whitelist(build_registry(whitelist_cfg).list())


@cli.command("exec", context_settings={"ignore_unknown_options": True})
@click.argument("command")
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
@config_dir_option
@click.option("--timeout", type=float, default=None, help="Seconds before the command is killed.")
@click.option(
    "--auto-deny",
    is_flag=True,
    default=False,
    help="Deny anything that needs approval instead of prompting.",
)
def exec_command(
    command: str,
    args: tuple[str, ...],
    config_dir: str | None,
    timeout: float | None,
    auto_deny: bool,
) -> None:
    """Run one command locally through the policy engine.

    Commands that need approval are shown in a prompt; answer y to run.

    Example:

      cmdgate exec ls -- -la /tmp
    """
    _configure_logging(os.environ.get("CMDGATE_LOG_LEVEL", "WARNING"))

    try:
        engine_cfg, service, audit = _build_service(_config_path(config_dir))
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if auto_deny:
        engine_cfg = engine_cfg.model_copy(update={"approval_mode": ApprovalMode.AUTO_DENY})

    try:
        result = asyncio.run(_exec_local(service, engine_cfg, command, list(args), timeout))
    except CommandError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        if audit:
            audit.close()

    click.echo(result.stdout, nl=False)
    if result.stderr:
        click.echo(result.stderr, nl=False, err=True)


async def _exec_local(service, engine_cfg: EngineConfig, command: str, args: list[str], timeout):
    """Execute with an in-process approver: the terminal prompt or auto-deny."""
    from cmdgate.events import CommandEvents
    from cmdgate.ui.terminal import TerminalUI

    ui = TerminalUI()
    decisions: list[asyncio.Task] = []

    async def _decide(pending) -> None:
        if engine_cfg.approval_mode == ApprovalMode.AUTO_DENY:
            service.deny_command(pending.id, "Auto-denied: no interactive approver")
        elif await ui.prompt_approval(pending):
            # The outcome also reaches execute() below through the pending entry
            await service.approve_command(pending.id)
        else:
            service.deny_command(pending.id, "Denied by operator")

    service.subscribe(
        CommandEvents.PENDING,
        lambda pending: decisions.append(asyncio.ensure_future(_decide(pending))),
    )
    try:
        return await service.execute(command, args, timeout=timeout, requested_by="cli")
    finally:
        # Approve failures are delivered to execute(); don't re-raise them here
        await asyncio.gather(*decisions, return_exceptions=True)


# -- Server client commands --


def _run_client(coro) -> None:
    """Run a client coroutine, mapping connection and remote errors to exit codes."""
    from cmdgate.client import RemoteCommandError

    try:
        asyncio.run(coro)
    except FileNotFoundError:
        click.echo("Error: socket not found. Is the server running?", err=True)
        sys.exit(1)
    except ConnectionRefusedError:
        click.echo("Error: connection refused. Is the server running?", err=True)
        sys.exit(1)
    except ConnectionError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except RemoteCommandError as e:
        click.echo(f"Error ({e.kind}): {e.message}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nDisconnected.", err=True)


@cli.command(context_settings={"ignore_unknown_options": True})
@click.argument("command")
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
@socket_option
@click.option("--timeout", type=float, default=None, help="Seconds before the command is killed.")
@click.option("--requested-by", default=None, help="Requester identity recorded with the command.")
def send(
    command: str,
    args: tuple[str, ...],
    socket_path: str | None,
    timeout: float | None,
    requested_by: str | None,
) -> None:
    """Submit a command to the running server and print its output.

    Blocks while the command waits for approval.

    Examples:

      cmdgate send ls -- -la

      cmdgate send --requested-by alice mv a.txt b.txt
    """
    _run_client(_send_command(_socket_path(socket_path), command, list(args), timeout, requested_by))


async def _send_command(socket_path, command, args, timeout, requested_by) -> None:
    from cmdgate.client import CommandClient
    from cmdgate.events import CommandEvents

    async with CommandClient(socket_path) as client:

        async def _announce_pending() -> None:
            async for event in client.events():
                data = event.get("data") or {}
                if (
                    event.get("event") == CommandEvents.PENDING
                    and data.get("command") == command
                    and data.get("args") == args
                    and data.get("requestedBy") == requested_by
                ):
                    click.echo(f"Waiting for approval: {data['id']}", err=True)

        watcher = asyncio.create_task(_announce_pending())
        try:
            result = await client.execute(command, args, timeout=timeout, requested_by=requested_by)
        finally:
            watcher.cancel()

    click.echo(result.get("stdout", ""), nl=False)
    if result.get("stderr"):
        click.echo(result["stderr"], nl=False, err=True)


@cli.command()
@socket_option
def pending(socket_path: str | None) -> None:
    """List commands waiting for approval."""

    async def _list() -> None:
        from cmdgate.client import CommandClient
        from cmdgate.ui.terminal import TerminalUI

        async with CommandClient(_socket_path(socket_path)) as client:
            TerminalUI().display_pending(await client.get_pending_commands())

    _run_client(_list())


@cli.command()
@click.argument("command_id")
@socket_option
def approve(command_id: str, socket_path: str | None) -> None:
    """Approve a pending command and show its output."""

    async def _approve() -> None:
        from cmdgate.client import CommandClient
        from cmdgate.ui.terminal import TerminalUI

        async with CommandClient(_socket_path(socket_path)) as client:
            result = await client.approve_command(command_id)
        TerminalUI().display_result(command_id, result)

    _run_client(_approve())


@cli.command()
@click.argument("command_id")
@click.option("--reason", default=None, help="Reason reported to the requester.")
@socket_option
def deny(command_id: str, reason: str | None, socket_path: str | None) -> None:
    """Deny a pending command."""

    async def _deny() -> None:
        from cmdgate.client import CommandClient

        async with CommandClient(_socket_path(socket_path)) as client:
            await client.deny_command(command_id, reason)
        click.echo(f"Denied {command_id}")

    _run_client(_deny())


@cli.command()
@socket_option
def watch(socket_path: str | None) -> None:
    """Stream lifecycle events from the server until interrupted."""

    async def _watch() -> None:
        from cmdgate.client import CommandClient
        from cmdgate.ui.terminal import TerminalUI

        ui = TerminalUI()
        async with CommandClient(_socket_path(socket_path)) as client:
            ui.display_info("Watching for command events. Press Ctrl-C to stop.")
            async for event in client.events():
                ui.display_event(event)

    _run_client(_watch())


if __name__ == "__main__":
    cli()
