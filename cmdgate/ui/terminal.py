"""Rich-based terminal output for the cmdgate CLI.

Renders command results, the whitelist and the pending queue, and
prompts the operator for approval decisions.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from cmdgate.config import SecurityLevel
from cmdgate.security.approval import PendingCommand
from cmdgate.security.whitelist import WhitelistEntry

_LEVEL_STYLES = {
    SecurityLevel.SAFE.value: "green",
    SecurityLevel.REQUIRES_APPROVAL.value: "yellow",
    SecurityLevel.FORBIDDEN.value: "red",
}


class TerminalUI:
    """Interactive terminal UI using Rich."""

    def __init__(self, console: Console | None = None) -> None:
        self._console = console or Console()

    def display_result(self, command: str, result: dict[str, Any]) -> None:
        """Show captured stdout/stderr of a finished command."""
        stdout = result.get("stdout", "")
        stderr = result.get("stderr", "")

        if not stdout and not stderr:
            text = Text("  ")
            text.append("✓", style="green")
            text.append(" ")
            text.append(command, style="bold")
            text.append(" (no output)", style="dim")
            self._console.print(text)
            return

        content = Text(stdout.rstrip("\n"))
        if stderr:
            content.append(f"\nstderr: {stderr.rstrip()}", style="dim red")
        self._console.print(
            Panel(
                content,
                title=f"[bold green]✓ {command}[/]",
                border_style="green",
                padding=(0, 1),
            )
        )

    def display_whitelist(self, entries: Sequence[WhitelistEntry | dict[str, Any]]) -> None:
        """Show the whitelist as a table, sorted by command name."""
        table = Table(title="Command whitelist", header_style="bold cyan")
        table.add_column("Command", style="bold")
        table.add_column("Level")
        table.add_column("Allowed args")
        table.add_column("Description", style="dim")

        rows = [e.to_dict() if isinstance(e, WhitelistEntry) else e for e in entries]
        for row in sorted(rows, key=lambda r: r["command"]):
            level = row["securityLevel"]
            allowed = row.get("allowedArgs")
            if allowed is None:
                allowed_text = Text("any", style="dim")
            else:
                allowed_text = Text(
                    " ".join(a if isinstance(a, str) else f"/{a['pattern']}/" for a in allowed)
                )
            table.add_row(
                Text(row["command"]),
                Text(level, style=_LEVEL_STYLES.get(level, "")),
                allowed_text,
                Text(row.get("description") or ""),
            )
        self._console.print(table)

    def display_pending(self, pending: Sequence[PendingCommand | dict[str, Any]]) -> None:
        """Show commands waiting for approval."""
        rows = [p.to_dict() if isinstance(p, PendingCommand) else p for p in pending]
        if not rows:
            self._console.print("[dim]No pending commands.[/]")
            return

        table = Table(title="Pending commands", header_style="bold yellow")
        table.add_column("ID", style="bold")
        table.add_column("Command")
        table.add_column("Requested at", style="dim")
        table.add_column("By", style="dim")
        for row in rows:
            table.add_row(
                row["id"],
                Text(" ".join([row["command"], *row.get("args", [])])),
                row.get("requestedAt") or "",
                row.get("requestedBy") or "",
            )
        self._console.print(table)

    def display_event(self, event: dict[str, Any]) -> None:
        """Show a lifecycle event streamed from the server."""
        name = event.get("event", "?")
        data = event.get("data") or {}
        text = Text("  ")
        text.append(name, style="bold magenta")
        text.append("  ")
        if "command" in data:
            text.append(" ".join([data["command"], *data.get("args", [])]))
            text.append(f"  id={data.get('id')}", style="dim")
        else:
            text.append(f"id={data.get('command_id')}", style="dim")
            if data.get("reason"):
                text.append(f"  reason={data['reason']}")
            if data.get("error"):
                text.append(f"  error={data['error']}", style="red")
        self._console.print(text)

    def display_error(self, message: str) -> None:
        """Display an error message."""
        text = Text()
        text.append("Error: ", style="bold red")
        text.append(message)
        self._console.print(text)

    def display_info(self, message: str) -> None:
        """Display an informational message."""
        self._console.print(Text(message, style="dim"))

    async def prompt_approval(self, pending: PendingCommand) -> bool:
        """Ask the operator whether a pending command may run.

        Returns:
            True if approved, False if denied or no input is available.
        """
        detail = Text()
        detail.append("Command: ", style="bold yellow")
        detail.append(pending.command)
        detail.append("\nArguments: ", style="bold yellow")
        detail.append(" ".join(pending.args) if pending.args else "(none)")
        if pending.requested_by:
            detail.append("\nRequested by: ", style="bold yellow")
            detail.append(pending.requested_by)

        self._console.print(
            Panel(detail, title="[bold red]Approval Required[/]", border_style="red")
        )

        # Run the blocking input() in a thread so we don't block the event loop
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(
                None,
                lambda: input("Approve this command? [y/N]: ").strip().lower(),
            )
        except (EOFError, KeyboardInterrupt):
            self._console.print("[red]Approval denied (no input).[/]")
            return False

        approved = response in ("y", "yes")
        if approved:
            self._console.print("[green]Approved.[/]")
        else:
            self._console.print("[red]Denied.[/]")
        return approved
