"""Command classification against the whitelist.

Resolves a command to its base name, looks it up in the registry, and
checks arguments against the entry's positional matchers.

NOTE: Identity is by basename only. ``/usr/bin/rm`` and ``/opt/x/rm``
share one policy entry; distinct binaries with the same name cannot be
told apart here.

No shell-metacharacter filtering happens at this layer. Arguments are
made inert by the executor, which never hands them to a shell.
"""

from __future__ import annotations

from collections.abc import Sequence

import structlog

from cmdgate.config import SecurityLevel
from cmdgate.errors import ForbiddenCommand, UnauthorizedCommand
from cmdgate.security.whitelist import ArgMatcher, WhitelistRegistry

logger = structlog.get_logger()


def base_command_name(command: str) -> str:
    """Return the final path segment of a command, or the command itself if empty."""
    return command.split("/")[-1] or command


def arguments_match(args: Sequence[str], matchers: Sequence[ArgMatcher]) -> bool:
    """Check every argument against the matcher at the same position.

    Strings must match exactly; patterns must find a match anywhere in
    the argument. More arguments than matchers is a mismatch.
    """
    if len(args) > len(matchers):
        return False
    for arg, matcher in zip(args, matchers):
        if isinstance(matcher, str):
            if arg != matcher:
                return False
        elif matcher.search(arg) is None:
            return False
    return True


def classify(
    command: str,
    args: Sequence[str],
    registry: WhitelistRegistry,
) -> SecurityLevel | None:
    """Classify a command and its arguments.

    Args:
        command: The command name or path.
        args: The argument vector, excluding the command.
        registry: The whitelist to consult.

    Returns:
        The effective security level, or None if the command is not
        whitelisted. A failed argument check yields REQUIRES_APPROVAL
        whatever the entry's configured level.
    """
    entry = registry.get(base_command_name(command))
    if entry is None:
        return None

    # Forbidden short-circuits; matchers are never consulted
    if entry.level is SecurityLevel.FORBIDDEN:
        return SecurityLevel.FORBIDDEN

    if entry.allowed_args and not arguments_match(args, entry.allowed_args):
        logger.info(
            "argument_mismatch",
            command=command,
            configured=entry.level.value,
            effective=SecurityLevel.REQUIRES_APPROVAL.value,
        )
        return SecurityLevel.REQUIRES_APPROVAL

    return entry.level


def check_command(
    command: str,
    args: Sequence[str],
    registry: WhitelistRegistry,
) -> SecurityLevel:
    """Classify a command, raising on rejection.

    Returns:
        SAFE or REQUIRES_APPROVAL.

    Raises:
        UnauthorizedCommand: If the command is not whitelisted.
        ForbiddenCommand: If the command is explicitly blocked.
    """
    level = classify(command, args, registry)
    if level is None:
        logger.warning("command_not_whitelisted", command=command)
        raise UnauthorizedCommand(command)
    if level is SecurityLevel.FORBIDDEN:
        logger.warning("command_forbidden", command=command)
        raise ForbiddenCommand(command)
    return level
