"""Command whitelist: the mutable policy store.

Maps a command name to its security level and optional per-position
argument matchers. Lives only for the process lifetime; nothing here
is persisted.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from typing import Any, Union

import structlog

from cmdgate.config import ArgPattern, SecurityLevel, WhitelistConfig, WhitelistEntryConfig

logger = structlog.get_logger()

# An exact-string matcher or a compiled pattern matcher
ArgMatcher = Union[str, re.Pattern[str]]


@dataclass(frozen=True)
class WhitelistEntry:
    """Policy for one command name."""

    command: str
    level: SecurityLevel
    allowed_args: tuple[ArgMatcher, ...] | None = None
    description: str | None = None

    @classmethod
    def from_config(cls, cfg: WhitelistEntryConfig) -> WhitelistEntry:
        """Build an entry from its validated config model, compiling patterns."""
        matchers: tuple[ArgMatcher, ...] | None = None
        if cfg.allowed_args is not None:
            matchers = tuple(
                re.compile(a.pattern) if isinstance(a, ArgPattern) else a
                for a in cfg.allowed_args
            )
        return cls(
            command=cfg.command,
            level=cfg.security_level,
            allowed_args=matchers,
            description=cfg.description,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> WhitelistEntry:
        """Parse the wire shape ``{command, securityLevel, allowedArgs?, description?}``.

        Raises:
            pydantic.ValidationError: If the mapping is malformed.
        """
        return cls.from_config(WhitelistEntryConfig.model_validate(dict(data)))

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire shape. Patterns serialize as ``{"pattern": ...}``."""
        result: dict[str, Any] = {
            "command": self.command,
            "securityLevel": self.level.value,
        }
        if self.allowed_args is not None:
            result["allowedArgs"] = [
                a if isinstance(a, str) else {"pattern": a.pattern}
                for a in self.allowed_args
            ]
        if self.description is not None:
            result["description"] = self.description
        return result


def _entries(level: SecurityLevel, commands: dict[str, str]) -> list[WhitelistEntry]:
    return [WhitelistEntry(name, level, description=desc) for name, desc in commands.items()]


DEFAULT_WHITELIST: tuple[WhitelistEntry, ...] = tuple(
    _entries(SecurityLevel.SAFE, {
        "ls": "List directory contents",
        "pwd": "Print working directory",
        "echo": "Print text to standard output",
        "cat": "Concatenate and print files",
        "grep": "Search for patterns in files",
        "find": "Find files in a directory hierarchy",
        "cd": "Change directory",
        "head": "Output the first part of files",
        "tail": "Output the last part of files",
        "wc": "Print newline, word, and byte counts",
    })
    + _entries(SecurityLevel.REQUIRES_APPROVAL, {
        "mv": "Move (rename) files",
        "cp": "Copy files and directories",
        "mkdir": "Create directories",
        "touch": "Change file timestamps or create empty files",
        "chmod": "Change file mode bits",
        "chown": "Change file owner and group",
    })
    + _entries(SecurityLevel.FORBIDDEN, {
        "rm": "Remove files or directories",
        "sudo": "Execute a command as another user",
    })
)


class WhitelistRegistry:
    """Thread-safe map of command name to WhitelistEntry.

    Entries are immutable; every write swaps a whole entry under the
    lock, so readers never observe a half-applied update.
    """

    def __init__(self, entries: Iterable[WhitelistEntry] = ()) -> None:
        self._entries: dict[str, WhitelistEntry] = {}
        self._lock = threading.RLock()
        for entry in entries:
            self._entries[entry.command] = entry

    @classmethod
    def with_defaults(cls) -> WhitelistRegistry:
        """Create a registry holding the default policy set."""
        return cls(DEFAULT_WHITELIST)

    def add(self, entry: WhitelistEntry) -> None:
        """Insert or overwrite the entry for ``entry.command``."""
        with self._lock:
            self._entries[entry.command] = entry
        logger.debug("whitelist_entry_added", command=entry.command, level=entry.level.value)

    def remove(self, command: str) -> None:
        """Remove an entry. Unknown names are ignored."""
        with self._lock:
            removed = self._entries.pop(command, None)
        if removed is not None:
            logger.debug("whitelist_entry_removed", command=command)

    def update_level(self, command: str, level: SecurityLevel) -> None:
        """Change only the level of an existing entry. Unknown names are ignored."""
        with self._lock:
            entry = self._entries.get(command)
            if entry is None:
                return
            self._entries[command] = replace(entry, level=level)
        logger.debug("whitelist_level_updated", command=command, level=level.value)

    def get(self, command: str) -> WhitelistEntry | None:
        """Look up the entry for an exact command name."""
        with self._lock:
            return self._entries.get(command)

    def list(self) -> list[WhitelistEntry]:
        """Return a snapshot of all entries."""
        with self._lock:
            return list(self._entries.values())

    def __contains__(self, command: object) -> bool:
        with self._lock:
            return command in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def build_registry(cfg: WhitelistConfig) -> WhitelistRegistry:
    """Build a registry from config: defaults first, then configured entries on top."""
    registry = WhitelistRegistry.with_defaults() if cfg.include_defaults else WhitelistRegistry()
    for entry_cfg in cfg.commands:
        registry.add(WhitelistEntry.from_config(entry_cfg))
    logger.info("whitelist_loaded", entries=len(registry), defaults=cfg.include_defaults)
    return registry
