"""Security layer: whitelist, classification, approval queue, audit logging."""

from __future__ import annotations

from cmdgate.security.approval import ApprovalQueue, PendingCommand
from cmdgate.security.audit import AuditLogger
from cmdgate.security.validator import base_command_name, check_command, classify
from cmdgate.security.whitelist import (
    DEFAULT_WHITELIST,
    WhitelistEntry,
    WhitelistRegistry,
    build_registry,
)

__all__ = [
    "DEFAULT_WHITELIST",
    "ApprovalQueue",
    "AuditLogger",
    "PendingCommand",
    "WhitelistEntry",
    "WhitelistRegistry",
    "base_command_name",
    "build_registry",
    "check_command",
    "classify",
]
