"""Policy-gated host command execution with a human approval queue."""

from __future__ import annotations

__version__ = "0.3.0"
