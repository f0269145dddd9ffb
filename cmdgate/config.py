"""Configuration loading and validation using Pydantic models.

Loads engine settings and the command whitelist from YAML files in a
config directory. All config models use Pydantic v2 for strict validation.
"""

from __future__ import annotations

import re
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator


class SecurityLevel(str, Enum):
    """Classification of a whitelisted command."""

    SAFE = "safe"
    REQUIRES_APPROVAL = "requires_approval"
    FORBIDDEN = "forbidden"


class ApprovalMode(str, Enum):
    """How the one-shot CLI resolves commands that need approval."""

    INTERACTIVE = "interactive"
    AUTO_DENY = "auto_deny"


class EngineConfig(BaseModel):
    """Engine behavior configuration loaded from engine.yaml."""

    default_timeout: float = Field(default=30.0, gt=0, le=3600)
    default_deny_reason: str = "Command denied"
    audit_log_path: str | None = "./logs/audit.jsonl"
    socket_path: str = "/run/cmdgate/cmdgate.sock"
    approval_mode: ApprovalMode = ApprovalMode.INTERACTIVE


class ArgPattern(BaseModel):
    """A regular-expression argument matcher, written as ``{pattern: ...}``."""

    pattern: str

    @field_validator("pattern")
    @classmethod
    def must_compile(cls, v: str) -> str:
        """Reject patterns Python's re module cannot compile."""
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"invalid regular expression {v!r}: {e}") from e
        return v


class WhitelistEntryConfig(BaseModel):
    """A single whitelist entry in its wire/config shape.

    Accepts both the camelCase wire names (``securityLevel``,
    ``allowedArgs``) and the snake_case field names.
    """

    model_config = ConfigDict(populate_by_name=True)

    command: str = Field(min_length=1)
    security_level: SecurityLevel = Field(alias="securityLevel")
    allowed_args: list[str | ArgPattern] | None = Field(default=None, alias="allowedArgs")
    description: str | None = None


class WhitelistConfig(BaseModel):
    """Command policy loaded from whitelist.yaml."""

    include_defaults: bool = True
    commands: list[WhitelistEntryConfig] = Field(default_factory=list)


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load and parse a YAML file, returning an empty dict if missing."""
    if not path.exists():
        return {}
    with open(path) as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else {}


def load_engine_config(config_dir: Path) -> EngineConfig:
    """Load engine configuration from config_dir/engine.yaml."""
    data = _load_yaml(config_dir / "engine.yaml")
    return EngineConfig(**data)


def load_whitelist_config(config_dir: Path) -> WhitelistConfig:
    """Load the command policy from config_dir/whitelist.yaml."""
    data = _load_yaml(config_dir / "whitelist.yaml")
    return WhitelistConfig(**data)


def load_all_config(config_dir: str | Path) -> tuple[EngineConfig, WhitelistConfig]:
    """Load all configuration files from the given directory.

    Args:
        config_dir: Path to the configuration directory.

    Returns:
        Tuple of (EngineConfig, WhitelistConfig).

    Raises:
        FileNotFoundError: If config_dir does not exist.
        pydantic.ValidationError: If any config file has invalid content.
    """
    config_path = Path(config_dir)
    if not config_path.is_dir():
        raise FileNotFoundError(f"Configuration directory not found: {config_path}")

    engine_cfg = load_engine_config(config_path)
    whitelist_cfg = load_whitelist_config(config_path)

    return engine_cfg, whitelist_cfg
