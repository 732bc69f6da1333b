"""Shared stepflow configuration utilities.

Centralises reading of ~/.stepflow/configuration.json so that the CLI,
the compiler and the execution engine share one implementation.
Environment variables override values from the file.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

STEPFLOW_CONFIG_FILE = Path.home() / ".stepflow" / "configuration.json"

UNRESOLVED_POLICIES = ("warn", "ignore", "error")

DEFAULT_PREVIEW_MAX_CHARS = 200
DEFAULT_REDACT_KEYS = ("password", "token", "secret", "authorization")


def get_stepflow_config() -> dict[str, Any]:
    """Load stepflow configuration from ~/.stepflow/configuration.json."""
    if not STEPFLOW_CONFIG_FILE.exists():
        return {}
    try:
        with open(STEPFLOW_CONFIG_FILE, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_log_level() -> str:
    """Return the log level, preferring STEPFLOW_LOG_LEVEL over the config file."""
    env_level = os.environ.get("STEPFLOW_LOG_LEVEL")
    if env_level:
        return env_level.upper()
    return str(get_stepflow_config().get("logging", {}).get("level", "INFO")).upper()


def get_log_format() -> str:
    """Return "json", "human" or "auto"."""
    env_format = os.environ.get("LOG_FORMAT")
    if env_format:
        return env_format.lower()
    return str(get_stepflow_config().get("logging", {}).get("format", "auto")).lower()


def get_unresolved_policy() -> str:
    """Return the compile-time policy for unresolved template references."""
    policy = os.environ.get("STEPFLOW_UNRESOLVED_REFERENCES") or get_stepflow_config().get(
        "compiler", {}
    ).get("unresolved_references", "warn")
    policy = str(policy).lower()
    return policy if policy in UNRESOLVED_POLICIES else "warn"


def get_preview_max_chars() -> int:
    """Return the maximum length of data previews in events and logs."""
    value = get_stepflow_config().get("engine", {}).get("preview_max_chars")
    return value if isinstance(value, int) and value > 0 else DEFAULT_PREVIEW_MAX_CHARS


def get_redact_keys() -> list[str]:
    """Return the (lowercase) key fragments whose values are masked in previews."""
    keys = get_stepflow_config().get("engine", {}).get("redact_keys")
    if isinstance(keys, list) and keys:
        return [str(k).lower() for k in keys]
    return list(DEFAULT_REDACT_KEYS)


# ---------------------------------------------------------------------------
# EngineConfig - shared by the compiler, the engine and the CLI
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Compiler/engine configuration loaded from ~/.stepflow/configuration.json."""

    unresolved_references: str = field(default_factory=get_unresolved_policy)
    preview_max_chars: int = field(default_factory=get_preview_max_chars)
    redact_keys: list[str] = field(default_factory=get_redact_keys)

    def __post_init__(self) -> None:
        if self.unresolved_references not in UNRESOLVED_POLICIES:
            raise ValueError(
                f"unresolved_references must be one of {UNRESOLVED_POLICIES}, "
                f"got '{self.unresolved_references}'"
            )
