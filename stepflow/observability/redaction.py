"""Redacted, truncated previews of step data for events and logs."""

import json
from collections.abc import Iterable
from typing import Any

from stepflow.config import DEFAULT_PREVIEW_MAX_CHARS, DEFAULT_REDACT_KEYS

REDACTED = "***"


def _is_sensitive(key: str, redact_keys: Iterable[str]) -> bool:
    lowered = key.lower()
    return any(fragment in lowered for fragment in redact_keys)


def redact(value: Any, redact_keys: Iterable[str] = DEFAULT_REDACT_KEYS) -> Any:
    """
    Return a copy of value with every sensitive mapping entry masked.

    A key is sensitive when it contains one of redact_keys (case-insensitive).
    Lists and nested dicts are walked; other values are returned unchanged.
    """
    keys = tuple(k.lower() for k in redact_keys)
    if isinstance(value, dict):
        return {
            k: REDACTED if _is_sensitive(str(k), keys) else redact(v, keys)
            for k, v in value.items()
        }
    if isinstance(value, list | tuple):
        return [redact(v, keys) for v in value]
    return value


def preview_value(
    value: Any,
    max_chars: int = DEFAULT_PREVIEW_MAX_CHARS,
    redact_keys: Iterable[str] = DEFAULT_REDACT_KEYS,
) -> str:
    """Render value as redacted JSON text, truncated to max_chars."""
    masked = redact(value, redact_keys)
    if isinstance(masked, str):
        text = masked
    else:
        try:
            text = json.dumps(masked, default=str, sort_keys=True)
        except (TypeError, ValueError):
            text = repr(masked)
    if len(text) > max_chars:
        return text[:max_chars] + "..."
    return text
