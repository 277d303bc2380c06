"""Load optional engine configuration from `.workgraph/config.yaml`."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from .constants import (
    CONFIG_FILE,
    DEFAULT_DISPATCH_MAX_RETRIES,
    DEFAULT_DISPATCH_MODE,
    DEFAULT_DISPATCH_TIMEOUT_MS,
    DEFAULT_MAX_LOG_ENTRIES,
    VALID_DISPATCH_MODES,
)
from .io_utils import read_yaml_with_error


def load_engine_config(state_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Read `<state_dir>/config.yaml`.

    Args:
        state_dir: The `.workgraph/` state directory.

    Returns:
        `(config, error_message)`; an absent or empty file yields `({}, None)`
        and an unreadable one yields `({}, reason)`.
    """
    data, err = read_yaml_with_error(state_dir / CONFIG_FILE, {})
    return ({}, err) if err else (data, None)


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _positive_int(raw: Any, default: int) -> int:
    if isinstance(raw, bool) or not isinstance(raw, int) or raw < 1:
        return default
    return raw


def get_default_dispatch_mode(config: dict[str, Any]) -> str:
    """Return the configured default dispatch mode (`none`, `git` or `no-git`)."""
    raw = _get_nested(config, "dispatch", "default_mode")
    if isinstance(raw, str) and raw in VALID_DISPATCH_MODES:
        return raw
    return DEFAULT_DISPATCH_MODE


def get_dispatch_config(config: dict[str, Any]) -> dict[str, Any]:
    """Extract dispatch settings, filling defaults for missing or invalid values.

    Args:
        config: Engine configuration dictionary.

    Returns:
        A mapping with `default_mode` and a `limits` block
        (`timeout_ms`, `max_retries`).
    """
    return {
        "default_mode": get_default_dispatch_mode(config),
        "limits": {
            "timeout_ms": _positive_int(
                _get_nested(config, "dispatch", "limits", "timeout_ms"), DEFAULT_DISPATCH_TIMEOUT_MS
            ),
            "max_retries": _positive_int(
                _get_nested(config, "dispatch", "limits", "max_retries"), DEFAULT_DISPATCH_MAX_RETRIES
            ),
        },
    }


def get_context_config(config: dict[str, Any]) -> dict[str, Any]:
    return {
        "max_log_entries": _positive_int(
            _get_nested(config, "context", "max_log_entries"), DEFAULT_MAX_LOG_ENTRIES
        ),
    }


def get_logging_config(config: dict[str, Any]) -> dict[str, Any]:
    """Extract logging settings (`level`, optional `file`)."""
    level = _get_nested(config, "logging", "level")
    log_file = _get_nested(config, "logging", "file")
    return {
        "level": level.upper() if isinstance(level, str) and level.strip() else "INFO",
        "file": log_file if isinstance(log_file, str) and log_file.strip() else None,
    }
