"""YAML record and JSONL event-file helpers shared by the store, config and event bus."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Iterator

import yaml


def read_yaml_with_error(path: Path, default: dict[str, Any]) -> tuple[dict[str, Any], str | None]:
    """Read a YAML mapping, returning ``(data, error)``.

    A missing file is not an error. Unreadable or non-mapping content is
    reported instead of raised so callers decide whether it is corruption.
    """
    if not path.exists():
        return default, None
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except OSError as exc:
        return default, f"{path.name}: {exc.__class__.__name__}: {exc}"
    except yaml.YAMLError as exc:
        return default, f"{path.name}: YAMLError: {exc}"
    if data is None:
        return default, None
    if not isinstance(data, dict):
        return default, f"{path.name}: expected object, got {type(data).__name__}"
    return data, None


def read_yaml(path: Path, default: dict[str, Any]) -> dict[str, Any]:
    data, err = read_yaml_with_error(path, default)
    return default if err else data


def write_yaml_atomic(path: Path, data: dict[str, Any]) -> None:
    """Write *data* next to *path* and swap it in, so readers never see a partial record."""
    path.parent.mkdir(parents=True, exist_ok=True)
    staging = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    with open(staging, "w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, sort_keys=False, default_flow_style=False, allow_unicode=True)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(staging, path)


def append_jsonl(path: Path, record: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as handle:
        handle.write(json.dumps(record, ensure_ascii=False) + "\n")
        handle.flush()


def _iter_records(lines: list[str]) -> Iterator[dict[str, Any]]:
    for line in lines:
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(record, dict):
            yield record


def read_jsonl_tail(path: Path, limit: int) -> list[dict[str, Any]]:
    """The last *limit* objects of a JSONL file; malformed lines are skipped."""
    if limit < 1 or not path.exists():
        return []
    lines = path.read_text(encoding="utf-8").splitlines()
    return list(_iter_records(lines[-limit:]))
