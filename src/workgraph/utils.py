"""Provide utility helpers for timestamps, identifiers and rule fingerprints."""

from __future__ import annotations

import hashlib
import re
import uuid
from datetime import datetime, timezone
from typing import Iterable

from .constants import NODE_ID_PREFIX, ROOT_NODE_ID

_NODE_ID_RE = re.compile(rf"^(?:{ROOT_NODE_ID}|{NODE_ID_PREFIX}-[0-9a-f]+)$")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _now_millis() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def _generate_id(prefix: str) -> str:
    """Short human-friendly identifier: ``<prefix>-<8hex>``."""
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


def _compact_timestamp() -> str:
    """Branch-safe UTC timestamp, e.g. ``20260118-142501``."""
    return datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")


def looks_like_node_id(value: str) -> bool:
    """True when *value* has the shape of a node identifier."""
    return bool(_NODE_ID_RE.match(value or ""))


def rules_fingerprint(rules: Iterable[str]) -> str:
    """Return the 8-hex fingerprint of *rules*, or ``""`` when there are none."""
    items = list(rules)
    if not items:
        return ""
    digest = hashlib.md5("\n".join(items).encode("utf-8")).hexdigest()
    return digest[:8]
