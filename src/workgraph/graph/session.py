"""Ephemeral session bindings.

A binding maps an external conversation/session id to ``(workspace_id,
node_id)``.  It only caches ``workspace.current_focus``; the workspace
record stays the authority, and bindings are not part of any graph
transaction.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from filelock import FileLock

from ..constants import LOCK_TIMEOUT_SECONDS, SESSIONS_FILE
from ..io_utils import read_yaml, write_yaml_atomic
from ..utils import _now_iso


class SessionBindings:
    def __init__(self, state_dir: Path) -> None:
        self._path = state_dir / SESSIONS_FILE
        self._lock = FileLock(str(state_dir / "sessions.lock"), timeout=LOCK_TIMEOUT_SECONDS)

    def _read(self) -> dict[str, dict[str, Any]]:
        data = read_yaml(self._path, {})
        bindings = data.get("bindings")
        return bindings if isinstance(bindings, dict) else {}

    def _write(self, bindings: dict[str, dict[str, Any]]) -> None:
        write_yaml_atomic(self._path, {"bindings": bindings})

    def bind(self, session_id: str, workspace_id: str, node_id: Optional[str]) -> dict[str, Any]:
        with self._lock:
            bindings = self._read()
            binding = {
                "workspace_id": workspace_id,
                "node_id": node_id,
                "bound_at": _now_iso(),
            }
            bindings[session_id] = binding
            self._write(bindings)
        return dict(binding, session_id=session_id)

    def unbind(self, session_id: str) -> bool:
        with self._lock:
            bindings = self._read()
            if bindings.pop(session_id, None) is None:
                return False
            self._write(bindings)
        return True

    def get(self, session_id: str) -> Optional[dict[str, Any]]:
        with self._lock:
            binding = self._read().get(session_id)
        return dict(binding, session_id=session_id) if binding else None

    def refresh_focus(self, workspace_id: str, node_id: Optional[str]) -> int:
        """Point every binding of *workspace_id* at *node_id*; returns how many changed."""
        with self._lock:
            bindings = self._read()
            changed = 0
            for binding in bindings.values():
                if binding.get("workspace_id") == workspace_id and binding.get("node_id") != node_id:
                    binding["node_id"] = node_id
                    changed += 1
            if changed:
                self._write(bindings)
        return changed

    def drop_workspace(self, workspace_id: str) -> int:
        with self._lock:
            bindings = self._read()
            kept = {k: v for k, v in bindings.items() if v.get("workspace_id") != workspace_id}
            dropped = len(bindings) - len(kept)
            if dropped:
                self._write(kept)
        return dropped
