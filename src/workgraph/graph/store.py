"""File-based graph store with per-workspace exclusive access.

Each workspace is one YAML record at ``workspaces/<id>/graph.yaml`` inside
the ``.workgraph/`` state directory, plus an entry in ``index.yaml``.  All
mutations go through :meth:`GraphStore.transaction`, which holds a
per-workspace thread lock and a :class:`filelock.FileLock` for the whole
read-modify-write cycle.
"""

from __future__ import annotations

import re
import shutil
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from filelock import FileLock, Timeout
from loguru import logger

from ..constants import (
    GRAPH_FILE,
    INDEX_FILE,
    LOCK_FILE,
    LOCK_TIMEOUT_SECONDS,
    WORKSPACES_DIR,
)
from ..errors import CorruptionError, PreconditionFailedError, node_not_found, workspace_not_found
from ..io_utils import read_yaml_with_error, write_yaml_atomic
from ..utils import _now_iso
from .model import GraphSnapshot, Node, WorkspaceStatus, validate_snapshot_dict


_WORKSPACE_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class _WorkspaceLocks:
    """Registry of re-entrant locks, one per workspace id."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def get(self, workspace_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(workspace_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[workspace_id] = lock
            return lock

    def discard(self, workspace_id: str) -> None:
        with self._guard:
            self._locks.pop(workspace_id, None)


class GraphStore:
    """Durable mapping from workspace id to its :class:`GraphSnapshot`.

    Parameters
    ----------
    state_dir:
        Path to the ``.workgraph/`` directory.
    """

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = state_dir
        state_dir.mkdir(parents=True, exist_ok=True)
        self._index_path = state_dir / INDEX_FILE
        self._index_lock = FileLock(str(state_dir / "index.lock"), timeout=LOCK_TIMEOUT_SECONDS)
        self._thread_locks = _WorkspaceLocks()
        self._file_locks: dict[str, FileLock] = {}
        self._file_locks_guard = threading.Lock()

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    # -- paths & locks ------------------------------------------------------

    def _workspace_dir(self, workspace_id: str) -> Path:
        if not _WORKSPACE_ID_RE.match(workspace_id or ""):
            raise workspace_not_found(workspace_id)
        return self._state_dir / WORKSPACES_DIR / workspace_id

    def _graph_path(self, workspace_id: str) -> Path:
        return self._workspace_dir(workspace_id) / GRAPH_FILE

    def _file_lock(self, workspace_id: str) -> FileLock:
        with self._file_locks_guard:
            lock = self._file_locks.get(workspace_id)
            if lock is None:
                lock_path = self._workspace_dir(workspace_id) / LOCK_FILE
                lock_path.parent.mkdir(parents=True, exist_ok=True)
                lock = FileLock(str(lock_path), timeout=LOCK_TIMEOUT_SECONDS)
                self._file_locks[workspace_id] = lock
            return lock

    @contextmanager
    def exclusive(self, workspace_id: str) -> Iterator[None]:
        """Hold the workspace's exclusive-access token (thread + file lock)."""
        with self._thread_locks.get(workspace_id):
            lock = self._file_lock(workspace_id)
            try:
                lock.acquire()
            except Timeout:
                raise PreconditionFailedError(
                    "WORKSPACE_BUSY",
                    f"Workspace '{workspace_id}' is locked by another process",
                ) from None
            try:
                yield
            finally:
                lock.release()

    # -- index --------------------------------------------------------------

    def _read_index(self) -> dict[str, Any]:
        data, err = read_yaml_with_error(self._index_path, {"version": 1, "workspaces": {}})
        if err:
            raise CorruptionError("GRAPH_CORRUPTED", f"Workspace index is unreadable: {err}")
        if not isinstance(data.get("workspaces"), dict):
            data["workspaces"] = {}
        return data

    def _update_index(self, workspace_id: str, entry: Optional[dict[str, Any]]) -> None:
        with self._index_lock:
            index = self._read_index()
            if entry is None:
                index["workspaces"].pop(workspace_id, None)
            else:
                index["workspaces"][workspace_id] = entry
            write_yaml_atomic(self._index_path, index)

    def _mark_error(self, workspace_id: str, reason: str) -> None:
        with self._index_lock:
            index = self._read_index()
            entry = dict(index["workspaces"].get(workspace_id) or {})
            entry["status"] = WorkspaceStatus.ERROR.value
            entry["error"] = reason
            entry["updated_at"] = _now_iso()
            index["workspaces"][workspace_id] = entry
            write_yaml_atomic(self._index_path, index)

    def list_index(self) -> list[dict[str, Any]]:
        """Return index entries (``id`` included) in insertion order."""
        with self._index_lock:
            index = self._read_index()
        return [dict(entry, id=ws_id) for ws_id, entry in index["workspaces"].items()]

    def exists(self, workspace_id: str) -> bool:
        return self._graph_path(workspace_id).exists()

    # -- load / save --------------------------------------------------------

    def load(self, workspace_id: str) -> GraphSnapshot:
        """Read and structurally validate one workspace record.

        Raises:
            NotFoundError: the workspace has no record.
            CorruptionError: the record cannot be parsed or fails validation;
                the index entry is marked ``error`` and the file is left as is.
        """
        path = self._graph_path(workspace_id)
        if not path.exists():
            raise workspace_not_found(workspace_id)
        data, err = read_yaml_with_error(path, {})
        problems = [err] if err else validate_snapshot_dict(data)
        if problems:
            raise self._corrupted(workspace_id, problems)
        try:
            return GraphSnapshot.from_dict(data)
        except (TypeError, AttributeError, ValueError) as exc:
            raise self._corrupted(workspace_id, [f"{exc.__class__.__name__}: {exc}"]) from exc

    def _corrupted(self, workspace_id: str, problems: list[str]) -> CorruptionError:
        reason = "; ".join(problems[:5])
        logger.error("Workspace {} failed validation: {}", workspace_id, reason)
        self._mark_error(workspace_id, reason)
        return CorruptionError(
            "GRAPH_CORRUPTED",
            f"Workspace '{workspace_id}' failed structural validation: {reason}",
            {"problems": problems},
        )

    def save(self, workspace_id: str, snapshot: GraphSnapshot) -> None:
        """Atomically persist *snapshot* and refresh its index entry."""
        write_yaml_atomic(self._graph_path(workspace_id), snapshot.to_dict())
        ws = snapshot.workspace
        self._update_index(
            workspace_id,
            {
                "name": ws.name,
                "status": ws.status.value,
                "project_root": ws.project_root,
                "created_at": ws.created_at,
                "updated_at": ws.updated_at,
            },
        )

    def create(self, snapshot: GraphSnapshot) -> None:
        workspace_id = snapshot.workspace.id
        with self.exclusive(workspace_id):
            if self.exists(workspace_id):
                raise ValueError(f"Workspace {workspace_id} already exists")
            self.save(workspace_id, snapshot)

    def delete(self, workspace_id: str) -> None:
        with self.exclusive(workspace_id):
            if not self.exists(workspace_id):
                raise workspace_not_found(workspace_id)
            graph_path = self._graph_path(workspace_id)
            graph_path.unlink()
            self._update_index(workspace_id, None)
        shutil.rmtree(self._workspace_dir(workspace_id), ignore_errors=True)
        self._thread_locks.discard(workspace_id)
        with self._file_locks_guard:
            self._file_locks.pop(workspace_id, None)

    # -- public API ---------------------------------------------------------

    @contextmanager
    def transaction(self, workspace_id: str) -> Iterator[GraphTx]:
        """Acquire the workspace lock, load, yield a transaction, save on exit.

        The record is written only when the block exits normally and the
        transaction was marked dirty, so a failed operation leaves the
        persisted graph untouched::

            with store.transaction(ws_id) as tx:
                node = tx.node("node-abc12345")
                node.note = "updated"
                tx.dirty = True
        """
        if not self.exists(workspace_id):
            raise workspace_not_found(workspace_id)
        with self.exclusive(workspace_id):
            snapshot = self.load(workspace_id)
            tx = GraphTx(snapshot)
            yield tx
            if tx.dirty:
                self.save(workspace_id, tx.snapshot)

    def read_snapshot(self, workspace_id: str) -> GraphSnapshot:
        """Return a read-only snapshot (no lock held after return)."""
        if not self.exists(workspace_id):
            raise workspace_not_found(workspace_id)
        with self.exclusive(workspace_id):
            return self.load(workspace_id)


class GraphTx:
    """In-memory transaction over one workspace snapshot."""

    def __init__(self, snapshot: GraphSnapshot) -> None:
        self.snapshot = snapshot
        self.dirty = False
        # change notifications, published by the engine once the save succeeded
        self.pending_events: list[dict[str, Any]] = []

    @property
    def workspace(self):
        return self.snapshot.workspace

    @property
    def nodes(self) -> dict[str, Node]:
        return self.snapshot.nodes

    # -- lookups ------------------------------------------------------------

    def get(self, node_id: str) -> Optional[Node]:
        return self.snapshot.nodes.get(node_id)

    def node(self, node_id: str) -> Node:
        node = self.snapshot.nodes.get(node_id)
        if node is None:
            raise node_not_found(node_id)
        return node

    def children_of(self, node: Node) -> list[Node]:
        return [self.snapshot.nodes[c] for c in node.children if c in self.snapshot.nodes]

    def siblings_of(self, node: Node) -> list[Node]:
        if node.parent_id is None:
            return []
        parent = self.snapshot.nodes.get(node.parent_id)
        if parent is None:
            return []
        return [n for n in self.children_of(parent) if n.id != node.id]

    def ancestors_of(self, node: Node) -> list[Node]:
        """Ancestors nearest-first (parent, grandparent, ..., root)."""
        out: list[Node] = []
        cur = self.snapshot.nodes.get(node.parent_id) if node.parent_id else None
        while cur is not None:
            out.append(cur)
            cur = self.snapshot.nodes.get(cur.parent_id) if cur.parent_id else None
        return out

    def subtree_ids(self, node_id: str) -> list[str]:
        """*node_id* and all of its descendants, parents before children."""
        out: list[str] = []
        stack = [node_id]
        while stack:
            cur = stack.pop()
            out.append(cur)
            node = self.snapshot.nodes.get(cur)
            if node is not None:
                stack.extend(reversed(node.children))
        return out

    # -- mutations ----------------------------------------------------------

    def add(self, node: Node) -> Node:
        if node.id in self.snapshot.nodes:
            raise ValueError(f"Node {node.id} already exists")
        self.snapshot.nodes[node.id] = node
        self.dirty = True
        return node

    def hard_remove(self, node_id: str) -> bool:
        """Physically remove a node record (children are not touched)."""
        removed = self.snapshot.nodes.pop(node_id, None)
        if removed is None:
            return False
        self.dirty = True
        return True
