"""Reference ledger: lifecycle of links from a node to nodes, memos or documents.

References form a flat edge list on the source node, so two nodes may
reference each other without affecting tree ownership.  Memo targets are
written ``memo://<memo-id>`` and must name an existing memo.  Expire/activate are
reversible and keep the reference for audit; ``remove`` is permanent.
Document paths are never checked against the filesystem.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional, Union

from ..constants import MEMO_REFERENCE_SCHEME
from ..errors import NotFoundError, PreconditionFailedError, memo_not_found, node_not_found
from ..utils import _now_iso, looks_like_node_id
from .journal import append_log, append_workspace_log
from .model import Actor, Node, Reference, ReferenceStatus, TargetKind, find_reference, parse_enum
from .store import GraphTx


class ReferenceAction(str, Enum):
    ADD = "add"
    REMOVE = "remove"
    EXPIRE = "expire"
    ACTIVATE = "activate"


def _reference_not_found(owner: str, target: str, status: Optional[ReferenceStatus] = None) -> NotFoundError:
    qualifier = f"{status.value} " if status else ""
    return NotFoundError(
        "REFERENCE_NOT_FOUND",
        f"No {qualifier}reference from '{owner}' to '{target}'",
        {"owner": owner, "target": target},
    )


def _add(refs: list[Reference], owner: str, target: str, kind: TargetKind, description: str) -> Reference:
    if find_reference(refs, target) is not None:
        raise PreconditionFailedError(
            "REFERENCE_EXISTS",
            f"'{owner}' already references '{target}'; expire/activate it instead",
            {"owner": owner, "target": target},
        )
    ref = Reference(target=target, target_kind=kind, description=description)
    refs.append(ref)
    return ref


def _set_status(refs: list[Reference], owner: str, target: str, expected: ReferenceStatus, new: ReferenceStatus) -> Reference:
    ref = find_reference(refs, target)
    if ref is None or ref.status != expected:
        raise _reference_not_found(owner, target, expected)
    ref.status = new
    ref.updated_at = _now_iso()
    return ref


def _remove(refs: list[Reference], owner: str, target: str) -> Reference:
    ref = find_reference(refs, target)
    if ref is None:
        raise _reference_not_found(owner, target)
    refs.remove(ref)
    return ref


class ReferenceLedger:
    """Add, remove, expire and activate references on nodes and workspaces."""

    def classify_target(self, tx: GraphTx, source: Node, target: str) -> TargetKind:
        target = target.strip()
        if not target:
            raise PreconditionFailedError("INVALID_PARAMS", "Reference target must be a non-empty node id or path")
        if target.startswith(MEMO_REFERENCE_SCHEME):
            memo_id = target[len(MEMO_REFERENCE_SCHEME):]
            if memo_id not in tx.workspace.memos:
                raise memo_not_found(memo_id)
            return TargetKind.MEMO
        if target in tx.nodes:
            if target == source.id:
                raise PreconditionFailedError(
                    "INVALID_PARAMS", f"Node '{source.id}' cannot reference itself"
                )
            return TargetKind.NODE
        if looks_like_node_id(target):
            raise node_not_found(target)
        return TargetKind.DOCUMENT

    def apply(
        self,
        tx: GraphTx,
        node_id: str,
        action: Union[ReferenceAction, str],
        target: str,
        description: str = "",
        actor: Union[Actor, str] = Actor.AUTOMATED,
    ) -> dict[str, Any]:
        """Run one ledger action on *node_id* and return the affected reference."""
        action = parse_enum(ReferenceAction, action, "action")
        node = tx.node(node_id)
        target = (target or "").strip()
        if action == ReferenceAction.ADD:
            kind = self.classify_target(tx, node, target)
            ref = _add(node.references, node.id, target, kind, description or "")
        elif action == ReferenceAction.REMOVE:
            ref = _remove(node.references, node.id, target)
        elif action == ReferenceAction.EXPIRE:
            ref = _set_status(node.references, node.id, target, ReferenceStatus.ACTIVE, ReferenceStatus.EXPIRED)
        else:
            ref = _set_status(node.references, node.id, target, ReferenceStatus.EXPIRED, ReferenceStatus.ACTIVE)
        append_log(tx, node, f"Reference {action.value}: {target}", actor)
        return {"reference": ref.to_dict(), "references": [r.to_dict() for r in node.references]}

    def apply_workspace(
        self,
        tx: GraphTx,
        action: Union[ReferenceAction, str],
        path: str,
        description: str = "",
        actor: Union[Actor, str] = Actor.AUTOMATED,
    ) -> dict[str, Any]:
        """Same lifecycle for workspace-level document references."""
        action = parse_enum(ReferenceAction, action, "action")
        ws = tx.workspace
        path = (path or "").strip()
        if not path:
            raise PreconditionFailedError("INVALID_PARAMS", "Document path must be non-empty")
        if action == ReferenceAction.ADD:
            ref = _add(ws.documents, ws.id, path, TargetKind.DOCUMENT, description or "")
        elif action == ReferenceAction.REMOVE:
            ref = _remove(ws.documents, ws.id, path)
        elif action == ReferenceAction.EXPIRE:
            ref = _set_status(ws.documents, ws.id, path, ReferenceStatus.ACTIVE, ReferenceStatus.EXPIRED)
        else:
            ref = _set_status(ws.documents, ws.id, path, ReferenceStatus.EXPIRED, ReferenceStatus.ACTIVE)
        append_workspace_log(tx, f"Document {action.value}: {path}", actor)
        return {"reference": ref.to_dict(), "documents": [d.to_dict() for d in ws.documents]}

    def drop_references_to(self, tx: GraphTx, removed_ids: set[str], kind: TargetKind = TargetKind.NODE) -> int:
        """Strip references pointing at deleted nodes or memos; returns how many were dropped."""
        dropped = 0
        for node in tx.nodes.values():
            before = len(node.references)
            node.references = [
                r for r in node.references
                if not (r.target_kind == kind and r.target in removed_ids)
            ]
            if len(node.references) != before:
                dropped += before - len(node.references)
                node.touch()
        if dropped:
            tx.dirty = True
        return dropped

    def set_isolation(
        self,
        tx: GraphTx,
        node_id: str,
        isolate: bool,
        actor: Union[Actor, str] = Actor.AUTOMATED,
    ) -> dict[str, Any]:
        node = tx.node(node_id)
        previous = node.isolate
        node.isolate = bool(isolate)
        if previous != node.isolate:
            event = "Isolation enabled (ancestor context cut off)" if node.isolate else "Isolation disabled"
            append_log(tx, node, event, actor)
        return {"node_id": node.id, "isolate": node.isolate, "changed": previous != node.isolate}
