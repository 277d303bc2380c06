"""Assemble the focused context view handed to a worker.

The view is built from one snapshot and never mutates it:

* ``workspace`` - name, goal, rules, fingerprint, active documents, dispatch config;
* ``chain`` - root-to-focused entries, truncated at the nearest isolated node
  (the isolated node itself stays visible);
* ``references`` - active node references of the focused node, in the same
  entry shape (expired references stay in storage but are left out);
* ``memos`` - memos the focused node actively references, with their content;
* ``child_outcomes`` - direct children in a terminal state, in creation order.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from ..constants import DEFAULT_MAX_LOG_ENTRIES, MEMO_REFERENCE_SCHEME
from ..errors import node_not_found
from .model import GraphSnapshot, LogEntry, Node, TargetKind


@dataclass
class ContextOptions:
    include_log: bool = True
    include_problem: bool = True
    max_log_entries: int = DEFAULT_MAX_LOG_ENTRIES
    reverse_log: bool = False


def tail_log(entries: list[LogEntry], limit: int) -> list[LogEntry]:
    """Keep the newest *limit* entries, preserving their order."""
    if limit <= 0:
        return []
    if len(entries) <= limit:
        return list(entries)
    return list(entries[-limit:])


class ContextAssembler:
    def entry(self, node: Node, options: ContextOptions) -> dict[str, Any]:
        item: dict[str, Any] = {
            "node_id": node.id,
            "title": node.title,
            "kind": node.kind.value,
            "status": node.status.value,
            "role": node.role.value if node.role else None,
            "requirement": node.requirement,
            "docs": node.active_documents(),
            "note": node.note,
            "conclusion": node.conclusion,
        }
        if options.include_problem and node.problem:
            item["problem"] = node.problem
            if node.next_step:
                item["next_step"] = node.next_step
        if options.include_log:
            logs = tail_log(node.log, options.max_log_entries)
            if options.reverse_log:
                logs.reverse()
            item["log"] = [e.to_dict() for e in logs]
        return item

    def chain(self, snapshot: GraphSnapshot, node_id: str, options: ContextOptions) -> list[dict[str, Any]]:
        """Entries from the root (or the nearest isolated ancestor) down to *node_id*."""
        chain: list[dict[str, Any]] = []
        current: Optional[Node] = snapshot.nodes.get(node_id)
        seen: set[str] = set()
        while current is not None and current.id not in seen:
            seen.add(current.id)
            chain.append(self.entry(current, options))
            if current.isolate:
                break
            current = snapshot.nodes.get(current.parent_id) if current.parent_id else None
        chain.reverse()
        return chain

    def cross_references(self, snapshot: GraphSnapshot, node: Node, options: ContextOptions) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for ref in node.references:
            if not ref.is_active or ref.target_kind != TargetKind.NODE:
                continue
            target = snapshot.nodes.get(ref.target)
            if target is None:
                continue
            item = self.entry(target, options)
            item["reference_description"] = ref.description
            out.append(item)
        return out

    def memo_references(self, snapshot: GraphSnapshot, node: Node) -> list[dict[str, Any]]:
        memos = snapshot.workspace.memos
        out: list[dict[str, Any]] = []
        for ref in node.references:
            if not ref.is_active or ref.target_kind != TargetKind.MEMO:
                continue
            memo = memos.get(ref.target[len(MEMO_REFERENCE_SCHEME):])
            if memo is None:
                continue
            item = memo.to_dict()
            item["reference_description"] = ref.description
            out.append(item)
        return out

    def child_outcomes(self, snapshot: GraphSnapshot, node: Node) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for child_id in node.children:
            child = snapshot.nodes.get(child_id)
            if child is None or not child.is_terminal:
                continue
            out.append({
                "node_id": child.id,
                "title": child.title,
                "status": child.status.value,
                "conclusion": child.conclusion,
            })
        return out

    def workspace_summary(self, snapshot: GraphSnapshot) -> dict[str, Any]:
        ws = snapshot.workspace
        return {
            "id": ws.id,
            "name": ws.name,
            "goal": ws.goal,
            "rules": list(ws.rules),
            "rules_fingerprint": ws.rules_fingerprint,
            "docs": ws.active_documents(),
            "dispatch": ws.dispatch.to_dict() if ws.dispatch else None,
        }

    def assemble(
        self,
        snapshot: GraphSnapshot,
        node_id: str,
        options: Optional[ContextOptions] = None,
    ) -> dict[str, Any]:
        options = options or ContextOptions()
        node = snapshot.nodes.get(node_id)
        if node is None:
            raise node_not_found(node_id)
        return {
            "workspace": self.workspace_summary(snapshot),
            "chain": self.chain(snapshot, node_id, options),
            "references": self.cross_references(snapshot, node, options),
            "memos": self.memo_references(snapshot, node),
            "child_outcomes": self.child_outcomes(snapshot, node),
        }
