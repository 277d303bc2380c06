"""Render workspace status summaries and node trees."""

from __future__ import annotations

from collections import Counter
from typing import Any, Optional

from rich.console import Console
from rich.markup import escape
from rich.tree import Tree

from .model import GraphSnapshot, Node, NodeKind, NodeStatus

_STATUS_STYLE = {
    NodeStatus.PENDING: "white",
    NodeStatus.PLANNING: "cyan",
    NodeStatus.MONITORING: "blue",
    NodeStatus.IMPLEMENTING: "yellow",
    NodeStatus.VALIDATING: "magenta",
    NodeStatus.COMPLETED: "green",
    NodeStatus.FAILED: "red",
    NodeStatus.CANCELLED: "dim",
}


def node_tree(snapshot: GraphSnapshot, start_id: str, depth: Optional[int] = None) -> dict[str, Any]:
    """Nested dict view of the subtree at *start_id*, cut at *depth* levels below it."""

    def _build(node: Node, level: int) -> dict[str, Any]:
        item: dict[str, Any] = {
            "id": node.id,
            "title": node.title,
            "kind": node.kind.value,
            "status": node.status.value,
            "role": node.role.value if node.role else None,
            "isolate": node.isolate,
            "child_count": len(node.children),
            "children": [],
        }
        if depth is None or level < depth:
            item["children"] = [
                _build(snapshot.nodes[c], level + 1) for c in node.children if c in snapshot.nodes
            ]
        return item

    return _build(snapshot.nodes[start_id], 0)


def _label(node: Node, focus: Optional[str]) -> str:
    style = _STATUS_STYLE.get(node.status, "white")
    marker = "[P]" if node.kind == NodeKind.PLANNING else "[E]"
    label = f"{marker} {escape(node.title)} [dim]({node.id})[/dim] [{style}]{node.status.value}[/{style}]"
    if node.role:
        label += f" [dim]<{node.role.value}>[/dim]"
    if node.isolate:
        label += " [dim]isolated[/dim]"
    if node.id == focus:
        label += " [bold]<- focus[/bold]"
    return label


def render_tree(snapshot: GraphSnapshot, width: int = 100) -> str:
    """Plain-text tree of the whole workspace, focus marked."""
    console = Console(record=True, width=width)
    focus = snapshot.workspace.current_focus
    root = snapshot.root
    tree = Tree(_label(root, focus))

    def _add(parent: Tree, node: Node) -> None:
        for child_id in node.children:
            child = snapshot.nodes.get(child_id)
            if child is None:
                continue
            _add(parent.add(_label(child, focus)), child)

    _add(tree, root)
    with console.capture():
        console.print(tree)
    return console.export_text()


def workspace_status(snapshot: GraphSnapshot) -> dict[str, Any]:
    counts = Counter(node.status.value for node in snapshot.nodes.values())
    kinds = Counter(node.kind.value for node in snapshot.nodes.values())
    ws = snapshot.workspace
    return {
        "workspace": ws.summary(),
        "node_count": len(snapshot.nodes),
        "by_status": dict(sorted(counts.items())),
        "by_kind": dict(sorted(kinds.items())),
        "tree": render_tree(snapshot),
    }
