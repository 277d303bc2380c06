"""Append-only node and workspace logs."""

from __future__ import annotations

from typing import Union

from ..constants import ROOT_NODE_ID
from .model import Actor, LogEntry, Node
from .store import GraphTx


def is_root_adjacent(node: Node) -> bool:
    """True for the root and its direct children, whose events are mirrored."""
    return node.parent_id is None or node.parent_id == ROOT_NODE_ID


def append_log(
    tx: GraphTx,
    node: Node,
    event: str,
    actor: Union[Actor, str] = Actor.AUTOMATED,
) -> LogEntry:
    """Append *event* to the node's log, mirrored to the workspace log when root-adjacent."""
    entry = LogEntry(event=event, actor=Actor(actor))
    node.log.append(entry)
    node.touch()
    if is_root_adjacent(node):
        tx.workspace.log.append(LogEntry(event=f"[{node.id}] {event}", actor=entry.actor, timestamp=entry.timestamp))
    tx.workspace.touch()
    tx.dirty = True
    return entry


def append_workspace_log(tx: GraphTx, event: str, actor: Union[Actor, str] = Actor.SYSTEM) -> LogEntry:
    entry = LogEntry(event=event, actor=Actor(actor))
    tx.workspace.log.append(entry)
    tx.workspace.touch()
    tx.dirty = True
    return entry
