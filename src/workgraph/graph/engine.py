"""Graph engine: every workspace, node, memo, context and dispatch operation.

This is the primary entry-point for all graph manipulation.  It owns the
:class:`GraphStore` and the components working on top of it, runs each
mutating operation as one read-modify-write transaction, and publishes
change events once the transaction has been saved.

Transports (tool-invocation servers, HTTP routes) funnel through
:meth:`GraphEngine.call`, which validates the argument bag and turns engine
failures into ``{"ok": False, "error": {...}}`` results.
"""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, Union

from loguru import logger
from pydantic import BaseModel, ValidationError

from ..config import get_context_config, get_dispatch_config, get_logging_config, load_engine_config
from ..constants import EVENTS_FILE, ROOT_NODE_ID, STATE_DIR_NAME
from ..errors import (
    CorruptionError,
    InvalidTransitionError,
    NotFoundError,
    PreconditionFailedError,
    WorkgraphError,
    invalid_params,
    memo_not_found,
    node_not_found,
    workspace_not_found,
)
from ..logging_utils import configure_logging, summarize_error
from ..utils import _now_iso
from . import requests as rq
from .context import ContextAssembler, ContextOptions
from .dispatch import DispatchCoordinator, VersionControlFactory
from .events import ChangeKind, EventBus
from .guard import ConcurrencyGuard
from .journal import append_log, append_workspace_log
from .model import (
    ACTIVE_EXECUTION_STATUSES,
    IN_FLIGHT_DISPATCH_STATUSES,
    SETTLED_STATUSES,
    Actor,
    GraphSnapshot,
    LogEntry,
    Memo,
    Node,
    NodeKind,
    NodeRole,
    Reference,
    TargetKind,
    Workspace,
    WorkspaceStatus,
    memo_reference,
    parse_enum,
)
from .references import ReferenceLedger
from .session import SessionBindings
from .state_machine import NodeStateMachine, allowed_actions
from .status import node_tree, workspace_status
from .store import GraphStore, GraphTx
from .vcs import GitVersionControl

# operation scopes for ``call``
_NO_SCOPE = "none"
_WORKSPACE = "workspace"
_OPTIONAL_WORKSPACE = "optional_workspace"
_NODE = "node"
_OPTIONAL_NODE = "optional_node"


def _note(tx: GraphTx, kind: ChangeKind, node_id: Optional[str] = None, **payload: Any) -> None:
    tx.pending_events.append({"kind": kind, "node_id": node_id, "payload": payload})


def _node_summary(node: Node) -> dict[str, Any]:
    return {
        "id": node.id,
        "title": node.title,
        "kind": node.kind.value,
        "status": node.status.value,
        "role": node.role.value if node.role else None,
        "parent_id": node.parent_id,
    }


def _clean_tags(tags: Optional[list[str]]) -> list[str]:
    out: list[str] = []
    for tag in tags or []:
        tag = tag.strip()
        if tag and tag not in out:
            out.append(tag)
    return out


def _workspace_view(ws: Workspace) -> dict[str, Any]:
    data = ws.to_dict()
    data["memos"] = [memo.list_item() for memo in ws.memos.values()]
    data["current_focus"] = ws.current_focus
    data["rules_fingerprint"] = ws.rules_fingerprint
    return data


class GraphEngine:
    """Manage workspaces and their node graphs.

    Parameters
    ----------
    state_dir:
        Path to the ``.workgraph/`` directory.
    project_root:
        Default project directory for new workspaces (the repository used
        by git-mode dispatch).  Defaults to the parent of *state_dir*.
    vcs_factory:
        Builds the version-control collaborator for a project directory.
    config:
        Engine configuration; loaded from ``config.yaml`` when omitted.
    """

    def __init__(
        self,
        state_dir: Path,
        project_root: Optional[Path] = None,
        vcs_factory: VersionControlFactory = GitVersionControl,
        config: Optional[dict[str, Any]] = None,
    ) -> None:
        self.state_dir = Path(state_dir)
        self.project_root = Path(project_root) if project_root is not None else self.state_dir.parent
        self.store = GraphStore(self.state_dir)
        if config is None:
            config, err = load_engine_config(self.state_dir)
            if err:
                logger.warning("Ignoring unreadable engine config in {}: {}", self.state_dir, err)
        self.config = config
        self.events = EventBus(self.state_dir / EVENTS_FILE)
        self.guard = ConcurrencyGuard()
        self.state_machine = NodeStateMachine(self.guard)
        self.references = ReferenceLedger()
        self.context = ContextAssembler()
        self.dispatch = DispatchCoordinator(self.state_machine, vcs_factory, self.state_dir)
        self.sessions = SessionBindings(self.state_dir)
        self._operations = self._build_operations()

    @classmethod
    def for_project(cls, project_root: Path, configure_logs: bool = False, **kwargs: Any) -> "GraphEngine":
        """Open the engine whose state lives in ``<project_root>/.workgraph``.

        With *configure_logs* the loguru sinks are replaced according to the
        ``logging`` block of the engine config.
        """
        project_root = Path(project_root).resolve()
        state_dir = project_root / STATE_DIR_NAME
        engine = cls(state_dir, project_root=project_root, **kwargs)
        if configure_logs:
            settings = get_logging_config(engine.config)
            log_file = settings["file"]
            if log_file and not Path(log_file).is_absolute():
                log_file = state_dir / log_file
            configure_logging(settings["level"], Path(log_file) if log_file else None)
        return engine

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def _mutate(self, workspace_id: str, writable: bool = True) -> Iterator[GraphTx]:
        """Run one mutating operation; events go out only after a successful save."""
        with self.store.transaction(workspace_id) as tx:
            if writable:
                self.guard.check_writable(tx.workspace)
            yield tx
        for event in tx.pending_events:
            self.events.emit(workspace_id=workspace_id, **event)

    def _actor(self, actor: Union[Actor, str, None]) -> Actor:
        return parse_enum(Actor, actor, "actor") if actor else Actor.AUTOMATED

    # ------------------------------------------------------------------
    # Workspaces
    # ------------------------------------------------------------------

    def workspace_init(
        self,
        name: str,
        goal: str,
        rules: Optional[list[str]] = None,
        documents: Optional[list[str]] = None,
        project_root: Optional[str] = None,
    ) -> dict[str, Any]:
        """Create a workspace and its ``root`` planning node (focused)."""
        name = name.strip()
        goal = goal.strip()
        if not name or not goal:
            raise invalid_params("Workspace name and goal must be non-empty")
        ws = Workspace(name=name, goal=goal, project_root=str(project_root or self.project_root))
        ws.set_rules([r.strip() for r in rules or [] if r and r.strip()])
        for path in documents or []:
            path = path.strip()
            if path and all(d.target != path for d in ws.documents):
                ws.documents.append(Reference(target=path, target_kind=TargetKind.DOCUMENT))
        root = Node(id=ROOT_NODE_ID, title=name, kind=NodeKind.PLANNING, requirement=goal)
        root.log.append(LogEntry(event="Workspace created", actor=Actor.SYSTEM))
        ws.log.append(LogEntry(event=f"Workspace created: {name}", actor=Actor.SYSTEM))
        ws.current_focus = root.id

        snapshot = GraphSnapshot(workspace=ws, nodes={root.id: root})
        self.store.create(snapshot)
        logger.info("Created workspace {} ({})", ws.id, name)
        self.events.emit(kind=ChangeKind.WORKSPACE_UPDATED, workspace_id=ws.id, payload={"action": "created"})
        return {
            "workspace": ws.summary(),
            "root_id": root.id,
            "rules_hash": ws.rules_fingerprint,
        }

    def workspace_get(self, workspace_id: str) -> dict[str, Any]:
        snapshot = self.store.read_snapshot(workspace_id)
        return {"workspace": _workspace_view(snapshot.workspace), "node_count": len(snapshot.nodes)}

    def workspace_list(self, status: Optional[str] = "all") -> dict[str, Any]:
        entries = self.store.list_index()
        if status and status != "all":
            entries = [e for e in entries if e.get("status") == status]
        return {"workspaces": entries, "count": len(entries)}

    def workspace_archive(self, workspace_id: str) -> dict[str, Any]:
        with self._mutate(workspace_id, writable=False) as tx:
            ws = tx.workspace
            if ws.status != WorkspaceStatus.ACTIVE:
                raise PreconditionFailedError(
                    "WORKSPACE_ARCHIVED", f"Workspace '{ws.id}' is {ws.status.value}, not active"
                )
            if ws.dispatch is not None and ws.dispatch.enabled:
                raise PreconditionFailedError(
                    "DISPATCH_IN_PROGRESS", f"Disable dispatch mode before archiving '{ws.id}'"
                )
            ws.status = WorkspaceStatus.ARCHIVED
            append_workspace_log(tx, "Workspace archived")
            _note(tx, ChangeKind.WORKSPACE_UPDATED, action="archived")
        return {"workspace": ws.summary()}

    def workspace_restore(self, workspace_id: str) -> dict[str, Any]:
        with self._mutate(workspace_id, writable=False) as tx:
            ws = tx.workspace
            if ws.status != WorkspaceStatus.ARCHIVED:
                raise PreconditionFailedError(
                    "WORKSPACE_ACTIVE", f"Workspace '{ws.id}' is not archived"
                )
            ws.status = WorkspaceStatus.ACTIVE
            append_workspace_log(tx, "Workspace restored")
            _note(tx, ChangeKind.WORKSPACE_UPDATED, action="restored")
        return {"workspace": ws.summary()}

    def workspace_delete(self, workspace_id: str, force: bool = False) -> dict[str, Any]:
        """Delete a workspace record; active workspaces need *force*.

        Workspaces in ``error`` status can be deleted without loading them.
        """
        entry = next((e for e in self.store.list_index() if e["id"] == workspace_id), None)
        if entry is None or not self.store.exists(workspace_id):
            raise workspace_not_found(workspace_id)
        if entry.get("status") == WorkspaceStatus.ACTIVE.value and not force:
            raise PreconditionFailedError(
                "WORKSPACE_ACTIVE",
                f"Workspace '{workspace_id}' is active; archive it first or pass force=true",
            )
        self.store.delete(workspace_id)
        dropped = self.sessions.drop_workspace(workspace_id)
        logger.info("Deleted workspace {} ({} session binding(s) dropped)", workspace_id, dropped)
        self.events.emit(kind=ChangeKind.WORKSPACE_UPDATED, workspace_id=workspace_id, payload={"action": "deleted"})
        return {"deleted": workspace_id}

    def workspace_update_rules(
        self,
        workspace_id: str,
        action: str,
        rule: Optional[str] = None,
        rules: Optional[list[str]] = None,
    ) -> dict[str, Any]:
        """Add, remove or replace rules; the fingerprint is recomputed in the same save."""
        with self._mutate(workspace_id) as tx:
            ws = tx.workspace
            current = list(ws.rules)
            text = (rule or "").strip()
            if action == "replace":
                if rules is None:
                    raise invalid_params("'replace' needs the full 'rules' list")
                updated = [r.strip() for r in rules if r and r.strip()]
                event = f"Rules replaced ({len(updated)} rule(s))"
            elif not text:
                raise invalid_params(f"'{action}' needs a non-empty 'rule'")
            elif action == "add":
                if text in current:
                    raise PreconditionFailedError("RULE_EXISTS", f"Rule already present: {text}")
                updated = current + [text]
                event = f"Rule added: {text}"
            elif action == "remove":
                if text not in current:
                    raise NotFoundError("RULE_NOT_FOUND", f"No such rule: {text}")
                updated = [r for r in current if r != text]
                event = f"Rule removed: {text}"
            else:
                raise invalid_params(f"Unknown rules action '{action}'")
            ws.set_rules(updated)
            append_workspace_log(tx, f"{event} (fingerprint {ws.rules_fingerprint or 'empty'})", Actor.HUMAN)
            _note(tx, ChangeKind.WORKSPACE_UPDATED, action="rules", rules_hash=ws.rules_fingerprint)
        return {"rules": list(ws.rules), "rules_count": len(ws.rules), "rules_hash": ws.rules_fingerprint}

    def workspace_document(
        self,
        workspace_id: str,
        action: str,
        path: str,
        description: str = "",
    ) -> dict[str, Any]:
        with self._mutate(workspace_id) as tx:
            result = self.references.apply_workspace(tx, action, path, description)
            _note(tx, ChangeKind.REFERENCE_UPDATED, action=action, target=path)
        return result

    def workspace_status(self, workspace_id: str) -> dict[str, Any]:
        snapshot = self.store.read_snapshot(workspace_id)
        result = workspace_status(snapshot)
        result["dispatch"] = self.dispatch_status(workspace_id, snapshot=snapshot)
        return result

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def _open_parent(self, tx: GraphTx, parent_id: str) -> Node:
        parent = tx.get(parent_id)
        if parent is None:
            raise NotFoundError("PARENT_NOT_FOUND", f"Parent node '{parent_id}' does not exist")
        if parent.kind != NodeKind.PLANNING:
            raise PreconditionFailedError(
                "EXECUTION_CANNOT_HAVE_CHILDREN",
                f"Parent '{parent.id}' is an execution node; only planning nodes have children",
            )
        if parent.status in SETTLED_STATUSES:
            raise PreconditionFailedError(
                "PARENT_CLOSED",
                f"Parent '{parent.id}' is {parent.status.value}; reopen it before adding children",
            )
        return parent

    def node_create(
        self,
        workspace_id: str,
        parent_id: str,
        kind: str,
        title: str,
        requirement: str = "",
        note: str = "",
        role: Optional[str] = None,
        documents: Optional[list[str]] = None,
        rules_hash: Optional[str] = None,
    ) -> dict[str, Any]:
        """Create a node under a planning parent.

        The caller must pass the rules fingerprint it last observed; a stale
        view of the rules is rejected before anything changes.
        """
        title = title.strip()
        if not title:
            raise invalid_params("Node title must be non-empty")
        node_kind = parse_enum(NodeKind, kind, "kind")
        node_role = parse_enum(NodeRole, role, "role") if role else None
        with self._mutate(workspace_id) as tx:
            self.guard.check_rules_fingerprint(tx.workspace, rules_hash)
            parent = self._open_parent(tx, parent_id)
            node = Node(
                title=title,
                kind=node_kind,
                role=node_role,
                parent_id=parent.id,
                requirement=requirement,
                note=note,
            )
            tx.add(node)
            parent.children.append(node.id)
            parent.touch()
            append_log(tx, node, f"Created {node.kind.value} node under {parent.id}")
            for path in documents or []:
                if path and path.strip():
                    self.references.apply(tx, node.id, "add", path)
            parent_change = self.state_machine.on_child_attached(tx, parent, node)
            _note(tx, ChangeKind.NODE_UPDATED, node.id, action="created")
            _note(tx, ChangeKind.NODE_UPDATED, parent.id, action="child_added", child_id=node.id)
        logger.info("Created node {} under {} in {}", node.id, parent.id, workspace_id)
        return {
            "node": _node_summary(node),
            "parent": {"id": parent.id, "status": parent.status.value},
            "parent_change": parent_change,
        }

    def node_get(self, workspace_id: str, node_id: str) -> dict[str, Any]:
        snapshot = self.store.read_snapshot(workspace_id)
        node = snapshot.nodes.get(node_id)
        if node is None:
            raise node_not_found(node_id)
        return {"node": node.to_dict(), "allowed_actions": allowed_actions(node)}

    def node_list(self, workspace_id: str, root_id: Optional[str] = None, depth: Optional[int] = None) -> dict[str, Any]:
        snapshot = self.store.read_snapshot(workspace_id)
        start = root_id or ROOT_NODE_ID
        if start not in snapshot.nodes:
            raise node_not_found(start)
        return {"tree": node_tree(snapshot, start, depth), "node_count": len(snapshot.nodes)}

    def node_update(
        self,
        workspace_id: str,
        node_id: str,
        title: Optional[str] = None,
        requirement: Optional[str] = None,
        note: Optional[str] = None,
    ) -> dict[str, Any]:
        changes = {k: v for k, v in (("title", title), ("requirement", requirement), ("note", note)) if v is not None}
        if not changes:
            raise invalid_params("Nothing to update: pass title, requirement or note")
        if "title" in changes:
            changes["title"] = changes["title"].strip()
            if not changes["title"]:
                raise invalid_params("Node title must be non-empty")
        with self._mutate(workspace_id) as tx:
            node = tx.node(node_id)
            for key, value in changes.items():
                setattr(node, key, value)
            append_log(tx, node, f"Updated {', '.join(sorted(changes))}")
            _note(tx, ChangeKind.NODE_UPDATED, node.id, action="updated", fields=sorted(changes))
        return {"node": _node_summary(node), "updated": sorted(changes)}

    def node_move(
        self,
        workspace_id: str,
        node_id: str,
        new_parent_id: str,
        rules_hash: Optional[str] = None,
    ) -> dict[str, Any]:
        with self._mutate(workspace_id) as tx:
            self.guard.check_rules_fingerprint(tx.workspace, rules_hash)
            node = tx.node(node_id)
            if node.is_root:
                raise InvalidTransitionError("INVALID_TRANSITION", "The root node cannot be moved")
            if node.parent_id == new_parent_id:
                return {"node": _node_summary(node), "moved": False}
            new_parent = self._open_parent(tx, new_parent_id)
            if new_parent.id in tx.subtree_ids(node.id):
                raise InvalidTransitionError(
                    "INVALID_TRANSITION",
                    f"Cannot move '{node.id}' under its own descendant '{new_parent.id}'",
                )
            old_parent = tx.node(node.parent_id)
            old_parent.children.remove(node.id)
            old_parent.touch()
            new_parent.children.append(node.id)
            new_parent.touch()
            node.parent_id = new_parent.id
            if node.kind == NodeKind.EXECUTION and node.status in ACTIVE_EXECUTION_STATUSES:
                self.guard.check_sibling_exclusivity(tx, node)
            append_log(tx, node, f"Moved from {old_parent.id} to {new_parent.id}")
            self.state_machine.on_child_attached(tx, new_parent, node)
            for changed in (node, old_parent, new_parent):
                _note(tx, ChangeKind.NODE_UPDATED, changed.id, action="moved", moved=node.id)
        return {"node": _node_summary(node), "moved": True, "old_parent_id": old_parent.id}

    def node_delete(self, workspace_id: str, node_id: str) -> dict[str, Any]:
        """Delete a node with its whole subtree and every reference pointing into it."""
        with self._mutate(workspace_id) as tx:
            node = tx.node(node_id)
            if node.is_root:
                raise PreconditionFailedError("CANNOT_DELETE_ROOT", "The root node cannot be deleted")
            doomed = tx.subtree_ids(node.id)
            busy = [
                i for i in doomed
                if tx.nodes[i].dispatch is not None and tx.nodes[i].dispatch.status in IN_FLIGHT_DISPATCH_STATUSES
            ]
            if busy:
                raise PreconditionFailedError(
                    "DISPATCH_IN_PROGRESS",
                    f"Cannot delete while dispatched nodes are running: {', '.join(busy)}",
                    {"node_ids": busy},
                )
            parent = tx.node(node.parent_id)
            parent.children.remove(node.id)
            for doomed_id in doomed:
                tx.hard_remove(doomed_id)
            dropped = self.references.drop_references_to(tx, set(doomed))
            focus_reset = tx.workspace.current_focus in doomed
            if focus_reset:
                tx.workspace.current_focus = ROOT_NODE_ID
            append_log(tx, parent, f"Deleted child {node.id} ({node.title}) with {len(doomed) - 1} descendant(s)")
            _note(tx, ChangeKind.NODE_UPDATED, parent.id, action="child_deleted", deleted=doomed)
            if focus_reset:
                _note(tx, ChangeKind.CONTEXT_UPDATED, ROOT_NODE_ID, action="focus_reset")
            current_focus = tx.workspace.current_focus
        if focus_reset:
            self.sessions.refresh_focus(workspace_id, current_focus)
        return {"deleted": doomed, "references_dropped": dropped, "current_focus": current_focus}

    def node_transition(
        self,
        workspace_id: str,
        node_id: str,
        action: str,
        conclusion: Optional[str] = None,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> dict[str, Any]:
        with self._mutate(workspace_id) as tx:
            result = self.state_machine.transition(
                tx, node_id, action, conclusion=conclusion, reason=reason, actor=self._actor(actor)
            )
            _note(tx, ChangeKind.NODE_UPDATED, node_id, action=result.action.value, status=result.current_status.value)
            for change in result.cascaded:
                _note(tx, ChangeKind.NODE_UPDATED, change["node_id"], action="cascade", status=change["to"])
        return result.to_dict()

    def node_isolate(self, workspace_id: str, node_id: str, isolate: bool) -> dict[str, Any]:
        with self._mutate(workspace_id) as tx:
            result = self.references.set_isolation(tx, node_id, isolate)
            if result["changed"]:
                _note(tx, ChangeKind.CONTEXT_UPDATED, node_id, isolate=result["isolate"])
        return result

    def node_reference(
        self,
        workspace_id: str,
        node_id: str,
        action: str,
        target: str,
        description: str = "",
    ) -> dict[str, Any]:
        with self._mutate(workspace_id) as tx:
            result = self.references.apply(tx, node_id, action, target, description)
            _note(tx, ChangeKind.REFERENCE_UPDATED, node_id, action=action, target=target)
        return result

    # ------------------------------------------------------------------
    # Context, focus and logs
    # ------------------------------------------------------------------

    def context_get(
        self,
        workspace_id: str,
        node_id: Optional[str] = None,
        include_log: bool = True,
        include_problem: bool = True,
        max_log_entries: Optional[int] = None,
        reverse_log: bool = False,
    ) -> dict[str, Any]:
        """Assemble the focused view; *node_id* defaults to the current focus."""
        snapshot = self.store.read_snapshot(workspace_id)
        target = node_id or snapshot.workspace.current_focus or ROOT_NODE_ID
        if max_log_entries is None:
            max_log_entries = get_context_config(self.config)["max_log_entries"]
        options = ContextOptions(
            include_log=include_log,
            include_problem=include_problem,
            max_log_entries=max_log_entries,
            reverse_log=reverse_log,
        )
        result = self.context.assemble(snapshot, target, options)
        result["focus"] = target
        return result

    def context_focus(self, workspace_id: str, node_id: str) -> dict[str, Any]:
        with self._mutate(workspace_id) as tx:
            node = tx.node(node_id)
            previous = tx.workspace.current_focus
            if previous != node.id:
                tx.workspace.current_focus = node.id
                append_workspace_log(tx, f"Focus: {previous} -> {node.id}", Actor.AUTOMATED)
                _note(tx, ChangeKind.CONTEXT_UPDATED, node.id, previous_focus=previous)
        self.sessions.refresh_focus(workspace_id, node.id)
        return {"current_focus": node.id, "previous_focus": previous, "node": _node_summary(node)}

    def log_append(self, workspace_id: str, node_id: str, event: str, actor: Optional[str] = None) -> dict[str, Any]:
        event = event.strip()
        if not event:
            raise invalid_params("Log event must be non-empty")
        with self._mutate(workspace_id) as tx:
            entry = append_log(tx, tx.node(node_id), event, self._actor(actor))
            _note(tx, ChangeKind.LOG_UPDATED, node_id, actor=entry.actor.value)
        return {"node_id": node_id, "entry": entry.to_dict()}

    def problem_update(self, workspace_id: str, node_id: str, problem: str = "", next_step: str = "") -> dict[str, Any]:
        problem = problem.strip()
        next_step = next_step.strip()
        if not problem and not next_step:
            raise invalid_params("Pass a problem or a next step (use problem_clear to reset)")
        with self._mutate(workspace_id) as tx:
            node = tx.node(node_id)
            if problem:
                node.problem = problem
            if next_step:
                node.next_step = next_step
            event = f"Problem: {node.problem}" if problem else f"Next step: {node.next_step}"
            append_log(tx, node, event)
            _note(tx, ChangeKind.NODE_UPDATED, node.id, action="problem")
        return {"node_id": node.id, "problem": node.problem, "next_step": node.next_step}

    def problem_clear(self, workspace_id: str, node_id: str) -> dict[str, Any]:
        with self._mutate(workspace_id) as tx:
            node = tx.node(node_id)
            had_problem = bool(node.problem or node.next_step)
            if had_problem:
                node.problem = ""
                node.next_step = ""
                append_log(tx, node, "Problem cleared")
                _note(tx, ChangeKind.NODE_UPDATED, node.id, action="problem_cleared")
        return {"node_id": node.id, "cleared": had_problem}

    # ------------------------------------------------------------------
    # Memos
    # ------------------------------------------------------------------

    def memo_create(
        self,
        workspace_id: str,
        title: str,
        summary: str = "",
        content: str = "",
        tags: Optional[list[str]] = None,
    ) -> dict[str, Any]:
        title = title.strip()
        if not title:
            raise invalid_params("Memo title must be non-empty")
        with self._mutate(workspace_id) as tx:
            memo = Memo(title=title, summary=summary, content=content, tags=_clean_tags(tags))
            tx.workspace.memos[memo.id] = memo
            append_workspace_log(tx, f"Memo created: {memo.id} ({memo.title})", Actor.AUTOMATED)
            _note(tx, ChangeKind.MEMO_UPDATED, memo_id=memo.id, action="created")
        logger.info("Created memo {} in {}", memo.id, workspace_id)
        return {"memo_id": memo.id, "reference": memo_reference(memo.id), "memo": memo.list_item()}

    def memo_list(self, workspace_id: str, tags: Optional[list[str]] = None) -> dict[str, Any]:
        """Memos newest-updated first; *tags* keeps memos carrying any of them."""
        memos = list(self.store.read_snapshot(workspace_id).workspace.memos.values())
        all_tags = sorted({t for m in memos for t in m.tags})
        wanted = set(_clean_tags(tags))
        if wanted:
            memos = [m for m in memos if wanted.intersection(m.tags)]
        memos.sort(key=lambda m: m.updated_at, reverse=True)
        return {"memos": [m.list_item() for m in memos], "all_tags": all_tags}

    def memo_get(self, workspace_id: str, memo_id: str) -> dict[str, Any]:
        memo = self.store.read_snapshot(workspace_id).workspace.memos.get(memo_id)
        if memo is None:
            raise memo_not_found(memo_id)
        return {"memo": memo.to_dict()}

    def memo_update(
        self,
        workspace_id: str,
        memo_id: str,
        title: Optional[str] = None,
        summary: Optional[str] = None,
        content: Optional[str] = None,
        tags: Optional[list[str]] = None,
    ) -> dict[str, Any]:
        changes: dict[str, Any] = {
            k: v for k, v in (("title", title), ("summary", summary), ("content", content)) if v is not None
        }
        if tags is not None:
            changes["tags"] = _clean_tags(tags)
        if not changes:
            raise invalid_params("Nothing to update: pass title, summary, content or tags")
        if "title" in changes:
            changes["title"] = changes["title"].strip()
            if not changes["title"]:
                raise invalid_params("Memo title must be non-empty")
        with self._mutate(workspace_id) as tx:
            memo = tx.workspace.memos.get(memo_id)
            if memo is None:
                raise memo_not_found(memo_id)
            for key, value in changes.items():
                setattr(memo, key, value)
            memo.updated_at = _now_iso()
            append_workspace_log(tx, f"Memo updated: {memo.id} ({', '.join(sorted(changes))})", Actor.AUTOMATED)
            _note(tx, ChangeKind.MEMO_UPDATED, memo_id=memo.id, action="updated", fields=sorted(changes))
        return {"memo": memo.list_item(), "updated": sorted(changes)}

    def memo_delete(self, workspace_id: str, memo_id: str) -> dict[str, Any]:
        """Delete a memo and drop every node reference pointing at it."""
        with self._mutate(workspace_id) as tx:
            memo = tx.workspace.memos.pop(memo_id, None)
            if memo is None:
                raise memo_not_found(memo_id)
            dropped = self.references.drop_references_to(tx, {memo_reference(memo_id)}, TargetKind.MEMO)
            append_workspace_log(tx, f"Memo deleted: {memo_id} ({memo.title})", Actor.AUTOMATED)
            _note(tx, ChangeKind.MEMO_UPDATED, memo_id=memo_id, action="deleted")
        return {"deleted": memo_id, "references_dropped": dropped}

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _git_dispatch_owner(self, workspace_id: str) -> Optional[str]:
        """Another active workspace of the same project already dispatching in git mode."""
        entries = self.store.list_index()
        own = next((e for e in entries if e["id"] == workspace_id), None)
        if own is None:
            return None
        for entry in entries:
            if entry["id"] == workspace_id or entry.get("project_root") != own.get("project_root"):
                continue
            if entry.get("status") != WorkspaceStatus.ACTIVE.value:
                continue
            try:
                other = self.store.read_snapshot(entry["id"])
            except (NotFoundError, CorruptionError):
                continue
            cfg = other.workspace.dispatch
            if cfg is not None and cfg.enabled and cfg.use_git:
                return entry["id"]
        return None

    def dispatch_enable(self, workspace_id: str, use_git: Optional[bool] = None) -> dict[str, Any]:
        settings = get_dispatch_config(self.config)
        conflict = self._git_dispatch_owner(workspace_id)
        with self._mutate(workspace_id) as tx:
            result = self.dispatch.enable(
                tx, use_git, settings["default_mode"], settings["limits"], conflicting_workspace=conflict
            )
            _note(tx, ChangeKind.DISPATCH_UPDATED, action="enabled", use_git=result["config"]["use_git"])
        return result

    def dispatch_disable(
        self,
        workspace_id: str,
        merge_strategy: Optional[str] = None,
        keep_backup_branch: bool = False,
        keep_process_branch: bool = False,
        commit_message: Optional[str] = None,
    ) -> dict[str, Any]:
        with self._mutate(workspace_id) as tx:
            result = self.dispatch.disable(
                tx,
                merge_strategy=merge_strategy,
                keep_backup_branch=keep_backup_branch,
                keep_process_branch=keep_process_branch,
                commit_message=commit_message,
            )
            if result.get("disabled") and not result.get("already_disabled"):
                _note(tx, ChangeKind.DISPATCH_UPDATED, action="disabled", merge_strategy=merge_strategy)
        return result

    def node_dispatch(self, workspace_id: str, node_id: str) -> dict[str, Any]:
        with self._mutate(workspace_id) as tx:
            result = self.dispatch.dispatch_node(tx, node_id)
            _note(tx, ChangeKind.DISPATCH_UPDATED, node_id, action="dispatched")
            _note(tx, ChangeKind.NODE_UPDATED, node_id, status=tx.node(node_id).status.value)
        return result

    def node_dispatch_complete(
        self,
        workspace_id: str,
        node_id: str,
        success: bool,
        conclusion: Optional[str] = None,
    ) -> dict[str, Any]:
        with self._mutate(workspace_id) as tx:
            result = self.dispatch.complete_node(tx, node_id, success, conclusion)
            _note(tx, ChangeKind.DISPATCH_UPDATED, node_id, action="completed", success=success)
            _note(tx, ChangeKind.NODE_UPDATED, node_id, status=tx.node(node_id).status.value)
        return result

    def dispatch_test_result(self, workspace_id: str, node_id: str, passed: bool) -> dict[str, Any]:
        with self._mutate(workspace_id) as tx:
            result = self.dispatch.record_test_result(tx, node_id, passed)
            for settled in result["settled"]:
                _note(tx, ChangeKind.DISPATCH_UPDATED, settled, action="verified", passed=passed)
        return result

    def dispatch_cleanup(self, workspace_id: str) -> dict[str, Any]:
        with self._mutate(workspace_id) as tx:
            result = self.dispatch.cleanup(tx)
            if result["deleted"]:
                _note(tx, ChangeKind.DISPATCH_UPDATED, action="cleanup", deleted=result["deleted"])
        return result

    def dispatch_status(self, workspace_id: str, snapshot: Optional[GraphSnapshot] = None) -> dict[str, Any]:
        snapshot = snapshot or self.store.read_snapshot(workspace_id)
        ws = snapshot.workspace
        cfg = ws.dispatch
        return {
            "enabled": bool(cfg and cfg.enabled),
            "config": cfg.to_dict() if cfg else None,
            "git": self.dispatch.git_status(ws),
            "nodes": [
                {"node_id": n.id, "status": n.status.value, "dispatch": n.dispatch.to_dict()}
                for n in snapshot.nodes.values()
                if n.dispatch is not None
            ],
        }

    # ------------------------------------------------------------------
    # Sessions and events
    # ------------------------------------------------------------------

    def session_bind(self, workspace_id: str, session_id: str, node_id: Optional[str] = None) -> dict[str, Any]:
        """Bind *session_id* to the workspace; binding a node also moves the focus there."""
        if node_id is not None:
            focus = self.context_focus(workspace_id, node_id)["current_focus"]
        else:
            focus = self.store.read_snapshot(workspace_id).workspace.current_focus
        return self.sessions.bind(session_id, workspace_id, focus)

    def session_unbind(self, session_id: str) -> dict[str, Any]:
        return {"session_id": session_id, "unbound": self.sessions.unbind(session_id)}

    def session_status(self, session_id: str) -> dict[str, Any]:
        binding = self.sessions.get(session_id)
        if binding is None:
            raise NotFoundError("SESSION_NOT_FOUND", f"Session '{session_id}' is not bound")
        workspace_id = binding["workspace_id"]
        try:
            snapshot = self.store.read_snapshot(workspace_id)
        except NotFoundError:
            self.sessions.unbind(session_id)
            raise
        focus = snapshot.workspace.current_focus
        if binding.get("node_id") != focus:
            # the workspace record is the authority
            self.sessions.refresh_focus(workspace_id, focus)
            binding["node_id"] = focus
        node = snapshot.nodes.get(focus) if focus else None
        return {
            "binding": binding,
            "workspace": snapshot.workspace.summary(),
            "node": _node_summary(node) if node else None,
        }

    def events_recent(self, workspace_id: Optional[str] = None, limit: int = 50) -> dict[str, Any]:
        return {"events": self.events.recent(limit, workspace_id=workspace_id)}

    # ------------------------------------------------------------------
    # Transport contract
    # ------------------------------------------------------------------

    def _build_operations(self) -> dict[str, tuple[type[BaseModel], Callable[..., dict[str, Any]], str]]:
        return {
            "workspace_init": (rq.WorkspaceInitArgs, self.workspace_init, _NO_SCOPE),
            "workspace_get": (rq.EmptyArgs, self.workspace_get, _WORKSPACE),
            "workspace_list": (rq.WorkspaceListArgs, self.workspace_list, _NO_SCOPE),
            "workspace_archive": (rq.EmptyArgs, self.workspace_archive, _WORKSPACE),
            "workspace_restore": (rq.EmptyArgs, self.workspace_restore, _WORKSPACE),
            "workspace_delete": (rq.WorkspaceDeleteArgs, self.workspace_delete, _WORKSPACE),
            "workspace_update_rules": (rq.UpdateRulesArgs, self.workspace_update_rules, _WORKSPACE),
            "workspace_document": (rq.WorkspaceDocumentArgs, self.workspace_document, _WORKSPACE),
            "workspace_status": (rq.EmptyArgs, self.workspace_status, _WORKSPACE),
            "node_create": (rq.NodeCreateArgs, self.node_create, _WORKSPACE),
            "node_get": (rq.EmptyArgs, self.node_get, _NODE),
            "node_list": (rq.NodeListArgs, self.node_list, _WORKSPACE),
            "node_update": (rq.NodeUpdateArgs, self.node_update, _NODE),
            "node_move": (rq.NodeMoveArgs, self.node_move, _NODE),
            "node_delete": (rq.EmptyArgs, self.node_delete, _NODE),
            "node_transition": (rq.NodeTransitionArgs, self.node_transition, _NODE),
            "node_isolate": (rq.NodeIsolateArgs, self.node_isolate, _NODE),
            "node_reference": (rq.NodeReferenceArgs, self.node_reference, _NODE),
            "context_get": (rq.ContextGetArgs, self.context_get, _OPTIONAL_NODE),
            "context_focus": (rq.EmptyArgs, self.context_focus, _NODE),
            "log_append": (rq.LogAppendArgs, self.log_append, _NODE),
            "problem_update": (rq.ProblemUpdateArgs, self.problem_update, _NODE),
            "problem_clear": (rq.EmptyArgs, self.problem_clear, _NODE),
            "dispatch_enable": (rq.DispatchEnableArgs, self.dispatch_enable, _WORKSPACE),
            "dispatch_disable": (rq.DispatchDisableArgs, self.dispatch_disable, _WORKSPACE),
            "node_dispatch": (rq.EmptyArgs, self.node_dispatch, _NODE),
            "node_dispatch_complete": (rq.DispatchCompleteArgs, self.node_dispatch_complete, _NODE),
            "dispatch_test_result": (rq.DispatchTestResultArgs, self.dispatch_test_result, _NODE),
            "dispatch_cleanup": (rq.EmptyArgs, self.dispatch_cleanup, _WORKSPACE),
            "dispatch_status": (rq.EmptyArgs, self.dispatch_status, _WORKSPACE),
            "session_bind": (rq.SessionBindArgs, self.session_bind, _OPTIONAL_NODE),
            "session_unbind": (rq.SessionArgs, self.session_unbind, _NO_SCOPE),
            "session_status": (rq.SessionArgs, self.session_status, _NO_SCOPE),
            "memo_create": (rq.MemoCreateArgs, self.memo_create, _WORKSPACE),
            "memo_list": (rq.MemoListArgs, self.memo_list, _WORKSPACE),
            "memo_get": (rq.MemoArgs, self.memo_get, _WORKSPACE),
            "memo_update": (rq.MemoUpdateArgs, self.memo_update, _WORKSPACE),
            "memo_delete": (rq.MemoArgs, self.memo_delete, _WORKSPACE),
            "events_recent": (rq.EventsArgs, self.events_recent, _OPTIONAL_WORKSPACE),
        }

    @property
    def operations(self) -> list[str]:
        return sorted(self._operations)

    def call(
        self,
        operation: str,
        workspace_id: Optional[str] = None,
        node_id: Optional[str] = None,
        args: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Run one operation through the transport contract.

        Returns ``{"ok": True, "result": {...}}`` or
        ``{"ok": False, "error": {"code", "category", "message"}}``.
        """
        try:
            kwargs = self._prepare(operation, workspace_id, node_id, args)
            result = self._operations[operation][1](**kwargs)
        except WorkgraphError as exc:
            logger.info("{} failed: {}", operation, summarize_error(exc))
            return {"ok": False, "error": exc.to_dict()}
        logger.debug("{} ok (workspace={}, node={})", operation, workspace_id, node_id)
        return {"ok": True, "result": result}

    def _prepare(
        self,
        operation: str,
        workspace_id: Optional[str],
        node_id: Optional[str],
        args: Optional[dict[str, Any]],
    ) -> dict[str, Any]:
        entry = self._operations.get(operation)
        if entry is None:
            raise invalid_params(f"Unknown operation '{operation}'", operation=operation)
        model, _, scope = entry
        if args is not None and not isinstance(args, dict):
            raise invalid_params("'args' must be an object")
        try:
            parsed = model.model_validate(args or {})
        except ValidationError as exc:
            problems = [f"{'.'.join(str(p) for p in e['loc']) or 'args'}: {e['msg']}" for e in exc.errors()]
            raise invalid_params(f"Invalid arguments for {operation}: {'; '.join(problems)}", errors=problems) from None

        kwargs = parsed.model_dump()
        if scope in (_WORKSPACE, _NODE, _OPTIONAL_NODE):
            if not workspace_id:
                raise invalid_params(f"'{operation}' requires a workspace_id")
            kwargs["workspace_id"] = workspace_id
        elif scope == _OPTIONAL_WORKSPACE:
            kwargs["workspace_id"] = workspace_id
        if scope == _NODE:
            if not node_id:
                raise invalid_params(f"'{operation}' requires a node_id")
            kwargs["node_id"] = node_id
        elif scope == _OPTIONAL_NODE:
            kwargs["node_id"] = node_id
        return kwargs
