"""Data model for workspaces, nodes, memos, references and dispatch records.

Everything here is a plain dataclass serializable to YAML through
``to_dict`` / ``from_dict``.  The persisted record of one workspace is a
:class:`GraphSnapshot`; :func:`validate_snapshot_dict` performs the
structural checks run on every load.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from ..constants import (
    GRAPH_FORMAT_VERSION,
    MEMO_ID_PREFIX,
    MEMO_REFERENCE_SCHEME,
    NODE_ID_PREFIX,
    ROOT_NODE_ID,
    WORKSPACE_ID_PREFIX,
)
from ..errors import invalid_params
from ..utils import _generate_id, _now_iso, rules_fingerprint


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class NodeKind(str, Enum):
    """Planning nodes decompose work; execution nodes do it."""

    PLANNING = "planning"
    EXECUTION = "execution"


class NodeStatus(str, Enum):
    PENDING = "pending"
    # planning
    PLANNING = "planning"
    MONITORING = "monitoring"
    CANCELLED = "cancelled"
    # execution
    IMPLEMENTING = "implementing"
    VALIDATING = "validating"
    FAILED = "failed"
    # shared
    COMPLETED = "completed"


class NodeRole(str, Enum):
    INFO_COLLECTION = "info_collection"
    VALIDATION = "validation"
    SUMMARY = "summary"


class WorkspaceStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    ERROR = "error"


class ReferenceStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"


class TargetKind(str, Enum):
    NODE = "node"
    DOCUMENT = "document"
    MEMO = "memo"


class Actor(str, Enum):
    HUMAN = "human"
    AUTOMATED = "automated"
    SYSTEM = "system"


class DispatchStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    TESTING = "testing"
    PASSED = "passed"
    FAILED = "failed"


STATUSES_BY_KIND: dict[NodeKind, frozenset[NodeStatus]] = {
    NodeKind.PLANNING: frozenset({
        NodeStatus.PENDING,
        NodeStatus.PLANNING,
        NodeStatus.MONITORING,
        NodeStatus.COMPLETED,
        NodeStatus.CANCELLED,
    }),
    NodeKind.EXECUTION: frozenset({
        NodeStatus.PENDING,
        NodeStatus.IMPLEMENTING,
        NodeStatus.VALIDATING,
        NodeStatus.COMPLETED,
        NodeStatus.FAILED,
    }),
}

TERMINAL_STATUSES = frozenset({NodeStatus.COMPLETED, NodeStatus.FAILED, NodeStatus.CANCELLED})
# Children in these states do not block completion of their planning parent.
SETTLED_STATUSES = frozenset({NodeStatus.COMPLETED, NodeStatus.CANCELLED})
ACTIVE_EXECUTION_STATUSES = frozenset({NodeStatus.IMPLEMENTING, NodeStatus.VALIDATING})
IN_FLIGHT_DISPATCH_STATUSES = frozenset({DispatchStatus.EXECUTING, DispatchStatus.TESTING})


def _coerce(enum_cls: type[Enum], raw: Any, default: Optional[Enum]) -> Any:
    if raw is None:
        return default
    if isinstance(raw, enum_cls):
        return raw
    try:
        return enum_cls(str(raw))
    except (ValueError, KeyError):
        return default


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return sorted(e.value for e in enum_cls)


def _check_array(data: dict[str, Any], key: str, item_type: type, item_name: str, prefix: str = "") -> list[str]:
    val = data.get(key)
    if val is None:
        return []
    if not isinstance(val, list):
        return [f"'{prefix}{key}' must be an array"]
    return [
        f"'{prefix}{key}[{i}]' must be {item_name}, got {type(item).__name__}"
        for i, item in enumerate(val)
        if not isinstance(item, item_type)
    ]


def parse_enum(enum_cls: type[Enum], raw: Any, name: str) -> Any:
    """Convert caller input to *enum_cls*, rejecting unknown values as ``INVALID_PARAMS``."""
    if isinstance(raw, enum_cls):
        return raw
    try:
        return enum_cls(raw)
    except ValueError:
        raise invalid_params(
            f"'{name}' must be one of {_enum_values(enum_cls)}, got '{raw}'", field=name
        ) from None


# ---------------------------------------------------------------------------
# Small records
# ---------------------------------------------------------------------------

@dataclass
class LogEntry:
    event: str
    actor: Actor = Actor.AUTOMATED
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp, "actor": self.actor.value, "event": self.event}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LogEntry":
        return cls(
            event=str(data.get("event", "")),
            actor=_coerce(Actor, data.get("actor"), Actor.AUTOMATED),
            timestamp=str(data.get("timestamp") or _now_iso()),
        )


@dataclass
class Reference:
    """A directed edge from a node to another node, a memo or a document path."""

    target: str
    target_kind: TargetKind = TargetKind.DOCUMENT
    description: str = ""
    status: ReferenceStatus = ReferenceStatus.ACTIVE
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    @property
    def is_active(self) -> bool:
        return self.status == ReferenceStatus.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "target_kind": self.target_kind.value,
            "description": self.description,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Reference":
        return cls(
            target=str(data.get("target", "")),
            target_kind=_coerce(TargetKind, data.get("target_kind"), TargetKind.DOCUMENT),
            description=str(data.get("description") or ""),
            status=_coerce(ReferenceStatus, data.get("status"), ReferenceStatus.ACTIVE),
            created_at=str(data.get("created_at") or _now_iso()),
            updated_at=str(data.get("updated_at") or _now_iso()),
        )


@dataclass
class ArchivedConclusion:
    """A prior conclusion preserved when a node leaves a terminal state."""

    conclusion: str
    status: NodeStatus
    action: str
    archived_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "conclusion": self.conclusion,
            "status": self.status.value,
            "action": self.action,
            "archived_at": self.archived_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ArchivedConclusion":
        return cls(
            conclusion=str(data.get("conclusion") or ""),
            status=_coerce(NodeStatus, data.get("status"), NodeStatus.COMPLETED),
            action=str(data.get("action") or "reopen"),
            archived_at=str(data.get("archived_at") or _now_iso()),
        )


@dataclass
class DispatchRecord:
    start_marker: Optional[str] = None
    end_marker: Optional[str] = None
    status: DispatchStatus = DispatchStatus.PENDING

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_marker": self.start_marker,
            "end_marker": self.end_marker,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DispatchRecord":
        return cls(
            start_marker=data.get("start_marker"),
            end_marker=data.get("end_marker"),
            status=_coerce(DispatchStatus, data.get("status"), DispatchStatus.PENDING),
        )


@dataclass
class DispatchConfig:
    enabled: bool = True
    use_git: bool = False
    enabled_at: str = field(default_factory=_now_iso)
    original_branch: Optional[str] = None
    process_branch: Optional[str] = None
    backup_branches: list[str] = field(default_factory=list)
    limits: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "use_git": self.use_git,
            "enabled_at": self.enabled_at,
            "original_branch": self.original_branch,
            "process_branch": self.process_branch,
            "backup_branches": list(self.backup_branches),
            "limits": dict(self.limits),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DispatchConfig":
        return cls(
            enabled=bool(data.get("enabled", True)),
            use_git=bool(data.get("use_git", False)),
            enabled_at=str(data.get("enabled_at") or _now_iso()),
            original_branch=data.get("original_branch"),
            process_branch=data.get("process_branch"),
            backup_branches=list(data.get("backup_branches") or []),
            limits=dict(data.get("limits") or {}),
        )


def find_reference(refs: list[Reference], target: str) -> Optional[Reference]:
    """The reference to *target* in *refs*, active or expired."""
    for ref in refs:
        if ref.target == target:
            return ref
    return None


# ---------------------------------------------------------------------------
# Node
# ---------------------------------------------------------------------------

def new_node_id() -> str:
    return _generate_id(NODE_ID_PREFIX)


@dataclass
class Node:
    """A task unit inside exactly one workspace."""

    id: str = field(default_factory=new_node_id)
    title: str = ""
    kind: NodeKind = NodeKind.EXECUTION
    status: NodeStatus = NodeStatus.PENDING
    role: Optional[NodeRole] = None

    # Hierarchy
    parent_id: Optional[str] = None
    children: list[str] = field(default_factory=list)
    isolate: bool = False

    # Content
    requirement: str = ""
    note: str = ""
    conclusion: Optional[str] = None
    conclusion_history: list[ArchivedConclusion] = field(default_factory=list)
    problem: str = ""
    next_step: str = ""

    references: list[Reference] = field(default_factory=list)
    log: list[LogEntry] = field(default_factory=list)
    dispatch: Optional[DispatchRecord] = None

    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict for YAML persistence."""
        return {
            "id": self.id,
            "title": self.title,
            "kind": self.kind.value,
            "status": self.status.value,
            "role": self.role.value if self.role else None,
            "parent_id": self.parent_id,
            "children": list(self.children),
            "isolate": self.isolate,
            "requirement": self.requirement,
            "note": self.note,
            "conclusion": self.conclusion,
            "conclusion_history": [c.to_dict() for c in self.conclusion_history],
            "problem": self.problem,
            "next_step": self.next_step,
            "references": [r.to_dict() for r in self.references],
            "log": [e.to_dict() for e in self.log],
            "dispatch": self.dispatch.to_dict() if self.dispatch else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Node":
        """Deserialize from a plain dict, coercing enums gracefully."""
        dispatch_raw = data.get("dispatch")
        return cls(
            id=str(data.get("id") or new_node_id()),
            title=str(data.get("title") or ""),
            kind=_coerce(NodeKind, data.get("kind"), NodeKind.EXECUTION),
            status=_coerce(NodeStatus, data.get("status"), NodeStatus.PENDING),
            role=_coerce(NodeRole, data.get("role"), None),
            parent_id=data.get("parent_id"),
            children=list(data.get("children") or []),
            isolate=bool(data.get("isolate", False)),
            requirement=str(data.get("requirement") or ""),
            note=str(data.get("note") or ""),
            conclusion=data.get("conclusion"),
            conclusion_history=[
                ArchivedConclusion.from_dict(c) for c in data.get("conclusion_history") or []
            ],
            problem=str(data.get("problem") or ""),
            next_step=str(data.get("next_step") or ""),
            references=[Reference.from_dict(r) for r in data.get("references") or []],
            log=[LogEntry.from_dict(e) for e in data.get("log") or []],
            dispatch=DispatchRecord.from_dict(dispatch_raw) if isinstance(dispatch_raw, dict) else None,
            created_at=str(data.get("created_at") or _now_iso()),
            updated_at=str(data.get("updated_at") or _now_iso()),
        )

    @classmethod
    def validate_dict(cls, data: Any) -> list[str]:
        """Lightweight validation of a node dict.

        Returns a list of error strings (empty = valid).
        """
        if not isinstance(data, dict):
            return ["Expected a dict"]
        errors: list[str] = []
        node_id = data.get("id")
        if not isinstance(node_id, str) or not node_id:
            errors.append("'id' is required and must be a non-empty string")
        kind = data.get("kind")
        if kind not in {e.value for e in NodeKind}:
            errors.append(f"'kind' must be one of {_enum_values(NodeKind)}, got '{kind}'")
        else:
            allowed = {s.value for s in STATUSES_BY_KIND[NodeKind(kind)]}
            if data.get("status") not in allowed:
                errors.append(f"'status' must be one of {sorted(allowed)} for {kind} nodes, got '{data.get('status')}'")
        role = data.get("role")
        if role is not None and role not in {e.value for e in NodeRole}:
            errors.append(f"'role' must be one of {_enum_values(NodeRole)} or null, got '{role}'")
        errors.extend(_check_array(data, "children", str, "a string"))
        for list_field in ("references", "log", "conclusion_history"):
            errors.extend(_check_array(data, list_field, dict, "an object"))
        if kind == NodeKind.EXECUTION.value and data.get("children"):
            errors.append("execution nodes cannot have children")
        dispatch = data.get("dispatch")
        if dispatch is not None:
            if not isinstance(dispatch, dict):
                errors.append("'dispatch' must be an object or null")
            elif dispatch.get("status") not in {e.value for e in DispatchStatus}:
                errors.append(f"'dispatch.status' must be one of {_enum_values(DispatchStatus)}")
        return errors

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def touch(self) -> None:
        """Bump ``updated_at`` to now."""
        self.updated_at = _now_iso()

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def active_documents(self) -> list[dict[str, str]]:
        return [
            {"path": r.target, "description": r.description}
            for r in self.references
            if r.is_active and r.target_kind == TargetKind.DOCUMENT
        ]


# ---------------------------------------------------------------------------
# Memo
# ---------------------------------------------------------------------------

def new_memo_id() -> str:
    return _generate_id(MEMO_ID_PREFIX)


def memo_reference(memo_id: str) -> str:
    """Reference target for *memo_id*, e.g. ``memo://memo-1a2b3c4d``."""
    return f"{MEMO_REFERENCE_SCHEME}{memo_id}"


@dataclass
class Memo:
    """A free-form draft kept beside the node tree (findings, notes, discussion)."""

    id: str = field(default_factory=new_memo_id)
    title: str = ""
    summary: str = ""
    content: str = ""
    tags: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "summary": self.summary,
            "content": self.content,
            "tags": list(self.tags),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Memo":
        return cls(
            id=str(data.get("id") or new_memo_id()),
            title=str(data.get("title") or ""),
            summary=str(data.get("summary") or ""),
            content=str(data.get("content") or ""),
            tags=[str(t) for t in data.get("tags") or []],
            created_at=str(data.get("created_at") or _now_iso()),
            updated_at=str(data.get("updated_at") or _now_iso()),
        )

    def list_item(self) -> dict[str, Any]:
        """Listing shape: everything but the content, plus its length."""
        item = self.to_dict()
        item["content_length"] = len(item.pop("content"))
        return item


# ---------------------------------------------------------------------------
# Workspace
# ---------------------------------------------------------------------------

def new_workspace_id() -> str:
    return _generate_id(WORKSPACE_ID_PREFIX)


@dataclass
class Workspace:
    """Root container: rules, documents, focus pointer and dispatch config."""

    id: str = field(default_factory=new_workspace_id)
    name: str = ""
    goal: str = ""
    status: WorkspaceStatus = WorkspaceStatus.ACTIVE
    project_root: Optional[str] = None
    rules: list[str] = field(default_factory=list)
    rules_fingerprint: str = ""
    documents: list[Reference] = field(default_factory=list)
    current_focus: Optional[str] = None
    dispatch: Optional[DispatchConfig] = None
    memos: dict[str, Memo] = field(default_factory=dict)
    log: list[LogEntry] = field(default_factory=list)
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def set_rules(self, rules: list[str]) -> None:
        """Replace the rule list and recompute its fingerprint in one step."""
        self.rules = list(rules)
        self.rules_fingerprint = rules_fingerprint(self.rules)
        self.touch()

    def touch(self) -> None:
        self.updated_at = _now_iso()

    def active_documents(self) -> list[dict[str, str]]:
        return [{"path": d.target, "description": d.description} for d in self.documents if d.is_active]

    def to_dict(self) -> dict[str, Any]:
        # current_focus and rules_fingerprint live at the top of the snapshot
        return {
            "id": self.id,
            "name": self.name,
            "goal": self.goal,
            "status": self.status.value,
            "project_root": self.project_root,
            "rules": list(self.rules),
            "documents": [d.to_dict() for d in self.documents],
            "dispatch": self.dispatch.to_dict() if self.dispatch else None,
            "memos": {memo_id: memo.to_dict() for memo_id, memo in self.memos.items()},
            "log": [e.to_dict() for e in self.log],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        current_focus: Optional[str] = None,
        fingerprint: Optional[str] = None,
    ) -> "Workspace":
        rules = [str(r) for r in data.get("rules") or []]
        dispatch_raw = data.get("dispatch")
        return cls(
            id=str(data.get("id") or new_workspace_id()),
            name=str(data.get("name") or ""),
            goal=str(data.get("goal") or ""),
            status=_coerce(WorkspaceStatus, data.get("status"), WorkspaceStatus.ACTIVE),
            project_root=data.get("project_root"),
            rules=rules,
            rules_fingerprint=fingerprint if fingerprint is not None else rules_fingerprint(rules),
            documents=[Reference.from_dict(d) for d in data.get("documents") or []],
            current_focus=current_focus,
            dispatch=DispatchConfig.from_dict(dispatch_raw) if isinstance(dispatch_raw, dict) else None,
            memos={str(k): Memo.from_dict(v) for k, v in (data.get("memos") or {}).items()},
            log=[LogEntry.from_dict(e) for e in data.get("log") or []],
            created_at=str(data.get("created_at") or _now_iso()),
            updated_at=str(data.get("updated_at") or _now_iso()),
        )

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "goal": self.goal,
            "status": self.status.value,
            "rules_fingerprint": self.rules_fingerprint,
            "current_focus": self.current_focus,
            "dispatch_enabled": bool(self.dispatch and self.dispatch.enabled),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------

@dataclass
class GraphSnapshot:
    """The complete persisted record of one workspace."""

    workspace: Workspace
    nodes: dict[str, Node] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": GRAPH_FORMAT_VERSION,
            "workspace": self.workspace.to_dict(),
            "current_focus": self.workspace.current_focus,
            "rules_fingerprint": self.workspace.rules_fingerprint,
            "nodes": {node_id: node.to_dict() for node_id, node in self.nodes.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GraphSnapshot":
        workspace = Workspace.from_dict(
            data.get("workspace") or {},
            current_focus=data.get("current_focus"),
            fingerprint=data.get("rules_fingerprint"),
        )
        nodes = {str(k): Node.from_dict(v) for k, v in (data.get("nodes") or {}).items()}
        return cls(workspace=workspace, nodes=nodes)

    @property
    def root(self) -> Node:
        return self.nodes[ROOT_NODE_ID]


def validate_snapshot_dict(data: Any) -> list[str]:
    """Structural validation of a persisted workspace record.

    Checks node shapes, the single root, parent/child agreement, acyclicity,
    the focus pointer and the rules fingerprint.  Returns error strings.
    """
    if not isinstance(data, dict):
        return ["Expected a dict"]
    errors: list[str] = []
    workspace = data.get("workspace")
    if not isinstance(workspace, dict) or not workspace.get("id"):
        errors.append("'workspace' must be an object with an 'id'")
        workspace = {}
    if workspace.get("status") not in {e.value for e in WorkspaceStatus}:
        errors.append(f"'workspace.status' must be one of {_enum_values(WorkspaceStatus)}")
    for list_field in ("documents", "log"):
        errors.extend(_check_array(workspace, list_field, dict, "an object", prefix="workspace."))
    if workspace.get("dispatch") is not None and not isinstance(workspace.get("dispatch"), dict):
        errors.append("'workspace.dispatch' must be an object or null")
    memos = workspace.get("memos")
    if memos is not None:
        if not isinstance(memos, dict):
            errors.append("'workspace.memos' must be an object")
        else:
            for memo_id, memo in memos.items():
                if not isinstance(memo, dict) or memo.get("id") != memo_id:
                    errors.append(f"'workspace.memos.{memo_id}' must be an object whose id matches its key")
                elif memo.get("tags") is not None and not isinstance(memo.get("tags"), list):
                    errors.append(f"'workspace.memos.{memo_id}.tags' must be an array")
    rules = workspace.get("rules") or []
    if not isinstance(rules, list):
        errors.append("'workspace.rules' must be an array")
    elif data.get("rules_fingerprint", "") != rules_fingerprint(str(r) for r in rules):
        errors.append("'rules_fingerprint' does not match the rule list")

    nodes = data.get("nodes")
    if not isinstance(nodes, dict) or not nodes:
        errors.append("'nodes' must be a non-empty object")
        return errors

    for key, raw in nodes.items():
        for err in Node.validate_dict(raw):
            errors.append(f"node '{key}': {err}")
        if isinstance(raw, dict) and raw.get("id") != key:
            errors.append(f"node '{key}': id '{raw.get('id')}' does not match its key")
    if errors:
        return errors

    roots = [k for k, n in nodes.items() if n.get("parent_id") is None]
    if roots != [ROOT_NODE_ID]:
        errors.append(f"expected exactly one root node '{ROOT_NODE_ID}', found {sorted(roots)}")
    for key, raw in nodes.items():
        parent_id = raw.get("parent_id")
        if parent_id is not None:
            parent = nodes.get(parent_id)
            if parent is None:
                errors.append(f"node '{key}': parent '{parent_id}' does not exist")
            elif key not in (parent.get("children") or []):
                errors.append(f"node '{key}': not listed among children of '{parent_id}'")
        for child_id in raw.get("children") or []:
            child = nodes.get(child_id)
            if child is None or child.get("parent_id") != key:
                errors.append(f"node '{key}': child '{child_id}' is missing or has another parent")
        # a node cannot be its own ancestor
        seen = {key}
        cur = parent_id
        while cur is not None and cur in nodes:
            if cur in seen:
                errors.append(f"node '{key}': ancestor cycle through '{cur}'")
                break
            seen.add(cur)
            cur = nodes[cur].get("parent_id")

    focus = data.get("current_focus")
    if focus is not None and focus not in nodes:
        errors.append(f"'current_focus' points at missing node '{focus}'")
    return errors
