"""Pydantic models for operation argument bags."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

ActorName = Literal["human", "automated", "system"]


class _Args(BaseModel):
    model_config = ConfigDict(extra="forbid")


class WorkspaceInitArgs(_Args):
    """Create a workspace with its root planning node."""

    name: str = Field(min_length=1)
    goal: str = Field(min_length=1)
    rules: list[str] = Field(default_factory=list)
    documents: list[str] = Field(default_factory=list)
    project_root: Optional[str] = None


class WorkspaceListArgs(_Args):
    """Filter the workspace index."""

    status: Optional[Literal["active", "archived", "error", "all"]] = "all"


class WorkspaceDeleteArgs(_Args):
    """Delete a workspace."""

    force: bool = False


class UpdateRulesArgs(_Args):
    """Add, remove or replace workspace rules."""

    action: Literal["add", "remove", "replace"]
    rule: Optional[str] = None
    rules: Optional[list[str]] = None


class WorkspaceDocumentArgs(_Args):
    """Manage a workspace-level document reference."""

    action: Literal["add", "remove", "expire", "activate"]
    path: str = Field(min_length=1)
    description: str = ""


class NodeCreateArgs(_Args):
    """Create a child node under a planning parent."""

    parent_id: str
    kind: Literal["planning", "execution"]
    title: str = Field(min_length=1)
    requirement: str = ""
    note: str = ""
    role: Optional[Literal["info_collection", "validation", "summary"]] = None
    documents: list[str] = Field(default_factory=list)
    rules_hash: Optional[str] = None


class NodeListArgs(_Args):
    """Render the node tree from a starting node."""

    root_id: Optional[str] = None
    depth: Optional[int] = Field(default=None, ge=0)


class NodeUpdateArgs(_Args):
    """Edit descriptive fields of a node."""

    title: Optional[str] = None
    requirement: Optional[str] = None
    note: Optional[str] = None


class NodeMoveArgs(_Args):
    """Move a node under another planning node."""

    new_parent_id: str
    rules_hash: Optional[str] = None


class NodeTransitionArgs(_Args):
    """Apply a state-machine action."""

    action: Literal["start", "submit", "complete", "fail", "retry", "reopen", "cancel"]
    conclusion: Optional[str] = None
    reason: Optional[str] = None
    actor: ActorName = "automated"


class NodeIsolateArgs(_Args):
    """Toggle ancestor-context isolation."""

    isolate: bool


class NodeReferenceArgs(_Args):
    """Run a reference ledger action."""

    action: Literal["add", "remove", "expire", "activate"]
    target: str = Field(min_length=1)
    description: str = ""


class ContextGetArgs(_Args):
    """Assemble the focused context."""

    include_log: bool = True
    include_problem: bool = True
    max_log_entries: Optional[int] = Field(default=None, ge=0)
    reverse_log: bool = False


class LogAppendArgs(_Args):
    """Append a free-form log entry."""

    event: str = Field(min_length=1)
    actor: ActorName = "automated"


class ProblemUpdateArgs(_Args):
    """Record the node's current problem and next step."""

    problem: str = ""
    next_step: str = ""


class DispatchEnableArgs(_Args):
    """Turn dispatch mode on."""

    use_git: Optional[bool] = None


class DispatchDisableArgs(_Args):
    """Turn dispatch mode off (git mode needs a merge strategy)."""

    merge_strategy: Optional[Literal["sequential", "squash", "cherry-pick", "skip"]] = None
    keep_backup_branch: bool = False
    keep_process_branch: bool = False
    commit_message: Optional[str] = None


class DispatchCompleteArgs(_Args):
    """Report the outcome of a dispatched node."""

    success: bool
    conclusion: Optional[str] = None


class DispatchTestResultArgs(_Args):
    """Report the verdict of a validation node."""

    passed: bool


class MemoCreateArgs(_Args):
    """Create a workspace memo."""

    title: str = Field(min_length=1)
    summary: str = ""
    content: str = ""
    tags: list[str] = Field(default_factory=list)


class MemoListArgs(_Args):
    """List memos, optionally keeping those carrying any of *tags*."""

    tags: Optional[list[str]] = None


class MemoArgs(_Args):
    memo_id: str = Field(min_length=1)


class MemoUpdateArgs(_Args):
    """Edit a memo; *tags* replaces the whole tag list."""

    memo_id: str = Field(min_length=1)
    title: Optional[str] = None
    summary: Optional[str] = None
    content: Optional[str] = None
    tags: Optional[list[str]] = None


class SessionBindArgs(_Args):
    """Bind an external session to a workspace (and optionally a node)."""

    session_id: str = Field(min_length=1)


class SessionArgs(_Args):
    """Identify an external session."""

    session_id: str = Field(min_length=1)


class EventsArgs(_Args):
    """Read recent change events."""

    limit: int = Field(default=50, ge=1, le=1000)


class EmptyArgs(_Args):
    """No arguments."""
