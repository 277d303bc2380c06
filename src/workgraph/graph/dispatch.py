"""Dispatch coordinator: hand execution nodes to an external worker.

Workspace-level configuration moves ``disabled -> enabled(no-git|git) ->
disabled``.  In git mode, enabling isolates the work on a process branch
(after saving a dirty tree on a timestamped backup branch) and disabling
waits for the caller to pick a merge strategy; the coordinator never picks
one itself.  Per node, ``dispatch`` records a start marker and
``complete`` records an end marker on success or rolls back to the start
marker on failure (git mode) / reports that manual recovery is needed
(no-git mode).

All methods run inside the caller's store transaction; git failures raise
and leave the persisted graph untouched.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Optional, Union

from loguru import logger

from ..constants import (
    BRANCH_PREFIX,
    DISPATCH_BACKUP_COMMIT_MESSAGE,
    DISPATCH_FAILURE_DEFAULT_CONCLUSION,
    DISPATCH_SUCCESS_COMMIT_TEMPLATE,
    MERGE_STRATEGIES,
)
from ..errors import ExternalFailureError, InvalidTransitionError, PreconditionFailedError
from ..utils import _compact_timestamp, _now_millis
from .journal import append_log, append_workspace_log
from .model import (
    IN_FLIGHT_DISPATCH_STATUSES,
    Actor,
    DispatchConfig,
    DispatchRecord,
    DispatchStatus,
    NodeKind,
    NodeRole,
    NodeStatus,
    Workspace,
)
from .state_machine import NodeStateMachine, TransitionAction
from .store import GraphTx
from .vcs import GitVersionControl, VersionControl

VersionControlFactory = Callable[[Path], VersionControl]

_MERGE_OPTION_DESCRIPTIONS = {
    "sequential": "Rebase and fast-forward: keep one commit per dispatched task",
    "squash": "Squash every dispatched change into a single commit",
    "cherry-pick": "Apply the changes to the working tree without committing",
    "skip": "Switch back to the original branch and keep the process branch",
}


def process_branch_name(workspace_id: str) -> str:
    return f"{BRANCH_PREFIX}/process/{workspace_id}"


def backup_branch_prefix(workspace_id: str) -> str:
    return f"{BRANCH_PREFIX}/backup/{workspace_id}"


class DispatchCoordinator:
    def __init__(
        self,
        state_machine: NodeStateMachine,
        vcs_factory: VersionControlFactory = GitVersionControl,
        state_dir: Optional[Path] = None,
    ) -> None:
        self.state_machine = state_machine
        self.vcs_factory = vcs_factory
        self.state_dir = state_dir

    # -- helpers ------------------------------------------------------------

    def _vcs(self, workspace: Workspace) -> VersionControl:
        return self.vcs_factory(Path(workspace.project_root or "."))

    def _require_enabled(self, workspace: Workspace) -> DispatchConfig:
        cfg = workspace.dispatch
        if cfg is None or not cfg.enabled:
            raise PreconditionFailedError(
                "DISPATCH_NOT_ENABLED", f"Dispatch mode is not enabled for workspace '{workspace.id}'"
            )
        return cfg

    def _require_git(self, workspace: Workspace) -> VersionControl:
        vcs = self._vcs(workspace)
        if not vcs.is_available():
            raise ExternalFailureError(
                "GIT_ENVIRONMENT_LOST",
                f"Workspace '{workspace.id}' dispatches in git mode but "
                f"'{workspace.project_root}' is no longer a git repository",
            )
        return vcs

    # -- workspace level ----------------------------------------------------

    def enable(
        self,
        tx: GraphTx,
        use_git: Optional[bool],
        default_mode: str,
        limits: dict[str, int],
        conflicting_workspace: Optional[str] = None,
    ) -> dict[str, Any]:
        """Turn dispatch mode on.

        Args:
            use_git: Explicit mode; ``None`` falls back to *default_mode*.
            default_mode: Configured default (``none``/``no-git`` or ``git``).
            limits: Worker limits (``timeout_ms``, ``max_retries``) to record.
            conflicting_workspace: Another workspace of the same project that
                is already dispatching in git mode, if any.
        """
        ws = tx.workspace
        if ws.dispatch is not None and ws.dispatch.enabled:
            raise PreconditionFailedError(
                "DISPATCH_ALREADY_ENABLED",
                "Dispatch mode is already enabled; disable it before switching modes",
            )
        if use_git is None:
            use_git = default_mode == "git"
        cfg = DispatchConfig(enabled=True, use_git=bool(use_git), limits=dict(limits))

        if cfg.use_git:
            vcs = self._vcs(ws)
            if not vcs.is_available():
                raise PreconditionFailedError(
                    "GIT_NOT_FOUND",
                    f"'{ws.project_root}' is not a git repository; enable dispatch with use_git=false",
                )
            if conflicting_workspace:
                raise PreconditionFailedError(
                    "DISPATCH_CONFLICT",
                    f"Workspace '{conflicting_workspace}' is already dispatching in this repository",
                    {"workspace_id": conflicting_workspace},
                )
            if self.state_dir is not None:
                vcs.ensure_excluded(self.state_dir)
            cfg.original_branch = vcs.current_branch()
            if vcs.has_uncommitted_changes():
                backup = f"{backup_branch_prefix(ws.id)}/{_compact_timestamp()}"
                vcs.create_branch(backup)
                vcs.commit(DISPATCH_BACKUP_COMMIT_MESSAGE, allow_empty=True)
                cfg.backup_branches.append(backup)
                logger.info("Saved uncommitted changes of {} on {}", ws.project_root, backup)
            # the process branch starts from the backup when one was made
            cfg.process_branch = process_branch_name(ws.id)
            vcs.create_branch(cfg.process_branch)

        ws.dispatch = cfg
        mode = "git" if cfg.use_git else "no-git"
        detail = f", process branch {cfg.process_branch}" if cfg.use_git else ""
        append_workspace_log(tx, f"Dispatch enabled ({mode}{detail})")
        logger.info("Dispatch enabled for {} ({})", ws.id, mode)
        return {"enabled": True, "config": cfg.to_dict()}

    def disable(
        self,
        tx: GraphTx,
        merge_strategy: Optional[str] = None,
        keep_backup_branch: bool = False,
        keep_process_branch: bool = False,
        commit_message: Optional[str] = None,
    ) -> dict[str, Any]:
        """Turn dispatch mode off.

        In git mode without *merge_strategy* nothing changes: the available
        options and the process branch's commits are returned instead.
        """
        ws = tx.workspace
        cfg = ws.dispatch
        if cfg is None or not cfg.enabled:
            return {"disabled": True, "already_disabled": True}

        in_flight = [
            n.id for n in tx.nodes.values()
            if n.dispatch is not None and n.dispatch.status in IN_FLIGHT_DISPATCH_STATUSES
        ]
        if in_flight:
            raise PreconditionFailedError(
                "DISPATCH_IN_PROGRESS",
                f"Cannot disable dispatch while nodes are executing or testing: {', '.join(in_flight)}",
                {"node_ids": in_flight},
            )

        result: dict[str, Any] = {"disabled": True, "use_git": cfg.use_git, "deleted_branches": []}
        if cfg.use_git:
            vcs = self._vcs(ws)
            if not vcs.is_available():
                if merge_strategy is None:
                    return {
                        "action_required": {
                            "type": "confirm_disable",
                            "message": "Git environment is gone; disabling can only clear the configuration",
                            "git_environment_lost": True,
                        },
                    }
                result["git_environment_lost"] = True
                result["message"] = "Git environment lost; dispatch configuration cleared"
            elif merge_strategy is None:
                return self._merge_choice(ws, cfg, vcs)
            else:
                if merge_strategy not in MERGE_STRATEGIES:
                    raise PreconditionFailedError(
                        "INVALID_PARAMS",
                        f"Unknown merge strategy '{merge_strategy}' (expected one of {', '.join(MERGE_STRATEGIES)})",
                    )
                message = commit_message or f"[workgraph] dispatch results of {ws.id}"
                vcs.merge(merge_strategy, cfg.process_branch or "", cfg.original_branch or "", message)
                deleted: list[str] = []
                if not keep_process_branch and merge_strategy != "skip" and cfg.process_branch:
                    if vcs.branch_exists(cfg.process_branch):
                        vcs.delete_branch(cfg.process_branch)
                        deleted.append(cfg.process_branch)
                if not keep_backup_branch:
                    for branch in cfg.backup_branches:
                        if vcs.branch_exists(branch):
                            vcs.delete_branch(branch)
                            deleted.append(branch)
                result.update(merge_strategy=merge_strategy, deleted_branches=deleted)
                result["message"] = f"Merged with strategy '{merge_strategy}'"
        else:
            result["message"] = "Dispatch disabled (no-git mode)"

        for node in tx.nodes.values():
            if node.dispatch is not None:
                node.dispatch = None
                node.touch()
        ws.dispatch = None
        append_workspace_log(tx, f"Dispatch disabled: {result['message']}")
        logger.info("Dispatch disabled for {}: {}", ws.id, result["message"])
        return result

    def _merge_choice(self, ws: Workspace, cfg: DispatchConfig, vcs: VersionControl) -> dict[str, Any]:
        commits: list[dict[str, str]] = []
        if cfg.original_branch and cfg.process_branch:
            commits = vcs.commits_between(cfg.original_branch, cfg.process_branch)
        backup = cfg.backup_branches[0] if cfg.backup_branches else None
        return {
            "action_required": {
                "type": "choose_merge_strategy",
                "message": "Choose how to bring the dispatched work back onto the original branch",
                "options": [
                    {"value": s, "description": _MERGE_OPTION_DESCRIPTIONS[s]} for s in MERGE_STRATEGIES
                ],
                "branch_options": {
                    "keep_backup_branch": {"default": False},
                    "keep_process_branch": {"default": False},
                },
            },
            "status": {
                "workspace_id": ws.id,
                "original_branch": cfg.original_branch,
                "process_branch": cfg.process_branch,
                "backup_branch": backup,
                "has_backup_changes": backup is not None,
                "process_commits": [f"{c['sha'][:7]} {c['message']}" for c in commits],
            },
        }

    def cleanup(self, tx: GraphTx) -> dict[str, Any]:
        """Delete leftover workspace branches; a no-op outside git repositories and in no-git mode."""
        ws = tx.workspace
        cfg = ws.dispatch
        if cfg is not None and cfg.enabled and not cfg.use_git:
            return {"deleted": [], "failed": [], "skipped": "no-git mode"}
        vcs = self._vcs(ws)
        if not vcs.is_available():
            return {"deleted": [], "failed": [], "skipped": "not a git repository"}

        current = vcs.current_branch()
        candidates = vcs.list_branches(f"{backup_branch_prefix(ws.id)}/*")
        process = process_branch_name(ws.id)
        if vcs.branch_exists(process):
            candidates.insert(0, process)

        deleted: list[str] = []
        failed: list[dict[str, str]] = []
        for branch in candidates:
            if branch == current:
                failed.append({"branch": branch, "error": "branch is checked out"})
                continue
            try:
                vcs.delete_branch(branch)
                deleted.append(branch)
            except ExternalFailureError as exc:
                logger.warning("Could not delete branch {}: {}", branch, exc.message)
                failed.append({"branch": branch, "error": exc.message})
        if cfg is not None:
            cfg.backup_branches = [b for b in cfg.backup_branches if b not in deleted]
        if deleted:
            append_workspace_log(tx, f"Dispatch branches deleted: {', '.join(deleted)}")
        return {"deleted": deleted, "failed": failed}

    def git_status(self, workspace: Workspace) -> Optional[dict[str, Any]]:
        cfg = workspace.dispatch
        if cfg is None or not cfg.use_git:
            return None
        vcs = self._vcs(workspace)
        if not vcs.is_available():
            return None
        current = vcs.current_branch()
        return {
            "current_branch": current,
            "has_uncommitted_changes": vcs.has_uncommitted_changes(),
            "is_process_branch": current == cfg.process_branch,
        }

    # -- node level ---------------------------------------------------------

    def dispatch_node(self, tx: GraphTx, node_id: str, actor: Union[Actor, str] = Actor.AUTOMATED) -> dict[str, Any]:
        ws = tx.workspace
        cfg = self._require_enabled(ws)
        vcs = self._require_git(ws) if cfg.use_git else None
        node = tx.node(node_id)
        if node.kind != NodeKind.EXECUTION:
            raise PreconditionFailedError("INVALID_NODE_TYPE", f"Only execution nodes can be dispatched ('{node.id}' is {node.kind.value})")
        if node.status not in (NodeStatus.PENDING, NodeStatus.IMPLEMENTING):
            raise InvalidTransitionError(
                "INVALID_NODE_STATUS",
                f"Node '{node.id}' must be pending or implementing to dispatch (is {node.status.value})",
            )
        if node.status == NodeStatus.PENDING:
            self.state_machine.transition(tx, node.id, TransitionAction.START, reason="dispatched", actor=actor)
        else:
            self.state_machine.guard.check_sibling_exclusivity(tx, node)

        if vcs is not None:
            if cfg.process_branch and vcs.current_branch() != cfg.process_branch:
                vcs.checkout(cfg.process_branch)
            start_marker = vcs.current_revision()
        else:
            start_marker = str(_now_millis())

        node.dispatch = DispatchRecord(start_marker=start_marker, status=DispatchStatus.EXECUTING)
        append_log(tx, node, f"Dispatched to worker (start marker {start_marker[:12]})", actor)
        timeout_ms = cfg.limits.get("timeout_ms")
        return {
            "node_id": node.id,
            "start_marker": start_marker,
            "use_git": cfg.use_git,
            "action_required": {
                "type": "dispatch_task",
                "workspace_id": ws.id,
                "node_id": node.id,
                "title": node.title,
                "requirement": node.requirement,
                "timeout_ms": timeout_ms,
                "max_retries": cfg.limits.get("max_retries"),
            },
        }

    def complete_node(
        self,
        tx: GraphTx,
        node_id: str,
        success: bool,
        conclusion: Optional[str] = None,
        actor: Union[Actor, str] = Actor.AUTOMATED,
    ) -> dict[str, Any]:
        ws = tx.workspace
        cfg = self._require_enabled(ws)
        vcs = self._require_git(ws) if cfg.use_git else None
        node = tx.node(node_id)
        record = node.dispatch
        if record is None or record.status != DispatchStatus.EXECUTING:
            raise PreconditionFailedError(
                "DISPATCH_NOT_EXECUTING",
                f"Node '{node.id}' has no executing dispatch to complete",
            )

        if success:
            self.state_machine.transition(
                tx, node.id, TransitionAction.COMPLETE, conclusion=conclusion, reason="dispatch succeeded", actor=actor
            )
            if vcs is not None:
                end_marker = vcs.commit(DISPATCH_SUCCESS_COMMIT_TEMPLATE.format(node_id=node.id, title=node.title))
            else:
                end_marker = str(_now_millis())
            record.end_marker = end_marker

            test_node = self._paired_validation_node(tx, node)
            result: dict[str, Any] = {"node_id": node.id, "success": True, "end_marker": end_marker}
            if test_node is not None:
                record.status = DispatchStatus.TESTING
                result.update(next_action="dispatch_test", test_node_id=test_node.id)
            else:
                record.status = DispatchStatus.PASSED
                result["next_action"] = "return_parent"
            append_log(tx, node, f"Dispatch finished (end marker {end_marker[:12]}), next: {result['next_action']}", actor)
            return result

        text = (conclusion or "").strip() or DISPATCH_FAILURE_DEFAULT_CONCLUSION
        self.state_machine.transition(
            tx, node.id, TransitionAction.FAIL, conclusion=text, reason="dispatch failed", actor=actor
        )
        record.status = DispatchStatus.FAILED
        result = {"node_id": node.id, "success": False, "next_action": "return_parent"}
        if vcs is not None and record.start_marker:
            vcs.reset_hard(record.start_marker)
            vcs.discard_untracked()
            result.update(rolled_back=True, reset_to=record.start_marker)
            append_log(tx, node, f"Rolled back to start marker {record.start_marker[:12]}", Actor.SYSTEM)
        else:
            result.update(rolled_back=False, manual_recovery_required=True)
            append_log(tx, node, "No automatic rollback in no-git mode; manual recovery required", Actor.SYSTEM)
        return result

    def record_test_result(
        self,
        tx: GraphTx,
        test_node_id: str,
        passed: bool,
        actor: Union[Actor, str] = Actor.AUTOMATED,
    ) -> dict[str, Any]:
        """Settle sibling dispatches waiting on *test_node_id*'s verdict."""
        self._require_enabled(tx.workspace)
        test_node = tx.node(test_node_id)
        status = DispatchStatus.PASSED if passed else DispatchStatus.FAILED
        settled: list[str] = []
        for sibling in tx.siblings_of(test_node):
            if sibling.dispatch is not None and sibling.dispatch.status == DispatchStatus.TESTING:
                sibling.dispatch.status = status
                sibling.touch()
                append_log(tx, sibling, f"Verification by {test_node.id}: {status.value}", actor)
                settled.append(sibling.id)
        verdict = "passed" if passed else "failed"
        append_log(tx, test_node, f"Verification {verdict} for {', '.join(settled) or 'no pending dispatch'}", actor)
        return {"test_node_id": test_node.id, "passed": passed, "settled": settled, "next_action": "return_parent"}

    def _paired_validation_node(self, tx: GraphTx, node):
        for sibling in tx.siblings_of(node):
            if (
                sibling.kind == NodeKind.EXECUTION
                and sibling.role == NodeRole.VALIDATION
                and sibling.status == NodeStatus.PENDING
            ):
                return sibling
        return None
