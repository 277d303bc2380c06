"""Node state machine: legal transitions per node kind and their side effects.

Execution nodes::

    pending --start--> implementing --submit--> validating
    implementing|validating --complete--> completed
    implementing|validating --fail--> failed --retry--> implementing
    completed --reopen--> implementing

Planning nodes::

    pending --start--> planning --(first child)--> monitoring
    planning|monitoring --complete--> completed   (all children settled)
    planning|monitoring --cancel--> cancelled
    completed|cancelled --reopen--> planning (monitoring when it has children)

After every transition the registered post-transition hooks run; the default
hook walks the ancestor chain so no active execution node ever sits under a
dormant or closed planning ancestor.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Union

from loguru import logger

from ..errors import InvalidTransitionError, PreconditionFailedError
from .guard import ConcurrencyGuard
from .journal import append_log
from .model import (
    ACTIVE_EXECUTION_STATUSES,
    SETTLED_STATUSES,
    Actor,
    ArchivedConclusion,
    Node,
    NodeKind,
    NodeStatus,
    parse_enum,
)
from .store import GraphTx


class TransitionAction(str, Enum):
    START = "start"
    SUBMIT = "submit"
    COMPLETE = "complete"
    FAIL = "fail"
    RETRY = "retry"
    REOPEN = "reopen"
    CANCEL = "cancel"


# ---------------------------------------------------------------------------
# Valid transitions
# ---------------------------------------------------------------------------

_EXECUTION_TRANSITIONS: dict[NodeStatus, dict[TransitionAction, NodeStatus]] = {
    NodeStatus.PENDING: {TransitionAction.START: NodeStatus.IMPLEMENTING},
    NodeStatus.IMPLEMENTING: {
        TransitionAction.SUBMIT: NodeStatus.VALIDATING,
        TransitionAction.COMPLETE: NodeStatus.COMPLETED,
        TransitionAction.FAIL: NodeStatus.FAILED,
    },
    NodeStatus.VALIDATING: {
        TransitionAction.COMPLETE: NodeStatus.COMPLETED,
        TransitionAction.FAIL: NodeStatus.FAILED,
    },
    NodeStatus.FAILED: {TransitionAction.RETRY: NodeStatus.IMPLEMENTING},
    NodeStatus.COMPLETED: {TransitionAction.REOPEN: NodeStatus.IMPLEMENTING},
}

_PLANNING_TRANSITIONS: dict[NodeStatus, dict[TransitionAction, NodeStatus]] = {
    NodeStatus.PENDING: {TransitionAction.START: NodeStatus.PLANNING},
    NodeStatus.PLANNING: {
        TransitionAction.COMPLETE: NodeStatus.COMPLETED,
        TransitionAction.CANCEL: NodeStatus.CANCELLED,
    },
    NodeStatus.MONITORING: {
        TransitionAction.COMPLETE: NodeStatus.COMPLETED,
        TransitionAction.CANCEL: NodeStatus.CANCELLED,
    },
    # reopen target is adjusted to monitoring when the node has children
    NodeStatus.COMPLETED: {TransitionAction.REOPEN: NodeStatus.PLANNING},
    NodeStatus.CANCELLED: {TransitionAction.REOPEN: NodeStatus.PLANNING},
}

_TRANSITIONS_BY_KIND = {
    NodeKind.EXECUTION: _EXECUTION_TRANSITIONS,
    NodeKind.PLANNING: _PLANNING_TRANSITIONS,
}

CONCLUSION_REQUIRED_ACTIONS = frozenset({
    TransitionAction.COMPLETE,
    TransitionAction.FAIL,
    TransitionAction.CANCEL,
})
ARCHIVING_ACTIONS = frozenset({TransitionAction.REOPEN, TransitionAction.RETRY})
CASCADING_ACTIONS = frozenset({TransitionAction.START, TransitionAction.RETRY, TransitionAction.REOPEN})


def allowed_actions(node: Node) -> list[str]:
    return [a.value for a in _TRANSITIONS_BY_KIND[node.kind].get(node.status, {})]


@dataclass
class TransitionResult:
    node_id: str
    action: TransitionAction
    previous_status: NodeStatus
    current_status: NodeStatus
    conclusion: Optional[str] = None
    archived_conclusion: Optional[str] = None
    cascaded: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "action": self.action.value,
            "previous_status": self.previous_status.value,
            "current_status": self.current_status.value,
            "conclusion": self.conclusion,
            "archived_conclusion": self.archived_conclusion,
            "cascaded": list(self.cascaded),
        }


PostTransitionHook = Callable[[GraphTx, Node, TransitionResult, Actor], list[dict[str, Any]]]


def archive_conclusion(tx: GraphTx, node: Node, action: str, actor: Union[Actor, str]) -> Optional[str]:
    """Move the active conclusion into the node's history and clear it.

    The archived text is also quoted in the node log so the history stays
    visible to readers of the log alone.
    """
    prior = node.conclusion
    if not prior:
        node.conclusion = None
        return None
    node.conclusion_history.append(ArchivedConclusion(conclusion=prior, status=node.status, action=action))
    node.conclusion = None
    append_log(tx, node, f'Archived prior conclusion ({node.status.value}): "{prior}"', actor)
    return prior


def cascade_ancestors(tx: GraphTx, node: Node, result: TransitionResult, actor: Actor) -> list[dict[str, Any]]:
    """Wake up the ancestor chain after an execution node starts, retries or reopens.

    ``pending``/``planning`` ancestors advance to ``monitoring``; closed
    (``completed``/``cancelled``) ancestors are reopened into ``monitoring``
    with their conclusions archived.
    """
    if node.kind != NodeKind.EXECUTION or result.action not in CASCADING_ACTIONS:
        return []
    changes: list[dict[str, Any]] = []
    for ancestor in tx.ancestors_of(node):
        previous = ancestor.status
        if previous in (NodeStatus.PENDING, NodeStatus.PLANNING):
            ancestor.status = NodeStatus.MONITORING
            append_log(
                tx,
                ancestor,
                f"Cascade: {previous.value} -> monitoring (descendant {node.id} {result.action.value})",
                Actor.SYSTEM,
            )
        elif previous in SETTLED_STATUSES:
            archive_conclusion(tx, ancestor, "cascade_reopen", Actor.SYSTEM)
            ancestor.status = NodeStatus.MONITORING
            append_log(
                tx,
                ancestor,
                f"Cascade: reopened {previous.value} -> monitoring (descendant {node.id} {result.action.value})",
                Actor.SYSTEM,
            )
        else:
            continue
        changes.append({"node_id": ancestor.id, "from": previous.value, "to": ancestor.status.value})
    if changes:
        logger.debug("Cascade from {} updated {} ancestor(s)", node.id, len(changes))
    return changes


class NodeStateMachine:
    """Validate and apply node transitions inside a store transaction."""

    def __init__(
        self,
        guard: Optional[ConcurrencyGuard] = None,
        hooks: Optional[list[PostTransitionHook]] = None,
    ) -> None:
        self.guard = guard or ConcurrencyGuard()
        self.hooks: list[PostTransitionHook] = list(hooks) if hooks is not None else [cascade_ancestors]

    def target_status(self, node: Node, action: TransitionAction) -> NodeStatus:
        target = _TRANSITIONS_BY_KIND[node.kind].get(node.status, {}).get(action)
        if target is None:
            raise InvalidTransitionError(
                "INVALID_TRANSITION",
                f"Cannot {action.value} {node.kind.value} node '{node.id}' in status "
                f"'{node.status.value}' (allowed: {', '.join(allowed_actions(node)) or 'none'})",
                {"status": node.status.value, "action": action.value, "allowed": allowed_actions(node)},
            )
        if node.kind == NodeKind.PLANNING and action == TransitionAction.REOPEN and node.children:
            return NodeStatus.MONITORING
        return target

    def _check_children_settled(self, tx: GraphTx, node: Node) -> None:
        outstanding = [c for c in tx.children_of(node) if c.status not in SETTLED_STATUSES]
        if outstanding:
            ids = [c.id for c in outstanding]
            raise PreconditionFailedError(
                "INCOMPLETE_CHILDREN",
                f"Cannot complete '{node.id}': children not completed or cancelled: "
                + ", ".join(f"{c.id} ({c.status.value})" for c in outstanding),
                {"outstanding": ids},
            )

    def transition(
        self,
        tx: GraphTx,
        node_id: str,
        action: Union[TransitionAction, str],
        *,
        conclusion: Optional[str] = None,
        reason: Optional[str] = None,
        actor: Union[Actor, str] = Actor.AUTOMATED,
    ) -> TransitionResult:
        """Apply *action* to a node.

        Raises:
            NotFoundError: unknown node.
            PreconditionFailedError: missing conclusion, busy sibling or
                unsettled children.
            InvalidTransitionError: the action is not legal from the node's status.
        """
        action = parse_enum(TransitionAction, action, "action")
        actor = parse_enum(Actor, actor, "actor")
        node = tx.node(node_id)

        text = (conclusion or "").strip()
        if action in CONCLUSION_REQUIRED_ACTIONS and not text:
            raise PreconditionFailedError(
                "CONCLUSION_REQUIRED",
                f"'{action.value}' requires a non-empty conclusion",
            )

        target = self.target_status(node, action)
        if target in ACTIVE_EXECUTION_STATUSES and node.status not in ACTIVE_EXECUTION_STATUSES:
            self.guard.check_sibling_exclusivity(tx, node)
        if node.kind == NodeKind.PLANNING and action == TransitionAction.COMPLETE:
            self._check_children_settled(tx, node)

        previous = node.status
        result = TransitionResult(node_id=node.id, action=action, previous_status=previous, current_status=target)

        if action in ARCHIVING_ACTIONS:
            result.archived_conclusion = archive_conclusion(tx, node, action.value, actor)
        node.status = target
        if action in CONCLUSION_REQUIRED_ACTIONS:
            node.conclusion = text
            result.conclusion = text
        if action == TransitionAction.COMPLETE:
            node.problem = ""
            node.next_step = ""

        event = f"{action.value}: {previous.value} -> {target.value}"
        if reason:
            event += f" ({reason})"
        if text and action in CONCLUSION_REQUIRED_ACTIONS:
            event += f". Conclusion: {text}"
        append_log(tx, node, event, actor)

        for hook in self.hooks:
            result.cascaded.extend(hook(tx, node, result, actor))
        logger.info("Node {} {}: {} -> {}", node.id, action.value, previous.value, target.value)
        return result

    def on_child_attached(self, tx: GraphTx, parent: Node, child: Node) -> Optional[dict[str, Any]]:
        """Advance a planning parent to ``monitoring`` when it gains its first child."""
        if parent.kind != NodeKind.PLANNING:
            return None
        if parent.status not in (NodeStatus.PENDING, NodeStatus.PLANNING):
            return None
        previous = parent.status
        parent.status = NodeStatus.MONITORING
        append_log(tx, parent, f"{previous.value} -> monitoring (child {child.id} added)", Actor.SYSTEM)
        return {"node_id": parent.id, "from": previous.value, "to": parent.status.value}
