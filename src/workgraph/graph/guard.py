"""Advisory precondition checks run before a mutating operation proceeds.

These are check-then-act validations, not locks: exclusive access to a
workspace is held by the store's transaction for the whole operation.
"""

from __future__ import annotations

from typing import Optional

from loguru import logger

from ..errors import PreconditionFailedError
from .model import ACTIVE_EXECUTION_STATUSES, Node, NodeKind, Workspace, WorkspaceStatus
from .store import GraphTx


class ConcurrencyGuard:
    def check_sibling_exclusivity(self, tx: GraphTx, node: Node) -> None:
        """Reject starting *node* while a sibling execution node is in flight.

        Only siblings (same parent) are considered; execution under a
        different parent may proceed concurrently.
        """
        if node.kind != NodeKind.EXECUTION:
            return
        for sibling in tx.siblings_of(node):
            if sibling.kind == NodeKind.EXECUTION and sibling.status in ACTIVE_EXECUTION_STATUSES:
                logger.info(
                    "Refusing to start {}: sibling {} is {}", node.id, sibling.id, sibling.status.value
                )
                raise PreconditionFailedError(
                    "SIBLING_ACTIVE",
                    f"Cannot start '{node.id}': sibling execution node '{sibling.id}' is "
                    f"{sibling.status.value}; finish it first",
                    {"sibling_id": sibling.id, "sibling_status": sibling.status.value},
                )

    def check_rules_fingerprint(self, workspace: Workspace, observed: Optional[str]) -> None:
        """Reject structural mutations made with a stale view of the workspace rules."""
        current = workspace.rules_fingerprint
        if (observed or "") != current:
            raise PreconditionFailedError(
                "RULES_HASH_MISMATCH",
                f"Rules fingerprint '{observed or ''}' is stale (current: '{current}'); "
                "re-read the workspace rules before changing the graph",
                {"expected": current, "observed": observed or ""},
            )

    def check_writable(self, workspace: Workspace) -> None:
        if workspace.status == WorkspaceStatus.ARCHIVED:
            raise PreconditionFailedError(
                "WORKSPACE_ARCHIVED",
                f"Workspace '{workspace.id}' is archived; restore it before making changes",
            )
        if workspace.status == WorkspaceStatus.ERROR:
            raise PreconditionFailedError(
                "WORKSPACE_CORRUPTED",
                f"Workspace '{workspace.id}' is in error status and cannot be modified",
            )
