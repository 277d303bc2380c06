"""Typed failures raised by the graph engine.

Every failure carries a stable ``code`` (what went wrong) and belongs to one
of five categories (how the caller should react):

* ``not_found`` - the workspace, node or reference does not exist.
* ``invalid_transition`` - the state machine rejects the requested action.
* ``precondition_failed`` - the input is incomplete or stale and can be fixed
  by the caller (missing conclusion, stale rules fingerprint, busy sibling...).
* ``external_failure`` - a version-control command failed.
* ``corruption`` - a persisted record failed structural validation.
"""

from __future__ import annotations

from typing import Any, Optional


class WorkgraphError(Exception):
    """Base class for every engine failure."""

    category = "error"

    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "code": self.code,
            "category": self.category,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.code!r}, {self.message!r})"


class NotFoundError(WorkgraphError):
    category = "not_found"


class InvalidTransitionError(WorkgraphError):
    category = "invalid_transition"


class PreconditionFailedError(WorkgraphError):
    category = "precondition_failed"


class ExternalFailureError(WorkgraphError):
    category = "external_failure"


class CorruptionError(WorkgraphError):
    category = "corruption"


def workspace_not_found(workspace_id: str) -> NotFoundError:
    return NotFoundError("WORKSPACE_NOT_FOUND", f"Workspace '{workspace_id}' does not exist")


def node_not_found(node_id: str) -> NotFoundError:
    return NotFoundError("NODE_NOT_FOUND", f"Node '{node_id}' does not exist")


def memo_not_found(memo_id: str) -> NotFoundError:
    return NotFoundError("MEMO_NOT_FOUND", f"Memo '{memo_id}' does not exist")


def invalid_params(message: str, **details: Any) -> PreconditionFailedError:
    return PreconditionFailedError("INVALID_PARAMS", message, details)
