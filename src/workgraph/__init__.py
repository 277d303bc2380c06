"""Provide the public `workgraph` package exports."""

from __future__ import annotations

from .errors import WorkgraphError
from .graph.engine import GraphEngine

__all__ = ["GraphEngine", "WorkgraphError"]
