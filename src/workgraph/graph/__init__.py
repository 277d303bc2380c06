"""Node-graph engine for hierarchical human/assistant task tracking.

This package provides the workspace and node model, the file-backed graph
store, the node state machine, context assembly, the reference ledger and
the dispatch coordinator, all driven through :class:`GraphEngine`.
"""
