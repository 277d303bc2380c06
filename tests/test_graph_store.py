"""Tests for the graph data model (graph/model.py) and store (graph/store.py)."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest
import yaml

from workgraph.errors import CorruptionError, NotFoundError, PreconditionFailedError
from workgraph.graph.model import (
    Actor,
    ArchivedConclusion,
    DispatchRecord,
    DispatchStatus,
    GraphSnapshot,
    LogEntry,
    Node,
    NodeKind,
    NodeRole,
    NodeStatus,
    Reference,
    ReferenceStatus,
    TargetKind,
    Workspace,
    WorkspaceStatus,
    validate_snapshot_dict,
)
from workgraph.graph.store import GraphStore
from workgraph.utils import looks_like_node_id, rules_fingerprint


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    d = tmp_path / ".workgraph"
    d.mkdir()
    return d


@pytest.fixture
def store(state_dir: Path) -> GraphStore:
    return GraphStore(state_dir)


def _snapshot(ws_id: str = "ws-test", rules: list[str] | None = None) -> GraphSnapshot:
    ws = Workspace(id=ws_id, name="Demo", goal="Ship it", project_root="/tmp/demo")
    ws.set_rules(rules or [])
    root = Node(id="root", title="Demo", kind=NodeKind.PLANNING, requirement="Ship it")
    ws.current_focus = root.id
    return GraphSnapshot(workspace=ws, nodes={root.id: root})


def _add_child(snapshot: GraphSnapshot, parent_id: str, node_id: str, kind: NodeKind = NodeKind.EXECUTION) -> Node:
    node = Node(id=node_id, title=node_id, kind=kind, parent_id=parent_id)
    snapshot.nodes[node_id] = node
    snapshot.nodes[parent_id].children.append(node_id)
    return node


# ---------------------------------------------------------------------------
# Fingerprints and identifiers
# ---------------------------------------------------------------------------

class TestRulesFingerprint:
    def test_empty_rules_have_empty_fingerprint(self) -> None:
        assert rules_fingerprint([]) == ""

    def test_fingerprint_is_eight_hex_chars(self) -> None:
        fp = rules_fingerprint(["Use type hints", "No force pushes"])
        assert len(fp) == 8
        int(fp, 16)

    def test_fingerprint_depends_on_order(self) -> None:
        assert rules_fingerprint(["a", "b"]) != rules_fingerprint(["b", "a"])

    def test_set_rules_recomputes_fingerprint(self) -> None:
        ws = Workspace(name="x", goal="y")
        ws.set_rules(["one"])
        first = ws.rules_fingerprint
        ws.set_rules(["one", "two"])
        assert ws.rules_fingerprint != first
        assert ws.rules_fingerprint == rules_fingerprint(["one", "two"])


class TestNodeIdShape:
    @pytest.mark.parametrize("value", ["root", "node-1a2b3c4d", "node-ff"])
    def test_node_ids(self, value: str) -> None:
        assert looks_like_node_id(value)

    @pytest.mark.parametrize("value", ["docs/design.md", "node-XYZ", "README", ""])
    def test_document_paths(self, value: str) -> None:
        assert not looks_like_node_id(value)


# ---------------------------------------------------------------------------
# Model serialization
# ---------------------------------------------------------------------------

class TestNodeModel:
    def test_to_dict_from_dict_preserves_nested_records(self) -> None:
        node = Node(
            id="node-abc",
            title="Write parser",
            kind=NodeKind.EXECUTION,
            status=NodeStatus.COMPLETED,
            role=NodeRole.VALIDATION,
            parent_id="root",
            conclusion="Parser done",
            conclusion_history=[ArchivedConclusion(conclusion="first try", status=NodeStatus.FAILED, action="retry")],
            references=[Reference(target="docs/spec.md", description="format")],
            log=[LogEntry(event="start", actor=Actor.HUMAN)],
            dispatch=DispatchRecord(start_marker="abc", status=DispatchStatus.PASSED),
        )
        restored = Node.from_dict(node.to_dict())
        assert restored == node

    def test_from_dict_coerces_unknown_enums_to_defaults(self) -> None:
        node = Node.from_dict({"id": "node-1", "kind": "weird", "status": "??", "role": "nope"})
        assert node.kind == NodeKind.EXECUTION
        assert node.status == NodeStatus.PENDING
        assert node.role is None

    def test_validate_dict_rejects_status_of_other_kind(self) -> None:
        errors = Node.validate_dict({"id": "node-1", "kind": "planning", "status": "implementing"})
        assert any("'status'" in e for e in errors)

    def test_validate_dict_rejects_execution_children(self) -> None:
        errors = Node.validate_dict(
            {"id": "node-1", "kind": "execution", "status": "pending", "children": ["node-2"]}
        )
        assert "execution nodes cannot have children" in errors

    def test_active_documents_skip_expired_and_node_refs(self) -> None:
        node = Node(
            references=[
                Reference(target="a.md"),
                Reference(target="b.md", status=ReferenceStatus.EXPIRED),
                Reference(target="node-1", target_kind=TargetKind.NODE),
            ]
        )
        assert node.active_documents() == [{"path": "a.md", "description": ""}]


class TestSnapshotValidation:
    def test_valid_snapshot(self) -> None:
        snap = _snapshot(rules=["r1"])
        _add_child(snap, "root", "node-1")
        assert validate_snapshot_dict(snap.to_dict()) == []

    def test_stale_fingerprint_detected(self) -> None:
        data = _snapshot(rules=["r1"]).to_dict()
        data["rules_fingerprint"] = "deadbeef"
        assert any("rules_fingerprint" in e for e in validate_snapshot_dict(data))

    def test_two_roots_detected(self) -> None:
        snap = _snapshot()
        snap.nodes["node-2"] = Node(id="node-2", kind=NodeKind.PLANNING)
        errors = validate_snapshot_dict(snap.to_dict())
        assert any("exactly one root" in e for e in errors)

    def test_parent_child_mismatch_detected(self) -> None:
        snap = _snapshot()
        snap.nodes["node-1"] = Node(id="node-1", parent_id="root")
        errors = validate_snapshot_dict(snap.to_dict())
        assert any("not listed among children" in e for e in errors)

    def test_ancestor_cycle_detected(self) -> None:
        snap = _snapshot()
        a = _add_child(snap, "root", "node-a", NodeKind.PLANNING)
        b = _add_child(snap, "node-a", "node-b", NodeKind.PLANNING)
        # a <-> b, detached from root
        snap.nodes["root"].children.remove("node-a")
        a.parent_id = "node-b"
        b.children.append("node-a")
        errors = validate_snapshot_dict(snap.to_dict())
        assert any("cycle" in e for e in errors)

    def test_focus_must_exist(self) -> None:
        data = _snapshot().to_dict()
        data["current_focus"] = "node-missing"
        assert any("current_focus" in e for e in validate_snapshot_dict(data))

    def test_key_must_match_id(self) -> None:
        data = _snapshot().to_dict()
        data["nodes"]["root"]["id"] = "other"
        assert any("does not match its key" in e for e in validate_snapshot_dict(data))

    @pytest.mark.parametrize(
        ("section", "key", "value"),
        [
            ("node", "references", ["not-a-mapping"]),
            ("node", "log", [1]),
            ("node", "conclusion_history", ["earlier"]),
            ("node", "children", [{"id": "node-1"}]),
            ("workspace", "documents", ["README.md"]),
            ("workspace", "log", [None]),
            ("workspace", "dispatch", "enabled"),
        ],
    )
    def test_malformed_nested_records_detected(self, section: str, key: str, value: object) -> None:
        data = _snapshot().to_dict()
        target = data["nodes"]["root"] if section == "node" else data["workspace"]
        target[key] = value
        errors = validate_snapshot_dict(data)
        assert any(key in e for e in errors), errors


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class TestGraphStore:
    def test_create_and_load(self, store: GraphStore) -> None:
        snap = _snapshot(rules=["keep it small"])
        store.create(snap)
        loaded = store.load("ws-test")
        assert loaded.workspace.name == "Demo"
        assert loaded.workspace.rules_fingerprint == rules_fingerprint(["keep it small"])
        assert loaded.workspace.current_focus == "root"
        assert loaded.root.kind == NodeKind.PLANNING

    def test_create_twice_raises(self, store: GraphStore) -> None:
        store.create(_snapshot())
        with pytest.raises(ValueError, match="already exists"):
            store.create(_snapshot())

    def test_persisted_layout(self, store: GraphStore, state_dir: Path) -> None:
        store.create(_snapshot())
        raw = yaml.safe_load((state_dir / "workspaces" / "ws-test" / "graph.yaml").read_text())
        assert set(raw) == {"version", "workspace", "current_focus", "rules_fingerprint", "nodes"}
        assert list(raw["nodes"]) == ["root"]

    def test_missing_workspace(self, store: GraphStore) -> None:
        with pytest.raises(NotFoundError) as exc:
            store.load("ws-missing")
        assert exc.value.code == "WORKSPACE_NOT_FOUND"

    def test_invalid_workspace_id_is_not_found(self, store: GraphStore) -> None:
        with pytest.raises(NotFoundError):
            store.read_snapshot("../escape")

    def test_transaction_saves_when_dirty(self, store: GraphStore) -> None:
        store.create(_snapshot())
        with store.transaction("ws-test") as tx:
            tx.node("root").note = "hello"
            tx.dirty = True
        assert store.load("ws-test").root.note == "hello"

    def test_transaction_discards_on_error(self, store: GraphStore) -> None:
        store.create(_snapshot())
        with pytest.raises(RuntimeError):
            with store.transaction("ws-test") as tx:
                tx.node("root").note = "lost"
                tx.dirty = True
                raise RuntimeError("boom")
        assert store.load("ws-test").root.note == ""

    def test_transaction_not_dirty_does_not_write(self, store: GraphStore, state_dir: Path) -> None:
        store.create(_snapshot())
        path = state_dir / "workspaces" / "ws-test" / "graph.yaml"
        before = path.read_bytes()
        with store.transaction("ws-test") as tx:
            tx.node("root").note = "not saved"
        assert path.read_bytes() == before

    def test_corrupted_record_marks_index_error(self, store: GraphStore, state_dir: Path) -> None:
        store.create(_snapshot())
        path = state_dir / "workspaces" / "ws-test" / "graph.yaml"
        data = yaml.safe_load(path.read_text())
        data["nodes"]["root"]["parent_id"] = "node-ghost"
        path.write_text(yaml.safe_dump(data))

        with pytest.raises(CorruptionError) as exc:
            store.load("ws-test")
        assert exc.value.code == "GRAPH_CORRUPTED"
        assert exc.value.details["problems"]
        entry = store.list_index()[0]
        assert entry["status"] == WorkspaceStatus.ERROR.value
        # never auto-repaired
        assert yaml.safe_load(path.read_text())["nodes"]["root"]["parent_id"] == "node-ghost"

    def test_unparseable_record_is_corruption(self, store: GraphStore, state_dir: Path) -> None:
        store.create(_snapshot())
        (state_dir / "workspaces" / "ws-test" / "graph.yaml").write_text("nodes: [unclosed\n")
        with pytest.raises(CorruptionError):
            store.load("ws-test")

    def test_unloadable_record_is_corruption(self, store: GraphStore, state_dir: Path) -> None:
        store.create(_snapshot())
        path = state_dir / "workspaces" / "ws-test" / "graph.yaml"
        data = yaml.safe_load(path.read_text())
        data["workspace"]["dispatch"] = {"enabled": True, "backup_branches": 7}
        path.write_text(yaml.safe_dump(data))

        with pytest.raises(CorruptionError) as exc:
            store.load("ws-test")
        assert "TypeError" in exc.value.message
        assert store.list_index()[0]["status"] == WorkspaceStatus.ERROR.value

    def test_index_lists_workspaces(self, store: GraphStore) -> None:
        store.create(_snapshot("ws-a"))
        store.create(_snapshot("ws-b"))
        ids = [e["id"] for e in store.list_index()]
        assert ids == ["ws-a", "ws-b"]
        assert store.list_index()[0]["project_root"] == "/tmp/demo"

    def test_delete(self, store: GraphStore, state_dir: Path) -> None:
        store.create(_snapshot())
        store.delete("ws-test")
        assert not store.exists("ws-test")
        assert store.list_index() == []
        assert not (state_dir / "workspaces" / "ws-test").exists()

    def test_lock_timeout_is_reported_as_busy(self, store: GraphStore, state_dir: Path) -> None:
        from filelock import FileLock

        store.create(_snapshot())
        other = FileLock(str(state_dir / "workspaces" / "ws-test" / "graph.lock"), timeout=0)
        store._file_lock("ws-test").timeout = 0.1
        holder_ready = threading.Event()
        release = threading.Event()

        def _hold() -> None:
            with other:
                holder_ready.set()
                release.wait(5)

        t = threading.Thread(target=_hold)
        t.start()
        try:
            holder_ready.wait(5)
            with pytest.raises(PreconditionFailedError) as exc:
                store.read_snapshot("ws-test")
            assert exc.value.code == "WORKSPACE_BUSY"
        finally:
            release.set()
            t.join()


class TestGraphTx:
    def test_lookups(self, store: GraphStore) -> None:
        snap = _snapshot()
        plan = _add_child(snap, "root", "node-p", NodeKind.PLANNING)
        _add_child(snap, "node-p", "node-a")
        _add_child(snap, "node-p", "node-b")
        store.create(snap)
        with store.transaction("ws-test") as tx:
            assert [n.id for n in tx.children_of(plan)] == ["node-a", "node-b"]
            assert [n.id for n in tx.siblings_of(tx.node("node-a"))] == ["node-b"]
            assert [n.id for n in tx.ancestors_of(tx.node("node-b"))] == ["node-p", "root"]
            assert tx.subtree_ids("node-p") == ["node-p", "node-a", "node-b"]
            assert tx.get("node-x") is None
            with pytest.raises(NotFoundError):
                tx.node("node-x")

    def test_duplicate_add_raises(self, store: GraphStore) -> None:
        store.create(_snapshot())
        with store.transaction("ws-test") as tx:
            with pytest.raises(ValueError, match="already exists"):
                tx.add(Node(id="root"))
