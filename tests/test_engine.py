"""Tests for the graph engine facade and its call contract (graph/engine.py)."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

import pytest
import yaml

from workgraph import GraphEngine
from workgraph.errors import PreconditionFailedError
from workgraph.utils import rules_fingerprint


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / ".workgraph"


@pytest.fixture
def engine(state_dir: Path, tmp_path: Path) -> GraphEngine:
    return GraphEngine(state_dir, project_root=tmp_path, config={})


@pytest.fixture
def ws_id(engine: GraphEngine) -> str:
    return engine.workspace_init(name="Demo", goal="Ship the demo")["workspace"]["id"]


def _ok(result: dict[str, Any]) -> dict[str, Any]:
    assert result["ok"] is True, result
    return result["result"]


def _error(result: dict[str, Any]) -> dict[str, Any]:
    assert result["ok"] is False, result
    return result["error"]


def _create(engine: GraphEngine, ws_id: str, title: str, parent_id: str = "root", kind: str = "execution", **extra: Any) -> str:
    args = {"parent_id": parent_id, "kind": kind, "title": title, "rules_hash": extra.pop("rules_hash", "")}
    args.update(extra)
    return _ok(engine.call("node_create", ws_id, args=args))["node"]["id"]


# ---------------------------------------------------------------------------
# Call contract
# ---------------------------------------------------------------------------

class TestCallContract:
    def test_unknown_operation(self, engine: GraphEngine) -> None:
        err = _error(engine.call("node_teleport"))
        assert err["code"] == "INVALID_PARAMS"
        assert err["category"] == "precondition_failed"

    def test_unexpected_argument(self, engine: GraphEngine, ws_id: str) -> None:
        err = _error(engine.call("node_update", ws_id, "root", args={"colour": "red"}))
        assert err["code"] == "INVALID_PARAMS"
        assert "colour" in err["message"]

    def test_wrong_argument_type(self, engine: GraphEngine, ws_id: str) -> None:
        err = _error(engine.call("node_transition", ws_id, "root", args={"action": "explode"}))
        assert err["code"] == "INVALID_PARAMS"

    def test_missing_scope(self, engine: GraphEngine, ws_id: str) -> None:
        assert "workspace_id" in _error(engine.call("node_list"))["message"]
        assert "node_id" in _error(engine.call("node_get", ws_id))["message"]

    def test_not_found_category(self, engine: GraphEngine) -> None:
        err = _error(engine.call("workspace_get", "ws-nothing"))
        assert err == {
            "code": "WORKSPACE_NOT_FOUND",
            "category": "not_found",
            "message": "Workspace 'ws-nothing' does not exist",
        }

    def test_every_operation_is_listed(self, engine: GraphEngine) -> None:
        assert {"workspace_init", "node_create", "context_get", "node_dispatch", "session_bind"} <= set(engine.operations)


# ---------------------------------------------------------------------------
# Workspaces
# ---------------------------------------------------------------------------

class TestWorkspaces:
    def test_init_creates_focused_root(self, engine: GraphEngine) -> None:
        result = _ok(engine.call("workspace_init", args={"name": "Demo", "goal": "Ship", "rules": ["Be brief"]}))
        ws_id = result["workspace"]["id"]
        assert ws_id.startswith("ws-")
        assert result["root_id"] == "root"
        assert result["rules_hash"] == rules_fingerprint(["Be brief"])
        root = engine.node_get(ws_id, "root")["node"]
        assert root["kind"] == "planning"
        assert root["status"] == "pending"
        assert root["requirement"] == "Ship"
        assert engine.workspace_get(ws_id)["workspace"]["current_focus"] == "root"

    def test_init_rejects_blank_goal(self, engine: GraphEngine) -> None:
        assert _error(engine.call("workspace_init", args={"name": "x", "goal": "   "}))["code"] == "INVALID_PARAMS"

    def test_list_and_filter(self, engine: GraphEngine, ws_id: str) -> None:
        other = engine.workspace_init(name="Other", goal="g")["workspace"]["id"]
        engine.workspace_archive(other)
        assert engine.workspace_list()["count"] == 2
        active = engine.workspace_list(status="active")["workspaces"]
        assert [w["id"] for w in active] == [ws_id]

    def test_archive_blocks_mutations_until_restored(self, engine: GraphEngine, ws_id: str) -> None:
        _ok(engine.call("workspace_archive", ws_id))
        err = _error(engine.call("log_append", ws_id, "root", args={"event": "hello"}))
        assert err["code"] == "WORKSPACE_ARCHIVED"
        # reads still work
        _ok(engine.call("context_get", ws_id))
        assert _error(engine.call("workspace_archive", ws_id))["code"] == "WORKSPACE_ARCHIVED"
        _ok(engine.call("workspace_restore", ws_id))
        _ok(engine.call("log_append", ws_id, "root", args={"event": "hello"}))
        assert _error(engine.call("workspace_restore", ws_id))["code"] == "WORKSPACE_ACTIVE"

    def test_delete_requires_force_when_active(self, engine: GraphEngine, ws_id: str) -> None:
        assert _error(engine.call("workspace_delete", ws_id))["code"] == "WORKSPACE_ACTIVE"
        _ok(engine.call("workspace_delete", ws_id, args={"force": True}))
        assert _error(engine.call("workspace_get", ws_id))["category"] == "not_found"

    def test_delete_archived_without_force(self, engine: GraphEngine, ws_id: str) -> None:
        engine.workspace_archive(ws_id)
        assert _ok(engine.call("workspace_delete", ws_id)) == {"deleted": ws_id}

    def test_rules_add_remove_replace(self, engine: GraphEngine, ws_id: str) -> None:
        added = _ok(engine.call("workspace_update_rules", ws_id, args={"action": "add", "rule": "No magic"}))
        assert added["rules"] == ["No magic"]
        assert added["rules_hash"] == rules_fingerprint(["No magic"])
        assert _error(engine.call("workspace_update_rules", ws_id, args={"action": "add", "rule": "No magic"}))["code"] == "RULE_EXISTS"
        replaced = _ok(engine.call("workspace_update_rules", ws_id, args={"action": "replace", "rules": ["a", "b"]}))
        assert replaced["rules_count"] == 2
        removed = _ok(engine.call("workspace_update_rules", ws_id, args={"action": "remove", "rule": "a"}))
        assert removed["rules"] == ["b"]
        assert _error(engine.call("workspace_update_rules", ws_id, args={"action": "remove", "rule": "zzz"}))["code"] == "RULE_NOT_FOUND"
        # the persisted fingerprint matches the persisted rules
        assert engine.workspace_get(ws_id)["workspace"]["rules_fingerprint"] == rules_fingerprint(["b"])

    def test_workspace_documents(self, engine: GraphEngine, ws_id: str) -> None:
        _ok(engine.call("workspace_document", ws_id, args={"action": "add", "path": "docs/plan.md"}))
        ctx = engine.context_get(ws_id)
        assert ctx["workspace"]["docs"] == [{"path": "docs/plan.md", "description": ""}]
        _ok(engine.call("workspace_document", ws_id, args={"action": "expire", "path": "docs/plan.md"}))
        assert engine.context_get(ws_id)["workspace"]["docs"] == []

    def test_status_render(self, engine: GraphEngine, ws_id: str) -> None:
        _create(engine, ws_id, "Write docs")
        status = _ok(engine.call("workspace_status", ws_id))
        assert status["node_count"] == 2
        assert status["by_status"] == {"monitoring": 1, "pending": 1}
        assert "Write docs" in status["tree"]
        assert "<- focus" in status["tree"]
        assert status["dispatch"]["enabled"] is False


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------

class TestNodes:
    def test_create_moves_parent_to_monitoring(self, engine: GraphEngine, ws_id: str) -> None:
        result = _ok(engine.call(
            "node_create", ws_id,
            args={"parent_id": "root", "kind": "planning", "title": "Phase 1", "rules_hash": ""},
        ))
        assert result["parent"] == {"id": "root", "status": "monitoring"}
        assert result["node"]["id"].startswith("node-")
        assert engine.node_get(ws_id, "root")["node"]["children"] == [result["node"]["id"]]

    def test_rules_hash_gate(self, engine: GraphEngine, ws_id: str) -> None:
        stale = engine.workspace_update_rules(ws_id, "add", rule="Rule one")["rules_hash"]
        current = engine.workspace_update_rules(ws_id, "add", rule="Rule two")["rules_hash"]
        args = {"parent_id": "root", "kind": "execution", "title": "Task"}
        assert _error(engine.call("node_create", ws_id, args=args))["code"] == "RULES_HASH_MISMATCH"
        err = _error(engine.call("node_create", ws_id, args=dict(args, rules_hash=stale)))
        assert err["code"] == "RULES_HASH_MISMATCH"
        _ok(engine.call("node_create", ws_id, args=dict(args, rules_hash=current)))

    def test_execution_nodes_have_no_children(self, engine: GraphEngine, ws_id: str) -> None:
        leaf = _create(engine, ws_id, "Leaf")
        err = _error(engine.call("node_create", ws_id, args={"parent_id": leaf, "kind": "execution", "title": "x", "rules_hash": ""}))
        assert err["code"] == "EXECUTION_CANNOT_HAVE_CHILDREN"

    def test_closed_parent_rejects_children(self, engine: GraphEngine, ws_id: str) -> None:
        phase = _create(engine, ws_id, "Phase", kind="planning")
        engine.node_transition(ws_id, phase, "start")
        engine.node_transition(ws_id, phase, "cancel", conclusion="not needed")
        err = _error(engine.call("node_create", ws_id, args={"parent_id": phase, "kind": "execution", "title": "x", "rules_hash": ""}))
        assert err["code"] == "PARENT_CLOSED"

    def test_missing_parent(self, engine: GraphEngine, ws_id: str) -> None:
        err = _error(engine.call("node_create", ws_id, args={"parent_id": "node-0000", "kind": "execution", "title": "x", "rules_hash": ""}))
        assert err["code"] == "PARENT_NOT_FOUND"

    def test_create_with_documents(self, engine: GraphEngine, ws_id: str) -> None:
        node_id = _create(engine, ws_id, "Docs", documents=["docs/a.md"])
        refs = engine.node_get(ws_id, node_id)["node"]["references"]
        assert [(r["target"], r["target_kind"]) for r in refs] == [("docs/a.md", "document")]

    def test_update(self, engine: GraphEngine, ws_id: str) -> None:
        node_id = _create(engine, ws_id, "Old")
        result = _ok(engine.call("node_update", ws_id, node_id, args={"title": "New", "note": "n"}))
        assert result["updated"] == ["note", "title"]
        assert engine.node_get(ws_id, node_id)["node"]["title"] == "New"
        assert _error(engine.call("node_update", ws_id, node_id, args={}))["code"] == "INVALID_PARAMS"

    def test_list_depth(self, engine: GraphEngine, ws_id: str) -> None:
        phase = _create(engine, ws_id, "Phase", kind="planning")
        _create(engine, ws_id, "Task", parent_id=phase)
        tree = _ok(engine.call("node_list", ws_id, args={"depth": 1}))["tree"]
        assert tree["children"][0]["id"] == phase
        assert tree["children"][0]["children"] == []
        assert tree["children"][0]["child_count"] == 1
        full = engine.node_list(ws_id, root_id=phase)["tree"]
        assert full["children"][0]["title"] == "Task"

    def test_move(self, engine: GraphEngine, ws_id: str) -> None:
        a = _create(engine, ws_id, "A", kind="planning")
        b = _create(engine, ws_id, "B", kind="planning")
        task = _create(engine, ws_id, "Task", parent_id=a)
        moved = _ok(engine.call("node_move", ws_id, task, args={"new_parent_id": b, "rules_hash": ""}))
        assert moved["moved"] is True
        assert engine.node_get(ws_id, task)["node"]["parent_id"] == b
        assert engine.node_get(ws_id, b)["node"]["status"] == "monitoring"
        assert engine.node_get(ws_id, a)["node"]["children"] == []

    def test_move_into_own_subtree_rejected(self, engine: GraphEngine, ws_id: str) -> None:
        a = _create(engine, ws_id, "A", kind="planning")
        inner = _create(engine, ws_id, "Inner", parent_id=a, kind="planning")
        err = _error(engine.call("node_move", ws_id, a, args={"new_parent_id": inner, "rules_hash": ""}))
        assert err["category"] == "invalid_transition"
        assert _error(engine.call("node_move", ws_id, "root", args={"new_parent_id": a, "rules_hash": ""}))["code"] == "INVALID_TRANSITION"

    def test_delete_subtree(self, engine: GraphEngine, ws_id: str) -> None:
        phase = _create(engine, ws_id, "Phase", kind="planning")
        inner = _create(engine, ws_id, "Inner", parent_id=phase)
        other = _create(engine, ws_id, "Other")
        engine.node_reference(ws_id, other, "add", inner)
        engine.context_focus(ws_id, inner)

        result = _ok(engine.call("node_delete", ws_id, phase))
        assert set(result["deleted"]) == {phase, inner}
        assert result["references_dropped"] == 1
        assert result["current_focus"] == "root"
        assert engine.node_get(ws_id, other)["node"]["references"] == []
        assert _error(engine.call("node_get", ws_id, inner))["code"] == "NODE_NOT_FOUND"

    def test_root_cannot_be_deleted(self, engine: GraphEngine, ws_id: str) -> None:
        assert _error(engine.call("node_delete", ws_id, "root"))["code"] == "CANNOT_DELETE_ROOT"

    def test_transition_through_call(self, engine: GraphEngine, ws_id: str) -> None:
        node_id = _create(engine, ws_id, "Task")
        started = _ok(engine.call("node_transition", ws_id, node_id, args={"action": "start", "actor": "human"}))
        assert started["current_status"] == "implementing"
        err = _error(engine.call("node_transition", ws_id, node_id, args={"action": "complete"}))
        assert err["code"] == "CONCLUSION_REQUIRED"
        node = engine.node_get(ws_id, node_id)
        assert node["node"]["status"] == "implementing"
        assert node["allowed_actions"] == ["submit", "complete", "fail"]

    def test_failed_operation_leaves_record_untouched(self, engine: GraphEngine, ws_id: str, state_dir: Path) -> None:
        node_id = _create(engine, ws_id, "Task")
        path = state_dir / "workspaces" / ws_id / "graph.yaml"
        before = path.read_bytes()
        _error(engine.call("node_transition", ws_id, node_id, args={"action": "complete", "conclusion": "x"}))
        assert path.read_bytes() == before

    def test_isolate_and_reference(self, engine: GraphEngine, ws_id: str) -> None:
        a = _create(engine, ws_id, "A", kind="planning")
        b = _create(engine, ws_id, "B")
        _ok(engine.call("node_isolate", ws_id, a, args={"isolate": True}))
        task = _create(engine, ws_id, "Task", parent_id=a)
        _ok(engine.call("node_reference", ws_id, task, args={"action": "add", "target": b, "description": "sibling work"}))
        ctx = engine.context_get(ws_id, task)
        assert [e["node_id"] for e in ctx["chain"]] == [a, task]
        assert ctx["references"][0]["node_id"] == b
        err = _error(engine.call("node_reference", ws_id, task, args={"action": "add", "target": b}))
        assert err["code"] == "REFERENCE_EXISTS"


# ---------------------------------------------------------------------------
# Context, focus, logs and problems
# ---------------------------------------------------------------------------

class TestContextAndLogs:
    def test_context_defaults_to_focus(self, engine: GraphEngine, ws_id: str) -> None:
        task = _create(engine, ws_id, "Task")
        assert engine.context_get(ws_id)["focus"] == "root"
        _ok(engine.call("context_focus", ws_id, task))
        ctx = _ok(engine.call("context_get", ws_id, args={"include_log": False}))
        assert ctx["focus"] == task
        assert [e["node_id"] for e in ctx["chain"]] == ["root", task]

    def test_max_log_entries_from_config(self, state_dir: Path, tmp_path: Path) -> None:
        engine = GraphEngine(state_dir, project_root=tmp_path, config={"context": {"max_log_entries": 2}})
        ws_id = engine.workspace_init(name="x", goal="y")["workspace"]["id"]
        for i in range(5):
            engine.log_append(ws_id, "root", f"event {i}")
        log = engine.context_get(ws_id)["chain"][0]["log"]
        assert [e["event"] for e in log] == ["event 3", "event 4"]
        override = engine.context_get(ws_id, max_log_entries=0)["chain"][0]["log"]
        assert override == []

    def test_config_file_is_loaded(self, state_dir: Path, tmp_path: Path) -> None:
        state_dir.mkdir(parents=True)
        (state_dir / "config.yaml").write_text(yaml.safe_dump({"context": {"max_log_entries": 1}}))
        engine = GraphEngine(state_dir, project_root=tmp_path)
        ws_id = engine.workspace_init(name="x", goal="y")["workspace"]["id"]
        engine.log_append(ws_id, "root", "latest")
        assert [e["event"] for e in engine.context_get(ws_id)["chain"][0]["log"]] == ["latest"]

    def test_log_append_mirrors_root_children(self, engine: GraphEngine, ws_id: str) -> None:
        task = _create(engine, ws_id, "Task")
        entry = _ok(engine.call("log_append", ws_id, task, args={"event": "Found the bug", "actor": "human"}))["entry"]
        assert entry["actor"] == "human"
        ws_log = engine.workspace_get(ws_id)["workspace"]["log"]
        assert ws_log[-1]["event"] == f"[{task}] Found the bug"

    def test_problem_update_and_clear(self, engine: GraphEngine, ws_id: str) -> None:
        task = _create(engine, ws_id, "Task")
        _ok(engine.call("problem_update", ws_id, task, args={"problem": "Tests hang", "next_step": "Add timeout"}))
        entry = engine.context_get(ws_id, task)["chain"][-1]
        assert entry["problem"] == "Tests hang"
        assert entry["next_step"] == "Add timeout"
        assert _ok(engine.call("problem_clear", ws_id, task))["cleared"] is True
        assert "problem" not in engine.context_get(ws_id, task)["chain"][-1]
        assert _error(engine.call("problem_update", ws_id, task, args={}))["code"] == "INVALID_PARAMS"

    def test_concurrent_appends_are_serialized(self, engine: GraphEngine, ws_id: str) -> None:
        errors: list[BaseException] = []

        def _worker(n: int) -> None:
            try:
                for i in range(5):
                    engine.log_append(ws_id, "root", f"w{n}-{i}")
            except BaseException as exc:  # pragma: no cover - surfaced below
                errors.append(exc)

        threads = [threading.Thread(target=_worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []
        events = [e["event"] for e in engine.node_get(ws_id, "root")["node"]["log"]]
        assert sum(1 for e in events if e.startswith("w")) == 20


# ---------------------------------------------------------------------------
# Corruption
# ---------------------------------------------------------------------------

class TestCorruption:
    def test_corrupted_workspace_is_reported_and_flagged(self, engine: GraphEngine, ws_id: str, state_dir: Path) -> None:
        path = state_dir / "workspaces" / ws_id / "graph.yaml"
        data = yaml.safe_load(path.read_text())
        data["nodes"]["root"]["kind"] = "execution"
        data["nodes"]["root"]["status"] = "planning"
        path.write_text(yaml.safe_dump(data))

        err = _error(engine.call("context_get", ws_id))
        assert err["category"] == "corruption"
        assert err["code"] == "GRAPH_CORRUPTED"
        assert engine.workspace_list(status="error")["workspaces"][0]["id"] == ws_id
        # corrupted workspaces can still be deleted without force
        _ok(engine.call("workspace_delete", ws_id))

    def test_malformed_reference_is_reported_not_raised(self, engine: GraphEngine, ws_id: str, state_dir: Path) -> None:
        path = state_dir / "workspaces" / ws_id / "graph.yaml"
        data = yaml.safe_load(path.read_text())
        data["nodes"]["root"]["references"] = ["not-a-mapping"]
        path.write_text(yaml.safe_dump(data))

        err = _error(engine.call("node_get", ws_id, "root"))
        assert err["code"] == "GRAPH_CORRUPTED"
        assert "references[0]" in err["message"]
        assert engine.workspace_list(status="error")["workspaces"][0]["id"] == ws_id


# ---------------------------------------------------------------------------
# Events and sessions
# ---------------------------------------------------------------------------

class TestEvents:
    def test_events_follow_successful_mutations(self, engine: GraphEngine, ws_id: str) -> None:
        seen: list[dict[str, Any]] = []
        unsubscribe = engine.events.subscribe(seen.append)
        task = _create(engine, ws_id, "Task")
        types = [(e["type"], e["node_id"]) for e in seen]
        assert ("node_updated", task) in types
        assert ("node_updated", "root") in types

        seen.clear()
        _error(engine.call("node_transition", ws_id, task, args={"action": "complete", "conclusion": "x"}))
        assert seen == []

        unsubscribe()
        engine.log_append(ws_id, task, "quiet")
        assert seen == []

    def test_events_are_persisted(self, engine: GraphEngine, ws_id: str) -> None:
        engine.log_append(ws_id, "root", "hello")
        recent = _ok(engine.call("events_recent", ws_id, args={"limit": 5}))["events"]
        assert recent[-1]["type"] == "log_updated"
        assert recent[-1]["workspace_id"] == ws_id

    def test_subscriber_failure_does_not_break_operation(self, engine: GraphEngine, ws_id: str) -> None:
        def _boom(_event: dict[str, Any]) -> None:
            raise RuntimeError("subscriber down")

        engine.events.subscribe(_boom)
        _ok(engine.call("log_append", ws_id, "root", args={"event": "still fine"}))


class TestSessions:
    def test_bind_follows_focus(self, engine: GraphEngine, ws_id: str) -> None:
        task = _create(engine, ws_id, "Task")
        binding = _ok(engine.call("session_bind", ws_id, args={"session_id": "s-1"}))
        assert binding["node_id"] == "root"
        engine.context_focus(ws_id, task)
        status = _ok(engine.call("session_status", args={"session_id": "s-1"}))
        assert status["binding"]["node_id"] == task
        assert status["node"]["title"] == "Task"

    def test_bind_to_node_moves_focus(self, engine: GraphEngine, ws_id: str) -> None:
        task = _create(engine, ws_id, "Task")
        _ok(engine.call("session_bind", ws_id, task, args={"session_id": "s-2"}))
        assert engine.workspace_get(ws_id)["workspace"]["current_focus"] == task

    def test_workspace_record_wins_over_stale_binding(self, engine: GraphEngine, ws_id: str) -> None:
        task = _create(engine, ws_id, "Task")
        engine.context_focus(ws_id, task)
        engine.sessions.bind("s-3", ws_id, "node-stale")
        assert engine.session_status("s-3")["binding"]["node_id"] == task
        assert engine.sessions.get("s-3")["node_id"] == task

    def test_unbind_and_unknown(self, engine: GraphEngine, ws_id: str) -> None:
        engine.session_bind(ws_id, "s-4")
        assert _ok(engine.call("session_unbind", args={"session_id": "s-4"}))["unbound"] is True
        assert _error(engine.call("session_status", args={"session_id": "s-4"}))["code"] == "SESSION_NOT_FOUND"

    def test_deleting_workspace_drops_bindings(self, engine: GraphEngine, ws_id: str) -> None:
        engine.session_bind(ws_id, "s-5")
        engine.workspace_delete(ws_id, force=True)
        assert engine.sessions.get("s-5") is None


class TestForProject:
    def test_opens_state_dir_under_project(self, tmp_path: Path) -> None:
        engine = GraphEngine.for_project(tmp_path)
        assert engine.state_dir == tmp_path.resolve() / ".workgraph"
        ws_id = engine.workspace_init(name="x", goal="y")["workspace"]["id"]
        assert engine.workspace_get(ws_id)["workspace"]["project_root"] == str(tmp_path.resolve())

    def test_guard_errors_surface_as_exceptions_when_called_directly(self, engine: GraphEngine, ws_id: str) -> None:
        with pytest.raises(PreconditionFailedError):
            engine.node_create(ws_id, parent_id="root", kind="execution", title="x", rules_hash="bogus")

    @pytest.mark.parametrize("field, extra", [("kind", {"kind": "widget"}), ("role", {"role": "captain"})])
    def test_unknown_enum_values_are_invalid_params(self, engine: GraphEngine, ws_id: str, field: str, extra: dict[str, str]) -> None:
        kwargs = {"parent_id": "root", "kind": "execution", "title": "x", "rules_hash": ""}
        kwargs.update(extra)
        with pytest.raises(PreconditionFailedError) as excinfo:
            engine.node_create(ws_id, **kwargs)
        assert excinfo.value.code == "INVALID_PARAMS"
        assert excinfo.value.details["field"] == field
        assert engine.node_get(ws_id, "root")["node"]["children"] == []

    def test_unknown_action_or_actor_called_directly(self, engine: GraphEngine, ws_id: str) -> None:
        task = _create(engine, ws_id, "Task")
        with pytest.raises(PreconditionFailedError) as excinfo:
            engine.node_transition(ws_id, task, "explode")
        assert excinfo.value.code == "INVALID_PARAMS"
        with pytest.raises(PreconditionFailedError) as excinfo:
            engine.node_transition(ws_id, task, "start", actor="robot")
        assert excinfo.value.details["field"] == "actor"
        assert _error(engine.call("node_create", ws_id, args={"parent_id": "root", "kind": "widget", "title": "x"}))["code"] == "INVALID_PARAMS"
