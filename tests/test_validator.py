"""Tests for validate_graph(): blocking issues vs advisory warnings."""

from workflow_builder.engine.graph_model import Role, WorkflowEdge, WorkflowNode
from workflow_builder.engine.validator import find_cycle, reachable_from, validate_graph


def _node(node_id: str, kind: str, role: Role) -> WorkflowNode:
    return WorkflowNode(id=node_id, kind=kind, role=role, label=node_id.upper())


def _trigger(node_id: str = "t1") -> WorkflowNode:
    return _node(node_id, "trigger.manual", Role.TRIGGER)


def _action(node_id: str = "a1") -> WorkflowNode:
    return _node(node_id, "action.notify", Role.ACTION)


def _edge(source: str, target: str) -> WorkflowEdge:
    return WorkflowEdge(id=f"{source}-{target}", source=source, target=target)


# ---------------------------------------------------------------------------
# Issues
# ---------------------------------------------------------------------------


class TestIssues:
    def test_empty_graph_has_no_trigger(self):
        report = validate_graph([], [])

        assert not report.ok
        assert report.issues == ["no trigger: add a trigger step to start the workflow"]

    def test_trigger_alone_has_no_reachable_action(self):
        report = validate_graph([_trigger()], [])
        assert report.issues == ["no reachable action: connect an action after the trigger"]

    def test_unconnected_action_is_not_reachable(self):
        report = validate_graph([_trigger(), _action()], [])

        assert any(i.startswith("no reachable action") for i in report.issues)
        assert any("orphaned node: 'a1'" in w for w in report.warnings)

    def test_action_reachable_through_logic(self):
        nodes = [_trigger(), _node("l1", "logic.filter", Role.LOGIC), _action()]
        report = validate_graph(nodes, [_edge("t1", "l1"), _edge("l1", "a1")])

        assert report.ok
        assert report.warnings == []

    def test_multiple_triggers(self):
        nodes = [_trigger("t1"), _trigger("t2"), _action()]
        report = validate_graph(nodes, [_edge("t1", "a1")])

        assert "multiple triggers: t1, t2 (keep exactly one)" in report.issues

    def test_reachability_counts_any_trigger(self):
        nodes = [_trigger("t1"), _trigger("t2"), _action()]
        report = validate_graph(nodes, [_edge("t2", "a1")])

        assert not any(i.startswith("no reachable action") for i in report.issues)

    def test_dangling_edges_reported(self):
        nodes = [_trigger(), _action()]
        edges = [_edge("t1", "a1"), WorkflowEdge(id="bad", source="ghost", target="a1")]
        report = validate_graph(nodes, edges)

        assert "edge 'bad' references missing source node 'ghost'" in report.issues

    def test_no_trigger_skips_reachability_check(self):
        report = validate_graph([_action()], [])
        assert not any(i.startswith("no reachable action") for i in report.issues)


# ---------------------------------------------------------------------------
# Warnings
# ---------------------------------------------------------------------------


class TestWarnings:
    def test_branch_reported(self):
        nodes = [_trigger(), _action("a1"), _action("a2")]
        report = validate_graph(nodes, [_edge("t1", "a1"), _edge("t1", "a2")])

        assert report.ok
        assert report.warnings == ["branch: 't1' has 2 outgoing edges"]

    def test_cycle_reported_but_not_blocking(self):
        nodes = [_trigger(), _action("a1"), _action("a2")]
        edges = [_edge("t1", "a1"), _edge("a1", "a2"), _edge("a2", "a1")]
        report = validate_graph(nodes, edges)

        assert report.ok
        assert "cycle: a1 -> a2 -> a1" in report.warnings

    def test_trigger_is_never_orphaned(self):
        report = validate_graph([_trigger()], [])
        assert report.warnings == []

    def test_to_dict(self):
        d = validate_graph([], []).to_dict()
        assert d["ok"] is False
        assert d["warnings"] == []


class TestGraphHelpers:
    def test_reachable_from_includes_start(self):
        adj = {"a": ["b"], "b": ["c"]}
        assert reachable_from(["a"], adj) == {"a", "b", "c"}

    def test_find_cycle_none_for_dag(self):
        assert find_cycle(["a", "b", "c"], {"a": ["b", "c"], "b": ["c"]}) is None

    def test_find_cycle_self_loop(self):
        assert find_cycle(["a"], {"a": ["a"]}) == ["a", "a"]
