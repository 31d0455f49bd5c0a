"""Tests for the patch applier: per-op semantics, BULK atomicity and purity.

Covers:
  - ADD_NODE role derivation, label generation, auto-layout, rejections
  - UPDATE_NODE config merge, label regeneration, idempotence
  - REMOVE_NODE edge cascade
  - ADD_EDGE / REMOVE_EDGE / REWIRE reference checks
  - BULK all-or-nothing with op-path issue prefixes
  - inputs never mutated; failures return the original graph
"""

import copy

import pytest

from workflow_builder.engine.applier import apply_patch, apply_to_graph, derive_edge_id
from workflow_builder.engine.graph_model import Role, WorkflowEdge, WorkflowGraph
from workflow_builder.engine.patch_ir import (
    AddEdge,
    AddNode,
    Bulk,
    RemoveEdge,
    RemoveNode,
    Rewire,
    SetName,
    UpdateNode,
)
from workflow_builder.engine.validator import validate_graph


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _graph_with_trigger_and_action() -> WorkflowGraph:
    """t1 (schedule) → a1 (notify), built through the applier itself."""
    patch = Bulk(ops=[
        AddNode(id="t1", kind="trigger.schedule", config={"cron": "0 9 * * *"}),
        AddNode(id="a1", kind="action.notify", config={"destination": "ops"}),
        AddEdge(id="e1", source="t1", target="a1"),
    ])
    result = apply_patch(patch, [], [], name="Daily digest")
    assert result.ok, result.issues
    return result.graph


def _apply(patch, graph: WorkflowGraph, **options):
    return apply_to_graph(patch, graph, **options)


# ---------------------------------------------------------------------------
# Acceptance scenarios
# ---------------------------------------------------------------------------


class TestScenarios:
    def test_add_schedule_trigger_to_empty_graph(self):
        """ADD_NODE trigger.schedule succeeds with role TRIGGER and a schedule label."""
        result = apply_patch(
            AddNode(id="t1", kind="trigger.schedule", config={"cron": "0 9 * * *"}), [], []
        )

        assert result.ok
        assert len(result.nodes) == 1
        node = result.nodes[0]
        assert node.role == Role.TRIGGER
        assert node.label == "Schedule - 0 9 * * *"

    def test_trigger_plus_connected_action_validates_clean(self):
        graph = _graph_with_trigger_and_action()
        report = validate_graph(graph.nodes, graph.edges)

        assert report.ok
        assert report.issues == []
        assert report.warnings == []

    def test_remove_action_cascades_edges_and_fails_reachability(self):
        graph = _graph_with_trigger_and_action()
        result = _apply(RemoveNode(id="a1"), graph)

        assert result.ok
        assert result.edges == []
        report = validate_graph(result.nodes, result.edges)
        assert any("no reachable action" in issue for issue in report.issues)

    def test_remove_missing_node_fails_and_leaves_graph_unchanged(self):
        graph = _graph_with_trigger_and_action()
        result = _apply(RemoveNode(id="missing"), graph)

        assert not result.ok
        assert any("missing" in issue for issue in result.issues)
        assert result.nodes == graph.nodes
        assert result.edges == graph.edges
        assert result.changed is False

    def test_bulk_with_failing_op_applies_nothing(self):
        result = apply_patch(
            Bulk(ops=[AddNode(id="x", kind="action.notify"), RemoveNode(id="y")]), [], []
        )

        assert not result.ok
        assert all(n.id != "x" for n in result.nodes)
        assert result.nodes == []


# ---------------------------------------------------------------------------
# ADD_NODE
# ---------------------------------------------------------------------------


class TestAddNode:
    def test_role_derived_from_kind_prefix(self):
        for kind, role in [
            ("trigger.manual", Role.TRIGGER),
            ("logic.filter", Role.LOGIC),
            ("ai.generate", Role.AI),
            ("action.email.send", Role.ACTION),
        ]:
            result = apply_patch(AddNode(id="n", kind=kind), [], [])
            assert result.nodes[0].role == role, kind

    def test_explicit_label_is_kept(self):
        result = apply_patch(
            AddNode(id="a1", kind="action.notify", label="Ping the team"), [], []
        )
        assert result.nodes[0].label == "Ping the team"

    def test_explicit_label_is_truncated(self):
        result = apply_patch(
            AddNode(id="a1", kind="action.notify", label="x" * 60), [], []
        )
        assert len(result.nodes[0].label) == 24

    def test_duplicate_id_rejected(self):
        graph = _graph_with_trigger_and_action()
        result = _apply(AddNode(id="a1", kind="action.notify"), graph)

        assert not result.ok
        assert "ADD_NODE: node 'a1' already exists" in result.issues

    def test_missing_kind_rejected(self):
        result = apply_patch(AddNode(id="a1"), [], [])
        assert not result.ok
        assert "kind" in result.issues[0]

    def test_unknown_category_rejected(self):
        result = apply_patch(AddNode(id="n1", kind="widget.spin"), [], [])
        assert not result.ok
        assert "no recognised category" in result.issues[0]

    def test_uncatalogued_kind_with_known_prefix_warns(self):
        result = apply_patch(AddNode(id="a1", kind="action.crm.createLead"), [], [])

        assert result.ok
        assert result.nodes[0].label == "Create Lead"
        assert any("not in the catalog" in w for w in result.warnings)

    def test_conflicting_role_is_ignored_with_warning(self):
        result = apply_patch(AddNode(id="a1", kind="action.notify", role="TRIGGER"), [], [])

        assert result.ok
        assert result.nodes[0].role == Role.ACTION
        assert result.warnings

    def test_second_trigger_allowed_by_default(self):
        graph = _graph_with_trigger_and_action()
        result = _apply(AddNode(id="t2", kind="trigger.manual"), graph)
        assert result.ok

    def test_second_trigger_rejected_when_strict(self):
        graph = _graph_with_trigger_and_action()
        result = _apply(AddNode(id="t2", kind="trigger.manual"), graph, strict_single_trigger=True)

        assert not result.ok
        assert "second trigger" in result.issues[0]

    def test_first_node_placed_at_default_position(self):
        result = apply_patch(AddNode(id="t1", kind="trigger.manual"), [], [])
        assert result.nodes[0].position == {"x": 100.0, "y": 100.0}

    def test_next_node_placed_right_of_rightmost(self):
        graph = _graph_with_trigger_and_action()
        rightmost = max(n.position["x"] for n in graph.nodes)
        result = _apply(AddNode(id="a2", kind="action.email.send"), graph)

        assert result.nodes[-1].position["x"] == rightmost + 250.0

    def test_explicit_position_is_kept(self):
        result = apply_patch(
            AddNode(id="a1", kind="action.notify", position={"x": 5, "y": 7}), [], []
        )
        assert result.nodes[0].position == {"x": 5.0, "y": 7.0}

    def test_malformed_url_in_config_still_labels(self):
        result = apply_patch(
            AddNode(id="a1", kind="action.http.request", config={"url": "http://[bad"}), [], []
        )

        assert result.ok
        assert result.nodes[0].label == "POST Request"


# ---------------------------------------------------------------------------
# UPDATE_NODE
# ---------------------------------------------------------------------------


class TestUpdateNode:
    def test_config_merged_key_by_key(self):
        graph = _graph_with_trigger_and_action()
        graph.nodes[1].config["channel"] = "slack"
        result = _apply(UpdateNode(id="a1", data={"config": {"destination": "sales"}}), graph)

        assert result.ok
        assert graph_node(result, "a1").config == {"destination": "sales", "channel": "slack"}

    def test_config_change_regenerates_label(self):
        graph = _graph_with_trigger_and_action()
        result = _apply(UpdateNode(id="t1", data={"config": {"cron": "0 0 * * *"}}), graph)

        assert graph_node(result, "t1").label == "Schedule - Daily"

    def test_explicit_label_wins_over_regeneration(self):
        graph = _graph_with_trigger_and_action()
        result = _apply(
            UpdateNode(id="t1", data={"config": {"cron": "0 0 * * *"}, "label": "Nightly"}),
            graph,
        )
        assert graph_node(result, "t1").label == "Nightly"

    def test_kind_change_recomputes_role(self):
        graph = _graph_with_trigger_and_action()
        result = _apply(UpdateNode(id="a1", data={"kind": "logic.delay"}), graph)

        assert graph_node(result, "a1").role == Role.LOGIC

    def test_position_replaced(self):
        graph = _graph_with_trigger_and_action()
        result = _apply(UpdateNode(id="a1", position={"x": 1, "y": 2}), graph)

        assert graph_node(result, "a1").position == {"x": 1.0, "y": 2.0}

    def test_unknown_node_rejected(self):
        graph = _graph_with_trigger_and_action()
        result = _apply(UpdateNode(id="zz", data={"label": "x"}), graph)

        assert not result.ok
        assert "zz" in result.issues[0]

    def test_update_is_idempotent(self):
        """Applying the same UPDATE_NODE twice equals applying it once."""
        graph = _graph_with_trigger_and_action()
        patch = UpdateNode(id="a1", data={"config": {"destination": "sales"}})

        once = _apply(patch, graph)
        twice = _apply(patch, once.graph)

        assert twice.ok
        assert twice.nodes == once.nodes
        assert twice.edges == once.edges
        assert twice.changed is False

    def test_malformed_url_in_config_still_labels(self):
        """A URL urllib cannot parse must not escape as an exception."""
        graph = _graph_with_trigger_and_action()
        graph = _apply(AddNode(id="a2", kind="action.http.request"), graph).graph

        result = _apply(UpdateNode(id="a2", data={"config": {"url": "https://[::1"}}), graph)

        assert result.ok
        assert graph_node(result, "a2").label == "POST Request"
        assert graph_node(result, "a2").config == {"url": "https://[::1"}


def graph_node(result, node_id):
    return next(n for n in result.nodes if n.id == node_id)


# ---------------------------------------------------------------------------
# REMOVE_NODE / edges / REWIRE
# ---------------------------------------------------------------------------


class TestEdges:
    def test_remove_node_drops_every_touching_edge(self):
        graph = _graph_with_trigger_and_action()
        graph = _apply(Bulk(ops=[
            AddNode(id="a2", kind="action.email.send"),
            AddEdge(id="e2", source="a1", target="a2"),
        ]), graph).graph
        result = _apply(RemoveNode(id="a1"), graph)

        assert result.ok
        assert {e.id for e in result.edges} == set()
        assert all("a1" not in (e.source, e.target) for e in result.edges)
        assert "(cascade)" in result.diff_summary

    def test_add_edge_missing_endpoint_rejected(self):
        graph = _graph_with_trigger_and_action()
        result = _apply(AddEdge(id="e9", source="t1", target="ghost"), graph)

        assert not result.ok
        assert "target node 'ghost' does not exist" in result.issues[0]

    def test_self_loop_rejected_unless_allowed(self):
        graph = _graph_with_trigger_and_action()
        assert not _apply(AddEdge(source="a1", target="a1"), graph).ok
        assert _apply(AddEdge(source="a1", target="a1"), graph, allow_self_loops=True).ok

    def test_duplicate_edge_id_rejected(self):
        graph = _graph_with_trigger_and_action()
        result = _apply(AddEdge(id="e1", source="a1", target="t1"), graph)
        assert not result.ok

    def test_missing_edge_id_is_derived(self):
        graph = _graph_with_trigger_and_action()
        result = _apply(AddEdge(source="a1", target="t1"), graph)

        assert result.ok
        assert result.edges[-1].id == "e_a1_t1"

    def test_derive_edge_id_suffixes_on_collision(self):
        assert derive_edge_id("a", "b", set()) == "e_a_b"
        assert derive_edge_id("a", "b", {"e_a_b"}) == "e_a_b_2"
        assert derive_edge_id("a", "b", {"e_a_b", "e_a_b_2"}) == "e_a_b_3"

    def test_remove_edge(self):
        graph = _graph_with_trigger_and_action()
        result = _apply(RemoveEdge(id="e1"), graph)

        assert result.ok
        assert result.edges == []
        assert not _apply(RemoveEdge(id="nope"), graph).ok

    def test_rewire_by_edge_id_keeps_the_id(self):
        graph = _graph_with_trigger_and_action()
        graph = _apply(AddNode(id="a2", kind="action.email.send"), graph).graph
        result = _apply(Rewire(from_node="t1", to_node="a2", edge_id="e1"), graph)

        assert result.ok
        assert result.edges == [WorkflowEdge(id="e1", source="t1", target="a2")]

    def test_rewire_without_edge_id_warns_when_ambiguous(self):
        graph = _graph_with_trigger_and_action()
        graph = _apply(Bulk(ops=[
            AddNode(id="a2", kind="action.email.send"),
            AddNode(id="a3", kind="action.http.request"),
            AddEdge(id="e2", source="t1", target="a2"),
        ]), graph).graph
        result = _apply(Rewire(from_node="t1", to_node="a3"), graph)

        assert result.ok
        assert result.edges[0] == WorkflowEdge(id="e1", source="t1", target="a3")
        assert any("rewire" in w for w in result.warnings)

    def test_rewire_with_no_outgoing_edge_fails(self):
        graph = _graph_with_trigger_and_action()
        result = _apply(Rewire(from_node="a1", to_node="t1"), graph)
        assert not result.ok


# ---------------------------------------------------------------------------
# BULK and purity
# ---------------------------------------------------------------------------


class TestBulkAndPurity:
    def test_later_ops_see_earlier_ops(self):
        result = apply_patch(Bulk(ops=[
            AddNode(id="t1", kind="trigger.manual"),
            AddNode(id="a1", kind="action.notify"),
            AddEdge(source="t1", target="a1"),
            UpdateNode(id="a1", data={"config": {"destination": "ops"}}),
        ]), [], [])

        assert result.ok
        assert result.edges[0].id == "e_t1_a1"
        assert result.nodes[1].label == "Notify - ops"

    def test_issues_carry_op_path_and_failed_op(self):
        result = apply_patch(Bulk(ops=[
            AddNode(id="x", kind="action.notify"),
            RemoveNode(id="y"),
        ]), [], [])

        assert result.issues == ["ops[1] REMOVE_NODE: node 'y' does not exist"]
        assert result.failed_op == "ops[1]"

    def test_nested_bulk_paths(self):
        result = apply_patch(Bulk(ops=[
            AddNode(id="x", kind="action.notify"),
            Bulk(ops=[RemoveEdge(id="nope")]),
        ]), [], [])

        assert result.failed_op == "ops[1].ops[0]"
        assert result.issues[0].startswith("ops[1].ops[0] REMOVE_EDGE:")

    def test_top_level_issue_has_no_path(self):
        result = apply_patch(RemoveNode(id="y"), [], [])
        assert result.issues == ["REMOVE_NODE: node 'y' does not exist"]
        assert result.failed_op is None

    def test_inputs_are_not_mutated(self):
        graph = _graph_with_trigger_and_action()
        before = copy.deepcopy(graph)
        apply_to_graph(Bulk(ops=[
            UpdateNode(id="a1", data={"config": {"destination": "x"}}),
            RemoveNode(id="t1"),
        ]), graph)

        assert graph == before

    def test_result_is_independent_of_inputs(self):
        graph = _graph_with_trigger_and_action()
        result = _apply(SetName(name="Renamed"), graph)
        result.nodes[0].config["cron"] = "changed"

        assert graph.nodes[0].config["cron"] == "0 9 * * *"

    def test_empty_bulk_is_ok_and_unchanged(self):
        graph = _graph_with_trigger_and_action()
        result = _apply(Bulk(ops=[]), graph)

        assert result.ok
        assert result.changed is False
        assert result.diff_summary == "(no changes)"

    def test_set_name(self):
        graph = _graph_with_trigger_and_action()
        result = _apply(SetName(name="Morning digest"), graph)

        assert result.ok
        assert result.name == "Morning digest"
        assert result.changed is True

    @pytest.mark.parametrize("patch", [
        AddNode(id="", kind="action.notify"),
        UpdateNode(id=""),
        RemoveNode(id=""),
        RemoveEdge(id=""),
        Rewire(from_node="", to_node="a1"),
    ])
    def test_missing_ids_rejected(self, patch):
        graph = _graph_with_trigger_and_action()
        assert not _apply(patch, graph).ok
