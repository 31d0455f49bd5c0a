"""Tests for the Patch IR: wire parsing, serialization and traversal helpers.

Covers:
  - op_from_dict for every op, including the tolerant shapes planners emit
  - PatchIRValidationError for unknown ops and malformed BULK items
  - patch_from_json fences, arrays and {"ops": [...]} envelopes
  - walk_ops / count_ops / removed_node_ids / touched_ids
"""

import json

import pytest

from workflow_builder.engine.patch_ir import (
    AddEdge,
    AddNode,
    Bulk,
    PatchIRValidationError,
    RemoveEdge,
    RemoveNode,
    Rewire,
    SetName,
    UpdateNode,
    count_ops,
    op_from_dict,
    op_to_dict,
    patch_from_json,
    patch_from_payload,
    patch_to_json,
    removed_node_ids,
    touched_ids,
    walk_ops,
)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class TestOpFromDict:
    def test_add_node_canonical(self):
        op = op_from_dict({
            "op": "ADD_NODE",
            "node": {"id": "t1", "kind": "trigger.schedule", "config": {"cron": "0 9 * * *"}},
        })
        assert op == AddNode(id="t1", kind="trigger.schedule", config={"cron": "0 9 * * *"})

    def test_add_node_reactflow_data_nesting(self):
        op = op_from_dict({
            "op": "ADD_NODE",
            "node": {"id": "a1", "position": {"x": 1, "y": 2},
                     "data": {"kind": "action.notify", "label": "Ping", "config": {"to": "x"}}},
        })
        assert op.kind == "action.notify"
        assert op.label == "Ping"
        assert op.config == {"to": "x"}
        assert op.position == {"x": 1, "y": 2}

    def test_add_node_fields_at_top_level(self):
        op = op_from_dict({"op": "ADD_NODE", "id": "a1", "kind": "action.notify"})
        assert op == AddNode(id="a1", kind="action.notify")

    def test_add_node_without_node_rejected(self):
        with pytest.raises(PatchIRValidationError, match="missing node"):
            op_from_dict({"op": "ADD_NODE"})

    def test_op_name_is_case_insensitive(self):
        assert op_from_dict({"op": "remove_node", "id": "a1"}) == RemoveNode(id="a1")

    def test_add_edge_from_to_aliases(self):
        op = op_from_dict({"op": "ADD_EDGE", "from": "t1", "to": "a1"})
        assert op == AddEdge(source="t1", target="a1")

    def test_rewire(self):
        op = op_from_dict({"op": "REWIRE", "from": "t1", "to": "a2", "edgeId": "e1"})
        assert op == Rewire(from_node="t1", to_node="a2", edge_id="e1")

    def test_update_node_data_must_be_object(self):
        with pytest.raises(PatchIRValidationError):
            op_from_dict({"op": "UPDATE_NODE", "id": "a1", "data": "oops"})

    def test_unknown_op(self):
        with pytest.raises(PatchIRValidationError, match="Unknown op"):
            op_from_dict({"op": "EXPLODE"})

    def test_non_object(self):
        with pytest.raises(PatchIRValidationError):
            op_from_dict(["ADD_NODE"])

    def test_bulk_errors_carry_item_index(self):
        with pytest.raises(PatchIRValidationError) as exc:
            op_from_dict({"op": "BULK", "ops": [
                {"op": "REMOVE_NODE", "id": "a1"},
                {"op": "NOPE"},
                {"op": "ADD_NODE"},
            ]})
        assert len(exc.value.errors) == 2
        assert exc.value.errors[0].startswith("ops[1] Unknown op")
        assert exc.value.errors[1] == "ops[2] ADD_NODE: missing node"

    def test_bulk_ops_must_be_array(self):
        with pytest.raises(PatchIRValidationError):
            op_from_dict({"op": "BULK", "ops": {"op": "SET_NAME"}})


class TestJson:
    def test_round_trip_every_op(self):
        patch = Bulk(ops=[
            AddNode(id="t1", kind="trigger.manual", label="Go", position={"x": 1.0, "y": 2.0}),
            UpdateNode(id="t1", data={"config": {"a": 1}}),
            AddEdge(id="e1", source="t1", target="a1"),
            Rewire(from_node="t1", to_node="a2", edge_id="e1"),
            RemoveEdge(id="e1"),
            RemoveNode(id="a1"),
            SetName(name="Flow"),
        ])
        assert patch_from_json(patch_to_json(patch)) == patch

    def test_wire_shapes(self):
        assert op_to_dict(AddEdge(id="e1", source="a", target="b")) == {
            "op": "ADD_EDGE", "edge": {"id": "e1", "source": "a", "target": "b"},
        }
        assert op_to_dict(Rewire(from_node="a", to_node="b")) == {"op": "REWIRE", "from": "a", "to": "b"}
        assert op_to_dict(SetName(name="x")) == {"op": "SET_NAME", "name": "x"}

    def test_code_fence_is_stripped(self):
        text = '```json\n{"op": "REMOVE_NODE", "id": "a1"}\n```'
        assert patch_from_json(text) == RemoveNode(id="a1")

    def test_array_becomes_bulk(self):
        patch = patch_from_json(json.dumps([{"op": "REMOVE_NODE", "id": "a1"}]))
        assert patch == Bulk(ops=[RemoveNode(id="a1")])

    def test_ops_envelope_becomes_bulk(self):
        patch = patch_from_payload({"ops": [{"op": "SET_NAME", "name": "x"}]})
        assert patch == Bulk(ops=[SetName(name="x")])

    def test_invalid_json(self):
        with pytest.raises(PatchIRValidationError, match="Invalid JSON"):
            patch_from_json("{not json")


# ---------------------------------------------------------------------------
# Traversal helpers
# ---------------------------------------------------------------------------


class TestTraversal:
    def _nested(self):
        return Bulk(ops=[
            AddNode(id="a2", kind="action.notify"),
            Bulk(ops=[RemoveNode(id="a1"), AddEdge(source="t1", target="a2")]),
            Rewire(from_node="t1", to_node="a2", edge_id="e1"),
        ])

    def test_walk_ops_paths(self):
        paths = [path for path, _ in walk_ops(self._nested())]
        assert paths == ["", "ops[0]", "ops[1]", "ops[1].ops[0]", "ops[1].ops[1]", "ops[2]"]

    def test_count_ops_counts_leaves(self):
        assert count_ops(self._nested()) == 4
        assert count_ops(Bulk(ops=[])) == 0

    def test_removed_node_ids(self):
        assert removed_node_ids(self._nested()) == ["a1"]

    def test_touched_ids(self):
        nodes, edges = touched_ids(self._nested())
        assert nodes == ["a2", "t1"]
        assert edges == ["e1"]
