"""Patch IR — typed, JSON-serializable graph mutation intents.

Each op describes a single atomic change to a workflow graph:
  AddNode     — append a new node (ADD_NODE)
  UpdateNode  — merge data into / move an existing node (UPDATE_NODE)
  RemoveNode  — delete a node and every edge touching it (REMOVE_NODE)
  AddEdge     — connect two existing nodes (ADD_EDGE)
  RemoveEdge  — delete an edge (REMOVE_EDGE)
  Rewire      — move an existing edge to run from -> to (REWIRE)
  SetName     — rename the workflow (SET_NAME)
  Bulk        — apply a list of ops all-or-nothing (BULK)

Every editing surface (canvas gestures, inspector forms, the chat planner)
speaks this IR. The wire form uses the upper-case op names:

  {"op": "ADD_NODE", "node": {"id": "t1", "kind": "trigger.schedule",
                              "config": {"cron": "0 9 * * *"}}}
  {"op": "UPDATE_NODE", "id": "t1", "data": {"config": {"cron": "0 8 * * *"}}}
  {"op": "ADD_EDGE", "edge": {"id": "e1", "source": "t1", "target": "a1"}}
  {"op": "REWIRE", "from": "t1", "to": "a2", "edgeId": "e1"}
  {"op": "BULK", "ops": [...]}

Parsing is tolerant of the shapes planners tend to emit (reactflow-style
node.data nesting, from/to edges, ```json fences); structural checks against
a concrete graph happen in applier.apply_patch().
"""

from __future__ import annotations

import copy
import dataclasses
import json
from dataclasses import dataclass, field
from typing import Any, Iterator, Union


# ---------------------------------------------------------------------------
# Patch IR operation types
# ---------------------------------------------------------------------------


@dataclass
class AddNode:
    """Append a new node to the graph.

    id:       Unique node ID. Must not exist yet.
    kind:     Catalog kind (e.g. "trigger.schedule"). Role is derived from it.
    label:    Optional explicit label. Generated from kind + config when None.
    role:     Optional role. Recomputed from kind when None.
    position: Optional {x, y}. Auto-placed right of the rightmost node when None.
    config:   Kind-specific settings.
    """

    op: str = "ADD_NODE"
    id: str = ""
    kind: str = ""
    label: str | None = None
    role: str | None = None
    position: dict[str, float] | None = None
    config: dict[str, Any] = field(default_factory=dict)


@dataclass
class UpdateNode:
    """Merge `data` into an existing node and/or move it.

    data:     Partial node data (label, kind, config, role). `config` is merged
              key by key; a config change regenerates the label unless `data`
              carries its own label.
    position: Replaces the node's position wholesale when given.
    """

    op: str = "UPDATE_NODE"
    id: str = ""
    data: dict[str, Any] | None = None
    position: dict[str, float] | None = None


@dataclass
class RemoveNode:
    """Remove node `id` and cascade-remove every edge referencing it."""

    op: str = "REMOVE_NODE"
    id: str = ""


@dataclass
class AddEdge:
    """Connect `source` to `target`. The ID is derived from the endpoints when empty."""

    op: str = "ADD_EDGE"
    id: str = ""
    source: str = ""
    target: str = ""


@dataclass
class RemoveEdge:
    op: str = "REMOVE_EDGE"
    id: str = ""


@dataclass
class Rewire:
    """Re-point an edge so it runs `from_node -> to_node`.

    edge_id: The edge to move. When None, the first edge whose source is
             `from_node` is used (best effort when several edges qualify).
    """

    op: str = "REWIRE"
    from_node: str = ""
    to_node: str = ""
    edge_id: str | None = None


@dataclass
class SetName:
    op: str = "SET_NAME"
    name: str = ""


@dataclass
class Bulk:
    """Apply `ops` in order against one working copy, all-or-nothing."""

    op: str = "BULK"
    ops: list["PatchOp"] = field(default_factory=list)


# Union type for all Patch IR ops
PatchOp = Union[AddNode, UpdateNode, RemoveNode, AddEdge, RemoveEdge, Rewire, SetName, Bulk]

# Discriminator map: wire op name → dataclass
_OP_TYPE_MAP: dict[str, type] = {
    "ADD_NODE": AddNode,
    "UPDATE_NODE": UpdateNode,
    "REMOVE_NODE": RemoveNode,
    "ADD_EDGE": AddEdge,
    "REMOVE_EDGE": RemoveEdge,
    "REWIRE": Rewire,
    "SET_NAME": SetName,
    "BULK": Bulk,
}

OP_NAMES: tuple[str, ...] = tuple(_OP_TYPE_MAP)


class PatchIRValidationError(ValueError):
    """Raised when a wire payload cannot be parsed into Patch IR.

    errors: list of human-readable error strings, one per problem found.
    """

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors


# ---------------------------------------------------------------------------
# Traversal helpers
# ---------------------------------------------------------------------------


def walk_ops(patch: PatchOp, path: str = "") -> Iterator[tuple[str, PatchOp]]:
    """Yield (path, op) for `patch` and, recursively, every BULK sub-op.

    Paths look like "" (the root), "ops[0]", "ops[2].ops[1]".
    """
    yield path, patch
    if isinstance(patch, Bulk):
        for i, sub in enumerate(patch.ops):
            sub_path = f"{path}.ops[{i}]" if path else f"ops[{i}]"
            yield from walk_ops(sub, sub_path)


def count_ops(patch: PatchOp) -> int:
    """Number of leaf ops in `patch` (BULK containers are not counted)."""
    return sum(1 for _, op in walk_ops(patch) if not isinstance(op, Bulk))


def removed_node_ids(patch: PatchOp) -> list[str]:
    """IDs targeted by REMOVE_NODE anywhere inside `patch`, in order."""
    return [op.id for _, op in walk_ops(patch) if isinstance(op, RemoveNode)]


def touched_ids(patch: PatchOp) -> tuple[list[str], list[str]]:
    """(node_ids, edge_ids) a patch adds or modifies, for highlighting.

    Removed entities are not included.
    """
    node_ids: list[str] = []
    edge_ids: list[str] = []
    for _, op in walk_ops(patch):
        if isinstance(op, AddNode):
            node_ids.append(op.id)
        elif isinstance(op, UpdateNode):
            node_ids.append(op.id)
        elif isinstance(op, AddEdge):
            if op.id:
                edge_ids.append(op.id)
            node_ids.extend([op.source, op.target])
        elif isinstance(op, Rewire):
            if op.edge_id:
                edge_ids.append(op.edge_id)
            node_ids.extend([op.from_node, op.to_node])
    return list(dict.fromkeys(i for i in node_ids if i)), list(dict.fromkeys(edge_ids))


# ---------------------------------------------------------------------------
# JSON serialization / deserialization
# ---------------------------------------------------------------------------


def op_to_dict(op: PatchOp) -> dict[str, Any]:
    """Serialize a single PatchOp to its JSON-safe wire dict."""
    if isinstance(op, AddNode):
        node: dict[str, Any] = {"id": op.id, "kind": op.kind, "config": copy.deepcopy(op.config)}
        for key in ("label", "role", "position"):
            value = getattr(op, key)
            if value is not None:
                node[key] = copy.deepcopy(value)
        return {"op": op.op, "node": node}
    if isinstance(op, AddEdge):
        return {"op": op.op, "edge": {"id": op.id, "source": op.source, "target": op.target}}
    if isinstance(op, Rewire):
        d: dict[str, Any] = {"op": op.op, "from": op.from_node, "to": op.to_node}
        if op.edge_id:
            d["edgeId"] = op.edge_id
        return d
    if isinstance(op, UpdateNode):
        d = {"op": op.op, "id": op.id}
        if op.data is not None:
            d["data"] = copy.deepcopy(op.data)
        if op.position is not None:
            d["position"] = dict(op.position)
        return d
    if isinstance(op, Bulk):
        return {"op": op.op, "ops": [op_to_dict(sub) for sub in op.ops]}
    return dataclasses.asdict(op)


def op_from_dict(d: dict[str, Any]) -> PatchOp:
    """Deserialize a wire dict to a typed PatchOp.

    Raises PatchIRValidationError for unknown op names or payloads missing
    their required container (e.g. ADD_NODE without any node fields).
    Unknown keys are silently dropped (forward-compatibility).
    """
    if not isinstance(d, dict):
        raise PatchIRValidationError([f"Expected a patch object, got {type(d).__name__}"])
    op_name = str(d.get("op") or "").upper()
    if op_name not in _OP_TYPE_MAP:
        raise PatchIRValidationError([
            f"Unknown op: {d.get('op')!r}. Valid ops: {list(_OP_TYPE_MAP)}"
        ])

    if op_name == "ADD_NODE":
        return _add_node_from_dict(d)
    if op_name == "ADD_EDGE":
        raw = d.get("edge") if isinstance(d.get("edge"), dict) else d
        return AddEdge(
            id=str(raw.get("id") or ""),
            source=str(raw.get("source") or raw.get("from") or ""),
            target=str(raw.get("target") or raw.get("to") or ""),
        )
    if op_name == "UPDATE_NODE":
        data = d.get("data")
        if data is not None and not isinstance(data, dict):
            raise PatchIRValidationError(["UPDATE_NODE: data must be an object"])
        return UpdateNode(id=str(d.get("id") or ""), data=data, position=d.get("position"))
    if op_name == "REWIRE":
        return Rewire(
            from_node=str(d.get("from") or ""),
            to_node=str(d.get("to") or ""),
            edge_id=d.get("edgeId") or d.get("edge_id") or None,
        )
    if op_name == "SET_NAME":
        return SetName(name=str(d.get("name") or ""))
    if op_name == "BULK":
        raw_ops = d.get("ops")
        if raw_ops is None:
            raw_ops = []
        if not isinstance(raw_ops, list):
            raise PatchIRValidationError(["BULK: ops must be an array"])
        errors: list[str] = []
        ops: list[PatchOp] = []
        for i, item in enumerate(raw_ops):
            try:
                ops.append(op_from_dict(item))
            except PatchIRValidationError as e:
                errors.extend(f"ops[{i}] {msg}" for msg in e.errors)
        if errors:
            raise PatchIRValidationError(errors)
        return Bulk(ops=ops)
    # REMOVE_NODE / REMOVE_EDGE
    return _OP_TYPE_MAP[op_name](id=str(d.get("id") or ""))


def _add_node_from_dict(d: dict[str, Any]) -> AddNode:
    raw = d.get("node")
    if raw is None and any(k in d for k in ("id", "kind", "data")):
        raw = d  # node fields given at top level
    if not isinstance(raw, dict):
        raise PatchIRValidationError(["ADD_NODE: missing node"])
    # reactflow-style {id, position, data: {kind, label, config, role}}
    data = raw.get("data") if isinstance(raw.get("data"), dict) else {}
    config = raw.get("config", data.get("config"))
    return AddNode(
        id=str(raw.get("id") or ""),
        kind=str(raw.get("kind") or data.get("kind") or ""),
        label=raw.get("label") or data.get("label") or None,
        role=raw.get("role") or data.get("role") or None,
        position=raw.get("position"),
        config=copy.deepcopy(config) if isinstance(config, dict) else {},
    )


def patch_to_json(patch: PatchOp) -> str:
    """Serialize a patch to a pretty-printed JSON string."""
    return json.dumps(op_to_dict(patch), indent=2)


def load_json_payload(s: str) -> Any:
    """Parse JSON text, tolerating a surrounding ```json fence.

    Raises PatchIRValidationError when the text is not valid JSON.
    """
    stripped = s.strip()
    if stripped.startswith("```"):
        lines = stripped.splitlines()[1:]
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]
        stripped = "\n".join(lines).strip()

    try:
        return json.loads(stripped)
    except json.JSONDecodeError as e:
        raise PatchIRValidationError([f"Invalid JSON: {e}"]) from e


def patch_from_payload(raw: Any) -> PatchOp:
    """Build a PatchOp from decoded JSON.

    Accepts a single patch object, an array of patches (wrapped in a BULK),
    or an {"ops": [...]} envelope (also a BULK). Raises
    PatchIRValidationError on anything else.
    """
    if isinstance(raw, list):
        return op_from_dict({"op": "BULK", "ops": raw})
    if isinstance(raw, dict) and "op" not in raw and isinstance(raw.get("ops"), list):
        return op_from_dict({"op": "BULK", "ops": raw["ops"]})
    return op_from_dict(raw)


def patch_from_json(s: str) -> PatchOp:
    """Deserialize a JSON string (or code-fenced block) to a PatchOp."""
    return patch_from_payload(load_json_payload(s))
