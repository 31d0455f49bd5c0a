"""Deterministic patch applier.

Takes the current nodes/edges/name plus one PatchOp and produces a PatchResult:
  ok:           True when the patch applied cleanly (no issues)
  nodes/edges:  the candidate graph (the untouched inputs on failure)
  name:         the candidate workflow name
  issues:       structural errors; non-empty means nothing was applied
  warnings:     non-blocking notes (ambiguous rewire, uncatalogued kind)
  diff_summary: human-readable change log ("NODES ADDED: ...")
  failed_op:    path of the first failing BULK sub-op, e.g. "ops[1]"
  changed:      False for a successful patch that altered nothing

The applier is pure: inputs are deep-copied before any mutation and never
touched. Expected failures are reported in `issues`, never raised. Topology
rules that only matter at run time (trigger count, reachability, orphans)
are left to validator.validate_graph().
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any

from workflow_builder.engine.graph_model import (
    DEFAULT_X,
    DEFAULT_Y,
    Role,
    WorkflowEdge,
    WorkflowGraph,
    WorkflowNode,
    is_known_kind,
    role_for_kind,
)
from workflow_builder.engine.labeler import generate_label, truncate_label
from workflow_builder.engine.patch_ir import (
    AddEdge,
    AddNode,
    Bulk,
    PatchOp,
    RemoveEdge,
    RemoveNode,
    Rewire,
    SetName,
    UpdateNode,
)

logger = logging.getLogger("workflow_builder.engine.applier")

# Auto-layout spacing (pixels)
_SPACING_X: float = 250.0
_SPACING_Y: float = 150.0
_COLLISION_PX: float = 50.0


# ---------------------------------------------------------------------------
# PatchResult
# ---------------------------------------------------------------------------


@dataclass
class PatchResult:
    """Result of applying one patch to a graph.

    On failure nodes/edges/name are the caller's inputs (deep copies), so a
    caller may commit `result.nodes` unconditionally without corrupting state.
    """

    nodes: list[WorkflowNode]
    edges: list[WorkflowEdge]
    name: str
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    diff_summary: str = "(no changes)"
    failed_op: str | None = None
    changed: bool = False

    @property
    def ok(self) -> bool:
        """True when the patch applied (no structural issues)."""
        return not self.issues

    @property
    def graph(self) -> WorkflowGraph:
        return WorkflowGraph(nodes=self.nodes, edges=self.edges, name=self.name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "diff_summary": self.diff_summary,
            "failed_op": self.failed_op,
            "changed": self.changed,
            "graph": self.graph.to_document(),
        }


@dataclass
class _Context:
    """Per-call bookkeeping shared by every (sub-)op of one patch."""

    allow_self_loops: bool
    strict_single_trigger: bool
    warnings: list[str] = field(default_factory=list)
    diff_lines: list[str] = field(default_factory=list)
    failed_op: str | None = None


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _auto_position(existing: list[WorkflowNode]) -> dict[str, float]:
    """Place a new node to the right of the rightmost node.

    Drops one row down when that spot is already occupied. The first node of
    an empty graph lands at (DEFAULT_X, DEFAULT_Y).
    """
    if not existing:
        return {"x": DEFAULT_X, "y": DEFAULT_Y}
    rightmost = max(existing, key=lambda n: n.position.get("x", 0.0))
    x = rightmost.position.get("x", DEFAULT_X) + _SPACING_X
    y = rightmost.position.get("y", DEFAULT_Y)
    collision = any(
        abs(n.position.get("x", 0.0) - x) < _COLLISION_PX
        and abs(n.position.get("y", 0.0) - y) < _COLLISION_PX
        for n in existing
    )
    if collision:
        y += _SPACING_Y
    return {"x": x, "y": y}


def derive_edge_id(source: str, target: str, existing: set[str]) -> str:
    """Deterministic edge ID for source -> target, unique within `existing`.

    "e_t1_a1", then "e_t1_a1_2", "e_t1_a1_3", ... on collision.
    """
    base = f"e_{source}_{target}"
    if base not in existing:
        return base
    n = 2
    while f"{base}_{n}" in existing:
        n += 1
    return f"{base}_{n}"


def _coerce_position(raw: Any) -> dict[str, float] | None:
    if not isinstance(raw, dict):
        return None
    try:
        return {"x": float(raw["x"]), "y": float(raw["y"])}
    except (KeyError, TypeError, ValueError):
        return None


def _trigger_count(graph: WorkflowGraph) -> int:
    return sum(1 for n in graph.nodes if n.role == Role.TRIGGER)


# ---------------------------------------------------------------------------
# Per-op handlers: each validates first, then mutates `graph` in place.
# They return a list of issue strings (empty = applied).
# ---------------------------------------------------------------------------


def _add_node(op: AddNode, graph: WorkflowGraph, ctx: _Context) -> list[str]:
    if not op.id:
        return ["node is missing required id"]
    if not op.kind:
        return [f"node '{op.id}' is missing required kind"]
    if graph.get_node(op.id) is not None:
        return [f"node '{op.id}' already exists"]
    role = role_for_kind(op.kind)
    if role is None:
        return [
            f"node '{op.id}' has kind '{op.kind}' with no recognised category "
            "(expected trigger., logic., ai. or action.)"
        ]
    if op.role and str(op.role).upper() != role.value:
        ctx.warnings.append(
            f"node '{op.id}': role {op.role!r} ignored, derived {role.value} from kind"
        )
    if role == Role.TRIGGER and ctx.strict_single_trigger and _trigger_count(graph) > 0:
        return [f"node '{op.id}' would add a second trigger"]
    if not is_known_kind(op.kind):
        ctx.warnings.append(f"node '{op.id}': kind '{op.kind}' is not in the catalog")

    position = _coerce_position(op.position)
    if position is None:
        position = _auto_position(graph.nodes)
    config = copy.deepcopy(op.config or {})
    label = truncate_label(str(op.label)) if op.label and str(op.label).strip() else ""
    label = label or generate_label(op.kind, config)

    graph.nodes.append(WorkflowNode(
        id=op.id,
        kind=op.kind,
        role=role,
        label=label,
        position=position,
        config=config,
    ))
    ctx.diff_lines.append(f'NODES ADDED: [{op.id}] kind="{op.kind}" label="{label}"')
    return []


def _update_node(op: UpdateNode, graph: WorkflowGraph, ctx: _Context) -> list[str]:
    if not op.id:
        return ["missing required id"]
    node = graph.get_node(op.id)
    if node is None:
        return [f"node '{op.id}' does not exist"]
    data = op.data or {}

    new_kind = data.get("kind")
    new_role = node.role
    if new_kind is not None and new_kind != node.kind:
        new_role = role_for_kind(new_kind)
        if new_role is None:
            return [f"node '{op.id}': kind '{new_kind}' has no recognised category"]
    position = None
    if op.position is not None:
        position = _coerce_position(op.position)
        if position is None:
            return [f"node '{op.id}': position must be an object with numeric x and y"]
    config_patch = data.get("config")
    if config_patch is not None and not isinstance(config_patch, dict):
        return [f"node '{op.id}': config must be an object"]

    changes: list[str] = []
    if new_kind is not None and new_kind != node.kind:
        node.kind = new_kind
        node.role = new_role
        changes.append(f'kind="{new_kind}"')
    if config_patch is not None:
        node.config = {**node.config, **copy.deepcopy(config_patch)}
        changes.append("config=" + ",".join(sorted(config_patch)) if config_patch else "config")

    explicit_label = data.get("label")
    if explicit_label:
        node.label = truncate_label(str(explicit_label))
        changes.append(f'label="{node.label}"')
    elif config_patch is not None or new_kind is not None:
        node.label = generate_label(node.kind, node.config)
    if position is not None:
        node.position = position
        changes.append(f"position=({position['x']:g},{position['y']:g})")

    ctx.diff_lines.append(
        f"NODES MODIFIED: [{op.id}] " + (" ".join(changes) if changes else "(no fields)")
    )
    return []


def _remove_node(op: RemoveNode, graph: WorkflowGraph, ctx: _Context) -> list[str]:
    if not op.id:
        return ["missing required id"]
    node = graph.get_node(op.id)
    if node is None:
        return [f"node '{op.id}' does not exist"]
    dropped = [e.id for e in graph.edges if op.id in (e.source, e.target)]
    graph.nodes = [n for n in graph.nodes if n.id != op.id]
    graph.edges = [e for e in graph.edges if op.id not in (e.source, e.target)]
    ctx.diff_lines.append(f'NODES REMOVED: [{op.id}] label="{node.label}"')
    if dropped:
        ctx.diff_lines.append(f"EDGES REMOVED: {', '.join(dropped)} (cascade)")
    return []


def _add_edge(op: AddEdge, graph: WorkflowGraph, ctx: _Context) -> list[str]:
    errors: list[str] = []
    if not op.source or not op.target:
        return ["edge needs both source and target"]
    if op.id and graph.get_edge(op.id) is not None:
        errors.append(f"edge '{op.id}' already exists")
    for end, node_id in (("source", op.source), ("target", op.target)):
        if graph.get_node(node_id) is None:
            errors.append(f"{end} node '{node_id}' does not exist")
    if op.source == op.target and not ctx.allow_self_loops:
        errors.append(f"self-loop on '{op.source}' is not allowed")
    if errors:
        return errors
    edge_id = op.id or derive_edge_id(op.source, op.target, graph.edge_ids())
    graph.edges.append(WorkflowEdge(id=edge_id, source=op.source, target=op.target))
    ctx.diff_lines.append(f"EDGES ADDED: [{edge_id}] {op.source}→{op.target}")
    return []


def _remove_edge(op: RemoveEdge, graph: WorkflowGraph, ctx: _Context) -> list[str]:
    if not op.id:
        return ["missing required id"]
    edge = graph.get_edge(op.id)
    if edge is None:
        return [f"edge '{op.id}' does not exist"]
    graph.edges = [e for e in graph.edges if e.id != op.id]
    ctx.diff_lines.append(f"EDGES REMOVED: [{op.id}] {edge.source}→{edge.target}")
    return []


def _rewire(op: Rewire, graph: WorkflowGraph, ctx: _Context) -> list[str]:
    if not op.from_node or not op.to_node:
        return ["missing from/to"]
    errors = [
        f"{end} node '{node_id}' does not exist"
        for end, node_id in (("from", op.from_node), ("to", op.to_node))
        if graph.get_node(node_id) is None
    ]
    if op.from_node == op.to_node and not ctx.allow_self_loops:
        errors.append(f"rewire would create a self-loop on '{op.from_node}'")
    if errors:
        return errors

    if op.edge_id:
        edge = graph.get_edge(op.edge_id)
        if edge is None:
            return [f"edge '{op.edge_id}' does not exist"]
    else:
        candidates = [e for e in graph.edges if e.source == op.from_node]
        if not candidates:
            return [f"no edge leaves '{op.from_node}'"]
        edge = candidates[0]
        if len(candidates) > 1:
            ctx.warnings.append(
                f"rewire: {len(candidates)} edges leave '{op.from_node}', "
                f"moved the first ('{edge.id}'); pass edgeId to choose"
            )
            logger.warning(
                "Ambiguous rewire from %s: %d candidate edges, using %s",
                op.from_node, len(candidates), edge.id,
            )
    old = f"{edge.source}→{edge.target}"
    edge.source = op.from_node
    edge.target = op.to_node
    ctx.diff_lines.append(
        f"EDGES REWIRED: [{edge.id}] {old} => {op.from_node}→{op.to_node}"
    )
    return []


def _set_name(op: SetName, graph: WorkflowGraph, ctx: _Context) -> list[str]:
    if op.name != graph.name:
        ctx.diff_lines.append(f'NAME SET: "{op.name}"')
    graph.name = op.name
    return []


_HANDLERS = {
    AddNode: _add_node,
    UpdateNode: _update_node,
    RemoveNode: _remove_node,
    AddEdge: _add_edge,
    RemoveEdge: _remove_edge,
    Rewire: _rewire,
    SetName: _set_name,
}


def _apply(op: PatchOp, graph: WorkflowGraph, ctx: _Context, path: str) -> list[str]:
    """Apply `op` to `graph`, returning issues prefixed with their op path."""
    if isinstance(op, Bulk):
        issues: list[str] = []
        for i, sub in enumerate(op.ops):
            sub_path = f"{path}.ops[{i}]" if path else f"ops[{i}]"
            issues.extend(_apply(sub, graph, ctx, sub_path))
        return issues

    handler = _HANDLERS.get(type(op))
    if handler is None:
        errors = [f"unsupported op type {type(op).__name__}"]
    else:
        errors = handler(op, graph, ctx)
    if errors and path and ctx.failed_op is None:
        ctx.failed_op = path
    prefix = f"{path} {op.op}" if path else op.op
    return [f"{prefix}: {msg}" for msg in errors]


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------


def apply_patch(
    patch: PatchOp,
    nodes: list[WorkflowNode],
    edges: list[WorkflowEdge],
    *,
    name: str = "",
    allow_self_loops: bool = False,
    strict_single_trigger: bool = False,
) -> PatchResult:
    """Apply one patch to (nodes, edges, name) and return the candidate graph.

    Parameters
    ----------
    patch:                  Any PatchOp. A Bulk applies its ops in order
                            against one working copy, all-or-nothing.
    nodes / edges / name:   The current graph. Never mutated.
    allow_self_loops:       Accept ADD_EDGE / REWIRE with source == target.
    strict_single_trigger:  Reject ADD_NODE of a second trigger instead of
                            leaving it for the validator to flag.

    Rules
    -----
    - Every op validates its references before mutating anything, so a
      failing op leaves the working copy as it was.
    - In a Bulk, ops after the first failure still run against the working
      copy so the caller sees every problem at once; the batch is discarded.
    - Issues are prefixed with the op path: "ops[1] REMOVE_NODE: ...".
    """
    ctx = _Context(
        allow_self_loops=allow_self_loops,
        strict_single_trigger=strict_single_trigger,
    )
    base = WorkflowGraph(nodes=list(nodes), edges=list(edges), name=name)
    working = base.copy()

    issues = _apply(patch, working, ctx, "")

    if issues:
        logger.info("Patch %s rejected: %s", patch.op, issues)
        original = base.copy()
        return PatchResult(
            nodes=original.nodes,
            edges=original.edges,
            name=original.name,
            issues=issues,
            warnings=ctx.warnings,
            diff_summary="(no changes)",
            failed_op=ctx.failed_op,
            changed=False,
        )

    changed = (
        working.nodes != base.nodes
        or working.edges != base.edges
        or working.name != base.name
    )
    logger.debug("Patch %s applied (%d diff lines)", patch.op, len(ctx.diff_lines))
    return PatchResult(
        nodes=working.nodes,
        edges=working.edges,
        name=working.name,
        warnings=ctx.warnings,
        diff_summary="\n".join(ctx.diff_lines) if ctx.diff_lines else "(no changes)",
        changed=changed,
    )


def apply_to_graph(patch: PatchOp, graph: WorkflowGraph, **options: bool) -> PatchResult:
    """Convenience wrapper: apply_patch() against a WorkflowGraph."""
    return apply_patch(patch, graph.nodes, graph.edges, name=graph.name, **options)
