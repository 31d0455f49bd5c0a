"""Topology checks for a workflow graph.

validate_graph() is pure and never gates ordinary edits: the canvas may hold
half-built graphs at any time. It runs on demand (before a run, before
export) and reports two tiers:

  issues    blocking problems  — "no trigger", "multiple triggers",
                                 "no reachable action", dangling edges
  warnings  advisory notes     — "orphaned node", "branch", "cycle"

A graph is ok exactly when it has no issues.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Iterable

from workflow_builder.engine.graph_model import Role, WorkflowEdge, WorkflowNode


@dataclass
class ValidationReport:
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues

    def to_dict(self) -> dict[str, Any]:
        return {"ok": self.ok, "issues": list(self.issues), "warnings": list(self.warnings)}


def _adjacency(edges: Iterable[WorkflowEdge], node_ids: set[str]) -> dict[str, list[str]]:
    adj: dict[str, list[str]] = defaultdict(list)
    for e in edges:
        if e.source in node_ids and e.target in node_ids:
            adj[e.source].append(e.target)
    return adj


def reachable_from(start: Iterable[str], adj: dict[str, list[str]]) -> set[str]:
    """Every node reachable forward from `start` (start nodes included)."""
    seen: set[str] = set()
    stack = list(start)
    while stack:
        node_id = stack.pop()
        if node_id in seen:
            continue
        seen.add(node_id)
        stack.extend(adj.get(node_id, ()))
    return seen


def find_cycle(node_order: list[str], adj: dict[str, list[str]]) -> list[str] | None:
    """Return one cycle as a closed path ["a", "b", "a"], or None.

    Iterative three-colour DFS, visiting roots in node order so the result is
    deterministic.
    """
    white, grey, black = 0, 1, 2
    colour = {n: white for n in node_order}
    for root in node_order:
        if colour[root] != white:
            continue
        path: list[str] = [root]
        iters = [iter(adj.get(root, ()))]
        colour[root] = grey
        while iters:
            nxt = next(iters[-1], None)
            if nxt is None:
                colour[path.pop()] = black
                iters.pop()
                continue
            if colour.get(nxt) == grey:
                return path[path.index(nxt):] + [nxt]
            if colour.get(nxt) == white:
                colour[nxt] = grey
                path.append(nxt)
                iters.append(iter(adj.get(nxt, ())))
    return None


def validate_graph(nodes: list[WorkflowNode], edges: list[WorkflowEdge]) -> ValidationReport:
    """Check the run-time topology rules and return a ValidationReport.

    Checks, in order:
      1. exactly one TRIGGER node
      2. at least one ACTION node reachable forward from the trigger(s)
      3. no edge endpoint references a missing node
      4. every non-trigger node has an incoming edge      (warning)
      5. sources with more than one outgoing edge          (warning)
      6. cycles                                            (warning)
    """
    report = ValidationReport()
    node_ids = {n.id for n in nodes}
    triggers = [n for n in nodes if n.role == Role.TRIGGER]

    if not triggers:
        report.issues.append("no trigger: add a trigger step to start the workflow")
    elif len(triggers) > 1:
        report.issues.append(
            f"multiple triggers: {', '.join(t.id for t in triggers)} (keep exactly one)"
        )

    adj = _adjacency(edges, node_ids)
    if triggers:
        reached = reachable_from((t.id for t in triggers), adj)
        if not any(n.role == Role.ACTION and n.id in reached for n in nodes):
            report.issues.append("no reachable action: connect an action after the trigger")

    for e in edges:
        if e.source not in node_ids:
            report.issues.append(f"edge '{e.id}' references missing source node '{e.source}'")
        if e.target not in node_ids:
            report.issues.append(f"edge '{e.id}' references missing target node '{e.target}'")

    has_incoming = {e.target for e in edges if e.source in node_ids}
    for n in nodes:
        if n.role != Role.TRIGGER and n.id not in has_incoming:
            report.warnings.append(f"orphaned node: '{n.id}' ({n.label}) has no incoming edge")

    out_degree: dict[str, int] = defaultdict(int)
    for e in edges:
        out_degree[e.source] += 1
    for n in nodes:
        if out_degree[n.id] > 1:
            report.warnings.append(f"branch: '{n.id}' has {out_degree[n.id]} outgoing edges")

    cycle = find_cycle([n.id for n in nodes], adj)
    if cycle:
        report.warnings.append(f"cycle: {' -> '.join(cycle)}")

    return report
