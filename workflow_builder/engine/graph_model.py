"""Canonical workflow graph model.

A workflow is a directed graph of typed steps:

  WorkflowNode  — one step: id, kind, derived role, display label, canvas
                  position and a kind-specific config dict.
  WorkflowEdge  — a directed connection between two node IDs.
  WorkflowGraph — ordered node list (paint order only), edge list and name.

The same shapes travel over the wire as the interchange document:

  {
    "name": "Daily digest",
    "nodes": [
      {"id": "t1", "kind": "trigger.schedule", "label": "Schedule - 0 9 * * *",
       "position": {"x": 100, "y": 100}, "config": {"cron": "0 9 * * *"}}
    ],
    "edges": [{"id": "e1", "source": "t1", "target": "a1"}]
  }

Roles are never stored authoritatively: they are derived from the category
prefix of the kind ("trigger.", "logic.", "ai.", "action.").
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# Default canvas placement (pixels)
DEFAULT_X: float = 100.0
DEFAULT_Y: float = 100.0


class Role(str, Enum):
    """Coarse node category used for structural validation only."""

    TRIGGER = "TRIGGER"
    LOGIC = "LOGIC"
    AI = "AI"
    ACTION = "ACTION"


_ROLE_PREFIXES: dict[str, Role] = {
    "trigger": Role.TRIGGER,
    "logic": Role.LOGIC,
    "ai": Role.AI,
    "action": Role.ACTION,
}

# Closed catalog of node kinds the builder knows how to configure and label.
NODE_KINDS: frozenset[str] = frozenset({
    # Triggers
    "trigger.schedule",
    "trigger.scheduler.cron",
    "trigger.webhook.inbound",
    "trigger.manual",
    "trigger.facebook.comment",
    "trigger.sheets.newRow",
    "trigger.sheets.update",
    # Logic / AI
    "logic.filter",
    "logic.delay",
    "ai.guard",
    "ai.generate",
    # Actions
    "action.notify",
    "action.email.send",
    "action.http.request",
    "action.facebook.reply",
    "action.facebook.dm",
    "action.sheets.appendRow",
    "action.sheets.readRows",
    "action.sheets.updateCell",
    "action.sheets.clearRange",
    "action.telegram.sendMessage",
    "action.telegram.sendPhoto",
    "action.telegram.sendDocument",
    "action.telegram.sendLocation",
    "action.telegram.sendPoll",
    "action.telegram.editMessage",
    "action.telegram.deleteMessage",
    "action.telegram.sendVideo",
    "action.telegram.sendAudio",
    "action.telegram.sendSticker",
    "action.telegram.sendVenue",
    "action.telegram.sendContact",
    "action.telegram.getUpdates",
})


def role_for_kind(kind: str | None) -> Role | None:
    """Derive the role from a kind's category prefix.

    Returns None when the kind is empty or its prefix is not one of the four
    categories; callers treat that as a structural error.
    """
    if not kind or not isinstance(kind, str):
        return None
    prefix = kind.split(".", 1)[0]
    return _ROLE_PREFIXES.get(prefix)


def is_known_kind(kind: str) -> bool:
    return kind in NODE_KINDS


# ---------------------------------------------------------------------------
# Graph primitives
# ---------------------------------------------------------------------------


@dataclass
class WorkflowNode:
    """A single workflow step.

    id:        Unique, opaque node ID.
    kind:      Catalog identifier (e.g. "trigger.schedule", "action.notify").
    role:      Derived from kind; kept on the node so renderers need not
               re-derive it.
    label:     Display string, at most 24 visible characters.
    position:  {x, y} canvas coordinates. Layout only.
    config:    Kind-specific settings (schedule expression, recipient, ...).
    """

    id: str
    kind: str
    role: Role
    label: str
    position: dict[str, float] = field(
        default_factory=lambda: {"x": DEFAULT_X, "y": DEFAULT_Y}
    )
    config: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Interchange form. Role is omitted; it is re-derived on import."""
        return {
            "id": self.id,
            "kind": self.kind,
            "label": self.label,
            "position": dict(self.position),
            "config": copy.deepcopy(self.config),
        }


@dataclass
class WorkflowEdge:
    """A directed connection from `source` to `target` (both node IDs)."""

    id: str
    source: str
    target: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "source": self.source, "target": self.target}


@dataclass
class WorkflowGraph:
    """A complete workflow: ordered nodes, edges and a display name."""

    nodes: list[WorkflowNode] = field(default_factory=list)
    edges: list[WorkflowEdge] = field(default_factory=list)
    name: str = "New Workflow"

    def node_ids(self) -> set[str]:
        """Return the set of all node IDs currently in the graph."""
        return {n.id for n in self.nodes}

    def edge_ids(self) -> set[str]:
        return {e.id for e in self.edges}

    def get_node(self, node_id: str) -> WorkflowNode | None:
        """Find a node by ID. Returns None if not found."""
        return next((n for n in self.nodes if n.id == node_id), None)

    def get_edge(self, edge_id: str) -> WorkflowEdge | None:
        return next((e for e in self.edges if e.id == edge_id), None)

    def copy(self) -> "WorkflowGraph":
        """Deep, structurally independent copy."""
        return copy.deepcopy(self)

    def to_document(self) -> dict[str, Any]:
        """Convert to the interchange document (save/export/planner grounding)."""
        return {
            "name": self.name,
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.to_document(), indent=indent)

    @classmethod
    def from_document(cls, document: dict[str, Any] | str) -> "WorkflowGraph":
        """Parse an interchange document into a WorkflowGraph.

        Roles are re-derived from kinds. Labels are kept when present and
        regenerated otherwise, so identical inputs always give identical
        labels. Structural problems are not checked here; load through
        WorkflowStore.load_document() to have them rejected.

        Raises ValueError for a document that is not a JSON object, or whose
        nodes / edges are not arrays of objects.
        """
        from workflow_builder.engine.labeler import generate_label, truncate_label

        if isinstance(document, str):
            document = json.loads(document)
        if not isinstance(document, dict):
            raise ValueError(
                f"Expected a workflow document object, got {type(document).__name__}"
            )

        raw_nodes = _document_list(document, "nodes")
        raw_edges = _document_list(document, "edges")

        nodes: list[WorkflowNode] = []
        for i, raw in enumerate(raw_nodes):
            kind = str(raw.get("kind", ""))
            config = copy.deepcopy(raw.get("config") or {})
            if not isinstance(config, dict):
                raise ValueError(f"nodes[{i}].config must be an object, got {type(config).__name__}")
            label = raw.get("label")
            nodes.append(WorkflowNode(
                id=str(raw.get("id", "")),
                kind=kind,
                role=role_for_kind(kind) or Role.ACTION,
                label=truncate_label(str(label)) if label else generate_label(kind, config),
                position=_coerce_position(raw.get("position")),
                config=config,
            ))

        edges = [
            WorkflowEdge(
                id=str(raw.get("id", "")),
                source=str(raw.get("source", "")),
                target=str(raw.get("target", "")),
            )
            for raw in raw_edges
        ]

        return cls(
            nodes=nodes,
            edges=edges,
            name=str(document.get("name") or "New Workflow"),
        )


def _coerce_position(raw: Any) -> dict[str, float]:
    if not isinstance(raw, dict):
        return {"x": DEFAULT_X, "y": DEFAULT_Y}
    try:
        return {"x": float(raw.get("x", DEFAULT_X)), "y": float(raw.get("y", DEFAULT_Y))}
    except (TypeError, ValueError):
        return {"x": DEFAULT_X, "y": DEFAULT_Y}


def _document_list(document: dict[str, Any], key: str) -> list[dict[str, Any]]:
    raw = document.get(key)
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError(f"'{key}' must be an array, got {type(raw).__name__}")
    for i, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ValueError(f"{key}[{i}] must be an object, got {type(item).__name__}")
    return raw
