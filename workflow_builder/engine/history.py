"""Bounded undo/redo history of whole-graph snapshots.

The store pushes exactly one Snapshot per committed patch. The pointer always
sits on the snapshot matching the live graph, so undo() steps back one entry
and redo() steps forward. Boundaries are silent: undo() at the oldest entry
and redo() at the newest return None and change nothing.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field

from workflow_builder.engine.graph_model import WorkflowEdge, WorkflowGraph, WorkflowNode

logger = logging.getLogger("workflow_builder.engine.history")

DEFAULT_HISTORY_LIMIT: int = 50


@dataclass
class Snapshot:
    """Deep, independent copy of a graph at one point in time."""

    nodes: list[WorkflowNode] = field(default_factory=list)
    edges: list[WorkflowEdge] = field(default_factory=list)
    name: str = "New Workflow"

    @classmethod
    def of(cls, graph: WorkflowGraph) -> "Snapshot":
        g = graph.copy()
        return cls(nodes=g.nodes, edges=g.edges, name=g.name)

    def to_graph(self) -> WorkflowGraph:
        return WorkflowGraph(
            nodes=copy.deepcopy(self.nodes),
            edges=copy.deepcopy(self.edges),
            name=self.name,
        )


class HistoryManager:
    """Linear snapshot stack with a movable pointer.

    Pushing after an undo discards the redo branch. Once more than `limit`
    entries are held the oldest is evicted.
    """

    def __init__(self, limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        if limit < 1:
            raise ValueError(f"history limit must be >= 1, got {limit}")
        self._limit = limit
        self._entries: list[Snapshot] = []
        self._index = -1

    @property
    def limit(self) -> int:
        return self._limit

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def can_undo(self) -> bool:
        return self._index > 0

    @property
    def can_redo(self) -> bool:
        return self._index < len(self._entries) - 1

    def push(self, snapshot: Snapshot) -> None:
        del self._entries[self._index + 1:]
        self._entries.append(copy.deepcopy(snapshot))
        if len(self._entries) > self._limit:
            evicted = len(self._entries) - self._limit
            del self._entries[:evicted]
            logger.debug("History full, evicted %d oldest snapshot(s)", evicted)
        self._index = len(self._entries) - 1

    def undo(self) -> Snapshot | None:
        """Step back one entry; None (no-op) at the oldest entry."""
        if not self.can_undo:
            return None
        self._index -= 1
        return copy.deepcopy(self._entries[self._index])

    def redo(self) -> Snapshot | None:
        """Step forward one entry; None (no-op) at the newest entry."""
        if not self.can_redo:
            return None
        self._index += 1
        return copy.deepcopy(self._entries[self._index])

    def current(self) -> Snapshot | None:
        if self._index < 0:
            return None
        return copy.deepcopy(self._entries[self._index])

    def clear(self) -> None:
        self._entries.clear()
        self._index = -1
