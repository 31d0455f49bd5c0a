"""WorkflowStore: the single writer of a live workflow graph.

Every mutation goes through apply(), undo(), redo(), reset() or
load_document(). Each of them swaps the whole graph in one assignment and
then notifies observers, so no caller ever sees a half-applied patch.

Commit protocol for apply():

  1. The applier computes a candidate graph from a copy of the live one.
  2. Failure: observers get a "rejected" event; graph and history untouched.
  3. Success with no effect (e.g. an empty BULK): reported ok, nothing pushed.
  4. Success: graph replaced, one snapshot pushed, "committed" event sent,
     planner summary recompute scheduled.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from workflow_builder.config import EngineSettings
from workflow_builder.engine.applier import PatchResult, apply_patch
from workflow_builder.engine.graph_model import WorkflowGraph, WorkflowNode
from workflow_builder.engine.history import HistoryManager, Snapshot
from workflow_builder.engine.metrics import MetricsCollector
from workflow_builder.engine.patch_ir import (
    AddEdge,
    AddNode,
    Bulk,
    PatchOp,
    SetName,
    count_ops,
    op_to_dict,
)
from workflow_builder.engine.planner import IntentPlanner, PlannerRequest, check_planner_patch
from workflow_builder.engine.summary import SummaryRecomputer, summarize
from workflow_builder.engine.validator import ValidationReport, validate_graph

logger = logging.getLogger("workflow_builder.engine.store")

# Event kinds delivered to observers
EVENT_COMMITTED = "committed"
EVENT_REJECTED = "rejected"
EVENT_UNDO = "undo"
EVENT_REDO = "redo"
EVENT_RESET = "reset"
EVENT_LOADED = "loaded"


# ---------------------------------------------------------------------------
# Events and outcomes
# ---------------------------------------------------------------------------


@dataclass
class StoreEvent:
    """One notification sent to store observers.

    graph is a private copy of the live graph after the event, so observers
    may keep or mutate it freely.
    """

    kind: str
    version: int
    graph: WorkflowGraph
    patch: PatchOp | None = None
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    diff_summary: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "version": self.version,
            "graph": self.graph.to_document(),
            "patch": op_to_dict(self.patch) if self.patch is not None else None,
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "diff_summary": self.diff_summary,
        }


@dataclass
class IntentOutcome:
    """Result of WorkflowStore.submit_intent().

    status:
      "committed" — the planner's patch was applied
      "rejected"  — the patch failed planner checks or the applier
      "no_patch"  — the planner was unsure, or its patch changed nothing
    """

    status: str
    patch: PatchOp | None = None
    issues: list[str] = field(default_factory=list)
    result: PatchResult | None = None
    metrics: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "patch": op_to_dict(self.patch) if self.patch is not None else None,
            "issues": list(self.issues),
            "result": self.result.to_dict() if self.result is not None else None,
            "metrics": dict(self.metrics),
        }


Observer = Callable[[StoreEvent], None]


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class WorkflowStore:
    """Owns one live graph, its undo history and the planner-facing summary."""

    def __init__(
        self,
        graph: WorkflowGraph | None = None,
        settings: EngineSettings | None = None,
    ) -> None:
        self._settings = settings or EngineSettings()
        self._graph = graph.copy() if graph is not None else WorkflowGraph()
        self._history = HistoryManager(self._settings.history_limit)
        self._history.push(Snapshot.of(self._graph))
        self._summary = SummaryRecomputer(delay=self._settings.summary_delay)
        self._summary.submit(self._graph)
        self._observers: list[Observer] = []
        self._version = 0

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def graph(self) -> WorkflowGraph:
        """Copy of the live graph."""
        return self._graph.copy()

    @property
    def name(self) -> str:
        return self._graph.name

    @property
    def version(self) -> int:
        """Incremented on every change to the live graph."""
        return self._version

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    @property
    def can_undo(self) -> bool:
        return self._history.can_undo

    @property
    def can_redo(self) -> bool:
        return self._history.can_redo

    def validate(self) -> ValidationReport:
        return validate_graph(self._graph.nodes, self._graph.edges)

    def summary(self) -> str:
        """Summary of the live graph, computed now."""
        return summarize(self._graph)

    def export_document(self) -> dict[str, Any]:
        return self._graph.to_document()

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, callback: Observer) -> Callable[[], None]:
        """Register an observer. Returns a function that unsubscribes it."""
        self._observers.append(callback)

        def unsubscribe() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return unsubscribe

    def _notify(self, event: StoreEvent) -> None:
        for callback in list(self._observers):
            try:
                callback(event)
            except Exception:
                logger.exception("Store observer %r failed on %s event", callback, event.kind)

    def _event(self, kind: str, **kwargs: Any) -> StoreEvent:
        return StoreEvent(kind=kind, version=self._version, graph=self._graph.copy(), **kwargs)

    def _replace(self, graph: WorkflowGraph, kind: str, **kwargs: Any) -> None:
        self._graph = graph
        self._version += 1
        self._summary.submit(self._graph)
        self._notify(self._event(kind, **kwargs))

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def apply(self, patch: PatchOp) -> PatchResult:
        """Apply a patch atomically. See the module docstring for the protocol.

        A successful patch that changes nothing (an empty BULK, a repeated
        UPDATE_NODE, SET_NAME to the current name) is returned as ok but is
        not a commit: no snapshot is pushed, the version stays the same and
        observers are not notified, so undo never lands on a duplicate state.
        """
        result = apply_patch(
            patch,
            self._graph.nodes,
            self._graph.edges,
            name=self._graph.name,
            **self._settings.apply_options,
        )
        if not result.ok:
            logger.info("Store rejected %s: %s", patch.op, result.issues)
            self._notify(self._event(
                EVENT_REJECTED, patch=patch, issues=list(result.issues),
                warnings=list(result.warnings),
            ))
            return result
        if not result.changed:
            logger.debug("Patch %s changed nothing; history untouched", patch.op)
            return result

        committed = result.graph.copy()
        self._history.push(Snapshot.of(committed))
        self._replace(
            committed, EVENT_COMMITTED, patch=patch,
            warnings=list(result.warnings), diff_summary=result.diff_summary,
        )
        return result

    def undo(self) -> bool:
        """Restore the previous snapshot. False when there is nothing to undo."""
        snapshot = self._history.undo()
        if snapshot is None:
            return False
        self._replace(snapshot.to_graph(), EVENT_UNDO)
        return True

    def redo(self) -> bool:
        snapshot = self._history.redo()
        if snapshot is None:
            return False
        self._replace(snapshot.to_graph(), EVENT_REDO)
        return True

    def reset(self, name: str = "New Workflow") -> None:
        """Replace the graph with an empty one and start a fresh history."""
        graph = WorkflowGraph(name=name)
        self._history.clear()
        self._history.push(Snapshot.of(graph))
        self._replace(graph, EVENT_RESET)

    def load_document(self, document: dict[str, Any] | str) -> PatchResult:
        """Replace the graph with an imported document.

        The document is replayed as one BULK onto an empty graph, so a
        document the applier would reject (duplicate ids, dangling edges,
        unknown kind categories) leaves the live graph untouched. A loaded
        document starts a fresh history.

        Raises ValueError when the document is not a JSON object or its
        nodes / edges are malformed.
        """
        parsed = WorkflowGraph.from_document(document)
        ops: list[PatchOp] = [SetName(name=parsed.name)]
        ops.extend(
            AddNode(
                id=n.id, kind=n.kind, label=n.label,
                position=dict(n.position), config=dict(n.config),
            )
            for n in parsed.nodes
        )
        ops.extend(AddEdge(id=e.id, source=e.source, target=e.target) for e in parsed.edges)
        patch = Bulk(ops=ops)

        result = apply_patch(patch, [], [], name="", **self._settings.apply_options)
        if not result.ok:
            logger.info("Store rejected document import: %s", result.issues)
            self._notify(self._event(EVENT_REJECTED, patch=patch, issues=list(result.issues)))
            return result

        loaded = result.graph.copy()
        self._history.clear()
        self._history.push(Snapshot.of(loaded))
        self._replace(loaded, EVENT_LOADED, warnings=list(result.warnings))
        return result

    # ------------------------------------------------------------------
    # Planner integration
    # ------------------------------------------------------------------

    async def submit_intent(self, text: str, planner: IntentPlanner) -> IntentOutcome:
        """Plan a patch for `text` and commit it through apply()."""
        request = PlannerRequest(
            text=text,
            summary=await self._summary.flush(),
            nodes=self._graph.copy().nodes,
        )
        async with MetricsCollector("plan") as m:
            patch = await planner.plan(request)
            m.planner = planner.name
            m.input_tokens = planner.stats.input_tokens
            m.output_tokens = planner.stats.output_tokens
            m.fallback_used = planner.stats.fallback_used
            m.op_count = count_ops(patch) if patch is not None else 0
        metrics = m.to_dict()

        if patch is None:
            logger.debug("Planner %s produced no patch for %r", planner.name, text)
            return IntentOutcome(status="no_patch", metrics=metrics)

        issues = check_planner_patch(patch, request.nodes)
        if issues:
            logger.info("Store rejected planner patch: %s", issues)
            self._notify(self._event(EVENT_REJECTED, patch=patch, issues=list(issues)))
            return IntentOutcome(status="rejected", patch=patch, issues=issues, metrics=metrics)

        result = self.apply(patch)
        if not result.ok:
            return IntentOutcome(
                status="rejected", patch=patch, issues=list(result.issues),
                result=result, metrics=metrics,
            )
        status = "committed" if result.changed else "no_patch"
        return IntentOutcome(status=status, patch=patch, result=result, metrics=metrics)
