"""Compact, deterministic text summary of a workflow for planner grounding.

  Name: Daily digest
  Trigger: Schedule - 0 9 * * * (id:t1) {"cron": "0 9 * * *"}
  Steps:
    1) Notify - ops (id:a1) {"destination": "ops"}
  Integrations: None
  Issues: none

Steps are listed depth-first from the trigger, then any step the trigger
cannot reach, in node order. Node IDs are included so a planner can target
existing nodes in REMOVE_NODE / UPDATE_NODE patches.

SummaryRecomputer keeps the planner-facing summary eventually consistent with
the committed graph without recomputing on every keystroke.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable

from workflow_builder.engine.graph_model import Role, WorkflowEdge, WorkflowGraph, WorkflowNode
from workflow_builder.engine.labeler import truncate_label
from workflow_builder.engine.validator import validate_graph

logger = logging.getLogger("workflow_builder.engine.summary")

EMPTY_SUMMARY = "Empty workflow (no nodes)"

# Kind prefix → integration display name
_INTEGRATIONS: list[tuple[str, str]] = [
    ("trigger.facebook.", "Facebook"),
    ("action.facebook.", "Facebook"),
    ("action.telegram.", "Telegram"),
    ("action.email.", "Email"),
    ("trigger.sheets.", "Google Sheets"),
    ("action.sheets.", "Google Sheets"),
    ("action.http.", "HTTP"),
    ("trigger.webhook.", "Webhook"),
]

_CONFIG_PREVIEW_LEN = 80


def _config_preview(config: dict[str, Any]) -> str:
    if not config:
        return ""
    text = json.dumps(config, sort_keys=True, default=str)
    return " " + truncate_label(text, _CONFIG_PREVIEW_LEN)


def ordered_steps(
    nodes: list[WorkflowNode], edges: list[WorkflowEdge], start: str | None
) -> list[WorkflowNode]:
    """Non-trigger nodes in DFS order from `start`, then the unreached ones."""
    by_id = {n.id: n for n in nodes}
    adj: dict[str, list[str]] = {n.id: [] for n in nodes}
    for e in edges:
        if e.source in adj and e.target in by_id:
            adj[e.source].append(e.target)

    visited: set[str] = set()
    result: list[WorkflowNode] = []
    if start in by_id:
        stack = [start]
        while stack:
            node_id = stack.pop()
            if node_id in visited:
                continue
            visited.add(node_id)
            if by_id[node_id].role != Role.TRIGGER:
                result.append(by_id[node_id])
            # reversed so the first edge is explored first
            stack.extend(reversed(adj[node_id]))
    result.extend(n for n in nodes if n.id not in visited and n.role != Role.TRIGGER)
    return result


def integrations(nodes: list[WorkflowNode]) -> list[str]:
    found: list[str] = []
    for n in nodes:
        for prefix, name in _INTEGRATIONS:
            if n.kind.startswith(prefix) and name not in found:
                found.append(name)
    return found


def summarize_graph(
    nodes: list[WorkflowNode], edges: list[WorkflowEdge], name: str | None = None
) -> str:
    """Render the planner-facing summary of a graph. Pure and deterministic."""
    if not nodes:
        return EMPTY_SUMMARY

    trigger = next((n for n in nodes if n.role == Role.TRIGGER), None)
    if trigger is not None:
        trigger_desc = f"{trigger.label} (id:{trigger.id}){_config_preview(trigger.config)}"
    else:
        trigger_desc = "No trigger"

    steps = ordered_steps(nodes, edges, trigger.id if trigger else None)
    if steps:
        steps_desc = "\n".join(
            f"  {i}) {n.label} (id:{n.id}){_config_preview(n.config)}"
            for i, n in enumerate(steps, start=1)
        )
    else:
        steps_desc = "  No steps"

    report = validate_graph(nodes, edges)
    issues = [issue.split(":", 1)[0] for issue in report.issues]

    lines = [
        f"Name: {name or 'New Workflow'}",
        f"Trigger: {trigger_desc}",
        "Steps:",
        steps_desc,
        f"Integrations: {', '.join(integrations(nodes)) or 'None'}",
        f"Issues: {', '.join(issues) or 'none'}",
    ]
    return "\n".join(lines)


def summarize(graph: WorkflowGraph) -> str:
    return summarize_graph(graph.nodes, graph.edges, graph.name)


# ---------------------------------------------------------------------------
# Coalescing recompute
# ---------------------------------------------------------------------------


class SummaryRecomputer:
    """Single-slot pending recompute of the planner-facing summary.

    submit() records the latest committed graph. Inside a running event loop
    it schedules at most one recompute task, which waits `delay` seconds and
    then summarizes whatever graph was submitted last, so a burst of commits
    costs one recomputation. Without a running loop the summary is computed
    immediately.
    """

    def __init__(
        self,
        delay: float = 0.25,
        summarizer: Callable[[WorkflowGraph], str] = summarize,
    ) -> None:
        self._delay = delay
        self._summarizer = summarizer
        self._pending_graph: WorkflowGraph | None = None
        self._task: asyncio.Task | None = None
        self._latest: str = EMPTY_SUMMARY
        self.recomputations = 0

    @property
    def latest(self) -> str:
        """Last computed summary. May lag the live graph by up to `delay`."""
        return self._latest

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def submit(self, graph: WorkflowGraph) -> None:
        self._pending_graph = graph.copy()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._recompute()
            return
        if not self.pending:
            self._task = loop.create_task(self._run())

    def _recompute(self) -> None:
        graph, self._pending_graph = self._pending_graph, None
        if graph is None:
            return
        self._latest = self._summarizer(graph)
        self.recomputations += 1
        logger.debug("Summary recomputed (%d chars)", len(self._latest))

    async def _run(self) -> None:
        await asyncio.sleep(self._delay)
        self._recompute()

    async def flush(self) -> str:
        """Wait for any pending recompute and return the up-to-date summary."""
        if self._task is not None:
            await self._task
        self._recompute()
        return self._latest

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
