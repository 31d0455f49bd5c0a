"""Per-call timing and counter telemetry for intent planning.

PhaseMetrics     — frozen snapshot of one phase's counters + duration.
MetricsCollector — async context manager; read .result / .to_dict() after exit.

Usage::

    async with MetricsCollector("plan") as m:
        patch = await planner.plan(request)
        m.planner = planner.name
        m.op_count = count_ops(patch)
    outcome.metrics = m.to_dict()

The collector writes nothing by itself; WorkflowStore.submit_intent() attaches
``m.to_dict()`` to the IntentOutcome it returns.
"""

from __future__ import annotations

import dataclasses
import time
from typing import Any


# ---------------------------------------------------------------------------
# PhaseMetrics dataclass
# ---------------------------------------------------------------------------


@dataclasses.dataclass
class PhaseMetrics:
    """Timing and counter snapshot for one phase.

    Fields
    ------
    phase:           "plan" for planner calls, "apply" for the commit step.
    start_ts:        Unix timestamp at phase start (time.time()).
    end_ts:          Unix timestamp at phase end.
    duration_ms:     (end_ts - start_ts) * 1000.
    planner:         Name of the planner that produced the patch.
    input_tokens:    LLM prompt tokens consumed (0 for rule-based planning).
    output_tokens:   LLM completion tokens produced.
    op_count:        Leaf ops in the proposed patch (BULK flattened).
    fallback_used:   True when the LLM planner handed over to the rule-based one.
    """

    phase: str
    start_ts: float
    end_ts: float
    duration_ms: float
    planner: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    op_count: int = 0
    fallback_used: bool = False


# ---------------------------------------------------------------------------
# MetricsCollector async context manager
# ---------------------------------------------------------------------------


class MetricsCollector:
    """Async context manager that records per-phase timing and counters."""

    def __init__(self, phase: str) -> None:
        self.phase = phase
        self.planner: str = ""
        self.input_tokens: int = 0
        self.output_tokens: int = 0
        self.op_count: int = 0
        self.fallback_used: bool = False
        self._start_ts: float = 0.0
        self._result: PhaseMetrics | None = None

    async def __aenter__(self) -> "MetricsCollector":
        self._start_ts = time.time()
        return self

    async def __aexit__(self, *_args: object) -> None:
        end_ts = time.time()
        self._result = PhaseMetrics(
            phase=self.phase,
            start_ts=self._start_ts,
            end_ts=end_ts,
            duration_ms=(end_ts - self._start_ts) * 1000,
            planner=self.planner,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            op_count=self.op_count,
            fallback_used=self.fallback_used,
        )

    @property
    def result(self) -> PhaseMetrics | None:
        """Finalized PhaseMetrics after the context manager exits, else None."""
        return self._result

    def to_dict(self) -> dict[str, Any]:
        """Return the finalized PhaseMetrics as a JSON-serialisable dict.

        Returns an empty dict if called before the context manager has exited.
        """
        return dataclasses.asdict(self._result) if self._result is not None else {}
