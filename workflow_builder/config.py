"""Configuration for the workflow engine."""

from __future__ import annotations

import os
from dataclasses import dataclass

_TRUTHY = ("1", "true", "yes", "on")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUTHY


@dataclass(frozen=True)
class EngineSettings:
    """Immutable engine settings loaded from environment variables."""

    history_limit: int = 50
    allow_self_loops: bool = False
    strict_single_trigger: bool = False
    summary_delay: float = 0.25
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> EngineSettings:
        history_limit = int(os.getenv("WORKFLOW_HISTORY_LIMIT", "50"))
        if history_limit < 1:
            raise ValueError(f"WORKFLOW_HISTORY_LIMIT must be >= 1, got {history_limit}")
        return cls(
            history_limit=history_limit,
            allow_self_loops=_env_bool("WORKFLOW_ALLOW_SELF_LOOPS", False),
            strict_single_trigger=_env_bool("WORKFLOW_STRICT_SINGLE_TRIGGER", False),
            summary_delay=float(os.getenv("WORKFLOW_SUMMARY_DELAY", "0.25")),
            log_level=os.getenv("WORKFLOW_LOG_LEVEL", "WARNING").upper(),
        )

    @property
    def apply_options(self) -> dict[str, bool]:
        """Keyword arguments forwarded to applier.apply_patch()."""
        return {
            "allow_self_loops": self.allow_self_loops,
            "strict_single_trigger": self.strict_single_trigger,
        }
