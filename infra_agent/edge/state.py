"""
Shared agent state.

The reconciliation result is the only value written by one task and read
by others (heartbeat, health derivation, status queries). It is an
immutable record swapped under a lock, so a reader sees either the old
result or the new one, never a mix.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


@dataclass(frozen=True)
class ReconciliationResult:
    """Outcome of one pull/validate/reload attempt."""
    ok: bool
    error_detail: str = ""
    config_revision: str = ""
    at: Optional[datetime] = None

    @classmethod
    def failed(cls, error_detail: str, config_revision: str = "") -> "ReconciliationResult":
        return cls(
            ok=False,
            error_detail=error_detail,
            config_revision=config_revision,
            at=datetime.now(timezone.utc),
        )

    @classmethod
    def succeeded(cls, config_revision: str = "") -> "ReconciliationResult":
        return cls(ok=True, config_revision=config_revision, at=datetime.now(timezone.utc))


@dataclass
class AgentState:
    """Process-wide mutable status shared between the agent's tasks."""
    _result: ReconciliationResult = field(default_factory=lambda: ReconciliationResult(ok=False))
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def last_result(self) -> ReconciliationResult:
        with self._lock:
            return self._result

    def record(self, result: ReconciliationResult) -> None:
        with self._lock:
            self._result = result
