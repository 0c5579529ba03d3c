"""
In-process decision metrics.

Counters for decision outcomes, kept in memory and exposed as a plain
dictionary for health endpoints.
"""
import threading
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class DecisionMetrics:
    """
    Collects rate limiting decision metrics.

    This class tracks:
    - Decisions per outcome (allowed, denied, bypassed, store_error)
    - Decisions per algorithm
    - Store error totals per reason
    - Priority clamps
    - Average decision latency
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._start_time = datetime.now(timezone.utc)
        self.reset()

    def reset(self) -> None:
        """Reset all counters."""
        with self._lock:
            self._outcomes: Dict[str, int] = defaultdict(int)
            self._algorithms: Dict[str, int] = defaultdict(int)
            self._store_errors: Dict[str, int] = defaultdict(int)
            self._clamps = 0
            self._latency_total_ms = 0.0
            self._latency_samples = 0

    def record_decision(
        self,
        outcome: str,
        algorithm: Optional[str] = None,
        latency_ms: Optional[float] = None,
        error_reason: Optional[str] = None,
    ) -> None:
        """Record one decision."""
        with self._lock:
            self._outcomes[outcome] += 1
            if algorithm:
                self._algorithms[algorithm] += 1
            if error_reason:
                self._store_errors[error_reason] += 1
            if latency_ms is not None:
                self._latency_total_ms += latency_ms
                self._latency_samples += 1

    def record_clamp(self) -> None:
        with self._lock:
            self._clamps += 1

    def get_metrics(self) -> Dict[str, Any]:
        """Get all current metrics."""
        with self._lock:
            average = (
                self._latency_total_ms / self._latency_samples if self._latency_samples else 0.0
            )
            return {
                "outcomes": dict(self._outcomes),
                "algorithms": dict(self._algorithms),
                "store_errors": dict(self._store_errors),
                "priority_clamps": self._clamps,
                "average_latency_ms": round(average, 3),
                "uptime_seconds": (datetime.now(timezone.utc) - self._start_time).total_seconds(),
            }
