"""
Telemetry sinks.

Implementations of the TelemetrySink contract:
- StructlogTelemetrySink: writes every event as a structured log line
- RecordingTelemetrySink: keeps events in memory (tests, debugging)
- MetricsTelemetrySink: feeds DecisionMetrics counters
- FanOutTelemetrySink: forwards to several sinks, isolating their failures
"""

from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional, Sequence

import structlog

from tierguard.core.metrics import DecisionMetrics
from tierguard.domain.rate_limiting.telemetry import (
    AuditEventKind,
    TelemetryEvent,
    TelemetryEventKind,
    TelemetrySink,
)

logger = structlog.get_logger(__name__)
audit_logger = structlog.get_logger("tierguard.audit")


class StructlogTelemetrySink(TelemetrySink):
    """Log decision events at debug level (denials and store errors higher)."""

    def emit(self, kind, client_id, priority, endpoint, details) -> None:
        if kind is TelemetryEventKind.STORE_ERROR:
            log = logger.warning
        elif kind is TelemetryEventKind.DENIED:
            log = logger.info
        else:
            log = logger.debug
        log(
            "rate_limit_decision",
            event_kind=kind.value,
            client_id=client_id,
            priority=priority,
            endpoint=endpoint,
            **details,
        )

    def audit(self, kind, client_id, details, endpoint=None) -> None:
        audit_logger.warning(
            "rate_limit_audit",
            event_kind=kind.value,
            client_id=client_id,
            endpoint=endpoint,
            **details,
        )


class RecordingTelemetrySink(TelemetrySink):
    """Keep every event in memory, in arrival order."""

    def __init__(self):
        self._lock = threading.Lock()
        self.events: List[TelemetryEvent] = []
        self.audit_events: List[TelemetryEvent] = []

    def emit(self, kind, client_id, priority, endpoint, details) -> None:
        with self._lock:
            self.events.append(TelemetryEvent(kind, client_id, priority, endpoint, dict(details)))

    def audit(self, kind, client_id, details, endpoint=None) -> None:
        with self._lock:
            self.audit_events.append(TelemetryEvent(kind, client_id, None, endpoint, dict(details)))

    def of_kind(self, kind: Any) -> List[TelemetryEvent]:
        with self._lock:
            return [event for event in self.events + self.audit_events if event.kind == kind]

    def clear(self) -> None:
        with self._lock:
            self.events.clear()
            self.audit_events.clear()


class MetricsTelemetrySink(TelemetrySink):
    """Translate events into DecisionMetrics counters."""

    def __init__(self, metrics: Optional[DecisionMetrics] = None):
        self.metrics = metrics or DecisionMetrics()

    def emit(self, kind, client_id, priority, endpoint, details) -> None:
        self.metrics.record_decision(
            outcome=kind.value,
            algorithm=details.get("algorithm"),
            latency_ms=details.get("latency_ms"),
            error_reason=details.get("reason") if kind is TelemetryEventKind.STORE_ERROR else None,
        )

    def audit(self, kind, client_id, details, endpoint=None) -> None:
        if kind is AuditEventKind.PRIORITY_CLAMPED:
            self.metrics.record_clamp()


class FanOutTelemetrySink(TelemetrySink):
    """Forward every event to each sink; one failing sink does not stop the others."""

    def __init__(self, sinks: Sequence[TelemetrySink]):
        self.sinks = list(sinks)

    def _each(self, method: str, *args, **kwargs) -> None:
        for sink in self.sinks:
            try:
                getattr(sink, method)(*args, **kwargs)
            except Exception as e:
                logger.error(
                    "telemetry_sink_failed",
                    sink=type(sink).__name__,
                    method=method,
                    error=str(e),
                )

    def emit(
        self,
        kind: TelemetryEventKind,
        client_id: str,
        priority: Optional[str],
        endpoint: str,
        details: Dict[str, Any],
    ) -> None:
        self._each("emit", kind, client_id=client_id, priority=priority, endpoint=endpoint, details=details)

    def audit(
        self,
        kind: AuditEventKind,
        client_id: str,
        details: Dict[str, Any],
        endpoint: Optional[str] = None,
    ) -> None:
        self._each("audit", kind, client_id=client_id, details=details, endpoint=endpoint)
