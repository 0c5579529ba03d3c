"""
Rate Limiting Telemetry Contract

The narrow interface through which the decision engine reports what it did.
Exactly one decision event is emitted per decision; priority clamps are
reported separately through the audit channel.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class TelemetryEventKind(str, Enum):
    """Outcome of one decision."""
    ALLOWED = "allowed"
    DENIED = "denied"
    BYPASSED = "bypassed"
    STORE_ERROR = "store_error"


class AuditEventKind(str, Enum):
    """Security-relevant events kept apart from decision telemetry."""
    PRIORITY_CLAMPED = "priority_clamped"


@dataclass(frozen=True)
class TelemetryEvent:
    """One emitted event, as recorded by sinks that keep history."""
    kind: Any
    client_id: str
    priority: Optional[str]
    endpoint: Optional[str]
    details: Dict[str, Any] = field(default_factory=dict)


class TelemetrySink(ABC):
    """
    Receiver of decision and audit events.

    Implementations must not block for long; the engine awaits nothing from a
    sink, and exceptions raised by a sink are logged and dropped.
    """

    @abstractmethod
    def emit(
        self,
        kind: TelemetryEventKind,
        client_id: str,
        priority: Optional[str],
        endpoint: str,
        details: Dict[str, Any],
    ) -> None:
        """Record the outcome of one decision."""
        pass

    @abstractmethod
    def audit(
        self,
        kind: AuditEventKind,
        client_id: str,
        details: Dict[str, Any],
        endpoint: Optional[str] = None,
    ) -> None:
        """Record an audit event."""
        pass


class NullTelemetrySink(TelemetrySink):
    """Sink that discards everything."""

    def emit(self, kind, client_id, priority, endpoint, details) -> None:
        return None

    def audit(self, kind, client_id, details, endpoint=None) -> None:
        return None
