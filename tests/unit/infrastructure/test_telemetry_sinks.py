"""Unit tests for the telemetry sink implementations."""

import pytest

from tierguard.core.metrics import DecisionMetrics
from tierguard.domain.rate_limiting.telemetry import AuditEventKind, TelemetryEventKind
from tierguard.infrastructure.telemetry import (
    FanOutTelemetrySink,
    MetricsTelemetrySink,
    RecordingTelemetrySink,
    StructlogTelemetrySink,
)

DETAILS = {"reason": "limit_exceeded", "algorithm": "fixed_window", "latency_ms": 1.5}


def emit(sink, kind=TelemetryEventKind.DENIED, details=DETAILS):
    sink.emit(kind, client_id="client-a", priority="low", endpoint="/items", details=details)


class TestRecordingTelemetrySink:
    def test_keeps_events_in_order(self):
        sink = RecordingTelemetrySink()

        emit(sink, TelemetryEventKind.ALLOWED)
        emit(sink, TelemetryEventKind.DENIED)
        sink.audit(AuditEventKind.PRIORITY_CLAMPED, client_id="client-a", details={"tier": "trial"})

        assert [e.kind for e in sink.events] == [TelemetryEventKind.ALLOWED, TelemetryEventKind.DENIED]
        assert len(sink.of_kind(AuditEventKind.PRIORITY_CLAMPED)) == 1
        assert sink.audit_events[0].priority is None

    def test_details_are_copied(self):
        sink = RecordingTelemetrySink()
        details = dict(DETAILS)

        emit(sink, details=details)
        details["reason"] = "changed"

        assert sink.events[0].details["reason"] == "limit_exceeded"

    def test_clear(self):
        sink = RecordingTelemetrySink()
        emit(sink)

        sink.clear()

        assert sink.events == []


class TestMetricsTelemetrySink:
    def test_feeds_decision_metrics(self):
        metrics = DecisionMetrics()
        sink = MetricsTelemetrySink(metrics)

        emit(sink, TelemetryEventKind.DENIED)
        emit(sink, TelemetryEventKind.STORE_ERROR, {"reason": "store_timeout", "algorithm": None})
        sink.audit(AuditEventKind.PRIORITY_CLAMPED, client_id="client-a", details={})

        snapshot = metrics.get_metrics()
        assert snapshot["outcomes"] == {"denied": 1, "store_error": 1}
        assert snapshot["store_errors"] == {"store_timeout": 1}
        assert snapshot["priority_clamps"] == 1


class TestStructlogTelemetrySink:
    @pytest.mark.parametrize(
        "kind, level",
        [
            (TelemetryEventKind.STORE_ERROR, "warning"),
            (TelemetryEventKind.DENIED, "info"),
            (TelemetryEventKind.ALLOWED, "debug"),
        ],
    )
    def test_log_level_by_outcome(self, mocker, kind, level):
        log = mocker.patch("tierguard.infrastructure.telemetry.logger")

        emit(StructlogTelemetrySink(), kind)

        method = getattr(log, level)
        method.assert_called_once()
        assert method.call_args.args[0] == "rate_limit_decision"
        assert method.call_args.kwargs["event_kind"] == kind.value
        assert method.call_args.kwargs["reason"] == "limit_exceeded"

    def test_audit_uses_audit_logger(self, mocker):
        audit_log = mocker.patch("tierguard.infrastructure.telemetry.audit_logger")

        StructlogTelemetrySink().audit(
            AuditEventKind.PRIORITY_CLAMPED,
            client_id="client-a",
            details={"effective_priority": "low"},
            endpoint="/items",
        )

        audit_log.warning.assert_called_once()
        assert audit_log.warning.call_args.kwargs["event_kind"] == "priority_clamped"


class TestFanOutTelemetrySink:
    def test_failing_sink_does_not_stop_others(self, mocker):
        broken = mocker.Mock()
        broken.emit.side_effect = RuntimeError("sink down")
        recording = RecordingTelemetrySink()
        sink = FanOutTelemetrySink([broken, recording])

        emit(sink)

        broken.emit.assert_called_once()
        assert len(recording.events) == 1

    def test_audit_reaches_every_sink(self):
        first, second = RecordingTelemetrySink(), RecordingTelemetrySink()
        sink = FanOutTelemetrySink([first, second])

        sink.audit(AuditEventKind.PRIORITY_CLAMPED, client_id="client-a", details={}, endpoint="/x")

        assert len(first.audit_events) == len(second.audit_events) == 1
