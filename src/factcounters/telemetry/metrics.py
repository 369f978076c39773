# src/factcounters/telemetry/metrics.py
"""MetricsCollector: in-process request aggregates plus OpenTelemetry instruments.

The collector is fed one ExecutionResult per processed fact. It keeps
cheap in-process aggregates (for the CLI and health checks) and, when
enabled, records the same numbers on OpenTelemetry instruments. Without a
configured MeterProvider the OpenTelemetry API hands out no-op instruments,
so recording is always safe.

Thread Safety:
    record() may be called from any thread; aggregates are guarded by one
    lock. snapshot() returns a consistent copy.
"""

from __future__ import annotations

from threading import Lock
from typing import Any

from opentelemetry import metrics

from factcounters.contracts.results import ExecutionResult


class MetricsCollector:
    """Aggregates request metrics.

    Args:
        enabled: Also record OpenTelemetry instruments
        meter_name: Instrumentation scope name for the meter

    Example:
        >>> collector = MetricsCollector()
        >>> collector.record(result)
        >>> collector.snapshot()["requests"]
        1
    """

    def __init__(self, *, enabled: bool = False, meter_name: str = "factcounters") -> None:
        self._lock = Lock()
        self._requests = 0
        self._partial_requests = 0
        self._timeouts = 0
        self._group_errors = 0
        self._persist_errors = 0
        self._counters_computed = 0
        self._counters_skipped = 0
        self._latency_total_ms = 0.0
        self._latency_max_ms = 0.0
        self._enabled = enabled
        if enabled:
            meter = metrics.get_meter(meter_name)
            self._requests_counter = meter.create_counter(
                "factcounters.requests", unit="1", description="Counter requests processed"
            )
            self._errors_counter = meter.create_counter(
                "factcounters.group_errors", unit="1", description="Counter groups that failed or timed out"
            )
            self._latency_histogram = meter.create_histogram(
                "factcounters.request.duration", unit="ms", description="Wall time per counter request"
            )

    def record(self, result: ExecutionResult) -> None:
        """Fold one request's outcome into the aggregates."""
        request = result.metrics
        group_errors = len([name for name in result.errors if name != "persist"])
        with self._lock:
            self._requests += 1
            if result.partial:
                self._partial_requests += 1
            if request.timed_out:
                self._timeouts += 1
            if "persist" in result.errors:
                self._persist_errors += 1
            self._group_errors += group_errors
            self._counters_computed += request.counters_requested
            self._counters_skipped += request.counters_skipped
            self._latency_total_ms += request.total_ms
            self._latency_max_ms = max(self._latency_max_ms, request.total_ms)

        if self._enabled:
            attributes = {"strategy": request.strategy.value}
            self._requests_counter.add(1, attributes)
            if group_errors:
                self._errors_counter.add(group_errors, attributes)
            self._latency_histogram.record(request.total_ms, attributes)

    def snapshot(self) -> dict[str, Any]:
        """Return a copy of the aggregates."""
        with self._lock:
            return {
                "requests": self._requests,
                "partial_requests": self._partial_requests,
                "timeouts": self._timeouts,
                "group_errors": self._group_errors,
                "persist_errors": self._persist_errors,
                "counters_computed": self._counters_computed,
                "counters_skipped": self._counters_skipped,
                "latency_avg_ms": self._latency_total_ms / self._requests if self._requests else 0.0,
                "latency_max_ms": self._latency_max_ms,
            }
