# src/factcounters/telemetry/__init__.py
"""Request metrics for counter processing."""

from factcounters.telemetry.metrics import MetricsCollector

__all__ = ["MetricsCollector"]
