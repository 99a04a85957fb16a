"""
Shared test fixtures and helpers for diffmigrate tests.

This package provides:
- Deterministic clocks (FakeClock, RecordingSleep)
- Source row builders (make_row, populate)
- A record migrator with scripted failures (ScriptedMigrator)
- Metric collection helpers (collect_metrics)

Usage:
    from tests.fixtures import FakeClock, ScriptedMigrator, populate
"""

from typing import Any

from opentelemetry.sdk.metrics.export import InMemoryMetricReader

from tests.fixtures.clocks import EPOCH, FakeClock, RecordingSleep
from tests.fixtures.migrators import ScriptedMigrator, make_row, populate


def collect_metrics(reader: InMemoryMetricReader) -> dict[str, list[Any]]:
    """Data points per metric name from one collection."""
    points: dict[str, list[Any]] = {}
    data = reader.get_metrics_data()
    if data is None:
        return points
    for resource_metrics in data.resource_metrics:
        for scope_metrics in resource_metrics.scope_metrics:
            for metric in scope_metrics.metrics:
                points.setdefault(metric.name, []).extend(metric.data.data_points)
    return points


__all__ = [
    "EPOCH",
    "FakeClock",
    "RecordingSleep",
    "make_row",
    "populate",
    "ScriptedMigrator",
    "collect_metrics",
]
