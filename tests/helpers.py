# tests/helpers.py
"""Builders shared by the test modules."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from factcounters.contracts.facts import Fact, to_epoch_ms
from factcounters.contracts.rules import RuleRow

# 2024-03-01T12:00:00Z
NOW = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)
NOW_MS = to_epoch_ms(NOW)
HOUR_MS = 3_600_000


def make_fact(
    fact_id: str,
    *,
    minutes_ago: float = 10,
    fact_type: int = 1,
    **data: Any,
) -> Fact:
    """Fact that occurred ``minutes_ago`` before NOW."""
    occurred = NOW - timedelta(minutes=minutes_ago)
    return Fact(id=fact_id, type=fact_type, created_at=occurred, occurred_at=occurred, data=data)


def make_row(name: str, index: str = "card", *, row: int = 2, **columns: str) -> RuleRow:
    return RuleRow(row=row, name=name, index=index, **columns)
