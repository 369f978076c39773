# src/factcounters/contracts/results.py
"""Per-request results.

An ExecutionResult is created for one triggering fact and discarded after
the response. It is always structurally valid: every requested counter has
a key, failed groups are reported in ``errors`` and the metrics describe
what actually ran.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

CounterValue = int | float | None


class RetrievalStrategy(str, Enum):
    """How candidate facts are obtained before aggregating."""

    TWO_PHASE = "two_phase"
    SINGLE_PHASE = "single_phase"


@dataclass(slots=True)
class LookupMetrics:
    """Candidate lookup for one index type (two-phase only issues these)."""

    index_type_name: str
    depth_limit: int
    candidate_count: int = 0
    duration_ms: float = 0.0
    error: str | None = None


@dataclass(slots=True)
class GroupMetrics:
    """Aggregation request for one counter group."""

    group_name: str
    counter_count: int
    candidate_count: int = 0
    duration_ms: float = 0.0
    query_size: int | None = None
    error: str | None = None


@dataclass(slots=True)
class RequestMetrics:
    """Timing, size and count metrics for one counters request.

    Attributes:
        strategy: Retrieval strategy that served the request
        counters_requested: Counters applicable after the global cap
        counters_skipped: Counters dropped by max_counters_processing
        group_count: Counter groups dispatched (or resolved empty)
        index_type_count: Distinct index types touched
        unkeyed_index_types: Index types with no key on the triggering fact
        lookups: Per index type lookup metrics
        groups: Per group aggregation metrics
        prepare_ms: Rule selection, grouping and substitution time
        total_ms: Wall time of the whole request
        timed_out: Whether the deadline expired before all groups finished
    """

    strategy: RetrievalStrategy
    counters_requested: int = 0
    counters_skipped: int = 0
    group_count: int = 0
    index_type_count: int = 0
    unkeyed_index_types: list[str] = field(default_factory=list)
    lookups: dict[str, LookupMetrics] = field(default_factory=dict)
    groups: dict[str, GroupMetrics] = field(default_factory=dict)
    prepare_ms: float = 0.0
    total_ms: float = 0.0
    timed_out: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["strategy"] = self.strategy.value
        return data


@dataclass(slots=True)
class PersistResult:
    """Outcome of persisting one fact and its index entries.

    Attributes:
        fact_outcome: "inserted", "updated" or "unchanged"
        entries_inserted: New index entries
        entries_updated: Entries whose document changed
        entries_unchanged: Retried or duplicate entries (no-ops)
        errors: Per-entry write errors (partial failure)
        duration_ms: Wall time of the writes
    """

    fact_outcome: str
    entries_inserted: int = 0
    entries_updated: int = 0
    entries_unchanged: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: float = 0.0


@dataclass(slots=True)
class ExecutionResult:
    """Counter values for one triggering fact.

    Attributes:
        fact_id: The triggering fact
        counters: Counter name to value; every requested counter is present
        errors: Group name (or "persist") to error message
        metrics: What ran and how long it took
        persist: Write outcome when the request also persisted the fact
    """

    fact_id: str
    counters: dict[str, CounterValue]
    errors: dict[str, str]
    metrics: RequestMetrics
    persist: PersistResult | None = None

    @property
    def partial(self) -> bool:
        return bool(self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "fact_id": self.fact_id,
            "counters": dict(self.counters),
            "errors": dict(self.errors),
            "metrics": self.metrics.to_dict(),
            "persist": asdict(self.persist) if self.persist is not None else None,
        }
