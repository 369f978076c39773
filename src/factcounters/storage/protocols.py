# src/factcounters/storage/protocols.py
"""Storage interface consumed by the indexer and planner.

The store is an opaque ordered document collection. Callers describe what
they want with typed request objects; each backend decides how to execute
them. Every method may raise StorageError and nothing else.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from factcounters.contracts.predicates import Predicate
from factcounters.contracts.rules import AggregationKind

FACTS = "facts"
FACT_INDEX = "fact_index"
COLLECTIONS = (FACTS, FACT_INDEX)


class UpsertOutcome(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass(slots=True)
class BulkWriteResult:
    """Outcome of an unordered batch upsert.

    Failed documents do not stop the batch; each contributes one entry to
    ``errors``.
    """

    inserted_count: int = 0
    updated_count: int = 0
    unchanged_count: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class RecordFilter:
    """Pre-filter applied before sorting and limiting.

    Attributes:
        index_keys: fact_index only: index_key must be one of these
        fact_ids: facts only: id must be one of these
        occurred_from_ms: Inclusive lower bound on occurredAt (None = open)
        occurred_to_ms: Exclusive upper bound on occurredAt (None = open)
        exclude_ids: Fact ids never returned (the triggering fact)
    """

    index_keys: frozenset[str] | None = None
    fact_ids: frozenset[str] | None = None
    occurred_from_ms: int | None = None
    occurred_to_ms: int | None = None
    exclude_ids: frozenset[str] = frozenset()


@dataclass(frozen=True, slots=True)
class SortSpec:
    """Recency order: occurredAt descending, then fact id ascending.

    The secondary key makes the order total so "most recent N" is exact
    even when timestamps tie.
    """

    newest_first: bool = True


RECENCY = SortSpec()


@dataclass(frozen=True, slots=True)
class AggregateSpec:
    """One named aggregate computed over the candidate set.

    Attributes:
        name: Result key (counter name)
        kind: Aggregation kind
        field: Aggregated field (None for count)
        evaluation: Predicate applied first
        computation: Predicate applied after the evaluated-records cap
        occurred_from_ms: Counter window lower bound (inclusive)
        occurred_to_ms: Counter window upper bound (exclusive)
        max_evaluated_records: Cap on records passing evaluation
        max_matching_records: Cap on records passing computation
    """

    name: str
    kind: AggregationKind
    field: str | None = None
    evaluation: Predicate | None = None
    computation: Predicate | None = None
    occurred_from_ms: int | None = None
    occurred_to_ms: int | None = None
    max_evaluated_records: int | None = None
    max_matching_records: int | None = None


@dataclass(frozen=True, slots=True)
class JoinSpec:
    """fact_index aggregation only: join each entry to its fact document."""

    collection: str = FACTS


@runtime_checkable
class FactStore(Protocol):
    """Idempotent document store for facts and index entries."""

    def upsert_one(self, collection: str, key: str, doc: Mapping[str, Any]) -> UpsertOutcome:
        """Insert or replace one document; a byte-identical retry is UNCHANGED."""
        ...

    def upsert_bulk(
        self,
        collection: str,
        items: Sequence[tuple[str, Mapping[str, Any]]],
        *,
        ordered: bool = False,
    ) -> BulkWriteResult:
        """Upsert a batch. Unordered batches continue past failed documents."""
        ...

    def find_sorted_limited(
        self,
        collection: str,
        record_filter: RecordFilter,
        sort: SortSpec,
        limit: int | None,
        projection: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]:
        """Ordered, capped lookup. ``projection`` restricts returned keys."""
        ...

    def aggregate(
        self,
        collection: str,
        record_filter: RecordFilter,
        sort: SortSpec,
        limit: int | None,
        specs: Sequence[AggregateSpec],
        join: JoinSpec | None = None,
    ) -> dict[str, Any]:
        """Compute every spec over one filtered, sorted, limited candidate set."""
        ...

    def close(self) -> None: ...
