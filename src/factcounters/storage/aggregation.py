# src/factcounters/storage/aggregation.py
"""Aggregation kernel shared by every FactStore backend.

Backends pre-filter, sort and limit candidates however they can; this
module turns the resulting record stream into counter values. Keeping one
kernel is what makes two-phase and single-phase retrieval numerically
identical regardless of backend.

For each AggregateSpec, records flow through:

    window -> evaluation -> max_evaluated cap -> computation
           -> max_matching cap -> aggregate
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime
from typing import Any

from factcounters.contracts.facts import ID_FIELD, OCCURRED_AT_FIELD, record_view, to_epoch_ms
from factcounters.contracts.rules import AggregationKind
from factcounters.storage.matching import matches
from factcounters.storage.protocols import AggregateSpec

# Type brackets for min/max across mixed kinds
_BRACKET_NUMBER = 0
_BRACKET_STRING = 1
_BRACKET_BOOLEAN = 2
_BRACKET_DATETIME = 3


def recency_key(record: Mapping[str, Any]) -> tuple[int, str]:
    """Sort key for occurredAt descending, then id ascending."""
    occurred = record[OCCURRED_AT_FIELD]
    occurred_ms = to_epoch_ms(occurred) if isinstance(occurred, datetime) else int(occurred)
    return (-occurred_ms, str(record[ID_FIELD]))


def unique_by_id(records: Iterable[Mapping[str, Any]]) -> list[Mapping[str, Any]]:
    """Keep the first record per fact id, preserving order.

    A fact reachable through several index keys of one index type must be
    counted once.
    """
    seen: set[Any] = set()
    unique: list[Mapping[str, Any]] = []
    for record in records:
        record_id = record[ID_FIELD]
        if record_id in seen:
            continue
        seen.add(record_id)
        unique.append(record)
    return unique


def compute_aggregates(
    records: Sequence[Mapping[str, Any]],
    specs: Sequence[AggregateSpec],
) -> dict[str, Any]:
    """Compute every spec over records already in recency order.

    Args:
        records: Candidate records, unique by id, newest first
        specs: Aggregates to compute; names must be unique

    Returns:
        Spec name to value; every spec has a key
    """
    return {spec.name: _aggregate(spec, _select(records, spec)) for spec in specs}


def _select(records: Sequence[Mapping[str, Any]], spec: AggregateSpec) -> list[Mapping[str, Any]]:
    selected: list[Mapping[str, Any]] = []
    evaluated = 0
    for record in records:
        if not _in_window(record, spec):
            continue
        if not matches(spec.evaluation, record):
            continue
        if spec.max_evaluated_records is not None and evaluated >= spec.max_evaluated_records:
            break
        evaluated += 1
        if not matches(spec.computation, record):
            continue
        selected.append(record)
        if spec.max_matching_records is not None and len(selected) >= spec.max_matching_records:
            break
    return selected


def _in_window(record: Mapping[str, Any], spec: AggregateSpec) -> bool:
    if spec.occurred_from_ms is None and spec.occurred_to_ms is None:
        return True
    occurred = record[OCCURRED_AT_FIELD]
    occurred_ms = to_epoch_ms(occurred) if isinstance(occurred, datetime) else int(occurred)
    if spec.occurred_from_ms is not None and occurred_ms < spec.occurred_from_ms:
        return False
    return spec.occurred_to_ms is None or occurred_ms < spec.occurred_to_ms


def _aggregate(spec: AggregateSpec, selected: list[Mapping[str, Any]]) -> Any:
    kind = spec.kind
    if kind is AggregationKind.COUNT:
        return len(selected)

    values = [record.get(spec.field or "") for record in selected]
    present = [v for v in values if v is not None]

    match kind:
        case AggregationKind.SUM:
            numbers = [v for v in present if _is_number(v)]
            return sum(numbers) if numbers else 0
        case AggregationKind.AVERAGE:
            numbers = [v for v in present if _is_number(v)]
            return sum(numbers) / len(numbers) if numbers else None
        case AggregationKind.MIN:
            return min(present, key=_order_key) if present else None
        case AggregationKind.MAX:
            return max(present, key=_order_key) if present else None
        case AggregationKind.DISTINCT_COUNT:
            return len({_distinct_key(v) for v in present})
    raise ValueError(f"Unknown aggregation kind: {kind!r}")


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _order_key(value: Any) -> tuple[int, Any]:
    if _is_number(value):
        return (_BRACKET_NUMBER, value)
    if isinstance(value, str):
        return (_BRACKET_STRING, value)
    if isinstance(value, bool):
        return (_BRACKET_BOOLEAN, value)
    if isinstance(value, datetime):
        return (_BRACKET_DATETIME, to_epoch_ms(value))
    return (_BRACKET_STRING, repr(value))


def _distinct_key(value: Any) -> Any:
    # 1 and True are distinct values
    if isinstance(value, bool):
        return ("bool", value)
    if isinstance(value, list | dict):
        return repr(value)
    return value


def entry_record(entry_doc: Mapping[str, Any], fact_doc: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """Record for one fact_index document.

    With a joined fact the record is the fact's own view, so single-phase
    and two-phase retrieval see the same fields. Without one, the entry's
    embedded data (if any) stands in for the fact.
    """
    if fact_doc is not None:
        return record_view(fact_doc)
    return record_view(
        {
            "id": entry_doc["fact_id"],
            "type": entry_doc["fact_type"],
            "occurred_at": entry_doc["occurred_at"],
            "created_at": entry_doc["created_at"],
            "data": entry_doc.get("data") or {},
        }
    )
