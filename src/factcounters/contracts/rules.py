# src/factcounters/contracts/rules.py
"""Compiled counter rules and the size-bounded groups they are batched into."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from factcounters.contracts.predicates import AllOf, AnyOf, Comparison, Predicate


class AggregationKind(str, Enum):
    """Closed set of rolling aggregates a counter can compute."""

    COUNT = "count"
    SUM = "sum"
    AVERAGE = "average"
    MIN = "min"
    MAX = "max"
    DISTINCT_COUNT = "distinct_count"

    @property
    def needs_field(self) -> bool:
        return self is not AggregationKind.COUNT

    def empty_value(self) -> int | None:
        """Value reported when no candidate record qualifies.

        count, sum and distinct-count are 0; average, min and max are
        undefined (None).
        """
        if self in (AggregationKind.COUNT, AggregationKind.SUM, AggregationKind.DISTINCT_COUNT):
            return 0
        return None


@dataclass(frozen=True, slots=True)
class AggregationSpec:
    kind: AggregationKind
    field: str | None = None

    def __post_init__(self) -> None:
        if self.kind.needs_field and not self.field:
            raise ValueError(f"Aggregation {self.kind.value} requires a field")

    def describe(self) -> str:
        if self.field is None:
            return self.kind.value
        return f"{self.kind.value}({self.field})"


@dataclass(frozen=True, slots=True)
class CounterRule:
    """One compiled counter. Immutable; shared across requests.

    Attributes:
        name: Unique counter name (result key)
        index_type_name: Index type whose candidates feed this counter
        aggregation: What to compute over qualifying records
        evaluation: Cheap predicate on candidate records, applied first
        computation: Predicate on full fact data, applied after the
            evaluated-records cap
        from_offset_ms: Look back this far from now (None = unbounded)
        to_offset_ms: Stop this close to now (None = up to now)
        max_evaluated_records: Cap on records passing evaluation
        max_matching_records: Cap on records passing computation
        fact_types: Triggering fact types the counter applies to
            (None = all types)
        comment: Free-text description from the rule sheet
    """

    name: str
    index_type_name: str
    aggregation: AggregationSpec
    evaluation: Predicate | None = None
    computation: Predicate | None = None
    from_offset_ms: int | None = None
    to_offset_ms: int | None = None
    max_evaluated_records: int | None = None
    max_matching_records: int | None = None
    fact_types: frozenset[int] | None = None
    comment: str = ""

    def applies_to(self, fact_type: int) -> bool:
        return self.fact_types is None or fact_type in self.fact_types

    def summary(self) -> dict[str, Any]:
        """JSON-friendly description for CLI output and logs."""
        return {
            "name": self.name,
            "index": self.index_type_name,
            "aggregation": self.aggregation.describe(),
            "evaluation": describe_predicate(self.evaluation),
            "computation": describe_predicate(self.computation),
            "from_offset_ms": self.from_offset_ms,
            "to_offset_ms": self.to_offset_ms,
            "max_evaluated_records": self.max_evaluated_records,
            "max_matching_records": self.max_matching_records,
            "fact_types": sorted(self.fact_types) if self.fact_types is not None else None,
        }


def describe_predicate(predicate: Predicate | None) -> str | None:
    if predicate is None:
        return None
    if isinstance(predicate, Comparison):
        return predicate.describe()
    if isinstance(predicate, AnyOf):
        return "(" + " OR ".join(describe_predicate(m) or "" for m in predicate.members) + ")"
    if isinstance(predicate, AllOf) and not predicate.members:
        return "TRUE"
    return " AND ".join(describe_predicate(m) or "" for m in predicate.members)


@dataclass(frozen=True, slots=True)
class CounterGroup:
    """Size-bounded batch of rules sharing an index type.

    Derived per request, never persisted. The group window is the union of
    its members' windows so one candidate lookup serves every member; each
    member's own window is re-applied during aggregation.

    Attributes:
        name: ``{index_type_name}#{n}``, n starting at 1
        index_type_name: Shared index type
        rules: Members in encounter order
        from_offset_ms: None if any member is unbounded, else the max
        to_offset_ms: None if any member has none, else the min
        max_evaluated_records: Max over members (None if none declare one)
    """

    name: str
    index_type_name: str
    rules: tuple[CounterRule, ...]
    from_offset_ms: int | None
    to_offset_ms: int | None
    max_evaluated_records: int | None

    @classmethod
    def build(cls, index_type_name: str, number: int, rules: tuple[CounterRule, ...]) -> CounterGroup:
        if not rules:
            raise ValueError("A counter group needs at least one rule")
        froms = [r.from_offset_ms for r in rules]
        tos = [r.to_offset_ms for r in rules]
        caps = [r.max_evaluated_records for r in rules if r.max_evaluated_records]
        return cls(
            name=f"{index_type_name}#{number}",
            index_type_name=index_type_name,
            rules=rules,
            from_offset_ms=None if any(f is None for f in froms) else max(f for f in froms if f is not None),
            to_offset_ms=None if any(t is None for t in tos) else min(t for t in tos if t is not None),
            max_evaluated_records=max(caps) if caps else None,
        )

    @property
    def counter_names(self) -> tuple[str, ...]:
        return tuple(r.name for r in self.rules)


@dataclass(frozen=True, slots=True)
class RuleRow:
    """Uncompiled rule definition, one row of a rule sheet.

    Text columns hold rule-language source; the optional numeric columns
    override whatever window and caps the condition text implies.
    """

    row: int
    name: str
    index: str
    comment: str = ""
    computation: str = ""
    evaluation: str = ""
    attributes: str = ""
    fact_types: str = ""
    from_offset: str = ""
    to_offset: str = ""
    max_evaluated_records: str = ""
    max_matching_records: str = ""
