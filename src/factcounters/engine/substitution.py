# src/factcounters/engine/substitution.py
"""Parameter substitution: bind a compiled rule to one triggering fact.

Compiled predicates carry typed Reference nodes. Before a group is
dispatched, every TRIGGERING and NOW reference is replaced by a literal:

- ``{field}`` / ``$$field`` -> the triggering fact's value (plus offset)
- ``NOW`` / ``$$NOW``       -> the request's current time (plus offset)

CANDIDATE references (``[field]``) stay in place; the matcher resolves them
against each stored record.

An operand that cannot be resolved is dropped and a ResolutionWarning is
recorded. A clause left with no operands degrades to unconstrained.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from factcounters.contracts.errors import ResolutionWarning
from factcounters.contracts.facts import Fact, record_view
from factcounters.contracts.predicates import ALWAYS, AllOf, AnyOf, Comparison, Predicate, Reference, Source
from factcounters.contracts.rules import CounterRule
from factcounters.core.logging import get_logger
from factcounters.storage.matching import shift

logger = get_logger(__name__)

_MISSING = object()


@dataclass
class SubstitutionContext:
    """Everything references may bind to for one request.

    Attributes:
        record: Triggering fact as a flat record (data plus meta fields)
        now: The request's current time
        warnings: Unresolved references, in encounter order
    """

    record: Mapping[str, Any]
    now: datetime
    warnings: list[ResolutionWarning] = field(default_factory=list)

    @classmethod
    def for_fact(cls, fact: Fact, now: datetime) -> SubstitutionContext:
        return cls(record=record_view(fact.to_document()), now=now)


class ParameterSubstituter:
    """Visitor replacing triggering/NOW references with literals."""

    def resolve_rule(self, rule: CounterRule, context: SubstitutionContext) -> CounterRule:
        """Return a copy of ``rule`` with both condition slots resolved."""
        evaluation = self.resolve(rule.evaluation, context, rule=rule.name)
        computation = self.resolve(rule.computation, context, rule=rule.name)
        if evaluation is rule.evaluation and computation is rule.computation:
            return rule
        return replace(rule, evaluation=evaluation, computation=computation)

    def resolve(self, predicate: Predicate | None, context: SubstitutionContext, *, rule: str = "") -> Predicate | None:
        if predicate is None:
            return None
        if isinstance(predicate, Comparison):
            return self._comparison(predicate, context, rule)
        if isinstance(predicate, AnyOf):
            members = tuple(self.resolve(m, context, rule=rule) or ALWAYS for m in predicate.members)
            if ALWAYS in members:
                return ALWAYS
            return AnyOf(members)
        members = tuple(
            resolved
            for resolved in (self.resolve(m, context, rule=rule) for m in predicate.members)
            if resolved is not None and resolved != ALWAYS
        )
        return AllOf(members) if len(members) != 1 else members[0]

    def _comparison(self, comparison: Comparison, context: SubstitutionContext, rule: str) -> Predicate:
        if not any(isinstance(o, Reference) and o.source is not Source.CANDIDATE for o in comparison.operands):
            return comparison
        operands: list[Any] = []
        for operand in comparison.operands:
            if not isinstance(operand, Reference) or operand.source is Source.CANDIDATE:
                operands.append(operand)
                continue
            value = self._value(operand, context)
            if value is _MISSING:
                warning = ResolutionWarning(
                    f"rule '{rule}': {operand.describe()} unresolved in '{comparison.describe()}'"
                )
                context.warnings.append(warning)
                logger.warning(
                    "unresolved_reference",
                    rule=rule,
                    reference=operand.describe(),
                    clause=comparison.describe(),
                )
                continue
            operands.append(value)
        if not operands:
            return ALWAYS
        return Comparison(comparison.field, comparison.op, tuple(operands))

    @staticmethod
    def _value(reference: Reference, context: SubstitutionContext) -> Any:
        if reference.source is Source.NOW:
            base: Any = context.now
        else:
            base = context.record.get(reference.field or "", _MISSING)
            if base is _MISSING:
                return _MISSING
            if base is None:
                # null binds as null; date arithmetic on it cannot
                return None if not reference.offset_ms else _MISSING
        try:
            return shift(base, reference.offset_ms)
        except (TypeError, ValueError):
            return _MISSING
