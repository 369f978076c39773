# src/factcounters/contracts/predicates.py
"""Predicate tree produced by the condition compiler.

The tree is deliberately small:

- Comparison: one field, one operator, one or more operands
- AllOf / AnyOf: conjunction / disjunction of sub-predicates
- ALWAYS: the empty conjunction, i.e. "unconstrained"

Operands are either plain literals or Reference nodes. A Reference names
where its value comes from:

- TRIGGERING: the fact being processed, resolved per request by the
  substituter before any query is dispatched
- CANDIDATE: the stored record under evaluation (cross-field comparison)
- NOW: the request's current timestamp, resolved with TRIGGERING

All nodes are frozen so compiled rules can be shared across threads.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeAlias


class Operator(str, Enum):
    """Comparison operators of the rule language."""

    EQ = "="
    NE = "≠"
    GT = ">"
    GE = "≥"
    LT = "<"
    LE = "≤"
    CONTAINS = "=*="
    NOT_CONTAINS = "¬=*="
    STARTS_WITH = "*="
    NOT_STARTS_WITH = "¬*="
    IEQ = "≈"
    NOT_IEQ = "¬≈"

    @property
    def negated(self) -> bool:
        """True for operators that match when NO operand matches."""
        return self in _NEGATED

    @property
    def ordering(self) -> bool:
        return self in _ORDERING


_NEGATED = frozenset({Operator.NE, Operator.NOT_CONTAINS, Operator.NOT_STARTS_WITH, Operator.NOT_IEQ})
_ORDERING = frozenset({Operator.GT, Operator.GE, Operator.LT, Operator.LE})


class Source(str, Enum):
    """Where a Reference takes its value from."""

    TRIGGERING = "triggering"
    CANDIDATE = "candidate"
    NOW = "now"


@dataclass(frozen=True, slots=True)
class Reference:
    """Typed placeholder for a value that is not known at compile time.

    Attributes:
        source: Triggering fact, candidate record, or current time
        field: Field name (None for NOW)
        offset_ms: Signed date arithmetic applied after resolution
    """

    source: Source
    field: str | None = None
    offset_ms: int = 0

    def describe(self) -> str:
        if self.source is Source.NOW:
            base = "NOW"
        elif self.source is Source.TRIGGERING:
            base = f"{{{self.field}}}"
        else:
            base = f"[{self.field}]"
        if self.offset_ms:
            sign = "+" if self.offset_ms > 0 else "-"
            return f"{base} {sign} {abs(self.offset_ms)}ms"
        return base


Operand: TypeAlias = Any  # literal scalar or Reference


@dataclass(frozen=True, slots=True)
class Comparison:
    """``field OPERATOR operand[;operand...]``."""

    field: str
    op: Operator
    operands: tuple[Operand, ...]

    def describe(self) -> str:
        rendered = ";".join(o.describe() if isinstance(o, Reference) else repr(o) for o in self.operands)
        return f"{self.field} {self.op.value} {rendered}"


@dataclass(frozen=True, slots=True)
class AllOf:
    """Conjunction. The empty conjunction is always true."""

    members: tuple[Predicate, ...] = ()


@dataclass(frozen=True, slots=True)
class AnyOf:
    """Disjunction. Never empty: the compiler rejects empty OR-groups."""

    members: tuple[Predicate, ...]


Predicate: TypeAlias = Comparison | AllOf | AnyOf

ALWAYS: AllOf = AllOf(())


def is_unconstrained(predicate: Predicate | None) -> bool:
    return predicate is None or predicate == ALWAYS


def conjoin(*predicates: Predicate | None) -> Predicate:
    """AND together predicates, flattening nested conjunctions."""
    members: list[Predicate] = []
    for predicate in predicates:
        if predicate is None:
            continue
        if isinstance(predicate, AllOf):
            members.extend(predicate.members)
        else:
            members.append(predicate)
    if len(members) == 1:
        return members[0]
    return AllOf(tuple(members))


def has_references(predicate: Predicate | None, source: Source) -> bool:
    """Whether any operand in the tree is a Reference from ``source``."""
    if predicate is None:
        return False
    if isinstance(predicate, Comparison):
        return any(isinstance(o, Reference) and o.source is source for o in predicate.operands)
    return any(has_references(m, source) for m in predicate.members)
