# src/factcounters/storage/matching.py
"""Predicate evaluation over stored records.

Records are flat mappings: fact data merged with the meta fields ``id``,
``type``, ``occurredAt`` and ``createdAt``. Matching follows document-store
conventions:

- a missing field never satisfies a positive comparison
- negated operators (``≠``, ``¬=*=``, ``¬*=``, ``¬≈``) hold when NO operand
  matches, so a missing field satisfies them
- ``= ∅`` (None operand) matches a missing or null field
- ordering between incomparable kinds is false, never an error

Candidate references (``[field]``) are resolved against the record being
tested. Triggering and NOW references must have been substituted before
the predicate reaches a store.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any

from factcounters.contracts.facts import from_epoch_ms
from factcounters.contracts.predicates import AllOf, AnyOf, Comparison, Operator, Predicate, Reference, Source

_MISSING = object()

_POSITIVE_OF: dict[Operator, Operator] = {
    Operator.NE: Operator.EQ,
    Operator.NOT_CONTAINS: Operator.CONTAINS,
    Operator.NOT_STARTS_WITH: Operator.STARTS_WITH,
    Operator.NOT_IEQ: Operator.IEQ,
}


class UnresolvedReferenceError(ValueError):
    """A triggering/NOW reference reached the matcher unsubstituted."""


def matches(predicate: Predicate | None, record: Mapping[str, Any]) -> bool:
    """Evaluate a predicate tree against one record."""
    if predicate is None:
        return True
    if isinstance(predicate, Comparison):
        return _compare(predicate, record)
    if isinstance(predicate, AnyOf):
        return any(matches(member, record) for member in predicate.members)
    return all(matches(member, record) for member in predicate.members)


def _compare(comparison: Comparison, record: Mapping[str, Any]) -> bool:
    value = record.get(comparison.field, _MISSING)
    operands = [_operand_value(o, record) for o in comparison.operands]
    op = comparison.op
    if op.negated:
        positive = _POSITIVE_OF[op]
        return not any(_test(positive, value, operand) for operand in operands)
    return any(_test(op, value, operand) for operand in operands)


def _operand_value(operand: Any, record: Mapping[str, Any]) -> Any:
    if not isinstance(operand, Reference):
        return operand
    if operand.source is not Source.CANDIDATE:
        raise UnresolvedReferenceError(f"Unsubstituted reference {operand.describe()}")
    value = record.get(operand.field or "", _MISSING)
    if value is _MISSING or value is None:
        return _MISSING
    try:
        return shift(value, operand.offset_ms)
    except (TypeError, ValueError):
        return _MISSING


def shift(value: Any, offset_ms: int) -> Any:
    """Apply signed date arithmetic to a datetime or epoch-ms number.

    Raises:
        TypeError: If the value is neither
        ValueError: If the result falls outside the datetime range
    """
    if not offset_ms:
        return value
    if isinstance(value, datetime):
        try:
            return value + timedelta(milliseconds=offset_ms)
        except OverflowError as exc:
            raise ValueError(f"Shifting {value.isoformat()} by {offset_ms}ms leaves the date range") from exc
    if _is_number(value):
        return value + offset_ms
    raise TypeError(f"Cannot shift {type(value).__name__} by {offset_ms}ms")


def _test(op: Operator, value: Any, operand: Any) -> bool:
    if operand is _MISSING:
        return False
    if op is Operator.EQ:
        if operand is None:
            return value is _MISSING or value is None
        return value is not _MISSING and _equal(value, operand)
    if value is _MISSING or value is None:
        return False
    if op is Operator.IEQ:
        if isinstance(value, str) and isinstance(operand, str):
            return value.casefold() == operand.casefold()
        return _equal(value, operand)
    if op is Operator.CONTAINS:
        return _text(operand) in _text(value)
    if op is Operator.STARTS_WITH:
        return _text(value).startswith(_text(operand))
    return _order(op, value, operand)


def _equal(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    left, right = _align(left, right)
    return bool(left == right)


def _order(op: Operator, left: Any, right: Any) -> bool:
    left, right = _align(left, right)
    if not _comparable(left, right):
        return False
    if op is Operator.GT:
        return bool(left > right)
    if op is Operator.GE:
        return bool(left >= right)
    if op is Operator.LT:
        return bool(left < right)
    return bool(left <= right)


def _align(left: Any, right: Any) -> tuple[Any, Any]:
    """Bring datetime / epoch-ms pairs onto the same footing.

    An epoch-ms number outside the datetime range is left as a number, so
    the pair stays incomparable.
    """
    try:
        if isinstance(left, datetime) and _is_number(right):
            return left, from_epoch_ms(int(right))
        if _is_number(left) and isinstance(right, datetime):
            return from_epoch_ms(int(left)), right
    except (OverflowError, ValueError):
        return left, right
    return left, right


def _comparable(left: Any, right: Any) -> bool:
    if _is_number(left) and _is_number(right):
        return True
    if isinstance(left, str) and isinstance(right, str):
        return True
    return isinstance(left, datetime) and isinstance(right, datetime)


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).casefold()
