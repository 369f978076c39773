# src/factcounters/core/field_types.py
"""Field-name to FieldKind lookup and literal coercion.

Rule sheets carry untyped text such as ``amount ≥ 100.000,00`` or
``card_present_flag is true``. The compiler asks the FieldTypeTable what
kind a field holds and coerces the literal accordingly. Explicit overrides
from configuration win over the name heuristics.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from factcounters.contracts.facts import FieldKind, from_epoch_ms

NULL_LITERAL = "∅"

_INTEGER_FIELDS = frozenset({"MessageTypeID", "type"})
_DATETIME_FIELDS = frozenset({"occurredAt", "createdAt", "dt"})
_NUMERIC_MARKERS = ("amount", "Amount", "count", "Count", "sum", "Sum")
_DATETIME_MARKERS = ("date", "Date", "time", "Time", "Timestamp", "created_at")

# 1.234.567,89 / 1,234,567.89 / 100000,00 / 42 / -3.5
_PLAIN_NUMBER = re.compile(r"^[+-]?\d+(\.\d+)?$")
_COMMA_DECIMAL = re.compile(r"^[+-]?\d{1,3}(\.\d{3})*,\d+$|^[+-]?\d+,\d+$")
_DOT_DECIMAL_GROUPED = re.compile(r"^[+-]?\d{1,3}(,\d{3})+(\.\d+)?$")
_DOT_GROUPED = re.compile(r"^[+-]?\d{1,3}(\.\d{3}){2,}(,\d+)?$")
_DOTTED_QUAD = re.compile(r"^\d{1,3}(\.\d{1,3}){3}$")


class FieldTypeTable:
    """Explicit name -> FieldKind lookup with heuristic fallback.

    Args:
        overrides: Configured kinds, consulted before any heuristic
    """

    def __init__(self, overrides: Mapping[str, FieldKind] | None = None) -> None:
        self._overrides = dict(overrides or {})

    def kind_of(self, name: str) -> FieldKind:
        if name in self._overrides:
            return self._overrides[name]
        if name in _INTEGER_FIELDS:
            return FieldKind.INTEGER
        if name in _DATETIME_FIELDS:
            return FieldKind.DATETIME
        if name.endswith(("_flag", "_indicator")):
            return FieldKind.BOOLEAN
        if any(marker in name for marker in _DATETIME_MARKERS):
            return FieldKind.DATETIME
        if any(marker in name for marker in _NUMERIC_MARKERS):
            return FieldKind.NUMBER
        return FieldKind.STRING

    def coerce(self, name: str, text: str) -> Any:
        """Convert literal text to the value kind of ``name``.

        Raises:
            ValueError: If the text cannot represent the field's kind
        """
        text = text.strip()
        if text == NULL_LITERAL:
            return None
        kind = self.kind_of(name)
        if kind is FieldKind.INTEGER:
            number = parse_number(text)
            if number is None or not float(number).is_integer():
                raise ValueError(f"'{text}' is not an integer for field '{name}'")
            return int(number)
        if kind is FieldKind.NUMBER:
            number = parse_number(text)
            if number is None:
                raise ValueError(f"'{text}' is not a number for field '{name}'")
            return number
        if kind is FieldKind.BOOLEAN:
            lowered = text.lower()
            if lowered in ("true", "1", "yes", "y"):
                return True
            if lowered in ("false", "0", "no", "n"):
                return False
            raise ValueError(f"'{text}' is not a boolean for field '{name}'")
        if kind is FieldKind.DATETIME:
            return parse_datetime(text)
        return _strip_quotes(text)

    def type_data(self, data: Mapping[str, Any]) -> dict[str, Any]:
        """Give inbound fact data the kinds rule literals are coerced to.

        Only text values of non-string fields are converted, so
        ``"2024-03-01T11:00:00Z"`` in a date field becomes a datetime and
        ``"150000,00"`` in an amount field becomes a number. Text that does
        not read as its field's kind is kept as text.
        """
        typed: dict[str, Any] = {}
        for name, value in data.items():
            if isinstance(value, str) and value.strip() != NULL_LITERAL and self.kind_of(name) is not FieldKind.STRING:
                try:
                    typed[name] = self.coerce(name, value)
                except ValueError:
                    typed[name] = value
                continue
            typed[name] = value
        return typed


def parse_number(text: str) -> int | float | None:
    """Parse a number written with optional thousands separators.

    ``100000,00`` and ``6.000,000`` use a decimal comma; ``1,000.50`` uses
    grouping commas. Dotted quads (IP addresses) are not numbers.

    Returns:
        int when the value has no fractional part, float otherwise, or None
    """
    text = text.strip()
    if _DOTTED_QUAD.match(text):
        return None
    if _PLAIN_NUMBER.match(text):
        normalised = text
    elif _DOT_GROUPED.match(text) or _COMMA_DECIMAL.match(text):
        normalised = text.replace(".", "").replace(",", ".")
    elif _DOT_DECIMAL_GROUPED.match(text):
        normalised = text.replace(",", "")
    else:
        return None
    value = float(normalised)
    return int(value) if value.is_integer() else value


def parse_datetime(text: str) -> datetime:
    """Parse ISO-8601 text or epoch milliseconds into an aware datetime."""
    text = _strip_quotes(text.strip())
    if text.lstrip("-").isdigit():
        try:
            return from_epoch_ms(int(text))
        except OverflowError as exc:
            raise ValueError(f"'{text}' is out of the date range") from exc
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValueError(f"'{text}' is not a date") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _strip_quotes(text: str) -> str:
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "'\"":
        return text[1:-1]
    return text
