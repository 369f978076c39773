# src/factcounters/engine/conditions.py
"""Condition compiler: rule-sheet text to CounterRule.

A rule row carries two condition slots (evaluation, computation) and an
attribute naming the aggregate. Each slot is a small language:

    clause      := field OPERATOR value[;value...]
                 | field is true|false
    value       := literal | {field} | [field] | NOW | $$field | $$NOW
                 | reference (+|-) N(d|h|m|s)
    condition   := clause, combined by newline / AND / adjacent (groups)
                   and joined into OR-groups by the OR keyword

Malformed clauses are reported as warnings and omitted; the rule survives
with the remaining clauses. A rule is dropped only when its Name or Index is
missing, or when an OR-group loses every member.

Bounds on the window fields relative to NOW (``occurredAt ≥ NOW - 1h``)
are lifted out of the predicate into ``from_offset_ms``/``to_offset_ms`` so
stores apply them as range filters.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from factcounters.contracts.errors import CompileDiagnostic, CompileError, Severity
from factcounters.contracts.predicates import AllOf, AnyOf, Comparison, Operator, Predicate, Reference, Source
from factcounters.contracts.rules import AggregationKind, AggregationSpec, CounterRule, RuleRow
from factcounters.core.config import CompilerSettings
from factcounters.core.field_types import NULL_LITERAL, FieldTypeTable
from factcounters.core.logging import get_logger

logger = get_logger(__name__)

# Operator spellings, Unicode first, then ASCII aliases
_OPERATOR_TOKENS: tuple[tuple[str, Operator], ...] = (
    ("¬=*=", Operator.NOT_CONTAINS),
    ("!=*=", Operator.NOT_CONTAINS),
    ("=*=", Operator.CONTAINS),
    ("¬*=", Operator.NOT_STARTS_WITH),
    ("!*=", Operator.NOT_STARTS_WITH),
    ("*=", Operator.STARTS_WITH),
    ("¬≈", Operator.NOT_IEQ),
    ("!~=", Operator.NOT_IEQ),
    ("≈", Operator.IEQ),
    ("~=", Operator.IEQ),
    ("≠", Operator.NE),
    ("!=", Operator.NE),
    ("≥", Operator.GE),
    (">=", Operator.GE),
    ("≤", Operator.LE),
    ("<=", Operator.LE),
    ("=", Operator.EQ),
    (">", Operator.GT),
    ("<", Operator.LT),
)

# Operators whose operands are matched as text, never coerced
_TEXT_OPERATORS = frozenset(
    {
        Operator.CONTAINS,
        Operator.NOT_CONTAINS,
        Operator.STARTS_WITH,
        Operator.NOT_STARTS_WITH,
        Operator.IEQ,
        Operator.NOT_IEQ,
    }
)

_UNIT_MS = {"s": 1_000, "m": 60_000, "h": 3_600_000, "d": 86_400_000}
# Widest span a datetime can be shifted by
_MAX_OFFSET_MS = (datetime.max - datetime.min) // timedelta(milliseconds=1)

_KEYWORD = re.compile(r"(AND|OR)(?=[\s(]|$)", re.IGNORECASE)
_IS_BOOLEAN = re.compile(r"^(?P<field>.+?)\s+is\s+(?P<value>true|false)$", re.IGNORECASE)
_REFERENCE = re.compile(
    r"""^\(?\s*
    (?P<ref>\$\$\w+|\{\w+\}|\[\w+\]|NOW)
    \s*(?:(?P<sign>[+-])\s*(?P<amount>\d+)\s*(?P<unit>[dhms]))?
    \s*\)?$""",
    re.VERBOSE,
)
_DURATION = re.compile(r"^(?P<amount>\d+)\s*(?P<unit>ms|s|m|h|d)?$")
_ATTRIBUTE = re.compile(r"^(?P<label>[^()]+?)\s*(?:\(\s*(?P<field>[^()]*?)\s*\))?$")

_ATTRIBUTE_LABELS: dict[str, AggregationKind] = {
    "frequency": AggregationKind.COUNT,
    "total amount": AggregationKind.SUM,
    "average amount": AggregationKind.AVERAGE,
    "maximum amount": AggregationKind.MAX,
    "minimum amount": AggregationKind.MIN,
    "distinct values number": AggregationKind.DISTINCT_COUNT,
}

# Looser spellings, checked in order once the exact labels miss
_ATTRIBUTE_HINTS: tuple[tuple[tuple[str, ...], AggregationKind], ...] = (
    (("distinct", "dst"), AggregationKind.DISTINCT_COUNT),
    (("average", "avg"), AggregationKind.AVERAGE),
    (("frequency", "cnt", "count"), AggregationKind.COUNT),
    (("total", "sum"), AggregationKind.SUM),
    (("maximum", "max"), AggregationKind.MAX),
    (("minimum", "min"), AggregationKind.MIN),
)


class _MalformedClause(ValueError):
    """One clause could not be parsed; it is omitted with a warning."""


@dataclass
class CompileReport:
    """Compiled rules plus every diagnostic raised along the way."""

    rules: list[CounterRule] = field(default_factory=list)
    diagnostics: list[CompileDiagnostic] = field(default_factory=list)
    rows_read: int = 0
    dropped_rows: list[int] = field(default_factory=list)

    @property
    def errors(self) -> list[CompileDiagnostic]:
        return [d for d in self.diagnostics if d.severity is Severity.ERROR]

    @property
    def warnings(self) -> list[CompileDiagnostic]:
        return [d for d in self.diagnostics if d.severity is Severity.WARNING]

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows_read": self.rows_read,
            "rules_compiled": len(self.rules),
            "dropped_rows": list(self.dropped_rows),
            "errors": [str(d) for d in self.errors],
            "warnings": [str(d) for d in self.warnings],
            "rules": [rule.summary() for rule in self.rules],
        }


@dataclass
class _SlotResult:
    predicate: Predicate | None = None
    from_offset_ms: int | None = None
    to_offset_ms: int | None = None


class _RowContext:
    """Diagnostics sink for one row."""

    def __init__(self, row: int, rule: str | None, report: CompileReport) -> None:
        self.row = row
        self.rule = rule
        self._report = report

    def warn(self, slot: str, message: str) -> None:
        self._add(slot, message, Severity.WARNING)

    def error(self, slot: str, message: str) -> None:
        self._add(slot, message, Severity.ERROR)

    def _add(self, slot: str, message: str, severity: Severity) -> None:
        diagnostic = CompileDiagnostic(row=self.row, rule=self.rule, slot=slot, message=message, severity=severity)
        self._report.diagnostics.append(diagnostic)
        log = logger.error if severity is Severity.ERROR else logger.warning
        log("rule_compile_problem", row=self.row, rule=self.rule, slot=slot, problem=message)


class ConditionCompiler:
    """Compiles rule rows into immutable CounterRules.

    Args:
        field_types: Field kind lookup used to coerce literals
        amount_field: Default field for sum/average/min/max attributes
        distinct_field: Default field for the distinct-count attribute
        window_fields: Fields whose NOW-relative bounds become offsets
    """

    def __init__(
        self,
        field_types: FieldTypeTable | None = None,
        *,
        amount_field: str = "amount",
        distinct_field: str = "PAN",
        window_fields: Iterable[str] = ("occurredAt", "dt"),
    ) -> None:
        self._types = field_types or FieldTypeTable()
        self._amount_field = amount_field
        self._distinct_field = distinct_field
        self._window_fields = frozenset(window_fields)

    @classmethod
    def from_settings(cls, settings: CompilerSettings) -> ConditionCompiler:
        return cls(
            FieldTypeTable(settings.field_types),
            amount_field=settings.amount_field,
            distinct_field=settings.distinct_field,
            window_fields=settings.window_fields,
        )

    def compile_rows(self, rows: Iterable[RuleRow]) -> CompileReport:
        """Compile every row. Never raises for bad rule text."""
        report = CompileReport()
        for row in rows:
            report.rows_read += 1
            rule = self.compile_row(row, report)
            if rule is None:
                report.dropped_rows.append(row.row)
            else:
                report.rules.append(rule)
        logger.info(
            "rules_compiled",
            rows=report.rows_read,
            rules=len(report.rules),
            errors=len(report.errors),
            warnings=len(report.warnings),
        )
        return report

    def compile_row(self, row: RuleRow, report: CompileReport) -> CounterRule | None:
        """Compile one row, recording diagnostics in ``report``.

        Returns:
            The rule, or None when the row had to be dropped
        """
        name = row.name.strip().replace(".", "_")
        ctx = _RowContext(row.row, name or None, report)
        if not name:
            ctx.error("row", "missing Name")
            return None
        index = row.index.strip()
        if not index:
            ctx.error("row", "missing Index")
            return None

        try:
            evaluation = self.compile_condition(row.evaluation, "evaluation", ctx)
            computation = self.compile_condition(row.computation, "computation", ctx)
        except CompileError as exc:
            ctx.error(exc.slot, exc.message)
            return None

        from_offset = _tightest(min, evaluation.from_offset_ms, computation.from_offset_ms)
        to_offset = _tightest(max, evaluation.to_offset_ms, computation.to_offset_ms)
        explicit_from = self._duration(row.from_offset, "from_offset", ctx)
        explicit_to = self._duration(row.to_offset, "to_offset", ctx)
        if explicit_from is not None:
            from_offset = explicit_from
        if explicit_to is not None:
            to_offset = explicit_to
        if from_offset is not None and to_offset is not None and to_offset >= from_offset:
            ctx.warn("row", f"empty window: to offset {to_offset}ms is not below from offset {from_offset}ms")

        return CounterRule(
            name=name,
            index_type_name=index,
            aggregation=self.compile_attributes(row.attributes, ctx),
            evaluation=evaluation.predicate,
            computation=computation.predicate,
            from_offset_ms=from_offset,
            to_offset_ms=to_offset,
            max_evaluated_records=self._positive(row.max_evaluated_records, "max_evaluated_records", ctx),
            max_matching_records=self._positive(row.max_matching_records, "max_matching_records", ctx),
            fact_types=self._fact_types(row.fact_types, ctx),
            comment=row.comment.strip(),
        )

    # === Conditions ===

    def compile_condition(self, text: str, slot: str, ctx: _RowContext) -> _SlotResult:
        """Compile one condition slot.

        Raises:
            CompileError: If an OR-group has no parseable member
        """
        text = _unquote(text.strip())
        if not text:
            return _SlotResult()
        try:
            predicate = self._expression(text, slot, ctx)
        except _MalformedClause as exc:
            ctx.warn(slot, f"condition ignored: {exc}")
            return _SlotResult()
        if predicate is None:
            return _SlotResult()

        members = list(predicate.members) if isinstance(predicate, AllOf) else [predicate]
        result = _SlotResult()
        kept: list[Predicate] = []
        for member in members:
            bound = self._window_bound(member)
            if bound is None:
                kept.append(member)
            elif bound[0] == "from":
                result.from_offset_ms = _tightest(min, result.from_offset_ms, bound[1])
            else:
                result.to_offset_ms = _tightest(max, result.to_offset_ms, bound[1])
        if len(kept) == 1:
            result.predicate = kept[0]
        elif kept:
            result.predicate = AllOf(tuple(kept))
        return result

    def _expression(self, text: str, slot: str, ctx: _RowContext) -> Predicate | None:
        """Parse a (possibly nested) condition into a predicate.

        OR binds neighbouring clauses; everything else is conjunction.
        """
        conjuncts: list[list[str]] = []
        pending_or = False
        for kind, clause in _tokenize(text):
            if kind == "or":
                if not conjuncts:
                    ctx.warn(slot, "leading OR ignored")
                    continue
                pending_or = True
            elif kind == "and":
                pending_or = False
            else:
                if pending_or:
                    conjuncts[-1].append(clause)
                else:
                    conjuncts.append([clause])
                pending_or = False
        if pending_or:
            ctx.warn(slot, "trailing OR ignored")

        members: list[Predicate] = []
        for alternatives in conjuncts:
            parsed = [p for p in (self._clause(c, slot, ctx) for c in alternatives) if p is not None]
            if len(alternatives) > 1:
                if not parsed:
                    raise CompileError(slot, f"OR-group has no parseable member: {' OR '.join(alternatives)}")
                members.append(parsed[0] if len(parsed) == 1 else AnyOf(tuple(parsed)))
            elif parsed:
                members.append(parsed[0])

        flat: list[Predicate] = []
        for member in members:
            if isinstance(member, AllOf):
                flat.extend(member.members)
            else:
                flat.append(member)
        if not flat:
            return None
        return flat[0] if len(flat) == 1 else AllOf(tuple(flat))

    def _clause(self, text: str, slot: str, ctx: _RowContext) -> Predicate | None:
        if text.startswith("(") and _closing_paren(text, 0) == len(text) - 1:
            return self._expression(text[1:-1].strip(), slot, ctx)
        try:
            return self.parse_comparison(text)
        except _MalformedClause as exc:
            ctx.warn(slot, f"clause ignored: {exc}")
            return None

    def parse_comparison(self, text: str) -> Comparison:
        """Parse ``field OPERATOR value[;value...]`` or ``field is true|false``."""
        boolean = _IS_BOOLEAN.match(text)
        if boolean:
            field_name = _clean_field(boolean.group("field"))
            return Comparison(field_name, Operator.EQ, (boolean.group("value").lower() == "true",))

        position, token, op = _find_operator(text)
        field_name = _clean_field(text[:position])
        rhs = text[position + len(token) :].strip()
        if not field_name:
            raise _MalformedClause(f"missing field name in '{text}'")
        if not rhs:
            raise _MalformedClause(f"missing value in '{text}'")

        raw_values = [v.strip() for v in rhs.split(";") if v.strip()]
        operands = tuple(self._operand(field_name, op, raw) for raw in raw_values)
        return Comparison(field_name, op, operands)

    def _operand(self, field_name: str, op: Operator, raw: str) -> Any:
        reference = _parse_reference(raw)
        if reference is not None:
            return reference
        if op in _TEXT_OPERATORS:
            return None if raw == NULL_LITERAL else _unquote(raw)
        try:
            return self._types.coerce(field_name, raw)
        except ValueError as exc:
            raise _MalformedClause(str(exc)) from exc

    def _window_bound(self, predicate: Predicate) -> tuple[str, int] | None:
        """Offset a top-level ``window_field OP NOW - N`` clause lifts into."""
        if not isinstance(predicate, Comparison) or predicate.field not in self._window_fields:
            return None
        if not predicate.op.ordering or len(predicate.operands) != 1:
            return None
        operand = predicate.operands[0]
        if not isinstance(operand, Reference) or operand.source is not Source.NOW or operand.offset_ms > 0:
            return None
        offset = -operand.offset_ms
        if predicate.op in (Operator.GE, Operator.GT):
            return ("from", offset)
        return ("to", offset)

    # === Attributes and numeric columns ===

    def compile_attributes(self, text: str, ctx: _RowContext) -> AggregationSpec:
        """Map the Attributes column to an AggregationSpec.

        Empty means count. Unknown labels fall back to count with a warning;
        when several attributes are listed the first one wins.
        """
        items = [item.strip() for item in text.split(",") if item.strip()]
        if not items:
            return AggregationSpec(AggregationKind.COUNT)
        if len(items) > 1:
            ctx.warn("attributes", f"one aggregate per counter; using '{items[0]}', ignoring {items[1:]}")

        match = _ATTRIBUTE.match(items[0])
        label = (match.group("label") if match else items[0]).strip().lower()
        explicit_field = match.group("field") if match else None

        kind = _ATTRIBUTE_LABELS.get(label)
        if kind is None:
            kind = next((k for hints, k in _ATTRIBUTE_HINTS if any(h in label for h in hints)), None)
        if kind is None:
            ctx.warn("attributes", f"unknown attribute '{items[0]}', counting instead")
            return AggregationSpec(AggregationKind.COUNT)
        if kind is AggregationKind.COUNT:
            return AggregationSpec(kind)
        default = self._distinct_field if kind is AggregationKind.DISTINCT_COUNT else self._amount_field
        return AggregationSpec(kind, explicit_field or default)

    def _duration(self, text: str, slot: str, ctx: _RowContext) -> int | None:
        text = text.strip()
        if not text:
            return None
        match = _DURATION.match(text)
        if not match:
            ctx.warn(slot, f"'{text}' is not a duration; ignored")
            return None
        amount = int(match.group("amount"))
        unit = match.group("unit") or "ms"
        offset = amount if unit == "ms" else amount * _UNIT_MS[unit]
        if offset > _MAX_OFFSET_MS:
            ctx.warn(slot, f"'{text}' is beyond the date range; ignored")
            return None
        return offset

    def _positive(self, text: str, slot: str, ctx: _RowContext) -> int | None:
        text = text.strip()
        if not text:
            return None
        if not text.isdigit() or int(text) <= 0:
            ctx.warn(slot, f"'{text}' is not a positive integer; ignored")
            return None
        return int(text)

    def _fact_types(self, text: str, ctx: _RowContext) -> frozenset[int] | None:
        parts = [p.strip() for p in re.split(r"[,;\s]+", text.strip()) if p.strip()]
        if not parts:
            return None
        types: set[int] = set()
        for part in parts:
            if not part.isdigit():
                ctx.warn("fact_types", f"'{part}' is not a fact type; ignored")
                continue
            types.add(int(part))
        return frozenset(types) if types else None


def _tokenize(text: str) -> list[tuple[str, str]]:
    """Split a condition into clauses and connectors at paren depth 0.

    Returns:
        ("clause", text), ("and", "") and ("or", "") items in order

    Raises:
        _MalformedClause: On unbalanced parentheses
    """
    items: list[tuple[str, str]] = []
    buffer: list[str] = []
    depth = 0

    def flush() -> None:
        chunk = "".join(buffer).strip()
        buffer.clear()
        if chunk:
            items.append(("clause", chunk))

    i = 0
    while i < len(text):
        char = text[i]
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise _MalformedClause(f"unbalanced ')' in '{text}'")
            if depth == 0:
                buffer.append(char)
                flush()
                i += 1
                continue
        elif depth == 0 and char == "\n":
            flush()
            items.append(("and", ""))
            i += 1
            continue
        elif depth == 0 and (i == 0 or text[i - 1].isspace() or text[i - 1] == ")"):
            keyword = _KEYWORD.match(text, i)
            if keyword:
                flush()
                items.append((keyword.group(1).lower(), ""))
                i = keyword.end()
                continue
        buffer.append(char)
        i += 1
    if depth != 0:
        raise _MalformedClause(f"unbalanced '(' in '{text}'")
    flush()
    return items


def _closing_paren(text: str, start: int) -> int:
    depth = 0
    for i in range(start, len(text)):
        if text[i] == "(":
            depth += 1
        elif text[i] == ")":
            depth -= 1
            if depth == 0:
                return i
    return -1


def _find_operator(text: str) -> tuple[int, str, Operator]:
    """Earliest operator token; the longest one wins at equal position."""
    best: tuple[int, str, Operator] | None = None
    for token, op in _OPERATOR_TOKENS:
        position = text.find(token)
        if position < 0:
            continue
        if best is None or position < best[0] or (position == best[0] and len(token) > len(best[1])):
            best = (position, token, op)
    if best is None:
        raise _MalformedClause(f"no operator in '{text}'")
    return best


def _parse_reference(raw: str) -> Reference | None:
    match = _REFERENCE.match(raw)
    if not match:
        return None
    ref = match.group("ref")
    offset = 0
    if match.group("sign"):
        offset = int(match.group("amount")) * _UNIT_MS[match.group("unit")]
        if offset > _MAX_OFFSET_MS:
            raise _MalformedClause(f"offset in '{raw}' is beyond the date range")
        if match.group("sign") == "-":
            offset = -offset
    name = ref[2:] if ref.startswith("$$") else ref.strip("{}[]")
    if name == "NOW":
        return Reference(Source.NOW, None, offset)
    if ref.startswith("["):
        return Reference(Source.CANDIDATE, name, offset)
    return Reference(Source.TRIGGERING, name, offset)


def _clean_field(text: str) -> str:
    name = text.replace("¬", "").strip()
    if len(name) > 2 and name[0] == "[" and name[-1] == "]":
        name = name[1:-1].strip()
    return name


def _unquote(text: str) -> str:
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "'\"":
        return text[1:-1]
    return text


def _tightest(pick: Any, *values: int | None) -> int | None:
    present = [v for v in values if v is not None]
    return pick(present) if present else None
