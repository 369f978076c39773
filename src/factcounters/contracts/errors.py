# src/factcounters/contracts/errors.py
"""Error types and diagnostic records.

Load-time problems (CompileError, ConfigurationError) are collected and
surfaced before traffic is accepted. Request-time problems (StorageError,
ResolutionWarning) never escape the planner: they fold into the
ExecutionResult so callers always receive a counter map.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Severity(str, Enum):
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class CompileDiagnostic:
    """One problem found while compiling a rule row.

    Attributes:
        row: 1-based source row (header is row 1 for CSV input)
        rule: Rule name, if the row had one
        slot: "evaluation", "computation", "attributes" or "row"
        message: Human-readable description
        severity: WARNING keeps the rule, ERROR drops it
    """

    row: int
    rule: str | None
    slot: str
    message: str
    severity: Severity

    def __str__(self) -> str:
        name = self.rule or "<unnamed>"
        return f"row {self.row} ({name}) [{self.slot}]: {self.message}"


class CompileError(Exception):
    """Malformed rule text that makes a whole rule unusable.

    Raised inside the compiler and caught per row; the row is dropped and
    the batch continues.
    """

    def __init__(self, slot: str, message: str) -> None:
        self.slot = slot
        self.message = message
        super().__init__(message)


class ResolutionWarning(UserWarning):
    """A placeholder could not be resolved against the triggering fact.

    Never raised: the substituter logs it and degrades the clause to
    unconstrained.
    """


class StorageError(Exception):
    """A storage round trip failed.

    Attributes:
        operation: upsert_one, upsert_bulk, find_sorted_limited or aggregate
        collection: Target collection
    """

    def __init__(self, operation: str, collection: str, message: str) -> None:
        self.operation = operation
        self.collection = collection
        self.message = message
        super().__init__(f"{operation} on '{collection}' failed: {message}")


class ConfigurationError(Exception):
    """Invalid rule/index configuration, detected at load time.

    Aggregates every problem found so operators can fix them in one pass.
    """

    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        summary = "; ".join(self.problems)
        super().__init__(f"{len(self.problems)} configuration problem(s): {summary}")
