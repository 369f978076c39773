"""Shared contracts for cross-boundary data types.

This package is a LEAF MODULE with no outbound dependencies to core/engine/
storage. Settings classes live in factcounters.core.config and are NOT
re-exported here.

Import patterns:
    # Contracts (lightweight, no heavy dependencies)
    from factcounters.contracts import Fact, CounterRule, ExecutionResult

    # Settings classes (from core, pulls in pydantic)
    from factcounters.core.config import FactCountersSettings
"""

from factcounters.contracts.errors import (
    CompileDiagnostic,
    CompileError,
    ConfigurationError,
    ResolutionWarning,
    Severity,
    StorageError,
)
from factcounters.contracts.facts import (
    CREATED_AT_FIELD,
    ID_FIELD,
    OCCURRED_AT_FIELD,
    TYPE_FIELD,
    Fact,
    FieldKind,
    IndexEntry,
    from_epoch_ms,
    record_view,
    to_epoch_ms,
)
from factcounters.contracts.predicates import (
    ALWAYS,
    AllOf,
    AnyOf,
    Comparison,
    Operator,
    Predicate,
    Reference,
    Source,
)
from factcounters.contracts.results import (
    CounterValue,
    ExecutionResult,
    GroupMetrics,
    LookupMetrics,
    PersistResult,
    RequestMetrics,
    RetrievalStrategy,
)
from factcounters.contracts.rules import (
    AggregationKind,
    AggregationSpec,
    CounterGroup,
    CounterRule,
    RuleRow,
)

__all__ = [
    "ALWAYS",
    "CREATED_AT_FIELD",
    "ID_FIELD",
    "OCCURRED_AT_FIELD",
    "TYPE_FIELD",
    "AggregationKind",
    "AggregationSpec",
    "AllOf",
    "AnyOf",
    "Comparison",
    "CompileDiagnostic",
    "CompileError",
    "ConfigurationError",
    "CounterGroup",
    "CounterRule",
    "CounterValue",
    "ExecutionResult",
    "Fact",
    "FieldKind",
    "GroupMetrics",
    "IndexEntry",
    "LookupMetrics",
    "Operator",
    "PersistResult",
    "Predicate",
    "Reference",
    "RequestMetrics",
    "ResolutionWarning",
    "RetrievalStrategy",
    "RuleRow",
    "Severity",
    "Source",
    "StorageError",
    "from_epoch_ms",
    "record_view",
    "to_epoch_ms",
]
