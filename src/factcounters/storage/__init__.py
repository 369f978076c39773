# src/factcounters/storage/__init__.py
"""Fact storage: protocol, shared aggregation kernel and backends."""

from factcounters.storage.memory import MemoryFactStore
from factcounters.storage.protocols import (
    FACT_INDEX,
    FACTS,
    RECENCY,
    AggregateSpec,
    BulkWriteResult,
    FactStore,
    JoinSpec,
    RecordFilter,
    SortSpec,
    UpsertOutcome,
)
from factcounters.storage.sql import SqlFactStore

__all__ = [
    "FACTS",
    "FACT_INDEX",
    "RECENCY",
    "AggregateSpec",
    "BulkWriteResult",
    "FactStore",
    "JoinSpec",
    "MemoryFactStore",
    "RecordFilter",
    "SortSpec",
    "SqlFactStore",
    "UpsertOutcome",
]
