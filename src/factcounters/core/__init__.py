# src/factcounters/core/__init__.py
"""Core infrastructure: configuration, logging, index keys, field kinds."""

from factcounters.core.config import (
    CompilerSettings,
    ConcurrencySettings,
    DatabaseSettings,
    FactCountersSettings,
    IndexMappingSettings,
    LimitSettings,
    LoggingSettings,
    RuleSettings,
    StorageSettings,
    TelemetrySettings,
    load_settings,
    read_rule_file,
    read_rule_sheet,
)
from factcounters.core.field_types import FieldTypeTable
from factcounters.core.hashing import KeyMode, index_key
from factcounters.core.logging import configure_logging, get_logger

__all__ = [
    "CompilerSettings",
    "ConcurrencySettings",
    "DatabaseSettings",
    "FactCountersSettings",
    "FieldTypeTable",
    "IndexMappingSettings",
    "KeyMode",
    "LimitSettings",
    "LoggingSettings",
    "RuleSettings",
    "StorageSettings",
    "TelemetrySettings",
    "configure_logging",
    "get_logger",
    "index_key",
    "load_settings",
    "read_rule_file",
    "read_rule_sheet",
]
