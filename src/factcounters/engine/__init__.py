# src/factcounters/engine/__init__.py
"""Counter engine: compile rules, index facts, plan and run counter queries."""

from factcounters.engine.clock import DEFAULT_CLOCK, Clock, MockClock, SystemClock
from factcounters.engine.conditions import CompileReport, ConditionCompiler
from factcounters.engine.indexer import FactIndexer
from factcounters.engine.planner import CounterPlanner
from factcounters.engine.processor import (
    FactProcessor,
    build_processor,
    build_registry,
    build_store,
    compile_rules,
)
from factcounters.engine.registry import CounterRegistry, group_by_index_type
from factcounters.engine.substitution import ParameterSubstituter, SubstitutionContext

__all__ = [
    "DEFAULT_CLOCK",
    "Clock",
    "CompileReport",
    "ConditionCompiler",
    "CounterPlanner",
    "CounterRegistry",
    "FactIndexer",
    "FactProcessor",
    "MockClock",
    "ParameterSubstituter",
    "SubstitutionContext",
    "SystemClock",
    "build_processor",
    "build_registry",
    "build_store",
    "compile_rules",
    "group_by_index_type",
]
