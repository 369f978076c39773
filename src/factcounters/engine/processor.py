# src/factcounters/engine/processor.py
"""FactProcessor: index, persist and count for one triggering fact.

The processor is the per-worker entry point. It owns a validated registry,
an indexer and a planner bound to one FactStore. ``process()`` runs the
whole indexing plus computation call under a single deadline and always
returns an ExecutionResult; storage failures fold into its ``errors``.

Workers are shared-nothing: build one processor per worker with
``build_processor(settings)``.
"""

from __future__ import annotations

from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Self

from factcounters.contracts.errors import StorageError
from factcounters.contracts.facts import Fact
from factcounters.contracts.results import ExecutionResult, PersistResult
from factcounters.core.config import FactCountersSettings
from factcounters.core.field_types import FieldTypeTable
from factcounters.core.logging import bound_fact, get_logger, submit_in_context
from factcounters.engine.clock import DEFAULT_CLOCK, Clock
from factcounters.engine.conditions import CompileReport, ConditionCompiler
from factcounters.engine.indexer import FactIndexer
from factcounters.engine.planner import TIMEOUT_ERROR, CounterPlanner
from factcounters.engine.registry import CounterRegistry
from factcounters.storage.memory import MemoryFactStore
from factcounters.storage.protocols import FactStore
from factcounters.storage.sql import SqlFactStore
from factcounters.telemetry.metrics import MetricsCollector

logger = get_logger(__name__)

PERSIST_ERROR_KEY = "persist"


class FactProcessor:
    """Persists facts and computes their counters.

    Args:
        indexer: Derives and writes index entries
        planner: Computes counters
        store: Backing store (closed with the processor when owned)
        timeout_seconds: Deadline for one process() call (None = unbounded)
        clock: Deadline clock
        collector: Receives every ExecutionResult
        owns_store: Close the store on close()
        field_types: Kinds applied to data of facts built from payloads
    """

    def __init__(
        self,
        indexer: FactIndexer,
        planner: CounterPlanner,
        store: FactStore,
        *,
        timeout_seconds: float | None = None,
        clock: Clock | None = None,
        collector: MetricsCollector | None = None,
        owns_store: bool = False,
        field_types: FieldTypeTable | None = None,
    ) -> None:
        self.indexer = indexer
        self.planner = planner
        self.store = store
        self.collector = collector or MetricsCollector()
        self._timeout_seconds = timeout_seconds
        self._clock = clock or DEFAULT_CLOCK
        self._owns_store = owns_store
        self.field_types = field_types or FieldTypeTable()
        # Writes run here so the deadline can abandon a hung upsert
        self._pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="fact-persist")

    def fact_from_payload(self, payload: Mapping[str, Any]) -> Fact:
        """Build a fact whose data values carry their configured field kinds."""
        return Fact.from_payload(payload, self.field_types.type_data)

    def ingest(self, fact: Fact) -> PersistResult:
        """Persist the fact and its index entries without computing counters.

        Raises:
            StorageError: If the fact document cannot be written
        """
        return self.indexer.persist(fact, self.indexer.index_fact(fact))

    def process(self, fact: Fact, *, persist: bool = True) -> ExecutionResult:
        """Persist ``fact`` (unless ``persist`` is False) and compute its counters.

        The deadline covers the write as well as the counter queries. A
        write still running at the deadline is abandoned and reported as
        ``persist: timeout``.

        The triggering fact is never one of its own candidates, so the
        counters are the same whether or not it was persisted first.
        """
        with bound_fact(fact.id):
            deadline = None
            if self._timeout_seconds is not None:
                deadline = self._clock.monotonic() + self._timeout_seconds

            persist_result: PersistResult | None = None
            persist_error: str | None = None
            if persist:
                persist_result, persist_error = self._persist(fact, deadline)

            result = self.planner.compute(fact, deadline=deadline)
            result.persist = persist_result
            if persist_error is not None:
                result.errors[PERSIST_ERROR_KEY] = persist_error
            self.collector.record(result)
            return result

    def _persist(self, fact: Fact, deadline: float | None) -> tuple[PersistResult | None, str | None]:
        future = submit_in_context(self._pool, self.ingest, fact)
        timeout = None if deadline is None else max(0.0, deadline - self._clock.monotonic())
        try:
            persist_result = future.result(timeout=timeout)
        except TimeoutError:
            logger.warning("fact_persist_timed_out", fact_id=fact.id)
            return None, TIMEOUT_ERROR
        except StorageError as exc:
            logger.error("fact_persist_failed", fact_id=fact.id, error=str(exc))
            return None, str(exc)
        except Exception as exc:
            message = f"{type(exc).__name__}: {exc}"
            logger.error("fact_persist_crashed", fact_id=fact.id, error=message, exc_info=exc)
            return None, message
        if persist_result.errors:
            logger.warning("index_entries_failed", fact_id=fact.id, failed=len(persist_result.errors))
            return persist_result, "; ".join(persist_result.errors)
        return persist_result, None

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
        self.planner.close()
        self.indexer.close()
        if self._owns_store:
            self.store.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def build_store(settings: FactCountersSettings) -> FactStore:
    """Store selected by ``storage.backend``."""
    if settings.storage.backend == "memory":
        return MemoryFactStore()
    return SqlFactStore(
        settings.database.url,
        pool_size=settings.database.pool_size,
        echo=settings.database.echo,
    )


def compile_rules(settings: FactCountersSettings) -> CompileReport:
    """Compile the configured rule rows. Diagnostics are in the report."""
    compiler = ConditionCompiler.from_settings(settings.compiler)
    return compiler.compile_rows(settings.rule_rows())


def build_registry(settings: FactCountersSettings, report: CompileReport | None = None) -> CounterRegistry:
    """Validated registry from settings.

    Raises:
        ConfigurationError: Duplicate counter names or unmapped index types
    """
    report = report if report is not None else compile_rules(settings)
    return CounterRegistry(
        report.rules,
        settings.index_mappings,
        max_counters_per_request=settings.limits.max_counters_per_request,
        max_counters_processing=settings.limits.max_counters_processing,
    )


def build_processor(
    settings: FactCountersSettings,
    store: FactStore | None = None,
    *,
    clock: Clock | None = None,
) -> FactProcessor:
    """Wire a FactProcessor for one worker.

    Args:
        settings: Loaded settings
        store: Existing store to use (not closed with the processor);
            built from settings when None
        clock: Clock override (tests)

    Raises:
        ConfigurationError: If the compiled rules fail registry validation
    """
    registry = build_registry(settings)
    owns_store = store is None
    backing = store if store is not None else build_store(settings)
    indexer = FactIndexer(
        settings.index_mappings,
        backing,
        include_fact_data=settings.storage.include_fact_data_in_index,
        write_mode=settings.storage.write_mode,
        write_concurrency=settings.storage.write_concurrency,
    )
    planner = CounterPlanner(
        registry,
        indexer,
        backing,
        strategy=settings.strategy,
        limits=settings.limits,
        include_fact_data=settings.storage.include_fact_data_in_index,
        pool_size=settings.concurrency.pool_size,
        clock=clock,
    )
    collector = MetricsCollector(enabled=settings.telemetry.enabled, meter_name=settings.telemetry.meter_name)
    logger.info(
        "processor_built",
        strategy=settings.strategy.value,
        backend=settings.storage.backend,
        rules=len(registry.rules),
    )
    return FactProcessor(
        indexer,
        planner,
        backing,
        timeout_seconds=settings.concurrency.timeout_seconds,
        clock=clock,
        collector=collector,
        owns_store=owns_store,
        field_types=FieldTypeTable(settings.compiler.field_types),
    )
