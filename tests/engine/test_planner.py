# tests/engine/test_planner.py
"""Tests for counter planning and execution.

A fixed history of card payments is ingested, then a triggering payment is
processed. Expected values are worked out by hand from HISTORY.
"""

from __future__ import annotations

import time
from collections.abc import Iterator, Mapping, Sequence
from datetime import timedelta
from typing import Any

import pytest

from factcounters.contracts.errors import StorageError
from factcounters.contracts.facts import Fact
from factcounters.contracts.results import RetrievalStrategy
from factcounters.contracts.rules import AggregationKind, AggregationSpec, CounterGroup, CounterRule
from factcounters.core.config import (
    ConcurrencySettings,
    FactCountersSettings,
    IndexMappingSettings,
    LimitSettings,
    RuleSettings,
    StorageSettings,
)
from factcounters.engine.clock import MockClock, SystemClock
from factcounters.engine.planner import TIMEOUT_ERROR, CounterPlanner, union_window
from factcounters.engine.processor import PERSIST_ERROR_KEY, FactProcessor, build_processor
from factcounters.storage.memory import MemoryFactStore
from factcounters.storage.protocols import (
    AggregateSpec,
    BulkWriteResult,
    FactStore,
    JoinSpec,
    RecordFilter,
    SortSpec,
    UpsertOutcome,
)
from tests.helpers import NOW, make_fact

MAPPINGS = [
    IndexMappingSettings(field="PAN", index_type_name="card", index_type=1),
    IndexMappingSettings(field="merchant", index_type_name="merchant", index_type=2),
]

RULES = [
    RuleSettings(name="card_count_1h", index="card", from_offset="1h"),
    RuleSettings(name="card_sum_1d", index="card", attributes="Total Amount", from_offset="1d"),
    RuleSettings(name="card_high", index="card", computation="amount ≥ 100"),
    RuleSettings(name="card_same_merchant", index="card", computation="merchant = {merchant}"),
    RuleSettings(name="card_avg", index="card", attributes="Average Amount"),
    RuleSettings(name="merchant_cards", index="merchant", attributes="Distinct Values Number"),
]

HISTORY = [
    make_fact("h1", minutes_ago=20, PAN="A", merchant="M1", amount=50),
    make_fact("h2", minutes_ago=50, PAN="A", merchant="M2", amount=150),
    make_fact("h3", minutes_ago=180, PAN="A", merchant="M1", amount=200),
    make_fact("h4", minutes_ago=30, PAN="B", merchant="M1", amount=10),
    make_fact("h5", minutes_ago=2 * 24 * 60, PAN="A", merchant="M1", amount=70),
]

TRIGGER = make_fact("t", minutes_ago=0, PAN="A", merchant="M1", amount=99)

EXPECTED = {
    "card_count_1h": 2,
    "card_sum_1d": 400,
    "card_high": 2,
    "card_same_merchant": 3,
    "card_avg": 117.5,
    "merchant_cards": 2,
}


def _settings(
    *,
    strategy: RetrievalStrategy = RetrievalStrategy.TWO_PHASE,
    rules: Sequence[RuleSettings] = RULES,
    mappings: Sequence[IndexMappingSettings] = MAPPINGS,
    include_fact_data: bool = False,
    limits: LimitSettings | None = None,
    timeout_seconds: float | None = None,
) -> FactCountersSettings:
    return FactCountersSettings(
        strategy=strategy,
        index_mappings=list(mappings),
        rules=list(rules),
        storage=StorageSettings(backend="memory", include_fact_data_in_index=include_fact_data),
        limits=limits or LimitSettings(),
        concurrency=ConcurrencySettings(timeout_seconds=timeout_seconds),
    )


@pytest.fixture
def make_processor(clock: MockClock) -> Iterator[Any]:
    built: list[FactProcessor] = []

    def factory(store: FactStore, **kwargs: Any) -> FactProcessor:
        use_clock = kwargs.pop("use_clock", clock)
        processor = build_processor(_settings(**kwargs), store, clock=use_clock)
        built.append(processor)
        return processor

    yield factory
    for processor in built:
        processor.close()


def _seed(processor: FactProcessor, facts: Sequence[Fact] = HISTORY) -> None:
    for fact in facts:
        processor.ingest(fact)


class _ScriptedStore:
    """Delegating store that can be made slow or failing per operation."""

    def __init__(
        self,
        inner: FactStore,
        *,
        delay: float = 0.0,
        fail_counters: frozenset[str] = frozenset(),
        fail_lookup: bool = False,
        crash_counters: frozenset[str] = frozenset(),
        write_delay: float = 0.0,
    ) -> None:
        self.inner = inner
        self.delay = delay
        self.write_delay = write_delay
        self.crash_counters = crash_counters
        self.fail_counters = fail_counters
        self.fail_lookup = fail_lookup
        self.aggregate_calls: list[str] = []

    def upsert_one(self, collection: str, key: str, doc: Mapping[str, Any]) -> UpsertOutcome:
        time.sleep(self.write_delay)
        return self.inner.upsert_one(collection, key, doc)

    def upsert_bulk(
        self, collection: str, items: Sequence[tuple[str, Mapping[str, Any]]], *, ordered: bool = False
    ) -> BulkWriteResult:
        time.sleep(self.write_delay)
        return self.inner.upsert_bulk(collection, items, ordered=ordered)

    def find_sorted_limited(
        self,
        collection: str,
        record_filter: RecordFilter,
        sort: SortSpec,
        limit: int | None,
        projection: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]:
        time.sleep(self.delay)
        if self.fail_lookup:
            raise StorageError("find_sorted_limited", collection, "connection reset")
        return self.inner.find_sorted_limited(collection, record_filter, sort, limit, projection)

    def aggregate(
        self,
        collection: str,
        record_filter: RecordFilter,
        sort: SortSpec,
        limit: int | None,
        specs: Sequence[AggregateSpec],
        join: JoinSpec | None = None,
    ) -> dict[str, Any]:
        time.sleep(self.delay)
        self.aggregate_calls.append(collection)
        if any(spec.name in self.fail_counters for spec in specs):
            raise StorageError("aggregate", collection, "boom")
        if any(spec.name in self.crash_counters for spec in specs):
            raise RuntimeError("driver bug")
        return self.inner.aggregate(collection, record_filter, sort, limit, specs, join)

    def close(self) -> None:
        self.inner.close()


class TestCounterValues:
    @pytest.mark.parametrize("strategy", list(RetrievalStrategy))
    def test_expected_values(self, make_processor: Any, store: FactStore, strategy: RetrievalStrategy) -> None:
        processor = make_processor(store, strategy=strategy)
        _seed(processor)
        result = processor.process(TRIGGER)
        assert result.counters == pytest.approx(EXPECTED)
        assert result.errors == {}
        assert not result.partial

    @pytest.mark.parametrize("include_fact_data", [False, True])
    @pytest.mark.parametrize("max_per_group", [0, 1, 4])
    def test_strategies_agree(self, make_processor: Any, include_fact_data: bool, max_per_group: int) -> None:
        results = []
        for strategy in RetrievalStrategy:
            processor = make_processor(
                MemoryFactStore(),
                strategy=strategy,
                include_fact_data=include_fact_data,
                limits=LimitSettings(max_counters_per_request=max_per_group, default_depth_limit=3),
            )
            _seed(processor)
            results.append(processor.process(TRIGGER).counters)
        assert results[0] == results[1]

    @pytest.mark.parametrize("strategy", list(RetrievalStrategy))
    def test_threshold_within_last_hour(self, make_processor: Any, store: FactStore, strategy: RetrievalStrategy) -> None:
        rules = [RuleSettings(name="count", index="card", computation="amount > 100000", from_offset=3_600_000)]
        processor = make_processor(store, strategy=strategy, rules=rules)
        _seed(
            processor,
            [
                make_fact("f1", minutes_ago=10, PAN="A", amount=150000),
                make_fact("f2", minutes_ago=20, PAN="A", amount=50000),
            ],
        )
        result = processor.process(make_fact("f3", minutes_ago=0, PAN="A", amount=1))
        assert result.counters == {"count": 1}
        assert result.errors == {}

    def test_out_of_range_epoch_is_incomparable(self, make_processor: Any, store: FactStore) -> None:
        rules = [RuleSettings(name="before_now", index="card", computation="txnDate < NOW")]
        processor = make_processor(store, rules=rules)
        _seed(
            processor,
            [
                make_fact("h1", PAN="A", txnDate=10**20),
                make_fact("h2", PAN="A", txnDate=NOW - timedelta(hours=1)),
            ],
        )
        result = processor.process(TRIGGER)
        assert result.counters == {"before_now": 1}
        assert result.errors == {}

    def test_first_fact_sees_nothing_second_sees_first(self, make_processor: Any, store: FactStore) -> None:
        processor = make_processor(store)
        first = processor.process(make_fact("f1", minutes_ago=5, PAN="A", merchant="M1", amount=10))
        second = processor.process(make_fact("f2", minutes_ago=1, PAN="A", merchant="M1", amount=20))
        assert first.counters["card_count_1h"] == 0
        assert first.counters["card_avg"] is None
        assert second.counters["card_count_1h"] == 1
        assert second.counters["card_sum_1d"] == 10

    def test_reprocessing_is_idempotent(self, make_processor: Any, store: FactStore) -> None:
        processor = make_processor(store)
        _seed(processor)
        first = processor.process(TRIGGER)
        again = processor.process(TRIGGER)
        assert again.counters == first.counters
        assert again.persist is not None
        assert again.persist.fact_outcome == "unchanged"

    def test_without_persisting(self, make_processor: Any, memory_store: MemoryFactStore) -> None:
        processor = make_processor(memory_store)
        _seed(processor)
        result = processor.process(TRIGGER, persist=False)
        assert result.counters == pytest.approx(EXPECTED)
        assert result.persist is None
        assert memory_store.get("facts", "t") is None

    def test_unkeyed_index_type_keeps_empty_values(self, make_processor: Any, memory_store: MemoryFactStore) -> None:
        processor = make_processor(memory_store)
        _seed(processor)
        result = processor.process(make_fact("t", minutes_ago=0, PAN="A", amount=99))
        assert result.counters["merchant_cards"] == 0
        assert result.counters["card_count_1h"] == 2
        assert result.metrics.unkeyed_index_types == ["merchant"]

    def test_rules_filtered_by_fact_type(self, make_processor: Any, memory_store: MemoryFactStore) -> None:
        rules = [*RULES[:1], RuleSettings(name="refunds", index="card", fact_types=[2])]
        processor = make_processor(memory_store, rules=rules)
        result = processor.process(TRIGGER)
        assert set(result.counters) == {"card_count_1h"}

    def test_processing_cap(self, make_processor: Any, memory_store: MemoryFactStore) -> None:
        processor = make_processor(memory_store, limits=LimitSettings(max_counters_processing=2))
        result = processor.process(TRIGGER)
        assert set(result.counters) == {"card_count_1h", "card_sum_1d"}
        assert result.metrics.counters_skipped == 4


class TestDepthLimit:
    def test_max_evaluated_records_limits_lookup(self, make_processor: Any, memory_store: MemoryFactStore) -> None:
        rules = [RuleSettings(name="recent", index="card", max_evaluated_records=2)]
        processor = make_processor(memory_store, rules=rules)
        _seed(processor)
        result = processor.process(TRIGGER)
        assert result.counters == {"recent": 2}
        assert result.metrics.lookups["card"].depth_limit == 2

    def test_mapping_depth_limit(self, make_processor: Any, memory_store: MemoryFactStore) -> None:
        mappings = [IndexMappingSettings(field="PAN", index_type_name="card", index_type=1, depth_limit=3)]
        processor = make_processor(memory_store, rules=[RuleSettings(name="n", index="card")], mappings=mappings)
        _seed(processor)
        result = processor.process(TRIGGER)
        assert result.counters == {"n": 3}
        assert result.metrics.lookups["card"].candidate_count == 3

    def test_hard_cap(self, make_processor: Any, memory_store: MemoryFactStore) -> None:
        rules = [RuleSettings(name="recent", index="card", max_evaluated_records=50)]
        processor = make_processor(memory_store, rules=rules, limits=LimitSettings(max_depth_limit=1))
        _seed(processor)
        assert processor.process(TRIGGER).counters == {"recent": 1}


class TestFailures:
    def test_group_error_is_isolated(self, make_processor: Any) -> None:
        store = _ScriptedStore(MemoryFactStore(), fail_counters=frozenset({"merchant_cards"}))
        processor = make_processor(store)
        _seed(processor)
        result = processor.process(TRIGGER)
        assert result.partial
        assert set(result.errors) == {"merchant#1"}
        assert "boom" in result.errors["merchant#1"]
        assert result.counters["merchant_cards"] is None
        assert result.counters["card_count_1h"] == 2
        assert result.metrics.groups["merchant#1"].error is not None

    def test_lookup_failure_fails_its_groups(self, make_processor: Any) -> None:
        store = _ScriptedStore(MemoryFactStore(), fail_lookup=True)
        processor = make_processor(store, limits=LimitSettings(max_counters_per_request=3))
        _seed(processor)
        result = processor.process(TRIGGER)
        assert set(result.errors) == {"card#1", "card#2", "merchant#1"}
        assert all(value is None for value in result.counters.values())
        assert store.aggregate_calls == []

    def test_deadline_abandons_slow_groups(self, make_processor: Any) -> None:
        store = _ScriptedStore(MemoryFactStore())
        processor = make_processor(store, timeout_seconds=0.05, use_clock=SystemClock())
        _seed(processor)
        store.delay = 0.5
        result = processor.process(TRIGGER)
        assert result.metrics.timed_out
        assert result.errors == {"card#1": TIMEOUT_ERROR, "merchant#1": TIMEOUT_ERROR}
        assert all(value is None for value in result.counters.values())

    def test_unexpected_error_fails_only_its_group(self, make_processor: Any) -> None:
        store = _ScriptedStore(MemoryFactStore(), crash_counters=frozenset({"merchant_cards"}))
        processor = make_processor(store)
        _seed(processor)
        result = processor.process(TRIGGER)
        assert result.errors == {"merchant#1": "RuntimeError: driver bug"}
        assert result.counters["merchant_cards"] is None
        assert result.counters["card_count_1h"] == 2

    def test_deadline_abandons_slow_persist(self, make_processor: Any) -> None:
        store = _ScriptedStore(MemoryFactStore())
        processor = make_processor(store, timeout_seconds=0.1, use_clock=SystemClock())
        _seed(processor)
        store.write_delay = 1.0
        start = time.perf_counter()
        result = processor.process(TRIGGER)
        assert time.perf_counter() - start < 0.9
        assert result.errors[PERSIST_ERROR_KEY] == TIMEOUT_ERROR
        assert result.persist is None

    def test_persist_failure_still_counts(self, make_processor: Any, memory_store: MemoryFactStore) -> None:
        class ReadOnlyFacts(_ScriptedStore):
            def upsert_one(self, collection: str, key: str, doc: Mapping[str, Any]) -> UpsertOutcome:
                raise StorageError("upsert_one", collection, "read-only replica")

        processor = make_processor(memory_store)
        _seed(processor)
        failing = make_processor(ReadOnlyFacts(memory_store))
        result = failing.process(TRIGGER)
        assert "read-only replica" in result.errors["persist"]
        assert result.persist is None
        assert result.counters == pytest.approx(EXPECTED)


class TestHelpers:
    def test_union_window(self) -> None:
        def group(number: int, from_ms: int | None, to_ms: int | None) -> CounterGroup:
            rule = CounterRule(
                f"r{number}", "card", AggregationSpec(AggregationKind.COUNT), from_offset_ms=from_ms, to_offset_ms=to_ms
            )
            return CounterGroup.build("card", number, (rule,))

        assert union_window([group(1, 100, 10), group(2, 300, 50)]) == (300, 10)
        assert union_window([group(1, 100, 10), group(2, None, 50)]) == (None, 10)
        assert union_window([group(1, 100, None), group(2, 300, 50)]) == (300, None)

    def test_strategy_property(self, make_processor: Any, memory_store: MemoryFactStore) -> None:
        processor = make_processor(memory_store, strategy=RetrievalStrategy.SINGLE_PHASE)
        planner: CounterPlanner = processor.planner
        assert planner.strategy is RetrievalStrategy.SINGLE_PHASE

    def test_window_bound_to_clock(self, make_processor: Any, clock: MockClock, memory_store: MemoryFactStore) -> None:
        processor = make_processor(memory_store)
        _seed(processor)
        clock.advance(15 * 60)
        # an hour back from NOW + 15min reaches h1 but not h2
        result = processor.process(TRIGGER, persist=False)
        assert result.counters["card_count_1h"] == 1


class TestEmbeddedData:
    def test_single_phase_without_join(self, make_processor: Any, store: FactStore) -> None:
        processor = make_processor(store, strategy=RetrievalStrategy.SINGLE_PHASE, include_fact_data=True)
        _seed(processor)
        assert processor.process(TRIGGER).counters == pytest.approx(EXPECTED)
