# src/factcounters/engine/planner.py
"""Counter execution planner.

Computes every applicable counter for one triggering fact:

1. Select applicable rules (global cap), substitute triggering/NOW
   references, batch into counter groups.
2. Retrieve candidates and aggregate, using one of two strategies:

   - two-phase: one sorted, depth-limited lookup of index entries per
     index type, then one aggregation over facts per counter group,
     filtered by the candidate id set
   - single-phase: one aggregation per counter group directly over index
     entries (joined to facts unless entries embed fact data)

3. Merge group results by counter name into one ExecutionResult.

Both strategies pre-filter, order and limit identically and share the
storage aggregation kernel, so their counter values are identical.

Queries run on a thread pool. A finished lookup immediately dispatches its
group aggregations. When the deadline expires, groups still in flight are
abandoned (not cancelled) and reported as ``timeout``.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any

from factcounters.contracts.errors import StorageError
from factcounters.contracts.facts import Fact, from_epoch_ms
from factcounters.contracts.results import (
    CounterValue,
    ExecutionResult,
    GroupMetrics,
    LookupMetrics,
    RequestMetrics,
    RetrievalStrategy,
)
from factcounters.contracts.rules import CounterGroup, CounterRule
from factcounters.core.config import LimitSettings
from factcounters.core.logging import get_logger, submit_in_context
from factcounters.engine.clock import DEFAULT_CLOCK, Clock
from factcounters.engine.indexer import FactIndexer
from factcounters.engine.registry import CounterRegistry
from factcounters.engine.substitution import ParameterSubstituter, SubstitutionContext
from factcounters.storage.protocols import (
    FACT_INDEX,
    FACTS,
    RECENCY,
    AggregateSpec,
    FactStore,
    JoinSpec,
    RecordFilter,
)

logger = get_logger(__name__)

TIMEOUT_ERROR = "timeout"


def aggregate_spec(rule: CounterRule, now_ms: int) -> AggregateSpec:
    """Aggregation request for one resolved rule, with absolute window bounds."""
    return AggregateSpec(
        name=rule.name,
        kind=rule.aggregation.kind,
        field=rule.aggregation.field,
        evaluation=rule.evaluation,
        computation=rule.computation,
        occurred_from_ms=None if rule.from_offset_ms is None else now_ms - rule.from_offset_ms,
        occurred_to_ms=None if rule.to_offset_ms is None else now_ms - rule.to_offset_ms,
        max_evaluated_records=rule.max_evaluated_records,
        max_matching_records=rule.max_matching_records,
    )


def _describe(exc: BaseException) -> str:
    """Error text for an unexpected failure inside a query thread."""
    return f"{type(exc).__name__}: {exc}"


def union_window(groups: Sequence[CounterGroup]) -> tuple[int | None, int | None]:
    """Offsets covering every group of one index type (from, to)."""
    froms = [g.from_offset_ms for g in groups]
    tos = [g.to_offset_ms for g in groups]
    from_offset = None if any(f is None for f in froms) else max(f for f in froms if f is not None)
    to_offset = None if any(t is None for t in tos) else min(t for t in tos if t is not None)
    return from_offset, to_offset


@dataclass
class _IndexPlan:
    """Everything needed to query one keyed index type."""

    index_type_name: str
    groups: list[CounterGroup]
    record_filter: RecordFilter
    depth_limit: int
    specs: dict[str, list[AggregateSpec]] = field(default_factory=dict)


class CounterPlanner:
    """Plans and runs the counter queries for triggering facts.

    Args:
        registry: Validated rules and mappings
        indexer: Derives the triggering fact's index keys
        store: Queried FactStore
        strategy: Two-phase or single-phase retrieval
        limits: Depth limits (max_depth_limit, default_depth_limit)
        include_fact_data: Index entries embed fact data, so single-phase
            aggregation needs no join
        pool_size: Query threads
        clock: Source of "now" and of the deadline clock
    """

    def __init__(
        self,
        registry: CounterRegistry,
        indexer: FactIndexer,
        store: FactStore,
        *,
        strategy: RetrievalStrategy = RetrievalStrategy.TWO_PHASE,
        limits: LimitSettings | None = None,
        include_fact_data: bool = False,
        pool_size: int = 8,
        clock: Clock | None = None,
    ) -> None:
        self._registry = registry
        self._indexer = indexer
        self._store = store
        self._strategy = strategy
        self._limits = limits or LimitSettings()
        self._include_fact_data = include_fact_data
        self._clock = clock or DEFAULT_CLOCK
        self._substituter = ParameterSubstituter()
        self._pool = ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix="counter-query")

    @property
    def strategy(self) -> RetrievalStrategy:
        return self._strategy

    def compute(self, fact: Fact, *, deadline: float | None = None) -> ExecutionResult:
        """Compute every applicable counter for ``fact``.

        Never raises for query failures: failed or timed-out groups are
        listed in ``errors`` and their counters are None.

        Args:
            fact: Triggering fact (excluded from its own candidates)
            deadline: Monotonic time after which in-flight groups are abandoned
        """
        start = self._clock.monotonic()
        now_ms = self._clock.now_ms()

        applicable, skipped = self._registry.rules_for(fact)
        context = SubstitutionContext.for_fact(fact, from_epoch_ms(now_ms))
        rules = [self._substituter.resolve_rule(rule, context) for rule in applicable]
        groups = self._registry.groups_for(rules)
        keys = self._indexer.index_keys(fact)

        metrics = RequestMetrics(
            strategy=self._strategy,
            counters_requested=len(rules),
            counters_skipped=len(skipped),
            group_count=len(groups),
        )
        counters: dict[str, CounterValue] = {rule.name: rule.aggregation.kind.empty_value() for rule in rules}
        errors: dict[str, str] = {}

        by_index: dict[str, list[CounterGroup]] = {}
        for group in groups:
            by_index.setdefault(group.index_type_name, []).append(group)
            metrics.groups[group.name] = GroupMetrics(group_name=group.name, counter_count=len(group.rules))
        metrics.index_type_count = len(by_index)

        plans: list[_IndexPlan] = []
        for index_type_name, index_groups in by_index.items():
            index_keys = keys.get(index_type_name)
            if not index_keys:
                # No key on the triggering fact: nothing can share it
                metrics.unkeyed_index_types.append(index_type_name)
                continue
            plans.append(self._plan(fact, index_type_name, index_groups, index_keys, now_ms))
        metrics.prepare_ms = (self._clock.monotonic() - start) * 1000

        self._run(plans, counters, errors, metrics, deadline)

        metrics.total_ms = (self._clock.monotonic() - start) * 1000
        logger.debug(
            "counters_computed",
            fact_id=fact.id,
            strategy=self._strategy.value,
            counters=len(counters),
            groups=len(groups),
            errors=len(errors),
            unresolved_references=len(context.warnings),
            timed_out=metrics.timed_out,
        )
        return ExecutionResult(fact_id=fact.id, counters=counters, errors=errors, metrics=metrics)

    def _plan(
        self,
        fact: Fact,
        index_type_name: str,
        groups: list[CounterGroup],
        index_keys: frozenset[str],
        now_ms: int,
    ) -> _IndexPlan:
        from_offset, to_offset = union_window(groups)
        record_filter = RecordFilter(
            index_keys=index_keys,
            occurred_from_ms=None if from_offset is None else now_ms - from_offset,
            occurred_to_ms=None if to_offset is None else now_ms - to_offset,
            exclude_ids=frozenset({fact.id}),
        )
        plan = _IndexPlan(
            index_type_name=index_type_name,
            groups=groups,
            record_filter=record_filter,
            depth_limit=self._depth_limit(index_type_name, groups),
        )
        for group in groups:
            plan.specs[group.name] = [aggregate_spec(rule, now_ms) for rule in group.rules]
        return plan

    def _depth_limit(self, index_type_name: str, groups: Sequence[CounterGroup]) -> int:
        """Lookup depth: the groups' evaluated-records cap, else the mapping's, else the default."""
        caps = [g.max_evaluated_records for g in groups if g.max_evaluated_records]
        if caps:
            depth = max(caps)
        else:
            mapped = [m.depth_limit for m in self._registry.mappings_for(index_type_name) if m.depth_limit]
            depth = max(mapped) if mapped else self._limits.default_depth_limit
        return min(depth, self._limits.max_depth_limit)

    def _run(
        self,
        plans: list[_IndexPlan],
        counters: dict[str, CounterValue],
        errors: dict[str, str],
        metrics: RequestMetrics,
        deadline: float | None,
    ) -> None:
        pending: dict[Future[Any], tuple[_IndexPlan, CounterGroup | None]] = {}

        if self._strategy is RetrievalStrategy.TWO_PHASE:
            for plan in plans:
                metrics.lookups[plan.index_type_name] = LookupMetrics(
                    index_type_name=plan.index_type_name, depth_limit=plan.depth_limit
                )
                pending[submit_in_context(self._pool, self._lookup, plan)] = (plan, None)
        else:
            join = None if self._include_fact_data else JoinSpec()
            for plan in plans:
                for group in plan.groups:
                    future = submit_in_context(
                        self._pool,
                        self._timed,
                        self._store.aggregate,
                        FACT_INDEX,
                        plan.record_filter,
                        RECENCY,
                        plan.depth_limit,
                        plan.specs[group.name],
                        join,
                    )
                    pending[future] = (plan, group)

        while pending:
            timeout = None if deadline is None else max(0.0, deadline - self._clock.monotonic())
            done, _ = wait(pending, timeout=timeout, return_when=FIRST_COMPLETED)
            if not done:
                break
            for future in done:
                plan, group = pending.pop(future)
                if group is None:
                    self._lookup_done(future, plan, counters, errors, metrics, pending)
                else:
                    self._group_done(future, group, counters, errors, metrics)

        if pending:
            metrics.timed_out = True
            abandoned: list[str] = []
            for plan, group in pending.values():
                for timed_out in plan.groups if group is None else [group]:
                    self._fail(timed_out, TIMEOUT_ERROR, counters, errors, metrics)
                    abandoned.append(timed_out.name)
            logger.warning("counter_groups_timed_out", groups=sorted(abandoned))

    def _lookup(self, plan: _IndexPlan) -> tuple[list[dict[str, Any]], float]:
        return self._timed(
            self._store.find_sorted_limited,
            FACT_INDEX,
            plan.record_filter,
            RECENCY,
            plan.depth_limit,
            ["fact_id"],
        )

    @staticmethod
    def _timed(call: Any, *args: Any) -> tuple[Any, float]:
        start = time.perf_counter()
        value = call(*args)
        return value, (time.perf_counter() - start) * 1000

    def _lookup_done(
        self,
        future: Future[Any],
        plan: _IndexPlan,
        counters: dict[str, CounterValue],
        errors: dict[str, str],
        metrics: RequestMetrics,
        pending: dict[Future[Any], tuple[_IndexPlan, CounterGroup | None]],
    ) -> None:
        lookup = metrics.lookups[plan.index_type_name]
        message: str | None = None
        try:
            entries, duration_ms = future.result()
        except StorageError as exc:
            message = str(exc)
            logger.warning("candidate_lookup_failed", index_type=plan.index_type_name, error=message)
        except Exception as exc:
            message = _describe(exc)
            logger.error("candidate_lookup_crashed", index_type=plan.index_type_name, error=message, exc_info=exc)
        if message is not None:
            lookup.error = message
            for group in plan.groups:
                self._fail(group, message, counters, errors, metrics)
            return

        fact_ids = frozenset(entry["fact_id"] for entry in entries)
        lookup.candidate_count = len(fact_ids)
        lookup.duration_ms = duration_ms
        if not fact_ids:
            # Counters keep their empty values
            return
        record_filter = RecordFilter(fact_ids=fact_ids)
        for group in plan.groups:
            group_metrics = metrics.groups[group.name]
            group_metrics.candidate_count = len(fact_ids)
            group_metrics.query_size = len(fact_ids)
            future = submit_in_context(
                self._pool,
                self._timed,
                self._store.aggregate,
                FACTS,
                record_filter,
                RECENCY,
                None,
                plan.specs[group.name],
            )
            pending[future] = (plan, group)

    def _group_done(
        self,
        future: Future[Any],
        group: CounterGroup,
        counters: dict[str, CounterValue],
        errors: dict[str, str],
        metrics: RequestMetrics,
    ) -> None:
        try:
            values, duration_ms = future.result()
        except StorageError as exc:
            logger.warning("counter_group_failed", group=group.name, error=str(exc))
            self._fail(group, str(exc), counters, errors, metrics)
            return
        except Exception as exc:
            message = _describe(exc)
            logger.error("counter_group_crashed", group=group.name, error=message, exc_info=exc)
            self._fail(group, message, counters, errors, metrics)
            return
        metrics.groups[group.name].duration_ms = duration_ms
        for name in group.counter_names:
            counters[name] = values[name]

    @staticmethod
    def _fail(
        group: CounterGroup,
        message: str,
        counters: dict[str, CounterValue],
        errors: dict[str, str],
        metrics: RequestMetrics,
    ) -> None:
        errors[group.name] = message
        metrics.groups[group.name].error = message
        for name in group.counter_names:
            counters[name] = None

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
