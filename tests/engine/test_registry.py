# tests/engine/test_registry.py
"""Tests for the counter registry and group batching."""

from __future__ import annotations

import pytest

from factcounters.contracts.errors import ConfigurationError
from factcounters.contracts.rules import AggregationKind, AggregationSpec, CounterRule
from factcounters.core.config import IndexMappingSettings
from factcounters.engine.registry import CounterRegistry, group_by_index_type
from tests.helpers import make_fact


def _rule(name: str, index: str = "card", **kwargs: object) -> CounterRule:
    return CounterRule(name, index, AggregationSpec(AggregationKind.COUNT), **kwargs)  # type: ignore[arg-type]


class TestGroupByIndexType:
    def test_batches_by_limit(self) -> None:
        rules = [_rule("a"), _rule("m1", "merchant"), _rule("b"), _rule("c")]
        groups = group_by_index_type(rules, 2)
        assert [(g.name, g.counter_names) for g in groups] == [
            ("card#1", ("a", "b")),
            ("card#2", ("c",)),
            ("merchant#1", ("m1",)),
        ]

    @pytest.mark.parametrize("limit", [0, None])
    def test_unbounded(self, limit: int | None) -> None:
        groups = group_by_index_type([_rule(str(n)) for n in range(30)], limit)
        assert len(groups) == 1
        assert len(groups[0].rules) == 30

    def test_no_rules(self) -> None:
        assert group_by_index_type([], 5) == []


class TestCounterRegistry:
    def test_validation_reports_every_problem(self, mappings: list[IndexMappingSettings]) -> None:
        rules = [_rule("a"), _rule("a"), _rule("b", "terminal")]
        with pytest.raises(ConfigurationError) as excinfo:
            CounterRegistry(rules, mappings)
        assert len(excinfo.value.problems) == 2
        assert "defined 2 times" in excinfo.value.problems[0]
        assert "unmapped index type 'terminal'" in excinfo.value.problems[1]

    def test_rules_for_fact_type(self, mappings: list[IndexMappingSettings]) -> None:
        registry = CounterRegistry([_rule("a", fact_types=frozenset({2})), _rule("b")], mappings)
        applicable, skipped = registry.rules_for(make_fact("f1", fact_type=1))
        assert [r.name for r in applicable] == ["b"]
        assert skipped == []

    def test_processing_cap_skips_the_rest(self, mappings: list[IndexMappingSettings]) -> None:
        registry = CounterRegistry([_rule("a"), _rule("b"), _rule("c")], mappings, max_counters_processing=2)
        applicable, skipped = registry.rules_for(make_fact("f1"))
        assert [r.name for r in applicable] == ["a", "b"]
        assert [r.name for r in skipped] == ["c"]

    def test_groups_use_request_limit(self, mappings: list[IndexMappingSettings]) -> None:
        registry = CounterRegistry([_rule("a"), _rule("b")], mappings, max_counters_per_request=1)
        assert [g.name for g in registry.groups_for(registry.rules)] == ["card#1", "card#2"]

    def test_mappings_for(self, mappings: list[IndexMappingSettings]) -> None:
        registry = CounterRegistry([], mappings)
        assert [m.field for m in registry.mappings_for("merchant")] == ["merchant"]
        assert registry.mappings_for("terminal") == ()
