# src/factcounters/engine/registry.py
"""Counter registry and batching.

The registry is built once per worker from compiled rules and the index
mappings, validated, and then only read. Reloading configuration builds a
new registry; nothing here is mutated after construction.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Sequence

from factcounters.contracts.errors import ConfigurationError
from factcounters.contracts.facts import Fact
from factcounters.contracts.rules import CounterGroup, CounterRule
from factcounters.core.config import IndexMappingSettings
from factcounters.core.logging import get_logger

logger = get_logger(__name__)


def group_by_index_type(rules: Iterable[CounterRule], max_per_group: int | None) -> list[CounterGroup]:
    """Stable-assign rules to ``{index_type_name}#{n}`` groups.

    Rules keep encounter order. Group ``n + 1`` for an index type opens once
    group ``n`` holds ``max_per_group`` rules. A limit of 0 or None means
    one group per index type.

    Returns:
        Groups ordered by first appearance of their index type, then n
    """
    limit = max_per_group or None
    buckets: dict[str, list[list[CounterRule]]] = {}
    for rule in rules:
        chunks = buckets.setdefault(rule.index_type_name, [[]])
        if limit is not None and len(chunks[-1]) >= limit:
            chunks.append([])
        chunks[-1].append(rule)
    return [
        CounterGroup.build(index_type_name, number, tuple(chunk))
        for index_type_name, chunks in buckets.items()
        for number, chunk in enumerate(chunks, start=1)
    ]


class CounterRegistry:
    """Validated, read-only rule set for one worker.

    Args:
        rules: Compiled rules in sheet order
        mappings: Field to index type mappings
        max_counters_per_request: Rules per group (0 = unbounded)
        max_counters_processing: Applicable rules per fact (0 = unbounded)

    Raises:
        ConfigurationError: On duplicate counter names or rules referencing
            an unmapped index type (all problems reported together)
    """

    def __init__(
        self,
        rules: Sequence[CounterRule],
        mappings: Sequence[IndexMappingSettings],
        *,
        max_counters_per_request: int = 0,
        max_counters_processing: int = 0,
    ) -> None:
        self._rules = tuple(rules)
        self._mappings = tuple(mappings)
        self.max_counters_per_request = max_counters_per_request
        self.max_counters_processing = max_counters_processing
        self._validate()
        self._mappings_by_index: dict[str, tuple[IndexMappingSettings, ...]] = {}
        for mapping in self._mappings:
            current = self._mappings_by_index.get(mapping.index_type_name, ())
            self._mappings_by_index[mapping.index_type_name] = (*current, mapping)
        logger.info(
            "registry_loaded",
            rules=len(self._rules),
            index_types=sorted(self._mappings_by_index),
        )

    def _validate(self) -> None:
        problems: list[str] = []
        counts = Counter(rule.name for rule in self._rules)
        for name, count in counts.items():
            if count > 1:
                problems.append(f"counter name '{name}' is defined {count} times")
        mapped = {m.index_type_name for m in self._mappings}
        for rule in self._rules:
            if rule.index_type_name not in mapped:
                problems.append(f"counter '{rule.name}' references unmapped index type '{rule.index_type_name}'")
        if problems:
            raise ConfigurationError(problems)

    @property
    def rules(self) -> tuple[CounterRule, ...]:
        return self._rules

    @property
    def mappings(self) -> tuple[IndexMappingSettings, ...]:
        return self._mappings

    def mappings_for(self, index_type_name: str) -> tuple[IndexMappingSettings, ...]:
        return self._mappings_by_index.get(index_type_name, ())

    def rules_for(self, fact: Fact) -> tuple[list[CounterRule], list[CounterRule]]:
        """Rules applicable to the fact's type, capped by max_counters_processing.

        Returns:
            (applicable, skipped): skipped rules exceed the cap and are not
            computed for this fact
        """
        applicable = [rule for rule in self._rules if rule.applies_to(fact.type)]
        limit = self.max_counters_processing
        if limit and len(applicable) > limit:
            skipped = applicable[limit:]
            logger.warning(
                "counters_skipped",
                fact_id=fact.id,
                limit=limit,
                skipped=len(skipped),
                first_skipped=skipped[0].name,
            )
            return applicable[:limit], skipped
        return applicable, []

    def groups_for(self, rules: Iterable[CounterRule]) -> list[CounterGroup]:
        return group_by_index_type(rules, self.max_counters_per_request)
