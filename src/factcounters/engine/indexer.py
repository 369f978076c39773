# src/factcounters/engine/indexer.py
"""Fact indexer: derive and persist secondary-index entries.

Every mapped field present on a fact yields one IndexEntry keyed by
hash(index type, value). Persisting upserts the fact by id and then the
entries by (index_key, fact_id), so replaying the same fact converges on
the same stored state.

Entry writes go out either as one unordered bulk upsert or as
independently dispatched single upserts bounded by ``write_concurrency``.
No in-memory cache of facts or entries is kept.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Literal

from factcounters.contracts.errors import StorageError
from factcounters.contracts.facts import Fact, IndexEntry
from factcounters.contracts.results import PersistResult
from factcounters.core.config import IndexMappingSettings
from factcounters.core.hashing import index_key
from factcounters.core.logging import get_logger
from factcounters.storage.protocols import FACT_INDEX, FACTS, FactStore, UpsertOutcome

logger = get_logger(__name__)


class FactIndexer:
    """Derives index entries for facts and writes them to a FactStore.

    Args:
        mappings: Field to index type mappings
        store: Destination store
        include_fact_data: Embed fact data in each entry document
        write_mode: "bulk" (one unordered batch) or "single"
        write_concurrency: In-flight single writes
    """

    def __init__(
        self,
        mappings: Sequence[IndexMappingSettings],
        store: FactStore,
        *,
        include_fact_data: bool = False,
        write_mode: Literal["bulk", "single"] = "bulk",
        write_concurrency: int = 4,
    ) -> None:
        self._mappings = tuple(mappings)
        self._store = store
        self._include_fact_data = include_fact_data
        self._write_mode = write_mode
        self._write_pool: ThreadPoolExecutor | None = None
        if write_mode == "single":
            self._write_pool = ThreadPoolExecutor(max_workers=write_concurrency, thread_name_prefix="fact-writer")

    def index_keys(self, fact: Fact) -> dict[str, frozenset[str]]:
        """Index keys of the fact, grouped by index type name.

        Index types whose fields are absent (or null) on the fact have no
        entry in the result.
        """
        keys: dict[str, set[str]] = {}
        for mapping in self._mappings:
            if not mapping.applies_to(fact.type):
                continue
            value = fact.data.get(mapping.field)
            if value is None:
                continue
            keys.setdefault(mapping.index_type_name, set()).add(
                index_key(mapping.index_type_name, value, mapping.key_mode)
            )
        return {name: frozenset(values) for name, values in keys.items()}

    def index_fact(self, fact: Fact) -> list[IndexEntry]:
        """Derive the fact's index entries, one per distinct index key."""
        entries: list[IndexEntry] = []
        seen: set[str] = set()
        for mapping in self._mappings:
            if not mapping.applies_to(fact.type):
                continue
            value = fact.data.get(mapping.field)
            if value is None:
                continue
            key = index_key(mapping.index_type_name, value, mapping.key_mode)
            if key in seen:
                continue
            seen.add(key)
            entries.append(
                IndexEntry(
                    index_key=key,
                    fact_id=fact.id,
                    index_type=mapping.index_type,
                    index_type_name=mapping.index_type_name,
                    fact_type=fact.type,
                    occurred_at=fact.occurred_at,
                    created_at=fact.created_at,
                )
            )
        return entries

    def persist(self, fact: Fact, entries: Sequence[IndexEntry]) -> PersistResult:
        """Upsert the fact, then its entries.

        Entry write failures are partial: they are listed in the result and
        the remaining entries are still written.

        Raises:
            StorageError: If the fact itself cannot be written
        """
        start = time.perf_counter()
        fact_outcome = self._store.upsert_one(FACTS, fact.id, fact.to_document())
        result = PersistResult(fact_outcome=fact_outcome.value)

        data = fact.data if self._include_fact_data else None
        items = [(entry.storage_key, entry.to_document(data)) for entry in entries]
        if self._write_pool is None:
            bulk = self._store.upsert_bulk(FACT_INDEX, items, ordered=False)
            result.entries_inserted = bulk.inserted_count
            result.entries_updated = bulk.updated_count
            result.entries_unchanged = bulk.unchanged_count
            result.errors.extend(bulk.errors)
        else:
            self._persist_single(items, result)

        result.duration_ms = (time.perf_counter() - start) * 1000
        logger.debug(
            "fact_persisted",
            fact_id=fact.id,
            fact_outcome=result.fact_outcome,
            entries=len(items),
            inserted=result.entries_inserted,
            errors=len(result.errors),
            duration_ms=round(result.duration_ms, 3),
        )
        return result

    def _persist_single(self, items: list[tuple[str, dict[str, object]]], result: PersistResult) -> None:
        assert self._write_pool is not None
        futures: dict[Future[UpsertOutcome], str] = {
            self._write_pool.submit(self._store.upsert_one, FACT_INDEX, key, doc): key for key, doc in items
        }
        for future in as_completed(futures):
            key = futures[future]
            try:
                outcome = future.result()
            except StorageError as exc:
                result.errors.append(f"{key}: {exc.message}")
                continue
            if outcome is UpsertOutcome.INSERTED:
                result.entries_inserted += 1
            elif outcome is UpsertOutcome.UPDATED:
                result.entries_updated += 1
            else:
                result.entries_unchanged += 1

    def close(self) -> None:
        if self._write_pool is not None:
            self._write_pool.shutdown(wait=True)
            self._write_pool = None
