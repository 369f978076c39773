# src/factcounters/storage/memory.py
"""Thread-safe in-memory FactStore.

Used by tests and by the CLI when no database is wanted. Semantics match
SqlFactStore exactly: same filters, same recency order, same kernel.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping, Sequence
from threading import Lock
from typing import Any

from factcounters.contracts.errors import StorageError
from factcounters.contracts.facts import record_view
from factcounters.storage.aggregation import compute_aggregates, entry_record, recency_key, unique_by_id
from factcounters.storage.protocols import (
    COLLECTIONS,
    FACT_INDEX,
    FACTS,
    AggregateSpec,
    BulkWriteResult,
    JoinSpec,
    RecordFilter,
    SortSpec,
    UpsertOutcome,
)


class MemoryFactStore:
    """Dict-backed store keyed by document key per collection."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._collections: dict[str, dict[str, dict[str, Any]]] = {name: {} for name in COLLECTIONS}
        self._closed = False

    def upsert_one(self, collection: str, key: str, doc: Mapping[str, Any]) -> UpsertOutcome:
        with self._lock:
            documents = self._documents("upsert_one", collection)
            return self._put(documents, key, doc)

    def upsert_bulk(
        self,
        collection: str,
        items: Sequence[tuple[str, Mapping[str, Any]]],
        *,
        ordered: bool = False,
    ) -> BulkWriteResult:
        result = BulkWriteResult()
        with self._lock:
            documents = self._documents("upsert_bulk", collection)
            for key, doc in items:
                outcome = self._put(documents, key, doc)
                if outcome is UpsertOutcome.INSERTED:
                    result.inserted_count += 1
                elif outcome is UpsertOutcome.UPDATED:
                    result.updated_count += 1
                else:
                    result.unchanged_count += 1
        return result

    def find_sorted_limited(
        self,
        collection: str,
        record_filter: RecordFilter,
        sort: SortSpec,
        limit: int | None,
        projection: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]:
        with self._lock:
            documents = self._documents("find_sorted_limited", collection)
            selected = self._select(collection, documents, record_filter, sort, limit)
        if projection is not None:
            return [{k: doc[k] for k in projection if k in doc} for doc in selected]
        return selected

    def aggregate(
        self,
        collection: str,
        record_filter: RecordFilter,
        sort: SortSpec,
        limit: int | None,
        specs: Sequence[AggregateSpec],
        join: JoinSpec | None = None,
    ) -> dict[str, Any]:
        with self._lock:
            documents = self._documents("aggregate", collection)
            selected = self._select(collection, documents, record_filter, sort, limit)
            facts = self._collections[FACTS]
            if collection == FACTS:
                records = [record_view(doc) for doc in selected]
            elif join is not None:
                records = [entry_record(doc, facts[doc["fact_id"]]) for doc in selected if doc["fact_id"] in facts]
            else:
                records = [entry_record(doc) for doc in selected]
        return compute_aggregates(unique_by_id(records), specs)

    def close(self) -> None:
        self._closed = True

    def count(self, collection: str) -> int:
        with self._lock:
            return len(self._documents("count", collection))

    def get(self, collection: str, key: str) -> dict[str, Any] | None:
        with self._lock:
            doc = self._documents("get", collection).get(key)
            return copy.deepcopy(doc) if doc is not None else None

    def _documents(self, operation: str, collection: str) -> dict[str, dict[str, Any]]:
        if self._closed:
            raise StorageError(operation, collection, "store is closed")
        if collection not in self._collections:
            raise StorageError(operation, collection, "unknown collection")
        return self._collections[collection]

    @staticmethod
    def _put(documents: dict[str, dict[str, Any]], key: str, doc: Mapping[str, Any]) -> UpsertOutcome:
        existing = documents.get(key)
        new_doc = copy.deepcopy(dict(doc))
        if existing is None:
            documents[key] = new_doc
            return UpsertOutcome.INSERTED
        if existing == new_doc:
            return UpsertOutcome.UNCHANGED
        documents[key] = new_doc
        return UpsertOutcome.UPDATED

    @staticmethod
    def _select(
        collection: str,
        documents: dict[str, dict[str, Any]],
        record_filter: RecordFilter,
        sort: SortSpec,
        limit: int | None,
    ) -> list[dict[str, Any]]:
        id_field = "id" if collection == FACTS else "fact_id"
        candidates = []
        for doc in documents.values():
            if record_filter.index_keys is not None and (
                collection != FACT_INDEX or doc["index_key"] not in record_filter.index_keys
            ):
                continue
            if record_filter.fact_ids is not None and doc[id_field] not in record_filter.fact_ids:
                continue
            if doc[id_field] in record_filter.exclude_ids:
                continue
            occurred_ms = doc["occurred_at"]
            if record_filter.occurred_from_ms is not None and occurred_ms < record_filter.occurred_from_ms:
                continue
            if record_filter.occurred_to_ms is not None and occurred_ms >= record_filter.occurred_to_ms:
                continue
            candidates.append(doc)

        def key(doc: dict[str, Any]) -> tuple[int, str]:
            return recency_key({"occurredAt": doc["occurred_at"], "id": doc[id_field]})

        candidates.sort(key=key, reverse=not sort.newest_first)
        if limit is not None:
            candidates = candidates[:limit]
        return [copy.deepcopy(doc) for doc in candidates]
