# tests/storage/test_sql_store.py
"""SQL-specific tests: data codec, file databases, write failures."""

from datetime import UTC, datetime
from pathlib import Path

import pytest

from factcounters.contracts.errors import StorageError
from factcounters.storage.protocols import FACTS, RECENCY, RecordFilter, UpsertOutcome
from factcounters.storage.sql import SqlFactStore, decode_data, encode_data
from tests.helpers import make_fact


class TestDataCodec:
    def test_dates_tagged(self) -> None:
        text = encode_data({"b": 1, "a": datetime(1970, 1, 1, 0, 0, 1, tzinfo=UTC)})
        assert text == '{"a":{"$date":1000},"b":1}'
        assert decode_data(text) == {"a": datetime(1970, 1, 1, 0, 0, 1, tzinfo=UTC), "b": 1}

    def test_none_passthrough(self) -> None:
        assert encode_data(None) is None
        assert decode_data(None) is None

    def test_unstorable_value(self) -> None:
        with pytest.raises(TypeError, match="not storable"):
            encode_data({"tags": {"a", "b"}})


class TestSqlFactStore:
    def test_file_database_persists(self, tmp_path: Path) -> None:
        url = f"sqlite:///{tmp_path / 'facts.db'}"
        fact = make_fact("f1", amount=5)
        with SqlFactStore(url) as store:
            assert store.upsert_one(FACTS, fact.id, fact.to_document()) is UpsertOutcome.INSERTED
        with SqlFactStore(url) as store:
            assert store.upsert_one(FACTS, fact.id, fact.to_document()) is UpsertOutcome.UNCHANGED
            found = store.find_sorted_limited(FACTS, RecordFilter(), RECENCY, None)
        assert found[0]["data"] == {"amount": 5}

    def test_unstorable_fact_raises_storage_error(self, sql_store: SqlFactStore) -> None:
        fact = make_fact("f1", tags={"a"})
        with pytest.raises(StorageError, match="not storable"):
            sql_store.upsert_one(FACTS, fact.id, fact.to_document())

    def test_bulk_continues_past_failed_document(self, sql_store: SqlFactStore) -> None:
        good = make_fact("good")
        bad = make_fact("bad", tags={"a"})
        result = sql_store.upsert_bulk(FACTS, [(bad.id, bad.to_document()), (good.id, good.to_document())])
        assert result.inserted_count == 1
        assert len(result.errors) == 1
        assert result.errors[0].startswith("bad: ")

    def test_ordered_bulk_stops_at_failure(self, sql_store: SqlFactStore) -> None:
        good = make_fact("good")
        bad = make_fact("bad", tags={"a"})
        result = sql_store.upsert_bulk(
            FACTS, [(bad.id, bad.to_document()), (good.id, good.to_document())], ordered=True
        )
        assert result.inserted_count == 0
        assert len(result.errors) == 1

    def test_engine_unavailable_after_close(self, sql_store: SqlFactStore) -> None:
        sql_store.close()
        with pytest.raises(RuntimeError, match="closed"):
            _ = sql_store.engine
