# src/factcounters/storage/schema.py
"""SQLAlchemy table definitions for the fact store.

Uses SQLAlchemy Core (not ORM) for explicit control over queries and
compatibility with SQLite and PostgreSQL. Timestamps are epoch
milliseconds; fact data is JSON text (see factcounters.storage.sql).
"""

from sqlalchemy import BigInteger, Column, Index, Integer, MetaData, String, Table, Text, UniqueConstraint

metadata = MetaData()

facts_table = Table(
    "facts",
    metadata,
    Column("id", String(128), primary_key=True),
    Column("type", Integer, nullable=False),
    Column("occurred_at", BigInteger, nullable=False),
    Column("created_at", BigInteger, nullable=False),
    Column("data", Text, nullable=False),
)

Index("ix_facts_occurred_at", facts_table.c.occurred_at)

# One row per (index_key, fact_id); "key" is that pair as text
fact_index_table = Table(
    "fact_index",
    metadata,
    Column("key", String(320), primary_key=True),
    Column("index_key", String(128), nullable=False),
    Column("fact_id", String(128), nullable=False),
    Column("index_type", Integer, nullable=False),
    Column("index_type_name", String(64), nullable=False),
    Column("fact_type", Integer, nullable=False),
    Column("occurred_at", BigInteger, nullable=False),
    Column("created_at", BigInteger, nullable=False),
    Column("data", Text),
    UniqueConstraint("index_key", "fact_id", name="uq_fact_index_key_fact"),
)

# Recency lookups: index_key equality, occurred_at range, newest first
Index("ix_fact_index_key_occurred", fact_index_table.c.index_key, fact_index_table.c.occurred_at)
