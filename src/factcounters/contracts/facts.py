# src/factcounters/contracts/facts.py
"""Fact and index-entry contracts.

A Fact is an immutable business event. Its ``data`` map carries typed
scalar values; the kind of each field is described by FieldKind and
resolved through FieldTypeTable (see factcounters.core.field_types).

An IndexEntry is a secondary-index pointer derived from one field of a
fact. It references the fact by id and copies the fact's business
timestamp so candidate lookups can be ordered by recency without touching
the facts collection.

Timestamps are timezone-aware datetimes in memory and epoch milliseconds
at the storage boundary.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from types import MappingProxyType
from typing import Any

# Meta fields exposed to predicates alongside fact data
ID_FIELD = "id"
TYPE_FIELD = "type"
OCCURRED_AT_FIELD = "occurredAt"
CREATED_AT_FIELD = "createdAt"

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


class FieldKind(str, Enum):
    """Closed set of value kinds a fact field may hold."""

    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATETIME = "datetime"


def to_epoch_ms(value: datetime) -> int:
    """Convert an aware (or naive-as-UTC) datetime to epoch milliseconds."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return (value - _EPOCH) // timedelta(milliseconds=1)


def from_epoch_ms(value: int) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""
    return _EPOCH + timedelta(milliseconds=value)


@dataclass(frozen=True, slots=True)
class Fact:
    """Immutable timestamped business event.

    Attributes:
        id: Globally unique key; writes are idempotent upserts on it
        type: Small integer fact type (message type)
        created_at: When the fact entered the system
        occurred_at: Business timestamp used for windowing
        data: Field values keyed by name (read-only view)
    """

    id: str
    type: int
    created_at: datetime
    occurred_at: datetime
    data: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Fact id must be a non-empty string")
        # Freeze the data map so a shared fact cannot be mutated by a task
        object.__setattr__(self, "data", MappingProxyType(dict(self.data)))

    @property
    def occurred_at_ms(self) -> int:
        return to_epoch_ms(self.occurred_at)

    @property
    def created_at_ms(self) -> int:
        return to_epoch_ms(self.created_at)

    def to_document(self) -> dict[str, Any]:
        """Storage document for the facts collection."""
        return {
            "id": self.id,
            "type": self.type,
            "created_at": self.created_at_ms,
            "occurred_at": self.occurred_at_ms,
            "data": dict(self.data),
        }

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> Fact:
        return cls(
            id=doc["id"],
            type=doc["type"],
            created_at=from_epoch_ms(doc["created_at"]),
            occurred_at=from_epoch_ms(doc["occurred_at"]),
            data=doc["data"],
        )

    @classmethod
    def from_payload(
        cls,
        payload: Mapping[str, Any],
        type_data: Callable[[Mapping[str, Any]], Mapping[str, Any]] | None = None,
    ) -> Fact:
        """Build a fact from an inbound JSON payload.

        Accepts ``createdAt``/``occurredAt`` as ISO-8601 strings or epoch
        milliseconds. ``createdAt`` defaults to ``occurredAt``.

        Args:
            payload: Decoded JSON object
            type_data: Converts data values to their field kinds
                (``FieldTypeTable.type_data``); data is kept as decoded
                when None
        """
        data = payload.get("data") or {}
        if type_data is not None:
            data = type_data(data)
        occurred_at = _parse_timestamp(payload["occurredAt"])
        created_raw = payload.get("createdAt")
        created_at = occurred_at if created_raw is None else _parse_timestamp(created_raw)
        return cls(
            id=str(payload["id"]),
            type=int(payload["type"]),
            created_at=created_at,
            occurred_at=occurred_at,
            data=data,
        )


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, int | float) and not isinstance(value, bool):
        try:
            return from_epoch_ms(int(value))
        except OverflowError as exc:
            raise ValueError(f"Timestamp out of range: {value!r}") from exc
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
    raise ValueError(f"Unsupported timestamp value: {value!r}")


def record_view(fact_doc: Mapping[str, Any]) -> dict[str, Any]:
    """Flatten a stored fact document into the record predicates see.

    Meta fields win over data fields of the same name.
    """
    record = dict(fact_doc["data"])
    record[ID_FIELD] = fact_doc["id"]
    record[TYPE_FIELD] = fact_doc["type"]
    record[OCCURRED_AT_FIELD] = from_epoch_ms(fact_doc["occurred_at"])
    record[CREATED_AT_FIELD] = from_epoch_ms(fact_doc["created_at"])
    return record


@dataclass(frozen=True, slots=True)
class IndexEntry:
    """Secondary-index pointer from hash(index type, field value) to a fact.

    At most one entry exists per (index_key, fact_id). The entry does not
    own the fact's lifecycle.
    """

    index_key: str
    fact_id: str
    index_type: int
    index_type_name: str
    fact_type: int
    occurred_at: datetime
    created_at: datetime

    @property
    def storage_key(self) -> str:
        return f"{self.index_key}:{self.fact_id}"

    def to_document(self, data: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Storage document for the fact_index collection.

        Args:
            data: Fact data to embed, when the index carries fact fields
        """
        doc: dict[str, Any] = {
            "index_key": self.index_key,
            "fact_id": self.fact_id,
            "index_type": self.index_type,
            "index_type_name": self.index_type_name,
            "fact_type": self.fact_type,
            "occurred_at": to_epoch_ms(self.occurred_at),
            "created_at": to_epoch_ms(self.created_at),
        }
        if data is not None:
            doc["data"] = dict(data)
        return doc
