# src/factcounters/core/hashing.py
"""Index-key derivation.

An index key identifies "all facts whose field F (mapped to index type T)
holds value V". Hash mode keys are the sha256 hex digest of
``"{index_type_name}:{value}"`` so keys from different index types never
collide even when values coincide. Raw mode keys are the value's text and
exist for debugging and small deployments.
"""

from __future__ import annotations

import hashlib
from datetime import datetime
from enum import Enum
from typing import Any

from factcounters.contracts.facts import to_epoch_ms


class KeyMode(str, Enum):
    HASH = "hash"
    RAW = "raw"


def value_text(value: Any) -> str:
    """Canonical text for an indexed value.

    Booleans render as ``true``/``false`` and datetimes as epoch ms so the
    same logical value always yields the same key.
    """
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return str(to_epoch_ms(value))
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def index_key(index_type_name: str, value: Any, mode: KeyMode = KeyMode.HASH) -> str:
    """Derive the index key for one field value.

    Args:
        index_type_name: Name of the index type the field maps to
        value: Field value from the fact
        mode: HASH (sha256 hex) or RAW (value text)

    Returns:
        Index key string
    """
    text = value_text(value)
    if mode is KeyMode.RAW:
        return text
    return hashlib.sha256(f"{index_type_name}:{text}".encode()).hexdigest()
