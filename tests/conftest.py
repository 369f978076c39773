# tests/conftest.py
"""Shared test fixtures and helpers.

Fixtures build facts, mappings and stores the way a worker would, with a
pinned clock so counter windows are deterministic.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/
"""

from __future__ import annotations

import os
from collections.abc import Iterator

import pytest
from hypothesis import Phase, Verbosity, settings

from factcounters.core.config import IndexMappingSettings
from factcounters.engine.clock import MockClock
from factcounters.storage.memory import MemoryFactStore
from factcounters.storage.sql import SqlFactStore
from tests.helpers import NOW_MS


@pytest.fixture
def clock() -> MockClock:
    return MockClock(now_ms=NOW_MS)


@pytest.fixture
def mappings() -> list[IndexMappingSettings]:
    return [
        IndexMappingSettings(field="PAN", index_type_name="card", index_type=1),
        IndexMappingSettings(field="merchant", index_type_name="merchant", index_type=2),
    ]


@pytest.fixture
def memory_store() -> Iterator[MemoryFactStore]:
    store = MemoryFactStore()
    yield store
    store.close()


@pytest.fixture
def sql_store() -> Iterator[SqlFactStore]:
    store = SqlFactStore.in_memory()
    yield store
    store.close()


@pytest.fixture(params=["memory", "sql"])
def store(request: pytest.FixtureRequest) -> Iterator[MemoryFactStore | SqlFactStore]:
    """Each FactStore backend in turn."""
    backend: MemoryFactStore | SqlFactStore = MemoryFactStore() if request.param == "memory" else SqlFactStore.in_memory()
    yield backend
    backend.close()


# =============================================================================
# Hypothesis Configuration
# =============================================================================

# CI profile: Fast tests for continuous integration
settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # Disable deadline for CI (timing varies)
)

# Nightly profile: Thorough testing for scheduled runs
settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Debug profile: Minimal examples with verbose output for debugging
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Load profile from environment, default to "ci"
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))
