# tests/property/__init__.py
"""Property-based tests for factcounters.

Property-based testing validates invariants that must hold for ALL inputs,
not just the specific examples we think of.

Test categories:
- core/: index-key determinism, number parsing
- engine/: batching partition, group windows, strategy equivalence
"""
