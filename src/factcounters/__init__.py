"""
factcounters: rolling counters over indexed business facts.

Facts are indexed by configurable field values; counter rules written in a
small condition language aggregate the recent facts that share an index
key with each triggering fact.
"""

__version__ = "0.1.0"
