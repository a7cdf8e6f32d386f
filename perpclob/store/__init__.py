"""
Persistence for markets, orders, trades, positions and balances.

- MemoryStore: in-process dictionaries (tests, demos)
- DuckDBStore: single-file DuckDB database (survives restarts)
"""

from .base import VenueStore
from .memory_store import MemoryStore
from .duckdb_store import DuckDBStore

__all__ = ["VenueStore", "MemoryStore", "DuckDBStore"]
