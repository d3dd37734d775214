"""
Offset storage for the update ingestion monitor.

This package provides the durable per-account cursor with pluggable backends.
"""

from .offset_store import (
    InMemoryOffsetStore,
    JsonFileOffsetStore,
    OffsetStore,
    OffsetStoreFactory,
)

__all__ = [
    "OffsetStore",
    "OffsetStoreFactory",
    "InMemoryOffsetStore",
    "JsonFileOffsetStore",
]
