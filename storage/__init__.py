"""
storage package

DuckDB cache of chain entities and the reconciliation checkpoint.
"""
from .cache_store import CacheReader, CacheStore
from .records import CacheRecord, SyncStatus, is_fresh

__all__ = [
    'CacheReader',
    'CacheStore',
    'CacheRecord',
    'SyncStatus',
    'is_fresh',
]
