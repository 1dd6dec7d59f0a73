"""Tile cache tiers.

This module provides:
- TileCache: SQLite persistent tier, one database per bin, LRU eviction
- MemoryCache: in-process LRU tier
- ProducerGate: at-most-one-producer guard for concurrent requests
"""

from tiles.cache import CacheRecord, CacheStats, TileCache, TileInfo
from tiles.gate import ProducerGate
from tiles.memory import MemoryCache

__all__ = [
    'CacheRecord',
    'CacheStats',
    'MemoryCache',
    'ProducerGate',
    'TileCache',
    'TileInfo',
]
