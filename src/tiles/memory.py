"""In-process LRU cache tier."""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from typing import Generic, TypeVar

from shared.constants import MEMORY_CACHE_SIZE

logger = logging.getLogger(__name__)

T = TypeVar('T')


class MemoryCache(Generic[T]):
    """Thread-safe bounded LRU map from string keys to shared values.

    Values are handed out as-is to every reader, so they must be treated
    as immutable once stored.
    """

    def __init__(self, max_size: int = MEMORY_CACHE_SIZE) -> None:
        self._max_size = max(1, int(max_size))
        self._items: OrderedDict[str, T] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @property
    def max_size(self) -> int:
        return self._max_size

    def get(self, key: str) -> T | None:
        with self._lock:
            value = self._items.get(key)
            if value is None:
                self.misses += 1
                return None
            self._items.move_to_end(key)
            self.hits += 1
            return value

    def put(self, key: str, value: T) -> None:
        with self._lock:
            self._items[key] = value
            self._items.move_to_end(key)
            while len(self._items) > self._max_size:
                evicted, _ = self._items.popitem(last=False)
                logger.debug('Memory cache evicted %s', evicted)

    def remove(self, key: str) -> bool:
        with self._lock:
            return self._items.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
