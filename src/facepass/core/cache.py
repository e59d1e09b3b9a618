"""LRU memoization of face descriptors keyed by image content."""

from __future__ import annotations

import hashlib
import threading
from collections import OrderedDict
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray


def content_key(data: bytes) -> str:
    """Digest of the full image buffer, used only to skip recomputation."""
    return hashlib.blake2b(data, digest_size=16).hexdigest()


class DescriptorCache:
    """Bounded, thread-safe LRU cache of read-only descriptors.

    Reads and writes both refresh an entry's recency. Eviction or a miss
    only costs a recomputation, so the cache may be cleared at any time.
    A capacity of 0 disables caching.
    """

    def __init__(self, capacity: int = 100) -> None:
        if capacity < 0:
            raise ValueError("capacity must be >= 0")
        self._capacity = capacity
        self._entries: OrderedDict[str, NDArray[np.float32]] = OrderedDict()
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def get(self, key: str) -> NDArray[np.float32] | None:
        with self._lock:
            descriptor = self._entries.get(key)
            if descriptor is not None:
                self._entries.move_to_end(key)
            return descriptor

    def put(self, key: str, descriptor: NDArray[np.float32]) -> None:
        if self._capacity == 0:
            return
        with self._lock:
            self._entries[key] = descriptor
            self._entries.move_to_end(key)
            while len(self._entries) > self._capacity:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries
