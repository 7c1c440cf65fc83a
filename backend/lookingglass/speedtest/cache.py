"""
Bounded cache of generated pattern chunks.
"""

import threading
from typing import Callable, Dict, Optional

from ..config import settings


class ChunkCache:
    """
    Slot cache for pattern chunks, ``slot = chunk_id % capacity``.

    A filled slot is returned as-is even when the requested id differs from
    the id that filled it; callers that need exact content for an id must
    bypass the cache. Concurrent fills of the same slot are first-write-wins.
    """

    def __init__(self, capacity: Optional[int] = None):
        self.capacity = capacity or settings.chunk_cache_capacity
        self._slots: Dict[int, bytes] = {}
        self._lock = threading.Lock()

    def slot_for(self, chunk_id: int) -> int:
        return chunk_id % self.capacity

    def get(self, chunk_id: int) -> Optional[bytes]:
        with self._lock:
            return self._slots.get(self.slot_for(chunk_id))

    def get_or_create(self, chunk_id: int, factory: Callable[[int], bytes]) -> bytes:
        """
        Return the cached chunk for ``chunk_id``'s slot, generating it on a miss.

        Generation happens outside the lock; if another request filled the
        slot meanwhile, its value wins and is returned.
        """
        slot = self.slot_for(chunk_id)
        with self._lock:
            cached = self._slots.get(slot)
        if cached is not None:
            return cached

        chunk = factory(chunk_id)
        with self._lock:
            if len(self._slots) < self.capacity or slot in self._slots:
                return self._slots.setdefault(slot, chunk)
        return chunk

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)

    def clear(self) -> None:
        with self._lock:
            self._slots.clear()
