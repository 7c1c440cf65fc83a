"""
Small pool of reusable upload buffers.
"""

import threading
from typing import List, Optional

from ..config import settings


class UploadBufferPool:
    """Bounded, lock-guarded stack of bytearrays shared by concurrent uploads."""

    def __init__(self, capacity: Optional[int] = None):
        self.capacity = capacity or settings.upload_buffer_pool_size
        self._buffers: List[bytearray] = []
        self._lock = threading.Lock()

    def take(self) -> Optional[bytearray]:
        """Pop a buffer, or None when the pool is empty."""
        with self._lock:
            return self._buffers.pop() if self._buffers else None

    def give(self, buffer: bytearray) -> bool:
        """Return a buffer. Dropped (returns False) when the pool is already full."""
        with self._lock:
            if len(self._buffers) >= self.capacity:
                return False
            self._buffers.append(buffer)
            return True

    def acquire(self, size: int) -> bytearray:
        """Take a pooled buffer of exactly ``size`` bytes, allocating one if needed."""
        buffer = self.take()
        if buffer is None or len(buffer) != size:
            buffer = bytearray(size)
        return buffer

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffers)
