"""
Server side of the throughput test: serve generated chunks, absorb uploads.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Set

from starlette.concurrency import run_in_threadpool

from ..config import settings
from ..errors import (
    MalformedInputError,
    ResourceLimitExceededError,
    TransferTimeoutError,
    UploadSizeMismatchError,
)
from .cache import ChunkCache
from .codec import parse_chunk_id, pattern_chunk, random_chunk

logger = logging.getLogger(__name__)

GENERATORS = ("pattern", "random")


@dataclass
class UploadReceipt:
    chunk_id: str
    bytes_received: int
    duration_ms: float


class TransferEndpoint:
    """
    Chunk download / upload handler, independent of the HTTP framework.

    ``generator`` selects the payload: ``pattern`` is deterministic per chunk
    id and served from the slot cache at the default size, ``random`` is
    fresh cryptographic randomness on every request and never cached.
    """

    def __init__(
        self,
        chunk_size: Optional[int] = None,
        cache: Optional[ChunkCache] = None,
        generator: Optional[str] = None,
        request_timeout: Optional[float] = None,
        max_upload_factor: Optional[int] = None,
        min_size: Optional[int] = None,
        max_size: Optional[int] = None,
    ):
        self.chunk_size = chunk_size or settings.chunk_size
        self.cache = cache or ChunkCache()
        self.generator = generator or settings.chunk_generator
        if self.generator not in GENERATORS:
            raise ValueError(f"Unknown chunk generator '{self.generator}', expected one of {GENERATORS}")
        self.request_timeout = request_timeout or settings.request_timeout
        self.max_upload_size = self.chunk_size * (max_upload_factor or settings.max_upload_factor)
        self.min_size = min_size or settings.timed_chunk_min_size
        self.max_size = max_size or settings.timed_chunk_max_size
        self._active: Set[str] = set()

    def resolve_size(self, requested: Optional[int]) -> int:
        """Default chunk size, or the requested size clamped to the allowed range."""
        if requested is None:
            return self.chunk_size
        return min(max(self.min_size, requested), self.max_size)

    def generate(self, chunk_id: int, size: int) -> bytes:
        if self.generator == "random":
            return random_chunk(size)
        if size == self.chunk_size:
            return self.cache.get_or_create(chunk_id, lambda i: pattern_chunk(i, size))
        return pattern_chunk(chunk_id, size)

    async def serve_chunk(self, token: str, size: Optional[int] = None) -> bytes:
        """
        Produce the payload for one download request.

        Args:
            token: Chunk identity, ``<anything>-<index>``
            size: Optional requested size in bytes

        Raises:
            MalformedInputError: Empty token, or the same token already in flight
            TransferTimeoutError: Generation exceeded the request timeout
        """
        if not token or token in self._active:
            raise MalformedInputError("Invalid or duplicate request")
        self._active.add(token)
        try:
            chunk_id = parse_chunk_id(token)
            nbytes = self.resolve_size(size)
            try:
                return await asyncio.wait_for(
                    run_in_threadpool(self.generate, chunk_id, nbytes), self.request_timeout
                )
            except asyncio.TimeoutError:
                logger.warning(f"Chunk {token} not generated within {self.request_timeout}s")
                raise TransferTimeoutError(f"Chunk {token} timed out")
        finally:
            self._active.discard(token)

    def check_upload_headers(self, content_length: Optional[str], chunk_id: Optional[str]) -> int:
        """
        Validate upload headers before reading the body.

        Returns:
            The declared body size

        Raises:
            MalformedInputError: Missing headers or a non-numeric length
            ResourceLimitExceededError: Declared size above the upload cap
        """
        if not content_length or not chunk_id:
            raise MalformedInputError("Missing required headers: content-length and x-chunk-id")
        try:
            declared = int(content_length)
        except ValueError:
            raise MalformedInputError("Invalid content length")
        if declared <= 0:
            raise MalformedInputError("Invalid content length")
        if declared > self.max_upload_size:
            raise ResourceLimitExceededError("Request too large")
        return declared

    async def receive_upload(
        self,
        content_length: Optional[str],
        chunk_id: Optional[str],
        body: AsyncIterator[bytes],
    ) -> UploadReceipt:
        """
        Drain an upload body, counting bytes as they arrive.

        Raises:
            UploadSizeMismatchError: More bytes arrived than were declared
            TransferTimeoutError: The body did not finish within the request timeout
        """
        declared = self.check_upload_headers(content_length, chunk_id)
        started = time.perf_counter()
        try:
            received = await asyncio.wait_for(self._drain(body, declared), self.request_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Upload {chunk_id} not received within {self.request_timeout}s")
            raise TransferTimeoutError(f"Upload {chunk_id} timed out")
        duration_ms = (time.perf_counter() - started) * 1000
        return UploadReceipt(chunk_id=chunk_id, bytes_received=received, duration_ms=duration_ms)

    async def _drain(self, body: AsyncIterator[bytes], declared: int) -> int:
        received = 0
        async for piece in body:
            received += len(piece)
            if received > declared:
                raise UploadSizeMismatchError("Upload size mismatch")
        return received
