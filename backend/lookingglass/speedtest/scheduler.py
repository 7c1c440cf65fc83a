"""
Client-side throughput engine.

A phase splits a byte volume into fixed-size chunks and keeps up to
``concurrency`` chunk transfers in flight against the chunk endpoint. A chunk
that fails is retried with exponential backoff; once it runs out of attempts
the whole phase is aborted. Speed is counted from nominal chunk sizes over
wall-clock time.
"""

import asyncio
import enum
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Deque, Optional, Set

import httpx

from ..config import settings, KIB, MIB
from ..errors import (
    TransferCancelledError,
    TransferFailedError,
    TransferTimeoutError,
    TransientNetworkError,
)
from .buffer_pool import UploadBufferPool
from .codec import fill_pattern

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
}
UPLOAD_SLICE = 64 * KIB

ProgressCallback = Callable[["Direction", float], None]


class Direction(str, enum.Enum):
    """Direction of a test phase, seen from the client."""

    DOWNLOAD = "download"
    UPLOAD = "upload"


def mbps(nbytes: int, seconds: float) -> float:
    """Megabits (2**20 bits) per second."""
    if seconds <= 0:
        return 0.0
    return (nbytes * 8) / (1024 * 1024 * seconds)


def adjust_chunk_size(
    current: int,
    elapsed: float,
    target: float,
    min_size: int,
    max_size: int,
) -> int:
    """Scale the next chunk so that it takes roughly ``target`` seconds."""
    if elapsed <= 0:
        return max_size
    return max(min_size, min(max_size, int(current * target / elapsed)))


@dataclass
class TransferPlan:
    """Bookkeeping for one fixed-volume phase."""

    direction: Direction
    total_bytes: int
    chunk_size: int
    concurrency: int
    max_attempts: int
    pending: Deque[int] = field(init=False)
    in_flight: Set[asyncio.Task] = field(default_factory=set)
    completed_chunks: int = 0
    bytes_transferred: int = 0
    started_at: float = 0.0

    def __post_init__(self):
        if self.total_bytes <= 0 or self.chunk_size <= 0:
            raise ValueError("total_bytes and chunk_size must be positive")
        if self.concurrency <= 0 or self.max_attempts <= 0:
            raise ValueError("concurrency and max_attempts must be positive")
        self.pending = deque(range(self.total_chunks))

    @property
    def total_chunks(self) -> int:
        return -(-self.total_bytes // self.chunk_size)

    @property
    def progress(self) -> float:
        return self.completed_chunks / self.total_chunks * 100


async def _iter_buffer(buffer: bytearray) -> AsyncIterator[bytes]:
    view = memoryview(buffer)
    for start in range(0, len(buffer), UPLOAD_SLICE):
        yield bytes(view[start : start + UPLOAD_SLICE])


class TransferScheduler:
    """
    Runs download/upload phases against ``{path}/{token}`` on ``client``.

    One scheduler belongs to one test run. ``cancel()`` is final: it stops new
    chunk starts, aborts in-flight transfers and interrupts backoff waits,
    for the current phase and any later one.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        path: str = "/api/speedtest",
        concurrency: Optional[int] = None,
        max_attempts: Optional[int] = None,
        backoff_unit: Optional[float] = None,
        phase_timeout: Optional[float] = None,
        progress_interval: Optional[float] = None,
        buffer_pool: Optional[UploadBufferPool] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_speed: Optional[ProgressCallback] = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.client = client
        self.path = path.rstrip("/")
        self.concurrency = concurrency or settings.speedtest_concurrency
        self.max_attempts = max_attempts or settings.speedtest_max_attempts
        self.backoff_unit = settings.speedtest_backoff_unit if backoff_unit is None else backoff_unit
        self.phase_timeout = phase_timeout or settings.speedtest_phase_timeout
        self.progress_interval = (
            settings.speedtest_progress_interval if progress_interval is None else progress_interval
        )
        self.buffer_pool = buffer_pool or UploadBufferPool()
        self.on_progress = on_progress
        self.on_speed = on_speed
        self._clock = clock
        self.cancelled = False
        self._cancel_event: Optional[asyncio.Event] = None
        self._in_flight: Set[asyncio.Task] = set()
        self._last_progress = 0.0
        self.plan: Optional[TransferPlan] = None

    def cancel(self) -> None:
        """Raise the shared cancellation signal."""
        if self.cancelled:
            return
        self.cancelled = True
        logger.info("Speed test cancelled")
        if self._cancel_event is not None:
            self._cancel_event.set()
        for task in list(self._in_flight):
            task.cancel()

    def _begin_phase(self) -> None:
        if self.cancelled:
            raise TransferCancelledError()
        self._cancel_event = asyncio.Event()

    async def run_phase(
        self,
        direction,
        total_bytes: int,
        chunk_size: Optional[int] = None,
        concurrency: Optional[int] = None,
    ) -> float:
        """
        Transfer ``total_bytes`` in chunks and return the speed in Mbps.

        Raises:
            TransferFailedError: A chunk failed on every attempt
            TransferTimeoutError: The phase exceeded ``phase_timeout``
            TransferCancelledError: ``cancel()`` was called
        """
        direction = Direction(direction)
        plan = TransferPlan(
            direction=direction,
            total_bytes=total_bytes,
            chunk_size=chunk_size or settings.chunk_size,
            concurrency=concurrency or self.concurrency,
            max_attempts=self.max_attempts,
        )
        self.plan = plan
        self._begin_phase()
        logger.info(
            f"Starting {direction.value} phase: {plan.total_chunks} chunk(s) of "
            f"{plan.chunk_size} bytes, concurrency {plan.concurrency}"
        )

        plan.started_at = self._last_progress = self._clock()
        try:
            await asyncio.wait_for(self._drive(plan), timeout=self.phase_timeout)
        except asyncio.TimeoutError:
            self.cancel()
            logger.error(f"{direction.value} phase timed out after {self.phase_timeout}s")
            raise TransferTimeoutError(
                f"{direction.value} phase timed out after {self.phase_timeout:.0f}s"
            )

        elapsed = self._clock() - plan.started_at
        self._report(self.on_progress, direction, 100.0)
        speed = mbps(plan.bytes_transferred, elapsed)
        logger.info(f"{direction.value} phase finished: {speed:.2f} Mbps in {elapsed:.2f}s")
        return speed

    async def _drive(self, plan: TransferPlan) -> None:
        try:
            while plan.pending or plan.in_flight:
                while plan.pending and len(plan.in_flight) < plan.concurrency and not self.cancelled:
                    index = plan.pending.popleft()
                    self._start(plan.in_flight, self._run_chunk(plan, index))

                if self.cancelled:
                    raise TransferCancelledError()

                done, _ = await asyncio.wait(plan.in_flight, return_when=asyncio.FIRST_COMPLETED)
                self._settle(plan.in_flight, done)
        finally:
            await self._abort(plan.in_flight)

    async def _run_chunk(self, plan: TransferPlan, index: int) -> None:
        await self.transfer_chunk(plan.direction, index, plan.chunk_size, plan.max_attempts)
        plan.completed_chunks += 1
        plan.bytes_transferred += plan.chunk_size
        now = self._clock()
        if now - self._last_progress >= self.progress_interval:
            self._last_progress = now
            self._report(self.on_progress, plan.direction, plan.progress)

    async def run_timed_phase(
        self,
        direction,
        duration: Optional[float] = None,
        initial_chunk_size: int = 2 * MIB,
        min_chunk_size: int = 256 * KIB,
        max_chunk_size: int = 4 * MIB,
        concurrency: Optional[int] = None,
        speed_interval: float = 0.2,
    ) -> float:
        """
        Transfer for a fixed ``duration`` and return the speed in Mbps.

        Chunk size adapts after every completed chunk so that one chunk takes
        about ``timed_target_chunk_seconds``. The instantaneous speed is sent
        to ``on_speed`` every ``speed_interval`` seconds. Chunks still in
        flight when time is up are aborted and not counted.
        """
        direction = Direction(direction)
        duration = duration or settings.timed_test_duration
        concurrency = concurrency or self.concurrency
        target = settings.timed_target_chunk_seconds
        self._begin_phase()

        started = self._clock()
        deadline = started + duration
        state = {"chunk_size": initial_chunk_size, "bytes": 0, "speed_at": started, "speed_bytes": 0}
        in_flight: Set[asyncio.Task] = set()

        async def run_one(index: int, size: int) -> None:
            chunk_started = self._clock()
            await self.transfer_chunk(direction, index, size, self.max_attempts)
            now = self._clock()
            state["bytes"] += size
            state["chunk_size"] = adjust_chunk_size(
                size, now - chunk_started, target, min_chunk_size, max_chunk_size
            )
            self._report(self.on_progress, direction, min((now - started) / duration * 100, 100.0))
            if now - state["speed_at"] >= speed_interval:
                current = mbps(state["bytes"] - state["speed_bytes"], now - state["speed_at"])
                state["speed_at"], state["speed_bytes"] = now, state["bytes"]
                self._report(self.on_speed, direction, current)

        next_index = 0
        try:
            while self._clock() < deadline:
                while len(in_flight) < concurrency and self._clock() < deadline and not self.cancelled:
                    self._start(in_flight, run_one(next_index, state["chunk_size"]))
                    next_index += 1

                if self.cancelled:
                    raise TransferCancelledError()

                remaining = deadline - self._clock()
                if remaining <= 0:
                    break
                done, _ = await asyncio.wait(
                    in_flight, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                self._settle(in_flight, done)
        finally:
            await self._abort(in_flight)

        elapsed = self._clock() - started
        self._report(self.on_progress, direction, 100.0)
        speed = mbps(state["bytes"], elapsed)
        logger.info(f"Timed {direction.value} phase finished: {speed:.2f} Mbps over {next_index} chunk(s)")
        return speed

    async def transfer_chunk(
        self, direction: Direction, index: int, chunk_size: int, max_attempts: int
    ) -> None:
        """
        Transfer one chunk, retrying with backoff.

        Attempt ``n`` (0-based) that fails waits ``backoff_unit * 2**n``
        seconds before the next one. Nothing is retried after cancellation.
        """
        for attempt in range(max_attempts):
            if self.cancelled:
                raise TransferCancelledError()
            try:
                if direction is Direction.DOWNLOAD:
                    await self._download_chunk(index, chunk_size)
                else:
                    await self._upload_chunk(index, chunk_size)
                return
            except TransientNetworkError as e:
                if self.cancelled:
                    raise TransferCancelledError()
                if attempt + 1 >= max_attempts:
                    logger.error(f"Chunk {index} failed after {max_attempts} attempt(s): {e}")
                    raise TransferFailedError(
                        f"Chunk {index} failed after {max_attempts} attempt(s): {e}",
                        chunk_index=index,
                    )
                delay = self.backoff_unit * 2**attempt
                logger.warning(f"Chunk {index} attempt {attempt + 1} failed ({e}), retrying in {delay:.1f}s")
                await self._backoff(delay)

    async def _backoff(self, delay: float) -> None:
        if delay > 0:
            try:
                await asyncio.wait_for(self._cancel_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        if self.cancelled:
            raise TransferCancelledError()

    def _token(self, index: int) -> str:
        return f"{time.time_ns() // 1_000_000}-{index}"

    async def _download_chunk(self, index: int, chunk_size: int) -> int:
        token = self._token(index)
        try:
            response = await self.client.get(
                f"{self.path}/{token}",
                params={"size": chunk_size},
                headers={**NO_CACHE_HEADERS, "X-Chunk-ID": str(index)},
            )
        except httpx.HTTPError as e:
            raise TransientNetworkError(f"Chunk download failed (ID: {index}): {e}")
        if not response.is_success:
            raise TransientNetworkError(
                f"Chunk download failed (ID: {index}): HTTP {response.status_code}",
                status=response.status_code,
            )
        logger.debug(f"Downloaded chunk {index}: {len(response.content)} bytes")
        return len(response.content)

    async def _upload_chunk(self, index: int, chunk_size: int) -> None:
        buffer = self.buffer_pool.acquire(chunk_size)
        fill_pattern(buffer, index)
        token = self._token(index)
        try:
            response = await self.client.post(
                f"{self.path}/{token}",
                content=_iter_buffer(buffer),
                headers={
                    **NO_CACHE_HEADERS,
                    "Content-Type": "application/octet-stream",
                    "Content-Length": str(chunk_size),
                    "X-Chunk-ID": str(index),
                },
            )
        except httpx.HTTPError as e:
            raise TransientNetworkError(f"Chunk upload failed (ID: {index}): {e}")
        finally:
            self.buffer_pool.give(buffer)

        if not response.is_success:
            try:
                detail = response.json().get("error", "Unknown error")
            except ValueError:
                detail = "Unknown error"
            raise TransientNetworkError(
                f"Upload failed ({response.status_code}): {detail}", status=response.status_code
            )
        logger.debug(f"Uploaded chunk {index}: {chunk_size} bytes")

    def _start(self, in_flight: Set[asyncio.Task], coro) -> None:
        task = asyncio.create_task(coro)
        in_flight.add(task)
        self._in_flight.add(task)

    def _settle(self, in_flight: Set[asyncio.Task], done: Set[asyncio.Task]) -> None:
        """Drop finished tasks and re-raise the first failure among them."""
        error = None
        for task in done:
            in_flight.discard(task)
            self._in_flight.discard(task)
            if task.cancelled():
                error = error or TransferCancelledError()
            elif task.exception() is not None:
                error = error or task.exception()
        if error is not None:
            raise error

    async def _abort(self, in_flight: Set[asyncio.Task]) -> None:
        for task in in_flight:
            task.cancel()
        if in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)
        self._in_flight.difference_update(in_flight)
        in_flight.clear()

    @staticmethod
    def _report(callback: Optional[ProgressCallback], direction: Direction, value: float) -> None:
        if callback is not None:
            callback(direction, value)
