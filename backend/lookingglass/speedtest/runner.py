"""
Download-then-upload speed test for a named test size.
"""

import asyncio
import logging
from typing import Dict, NamedTuple, Optional

import httpx

from ..config import MIB
from ..errors import TransferCancelledError, TransferFailedError, TransferTimeoutError
from ..schemas.speedtest import SpeedTestResult
from .buffer_pool import UploadBufferPool
from .scheduler import Direction, ProgressCallback, TransferScheduler

logger = logging.getLogger(__name__)


class PhaseVolumes(NamedTuple):
    download_bytes: int
    upload_bytes: int


TEST_SIZES: Dict[str, PhaseVolumes] = {
    "small": PhaseVolumes(download_bytes=16 * MIB, upload_bytes=4 * MIB),
    "medium": PhaseVolumes(download_bytes=64 * MIB, upload_bytes=16 * MIB),
    "large": PhaseVolumes(download_bytes=128 * MIB, upload_bytes=32 * MIB),
}

FAILURE_MESSAGES = {
    Direction.DOWNLOAD: "Download test failed. Please try again.",
    Direction.UPLOAD: "Upload test failed. Check your connection and try again.",
}


class SpeedTestRunner:
    """
    Sequences a download phase and an upload phase on one shared client.

    Starting a run cancels the run before it. Failures never escape ``run``;
    they come back as a result with an error category and message.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        path: str = "/api/speedtest",
        on_progress: Optional[ProgressCallback] = None,
        buffer_pool: Optional[UploadBufferPool] = None,
        **scheduler_options,
    ):
        self.client = client
        self.path = path
        self.on_progress = on_progress
        self.buffer_pool = buffer_pool or UploadBufferPool()
        self.scheduler_options = scheduler_options
        self.scheduler: Optional[TransferScheduler] = None
        self._active: Optional[asyncio.Task] = None

    def cancel(self) -> None:
        if self.scheduler is not None:
            self.scheduler.cancel()

    async def run(self, size: str = "small") -> SpeedTestResult:
        """
        Run one full test.

        Args:
            size: ``small``, ``medium`` or ``large``

        Raises:
            ValueError: Unknown test size
        """
        if size not in TEST_SIZES:
            raise ValueError(f"Unknown test size '{size}'. Allowed: {', '.join(TEST_SIZES)}")
        volumes = TEST_SIZES[size]

        async def phase(scheduler, direction):
            total = volumes.download_bytes if direction is Direction.DOWNLOAD else volumes.upload_bytes
            return await scheduler.run_phase(direction, total)

        return await self._execute(size, phase)

    async def run_timed(self, duration: Optional[float] = None) -> SpeedTestResult:
        """Run a fixed-duration test with adaptive chunk sizes in both directions."""

        async def phase(scheduler, direction):
            return await scheduler.run_timed_phase(direction, duration)

        return await self._execute("timed", phase)

    async def _execute(self, size: str, phase) -> SpeedTestResult:
        previous = self._active
        current = asyncio.current_task()
        self.cancel()
        if previous is not None and previous is not current and not previous.done():
            # the old run must finish aborting before the new one sends anything
            await asyncio.wait({previous})
        self._active = current
        scheduler = TransferScheduler(
            self.client,
            path=self.path,
            buffer_pool=self.buffer_pool,
            on_progress=self.on_progress,
            **self.scheduler_options,
        )
        self.scheduler = scheduler

        result = SpeedTestResult(size=size)
        direction = Direction.DOWNLOAD
        logger.info(f"Starting {size} speed test")
        try:
            result.download_mbps = await phase(scheduler, direction)
            direction = Direction.UPLOAD
            result.upload_mbps = await phase(scheduler, direction)
        except TransferTimeoutError as e:
            result.error_category = "timeout"
            result.error_message = e.user_message
        except asyncio.CancelledError:
            scheduler.cancel()
            raise
        except TransferCancelledError:
            result.error_category = "cancelled"
            result.error_message = TransferCancelledError.user_message
        except TransferFailedError as e:
            logger.error(f"Speed test {direction.value} phase failed: {e}")
            result.error_category = "network"
            result.error_message = FAILURE_MESSAGES[direction]
        finally:
            if self.scheduler is scheduler:
                self.scheduler = None
            if self._active is current:
                self._active = None

        if result.ok:
            logger.info(
                f"Speed test finished: {result.download_mbps:.2f} Mbps down, "
                f"{result.upload_mbps:.2f} Mbps up"
            )
        return result
