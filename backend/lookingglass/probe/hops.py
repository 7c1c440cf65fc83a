"""
Per-hop running statistics for a live MTR session.

Latencies are kept in milliseconds everywhere. A hop with no valid sample
reports ``best=inf``, ``worst=-inf``, ``avg=0`` and ``last=inf``; renderers
turn those into "N/A".
"""

import logging
import math
import statistics
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, List, NamedTuple, Optional, Set

from ..config import settings
from .enrichment import should_enrich
from .parser import HostDiscovered, ProbeEvent, ProbeReceived, ProbeSent

logger = logging.getLogger(__name__)

NO_DATA = "N/A"


class LatencyStats(NamedTuple):
    avg: float
    best: float
    worst: float
    stdev: float


EMPTY_STATS = LatencyStats(avg=0.0, best=math.inf, worst=-math.inf, stdev=0.0)


def compute_latency_stats(samples: Iterable[float]) -> LatencyStats:
    """
    Compute mean, min, max and population standard deviation.

    Samples that are not positive and finite are ignored. With no valid
    samples the "no data" sentinels are returned.
    """
    valid = [s for s in samples if s > 0 and math.isfinite(s)]
    if not valid:
        return EMPTY_STATS
    best, worst = min(valid), max(valid)
    # fmean can land one ulp outside [best, worst]
    avg = min(max(statistics.fmean(valid), best), worst)
    return LatencyStats(avg=avg, best=best, worst=worst, stdev=statistics.pstdev(valid))


@dataclass
class HopRecord:
    """Running state for one hop index."""

    hop: int
    window_size: int = 100
    host: str = NO_DATA
    hostname: str = NO_DATA
    asn: str = NO_DATA
    prefix: str = NO_DATA
    sent_sequence_numbers: Set[int] = field(default_factory=set)
    received_sequence_numbers: Set[int] = field(default_factory=set)
    latency_window: Deque[float] = field(init=False)
    last: float = math.inf
    best: float = math.inf
    worst: float = -math.inf
    avg: float = 0.0
    stdev: float = 0.0
    loss_percent: float = 0.0
    is_hidden: bool = False

    def __post_init__(self):
        if self.hop < 0:
            raise ValueError(f"Hop number must be non-negative, got {self.hop}")
        self.latency_window = deque(maxlen=self.window_size)

    @property
    def sent_count(self) -> int:
        return len(self.sent_sequence_numbers)

    @property
    def received_count(self) -> int:
        return len(self.received_sequence_numbers)

    @property
    def has_samples(self) -> bool:
        return math.isfinite(self.best)

    def add_sample(self, rtt: float) -> None:
        """Push a round trip time and refresh the derived statistics."""
        self.latency_window.append(rtt)
        stats = compute_latency_stats(self.latency_window)
        self.last = rtt
        self.avg = stats.avg
        self.best = stats.best
        self.worst = stats.worst
        self.stdev = stats.stdev

    def update_loss_percent(self) -> None:
        sent = self.sent_count
        if sent == 0:
            self.loss_percent = 0.0
            return
        received = self.received_count
        # received may contain sequences never seen as sent; clamp to [0, 100]
        lost = max(sent - received, 0)
        self.loss_percent = lost / sent * 100


class HopAggregator:
    """
    Applies probe events to per-hop records.

    Records are created lazily the first time an event names their hop and
    are kept in insertion order; ``snapshot()`` returns them sorted by hop.
    """

    def __init__(
        self,
        enricher=None,
        window_size: Optional[int] = None,
        loss_batch: Optional[int] = None,
    ):
        self.enricher = enricher
        self.window_size = window_size or settings.mtr_window_size
        self.loss_batch = loss_batch or settings.mtr_loss_batch
        self.hops: Dict[int, HopRecord] = {}

    def get_or_create(self, hop: int) -> HopRecord:
        record = self.hops.get(hop)
        if record is None:
            record = HopRecord(hop=hop, window_size=self.window_size)
            self.hops[hop] = record
        return record

    def apply(self, event: ProbeEvent) -> None:
        if isinstance(event, HostDiscovered):
            self.apply_host_discovery(event.hop, event.host)
        elif isinstance(event, ProbeSent):
            self.apply_sent_probe(event.hop, event.seq)
        elif isinstance(event, ProbeReceived):
            self.apply_received_probe(event.hop, event.rtt, event.seq)

    def apply_host_discovery(self, hop: int, host: str) -> None:
        record = self.get_or_create(hop)
        previous = self.hops.get(hop - 1)
        record.host = host
        record.is_hidden = previous is not None and previous.host == host

        if self.enricher is not None and should_enrich(host):
            try:
                self.enricher.submit(record)
            except Exception as e:
                logger.warning(f"Could not schedule enrichment for hop {hop} ({host}): {e}")

    def apply_sent_probe(self, hop: int, seq: int) -> None:
        record = self.get_or_create(hop)
        if seq in record.sent_sequence_numbers:
            return
        record.sent_sequence_numbers.add(seq)
        if record.sent_count % self.loss_batch == 0:
            record.update_loss_percent()

    def apply_received_probe(self, hop: int, rtt: float, seq: int) -> None:
        record = self.get_or_create(hop)
        if seq in record.received_sequence_numbers:
            return
        record.received_sequence_numbers.add(seq)
        record.add_sample(rtt)
        record.update_loss_percent()

    def snapshot(self) -> List[HopRecord]:
        return [self.hops[hop] for hop in sorted(self.hops)]

    def clear(self) -> None:
        self.hops.clear()
