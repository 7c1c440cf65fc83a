"""
Live MTR session: wire messages in, per-hop snapshot out.

A session is created when a live stream starts and lives until the stream
closes, fails or is cancelled. Events are applied strictly in arrival order
from a single task; only enrichment results land from other threads.
"""

import asyncio
import enum
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

from pydantic import ValidationError

from ..schemas.probe import HopSnapshot, MtrSnapshot, SystemInfo
from .hops import HopAggregator, HopRecord
from .parser import ProbeEventParser

logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    """Lifecycle of a live MTR session."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class MtrSession:
    """Owns the hop table for one live MTR run."""

    def __init__(
        self,
        target: str,
        enricher=None,
        aggregator: Optional[HopAggregator] = None,
        source_hostname: Optional[str] = None,
        source_ips: Optional[List[str]] = None,
    ):
        self.target = target
        self.aggregator = aggregator or HopAggregator(enricher=enricher)
        self.parser = ProbeEventParser(self.aggregator)
        self.source_hostname = source_hostname
        self.source_ips = list(source_ips or [])
        self.started_at = datetime.now(timezone.utc)
        self.state = SessionState.RUNNING
        self.error: Optional[str] = None
        self.stderr: List[str] = []

    @property
    def hops(self) -> List[HopRecord]:
        return self.aggregator.snapshot()

    def feed(self, text: str) -> int:
        """Apply raw probe lines. Ignored once the session has ended."""
        if self.state is not SessionState.RUNNING:
            return 0
        return self.parser.feed(text)

    def handle_message(self, message: Dict[str, Any]) -> None:
        if message.get("type") == "system_info":
            try:
                info = SystemInfo.model_validate(message)
            except ValidationError as e:
                logger.warning(f"Ignoring malformed system info for {self.target}: {e}")
                return
            self.source_hostname = info.hostname
            self.source_ips = list(info.ips)
        elif "output" in message:
            self.feed(message["output"] or "")
        elif "error" in message:
            text = str(message["error"]).strip()
            if text:
                self.stderr.append(text)
                logger.info(f"Probe stream for {self.target} reported: {text}")

    def finish(self) -> None:
        if self.state is SessionState.RUNNING:
            self.state = SessionState.COMPLETED

    def fail(self, error: str) -> None:
        if self.state is SessionState.RUNNING:
            self.state = SessionState.FAILED
            self.error = error

    def cancel(self) -> None:
        if self.state is SessionState.RUNNING:
            self.state = SessionState.CANCELLED

    async def consume(self, messages: AsyncIterator[Dict[str, Any]]) -> MtrSnapshot:
        """
        Drain a message stream into the session.

        End of stream completes the session. A transport error fails it but
        keeps every hop accumulated so far. Cancellation marks the session
        cancelled and propagates.

        Returns:
            The final snapshot
        """
        try:
            async for message in messages:
                if self.state is not SessionState.RUNNING:
                    break
                self.handle_message(message)
        except asyncio.CancelledError:
            self.cancel()
            raise
        except Exception as e:
            logger.warning(f"Probe stream for {self.target} failed: {e}")
            self.fail(str(e))
        else:
            self.finish()
        return self.snapshot()

    def snapshot(self) -> MtrSnapshot:
        error = self.error
        if error is None and self.stderr:
            error = self.stderr[-1]
        return MtrSnapshot(
            target=self.target,
            source_hostname=self.source_hostname,
            source_ips=self.source_ips,
            started_at=self.started_at,
            state=self.state.value,
            error=error,
            hops=[HopSnapshot.from_record(record) for record in self.hops],
        )


def format_value(value: Optional[float], digits: int = 2) -> str:
    return "N/A" if value is None else f"{value:.{digits}f}"


def format_report(snapshot: MtrSnapshot, include_hidden: bool = False) -> str:
    """Render a snapshot as an mtr-style text table."""
    source = snapshot.source_hostname or "unknown"
    lines = [
        f"Start: {snapshot.started_at.isoformat()}",
        f"HOST: {source} -> {snapshot.target}",
        f"{'Hop':>3}  {'Host':<40} {'ASN':<10} {'Prefix':<20} "
        f"{'Loss%':>6} {'Snt':>4} {'Last':>8} {'Avg':>8} {'Best':>8} {'Wrst':>8} {'StDev':>8}",
    ]
    for hop in snapshot.hops:
        if hop.is_hidden and not include_hidden:
            continue
        host = hop.host if hop.hostname == "N/A" else f"{hop.hostname} ({hop.host})"
        lines.append(
            f"{hop.hop:>3}. {host:<40} {hop.asn:<10} {hop.prefix:<20} "
            f"{hop.loss_percent:>6.1f} {hop.sent:>4} "
            f"{format_value(hop.last):>8} {format_value(hop.avg):>8} {format_value(hop.best):>8} "
            f"{format_value(hop.worst):>8} {format_value(hop.stdev):>8}"
        )
    if snapshot.error:
        lines.append(f"Error: {snapshot.error}")
    return "\n".join(lines)
