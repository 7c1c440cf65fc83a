"""
Pydantic schemas for probe commands and live MTR snapshots.
"""

import math
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..probe.runner import COMMANDS, validate_target
from ..errors import MalformedInputError


class CommandRequest(BaseModel):
    """Request to run one allow-listed diagnostic command."""

    target_host: str = Field(alias="targetHost")
    command: str
    cycles: Optional[int] = Field(default=None, ge=1, le=1000)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("command")
    @classmethod
    def validate_command(cls, v):
        """Only commands from the allow-list may run."""
        if v not in COMMANDS:
            raise ValueError(f"Invalid command '{v}'. Allowed: {', '.join(sorted(COMMANDS))}")
        return v

    @field_validator("target_host")
    @classmethod
    def validate_target_host(cls, v):
        """Target must be an IP literal or a hostname."""
        try:
            return validate_target(v)
        except MalformedInputError as e:
            raise ValueError(str(e))


class MtrReportRequest(BaseModel):
    """Request for a bounded live MTR run summarised as one snapshot."""

    target_host: str = Field(alias="targetHost")
    cycles: int = Field(default=10, ge=1, le=1000)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("target_host")
    @classmethod
    def validate_target_host(cls, v):
        try:
            return validate_target(v)
        except MalformedInputError as e:
            raise ValueError(str(e))


class SystemInfo(BaseModel):
    """Identity of the node running the probes."""

    hostname: str
    ips: List[str] = []


def _finite(value: float) -> Optional[float]:
    return value if math.isfinite(value) else None


class HopSnapshot(BaseModel):
    """One hop row. Latencies are milliseconds; None means no data yet."""

    hop: int
    host: str
    hostname: str
    asn: str
    prefix: str
    sent: int
    received: int
    loss_percent: float
    last: Optional[float] = None
    avg: Optional[float] = None
    best: Optional[float] = None
    worst: Optional[float] = None
    stdev: Optional[float] = None
    is_hidden: bool = False

    @classmethod
    def from_record(cls, record) -> "HopSnapshot":
        has_samples = record.has_samples
        return cls(
            hop=record.hop,
            host=record.host,
            hostname=record.hostname,
            asn=record.asn,
            prefix=record.prefix,
            sent=record.sent_count,
            received=record.received_count,
            loss_percent=record.loss_percent,
            last=_finite(record.last),
            avg=record.avg if has_samples else None,
            best=_finite(record.best),
            worst=_finite(record.worst),
            stdev=record.stdev if has_samples else None,
            is_hidden=record.is_hidden,
        )


class MtrSnapshot(BaseModel):
    """Point-in-time view of a live MTR session, hops ordered by number."""

    target: str
    source_hostname: Optional[str] = None
    source_ips: List[str] = []
    started_at: datetime
    state: str
    error: Optional[str] = None
    hops: List[HopSnapshot] = []
