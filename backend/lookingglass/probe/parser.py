"""
Parser for mtr raw (``-l``) output.

Each line is ``<type> <hop> <args...>``. Only three line types matter here:

    h <hop> <host>            host discovered at this hop
    p <hop> <rtt_ms> <seq>    probe received, round trip in milliseconds
    x <hop> <seq>             probe sent

Anything else (``d`` DNS names, ``t`` timestamps, garbage) is dropped.
"""

import math
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Union


@dataclass(frozen=True)
class HostDiscovered:
    hop: int
    host: str


@dataclass(frozen=True)
class ProbeSent:
    hop: int
    seq: int


@dataclass(frozen=True)
class ProbeReceived:
    hop: int
    rtt: float  # milliseconds
    seq: int


ProbeEvent = Union[HostDiscovered, ProbeSent, ProbeReceived]


_INTEGER = re.compile(r"-?[0-9]+")


def _parse_int(token: str) -> Optional[int]:
    # int() would also take "1_0", "+1" and non-ASCII digits
    if not _INTEGER.fullmatch(token):
        return None
    return int(token)


def _parse_rtt(token: str) -> Optional[float]:
    try:
        value = float(token)
    except ValueError:
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return value


def parse_probe_line(line: str) -> Optional[ProbeEvent]:
    """
    Parse a single line of probe output.

    Args:
        line: One raw line, e.g. ``"p 3 12.5 7"``

    Returns:
        The typed event, or None if the line is not a usable h/p/x event
    """
    tokens = line.split()
    if len(tokens) < 2:
        return None

    kind, args = tokens[0], tokens[1:]
    hop = _parse_int(args[0])
    if hop is None or hop < 0:
        return None

    if kind == "h":
        if len(args) < 2:
            return None
        return HostDiscovered(hop=hop, host=args[1])

    if kind == "p":
        if len(args) < 3:
            return None
        rtt = _parse_rtt(args[1])
        seq = _parse_int(args[2])
        if rtt is None or seq is None:
            return None
        return ProbeReceived(hop=hop, rtt=rtt, seq=seq)

    if kind == "x":
        if len(args) < 2:
            return None
        seq = _parse_int(args[1])
        if seq is None:
            return None
        return ProbeSent(hop=hop, seq=seq)

    return None


def parse_probe_output(text: str) -> List[ProbeEvent]:
    """Split a block of output into lines and parse the usable ones."""
    events = []
    for line in text.splitlines():
        if not line.strip():
            continue
        event = parse_probe_line(line)
        if event is not None:
            events.append(event)
    return events


class ProbeEventParser:
    """Feeds parsed events straight into a hop aggregator, in arrival order."""

    def __init__(self, aggregator):
        self.aggregator = aggregator

    def feed(self, text: str) -> int:
        """
        Parse ``text`` and apply every recognized event.

        Returns:
            Number of events applied
        """
        return self.apply_all(parse_probe_output(text))

    def apply_all(self, events: Iterable[ProbeEvent]) -> int:
        count = 0
        for event in events:
            self.aggregator.apply(event)
            count += 1
        return count
