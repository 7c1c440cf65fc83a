"""
ASN / prefix and reverse DNS enrichment for discovered hops.

Lookups go to a DNS-over-HTTPS JSON API (Team Cymru TXT records for ASN
data, PTR records for names) and are cached for a bounded time. Lookup
failures never reach the MTR session: the hop simply keeps its "N/A" values.
"""

import ipaddress
import logging
import threading
import time
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional, Tuple

import httpx

from ..config import settings
from ..errors import EnrichmentError

logger = logging.getLogger(__name__)

NO_DATA = "N/A"


def parse_address(host: str):
    """Return an ``ipaddress`` object for ``host`` or None if it is not an IP literal."""
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        return None


def is_reserved_address(host: str) -> bool:
    """
    True for addresses that have no public ASN.

    Covers RFC1918, CGNAT, loopback, link-local, documentation, multicast
    and reserved IPv4 space, and loopback, link-local and unique-local IPv6.
    """
    address = parse_address(host)
    if address is None:
        return False
    return not address.is_global or address.is_multicast


def should_enrich(host: str) -> bool:
    """Only public IP literals are worth an ASN lookup."""
    if not host or host == NO_DATA:
        return False
    if parse_address(host) is None:
        return False
    return not is_reserved_address(host)


def expand_ipv6(host: str) -> str:
    """Full 32-nibble lowercase form of an IPv6 address, without colons."""
    return ipaddress.IPv6Address(host).exploded.replace(":", "")


def asn_query_key(host: str) -> str:
    """
    Reversed address form used both as the cache key and the DNS label.

    IPv4 keeps only the first three octets (the covering /24), reversed.
    IPv6 uses every nibble of the expanded address, reversed.
    """
    address = parse_address(host)
    if address is None:
        raise ValueError(f"Not an IP address: {host}")
    if address.version == 4:
        return ".".join(reversed(str(address).split(".")[:3]))
    return ".".join(reversed(expand_ipv6(host)))


def ptr_query_name(host: str) -> str:
    address = parse_address(host)
    if address is None:
        raise ValueError(f"Not an IP address: {host}")
    return address.reverse_pointer


def parse_cymru_txt(data: str) -> Optional[Tuple[str, str]]:
    """
    Parse ``"15169 | 8.8.8.0/24 | US | arin | 2014-03-14"`` into (asn, prefix).

    Multi-origin answers list several ASNs in the first field; the first wins.
    """
    fields = [f.strip() for f in data.strip().strip('"').split("|")]
    if len(fields) < 2 or not fields[0] or not fields[1]:
        return None
    return fields[0].split()[0], fields[1].split()[0]


class TTLCache:
    """Thread-safe bounded mapping with per-entry expiry and LRU eviction."""

    def __init__(self, ttl: float, capacity: int, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.capacity = capacity
        self._clock = clock
        self._data: "OrderedDict[str, Tuple[float, Any]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if self._clock() - stored_at >= self.ttl:
                del self._data[key]
                return None
            self._data.move_to_end(key)
            return value

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = (self._clock(), value)
            self._data.move_to_end(key)
            while len(self._data) > self.capacity:
                self._data.popitem(last=False)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class DnsLookupService:
    """DNS-over-HTTPS client with a local time-bounded cache."""

    def __init__(
        self,
        client: Optional[httpx.Client] = None,
        cache: Optional[TTLCache] = None,
        api_url: Optional[str] = None,
    ):
        self.api_url = api_url or settings.dns_api_url
        self.client = client or httpx.Client(timeout=settings.dns_timeout)
        self.cache = cache or TTLCache(settings.dns_cache_ttl, settings.dns_cache_capacity)

    def query(self, name: str, record_type: str) -> Optional[str]:
        """
        Run one DNS query and return the first answer's data.

        Raises:
            EnrichmentError: On transport errors, non-200 replies or bad JSON
        """
        try:
            response = self.client.get(self.api_url, params={"name": name, "type": record_type})
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise EnrichmentError(f"DNS query {record_type} {name} failed: {e}")

        if data.get("Status") != 0:
            return None
        answers = data.get("Answer") or []
        if not answers or not answers[0].get("data"):
            return None
        return answers[0]["data"]

    def cached_asn(self, host: str) -> Optional[Tuple[str, str]]:
        return self.cache.get(f"asn_{asn_query_key(host)}")

    def lookup_asn(self, host: str) -> Optional[Tuple[str, str]]:
        """Return (asn, prefix) for a public IP address, cached per /24 (or per address for IPv6)."""
        key = asn_query_key(host)
        cached = self.cache.get(f"asn_{key}")
        if cached is not None:
            return cached

        zone = "origin6.asn.cymru.com" if ":" in host else "origin.asn.cymru.com"
        data = self.query(f"{key}.{zone}", "TXT")
        if data is None:
            return None
        result = parse_cymru_txt(data)
        if result is not None:
            self.cache.set(f"asn_{key}", result)
        return result

    def reverse_lookup(self, host: str) -> Optional[str]:
        cache_key = f"ptr_{host}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        data = self.query(ptr_query_name(host), "PTR")
        if data is None:
            return None
        name = data.rstrip(".")
        self.cache.set(cache_key, name)
        return name

    def close(self) -> None:
        self.client.close()


class AsnEnricher:
    """
    Fire-and-forget enrichment of hop records.

    Cached answers are applied immediately; everything else runs on a small
    thread pool and writes ``asn``/``prefix``/``hostname`` back to the record
    when it finishes, as long as the hop still shows the same host.
    """

    def __init__(
        self,
        lookup: Optional[DnsLookupService] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        resolve_names: bool = True,
    ):
        self.lookup = lookup or DnsLookupService()
        self.executor = executor or ThreadPoolExecutor(
            max_workers=settings.enrichment_workers, thread_name_prefix="enrich"
        )
        self.resolve_names = resolve_names

    def submit(self, record) -> Optional[Future]:
        host = record.host
        cached = self.lookup.cached_asn(host)
        if cached is not None:
            record.asn, record.prefix = cached
            if not self.resolve_names:
                return None
        return self.executor.submit(self._enrich, record, host)

    def _enrich(self, record, host: str) -> None:
        try:
            result = self.lookup.lookup_asn(host)
            if result is not None and record.host == host:
                record.asn, record.prefix = result

            if self.resolve_names:
                name = self.lookup.reverse_lookup(host)
                if name and record.host == host:
                    record.hostname = name
        except EnrichmentError as e:
            logger.warning(f"Enrichment failed for hop {record.hop} ({host}): {e}")
        except Exception as e:
            logger.warning(f"Unexpected enrichment error for hop {record.hop} ({host}): {e}")

    def shutdown(self, wait: bool = False) -> None:
        self.executor.shutdown(wait=wait)
