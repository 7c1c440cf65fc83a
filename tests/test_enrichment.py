"""
Unit tests for ASN / reverse DNS enrichment.

DNS-over-HTTPS traffic is served by an httpx mock transport; nothing leaves
the process.
"""
from concurrent.futures import ThreadPoolExecutor

import httpx
import pytest

from lookingglass.errors import EnrichmentError
from lookingglass.probe.enrichment import (
    AsnEnricher,
    DnsLookupService,
    TTLCache,
    asn_query_key,
    expand_ipv6,
    is_reserved_address,
    parse_cymru_txt,
    ptr_query_name,
    should_enrich,
)
from lookingglass.probe.hops import HopRecord


def dns_answer(data, status=0):
    return {"Status": status, "Answer": [{"data": data}] if data is not None else []}


def make_service(handler, cache=None):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return DnsLookupService(
        client=client,
        cache=cache or TTLCache(ttl=3600, capacity=16),
        api_url="https://dns.test/resolve",
    )


class TestAddressClassification:
    """Tests for reserved address detection."""

    @pytest.mark.parametrize(
        "host",
        [
            "10.1.2.3",
            "172.31.255.1",
            "192.168.0.1",
            "100.64.1.1",
            "127.0.0.1",
            "169.254.1.1",
            "192.0.2.1",
            "224.0.0.1",
            "240.0.0.1",
            "::1",
            "fe80::1",
            "fc00::1",
            "fd12:3456::1",
        ],
    )
    def test_reserved(self, host):
        """Test private and special ranges are reserved."""
        assert is_reserved_address(host) is True
        assert should_enrich(host) is False

    @pytest.mark.parametrize("host", ["8.8.8.8", "1.1.1.1", "2001:4860:4860::8888"])
    def test_public(self, host):
        """Test public addresses are enriched."""
        assert is_reserved_address(host) is False
        assert should_enrich(host) is True

    @pytest.mark.parametrize("host", ["", "N/A", "???", "core1.example.net"])
    def test_non_ip_never_enriched(self, host):
        """Test default and non-IP host strings are skipped."""
        assert should_enrich(host) is False


class TestQueryKeys:
    """Tests for reversed address forms."""

    def test_ipv4_key_uses_first_three_octets(self):
        """Test IPv4 keys cover the /24, reversed."""
        assert asn_query_key("8.8.4.4") == "4.8.8"

    def test_ipv6_key_is_nibble_reversed(self):
        """Test IPv6 keys reverse every nibble of the expanded address."""
        expanded = expand_ipv6("2001:db8::1")
        assert expanded == "20010db8000000000000000000000001"
        assert asn_query_key("2001:db8::1") == ".".join(reversed(expanded))

    def test_ptr_name(self):
        """Test PTR names use the arpa zones."""
        assert ptr_query_name("8.8.4.4") == "4.4.8.8.in-addr.arpa"
        assert ptr_query_name("2001:db8::1").endswith(".ip6.arpa")

    def test_key_requires_ip(self):
        """Test non-IP input is rejected."""
        with pytest.raises(ValueError):
            asn_query_key("example.com")


class TestParseCymruTxt:
    """Tests for Team Cymru TXT parsing."""

    def test_quoted_answer(self):
        """Test quotes are stripped and the first two fields returned."""
        assert parse_cymru_txt('"15169 | 8.8.8.0/24 | US | arin | 2014-03-14"') == ("15169", "8.8.8.0/24")

    def test_multi_origin(self):
        """Test the first ASN wins for multi-origin prefixes."""
        assert parse_cymru_txt("13335 209242 | 1.1.1.0/24 | AU | apnic |") == ("13335", "1.1.1.0/24")

    def test_unusable(self):
        """Test incomplete answers give None."""
        assert parse_cymru_txt("no pipes here") is None
        assert parse_cymru_txt(" | 1.1.1.0/24") is None


class TestTTLCache:
    """Tests for the expiring cache."""

    def test_expiry(self):
        """Test entries disappear once their validity has passed."""
        now = [1000.0]
        cache = TTLCache(ttl=60, capacity=10, clock=lambda: now[0])
        cache.set("a", 1)
        now[0] += 59
        assert cache.get("a") == 1
        now[0] += 1
        assert cache.get("a") is None
        assert len(cache) == 0

    def test_lru_eviction(self):
        """Test the least recently used entry is evicted at capacity."""
        cache = TTLCache(ttl=60, capacity=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)
        assert cache.get("b") is None
        assert cache.get("a") == 1
        assert cache.get("c") == 3


class TestDnsLookupService:
    """Tests for the DNS-over-HTTPS client."""

    def test_lookup_asn(self):
        """Test an ASN lookup queries the Cymru zone and caches the result."""
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json=dns_answer('"15169 | 8.8.8.0/24 | US | arin | 2014-03-14"'))

        service = make_service(handler)
        assert service.lookup_asn("8.8.8.8") == ("15169", "8.8.8.0/24")
        assert service.lookup_asn("8.8.8.9") == ("15169", "8.8.8.0/24")

        assert len(requests) == 1
        assert requests[0].url.params["name"] == "8.8.8.origin.asn.cymru.com"
        assert requests[0].url.params["type"] == "TXT"
        assert service.cached_asn("8.8.8.200") == ("15169", "8.8.8.0/24")

    def test_lookup_asn_ipv6_zone(self):
        """Test IPv6 lookups go to the origin6 zone."""
        names = []

        def handler(request):
            names.append(request.url.params["name"])
            return httpx.Response(200, json=dns_answer("15169 | 2001:4860::/32 | US | arin |"))

        service = make_service(handler)
        assert service.lookup_asn("2001:4860:4860::8888") == ("15169", "2001:4860::/32")
        assert names[0].endswith(".origin6.asn.cymru.com")

    def test_reverse_lookup_strips_trailing_dot(self):
        """Test PTR answers lose their trailing dot."""
        service = make_service(lambda request: httpx.Response(200, json=dns_answer("dns.google.")))
        assert service.reverse_lookup("8.8.8.8") == "dns.google"
        assert service.cache.get("ptr_8.8.8.8") == "dns.google"

    def test_no_answer(self):
        """Test NXDOMAIN or empty answers give None and are not cached."""
        service = make_service(lambda request: httpx.Response(200, json=dns_answer(None, status=3)))
        assert service.lookup_asn("8.8.8.8") is None
        assert len(service.cache) == 0

    def test_http_failure_raises(self):
        """Test transport failures surface as enrichment errors."""
        service = make_service(lambda request: httpx.Response(503))
        with pytest.raises(EnrichmentError):
            service.lookup_asn("8.8.8.8")


class TestAsnEnricher:
    """Tests for background enrichment of hop records."""

    def test_enriches_record(self):
        """Test ASN, prefix and name are written back to the record."""

        def handler(request):
            if request.url.params["type"] == "TXT":
                return httpx.Response(200, json=dns_answer("15169 | 8.8.8.0/24 | US | arin |"))
            return httpx.Response(200, json=dns_answer("dns.google."))

        enricher = AsnEnricher(lookup=make_service(handler), executor=ThreadPoolExecutor(max_workers=1))
        record = HopRecord(hop=5, host="8.8.8.8")

        enricher.submit(record).result(timeout=5)
        enricher.shutdown(wait=True)

        assert (record.asn, record.prefix, record.hostname) == ("15169", "8.8.8.0/24", "dns.google")

    def test_failure_keeps_sentinels(self):
        """Test a failed lookup is swallowed and fields stay N/A."""
        enricher = AsnEnricher(
            lookup=make_service(lambda request: httpx.Response(500)),
            executor=ThreadPoolExecutor(max_workers=1),
        )
        record = HopRecord(hop=1, host="1.1.1.1")

        enricher.submit(record).result(timeout=5)
        enricher.shutdown(wait=True)

        assert record.asn == "N/A"
        assert record.prefix == "N/A"

    def test_cached_result_applied_immediately(self, mocker):
        """Test a cached ASN is written synchronously without a lookup."""
        service = make_service(lambda request: httpx.Response(500))
        service.cache.set("asn_8.8.8", ("15169", "8.8.8.0/24"))
        executor = mocker.Mock()
        enricher = AsnEnricher(lookup=service, executor=executor, resolve_names=False)
        record = HopRecord(hop=2, host="8.8.8.8")

        assert enricher.submit(record) is None
        assert record.asn == "15169"
        executor.submit.assert_not_called()

    def test_stale_result_discarded(self):
        """Test a result for a host the hop no longer shows is dropped."""
        record = HopRecord(hop=3, host="8.8.8.8")

        def handler(request):
            record.host = "9.9.9.9"
            return httpx.Response(200, json=dns_answer("15169 | 8.8.8.0/24 | US | arin |"))

        enricher = AsnEnricher(
            lookup=make_service(handler),
            executor=ThreadPoolExecutor(max_workers=1),
            resolve_names=False,
        )
        enricher.submit(record).result(timeout=5)
        enricher.shutdown(wait=True)

        assert record.asn == "N/A"
