import asyncio

import httpx
import pytest

from paysentry.service.errors import EnrichmentUnavailable
from paysentry.service.geo import USER_AGENT, GeoEnricher, is_private_ip
from paysentry.storage.models import LOCAL_GEO

PAYLOAD = {
    "ip": "41.90.1.1",
    "city": "Nairobi",
    "region": "Nairobi County",
    "country_name": "Kenya",
    "country_code": "KE",
    "latitude": -1.28,
    "longitude": 36.81,
    "timezone": "Africa/Nairobi",
}


def _enricher(handler, **kwargs):
    return GeoEnricher(transport=httpx.MockTransport(handler), **kwargs)


@pytest.mark.parametrize(
    "ip,expected",
    [
        ("127.0.0.1", True),
        ("10.1.2.3", True),
        ("192.168.0.10", True),
        ("::1", True),
        ("41.90.1.1", False),
        ("not-an-ip", False),
    ],
)
def test_is_private_ip(ip, expected):
    assert is_private_ip(ip) is expected


async def test_private_ip_resolves_locally_without_request():
    def handler(request):
        raise AssertionError("no lookup expected")

    assert await _enricher(handler).resolve("192.168.1.4") == LOCAL_GEO


async def test_public_ip_lookup_maps_fields_and_caches():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json=PAYLOAD)

    enricher = _enricher(handler)
    geo = await enricher.resolve("41.90.1.1")
    again = await enricher.resolve("41.90.1.1")

    assert geo.country == "Kenya"
    assert geo.city == "Nairobi"
    assert geo.latitude == pytest.approx(-1.28)
    assert geo.country_code == "KE"
    assert again == geo
    assert len(requests) == 1
    assert requests[0].headers["User-Agent"] == USER_AGENT
    assert str(requests[0].url) == "https://ipapi.co/41.90.1.1/json/"


async def test_cache_expiry_triggers_new_lookup():
    ticks = [0.0]
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json=PAYLOAD)

    enricher = _enricher(handler, cache_ttl_seconds=60, monotonic=lambda: ticks[0])
    await enricher.resolve("41.90.1.1")
    ticks[0] = 61.0
    await enricher.resolve("41.90.1.1")

    assert len(requests) == 2


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, text="oops"),
        httpx.Response(200, text="<html>"),
        httpx.Response(200, json={"error": True, "reason": "RateLimited"}),
    ],
)
async def test_provider_errors_raise_enrichment_unavailable(response):
    enricher = _enricher(lambda request: response)
    with pytest.raises(EnrichmentUnavailable):
        await enricher.resolve("41.90.1.1")


async def test_transport_error_raises_enrichment_unavailable():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(EnrichmentUnavailable):
        await _enricher(handler).resolve("41.90.1.1")


async def test_timeout_raises_enrichment_unavailable(monkeypatch):
    enricher = GeoEnricher(timeout_seconds=0.05)

    async def slow_fetch(ip):
        await asyncio.sleep(1)

    monkeypatch.setattr(enricher, "_fetch", slow_fetch)
    with pytest.raises(EnrichmentUnavailable):
        await enricher.resolve("41.90.1.1")


async def test_disabled_or_invalid_returns_none():
    def handler(request):
        raise AssertionError("no lookup expected")

    assert await _enricher(handler, enabled=False).resolve("41.90.1.1") is None
    assert await _enricher(handler).resolve("not-an-ip") is None
    assert await _enricher(handler).resolve(None) is None


class _SharedCache:
    def __init__(self):
        self.data = {}

    async def get_geo(self, ip):
        return self.data.get(ip)

    async def set_geo(self, ip, payload, ttl_seconds):
        self.data[ip] = payload


async def test_shared_cache_is_consulted_and_filled():
    shared = _SharedCache()
    shared.data["41.90.1.2"] = {"country": "Uganda", "country_code": "UG"}
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json=PAYLOAD)

    enricher = _enricher(handler, cache=shared)
    cached = await enricher.resolve("41.90.1.2")
    await enricher.resolve("41.90.1.1")

    assert cached.country == "Uganda"
    assert len(requests) == 1
    assert shared.data["41.90.1.1"]["country"] == "Kenya"
