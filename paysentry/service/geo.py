from __future__ import annotations

import asyncio
import ipaddress
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

import httpx

from paysentry.logging import get_logger
from paysentry.service.errors import EnrichmentUnavailable
from paysentry.storage.models import LOCAL_GEO, GeoLocation

logger = get_logger(__name__)

USER_AGENT = "PaySentry-Security/1.0"


def is_private_ip(ip: str) -> bool:
    """True for loopback, RFC1918, link-local and other non-routable addresses."""
    try:
        addr = ipaddress.ip_address(ip.strip())
    except ValueError:
        return False
    return (
        addr.is_private
        or addr.is_loopback
        or addr.is_link_local
        or addr.is_reserved
        or addr.is_unspecified
    )


class GeoEnricher:
    """Resolve public IPs to coarse location metadata.

    Lookups are time-boxed by ``timeout_seconds`` and cached per IP. Private
    and loopback addresses resolve to the ``Local`` placeholder without a
    network call. ``resolve`` raises ``EnrichmentUnavailable`` on provider
    failure; callers on the audit path turn that into ``geo=None``.
    """

    def __init__(
        self,
        *,
        provider_url: str = "https://ipapi.co/{ip}/json/",
        timeout_seconds: float = 2.0,
        cache_ttl_seconds: int = 3600,
        enabled: bool = True,
        cache: Any = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider_url = provider_url
        self.timeout_seconds = timeout_seconds
        self.cache_ttl_seconds = cache_ttl_seconds
        self.enabled = enabled
        self.cache = cache
        self._transport = transport
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._local_cache: Dict[str, Tuple[float, GeoLocation]] = {}

    @classmethod
    def from_settings(cls, settings, *, cache: Any = None) -> "GeoEnricher":
        return cls(
            provider_url=settings.geo_provider_url,
            timeout_seconds=settings.geo_timeout_seconds,
            cache_ttl_seconds=settings.geo_cache_ttl_seconds,
            enabled=settings.geo_enabled,
            cache=cache,
        )

    async def resolve(self, ip: Optional[str]) -> Optional[GeoLocation]:
        if not ip:
            return None
        ip = ip.strip()
        if is_private_ip(ip):
            return LOCAL_GEO
        try:
            ipaddress.ip_address(ip)
        except ValueError:
            logger.debug("geo_invalid_ip", ip=ip)
            return None
        if not self.enabled:
            return None

        cached = await self._cached(ip)
        if cached is not None:
            return cached

        try:
            geo = await asyncio.wait_for(self._fetch(ip), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            logger.warning("geo_lookup_timeout", ip=ip, timeout=self.timeout_seconds)
            raise EnrichmentUnavailable("geolocation lookup timed out") from exc
        await self._remember(ip, geo)
        return geo

    async def _cached(self, ip: str) -> Optional[GeoLocation]:
        now = self._monotonic()
        with self._lock:
            entry = self._local_cache.get(ip)
            if entry and entry[0] > now:
                return entry[1]
            if entry:
                self._local_cache.pop(ip, None)
        if self.cache is not None:
            try:
                payload = await self.cache.get_geo(ip)
            except Exception as exc:
                logger.warning("geo_cache_read_failed", error=str(exc))
                payload = None
            if payload:
                geo = GeoLocation.from_dict(payload)
                if geo is not None:
                    with self._lock:
                        self._local_cache[ip] = (now + self.cache_ttl_seconds, geo)
                return geo
        return None

    async def _remember(self, ip: str, geo: GeoLocation) -> None:
        with self._lock:
            self._local_cache[ip] = (self._monotonic() + self.cache_ttl_seconds, geo)
        if self.cache is not None:
            try:
                await self.cache.set_geo(ip, geo.to_dict(), self.cache_ttl_seconds)
            except Exception as exc:
                logger.warning("geo_cache_write_failed", error=str(exc))

    async def _fetch(self, ip: str) -> GeoLocation:
        url = self.provider_url.format(ip=ip)
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds, transport=self._transport
            ) as client:
                resp = await client.get(url, headers={"User-Agent": USER_AGENT})
        except httpx.HTTPError as exc:
            logger.warning("geo_lookup_failed", ip=ip, error=str(exc))
            raise EnrichmentUnavailable("geolocation provider unreachable") from exc
        if resp.status_code >= 400:
            logger.warning("geo_lookup_http_error", ip=ip, status_code=resp.status_code)
            raise EnrichmentUnavailable(
                "geolocation provider error", detail={"status_code": resp.status_code}
            )
        try:
            data = resp.json()
        except ValueError as exc:
            raise EnrichmentUnavailable("geolocation response was not JSON") from exc
        if not isinstance(data, dict) or data.get("error"):
            reason = data.get("reason") if isinstance(data, dict) else None
            logger.warning("geo_lookup_rejected", ip=ip, reason=reason)
            raise EnrichmentUnavailable("geolocation provider rejected lookup")
        return GeoLocation(
            country=data.get("country_name") or data.get("country"),
            city=data.get("city"),
            region=data.get("region"),
            latitude=_as_float(data.get("latitude")),
            longitude=_as_float(data.get("longitude")),
            timezone=data.get("timezone"),
            country_code=data.get("country_code"),
        )

    def clear_cache(self) -> None:
        with self._lock:
            self._local_cache.clear()


def _as_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None
