from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

RateLimitState = Tuple[bool, int, float, Optional[float]]


class RedisCache:
    """Shared counters for rate-limit windows plus a small lookup cache."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic window/block bookkeeping. Returns {allowed, count, reset_at, blocked_until}.
    # Attempts during a block are rejected without incrementing; the first attempt
    # after the block expires starts a fresh window.
    _RATE_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local max_attempts = tonumber(ARGV[2])
local window = tonumber(ARGV[3])
local block = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'count', 'reset_at', 'blocked_until')
local count = tonumber(data[1]) or 0
local reset_at = tonumber(data[2])
local blocked_until = tonumber(data[3])

if blocked_until ~= nil then
  if now < blocked_until then
    return {0, count, tostring(reset_at), tostring(blocked_until)}
  end
  count = 0
  reset_at = nil
  blocked_until = nil
  redis.call('HDEL', key, 'blocked_until')
end

if reset_at == nil or now >= reset_at then
  count = 0
  reset_at = now + window
end

count = count + 1
local expires = reset_at
if count >= max_attempts then
  blocked_until = reset_at + block
  expires = blocked_until
  redis.call('HSET', key, 'count', count, 'reset_at', reset_at, 'blocked_until', blocked_until)
else
  redis.call('HSET', key, 'count', count, 'reset_at', reset_at)
end
redis.call('EXPIRE', key, math.max(math.ceil(expires - now), 1))
return {1, count, tostring(reset_at), tostring(blocked_until or '')}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._rate_window = self.client.register_script(self._RATE_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client avoids binding the async pool to a startup loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _rate_key(key: str) -> str:
        """Hash the composite key so delimiters inside identifiers cannot collide."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    @staticmethod
    def _parse_rate_result(raw: Any) -> RateLimitState:
        allowed, count, reset_at, blocked_until = raw
        return (
            bool(int(allowed)),
            int(count),
            float(reset_at),
            float(blocked_until) if blocked_until not in (None, "", "nil") else None,
        )

    @staticmethod
    def _parse_rate_hash(data: Dict[str, str]) -> Optional[Dict[str, Any]]:
        if not data:
            return None
        return {
            "count": int(data.get("count") or 0),
            "reset_at": float(data["reset_at"]) if data.get("reset_at") else None,
            "blocked_until": float(data["blocked_until"]) if data.get("blocked_until") else None,
        }

    async def hit_rate_window(
        self, key: str, *, now: float, max_attempts: int, window_seconds: int, block_seconds: int
    ) -> RateLimitState:
        raw = await self._rate_window(
            keys=[self._rate_key(key)],
            args=[now, max_attempts, window_seconds, block_seconds],
        )
        return self._parse_rate_result(raw)

    async def get_rate_window(self, key: str) -> Optional[Dict[str, Any]]:
        return self._parse_rate_hash(await self.client.hgetall(self._rate_key(key)))

    async def clear_rate_window(self, key: str) -> None:
        await self.client.delete(self._rate_key(key))

    async def get_geo(self, ip: str) -> Optional[dict]:
        cached = await self.client.get(f"geo:{ip}")
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None

    async def set_geo(self, ip: str, payload: dict, ttl_seconds: int) -> None:
        await self.client.set(f"geo:{ip}", json.dumps(payload), ex=max(1, int(ttl_seconds)))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for tests and TEST_MODE.

    Uses a synchronous client internally to avoid event loop binding issues in
    pytest, but exposes the same awaitable methods as ``RedisCache``.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._rate_window = self._sync_client.register_script(
            RedisCache._RATE_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def hit_rate_window(
        self, key: str, *, now: float, max_attempts: int, window_seconds: int, block_seconds: int
    ) -> RateLimitState:
        raw = self._rate_window(
            keys=[RedisCache._rate_key(key)],
            args=[now, max_attempts, window_seconds, block_seconds],
        )
        return RedisCache._parse_rate_result(raw)

    async def get_rate_window(self, key: str) -> Optional[Dict[str, Any]]:
        return RedisCache._parse_rate_hash(
            self._sync_client.hgetall(RedisCache._rate_key(key))
        )

    async def clear_rate_window(self, key: str) -> None:
        self._sync_client.delete(RedisCache._rate_key(key))

    async def get_geo(self, ip: str) -> Optional[dict]:
        cached = self._sync_client.get(f"geo:{ip}")
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None

    async def set_geo(self, ip: str, payload: dict, ttl_seconds: int) -> None:
        self._sync_client.set(f"geo:{ip}", json.dumps(payload), ex=max(1, int(ttl_seconds)))

    async def close(self) -> None:
        self._sync_client.close()
