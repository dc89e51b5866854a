from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Tuple, TypeVar

from paysentry.logging import get_logger
from paysentry.service.errors import RateLimitedError, ValidationError

logger = get_logger(__name__)

T = TypeVar("T")


class RateLimitAction(str, Enum):
    LOGIN = "login"
    PASSWORD_RESET = "password_reset"
    API = "api"
    MFA = "mfa"


@dataclass(frozen=True)
class RateLimitPolicy:
    max_attempts: int
    window_seconds: int
    block_seconds: int

    def __post_init__(self) -> None:
        if self.max_attempts < 1 or self.window_seconds < 1 or self.block_seconds < 0:
            raise ValidationError(
                "invalid rate limit policy",
                detail={
                    "max_attempts": self.max_attempts,
                    "window_seconds": self.window_seconds,
                    "block_seconds": self.block_seconds,
                },
            )


DEFAULT_POLICIES: Dict[RateLimitAction, RateLimitPolicy] = {
    RateLimitAction.LOGIN: RateLimitPolicy(5, 15 * 60, 30 * 60),
    RateLimitAction.PASSWORD_RESET: RateLimitPolicy(3, 60 * 60, 60 * 60),
    RateLimitAction.API: RateLimitPolicy(100, 15 * 60, 15 * 60),
    RateLimitAction.MFA: RateLimitPolicy(3, 5 * 60, 15 * 60),
}


def policies_from_settings(settings) -> Dict[RateLimitAction, RateLimitPolicy]:
    policies: Dict[RateLimitAction, RateLimitPolicy] = {}
    for action in RateLimitAction:
        prefix = f"rate_limit_{action.value}"
        policies[action] = RateLimitPolicy(
            max_attempts=int(getattr(settings, f"{prefix}_max_attempts")),
            window_seconds=int(getattr(settings, f"{prefix}_window_seconds")),
            block_seconds=int(getattr(settings, f"{prefix}_block_seconds")),
        )
    return policies


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    max_attempts: int
    reset_at: float
    blocked_until: Optional[float] = None

    @property
    def remaining(self) -> int:
        return max(0, self.max_attempts - self.count)

    def retry_after(self, now: float) -> int:
        if self.allowed or self.blocked_until is None:
            return 0
        return max(1, int(self.blocked_until - now + 0.999))


class RateLimitBackend(Protocol):
    async def hit(self, key: str, now: float, policy: RateLimitPolicy) -> RateLimitDecision: ...

    async def peek(self, key: str) -> Optional[Dict[str, Any]]: ...

    async def clear(self, key: str) -> None: ...

    async def purge(self, now: float) -> int: ...


@dataclass
class _Window:
    count: int
    reset_at: float
    blocked_until: Optional[float] = None


class InMemoryRateLimitBackend:
    """Process-local windows guarded by a single lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._windows: Dict[str, _Window] = {}

    async def hit(self, key: str, now: float, policy: RateLimitPolicy) -> RateLimitDecision:
        with self._lock:
            window = self._windows.get(key)
            if window and window.blocked_until is not None:
                if now < window.blocked_until:
                    return RateLimitDecision(
                        False, window.count, policy.max_attempts, window.reset_at, window.blocked_until
                    )
                window = None
            if window is None or now >= window.reset_at:
                window = _Window(count=0, reset_at=now + policy.window_seconds)
            window.count += 1
            if window.count >= policy.max_attempts:
                window.blocked_until = window.reset_at + policy.block_seconds
            self._windows[key] = window
            return RateLimitDecision(
                True, window.count, policy.max_attempts, window.reset_at, window.blocked_until
            )

    async def peek(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            window = self._windows.get(key)
            if window is None:
                return None
            return {
                "count": window.count,
                "reset_at": window.reset_at,
                "blocked_until": window.blocked_until,
            }

    async def clear(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    async def purge(self, now: float) -> int:
        with self._lock:
            expired = [
                key
                for key, window in self._windows.items()
                if now >= max(window.reset_at, window.blocked_until or 0)
            ]
            for key in expired:
                del self._windows[key]
        return len(expired)


class RedisRateLimitBackend:
    """Windows shared across instances through ``RedisCache``; Redis TTLs expire them."""

    def __init__(self, cache) -> None:
        self.cache = cache

    async def hit(self, key: str, now: float, policy: RateLimitPolicy) -> RateLimitDecision:
        allowed, count, reset_at, blocked_until = await self.cache.hit_rate_window(
            key,
            now=now,
            max_attempts=policy.max_attempts,
            window_seconds=policy.window_seconds,
            block_seconds=policy.block_seconds,
        )
        return RateLimitDecision(allowed, count, policy.max_attempts, reset_at, blocked_until)

    async def peek(self, key: str) -> Optional[Dict[str, Any]]:
        return await self.cache.get_rate_window(key)

    async def clear(self, key: str) -> None:
        await self.cache.clear_rate_window(key)

    async def purge(self, now: float) -> int:
        return 0


class RateLimiter:
    """Sliding window with cool-down block per (identifier, action, origin).

    The attempt that reaches ``max_attempts`` is still admitted and arms the
    block until ``window_reset_at + block_seconds``. Attempts during the block
    are rejected without counting. The first attempt after the block starts a
    fresh window.
    """

    def __init__(
        self,
        backend: Optional[RateLimitBackend] = None,
        *,
        policies: Optional[Dict[RateLimitAction, RateLimitPolicy]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.backend = backend or InMemoryRateLimitBackend()
        self.policies = dict(DEFAULT_POLICIES)
        if policies:
            self.policies.update(policies)
        self._clock = clock

    @staticmethod
    def key_for(identifier: str, action: RateLimitAction | str, origin: Optional[str]) -> str:
        action_value = action.value if isinstance(action, RateLimitAction) else str(action)
        return f"{(identifier or '').strip().lower()}:{action_value}:{origin or 'unknown'}"

    def policy_for(self, action: RateLimitAction | str) -> RateLimitPolicy:
        try:
            return self.policies[RateLimitAction(action)]
        except ValueError as exc:
            raise ValidationError("unknown rate limit action", detail={"action": str(action)}) from exc

    def now(self) -> float:
        return self._clock()

    async def hit(
        self, identifier: str, action: RateLimitAction | str, origin: Optional[str]
    ) -> RateLimitDecision:
        if not identifier or not str(identifier).strip():
            raise ValidationError("identifier is required")
        policy = self.policy_for(action)
        key = self.key_for(identifier, action, origin)
        decision = await self.backend.hit(key, self._clock(), policy)
        if not decision.allowed:
            logger.warning(
                "rate_limit_blocked",
                action=str(RateLimitAction(action).value),
                origin=origin,
                blocked_until=decision.blocked_until,
            )
        elif decision.blocked_until is not None:
            logger.info(
                "rate_limit_threshold_reached",
                action=str(RateLimitAction(action).value),
                origin=origin,
                count=decision.count,
            )
        return decision

    async def guard(
        self,
        identifier: str,
        action: RateLimitAction | str,
        origin: Optional[str],
        operation: Callable[[], Awaitable[T]],
    ) -> T:
        """Run ``operation`` only when the attempt is admitted; raise ``RateLimitedError`` otherwise."""
        decision = await self.hit(identifier, action, origin)
        if not decision.allowed:
            raise RateLimitedError(
                "too many attempts",
                detail={"retry_after": decision.retry_after(self._clock())},
            )
        return await operation()

    async def status(
        self, identifier: str, action: RateLimitAction | str, origin: Optional[str]
    ) -> Tuple[bool, Optional[Dict[str, Any]]]:
        """Peek without counting: (currently_blocked, raw window)."""
        window = await self.backend.peek(self.key_for(identifier, action, origin))
        if not window:
            return False, None
        blocked_until = window.get("blocked_until")
        return bool(blocked_until and self._clock() < blocked_until), window

    async def reset(
        self, identifier: str, action: RateLimitAction | str, origin: Optional[str]
    ) -> None:
        await self.backend.clear(self.key_for(identifier, action, origin))

    async def purge_expired(self) -> int:
        purged = await self.backend.purge(self._clock())
        if purged:
            logger.info("rate_limit_windows_purged", count=purged)
        return purged
