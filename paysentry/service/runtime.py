from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from paysentry.config import get_settings, reset_settings_cache
from paysentry.logging import get_logger
from paysentry.service.admin import AdminService
from paysentry.service.audit import AuditSink
from paysentry.service.authorization import AuthorizationService
from paysentry.service.geo import GeoEnricher
from paysentry.service.grants import GrantResolver
from paysentry.service.identity import PasswordIdentityProvider
from paysentry.service.lockout import LockoutGuard
from paysentry.service.login import LoginSecurityService
from paysentry.service.notify import build_notifier
from paysentry.service.permissions import PermissionRegistry
from paysentry.service.rate_limit import (
    InMemoryRateLimitBackend,
    RateLimiter,
    RedisRateLimitBackend,
    policies_from_settings,
)
from paysentry.service.roles import RoleStore
from paysentry.service.sessions import SessionRegistry
from paysentry.storage.memory import MemoryStore
from paysentry.storage.postgres import PostgresStore
from paysentry.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton engine components for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids event loop binding issues
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared rate-limit windows; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate-limit windows "
                    "are process-local."
                ),
                mode=fallback_mode,
            )

        self.registry = PermissionRegistry(self.store)
        self.roles = RoleStore(self.store)
        self.grants = GrantResolver(self.store)
        self.authorization = AuthorizationService(
            self.store,
            self.roles,
            self.grants,
            cache_ttl_seconds=self.settings.authz_cache_ttl_seconds,
        )
        self.geo = GeoEnricher.from_settings(self.settings, cache=self.cache)
        self.audit = AuditSink(
            self.store,
            geo=self.geo,
            geo_timeout_seconds=self.settings.geo_timeout_seconds,
            fallback_path=self.settings.audit_fallback_file(),
        )
        self.notifier = build_notifier(self.settings)
        self.rate_limiter = RateLimiter(
            RedisRateLimitBackend(self.cache) if self.cache else InMemoryRateLimitBackend(),
            policies=policies_from_settings(self.settings),
        )
        self.lockout = LockoutGuard(
            self.store,
            self.audit,
            notifier=self.notifier,
            default_threshold=self.settings.default_lockout_threshold,
        )
        self.sessions = SessionRegistry(
            self.store,
            self.audit,
            idle_timeout=timedelta(minutes=self.settings.session_idle_timeout_minutes),
            max_concurrent=self.settings.max_concurrent_sessions,
            origin_policy=self.settings.session_origin_policy,
        )
        self.identity = PasswordIdentityProvider(self.store)
        self.login = LoginSecurityService(
            self.store,
            identity=self.identity,
            rate_limiter=self.rate_limiter,
            lockout=self.lockout,
            sessions=self.sessions,
            audit=self.audit,
        )
        self.admin = AdminService(
            self.store,
            registry=self.registry,
            roles=self.roles,
            authorization=self.authorization,
            sessions=self.sessions,
        )

        logger.info(
            "runtime_initialized",
            store_type="memory" if self.settings.use_memory_store else "postgres",
            redis_enabled=self.cache is not None,
            geo_enabled=self.settings.geo_enabled,
            webhook_notifier=bool(self.settings.lockout_webhook_url),
            session_origin_policy=self.settings.session_origin_policy.value,
        )

    async def run_maintenance(self) -> dict:
        """Purge idle sessions and expired rate-limit windows; returns counts."""
        sessions = self.sessions.purge_expired()
        windows = await self.rate_limiter.purge_expired()
        logger.info("maintenance_completed", sessions_purged=sessions, windows_purged=windows)
        return {"sessions_purged": sessions, "rate_limit_windows_purged": windows}

    async def close(self) -> None:
        if self.cache is not None:
            try:
                await self.cache.close()
            except Exception as exc:
                logger.warning("cache_close_failed", error=str(exc))
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            close_store()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None
    try:
        if loop is not None:
            loop.create_task(cache.close())
        else:
            asyncio.run(cache.close())
    except Exception as exc:
        # Connection may already be closed
        logger.debug("cache_close_failed", error=str(exc))


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            _close_cache(runtime.cache)
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
