from __future__ import annotations

import ipaddress
import os
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from paysentry.logging import get_logger

logger = get_logger(__name__)


class SessionOriginPolicy(str, Enum):
    """What to do when a session is used from a different origin than it was issued to.

    - LOG: record a medium-severity event, keep the session valid
    - REVOKE: record the event and revoke the session
    """

    LOG = "log"
    REVOKE = "revoke"


def env_field(default: Any, env: str, **kwargs):
    """A settings field read from the environment variable ``env``."""
    return Field(default, json_schema_extra={"env": env}, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authorization and account-security engine."""

    database_url: str = env_field(
        "postgresql://localhost:5432/paysentry", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/paysentry", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (sync Redis client, runtime resets).",
    )

    # Lockout
    default_lockout_threshold: int = env_field(
        5,
        "DEFAULT_LOCKOUT_THRESHOLD",
        description="Failed attempts before lock when a tenant has no threshold configured",
    )

    # Sessions
    session_idle_timeout_minutes: int = env_field(480, "SESSION_IDLE_TIMEOUT_MINUTES")
    max_concurrent_sessions: int = env_field(5, "MAX_CONCURRENT_SESSIONS")
    session_origin_policy: SessionOriginPolicy = env_field(
        SessionOriginPolicy.LOG,
        "SESSION_ORIGIN_POLICY",
        description="log (default) keeps sessions valid on origin mismatch; revoke invalidates them",
    )

    # Comma-separated addresses or CIDRs whose X-Forwarded-For is honoured; empty means
    # the socket peer is always the client origin
    trusted_proxies: str = env_field("", "TRUSTED_PROXIES")

    # Authorization snapshot cache; keep short so admin changes apply quickly
    authz_cache_ttl_seconds: float = env_field(5.0, "AUTHZ_CACHE_TTL_SECONDS")

    # Geolocation enrichment
    geo_enabled: bool = env_field(True, "GEO_ENABLED")
    geo_provider_url: str = env_field("https://ipapi.co/{ip}/json/", "GEO_PROVIDER_URL")
    geo_timeout_seconds: float = env_field(2.0, "GEO_TIMEOUT_SECONDS")
    geo_cache_ttl_seconds: int = env_field(3600, "GEO_CACHE_TTL_SECONDS")

    # Lockout notifications
    lockout_webhook_url: str | None = env_field(None, "LOCKOUT_WEBHOOK_URL")
    notify_timeout_seconds: float = env_field(5.0, "NOTIFY_TIMEOUT_SECONDS")

    # Audit fallback channel; defaults to SHARED_FS_ROOT/audit/fallback.jsonl
    audit_fallback_path: str | None = env_field(None, "AUDIT_FALLBACK_PATH")

    # Rate limit policies (attempts / window / block)
    rate_limit_login_max_attempts: int = env_field(5, "RATE_LIMIT_LOGIN_MAX_ATTEMPTS")
    rate_limit_login_window_seconds: int = env_field(15 * 60, "RATE_LIMIT_LOGIN_WINDOW_SECONDS")
    rate_limit_login_block_seconds: int = env_field(30 * 60, "RATE_LIMIT_LOGIN_BLOCK_SECONDS")
    rate_limit_password_reset_max_attempts: int = env_field(
        3, "RATE_LIMIT_PASSWORD_RESET_MAX_ATTEMPTS"
    )
    rate_limit_password_reset_window_seconds: int = env_field(
        60 * 60, "RATE_LIMIT_PASSWORD_RESET_WINDOW_SECONDS"
    )
    rate_limit_password_reset_block_seconds: int = env_field(
        60 * 60, "RATE_LIMIT_PASSWORD_RESET_BLOCK_SECONDS"
    )
    rate_limit_api_max_attempts: int = env_field(100, "RATE_LIMIT_API_MAX_ATTEMPTS")
    rate_limit_api_window_seconds: int = env_field(15 * 60, "RATE_LIMIT_API_WINDOW_SECONDS")
    rate_limit_api_block_seconds: int = env_field(15 * 60, "RATE_LIMIT_API_BLOCK_SECONDS")
    rate_limit_mfa_max_attempts: int = env_field(3, "RATE_LIMIT_MFA_MAX_ATTEMPTS")
    rate_limit_mfa_window_seconds: int = env_field(5 * 60, "RATE_LIMIT_MFA_WINDOW_SECONDS")
    rate_limit_mfa_block_seconds: int = env_field(15 * 60, "RATE_LIMIT_MFA_BLOCK_SECONDS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def env_names(cls) -> dict[str, str]:
        names = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra if isinstance(field.json_schema_extra, dict) else {}
            names[name] = extra.get("env", name.upper())
        return names

    @classmethod
    def from_env(cls, env_file: str = ".env") -> "Settings":
        """Process environment first, then ``env_file``, then field defaults."""
        sources = {k: v for k, v in dotenv_values(env_file).items() if v is not None}
        sources.update(os.environ)
        return cls(
            **{name: sources[env] for name, env in cls.env_names().items() if env in sources}
        )

    @field_validator("session_origin_policy")
    @classmethod
    def _validate_origin_policy(cls, value: SessionOriginPolicy) -> SessionOriginPolicy:
        return SessionOriginPolicy(value)

    @field_validator(
        "default_lockout_threshold",
        "max_concurrent_sessions",
        "session_idle_timeout_minutes",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if int(value) < 1:
            raise ValueError("must be >= 1")
        return int(value)

    @field_validator("trusted_proxies")
    @classmethod
    def _valid_proxies(cls, value: str | None) -> str:
        for entry in _split_csv(value):
            ipaddress.ip_network(entry, strict=False)
        return value or ""

    def trusted_proxy_networks(self) -> list:
        return [
            ipaddress.ip_network(entry, strict=False)
            for entry in _split_csv(self.trusted_proxies)
        ]

    @field_validator("geo_timeout_seconds")
    @classmethod
    def _bounded_geo_timeout(cls, value: float) -> float:
        # A slow geolocation provider must never hold up a login response
        if value <= 0:
            return 2.0
        if value > 10:
            logger.warning("geo_timeout_clamped", requested=value, applied=10.0)
            return 10.0
        return value

    def audit_fallback_file(self) -> Path:
        if self.audit_fallback_path:
            return Path(self.audit_fallback_path)
        return Path(self.shared_fs_root) / "audit" / "fallback.jsonl"


def _split_csv(value: str | None) -> list[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings_cache() -> None:
    global _settings
    _settings = None
