from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional, Protocol

import httpx

from paysentry.logging import get_logger

logger = get_logger(__name__)


@dataclass
class LockoutNotice:
    principal_id: str
    email: Optional[str]
    tenant_id: Optional[str]
    reason: str
    locked_at: Optional[datetime]
    attempts: int
    locked_by: Optional[str] = None

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["locked_at"] = self.locked_at.isoformat() if self.locked_at else None
        return payload


class LockoutNotifier(Protocol):
    async def account_locked(self, notice: LockoutNotice) -> None: ...


class LogNotifier:
    """Default notifier: records the notice in the service log."""

    async def account_locked(self, notice: LockoutNotice) -> None:
        logger.warning(
            "lockout_notice",
            principal_id=notice.principal_id,
            tenant_id=notice.tenant_id,
            reason=notice.reason,
            attempts=notice.attempts,
        )


class WebhookNotifier:
    """POST lockout notices to an admin webhook."""

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def account_locked(self, notice: LockoutNotice) -> None:
        async with httpx.AsyncClient(
            timeout=self.timeout_seconds, transport=self._transport
        ) as client:
            resp = await client.post(
                self.url,
                json={"type": "account_locked", "notice": notice.to_dict()},
            )
            resp.raise_for_status()
        logger.info(
            "lockout_notice_delivered",
            principal_id=notice.principal_id,
            tenant_id=notice.tenant_id,
        )


def build_notifier(settings) -> LockoutNotifier:
    if settings.lockout_webhook_url:
        return WebhookNotifier(
            settings.lockout_webhook_url, timeout_seconds=settings.notify_timeout_seconds
        )
    return LogNotifier()
