from __future__ import annotations

import asyncio
import dataclasses
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from paysentry.logging import get_logger
from paysentry.service.errors import EnrichmentUnavailable, ValidationError
from paysentry.service.geo import GeoEnricher
from paysentry.service.store import SecurityStore
from paysentry.storage.models import (
    AuthEvent,
    AuthEventPage,
    AuthEventType,
    new_id,
    utcnow,
)

logger = get_logger(__name__)
fallback_logger = get_logger("paysentry.audit.fallback")

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 1000


class AuditSink:
    """Append-only writer for authentication and account-security events.

    ``record`` never raises. A failed write is retried once and then written
    to the fallback channel (a dedicated logger plus a JSONL file) so the
    decision that produced the event is never aborted by audit trouble.
    """

    def __init__(
        self,
        store: SecurityStore,
        *,
        geo: Optional[GeoEnricher] = None,
        geo_timeout_seconds: float = 2.0,
        fallback_path: Optional[Path] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.geo = geo
        self.geo_timeout_seconds = geo_timeout_seconds
        self.fallback_path = Path(fallback_path) if fallback_path else None
        self._clock = clock
        self._fallback_lock = threading.Lock()

    async def record(self, event: AuthEvent) -> Optional[str]:
        try:
            event = await self._prepare(event)
        except Exception as exc:
            # Preparation trouble must not lose the event
            logger.error("audit_prepare_failed", error_type=type(exc).__name__, error=str(exc))
            if event.id is None:
                event = dataclasses.replace(event, id=new_id())

        last_error: Optional[Exception] = None
        for attempt in (1, 2):
            try:
                event_id = self.store.append_auth_event(event)
                return event_id
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "audit_write_failed",
                    attempt=attempt,
                    event_type=event.event_type.value,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        self._write_fallback(event, last_error)
        return None

    async def emit(
        self,
        event_type: AuthEventType,
        *,
        success: bool,
        tenant_id: Optional[str] = None,
        principal_id: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        reason: Optional[str] = None,
        severity: str = "low",
        metadata: Optional[dict] = None,
    ) -> Optional[str]:
        return await self.record(
            AuthEvent(
                event_type=event_type,
                success=success,
                tenant_id=tenant_id,
                principal_id=principal_id,
                timestamp=self._clock(),
                ip=ip,
                user_agent=user_agent,
                reason=reason,
                severity=severity,
                metadata=dict(metadata or {}),
            )
        )

    async def _prepare(self, event: AuthEvent) -> AuthEvent:
        changes: dict = {}
        if event.id is None:
            changes["id"] = new_id()
        if event.ip and event.geo is None and self.geo is not None:
            changes["geo"] = await self._enrich(event.ip)
        return dataclasses.replace(event, **changes) if changes else event

    async def _enrich(self, ip: str):
        try:
            return await asyncio.wait_for(self.geo.resolve(ip), timeout=self.geo_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("audit_geo_timeout", ip=ip, timeout=self.geo_timeout_seconds)
        except EnrichmentUnavailable as exc:
            logger.info("audit_geo_unavailable", ip=ip, error=exc.message)
        except Exception as exc:
            logger.warning("audit_geo_failed", ip=ip, error_type=type(exc).__name__, error=str(exc))
        return None

    def _write_fallback(self, event: AuthEvent, error: Optional[Exception]) -> None:
        payload = event.to_dict()
        fallback_logger.error(
            "audit_event_fallback",
            audit_event=payload,
            error_type=type(error).__name__ if error else None,
            error=str(error) if error else None,
        )
        if not self.fallback_path:
            return
        try:
            with self._fallback_lock:
                self.fallback_path.parent.mkdir(parents=True, exist_ok=True)
                with self.fallback_path.open("a", encoding="utf-8") as fh:
                    fh.write(json.dumps(payload, default=str) + "\n")
        except OSError as exc:
            fallback_logger.error(
                "audit_fallback_file_failed",
                path=str(self.fallback_path),
                error=str(exc),
            )

    def list_events(
        self,
        *,
        tenant_id: Optional[str] = None,
        principal_id: Optional[str] = None,
        event_type: Optional[AuthEventType | str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        ip: Optional[str] = None,
        success: Optional[bool] = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> AuthEventPage:
        """Filtered, newest-first page of audit events (``page`` is 1-based)."""
        if page < 1:
            raise ValidationError("page must be >= 1", detail={"page": page})
        if limit < 1:
            raise ValidationError("limit must be >= 1", detail={"limit": limit})
        limit = min(limit, MAX_PAGE_SIZE)
        if start and end and start > end:
            raise ValidationError("start must not be after end")
        if event_type is not None and not isinstance(event_type, AuthEventType):
            try:
                event_type = AuthEventType(event_type)
            except ValueError as exc:
                raise ValidationError(
                    "unknown event type", detail={"event_type": event_type}
                ) from exc
        items, total = self.store.list_auth_events(
            tenant_id=tenant_id,
            principal_id=principal_id,
            event_type=event_type,
            start=start,
            end=end,
            ip=ip,
            success=success,
            offset=(page - 1) * limit,
            limit=limit,
        )
        return AuthEventPage(items=items, total=total, page=page, limit=limit)
