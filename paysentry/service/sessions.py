from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from paysentry.config import SessionOriginPolicy
from paysentry.logging import get_logger, mask_token
from paysentry.service.audit import AuditSink
from paysentry.service.errors import ValidationError
from paysentry.service.store import SecurityStore
from paysentry.storage.models import AuthEventType, Session, utcnow

logger = get_logger(__name__)


class TouchResult(str, Enum):
    VALID = "valid"
    EXPIRED = "expired"
    MISMATCH = "mismatch"


def new_session_token() -> str:
    return secrets.token_urlsafe(32)


class SessionRegistry:
    """Active sessions per principal with an idle timeout and a concurrency cap.

    Eviction on admission is best-effort: two concurrent admissions may both
    evict, which only costs an extra sign-in.
    """

    def __init__(
        self,
        store: SecurityStore,
        audit: AuditSink,
        *,
        idle_timeout: timedelta = timedelta(hours=8),
        max_concurrent: int = 5,
        origin_policy: SessionOriginPolicy = SessionOriginPolicy.LOG,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if max_concurrent < 1:
            raise ValidationError("max_concurrent must be >= 1")
        self.store = store
        self.audit = audit
        self.idle_timeout = idle_timeout
        self.max_concurrent = max_concurrent
        self.origin_policy = SessionOriginPolicy(origin_policy)
        self._clock = clock

    async def admit(
        self,
        principal_id: str,
        token: str,
        origin: Optional[str],
        *,
        tenant_id: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        if not token:
            raise ValidationError("session token is required")
        existing = self.store.list_principal_sessions(principal_id)
        overflow = len(existing) - self.max_concurrent + 1
        if overflow > 0:
            for victim in sorted(existing, key=lambda s: s.last_activity)[:overflow]:
                if self.store.delete_session(victim.token):
                    logger.info(
                        "session_evicted",
                        principal_id=principal_id,
                        token=mask_token(victim.token),
                    )
                    await self.audit.emit(
                        AuthEventType.SESSION_REVOKED,
                        success=True,
                        tenant_id=victim.tenant_id,
                        principal_id=principal_id,
                        ip=victim.origin,
                        reason="concurrent_session_limit",
                        metadata={"session": mask_token(victim.token)},
                    )
        now = self._clock()
        session = Session(
            token=token,
            principal_id=principal_id,
            origin=origin,
            tenant_id=tenant_id,
            user_agent=user_agent,
            created_at=now,
            last_activity=now,
        )
        return self.store.create_session(session)

    async def touch(self, token: str, origin: Optional[str]) -> TouchResult:
        session = self.store.get_session(token)
        if session is None:
            return TouchResult.EXPIRED
        now = self._clock()
        if now - session.last_activity > self.idle_timeout:
            self.store.delete_session(token)
            await self.audit.emit(
                AuthEventType.SESSION_EXPIRED,
                success=False,
                tenant_id=session.tenant_id,
                principal_id=session.principal_id,
                ip=origin,
                reason="idle_timeout",
                metadata={"session": mask_token(token)},
            )
            return TouchResult.EXPIRED

        if session.origin and origin and origin != session.origin:
            logger.warning(
                "session_origin_mismatch",
                principal_id=session.principal_id,
                expected=session.origin,
                actual=origin,
                policy=self.origin_policy.value,
            )
            await self.audit.emit(
                AuthEventType.SESSION_ORIGIN_MISMATCH,
                success=False,
                tenant_id=session.tenant_id,
                principal_id=session.principal_id,
                ip=origin,
                reason="IP address changed during session",
                severity="medium",
                metadata={
                    "session": mask_token(token),
                    "original_ip": session.origin,
                    "new_ip": origin,
                    "policy": self.origin_policy.value,
                },
            )
            if self.origin_policy == SessionOriginPolicy.REVOKE:
                await self.revoke(token, "origin_mismatch")
            else:
                self.store.touch_session(token, now)
            return TouchResult.MISMATCH

        self.store.touch_session(token, now)
        return TouchResult.VALID

    async def authenticate(self, token: Optional[str], origin: Optional[str]) -> Optional[Session]:
        """Resolve a bearer token to its live session, applying the idle and origin rules."""
        if not token:
            return None
        if await self.touch(token, origin) == TouchResult.EXPIRED:
            return None
        # None when the origin policy just revoked it
        return self.store.get_session(token)

    async def revoke(
        self,
        token: str,
        reason: str,
        *,
        event_type: AuthEventType = AuthEventType.SESSION_REVOKED,
        origin: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        session = self.store.get_session(token)
        if session is None or not self.store.delete_session(token):
            return False
        await self.audit.emit(
            event_type,
            success=True,
            tenant_id=session.tenant_id,
            principal_id=session.principal_id,
            ip=origin,
            user_agent=user_agent,
            reason=reason,
            metadata={"session": mask_token(token)},
        )
        return True

    async def revoke_principal(self, principal_id: str, reason: str) -> int:
        count = self.store.delete_principal_sessions(principal_id)
        if count:
            await self.audit.emit(
                AuthEventType.SESSION_REVOKED,
                success=True,
                principal_id=principal_id,
                reason=reason,
                metadata={"sessions": count},
            )
        return count

    def purge_expired(self) -> int:
        purged = self.store.purge_idle_sessions(self._clock() - self.idle_timeout)
        if purged:
            logger.info("idle_sessions_purged", count=purged)
        return purged
