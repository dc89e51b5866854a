from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from paysentry.logging import get_logger
from paysentry.service.audit import AuditSink
from paysentry.service.errors import NotFoundError, ValidationError
from paysentry.service.notify import LockoutNotice, LockoutNotifier, LogNotifier
from paysentry.service.store import SecurityStore
from paysentry.storage.errors import StoreUnavailable
from paysentry.storage.models import AuthEventType, Principal, SecurityState, utcnow

logger = get_logger(__name__)

THRESHOLD_LOCK_REASON = "Failed login attempts exceeded threshold"


@dataclass(frozen=True)
class LockoutStatus:
    principal_id: str
    is_locked: bool
    failed_attempts: int
    threshold: int
    locked_at: Optional[datetime] = None
    locked_by: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "principal_id": self.principal_id,
            "is_locked": self.is_locked,
            "failed_attempts": self.failed_attempts,
            "threshold": self.threshold,
            "locked_at": self.locked_at.isoformat() if self.locked_at else None,
            "locked_by": self.locked_by,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class FailureResult:
    attempts: int
    threshold: int
    locked: bool
    newly_locked: bool


class LockoutGuard:
    """Per-account failed-login counter and the lock/unlock state machine.

    Increments and lock transitions are delegated to the store as one atomic
    step, so concurrent failures observe exactly one ``newly_locked``.
    """

    def __init__(
        self,
        store: SecurityStore,
        audit: AuditSink,
        *,
        notifier: Optional[LockoutNotifier] = None,
        default_threshold: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.audit = audit
        self.notifier = notifier or LogNotifier()
        self.default_threshold = default_threshold
        self._clock = clock

    def threshold_for(self, tenant_id: Optional[str]) -> int:
        if not tenant_id:
            return self.default_threshold
        try:
            settings = self.store.get_security_settings(tenant_id)
        except StoreUnavailable:
            logger.warning("lockout_threshold_lookup_failed", tenant_id=tenant_id)
            return self.default_threshold
        if settings and settings.lockout_threshold:
            return int(settings.lockout_threshold)
        return self.default_threshold

    def is_locked(self, principal_id: str) -> bool:
        """Locked state; an unreachable store counts as locked."""
        try:
            return self.store.get_security_state(principal_id).is_locked
        except StoreUnavailable:
            logger.error("lockout_state_unavailable", principal_id=principal_id)
            return True

    def _principal(self, principal_id: str, tenant_id: Optional[str]) -> Principal:
        """The principal, which must belong to ``tenant_id`` when one is given."""
        principal = self.store.get_principal(principal_id)
        if principal is not None and tenant_id:
            if self.store.get_membership(tenant_id, principal_id) is None:
                principal = None
        if principal is None:
            raise NotFoundError("principal not found", detail={"principal_id": principal_id})
        return principal

    def status(self, principal_id: str, tenant_id: Optional[str] = None) -> LockoutStatus:
        principal = self._principal(principal_id, tenant_id)
        state = self.store.get_security_state(principal_id)
        return self._status(state, self.threshold_for(tenant_id or principal.home_tenant_id))

    @staticmethod
    def _status(state: SecurityState, threshold: int) -> LockoutStatus:
        return LockoutStatus(
            principal_id=state.principal_id,
            is_locked=state.is_locked,
            failed_attempts=state.failed_attempts,
            threshold=threshold,
            locked_at=state.locked_at,
            locked_by=state.locked_by,
            reason=state.lock_reason,
        )

    async def register_failure(
        self,
        principal: Principal,
        tenant_id: Optional[str],
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> FailureResult:
        threshold = self.threshold_for(tenant_id)
        state, newly_locked = self.store.record_failed_login(
            principal.id, threshold, self._clock()
        )
        await self.audit.emit(
            AuthEventType.LOGIN_FAILED,
            success=False,
            tenant_id=tenant_id,
            principal_id=principal.id,
            ip=ip,
            user_agent=user_agent,
            reason=f"Failed login attempt {state.failed_attempts} of {threshold}",
            severity="medium" if state.failed_attempts >= threshold - 1 else "low",
            metadata={**(metadata or {}), "attempts": state.failed_attempts, "threshold": threshold},
        )
        if newly_locked:
            logger.warning(
                "account_locked",
                principal_id=principal.id,
                tenant_id=tenant_id,
                attempts=state.failed_attempts,
                threshold=threshold,
            )
            await self._on_locked(principal, tenant_id, state, ip=ip, user_agent=user_agent)
        return FailureResult(
            attempts=state.failed_attempts,
            threshold=threshold,
            locked=state.is_locked,
            newly_locked=newly_locked,
        )

    def clear_failures(self, principal_id: str) -> bool:
        """Reset the counter after verified credentials.

        Returns False, leaving the counter alone, when a lock landed first.
        """
        state = self.store.reset_failed_logins(principal_id)
        if state.is_locked:
            logger.warning("login_success_after_lock", principal_id=principal_id)
            return False
        return True

    async def register_success(
        self,
        principal: Principal,
        tenant_id: Optional[str],
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> None:
        await self.audit.emit(
            AuthEventType.LOGIN_SUCCESS,
            success=True,
            tenant_id=tenant_id,
            principal_id=principal.id,
            ip=ip,
            user_agent=user_agent,
            metadata=metadata,
        )

    async def lock(
        self,
        principal_id: str,
        *,
        actor: str,
        reason: str,
        tenant_id: Optional[str] = None,
    ) -> LockoutStatus:
        """Admin lock. The counter is raised to the threshold so locked state stays consistent."""
        if not reason or not reason.strip():
            raise ValidationError("lock reason is required")
        principal = self._principal(principal_id, tenant_id)
        tenant_id = tenant_id or principal.home_tenant_id
        threshold = self.threshold_for(tenant_id)
        state, newly_locked = self.store.lock_principal(
            principal_id,
            locked_by=actor,
            reason=reason.strip(),
            now=self._clock(),
            min_attempts=threshold,
        )
        if newly_locked:
            logger.warning("account_locked_by_admin", principal_id=principal_id, actor=actor)
            await self._on_locked(principal, tenant_id, state)
        return self._status(state, threshold)

    async def unlock(
        self, principal_id: str, *, actor: str, tenant_id: Optional[str] = None
    ) -> LockoutStatus:
        principal = self._principal(principal_id, tenant_id)
        tenant_id = tenant_id or principal.home_tenant_id
        previous = self.store.get_security_state(principal_id)
        state = self.store.unlock_principal(principal_id, unlocked_by=actor, now=self._clock())
        await self.audit.emit(
            AuthEventType.ACCOUNT_UNLOCKED,
            success=True,
            tenant_id=tenant_id,
            principal_id=principal_id,
            reason=f"Unlocked by {actor}",
            severity="medium",
            metadata={
                "unlocked_by": actor,
                "was_locked": previous.is_locked,
                "previous_attempts": previous.failed_attempts,
            },
        )
        logger.info("account_unlocked", principal_id=principal_id, actor=actor)
        return self._status(state, self.threshold_for(tenant_id))

    def list_locked(self, tenant_id: Optional[str] = None) -> List[Tuple[Principal, LockoutStatus]]:
        threshold = self.threshold_for(tenant_id)
        return [
            (principal, self._status(state, threshold))
            for principal, state in self.store.list_locked_principals(tenant_id)
        ]

    async def _on_locked(
        self,
        principal: Principal,
        tenant_id: Optional[str],
        state: SecurityState,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        await self.audit.emit(
            AuthEventType.ACCOUNT_LOCKED,
            success=False,
            tenant_id=tenant_id,
            principal_id=principal.id,
            ip=ip,
            user_agent=user_agent,
            reason=state.lock_reason or THRESHOLD_LOCK_REASON,
            severity="high",
            metadata={"attempts": state.failed_attempts, "locked_by": state.locked_by},
        )
        await self._notify(principal, tenant_id, state)

    async def _notify(
        self, principal: Principal, tenant_id: Optional[str], state: SecurityState
    ) -> None:
        try:
            settings = self.store.get_security_settings(tenant_id) if tenant_id else None
        except StoreUnavailable:
            settings = None
        if settings is not None and not settings.email_alerts_enabled:
            logger.info("lockout_notice_disabled", principal_id=principal.id, tenant_id=tenant_id)
            return
        notice = LockoutNotice(
            principal_id=principal.id,
            email=principal.email,
            tenant_id=tenant_id,
            reason=state.lock_reason or THRESHOLD_LOCK_REASON,
            locked_at=state.locked_at,
            attempts=state.failed_attempts,
            locked_by=state.locked_by,
        )
        try:
            await self.notifier.account_locked(notice)
        except Exception as exc:
            # The lock stands regardless of delivery
            logger.error(
                "lockout_notice_failed",
                principal_id=principal.id,
                tenant_id=tenant_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
