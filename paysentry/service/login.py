from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from paysentry.logging import get_logger, mask_token
from paysentry.service.audit import AuditSink
from paysentry.service.errors import ValidationError
from paysentry.service.identity import IdentityProvider
from paysentry.service.lockout import LockoutGuard
from paysentry.service.rate_limit import RateLimitAction, RateLimiter
from paysentry.service.sessions import SessionRegistry, new_session_token
from paysentry.service.store import SecurityStore
from paysentry.storage.errors import StoreUnavailable
from paysentry.storage.models import AuthEventType, Principal, Session

logger = get_logger(__name__)

GENERIC_FAILURE_MESSAGE = "Invalid email or password"


class LoginOutcome(str, Enum):
    SESSION = "session"
    LOCKED_OUT = "locked_out"
    RATE_LIMITED = "rate_limited"
    INVALID_CREDENTIALS = "invalid_credentials"


@dataclass(frozen=True)
class LoginResult:
    outcome: LoginOutcome
    session: Optional[Session] = None
    principal_id: Optional[str] = None
    retry_after: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.outcome == LoginOutcome.SESSION

    @property
    def message(self) -> Optional[str]:
        # Identical for every failure so callers cannot tell lockout from a bad password
        return None if self.ok else GENERIC_FAILURE_MESSAGE


class LoginSecurityService:
    """Authentication path: rate limit, lockout gate, verification, session admission."""

    def __init__(
        self,
        store: SecurityStore,
        *,
        identity: IdentityProvider,
        rate_limiter: RateLimiter,
        lockout: LockoutGuard,
        sessions: SessionRegistry,
        audit: AuditSink,
    ) -> None:
        self.store = store
        self.identity = identity
        self.rate_limiter = rate_limiter
        self.lockout = lockout
        self.sessions = sessions
        self.audit = audit

    async def attempt_login(
        self,
        identifier: str,
        secret: str,
        origin: Optional[str],
        *,
        user_agent: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> LoginResult:
        if not identifier or not identifier.strip():
            raise ValidationError("identifier is required")
        if not secret:
            raise ValidationError("secret is required")
        identifier = identifier.strip().lower()

        decision = await self.rate_limiter.hit(identifier, RateLimitAction.LOGIN, origin)
        if not decision.allowed:
            principal = self._lookup_quietly(identifier)
            await self._failed(
                principal,
                tenant_id,
                "rate_limited",
                origin,
                user_agent,
                identifier,
                severity="medium",
            )
            return LoginResult(
                LoginOutcome.RATE_LIMITED,
                principal_id=principal.id if principal else None,
                retry_after=decision.retry_after(self.rate_limiter.now()),
            )

        try:
            principal = self.store.get_principal_by_email(identifier)
        except StoreUnavailable:
            logger.error("login_store_unavailable", origin=origin)
            await self._failed(None, tenant_id, "store_unavailable", origin, user_agent, identifier)
            return LoginResult(LoginOutcome.LOCKED_OUT)

        if principal is not None:
            tenant_id = tenant_id or principal.home_tenant_id
            if self.lockout.is_locked(principal.id):
                await self._failed(
                    principal, tenant_id, "account_locked", origin, user_agent, identifier,
                    severity="medium",
                )
                return LoginResult(LoginOutcome.LOCKED_OUT, principal_id=principal.id)

        try:
            verified = await self.identity.verify(identifier, secret)
        except StoreUnavailable:
            await self._failed(principal, tenant_id, "store_unavailable", origin, user_agent, identifier)
            return LoginResult(LoginOutcome.LOCKED_OUT, principal_id=principal.id if principal else None)
        except Exception as exc:
            logger.error(
                "identity_provider_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            await self._failed(
                principal, tenant_id, "identity_provider_error", origin, user_agent, identifier
            )
            return LoginResult(
                LoginOutcome.INVALID_CREDENTIALS,
                principal_id=principal.id if principal else None,
            )

        if principal is None and verified is not None:
            # External provider knows the subject under another identifier
            principal = verified
            tenant_id = tenant_id or principal.home_tenant_id
            if self.lockout.is_locked(principal.id):
                await self._failed(
                    principal, tenant_id, "account_locked", origin, user_agent, identifier,
                    severity="medium",
                )
                return LoginResult(LoginOutcome.LOCKED_OUT, principal_id=principal.id)

        if verified is None or principal is None or verified.id != principal.id:
            return await self._on_bad_credentials(principal, tenant_id, origin, user_agent, identifier)

        # Counter reset is also the post-verification lock check; no session on a lock
        try:
            if not self.lockout.clear_failures(principal.id):
                await self._failed(
                    principal, tenant_id, "account_locked", origin, user_agent, identifier,
                    severity="medium",
                )
                return LoginResult(LoginOutcome.LOCKED_OUT, principal_id=principal.id)
            session = await self.sessions.admit(
                principal.id,
                new_session_token(),
                origin,
                tenant_id=tenant_id,
                user_agent=user_agent,
            )
        except StoreUnavailable:
            logger.error("login_session_store_unavailable", principal_id=principal.id)
            await self._failed(principal, tenant_id, "store_unavailable", origin, user_agent, identifier)
            return LoginResult(LoginOutcome.LOCKED_OUT, principal_id=principal.id)

        await self.lockout.register_success(
            principal,
            tenant_id,
            ip=origin,
            user_agent=user_agent,
            metadata={"session": mask_token(session.token)},
        )

        await self.rate_limiter.reset(identifier, RateLimitAction.LOGIN, origin)
        logger.info("login_succeeded", principal_id=principal.id, tenant_id=tenant_id)
        return LoginResult(LoginOutcome.SESSION, session=session, principal_id=principal.id)

    async def _on_bad_credentials(
        self,
        principal: Optional[Principal],
        tenant_id: Optional[str],
        origin: Optional[str],
        user_agent: Optional[str],
        identifier: str,
    ) -> LoginResult:
        if principal is None:
            # Unknown identifier: audited, no counter exists to touch
            await self._failed(None, tenant_id, "unknown_identifier", origin, user_agent, identifier)
            return LoginResult(LoginOutcome.INVALID_CREDENTIALS)
        try:
            result = await self.lockout.register_failure(
                principal,
                tenant_id,
                ip=origin,
                user_agent=user_agent,
                metadata={"email": identifier},
            )
        except StoreUnavailable:
            logger.error("login_failure_not_counted", principal_id=principal.id)
            await self._failed(principal, tenant_id, "store_unavailable", origin, user_agent, identifier)
            return LoginResult(LoginOutcome.LOCKED_OUT, principal_id=principal.id)
        if result.locked:
            return LoginResult(LoginOutcome.LOCKED_OUT, principal_id=principal.id)
        return LoginResult(LoginOutcome.INVALID_CREDENTIALS, principal_id=principal.id)

    def _lookup_quietly(self, identifier: str) -> Optional[Principal]:
        try:
            return self.store.get_principal_by_email(identifier)
        except StoreUnavailable:
            return None

    async def _failed(
        self,
        principal: Optional[Principal],
        tenant_id: Optional[str],
        reason: str,
        origin: Optional[str],
        user_agent: Optional[str],
        identifier: str,
        *,
        severity: str = "low",
    ) -> None:
        logger.info(
            "login_rejected",
            reason=reason,
            principal_id=principal.id if principal else None,
            origin=origin,
        )
        await self.audit.emit(
            AuthEventType.LOGIN_FAILED,
            success=False,
            tenant_id=tenant_id or (principal.home_tenant_id if principal else None),
            principal_id=principal.id if principal else None,
            ip=origin,
            user_agent=user_agent,
            reason=reason,
            severity=severity,
            metadata={"email": identifier},
        )

    async def logout(
        self,
        token: str,
        *,
        origin: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        if not token:
            raise ValidationError("session token is required")
        revoked = await self.sessions.revoke(
            token,
            "logout",
            event_type=AuthEventType.LOGOUT,
            origin=origin,
            user_agent=user_agent,
        )
        if not revoked:
            logger.info("logout_unknown_session", session=mask_token(token))
        return revoked
