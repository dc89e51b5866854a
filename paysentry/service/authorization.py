from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple

from paysentry.logging import get_logger
from paysentry.service.errors import ValidationError
from paysentry.service.grants import GrantDecision, GrantResolver, combine
from paysentry.service.roles import RoleStore
from paysentry.service.store import SecurityStore
from paysentry.storage.errors import StoreUnavailable
from paysentry.storage.models import utcnow

logger = get_logger(__name__)

Scope = Tuple[str, str]

DEFAULT_SCOPE_TYPE = "resource"

REASON_MEMBERSHIP_INACTIVE = "membership_inactive"
REASON_NO_LICENSE_SEAT = "no_license_seat"
REASON_EXPLICIT_GRANT = "explicit_grant"
REASON_ROLE_PERMISSION = "role_permission"
REASON_NO_PERMISSION = "no_permission"
REASON_STORE_UNAVAILABLE = "store_unavailable"
REASON_EVALUATION_FAILED = "evaluation_failed"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str

    def to_dict(self) -> dict:
        return {"allowed": self.allowed, "reason": self.reason}


class AuthorizationService:
    """Decides whether a principal may perform an action in a tenant.

    Order of evaluation:
    1. inactive or missing membership denies
    2. a missing license seat denies when the tenant gates the action
    3. an explicit grant (allow or deny) decides
    4. role-derived permissions decide, default deny

    Decisions are cached for a few seconds; admin operations call
    ``invalidate`` so changes apply immediately on this node.
    """

    def __init__(
        self,
        store: SecurityStore,
        roles: RoleStore,
        grants: GrantResolver,
        *,
        cache_ttl_seconds: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.roles = roles
        self.grants = grants
        self.cache_ttl_seconds = max(0.0, float(cache_ttl_seconds))
        self._clock = clock
        self._monotonic = monotonic
        self._cache_lock = threading.Lock()
        self._cache: Dict[tuple, Tuple[float, Decision]] = {}

    @staticmethod
    def _validate(principal_id: str, tenant_id: str, action: str, scope: Optional[Scope]) -> None:
        if not principal_id or not str(principal_id).strip():
            raise ValidationError("principal is required")
        if not tenant_id or not str(tenant_id).strip():
            raise ValidationError("tenant is required")
        if not action or not str(action).strip():
            raise ValidationError("action is required")
        if scope is not None:
            if len(scope) != 2 or not all(isinstance(part, str) and part for part in scope):
                raise ValidationError(
                    "scope must be a (scope_type, scope_key) pair", detail={"scope": list(scope)}
                )

    def authorize(
        self,
        principal_id: str,
        tenant_id: str,
        action: str,
        scope: Optional[Scope] = None,
    ) -> Decision:
        self._validate(principal_id, tenant_id, action, scope)
        key = (tenant_id, principal_id, action, tuple(scope) if scope else None)
        cached = self._cache_get(key)
        if cached is not None:
            return cached
        try:
            decision = self._evaluate(principal_id, tenant_id, action, scope)
        except StoreUnavailable as exc:
            logger.error(
                "authorization_store_unavailable",
                principal_id=principal_id,
                tenant_id=tenant_id,
                action=action,
                error=exc.message,
            )
            return Decision(False, REASON_STORE_UNAVAILABLE)
        except Exception as exc:
            logger.exception(
                "authorization_evaluation_failed",
                principal_id=principal_id,
                tenant_id=tenant_id,
                action=action,
                error_type=type(exc).__name__,
            )
            return Decision(False, REASON_EVALUATION_FAILED)
        self._cache_put(key, decision)
        logger.debug(
            "authorization_decided",
            principal_id=principal_id,
            tenant_id=tenant_id,
            action=action,
            allowed=decision.allowed,
            reason=decision.reason,
        )
        return decision

    def _evaluate(
        self, principal_id: str, tenant_id: str, action: str, scope: Optional[Scope]
    ) -> Decision:
        membership = self.store.get_membership(tenant_id, principal_id)
        if not membership or not membership.is_active:
            return Decision(False, REASON_MEMBERSHIP_INACTIVE)

        if self.grants.seat_required(tenant_id, action) and not self.grants.has_active_seat(
            tenant_id, principal_id, self._clock()
        ):
            return Decision(False, REASON_NO_LICENSE_SEAT)

        # The action itself is always a resource scope; a caller-supplied scope
        # narrows further, and a deny on either side wins.
        scopes = [(DEFAULT_SCOPE_TYPE, action)]
        if scope is not None and tuple(scope) != scopes[0]:
            scopes.append((scope[0], scope[1]))
        explicit = combine(
            self.grants.decide(principal_id, membership, scope_type, scope_key)
            for scope_type, scope_key in scopes
        )
        if explicit == GrantDecision.ALLOW:
            return Decision(True, REASON_EXPLICIT_GRANT)
        if explicit == GrantDecision.DENY:
            return Decision(False, REASON_EXPLICIT_GRANT)

        if action in self.roles.effective_permissions(principal_id, tenant_id):
            return Decision(True, REASON_ROLE_PERMISSION)
        return Decision(False, REASON_NO_PERMISSION)

    def _cache_get(self, key: tuple) -> Optional[Decision]:
        if self.cache_ttl_seconds <= 0:
            return None
        now = self._monotonic()
        with self._cache_lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            expires_at, decision = entry
            if now >= expires_at:
                self._cache.pop(key, None)
                return None
            return decision

    def _cache_put(self, key: tuple, decision: Decision) -> None:
        if self.cache_ttl_seconds <= 0:
            return
        with self._cache_lock:
            self._cache[key] = (self._monotonic() + self.cache_ttl_seconds, decision)

    def invalidate(self, tenant_id: Optional[str] = None, principal_id: Optional[str] = None) -> None:
        with self._cache_lock:
            if tenant_id is None and principal_id is None:
                self._cache.clear()
                return
            for key in list(self._cache):
                if tenant_id is not None and key[0] != tenant_id:
                    continue
                if principal_id is not None and key[1] != principal_id:
                    continue
                self._cache.pop(key, None)
