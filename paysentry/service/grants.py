from __future__ import annotations

import fnmatch
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional, Sequence

from paysentry.logging import get_logger
from paysentry.service.store import SecurityStore
from paysentry.storage.models import AccessGrant, GrantEffect, Membership

logger = get_logger(__name__)

# Higher wins
SPECIFICITY = {"principal": 3, "role": 2, "company": 1, "tenant": 0}


class GrantDecision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    ABSTAIN = "abstain"


def combine(decisions: Iterable[GrantDecision]) -> GrantDecision:
    """Merge decisions from several scopes: any deny wins, then any allow."""
    seen = set(decisions)
    if GrantDecision.DENY in seen:
        return GrantDecision.DENY
    if GrantDecision.ALLOW in seen:
        return GrantDecision.ALLOW
    return GrantDecision.ABSTAIN


class GrantResolver:
    """Explicit allow/deny overrides plus license-seat state for a tenant."""

    def __init__(self, store: SecurityStore) -> None:
        self.store = store

    @staticmethod
    def _targets(grant: AccessGrant, principal_id: str, membership: Membership) -> bool:
        target = grant.target_type
        if target == "principal":
            return grant.principal_id == principal_id
        if target == "role":
            return grant.role_id in membership.role_ids
        if target == "company":
            return grant.company_id in membership.company_ids
        return True

    def candidates(
        self,
        principal_id: str,
        membership: Membership,
        scope_type: str,
        scope_key: str,
    ) -> List[AccessGrant]:
        grants = self.store.list_grants(
            membership.tenant_id, scope_type=scope_type, scope_key=scope_key
        )
        return [
            grant
            for grant in grants
            if grant.tenant_id == membership.tenant_id
            and grant.scope_type == scope_type
            and grant.scope_key == scope_key
            and self._targets(grant, principal_id, membership)
        ]

    @staticmethod
    def resolve(grants: Sequence[AccessGrant]) -> GrantDecision:
        """Most specific target wins; deny beats allow at equal specificity."""
        if not grants:
            return GrantDecision.ABSTAIN
        top = max(SPECIFICITY[g.target_type] for g in grants)
        effects = {GrantEffect(g.effect) for g in grants if SPECIFICITY[g.target_type] == top}
        if GrantEffect.DENY in effects:
            return GrantDecision.DENY
        return GrantDecision.ALLOW

    def decide(
        self,
        principal_id: str,
        membership: Membership,
        scope_type: str,
        scope_key: str,
    ) -> GrantDecision:
        decision = self.resolve(
            self.candidates(principal_id, membership, scope_type, scope_key)
        )
        if decision != GrantDecision.ABSTAIN:
            logger.debug(
                "explicit_grant_matched",
                principal_id=principal_id,
                tenant_id=membership.tenant_id,
                scope_type=scope_type,
                scope_key=scope_key,
                decision=decision.value,
            )
        return decision

    def seat_required(self, tenant_id: str, action: str) -> bool:
        settings = self.store.get_security_settings(tenant_id)
        if not settings or not settings.seat_required_actions:
            return False
        return any(
            fnmatch.fnmatchcase(action, pattern)
            for pattern in settings.seat_required_actions
        )

    def has_active_seat(
        self, tenant_id: str, principal_id: str, now: Optional[datetime] = None
    ) -> bool:
        seat = self.store.get_seat(tenant_id, principal_id)
        return bool(seat and seat.is_active(now))
