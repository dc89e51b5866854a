from __future__ import annotations

from typing import FrozenSet, List, Optional

from paysentry.logging import get_logger
from paysentry.service.permissions import SYSTEM_ROLES
from paysentry.service.store import SecurityStore
from paysentry.storage.errors import ConstraintViolation
from paysentry.storage.models import Membership, Role

logger = get_logger(__name__)


class RoleStore:
    """Tenant-scoped role definitions and the roles attached to memberships."""

    def __init__(self, store: SecurityStore) -> None:
        self.store = store

    def effective_permissions(self, principal_id: str, tenant_id: str) -> FrozenSet[str]:
        """Union of permissions across roles attached to an active membership.

        Any lookup failure yields the empty set.
        """
        try:
            membership = self.store.get_membership(tenant_id, principal_id)
            if not membership or not membership.is_active:
                return frozenset()
            return self._permissions_for(membership)
        except Exception as exc:
            logger.error(
                "effective_permissions_failed",
                principal_id=principal_id,
                tenant_id=tenant_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return frozenset()

    def _permissions_for(self, membership: Membership) -> FrozenSet[str]:
        permissions: set[str] = set()
        for role in self.store.get_roles(membership.role_ids):
            # A role id from another tenant never contributes
            if role.tenant_id != membership.tenant_id:
                logger.warning(
                    "cross_tenant_role_ignored",
                    role_id=role.id,
                    membership_id=membership.id,
                )
                continue
            permissions |= role.permissions
        return frozenset(permissions)

    def roles_for(self, membership: Membership) -> List[Role]:
        return [
            role
            for role in self.store.get_roles(membership.role_ids)
            if role.tenant_id == membership.tenant_id
        ]

    def primary_role_key(self, membership: Membership) -> Optional[str]:
        roles = self.roles_for(membership)
        return roles[0].key if roles else None

    def seed_system_roles(self, tenant_id: str) -> List[Role]:
        """Create any missing system roles for a tenant; existing ones are left alone."""
        seeded: List[Role] = []
        for key, definition in SYSTEM_ROLES.items():
            existing = self.store.get_role_by_key(tenant_id, key)
            if existing:
                seeded.append(existing)
                continue
            try:
                role = self.store.create_role(
                    tenant_id,
                    key,
                    definition["name"],
                    definition["permissions"],
                    description=definition.get("description"),
                    system=True,
                )
            except ConstraintViolation:
                # Concurrent seeding created it first
                role = self.store.get_role_by_key(tenant_id, key)
                if role is None:
                    raise
            seeded.append(role)
        logger.info("system_roles_seeded", tenant_id=tenant_id, count=len(seeded))
        return seeded
