from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from paysentry.logging import get_logger
from paysentry.service.authorization import AuthorizationService
from paysentry.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from paysentry.service.permissions import PermissionRegistry, is_system_role
from paysentry.service.roles import RoleStore
from paysentry.service.sessions import SessionRegistry
from paysentry.service.store import SecurityStore
from paysentry.storage.errors import ConstraintViolation
from paysentry.storage.models import (
    AccessGrant,
    GrantEffect,
    License,
    LicenseSeat,
    Membership,
    MembershipStatus,
    Role,
    TenantSecuritySettings,
    new_id,
)

logger = get_logger(__name__)

ROLE_KEY_PATTERN = re.compile(r"^[a-z][a-z0-9_]{1,63}$")
SCOPE_TYPE_PATTERN = re.compile(r"^[a-z][a-z0-9_]{0,31}$")
RESOURCE_SCOPE = "resource"


class AdminService:
    """Administrative mutations of roles, grants, licensing and tenant security settings.

    Every mutation invalidates cached authorization decisions for the tenant.
    Role changes and membership disablement also revoke the principal's
    sessions so new permissions apply from the next sign-in.
    """

    def __init__(
        self,
        store: SecurityStore,
        *,
        registry: PermissionRegistry,
        roles: RoleStore,
        authorization: AuthorizationService,
        sessions: SessionRegistry,
    ) -> None:
        self.store = store
        self.registry = registry
        self.roles = roles
        self.authorization = authorization
        self.sessions = sessions

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------

    def _require_tenant(self, tenant_id: str) -> None:
        if not tenant_id or self.store.get_tenant(tenant_id) is None:
            raise NotFoundError("tenant not found", detail={"tenant_id": tenant_id})

    def _require_role(self, tenant_id: str, role_id: str) -> Role:
        role = self.store.get_role(role_id)
        if role is None or role.tenant_id != tenant_id:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        return role

    def _require_membership(self, tenant_id: str, principal_id: str) -> Membership:
        membership = self.store.get_membership(tenant_id, principal_id)
        if membership is None:
            raise NotFoundError(
                "membership not found",
                detail={"tenant_id": tenant_id, "principal_id": principal_id},
            )
        return membership

    def _require_grant(self, tenant_id: str, grant_id: str) -> AccessGrant:
        grant = self.store.get_grant(grant_id)
        if grant is None or grant.tenant_id != tenant_id:
            raise NotFoundError("grant not found", detail={"grant_id": grant_id})
        return grant

    # ------------------------------------------------------------------
    # memberships
    # ------------------------------------------------------------------

    def add_member(
        self,
        tenant_id: str,
        principal_id: str,
        status: MembershipStatus = MembershipStatus.ACTIVE,
    ) -> Membership:
        self._require_tenant(tenant_id)
        if self.store.get_principal(principal_id) is None:
            raise NotFoundError("principal not found", detail={"principal_id": principal_id})
        try:
            membership = self.store.create_membership(tenant_id, principal_id, MembershipStatus(status))
        except ConstraintViolation as exc:
            raise ConflictError("principal is already a member", detail=exc.detail) from exc
        self.authorization.invalidate(tenant_id, principal_id)
        return membership

    async def set_membership_status(
        self, tenant_id: str, principal_id: str, status: MembershipStatus | str
    ) -> Membership:
        try:
            status = MembershipStatus(status)
        except ValueError as exc:
            raise ValidationError("unknown membership status", detail={"status": str(status)}) from exc
        membership = self._require_membership(tenant_id, principal_id)
        updated = self.store.set_membership_status(membership.id, status)
        self.authorization.invalidate(tenant_id, principal_id)
        if status != MembershipStatus.ACTIVE:
            await self._revoke_sessions(principal_id, "membership_disabled")
        logger.info(
            "membership_status_changed",
            tenant_id=tenant_id,
            principal_id=principal_id,
            status=status.value,
        )
        return updated

    async def attach_role(self, tenant_id: str, principal_id: str, role_id: str) -> Membership:
        role = self._require_role(tenant_id, role_id)
        membership = self._require_membership(tenant_id, principal_id)
        updated = self.store.attach_role(membership.id, role.id)
        await self._after_role_change(updated, "role_attached", role)
        return self._project_primary_role(updated)

    async def detach_role(self, tenant_id: str, principal_id: str, role_id: str) -> Membership:
        role = self._require_role(tenant_id, role_id)
        membership = self._require_membership(tenant_id, principal_id)
        updated = self.store.detach_role(membership.id, role.id)
        await self._after_role_change(updated, "role_detached", role)
        return self._project_primary_role(updated)

    def attach_company(self, tenant_id: str, principal_id: str, company_id: str) -> Membership:
        if not company_id or not company_id.strip():
            raise ValidationError("company_id is required")
        membership = self._require_membership(tenant_id, principal_id)
        updated = self.store.attach_company(membership.id, company_id.strip())
        self.authorization.invalidate(tenant_id, principal_id)
        return updated

    def detach_company(self, tenant_id: str, principal_id: str, company_id: str) -> Membership:
        membership = self._require_membership(tenant_id, principal_id)
        updated = self.store.detach_company(membership.id, company_id)
        self.authorization.invalidate(tenant_id, principal_id)
        return updated

    async def _after_role_change(self, membership: Membership, event: str, role: Role) -> None:
        self.authorization.invalidate(membership.tenant_id, membership.principal_id)
        logger.info(
            event,
            tenant_id=membership.tenant_id,
            principal_id=membership.principal_id,
            role_key=role.key,
        )
        await self._revoke_sessions(membership.principal_id, "role_changed")

    def _project_primary_role(self, membership: Membership) -> Membership:
        """Mirror the first attached role into the legacy primary_role field."""
        try:
            key = self.roles.primary_role_key(membership)
            self.store.set_primary_role(membership.id, key)
            membership.primary_role = key
        except Exception as exc:
            logger.warning(
                "primary_role_projection_failed",
                membership_id=membership.id,
                error=str(exc),
            )
        return membership

    async def _revoke_sessions(self, principal_id: str, reason: str) -> None:
        try:
            await self.sessions.revoke_principal(principal_id, reason)
        except Exception as exc:
            logger.warning(
                "session_revocation_failed",
                principal_id=principal_id,
                reason=reason,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    # ------------------------------------------------------------------
    # roles
    # ------------------------------------------------------------------

    def seed_system_roles(self, tenant_id: str) -> List[Role]:
        self._require_tenant(tenant_id)
        return self.roles.seed_system_roles(tenant_id)

    def list_roles(self, tenant_id: str) -> List[Role]:
        return self.store.list_roles(tenant_id)

    def create_role(
        self,
        tenant_id: str,
        key: str,
        name: str,
        permissions: Iterable[str],
        *,
        description: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Role:
        self._require_tenant(tenant_id)
        key = (key or "").strip()
        if not ROLE_KEY_PATTERN.match(key):
            raise ValidationError("invalid role key", detail={"key": key})
        if is_system_role(key):
            raise ForbiddenError("role key is reserved for a system role", detail={"key": key})
        if not name or not name.strip():
            raise ValidationError("role name is required")
        tokens = self.registry.validate(tenant_id, permissions)
        try:
            role = self.store.create_role(
                tenant_id, key, name.strip(), tokens, description=description
            )
        except ConstraintViolation as exc:
            raise ConflictError("role key already exists", detail={"key": key}) from exc
        logger.info("role_created", tenant_id=tenant_id, role_key=key, actor=actor)
        return role

    def update_role(
        self,
        tenant_id: str,
        role_id: str,
        *,
        name: Optional[str] = None,
        permissions: Optional[Iterable[str]] = None,
        description: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Role:
        role = self._require_role(tenant_id, role_id)
        if role.system:
            raise ForbiddenError("system roles cannot be modified", detail={"key": role.key})
        if name is not None and not name.strip():
            raise ValidationError("role name cannot be blank")
        tokens = self.registry.validate(tenant_id, permissions) if permissions is not None else None
        updated = self.store.update_role(
            role_id,
            name=name.strip() if name is not None else None,
            permissions=tokens,
            description=description,
        )
        if updated is None:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        self.authorization.invalidate(tenant_id)
        logger.info("role_updated", tenant_id=tenant_id, role_key=role.key, actor=actor)
        return updated

    async def delete_role(self, tenant_id: str, role_id: str, *, actor: Optional[str] = None) -> bool:
        role = self._require_role(tenant_id, role_id)
        if role.system:
            raise ForbiddenError("system roles cannot be deleted", detail={"key": role.key})
        affected = [m for m in self.store.list_memberships(tenant_id) if role_id in m.role_ids]
        deleted = self.store.delete_role(role_id)
        self.authorization.invalidate(tenant_id)
        for membership in affected:
            refreshed = self.store.get_membership_by_id(membership.id)
            if refreshed:
                self._project_primary_role(refreshed)
            await self._revoke_sessions(membership.principal_id, "role_changed")
        logger.info("role_deleted", tenant_id=tenant_id, role_key=role.key, actor=actor)
        return deleted

    # ------------------------------------------------------------------
    # access grants
    # ------------------------------------------------------------------

    def _validate_grant(
        self,
        tenant_id: str,
        scope_type: str,
        scope_key: str,
        effect: Any,
        principal_id: Optional[str],
        role_id: Optional[str],
        company_id: Optional[str],
    ) -> GrantEffect:
        if not scope_type or not SCOPE_TYPE_PATTERN.match(scope_type):
            raise ValidationError("invalid scope_type", detail={"scope_type": scope_type})
        if not scope_key or not scope_key.strip():
            raise ValidationError("scope_key is required")
        try:
            effect = GrantEffect(effect)
        except ValueError as exc:
            raise ValidationError("effect must be allow or deny", detail={"effect": str(effect)}) from exc
        targets = [t for t in (principal_id, role_id, company_id) if t]
        if len(targets) > 1:
            raise ValidationError("a grant may target at most one of principal, role or company")
        if scope_type == RESOURCE_SCOPE:
            self.registry.validate(tenant_id, [scope_key])
        if principal_id and self.store.get_principal(principal_id) is None:
            raise NotFoundError("principal not found", detail={"principal_id": principal_id})
        if role_id:
            self._require_role(tenant_id, role_id)
        return effect

    def create_grant(
        self,
        tenant_id: str,
        *,
        scope_type: str,
        scope_key: str,
        effect: GrantEffect | str,
        principal_id: Optional[str] = None,
        role_id: Optional[str] = None,
        company_id: Optional[str] = None,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> AccessGrant:
        self._require_tenant(tenant_id)
        effect = self._validate_grant(
            tenant_id, scope_type, scope_key, effect, principal_id, role_id, company_id
        )
        grant = self.store.create_grant(
            AccessGrant(
                id=new_id(),
                tenant_id=tenant_id,
                scope_type=scope_type,
                scope_key=scope_key.strip(),
                effect=effect,
                principal_id=principal_id,
                role_id=role_id,
                company_id=company_id,
                reason=reason,
                created_by=actor,
            )
        )
        self.authorization.invalidate(tenant_id)
        logger.info(
            "grant_created",
            tenant_id=tenant_id,
            grant_id=grant.id,
            scope_type=scope_type,
            scope_key=grant.scope_key,
            effect=effect.value,
            target=grant.target_type,
            actor=actor,
        )
        return grant

    def update_grant(
        self, tenant_id: str, grant_id: str, fields: Dict[str, Any], *, actor: Optional[str] = None
    ) -> AccessGrant:
        current = self._require_grant(tenant_id, grant_id)
        merged = {
            "scope_type": current.scope_type,
            "scope_key": current.scope_key,
            "effect": current.effect,
            "principal_id": current.principal_id,
            "role_id": current.role_id,
            "company_id": current.company_id,
            "reason": current.reason,
        }
        unknown = sorted(set(fields) - set(merged))
        if unknown:
            raise ValidationError("unknown grant fields", detail={"fields": unknown})
        merged.update(fields)
        merged["effect"] = self._validate_grant(
            tenant_id,
            merged["scope_type"],
            merged["scope_key"],
            merged["effect"],
            merged["principal_id"],
            merged["role_id"],
            merged["company_id"],
        )
        updated = self.store.update_grant(grant_id, merged)
        if updated is None:
            raise NotFoundError("grant not found", detail={"grant_id": grant_id})
        self.authorization.invalidate(tenant_id)
        logger.info("grant_updated", tenant_id=tenant_id, grant_id=grant_id, actor=actor)
        return updated

    def delete_grant(self, tenant_id: str, grant_id: str, *, actor: Optional[str] = None) -> bool:
        self._require_grant(tenant_id, grant_id)
        deleted = self.store.delete_grant(grant_id)
        self.authorization.invalidate(tenant_id)
        logger.info("grant_deleted", tenant_id=tenant_id, grant_id=grant_id, actor=actor)
        return deleted

    def list_grants(
        self,
        tenant_id: str,
        *,
        scope_type: Optional[str] = None,
        scope_key: Optional[str] = None,
    ) -> List[AccessGrant]:
        return self.store.list_grants(tenant_id, scope_type=scope_type, scope_key=scope_key)

    # ------------------------------------------------------------------
    # licensing
    # ------------------------------------------------------------------

    def get_license(self, tenant_id: str) -> License:
        self._require_tenant(tenant_id)
        return self.store.get_license(tenant_id) or License(tenant_id=tenant_id, capacity=0)

    def update_license(
        self,
        tenant_id: str,
        capacity: int,
        features: Optional[Dict[str, Any]] = None,
        *,
        actor: Optional[str] = None,
    ) -> License:
        self._require_tenant(tenant_id)
        if capacity is None or int(capacity) < 0:
            raise ValidationError("capacity must be >= 0", detail={"capacity": capacity})
        try:
            lic = self.store.upsert_license(tenant_id, int(capacity), features)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        self.authorization.invalidate(tenant_id)
        logger.info("license_updated", tenant_id=tenant_id, capacity=lic.capacity, actor=actor)
        return lic

    def assign_seat(
        self,
        tenant_id: str,
        principal_id: str,
        *,
        expires_at: Optional[datetime] = None,
        actor: Optional[str] = None,
    ) -> LicenseSeat:
        self._require_membership(tenant_id, principal_id)
        try:
            seat = self.store.assign_seat(
                tenant_id, principal_id, assigned_by=actor, expires_at=expires_at
            )
        except ConstraintViolation as exc:
            raise ConflictError("no license seats available", detail=exc.detail) from exc
        self.authorization.invalidate(tenant_id, principal_id)
        logger.info("seat_assigned", tenant_id=tenant_id, principal_id=principal_id, actor=actor)
        return seat

    def revoke_seat(self, tenant_id: str, principal_id: str, *, actor: Optional[str] = None) -> bool:
        revoked = self.store.revoke_seat(tenant_id, principal_id)
        if not revoked:
            raise NotFoundError(
                "seat not found", detail={"tenant_id": tenant_id, "principal_id": principal_id}
            )
        self.authorization.invalidate(tenant_id, principal_id)
        logger.info("seat_revoked", tenant_id=tenant_id, principal_id=principal_id, actor=actor)
        return revoked

    def list_seats(self, tenant_id: str) -> List[LicenseSeat]:
        return self.store.list_seats(tenant_id)

    # ------------------------------------------------------------------
    # tenant security settings
    # ------------------------------------------------------------------

    def get_security_settings(self, tenant_id: str) -> TenantSecuritySettings:
        self._require_tenant(tenant_id)
        return self.store.get_security_settings(tenant_id) or TenantSecuritySettings(
            tenant_id=tenant_id
        )

    def update_security_settings(
        self,
        tenant_id: str,
        *,
        lockout_threshold: Optional[int] = None,
        email_alerts_enabled: Optional[bool] = None,
        seat_required_actions: Optional[List[str]] = None,
        actor: Optional[str] = None,
    ) -> TenantSecuritySettings:
        current = self.get_security_settings(tenant_id)
        if lockout_threshold is not None:
            if int(lockout_threshold) < 1:
                raise ValidationError(
                    "lockout_threshold must be >= 1", detail={"lockout_threshold": lockout_threshold}
                )
            current.lockout_threshold = int(lockout_threshold)
        if email_alerts_enabled is not None:
            current.email_alerts_enabled = bool(email_alerts_enabled)
        if seat_required_actions is not None:
            patterns = [p.strip() for p in seat_required_actions if p and p.strip()]
            invalid = [p for p in patterns if not re.match(r"^[a-z0-9_.*?\[\]]+$", p)]
            if invalid:
                raise ValidationError("invalid action patterns", detail={"patterns": invalid})
            current.seat_required_actions = patterns
        saved = self.store.upsert_security_settings(current)
        self.authorization.invalidate(tenant_id)
        logger.info("security_settings_updated", tenant_id=tenant_id, actor=actor)
        return saved

    def register_permission(self, tenant_id: str, token: str) -> str:
        self._require_tenant(tenant_id)
        return self.registry.register(tenant_id, token)
