from __future__ import annotations

import copy
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from paysentry.logging import get_logger
from paysentry.storage.errors import ConstraintViolation
from paysentry.storage.models import (
    AccessGrant,
    AuthEvent,
    AuthEventType,
    GrantEffect,
    License,
    LicenseSeat,
    Membership,
    MembershipStatus,
    Principal,
    Role,
    SecurityState,
    Session,
    Tenant,
    TenantSecuritySettings,
    new_id,
    utcnow,
)

_GRANT_FIELDS = {
    "scope_type",
    "scope_key",
    "effect",
    "principal_id",
    "role_id",
    "company_id",
    "reason",
}


class MemoryStore:
    """In-process backing store for tests and single-node development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.tenants: Dict[str, Tenant] = {}
        self.security_settings: Dict[str, TenantSecuritySettings] = {}
        self.custom_permissions: Dict[str, set[str]] = {}
        self.principals: Dict[str, Principal] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.memberships: Dict[str, Membership] = {}
        self.roles: Dict[str, Role] = {}
        self.grants: Dict[str, AccessGrant] = {}
        self.licenses: Dict[str, License] = {}
        self.seats: Dict[Tuple[str, str], LicenseSeat] = {}
        self.security_states: Dict[str, SecurityState] = {}
        self.auth_events: List[AuthEvent] = []
        self.sessions: Dict[str, Session] = {}
        # RLock for all data operations; allows nested acquisition from helpers
        self._data_lock = threading.RLock()

    # ------------------------------------------------------------------
    # tenants
    # ------------------------------------------------------------------

    def create_tenant(self, name: str, *, tenant_id: Optional[str] = None) -> Tenant:
        with self._data_lock:
            tid = tenant_id or new_id()
            if tid in self.tenants:
                raise ConstraintViolation("tenant exists", {"tenant_id": tid})
            tenant = Tenant(id=tid, name=name)
            self.tenants[tid] = tenant
            return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            return self.tenants.get(tenant_id)

    def get_security_settings(self, tenant_id: str) -> Optional[TenantSecuritySettings]:
        with self._data_lock:
            settings = self.security_settings.get(tenant_id)
            return copy.deepcopy(settings) if settings else None

    def upsert_security_settings(
        self, settings: TenantSecuritySettings
    ) -> TenantSecuritySettings:
        with self._data_lock:
            if settings.tenant_id not in self.tenants:
                raise ConstraintViolation(
                    "tenant missing", {"tenant_id": settings.tenant_id}
                )
            stored = copy.deepcopy(settings)
            stored.updated_at = utcnow()
            self.security_settings[settings.tenant_id] = stored
            return copy.deepcopy(stored)

    def add_custom_permission(self, tenant_id: str, token: str) -> None:
        with self._data_lock:
            if tenant_id not in self.tenants:
                raise ConstraintViolation("tenant missing", {"tenant_id": tenant_id})
            self.custom_permissions.setdefault(tenant_id, set()).add(token)

    def list_custom_permissions(self, tenant_id: str) -> List[str]:
        with self._data_lock:
            return sorted(self.custom_permissions.get(tenant_id, ()))

    # ------------------------------------------------------------------
    # principals
    # ------------------------------------------------------------------

    def create_principal(
        self,
        email: str,
        *,
        display_name: Optional[str] = None,
        home_tenant_id: Optional[str] = None,
        principal_id: Optional[str] = None,
    ) -> Principal:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(p.email == normalized for p in self.principals.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            pid = principal_id or new_id()
            principal = Principal(
                id=pid,
                email=normalized,
                display_name=display_name,
                home_tenant_id=home_tenant_id,
            )
            self.principals[pid] = principal
            self.security_states[pid] = SecurityState(principal_id=pid)
            return principal

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            return self.principals.get(principal_id)

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next(
                (p for p in self.principals.values() if p.email == normalized), None
            )

    def save_password(
        self, principal_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if principal_id not in self.principals:
                raise ConstraintViolation(
                    "principal missing", {"principal_id": principal_id}
                )
            self.credentials[principal_id] = (password_hash, password_algo)

    def get_password_record(self, principal_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(principal_id)

    # ------------------------------------------------------------------
    # memberships
    # ------------------------------------------------------------------

    def create_membership(
        self,
        tenant_id: str,
        principal_id: str,
        status: MembershipStatus = MembershipStatus.INVITED,
    ) -> Membership:
        with self._data_lock:
            if tenant_id not in self.tenants:
                raise ConstraintViolation("tenant missing", {"tenant_id": tenant_id})
            if principal_id not in self.principals:
                raise ConstraintViolation(
                    "principal missing", {"principal_id": principal_id}
                )
            if self._find_membership(tenant_id, principal_id):
                raise ConstraintViolation(
                    "membership exists",
                    {"tenant_id": tenant_id, "principal_id": principal_id},
                )
            membership = Membership(
                id=new_id(),
                tenant_id=tenant_id,
                principal_id=principal_id,
                status=MembershipStatus(status),
            )
            self.memberships[membership.id] = membership
            return copy.deepcopy(membership)

    def _find_membership(self, tenant_id: str, principal_id: str) -> Optional[Membership]:
        return next(
            (
                m
                for m in self.memberships.values()
                if m.tenant_id == tenant_id and m.principal_id == principal_id
            ),
            None,
        )

    def _require_membership(self, membership_id: str) -> Membership:
        membership = self.memberships.get(membership_id)
        if not membership:
            raise ConstraintViolation(
                "membership missing", {"membership_id": membership_id}
            )
        return membership

    def get_membership(self, tenant_id: str, principal_id: str) -> Optional[Membership]:
        with self._data_lock:
            membership = self._find_membership(tenant_id, principal_id)
            return copy.deepcopy(membership) if membership else None

    def get_membership_by_id(self, membership_id: str) -> Optional[Membership]:
        with self._data_lock:
            membership = self.memberships.get(membership_id)
            return copy.deepcopy(membership) if membership else None

    def list_memberships(self, tenant_id: str) -> List[Membership]:
        with self._data_lock:
            return [
                copy.deepcopy(m)
                for m in self.memberships.values()
                if m.tenant_id == tenant_id
            ]

    def set_membership_status(
        self, membership_id: str, status: MembershipStatus
    ) -> Optional[Membership]:
        with self._data_lock:
            membership = self.memberships.get(membership_id)
            if not membership:
                return None
            membership.status = MembershipStatus(status)
            return copy.deepcopy(membership)

    def attach_role(self, membership_id: str, role_id: str) -> Membership:
        with self._data_lock:
            membership = self._require_membership(membership_id)
            role = self.roles.get(role_id)
            if not role or role.tenant_id != membership.tenant_id:
                raise ConstraintViolation("role missing", {"role_id": role_id})
            if role_id not in membership.role_ids:
                membership.role_ids.append(role_id)
            return copy.deepcopy(membership)

    def detach_role(self, membership_id: str, role_id: str) -> Membership:
        with self._data_lock:
            membership = self._require_membership(membership_id)
            if role_id in membership.role_ids:
                membership.role_ids.remove(role_id)
            return copy.deepcopy(membership)

    def attach_company(self, membership_id: str, company_id: str) -> Membership:
        with self._data_lock:
            membership = self._require_membership(membership_id)
            if company_id not in membership.company_ids:
                membership.company_ids.append(company_id)
            return copy.deepcopy(membership)

    def detach_company(self, membership_id: str, company_id: str) -> Membership:
        with self._data_lock:
            membership = self._require_membership(membership_id)
            if company_id in membership.company_ids:
                membership.company_ids.remove(company_id)
            return copy.deepcopy(membership)

    def set_primary_role(self, membership_id: str, role_key: Optional[str]) -> None:
        with self._data_lock:
            membership = self.memberships.get(membership_id)
            if membership:
                membership.primary_role = role_key

    # ------------------------------------------------------------------
    # roles
    # ------------------------------------------------------------------

    def create_role(
        self,
        tenant_id: str,
        key: str,
        name: str,
        permissions: Iterable[str],
        *,
        description: Optional[str] = None,
        system: bool = False,
    ) -> Role:
        with self._data_lock:
            if tenant_id not in self.tenants:
                raise ConstraintViolation("tenant missing", {"tenant_id": tenant_id})
            if any(
                r.tenant_id == tenant_id and r.key == key for r in self.roles.values()
            ):
                raise ConstraintViolation("role key exists", {"key": key})
            role = Role(
                id=new_id(),
                tenant_id=tenant_id,
                key=key,
                name=name,
                permissions=set(permissions),
                description=description,
                system=system,
            )
            self.roles[role.id] = role
            return copy.deepcopy(role)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return copy.deepcopy(role) if role else None

    def get_role_by_key(self, tenant_id: str, key: str) -> Optional[Role]:
        with self._data_lock:
            role = next(
                (
                    r
                    for r in self.roles.values()
                    if r.tenant_id == tenant_id and r.key == key
                ),
                None,
            )
            return copy.deepcopy(role) if role else None

    def get_roles(self, role_ids: Iterable[str]) -> List[Role]:
        with self._data_lock:
            return [
                copy.deepcopy(self.roles[rid]) for rid in role_ids if rid in self.roles
            ]

    def list_roles(self, tenant_id: str) -> List[Role]:
        with self._data_lock:
            roles = [r for r in self.roles.values() if r.tenant_id == tenant_id]
            return [copy.deepcopy(r) for r in sorted(roles, key=lambda r: r.key)]

    def update_role(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        permissions: Optional[Iterable[str]] = None,
        description: Optional[str] = None,
    ) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role:
                return None
            if name is not None:
                role.name = name
            if permissions is not None:
                role.permissions = set(permissions)
            if description is not None:
                role.description = description
            role.updated_at = utcnow()
            return copy.deepcopy(role)

    def delete_role(self, role_id: str) -> bool:
        with self._data_lock:
            role = self.roles.pop(role_id, None)
            if not role:
                return False
            for membership in self.memberships.values():
                if role_id in membership.role_ids:
                    membership.role_ids.remove(role_id)
            for grant_id in [g.id for g in self.grants.values() if g.role_id == role_id]:
                self.grants.pop(grant_id, None)
            return True

    # ------------------------------------------------------------------
    # access grants
    # ------------------------------------------------------------------

    def create_grant(self, grant: AccessGrant) -> AccessGrant:
        with self._data_lock:
            if grant.tenant_id not in self.tenants:
                raise ConstraintViolation(
                    "tenant missing", {"tenant_id": grant.tenant_id}
                )
            if grant.role_id and grant.role_id not in self.roles:
                raise ConstraintViolation("role missing", {"role_id": grant.role_id})
            stored = copy.deepcopy(grant)
            stored.id = stored.id or new_id()
            self.grants[stored.id] = stored
            return copy.deepcopy(stored)

    def get_grant(self, grant_id: str) -> Optional[AccessGrant]:
        with self._data_lock:
            grant = self.grants.get(grant_id)
            return copy.deepcopy(grant) if grant else None

    def update_grant(self, grant_id: str, fields: Dict[str, Any]) -> Optional[AccessGrant]:
        with self._data_lock:
            grant = self.grants.get(grant_id)
            if not grant:
                return None
            for name, value in fields.items():
                if name not in _GRANT_FIELDS:
                    continue
                if name == "effect" and value is not None:
                    value = GrantEffect(value)
                setattr(grant, name, value)
            return copy.deepcopy(grant)

    def delete_grant(self, grant_id: str) -> bool:
        with self._data_lock:
            return self.grants.pop(grant_id, None) is not None

    def list_grants(
        self,
        tenant_id: str,
        *,
        scope_type: Optional[str] = None,
        scope_key: Optional[str] = None,
    ) -> List[AccessGrant]:
        with self._data_lock:
            results = []
            for grant in self.grants.values():
                if grant.tenant_id != tenant_id:
                    continue
                if scope_type is not None and grant.scope_type != scope_type:
                    continue
                if scope_key is not None and grant.scope_key != scope_key:
                    continue
                results.append(copy.deepcopy(grant))
            results.sort(key=lambda g: g.created_at, reverse=True)
            return results

    # ------------------------------------------------------------------
    # licensing
    # ------------------------------------------------------------------

    def get_license(self, tenant_id: str) -> Optional[License]:
        with self._data_lock:
            lic = self.licenses.get(tenant_id)
            return copy.deepcopy(lic) if lic else None

    def upsert_license(
        self, tenant_id: str, capacity: int, features: Optional[Dict[str, Any]] = None
    ) -> License:
        with self._data_lock:
            if tenant_id not in self.tenants:
                raise ConstraintViolation("tenant missing", {"tenant_id": tenant_id})
            in_use = sum(1 for (tid, _) in self.seats if tid == tenant_id)
            if capacity < in_use:
                raise ConstraintViolation(
                    "capacity below assigned seats",
                    {"capacity": capacity, "assigned": in_use},
                )
            existing = self.licenses.get(tenant_id)
            lic = License(
                tenant_id=tenant_id,
                capacity=capacity,
                features=dict(
                    features
                    if features is not None
                    else (existing.features if existing else {})
                ),
            )
            self.licenses[tenant_id] = lic
            return copy.deepcopy(lic)

    def get_seat(self, tenant_id: str, principal_id: str) -> Optional[LicenseSeat]:
        with self._data_lock:
            seat = self.seats.get((tenant_id, principal_id))
            return copy.deepcopy(seat) if seat else None

    def list_seats(self, tenant_id: str) -> List[LicenseSeat]:
        with self._data_lock:
            return [
                copy.deepcopy(seat)
                for (tid, _), seat in self.seats.items()
                if tid == tenant_id
            ]

    def assign_seat(
        self,
        tenant_id: str,
        principal_id: str,
        *,
        assigned_by: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> LicenseSeat:
        with self._data_lock:
            existing = self.seats.get((tenant_id, principal_id))
            if existing:
                existing.expires_at = expires_at
                return copy.deepcopy(existing)
            lic = self.licenses.get(tenant_id)
            capacity = lic.capacity if lic else 0
            in_use = sum(1 for (tid, _) in self.seats if tid == tenant_id)
            if in_use >= capacity:
                raise ConstraintViolation(
                    "no seats available",
                    {"tenant_id": tenant_id, "capacity": capacity},
                )
            seat = LicenseSeat(
                tenant_id=tenant_id,
                principal_id=principal_id,
                assigned_by=assigned_by,
                expires_at=expires_at,
            )
            self.seats[(tenant_id, principal_id)] = seat
            return copy.deepcopy(seat)

    def revoke_seat(self, tenant_id: str, principal_id: str) -> bool:
        with self._data_lock:
            return self.seats.pop((tenant_id, principal_id), None) is not None

    # ------------------------------------------------------------------
    # account security state
    # ------------------------------------------------------------------

    def _state(self, principal_id: str) -> SecurityState:
        state = self.security_states.get(principal_id)
        if state is None:
            state = SecurityState(principal_id=principal_id)
            self.security_states[principal_id] = state
        return state

    def get_security_state(self, principal_id: str) -> SecurityState:
        with self._data_lock:
            return copy.copy(self._state(principal_id))

    def record_failed_login(
        self, principal_id: str, threshold: int, now: datetime
    ) -> Tuple[SecurityState, bool]:
        with self._data_lock:
            state = self._state(principal_id)
            state.failed_attempts += 1
            state.last_failed_at = now
            newly_locked = False
            if state.locked_at is None and state.failed_attempts >= threshold:
                state.locked_at = now
                state.locked_by = None
                state.lock_reason = "Failed login attempts exceeded threshold"
                newly_locked = True
            return copy.copy(state), newly_locked

    def reset_failed_logins(self, principal_id: str) -> SecurityState:
        with self._data_lock:
            state = self._state(principal_id)
            # A lock that landed first keeps its count; only unlock clears it
            if state.locked_at is None:
                state.failed_attempts = 0
            return copy.copy(state)

    def lock_principal(
        self,
        principal_id: str,
        *,
        locked_by: Optional[str],
        reason: str,
        now: datetime,
        min_attempts: int = 0,
    ) -> Tuple[SecurityState, bool]:
        with self._data_lock:
            state = self._state(principal_id)
            if state.locked_at is not None:
                return copy.copy(state), False
            state.locked_at = now
            state.locked_by = locked_by
            state.lock_reason = reason
            state.failed_attempts = max(state.failed_attempts, min_attempts)
            return copy.copy(state), True

    def unlock_principal(
        self, principal_id: str, *, unlocked_by: str, now: datetime
    ) -> SecurityState:
        with self._data_lock:
            state = self._state(principal_id)
            state.locked_at = None
            state.locked_by = None
            state.lock_reason = None
            state.failed_attempts = 0
            state.unlocked_at = now
            state.unlocked_by = unlocked_by
            return copy.copy(state)

    def list_locked_principals(
        self, tenant_id: Optional[str] = None
    ) -> List[Tuple[Principal, SecurityState]]:
        with self._data_lock:
            results = []
            for pid, state in self.security_states.items():
                if state.locked_at is None:
                    continue
                principal = self.principals.get(pid)
                if not principal:
                    continue
                if tenant_id and not (
                    principal.home_tenant_id == tenant_id
                    or self._find_membership(tenant_id, pid)
                ):
                    continue
                results.append((principal, copy.copy(state)))
            results.sort(key=lambda item: item[1].locked_at, reverse=True)
            return results

    # ------------------------------------------------------------------
    # audit trail
    # ------------------------------------------------------------------

    def append_auth_event(self, event: AuthEvent) -> str:
        event_id = event.id or str(uuid.uuid4())
        stored = AuthEvent(
            id=event_id,
            event_type=event.event_type,
            success=event.success,
            tenant_id=event.tenant_id,
            principal_id=event.principal_id,
            timestamp=event.timestamp,
            ip=event.ip,
            geo=event.geo,
            user_agent=event.user_agent,
            reason=event.reason,
            severity=event.severity,
            metadata=dict(event.metadata),
        )
        with self._data_lock:
            self.auth_events.append(stored)
        return event_id

    def list_auth_events(
        self,
        *,
        tenant_id: Optional[str] = None,
        principal_id: Optional[str] = None,
        event_type: Optional[AuthEventType] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        ip: Optional[str] = None,
        success: Optional[bool] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> Tuple[List[AuthEvent], int]:
        with self._data_lock:
            matched = [
                e
                for e in self.auth_events
                if (tenant_id is None or e.tenant_id == tenant_id)
                and (principal_id is None or e.principal_id == principal_id)
                and (event_type is None or e.event_type == event_type)
                and (start is None or e.timestamp >= start)
                and (end is None or e.timestamp <= end)
                and (ip is None or e.ip == ip)
                and (success is None or e.success == success)
            ]
        matched.sort(key=lambda e: e.timestamp, reverse=True)
        return matched[offset : offset + limit], len(matched)

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.token in self.sessions:
                raise ConstraintViolation("session token exists", {})
            self.sessions[session.token] = copy.copy(session)
            return copy.copy(session)

    def get_session(self, token: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(token)
            return copy.copy(sess) if sess else None

    def list_principal_sessions(self, principal_id: str) -> List[Session]:
        with self._data_lock:
            return [
                copy.copy(s)
                for s in self.sessions.values()
                if s.principal_id == principal_id
            ]

    def touch_session(self, token: str, now: datetime) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(token)
            if not sess:
                return None
            sess.last_activity = now
            return copy.copy(sess)

    def delete_session(self, token: str) -> bool:
        with self._data_lock:
            return self.sessions.pop(token, None) is not None

    def delete_principal_sessions(self, principal_id: str) -> int:
        with self._data_lock:
            stale = [t for t, s in self.sessions.items() if s.principal_id == principal_id]
            for token in stale:
                self.sessions.pop(token, None)
            return len(stale)

    def purge_idle_sessions(self, cutoff: datetime) -> int:
        with self._data_lock:
            stale = [t for t, s in self.sessions.items() if s.last_activity < cutoff]
            for token in stale:
                self.sessions.pop(token, None)
            return len(stale)
