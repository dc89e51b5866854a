from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from paysentry.storage.models import (
    AccessGrant,
    AuthEvent,
    AuthEventType,
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
)


class SecurityStore(Protocol):
    """Persistence primitives the engine relies on.

    Implementations raise ``StoreUnavailable`` when the backing store cannot be
    reached and ``ConstraintViolation`` on uniqueness/capacity conflicts.
    ``record_failed_login`` and ``lock_principal`` must be atomic per principal.
    """

    # tenants
    def create_tenant(self, name: str, *, tenant_id: Optional[str] = None) -> Tenant: ...

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def get_security_settings(self, tenant_id: str) -> Optional[TenantSecuritySettings]: ...

    def upsert_security_settings(
        self, settings: TenantSecuritySettings
    ) -> TenantSecuritySettings: ...

    def add_custom_permission(self, tenant_id: str, token: str) -> None:
        """Record a tenant-defined permission token; repeated adds are no-ops."""
        ...

    def list_custom_permissions(self, tenant_id: str) -> List[str]: ...

    # principals
    def create_principal(
        self,
        email: str,
        *,
        display_name: Optional[str] = None,
        home_tenant_id: Optional[str] = None,
        principal_id: Optional[str] = None,
    ) -> Principal: ...

    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def get_principal_by_email(self, email: str) -> Optional[Principal]: ...

    def save_password(
        self, principal_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, principal_id: str) -> Optional[tuple[str, str]]: ...

    # memberships
    def create_membership(
        self,
        tenant_id: str,
        principal_id: str,
        status: MembershipStatus = MembershipStatus.INVITED,
    ) -> Membership: ...

    def get_membership(self, tenant_id: str, principal_id: str) -> Optional[Membership]: ...

    def get_membership_by_id(self, membership_id: str) -> Optional[Membership]: ...

    def list_memberships(self, tenant_id: str) -> List[Membership]: ...

    def set_membership_status(
        self, membership_id: str, status: MembershipStatus
    ) -> Optional[Membership]: ...

    def attach_role(self, membership_id: str, role_id: str) -> Membership: ...

    def detach_role(self, membership_id: str, role_id: str) -> Membership: ...

    def attach_company(self, membership_id: str, company_id: str) -> Membership: ...

    def detach_company(self, membership_id: str, company_id: str) -> Membership: ...

    def set_primary_role(self, membership_id: str, role_key: Optional[str]) -> None: ...

    # roles
    def create_role(
        self,
        tenant_id: str,
        key: str,
        name: str,
        permissions: Iterable[str],
        *,
        description: Optional[str] = None,
        system: bool = False,
    ) -> Role: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def get_role_by_key(self, tenant_id: str, key: str) -> Optional[Role]: ...

    def get_roles(self, role_ids: Iterable[str]) -> List[Role]: ...

    def list_roles(self, tenant_id: str) -> List[Role]: ...

    def update_role(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        permissions: Optional[Iterable[str]] = None,
        description: Optional[str] = None,
    ) -> Optional[Role]: ...

    def delete_role(self, role_id: str) -> bool: ...

    # access grants
    def create_grant(self, grant: AccessGrant) -> AccessGrant: ...

    def get_grant(self, grant_id: str) -> Optional[AccessGrant]: ...

    def update_grant(self, grant_id: str, fields: Dict[str, Any]) -> Optional[AccessGrant]: ...

    def delete_grant(self, grant_id: str) -> bool: ...

    def list_grants(
        self,
        tenant_id: str,
        *,
        scope_type: Optional[str] = None,
        scope_key: Optional[str] = None,
    ) -> List[AccessGrant]: ...

    # licensing
    def get_license(self, tenant_id: str) -> Optional[License]: ...

    def upsert_license(
        self, tenant_id: str, capacity: int, features: Optional[Dict[str, Any]] = None
    ) -> License: ...

    def get_seat(self, tenant_id: str, principal_id: str) -> Optional[LicenseSeat]: ...

    def list_seats(self, tenant_id: str) -> List[LicenseSeat]: ...

    def assign_seat(
        self,
        tenant_id: str,
        principal_id: str,
        *,
        assigned_by: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> LicenseSeat: ...

    def revoke_seat(self, tenant_id: str, principal_id: str) -> bool: ...

    # account security state
    def get_security_state(self, principal_id: str) -> SecurityState: ...

    def record_failed_login(
        self, principal_id: str, threshold: int, now: datetime
    ) -> Tuple[SecurityState, bool]: ...

    def reset_failed_logins(self, principal_id: str) -> SecurityState: ...

    def lock_principal(
        self,
        principal_id: str,
        *,
        locked_by: Optional[str],
        reason: str,
        now: datetime,
        min_attempts: int = 0,
    ) -> Tuple[SecurityState, bool]: ...

    def unlock_principal(
        self, principal_id: str, *, unlocked_by: str, now: datetime
    ) -> SecurityState: ...

    def list_locked_principals(
        self, tenant_id: Optional[str] = None
    ) -> List[Tuple[Principal, SecurityState]]: ...

    # audit trail
    def append_auth_event(self, event: AuthEvent) -> str: ...

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
    ) -> Tuple[List[AuthEvent], int]: ...

    # sessions
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, token: str) -> Optional[Session]: ...

    def list_principal_sessions(self, principal_id: str) -> List[Session]: ...

    def touch_session(self, token: str, now: datetime) -> Optional[Session]: ...

    def delete_session(self, token: str) -> bool: ...

    def delete_principal_sessions(self, principal_id: str) -> int: ...

    def purge_idle_sessions(self, cutoff: datetime) -> int: ...


__all__ = ["SecurityStore"]
