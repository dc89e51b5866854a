from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class MembershipStatus(str, Enum):
    INVITED = "invited"
    ACTIVE = "active"
    DISABLED = "disabled"


class GrantEffect(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class AuthEventType(str, Enum):
    """Authentication and account-security events written to the audit trail."""

    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"
    PASSWORD_RESET_REQUEST = "password_reset_request"
    PASSWORD_RESET_SUCCESS = "password_reset_success"
    PASSWORD_CHANGE = "password_change"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_UNLOCKED = "account_unlocked"
    ACCOUNT_CREATED = "account_created"
    ACCOUNT_DELETED = "account_deleted"
    SESSION_EXPIRED = "session_expired"
    SESSION_REFRESHED = "session_refreshed"
    SESSION_REVOKED = "session_revoked"
    SESSION_ORIGIN_MISMATCH = "session_origin_mismatch"
    TWO_FACTOR_ENABLED = "two_factor_enabled"
    TWO_FACTOR_DISABLED = "two_factor_disabled"
    TWO_FACTOR_VERIFIED = "two_factor_verified"
    TWO_FACTOR_FAILED = "two_factor_failed"


@dataclass
class Tenant:
    id: str
    name: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class TenantSecuritySettings:
    tenant_id: str
    lockout_threshold: Optional[int] = None
    email_alerts_enabled: bool = True
    # Glob patterns over action tokens, e.g. "payroll.*"
    seat_required_actions: List[str] = field(default_factory=list)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Principal:
    id: str
    email: str
    display_name: Optional[str] = None
    home_tenant_id: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class SecurityState:
    """Failed-login counter and lock metadata for one principal."""

    principal_id: str
    failed_attempts: int = 0
    locked_at: Optional[datetime] = None
    locked_by: Optional[str] = None
    lock_reason: Optional[str] = None
    unlocked_at: Optional[datetime] = None
    unlocked_by: Optional[str] = None
    last_failed_at: Optional[datetime] = None

    @property
    def is_locked(self) -> bool:
        return self.locked_at is not None


@dataclass
class Role:
    id: str
    tenant_id: str
    key: str
    name: str
    permissions: set[str] = field(default_factory=set)
    description: Optional[str] = None
    system: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Membership:
    id: str
    tenant_id: str
    principal_id: str
    status: MembershipStatus = MembershipStatus.INVITED
    role_ids: List[str] = field(default_factory=list)
    company_ids: List[str] = field(default_factory=list)
    # Legacy projection of the first attached role; never used for decisions
    primary_role: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == MembershipStatus.ACTIVE


@dataclass
class AccessGrant:
    id: str
    tenant_id: str
    scope_type: str
    scope_key: str
    effect: GrantEffect
    principal_id: Optional[str] = None
    role_id: Optional[str] = None
    company_id: Optional[str] = None
    reason: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def target_type(self) -> str:
        if self.principal_id:
            return "principal"
        if self.role_id:
            return "role"
        if self.company_id:
            return "company"
        return "tenant"


@dataclass
class License:
    tenant_id: str
    capacity: int = 0
    features: Dict[str, Any] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class LicenseSeat:
    tenant_id: str
    principal_id: str
    assigned_at: datetime = field(default_factory=utcnow)
    assigned_by: Optional[str] = None
    expires_at: Optional[datetime] = None

    def is_active(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return True
        return self.expires_at > (now or utcnow())


@dataclass
class GeoLocation:
    country: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timezone: Optional[str] = None
    country_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> Optional["GeoLocation"]:
        if not raw:
            return None
        known = {k: raw.get(k) for k in cls.__dataclass_fields__}
        return cls(**known)


LOCAL_GEO = GeoLocation(country="Local", city="Local", country_code="LOCAL")


@dataclass(frozen=True)
class AuthEvent:
    """Immutable audit record; the engine only ever appends these."""

    event_type: AuthEventType
    success: bool
    tenant_id: Optional[str] = None
    principal_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    ip: Optional[str] = None
    geo: Optional[GeoLocation] = None
    user_agent: Optional[str] = None
    reason: Optional[str] = None
    severity: str = "low"
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "principal_id": self.principal_id,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
            "ip": self.ip,
            "geo": self.geo.to_dict() if self.geo else None,
            "user_agent": self.user_agent,
            "success": self.success,
            "reason": self.reason,
            "severity": self.severity,
            "metadata": dict(self.metadata),
        }


@dataclass
class AuthEventPage:
    items: List[AuthEvent]
    total: int
    page: int
    limit: int


@dataclass
class Session:
    token: str
    principal_id: str
    origin: Optional[str] = None
    tenant_id: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)
