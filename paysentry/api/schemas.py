from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

_STABLE_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "rate_limited",
    "server_error",
    "service_unavailable",
}

_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ErrorBody(BaseModel):
    """Error envelope body with a stable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _STABLE_ERROR_CODES:
            return "server_error"
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., min_length=1, max_length=1024)
    tenant_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        value = value.strip().lower()
        if not _EMAIL.match(value):
            raise ValueError("invalid email address")
        return value


class LoginResponse(BaseModel):
    principal_id: str
    session_token: str
    tenant_id: Optional[str] = None
    created_at: datetime


class SessionRequest(BaseModel):
    session_token: str = Field(..., min_length=1, max_length=512)


class TouchResponse(BaseModel):
    result: Literal["valid", "expired", "mismatch"]


class AuthorizeRequest(BaseModel):
    principal_id: str = Field(..., min_length=1, max_length=128)
    tenant_id: str = Field(..., min_length=1, max_length=128)
    action: str = Field(..., min_length=1, max_length=128)
    scope_type: Optional[str] = Field(default=None, max_length=32)
    scope_key: Optional[str] = Field(default=None, max_length=256)

    @model_validator(mode="after")
    def _scope_pair(self) -> "AuthorizeRequest":
        if (self.scope_type is None) != (self.scope_key is None):
            raise ValueError("scope_type and scope_key must be provided together")
        return self


class AuthorizeResponse(BaseModel):
    allowed: bool
    reason: str


class RoleCreateRequest(BaseModel):
    key: str = Field(..., min_length=2, max_length=64)
    name: str = Field(..., min_length=1, max_length=128)
    permissions: List[str] = Field(default_factory=list, max_length=500)
    description: Optional[str] = Field(default=None, max_length=1024)


class RoleUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=128)
    permissions: Optional[List[str]] = Field(default=None, max_length=500)
    description: Optional[str] = Field(default=None, max_length=1024)


class RoleResponse(BaseModel):
    id: str
    tenant_id: str
    key: str
    name: str
    permissions: List[str]
    description: Optional[str] = None
    system: bool = False

    @classmethod
    def from_role(cls, role) -> "RoleResponse":
        return cls(
            id=role.id,
            tenant_id=role.tenant_id,
            key=role.key,
            name=role.name,
            permissions=sorted(role.permissions),
            description=role.description,
            system=role.system,
        )


class MembershipRoleRequest(BaseModel):
    role_id: str = Field(..., min_length=1, max_length=128)


class MembershipResponse(BaseModel):
    id: str
    tenant_id: str
    principal_id: str
    status: str
    role_ids: List[str]
    company_ids: List[str]
    primary_role: Optional[str] = None

    @classmethod
    def from_membership(cls, membership) -> "MembershipResponse":
        return cls(
            id=membership.id,
            tenant_id=membership.tenant_id,
            principal_id=membership.principal_id,
            status=membership.status.value,
            role_ids=list(membership.role_ids),
            company_ids=list(membership.company_ids),
            primary_role=membership.primary_role,
        )


class GrantCreateRequest(BaseModel):
    scope_type: str = Field(default="resource", min_length=1, max_length=32)
    scope_key: str = Field(..., min_length=1, max_length=256)
    effect: Literal["allow", "deny"]
    principal_id: Optional[str] = Field(default=None, max_length=128)
    role_id: Optional[str] = Field(default=None, max_length=128)
    company_id: Optional[str] = Field(default=None, max_length=128)
    reason: Optional[str] = Field(default=None, max_length=1024)


class GrantUpdateRequest(BaseModel):
    scope_type: Optional[str] = Field(default=None, max_length=32)
    scope_key: Optional[str] = Field(default=None, max_length=256)
    effect: Optional[Literal["allow", "deny"]] = None
    principal_id: Optional[str] = Field(default=None, max_length=128)
    role_id: Optional[str] = Field(default=None, max_length=128)
    company_id: Optional[str] = Field(default=None, max_length=128)
    reason: Optional[str] = Field(default=None, max_length=1024)


class GrantResponse(BaseModel):
    id: str
    tenant_id: str
    scope_type: str
    scope_key: str
    effect: str
    target_type: str
    principal_id: Optional[str] = None
    role_id: Optional[str] = None
    company_id: Optional[str] = None
    reason: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_grant(cls, grant) -> "GrantResponse":
        return cls(
            id=grant.id,
            tenant_id=grant.tenant_id,
            scope_type=grant.scope_type,
            scope_key=grant.scope_key,
            effect=grant.effect.value,
            target_type=grant.target_type,
            principal_id=grant.principal_id,
            role_id=grant.role_id,
            company_id=grant.company_id,
            reason=grant.reason,
            created_by=grant.created_by,
            created_at=grant.created_at,
        )


class LicenseUpdateRequest(BaseModel):
    capacity: int = Field(..., ge=0, le=1_000_000)
    features: Optional[Dict[str, Any]] = None


class LicenseResponse(BaseModel):
    tenant_id: str
    capacity: int
    features: Dict[str, Any]
    seats_assigned: int


class SeatAssignRequest(BaseModel):
    principal_id: str = Field(..., min_length=1, max_length=128)
    expires_at: Optional[datetime] = None


class SeatResponse(BaseModel):
    tenant_id: str
    principal_id: str
    assigned_at: datetime
    assigned_by: Optional[str] = None
    expires_at: Optional[datetime] = None


class SecuritySettingsRequest(BaseModel):
    lockout_threshold: Optional[int] = Field(default=None, ge=1, le=100)
    email_alerts_enabled: Optional[bool] = None
    seat_required_actions: Optional[List[str]] = Field(default=None, max_length=200)


class SecuritySettingsResponse(BaseModel):
    tenant_id: str
    lockout_threshold: int
    email_alerts_enabled: bool
    seat_required_actions: List[str]


class LockRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=512)


class LockoutStatusResponse(BaseModel):
    principal_id: str
    is_locked: bool
    failed_attempts: int
    threshold: int
    locked_at: Optional[datetime] = None
    locked_by: Optional[str] = None
    reason: Optional[str] = None


class AuthEventResponse(BaseModel):
    id: Optional[str]
    tenant_id: Optional[str] = None
    principal_id: Optional[str] = None
    event_type: str
    timestamp: datetime
    ip: Optional[str] = None
    geo: Optional[Dict[str, Any]] = None
    user_agent: Optional[str] = None
    success: bool
    reason: Optional[str] = None
    severity: str
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_event(cls, event) -> "AuthEventResponse":
        return cls(
            id=event.id,
            tenant_id=event.tenant_id,
            principal_id=event.principal_id,
            event_type=event.event_type.value,
            timestamp=event.timestamp,
            ip=event.ip,
            geo=event.geo.to_dict() if event.geo else None,
            user_agent=event.user_agent,
            success=event.success,
            reason=event.reason,
            severity=event.severity,
            metadata=dict(event.metadata),
        )


class AuthEventListResponse(BaseModel):
    items: List[AuthEventResponse]
    total: int
    page: int
    limit: int
