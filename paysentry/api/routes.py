from __future__ import annotations

import ipaddress
from datetime import datetime
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request

from paysentry.api.schemas import (
    AuthEventListResponse,
    AuthEventResponse,
    AuthorizeRequest,
    AuthorizeResponse,
    Envelope,
    GrantCreateRequest,
    GrantResponse,
    GrantUpdateRequest,
    LicenseResponse,
    LicenseUpdateRequest,
    LockoutStatusResponse,
    LockRequest,
    LoginRequest,
    LoginResponse,
    MembershipResponse,
    MembershipRoleRequest,
    RoleCreateRequest,
    RoleResponse,
    RoleUpdateRequest,
    SeatAssignRequest,
    SeatResponse,
    SecuritySettingsRequest,
    SecuritySettingsResponse,
    SessionRequest,
    TouchResponse,
)
from paysentry.config import get_settings
from paysentry.logging import get_logger
from paysentry.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


def _in_networks(address: str, networks: list) -> bool:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return any(ip in network for network in networks)


def _client_origin(request: Request) -> Optional[str]:
    """Caller address for rate limiting and session origin.

    X-Forwarded-For is read only when the socket peer is a trusted proxy, and
    then the rightmost hop that is not itself a trusted proxy is the client.
    """
    peer = request.client.host if request.client else None
    trusted = get_settings().trusted_proxy_networks()
    if not peer or not _in_networks(peer, trusted):
        return peer
    hops = [
        hop.strip()
        for hop in request.headers.get("x-forwarded-for", "").split(",")
        if hop.strip()
    ]
    for hop in reversed(hops):
        if not _in_networks(hop, trusted):
            return hop
    return hops[0] if hops else peer


def _bearer_token(authorization: Optional[str], session_id: Optional[str]) -> Optional[str]:
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
        return None
    return session_id or None


def require_permission(permission: str) -> Callable:
    """Dependency factory: the caller's session principal must hold ``permission``
    in the path tenant. Returns the acting principal id."""

    async def _dependency(
        request: Request,
        tenant_id: str = Path(..., min_length=1, max_length=128),
        authorization: Optional[str] = Header(None),
        session_id: Optional[str] = Header(None, convert_underscores=False),
    ) -> str:
        runtime = get_runtime()
        token = _bearer_token(authorization, session_id)
        if not token:
            raise _http_error("unauthorized", "session required", status_code=401)
        session = await runtime.sessions.authenticate(token, _client_origin(request))
        if session is None or runtime.lockout.is_locked(session.principal_id):
            raise _http_error("unauthorized", "invalid session", status_code=401)
        actor = session.principal_id
        decision = runtime.authorization.authorize(actor, tenant_id, permission)
        if not decision.allowed:
            logger.warning(
                "admin_access_denied",
                actor=actor,
                tenant_id=tenant_id,
                permission=permission,
                reason=decision.reason,
            )
            raise _http_error(
                "forbidden",
                "permission denied",
                status_code=403,
                details={"permission": permission, "reason": decision.reason},
            )
        return actor

    return _dependency


def _lockout_response(status) -> LockoutStatusResponse:
    return LockoutStatusResponse(**status.__dict__)


def _settings_response(settings) -> SecuritySettingsResponse:
    runtime = get_runtime()
    return SecuritySettingsResponse(
        tenant_id=settings.tenant_id,
        lockout_threshold=runtime.lockout.threshold_for(settings.tenant_id),
        email_alerts_enabled=settings.email_alerts_enabled,
        seat_required_actions=list(settings.seat_required_actions),
    )


# ----------------------------------------------------------------------
# authentication
# ----------------------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Every failure (bad password, unknown email, locked account, rate limit)
    produces the same 401 body so callers cannot tell account states apart.
    """
    runtime = get_runtime()
    result = await runtime.login.attempt_login(
        body.email,
        body.password,
        _client_origin(request),
        user_agent=request.headers.get("user-agent"),
        tenant_id=body.tenant_id,
    )
    if not result.ok or result.session is None:
        raise _http_error("unauthorized", result.message, status_code=401)
    session = result.session
    return Envelope(
        status="ok",
        data=LoginResponse(
            principal_id=session.principal_id,
            session_token=session.token,
            tenant_id=session.tenant_id,
            created_at=session.created_at,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: SessionRequest, request: Request):
    runtime = get_runtime()
    revoked = await runtime.login.logout(
        body.session_token,
        origin=_client_origin(request),
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(status="ok", data={"revoked": revoked})


@router.post("/auth/session/touch", response_model=Envelope, tags=["auth"])
async def touch_session(body: SessionRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.sessions.touch(body.session_token, _client_origin(request))
    return Envelope(status="ok", data=TouchResponse(result=result.value))


@router.post("/authorize", response_model=Envelope, tags=["authorization"])
async def authorize(body: AuthorizeRequest):
    runtime = get_runtime()
    scope = (body.scope_type, body.scope_key) if body.scope_type else None
    decision = runtime.authorization.authorize(
        body.principal_id, body.tenant_id, body.action, scope
    )
    return Envelope(
        status="ok",
        data=AuthorizeResponse(allowed=decision.allowed, reason=decision.reason),
    )


# ----------------------------------------------------------------------
# roles and memberships
# ----------------------------------------------------------------------


@router.get("/tenants/{tenant_id}/roles", response_model=Envelope, tags=["admin"])
async def list_roles(
    tenant_id: str, actor: str = Depends(require_permission("admin.assign_roles"))
):
    roles = get_runtime().admin.list_roles(tenant_id)
    return Envelope(status="ok", data=[RoleResponse.from_role(r) for r in roles])


@router.post("/tenants/{tenant_id}/roles", response_model=Envelope, tags=["admin"])
async def create_role(
    tenant_id: str,
    body: RoleCreateRequest,
    actor: str = Depends(require_permission("admin.assign_roles")),
):
    role = get_runtime().admin.create_role(
        tenant_id,
        body.key,
        body.name,
        body.permissions,
        description=body.description,
        actor=actor,
    )
    return Envelope(status="ok", data=RoleResponse.from_role(role))


@router.patch("/tenants/{tenant_id}/roles/{role_id}", response_model=Envelope, tags=["admin"])
async def update_role(
    tenant_id: str,
    role_id: str,
    body: RoleUpdateRequest,
    actor: str = Depends(require_permission("admin.assign_roles")),
):
    role = get_runtime().admin.update_role(
        tenant_id,
        role_id,
        name=body.name,
        permissions=body.permissions,
        description=body.description,
        actor=actor,
    )
    return Envelope(status="ok", data=RoleResponse.from_role(role))


@router.delete("/tenants/{tenant_id}/roles/{role_id}", response_model=Envelope, tags=["admin"])
async def delete_role(
    tenant_id: str,
    role_id: str,
    actor: str = Depends(require_permission("admin.assign_roles")),
):
    deleted = await get_runtime().admin.delete_role(tenant_id, role_id, actor=actor)
    return Envelope(status="ok", data={"deleted": deleted})


@router.post(
    "/tenants/{tenant_id}/members/{principal_id}/roles",
    response_model=Envelope,
    tags=["admin"],
)
async def attach_role(
    tenant_id: str,
    principal_id: str,
    body: MembershipRoleRequest,
    actor: str = Depends(require_permission("admin.assign_roles")),
):
    membership = await get_runtime().admin.attach_role(tenant_id, principal_id, body.role_id)
    return Envelope(status="ok", data=MembershipResponse.from_membership(membership))


@router.delete(
    "/tenants/{tenant_id}/members/{principal_id}/roles/{role_id}",
    response_model=Envelope,
    tags=["admin"],
)
async def detach_role(
    tenant_id: str,
    principal_id: str,
    role_id: str,
    actor: str = Depends(require_permission("admin.assign_roles")),
):
    membership = await get_runtime().admin.detach_role(tenant_id, principal_id, role_id)
    return Envelope(status="ok", data=MembershipResponse.from_membership(membership))


@router.get("/tenants/{tenant_id}/permissions", response_model=Envelope, tags=["admin"])
async def list_permissions(
    tenant_id: str, actor: str = Depends(require_permission("admin.assign_roles"))
):
    return Envelope(status="ok", data=get_runtime().registry.groups(tenant_id))


# ----------------------------------------------------------------------
# access grants
# ----------------------------------------------------------------------


@router.get("/tenants/{tenant_id}/grants", response_model=Envelope, tags=["admin"])
async def list_grants(
    tenant_id: str,
    scope_type: Optional[str] = Query(None, max_length=32),
    scope_key: Optional[str] = Query(None, max_length=256),
    actor: str = Depends(require_permission("admin.manage_security")),
):
    grants = get_runtime().admin.list_grants(
        tenant_id, scope_type=scope_type, scope_key=scope_key
    )
    return Envelope(status="ok", data=[GrantResponse.from_grant(g) for g in grants])


@router.post("/tenants/{tenant_id}/grants", response_model=Envelope, tags=["admin"])
async def create_grant(
    tenant_id: str,
    body: GrantCreateRequest,
    actor: str = Depends(require_permission("admin.manage_security")),
):
    grant = get_runtime().admin.create_grant(
        tenant_id,
        scope_type=body.scope_type,
        scope_key=body.scope_key,
        effect=body.effect,
        principal_id=body.principal_id,
        role_id=body.role_id,
        company_id=body.company_id,
        reason=body.reason,
        actor=actor,
    )
    return Envelope(status="ok", data=GrantResponse.from_grant(grant))


@router.patch("/tenants/{tenant_id}/grants/{grant_id}", response_model=Envelope, tags=["admin"])
async def update_grant(
    tenant_id: str,
    grant_id: str,
    body: GrantUpdateRequest,
    actor: str = Depends(require_permission("admin.manage_security")),
):
    grant = get_runtime().admin.update_grant(
        tenant_id, grant_id, body.model_dump(exclude_unset=True), actor=actor
    )
    return Envelope(status="ok", data=GrantResponse.from_grant(grant))


@router.delete("/tenants/{tenant_id}/grants/{grant_id}", response_model=Envelope, tags=["admin"])
async def delete_grant(
    tenant_id: str,
    grant_id: str,
    actor: str = Depends(require_permission("admin.manage_security")),
):
    deleted = get_runtime().admin.delete_grant(tenant_id, grant_id, actor=actor)
    return Envelope(status="ok", data={"deleted": deleted})


# ----------------------------------------------------------------------
# licensing
# ----------------------------------------------------------------------


@router.get("/tenants/{tenant_id}/license", response_model=Envelope, tags=["admin"])
async def get_license(
    tenant_id: str, actor: str = Depends(require_permission("admin.manage_licenses"))
):
    admin = get_runtime().admin
    lic = admin.get_license(tenant_id)
    return Envelope(
        status="ok",
        data=LicenseResponse(
            tenant_id=lic.tenant_id,
            capacity=lic.capacity,
            features=dict(lic.features),
            seats_assigned=len(admin.list_seats(tenant_id)),
        ),
    )


@router.put("/tenants/{tenant_id}/license", response_model=Envelope, tags=["admin"])
async def update_license(
    tenant_id: str,
    body: LicenseUpdateRequest,
    actor: str = Depends(require_permission("admin.manage_licenses")),
):
    admin = get_runtime().admin
    lic = admin.update_license(tenant_id, body.capacity, body.features, actor=actor)
    return Envelope(
        status="ok",
        data=LicenseResponse(
            tenant_id=lic.tenant_id,
            capacity=lic.capacity,
            features=dict(lic.features),
            seats_assigned=len(admin.list_seats(tenant_id)),
        ),
    )


@router.get("/tenants/{tenant_id}/seats", response_model=Envelope, tags=["admin"])
async def list_seats(
    tenant_id: str, actor: str = Depends(require_permission("admin.manage_licenses"))
):
    seats = get_runtime().admin.list_seats(tenant_id)
    return Envelope(status="ok", data=[SeatResponse(**seat.__dict__) for seat in seats])


@router.post("/tenants/{tenant_id}/seats", response_model=Envelope, tags=["admin"])
async def assign_seat(
    tenant_id: str,
    body: SeatAssignRequest,
    actor: str = Depends(require_permission("admin.manage_licenses")),
):
    seat = get_runtime().admin.assign_seat(
        tenant_id, body.principal_id, expires_at=body.expires_at, actor=actor
    )
    return Envelope(status="ok", data=SeatResponse(**seat.__dict__))


@router.delete(
    "/tenants/{tenant_id}/seats/{principal_id}", response_model=Envelope, tags=["admin"]
)
async def revoke_seat(
    tenant_id: str,
    principal_id: str,
    actor: str = Depends(require_permission("admin.manage_licenses")),
):
    revoked = get_runtime().admin.revoke_seat(tenant_id, principal_id, actor=actor)
    return Envelope(status="ok", data={"revoked": revoked})


# ----------------------------------------------------------------------
# security settings and lockout
# ----------------------------------------------------------------------


@router.get("/tenants/{tenant_id}/security-settings", response_model=Envelope, tags=["admin"])
async def get_security_settings(
    tenant_id: str, actor: str = Depends(require_permission("admin.manage_security"))
):
    settings = get_runtime().admin.get_security_settings(tenant_id)
    return Envelope(status="ok", data=_settings_response(settings))


@router.patch("/tenants/{tenant_id}/security-settings", response_model=Envelope, tags=["admin"])
async def update_security_settings(
    tenant_id: str,
    body: SecuritySettingsRequest,
    actor: str = Depends(require_permission("admin.manage_security")),
):
    settings = get_runtime().admin.update_security_settings(
        tenant_id,
        lockout_threshold=body.lockout_threshold,
        email_alerts_enabled=body.email_alerts_enabled,
        seat_required_actions=body.seat_required_actions,
        actor=actor,
    )
    return Envelope(status="ok", data=_settings_response(settings))


@router.get("/tenants/{tenant_id}/locked-accounts", response_model=Envelope, tags=["admin"])
async def list_locked_accounts(
    tenant_id: str, actor: str = Depends(require_permission("admin.manage_users"))
):
    locked = get_runtime().lockout.list_locked(tenant_id)
    return Envelope(
        status="ok",
        data=[
            {"email": principal.email, **_lockout_response(status).model_dump(mode="json")}
            for principal, status in locked
        ],
    )


@router.get(
    "/tenants/{tenant_id}/principals/{principal_id}/lockout",
    response_model=Envelope,
    tags=["admin"],
)
async def lockout_status(
    tenant_id: str,
    principal_id: str,
    actor: str = Depends(require_permission("admin.manage_users")),
):
    status = get_runtime().lockout.status(principal_id, tenant_id)
    return Envelope(status="ok", data=_lockout_response(status))


@router.post(
    "/tenants/{tenant_id}/principals/{principal_id}/lock",
    response_model=Envelope,
    tags=["admin"],
)
async def lock_account(
    tenant_id: str,
    principal_id: str,
    body: LockRequest,
    actor: str = Depends(require_permission("admin.manage_users")),
):
    runtime = get_runtime()
    status = await runtime.lockout.lock(
        principal_id, actor=actor, reason=body.reason, tenant_id=tenant_id
    )
    await runtime.sessions.revoke_principal(principal_id, "account_locked")
    return Envelope(status="ok", data=_lockout_response(status))


@router.post(
    "/tenants/{tenant_id}/principals/{principal_id}/unlock",
    response_model=Envelope,
    tags=["admin"],
)
async def unlock_account(
    tenant_id: str,
    principal_id: str,
    actor: str = Depends(require_permission("admin.manage_users")),
):
    status = await get_runtime().lockout.unlock(principal_id, actor=actor, tenant_id=tenant_id)
    return Envelope(status="ok", data=_lockout_response(status))


# ----------------------------------------------------------------------
# audit trail
# ----------------------------------------------------------------------


@router.get("/tenants/{tenant_id}/auth-events", response_model=Envelope, tags=["admin"])
async def list_auth_events(
    tenant_id: str,
    principal_id: Optional[str] = Query(None, max_length=128),
    event_type: Optional[str] = Query(None, max_length=64),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    ip: Optional[str] = Query(None, max_length=64),
    success: Optional[bool] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=1000),
    actor: str = Depends(require_permission("admin.view_audit_logs")),
):
    result = get_runtime().audit.list_events(
        tenant_id=tenant_id,
        principal_id=principal_id,
        event_type=event_type,
        start=start,
        end=end,
        ip=ip,
        success=success,
        page=page,
        limit=limit,
    )
    return Envelope(
        status="ok",
        data=AuthEventListResponse(
            items=[AuthEventResponse.from_event(e) for e in result.items],
            total=result.total,
            page=result.page,
            limit=result.limit,
        ),
    )


@router.get("/healthz", response_model=Envelope, tags=["meta"])
async def healthz():
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data={
            "store": type(runtime.store).__name__,
            "redis": runtime.cache is not None,
        },
    )
