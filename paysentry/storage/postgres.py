from __future__ import annotations

import contextlib
import json
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from paysentry.logging import get_logger
from paysentry.storage.errors import ConstraintViolation, StoreUnavailable
from paysentry.storage.models import (
    AccessGrant,
    AuthEvent,
    AuthEventType,
    GeoLocation,
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

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS tenant (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tenant_security_settings (
        tenant_id TEXT PRIMARY KEY REFERENCES tenant(id) ON DELETE CASCADE,
        lockout_threshold INTEGER,
        email_alerts_enabled BOOLEAN NOT NULL DEFAULT TRUE,
        seat_required_actions TEXT[] NOT NULL DEFAULT '{}',
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tenant_permission (
        tenant_id TEXT NOT NULL REFERENCES tenant(id) ON DELETE CASCADE,
        token TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (tenant_id, token)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS principal (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        display_name TEXT,
        home_tenant_id TEXT REFERENCES tenant(id) ON DELETE SET NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS principal_credential (
        principal_id TEXT PRIMARY KEY REFERENCES principal(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS principal_security (
        principal_id TEXT PRIMARY KEY REFERENCES principal(id) ON DELETE CASCADE,
        failed_attempts INTEGER NOT NULL DEFAULT 0,
        locked_at TIMESTAMPTZ,
        locked_by TEXT,
        lock_reason TEXT,
        unlocked_at TIMESTAMPTZ,
        unlocked_by TEXT,
        last_failed_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL REFERENCES tenant(id) ON DELETE CASCADE,
        key TEXT NOT NULL,
        name TEXT NOT NULL,
        permissions TEXT[] NOT NULL DEFAULT '{}',
        description TEXT,
        system BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (tenant_id, key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS membership (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL REFERENCES tenant(id) ON DELETE CASCADE,
        principal_id TEXT NOT NULL REFERENCES principal(id) ON DELETE CASCADE,
        status TEXT NOT NULL DEFAULT 'invited',
        primary_role TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (tenant_id, principal_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS membership_role (
        membership_id TEXT NOT NULL REFERENCES membership(id) ON DELETE CASCADE,
        role_id TEXT NOT NULL REFERENCES role(id) ON DELETE CASCADE,
        attached_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (membership_id, role_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS membership_company (
        membership_id TEXT NOT NULL REFERENCES membership(id) ON DELETE CASCADE,
        company_id TEXT NOT NULL,
        attached_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (membership_id, company_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS access_grant (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL REFERENCES tenant(id) ON DELETE CASCADE,
        scope_type TEXT NOT NULL,
        scope_key TEXT NOT NULL,
        effect TEXT NOT NULL CHECK (effect IN ('allow', 'deny')),
        principal_id TEXT REFERENCES principal(id) ON DELETE CASCADE,
        role_id TEXT REFERENCES role(id) ON DELETE CASCADE,
        company_id TEXT,
        reason TEXT,
        created_by TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS access_grant_scope_idx ON access_grant (tenant_id, scope_type, scope_key)",
    """
    CREATE TABLE IF NOT EXISTS tenant_license (
        tenant_id TEXT PRIMARY KEY REFERENCES tenant(id) ON DELETE CASCADE,
        capacity INTEGER NOT NULL DEFAULT 0 CHECK (capacity >= 0),
        features JSONB NOT NULL DEFAULT '{}'::jsonb,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS license_seat (
        tenant_id TEXT NOT NULL REFERENCES tenant(id) ON DELETE CASCADE,
        principal_id TEXT NOT NULL REFERENCES principal(id) ON DELETE CASCADE,
        assigned_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        assigned_by TEXT,
        expires_at TIMESTAMPTZ,
        PRIMARY KEY (tenant_id, principal_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_event (
        id TEXT PRIMARY KEY,
        tenant_id TEXT,
        principal_id TEXT,
        event_type TEXT NOT NULL,
        timestamp_utc TIMESTAMPTZ NOT NULL,
        ip_address TEXT,
        geo_location JSONB,
        user_agent TEXT,
        success BOOLEAN NOT NULL,
        reason TEXT,
        severity TEXT NOT NULL DEFAULT 'low',
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_event_tenant_ts_idx ON auth_event (tenant_id, timestamp_utc DESC)",
    "CREATE INDEX IF NOT EXISTS auth_event_principal_ts_idx ON auth_event (principal_id, timestamp_utc DESC)",
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        token TEXT PRIMARY KEY,
        principal_id TEXT NOT NULL REFERENCES principal(id) ON DELETE CASCADE,
        tenant_id TEXT,
        origin TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_activity TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_principal_idx ON auth_session (principal_id, last_activity)",
]

_GRANT_COLUMNS = {
    "scope_type",
    "scope_key",
    "effect",
    "principal_id",
    "role_id",
    "company_id",
    "reason",
}

_SECURITY_COLUMNS = (
    "principal_id, failed_attempts, locked_at, locked_by, lock_reason, "
    "unlocked_at, unlocked_by, last_failed_at"
)


class PostgresStore:
    """Postgres-backed store for tenants, authorization data and the audit trail."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        """Borrow a pooled connection, translating driver errors to storage errors."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("duplicate record", {"error": str(exc.diag.message_primary)}) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("referenced record missing", {"error": str(exc.diag.message_primary)}) from exc
        except errors.CheckViolation as exc:
            raise ConstraintViolation("check constraint violated", {"error": str(exc.diag.message_primary)}) from exc
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("database unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # ------------------------------------------------------------------
    # row mappers
    # ------------------------------------------------------------------

    @staticmethod
    def _json(value: Any) -> Any:
        if isinstance(value, str):
            try:
                return json.loads(value)
            except (json.JSONDecodeError, TypeError):
                return None
        return value

    @staticmethod
    def _security_from_row(row: dict) -> SecurityState:
        return SecurityState(
            principal_id=str(row["principal_id"]),
            failed_attempts=int(row.get("failed_attempts") or 0),
            locked_at=row.get("locked_at"),
            locked_by=row.get("locked_by"),
            lock_reason=row.get("lock_reason"),
            unlocked_at=row.get("unlocked_at"),
            unlocked_by=row.get("unlocked_by"),
            last_failed_at=row.get("last_failed_at"),
        )

    @staticmethod
    def _principal_from_row(row: dict) -> Principal:
        return Principal(
            id=str(row["id"]),
            email=row["email"],
            display_name=row.get("display_name"),
            home_tenant_id=row.get("home_tenant_id"),
            is_active=bool(row.get("is_active", True)),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _role_from_row(row: dict) -> Role:
        return Role(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            key=row["key"],
            name=row["name"],
            permissions=set(row.get("permissions") or []),
            description=row.get("description"),
            system=bool(row.get("system")),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _grant_from_row(row: dict) -> AccessGrant:
        return AccessGrant(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            scope_type=row["scope_type"],
            scope_key=row["scope_key"],
            effect=GrantEffect(row["effect"]),
            principal_id=row.get("principal_id"),
            role_id=row.get("role_id"),
            company_id=row.get("company_id"),
            reason=row.get("reason"),
            created_by=row.get("created_by"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _seat_from_row(row: dict) -> LicenseSeat:
        return LicenseSeat(
            tenant_id=str(row["tenant_id"]),
            principal_id=str(row["principal_id"]),
            assigned_at=row.get("assigned_at") or utcnow(),
            assigned_by=row.get("assigned_by"),
            expires_at=row.get("expires_at"),
        )

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            token=row["token"],
            principal_id=str(row["principal_id"]),
            tenant_id=row.get("tenant_id"),
            origin=row.get("origin"),
            user_agent=row.get("user_agent"),
            created_at=row.get("created_at") or utcnow(),
            last_activity=row.get("last_activity") or utcnow(),
        )

    def _event_from_row(self, row: dict) -> AuthEvent:
        return AuthEvent(
            id=str(row["id"]),
            tenant_id=row.get("tenant_id"),
            principal_id=row.get("principal_id"),
            event_type=AuthEventType(row["event_type"]),
            timestamp=row["timestamp_utc"],
            ip=row.get("ip_address"),
            geo=GeoLocation.from_dict(self._json(row.get("geo_location"))),
            user_agent=row.get("user_agent"),
            success=bool(row["success"]),
            reason=row.get("reason"),
            severity=row.get("severity") or "low",
            metadata=self._json(row.get("metadata")) or {},
        )

    # ------------------------------------------------------------------
    # tenants
    # ------------------------------------------------------------------

    def create_tenant(self, name: str, *, tenant_id: Optional[str] = None) -> Tenant:
        tenant = Tenant(id=tenant_id or new_id(), name=name)
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO tenant (id, name, created_at) VALUES (%s, %s, %s)",
                (tenant.id, tenant.name, tenant.created_at),
            )
        return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tenant WHERE id = %s", (tenant_id,)).fetchone()
        if not row:
            return None
        return Tenant(id=str(row["id"]), name=row["name"], created_at=row["created_at"])

    def get_security_settings(self, tenant_id: str) -> Optional[TenantSecuritySettings]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenant_security_settings WHERE tenant_id = %s", (tenant_id,)
            ).fetchone()
        if not row:
            return None
        return TenantSecuritySettings(
            tenant_id=str(row["tenant_id"]),
            lockout_threshold=row.get("lockout_threshold"),
            email_alerts_enabled=bool(row.get("email_alerts_enabled", True)),
            seat_required_actions=list(row.get("seat_required_actions") or []),
            updated_at=row.get("updated_at") or utcnow(),
        )

    def upsert_security_settings(
        self, settings: TenantSecuritySettings
    ) -> TenantSecuritySettings:
        now = utcnow()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tenant_security_settings
                    (tenant_id, lockout_threshold, email_alerts_enabled, seat_required_actions, updated_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (tenant_id) DO UPDATE SET
                    lockout_threshold = EXCLUDED.lockout_threshold,
                    email_alerts_enabled = EXCLUDED.email_alerts_enabled,
                    seat_required_actions = EXCLUDED.seat_required_actions,
                    updated_at = EXCLUDED.updated_at
                """,
                (
                    settings.tenant_id,
                    settings.lockout_threshold,
                    settings.email_alerts_enabled,
                    list(settings.seat_required_actions),
                    now,
                ),
            )
        return TenantSecuritySettings(
            tenant_id=settings.tenant_id,
            lockout_threshold=settings.lockout_threshold,
            email_alerts_enabled=settings.email_alerts_enabled,
            seat_required_actions=list(settings.seat_required_actions),
            updated_at=now,
        )

    def add_custom_permission(self, tenant_id: str, token: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO tenant_permission (tenant_id, token) VALUES (%s, %s) "
                "ON CONFLICT (tenant_id, token) DO NOTHING",
                (tenant_id, token),
            )

    def list_custom_permissions(self, tenant_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT token FROM tenant_permission WHERE tenant_id = %s ORDER BY token",
                (tenant_id,),
            ).fetchall()
        return [row["token"] for row in rows]

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
        principal = Principal(
            id=principal_id or new_id(),
            email=email.strip().lower(),
            display_name=display_name,
            home_tenant_id=home_tenant_id,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO principal (id, email, display_name, home_tenant_id, is_active, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    principal.id,
                    principal.email,
                    principal.display_name,
                    principal.home_tenant_id,
                    principal.is_active,
                    principal.created_at,
                ),
            )
            conn.execute(
                "INSERT INTO principal_security (principal_id) VALUES (%s)",
                (principal.id,),
            )
        return principal

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principal WHERE id = %s", (principal_id,)
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principal WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def save_password(
        self, principal_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO principal_credential (principal_id, password_hash, password_algo, updated_at)
                VALUES (%s, %s, %s, now())
                ON CONFLICT (principal_id) DO UPDATE SET
                    password_hash = EXCLUDED.password_hash,
                    password_algo = EXCLUDED.password_algo,
                    updated_at = now()
                """,
                (principal_id, password_hash, password_algo),
            )

    def get_password_record(self, principal_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM principal_credential WHERE principal_id = %s",
                (principal_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # ------------------------------------------------------------------
    # memberships
    # ------------------------------------------------------------------

    def _load_membership(self, conn: psycopg.Connection, row: dict) -> Membership:
        role_rows = conn.execute(
            "SELECT role_id FROM membership_role WHERE membership_id = %s ORDER BY attached_at, role_id",
            (row["id"],),
        ).fetchall()
        company_rows = conn.execute(
            "SELECT company_id FROM membership_company WHERE membership_id = %s ORDER BY attached_at, company_id",
            (row["id"],),
        ).fetchall()
        return Membership(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            principal_id=str(row["principal_id"]),
            status=MembershipStatus(row["status"]),
            role_ids=[str(r["role_id"]) for r in role_rows],
            company_ids=[str(r["company_id"]) for r in company_rows],
            primary_role=row.get("primary_role"),
            created_at=row.get("created_at") or utcnow(),
        )

    def create_membership(
        self,
        tenant_id: str,
        principal_id: str,
        status: MembershipStatus = MembershipStatus.INVITED,
    ) -> Membership:
        membership = Membership(
            id=new_id(),
            tenant_id=tenant_id,
            principal_id=principal_id,
            status=MembershipStatus(status),
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO membership (id, tenant_id, principal_id, status, created_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (
                    membership.id,
                    tenant_id,
                    principal_id,
                    membership.status.value,
                    membership.created_at,
                ),
            )
        return membership

    def get_membership(self, tenant_id: str, principal_id: str) -> Optional[Membership]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM membership WHERE tenant_id = %s AND principal_id = %s",
                (tenant_id, principal_id),
            ).fetchone()
            return self._load_membership(conn, row) if row else None

    def get_membership_by_id(self, membership_id: str) -> Optional[Membership]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM membership WHERE id = %s", (membership_id,)
            ).fetchone()
            return self._load_membership(conn, row) if row else None

    def list_memberships(self, tenant_id: str) -> List[Membership]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM membership WHERE tenant_id = %s ORDER BY created_at",
                (tenant_id,),
            ).fetchall()
            return [self._load_membership(conn, row) for row in rows]

    def set_membership_status(
        self, membership_id: str, status: MembershipStatus
    ) -> Optional[Membership]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE membership SET status = %s WHERE id = %s RETURNING *",
                (MembershipStatus(status).value, membership_id),
            ).fetchone()
            return self._load_membership(conn, row) if row else None

    def _mutate_membership(self, membership_id: str, sql: str, value: str) -> Membership:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM membership WHERE id = %s FOR UPDATE", (membership_id,)
            ).fetchone()
            if not row:
                raise ConstraintViolation(
                    "membership missing", {"membership_id": membership_id}
                )
            conn.execute(sql, (membership_id, value))
            return self._load_membership(conn, row)

    def attach_role(self, membership_id: str, role_id: str) -> Membership:
        return self._mutate_membership(
            membership_id,
            "INSERT INTO membership_role (membership_id, role_id) VALUES (%s, %s) ON CONFLICT DO NOTHING",
            role_id,
        )

    def detach_role(self, membership_id: str, role_id: str) -> Membership:
        return self._mutate_membership(
            membership_id,
            "DELETE FROM membership_role WHERE membership_id = %s AND role_id = %s",
            role_id,
        )

    def attach_company(self, membership_id: str, company_id: str) -> Membership:
        return self._mutate_membership(
            membership_id,
            "INSERT INTO membership_company (membership_id, company_id) VALUES (%s, %s) ON CONFLICT DO NOTHING",
            company_id,
        )

    def detach_company(self, membership_id: str, company_id: str) -> Membership:
        return self._mutate_membership(
            membership_id,
            "DELETE FROM membership_company WHERE membership_id = %s AND company_id = %s",
            company_id,
        )

    def set_primary_role(self, membership_id: str, role_key: Optional[str]) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE membership SET primary_role = %s WHERE id = %s",
                (role_key, membership_id),
            )

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
        role = Role(
            id=new_id(),
            tenant_id=tenant_id,
            key=key,
            name=name,
            permissions=set(permissions),
            description=description,
            system=system,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO role (id, tenant_id, key, name, permissions, description, system, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    role.id,
                    tenant_id,
                    key,
                    name,
                    sorted(role.permissions),
                    description,
                    system,
                    role.created_at,
                    role.updated_at,
                ),
            )
        return role

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE id = %s", (role_id,)).fetchone()
        return self._role_from_row(row) if row else None

    def get_role_by_key(self, tenant_id: str, key: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM role WHERE tenant_id = %s AND key = %s", (tenant_id, key)
            ).fetchone()
        return self._role_from_row(row) if row else None

    def get_roles(self, role_ids: Iterable[str]) -> List[Role]:
        ids = list(role_ids)
        if not ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM role WHERE id = ANY(%s)", (ids,)
            ).fetchall()
        by_id = {str(row["id"]): self._role_from_row(row) for row in rows}
        return [by_id[rid] for rid in ids if rid in by_id]

    def list_roles(self, tenant_id: str) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM role WHERE tenant_id = %s ORDER BY key", (tenant_id,)
            ).fetchall()
        return [self._role_from_row(row) for row in rows]

    def update_role(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        permissions: Optional[Iterable[str]] = None,
        description: Optional[str] = None,
    ) -> Optional[Role]:
        perms = sorted(set(permissions)) if permissions is not None else None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE role SET
                    name = COALESCE(%s, name),
                    permissions = COALESCE(%s, permissions),
                    description = COALESCE(%s, description),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (name, perms, description, role_id),
            ).fetchone()
        return self._role_from_row(row) if row else None

    def delete_role(self, role_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM role WHERE id = %s", (role_id,))
            return cur.rowcount > 0

    # ------------------------------------------------------------------
    # access grants
    # ------------------------------------------------------------------

    def create_grant(self, grant: AccessGrant) -> AccessGrant:
        grant_id = grant.id or new_id()
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO access_grant
                    (id, tenant_id, scope_type, scope_key, effect, principal_id, role_id, company_id, reason, created_by, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    grant_id,
                    grant.tenant_id,
                    grant.scope_type,
                    grant.scope_key,
                    GrantEffect(grant.effect).value,
                    grant.principal_id,
                    grant.role_id,
                    grant.company_id,
                    grant.reason,
                    grant.created_by,
                    grant.created_at,
                ),
            ).fetchone()
        return self._grant_from_row(row)

    def get_grant(self, grant_id: str) -> Optional[AccessGrant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM access_grant WHERE id = %s", (grant_id,)
            ).fetchone()
        return self._grant_from_row(row) if row else None

    def update_grant(self, grant_id: str, fields: Dict[str, Any]) -> Optional[AccessGrant]:
        updates = {k: v for k, v in fields.items() if k in _GRANT_COLUMNS}
        if not updates:
            return self.get_grant(grant_id)
        if "effect" in updates and updates["effect"] is not None:
            updates["effect"] = GrantEffect(updates["effect"]).value
        assignments = ", ".join(f"{column} = %s" for column in updates)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE access_grant SET {assignments} WHERE id = %s RETURNING *",
                (*updates.values(), grant_id),
            ).fetchone()
        return self._grant_from_row(row) if row else None

    def delete_grant(self, grant_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM access_grant WHERE id = %s", (grant_id,))
            return cur.rowcount > 0

    def list_grants(
        self,
        tenant_id: str,
        *,
        scope_type: Optional[str] = None,
        scope_key: Optional[str] = None,
    ) -> List[AccessGrant]:
        clauses = ["tenant_id = %s"]
        params: List[Any] = [tenant_id]
        if scope_type is not None:
            clauses.append("scope_type = %s")
            params.append(scope_type)
        if scope_key is not None:
            clauses.append("scope_key = %s")
            params.append(scope_key)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM access_grant WHERE {' AND '.join(clauses)} ORDER BY created_at DESC",
                params,
            ).fetchall()
        return [self._grant_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # licensing
    # ------------------------------------------------------------------

    def get_license(self, tenant_id: str) -> Optional[License]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenant_license WHERE tenant_id = %s", (tenant_id,)
            ).fetchone()
        if not row:
            return None
        return License(
            tenant_id=str(row["tenant_id"]),
            capacity=int(row["capacity"]),
            features=self._json(row.get("features")) or {},
            updated_at=row.get("updated_at") or utcnow(),
        )

    def upsert_license(
        self, tenant_id: str, capacity: int, features: Optional[Dict[str, Any]] = None
    ) -> License:
        with self._connect() as conn:
            in_use = conn.execute(
                "SELECT count(*) AS n FROM license_seat WHERE tenant_id = %s",
                (tenant_id,),
            ).fetchone()["n"]
            if capacity < in_use:
                raise ConstraintViolation(
                    "capacity below assigned seats",
                    {"capacity": capacity, "assigned": in_use},
                )
            row = conn.execute(
                """
                INSERT INTO tenant_license (tenant_id, capacity, features, updated_at)
                VALUES (%s, %s, %s, now())
                ON CONFLICT (tenant_id) DO UPDATE SET
                    capacity = EXCLUDED.capacity,
                    features = CASE WHEN %s THEN EXCLUDED.features ELSE tenant_license.features END,
                    updated_at = now()
                RETURNING *
                """,
                (tenant_id, capacity, json.dumps(features or {}), features is not None),
            ).fetchone()
        return License(
            tenant_id=str(row["tenant_id"]),
            capacity=int(row["capacity"]),
            features=self._json(row.get("features")) or {},
            updated_at=row.get("updated_at") or utcnow(),
        )

    def get_seat(self, tenant_id: str, principal_id: str) -> Optional[LicenseSeat]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM license_seat WHERE tenant_id = %s AND principal_id = %s",
                (tenant_id, principal_id),
            ).fetchone()
        return self._seat_from_row(row) if row else None

    def list_seats(self, tenant_id: str) -> List[LicenseSeat]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM license_seat WHERE tenant_id = %s ORDER BY assigned_at",
                (tenant_id,),
            ).fetchall()
        return [self._seat_from_row(row) for row in rows]

    def assign_seat(
        self,
        tenant_id: str,
        principal_id: str,
        *,
        assigned_by: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> LicenseSeat:
        with self._connect() as conn:
            # Row lock on the license serializes concurrent seat assignments
            lic = conn.execute(
                "SELECT capacity FROM tenant_license WHERE tenant_id = %s FOR UPDATE",
                (tenant_id,),
            ).fetchone()
            existing = conn.execute(
                "SELECT * FROM license_seat WHERE tenant_id = %s AND principal_id = %s",
                (tenant_id, principal_id),
            ).fetchone()
            if existing:
                row = conn.execute(
                    """
                    UPDATE license_seat SET expires_at = %s
                    WHERE tenant_id = %s AND principal_id = %s RETURNING *
                    """,
                    (expires_at, tenant_id, principal_id),
                ).fetchone()
                return self._seat_from_row(row)
            capacity = int(lic["capacity"]) if lic else 0
            in_use = conn.execute(
                "SELECT count(*) AS n FROM license_seat WHERE tenant_id = %s",
                (tenant_id,),
            ).fetchone()["n"]
            if in_use >= capacity:
                raise ConstraintViolation(
                    "no seats available", {"tenant_id": tenant_id, "capacity": capacity}
                )
            row = conn.execute(
                """
                INSERT INTO license_seat (tenant_id, principal_id, assigned_at, assigned_by, expires_at)
                VALUES (%s, %s, now(), %s, %s) RETURNING *
                """,
                (tenant_id, principal_id, assigned_by, expires_at),
            ).fetchone()
        return self._seat_from_row(row)

    def revoke_seat(self, tenant_id: str, principal_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM license_seat WHERE tenant_id = %s AND principal_id = %s",
                (tenant_id, principal_id),
            )
            return cur.rowcount > 0

    # ------------------------------------------------------------------
    # account security state
    # ------------------------------------------------------------------

    def get_security_state(self, principal_id: str) -> SecurityState:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SECURITY_COLUMNS} FROM principal_security WHERE principal_id = %s",
                (principal_id,),
            ).fetchone()
        if not row:
            return SecurityState(principal_id=principal_id)
        return self._security_from_row(row)

    def record_failed_login(
        self, principal_id: str, threshold: int, now: datetime
    ) -> Tuple[SecurityState, bool]:
        # Single statement: increment and lock transition are atomic per principal.
        # The CTE captures the pre-update lock state so exactly one caller sees the
        # transition.
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO principal_security (principal_id) VALUES (%s) ON CONFLICT DO NOTHING",
                (principal_id,),
            )
            row = conn.execute(
                f"""
                WITH prev AS (
                    SELECT principal_id, locked_at AS prev_locked_at
                    FROM principal_security WHERE principal_id = %s FOR UPDATE
                )
                UPDATE principal_security ps SET
                    failed_attempts = ps.failed_attempts + 1,
                    last_failed_at = %s,
                    locked_at = CASE
                        WHEN ps.locked_at IS NULL AND ps.failed_attempts + 1 >= %s THEN %s
                        ELSE ps.locked_at END,
                    locked_by = CASE
                        WHEN ps.locked_at IS NULL AND ps.failed_attempts + 1 >= %s THEN NULL
                        ELSE ps.locked_by END,
                    lock_reason = CASE
                        WHEN ps.locked_at IS NULL AND ps.failed_attempts + 1 >= %s
                            THEN 'Failed login attempts exceeded threshold'
                        ELSE ps.lock_reason END
                FROM prev
                WHERE ps.principal_id = prev.principal_id
                RETURNING {", ".join("ps." + c.strip() for c in _SECURITY_COLUMNS.split(","))},
                    prev.prev_locked_at
                """,
                (principal_id, now, threshold, now, threshold, threshold),
            ).fetchone()
        state = self._security_from_row(row)
        newly_locked = row.get("prev_locked_at") is None and state.locked_at is not None
        return state, newly_locked

    def reset_failed_logins(self, principal_id: str) -> SecurityState:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE principal_security SET failed_attempts = 0
                WHERE principal_id = %s AND locked_at IS NULL
                RETURNING {_SECURITY_COLUMNS}
                """,
                (principal_id,),
            ).fetchone()
        if row:
            return self._security_from_row(row)
        # Either no row yet or the account is locked
        return self.get_security_state(principal_id)

    def lock_principal(
        self,
        principal_id: str,
        *,
        locked_by: Optional[str],
        reason: str,
        now: datetime,
        min_attempts: int = 0,
    ) -> Tuple[SecurityState, bool]:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO principal_security (principal_id) VALUES (%s) ON CONFLICT DO NOTHING",
                (principal_id,),
            )
            row = conn.execute(
                f"""
                UPDATE principal_security SET
                    locked_at = %s,
                    locked_by = %s,
                    lock_reason = %s,
                    failed_attempts = GREATEST(failed_attempts, %s)
                WHERE principal_id = %s AND locked_at IS NULL
                RETURNING {_SECURITY_COLUMNS}
                """,
                (now, locked_by, reason, min_attempts, principal_id),
            ).fetchone()
        if row:
            return self._security_from_row(row), True
        return self.get_security_state(principal_id), False

    def unlock_principal(
        self, principal_id: str, *, unlocked_by: str, now: datetime
    ) -> SecurityState:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE principal_security SET
                    locked_at = NULL,
                    locked_by = NULL,
                    lock_reason = NULL,
                    failed_attempts = 0,
                    unlocked_at = %s,
                    unlocked_by = %s
                WHERE principal_id = %s
                RETURNING {_SECURITY_COLUMNS}
                """,
                (now, unlocked_by, principal_id),
            ).fetchone()
        return self._security_from_row(row) if row else SecurityState(principal_id=principal_id)

    def list_locked_principals(
        self, tenant_id: Optional[str] = None
    ) -> List[Tuple[Principal, SecurityState]]:
        sql = f"""
            SELECT p.*, {", ".join("s." + c.strip() for c in _SECURITY_COLUMNS.split(",")[1:])},
                s.principal_id
            FROM principal_security s
            JOIN principal p ON p.id = s.principal_id
            WHERE s.locked_at IS NOT NULL
        """
        params: List[Any] = []
        if tenant_id:
            sql += """
                AND (p.home_tenant_id = %s OR EXISTS (
                    SELECT 1 FROM membership m WHERE m.principal_id = p.id AND m.tenant_id = %s
                ))
            """
            params.extend([tenant_id, tenant_id])
        sql += " ORDER BY s.locked_at DESC"
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [(self._principal_from_row(row), self._security_from_row(row)) for row in rows]

    # ------------------------------------------------------------------
    # audit trail
    # ------------------------------------------------------------------

    def append_auth_event(self, event: AuthEvent) -> str:
        event_id = event.id or new_id()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_event
                    (id, tenant_id, principal_id, event_type, timestamp_utc, ip_address,
                     geo_location, user_agent, success, reason, severity, metadata)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event_id,
                    event.tenant_id,
                    event.principal_id,
                    event.event_type.value,
                    event.timestamp,
                    event.ip,
                    json.dumps(event.geo.to_dict()) if event.geo else None,
                    event.user_agent,
                    event.success,
                    event.reason,
                    event.severity,
                    json.dumps(event.metadata or {}, default=str),
                ),
            )
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
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in (
            ("tenant_id", tenant_id),
            ("principal_id", principal_id),
            ("event_type", event_type.value if event_type else None),
            ("ip_address", ip),
            ("success", success),
        ):
            if value is not None:
                clauses.append(f"{column} = %s")
                params.append(value)
        if start is not None:
            clauses.append("timestamp_utc >= %s")
            params.append(start)
        if end is not None:
            clauses.append("timestamp_utc <= %s")
            params.append(end)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            total = conn.execute(
                f"SELECT count(*) AS n FROM auth_event {where}", params
            ).fetchone()["n"]
            rows = conn.execute(
                f"SELECT * FROM auth_event {where} ORDER BY timestamp_utc DESC LIMIT %s OFFSET %s",
                [*params, limit, offset],
            ).fetchall()
        return [self._event_from_row(row) for row in rows], int(total)

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_session (token, principal_id, tenant_id, origin, user_agent, created_at, last_activity)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    session.token,
                    session.principal_id,
                    session.tenant_id,
                    session.origin,
                    session.user_agent,
                    session.created_at,
                    session.last_activity,
                ),
            )
        return session

    def get_session(self, token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE token = %s", (token,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_principal_sessions(self, principal_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE principal_id = %s ORDER BY last_activity",
                (principal_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def touch_session(self, token: str, now: datetime) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE auth_session SET last_activity = %s WHERE token = %s RETURNING *",
                (now, token),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def delete_session(self, token: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE token = %s", (token,))
            return cur.rowcount > 0

    def delete_principal_sessions(self, principal_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth_session WHERE principal_id = %s", (principal_id,)
            )
            return cur.rowcount

    def purge_idle_sessions(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth_session WHERE last_activity < %s", (cutoff,)
            )
            return cur.rowcount
