#!/usr/bin/env python3
"""Provision a tenant with an administrator for initial setup.

Creates the tenant, seeds its system roles, creates the admin principal with
a password, an active membership holding ``org_admin`` and a license seat.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! \
        python scripts/bootstrap_tenant.py --tenant "Acme Payroll"

    python scripts/bootstrap_tenant.py --tenant "Acme Payroll" \
        --email admin@example.com --password SecurePassword123! --seats 25

Environment Variables:
    ADMIN_EMAIL: Email for the admin principal
    ADMIN_PASSWORD: Password for the admin principal
    DATABASE_URL: PostgreSQL connection string (memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_tenant(
    tenant_name: str, email: str, password: str, seats: int, dry_run: bool = False
) -> dict:
    # Imported late so env defaults below apply before settings load
    from paysentry.storage.models import MembershipStatus
    from paysentry.service.runtime import get_runtime

    runtime = get_runtime()
    email = email.strip().lower()

    if runtime.store.get_principal_by_email(email):
        print(f"Principal {email} already exists; refusing to bootstrap over it")
        return {"email": email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create tenant {tenant_name!r} with admin {email}")
        return {"email": email, "status": "dry_run"}

    tenant = runtime.store.create_tenant(tenant_name)
    roles = runtime.admin.seed_system_roles(tenant.id)
    org_admin = next(role for role in roles if role.key == "org_admin")

    principal = runtime.store.create_principal(
        email, display_name="Administrator", home_tenant_id=tenant.id
    )
    runtime.identity.set_password(principal.id, password)
    runtime.admin.add_member(tenant.id, principal.id, MembershipStatus.ACTIVE)
    await runtime.admin.attach_role(tenant.id, principal.id, org_admin.id)
    runtime.admin.update_license(tenant.id, max(seats, 1), actor="bootstrap")
    runtime.admin.assign_seat(tenant.id, principal.id, actor="bootstrap")

    return {
        "tenant_id": tenant.id,
        "principal_id": principal.id,
        "email": email,
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a PaySentry tenant and its administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--tenant", required=True, help="Tenant display name")
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument("--seats", type=int, default=10, help="License capacity")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)
    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/paysentry-bootstrap"
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_tenant(args.tenant, args.email, args.password, args.seats, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nTenant provisioned:")
        print(f"  Tenant ID: {result['tenant_id']}")
        print(f"  Admin: {result['email']} ({result['principal_id']})")


if __name__ == "__main__":
    main()
