from __future__ import annotations

import re
from typing import Dict, FrozenSet, Iterable, List, Optional

from paysentry.logging import get_logger
from paysentry.service.errors import ValidationError
from paysentry.service.store import SecurityStore

logger = get_logger(__name__)

# Built-in permission tokens grouped for admin display
PERMISSION_GROUPS: Dict[str, List[str]] = {
    "People": [
        "people.view",
        "people.create",
        "people.edit",
        "people.view_sensitive",
        "people.assign_project",
    ],
    "Payroll": [
        "payroll.view",
        "payroll.prepare",
        "payroll.submit",
        "payroll.approve",
        "payroll.rollback",
        "payroll.export_bank",
        "payroll.export_mobile_money",
    ],
    "Finance": [
        "finance.view_reports",
        "finance.view_bank_details",
    ],
    "Admin": [
        "admin.manage_users",
        "admin.assign_roles",
        "admin.impersonate",
        "admin.view_audit_logs",
        "admin.manage_security",
        "admin.manage_licenses",
    ],
    "Reports": [
        "reports.view",
        "reports.export",
    ],
    "Self": [
        "self.view_profile",
        "self.view_payslips",
    ],
}

BUILTIN_PERMISSIONS: FrozenSet[str] = frozenset(
    token for tokens in PERMISSION_GROUPS.values() for token in tokens
)

TOKEN_PATTERN = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z0-9_]+)+$")


# Seeded per tenant; update/delete is refused
SYSTEM_ROLES: Dict[str, dict] = {
    "org_admin": {
        "name": "Organization Administrator",
        "description": "Full control within the tenant",
        "permissions": sorted(BUILTIN_PERMISSIONS - {"admin.impersonate"}),
    },
    "hr_admin": {
        "name": "HR Administrator",
        "description": "Manages people records and user access",
        "permissions": [
            "people.view",
            "people.create",
            "people.edit",
            "people.view_sensitive",
            "people.assign_project",
            "admin.manage_users",
            "reports.view",
        ],
    },
    "finance_controller": {
        "name": "Finance Controller",
        "description": "Approves payroll and handles bank exports",
        "permissions": [
            "payroll.view",
            "payroll.approve",
            "payroll.export_bank",
            "payroll.export_mobile_money",
            "finance.view_reports",
            "finance.view_bank_details",
            "reports.view",
            "reports.export",
        ],
    },
    "payroll_admin": {
        "name": "Payroll Administrator",
        "description": "Prepares, submits and corrects pay runs",
        "permissions": [
            "people.view",
            "payroll.view",
            "payroll.prepare",
            "payroll.submit",
            "payroll.rollback",
            "payroll.export_bank",
            "payroll.export_mobile_money",
            "reports.view",
        ],
    },
    "approver": {
        "name": "Approver",
        "description": "Approves submitted pay runs",
        "permissions": ["payroll.view", "payroll.approve"],
    },
    "auditor": {
        "name": "Auditor",
        "description": "Read-only access including the security audit trail",
        "permissions": [
            "people.view",
            "payroll.view",
            "reports.view",
            "admin.view_audit_logs",
        ],
    },
    "viewer": {
        "name": "Viewer",
        "description": "Read-only access to tenant data",
        "permissions": ["people.view", "payroll.view", "reports.view"],
    },
    "self_user": {
        "name": "Self Service",
        "description": "Own profile and payslips",
        "permissions": ["self.view_profile", "self.view_payslips"],
    },
}


class PermissionRegistry:
    """Known permission tokens: the built-in catalogue plus per-tenant custom tokens.

    Custom tokens live in the store, so every worker sharing it agrees on them.
    """

    def __init__(self, store: SecurityStore) -> None:
        self.store = store

    def register(self, tenant_id: str, token: str) -> str:
        token = (token or "").strip()
        if not TOKEN_PATTERN.match(token):
            raise ValidationError(
                "invalid permission token", detail={"token": token}
            )
        self.store.add_custom_permission(tenant_id, token)
        logger.info("permission_registered", tenant_id=tenant_id, permission=token)
        return token

    def known(self, tenant_id: Optional[str] = None) -> FrozenSet[str]:
        custom = self.store.list_custom_permissions(tenant_id) if tenant_id else []
        return BUILTIN_PERMISSIONS | frozenset(custom)

    def is_known(self, tenant_id: str, token: str) -> bool:
        return token in self.known(tenant_id)

    def validate(self, tenant_id: str, tokens: Iterable[str]) -> set[str]:
        """Return the tokens as a set, raising ``ValidationError`` on any unknown token."""
        requested = {str(t).strip() for t in tokens}
        unknown = sorted(requested - self.known(tenant_id))
        if unknown:
            raise ValidationError(
                "unknown permission tokens", detail={"unknown": unknown}
            )
        return requested

    def groups(self, tenant_id: Optional[str] = None) -> Dict[str, List[str]]:
        grouped = {name: list(tokens) for name, tokens in PERMISSION_GROUPS.items()}
        custom = sorted(self.known(tenant_id) - BUILTIN_PERMISSIONS)
        if custom:
            grouped["Custom"] = custom
        return grouped


def is_system_role(key: str) -> bool:
    return key in SYSTEM_ROLES
