"""Tests for AuthorizationService decisions.

Decision order: active membership, license seat, explicit grants (most
specific target first, deny wins ties), then role-derived permissions.
"""
from datetime import timedelta
from unittest.mock import patch

import pytest

from conftest import make_member
from paysentry.service.authorization import (
    REASON_EVALUATION_FAILED,
    REASON_EXPLICIT_GRANT,
    REASON_MEMBERSHIP_INACTIVE,
    REASON_NO_LICENSE_SEAT,
    REASON_NO_PERMISSION,
    REASON_ROLE_PERMISSION,
    REASON_STORE_UNAVAILABLE,
    AuthorizationService,
)
from paysentry.service.errors import ValidationError
from paysentry.service.grants import GrantDecision, GrantResolver, combine
from paysentry.service.roles import RoleStore
from paysentry.storage.errors import StoreUnavailable
from paysentry.storage.models import (
    AccessGrant,
    GrantEffect,
    MembershipStatus,
    TenantSecuritySettings,
    new_id,
    utcnow,
)


def _service(store, **kwargs):
    kwargs.setdefault("cache_ttl_seconds", 0)
    return AuthorizationService(store, RoleStore(store), GrantResolver(store), **kwargs)


def _grant(store, tenant_id, scope_key, effect, **target):
    return store.create_grant(
        AccessGrant(
            id=new_id(),
            tenant_id=tenant_id,
            scope_type=target.pop("scope_type", "resource"),
            scope_key=scope_key,
            effect=GrantEffect(effect),
            **target,
        )
    )


class TestRolePermissions:
    def test_default_deny_without_roles_or_grants(self, store, tenant):
        principal, _ = make_member(store, tenant.id, "nobody@example.com")
        decision = _service(store).authorize(principal.id, tenant.id, "payroll.view")
        assert decision.allowed is False
        assert decision.reason == REASON_NO_PERMISSION

    def test_role_permission_allows(self, store, tenant):
        role = store.create_role(tenant.id, "viewer", "Viewer", ["payroll.view"])
        principal, _ = make_member(store, tenant.id, "viewer@example.com", roles=[role])
        service = _service(store)

        allowed = service.authorize(principal.id, tenant.id, "payroll.view")
        denied = service.authorize(principal.id, tenant.id, "payroll.approve")

        assert (allowed.allowed, allowed.reason) == (True, REASON_ROLE_PERMISSION)
        assert (denied.allowed, denied.reason) == (False, REASON_NO_PERMISSION)

    def test_permissions_union_across_roles(self, store, tenant):
        a = store.create_role(tenant.id, "role_a", "A", ["people.view"])
        b = store.create_role(tenant.id, "role_b", "B", ["reports.view"])
        principal, _ = make_member(store, tenant.id, "both@example.com", roles=[a, b])
        service = _service(store)

        assert service.authorize(principal.id, tenant.id, "people.view").allowed
        assert service.authorize(principal.id, tenant.id, "reports.view").allowed


class TestMembership:
    @pytest.mark.parametrize("status", [MembershipStatus.INVITED, MembershipStatus.DISABLED])
    def test_inactive_membership_denies_even_with_allow_grant(self, store, tenant, status):
        role = store.create_role(tenant.id, "viewer", "Viewer", ["payroll.view"])
        principal, _ = make_member(
            store, tenant.id, "idle@example.com", status=status, roles=[role]
        )
        _grant(store, tenant.id, "payroll.view", "allow", principal_id=principal.id)

        decision = _service(store).authorize(principal.id, tenant.id, "payroll.view")
        assert decision.allowed is False
        assert decision.reason == REASON_MEMBERSHIP_INACTIVE

    def test_membership_in_another_tenant_does_not_count(self, store, tenant):
        other = store.create_tenant("Other Co")
        role = store.create_role(other.id, "viewer", "Viewer", ["payroll.view"])
        principal, _ = make_member(store, other.id, "outsider@example.com", roles=[role])

        decision = _service(store).authorize(principal.id, tenant.id, "payroll.view")
        assert decision.reason == REASON_MEMBERSHIP_INACTIVE


class TestExplicitGrants:
    def test_principal_deny_overrides_role_permission(self, store, tenant):
        role = store.create_role(tenant.id, "approver", "Approver", ["payroll.approve"])
        principal, _ = make_member(store, tenant.id, "approver@example.com", roles=[role])
        _grant(store, tenant.id, "payroll.approve", "deny", principal_id=principal.id)

        decision = _service(store).authorize(principal.id, tenant.id, "payroll.approve")
        assert decision.allowed is False
        assert decision.reason == REASON_EXPLICIT_GRANT

    def test_principal_allow_grants_action_missing_from_roles(self, store, tenant):
        principal, _ = make_member(store, tenant.id, "temp@example.com")
        _grant(store, tenant.id, "payroll.export_bank", "allow", principal_id=principal.id)

        decision = _service(store).authorize(principal.id, tenant.id, "payroll.export_bank")
        assert (decision.allowed, decision.reason) == (True, REASON_EXPLICIT_GRANT)

    def test_more_specific_target_wins(self, store, tenant):
        role = store.create_role(tenant.id, "clerk", "Clerk", [])
        principal, _ = make_member(store, tenant.id, "clerk@example.com", roles=[role])
        _grant(store, tenant.id, "reports.export", "deny", role_id=role.id)
        _grant(store, tenant.id, "reports.export", "allow", principal_id=principal.id)

        assert _service(store).authorize(principal.id, tenant.id, "reports.export").allowed

    def test_role_grant_beats_company_and_tenant_grants(self, store, tenant):
        role = store.create_role(tenant.id, "clerk", "Clerk", [])
        principal, membership = make_member(store, tenant.id, "co@example.com", roles=[role])
        store.attach_company(membership.id, "co-1")
        _grant(store, tenant.id, "reports.view", "allow")
        _grant(store, tenant.id, "reports.view", "allow", company_id="co-1")
        _grant(store, tenant.id, "reports.view", "deny", role_id=role.id)

        assert not _service(store).authorize(principal.id, tenant.id, "reports.view").allowed

    def test_deny_wins_at_equal_specificity(self, store, tenant):
        first = store.create_role(tenant.id, "first", "First", [])
        second = store.create_role(tenant.id, "second", "Second", [])
        principal, _ = make_member(store, tenant.id, "tie@example.com", roles=[first, second])
        _grant(store, tenant.id, "people.edit", "allow", role_id=first.id)
        _grant(store, tenant.id, "people.edit", "deny", role_id=second.id)

        assert _service(store).authorize(principal.id, tenant.id, "people.edit").allowed is False

    def test_company_grant_only_applies_to_members_of_that_company(self, store, tenant):
        inside, membership = make_member(store, tenant.id, "in@example.com")
        outside, _ = make_member(store, tenant.id, "out@example.com")
        store.attach_company(membership.id, "co-7")
        _grant(store, tenant.id, "people.view", "allow", company_id="co-7")
        service = _service(store)

        assert service.authorize(inside.id, tenant.id, "people.view").allowed
        assert not service.authorize(outside.id, tenant.id, "people.view").allowed

    def test_caller_scope_deny_wins_over_action_allow(self, store, tenant):
        role = store.create_role(tenant.id, "viewer", "Viewer", ["people.view"])
        principal, _ = make_member(store, tenant.id, "scoped@example.com", roles=[role])
        _grant(store, tenant.id, "co-9", "deny", scope_type="company", principal_id=principal.id)
        service = _service(store)

        assert service.authorize(principal.id, tenant.id, "people.view").allowed
        scoped = service.authorize(principal.id, tenant.id, "people.view", ("company", "co-9"))
        assert scoped.allowed is False
        assert scoped.reason == REASON_EXPLICIT_GRANT

    def test_grants_are_tenant_scoped(self, store, tenant):
        other = store.create_tenant("Other Co")
        principal, _ = make_member(store, tenant.id, "scope@example.com")
        store.create_membership(other.id, principal.id, MembershipStatus.ACTIVE)
        _grant(store, other.id, "payroll.view", "allow", principal_id=principal.id)
        service = _service(store)

        assert service.authorize(principal.id, other.id, "payroll.view").allowed
        assert not service.authorize(principal.id, tenant.id, "payroll.view").allowed

    def test_combine_prefers_deny_then_allow(self):
        assert combine([GrantDecision.ALLOW, GrantDecision.DENY]) == GrantDecision.DENY
        assert combine([GrantDecision.ABSTAIN, GrantDecision.ALLOW]) == GrantDecision.ALLOW
        assert combine([]) == GrantDecision.ABSTAIN


class TestLicenseSeats:
    @pytest.fixture
    def gated(self, store, tenant):
        store.upsert_security_settings(
            TenantSecuritySettings(tenant_id=tenant.id, seat_required_actions=["payroll.*"])
        )
        return tenant

    def test_seat_required_action_denies_without_seat(self, store, gated):
        role = store.create_role(gated.id, "preparer", "Preparer", ["payroll.prepare", "people.view"])
        principal, _ = make_member(store, gated.id, "seatless@example.com", roles=[role])
        service = _service(store)

        decision = service.authorize(principal.id, gated.id, "payroll.prepare")
        assert (decision.allowed, decision.reason) == (False, REASON_NO_LICENSE_SEAT)
        assert service.authorize(principal.id, gated.id, "people.view").allowed

        store.upsert_license(gated.id, 1)
        store.assign_seat(gated.id, principal.id)
        assert service.authorize(principal.id, gated.id, "payroll.prepare").allowed

    def test_seat_check_precedes_allow_grant(self, store, gated):
        """An explicit allow cannot stand in for a missing seat."""
        principal, _ = make_member(store, gated.id, "granted@example.com")
        _grant(store, gated.id, "payroll.submit", "allow", principal_id=principal.id)

        decision = _service(store).authorize(principal.id, gated.id, "payroll.submit")
        assert decision.reason == REASON_NO_LICENSE_SEAT

    def test_expired_seat_does_not_count(self, store, gated):
        role = store.create_role(gated.id, "preparer", "Preparer", ["payroll.prepare"])
        principal, _ = make_member(store, gated.id, "expired@example.com", roles=[role])
        store.upsert_license(gated.id, 1)
        store.assign_seat(gated.id, principal.id, expires_at=utcnow() - timedelta(days=1))

        decision = _service(store).authorize(principal.id, gated.id, "payroll.prepare")
        assert decision.reason == REASON_NO_LICENSE_SEAT


class TestInputValidation:
    @pytest.mark.parametrize(
        "args",
        [("", "t", "payroll.view"), ("p", "", "payroll.view"), ("p", "t", " ")],
    )
    def test_blank_identifiers_rejected(self, store, args):
        with pytest.raises(ValidationError):
            _service(store).authorize(*args)

    def test_half_empty_scope_rejected(self, store, tenant):
        with pytest.raises(ValidationError):
            _service(store).authorize("p", tenant.id, "payroll.view", ("company", ""))


class _FailingStore:
    def __init__(self, exc):
        self.exc = exc

    def __getattr__(self, name):
        def _fail(*args, **kwargs):
            raise self.exc

        return _fail


class TestFailClosed:
    def test_store_unavailable_denies(self):
        service = _service(_FailingStore(StoreUnavailable("db down")))

        with patch("paysentry.service.authorization.logger") as mock_logger:
            decision = service.authorize("p", "t", "payroll.view")

        assert (decision.allowed, decision.reason) == (False, REASON_STORE_UNAVAILABLE)
        assert mock_logger.error.call_args[0][0] == "authorization_store_unavailable"

    def test_unexpected_error_denies(self):
        decision = _service(_FailingStore(KeyError("boom"))).authorize("p", "t", "payroll.view")
        assert (decision.allowed, decision.reason) == (False, REASON_EVALUATION_FAILED)


class TestDecisionCache:
    @pytest.fixture
    def viewer(self, store, tenant):
        role = store.create_role(tenant.id, "viewer", "Viewer", ["payroll.view"])
        principal, _ = make_member(store, tenant.id, "cached@example.com", roles=[role])
        return principal

    def test_cache_serves_until_invalidated(self, store, tenant, viewer):
        service = _service(store, cache_ttl_seconds=5, monotonic=lambda: 100.0)

        assert service.authorize(viewer.id, tenant.id, "payroll.view").allowed
        _grant(store, tenant.id, "payroll.view", "deny", principal_id=viewer.id)
        assert service.authorize(viewer.id, tenant.id, "payroll.view").allowed

        service.invalidate(tenant.id)
        assert not service.authorize(viewer.id, tenant.id, "payroll.view").allowed

    def test_cache_entries_expire_after_ttl(self, store, tenant, viewer):
        ticks = [100.0]
        service = _service(store, cache_ttl_seconds=5, monotonic=lambda: ticks[0])

        assert service.authorize(viewer.id, tenant.id, "payroll.view").allowed
        _grant(store, tenant.id, "payroll.view", "deny", principal_id=viewer.id)
        ticks[0] += 5.5
        assert not service.authorize(viewer.id, tenant.id, "payroll.view").allowed
