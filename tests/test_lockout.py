"""Tests for the failed-login counter and lock/unlock state machine."""
import threading
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from conftest import make_member
from paysentry.service.audit import AuditSink
from paysentry.service.errors import NotFoundError, ValidationError
from paysentry.service.lockout import THRESHOLD_LOCK_REASON, LockoutGuard
from paysentry.storage.errors import StoreUnavailable
from paysentry.storage.models import AuthEventType, TenantSecuritySettings

FIXED_NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


def _guard(store, notifier=None, threshold=5):
    return LockoutGuard(
        store,
        AuditSink(store),
        notifier=notifier or AsyncMock(),
        default_threshold=threshold,
        clock=lambda: FIXED_NOW,
    )


def _events(store, event_type):
    return [e for e in store.auth_events if e.event_type == event_type]


class TestThresholdLock:
    async def test_failures_below_threshold_do_not_lock(self, store, tenant):
        principal, _ = make_member(store, tenant.id, "ana@example.com")
        guard = _guard(store)

        for _ in range(4):
            result = await guard.register_failure(principal, tenant.id, ip="203.0.113.5")

        assert result.attempts == 4
        assert result.locked is False
        assert guard.is_locked(principal.id) is False
        reasons = [e.reason for e in _events(store, AuthEventType.LOGIN_FAILED)]
        assert reasons[-1] == "Failed login attempt 4 of 5"

    async def test_threshold_failure_locks_once(self, store, tenant):
        principal, _ = make_member(store, tenant.id, "bo@example.com")
        guard = _guard(store)

        results = [await guard.register_failure(principal, tenant.id) for _ in range(7)]

        assert [r.newly_locked for r in results] == [False] * 4 + [True, False, False]
        assert guard.is_locked(principal.id)
        status = guard.status(principal.id, tenant.id)
        assert status.reason == THRESHOLD_LOCK_REASON
        assert status.locked_at == FIXED_NOW
        locked_events = _events(store, AuthEventType.ACCOUNT_LOCKED)
        assert len(locked_events) == 1
        assert locked_events[0].severity == "high"

    async def test_tenant_threshold_overrides_default(self, store, tenant):
        principal, _ = make_member(store, tenant.id, "cy@example.com")
        store.upsert_security_settings(
            TenantSecuritySettings(tenant_id=tenant.id, lockout_threshold=2)
        )
        guard = _guard(store)

        await guard.register_failure(principal, tenant.id)
        result = await guard.register_failure(principal, tenant.id)

        assert result.threshold == 2
        assert result.newly_locked is True

    async def test_success_resets_counter(self, store, tenant):
        principal, _ = make_member(store, tenant.id, "di@example.com")
        guard = _guard(store)

        await guard.register_failure(principal, tenant.id)
        await guard.register_failure(principal, tenant.id)
        assert guard.clear_failures(principal.id) is True
        await guard.register_success(principal, tenant.id)

        assert guard.status(principal.id).failed_attempts == 0
        assert len(_events(store, AuthEventType.LOGIN_SUCCESS)) == 1

    async def test_clear_failures_leaves_a_lock_intact(self, store, tenant):
        principal, _ = make_member(store, tenant.id, "lk@example.com")
        guard = _guard(store, threshold=2)

        await guard.register_failure(principal, tenant.id)
        await guard.register_failure(principal, tenant.id)

        assert guard.clear_failures(principal.id) is False
        state = store.get_security_state(principal.id)
        assert state.is_locked
        assert state.failed_attempts == 2

    def test_concurrent_failures_lock_exactly_once(self, store, tenant):
        """Forty simultaneous failures: one caller observes the transition."""
        principal, _ = make_member(store, tenant.id, "race@example.com")
        transitions = []
        lock = threading.Lock()

        def worker():
            _, newly = store.record_failed_login(principal.id, 5, FIXED_NOW)
            with lock:
                transitions.append(newly)

        threads = [threading.Thread(target=worker) for _ in range(40)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert transitions.count(True) == 1
        assert store.get_security_state(principal.id).failed_attempts == 40


class TestAdminLock:
    async def test_lock_and_unlock(self, store, tenant):
        principal, _ = make_member(store, tenant.id, "ed@example.com")
        guard = _guard(store)

        status = await guard.lock(
            principal.id, actor="admin-1", reason="suspicious", tenant_id=tenant.id
        )
        assert status.is_locked
        assert status.locked_by == "admin-1"
        assert status.failed_attempts == status.threshold

        again = await guard.lock(principal.id, actor="admin-2", reason="again", tenant_id=tenant.id)
        assert again.locked_by == "admin-1"

        unlocked = await guard.unlock(principal.id, actor="admin-1", tenant_id=tenant.id)
        assert unlocked.is_locked is False
        assert unlocked.failed_attempts == 0
        event = _events(store, AuthEventType.ACCOUNT_UNLOCKED)[-1]
        assert event.reason == "Unlocked by admin-1"
        assert event.metadata["was_locked"] is True

    async def test_lock_requires_reason(self, store, tenant):
        principal, _ = make_member(store, tenant.id, "fi@example.com")
        with pytest.raises(ValidationError):
            await _guard(store).lock(principal.id, actor="admin", reason="  ")

    async def test_lock_unknown_principal(self, store):
        with pytest.raises(NotFoundError):
            await _guard(store).lock("missing", actor="admin", reason="x")

    async def test_principal_outside_tenant_is_not_found(self, store, tenant):
        other = store.create_tenant("Other Co")
        outsider, _ = make_member(store, other.id, "out@example.com")
        guard = _guard(store)

        with pytest.raises(NotFoundError):
            await guard.lock(outsider.id, actor="admin", reason="r", tenant_id=tenant.id)
        with pytest.raises(NotFoundError):
            await guard.unlock(outsider.id, actor="admin", tenant_id=tenant.id)
        with pytest.raises(NotFoundError):
            guard.status(outsider.id, tenant.id)
        assert guard.is_locked(outsider.id) is False

    async def test_list_locked_filters_by_tenant(self, store, tenant):
        other = store.create_tenant("Other Co")
        mine, _ = make_member(store, tenant.id, "mine@example.com")
        theirs, _ = make_member(store, other.id, "theirs@example.com")
        guard = _guard(store)

        await guard.lock(mine.id, actor="a", reason="r")
        await guard.lock(theirs.id, actor="a", reason="r")

        assert [p.id for p, _ in guard.list_locked(tenant.id)] == [mine.id]


class TestLockoutNotifications:
    async def test_notice_sent_once_per_lock(self, store, tenant):
        principal, _ = make_member(store, tenant.id, "bo@example.com")
        notifier = AsyncMock()
        guard = _guard(store, notifier, threshold=2)

        for _ in range(4):
            await guard.register_failure(principal, tenant.id)
        await guard.lock(principal.id, actor="admin", reason="again", tenant_id=tenant.id)

        notifier.account_locked.assert_awaited_once()
        notice = notifier.account_locked.await_args.args[0]
        assert notice.email == "bo@example.com"
        assert notice.attempts == 2
        assert notice.tenant_id == tenant.id

    async def test_admin_lock_notifies(self, store, tenant):
        principal, _ = make_member(store, tenant.id, "ad@example.com")
        notifier = AsyncMock()

        await _guard(store, notifier).lock(
            principal.id, actor="admin-1", reason="fraud review", tenant_id=tenant.id
        )

        notice = notifier.account_locked.await_args.args[0]
        assert notice.locked_by == "admin-1"
        assert notice.reason == "fraud review"

    async def test_notifier_failure_does_not_undo_lock(self, store, tenant):
        principal, _ = make_member(store, tenant.id, "gu@example.com")
        notifier = AsyncMock()
        notifier.account_locked.side_effect = RuntimeError("mail relay down")
        guard = _guard(store, notifier, threshold=1)

        with patch("paysentry.service.lockout.logger") as mock_logger:
            result = await guard.register_failure(principal, tenant.id)

        assert result.newly_locked
        assert guard.is_locked(principal.id)
        assert mock_logger.error.call_args[0][0] == "lockout_notice_failed"

    async def test_alerts_disabled_skips_notice(self, store, tenant):
        principal, _ = make_member(store, tenant.id, "hu@example.com")
        store.upsert_security_settings(
            TenantSecuritySettings(tenant_id=tenant.id, email_alerts_enabled=False)
        )
        notifier = AsyncMock()
        guard = _guard(store, notifier, threshold=1)

        await guard.register_failure(principal, tenant.id)

        assert guard.is_locked(principal.id)
        notifier.account_locked.assert_not_awaited()


def test_store_outage_reads_as_locked(store, monkeypatch):
    guard = _guard(store)

    def boom(principal_id):
        raise StoreUnavailable("db down")

    monkeypatch.setattr(store, "get_security_state", boom)
    assert guard.is_locked("anyone") is True
