import pytest

from conftest import make_member
from paysentry.service.errors import ValidationError
from paysentry.service.login import GENERIC_FAILURE_MESSAGE, LoginOutcome
from paysentry.service.runtime import get_runtime
from paysentry.storage.errors import StoreUnavailable
from paysentry.storage.models import AuthEventType

ORIGIN = "203.0.113.10"
PASSWORD = "CorrectHorse9!"


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def member(runtime):
    tenant = runtime.store.create_tenant("Acme Payroll")
    principal, _ = make_member(runtime.store, tenant.id, "u1@example.com")
    runtime.identity.set_password(principal.id, PASSWORD)
    return tenant, principal


def _events(runtime, event_type, principal_id=None):
    return [
        e
        for e in runtime.store.auth_events
        if e.event_type == event_type and (principal_id is None or e.principal_id == principal_id)
    ]


async def test_successful_login_issues_session(runtime, member):
    tenant, principal = member

    result = await runtime.login.attempt_login("U1@example.com", PASSWORD, ORIGIN, user_agent="pytest")

    assert result.ok
    assert result.outcome == LoginOutcome.SESSION
    assert result.message is None
    assert result.session.principal_id == principal.id
    assert result.session.tenant_id == tenant.id
    assert runtime.store.get_session(result.session.token) is not None
    success = _events(runtime, AuthEventType.LOGIN_SUCCESS)
    assert len(success) == 1
    assert success[0].user_agent == "pytest"


async def test_five_failures_lock_the_account(runtime, member):
    _, principal = member

    results = [
        await runtime.login.attempt_login("u1@example.com", "wrong-password", ORIGIN)
        for _ in range(5)
    ]

    assert [r.outcome for r in results] == [LoginOutcome.INVALID_CREDENTIALS] * 4 + [
        LoginOutcome.LOCKED_OUT
    ]
    assert runtime.store.get_security_state(principal.id).locked_at is not None
    assert len(_events(runtime, AuthEventType.LOGIN_FAILED, principal.id)) == 5
    assert len(_events(runtime, AuthEventType.ACCOUNT_LOCKED, principal.id)) == 1


async def test_locked_account_rejects_correct_password_with_generic_message(runtime, member):
    _, principal = member
    await runtime.lockout.lock(principal.id, actor="admin", reason="investigation")

    result = await runtime.login.attempt_login("u1@example.com", PASSWORD, ORIGIN)

    assert result.outcome == LoginOutcome.LOCKED_OUT
    assert result.message == GENERIC_FAILURE_MESSAGE
    assert result.session is None
    assert runtime.store.list_principal_sessions(principal.id) == []


async def test_all_failures_share_one_message(runtime, member):
    wrong = await runtime.login.attempt_login("u1@example.com", "nope-nope", ORIGIN)
    unknown = await runtime.login.attempt_login("ghost@example.com", "nope-nope", ORIGIN)

    assert wrong.message == unknown.message == GENERIC_FAILURE_MESSAGE


async def test_unknown_identifier_is_audited_without_counter(runtime, member):
    result = await runtime.login.attempt_login("ghost@example.com", "whatever1", ORIGIN)

    assert result.outcome == LoginOutcome.INVALID_CREDENTIALS
    event = _events(runtime, AuthEventType.LOGIN_FAILED)[-1]
    assert event.principal_id is None
    assert event.reason == "unknown_identifier"


class _CountingIdentity:
    def __init__(self, inner):
        self.inner = inner
        self.calls = []

    async def verify(self, identifier, secret):
        self.calls.append(identifier)
        return await self.inner.verify(identifier, secret)


async def test_rate_limit_blocks_before_credentials_are_checked(runtime, member):
    counting = _CountingIdentity(runtime.identity)
    runtime.login.identity = counting
    for _ in range(5):
        await runtime.login.attempt_login("ghost@example.com", "bad-secret", ORIGIN)

    blocked = await runtime.login.attempt_login("ghost@example.com", "bad-secret", ORIGIN)

    assert blocked.outcome == LoginOutcome.RATE_LIMITED
    assert blocked.retry_after and blocked.retry_after > 0
    assert blocked.message == GENERIC_FAILURE_MESSAGE
    assert len(counting.calls) == 5
    assert _events(runtime, AuthEventType.LOGIN_FAILED)[-1].reason == "rate_limited"


async def test_rate_limit_is_per_origin(runtime, member):
    for _ in range(6):
        await runtime.login.attempt_login("ghost@example.com", "bad-secret", ORIGIN)

    elsewhere = await runtime.login.attempt_login("ghost@example.com", "bad-secret", "198.51.100.20")
    assert elsewhere.outcome == LoginOutcome.INVALID_CREDENTIALS


async def test_success_resets_failure_counter(runtime, member):
    _, principal = member
    for _ in range(3):
        await runtime.login.attempt_login("u1@example.com", "wrong-password", ORIGIN)

    assert (await runtime.login.attempt_login("u1@example.com", PASSWORD, ORIGIN)).ok
    assert runtime.store.get_security_state(principal.id).failed_attempts == 0


async def test_counter_reset_outage_issues_no_session(runtime, member, monkeypatch):
    _, principal = member

    def down(principal_id):
        raise StoreUnavailable("db down")

    monkeypatch.setattr(runtime.store, "reset_failed_logins", down)

    result = await runtime.login.attempt_login("u1@example.com", PASSWORD, ORIGIN)

    assert result.outcome == LoginOutcome.LOCKED_OUT
    assert result.session is None
    assert runtime.store.list_principal_sessions(principal.id) == []
    assert _events(runtime, AuthEventType.LOGIN_SUCCESS) == []


class _LockDuringVerify:
    """Identity provider that lets a concurrent lock land mid-verification."""

    def __init__(self, runtime, principal_id):
        self.runtime = runtime
        self.principal_id = principal_id

    async def verify(self, identifier, secret):
        for _ in range(5):
            self.runtime.store.record_failed_login(
                self.principal_id, 5, self.runtime.lockout._clock()
            )
        return await self.runtime.identity.verify(identifier, secret)


async def test_lock_raised_during_verification_wins(runtime, member):
    _, principal = member
    runtime.login.identity = _LockDuringVerify(runtime, principal.id)

    result = await runtime.login.attempt_login("u1@example.com", PASSWORD, ORIGIN)

    assert result.outcome == LoginOutcome.LOCKED_OUT
    assert runtime.store.list_principal_sessions(principal.id) == []
    state = runtime.store.get_security_state(principal.id)
    assert state.locked_at is not None
    assert state.failed_attempts == 5
    assert _events(runtime, AuthEventType.LOGIN_FAILED)[-1].reason == "account_locked"


async def test_store_outage_fails_closed(runtime, member, monkeypatch):
    def down(email):
        raise StoreUnavailable("db down")

    monkeypatch.setattr(runtime.store, "get_principal_by_email", down)

    result = await runtime.login.attempt_login("u1@example.com", PASSWORD, ORIGIN)
    assert result.outcome == LoginOutcome.LOCKED_OUT


async def test_identity_provider_error_is_a_generic_failure(runtime, member):
    class Broken:
        async def verify(self, identifier, secret):
            raise RuntimeError("directory offline")

    runtime.login.identity = Broken()

    result = await runtime.login.attempt_login("u1@example.com", PASSWORD, ORIGIN)

    assert result.outcome == LoginOutcome.INVALID_CREDENTIALS
    assert _events(runtime, AuthEventType.LOGIN_FAILED)[-1].reason == "identity_provider_error"


async def test_inactive_principal_cannot_login(runtime, member):
    _, principal = member
    runtime.store.principals[principal.id].is_active = False

    result = await runtime.login.attempt_login("u1@example.com", PASSWORD, ORIGIN)
    assert not result.ok


async def test_logout_revokes_session(runtime, member):
    result = await runtime.login.attempt_login("u1@example.com", PASSWORD, ORIGIN)

    assert await runtime.login.logout(result.session.token, origin=ORIGIN) is True
    assert await runtime.login.logout(result.session.token) is False
    assert len(_events(runtime, AuthEventType.LOGOUT)) == 1


async def test_blank_credentials_rejected(runtime):
    with pytest.raises(ValidationError):
        await runtime.login.attempt_login(" ", PASSWORD, ORIGIN)
    with pytest.raises(ValidationError):
        await runtime.login.attempt_login("u1@example.com", "", ORIGIN)


async def test_maintenance_reports_counts(runtime):
    counts = await runtime.run_maintenance()
    assert counts == {"sessions_purged": 0, "rate_limit_windows_purged": 0}
