import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="paysentry_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# Empty REDIS_URL keeps rate-limit windows process-local in tests
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("GEO_ENABLED", "false")
os.environ.setdefault("AUTHZ_CACHE_TTL_SECONDS", "0")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from paysentry.service.runtime import reset_runtime_for_tests  # noqa: E402
from paysentry.storage.memory import MemoryStore  # noqa: E402
from paysentry.storage.models import MembershipStatus  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


class FakeClock:
    """Settable wall clock for deterministic timing tests."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        from datetime import timedelta

        if isinstance(self.now, (int, float)):
            self.now += timedelta(**kwargs).total_seconds()
        else:
            self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def tenant(store):
    return store.create_tenant("Acme Payroll")


def make_member(store, tenant_id, email, *, status=MembershipStatus.ACTIVE, roles=()):
    principal = store.create_principal(email, home_tenant_id=tenant_id)
    membership = store.create_membership(tenant_id, principal.id, status)
    for role in roles:
        membership = store.attach_role(membership.id, role.id)
    return principal, membership
