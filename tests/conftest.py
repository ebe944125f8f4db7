import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="warden_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("AUDIT_SINK", "none")
os.environ.setdefault("MAINTENANCE_ENABLED", "false")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from warden.config import Settings  # noqa: E402
from warden.service.auth import AdminAuthService  # noqa: E402
from warden.service.credentials import CredentialVerifier, TotpVerifier  # noqa: E402
from warden.service.runtime import reset_runtime_for_tests  # noqa: E402
from warden.storage.memory import MemoryAccountStore  # noqa: E402
from warden.storage.models import AdminPermission, AdminRole  # noqa: E402

TEST_PASSWORD = "Correct-Horse-Battery-9"
MFA_SECRET = "JBSWY3DPEHPK3PXP"

SUPER_ADMIN = AdminRole(
    name="super_admin",
    permissions=frozenset(AdminPermission),
    description="Full access",
)
AUDITOR = AdminRole(
    name="auditor",
    permissions=frozenset({AdminPermission.AUDIT_LOGS, AdminPermission.VIEW_ANALYTICS}),
    description="Read-only audit access",
)


class FakeClock:
    """Settable UTC clock shared by every component under test."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 10, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def fast_credentials() -> CredentialVerifier:
    # Minimal argon2 cost keeps the lockout scenarios quick
    return CredentialVerifier(
        PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID)
    )


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_clock():
    return FakeClock


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        shared_fs_root=str(tmp_path),
        test_mode=True,
        maintenance_enabled=False,
        audit_sink="none",
    )


@pytest.fixture
def password():
    return TEST_PASSWORD


@pytest.fixture
def mfa_secret():
    return MFA_SECRET


@pytest.fixture
def roles():
    return {"super_admin": SUPER_ADMIN, "auditor": AUDITOR}


@pytest.fixture
def credentials():
    return fast_credentials()


@pytest.fixture
def accounts(tmp_path):
    return MemoryAccountStore(
        fs_root=str(tmp_path), mfa_encryption_key="test-mfa-key", persist=False
    )


@pytest.fixture
def auth_service(accounts, settings, clock, credentials):
    return AdminAuthService.from_settings(
        accounts,
        settings,
        clock=clock,
        credentials=credentials,
        mfa=TotpVerifier(clock=clock),
    )


@pytest.fixture
def admin(accounts, credentials):
    return accounts.create_account(
        "ops@example.com", credentials.hash_password(TEST_PASSWORD), (SUPER_ADMIN,)
    )


@pytest.fixture
def mfa_admin(accounts, credentials):
    return accounts.create_account(
        "mfa@example.com",
        credentials.hash_password(TEST_PASSWORD),
        (SUPER_ADMIN,),
        mfa_secret=MFA_SECRET,
        mfa_enabled=True,
    )


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
