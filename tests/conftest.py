import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything imports the app or settings
_test_tmp_dir = tempfile.mkdtemp(prefix="catalogauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from catalogauth.config import Settings  # noqa: E402
from catalogauth.service.api_keys import ApiKeyManager  # noqa: E402
from catalogauth.service.auth import AuthService  # noqa: E402
from catalogauth.service.credentials import CredentialVerifier, PasswordPolicy  # noqa: E402
from catalogauth.service.guard import AuthorizationGuard  # noqa: E402
from catalogauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from catalogauth.service.tokens import TokenService  # noqa: E402
from catalogauth.storage.memory import MemoryStore  # noqa: E402

TEST_JWT_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # fresh state directory per test so the file-backed store starts empty
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret=TEST_JWT_SECRET,
        shared_fs_root=str(tmp_path),
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
        test_mode=True,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def credentials(settings):
    fast = PasswordHasher(time_cost=1, memory_cost=8192, parallelism=1, type=Type.ID)
    return CredentialVerifier(PasswordPolicy.from_settings(settings), fast)


@pytest.fixture
def token_service(settings):
    return TokenService(settings)


@pytest.fixture
def auth_service(memory_store, credentials, token_service, settings):
    return AuthService(memory_store, credentials, token_service, settings)


@pytest.fixture
def api_key_manager(memory_store, settings):
    return ApiKeyManager(memory_store, settings)


@pytest.fixture
def guard(token_service, api_key_manager):
    return AuthorizationGuard(token_service, api_key_manager)


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
