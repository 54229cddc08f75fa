import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Configure the environment before anything imports settings or the app
_test_tmp_dir = tempfile.mkdtemp(prefix="roastauth_test_")
os.environ.setdefault("STATE_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("COOKIE_SECURE", "false")
# Blank REDIS_URL keeps every test on the in-process MemoryCache
os.environ["REDIS_URL"] = ""
os.environ.setdefault("OAUTH_GOOGLE_CLIENT_ID", "google-client")
os.environ.setdefault("OAUTH_GOOGLE_CLIENT_SECRET", "google-secret")
os.environ.setdefault("OAUTH_GITHUB_CLIENT_ID", "github-client")
os.environ.setdefault("OAUTH_GITHUB_CLIENT_SECRET", "github-secret")
os.environ.setdefault("OAUTH_APPLE_CLIENT_ID", "apple-client")
os.environ.setdefault("OAUTH_APPLE_CLIENT_SECRET", "apple-secret")
os.environ.setdefault("OAUTH_MICROSOFT_CLIENT_ID", "microsoft-client")
os.environ.setdefault("OAUTH_MICROSOFT_CLIENT_SECRET", "microsoft-secret")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from roastauth.config import Settings  # noqa: E402
from roastauth.service.audit import ClientInfo, SecurityAuditLogger  # noqa: E402
from roastauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from roastauth.service.sessions import SessionManager  # noqa: E402
from roastauth.storage.memory import MemoryCache, MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh state directory per test so persisted users never leak between tests
    monkeypatch.setenv("STATE_FS_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        test_mode=True,
        cookie_secure=False,
        oauth_google_client_id="google-client",
        oauth_google_client_secret="google-secret",
        oauth_github_client_id="github-client",
        oauth_github_client_secret="github-secret",
        oauth_apple_client_id="apple-client",
        oauth_apple_client_secret="apple-secret",
        oauth_microsoft_client_id="microsoft-client",
        oauth_microsoft_client_secret="microsoft-secret",
        app_base_url="https://auth.example.com",
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def memory_cache():
    return MemoryCache()


@pytest.fixture
def audit(memory_store):
    return SecurityAuditLogger(memory_store)


@pytest.fixture
def sessions(memory_store, audit, settings):
    return SessionManager(memory_store, audit, settings)


@pytest.fixture
def client_info():
    return ClientInfo(ip_address="203.0.113.7", user_agent="pytest-agent/1.0")


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
