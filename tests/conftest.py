import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tenantauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("APP_BASE_URL", "https://auth.test")
os.environ.setdefault("WEB_BASE_URL", "https://web.test")
# In-process fallbacks for social state, MFA lockout and rate limits
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tenantauth.service.passwords import hash_password  # noqa: E402
from tenantauth.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from tenantauth.storage.models import Client  # noqa: E402

USER_EMAIL = "alice@example.com"
USER_PASSWORD = "CorrectHorse-42"
CONFIDENTIAL_CLIENT_ID = "web-app"
CONFIDENTIAL_CLIENT_SECRET = "web-app-secret"
PUBLIC_CLIENT_ID = "spa"
REDIRECT_URI = "https://client.test/callback"

# Hashed once per session
_PASSWORD_HASH = hash_password(USER_PASSWORD)
_CLIENT_SECRET_HASH = hash_password(CONFIDENTIAL_CLIENT_SECRET)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    return get_runtime()


def seed_tenant(runtime, tenant_id: str = "", *, email: str = USER_EMAIL, **user_kwargs):
    """Register the two test clients and one password user in ``tenant_id``."""
    store = runtime.store
    if store.get_tenant(tenant_id) is None:
        store.create_tenant(tenant_id, tenant_id or "default")
    store.create_client(
        Client(
            client_id=CONFIDENTIAL_CLIENT_ID,
            tenant_id=tenant_id,
            name="Web App",
            secret_hash=_CLIENT_SECRET_HASH,
            redirect_uris=[REDIRECT_URI],
        )
    )
    store.create_client(
        Client(
            client_id=PUBLIC_CLIENT_ID,
            tenant_id=tenant_id,
            name="Single Page App",
            redirect_uris=[REDIRECT_URI],
        )
    )
    user_kwargs.setdefault("scopes", ["read", "write", "openid", "profile", "email"])
    user_kwargs.setdefault("groups", ["staff"])
    user = store.create_user(email, tenant_id=tenant_id, first_name="Alice", **user_kwargs)
    store.save_password(user.id, tenant_id, _PASSWORD_HASH)
    return user


@pytest.fixture
def seeded_user(runtime):
    return seed_tenant(runtime)


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
