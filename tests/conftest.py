import asyncio
import inspect
import os
import sys
from pathlib import Path

# Settings are read at import time, so the environment must be ready first
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ["REDIS_URL"] = ""
os.environ.setdefault("ACCESS_TOKEN", "test-access-secret-do-not-use-in-production")
os.environ.setdefault("REFRESH_TOKEN", "test-refresh-secret-do-not-use-in-production")
os.environ.setdefault("PROTECT_TOKEN", "test-protect-secret-do-not-use-in-production")
os.environ.setdefault("ACTIVATION_SECRET", "test-activation-secret-do-not-use-in-production")
os.environ.setdefault("CRYPTO_SECRET", "test-crypto-secret-do-not-use-in-production")
os.environ.setdefault("COOKIE_SECRET", "test-cookie-secret-do-not-use-in-production")
os.environ.setdefault("CLIENT_HUB_ORIGIN", "https://hub.example.test")
os.environ.setdefault("APP_BASE_URL", "https://api.example.test")
os.environ.setdefault("IPINFO_TOKEN", "")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from parcelhub import app as app_module  # noqa: E402
from parcelhub.config import Settings  # noqa: E402
from parcelhub.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from parcelhub.storage.models import AuthProvider  # noqa: E402

TEST_PASSWORD = "Parcel#Pass123"
CHROME_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
FIREFOX_LINUX = "Mozilla/5.0 (X11; Linux x86_64; rv:125.0) Gecko/20100101 Firefox/125.0"


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


def make_client(user_agent: str = CHROME_WINDOWS) -> TestClient:
    # https base URL so Secure cookies round-trip through the client jar
    return TestClient(
        app_module.app,
        base_url="https://testserver",
        headers={"User-Agent": user_agent},
    )


@pytest.fixture
def client():
    return make_client()


@pytest.fixture
def settings():
    return Settings(
        access_token_secret="unit-access-secret",
        refresh_token_secret="unit-refresh-secret",
        protect_token_secret="unit-protect-secret",
        activation_secret="unit-activation-secret",
        crypto_secret="unit-crypto-secret",
        cookie_secret="unit-cookie-secret",
        redis_url=None,
        use_memory_store=True,
        test_mode=True,
    )


@pytest.fixture
def outbox():
    """Capture transactional email instead of delivering it."""
    sent = []

    async def _capture(to_email, template_id, data):
        sent.append({"to": to_email, "template": template_id, "data": data})
        return True

    get_runtime().mailer.send_template = _capture
    return sent


@pytest.fixture
def make_user():
    """Create a verified password account directly in the store."""

    def _make(email="courier@example.com", password=TEST_PASSWORD, role="customer", **extra):
        from parcelhub.service.engine import normalize_email

        runtime = get_runtime()
        return runtime.store.create_user(
            email,
            normalize_email(email),
            password_hash=runtime.auth.hash_password(password),
            verified=True,
            role=role,
            family_name=extra.pop("family_name", "Okafor"),
            given_name=extra.pop("given_name", "Ada"),
            auth=[AuthProvider(provider="jwt")],
            **extra,
        )

    return _make


def signin(client, email="courier@example.com", password=TEST_PASSWORD, remember=False):
    return client.post(
        "/v1/signin", json={"email": email, "password": password, "remember": remember}
    )
