import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# Empty REDIS_URL selects the in-process cache; no live Redis is needed
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("AUTH_CORE_URL", "")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tokensmith.config import get_settings  # noqa: E402
from tokensmith.service.auth import AuthCore  # noqa: E402
from tokensmith.service.hashing import Argon2Hasher  # noqa: E402
from tokensmith.service.runtime import reset_runtime_for_tests  # noqa: E402
from tokensmith.service.tokens import (  # noqa: E402
    SigningKey,
    TokenIssuer,
    generate_private_key,
)
from tokensmith.storage.memory import MemoryCredentialStore  # noqa: E402
from tokensmith.storage.redis_cache import MemoryCache  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture(scope="session")
def rsa_keys():
    """One access and one refresh key for the whole session; generation is slow."""
    return {"access": generate_private_key(), "refresh": generate_private_key()}


@pytest.fixture
def issuer_factory(rsa_keys):
    def make(*, access_ttl=900, refresh_ttl=604800) -> TokenIssuer:
        access = rsa_keys["access"]
        refresh = rsa_keys["refresh"]
        return TokenIssuer(
            SigningKey("access-v1", access, access.public_key(), access_ttl),
            SigningKey("refresh-v1", refresh, refresh.public_key(), refresh_ttl),
        )

    return make


@pytest.fixture
def issuer(issuer_factory):
    return issuer_factory()


@pytest.fixture
def hasher():
    # Minimum argon2 cost keeps the suite fast
    return Argon2Hasher(time_cost=1, memory_cost=64)


@pytest.fixture
def store():
    return MemoryCredentialStore()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def core(store, cache, issuer, hasher):
    return AuthCore(store, cache, issuer, get_settings(), hasher=hasher)


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
