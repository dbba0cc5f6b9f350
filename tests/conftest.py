import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="teachgram_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("LOG_JSON", "false")

import httpx  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from teachgram.service.auth import AuthService  # noqa: E402
from teachgram.service.oauth import GoogleIdTokenVerifier, OAuthBridge  # noqa: E402
from teachgram.service.passwords import PasswordHasher  # noqa: E402
from teachgram.service.runtime import reset_runtime_for_tests  # noqa: E402
from teachgram.service.tokens import SigningKeys, TokenService  # noqa: E402
from teachgram.storage.memory import MemoryStore  # noqa: E402

_SHARED_KEYS = SigningKeys.generate()


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture(scope="session")
def signing_keys() -> SigningKeys:
    return _SHARED_KEYS


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture(scope="session")
def hasher() -> PasswordHasher:
    return PasswordHasher()


@pytest.fixture
def tokens(signing_keys) -> TokenService:
    return TokenService(signing_keys, issuer="teachgram-api", expiration_minutes=60)


class GoogleStub:
    """Scripted tokeninfo endpoint served through ``httpx.MockTransport``."""

    def __init__(self):
        self.identities: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []

    def add(self, token: str, **claims) -> None:
        self.identities[token] = claims

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        claims = self.identities.get(request.url.params.get("id_token"))
        if claims is None:
            return httpx.Response(400, json={"error": "invalid_token"})
        return httpx.Response(200, json=claims)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def google() -> GoogleStub:
    return GoogleStub()


@pytest.fixture
def oauth(store, hasher, google) -> OAuthBridge:
    verifier = GoogleIdTokenVerifier(transport=google.transport())
    return OAuthBridge(store, hasher, verifiers={"google": verifier})


@pytest.fixture
def auth_service(store, tokens, oauth, hasher) -> AuthService:
    return AuthService(store, tokens, oauth, hasher=hasher)


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
