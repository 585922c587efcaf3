"""
Shared fixtures for the credential lifecycle tests.

Mercado Libre is replaced by FakeMercadoLibre behind an httpx.MockTransport,
the database by in-memory SQLite, and wall-clock time by FakeClock.

NOTE: token values are obviously fake to avoid secret scanners.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
import pytest

from returnsdesk.credentials import encryption
from returnsdesk.credentials.encryption import CredentialEncryptor
from returnsdesk.credentials.executor import AuthenticatedRequestExecutor
from returnsdesk.credentials.lifecycle import TokenLifecycleManager
from returnsdesk.credentials.store import CredentialStore
from returnsdesk.database.session import build_session_factory, create_db_engine, init_db
from returnsdesk.integrations.mercadolibre.api import (
    MercadoLibreAPI,
    MercadoLibreIdentityClient,
)
from returnsdesk.integrations.mercadolibre.oauth_client import MercadoLibreOAuthClient

TEST_ENCRYPTION_KEY = "test-credential-encryption-key-not-real"
TEST_BASE_URL = "https://api.mercadolibre.test"
TEST_SELLER_ID = 123456

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


# ============================================================================
# TIME
# ============================================================================

class FakeClock:
    """Injectable clock; tests move time explicitly."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)

    def set(self, now: datetime) -> None:
        self.now = now


# ============================================================================
# MERCADO LIBRE STUB
# ============================================================================

class FakeMercadoLibre:
    """
    In-process stand-in for the Mercado Libre API.

    Token grants succeed with sequentially numbered tokens unless a response
    is queued in token_responses. API endpoints answer 401 while
    reject_all_tokens is set, otherwise pop api_responses before the default.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.token_responses: list = []
        self.api_responses: list = []
        self.identity_status = 200
        self.identity_body = {"id": TEST_SELLER_ID, "nickname": "TESTSELLER"}
        self.orders_body = {
            "results": [{"id": 2000001, "status": "paid"}],
            "paging": {"total": 1, "offset": 0, "limit": 50},
        }
        self.reject_all_tokens = False
        self.rotate_refresh_token = True
        self.issued = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/oauth/token":
            return self._token(request)

        if self.reject_all_tokens:
            return httpx.Response(401, json={"message": "invalid access token", "status": 401})

        if self.api_responses:
            response = self.api_responses.pop(0)
            if isinstance(response, Exception):
                raise response
            status_code, body = response
            return httpx.Response(status_code, json=body)

        if path == "/users/me":
            if self.identity_status != 200:
                return httpx.Response(
                    self.identity_status, json={"message": "forbidden", "status": self.identity_status}
                )
            return httpx.Response(200, json=self.identity_body)

        if path == "/orders/search":
            return httpx.Response(200, json=self.orders_body)

        return httpx.Response(404, json={"message": "not found"})

    def _token(self, request: httpx.Request) -> httpx.Response:
        if self.token_responses:
            response = self.token_responses.pop(0)
            if isinstance(response, Exception):
                raise response
            status_code, body = response
            return httpx.Response(status_code, json=body)

        self.issued += 1
        body = {
            "access_token": f"test-access-{self.issued}",
            "token_type": "bearer",
            "expires_in": 21600,
            "scope": "offline_access read write",
            "user_id": TEST_SELLER_ID,
        }
        if self.rotate_refresh_token:
            body["refresh_token"] = f"test-refresh-{self.issued}"
        return httpx.Response(200, json=body)

    # Inspection helpers

    def token_requests(self, grant_type: Optional[str] = None) -> list[httpx.Request]:
        return [
            r for r in self.requests
            if r.url.path == "/oauth/token"
            and (grant_type is None or r.url.params.get("grant_type") == grant_type)
        ]

    def api_requests(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture(scope="session")
def test_encryptor():
    """scrypt is slow by design; derive the test key once."""
    return CredentialEncryptor(TEST_ENCRYPTION_KEY)


@pytest.fixture(autouse=True)
def encryption_key(monkeypatch, test_encryptor):
    """Install the test encryptor for every test."""
    monkeypatch.setattr(encryption, "_encryptor", test_encryptor)
    monkeypatch.setattr(encryption, "_ephemeral", False)
    return TEST_ENCRYPTION_KEY


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_engine():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def store(session_factory, clock):
    return CredentialStore(session_factory, clock=clock)


@pytest.fixture
def fake_ml():
    return FakeMercadoLibre()


@pytest.fixture
def http_client(fake_ml):
    return httpx.AsyncClient(transport=httpx.MockTransport(fake_ml.handler))


@pytest.fixture
def oauth_client(http_client):
    return MercadoLibreOAuthClient(http_client, TEST_BASE_URL)


@pytest.fixture
def identity_client(http_client):
    return MercadoLibreIdentityClient(http_client, TEST_BASE_URL)


@pytest.fixture
def manager(store, oauth_client, identity_client, clock):
    return TokenLifecycleManager(store, oauth_client, identity_client, clock=clock)


@pytest.fixture
def executor(manager, store, http_client):
    return AuthenticatedRequestExecutor(manager, store, http_client)


@pytest.fixture
def marketplace_api(executor):
    return MercadoLibreAPI(executor, TEST_BASE_URL)


def seed_active_credential(
    store: CredentialStore,
    access_token: str = "test-access-seed",
    refresh_token: Optional[str] = "test-refresh-seed",
    expires_in: int = 21600,
) -> str:
    """Store a credential set that already completed OAuth and is active."""
    credential_id = store.create("test-client-id", "test-client-secret", "https://returns.test/callback")
    store.update_tokens(credential_id, access_token, refresh_token, expires_in=expires_in)
    store.activate_oauth_completion(credential_id)
    return credential_id


@pytest.fixture
def active_credential(store):
    """Active credential issued at T0; margin-adjusted expiry is T0 + 5h55m."""
    return seed_active_credential(store)


@pytest.fixture
def seed_credential(store):
    """Factory for additional active credential sets."""
    def _seed(**kwargs) -> str:
        return seed_active_credential(store, **kwargs)
    return _seed
