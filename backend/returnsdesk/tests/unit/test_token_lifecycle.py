"""
Token lifecycle manager tests.

CRITICAL: These tests verify:
1. The stored token is reused without network calls until expiry
2. Exactly one refresh happens once expiry has passed, even under concurrency
3. A rejected refresh deactivates the credential set
4. Transient failures (timeouts, provider 5xx) never deactivate
5. Authorization activates only after the live identity check succeeds
"""

import asyncio
from datetime import timedelta

import httpx
import pytest

from returnsdesk.credentials.errors import (
    ConfigError,
    ConnectionVerificationError,
    MarketplaceConnectionError,
    NotConfiguredError,
    OAuthExchangeError,
    RefreshFailedError,
)
from returnsdesk.credentials.lifecycle import (
    CredentialState,
    TokenLifecycleManager,
    credential_state,
)
from returnsdesk.integrations.mercadolibre.api import MercadoLibreIdentityClient
from returnsdesk.integrations.mercadolibre.oauth_client import MercadoLibreOAuthClient
from returnsdesk.models.marketplace_credential import DeactivationReason, MarketplaceCredential

REDIRECT_URI = "https://returns.test/callback"
TEST_BASE_URL = "https://api.mercadolibre.test"

# Seeded at T0 with expires_in=21600, so the stored expiry is T0 + 21300s
SEEDED_EXPIRY = timedelta(seconds=21300)


class SingleUseRefreshTokens:
    """
    Wraps FakeMercadoLibre with the provider's single-use refresh tokens.

    Each refresh grant yields to the event loop before answering, so
    concurrent callers overlap; a reused refresh token gets invalid_grant.
    """

    def __init__(self, fake_ml):
        self.fake_ml = fake_ml
        self.used: set[str] = set()

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/token" and request.url.params.get("grant_type") == "refresh_token":
            await asyncio.sleep(0.01)
            refresh_token = request.url.params.get("refresh_token")
            if refresh_token in self.used:
                self.fake_ml.requests.append(request)
                return httpx.Response(400, json={"error": "invalid_grant"})
            self.used.add(refresh_token)
        return self.fake_ml.handler(request)


@pytest.fixture
def single_use_manager(store, clock, fake_ml):
    provider = SingleUseRefreshTokens(fake_ml)
    http = httpx.AsyncClient(transport=httpx.MockTransport(provider.handler))
    return TokenLifecycleManager(
        store,
        MercadoLibreOAuthClient(http, TEST_BASE_URL),
        MercadoLibreIdentityClient(http, TEST_BASE_URL),
        clock=clock,
    )


# ============================================================================
# TEST SUITE: CACHED TOKEN
# ============================================================================

class TestCachedToken:

    @pytest.mark.asyncio
    async def test_reused_until_expiry(self, manager, active_credential, clock, fake_ml):
        clock.advance(seconds=SEEDED_EXPIRY.total_seconds() - 1)

        token = await manager.get_valid_access_token()

        assert token == "test-access-seed"
        assert fake_ml.requests == []

    @pytest.mark.asyncio
    async def test_single_refresh_after_expiry(self, manager, store, active_credential, clock, fake_ml):
        clock.advance(seconds=SEEDED_EXPIRY.total_seconds() + 1)

        token = await manager.get_valid_access_token()
        again = await manager.get_valid_access_token()

        assert token == again == "test-access-1"
        assert len(fake_ml.token_requests("refresh_token")) == 1
        assert fake_ml.token_requests()[0].url.params["refresh_token"] == "test-refresh-seed"

        credential = store.get_active()
        assert credential.refresh_token == "test-refresh-1"
        assert credential.token_expires_at == clock() + SEEDED_EXPIRY

    @pytest.mark.asyncio
    async def test_refresh_keeps_unrotated_refresh_token(
        self, manager, store, active_credential, clock, fake_ml
    ):
        fake_ml.rotate_refresh_token = False
        clock.advance(hours=6)

        await manager.get_valid_access_token()

        assert store.get_active().refresh_token == "test-refresh-seed"

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(
        self, manager, active_credential, clock, fake_ml
    ):
        clock.advance(hours=6)

        tokens = await asyncio.gather(*(manager.get_valid_access_token() for _ in range(5)))

        assert set(tokens) == {"test-access-1"}
        assert len(fake_ml.token_requests()) == 1

    @pytest.mark.asyncio
    async def test_force_refresh_before_expiry(self, manager, active_credential, fake_ml):
        token = await manager.get_valid_access_token(force_refresh=True)

        assert token == "test-access-1"
        assert len(fake_ml.token_requests()) == 1

    @pytest.mark.asyncio
    async def test_missing_expiry_counts_as_expired(
        self, manager, store, session_factory, active_credential, fake_ml
    ):
        with session_factory() as session:
            session.get(MarketplaceCredential, active_credential).token_expires_at = None
            session.commit()

        await manager.get_valid_access_token()

        assert len(fake_ml.token_requests()) == 1

    @pytest.mark.asyncio
    async def test_no_active_credential(self, manager, store):
        store.create("client", "secret", REDIRECT_URI)

        with pytest.raises(NotConfiguredError):
            await manager.get_valid_access_token()


# ============================================================================
# TEST SUITE: REFRESH FAILURES
# ============================================================================

class TestRefreshFailures:

    @pytest.mark.asyncio
    async def test_rejected_refresh_deactivates(self, manager, store, active_credential, clock, fake_ml):
        fake_ml.token_responses.append((400, {"error": "invalid_grant"}))
        clock.advance(hours=6)

        with pytest.raises(RefreshFailedError) as exc_info:
            await manager.get_valid_access_token()

        assert exc_info.value.credential_id == active_credential
        credential = store.get(active_credential)
        assert credential.is_active is False
        assert credential.deactivation_reason == DeactivationReason.REFRESH_FAILED.value
        # Tokens stay for inspection
        assert credential.access_token == "test-access-seed"

        with pytest.raises(NotConfiguredError):
            await manager.get_valid_access_token()
        assert len(fake_ml.token_requests()) == 1

    @pytest.mark.asyncio
    async def test_missing_refresh_token_deactivates(self, manager, store, seed_credential, clock, fake_ml):
        credential_id = seed_credential(refresh_token=None)
        clock.advance(hours=6)

        with pytest.raises(RefreshFailedError):
            await manager.get_valid_access_token()

        assert fake_ml.requests == []
        assert store.get(credential_id).is_active is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [429, 500, 503])
    async def test_provider_outage_keeps_credential_active(
        self, manager, store, active_credential, clock, fake_ml, status_code
    ):
        fake_ml.token_responses.append((status_code, {"message": "try later"}))
        clock.advance(hours=6)

        with pytest.raises(OAuthExchangeError):
            await manager.get_valid_access_token()

        credential = store.get(active_credential)
        assert credential.is_active is True
        assert credential.access_token == "test-access-seed"

    @pytest.mark.asyncio
    async def test_timeout_keeps_credential_active(self, manager, store, active_credential, clock, fake_ml):
        fake_ml.token_responses.append(httpx.ReadTimeout("timed out"))
        clock.advance(hours=6)

        with pytest.raises(MarketplaceConnectionError):
            await manager.get_valid_access_token()

        assert store.get(active_credential).is_active is True

        # The next call retries and succeeds
        assert await manager.get_valid_access_token() == "test-access-1"

    @pytest.mark.asyncio
    async def test_failure_is_audited(self, manager, active_credential, clock, fake_ml, caplog):
        fake_ml.token_responses.append((401, {"error": "invalid_client"}))
        clock.advance(hours=6)

        with caplog.at_level("INFO", logger="credentials.audit"):
            with pytest.raises(RefreshFailedError):
                await manager.get_valid_access_token()

        messages = [record.getMessage() for record in caplog.records]
        assert "Credential audit: credential.refresh_failed" in messages
        assert "Credential audit: credential.deactivated" in messages


# ============================================================================
# TEST SUITE: OPERATOR REFRESH
# ============================================================================

class TestRefreshNow:

    @pytest.mark.asyncio
    async def test_returns_new_expiry(self, manager, active_credential, clock, fake_ml):
        clock.advance(hours=1)

        expires_at = await manager.refresh_now()

        assert expires_at == clock() + SEEDED_EXPIRY
        assert len(fake_ml.token_requests()) == 1

    @pytest.mark.asyncio
    async def test_requires_active_credential(self, manager):
        with pytest.raises(NotConfiguredError):
            await manager.refresh_now()

    @pytest.mark.asyncio
    async def test_waits_for_concurrent_forced_refresh(
        self, single_use_manager, store, active_credential, fake_ml
    ):
        token, expires_at = await asyncio.gather(
            single_use_manager.get_valid_access_token(force_refresh=True),
            single_use_manager.refresh_now(),
        )

        credential = store.get_active()
        assert credential.id == active_credential
        assert token == credential.access_token == "test-access-1"
        assert expires_at == credential.token_expires_at
        assert len(fake_ml.token_requests("refresh_token")) == 1

    @pytest.mark.asyncio
    async def test_forced_refresh_waits_for_operator_refresh(
        self, single_use_manager, store, active_credential, fake_ml
    ):
        expires_at, token = await asyncio.gather(
            single_use_manager.refresh_now(),
            single_use_manager.get_valid_access_token(force_refresh=True),
        )

        credential = store.get_active()
        assert credential.id == active_credential
        assert token == "test-access-1"
        assert expires_at == credential.token_expires_at
        assert len(fake_ml.token_requests("refresh_token")) == 1

    @pytest.mark.asyncio
    async def test_sequential_refreshes_rotate_refresh_token(
        self, single_use_manager, store, active_credential, fake_ml
    ):
        await single_use_manager.refresh_now()
        await single_use_manager.refresh_now()

        assert store.get_active().access_token == "test-access-2"
        assert len(fake_ml.token_requests("refresh_token")) == 2

    @pytest.mark.asyncio
    async def test_credential_replaced_while_waiting(self, manager, store, active_credential):
        lock = manager._lock_for(active_credential)
        await lock.acquire()
        pending = asyncio.ensure_future(manager.refresh_now())
        await asyncio.sleep(0)

        store.deactivate(active_credential, DeactivationReason.OPERATOR)
        lock.release()

        with pytest.raises(NotConfiguredError):
            await pending


# ============================================================================
# TEST SUITE: AUTHORIZATION
# ============================================================================

class TestCompleteAuthorization:

    @pytest.mark.asyncio
    async def test_success_activates(self, manager, store, fake_ml):
        credential_id = store.create("client-id", "client-secret", REDIRECT_URI)

        result = await manager.complete_authorization("code-123")

        assert result.credential_id == credential_id
        assert result.provider_user_id == "123456"
        assert result.nickname == "TESTSELLER"

        credential = store.get_active()
        assert credential.id == credential_id
        assert credential.oauth_completed is True
        assert credential.access_token == "test-access-1"
        assert credential.refresh_token == "test-refresh-1"

        identity_request = fake_ml.api_requests("/users/me")[0]
        assert identity_request.headers["Authorization"] == "Bearer test-access-1"

    @pytest.mark.asyncio
    async def test_verification_failure_leaves_set_inactive(self, manager, store, fake_ml):
        credential_id = store.create("client-id", "client-secret", REDIRECT_URI)
        fake_ml.identity_status = 403

        with pytest.raises(ConnectionVerificationError) as exc_info:
            await manager.complete_authorization("code-123")

        assert exc_info.value.http_status == 403
        credential = store.get(credential_id)
        assert credential.is_active is False
        assert credential.oauth_completed is True
        assert credential.access_token == "test-access-1"
        assert manager.state() == CredentialState.AUTHORIZING

    @pytest.mark.asyncio
    async def test_verification_timeout_leaves_set_inactive(self, manager, store, fake_ml):
        credential_id = store.create("client-id", "client-secret", REDIRECT_URI)
        fake_ml.api_responses.append(httpx.ConnectTimeout("timed out"))

        with pytest.raises(ConnectionVerificationError):
            await manager.complete_authorization("code-123")

        assert store.get(credential_id).is_active is False

    @pytest.mark.asyncio
    async def test_rejected_code_stores_nothing(self, manager, store, fake_ml):
        credential_id = store.create("client-id", "client-secret", REDIRECT_URI)
        fake_ml.token_responses.append((400, {"error": "invalid_grant"}))

        with pytest.raises(OAuthExchangeError):
            await manager.complete_authorization("used-code")

        credential = store.get(credential_id)
        assert credential.oauth_completed is False
        assert credential.access_token is None

    @pytest.mark.asyncio
    async def test_empty_code(self, manager, store, fake_ml):
        store.create("client-id", "client-secret", REDIRECT_URI)

        with pytest.raises(ConfigError) as exc_info:
            await manager.complete_authorization("")

        assert exc_info.value.missing == ["authorization_code"]
        assert fake_ml.requests == []

    @pytest.mark.asyncio
    async def test_without_credentials(self, manager):
        with pytest.raises(NotConfiguredError):
            await manager.complete_authorization("code-123")

    @pytest.mark.asyncio
    async def test_reauthorizes_deactivated_set(self, manager, store, active_credential, fake_ml):
        store.deactivate(active_credential, DeactivationReason.REFRESH_FAILED)

        await manager.complete_authorization("fresh-code")

        credential = store.get_active()
        assert credential.id == active_credential
        assert credential.access_token == "test-access-1"


class TestBootstrapWithRefreshToken:

    @pytest.mark.asyncio
    async def test_activates_from_refresh_token(self, manager, store, fake_ml):
        credential_id = store.create("client-id", "client-secret", REDIRECT_URI)

        result = await manager.bootstrap_with_refresh_token(credential_id, "env-refresh-token")

        assert result.provider_user_id == "123456"
        assert fake_ml.token_requests()[0].url.params["refresh_token"] == "env-refresh-token"
        assert store.get_active().id == credential_id

    @pytest.mark.asyncio
    async def test_keeps_env_refresh_token_when_not_rotated(self, manager, store, fake_ml):
        fake_ml.rotate_refresh_token = False
        credential_id = store.create("client-id", "client-secret", REDIRECT_URI)

        await manager.bootstrap_with_refresh_token(credential_id, "env-refresh-token")

        assert store.get(credential_id).refresh_token == "env-refresh-token"


# ============================================================================
# TEST SUITE: STATE
# ============================================================================

class TestCredentialState:

    def test_unconfigured(self, manager):
        assert manager.state() == CredentialState.UNCONFIGURED
        assert credential_state(None) == CredentialState.UNCONFIGURED

    def test_active(self, manager, active_credential):
        assert manager.state() == CredentialState.ACTIVE

    def test_deactivated(self, manager, store, active_credential):
        store.deactivate(active_credential, DeactivationReason.CREDENTIAL_REJECTED)

        assert manager.state() == CredentialState.DEACTIVATED
