"""
Token lifecycle manager for the Mercado Libre integration.

Owns every decision about the active credential's tokens:
1. Authorization: exchange the consent code, store tokens, verify the token
   against the live identity endpoint, and only then activate the row
2. On-demand refresh: when the margin-adjusted expiry has passed
3. Forced refresh: after a 401, from the renewal loop, or by the operator
4. Deactivation: when the provider rejects the refresh grant, the credential
   set stops being offered to callers until an operator re-authorizes

State per credential set:
    UNCONFIGURED -> AUTHORIZING -> ACTIVE -> (REFRESHING) -> ACTIVE | DEACTIVATED

The manager keeps no durable state; every decision re-reads the store.
Refreshes for one credential are serialized with an asyncio.Lock so
concurrent callers in this process share a single refresh round trip.

SECURITY:
- Decrypted tokens are held only for the duration of a call
- No token value is ever logged

Usage:
    manager = TokenLifecycleManager(store, oauth_client, identity_client)

    result = await manager.complete_authorization(code)
    token = await manager.get_valid_access_token()
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

from returnsdesk.credentials.errors import (
    ConfigError,
    ConnectionVerificationError,
    MarketplaceAPIError,
    MarketplaceConnectionError,
    NotConfiguredError,
    OAuthExchangeError,
    RefreshFailedError,
)
from returnsdesk.credentials.redaction import AuditEventType, CredentialAuditLogger
from returnsdesk.credentials.store import CredentialSet, CredentialStore
from returnsdesk.models.marketplace_credential import DeactivationReason

logger = logging.getLogger(__name__)


class CredentialState(str, Enum):
    """Lifecycle state of a credential set."""
    UNCONFIGURED = "unconfigured"
    AUTHORIZING = "authorizing"
    ACTIVE = "active"
    DEACTIVATED = "deactivated"


def credential_state(credential: Optional[CredentialSet]) -> CredentialState:
    """Derive the lifecycle state of a stored credential set."""
    if credential is None:
        return CredentialState.UNCONFIGURED
    if credential.is_active:
        return CredentialState.ACTIVE
    if credential.deactivation_reason is not None:
        return CredentialState.DEACTIVATED
    return CredentialState.AUTHORIZING


@dataclass
class AuthorizationResult:
    """Outcome of a completed and verified authorization."""
    credential_id: str
    provider_user_id: Optional[str]
    nickname: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenLifecycleManager:
    """
    Decides when to reuse, refresh or give up on the active credential's token.

    Composes the OAuth client (network) and the credential store (persistence).
    """

    def __init__(
        self,
        store: CredentialStore,
        oauth_client,
        identity_client,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Args:
            store: Credential store adapter
            oauth_client: MercadoLibreOAuthClient (token grants)
            identity_client: Object with async fetch_identity(access_token) -> dict
            clock: Returns the current aware UTC time
        """
        self.store = store
        self.oauth = oauth_client
        self.identity = identity_client
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}
        self.audit = CredentialAuditLogger()

    def _lock_for(self, credential_id: str) -> asyncio.Lock:
        return self._locks.setdefault(credential_id, asyncio.Lock())

    def state(self) -> CredentialState:
        """Lifecycle state of the credential an authorization would target."""
        return credential_state(self.store.get_active() or self.store.get_most_recent())

    # =========================================================================
    # Authorization
    # =========================================================================

    async def complete_authorization(self, code: str) -> AuthorizationResult:
        """
        Complete the authorization-code flow for the current credential set.

        Tokens are stored before verification; activation is the only step
        gated on the live identity check.

        Raises:
            NotConfiguredError: No credential set has been saved
            ConfigError: Client id/secret, redirect URI or code is empty
            OAuthExchangeError: The provider rejected the code
            ConnectionVerificationError: Tokens issued but the identity check failed
        """
        credential = self.store.get_active() or self.store.get_most_recent()
        if credential is None:
            raise NotConfiguredError(
                "Credentials not found. Configure the credentials first."
            )

        missing = [
            name for name, value in (
                ("client_id", credential.client_id),
                ("client_secret", credential.client_secret),
                ("redirect_uri", credential.redirect_uri),
                ("authorization_code", code),
            )
            if not value
        ]
        if missing:
            raise ConfigError("Missing required credentials", missing=missing)

        grant = await self.oauth.exchange_authorization_code(
            credential.client_id,
            credential.client_secret,
            credential.redirect_uri,
            code,
        )

        self.store.update_tokens(
            credential.id,
            grant.access_token,
            grant.refresh_token,
            grant.expires_in,
            provider_user_id=grant.provider_user_id,
        )

        identity = await self._verify_connection(credential.id, grant.access_token)
        self.store.activate_oauth_completion(credential.id)

        user_id = identity.get("id", grant.provider_user_id)
        logger.info(
            "Mercado Libre authorization completed",
            extra={
                "credential_id": credential.id,
                "provider_user_id": user_id,
            },
        )
        return AuthorizationResult(
            credential_id=credential.id,
            provider_user_id=str(user_id) if user_id is not None else None,
            nickname=identity.get("nickname"),
        )

    async def bootstrap_with_refresh_token(
        self,
        credential_id: str,
        refresh_token: str,
    ) -> AuthorizationResult:
        """
        Bring a freshly configured credential set online from a known refresh token.

        Used at startup when the refresh token comes from the environment.
        Follows the same store-verify-activate sequence as authorization.
        """
        credential = self.store.get(credential_id)
        if credential is None:
            raise NotConfiguredError(f"Credential set not found: {credential_id}")

        grant = await self.oauth.refresh_access_token(
            credential.client_id,
            credential.client_secret,
            refresh_token,
        )
        self.store.update_tokens(
            credential.id,
            grant.access_token,
            grant.refresh_token or refresh_token,
            grant.expires_in,
        )

        identity = await self._verify_connection(credential.id, grant.access_token)
        self.store.activate_oauth_completion(credential.id)

        user_id = identity.get("id")
        return AuthorizationResult(
            credential_id=credential.id,
            provider_user_id=str(user_id) if user_id is not None else None,
            nickname=identity.get("nickname"),
        )

    async def _verify_connection(self, credential_id: str, access_token: str) -> Dict[str, Any]:
        # A successful exchange can still yield a token without the needed scopes
        try:
            return await self.identity.fetch_identity(access_token)
        except (MarketplaceAPIError, MarketplaceConnectionError) as e:
            http_status = getattr(e, "http_status", None)
            self.audit.log(
                AuditEventType.CREDENTIAL_VERIFICATION_FAILED,
                credential_id=credential_id,
                metadata={"provider_status": http_status, "error_code": e.code},
            )
            logger.warning(
                "Connection verification failed; credential set left inactive",
                extra={"credential_id": credential_id, "provider_status": http_status},
            )
            raise ConnectionVerificationError(
                "Failed to verify the connection with the Mercado Libre API",
                http_status=http_status,
            ) from e

    # =========================================================================
    # Token supply
    # =========================================================================

    async def get_valid_access_token(self, force_refresh: bool = False) -> str:
        """
        Return a usable access token for the active credential set.

        Returns the stored token without any network call while the
        margin-adjusted expiry has not been reached. Otherwise (or when
        force_refresh is set) refreshes synchronously and persists the result.

        Raises:
            NotConfiguredError: No active credential set
            RefreshFailedError: Provider rejected the refresh; the set was deactivated
            OAuthExchangeError: Provider error that is transient (5xx/429); nothing changed
            MarketplaceConnectionError: Timeout or network failure; nothing changed
            StorageError: Tokens could not be persisted
        """
        credential = self.store.get_active()
        if credential is None:
            raise NotConfiguredError()

        if not force_refresh and not credential.is_expired(self._clock()):
            return credential.access_token

        async with self._lock_for(credential.id):
            # Another caller may have refreshed while this one waited
            current = self.store.get_active()
            if current is None or current.id != credential.id:
                raise NotConfiguredError()

            if force_refresh:
                if current.access_token != credential.access_token:
                    return current.access_token
            elif not current.is_expired(self._clock()):
                return current.access_token

            return await self._refresh(current, forced=force_refresh)

    async def refresh_now(self) -> Optional[datetime]:
        """Operator-forced refresh. Returns the new margin-adjusted expiry."""
        credential = self.store.get_active()
        if credential is None:
            raise NotConfiguredError()

        async with self._lock_for(credential.id):
            current = self.store.get_active()
            if current is None or current.id != credential.id:
                raise NotConfiguredError()

            # Refresh tokens are single-use; a refresh that ran while this
            # caller waited already produced a fresh token
            if current.access_token != credential.access_token:
                return current.token_expires_at

            return await self._refresh(current, forced=True, return_expiry=True)

    async def _refresh(
        self,
        credential: CredentialSet,
        forced: bool = False,
        return_expiry: bool = False,
    ):
        logger.info(
            "Refreshing Mercado Libre access token",
            extra={
                "credential_id": credential.id,
                "forced": forced,
                "token_expires_at": (
                    credential.token_expires_at.isoformat()
                    if credential.token_expires_at else None
                ),
            },
        )

        try:
            grant = await self.oauth.refresh_access_token(
                credential.client_id,
                credential.client_secret,
                credential.refresh_token,
            )
        except OAuthExchangeError as e:
            if e.is_transient:
                logger.warning(
                    "Token refresh hit a transient provider error; credential left active",
                    extra={"credential_id": credential.id, "provider_status": e.http_status},
                )
                raise
            self._handle_refresh_failure(credential, e)
            raise RefreshFailedError(
                f"Token refresh failed: {e.message}", credential_id=credential.id
            ) from e
        except ConfigError as e:
            # Missing refresh token or client secret cannot heal on its own
            self._handle_refresh_failure(credential, e)
            raise RefreshFailedError(
                f"Token refresh failed: {e.message}", credential_id=credential.id
            ) from e

        expires_at = self.store.update_tokens(
            credential.id,
            grant.access_token,
            grant.refresh_token,
            grant.expires_in,
        )
        logger.info(
            "Mercado Libre access token refreshed",
            extra={
                "credential_id": credential.id,
                "token_expires_at": expires_at.isoformat(),
            },
        )
        if return_expiry:
            return expires_at
        return grant.access_token

    def _handle_refresh_failure(self, credential: CredentialSet, error: Exception) -> None:
        self.audit.log(
            AuditEventType.CREDENTIAL_REFRESH_FAILED,
            credential_id=credential.id,
            metadata={
                "error_code": getattr(error, "code", type(error).__name__),
                "provider_status": getattr(error, "http_status", None),
            },
        )
        logger.error(
            "Token refresh failed; deactivating credential set",
            extra={
                "credential_id": credential.id,
                "error_type": type(error).__name__,
            },
        )
        self.store.deactivate(credential.id, DeactivationReason.REFRESH_FAILED)
