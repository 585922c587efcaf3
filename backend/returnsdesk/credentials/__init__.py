"""
Credentials module for the Mercado Libre OAuth token lifecycle.

This module provides:
- Encrypted storage for client secrets and OAuth tokens
- Token supply with on-demand, forced and 401-triggered refresh
- Deactivation of credential sets the provider no longer accepts
- Audit logging with automatic redaction

SECURITY:
- Secrets are encrypted at rest using ENCRYPTION_KEY
- No plaintext tokens outside process memory
- Tokens NEVER appear in logs or API responses

Usage:
    from returnsdesk.credentials import CredentialStore, TokenLifecycleManager

    store = CredentialStore(session_factory)
    manager = TokenLifecycleManager(store, oauth_client, identity_client)

    token = await manager.get_valid_access_token()
"""

from returnsdesk.credentials.encryption import (
    EncryptionError,
    configure_encryption,
    decrypt_secret,
    encrypt_secret,
)
from returnsdesk.credentials.errors import (
    ConfigError,
    ConnectionVerificationError,
    CredentialRejectedError,
    MarketplaceAPIError,
    MarketplaceConnectionError,
    NotConfiguredError,
    OAuthExchangeError,
    RefreshFailedError,
    StorageError,
)
from returnsdesk.credentials.executor import AuthenticatedRequestExecutor
from returnsdesk.credentials.lifecycle import (
    AuthorizationResult,
    CredentialState,
    TokenLifecycleManager,
)
from returnsdesk.credentials.redaction import (
    AuditEventType,
    CredentialAuditLogger,
    redact_credential_data,
)
from returnsdesk.credentials.store import CredentialSet, CredentialStore

__all__ = [
    "EncryptionError",
    "configure_encryption",
    "decrypt_secret",
    "encrypt_secret",
    "ConfigError",
    "ConnectionVerificationError",
    "CredentialRejectedError",
    "MarketplaceAPIError",
    "MarketplaceConnectionError",
    "NotConfiguredError",
    "OAuthExchangeError",
    "RefreshFailedError",
    "StorageError",
    "AuthenticatedRequestExecutor",
    "AuthorizationResult",
    "CredentialState",
    "TokenLifecycleManager",
    "AuditEventType",
    "CredentialAuditLogger",
    "redact_credential_data",
    "CredentialSet",
    "CredentialStore",
]
