"""
Error taxonomy for the Mercado Libre credential lifecycle.

Errors that mean the credential itself is broken (rejected refresh grant,
persistent 401) are raised only after the credential set was deactivated.
Transient errors (timeouts, provider 5xx, storage hiccups) never mutate
credential state and are surfaced as-is.

SECURITY: messages and details never carry token or secret values.
"""

from typing import Any, Optional

from fastapi import status

from returnsdesk.platform.errors import AppError

# Provider error bodies are echoed to operators for diagnosis; cap their size
MAX_PROVIDER_BODY_LENGTH = 500


def _truncate_body(body: Any) -> Any:
    if isinstance(body, str) and len(body) > MAX_PROVIDER_BODY_LENGTH:
        return body[:MAX_PROVIDER_BODY_LENGTH]
    return body


class ConfigError(AppError):
    """Required input is missing (client id/secret, redirect URI, code)."""

    def __init__(self, message: str, missing: Optional[list[str]] = None):
        super().__init__(
            code="CONFIG_ERROR",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"missing": missing} if missing else None,
        )
        self.missing = missing or []


class NotConfiguredError(AppError):
    """No active credential set when one was required."""

    def __init__(self, message: str = "No active Mercado Libre credentials found"):
        super().__init__(
            code="NOT_CONFIGURED",
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
        )


class OAuthExchangeError(AppError):
    """The token endpoint rejected a grant (or failed to answer it)."""

    def __init__(
        self,
        message: str,
        http_status: int,
        provider_body: Any = None,
        grant_type: Optional[str] = None,
    ):
        self.http_status = http_status
        self.provider_body = _truncate_body(provider_body)
        self.grant_type = grant_type
        super().__init__(
            code="OAUTH_EXCHANGE_FAILED",
            message=message,
            status_code=(
                status.HTTP_502_BAD_GATEWAY
                if self.is_transient
                else status.HTTP_400_BAD_REQUEST
            ),
            details={
                "provider_status": http_status,
                "provider_body": self.provider_body,
            },
        )

    @property
    def is_transient(self) -> bool:
        """Provider outages and throttling say nothing about the credential."""
        return self.http_status >= 500 or self.http_status == 429


class ConnectionVerificationError(AppError):
    """Tokens were issued but failed the live identity check."""

    def __init__(self, message: str, http_status: Optional[int] = None):
        self.http_status = http_status
        super().__init__(
            code="CONNECTION_VERIFICATION_FAILED",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"provider_status": http_status} if http_status else None,
        )


class RefreshFailedError(AppError):
    """Refresh grant failed; the credential set has been deactivated."""

    def __init__(self, message: str, credential_id: str):
        self.credential_id = credential_id
        super().__init__(
            code="REFRESH_FAILED",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"credential_id": credential_id},
        )


class StorageError(AppError):
    """The credential store failed; does not affect credential validity."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        super().__init__(
            code="STORAGE_ERROR",
            message=f"Credential storage failed during {operation}",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details={"operation": operation},
        )


class MarketplaceAPIError(AppError):
    """Mercado Libre answered an API call with a non-success status."""

    def __init__(self, message: str, http_status: int, provider_body: Any = None):
        self.http_status = http_status
        self.provider_body = _truncate_body(provider_body)
        super().__init__(
            code="MARKETPLACE_API_ERROR",
            message=message,
            status_code=http_status if 400 <= http_status <= 599 else status.HTTP_502_BAD_GATEWAY,
            details={"provider_body": self.provider_body} if provider_body is not None else None,
        )


class CredentialRejectedError(MarketplaceAPIError):
    """A freshly refreshed token was rejected again; the credential set was deactivated."""

    def __init__(self, credential_id: str, provider_body: Any = None):
        self.credential_id = credential_id
        super().__init__(
            message="Mercado Libre rejected the credentials after a token refresh",
            http_status=status.HTTP_401_UNAUTHORIZED,
            provider_body=provider_body,
        )
        self.code = "CREDENTIAL_REJECTED"


class MarketplaceConnectionError(AppError):
    """Network failure or timeout talking to Mercado Libre (transient)."""

    def __init__(self, message: str = "Could not reach Mercado Libre"):
        super().__init__(
            code="MARKETPLACE_UNAVAILABLE",
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )
