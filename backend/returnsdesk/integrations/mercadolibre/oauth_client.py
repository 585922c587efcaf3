"""
Mercado Libre OAuth token endpoint client.

Stateless wrapper around the two token-granting exchanges:
- authorization_code: one-time code from the consent redirect -> initial tokens
- refresh_token: long-lived refresh token -> new access token

Both are single POST round trips with parameters in the query string, as the
provider documents them. There is NO internal retry: an authorization code is
single-use, and refresh retry policy belongs to the lifecycle manager.

SECURITY:
- Request URLs carry client_secret and tokens; they are never logged
- Provider error bodies are logged only after redaction
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from returnsdesk.credentials.errors import (
    ConfigError,
    MarketplaceConnectionError,
    OAuthExchangeError,
)
from returnsdesk.credentials.redaction import redact_credential_data
from returnsdesk.credentials.store import DEFAULT_EXPIRES_IN_SECONDS

logger = logging.getLogger(__name__)

TOKEN_PATH = "/oauth/token"

GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_REFRESH_TOKEN = "refresh_token"


@dataclass
class TokenGrant:
    """
    Tokens issued by the provider.

    SECURITY: token fields are excluded from repr.
    """
    access_token: str = field(repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    expires_in: int = DEFAULT_EXPIRES_IN_SECONDS
    provider_user_id: Optional[str] = None
    scope: Optional[str] = None


def _require(**values: Optional[str]) -> None:
    missing = [name for name, value in values.items() if not value]
    if missing:
        raise ConfigError(
            f"Missing required OAuth parameters: {', '.join(missing)}",
            missing=missing,
        )


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class MercadoLibreOAuthClient:
    """
    Performs token grants against {base_url}/oauth/token.

    Usage:
        async with httpx.AsyncClient(timeout=20) as http:
            oauth = MercadoLibreOAuthClient(http, "https://api.mercadolibre.com")
            grant = await oauth.exchange_authorization_code(cid, secret, redirect, code)
    """

    def __init__(self, http_client: httpx.AsyncClient, base_url: str):
        self.http = http_client
        self.token_url = f"{base_url.rstrip('/')}{TOKEN_PATH}"

    async def exchange_authorization_code(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        code: str,
    ) -> TokenGrant:
        """
        Exchange a one-time authorization code for initial tokens.

        Raises:
            ConfigError: If any argument is empty (no request is sent)
            OAuthExchangeError: If the provider answers non-200
            MarketplaceConnectionError: On timeout or network failure
        """
        _require(
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=redirect_uri,
            code=code,
        )

        data = await self._grant(
            GRANT_AUTHORIZATION_CODE,
            {
                "grant_type": GRANT_AUTHORIZATION_CODE,
                "client_id": client_id,
                "client_secret": client_secret,
                "code": code,
                "redirect_uri": redirect_uri,
            },
        )
        user_id = data.get("user_id")
        return TokenGrant(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=int(data.get("expires_in") or DEFAULT_EXPIRES_IN_SECONDS),
            provider_user_id=str(user_id) if user_id is not None else None,
            scope=data.get("scope"),
        )

    async def refresh_access_token(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
    ) -> TokenGrant:
        """
        Exchange a refresh token for a new access token.

        The returned refresh_token is None when the provider did not rotate it;
        the caller must keep the previous one.
        """
        _require(
            client_id=client_id,
            client_secret=client_secret,
            refresh_token=refresh_token,
        )

        data = await self._grant(
            GRANT_REFRESH_TOKEN,
            {
                "grant_type": GRANT_REFRESH_TOKEN,
                "client_id": client_id,
                "client_secret": client_secret,
                "refresh_token": refresh_token,
            },
        )
        return TokenGrant(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or None,
            expires_in=int(data.get("expires_in") or DEFAULT_EXPIRES_IN_SECONDS),
            scope=data.get("scope"),
        )

    async def _grant(self, grant_type: str, params: dict) -> dict:
        try:
            response = await self.http.post(
                self.token_url,
                params=params,
                headers={
                    "Accept": "application/json",
                    "Content-Type": "application/x-www-form-urlencoded",
                },
            )
        except httpx.TimeoutException as e:
            logger.warning(
                "Token endpoint timed out",
                extra={"grant_type": grant_type},
            )
            raise MarketplaceConnectionError("Mercado Libre token endpoint timed out") from e
        except httpx.TransportError as e:
            logger.warning(
                "Token endpoint unreachable",
                extra={"grant_type": grant_type, "error_type": type(e).__name__},
            )
            raise MarketplaceConnectionError("Could not reach Mercado Libre token endpoint") from e

        body = _response_body(response)

        if response.status_code != 200:
            logger.error(
                "Token grant rejected",
                extra={
                    "grant_type": grant_type,
                    "provider_status": response.status_code,
                    "provider_body": redact_credential_data(body),
                },
            )
            raise OAuthExchangeError(
                f"Mercado Libre {grant_type} grant failed with status {response.status_code}",
                http_status=response.status_code,
                provider_body=redact_credential_data(body),
                grant_type=grant_type,
            )

        if not isinstance(body, dict) or not body.get("access_token"):
            logger.error(
                "Token grant response missing access_token",
                extra={"grant_type": grant_type},
            )
            raise OAuthExchangeError(
                f"Mercado Libre {grant_type} grant returned no access token",
                http_status=response.status_code,
                grant_type=grant_type,
            )

        logger.info(
            "Token grant succeeded",
            extra={
                "grant_type": grant_type,
                "expires_in": body.get("expires_in"),
                "refresh_token_rotated": bool(body.get("refresh_token")),
            },
        )
        return body
