"""
Authenticated request executor for Mercado Libre API calls.

Wraps every outbound call that needs a bearer token:
1. Obtain a valid token from the lifecycle manager
2. Send the request
3. On 401, force a refresh and retry exactly once
4. If the retry is also 401, deactivate the credential set and raise

Any non-401 response is returned to the caller unchanged; interpreting
business errors is the caller's job. Timeouts and network failures never
touch credential state.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from returnsdesk.credentials.errors import (
    CredentialRejectedError,
    MarketplaceConnectionError,
    NotConfiguredError,
)
from returnsdesk.credentials.redaction import redact_credential_data
from returnsdesk.models.marketplace_credential import DeactivationReason

logger = logging.getLogger(__name__)


class AuthenticatedRequestExecutor:
    """Sends requests with the active credential's token and handles 401 once."""

    def __init__(self, manager, store, http_client: httpx.AsyncClient):
        self.manager = manager
        self.store = store
        self.http = http_client

    async def execute(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """
        Send an authenticated request.

        Raises:
            NotConfiguredError: No active credential set
            RefreshFailedError: The forced refresh after a 401 was rejected
            CredentialRejectedError: The refreshed token was rejected too
            MarketplaceConnectionError: Timeout or network failure
        """
        credential = self.store.get_active()
        if credential is None:
            raise NotConfiguredError()

        token = await self.manager.get_valid_access_token()
        response = await self._send(method, url, token, params, headers)
        if response.status_code != 401:
            return response

        logger.info(
            "Mercado Libre returned 401; refreshing token and retrying once",
            extra={"credential_id": credential.id},
        )
        token = await self.manager.get_valid_access_token(force_refresh=True)
        response = await self._send(method, url, token, params, headers)
        if response.status_code != 401:
            return response

        self.store.deactivate(credential.id, DeactivationReason.CREDENTIAL_REJECTED)
        try:
            body = response.json()
        except ValueError:
            body = response.text
        raise CredentialRejectedError(credential.id, redact_credential_data(body))

    async def _send(
        self,
        method: str,
        url: str,
        token: str,
        params: Optional[Dict[str, Any]],
        headers: Optional[Dict[str, str]],
    ) -> httpx.Response:
        request_headers = {"Accept": "application/json"}
        if headers:
            request_headers.update(headers)
        request_headers["Authorization"] = f"Bearer {token}"

        try:
            return await self.http.request(
                method,
                url,
                params=params,
                headers=request_headers,
            )
        except httpx.TimeoutException as e:
            logger.warning("Mercado Libre request timed out", extra={"method": method})
            raise MarketplaceConnectionError("Mercado Libre request timed out") from e
        except httpx.TransportError as e:
            logger.warning(
                "Mercado Libre request failed",
                extra={"method": method, "error_type": type(e).__name__},
            )
            raise MarketplaceConnectionError() from e
