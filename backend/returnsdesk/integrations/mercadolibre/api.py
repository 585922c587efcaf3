"""
Mercado Libre read API.

Two entry points:
- MercadoLibreIdentityClient: calls /users/me with an explicit access token.
  Used by the lifecycle manager to verify freshly issued tokens before the
  credential set is activated, so it must not go through the executor.
- MercadoLibreAPI: authenticated reads (seller identity, order search) routed
  through the AuthenticatedRequestExecutor, which supplies and renews tokens.

Non-2xx responses surface as MarketplaceAPIError carrying the provider status.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from returnsdesk.credentials.errors import MarketplaceAPIError, MarketplaceConnectionError
from returnsdesk.credentials.redaction import redact_credential_data

logger = logging.getLogger(__name__)

IDENTITY_PATH = "/users/me"
ORDERS_SEARCH_PATH = "/orders/search"

DEFAULT_ORDERS_LIMIT = 50
DEFAULT_ORDERS_SORT = "date_desc"


def _parse_json(response: httpx.Response, operation: str) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        body = response.text

    if not response.is_success:
        logger.warning(
            "Mercado Libre API call failed",
            extra={
                "operation": operation,
                "provider_status": response.status_code,
            },
        )
        raise MarketplaceAPIError(
            f"Mercado Libre {operation} failed with status {response.status_code}",
            http_status=response.status_code,
            provider_body=redact_credential_data(body),
        )

    if not isinstance(body, dict):
        raise MarketplaceAPIError(
            f"Mercado Libre {operation} returned an unexpected payload",
            http_status=502,
        )
    return body


class MercadoLibreIdentityClient:
    """Fetches the seller identity for a specific access token."""

    def __init__(self, http_client: httpx.AsyncClient, base_url: str):
        self.http = http_client
        self.identity_url = f"{base_url.rstrip('/')}{IDENTITY_PATH}"

    async def fetch_identity(self, access_token: str) -> Dict[str, Any]:
        try:
            response = await self.http.get(
                self.identity_url,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json",
                },
            )
        except httpx.TimeoutException as e:
            raise MarketplaceConnectionError("Mercado Libre identity endpoint timed out") from e
        except httpx.TransportError as e:
            raise MarketplaceConnectionError("Could not reach Mercado Libre identity endpoint") from e

        return _parse_json(response, "identity lookup")


class MercadoLibreAPI:
    """
    Authenticated Mercado Libre reads.

    Usage:
        api = MercadoLibreAPI(executor, "https://api.mercadolibre.com")
        me = await api.get_me()
        orders = await api.search_orders(me["id"], status="paid")
    """

    def __init__(self, executor, base_url: str):
        self.executor = executor
        self.base_url = base_url.rstrip("/")

    async def get_me(self) -> Dict[str, Any]:
        """Identity of the seller behind the active credential set."""
        response = await self.executor.execute("GET", f"{self.base_url}{IDENTITY_PATH}")
        return _parse_json(response, "identity lookup")

    async def search_orders(
        self,
        seller_id: str,
        status: Optional[str] = None,
        sort: str = DEFAULT_ORDERS_SORT,
        limit: int = DEFAULT_ORDERS_LIMIT,
        offset: int = 0,
    ) -> Dict[str, Any]:
        """
        Search the seller's orders, newest first by default.

        Returns the provider payload unchanged ({"results": [...], "paging": {...}}).
        """
        params: Dict[str, Any] = {
            "seller": seller_id,
            "limit": limit,
            "offset": offset,
            "sort": sort,
        }
        if status:
            params["order.status"] = status

        response = await self.executor.execute(
            "GET",
            f"{self.base_url}{ORDERS_SEARCH_PATH}",
            params=params,
        )
        return _parse_json(response, "order search")
