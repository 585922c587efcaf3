"""
Mercado Libre integration.

- oauth_client: token endpoint grants (authorization code, refresh token)
- api: identity verification and authenticated reads
"""

from returnsdesk.integrations.mercadolibre.api import (
    MercadoLibreAPI,
    MercadoLibreIdentityClient,
)
from returnsdesk.integrations.mercadolibre.oauth_client import (
    MercadoLibreOAuthClient,
    TokenGrant,
)

__all__ = [
    "MercadoLibreAPI",
    "MercadoLibreIdentityClient",
    "MercadoLibreOAuthClient",
    "TokenGrant",
]
