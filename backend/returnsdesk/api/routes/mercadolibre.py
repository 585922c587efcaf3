"""
Mercado Libre integration API routes.

Operator-facing endpoints behind the settings page:
- Save client credentials and inspect the sanitized current row
- Complete the authorization-code flow ("test connection")
- Toggle the integration on/off and force a token refresh
- Authenticated reads (seller identity, order search)

SECURITY:
- Secret values (client secret, tokens) are never returned
- Error bodies go through AppError.to_dict(), which carries no secrets
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from returnsdesk.api.dependencies.services import (
    get_credential_store,
    get_lifecycle_manager,
    get_mercadolibre_api,
)
from returnsdesk.api.schemas.mercadolibre import (
    ActiveToggleRequest,
    ActiveToggleResponse,
    ConnectionTestRequest,
    ConnectionTestResponse,
    CredentialsCreateRequest,
    CredentialsCreatedResponse,
    CredentialSummary,
    MessageResponse,
    OrdersResponse,
    TokenStatusResponse,
)
from returnsdesk.credentials.encryption import is_ephemeral_key
from returnsdesk.credentials.errors import MarketplaceAPIError
from returnsdesk.credentials.lifecycle import TokenLifecycleManager
from returnsdesk.credentials.store import CredentialStore
from returnsdesk.integrations.mercadolibre.api import (
    DEFAULT_ORDERS_LIMIT,
    DEFAULT_ORDERS_SORT,
    MercadoLibreAPI,
)
from returnsdesk.platform.errors import AppError, ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/mercadolibre", tags=["mercadolibre"])


# =============================================================================
# Credentials
# =============================================================================

@router.post(
    "/credentials",
    response_model=CredentialsCreatedResponse,
)
async def save_credentials(
    body: CredentialsCreateRequest,
    store: CredentialStore = Depends(get_credential_store),
):
    """
    Save a new credential set.

    Any previously active set is deactivated; the new one stays inactive
    until the authorization completes.
    """
    credential_id = store.create(
        body.client_id,
        body.client_secret,
        body.redirect_uri,
        provider=body.provider,
    )
    return CredentialsCreatedResponse(
        message="Credentials saved successfully",
        id=credential_id,
    )


@router.get("/credentials", response_model=Optional[CredentialSummary])
async def get_credentials(store: CredentialStore = Depends(get_credential_store)):
    """Sanitized view of the newest credential set, or null."""
    summary = store.describe_most_recent()
    if summary is None:
        return None
    return CredentialSummary(**summary)


@router.patch("/credentials/active", response_model=ActiveToggleResponse)
async def set_credentials_active(
    body: ActiveToggleRequest,
    store: CredentialStore = Depends(get_credential_store),
):
    if body.is_active is None:
        raise ValidationError("isActive is required", details={"fields": ["isActive"]})

    credential = store.set_active(body.is_active)
    logger.info(
        "Integration toggled by operator",
        extra={"credential_id": credential.id, "is_active": credential.is_active},
    )
    return ActiveToggleResponse(
        message="Integration activated" if credential.is_active else "Integration deactivated",
        is_active=credential.is_active,
    )


# =============================================================================
# OAuth lifecycle
# =============================================================================

@router.post(
    "/test-connection",
    response_model=ConnectionTestResponse,
    response_model_exclude_none=True,
)
async def test_connection(
    body: ConnectionTestRequest,
    manager: TokenLifecycleManager = Depends(get_lifecycle_manager),
):
    """
    Exchange the authorization code, verify the connection and activate.

    Failures answer {success: false, message, error} so the settings page can
    show the reason; the credential set is activated only on success.
    """
    try:
        result = await manager.complete_authorization(body.authorization_code)
    except AppError as e:
        logger.warning(
            "Connection test failed",
            extra={"error_code": e.code, "status_code": e.status_code},
        )
        return JSONResponse(
            status_code=e.status_code,
            content={"success": False, "message": e.message, "error": e.code},
        )

    return ConnectionTestResponse(
        success=True,
        message="Connection established successfully",
        user_id=result.provider_user_id,
    )


@router.post("/refresh", response_model=MessageResponse)
async def refresh_token(manager: TokenLifecycleManager = Depends(get_lifecycle_manager)):
    """Force a refresh of the active credential's access token."""
    await manager.refresh_now()
    return MessageResponse(message="Token refreshed successfully")


@router.get("/status", response_model=TokenStatusResponse)
async def token_status(
    store: CredentialStore = Depends(get_credential_store),
    manager: TokenLifecycleManager = Depends(get_lifecycle_manager),
):
    """
    Token presence and lifecycle state for the newest credential set.

    SECURITY: booleans and timestamps only. ephemeral_encryption_key warns
    that stored secrets will not survive a restart.
    """
    presence = store.token_presence() or {}
    return TokenStatusResponse(
        **presence,
        state=manager.state().value,
        ephemeral_encryption_key=is_ephemeral_key(),
    )


# =============================================================================
# Authenticated reads
# =============================================================================

@router.get("/me")
async def get_me(api: MercadoLibreAPI = Depends(get_mercadolibre_api)):
    """Identity of the connected seller, as returned by Mercado Libre."""
    return await api.get_me()


@router.get("/orders", response_model=OrdersResponse)
async def list_orders(
    order_status: Optional[str] = Query(default=None, alias="status"),
    sort: str = Query(default=DEFAULT_ORDERS_SORT),
    limit: int = Query(default=DEFAULT_ORDERS_LIMIT, ge=1),
    offset: int = Query(default=0, ge=0),
    api: MercadoLibreAPI = Depends(get_mercadolibre_api),
):
    """Orders of the connected seller, newest first by default."""
    me = await api.get_me()
    seller_id = me.get("id")
    if seller_id is None:
        raise MarketplaceAPIError("Mercado Libre identity has no seller id", http_status=502)

    orders = await api.search_orders(
        str(seller_id),
        status=order_status,
        sort=sort,
        limit=limit,
        offset=offset,
    )
    return OrdersResponse(seller_id=seller_id, orders=orders)
