"""Service accessors for route handlers; instances are built once in the app lifespan."""

from fastapi import HTTPException, Request, status

from returnsdesk.credentials.lifecycle import TokenLifecycleManager
from returnsdesk.credentials.store import CredentialStore
from returnsdesk.integrations.mercadolibre.api import MercadoLibreAPI


def _from_state(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return service


def get_credential_store(request: Request) -> CredentialStore:
    return _from_state(request, "credential_store")


def get_lifecycle_manager(request: Request) -> TokenLifecycleManager:
    return _from_state(request, "lifecycle_manager")


def get_mercadolibre_api(request: Request) -> MercadoLibreAPI:
    return _from_state(request, "mercadolibre_api")
