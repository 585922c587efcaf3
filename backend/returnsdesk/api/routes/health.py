from fastapi import APIRouter

from returnsdesk.api.schemas.mercadolibre import HealthResponse

router = APIRouter()


@router.get("/api/health", response_model=HealthResponse)
def health():
    return HealthResponse(status="ok", message="Returns backend is running")
