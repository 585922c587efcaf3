"""
Request/response schemas for the Mercado Libre integration API.

Request bodies use the camelCase keys the settings page sends. Every request
field is optional at the schema level so that missing values surface as the
domain ConfigError (400 with the list of missing fields) rather than a
generic validation error.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Requests
# =============================================================================

class CredentialsCreateRequest(BaseModel):
    """Client credentials entered on the settings page."""

    model_config = ConfigDict(populate_by_name=True)

    client_id: Optional[str] = Field(default=None, alias="clientId")
    client_secret: Optional[str] = Field(default=None, alias="clientSecret")
    redirect_uri: Optional[str] = Field(default=None, alias="redirectUri")
    provider: str = "mercadolibre"


class ConnectionTestRequest(BaseModel):
    """One-time authorization code from the consent redirect."""

    model_config = ConfigDict(populate_by_name=True)

    authorization_code: Optional[str] = Field(default=None, alias="authorizationCode")


class ActiveToggleRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_active: Optional[bool] = Field(default=None, alias="isActive")


# =============================================================================
# Responses
# =============================================================================

class MessageResponse(BaseModel):
    message: str


class CredentialsCreatedResponse(BaseModel):
    message: str
    id: str


class CredentialSummary(BaseModel):
    """Sanitized credential row. SECURITY: never carries secret values."""

    id: str
    client_id: str
    redirect_uri: str
    is_active: bool
    oauth_completed: bool
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ConnectionTestResponse(BaseModel):
    success: bool
    message: str
    user_id: Optional[str] = None


class ActiveToggleResponse(BaseModel):
    message: str
    is_active: bool


class TokenStatusResponse(BaseModel):
    """Token presence for the newest credential row; booleans only."""

    has_access_token: bool = False
    has_refresh_token: bool = False
    is_active: bool = False
    oauth_completed: bool = False
    token_expires_at: Optional[str] = None
    state: str = "unconfigured"
    ephemeral_encryption_key: bool = False


class OrdersResponse(BaseModel):
    seller_id: Any
    orders: dict[str, Any]


class HealthResponse(BaseModel):
    status: str
    message: str
