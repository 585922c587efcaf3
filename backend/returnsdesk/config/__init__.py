"""Configuration module for backend services."""

from returnsdesk.config.settings import (
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    DEFAULT_MERCADOLIBRE_API_BASE_URL,
    DEFAULT_TOKEN_RENEWAL_INTERVAL_SECONDS,
    Settings,
    normalize_database_url,
)

__all__ = [
    "DEFAULT_HTTP_TIMEOUT_SECONDS",
    "DEFAULT_MERCADOLIBRE_API_BASE_URL",
    "DEFAULT_TOKEN_RENEWAL_INTERVAL_SECONDS",
    "Settings",
    "normalize_database_url",
]
