"""
Runtime settings for the returns backend.

All values come from environment variables so the same image runs locally,
in CI and on Render. Mercado Libre client credentials may also be supplied
here as a bootstrap fallback for when no credential row exists yet.

Usage:
    from returnsdesk.config import Settings

    settings = Settings.from_env()
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

DEFAULT_DATABASE_URL = "sqlite:///./returnsdesk.db"
DEFAULT_MERCADOLIBRE_API_BASE_URL = "https://api.mercadolibre.com"

# Outbound OAuth/API calls are bounded; a timeout is a transient failure
DEFAULT_HTTP_TIMEOUT_SECONDS = 20.0

# Background renewal cadence
DEFAULT_TOKEN_RENEWAL_INTERVAL_SECONDS = 60


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_optional(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def normalize_database_url(database_url: str) -> str:
    """Render/Heroku style URLs use the postgres:// scheme SQLAlchemy rejects."""
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql://", 1)
    return database_url


@dataclass
class Settings:
    """Process configuration resolved from the environment."""

    database_url: str = DEFAULT_DATABASE_URL
    encryption_key: Optional[str] = None

    mercadolibre_api_base_url: str = DEFAULT_MERCADOLIBRE_API_BASE_URL
    http_timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS

    token_renewal_enabled: bool = True
    token_renewal_interval_seconds: int = DEFAULT_TOKEN_RENEWAL_INTERVAL_SECONDS

    # Bootstrap fallback when the database holds no credential row
    ml_client_id: Optional[str] = None
    ml_client_secret: Optional[str] = None
    ml_redirect_uri: Optional[str] = None
    ml_authorization_code: Optional[str] = None
    ml_refresh_token: Optional[str] = None

    log_level: str = "INFO"
    cors_allowed_origins: List[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("CORS_ALLOWED_ORIGINS", "*")
        return cls(
            database_url=normalize_database_url(
                os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
            ),
            encryption_key=_env_optional("ENCRYPTION_KEY"),
            mercadolibre_api_base_url=os.getenv(
                "MERCADOLIBRE_API_BASE_URL", DEFAULT_MERCADOLIBRE_API_BASE_URL
            ).rstrip("/"),
            http_timeout_seconds=float(
                os.getenv("HTTP_TIMEOUT_SECONDS", str(DEFAULT_HTTP_TIMEOUT_SECONDS))
            ),
            token_renewal_enabled=_env_bool("TOKEN_RENEWAL_ENABLED", True),
            token_renewal_interval_seconds=int(
                os.getenv(
                    "TOKEN_RENEWAL_INTERVAL_SECONDS",
                    str(DEFAULT_TOKEN_RENEWAL_INTERVAL_SECONDS),
                )
            ),
            ml_client_id=_env_optional("ML_CLIENT_ID"),
            ml_client_secret=_env_optional("ML_CLIENT_SECRET"),
            ml_redirect_uri=_env_optional("ML_REDIRECT_URI"),
            ml_authorization_code=_env_optional("ML_AUTHORIZATION_CODE"),
            ml_refresh_token=_env_optional("ML_REFRESH_TOKEN"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            cors_allowed_origins=[o.strip() for o in origins.split(",") if o.strip()],
        )

    @property
    def has_bootstrap_client(self) -> bool:
        """True when client id, secret and redirect URI all come from the environment."""
        return bool(self.ml_client_id and self.ml_client_secret and self.ml_redirect_uri)
