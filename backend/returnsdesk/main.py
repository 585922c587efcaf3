"""
FastAPI application for the returns backend.

The lifespan wires the Mercado Libre credential services once per process:
engine and credential store, a shared httpx client, the OAuth client, the
lifecycle manager, the authenticated request executor and the background
renewal loop. Route handlers read them from app.state.

Usage:
    uvicorn returnsdesk.main:app
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from returnsdesk import __version__
from returnsdesk.api.routes import health, mercadolibre
from returnsdesk.config.settings import Settings
from returnsdesk.credentials.bootstrap import bootstrap_from_settings
from returnsdesk.credentials.encryption import configure_encryption
from returnsdesk.credentials.executor import AuthenticatedRequestExecutor
from returnsdesk.credentials.lifecycle import TokenLifecycleManager
from returnsdesk.credentials.store import CredentialStore
from returnsdesk.database.session import build_session_factory, create_db_engine, init_db
from returnsdesk.integrations.mercadolibre.api import (
    MercadoLibreAPI,
    MercadoLibreIdentityClient,
)
from returnsdesk.integrations.mercadolibre.oauth_client import MercadoLibreOAuthClient
from returnsdesk.platform.errors import register_error_handlers
from returnsdesk.platform.logging_config import configure_logging
from returnsdesk.workers.token_renewal import TokenRenewalLoop

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    http_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Defaults to Settings.from_env()
        http_transport: Outbound transport override (tests stub Mercado Libre with it)
    """
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        configure_encryption(settings.encryption_key)

        engine = create_db_engine(settings.database_url)
        init_db(engine)
        store = CredentialStore(build_session_factory(engine))

        http_client = httpx.AsyncClient(
            timeout=settings.http_timeout_seconds,
            transport=http_transport,
        )
        base_url = settings.mercadolibre_api_base_url
        manager = TokenLifecycleManager(
            store,
            MercadoLibreOAuthClient(http_client, base_url),
            MercadoLibreIdentityClient(http_client, base_url),
        )
        executor = AuthenticatedRequestExecutor(manager, store, http_client)

        app.state.settings = settings
        app.state.credential_store = store
        app.state.lifecycle_manager = manager
        app.state.mercadolibre_api = MercadoLibreAPI(executor, base_url)

        await bootstrap_from_settings(settings, store, manager)

        renewal_loop = None
        if settings.token_renewal_enabled:
            renewal_loop = TokenRenewalLoop(
                manager,
                store,
                interval_seconds=settings.token_renewal_interval_seconds,
            )
            renewal_loop.start()

        logger.info(
            "Returns backend started",
            extra={
                "version": __version__,
                "token_renewal_enabled": settings.token_renewal_enabled,
            },
        )
        try:
            yield
        finally:
            if renewal_loop is not None:
                await renewal_loop.stop()
            await http_client.aclose()
            engine.dispose()
            logger.info("Returns backend stopped")

    app = FastAPI(
        title="Returns Desk API",
        description="Mercado Libre integration backend for the returns dashboard",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)

    app.include_router(health.router)
    app.include_router(mercadolibre.router)
    return app


app = create_app()
