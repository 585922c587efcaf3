"""
Startup bootstrap of Mercado Libre credentials from environment variables.

Deployments that predate the settings page configure the integration with
ML_CLIENT_ID / ML_CLIENT_SECRET / ML_REDIRECT_URI plus either a refresh token
or a one-time authorization code. When the database holds no credential rows
yet, those values seed the first credential set.

Failures are logged and never raised: the service must start so an operator
can fix the configuration from the settings page.
"""

import logging
from typing import Optional

from returnsdesk.config.settings import Settings
from returnsdesk.platform.errors import AppError

logger = logging.getLogger(__name__)


async def bootstrap_from_settings(settings: Settings, store, manager) -> Optional[str]:
    """
    Seed and, when possible, activate a credential set from the environment.

    Returns:
        The new credential id, or None when nothing was seeded.
    """
    if not settings.has_bootstrap_client:
        return None

    try:
        if store.has_any():
            logger.debug("Credentials already stored; skipping environment bootstrap")
            return None

        credential_id = store.create(
            settings.ml_client_id,
            settings.ml_client_secret,
            settings.ml_redirect_uri,
        )
    except AppError as e:
        logger.error(
            "Environment credential bootstrap failed",
            extra={"error_code": e.code},
        )
        return None

    logger.info(
        "Credential set seeded from environment",
        extra={"credential_id": credential_id},
    )

    try:
        if settings.ml_refresh_token:
            await manager.bootstrap_with_refresh_token(credential_id, settings.ml_refresh_token)
        elif settings.ml_authorization_code:
            await manager.complete_authorization(settings.ml_authorization_code)
        else:
            logger.info(
                "No refresh token or authorization code in environment; "
                "complete the authorization from the settings page",
                extra={"credential_id": credential_id},
            )
            return credential_id
    except AppError as e:
        logger.warning(
            "Could not activate credentials from environment",
            extra={"credential_id": credential_id, "error_code": e.code},
        )
        return credential_id

    logger.info(
        "Credential set activated from environment",
        extra={"credential_id": credential_id},
    )
    return credential_id
