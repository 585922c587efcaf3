"""
Process-wide logging setup.

Every handler on the root logger gets the credential redaction filter so
secrets never reach a log sink, whatever module emitted the record.
"""

import logging

from returnsdesk.credentials.redaction import CredentialLoggingFilter

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once and attach the redaction filter."""
    logging.basicConfig(level=level, format=LOG_FORMAT)

    root = logging.getLogger()
    root.setLevel(level)

    redaction = CredentialLoggingFilter()
    for handler in root.handlers:
        if not any(isinstance(f, CredentialLoggingFilter) for f in handler.filters):
            handler.addFilter(redaction)

    # httpx logs full request URLs at INFO, and token grants carry secrets in the query string
    logging.getLogger("httpx").setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging configured with credential redaction",
        extra={"level": level},
    )
