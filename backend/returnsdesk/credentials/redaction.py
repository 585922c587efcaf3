"""
Credential redaction and audit logging utilities.

SECURITY REQUIREMENTS:
- Secrets NEVER appear in logs (client_secret, access_token, refresh_token,
  authorization codes, bearer headers)
- ALLOWED in logs: credential_id, client_id, provider_user_id, expiry times
- All credential state transitions are logged for audit

Audit Events:
- credential.created
- credential.tokens_updated
- credential.activated
- credential.deactivated
- credential.refresh_failed
- credential.verification_failed

Usage:
    from returnsdesk.credentials.redaction import CredentialAuditLogger, AuditEventType

    audit = CredentialAuditLogger()
    audit.log(AuditEventType.CREDENTIAL_ACTIVATED, credential_id=cred.id)
"""

import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

REDACTED_VALUE = "[REDACTED]"

AUDIT_LOGGER_NAME = "credentials.audit"

# Provider payloads are shallow; deeper nesting is returned untouched
MAX_REDACTION_DEPTH = 10

# Exact key names that carry secret material
SECRET_KEYS = frozenset({
    "access_token",
    "refresh_token",
    "client_secret",
    "clientsecret",
    "authorization",
    "authorization_code",
    "authorizationcode",
    "code",
    "password",
    "encryption_key",
    "access_token_encrypted",
    "refresh_token_encrypted",
    "client_secret_encrypted",
})

# Keys that look secret by substring but are metadata
SAFE_KEYS = frozenset({
    "token_expires_at",
    "has_access_token",
    "has_refresh_token",
    "credential_id",
    "error_code",
    "status_code",
    "provider_status",
})

SECRET_VALUE_PATTERNS = [
    re.compile(r"(Bearer\s+)[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE),
    re.compile(r"APP_USR-[A-Za-z0-9\-]+"),  # Mercado Libre access tokens
    re.compile(r"TG-[A-Za-z0-9\-]+"),  # Mercado Libre refresh tokens / codes
    re.compile(r"((?:client_secret|refresh_token|access_token|code)=)[^&\s]+", re.IGNORECASE),
]


def is_credential_secret_key(key: str) -> bool:
    """Check if a key name indicates a credential secret."""
    key_lower = key.lower()
    if key_lower in SAFE_KEYS:
        return False
    if key_lower in SECRET_KEYS:
        return True
    return key_lower.endswith(("_secret", "_token", "_encrypted"))


def redact_credential_value(value: Any) -> Any:
    """Mask bearer tokens, Mercado Libre token shapes and secret query parameters."""
    if not isinstance(value, str):
        return value

    for pattern in SECRET_VALUE_PATTERNS:
        replacement = (lambda m: m.group(1) + REDACTED_VALUE) if pattern.groups else REDACTED_VALUE
        value = pattern.sub(replacement, value)
    return value


def redact_credential_data(data: Any, _depth: int = 0) -> Any:
    """
    Copy of `data` with secret keys masked and string leaves scrubbed.

    SECURITY: always use this before logging provider payloads.
    """
    if _depth > MAX_REDACTION_DEPTH:
        return data

    if isinstance(data, dict):
        return {
            key: (
                REDACTED_VALUE
                if isinstance(key, str) and is_credential_secret_key(key)
                else redact_credential_data(value, _depth + 1)
            )
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return type(data)(redact_credential_data(item, _depth + 1) for item in data)
    return redact_credential_value(data)


class AuditEventType(str, Enum):
    """Credential lifecycle events written to the audit logger."""
    CREDENTIAL_CREATED = "credential.created"
    CREDENTIAL_TOKENS_UPDATED = "credential.tokens_updated"
    CREDENTIAL_ACTIVATED = "credential.activated"
    CREDENTIAL_DEACTIVATED = "credential.deactivated"
    CREDENTIAL_REFRESH_FAILED = "credential.refresh_failed"
    CREDENTIAL_VERIFICATION_FAILED = "credential.verification_failed"


class CredentialAuditLogger:
    """
    Emits one INFO record per credential state change on `credentials.audit`.

    Event fields travel as record attributes so structured handlers can
    index them. Metadata is redacted first.
    """

    def __init__(self, provider: str = "mercadolibre"):
        self.provider = provider
        self._logger = logging.getLogger(AUDIT_LOGGER_NAME)

    def log(
        self,
        event_type: AuditEventType,
        credential_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        fields = redact_credential_data(metadata or {})
        fields.update(
            event_type=event_type.value,
            provider=self.provider,
            credential_id=credential_id,
            occurred_at=datetime.now(timezone.utc).isoformat(),
        )
        self._logger.info("Credential audit: %s", event_type.value, extra=fields)


class CredentialLoggingFilter(logging.Filter):
    """
    Scrubs the message, its args and every `extra` attribute of a record.

    Attach to handlers, not loggers, so records from every module pass it:
        handler.addFilter(CredentialLoggingFilter())
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = redact_credential_value(record.msg)
        if record.args:
            record.args = redact_credential_data(record.args)

        extras = set(record.__dict__) - _LOG_RECORD_ATTRS
        for key in extras:
            if is_credential_secret_key(key):
                setattr(record, key, REDACTED_VALUE)
            else:
                setattr(record, key, redact_credential_data(getattr(record, key)))
        return True


# Standard LogRecord attributes; everything else arrived through `extra`
_LOG_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}
