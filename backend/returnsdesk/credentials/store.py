"""
Credential storage service for Mercado Libre OAuth credentials.

SECURITY REQUIREMENTS:
- Secrets are encrypted at rest before storage
- Decrypted values exist only in the returned CredentialSet, in memory
- Rows are never deleted; deactivation keeps tokens for forensic inspection

INVARIANT:
- At most one credential set is active. Every write that activates a row
  first deactivates all others inside the same transaction.

Each operation runs in its own short transaction, so the store can be shared
by request handlers and the background renewal loop.

Usage:
    store = CredentialStore(session_factory)

    credential_id = store.create("client-id", "client-secret", "https://app/callback")
    store.update_tokens(credential_id, access_token, refresh_token, expires_in=21600)
    store.activate_oauth_completion(credential_id)

    active = store.get_active()
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from returnsdesk.credentials.encryption import decrypt_secret, encrypt_secret
from returnsdesk.credentials.errors import ConfigError, NotConfiguredError, StorageError
from returnsdesk.credentials.redaction import AuditEventType, CredentialAuditLogger
from returnsdesk.models.marketplace_credential import (
    CredentialProvider,
    DeactivationReason,
    MarketplaceCredential,
)

logger = logging.getLogger(__name__)

# Stored expiry is pulled forward by this margin so renewal happens before
# the provider starts rejecting the token
TOKEN_EXPIRY_MARGIN_SECONDS = 300

# Mercado Libre access tokens live six hours
DEFAULT_EXPIRES_IN_SECONDS = 21600


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on DateTime(timezone=True) columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def compute_token_expiry(issued_at: datetime, expires_in: int) -> datetime:
    """Margin-adjusted expiry: issuance + expires_in - 5 minutes."""
    return issued_at + timedelta(seconds=expires_in - TOKEN_EXPIRY_MARGIN_SECONDS)


@dataclass
class CredentialSet:
    """
    Decrypted view of one credential row.

    SECURITY: secret fields are excluded from repr; never log this object's fields.
    """
    id: str
    client_id: str
    redirect_uri: str
    client_secret: Optional[str] = field(default=None, repr=False)
    access_token: Optional[str] = field(default=None, repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    token_expires_at: Optional[datetime] = None
    provider_user_id: Optional[str] = None
    oauth_completed: bool = False
    is_active: bool = False
    deactivation_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        """True once the margin-adjusted expiry has been reached (or was never recorded)."""
        if self.token_expires_at is None:
            return True
        return now >= self.token_expires_at


class CredentialStore:
    """
    CRUD over credential sets with the single-active invariant enforced here.

    Absence of a row is reported as None. Database failures surface as
    StorageError.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self.audit = CredentialAuditLogger()

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(
                "Credential store operation failed",
                extra={"operation": operation, "error_type": type(e).__name__},
            )
            raise StorageError(operation, e) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # =========================================================================
    # Reads
    # =========================================================================

    def get_active(self) -> Optional[CredentialSet]:
        """Return the active credential set, decrypted, or None."""
        with self._transaction("get_active") as session:
            row = session.execute(
                select(MarketplaceCredential)
                .where(MarketplaceCredential.is_active.is_(True))
                .order_by(MarketplaceCredential.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            return self._to_credential_set(row) if row else None

    def get_most_recent(self) -> Optional[CredentialSet]:
        """Return the newest credential set regardless of its active flag."""
        with self._transaction("get_most_recent") as session:
            row = self._most_recent_row(session)
            return self._to_credential_set(row) if row else None

    def get(self, credential_id: str) -> Optional[CredentialSet]:
        with self._transaction("get") as session:
            row = session.get(MarketplaceCredential, credential_id)
            return self._to_credential_set(row) if row else None

    def describe_most_recent(self) -> Optional[dict]:
        """
        Sanitized summary of the newest row for the settings page.

        Nothing is decrypted, so this works even if the encryption key changed.
        """
        with self._transaction("describe_most_recent") as session:
            row = self._most_recent_row(session)
            return row.to_safe_dict() if row else None

    def token_presence(self) -> Optional[dict]:
        """Which secrets the newest row holds, without decrypting any of them."""
        with self._transaction("token_presence") as session:
            row = self._most_recent_row(session)
            if row is None:
                return None
            expires_at = _as_utc(row.token_expires_at)
            return {
                "has_access_token": row.access_token_encrypted is not None,
                "has_refresh_token": row.refresh_token_encrypted is not None,
                "is_active": row.is_active,
                "oauth_completed": row.oauth_completed,
                "token_expires_at": expires_at.isoformat() if expires_at else None,
            }

    def has_any(self) -> bool:
        with self._transaction("has_any") as session:
            return session.execute(
                select(MarketplaceCredential.id).limit(1)
            ).first() is not None

    # =========================================================================
    # Writes
    # =========================================================================

    def create(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        provider: str = CredentialProvider.MERCADOLIBRE.value,
    ) -> str:
        """
        Save a new credential set.

        All active rows are deactivated first; the new row starts inactive and
        becomes active only once OAuth completes and the connection is verified.

        Raises:
            ConfigError: A required value is empty or the provider is unsupported
        """
        try:
            provider_tag = CredentialProvider(provider)
        except ValueError:
            raise ConfigError(f"Unsupported marketplace provider: {provider}") from None

        missing = [
            name for name, value in (
                ("client_id", client_id),
                ("client_secret", client_secret),
                ("redirect_uri", redirect_uri),
            )
            if not value
        ]
        if missing:
            raise ConfigError(
                "Client ID, Client Secret and Redirect URI are required",
                missing=missing,
            )

        client_secret_encrypted = encrypt_secret(client_secret)
        now = self._clock()

        with self._transaction("create") as session:
            superseded = self._deactivate_all_active(session, now, exclude_id=None)

            row = MarketplaceCredential(
                provider=provider_tag,
                client_id=client_id,
                client_secret_encrypted=client_secret_encrypted,
                redirect_uri=redirect_uri,
                is_active=False,
                oauth_completed=False,
            )
            session.add(row)
            session.flush()
            credential_id = row.id

        self.audit.log(
            AuditEventType.CREDENTIAL_CREATED,
            credential_id=credential_id,
            metadata={"client_id": client_id, "superseded_count": superseded},
        )
        logger.info(
            "Credential set created",
            extra={"credential_id": credential_id, "client_id": client_id},
        )
        return credential_id

    def update_tokens(
        self,
        credential_id: str,
        access_token: str,
        refresh_token: Optional[str],
        expires_in: int = DEFAULT_EXPIRES_IN_SECONDS,
        issued_at: Optional[datetime] = None,
        provider_user_id: Optional[str] = None,
    ) -> datetime:
        """
        Encrypt and write tokens, recompute expiry, mark OAuth completed.

        A None refresh_token keeps the stored one (providers do not always
        rotate it). Returns the new margin-adjusted expiry.
        """
        if not access_token:
            raise ConfigError("Access token is required", missing=["access_token"])

        issued_at = issued_at or self._clock()
        expires_at = compute_token_expiry(issued_at, expires_in)
        access_encrypted = encrypt_secret(access_token)
        refresh_encrypted = encrypt_secret(refresh_token) if refresh_token else None

        with self._transaction("update_tokens") as session:
            row = session.get(MarketplaceCredential, credential_id)
            if row is None:
                raise NotConfiguredError(f"Credential set not found: {credential_id}")

            row.access_token_encrypted = access_encrypted
            if refresh_encrypted:
                row.refresh_token_encrypted = refresh_encrypted
            if provider_user_id:
                row.provider_user_id = str(provider_user_id)
            row.token_expires_at = expires_at
            row.oauth_completed = True
            row.updated_at = self._clock()

        self.audit.log(
            AuditEventType.CREDENTIAL_TOKENS_UPDATED,
            credential_id=credential_id,
            metadata={
                "token_expires_at": expires_at.isoformat(),
                "refresh_token_rotated": refresh_encrypted is not None,
            },
        )
        return expires_at

    def activate_oauth_completion(self, credential_id: str) -> None:
        """Make this row the active one after its connection was verified."""
        now = self._clock()
        with self._transaction("activate_oauth_completion") as session:
            row = session.get(MarketplaceCredential, credential_id)
            if row is None:
                raise NotConfiguredError(f"Credential set not found: {credential_id}")
            self._activate_row(session, row, now)

        self.audit.log(AuditEventType.CREDENTIAL_ACTIVATED, credential_id=credential_id)
        logger.info("Credential set activated", extra={"credential_id": credential_id})

    def set_active(self, is_active: bool) -> CredentialSet:
        """
        Operator toggle.

        Deactivating targets the active row. Activating targets the newest row,
        which must have completed OAuth.
        """
        now = self._clock()
        with self._transaction("set_active") as session:
            if is_active:
                row = self._most_recent_row(session)
                if row is None:
                    raise NotConfiguredError("No Mercado Libre credentials configured")
                if not row.oauth_completed:
                    raise ConfigError(
                        "Complete the Mercado Libre authorization before activating the integration"
                    )
                self._activate_row(session, row, now)
            else:
                row = session.execute(
                    select(MarketplaceCredential)
                    .where(MarketplaceCredential.is_active.is_(True))
                    .order_by(MarketplaceCredential.created_at.desc())
                    .limit(1)
                ).scalar_one_or_none()
                if row is None:
                    raise NotConfiguredError()
                self._deactivate_all_active(
                    session, now, exclude_id=None, reason=DeactivationReason.OPERATOR
                )
                session.refresh(row)
            credential = self._to_credential_set(row, decrypt=False)

        self.audit.log(
            AuditEventType.CREDENTIAL_ACTIVATED if is_active else AuditEventType.CREDENTIAL_DEACTIVATED,
            credential_id=credential.id,
            metadata=None if is_active else {"reason": DeactivationReason.OPERATOR.value},
        )
        return credential

    def deactivate(
        self,
        credential_id: str,
        reason: DeactivationReason = DeactivationReason.OPERATOR,
    ) -> bool:
        """
        Mark a credential set unusable without deleting it or its tokens.

        Best-effort: failures are logged, never raised, because callers are
        already handling a failure. Deactivating an inactive row is a no-op.
        Returns True if this call flipped the row.
        """
        now = self._clock()
        try:
            with self._transaction("deactivate") as session:
                result = session.execute(
                    update(MarketplaceCredential)
                    .where(
                        MarketplaceCredential.id == credential_id,
                        MarketplaceCredential.is_active.is_(True),
                    )
                    .values(
                        is_active=False,
                        deactivated_at=now,
                        deactivation_reason=reason,
                        updated_at=now,
                    )
                )
                changed = result.rowcount > 0
        except Exception:
            logger.exception(
                "Failed to deactivate credential set",
                extra={"credential_id": credential_id, "reason": reason.value},
            )
            return False

        if changed:
            self.audit.log(
                AuditEventType.CREDENTIAL_DEACTIVATED,
                credential_id=credential_id,
                metadata={"reason": reason.value},
            )
            logger.warning(
                "Credential set deactivated",
                extra={"credential_id": credential_id, "reason": reason.value},
            )
        return changed

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _most_recent_row(session: Session) -> Optional[MarketplaceCredential]:
        return session.execute(
            select(MarketplaceCredential)
            .order_by(MarketplaceCredential.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()

    @staticmethod
    def _deactivate_all_active(
        session: Session,
        now: datetime,
        exclude_id: Optional[str],
        reason: DeactivationReason = DeactivationReason.SUPERSEDED,
    ) -> int:
        stmt = update(MarketplaceCredential).where(
            MarketplaceCredential.is_active.is_(True)
        )
        if exclude_id is not None:
            stmt = stmt.where(MarketplaceCredential.id != exclude_id)
        result = session.execute(
            stmt.values(
                is_active=False,
                deactivated_at=now,
                deactivation_reason=reason,
                updated_at=now,
            )
        )
        return result.rowcount

    def _activate_row(
        self,
        session: Session,
        row: MarketplaceCredential,
        now: datetime,
    ) -> None:
        if row.is_active:
            return
        self._deactivate_all_active(session, now, exclude_id=row.id)
        row.is_active = True
        row.deactivation_reason = None
        row.updated_at = now
        session.flush()

    @staticmethod
    def _to_credential_set(row: MarketplaceCredential, decrypt: bool = True) -> CredentialSet:
        return CredentialSet(
            id=row.id,
            client_id=row.client_id,
            redirect_uri=row.redirect_uri,
            client_secret=decrypt_secret(row.client_secret_encrypted) if decrypt else None,
            access_token=decrypt_secret(row.access_token_encrypted) if decrypt else None,
            refresh_token=decrypt_secret(row.refresh_token_encrypted) if decrypt else None,
            token_expires_at=_as_utc(row.token_expires_at),
            provider_user_id=row.provider_user_id,
            oauth_completed=bool(row.oauth_completed),
            is_active=bool(row.is_active),
            deactivation_reason=(
                row.deactivation_reason.value if row.deactivation_reason else None
            ),
            created_at=_as_utc(row.created_at),
            updated_at=_as_utc(row.updated_at),
        )
