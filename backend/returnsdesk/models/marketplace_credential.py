"""
MarketplaceCredential model - Secure storage for Mercado Libre OAuth credentials.

SECURITY REQUIREMENTS:
- client_secret, access_token and refresh_token are encrypted at rest
- No plaintext secrets outside process memory
- Rows are never deleted by the lifecycle; deactivation keeps tokens for forensics

INVARIANT:
- At most one row has is_active = true. Writers deactivate before they
  activate, and a unique partial index rejects a second active row.
"""

import enum
import uuid

from sqlalchemy import Boolean, Column, DateTime, Enum, Index, String, Text, text

from returnsdesk.db_base import Base
from returnsdesk.models.base import TimestampMixin


class CredentialProvider(str, enum.Enum):
    """Supported marketplace providers."""
    MERCADOLIBRE = "mercadolibre"


class DeactivationReason(str, enum.Enum):
    """Why a credential set stopped being offered to callers."""
    REFRESH_FAILED = "refresh_failed"  # Provider rejected the refresh grant
    CREDENTIAL_REJECTED = "credential_rejected"  # 401 persisted after refresh
    OPERATOR = "operator"  # Toggled off from the settings page
    SUPERSEDED = "superseded"  # A newer credential set was saved


class MarketplaceCredential(Base, TimestampMixin):
    """
    One configured marketplace integration.

    SECURITY:
    - *_encrypted columns hold "nonce:authTag:ciphertext" hex strings
    - Secrets are NEVER exposed in API responses or logs
    """

    __tablename__ = "mercado_livre_credentials"

    id = Column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Primary key (UUID)"
    )
    provider = Column(
        Enum(CredentialProvider, native_enum=False, length=32),
        nullable=False,
        default=CredentialProvider.MERCADOLIBRE,
        comment="Marketplace provider"
    )

    # Operator-provided application credentials
    client_id = Column(
        String(255),
        nullable=False,
        comment="OAuth application client id (plaintext)"
    )
    client_secret_encrypted = Column(
        Text,
        nullable=False,
        comment="Encrypted client secret - NEVER log plaintext"
    )
    redirect_uri = Column(
        Text,
        nullable=False,
        comment="Redirect URI registered with the application"
    )

    # Encrypted tokens - NEVER log these values
    access_token_encrypted = Column(
        Text,
        nullable=True,
        comment="Encrypted access token - NEVER log plaintext"
    )
    refresh_token_encrypted = Column(
        Text,
        nullable=True,
        comment="Encrypted refresh token - NEVER log plaintext"
    )
    token_expires_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Margin-adjusted access token expiry"
    )
    provider_user_id = Column(
        String(64),
        nullable=True,
        comment="Marketplace user id returned by the authorization grant"
    )

    # Lifecycle
    oauth_completed = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="True once the authorization-code exchange stored tokens"
    )
    is_active = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Only the active row is used for outbound calls"
    )
    deactivated_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the row was last deactivated"
    )
    deactivation_reason = Column(
        Enum(DeactivationReason, native_enum=False, length=32),
        nullable=True,
        comment="Why the row was last deactivated"
    )

    __table_args__ = (
        Index("ix_mercado_livre_credentials_created_at", "created_at"),
        Index(
            "uq_mercado_livre_credentials_single_active",
            "is_active",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    def __repr__(self) -> str:
        """Safe repr - NEVER include secret values."""
        return (
            f"<MarketplaceCredential("
            f"id={self.id}, "
            f"client_id={self.client_id}, "
            f"is_active={self.is_active}, "
            f"oauth_completed={self.oauth_completed})>"
        )

    def to_safe_dict(self) -> dict:
        """
        Return dictionary safe for logging/API responses.

        SECURITY: Excludes all secret values.
        """
        return {
            "id": self.id,
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "is_active": self.is_active,
            "oauth_completed": self.oauth_completed,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
