"""
Database models.

Importing this package registers every model with the declarative Base.
"""

from returnsdesk.models.base import TimestampMixin
from returnsdesk.models.marketplace_credential import (
    CredentialProvider,
    DeactivationReason,
    MarketplaceCredential,
)

__all__ = [
    "TimestampMixin",
    "CredentialProvider",
    "DeactivationReason",
    "MarketplaceCredential",
]
