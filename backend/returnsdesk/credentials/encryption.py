"""
Encryption utilities for secure credential storage.

Implements AES-256-GCM encryption for the secret columns of a credential set
(client secret, access token, refresh token).

SECURITY:
- Uses AES-256-GCM for authenticated encryption
- Each encryption uses a unique random nonce
- The 32-byte key is derived from ENCRYPTION_KEY with scrypt
- Ciphertext format: "nonce:authTag:ciphertext", all hex-encoded

If ENCRYPTION_KEY is not set, an ephemeral key is generated. This keeps local
development working but is UNSAFE for production: every restart generates a
new key and previously stored secrets can no longer be decrypted.

Usage:
    from returnsdesk.credentials.encryption import encrypt_secret, decrypt_secret

    stored = encrypt_secret(access_token)
    plaintext = decrypt_secret(stored)
"""

import logging
import os
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from fastapi import status

from returnsdesk.platform.errors import AppError

logger = logging.getLogger(__name__)


# AES-GCM constants
NONCE_SIZE = 16  # bytes; existing rows were written with 128-bit nonces
TAG_SIZE = 16    # 128 bits, standard for AES-GCM
KEY_SIZE = 32    # 256 bits for AES-256

# scrypt parameters; must stay stable or stored rows become unreadable
SCRYPT_SALT = b"salt"
SCRYPT_N = 2 ** 14
SCRYPT_R = 8
SCRYPT_P = 1

ENCRYPTION_KEY_ENV = "ENCRYPTION_KEY"


class EncryptionError(AppError):
    """Raised when encryption or decryption fails."""

    def __init__(self, message: str, operation: str = "unknown"):
        self.operation = operation
        super().__init__(
            code="ENCRYPTION_ERROR",
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details={"operation": operation},
        )


def derive_key(password: str) -> bytes:
    """Derive the 32-byte AES key from the configured key string."""
    kdf = Scrypt(
        salt=SCRYPT_SALT,
        length=KEY_SIZE,
        n=SCRYPT_N,
        r=SCRYPT_R,
        p=SCRYPT_P,
    )
    return kdf.derive(password.encode("utf-8"))


class CredentialEncryptor:
    """
    AES-256-GCM encryptor for credential columns.

    SECURITY:
    - Never reuse nonces with the same key
    - Plaintext values are never logged
    """

    def __init__(self, key_string: str):
        if not key_string:
            raise EncryptionError("Encryption key is required", operation="init")
        self._aesgcm = AESGCM(derive_key(key_string))

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        """
        Encrypt a secret for storage.

        Returns None for None/empty input so nullable columns stay null.
        """
        if not plaintext:
            return None

        try:
            nonce = secrets.token_bytes(NONCE_SIZE)
            # AESGCM.encrypt returns ciphertext + tag concatenated
            sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        except Exception as e:
            logger.error(
                "Secret encryption failed",
                extra={"operation": "encrypt", "error_type": type(e).__name__},
            )
            raise EncryptionError("Failed to encrypt secret", operation="encrypt") from e

        ciphertext, auth_tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return f"{nonce.hex()}:{auth_tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, stored: Optional[str]) -> Optional[str]:
        """
        Decrypt a stored "nonce:authTag:ciphertext" value.

        SECURITY: the decrypted value must NEVER be logged.
        """
        if not stored:
            return None

        parts = stored.split(":")
        if len(parts) != 3:
            raise EncryptionError("Invalid encrypted value format", operation="decrypt")

        try:
            nonce, auth_tag, ciphertext = (bytes.fromhex(p) for p in parts)
        except ValueError as e:
            raise EncryptionError("Invalid encrypted value encoding", operation="decrypt") from e

        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext + auth_tag, None)
        except InvalidTag as e:
            logger.error(
                "Secret decryption failed: authentication tag mismatch",
                extra={"operation": "decrypt"},
            )
            raise EncryptionError(
                "Failed to decrypt secret. Data may be corrupted or the encryption key changed.",
                operation="decrypt",
            ) from e
        except ValueError as e:
            raise EncryptionError("Failed to decrypt secret", operation="decrypt") from e

        return plaintext.decode("utf-8")


_encryptor: Optional[CredentialEncryptor] = None
_ephemeral = False


def configure_encryption(key_string: Optional[str]) -> CredentialEncryptor:
    """
    Install the process-wide encryptor.

    Falls back to an ephemeral random key when no key is given.
    """
    global _encryptor, _ephemeral

    if key_string:
        _encryptor = CredentialEncryptor(key_string)
        _ephemeral = False
        return _encryptor

    logger.warning(
        "ENCRYPTION_KEY is not set; using an ephemeral key. "
        "Stored credentials will be unreadable after restart. Do not use in production.",
        extra={"operation": "configure_encryption"},
    )
    _encryptor = CredentialEncryptor(secrets.token_hex(KEY_SIZE))
    _ephemeral = True
    return _encryptor


def get_encryptor() -> CredentialEncryptor:
    """Return the configured encryptor, configuring it from the environment on first use."""
    if _encryptor is None:
        return configure_encryption(os.getenv(ENCRYPTION_KEY_ENV))
    return _encryptor


def is_ephemeral_key() -> bool:
    return _ephemeral


def encrypt_secret(plaintext: Optional[str]) -> Optional[str]:
    """Encrypt with the process-wide encryptor. None in, None out."""
    return get_encryptor().encrypt(plaintext)


def decrypt_secret(stored: Optional[str]) -> Optional[str]:
    """Decrypt with the process-wide encryptor. None in, None out."""
    return get_encryptor().decrypt(stored)
