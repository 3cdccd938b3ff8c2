"""Encryption of stored database credentials.

AES-256-GCM with a random 16-byte IV. A token is
``base64("<iv hex>:<ciphertext hex>:<tag hex>")``; decryption verifies the
tag, so a tampered token raises instead of returning corrupted plaintext.
"""

import base64
import binascii
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from querysafe.config import settings
from querysafe.exceptions.base import ConfigurationError
from querysafe.exceptions.pipeline import CredentialDecryptionError
from querysafe.logging import get_logger

logger = get_logger(__name__)

IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32


def generate_encryption_key() -> str:
    """Return a new key as 64 hex characters."""
    return secrets.token_hex(KEY_LENGTH)


class CredentialCipher:
    def __init__(self, key_hex: Optional[str] = None) -> None:
        key_hex = key_hex if key_hex is not None else settings.ENCRYPTION_KEY
        if not key_hex:
            raise ConfigurationError("ENCRYPTION_KEY is not set", config_key="ENCRYPTION_KEY")
        if len(key_hex) != KEY_LENGTH * 2:
            raise ConfigurationError(
                "ENCRYPTION_KEY must be 64 hex characters (32 bytes)", config_key="ENCRYPTION_KEY"
            )
        try:
            key = bytes.fromhex(key_hex)
        except ValueError as e:
            raise ConfigurationError("ENCRYPTION_KEY must be hex encoded", config_key="ENCRYPTION_KEY") from e
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        iv = secrets.token_bytes(IV_LENGTH)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        combined = f"{iv.hex()}:{ciphertext.hex()}:{tag.hex()}"
        return base64.b64encode(combined.encode("ascii")).decode("ascii")

    def decrypt(self, token: str) -> str:
        """Decrypt a token produced by ``encrypt``.

        Raises:
            CredentialDecryptionError: If the token is malformed or fails authentication

        """
        try:
            combined = base64.b64decode(token, validate=True).decode("ascii")
            parts = combined.split(":")
            if len(parts) != 3:
                raise CredentialDecryptionError("Invalid encrypted data format")
            iv, ciphertext, tag = (bytes.fromhex(part) for part in parts)
            if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
                raise CredentialDecryptionError("Invalid encrypted data format")
            return self._aesgcm.decrypt(iv, ciphertext + tag, None).decode("utf-8")
        except CredentialDecryptionError:
            logger.warning("Credential token rejected", reason="format")
            raise
        except (binascii.Error, ValueError, UnicodeDecodeError, InvalidTag) as e:
            logger.warning("Credential token rejected", reason=type(e).__name__)
            raise CredentialDecryptionError() from e


_cipher: Optional[CredentialCipher] = None


def get_cipher() -> CredentialCipher:
    global _cipher
    if _cipher is None:
        _cipher = CredentialCipher()
    return _cipher
