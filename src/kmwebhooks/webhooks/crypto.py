"""Encryption at rest for subscription signing secrets.

Secrets are sealed with AES-256-GCM and serialized as three hex segments,
``<nonce>.<ciphertext>.<tag>``. The 256-bit key comes from configuration
and is passed in at construction.
"""

from __future__ import annotations

import hashlib
import re
import secrets
from typing import TYPE_CHECKING

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from kmwebhooks.exceptions import (
    ConfigurationError,
    SecretAuthenticationError,
    SecretFormatError,
)

if TYPE_CHECKING:
    from kmwebhooks.config import Settings

NONCE_BYTES = 12  # 96-bit nonce recommended for GCM
TAG_BYTES = 16  # 128-bit authentication tag
SEGMENT_DELIMITER = "."
SECRET_PREFIX = "whsec_"

_KEY_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")


class SecretCipher:
    """AES-256-GCM cipher for webhook signing secrets.

    Safe to share between concurrent deliveries: the key is read-only and
    each encryption draws its own nonce.

    Example:
        ```python
        cipher = SecretCipher.from_settings(settings)
        sealed = cipher.encrypt("whsec_...")
        assert cipher.decrypt(sealed) == "whsec_..."
        ```
    """

    def __init__(self, key_hex: str | None) -> None:
        """Initialize the cipher.

        Args:
            key_hex: 64-character hex string (32 bytes).

        Raises:
            ConfigurationError: If the key is missing or malformed.
        """
        if not key_hex or not _KEY_PATTERN.match(key_hex):
            raise ConfigurationError(
                "WEBHOOK_SIGNING_KEY must be a 64-character hex string (32 bytes). "
                "Generate with: openssl rand -hex 32"
            )
        self._aesgcm = AESGCM(bytes.fromhex(key_hex))

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> SecretCipher:
        """Build a cipher from the configured signing key."""
        if settings is None:
            from kmwebhooks.config import settings as default_settings

            settings = default_settings
        return cls(settings.webhook_signing_key)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a secret.

        Returns:
            ``<nonce hex>.<ciphertext hex>.<tag hex>``.
        """
        nonce = secrets.token_bytes(NONCE_BYTES)
        # AESGCM appends the tag to the ciphertext
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return SEGMENT_DELIMITER.join((nonce.hex(), ciphertext.hex(), tag.hex()))

    def decrypt(self, serialized: str) -> str:
        """Decrypt a secret produced by :meth:`encrypt`.

        Raises:
            SecretFormatError: If the value is not three hex segments with a
                12-byte nonce and a 16-byte tag.
            SecretAuthenticationError: If the tag does not verify.
        """
        parts = serialized.split(SEGMENT_DELIMITER)
        if len(parts) != 3:
            raise SecretFormatError("Invalid encrypted secret format")

        try:
            nonce, ciphertext, tag = (bytes.fromhex(part) for part in parts)
        except ValueError as e:
            raise SecretFormatError("Invalid encrypted secret: segments must be hex") from e

        if len(nonce) != NONCE_BYTES or len(tag) != TAG_BYTES:
            raise SecretFormatError("Invalid encrypted secret: malformed nonce or tag")

        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as e:
            raise SecretAuthenticationError(
                "Encrypted secret failed authentication (tampered, corrupted or wrong key)"
            ) from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SecretFormatError("Decrypted secret is not valid UTF-8") from e


def generate_signing_secret() -> str:
    """Generate a new plaintext signing secret (``whsec_`` + 64 hex chars)."""
    return SECRET_PREFIX + secrets.token_hex(32)


def hash_secret(secret: str) -> str:
    """SHA-256 hex digest of a plaintext secret."""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()
