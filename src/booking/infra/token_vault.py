"""Encryption at rest for channel access tokens.

WhatsApp access tokens saved through the settings endpoint are stored in
``channel_accounts.config`` as AES-256-GCM ciphertext, never in clear.
"""

from __future__ import annotations

import base64
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

# Marks an encrypted value inside the JSON config.
ENCRYPTED_PREFIX = "enc:v1:"

_NONCE_BYTES = 12


class TokenVaultError(Exception):
    """Raised when a stored token cannot be decrypted."""


def _get_encryption_key() -> bytes:
    """Load the AES-256 key from CHANNEL_TOKEN_KEY.

    Raises:
        RuntimeError: If CHANNEL_TOKEN_KEY is missing or not 32 bytes of hex.
    """
    key_hex = os.environ.get("CHANNEL_TOKEN_KEY")
    if not key_hex:
        raise RuntimeError(
            "CHANNEL_TOKEN_KEY not configured. Generate with: openssl rand -hex 32"
        )
    try:
        key = bytes.fromhex(key_hex)
    except ValueError as exc:
        raise RuntimeError("CHANNEL_TOKEN_KEY must be hex encoded") from exc
    if len(key) != 32:
        raise RuntimeError("CHANNEL_TOKEN_KEY must be 32 bytes hex (64 hex chars)")
    return key


def encrypt_token(plaintext: str) -> str:
    nonce = os.urandom(_NONCE_BYTES)
    ciphertext = AESGCM(_get_encryption_key()).encrypt(nonce, plaintext.encode(), None)
    return ENCRYPTED_PREFIX + base64.b64encode(nonce + ciphertext).decode()


def decrypt_token(stored: str) -> str:
    """Reverse ``encrypt_token``. Values without the prefix are returned as-is.

    Unprefixed values are tokens written before encryption was enabled.

    Raises:
        TokenVaultError: If the ciphertext is corrupt or the key is wrong.
    """
    if not stored.startswith(ENCRYPTED_PREFIX):
        return stored
    try:
        data = base64.b64decode(stored[len(ENCRYPTED_PREFIX):])
        nonce, ciphertext = data[:_NONCE_BYTES], data[_NONCE_BYTES:]
        return AESGCM(_get_encryption_key()).decrypt(nonce, ciphertext, None).decode()
    except (InvalidTag, ValueError) as exc:
        raise TokenVaultError("stored access token could not be decrypted") from exc
