"""Token encryption utilities for provider credentials stored at rest.

This module provides encryption/decryption functions for provider access
tokens using the cryptography library (Fernet symmetric encryption).
"""

import base64
import hashlib
from logging import getLogger

from cryptography.fernet import Fernet, InvalidToken
from pydantic import SecretStr

logger = getLogger(__name__)

_KDF_SALT = b"ampel-credential-encryption"
_KDF_ITERATIONS = 100000


def _derive_key(secret: str) -> bytes:
    """Derive a Fernet-compatible key from the configured secret using PBKDF2.

    Args:
        secret: The credential encryption secret

    Returns:
        A base64-encoded 32-byte key suitable for Fernet
    """
    # Salt is fixed since the input is a high-entropy secret key, not a password
    kdf_output = hashlib.pbkdf2_hmac(
        "sha256",
        secret.encode("utf-8"),
        _KDF_SALT,
        iterations=_KDF_ITERATIONS,
        dklen=32,
    )
    return base64.urlsafe_b64encode(kdf_output)


def encrypt_token(token: SecretStr | str, secret_key: SecretStr) -> str:
    """Encrypt a provider access token.

    Args:
        token: The access token to encrypt (as SecretStr or str)
        secret_key: The secret used to derive the encryption key

    Returns:
        Encrypted token blob as a string

    Raises:
        ValueError: If token or secret_key is empty
    """
    token_str = token.get_secret_value() if isinstance(token, SecretStr) else token
    secret_str = secret_key.get_secret_value()

    if not token_str:
        raise ValueError("Token cannot be empty")
    if not secret_str:
        raise ValueError("Secret key cannot be empty")

    fernet = Fernet(_derive_key(secret_str))
    return fernet.encrypt(token_str.encode("utf-8")).decode("utf-8")


def decrypt_token(encrypted_token: str, secret_key: SecretStr) -> SecretStr | None:
    """Decrypt a stored provider access token.

    Returns:
        Decrypted token as SecretStr, or None if the blob cannot be decrypted
        (rotated key or corrupted data)
    """
    secret_str = secret_key.get_secret_value()
    if not secret_str or not encrypted_token:
        return None

    fernet = Fernet(_derive_key(secret_str))
    try:
        decrypted = fernet.decrypt(encrypted_token.encode("utf-8"))
    except InvalidToken:
        logger.warning("Failed to decrypt provider token (invalid key or corrupted data)")
        return None
    return SecretStr(decrypted.decode("utf-8"))
