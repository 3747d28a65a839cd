"""
Password-based secret encryption.

Secrets are encrypted with Fernet (AES-128-CBC + HMAC) under a key derived
from the password with PBKDF2-HMAC-SHA256 and a per-secret random salt.
"""

import os
import base64
from typing import Tuple

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

# KDF iterations (OWASP recommended minimum)
KDF_ITERATIONS = 480000
SALT_LENGTH = 16
MIN_PASSWORD_LENGTH = 8


class DecryptionError(Exception):
    """Raised when a secret cannot be decrypted (wrong password or corrupt data)."""


def derive_key(password: str, salt: bytes, iterations: int = KDF_ITERATIONS) -> bytes:
    """
    Derive encryption key from password using PBKDF2.

    Args:
        password: User password
        salt: Random salt bytes
        iterations: PBKDF2 iteration count

    Returns:
        Base64-encoded key for Fernet
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return base64.urlsafe_b64encode(kdf.derive(password.encode()))


def validate_password(password: str):
    """Reject passwords that are too short to protect a wallet file."""
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")


def encrypt_secret(secret: str, password: str, iterations: int = KDF_ITERATIONS) -> Tuple[str, str]:
    """
    Encrypt a secret string.

    Returns:
        Tuple of (base64 ciphertext, base64 salt)
    """
    salt = os.urandom(SALT_LENGTH)
    f = Fernet(derive_key(password, salt, iterations))
    encrypted = f.encrypt(secret.encode())
    return base64.b64encode(encrypted).decode(), base64.b64encode(salt).decode()


def decrypt_secret(ciphertext: str, salt_b64: str, password: str, iterations: int = KDF_ITERATIONS) -> str:
    """
    Decrypt a secret produced by ``encrypt_secret``.

    Raises:
        DecryptionError: On a wrong password or tampered ciphertext
    """
    salt = base64.b64decode(salt_b64)
    f = Fernet(derive_key(password, salt, iterations))
    try:
        decrypted = f.decrypt(base64.b64decode(ciphertext.encode()))
    except InvalidToken as e:
        raise DecryptionError("Could not decrypt secret (wrong password?)") from e
    return decrypted.decode()
