"""Per-stack encryption of configuration secrets.

Public API (the "studs"):
    Crypter: Protocol for encrypt/decrypt capabilities
    PassphraseCrypter: Fernet crypter keyed from a passphrase and per-stack salt
    new_salt: Generate a salt for a new stack
"""

from __future__ import annotations

import base64
import os
from typing import Protocol, runtime_checkable

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import ValidationError

_KDF_ITERATIONS = 100_000
_SALT_BYTES = 16


@runtime_checkable
class Crypter(Protocol):
    """Encrypts and decrypts configuration secrets for one stack."""

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a plaintext value, returning printable ciphertext."""
        ...

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt ciphertext produced by encrypt()."""
        ...


def new_salt() -> str:
    """Return a fresh random salt, base64-encoded."""
    return base64.b64encode(os.urandom(_SALT_BYTES)).decode()


class PassphraseCrypter:
    """Fernet crypter with a key derived from a passphrase and a stack salt.

    The same passphrase yields a different key for every stack because each
    stack carries its own salt.
    """

    def __init__(self, passphrase: str, salt: str) -> None:
        if not passphrase:
            raise ValidationError("a non-empty passphrase is required to manage secrets")
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=base64.b64decode(salt),
            iterations=_KDF_ITERATIONS,
        )
        key = base64.urlsafe_b64encode(kdf.derive(passphrase.encode()))
        self._fernet = Fernet(key)

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as e:
            raise ValidationError(
                "failed to decrypt secret: wrong passphrase or corrupt ciphertext"
            ) from e


__all__ = ["Crypter", "PassphraseCrypter", "new_salt"]
