"""Credential vault: AES-256-GCM sealing of tenant connection secrets.

The 256-bit key is derived once per vault from the configured secret with
HKDF-SHA256 and held only in memory.  Each ``encrypt`` call draws a fresh
96-bit IV; the 128-bit GCM tag is split off the ciphertext so the three
parts can be stored in separate columns.

Decryption fails closed.  A tampered ciphertext, IV or tag, a wrong key,
or an unknown algorithm version all raise :class:`IntegrityError` and no
plaintext is ever returned.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Generic, TypeVar

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from store_engine.config import Settings

logger = logging.getLogger(__name__)

ALGORITHM_VERSION = 1

_IV_BYTES = 12
_TAG_BYTES = 16
_KEY_BYTES = 32

T = TypeVar("T")


class IntegrityError(Exception):
    """Ciphertext failed authentication or is malformed."""


@dataclass(frozen=True)
class EncryptedSecret:
    ciphertext: bytes
    iv: bytes
    tag: bytes
    algorithm_version: int = ALGORITHM_VERSION


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    error: IntegrityError


DecryptResult = Ok[bytes] | Err


def _derive_key(secret: str, version: int) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=_KEY_BYTES,
        salt=f"store-engine-credentials-v{version}".encode(),
        info=b"tenant-database-credential",
    )
    return hkdf.derive(secret.encode())


class CredentialVault:
    """Symmetric authenticated encryption for tenant credentials.

    Parameters
    ----------
    secret:
        Key material from configuration.  Must be non-empty.
    """

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("CredentialVault requires a non-empty secret")
        self._aead = {ALGORITHM_VERSION: AESGCM(_derive_key(secret, ALGORITHM_VERSION))}

    @classmethod
    def from_settings(cls, settings: Settings) -> CredentialVault:
        return cls(settings.credential_encryption_key.get_secret_value())

    def encrypt(self, plaintext: bytes) -> EncryptedSecret:
        iv = os.urandom(_IV_BYTES)
        sealed = self._aead[ALGORITHM_VERSION].encrypt(iv, plaintext, None)
        return EncryptedSecret(
            ciphertext=sealed[:-_TAG_BYTES],
            iv=iv,
            tag=sealed[-_TAG_BYTES:],
            algorithm_version=ALGORITHM_VERSION,
        )

    def decrypt(
        self,
        ciphertext: bytes,
        iv: bytes,
        tag: bytes,
        algorithm_version: int = ALGORITHM_VERSION,
    ) -> bytes:
        """Authenticate and decrypt.  Raises :class:`IntegrityError` on any failure."""
        aead = self._aead.get(algorithm_version)
        if aead is None:
            raise IntegrityError(f"Unsupported algorithm version {algorithm_version}")
        if len(iv) != _IV_BYTES:
            raise IntegrityError(f"IV must be {_IV_BYTES} bytes, got {len(iv)}")
        if len(tag) != _TAG_BYTES:
            raise IntegrityError(f"Tag must be {_TAG_BYTES} bytes, got {len(tag)}")
        try:
            return aead.decrypt(bytes(iv), bytes(ciphertext) + bytes(tag), None)
        except InvalidTag as exc:
            raise IntegrityError("Ciphertext failed authentication") from exc

    def decrypt_result(
        self,
        ciphertext: bytes,
        iv: bytes,
        tag: bytes,
        algorithm_version: int = ALGORITHM_VERSION,
    ) -> DecryptResult:
        """Like :meth:`decrypt` but returns ``Ok`` / ``Err`` instead of raising."""
        try:
            return Ok(self.decrypt(ciphertext, iv, tag, algorithm_version))
        except IntegrityError as exc:
            return Err(exc)

    def encrypt_text(self, plaintext: str) -> EncryptedSecret:
        return self.encrypt(plaintext.encode("utf-8"))

    def decrypt_text(self, secret: EncryptedSecret) -> str:
        return self.decrypt(secret.ciphertext, secret.iv, secret.tag, secret.algorithm_version).decode("utf-8")
