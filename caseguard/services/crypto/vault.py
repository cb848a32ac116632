from __future__ import annotations

import binascii
import os
from functools import lru_cache
from typing import Final, Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from caseguard.core.config import get_settings
from caseguard.core.errors import DecryptionFailed
from caseguard.services.crypto.utils import b64decode_str, b64encode_bytes, derive_key


_GCM_PREFIX: Final[str] = "gcm1:"
_NONCE_BYTES: Final[int] = 12
_BLOCK_BITS: Final[int] = 128


class CryptoVault(Protocol):
    mode: str

    def encrypt(self, plaintext: str | None) -> str | None:
        ...

    def decrypt(self, ciphertext: str | None) -> str | None:
        ...


class StaticKeyVault:
    """AES-256 over a single derived key, no per-value nonce.

    Identical plaintexts produce identical ciphertexts. Kept for parity with
    existing payloads; ``AuthenticatedVault`` is the upgrade path.
    """

    mode: Final[str] = "static"

    def __init__(self, secret: str) -> None:
        self._key = derive_key(secret)

    def encrypt(self, plaintext: str | None) -> str | None:
        if not plaintext:
            return None
        padder = padding.PKCS7(_BLOCK_BITS).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key), modes.ECB()).encryptor()
        return b64encode_bytes(encryptor.update(padded) + encryptor.finalize())

    def decrypt(self, ciphertext: str | None) -> str | None:
        if not ciphertext:
            return None
        try:
            raw = b64decode_str(ciphertext)
            if not raw or len(raw) % (_BLOCK_BITS // 8):
                raise ValueError("ciphertext is not block aligned")
            decryptor = Cipher(algorithms.AES(self._key), modes.ECB()).decryptor()
            padded = decryptor.update(raw) + decryptor.finalize()
            unpadder = padding.PKCS7(_BLOCK_BITS).unpadder()
            plain = unpadder.update(padded) + unpadder.finalize()
            return plain.decode("utf-8")
        except (binascii.Error, ValueError) as exc:
            raise DecryptionFailed("ciphertext could not be decrypted") from exc


class AuthenticatedVault:
    """AES-GCM with a random nonce stored alongside each value.

    Values written by ``StaticKeyVault`` (no prefix) are still readable when a
    legacy vault is supplied, so the swap needs no data migration up front.
    """

    mode: Final[str] = "gcm"

    def __init__(self, secret: str, *, legacy: StaticKeyVault | None = None) -> None:
        self._aead = AESGCM(derive_key(secret, context=b"caseguard-field-gcm:"))
        self._legacy = legacy

    def encrypt(self, plaintext: str | None) -> str | None:
        if not plaintext:
            return None
        nonce = os.urandom(_NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return _GCM_PREFIX + b64encode_bytes(nonce + sealed)

    def decrypt(self, ciphertext: str | None) -> str | None:
        if not ciphertext:
            return None
        if not ciphertext.startswith(_GCM_PREFIX):
            if self._legacy is None:
                raise DecryptionFailed("ciphertext was not sealed by this vault")
            return self._legacy.decrypt(ciphertext)
        try:
            raw = b64decode_str(ciphertext[len(_GCM_PREFIX):])
            nonce, sealed = raw[:_NONCE_BYTES], raw[_NONCE_BYTES:]
            if len(nonce) != _NONCE_BYTES or not sealed:
                raise ValueError("ciphertext is truncated")
            return self._aead.decrypt(nonce, sealed, None).decode("utf-8")
        except (binascii.Error, ValueError, InvalidTag) as exc:
            raise DecryptionFailed("ciphertext could not be decrypted") from exc


def build_vault(secret: str, mode: str) -> CryptoVault:
    normalized = mode.strip().lower()
    if normalized == StaticKeyVault.mode:
        return StaticKeyVault(secret)
    if normalized == AuthenticatedVault.mode:
        return AuthenticatedVault(secret, legacy=StaticKeyVault(secret))
    raise ValueError(f"Unsupported crypto vault mode: {mode}")


@lru_cache
def get_vault() -> CryptoVault:
    settings = get_settings()
    return build_vault(settings.crypto_secret_key, settings.crypto_vault_mode)
