from __future__ import annotations

import base64
import hashlib


def b64encode_bytes(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def b64decode_str(value: str) -> bytes:
    # Strict decoding: stray characters are corruption, not padding noise.
    return base64.b64decode(value.encode("ascii"), validate=True)


def sha256_hex(value: bytes) -> str:
    return hashlib.sha256(value).hexdigest()


def derive_key(secret: str, *, context: bytes = b"") -> bytes:
    """Derive fixed-width 256-bit key material from the process-wide secret."""
    if not secret:
        raise ValueError("key material is empty")
    return hashlib.sha256(context + secret.encode("utf-8")).digest()
