from __future__ import annotations

import bcrypt

from caseguard.core.config import get_settings


def _salt() -> bytes:
    return bcrypt.gensalt(rounds=get_settings().password_bcrypt_rounds)


# Checked when the email is unknown so both paths pay the same bcrypt cost.
_DUMMY_HASH = bcrypt.hashpw(b"caseguard-timing-equalizer", _salt()).decode("utf-8")


def hash_password(raw_password: str) -> str:
    return bcrypt.hashpw(raw_password.encode("utf-8"), _salt()).decode("utf-8")


def verify_password(raw_password: str, password_hash: str | None) -> bool:
    # Malformed stored hashes count as a mismatch rather than an error.
    target = password_hash or _DUMMY_HASH
    try:
        matched = bcrypt.checkpw(raw_password.encode("utf-8"), target.encode("utf-8"))
    except ValueError:
        return False
    return matched and password_hash is not None
