"""Time-based one-time passwords (RFC 6238 over RFC 4226 HOTP).

Thin codec over pyotp with no storage or clock access so it can be checked
against the published test vectors in isolation. Callers pass the instant
to evaluate as a Unix timestamp.
"""

from __future__ import annotations

import binascii
from datetime import datetime, timezone

import pyotp


TIME_STEP_S = 30
CODE_DIGITS = 6
DRIFT_STEPS = 1


def generate_secret() -> str:
    # 32 Base32 characters = 160 bits, the RFC 4226 recommended key size.
    return pyotp.random_base32()


def _instant(at: float) -> datetime:
    # Aware datetimes keep pyotp off the local timezone.
    return datetime.fromtimestamp(at, tz=timezone.utc)


def hotp(secret: str, counter: int, *, digits: int = CODE_DIGITS) -> str:
    return pyotp.HOTP(secret, digits=digits).at(counter)


def totp(secret: str, at: float, *, step: int = TIME_STEP_S, digits: int = CODE_DIGITS) -> str:
    return pyotp.TOTP(secret, digits=digits, interval=step).at(_instant(at))


def verify_totp(
    secret: str | None,
    code: str | None,
    *,
    at: float,
    step: int = TIME_STEP_S,
    digits: int = CODE_DIGITS,
    drift_steps: int = DRIFT_STEPS,
) -> bool:
    """Check ``code`` against the current step and ``drift_steps`` either side."""
    if not secret or not code:
        return False
    candidate = code.strip()
    if len(candidate) != digits or not candidate.isdigit():
        return False
    try:
        return pyotp.TOTP(secret, digits=digits, interval=step).verify(
            candidate, for_time=_instant(at), valid_window=drift_steps
        )
    except (binascii.Error, ValueError):
        # A corrupt stored secret fails closed like a wrong code.
        return False


def provisioning_uri(secret: str, *, account: str, issuer: str) -> str:
    return pyotp.TOTP(secret, digits=CODE_DIGITS, interval=TIME_STEP_S).provisioning_uri(
        name=account, issuer_name=issuer
    )
