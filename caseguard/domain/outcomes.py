from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Union

from caseguard.domain.models import AuthSession, Identity


class RejectReason(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    LOCKED = "locked"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    MFA_INVALID = "mfa_invalid"


class SessionInvalidReason(str, Enum):
    UNKNOWN = "unknown"
    EXPIRED = "expired"
    REVOKED = "revoked"
    INACTIVE = "inactive"


@dataclass(frozen=True)
class Allowed:
    count: int
    remaining: int


@dataclass(frozen=True)
class RateLimited:
    retry_after_s: int


@dataclass(frozen=True)
class Authenticated:
    identity_id: str
    session_id: str
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class MfaRequired:
    identity_id: str


@dataclass(frozen=True)
class Rejected:
    reason: RejectReason
    retry_after_s: int | None = None
    # Set only when few attempts remain before lockout.
    remaining_attempts: int | None = None


LoginOutcome = Union[Authenticated, MfaRequired, Rejected, RateLimited]


@dataclass(frozen=True)
class SessionValid:
    session: AuthSession
    identity: Identity


@dataclass(frozen=True)
class SessionInvalid:
    reason: SessionInvalidReason


SessionOutcome = Union[SessionValid, SessionInvalid]


@dataclass(frozen=True)
class FullAccess:
    record_id: str
    view: dict[str, Any]
    # Confidential fields omitted because they failed to decrypt.
    unavailable_fields: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class RedactedAccess:
    record_id: str
    view: dict[str, Any]


@dataclass(frozen=True)
class NotFoundOrUnauthorized:
    record_id: str


AccessOutcome = Union[FullAccess, RedactedAccess, RateLimited]
ViewOutcome = Union[FullAccess, RedactedAccess, NotFoundOrUnauthorized]
