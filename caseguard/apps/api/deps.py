from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from caseguard.core.errors import StorageUnavailable
from caseguard.domain.models import AuthSession, Identity, Role
from caseguard.domain.outcomes import RateLimited, SessionInvalid, SessionInvalidReason
from caseguard.persistence.db import get_session
from caseguard.services.audit import get_request_context
from caseguard.services.gate import GateServices


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_gate(request: Request) -> GateServices:
    # Gate services are built once per app so rate windows are shared across requests.
    return request.app.state.gate


@dataclass(frozen=True)
class Principal:
    # Authenticated identity plus the session and bearer token that proved it.
    identity: Identity
    session: AuthSession
    token: str

    @property
    def identity_id(self) -> str:
        return self.identity.id

    @property
    def role(self) -> str:
        return self.identity.role


_SESSION_ERROR_CODES: dict[SessionInvalidReason, tuple[str, str]] = {
    SessionInvalidReason.UNKNOWN: ("AUTH_UNAUTHORIZED", "Invalid session token"),
    SessionInvalidReason.EXPIRED: ("SESSION_EXPIRED", "Session token expired"),
    SessionInvalidReason.REVOKED: ("SESSION_REVOKED", "Session token revoked"),
    SessionInvalidReason.INACTIVE: ("AUTH_INACTIVE", "Account is disabled"),
}


def _auth_error(message: str, code: str = "AUTH_UNAUTHORIZED") -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": code, "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str) -> HTTPException:
    # Use 403 for authenticated principals lacking permissions.
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def rate_limited_error(decision: RateLimited) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "code": "RATE_LIMITED",
            "message": "Too many requests",
            "retry_after_s": decision.retry_after_s,
        },
        headers={"Retry-After": str(decision.retry_after_s)},
    )


def _request_metadata(request: Request) -> dict[str, str]:
    # Include minimal request context for traceability without sensitive headers.
    return {"path": request.url.path, "method": request.method}


def _parse_bearer_token(header_value: str | None) -> str | None:
    # Enforce Bearer token format for session authentication.
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


async def get_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gate: GateServices = Depends(get_gate),
) -> Principal:
    """Authenticate the bearer session and charge one call to the API budget."""
    origin = get_request_context(request)
    raw_token = _parse_bearer_token(request.headers.get("Authorization"))
    if raw_token is None:
        raise _auth_error("Missing or invalid bearer token")
    try:
        outcome = await gate.sessions.validate(db, raw_token)
    except SQLAlchemyError as exc:
        raise StorageUnavailable("session store unavailable") from exc
    if isinstance(outcome, SessionInvalid):
        code, message = _SESSION_ERROR_CODES[outcome.reason]
        await gate.audit.record(
            event_type="auth.session.rejected",
            outcome="failure",
            resource_type="session",
            origin=origin,
            metadata={"reason": outcome.reason.value, **_request_metadata(request)},
            error_code=code,
        )
        raise _auth_error(message, code)

    identity = outcome.identity
    decision = gate.abuse.consume_api_call(identity.id)
    if isinstance(decision, RateLimited):
        await gate.audit.record(
            event_type="abuse.rate_limited",
            outcome="failure",
            actor_id=identity.id,
            actor_role=identity.role,
            resource_type="api",
            origin=origin,
            metadata={"action": "api", "retry_after_s": decision.retry_after_s, **_request_metadata(request)},
            error_code="RATE_LIMITED",
        )
        raise rate_limited_error(decision)
    return Principal(identity=identity, session=outcome.session, token=raw_token)


def require_role(*roles: Role):
    # Gate routes to specific roles after authentication succeeds.
    allowed = {role.value for role in roles}

    async def _dependency(principal: Principal = Depends(get_principal)) -> Principal:
        if principal.role not in allowed:
            raise _forbidden_error("Insufficient role for this operation")
        return principal

    return _dependency
