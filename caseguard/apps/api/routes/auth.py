from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from caseguard.apps.api.deps import get_db, get_gate
from caseguard.domain.outcomes import Authenticated, MfaRequired, RateLimited, Rejected
from caseguard.services.audit import get_request_context
from caseguard.services.gate import GateServices


router = APIRouter(prefix="/auth", tags=["auth"])


class LoginRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str = Field(min_length=1, max_length=320)
    password: str = Field(min_length=1, max_length=1024)
    mfa_code: str | None = Field(default=None, alias="mfaCode", max_length=16)


class LoginResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token: str
    expires_at: str = Field(serialization_alias="expiresAt")


@router.post("/login", response_model=None)
async def login(
    payload: LoginRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gate: GateServices = Depends(get_gate),
) -> JSONResponse:
    # Map each login outcome onto its HTTP status and body shape.
    outcome = await gate.credentials.login(
        db,
        email=payload.email,
        password=payload.password,
        mfa_code=payload.mfa_code,
        origin=get_request_context(request),
    )
    if isinstance(outcome, Authenticated):
        body = LoginResponse(token=outcome.token, expires_at=outcome.expires_at.isoformat())
        return JSONResponse(status_code=status.HTTP_200_OK, content=body.model_dump(by_alias=True))
    if isinstance(outcome, MfaRequired):
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content={"mfaRequired": True})
    if isinstance(outcome, RateLimited):
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={"retryAfter": outcome.retry_after_s},
            headers={"Retry-After": str(outcome.retry_after_s)},
        )
    return _rejected_response(outcome)


def _rejected_response(outcome: Rejected) -> JSONResponse:
    content: dict[str, Any] = {"reason": outcome.reason.value}
    headers = {"WWW-Authenticate": "Bearer"}
    if outcome.retry_after_s is not None:
        content["retryAfter"] = outcome.retry_after_s
        headers["Retry-After"] = str(outcome.retry_after_s)
    if outcome.remaining_attempts is not None:
        content["remainingAttempts"] = outcome.remaining_attempts
    return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content=content, headers=headers)
