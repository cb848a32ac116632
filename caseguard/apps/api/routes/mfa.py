from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from caseguard.apps.api.deps import Principal, get_db, get_gate, get_principal
from caseguard.core.errors import MfaAlreadyEnabled, MfaNotConfigured
from caseguard.services.audit import get_request_context
from caseguard.services.gate import GateServices


router = APIRouter(prefix="/mfa", tags=["mfa"])


class MfaCodeRequest(BaseModel):
    code: str = Field(min_length=1, max_length=16)


class MfaSetupResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    secret: str
    provisioning_uri: str = Field(serialization_alias="provisioningUri")


class MfaStatusResponse(BaseModel):
    enabled: bool


class MfaVerifyResponse(BaseModel):
    valid: bool


def _invalid_code() -> HTTPException:
    return HTTPException(status_code=400, detail={"code": "MFA_INVALID", "message": "Invalid verification code"})


def _conflict(exc: Exception) -> HTTPException:
    return HTTPException(status_code=409, detail={"code": "MFA_STATE_CONFLICT", "message": str(exc)})


@router.get("/status")
async def mfa_status(principal: Principal = Depends(get_principal)) -> MfaStatusResponse:
    return MfaStatusResponse(enabled=bool(principal.identity.mfa_enabled))


@router.get("/setup")
async def mfa_setup(
    request: Request,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    gate: GateServices = Depends(get_gate),
) -> dict:
    try:
        setup = await gate.mfa.setup(db, identity=principal.identity, origin=get_request_context(request))
    except MfaAlreadyEnabled as exc:
        raise _conflict(exc) from exc
    body = MfaSetupResponse(secret=setup.secret, provisioning_uri=setup.provisioning_uri)
    return body.model_dump(by_alias=True)


@router.post("/enable")
async def mfa_enable(
    payload: MfaCodeRequest,
    request: Request,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    gate: GateServices = Depends(get_gate),
) -> MfaStatusResponse:
    try:
        enabled = await gate.mfa.enable(
            db, identity=principal.identity, code=payload.code, origin=get_request_context(request)
        )
    except MfaNotConfigured as exc:
        raise _conflict(exc) from exc
    if not enabled:
        raise _invalid_code()
    return MfaStatusResponse(enabled=True)


@router.post("/disable")
async def mfa_disable(
    payload: MfaCodeRequest,
    request: Request,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    gate: GateServices = Depends(get_gate),
) -> MfaStatusResponse:
    try:
        disabled = await gate.mfa.disable(
            db, identity=principal.identity, code=payload.code, origin=get_request_context(request)
        )
    except MfaNotConfigured as exc:
        raise _conflict(exc) from exc
    if not disabled:
        raise _invalid_code()
    return MfaStatusResponse(enabled=False)


@router.post("/verify")
async def mfa_verify(
    payload: MfaCodeRequest,
    request: Request,
    principal: Principal = Depends(get_principal),
    gate: GateServices = Depends(get_gate),
) -> MfaVerifyResponse:
    try:
        valid = await gate.mfa.verify(
            identity=principal.identity, code=payload.code, origin=get_request_context(request)
        )
    except MfaNotConfigured as exc:
        raise _conflict(exc) from exc
    return MfaVerifyResponse(valid=valid)
