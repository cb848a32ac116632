from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from caseguard.apps.api.deps import Principal, get_db, get_gate, get_principal
from caseguard.domain.models import AuthSession
from caseguard.services.audit import get_request_context
from caseguard.services.gate import GateServices


router = APIRouter(prefix="/sessions", tags=["sessions"])


class SessionResponse(BaseModel):
    id: str
    token_prefix: str
    created_at: str
    expires_at: str
    last_activity_at: str
    ip_address: str | None
    user_agent: str | None
    current: bool


class SessionDetailResponse(SessionResponse):
    active: bool
    revoked_at: str | None


class RevokedResponse(BaseModel):
    revoked: int


def _to_response(row: AuthSession, current_id: str) -> SessionResponse:
    return SessionResponse(
        id=row.id,
        token_prefix=row.token_prefix,
        created_at=row.created_at.isoformat(),
        expires_at=row.expires_at.isoformat(),
        last_activity_at=row.last_activity_at.isoformat(),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        current=row.id == current_id,
    )


@router.get("")
async def list_sessions(
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    gate: GateServices = Depends(get_gate),
) -> list[SessionResponse]:
    rows = await gate.sessions.list_active(db, identity_id=principal.identity_id)
    return [_to_response(row, principal.session.id) for row in rows]


@router.get("/{session_id}")
async def get_session(
    session_id: str,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    gate: GateServices = Depends(get_gate),
) -> SessionDetailResponse:
    # Another identity's session id answers exactly like an unknown one.
    row = await gate.sessions.get_owned(db, session_id=session_id, identity_id=principal.identity_id)
    if row is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Session not found"})
    summary = _to_response(row, principal.session.id)
    return SessionDetailResponse(
        **summary.model_dump(),
        active=gate.sessions.is_active(row),
        revoked_at=row.revoked_at.isoformat() if row.revoked_at else None,
    )


@router.delete("/{session_id}")
async def revoke_session(
    session_id: str,
    request: Request,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    gate: GateServices = Depends(get_gate),
) -> RevokedResponse:
    revoked = await gate.sessions.revoke(
        db,
        session_id=session_id,
        identity_id=principal.identity_id,
        origin=get_request_context(request),
    )
    if not revoked:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Session not found"})
    return RevokedResponse(revoked=1)


@router.post("/revoke-all")
async def revoke_all_sessions(
    request: Request,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    gate: GateServices = Depends(get_gate),
) -> RevokedResponse:
    count = await gate.sessions.revoke_all(
        db, identity_id=principal.identity_id, origin=get_request_context(request)
    )
    return RevokedResponse(revoked=count)


@router.post("/revoke-others")
async def revoke_other_sessions(
    request: Request,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    gate: GateServices = Depends(get_gate),
) -> RevokedResponse:
    # Keep the caller signed in while ending every other device.
    count = await gate.sessions.revoke_all_except(
        db,
        identity_id=principal.identity_id,
        current_token=principal.token,
        origin=get_request_context(request),
    )
    return RevokedResponse(revoked=count)
