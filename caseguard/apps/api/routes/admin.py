from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from caseguard.apps.api.deps import Principal, get_db, get_gate, require_role
from caseguard.domain.models import AuditEvent, Identity, Role
from caseguard.persistence.repos import audit as audit_repo
from caseguard.services.audit import get_request_context
from caseguard.services.gate import GateServices


router = APIRouter(prefix="/admin", tags=["admin"])


class AuditEventResponse(BaseModel):
    id: int
    occurred_at: str
    actor_id: str | None
    actor_role: str | None
    event_type: str
    outcome: str
    resource_type: str | None
    resource_id: str | None
    request_id: str | None
    ip_address: str | None
    user_agent: str | None
    metadata_json: dict[str, Any] | None
    error_code: str | None


class AuditEventsPage(BaseModel):
    items: list[AuditEventResponse]
    next_offset: int | None


class UnlockResponse(BaseModel):
    identity_id: str
    unlocked: bool


def _to_response(event: AuditEvent) -> AuditEventResponse:
    # Serialize audit event datetimes to ISO 8601 for API clients.
    return AuditEventResponse(
        id=event.id,
        occurred_at=event.occurred_at.isoformat(),
        actor_id=event.actor_id,
        actor_role=event.actor_role,
        event_type=event.event_type,
        outcome=event.outcome,
        resource_type=event.resource_type,
        resource_id=event.resource_id,
        request_id=event.request_id,
        ip_address=event.ip_address,
        user_agent=event.user_agent,
        metadata_json=event.metadata_json,
        error_code=event.error_code,
    )


@router.get("/audit/events")
async def list_audit_events(
    actor_id: str | None = None,
    event_type: str | None = None,
    outcome: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_role(Role.ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> AuditEventsPage:
    try:
        events = await audit_repo.list_events(
            db,
            actor_id=actor_id,
            event_type=event_type,
            outcome=outcome,
            resource_type=resource_type,
            resource_id=resource_id,
            occurred_from=occurred_from,
            occurred_to=occurred_to,
            offset=offset,
            limit=limit + 1,
        )
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching audit events") from exc

    next_offset = None
    if len(events) > limit:
        events = events[:limit]
        next_offset = offset + limit

    return AuditEventsPage(items=[_to_response(event) for event in events], next_offset=next_offset)


@router.post("/identities/{identity_id}/unlock")
async def unlock_identity(
    identity_id: str,
    request: Request,
    principal: Principal = Depends(require_role(Role.ADMIN)),
    db: AsyncSession = Depends(get_db),
    gate: GateServices = Depends(get_gate),
) -> UnlockResponse:
    identity = await db.get(Identity, identity_id)
    if identity is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Identity not found"})
    await gate.credentials.unlock(
        db, identity=identity, actor=principal.identity, origin=get_request_context(request)
    )
    return UnlockResponse(identity_id=identity_id, unlocked=True)


@router.get("/suspicious-activities")
async def list_suspicious_activities(
    days: int = Query(default=30, ge=1, le=365),
    limit: int = Query(default=200, ge=1, le=1000),
    principal: Principal = Depends(require_role(Role.ADMIN)),
    db: AsyncSession = Depends(get_db),
    gate: GateServices = Depends(get_gate),
) -> list[AuditEventResponse]:
    since = gate.abuse.now() - timedelta(days=days)
    try:
        events = await audit_repo.list_suspicious_events(db, occurred_from=since, limit=limit)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching audit events") from exc
    return [_to_response(event) for event in events]
