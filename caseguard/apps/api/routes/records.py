from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from caseguard.apps.api.deps import Principal, get_db, get_gate, get_principal
from caseguard.domain.models import Record
from caseguard.domain.outcomes import FullAccess, NotFoundOrUnauthorized
from caseguard.services.audit import get_request_context
from caseguard.services.gate import GateServices


router = APIRouter(prefix="/records", tags=["records"])


@router.get("")
async def list_records(
    request: Request,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    gate: GateServices = Depends(get_gate),
) -> dict[str, Any]:
    result = await db.execute(
        select(Record).order_by(Record.created_at.desc(), Record.id.asc()).offset(offset).limit(limit + 1)
    )
    records = list(result.scalars().all())
    next_offset = None
    if len(records) > limit:
        records = records[:limit]
        next_offset = offset + limit
    items = await gate.access.decide_list(
        identity=principal.identity,
        records=records,
        origin=get_request_context(request),
    )
    return {"items": items, "next_offset": next_offset}


@router.get("/{record_id}")
async def get_record(
    record_id: str,
    request: Request,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    gate: GateServices = Depends(get_gate),
) -> dict[str, Any]:
    outcome = await gate.access.view(
        db,
        identity=principal.identity,
        record_id=record_id,
        origin=get_request_context(request),
    )
    if isinstance(outcome, NotFoundOrUnauthorized):
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Record not found"})
    access_level = "full" if isinstance(outcome, FullAccess) else "redacted"
    return {"access_level": access_level, **outcome.view}
