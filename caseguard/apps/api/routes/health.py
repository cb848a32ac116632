from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from caseguard.apps.api.deps import get_gate
from caseguard.services.gate import GateServices


router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    vault_mode: str
    audit_pending: int


@router.get("/health")
async def health(gate: GateServices = Depends(get_gate)) -> HealthResponse:
    # Surface deferred audit entries so operators notice a failing sink.
    return HealthResponse(status="ok", vault_mode=gate.vault.mode, audit_pending=gate.audit.pending)
