from __future__ import annotations

from caseguard.domain.models import AuditEvent
from caseguard.persistence.db import SessionLocal
from caseguard.persistence.repos import audit as audit_repo


async def fetch_events(
    *,
    event_type: str | None = None,
    actor_id: str | None = None,
    resource_id: str | None = None,
) -> list[AuditEvent]:
    # Read through a separate session, the way investigators would.
    async with SessionLocal() as session:
        events = await audit_repo.list_events(
            session,
            event_type=event_type,
            actor_id=actor_id,
            resource_id=resource_id,
            limit=1000,
        )
    return list(reversed(events))
