from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from caseguard.domain.models import AuditEvent


async def list_events(
    session: AsyncSession,
    *,
    actor_id: str | None = None,
    event_type: str | None = None,
    outcome: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditEvent]:
    # Newest first so investigations start from the latest decision.
    stmt = select(AuditEvent)
    if actor_id:
        stmt = stmt.where(AuditEvent.actor_id == actor_id)
    if event_type:
        stmt = stmt.where(AuditEvent.event_type == event_type)
    if outcome:
        stmt = stmt.where(AuditEvent.outcome == outcome)
    if resource_type:
        stmt = stmt.where(AuditEvent.resource_type == resource_type)
    if resource_id:
        stmt = stmt.where(AuditEvent.resource_id == resource_id)
    if occurred_from:
        stmt = stmt.where(AuditEvent.occurred_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(AuditEvent.occurred_at <= occurred_to)

    stmt = stmt.order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_events(
    session: AsyncSession,
    *,
    event_type: str,
    actor_id: str | None = None,
    occurred_from: datetime | None = None,
) -> int:
    stmt = select(func.count()).select_from(AuditEvent).where(AuditEvent.event_type == event_type)
    if actor_id:
        stmt = stmt.where(AuditEvent.actor_id == actor_id)
    if occurred_from:
        stmt = stmt.where(AuditEvent.occurred_at >= occurred_from)
    return int(await session.scalar(stmt) or 0)


async def actors_with_event_count(
    session: AsyncSession,
    *,
    event_type: str,
    occurred_from: datetime,
    min_count: int,
) -> dict[str, int]:
    # Aggregate per actor in the database rather than scanning rows.
    count = func.count(AuditEvent.id)
    result = await session.execute(
        select(AuditEvent.actor_id, count)
        .where(
            AuditEvent.event_type == event_type,
            AuditEvent.occurred_at >= occurred_from,
            AuditEvent.actor_id.is_not(None),
        )
        .group_by(AuditEvent.actor_id)
        .having(count >= min_count)
    )
    return {actor_id: int(total) for actor_id, total in result.all()}


async def list_suspicious_events(
    session: AsyncSession,
    *,
    occurred_from: datetime,
    limit: int = 200,
) -> list[AuditEvent]:
    # Flags from the periodic scans plus every tripped rate limit, newest first.
    stmt = (
        select(AuditEvent)
        .where(
            AuditEvent.occurred_at >= occurred_from,
            or_(AuditEvent.event_type.like("suspicious.%"), AuditEvent.event_type == "abuse.rate_limited"),
        )
        .order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())
