from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from caseguard.core.config import get_settings
from caseguard.domain.models import Identity, Record, Role
from caseguard.persistence.repos.audit import actors_with_event_count, count_events
from caseguard.services.audit import SYSTEM_ORIGIN, AuditTrail


logger = logging.getLogger(__name__)

SEVERITY_HIGH = "high"
SEVERITY_MEDIUM = "medium"


async def detect_suspicious_browsing(
    session: AsyncSession,
    *,
    audit: AuditTrail,
    now: datetime | None = None,
) -> list[str]:
    """Flag organization staff who open many full records without claiming any.

    Returns the flagged identity ids; each gets one ``suspicious.browsing`` entry.
    """
    settings = get_settings()
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(hours=settings.suspicious_view_window_hours)
    heavy_viewers = await actors_with_event_count(
        session,
        event_type="record.access.full",
        occurred_from=since,
        min_count=settings.suspicious_view_threshold,
    )
    if not heavy_viewers:
        return []
    staff_ids = set(
        (
            await session.execute(
                select(Identity.id).where(
                    Identity.id.in_(list(heavy_viewers)),
                    Identity.role == Role.ORG_STAFF.value,
                )
            )
        ).scalars()
    )
    flagged: list[str] = []
    for actor_id in sorted(staff_ids):
        claims = await count_events(session, event_type="record.claimed", actor_id=actor_id, occurred_from=since)
        if claims:
            continue
        flagged.append(actor_id)
        logger.warning("suspicious_browsing actor_id=%s full_views=%s", actor_id, heavy_viewers[actor_id])
        await audit.record(
            event_type="suspicious.browsing",
            outcome="flagged",
            actor_id=actor_id,
            actor_role=Role.ORG_STAFF.value,
            resource_type="identity",
            resource_id=actor_id,
            origin=SYSTEM_ORIGIN,
            metadata={
                "severity": SEVERITY_HIGH,
                "full_views": heavy_viewers[actor_id],
                "window_hours": settings.suspicious_view_window_hours,
            },
        )
    return flagged


async def detect_anomalous_creation(
    session: AsyncSession,
    *,
    audit: AuditTrail,
    now: datetime | None = None,
) -> list[str]:
    # Bulk record creation by a single identity often means scripted abuse.
    settings = get_settings()
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(days=settings.suspicious_creation_window_days)
    created = func.count(Record.id)
    result = await session.execute(
        select(Record.owner_id, created)
        .where(Record.created_at >= since, Record.owner_id.is_not(None))
        .group_by(Record.owner_id)
        .having(created >= settings.suspicious_creation_threshold)
    )
    flagged: list[str] = []
    for owner_id, total in result.all():
        flagged.append(owner_id)
        logger.warning("suspicious_creation_rate owner_id=%s created=%s", owner_id, total)
        await audit.record(
            event_type="suspicious.creation_rate",
            outcome="flagged",
            actor_id=owner_id,
            resource_type="identity",
            resource_id=owner_id,
            origin=SYSTEM_ORIGIN,
            metadata={
                "severity": SEVERITY_MEDIUM,
                "created": int(total),
                "window_days": settings.suspicious_creation_window_days,
            },
        )
    return sorted(flagged)
