from __future__ import annotations

import logging
from typing import Literal

from sqlalchemy.ext.asyncio import AsyncSession

from caseguard.services.gate import GateServices
from caseguard.services.suspicious import detect_anomalous_creation, detect_suspicious_browsing


logger = logging.getLogger(__name__)

MaintenanceTask = Literal[
    "sweep_rate_windows",
    "purge_sessions",
    "flush_audit",
    "detect_suspicious_browsing",
    "detect_anomalous_creation",
]

MAINTENANCE_TASKS: tuple[MaintenanceTask, ...] = (
    "sweep_rate_windows",
    "purge_sessions",
    "flush_audit",
    "detect_suspicious_browsing",
    "detect_anomalous_creation",
)


async def run_task(task: MaintenanceTask, *, gate: GateServices, session: AsyncSession) -> int:
    # Each task returns the number of items it touched.
    if task == "sweep_rate_windows":
        return gate.abuse.sweep()
    if task == "purge_sessions":
        return await gate.sessions.purge_expired(session)
    if task == "flush_audit":
        return await gate.audit.flush_pending()
    if task == "detect_suspicious_browsing":
        return len(await detect_suspicious_browsing(session, audit=gate.audit, now=gate.abuse.now()))
    if task == "detect_anomalous_creation":
        return len(await detect_anomalous_creation(session, audit=gate.audit, now=gate.abuse.now()))
    raise ValueError(f"unknown maintenance task: {task}")


async def run_sweeps(
    *,
    gate: GateServices,
    session: AsyncSession,
    tasks: tuple[MaintenanceTask, ...] = MAINTENANCE_TASKS,
) -> dict[str, int]:
    results: dict[str, int] = {}
    for task in tasks:
        results[task] = await run_task(task, gate=gate, session=session)
        logger.info("maintenance_task_completed task=%s count=%s", task, results[task])
    return results
