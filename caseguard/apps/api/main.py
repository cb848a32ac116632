from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
import logging
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from caseguard.apps.api.errors import (
    http_exception_handler,
    starlette_http_exception_handler,
    storage_unavailable_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from caseguard.apps.api.routes.admin import router as admin_router
from caseguard.apps.api.routes.auth import router as auth_router
from caseguard.apps.api.routes.health import router as health_router
from caseguard.apps.api.routes.mfa import router as mfa_router
from caseguard.apps.api.routes.records import router as records_router
from caseguard.apps.api.routes.sessions import router as sessions_router
from caseguard.core.config import get_settings
from caseguard.core.errors import StorageUnavailable
from caseguard.core.logging import configure_logging
from caseguard.persistence.db import SessionLocal, create_all
from caseguard.services.gate import GateServices, build_gate
from caseguard.services.maintenance import run_sweeps


logger = logging.getLogger(__name__)


async def _maintenance_loop(gate: GateServices, interval_s: int) -> None:
    # Periodic sweeps; one failed pass must not stop the next.
    while True:
        await asyncio.sleep(interval_s)
        try:
            async with SessionLocal() as session:
                await run_sweeps(gate=gate, session=session)
        except Exception:
            logger.exception("maintenance_sweep_failed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    gate: GateServices = app.state.gate
    if settings.database_create_all:
        await create_all()
    gate.audit.announce_policy()
    task = None
    if settings.maintenance_interval_s > 0:
        task = asyncio.create_task(_maintenance_loop(gate, settings.maintenance_interval_s))
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        flushed = await gate.audit.flush_pending()
        if gate.audit.pending:
            logger.error("audit_entries_unflushed_at_shutdown pending=%s", gate.audit.pending)
        logger.info("api_shutdown audit_flushed=%s", flushed)


def create_app(gate: GateServices | None = None) -> FastAPI:
    configure_logging()
    app = FastAPI(title="CaseGuard API", lifespan=lifespan)
    app.state.gate = gate or build_gate()

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, starlette_http_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StorageUnavailable, storage_unavailable_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router)
    app.include_router(auth_router)
    app.include_router(sessions_router)
    app.include_router(records_router)
    app.include_router(mfa_router)
    app.include_router(admin_router)
    return app


app = create_app()
