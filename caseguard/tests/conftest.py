from __future__ import annotations

import os
from pathlib import Path
import tempfile

# Settings and the engine are built at import time, so the test database must be
# configured before any caseguard module loads.
_DB_DIR = Path(tempfile.mkdtemp(prefix="caseguard-tests-"))
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR / 'caseguard.db'}")
os.environ.setdefault("PASSWORD_BCRYPT_ROUNDS", "4")
os.environ.setdefault("MAINTENANCE_INTERVAL_S", "0")
os.environ.setdefault("AUDIT_WRITE_TIMEOUT_MS", "10000")

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: E402

from caseguard.persistence.db import SessionLocal, create_all, drop_all, engine  # noqa: E402
from caseguard.services.audit import MemorySpool  # noqa: E402
from caseguard.services.gate import GateServices, build_gate  # noqa: E402
from caseguard.tests.utils.clock import FakeClock  # noqa: E402


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def database() -> None:
    # Fresh schema per test; dispose so pooled connections never cross event loops.
    await create_all()
    yield
    await drop_all()
    await engine.dispose()


@pytest.fixture
async def session(database) -> AsyncSession:
    async with SessionLocal() as db_session:
        yield db_session


@pytest.fixture
def gate(clock: FakeClock) -> GateServices:
    # New gate per test so in-memory rate windows never leak between tests.
    return build_gate(clock=clock, spool=MemorySpool(1000))
