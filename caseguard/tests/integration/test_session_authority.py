from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select

from caseguard.domain.models import AuthSession
from caseguard.domain.outcomes import SessionInvalid, SessionInvalidReason, SessionValid
from caseguard.persistence.db import SessionLocal
from caseguard.services.audit import RequestOrigin
from caseguard.services.auth.sessions import hash_session_token
from caseguard.tests.utils.audit import fetch_events
from caseguard.tests.utils.seed import create_identity


ORIGIN = RequestOrigin(request_id="req-sessions", ip_address="198.51.100.4", user_agent="pytest")


@pytest.mark.asyncio
async def test_only_token_fingerprint_is_stored(session, gate) -> None:
    identity = await create_identity(session, email="a@x.org")
    raw_token, row = await gate.sessions.create(session, identity_id=identity.id, origin=ORIGIN)

    assert row.token_hash == hash_session_token(raw_token)
    assert row.token_hash != raw_token
    assert raw_token.startswith(row.token_prefix)
    assert row.ip_address == "198.51.100.4"


@pytest.mark.asyncio
async def test_validate_refreshes_activity(session, gate, clock) -> None:
    identity = await create_identity(session, email="a@x.org")
    raw_token, row = await gate.sessions.create(session, identity_id=identity.id, origin=ORIGIN)

    clock.advance(minutes=10)
    outcome = await gate.sessions.validate(session, raw_token)

    assert isinstance(outcome, SessionValid)
    assert outcome.identity.id == identity.id
    assert outcome.session.last_activity_at == clock()


@pytest.mark.asyncio
async def test_unknown_and_malformed_tokens_are_rejected(session, gate) -> None:
    unknown = SessionInvalid(SessionInvalidReason.UNKNOWN)
    assert await gate.sessions.validate(session, None) == unknown
    assert await gate.sessions.validate(session, "not-a-session-token") == unknown
    assert await gate.sessions.validate(session, "cgs_deadbeef_nope") == unknown


@pytest.mark.asyncio
async def test_sessions_expire_after_ttl(session, gate, clock) -> None:
    identity = await create_identity(session, email="a@x.org")
    raw_token, _ = await gate.sessions.create(session, identity_id=identity.id, origin=ORIGIN)

    clock.advance(hours=23, minutes=59)
    assert isinstance(await gate.sessions.validate(session, raw_token), SessionValid)
    clock.advance(minutes=1)
    assert await gate.sessions.validate(session, raw_token) == SessionInvalid(SessionInvalidReason.EXPIRED)


@pytest.mark.asyncio
async def test_disabled_identity_invalidates_sessions(session, gate) -> None:
    identity = await create_identity(session, email="a@x.org")
    raw_token, _ = await gate.sessions.create(session, identity_id=identity.id, origin=ORIGIN)
    identity.is_active = False
    await session.commit()

    assert await gate.sessions.validate(session, raw_token) == SessionInvalid(SessionInvalidReason.INACTIVE)


@pytest.mark.asyncio
async def test_sixth_session_evicts_the_oldest(session, gate, clock) -> None:
    identity = await create_identity(session, email="a@x.org")
    tokens = []
    rows = []
    for _ in range(6):
        clock.advance(seconds=1)
        raw_token, row = await gate.sessions.create(session, identity_id=identity.id, origin=ORIGIN)
        tokens.append(raw_token)
        rows.append(row)

    assert await gate.sessions.validate(session, tokens[0]) == SessionInvalid(SessionInvalidReason.REVOKED)
    for raw_token in tokens[1:]:
        assert isinstance(await gate.sessions.validate(session, raw_token), SessionValid)
    assert len(await gate.sessions.list_active(session, identity_id=identity.id)) == 5

    [evicted] = await fetch_events(event_type="session.evicted")
    assert evicted.resource_id == rows[0].id
    assert evicted.metadata_json["replaced_by"] == rows[5].id
    assert evicted.metadata_json["cap"] == 5


@pytest.mark.asyncio
async def test_parallel_logins_respect_the_cap(session, gate) -> None:
    identity = await create_identity(session, email="a@x.org")

    async def create_one() -> None:
        async with SessionLocal() as own_session:
            await gate.sessions.create(own_session, identity_id=identity.id, origin=ORIGIN)

    await asyncio.gather(*(create_one() for _ in range(8)))

    active = await session.scalar(
        select(func.count())
        .select_from(AuthSession)
        .where(AuthSession.identity_id == identity.id, AuthSession.revoked_at.is_(None))
    )
    assert active == 5


@pytest.mark.asyncio
async def test_revoke_is_limited_to_own_sessions(session, gate) -> None:
    owner = await create_identity(session, email="a@x.org")
    other = await create_identity(session, email="b@x.org")
    raw_token, row = await gate.sessions.create(session, identity_id=owner.id, origin=ORIGIN)

    assert not await gate.sessions.revoke(session, session_id=row.id, identity_id=other.id, origin=ORIGIN)
    assert isinstance(await gate.sessions.validate(session, raw_token), SessionValid)

    assert await gate.sessions.revoke(session, session_id=row.id, identity_id=owner.id, origin=ORIGIN)
    assert await gate.sessions.validate(session, raw_token) == SessionInvalid(SessionInvalidReason.REVOKED)
    assert len(await fetch_events(event_type="session.revoked")) == 1


@pytest.mark.asyncio
async def test_revoke_all_except_keeps_current_session(session, gate, clock) -> None:
    identity = await create_identity(session, email="a@x.org")
    tokens = []
    for _ in range(3):
        clock.advance(seconds=1)
        raw_token, _ = await gate.sessions.create(session, identity_id=identity.id, origin=ORIGIN)
        tokens.append(raw_token)

    revoked = await gate.sessions.revoke_all_except(
        session, identity_id=identity.id, current_token=tokens[1], origin=ORIGIN
    )

    assert revoked == 2
    assert isinstance(await gate.sessions.validate(session, tokens[1]), SessionValid)
    assert isinstance(await gate.sessions.validate(session, tokens[0]), SessionInvalid)
    assert isinstance(await gate.sessions.validate(session, tokens[2]), SessionInvalid)


@pytest.mark.asyncio
async def test_revoke_all_ends_every_session(session, gate) -> None:
    identity = await create_identity(session, email="a@x.org")
    for _ in range(2):
        await gate.sessions.create(session, identity_id=identity.id, origin=ORIGIN)

    assert await gate.sessions.revoke_all(session, identity_id=identity.id, origin=ORIGIN) == 2
    assert await gate.sessions.list_active(session, identity_id=identity.id) == []
    [event] = await fetch_events(event_type="session.revoked_all")
    assert event.metadata_json["count"] == 2


@pytest.mark.asyncio
async def test_purge_keeps_recently_expired_sessions(session, gate, clock) -> None:
    identity = await create_identity(session, email="a@x.org")
    await gate.sessions.create(session, identity_id=identity.id, origin=ORIGIN)

    clock.advance(hours=24, days=6)
    assert await gate.sessions.purge_expired(session) == 0
    clock.advance(days=2)
    assert await gate.sessions.purge_expired(session) == 1
    remaining = await session.scalar(select(func.count()).select_from(AuthSession))
    assert remaining == 0
