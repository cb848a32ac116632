from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from caseguard.core.errors import StorageUnavailable
from caseguard.domain.models import Identity, LoginAttempt
from caseguard.domain.outcomes import (
    Authenticated,
    MfaRequired,
    RateLimited,
    RejectReason,
    Rejected,
    SessionInvalid,
    SessionInvalidReason,
    SessionValid,
)
from caseguard.persistence.db import SessionLocal
from caseguard.services.audit import RequestOrigin
from caseguard.services.auth.totp import generate_secret, totp
from caseguard.tests.utils.audit import fetch_events
from caseguard.tests.utils.seed import DEFAULT_PASSWORD, create_identity


ORIGIN = RequestOrigin(request_id="req-test", ip_address="203.0.113.7", user_agent="pytest")


async def _login(gate, session, email: str = "a@x.org", password: str = DEFAULT_PASSWORD, mfa_code=None):
    return await gate.credentials.login(
        session, email=email, password=password, mfa_code=mfa_code, origin=ORIGIN
    )


@pytest.mark.asyncio
async def test_valid_credentials_issue_session_and_one_audit_entry(session, gate) -> None:
    identity = await create_identity(session, email="a@x.org")

    outcome = await _login(gate, session)

    assert isinstance(outcome, Authenticated)
    assert outcome.identity_id == identity.id
    assert outcome.token.startswith("cgs_")
    assert outcome.expires_at == gate.abuse.now() + timedelta(hours=24)
    validated = await gate.sessions.validate(session, outcome.token)
    assert isinstance(validated, SessionValid)

    login_events = [e for e in await fetch_events(actor_id=identity.id) if e.event_type.startswith("auth.login.")]
    assert [e.event_type for e in login_events] == ["auth.login.success"]
    assert login_events[0].ip_address == "203.0.113.7"


@pytest.mark.asyncio
async def test_remaining_attempts_hint_and_lockout_on_fifth_failure(session, gate) -> None:
    identity = await create_identity(session, email="a@x.org")

    hints = []
    for _ in range(4):
        outcome = await _login(gate, session, password="wrong-password")
        assert isinstance(outcome, Rejected)
        assert outcome.reason == RejectReason.INVALID_CREDENTIALS
        hints.append(outcome.remaining_attempts)
    assert hints == [None, 3, 2, 1]

    fifth = await _login(gate, session, password="wrong-password")
    assert fifth == Rejected(RejectReason.LOCKED, retry_after_s=30 * 60)

    # Even the correct password is refused while locked.
    sixth = await _login(gate, session)
    assert isinstance(sixth, Rejected)
    assert sixth.reason == RejectReason.LOCKED
    assert sixth.retry_after_s > 0

    refreshed = await session.scalar(
        select(Identity).where(Identity.id == identity.id).execution_options(populate_existing=True)
    )
    assert refreshed.failed_login_attempts == 5
    assert refreshed.locked_until == gate.abuse.now() + timedelta(minutes=30)

    failures = await fetch_events(event_type="auth.login.failure", actor_id=identity.id)
    assert len(failures) == 6
    assert [e.metadata_json.get("lockout_triggered") for e in failures[:5]] == [False, False, False, False, True]
    assert failures[5].metadata_json["reason"] == "locked"


@pytest.mark.asyncio
async def test_lockout_lifts_after_duration(session, gate, clock) -> None:
    await create_identity(session, email="a@x.org")
    for _ in range(5):
        await _login(gate, session, password="wrong-password")

    clock.advance(minutes=29)
    assert (await _login(gate, session)).reason == RejectReason.LOCKED

    clock.advance(minutes=2)
    outcome = await _login(gate, session)
    assert isinstance(outcome, Authenticated)
    identity = await session.scalar(select(Identity).where(Identity.email == "a@x.org"))
    assert identity.failed_login_attempts == 0
    assert identity.locked_until is None


@pytest.mark.asyncio
async def test_successful_login_resets_failure_count(session, gate, clock) -> None:
    await create_identity(session, email="a@x.org")
    for _ in range(3):
        clock.advance(seconds=1)
        await _login(gate, session, password="wrong-password")
    clock.advance(seconds=1)
    assert isinstance(await _login(gate, session), Authenticated)

    outcomes = []
    for _ in range(4):
        clock.advance(seconds=1)
        outcomes.append(await _login(gate, session, password="wrong-password"))
    assert [o.reason for o in outcomes] == [RejectReason.INVALID_CREDENTIALS] * 4
    assert outcomes[-1].remaining_attempts == 1


@pytest.mark.asyncio
async def test_failures_outside_window_do_not_accumulate(session, gate, clock) -> None:
    await create_identity(session, email="a@x.org")
    for _ in range(4):
        await _login(gate, session, password="wrong-password")
    clock.advance(minutes=31)
    outcome = await _login(gate, session, password="wrong-password")
    assert outcome.reason == RejectReason.INVALID_CREDENTIALS
    assert outcome.remaining_attempts is None


@pytest.mark.asyncio
async def test_unknown_email_is_rejected_then_throttled(session, gate) -> None:
    outcomes = [await _login(gate, session, email="ghost@x.org", password="guess") for _ in range(5)]
    assert all(o.reason == RejectReason.INVALID_CREDENTIALS for o in outcomes)
    assert [o.remaining_attempts for o in outcomes] == [None, 3, 2, 1, None]

    throttled = await _login(gate, session, email="GHOST@x.org", password="guess")
    assert throttled == RateLimited(retry_after_s=15 * 60)

    attempts = (await session.execute(select(LoginAttempt))).scalars().all()
    assert len(attempts) == 5
    assert all(attempt.identity_id is None for attempt in attempts)
    assert len(await fetch_events(event_type="auth.login.rate_limited")) == 1


@pytest.mark.asyncio
async def test_expired_password_is_rejected_before_verification(session, gate, clock) -> None:
    identity = await create_identity(
        session, email="a@x.org", password_expires_at=clock() - timedelta(days=1)
    )
    outcome = await _login(gate, session, password="wrong-password")
    assert outcome == Rejected(RejectReason.EXPIRED)
    await session.refresh(identity)
    assert identity.failed_login_attempts == 0


@pytest.mark.asyncio
async def test_inactive_identity_is_rejected(session, gate) -> None:
    await create_identity(session, email="a@x.org", is_active=False)
    assert await _login(gate, session) == Rejected(RejectReason.INACTIVE)


@pytest.mark.asyncio
async def test_mfa_flow_requires_valid_code(session, gate, clock) -> None:
    secret = generate_secret()
    await create_identity(session, email="a@x.org", mfa_secret=secret, mfa_enabled=True)

    pending = await _login(gate, session)
    assert isinstance(pending, MfaRequired)

    wrong_code = str((int(totp(secret, clock().timestamp())) + 1) % 1_000_000).zfill(6)
    bad = await _login(gate, session, mfa_code=wrong_code)
    assert bad.reason == RejectReason.MFA_INVALID

    good = await _login(gate, session, mfa_code=totp(secret, clock().timestamp()))
    assert isinstance(good, Authenticated)
    assert len(await fetch_events(event_type="auth.login.mfa_required")) == 1


@pytest.mark.asyncio
async def test_wrong_mfa_codes_count_toward_lockout_until_full_login(session, gate, clock) -> None:
    secret = generate_secret()
    identity = await create_identity(session, email="a@x.org", mfa_secret=secret, mfa_enabled=True)
    wrong_code = str((int(totp(secret, clock().timestamp())) + 1) % 1_000_000).zfill(6)

    for _ in range(3):
        assert (await _login(gate, session, password="wrong")).reason == RejectReason.INVALID_CREDENTIALS

    # A correct password alone is not a full authentication.
    assert isinstance(await _login(gate, session), MfaRequired)
    await session.refresh(identity)
    assert identity.failed_login_attempts == 3

    assert (await _login(gate, session, mfa_code=wrong_code)).reason == RejectReason.MFA_INVALID
    locked = await _login(gate, session, mfa_code=wrong_code)
    assert locked == Rejected(RejectReason.LOCKED, retry_after_s=1800)

    clock.advance(minutes=31)
    outcome = await _login(gate, session, mfa_code=totp(secret, clock().timestamp()))

    assert isinstance(outcome, Authenticated)
    await session.refresh(identity)
    assert identity.failed_login_attempts == 0
    assert identity.locked_until is None


@pytest.mark.asyncio
async def test_wrong_password_never_reveals_mfa_requirement(session, gate) -> None:
    await create_identity(session, email="a@x.org", mfa_secret=generate_secret(), mfa_enabled=True)
    outcome = await _login(gate, session, password="wrong-password")
    assert outcome.reason == RejectReason.INVALID_CREDENTIALS


@pytest.mark.asyncio
async def test_lockout_revokes_existing_sessions(session, gate, clock) -> None:
    await create_identity(session, email="a@x.org")
    first = await _login(gate, session)
    for _ in range(5):
        clock.advance(seconds=1)
        await _login(gate, session, password="wrong-password")

    assert await gate.sessions.validate(session, first.token) == SessionInvalid(SessionInvalidReason.REVOKED)
    [triggering] = [
        e for e in await fetch_events(event_type="auth.login.failure") if e.metadata_json.get("lockout_triggered")
    ]
    assert triggering.metadata_json["sessions_revoked"] == 1


@pytest.mark.asyncio
async def test_concurrent_failures_lock_exactly_once(session, gate) -> None:
    await create_identity(session, email="a@x.org")

    async def attempt():
        async with SessionLocal() as own_session:
            return await gate.credentials.login(
                own_session, email="a@x.org", password="wrong-password", origin=ORIGIN
            )

    outcomes = await asyncio.gather(*(attempt() for _ in range(5)))
    reasons = sorted(o.reason.value for o in outcomes)
    assert reasons.count(RejectReason.LOCKED.value) == 1
    assert reasons.count(RejectReason.INVALID_CREDENTIALS.value) == 4


@pytest.mark.asyncio
async def test_admin_unlock_clears_lockout(session, gate) -> None:
    admin = await create_identity(session, email="admin@x.org")
    identity = await create_identity(session, email="a@x.org")
    for _ in range(5):
        await _login(gate, session, password="wrong-password")

    await gate.credentials.unlock(session, identity=identity, actor=admin, origin=ORIGIN)

    assert isinstance(await _login(gate, session), Authenticated)
    [event] = await fetch_events(event_type="auth.account.unlocked")
    assert event.actor_id == admin.id
    assert event.metadata_json["was_locked"] is True


@pytest.mark.asyncio
async def test_suspicious_ip_after_many_failures(session, gate) -> None:
    for index in range(20):
        await _login(gate, session, email=f"user{index}@x.org", password="guess")
    assert await gate.abuse.is_suspicious_ip(session, "203.0.113.7")
    assert not await gate.abuse.is_suspicious_ip(session, "198.51.100.1")
    failures = await fetch_events(event_type="auth.login.failure")
    assert "suspicious_ip" not in failures[18].metadata_json
    assert failures[19].metadata_json["suspicious_ip"] is True


@pytest.mark.asyncio
async def test_storage_failure_surfaces_as_unavailable(session, gate, monkeypatch) -> None:
    async def broken_scalar(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("database is down"))

    monkeypatch.setattr(session, "scalar", broken_scalar)
    with pytest.raises(StorageUnavailable):
        await _login(gate, session)
    [event] = await fetch_events(event_type="auth.login.error")
    assert event.error_code == "STORAGE_UNAVAILABLE"
