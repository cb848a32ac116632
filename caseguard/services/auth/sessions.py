from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
import secrets
from typing import Callable
from uuid import uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from caseguard.core.config import Settings, get_settings
from caseguard.domain.models import AuthSession, Identity
from caseguard.domain.outcomes import SessionInvalid, SessionInvalidReason, SessionOutcome, SessionValid
from caseguard.services.audit import AuditTrail, RequestOrigin
from caseguard.services.crypto.utils import sha256_hex
from caseguard.services.locks import KeyedLocks


logger = logging.getLogger(__name__)

TOKEN_PREFIX = "cgs_"


def _utc_now() -> datetime:
    # Keep session timestamps in UTC for consistent expiry checks.
    return datetime.now(timezone.utc)


def is_session_token(raw_token: str) -> bool:
    return raw_token.startswith(TOKEN_PREFIX)


def hash_session_token(raw_token: str) -> str:
    # Use SHA-256 for deterministic, non-reversible token storage.
    return sha256_hex(raw_token.encode("utf-8"))


def generate_session_token() -> tuple[str, str, str, str]:
    # Embed a short id prefix to support operational tracing without plaintext tokens.
    token_id = uuid4().hex
    secret = secrets.token_urlsafe(32)
    raw_token = f"{TOKEN_PREFIX}{token_id}_{secret}"
    token_prefix = raw_token[:12]
    return token_id, raw_token, token_prefix, hash_session_token(raw_token)


class SessionAuthority:
    """Issues, validates and revokes bearer sessions.

    Only the token fingerprint is stored; the raw token is returned once at
    creation. Creation is serialized per identity so the concurrent-session
    cap holds under parallel logins.
    """

    def __init__(
        self,
        *,
        audit: AuditTrail,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
        locks: KeyedLocks | None = None,
    ) -> None:
        self._audit = audit
        self._settings = settings or get_settings()
        self._clock = clock or _utc_now
        self._locks = locks or KeyedLocks()

    async def create(
        self,
        session: AsyncSession,
        *,
        identity_id: str,
        origin: RequestOrigin,
    ) -> tuple[str, AuthSession]:
        # Commits the caller's transaction together with the new session row.
        cap = self._settings.session_max_concurrent
        async with self._locks.hold(identity_id):
            now = self._clock()
            evicted: list[AuthSession] = []
            if cap > 0:
                active = await self._active_sessions(session, identity_id, now)
                overflow = len(active) - (cap - 1)
                if overflow > 0:
                    evicted = active[:overflow]
                    for row in evicted:
                        row.revoked_at = now
            token_id, raw_token, token_prefix, token_hash = generate_session_token()
            row = AuthSession(
                id=token_id,
                identity_id=identity_id,
                token_prefix=token_prefix,
                token_hash=token_hash,
                created_at=now,
                expires_at=now + timedelta(hours=self._settings.session_ttl_hours),
                last_activity_at=now,
                revoked_at=None,
                ip_address=origin.ip_address,
                user_agent=origin.user_agent,
            )
            session.add(row)
            await session.commit()
        for old in evicted:
            logger.info("session_evicted identity_id=%s session_id=%s", identity_id, old.id)
            await self._audit.record(
                event_type="session.evicted",
                outcome="success",
                actor_id=identity_id,
                resource_type="session",
                resource_id=old.id,
                origin=origin,
                metadata={"reason": "concurrent_session_cap", "cap": cap, "replaced_by": row.id},
            )
        return raw_token, row

    async def validate(self, session: AsyncSession, raw_token: str | None) -> SessionOutcome:
        """Resolve ``raw_token`` to its live session and identity.

        A valid session has its activity timestamp refreshed.
        """
        if not raw_token or not is_session_token(raw_token):
            return SessionInvalid(SessionInvalidReason.UNKNOWN)
        result = await session.execute(
            select(AuthSession, Identity)
            .join(Identity, Identity.id == AuthSession.identity_id)
            .where(AuthSession.token_hash == hash_session_token(raw_token))
            .execution_options(populate_existing=True)
        )
        row = result.first()
        if row is None:
            return SessionInvalid(SessionInvalidReason.UNKNOWN)
        auth_session, identity = row
        now = self._clock()
        if auth_session.revoked_at is not None:
            return SessionInvalid(SessionInvalidReason.REVOKED)
        if auth_session.expires_at <= now:
            return SessionInvalid(SessionInvalidReason.EXPIRED)
        if not identity.is_active:
            return SessionInvalid(SessionInvalidReason.INACTIVE)
        auth_session.last_activity_at = now
        await session.commit()
        return SessionValid(session=auth_session, identity=identity)

    async def revoke(
        self,
        session: AsyncSession,
        *,
        session_id: str,
        identity_id: str,
        origin: RequestOrigin,
    ) -> bool:
        # Identities may only revoke their own sessions; foreign ids look missing.
        row = await session.get(AuthSession, session_id, populate_existing=True)
        if row is None or row.identity_id != identity_id:
            return False
        if row.revoked_at is None:
            row.revoked_at = self._clock()
            await session.commit()
            await self._audit.record(
                event_type="session.revoked",
                outcome="success",
                actor_id=identity_id,
                resource_type="session",
                resource_id=session_id,
                origin=origin,
            )
        return True

    async def revoke_all(
        self,
        session: AsyncSession,
        *,
        identity_id: str,
        origin: RequestOrigin,
        reason: str = "user_request",
        emit_audit: bool = True,
    ) -> int:
        return await self._revoke_where(
            session,
            identity_id=identity_id,
            keep_session_id=None,
            origin=origin,
            reason=reason,
            emit_audit=emit_audit,
        )

    async def revoke_all_except(
        self,
        session: AsyncSession,
        *,
        identity_id: str,
        current_token: str,
        origin: RequestOrigin,
    ) -> int:
        keep_id = await session.scalar(
            select(AuthSession.id).where(AuthSession.token_hash == hash_session_token(current_token))
        )
        return await self._revoke_where(
            session,
            identity_id=identity_id,
            keep_session_id=keep_id,
            origin=origin,
            reason="revoke_others",
            emit_audit=True,
        )

    async def list_active(self, session: AsyncSession, *, identity_id: str) -> list[AuthSession]:
        rows = await self._active_sessions(session, identity_id, self._clock())
        return list(reversed(rows))

    async def get_owned(
        self, session: AsyncSession, *, session_id: str, identity_id: str
    ) -> AuthSession | None:
        # Revoked and expired rows stay visible to their owner until purged.
        return await session.scalar(
            select(AuthSession)
            .where(AuthSession.id == session_id, AuthSession.identity_id == identity_id)
            .execution_options(populate_existing=True)
        )

    def is_active(self, row: AuthSession) -> bool:
        return row.revoked_at is None and row.expires_at > self._clock()

    async def purge_expired(self, session: AsyncSession) -> int:
        # Keep expired rows for a retention period so investigations can see them.
        cutoff = self._clock() - timedelta(days=self._settings.session_retention_days)
        result = await session.execute(delete(AuthSession).where(AuthSession.expires_at < cutoff))
        await session.commit()
        purged = result.rowcount or 0
        if purged:
            logger.info("sessions_purged count=%s cutoff=%s", purged, cutoff.isoformat())
        return purged

    async def _active_sessions(
        self, session: AsyncSession, identity_id: str, now: datetime
    ) -> list[AuthSession]:
        # Oldest first so eviction can take from the front.
        result = await session.execute(
            select(AuthSession)
            .where(
                AuthSession.identity_id == identity_id,
                AuthSession.revoked_at.is_(None),
                AuthSession.expires_at > now,
            )
            .order_by(AuthSession.created_at.asc(), AuthSession.id.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _revoke_where(
        self,
        session: AsyncSession,
        *,
        identity_id: str,
        keep_session_id: str | None,
        origin: RequestOrigin,
        reason: str,
        emit_audit: bool,
    ) -> int:
        now = self._clock()
        async with self._locks.hold(identity_id):
            statement = update(AuthSession).where(
                AuthSession.identity_id == identity_id,
                AuthSession.revoked_at.is_(None),
            )
            if keep_session_id is not None:
                statement = statement.where(AuthSession.id != keep_session_id)
            result = await session.execute(
                statement.values(revoked_at=now).execution_options(synchronize_session=False)
            )
            await session.commit()
        revoked = result.rowcount or 0
        logger.info("sessions_revoked identity_id=%s count=%s reason=%s", identity_id, revoked, reason)
        if emit_audit:
            await self._audit.record(
                event_type="session.revoked_all",
                outcome="success",
                actor_id=identity_id,
                resource_type="identity",
                resource_id=identity_id,
                origin=origin,
                metadata={"count": revoked, "reason": reason, "kept_session_id": keep_session_id},
            )
        return revoked
