from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from caseguard.core.config import Settings, get_settings
from caseguard.core.errors import StorageUnavailable
from caseguard.domain.models import Identity
from caseguard.domain.outcomes import (
    Authenticated,
    LoginOutcome,
    MfaRequired,
    RejectReason,
    Rejected,
)
from caseguard.services.abuse import AbuseGuard, normalize_email
from caseguard.services.audit import AuditTrail, RequestOrigin
from caseguard.services.auth.passwords import verify_password
from caseguard.services.auth.sessions import SessionAuthority
from caseguard.services.auth.totp import verify_totp
from caseguard.services.locks import KeyedLocks


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CredentialGate:
    """Login state machine: password, lockout and MFA checks ending in a session.

    Attempts for the same email are serialized so failure counting and the
    lockout decision cannot interleave. Every attempt writes exactly one
    ``auth.login.*`` audit entry.
    """

    def __init__(
        self,
        *,
        abuse: AbuseGuard,
        sessions: SessionAuthority,
        audit: AuditTrail,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
        locks: KeyedLocks | None = None,
    ) -> None:
        self._abuse = abuse
        self._sessions = sessions
        self._audit = audit
        self._settings = settings or get_settings()
        self._clock = clock or _utc_now
        self._locks = locks or KeyedLocks()

    async def login(
        self,
        session: AsyncSession,
        *,
        email: str,
        password: str,
        mfa_code: str | None = None,
        origin: RequestOrigin,
    ) -> LoginOutcome:
        async with self._locks.hold(normalize_email(email)):
            try:
                return await self._attempt(
                    session, email=email, password=password, mfa_code=mfa_code, origin=origin
                )
            except SQLAlchemyError as exc:
                logger.error("login_storage_failure request_id=%s", origin.request_id, exc_info=exc)
                await session.rollback()
                await self._audit.record(
                    event_type="auth.login.error",
                    outcome="error",
                    resource_type="identity",
                    origin=origin,
                    metadata={"email": email},
                    error_code="STORAGE_UNAVAILABLE",
                )
                raise StorageUnavailable("identity store unavailable") from exc

    async def _attempt(
        self,
        session: AsyncSession,
        *,
        email: str,
        password: str,
        mfa_code: str | None,
        origin: RequestOrigin,
    ) -> LoginOutcome:
        identity = await session.scalar(
            select(Identity).where(Identity.email == email).execution_options(populate_existing=True)
        )

        if identity is not None and self._abuse.is_locked(identity):
            retry_after = self._abuse.seconds_until_unlock(identity)
            await self._abuse.record_login_attempt(
                session,
                email=email,
                identity=identity,
                successful=False,
                failure_reason=RejectReason.LOCKED.value,
                origin=origin,
            )
            await session.commit()
            await self._audit_failure(
                email,
                identity,
                RejectReason.LOCKED,
                origin,
                {"minutes_remaining": self._abuse.minutes_until_unlock(identity)},
            )
            return Rejected(RejectReason.LOCKED, retry_after_s=retry_after)

        throttled = self._abuse.login_throttled(email)
        if throttled is not None:
            await self._audit.record(
                event_type="auth.login.rate_limited",
                outcome="failure",
                actor_id=identity.id if identity else None,
                resource_type="identity",
                resource_id=identity.id if identity else None,
                origin=origin,
                metadata={"email": email, "retry_after_s": throttled.retry_after_s},
                error_code="RATE_LIMITED",
            )
            return throttled

        if identity is not None:
            expires_at = identity.password_expires_at
            if expires_at is not None and expires_at <= self._clock():
                return await self._reject_without_penalty(session, email, identity, RejectReason.EXPIRED, origin)
            if not identity.is_active:
                return await self._reject_without_penalty(session, email, identity, RejectReason.INACTIVE, origin)

        # bcrypt is CPU bound; keep it off the event loop.
        password_ok = await asyncio.to_thread(
            verify_password, password, identity.password_hash if identity else None
        )
        if not password_ok or identity is None:
            return await self._fail(session, email, identity, RejectReason.INVALID_CREDENTIALS, origin)

        if identity.mfa_enabled and identity.mfa_secret:
            if not mfa_code:
                await self._audit.record(
                    event_type="auth.login.mfa_required",
                    outcome="pending",
                    actor_id=identity.id,
                    actor_role=identity.role,
                    resource_type="identity",
                    resource_id=identity.id,
                    origin=origin,
                )
                return MfaRequired(identity_id=identity.id)
            at = self._clock().timestamp()
            if not verify_totp(identity.mfa_secret, mfa_code, at=at):
                return await self._fail(session, email, identity, RejectReason.MFA_INVALID, origin)

        return await self._succeed(session, email, identity, origin)

    async def _reject_without_penalty(
        self,
        session: AsyncSession,
        email: str,
        identity: Identity,
        reason: RejectReason,
        origin: RequestOrigin,
    ) -> Rejected:
        # Expired or disabled accounts are not guessing attempts; they never count toward lockout.
        await self._abuse.record_login_attempt(
            session,
            email=email,
            identity=identity,
            successful=False,
            failure_reason=reason.value,
            origin=origin,
        )
        await session.commit()
        await self._audit_failure(email, identity, reason, origin, {})
        return Rejected(reason)

    async def _fail(
        self,
        session: AsyncSession,
        email: str,
        identity: Identity | None,
        reason: RejectReason,
        origin: RequestOrigin,
    ) -> Rejected:
        await self._abuse.record_login_attempt(
            session,
            email=email,
            identity=identity,
            successful=False,
            failure_reason=reason.value,
            origin=origin,
        )
        self._abuse.record_login_failure(email)
        metadata: dict[str, Any] = {}
        if identity is not None:
            lockout = await self._abuse.evaluate_lockout(session, identity)
            remaining = max(0, self._settings.lockout_max_failed_attempts - lockout.failed_count)
            metadata["failed_count"] = lockout.failed_count
            metadata["lockout_triggered"] = lockout.triggered
        else:
            lockout = None
            remaining = self._abuse.login_failures_remaining(email)
        if await self._abuse.is_suspicious_ip(session, origin.ip_address):
            metadata["suspicious_ip"] = True
            logger.warning("login_suspicious_ip ip_address=%s", origin.ip_address)
        await session.commit()

        if lockout is not None and lockout.triggered:
            revoked = await self._sessions.revoke_all(
                session,
                identity_id=identity.id,
                origin=origin,
                reason="lockout",
                emit_audit=False,
            )
            metadata["sessions_revoked"] = revoked
            metadata["locked_until"] = lockout.locked_until.isoformat()
            await self._audit_failure(email, identity, reason, origin, metadata)
            return Rejected(RejectReason.LOCKED, retry_after_s=self._abuse.seconds_until_unlock(identity))

        await self._audit_failure(email, identity, reason, origin, metadata)
        hint = remaining if 1 <= remaining <= self._settings.lockout_hint_threshold else None
        return Rejected(reason, remaining_attempts=hint)

    async def _succeed(
        self,
        session: AsyncSession,
        email: str,
        identity: Identity,
        origin: RequestOrigin,
    ) -> Authenticated:
        now = self._clock()
        self._abuse.clear_lockout(identity)
        identity.last_login_at = now
        identity.last_login_ip = origin.ip_address
        await self._abuse.record_login_attempt(
            session,
            email=email,
            identity=identity,
            successful=True,
            failure_reason=None,
            origin=origin,
        )
        self._abuse.clear_login_failures(email)
        raw_token, auth_session = await self._sessions.create(
            session, identity_id=identity.id, origin=origin
        )
        await self._audit.record(
            event_type="auth.login.success",
            outcome="success",
            actor_id=identity.id,
            actor_role=identity.role,
            resource_type="session",
            resource_id=auth_session.id,
            origin=origin,
            metadata={"mfa": bool(identity.mfa_enabled)},
        )
        logger.info("login_succeeded identity_id=%s session_id=%s", identity.id, auth_session.id)
        return Authenticated(
            identity_id=identity.id,
            session_id=auth_session.id,
            token=raw_token,
            expires_at=auth_session.expires_at,
        )

    async def unlock(
        self,
        session: AsyncSession,
        *,
        identity: Identity,
        actor: Identity,
        origin: RequestOrigin,
    ) -> None:
        # Administrative override for an active lockout.
        was_locked = self._abuse.is_locked(identity)
        self._abuse.clear_lockout(identity)
        await session.commit()
        self._abuse.clear_login_failures(identity.email)
        await self._audit.record(
            event_type="auth.account.unlocked",
            outcome="success",
            actor_id=actor.id,
            actor_role=actor.role,
            resource_type="identity",
            resource_id=identity.id,
            origin=origin,
            metadata={"was_locked": was_locked},
        )

    async def _audit_failure(
        self,
        email: str,
        identity: Identity | None,
        reason: RejectReason,
        origin: RequestOrigin,
        metadata: dict[str, Any],
    ) -> None:
        await self._audit.record(
            event_type="auth.login.failure",
            outcome="failure",
            actor_id=identity.id if identity else None,
            actor_role=identity.role if identity else None,
            resource_type="identity",
            resource_id=identity.id if identity else None,
            origin=origin,
            metadata={"email": email, "reason": reason.value, **metadata},
            error_code=reason.value.upper(),
        )
