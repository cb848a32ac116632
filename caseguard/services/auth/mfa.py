from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from caseguard.core.config import Settings, get_settings
from caseguard.core.errors import MfaAlreadyEnabled, MfaNotConfigured
from caseguard.domain.models import Identity
from caseguard.services.audit import AuditTrail, RequestOrigin
from caseguard.services.auth.totp import generate_secret, provisioning_uri, verify_totp


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class MfaSetup:
    secret: str
    provisioning_uri: str


class MfaEnrollment:
    """TOTP enrollment for an authenticated identity.

    A provisioned secret only takes effect after ``enable`` proves the
    authenticator produces matching codes.
    """

    def __init__(
        self,
        *,
        audit: AuditTrail,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._audit = audit
        self._settings = settings or get_settings()
        self._clock = clock or _utc_now

    async def setup(self, session: AsyncSession, *, identity: Identity, origin: RequestOrigin) -> MfaSetup:
        # Rotating the secret while MFA is active would bypass the second factor.
        if identity.mfa_enabled:
            raise MfaAlreadyEnabled("disable MFA before provisioning a new secret")
        secret = generate_secret()
        identity.mfa_secret = secret
        identity.mfa_enabled = False
        await session.commit()
        await self._audit.record(
            event_type="auth.mfa.setup",
            outcome="success",
            actor_id=identity.id,
            actor_role=identity.role,
            resource_type="identity",
            resource_id=identity.id,
            origin=origin,
        )
        uri = provisioning_uri(secret, account=identity.email, issuer=self._settings.mfa_issuer)
        return MfaSetup(secret=secret, provisioning_uri=uri)

    async def enable(
        self, session: AsyncSession, *, identity: Identity, code: str, origin: RequestOrigin
    ) -> bool:
        if not identity.mfa_secret:
            raise MfaNotConfigured("no MFA secret provisioned")
        if not verify_totp(identity.mfa_secret, code, at=self._clock().timestamp()):
            await self._record(identity, "auth.mfa.enable", "failure", origin)
            return False
        identity.mfa_enabled = True
        await session.commit()
        await self._record(identity, "auth.mfa.enable", "success", origin)
        logger.info("mfa_enabled identity_id=%s", identity.id)
        return True

    async def disable(
        self, session: AsyncSession, *, identity: Identity, code: str, origin: RequestOrigin
    ) -> bool:
        if not identity.mfa_enabled or not identity.mfa_secret:
            raise MfaNotConfigured("MFA is not enabled")
        if not verify_totp(identity.mfa_secret, code, at=self._clock().timestamp()):
            await self._record(identity, "auth.mfa.disable", "failure", origin)
            return False
        identity.mfa_enabled = False
        identity.mfa_secret = None
        await session.commit()
        await self._record(identity, "auth.mfa.disable", "success", origin)
        logger.info("mfa_disabled identity_id=%s", identity.id)
        return True

    async def verify(self, *, identity: Identity, code: str, origin: RequestOrigin) -> bool:
        # Read-only check against the stored secret; enrollment state is untouched.
        if not identity.mfa_secret:
            raise MfaNotConfigured("no MFA secret provisioned")
        valid = verify_totp(identity.mfa_secret, code, at=self._clock().timestamp())
        await self._record(identity, "auth.mfa.verify", "success" if valid else "failure", origin)
        return valid

    async def _record(self, identity: Identity, event_type: str, outcome: str, origin: RequestOrigin) -> None:
        await self._audit.record(
            event_type=event_type,
            outcome=outcome,
            actor_id=identity.id,
            actor_role=identity.role,
            resource_type="identity",
            resource_id=identity.id,
            origin=origin,
            error_code="MFA_INVALID" if outcome == "failure" else None,
        )
