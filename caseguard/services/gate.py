from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from caseguard.core.config import Settings, get_settings
from caseguard.services.abuse import AbuseGuard
from caseguard.services.access import AccessDecisionEngine
from caseguard.services.audit import AuditSpool, AuditTrail
from caseguard.services.auth.credentials import CredentialGate
from caseguard.services.auth.mfa import MfaEnrollment
from caseguard.services.auth.sessions import SessionAuthority
from caseguard.services.crypto.vault import CryptoVault, get_vault
from caseguard.services.locks import KeyedLocks


@dataclass
class GateServices:
    # One instance per process; rate windows and keyed locks live here.
    vault: CryptoVault
    abuse: AbuseGuard
    audit: AuditTrail
    sessions: SessionAuthority
    credentials: CredentialGate
    mfa: MfaEnrollment
    access: AccessDecisionEngine


def build_gate(
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    settings: Settings | None = None,
    clock: Callable[[], datetime] | None = None,
    vault: CryptoVault | None = None,
    spool: AuditSpool | None = None,
) -> GateServices:
    # Wire the gate components bottom-up so every caller shares the same state.
    if session_factory is None:
        from caseguard.persistence.db import SessionLocal

        session_factory = SessionLocal
    settings = settings or get_settings()
    vault = vault or get_vault()
    audit = AuditTrail(session_factory=session_factory, settings=settings, spool=spool, clock=clock)
    abuse = AbuseGuard(settings=settings, clock=clock)
    identity_locks = KeyedLocks()
    sessions = SessionAuthority(audit=audit, settings=settings, clock=clock, locks=identity_locks)
    credentials = CredentialGate(
        abuse=abuse,
        sessions=sessions,
        audit=audit,
        settings=settings,
        clock=clock,
    )
    return GateServices(
        vault=vault,
        abuse=abuse,
        audit=audit,
        sessions=sessions,
        credentials=credentials,
        mfa=MfaEnrollment(audit=audit, settings=settings, clock=clock),
        access=AccessDecisionEngine(abuse=abuse, vault=vault, audit=audit),
    )
