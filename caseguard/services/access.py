from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from caseguard.core.errors import DecryptionFailed
from caseguard.domain.models import Identity, Organization, OrganizationStatus, Record, RecordPayload, Role
from caseguard.domain.outcomes import (
    AccessOutcome,
    FullAccess,
    NotFoundOrUnauthorized,
    RateLimited,
    RedactedAccess,
    ViewOutcome,
)
from caseguard.services.abuse import AbuseGuard
from caseguard.services.audit import AuditTrail, RequestOrigin
from caseguard.services.crypto.vault import CryptoVault


logger = logging.getLogger(__name__)

VULNERABILITY_PLACEHOLDER = "Contact for details"

# Confidential fields and the payload columns holding their ciphertext.
CONFIDENTIAL_FIELDS: dict[str, str] = {
    "full_name": "encrypted_full_name",
    "phone": "encrypted_phone",
    "email": "encrypted_email",
    "exact_location": "encrypted_exact_location",
    "notes": "encrypted_notes",
}


def generalize_region(region: str | None) -> str | None:
    # "Kharkiv Oblast, Chuhuiv district" -> "Kharkiv Oblast"
    if region is None:
        return None
    return region.split(",", 1)[0].strip()


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def redacted_view(record: Record) -> dict[str, Any]:
    return {
        "id": record.id,
        "category": record.category,
        "status": record.status,
        "urgency": record.urgency,
        "country": record.country,
        "region": generalize_region(record.region),
        "created_on": record.created_at.date().isoformat() if record.created_at else None,
        "vulnerability_flags": VULNERABILITY_PLACEHOLDER,
    }


def _public_fields(record: Record) -> dict[str, Any]:
    return {
        "id": record.id,
        "owner_id": record.owner_id,
        "assigned_organization_id": record.assigned_organization_id,
        "category": record.category,
        "status": record.status,
        "urgency": record.urgency,
        "country": record.country,
        "region": record.region,
        "city": record.city,
        "assigned_at": _iso(record.assigned_at),
        "resolved_at": _iso(record.resolved_at),
        "closed_at": _iso(record.closed_at),
        "created_at": _iso(record.created_at),
        "updated_at": _iso(record.updated_at),
    }


class AccessDecisionEngine:
    """Decides between the full and redacted projection of a record.

    Full access goes to administrators, the record owner and staff of a
    verified organization the record is assigned to; everyone else sees the
    redacted shape. Record views count against the per-identity view budget.
    """

    def __init__(self, *, abuse: AbuseGuard, vault: CryptoVault, audit: AuditTrail) -> None:
        self._abuse = abuse
        self._vault = vault
        self._audit = audit

    async def decide(
        self,
        session: AsyncSession,
        *,
        identity: Identity,
        record: Record,
        origin: RequestOrigin,
    ) -> AccessOutcome:
        limited = await self._consume_view(identity, record.id, origin)
        if limited is not None:
            return limited
        return await self._decide(session, identity, record, origin)

    async def view(
        self,
        session: AsyncSession,
        *,
        identity: Identity,
        record_id: str,
        origin: RequestOrigin,
    ) -> ViewOutcome:
        # Throttled and missing records share one response so neither is distinguishable.
        limited = await self._consume_view(identity, record_id, origin)
        if limited is not None:
            return NotFoundOrUnauthorized(record_id=record_id)
        record = await session.get(Record, record_id)
        if record is None:
            return NotFoundOrUnauthorized(record_id=record_id)
        return await self._decide(session, identity, record, origin)

    async def decide_list(
        self,
        *,
        identity: Identity,
        records: Iterable[Record],
        origin: RequestOrigin,
    ) -> list[dict[str, Any]]:
        # Listings are always redacted, administrators included.
        views = [redacted_view(record) for record in records]
        await self._audit.record(
            event_type="record.list.redacted",
            outcome="success",
            actor_id=identity.id,
            actor_role=identity.role,
            resource_type="record",
            origin=origin,
            metadata={"count": len(views)},
        )
        return views

    async def has_full_access(self, session: AsyncSession, *, identity: Identity, record: Record) -> bool:
        # First matching rule wins.
        if identity.role == Role.ADMIN.value:
            return True
        if record.owner_id is not None and record.owner_id == identity.id:
            return True
        if (
            identity.role == Role.ORG_STAFF.value
            and identity.organization_id is not None
            and record.assigned_organization_id == identity.organization_id
        ):
            organization = await session.get(Organization, identity.organization_id)
            return organization is not None and organization.status == OrganizationStatus.VERIFIED.value
        return False

    async def _consume_view(
        self, identity: Identity, record_id: str, origin: RequestOrigin
    ) -> RateLimited | None:
        decision = self._abuse.consume_record_view(identity.id, identity.role)
        if not isinstance(decision, RateLimited):
            return None
        await self._audit.record(
            event_type="abuse.rate_limited",
            outcome="failure",
            actor_id=identity.id,
            actor_role=identity.role,
            resource_type="record",
            resource_id=record_id,
            origin=origin,
            metadata={"action": "record_view", "retry_after_s": decision.retry_after_s},
            error_code="RATE_LIMITED",
        )
        return decision

    async def _decide(
        self,
        session: AsyncSession,
        identity: Identity,
        record: Record,
        origin: RequestOrigin,
    ) -> FullAccess | RedactedAccess:
        if await self.has_full_access(session, identity=identity, record=record):
            view, unavailable = await self._full_view(session, identity, record, origin)
            logger.warning(
                "record_full_access actor_id=%s actor_role=%s record_id=%s",
                identity.id,
                identity.role,
                record.id,
            )
            await self._audit.record(
                event_type="record.access.full",
                outcome="success",
                actor_id=identity.id,
                actor_role=identity.role,
                resource_type="record",
                resource_id=record.id,
                origin=origin,
                metadata={
                    "severity": "high",
                    "owner": record.owner_id == identity.id,
                    "unavailable_fields": list(unavailable),
                },
            )
            return FullAccess(record_id=record.id, view=view, unavailable_fields=unavailable)

        await self._audit.record(
            event_type="record.access.redacted",
            outcome="success",
            actor_id=identity.id,
            actor_role=identity.role,
            resource_type="record",
            resource_id=record.id,
            origin=origin,
        )
        return RedactedAccess(record_id=record.id, view=redacted_view(record))

    async def _full_view(
        self,
        session: AsyncSession,
        identity: Identity,
        record: Record,
        origin: RequestOrigin,
    ) -> tuple[dict[str, Any], tuple[str, ...]]:
        view = _public_fields(record)
        payload = await session.get(RecordPayload, record.id)
        unavailable: list[str] = []
        for field_name, column in CONFIDENTIAL_FIELDS.items():
            ciphertext = getattr(payload, column) if payload is not None else None
            try:
                view[field_name] = self._vault.decrypt(ciphertext)
            except DecryptionFailed:
                # Serve the rest of the record; the broken field is simply absent.
                unavailable.append(field_name)
        if "notes" in view:
            view["description"] = view["notes"]
        if unavailable:
            logger.error(
                "record_decryption_failed record_id=%s fields=%s vault_mode=%s",
                record.id,
                ",".join(unavailable),
                self._vault.mode,
            )
            await self._audit.record(
                event_type="record.decryption_failed",
                outcome="error",
                actor_id=identity.id,
                actor_role=identity.role,
                resource_type="record",
                resource_id=record.id,
                origin=origin,
                metadata={"fields": unavailable},
                error_code="DECRYPTION_FAILED",
            )
        return view, tuple(unavailable)
