from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from caseguard.domain.models import (
    Identity,
    Organization,
    OrganizationStatus,
    Record,
    RecordPayload,
    Role,
)
from caseguard.services.auth.passwords import hash_password
from caseguard.services.crypto.vault import CryptoVault


DEFAULT_PASSWORD = "Secret1234!"

DEFAULT_PAYLOAD = {
    "full_name": "Olena Kovalenko",
    "phone": "+380501234567",
    "email": "olena@example.org",
    "exact_location": "50.0030, 36.2304",
    "notes": "Two children, needs insulin.",
}


async def create_organization(
    session: AsyncSession,
    *,
    status: OrganizationStatus = OrganizationStatus.VERIFIED,
    name: str = "Relief Partners",
) -> Organization:
    organization = Organization(id=uuid4().hex, name=name, status=status.value)
    session.add(organization)
    await session.commit()
    return organization


async def create_identity(
    session: AsyncSession,
    *,
    email: str,
    password: str = DEFAULT_PASSWORD,
    role: Role = Role.FIELD_WORKER,
    organization_id: str | None = None,
    is_active: bool = True,
    password_expires_at: datetime | None = None,
    mfa_secret: str | None = None,
    mfa_enabled: bool = False,
) -> Identity:
    # Identities are committed so gate services reading through other sessions see them.
    identity = Identity(
        id=uuid4().hex,
        email=email,
        name=email.split("@", 1)[0],
        password_hash=hash_password(password),
        role=role.value,
        organization_id=organization_id,
        is_active=is_active,
        failed_login_attempts=0,
        password_expires_at=password_expires_at,
        mfa_secret=mfa_secret,
        mfa_enabled=mfa_enabled,
    )
    session.add(identity)
    await session.commit()
    return identity


async def create_record(
    session: AsyncSession,
    *,
    vault: CryptoVault,
    created_at: datetime,
    owner_id: str | None = None,
    organization_id: str | None = None,
    region: str | None = "Kharkiv Oblast, Chuhuiv district",
    payload: dict[str, str] | None = None,
) -> Record:
    record = Record(
        id=uuid4().hex,
        owner_id=owner_id,
        assigned_organization_id=organization_id,
        category="SHELTER",
        status="OPEN",
        urgency="HIGH",
        country="UA",
        region=region,
        city="Chuhuiv",
        created_at=created_at,
        updated_at=created_at,
    )
    session.add(record)
    await session.flush()
    values = DEFAULT_PAYLOAD if payload is None else payload
    session.add(
        RecordPayload(
            record_id=record.id,
            encrypted_full_name=vault.encrypt(values.get("full_name")),
            encrypted_phone=vault.encrypt(values.get("phone")),
            encrypted_email=vault.encrypt(values.get("email")),
            encrypted_exact_location=vault.encrypt(values.get("exact_location")),
            encrypted_notes=vault.encrypt(values.get("notes")),
        )
    )
    await session.commit()
    return record
