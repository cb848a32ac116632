from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from sqlalchemy import select

from caseguard.domain.models import (
    Identity,
    Organization,
    OrganizationStatus,
    Record,
    RecordPayload,
    Role,
)
from caseguard.persistence.db import SessionLocal, create_all
from caseguard.services.auth.passwords import hash_password
from caseguard.services.crypto.vault import get_vault


DEMO_PASSWORD = "Secret1234!"


async def seed() -> None:
    # Idempotent: rerunning leaves an existing demo dataset untouched.
    await create_all()
    vault = get_vault()
    now = datetime.now(timezone.utc)
    async with SessionLocal() as session:
        existing = await session.scalar(select(Identity).where(Identity.email == "a@x.org"))
        if existing is not None:
            print("demo_seed=skipped")
            return
        session.add_all(
            [
                Organization(id="org-relief", name="Relief Partners", status=OrganizationStatus.VERIFIED.value),
                Organization(id="org-other", name="Other Aid", status=OrganizationStatus.VERIFIED.value),
            ]
        )
        await session.flush()
        session.add_all(
            [
                Identity(
                    id="id-field",
                    email="a@x.org",
                    name="Field Worker",
                    password_hash=hash_password(DEMO_PASSWORD),
                    role=Role.FIELD_WORKER.value,
                ),
                Identity(
                    id="id-staff",
                    email="staff@relief.org",
                    name="Relief Staff",
                    password_hash=hash_password(DEMO_PASSWORD),
                    role=Role.ORG_STAFF.value,
                    organization_id="org-relief",
                ),
            ]
        )
        await session.flush()
        records = [
            ("rec-own", "id-field", None, "Kharkiv Oblast, Chuhuiv district"),
            ("rec-other", None, "org-other", "Lviv Oblast, Stryi district"),
        ]
        for record_id, owner_id, org_id, region in records:
            session.add(
                Record(
                    id=record_id,
                    owner_id=owner_id,
                    assigned_organization_id=org_id,
                    category="SHELTER",
                    status="OPEN",
                    urgency="HIGH",
                    country="UA",
                    region=region,
                    created_at=now,
                    updated_at=now,
                )
            )
            await session.flush()
            session.add(
                RecordPayload(
                    record_id=record_id,
                    encrypted_full_name=vault.encrypt("Demo Beneficiary"),
                    encrypted_phone=vault.encrypt("+380000000000"),
                    encrypted_exact_location=vault.encrypt("50.0, 36.2"),
                    encrypted_notes=vault.encrypt("Needs winterized shelter."),
                )
            )
        await session.commit()
    print("demo_seed=created")


if __name__ == "__main__":
    asyncio.run(seed())
