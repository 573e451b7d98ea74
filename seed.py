"""Seed script — populates the phone directory with sample assignments for testing."""

import asyncio

from sqlalchemy.ext.asyncio import AsyncSession

from rcs_auth.database.engine import async_session_factory, init_db
from rcs_auth.models.directory import PhoneAssignment

SAMPLE_ASSIGNMENTS = [
    PhoneAssignment(
        org_id="acme_corp",
        phone_number="+15551234567",
        assigned_to_email="alice@example.com",
    ),
    PhoneAssignment(
        org_id="acme_corp",
        phone_number="+15559876543",
        assigned_to_email="bob@example.com",
    ),
    PhoneAssignment(
        org_id="globex_inc",
        phone_number="+442071234567",
        assigned_to_email="carol@example.com",
    ),
    PhoneAssignment(
        org_id="globex_inc",
        phone_number="+919876543210",
        assigned_to_email="dan@example.com",
        is_active=False,
    ),
]


async def seed() -> None:
    """Insert sample phone assignments into the database."""
    await init_db()
    async with async_session_factory() as session:
        session: AsyncSession
        for assignment in SAMPLE_ASSIGNMENTS:
            session.add(assignment)
        await session.commit()
    print(f"✅ Seeded {len(SAMPLE_ASSIGNMENTS)} phone assignments into the database.")


if __name__ == "__main__":
    asyncio.run(seed())
