"""
Admin Tools - demo data seeding for local runs and manual testing
"""
import asyncio
import logging
from typing import List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database import AsyncSessionLocal, init_db
from crud.subscription import SubscriptionRepository
from database_models import User

logger = logging.getLogger(__name__)

# (user id, email, monthly price in cents)
DEMO_ACCOUNTS = [
    ("550e8400-e29b-41d4-a716-446655440001", "user1@example.com", 2500),
    ("550e8400-e29b-41d4-a716-446655440002", "user2@example.com", 2900),
    ("550e8400-e29b-41d4-a716-446655440003", "user3@example.com", 2500),
]


async def seed_demo_data(db: AsyncSession) -> List[str]:
    """
    Insert demo users, each with one active subscription.
    Accounts that already exist are left untouched.

    Returns:
        Ids of the users created by this call
    """
    created = []
    for user_id, email, price in DEMO_ACCOUNTS:
        result = await db.execute(select(User).where(User.email == email))
        if result.scalar_one_or_none() is not None:
            continue
        db.add(User(id=user_id, email=email))
        await db.flush()
        await SubscriptionRepository(db).create(user_id, price)
        created.append(user_id)

    await db.commit()
    logger.info(f"Seeded {len(created)} demo accounts")
    return created


async def _main():
    await init_db()
    async with AsyncSessionLocal() as db:
        created = await seed_demo_data(db)
    print(f"Seeded {len(created)} demo accounts")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(_main())
