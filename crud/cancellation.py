"""
CancellationRepository for database operations on the Cancellation model
"""

from typing import Dict, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from database_models import Cancellation, VARIANTS


class CancellationRepository:
    """
    Repository class for Cancellation database operations.
    Encapsulates all database logic for the Cancellation model.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, cancellation_id: str) -> Optional[Cancellation]:
        result = await self.db.execute(
            select(Cancellation).where(Cancellation.id == cancellation_id)
        )
        return result.scalar_one_or_none()

    async def get_latest_for_user(self, user_id: str) -> Optional[Cancellation]:
        """
        Retrieve the user's most recently created cancellation, finalized or not.
        """
        result = await self.db.execute(
            select(Cancellation)
            .where(Cancellation.user_id == user_id)
            .order_by(Cancellation.created_at.desc(), Cancellation.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create(self, user_id: str, subscription_id: Optional[str] = None) -> Cancellation:
        """
        Create a new cancellation with no experiment arm yet.
        """
        cancellation = Cancellation(user_id=user_id, subscription_id=subscription_id)
        self.db.add(cancellation)
        await self.db.flush()
        await self.db.refresh(cancellation)
        return cancellation

    async def update(self, cancellation: Cancellation, updates: dict) -> Cancellation:
        """
        Apply field updates. Model validators reject immutable or
        out-of-enumeration values before anything is flushed.
        """
        for key, value in updates.items():
            if hasattr(cancellation, key):
                setattr(cancellation, key, value)

        await self.db.flush()
        return cancellation

    async def count_by_variant(self) -> Dict[str, int]:
        """
        Count cancellations per experiment arm across the whole population.

        Returns:
            {"A": n, "B": m}, zero-filled
        """
        result = await self.db.execute(
            select(Cancellation.downsell_variant, func.count(Cancellation.id))
            .where(Cancellation.downsell_variant.in_(VARIANTS))
            .group_by(Cancellation.downsell_variant)
        )
        counts = {variant: 0 for variant in VARIANTS}
        for variant, n in result.all():
            counts[variant] = int(n)
        return counts
