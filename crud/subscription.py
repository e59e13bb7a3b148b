"""
SubscriptionRepository for database operations on the Subscription model
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database_models import Subscription

logger = logging.getLogger(__name__)


class SubscriptionRepository:
    """
    Repository class for Subscription database operations.
    Status changes go through set_status so the transition guard on the
    model always runs.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, subscription_id: str) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(Subscription.id == subscription_id)
        )
        return result.scalar_one_or_none()

    async def get_latest_for_user(self, user_id: str) -> Optional[Subscription]:
        """
        Retrieve the user's most recent subscription.

        Ties on created_at are broken by id so the pick is stable.
        """
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create(self, user_id: str, monthly_price: int, status: str = "active") -> Subscription:
        subscription = Subscription(user_id=user_id, monthly_price=monthly_price, status=status)
        self.db.add(subscription)
        await self.db.flush()
        await self.db.refresh(subscription)
        return subscription

    async def set_status(self, subscription: Subscription, status: str) -> Subscription:
        """
        Move a subscription to a new status.

        Raises:
            InvalidTransition: if the change is not in the allowed table
        """
        previous = subscription.status
        subscription.status = status
        if previous != status:
            await self.db.flush()
            logger.info(f"Subscription {subscription.id}: {previous} -> {status}")
        return subscription
