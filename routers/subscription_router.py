"""
Subscription Router - read-only subscription lookups
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_caller_id
from backend.utils.responses import success_response
from database import get_db
from services.cancellation_service import CancellationService

subscription_router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


@subscription_router.get("/latest")
async def latest_subscription(
    user_id: str = Query(...),
    caller_id: Optional[str] = Depends(get_caller_id),
    db: AsyncSession = Depends(get_db),
):
    """Most recent subscription for a user (empty data when there is none)."""
    subscription = await CancellationService(db).latest_subscription(user_id, caller_id)
    return success_response(subscription, message="OK" if subscription else "No subscription found")
