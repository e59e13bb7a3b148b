"""
Assignment Service - balanced A/B downsell assignment for cancellation attempts
"""

import asyncio
import hashlib
import logging
import weakref
from typing import Dict, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.utils.errors import TransientStoreError, ValidationFailed
from config.settings import settings
from crud.cancellation import CancellationRepository
from crud.subscription import SubscriptionRepository
from database_models import STATUS_CANCELLED, STATUS_PENDING, VARIANT_A, VARIANT_B
from services.access import ensure_owner

logger = logging.getLogger(__name__)

# Serializes count-and-assign within this process, one lock per event loop
_assignment_locks = weakref.WeakKeyDictionary()

# Key for the PostgreSQL transaction-scoped advisory lock
ADVISORY_LOCK_KEY = 424242


def _get_assignment_lock() -> asyncio.Lock:
    loop = asyncio.get_running_loop()
    lock = _assignment_locks.get(loop)
    if lock is None:
        lock = _assignment_locks[loop] = asyncio.Lock()
    return lock


def hash_tiebreak(user_id: str) -> str:
    """
    Deterministic arm for a user when the population is tied.

    Same user always maps to the same arm; different users spread
    evenly across A and B.
    """
    h = hashlib.sha256(user_id.encode()).hexdigest()
    return VARIANT_A if int(h[:8], 16) % 2 == 0 else VARIANT_B


def choose_variant(counts: Dict[str, int], user_id: str) -> str:
    """
    Pick the minority arm; fall back to the hash tie-break when counts are equal.

    Args:
        counts: Current {"A": n, "B": m} population
        user_id: User being assigned

    Returns:
        "A" or "B"
    """
    n_a = counts.get(VARIANT_A, 0)
    n_b = counts.get(VARIANT_B, 0)
    if n_a < n_b:
        return VARIANT_A
    if n_b < n_a:
        return VARIANT_B
    return hash_tiebreak(user_id)


class AssignmentService:
    """
    Prepares a user's cancellation record for the wizard and assigns the
    downsell experiment arm exactly once.
    """

    def __init__(self, db: AsyncSession, allow_anonymous: Optional[bool] = None):
        self.db = db
        self.allow_anonymous = settings.allow_anonymous_demo if allow_anonymous is None else allow_anonymous
        self.cancellations = CancellationRepository(db)
        self.subscriptions = SubscriptionRepository(db)

    async def assign_arm(self, user_id: str, caller_id: Optional[str] = None) -> Tuple[str, str]:
        """
        Idempotently ensure an open cancellation exists for the user and
        return its id with the (possibly newly assigned) arm.

        Args:
            user_id: User starting the cancellation flow
            caller_id: Authenticated caller, or None in demo mode

        Returns:
            (cancellation_id, variant)

        Raises:
            ValidationFailed: empty user_id
            PermissionDenied: caller_id present and different from user_id
            TransientStoreError: storage failure; safe to retry
        """
        if not user_id:
            raise ValidationFailed("user_id is required", fields=["user_id"])
        ensure_owner(user_id, caller_id, self.allow_anonymous)

        try:
            async with _get_assignment_lock():
                await self._lock_population()

                subscription = await self.subscriptions.get_latest_for_user(user_id)
                if subscription is not None and subscription.status not in (STATUS_CANCELLED, STATUS_PENDING):
                    await self.subscriptions.set_status(subscription, STATUS_PENDING)

                cancellation = await self.cancellations.get_latest_for_user(user_id)
                if cancellation is None or cancellation.is_finalized:
                    cancellation = await self.cancellations.create(
                        user_id,
                        subscription_id=subscription.id if subscription is not None else None,
                    )
                    logger.info(f"Created cancellation {cancellation.id} for user {user_id}")

                if cancellation.downsell_variant is None:
                    counts = await self.cancellations.count_by_variant()
                    variant = choose_variant(counts, user_id)
                    await self.cancellations.update(cancellation, {"downsell_variant": variant})
                    logger.info(
                        f"Assigned variant {variant} to cancellation {cancellation.id} "
                        f"(population before: A={counts[VARIANT_A]}, B={counts[VARIANT_B]})"
                    )

                # Commit while still holding the lock so the next caller counts this row
                await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Assignment failed for user {user_id}: {e}", exc_info=True)
            raise TransientStoreError(f"could not assign variant: {e}") from e

        return cancellation.id, cancellation.downsell_variant

    async def get_split(self) -> Dict[str, int]:
        """Current arm counts across all cancellations."""
        try:
            return await self.cancellations.count_by_variant()
        except SQLAlchemyError as e:
            raise TransientStoreError(f"could not read experiment split: {e}") from e

    async def _lock_population(self) -> None:
        """
        Take a database-wide lock for the count-and-assign step.

        The in-process asyncio lock covers a single worker; on PostgreSQL an
        advisory transaction lock also serializes other workers. SQLite
        serializes writers on its own.
        """
        if self.db.get_bind().dialect.name == "postgresql":
            await self.db.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": ADVISORY_LOCK_KEY})
