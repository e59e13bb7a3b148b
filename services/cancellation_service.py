"""
Cancellation Service - draft persistence, downsell acceptance and finalization

Every operation re-checks ownership and field validity here, at the storage
boundary, even when the wizard already gated the same input.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.utils.errors import (
    CancellationError,
    InvalidTransition,
    RecordNotFound,
    TransientStoreError,
    ValidationFailed,
)
from config.settings import settings
from crud.cancellation import CancellationRepository
from crud.subscription import SubscriptionRepository
from database_models import (
    BUCKET_CHOICES,
    Cancellation,
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_PENDING,
    Subscription,
    VARIANT_B,
)
from services.access import ensure_owner
from utils.security_utils import sanitize_text

logger = logging.getLogger(__name__)

# Draft fields a caller may patch. Anything else in a payload is ignored.
DRAFT_FIELDS = (
    "attributed_to_mm",
    "applied_count",
    "emailed_count",
    "interview_count",
    "reason",
    "visa_has_lawyer",
    "visa_type",
    "downsell_variant",
)
_BOOL_FIELDS = ("attributed_to_mm", "visa_has_lawyer")
_TEXT_FIELDS = ("reason", "visa_type")


def clean_draft_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalize a partial draft payload.

    - Unknown keys are dropped
    - None and empty values are dropped (partial save never nulls a field)
    - Free text is sanitized
    - Buckets must belong to their enumeration, flags must be booleans

    Raises:
        ValidationFailed: a present value is invalid
    """
    cleaned: Dict[str, Any] = {}
    invalid = []
    for key in DRAFT_FIELDS:
        if key not in payload:
            continue
        value = payload[key]
        if value is None or value == "":
            continue
        if key in _BOOL_FIELDS:
            if not isinstance(value, bool):
                invalid.append(key)
                continue
        elif key in BUCKET_CHOICES:
            if value not in BUCKET_CHOICES[key]:
                invalid.append(key)
                continue
        elif key in _TEXT_FIELDS:
            value = sanitize_text(str(value))
            if not value:
                continue
        cleaned[key] = value
    if invalid:
        raise ValidationFailed(fields=invalid)
    return cleaned


def cancellation_to_dict(cancellation: Cancellation) -> Dict[str, Any]:
    return {
        "id": cancellation.id,
        "user_id": cancellation.user_id,
        "subscription_id": cancellation.subscription_id,
        "downsell_variant": cancellation.downsell_variant,
        "accepted_downsell": bool(cancellation.accepted_downsell),
        "attributed_to_mm": cancellation.attributed_to_mm,
        "applied_count": cancellation.applied_count,
        "emailed_count": cancellation.emailed_count,
        "interview_count": cancellation.interview_count,
        "reason": cancellation.reason,
        "visa_has_lawyer": cancellation.visa_has_lawyer,
        "visa_type": cancellation.visa_type,
        "finalized": cancellation.is_finalized,
        "finalized_at": cancellation.finalized_at.isoformat() if cancellation.finalized_at else None,
        "created_at": cancellation.created_at.isoformat() if cancellation.created_at else None,
    }


def subscription_to_dict(subscription: Subscription) -> Dict[str, Any]:
    return {
        "id": subscription.id,
        "user_id": subscription.user_id,
        "status": subscription.status,
        "monthly_price": subscription.monthly_price,
        "created_at": subscription.created_at.isoformat() if subscription.created_at else None,
    }


class CancellationService:
    """
    Service class for cancellation record operations.
    Each public method is one unit of work: it commits on success and
    rolls back on any error.
    """

    def __init__(
        self,
        db: AsyncSession,
        allow_anonymous: Optional[bool] = None,
        discount_cents: Optional[int] = None,
    ):
        self.db = db
        self.allow_anonymous = settings.allow_anonymous_demo if allow_anonymous is None else allow_anonymous
        self.discount_cents = settings.downsell_discount_cents if discount_cents is None else discount_cents
        self.cancellations = CancellationRepository(db)
        self.subscriptions = SubscriptionRepository(db)

    @asynccontextmanager
    async def _unit_of_work(self, action: str, commit: bool = True):
        try:
            yield
            if commit:
                await self.db.commit()
        except CancellationError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"{action} failed: {e}", exc_info=True)
            raise TransientStoreError(f"{action} failed: {e}") from e

    async def _get_owned(self, cancellation_id: str, caller_id: Optional[str]) -> Cancellation:
        if not cancellation_id:
            raise ValidationFailed("cancellation_id is required", fields=["cancellation_id"])
        cancellation = await self.cancellations.get_by_id(cancellation_id)
        if cancellation is None:
            raise RecordNotFound(f"cancellation {cancellation_id} not found")
        ensure_owner(cancellation.user_id, caller_id, self.allow_anonymous)
        return cancellation

    async def _subscription_for(self, cancellation: Cancellation) -> Optional[Subscription]:
        if cancellation.subscription_id:
            subscription = await self.subscriptions.get_by_id(cancellation.subscription_id)
            if subscription is not None:
                return subscription
        return await self.subscriptions.get_latest_for_user(cancellation.user_id)

    @staticmethod
    def _ensure_open(cancellation: Cancellation) -> None:
        if cancellation.is_finalized:
            raise InvalidTransition(message=f"cancellation {cancellation.id} is already finalized")

    # --- Read paths -----------------------------------------------------

    async def load_draft(self, cancellation_id: str, caller_id: Optional[str] = None) -> Dict[str, Any]:
        """Read a cancellation's persisted answers for prefill."""
        async with self._unit_of_work("load draft", commit=False):
            cancellation = await self._get_owned(cancellation_id, caller_id)
            return cancellation_to_dict(cancellation)

    async def latest_for_user(self, user_id: str, caller_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Most recent cancellation for a user, or None."""
        ensure_owner(user_id, caller_id, self.allow_anonymous)
        async with self._unit_of_work("fetch latest cancellation", commit=False):
            cancellation = await self.cancellations.get_latest_for_user(user_id)
            return cancellation_to_dict(cancellation) if cancellation else None

    async def latest_subscription(self, user_id: str, caller_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Most recent subscription for a user, or None."""
        ensure_owner(user_id, caller_id, self.allow_anonymous)
        async with self._unit_of_work("fetch latest subscription", commit=False):
            subscription = await self.subscriptions.get_latest_for_user(user_id)
            return subscription_to_dict(subscription) if subscription else None

    # --- Mutations ------------------------------------------------------

    async def save_draft(
        self,
        cancellation_id: str,
        payload: Dict[str, Any],
        caller_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Persist a partial set of answers.

        Only fields present (and non-empty) in the payload are written;
        everything else on the record is left as it was.

        Returns:
            The cleaned fields that were written

        Raises:
            ValidationFailed: a present value is invalid
            ImmutableFieldViolation: payload tries to change the assigned variant
            InvalidTransition: the cancellation is already finalized
        """
        cleaned = clean_draft_payload(payload or {})
        async with self._unit_of_work("save draft"):
            cancellation = await self._get_owned(cancellation_id, caller_id)
            self._ensure_open(cancellation)
            if cleaned:
                await self.cancellations.update(cancellation, cleaned)
                logger.debug(f"Draft saved for {cancellation_id}: {sorted(cleaned)}")
        return cleaned

    async def accept_downsell(self, cancellation_id: str, caller_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Record that the user took the downsell offer.

        The pending cancellation is reverted so the subscription stays
        active at the discounted price. Repeating the call is a no-op.

        Raises:
            InvalidTransition: variant is not B, or the record is finalized
        """
        async with self._unit_of_work("accept downsell"):
            cancellation = await self._get_owned(cancellation_id, caller_id)
            if cancellation.downsell_variant != VARIANT_B:
                raise InvalidTransition(message="downsell offer is only available to variant B")
            self._ensure_open(cancellation)

            subscription = await self._subscription_for(cancellation)
            if not cancellation.accepted_downsell:
                await self.cancellations.update(cancellation, {"accepted_downsell": True})
                if subscription is not None and subscription.status == STATUS_PENDING:
                    await self.subscriptions.set_status(subscription, STATUS_ACTIVE)
                logger.info(f"Downsell accepted for cancellation {cancellation_id}")

            discounted = None
            if subscription is not None:
                discounted = max(subscription.monthly_price - self.discount_cents, 0)
        return {"cancellation_id": cancellation_id, "accepted_downsell": True, "discounted_price": discounted}

    async def finalize_found_job(
        self,
        cancellation_id: str,
        has_lawyer: bool,
        visa_type: str,
        caller_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Lock in the found-job answers and cancel the subscription.

        Raises:
            ValidationFailed: has_lawyer not a boolean or visa_type empty after sanitizing
        """
        missing = []
        if not isinstance(has_lawyer, bool):
            missing.append("visa_has_lawyer")
        visa_type = sanitize_text(visa_type)
        if not visa_type:
            missing.append("visa_type")
        if missing:
            raise ValidationFailed(fields=missing)

        return await self._finalize(
            cancellation_id,
            {"visa_has_lawyer": has_lawyer, "visa_type": visa_type},
            caller_id,
        )

    async def finalize_still_looking(
        self,
        cancellation_id: str,
        reason: str,
        caller_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Lock in the still-looking reason and cancel the subscription.

        Raises:
            ValidationFailed: reason empty after sanitizing
        """
        reason = sanitize_text(reason)
        if not reason:
            raise ValidationFailed(fields=["reason"])
        return await self._finalize(cancellation_id, {"reason": reason}, caller_id)

    async def _finalize(
        self,
        cancellation_id: str,
        updates: Dict[str, Any],
        caller_id: Optional[str],
    ) -> Dict[str, Any]:
        async with self._unit_of_work("finalize cancellation"):
            cancellation = await self._get_owned(cancellation_id, caller_id)
            if cancellation.is_finalized:
                # Retry of a finalize that already went through
                return cancellation_to_dict(cancellation)
            updates = dict(updates, finalized_at=datetime.utcnow())
            await self.cancellations.update(cancellation, updates)

            subscription = await self._subscription_for(cancellation)
            if subscription is not None:
                await self.subscriptions.set_status(subscription, STATUS_CANCELLED)
            logger.info(f"Cancellation {cancellation_id} finalized")
        return cancellation_to_dict(cancellation)
