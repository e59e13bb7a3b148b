"""
Cancellation Router - API endpoints for the cancellation flow
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_caller_id
from backend.utils.responses import success_response
from database import get_db
from models.cancellation import (
    AssignRequest,
    DraftPayload,
    FinalizeFoundJobRequest,
    FinalizeStillLookingRequest,
)
from services.assignment_service import AssignmentService
from services.cancellation_service import CancellationService

logger = logging.getLogger(__name__)

cancellation_router = APIRouter(prefix="/api/cancellations", tags=["cancellations"])


@cancellation_router.post("/assign")
async def assign_downsell(
    request: AssignRequest,
    caller_id: Optional[str] = Depends(get_caller_id),
    db: AsyncSession = Depends(get_db),
):
    """
    Create or resume the caller's cancellation and return its A/B variant.
    Safe to call repeatedly; the variant never changes once assigned.
    """
    cancellation_id, variant = await AssignmentService(db).assign_arm(request.user_id, caller_id)
    return success_response({"cancellation_id": cancellation_id, "downsell_variant": variant})


@cancellation_router.get("/latest")
async def latest_cancellation(
    user_id: str = Query(...),
    caller_id: Optional[str] = Depends(get_caller_id),
    db: AsyncSession = Depends(get_db),
):
    """Most recent cancellation for a user (empty data when there is none)."""
    record = await CancellationService(db).latest_for_user(user_id, caller_id)
    return success_response(record, message="OK" if record else "No cancellation found")


@cancellation_router.get("/experiment/split")
async def experiment_split(
    caller_id: Optional[str] = Depends(get_caller_id),
    db: AsyncSession = Depends(get_db),
):
    """Current A/B population counts. Aggregate only, so any identified caller may read it."""
    counts = await AssignmentService(db).get_split()
    return success_response(counts)


@cancellation_router.get("/{cancellation_id}")
async def get_cancellation(
    cancellation_id: str,
    caller_id: Optional[str] = Depends(get_caller_id),
    db: AsyncSession = Depends(get_db),
):
    """Saved answers for prefilling the wizard."""
    record = await CancellationService(db).load_draft(cancellation_id, caller_id)
    return success_response(record)


@cancellation_router.patch("/{cancellation_id}/draft")
async def save_draft(
    cancellation_id: str,
    payload: DraftPayload,
    caller_id: Optional[str] = Depends(get_caller_id),
    db: AsyncSession = Depends(get_db),
):
    """Autosave: persist only the fields present in the request body."""
    saved = await CancellationService(db).save_draft(
        cancellation_id, payload.model_dump(exclude_unset=True), caller_id
    )
    return success_response({"cancellation_id": cancellation_id, "saved": saved}, message="Draft saved")


@cancellation_router.post("/{cancellation_id}/accept-downsell")
async def accept_downsell(
    cancellation_id: str,
    caller_id: Optional[str] = Depends(get_caller_id),
    db: AsyncSession = Depends(get_db),
):
    result = await CancellationService(db).accept_downsell(cancellation_id, caller_id)
    return success_response(result, message="Downsell accepted")


@cancellation_router.post("/{cancellation_id}/finalize/found-job")
async def finalize_found_job(
    cancellation_id: str,
    request: FinalizeFoundJobRequest,
    caller_id: Optional[str] = Depends(get_caller_id),
    db: AsyncSession = Depends(get_db),
):
    record = await CancellationService(db).finalize_found_job(
        cancellation_id, request.has_lawyer, request.visa_type, caller_id
    )
    return success_response(record, message="Subscription cancelled")


@cancellation_router.post("/{cancellation_id}/finalize/still-looking")
async def finalize_still_looking(
    cancellation_id: str,
    request: FinalizeStillLookingRequest,
    caller_id: Optional[str] = Depends(get_caller_id),
    db: AsyncSession = Depends(get_db),
):
    record = await CancellationService(db).finalize_still_looking(cancellation_id, request.reason, caller_id)
    return success_response(record, message="Subscription cancelled")
