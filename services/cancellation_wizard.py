"""
Cancellation Wizard - drives the cancellation flow and persists answers around it

The wizard owns one user's session: it holds the current WizardState,
autosaves edits (debounced), saves synchronously before gated forward
moves, and awaits the finalize call before reaching `completed`.

Failure policy:
- assign, accept-offer and finalize failures propagate; the state is left
  unchanged and in-memory answers are kept so the caller can retry
- autosave, pre-transition saves and the close flush are best-effort:
  failures are logged and navigation continues
"""

import asyncio
import logging
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from backend.utils.errors import ValidationFailed
from config.settings import settings
from database import AsyncSessionLocal
from services.assignment_service import AssignmentService
from services.cancellation_flow import (
    Answers,
    Branch,
    Event,
    SURVEY_STEPS,
    WizardState,
    WizardStep,
    compose_reason,
    draft_payload,
    missing_fields,
    transition,
)
from services.cancellation_service import CancellationService

logger = logging.getLogger(__name__)


class Autosaver:
    """
    Coalesces rapid edits into at most one write per quiet window.

    schedule() replaces the pending snapshot and restarts the timer;
    when the window passes without another edit the snapshot is written.
    flush() cancels the timer and writes immediately.
    """

    def __init__(self, save: Callable[[Dict[str, Any]], Awaitable[Any]], debounce_seconds: float):
        self._save = save
        self.debounce_seconds = debounce_seconds
        self._pending: Optional[Dict[str, Any]] = None
        self._timer: Optional[asyncio.Task] = None
        self._write_lock: Optional[asyncio.Lock] = None
        self.writes = 0

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def schedule(self, payload: Dict[str, Any]) -> None:
        """Queue a snapshot of the populated fields. Must be called inside a running loop."""
        self._pending = dict(payload)
        self._cancel_timer()
        self._timer = asyncio.get_running_loop().create_task(self._write_later())

    async def flush(self, best_effort: bool = True) -> bool:
        """
        Write the pending snapshot now.

        Returns:
            True if nothing was pending or the write succeeded

        Raises:
            Exception: the save error, only when best_effort is False
        """
        self._cancel_timer()
        return await self._write_pending(best_effort)

    def cancel(self) -> None:
        """Drop the timer and any unsaved snapshot."""
        self._cancel_timer()
        self._pending = None

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def _write_later(self) -> None:
        await asyncio.sleep(self.debounce_seconds)
        self._timer = None
        await self._write_pending(best_effort=True)

    async def _write_pending(self, best_effort: bool) -> bool:
        if self._write_lock is None:
            self._write_lock = asyncio.Lock()
        async with self._write_lock:
            payload, self._pending = self._pending, None
            if not payload:
                return True
            try:
                await self._save(payload)
                self.writes += 1
                return True
            except Exception as e:
                # Keep the snapshot unless a newer edit replaced it
                if self._pending is None:
                    self._pending = payload
                if not best_effort:
                    raise
                logger.warning(f"Autosave failed, will retry on next save: {e}")
                return False


class DatabaseBackend:
    """
    Persistence adapter for the wizard: one short-lived session per call.
    """

    def __init__(self, caller_id: Optional[str] = None, session_factory=AsyncSessionLocal,
                 allow_anonymous: Optional[bool] = None):
        self.caller_id = caller_id
        self.session_factory = session_factory
        self.allow_anonymous = allow_anonymous

    async def assign_arm(self, user_id: str) -> Tuple[str, str]:
        async with self.session_factory() as db:
            return await AssignmentService(db, self.allow_anonymous).assign_arm(user_id, self.caller_id)

    async def load_draft(self, cancellation_id: str) -> Dict[str, Any]:
        async with self.session_factory() as db:
            return await CancellationService(db, self.allow_anonymous).load_draft(cancellation_id, self.caller_id)

    async def save_draft(self, cancellation_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with self.session_factory() as db:
            return await CancellationService(db, self.allow_anonymous).save_draft(
                cancellation_id, payload, self.caller_id
            )

    async def accept_downsell(self, cancellation_id: str) -> Dict[str, Any]:
        async with self.session_factory() as db:
            return await CancellationService(db, self.allow_anonymous).accept_downsell(cancellation_id, self.caller_id)

    async def finalize_found_job(self, cancellation_id: str, has_lawyer: bool, visa_type: str) -> Dict[str, Any]:
        async with self.session_factory() as db:
            return await CancellationService(db, self.allow_anonymous).finalize_found_job(
                cancellation_id, has_lawyer, visa_type, self.caller_id
            )

    async def finalize_still_looking(self, cancellation_id: str, reason: str) -> Dict[str, Any]:
        async with self.session_factory() as db:
            return await CancellationService(db, self.allow_anonymous).finalize_still_looking(
                cancellation_id, reason, self.caller_id
            )


class CancellationWizard:
    """
    One user's pass through the cancellation flow.

    Usage:
        wizard = CancellationWizard(DatabaseBackend(caller_id=user_id), user_id)
        await wizard.open()
        await wizard.select_branch(Branch.STILL_LOOKING)
        wizard.set_answers(applied_count="0", emailed_count="1-5", interview_count="0")
        await wizard.next()
    """

    def __init__(self, backend, user_id: str, debounce_seconds: Optional[float] = None):
        self.backend = backend
        self.user_id = user_id
        self.cancellation_id: Optional[str] = None
        self.state = WizardState()
        if debounce_seconds is None:
            debounce_seconds = settings.autosave_debounce_ms / 1000.0
        self.autosaver = Autosaver(self._save, debounce_seconds)

    async def _save(self, payload: Dict[str, Any]) -> None:
        await self.backend.save_draft(self.cancellation_id, payload)

    def _require_open(self) -> None:
        if self.cancellation_id is None:
            raise RuntimeError("wizard is not open; call open() first")

    @property
    def step(self) -> WizardStep:
        return self.state.step

    @property
    def missing(self):
        """Fields still blocking the forward control of the current step."""
        return missing_fields(self.state)

    async def open(self) -> WizardState:
        """
        Assign (or resume) the user's cancellation and prefill saved answers.
        Assignment failures propagate.
        """
        self.cancellation_id, variant = await self.backend.assign_arm(self.user_id)
        record = await self.backend.load_draft(self.cancellation_id)
        self.state = WizardState(
            step=WizardStep.INITIAL,
            variant=variant,
            accepted_downsell=bool(record.get("accepted_downsell")) if record else False,
            answers=Answers.from_record(record),
        )
        logger.info(f"Wizard opened for user {self.user_id}: cancellation {self.cancellation_id}, variant {variant}")
        return self.state

    async def select_branch(self, branch: Branch) -> WizardState:
        self._require_open()
        event = Event.FOUND_JOB if Branch(branch) == Branch.FOUND_JOB else Event.STILL_LOOKING
        self.state = transition(self.state, event)
        return self.state

    def set_answers(self, **values) -> WizardState:
        """
        Update in-memory answers and schedule a debounced autosave.

        Raises:
            ValidationFailed: unknown answer name
        """
        self._require_open()
        unknown = [name for name in values if name not in Answers.field_names()]
        if unknown:
            raise ValidationFailed(f"unknown answers: {', '.join(unknown)}", fields=unknown)
        self.state = replace(self.state, answers=replace(self.state.answers, **values))
        if self.state.step in SURVEY_STEPS:
            self.autosaver.schedule(draft_payload(self.state))
        return self.state

    async def _save_now(self) -> bool:
        payload = draft_payload(self.state)
        if payload:
            self.autosaver.schedule(payload)
        return await self.autosaver.flush(best_effort=True)

    async def next(self) -> WizardState:
        """
        Save the current answers, then move forward if the step's gate is met.

        Raises:
            ValidationFailed: gate unmet; the step does not change
        """
        self._require_open()
        await self._save_now()
        self.state = transition(self.state, Event.CONTINUE)
        return self.state

    async def back(self) -> WizardState:
        self._require_open()
        await self._save_now()
        self.state = transition(self.state, Event.BACK)
        return self.state

    async def accept_offer(self) -> WizardState:
        """Take the downsell (from the offer screen or the survey shortcut)."""
        self._require_open()
        target = transition(self.state, Event.ACCEPT_OFFER)
        await self.autosaver.flush(best_effort=True)
        await self.backend.accept_downsell(self.cancellation_id)
        self.state = target
        return self.state

    async def decline_offer(self) -> WizardState:
        self._require_open()
        self.state = transition(self.state, Event.DECLINE_OFFER)
        return self.state

    async def complete(self) -> WizardState:
        """
        Finalize the cancellation and move to `completed`.

        Answers are saved before the gate is checked; the finalize call
        must succeed before the state changes.
        """
        self._require_open()
        await self._save_now()
        target = transition(self.state, Event.COMPLETE)

        answers = self.state.answers
        if self.state.branch == Branch.FOUND_JOB:
            await self.backend.finalize_found_job(
                self.cancellation_id, answers.visa_has_lawyer, answers.visa_type
            )
        else:
            reason = compose_reason(answers.reason_code, answers.reason_text, answers.max_price)
            await self.backend.finalize_still_looking(self.cancellation_id, reason)

        self.autosaver.cancel()
        self.state = target
        logger.info(f"Cancellation {self.cancellation_id} completed ({self.state.branch.value})")
        return self.state

    async def close(self) -> None:
        """Abandon the wizard, flushing any unsaved edits best-effort."""
        if self.cancellation_id is not None and not self.state.is_terminal:
            await self.autosaver.flush(best_effort=True)
        self.autosaver.cancel()
