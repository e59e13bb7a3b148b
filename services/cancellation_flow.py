"""
Cancellation Flow - pure state machine for the cancellation wizard

The wizard is modelled as an immutable WizardState plus a transition
function (state, event) -> state backed by WizardMachine, a
python-statemachine graph rebuilt from the state for every event.
Nothing here touches storage; the CancellationWizard driver persists
answers around transitions.

Branches:
    found_job:     initial -> job_status -> feedback -> confirmation -> completed
    still_looking: initial -> [downsell ->] using -> reasons -> completed
                   downsell / using -> downsell_accepted (arm B, offer not yet taken)
"""

import re
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Dict, List, Optional

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from backend.utils.errors import InvalidStep, ValidationFailed
from config.settings import MIN_FEEDBACK_LENGTH
from database_models import APPLIED_BUCKETS, EMAILED_BUCKETS, INTERVIEW_BUCKETS, VARIANT_B
from utils.security_utils import sanitize_text, sanitized_length


class WizardStep(str, Enum):
    INITIAL = "initial"
    JOB_STATUS = "job_status"
    DOWNSELL = "downsell"
    DOWNSELL_ACCEPTED = "downsell_accepted"
    USING = "using"
    REASONS = "reasons"
    FEEDBACK = "feedback"
    CONFIRMATION = "confirmation"
    COMPLETED = "completed"


class Branch(str, Enum):
    FOUND_JOB = "found_job"
    STILL_LOOKING = "still_looking"


class Event(str, Enum):
    FOUND_JOB = "found_job"
    STILL_LOOKING = "still_looking"
    CONTINUE = "proceed"
    BACK = "back"
    ACCEPT_OFFER = "accept_offer"
    DECLINE_OFFER = "decline_offer"
    COMPLETE = "complete"


# Steps whose field edits are autosaved
SURVEY_STEPS = frozenset({
    WizardStep.JOB_STATUS,
    WizardStep.USING,
    WizardStep.REASONS,
    WizardStep.FEEDBACK,
    WizardStep.CONFIRMATION,
})

# Steps with no way out
TERMINAL_STEPS = frozenset({WizardStep.COMPLETED, WizardStep.DOWNSELL_ACCEPTED})

# Reason codes for the still-looking branch
REASON_TOO_EXPENSIVE = "too_expensive"
REASON_LABELS = {
    REASON_TOO_EXPENSIVE: "Too expensive",
    "platform_not_helpful": "Platform not helpful",
    "not_enough_jobs": "Not enough relevant jobs",
    "decided_not_to_move": "Decided not to move",
    "other": "Other",
}

_PRICE_RE = re.compile(r"^\$?\s*(\d+(?:\.\d{1,2})?)$")
_WILLING_TO_PAY_RE = re.compile(r"^willing to pay \$(\d+(?:\.\d{1,2})?)$")


@dataclass(frozen=True)
class Answers:
    """In-memory survey answers. None means unset."""
    attributed_to_mm: Optional[bool] = None
    applied_count: Optional[str] = None
    emailed_count: Optional[str] = None
    interview_count: Optional[str] = None
    feedback: Optional[str] = None
    reason_code: Optional[str] = None
    reason_text: Optional[str] = None
    max_price: Optional[str] = None
    visa_has_lawyer: Optional[bool] = None
    visa_type: Optional[str] = None

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in fields(cls)]

    @classmethod
    def from_record(cls, record: Optional[dict]) -> "Answers":
        """
        Prefill from a persisted cancellation. Unknown or missing keys are
        ignored, and out-of-enumeration buckets are dropped.
        """
        if not record:
            return cls()
        buckets = {
            "applied_count": APPLIED_BUCKETS,
            "emailed_count": EMAILED_BUCKETS,
            "interview_count": INTERVIEW_BUCKETS,
        }
        values = {}
        for name, choices in buckets.items():
            if record.get(name) in choices:
                values[name] = record[name]
        for name in ("attributed_to_mm", "visa_has_lawyer"):
            if isinstance(record.get(name), bool):
                values[name] = record[name]
        if isinstance(record.get("visa_type"), str):
            values["visa_type"] = record["visa_type"]
        if isinstance(record.get("reason"), str):
            values.update(parse_reason(record["reason"]))
        return cls(**values)


@dataclass(frozen=True)
class WizardState:
    step: WizardStep = WizardStep.INITIAL
    branch: Optional[Branch] = None
    variant: Optional[str] = None
    accepted_downsell: bool = False
    answers: Answers = field(default_factory=Answers)

    @property
    def offer_available(self) -> bool:
        """Arm B sees the downsell until they take it."""
        return self.variant == VARIANT_B and not self.accepted_downsell

    @property
    def is_terminal(self) -> bool:
        return self.step in TERMINAL_STEPS


def normalize_price(value: Optional[str]) -> Optional[str]:
    """
    Validate an optional willingness-to-pay amount.

    Returns:
        The amount without a leading "$", or None when empty

    Raises:
        ValidationFailed: not a non-negative amount with at most two decimals
    """
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None
    match = _PRICE_RE.match(value)
    if not match:
        raise ValidationFailed("max_price must be a number", fields=["max_price"])
    return match.group(1)


def compose_reason(code: str, text: Optional[str] = None, max_price: Optional[str] = None) -> str:
    """
    Build the persisted reason string for the still-looking branch.

    >>> compose_reason("too_expensive", max_price="15")
    'Too expensive; willing to pay $15'
    """
    if code not in REASON_LABELS:
        raise ValidationFailed(f"unknown reason code: {code}", fields=["reason_code"])
    label = REASON_LABELS[code]
    if code == REASON_TOO_EXPENSIVE:
        price = normalize_price(max_price)
        return f"{label}; willing to pay ${price}" if price else label
    return f"{label}; {sanitize_text(text)}"


def parse_reason(reason: str) -> Dict[str, str]:
    """
    Split a persisted reason back into answers.

    Strings built by compose_reason map to reason_code plus max_price or
    reason_text; anything else is found-job feedback.
    """
    for code, label in REASON_LABELS.items():
        if reason == label:
            return {"reason_code": code}
        if not reason.startswith(f"{label}; "):
            continue
        rest = reason[len(label) + 2:]
        if code == REASON_TOO_EXPENSIVE:
            match = _WILLING_TO_PAY_RE.match(rest)
            if match:
                return {"reason_code": code, "max_price": match.group(1)}
            continue
        return {"reason_code": code, "reason_text": rest}
    return {"feedback": reason}


def missing_fields(state: WizardState) -> List[str]:
    """
    Fields blocking the forward transition out of the current step.
    Empty when the step has no gate or the gate is satisfied.
    """
    a = state.answers
    missing = []

    def _buckets():
        if a.applied_count not in APPLIED_BUCKETS:
            missing.append("applied_count")
        if a.emailed_count not in EMAILED_BUCKETS:
            missing.append("emailed_count")
        if a.interview_count not in INTERVIEW_BUCKETS:
            missing.append("interview_count")

    if state.step == WizardStep.JOB_STATUS:
        if a.attributed_to_mm is None:
            missing.append("attributed_to_mm")
        _buckets()
    elif state.step == WizardStep.USING:
        _buckets()
    elif state.step == WizardStep.FEEDBACK:
        if sanitized_length(a.feedback) < MIN_FEEDBACK_LENGTH:
            missing.append("feedback")
    elif state.step == WizardStep.REASONS:
        if a.reason_code not in REASON_LABELS:
            missing.append("reason_code")
        elif a.reason_code == REASON_TOO_EXPENSIVE:
            try:
                normalize_price(a.max_price)
            except ValidationFailed:
                missing.append("max_price")
        elif sanitized_length(a.reason_text) < MIN_FEEDBACK_LENGTH:
            missing.append("reason_text")
    elif state.step == WizardStep.CONFIRMATION:
        if a.visa_has_lawyer is None:
            missing.append("visa_has_lawyer")
        if not sanitize_text(a.visa_type):
            missing.append("visa_type")
    return missing


def can_advance(state: WizardState) -> bool:
    """True when the forward control of the current step should be enabled."""
    return not missing_fields(state)


def _require_gate(state: WizardState) -> None:
    missing = missing_fields(state)
    if missing:
        raise ValidationFailed(f"cannot leave {state.step.value}: missing {', '.join(missing)}", fields=missing)


class WizardMachine(StateMachine):
    """
    Step graph of the cancellation wizard.

    Rebuilt from a WizardState for every event: the machine starts at the
    state's step, reads the state's variant and answers in its guards, and
    records branch and offer changes on `self.wizard`.

    Guards:
        offer_available: arm B and the offer not yet taken
        is_found_job_branch: Back from feedback returns to job_status
        check_gate: forward moves out of survey steps need their fields
    """

    start = State(initial=True, value=WizardStep.INITIAL.value)

    # found_job branch
    job_status = State(value=WizardStep.JOB_STATUS.value)
    feedback = State(value=WizardStep.FEEDBACK.value)
    confirmation = State(value=WizardStep.CONFIRMATION.value)

    # still_looking branch
    downsell = State(value=WizardStep.DOWNSELL.value)
    using = State(value=WizardStep.USING.value)
    reasons = State(value=WizardStep.REASONS.value)

    # Terminal states
    downsell_accepted = State(final=True, value=WizardStep.DOWNSELL_ACCEPTED.value)
    completed = State(final=True, value=WizardStep.COMPLETED.value)

    found_job = start.to(job_status)
    still_looking = (
        start.to(downsell, cond="offer_available")
        | start.to(using, unless="offer_available")
    )

    proceed = (
        job_status.to(feedback, validators="check_gate")
        | feedback.to(confirmation, validators="check_gate")
        | using.to(reasons, validators="check_gate")
    )
    complete = (
        confirmation.to(completed, validators="check_gate")
        | reasons.to(completed, validators="check_gate")
    )

    accept_offer = (
        downsell.to(downsell_accepted)
        | using.to(downsell_accepted, cond="offer_available")
    )
    decline_offer = downsell.to(using)

    back = (
        job_status.to(start)
        | feedback.to(job_status, cond="is_found_job_branch")
        | feedback.to(start, unless="is_found_job_branch")
        | confirmation.to(feedback)
        | downsell.to(start)
        | using.to(downsell, cond="offer_available")
        | using.to(start, unless="offer_available")
        | reasons.to(start)
    )

    def __init__(self, wizard: "WizardState"):
        self.wizard = wizard
        super().__init__(start_value=wizard.step.value)

    # Guards

    def offer_available(self) -> bool:
        return self.wizard.offer_available

    def is_found_job_branch(self) -> bool:
        return self.wizard.branch == Branch.FOUND_JOB

    def check_gate(self) -> None:
        _require_gate(self.wizard)

    # Actions

    def on_found_job(self) -> None:
        self.wizard = replace(self.wizard, branch=Branch.FOUND_JOB)

    def on_still_looking(self) -> None:
        self.wizard = replace(self.wizard, branch=Branch.STILL_LOOKING)

    def on_accept_offer(self) -> None:
        self.wizard = replace(self.wizard, accepted_downsell=True)


def transition(state: WizardState, event: Event) -> WizardState:
    """
    Apply an event to the wizard state and return the new state.

    Raises:
        ValidationFailed: the current step's gate is unmet (state unchanged)
        InvalidStep: the event is not accepted in the current step
    """
    event = Event(event)
    machine = WizardMachine(state)
    try:
        machine.send(event.value)
    except TransitionNotAllowed:
        raise InvalidStep(f"{event.value} is not allowed from {state.step.value}")
    return replace(machine.wizard, step=WizardStep(machine.current_state.value))


def back_target(state: WizardState) -> Optional[WizardStep]:
    """
    Where Back leads from the current step, or None when there is no back action.
    """
    try:
        return transition(state, Event.BACK).step
    except InvalidStep:
        return None


def draft_payload(state: WizardState) -> Dict[str, object]:
    """
    Partial save payload: only populated fields, keyed by persisted column.
    Unset answers are omitted rather than nulled.
    """
    a = state.answers
    payload: Dict[str, object] = {}
    for name in ("attributed_to_mm", "applied_count", "emailed_count", "interview_count",
                 "visa_has_lawyer"):
        value = getattr(a, name)
        if value is not None and value != "":
            payload[name] = value
    if a.visa_type and sanitize_text(a.visa_type):
        payload["visa_type"] = a.visa_type

    if state.branch == Branch.FOUND_JOB:
        if a.feedback and sanitize_text(a.feedback):
            payload["reason"] = a.feedback
    elif state.branch == Branch.STILL_LOOKING and a.reason_code in REASON_LABELS:
        try:
            payload["reason"] = compose_reason(a.reason_code, a.reason_text, a.max_price)
        except ValidationFailed:
            # Unparseable price: keep the draft, skip the reason until it is fixed
            pass
    return payload
