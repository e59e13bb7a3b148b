import uuid
from datetime import datetime

from sqlalchemy import Column, String, Boolean, DateTime, Integer, ForeignKey, Text
from sqlalchemy.orm import validates

from database import Base
from backend.utils.errors import InvalidTransition, ImmutableFieldViolation, ValidationFailed

# Subscription statuses
STATUS_ACTIVE = "active"
STATUS_PENDING = "pending_cancellation"
STATUS_CANCELLED = "cancelled"
SUBSCRIPTION_STATUSES = (STATUS_ACTIVE, STATUS_PENDING, STATUS_CANCELLED)

# Allowed (from, to) status pairs. cancelled is final.
ALLOWED_TRANSITIONS = frozenset({
    (STATUS_ACTIVE, STATUS_PENDING),
    (STATUS_ACTIVE, STATUS_CANCELLED),
    (STATUS_PENDING, STATUS_CANCELLED),
    (STATUS_PENDING, STATUS_ACTIVE),
})

# Experiment arms
VARIANT_A = "A"
VARIANT_B = "B"
VARIANTS = (VARIANT_A, VARIANT_B)

# Survey buckets (part of the draft compatibility contract)
APPLIED_BUCKETS = ("0", "1-5", "6-20", "20+")
EMAILED_BUCKETS = ("0", "1-5", "6-20", "20+")
INTERVIEW_BUCKETS = ("0", "1-2", "3-5", "5+")
BUCKET_CHOICES = {
    "applied_count": APPLIED_BUCKETS,
    "emailed_count": EMAILED_BUCKETS,
    "interview_count": INTERVIEW_BUCKETS,
}


def _new_id() -> str:
    return str(uuid.uuid4())


def check_transition(from_status, to_status) -> None:
    """
    Raise InvalidTransition unless from_status -> to_status is allowed.
    Same-status changes are no-ops and always pass.
    """
    if to_status not in SUBSCRIPTION_STATUSES:
        raise InvalidTransition(from_status, to_status)
    if from_status is None or from_status == to_status:
        return
    if (from_status, to_status) not in ALLOWED_TRANSITIONS:
        raise InvalidTransition(from_status, to_status)


def _guard_owner(obj, new_user_id):
    if obj.user_id is not None and new_user_id != obj.user_id:
        raise ImmutableFieldViolation("user_id")
    return new_user_id


class User(Base):
    """
    Minimal user row. Identity is owned by the external provider;
    the cancellation core only reads it.
    """
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_new_id)
    email = Column(String, unique=True, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    monthly_price = Column(Integer, nullable=False)  # cents
    status = Column(String(32), nullable=False, default=STATUS_ACTIVE)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    @validates("status")
    def _validate_status(self, key, value):
        check_transition(self.status, value)
        return value

    @validates("user_id")
    def _validate_user_id(self, key, value):
        return _guard_owner(self, value)


class Cancellation(Base):
    """
    One row per cancellation attempt. Doubles as the resumable draft of
    the wizard's answers and the audit trail once finalized.
    """
    __tablename__ = "cancellations"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    subscription_id = Column(String(36), ForeignKey("subscriptions.id"), nullable=True)

    # A/B assignment (persisted once)
    downsell_variant = Column(String(1), nullable=True, index=True)
    accepted_downsell = Column(Boolean, nullable=False, default=False)

    # Survey
    attributed_to_mm = Column(Boolean, nullable=True)
    applied_count = Column(String(8), nullable=True)
    emailed_count = Column(String(8), nullable=True)
    interview_count = Column(String(8), nullable=True)

    reason = Column(Text, nullable=True)

    # Visa step (found-job branch)
    visa_has_lawyer = Column(Boolean, nullable=True)
    visa_type = Column(Text, nullable=True)

    finalized_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    @property
    def is_finalized(self) -> bool:
        return self.finalized_at is not None

    @validates("downsell_variant")
    def _validate_variant(self, key, value):
        if value is not None and value not in VARIANTS:
            raise ValidationFailed(fields=[key])
        if self.downsell_variant is not None and value != self.downsell_variant:
            raise ImmutableFieldViolation(key, "downsell_variant is immutable after assignment")
        return value

    @validates("applied_count", "emailed_count", "interview_count")
    def _validate_bucket(self, key, value):
        if value is not None and value not in BUCKET_CHOICES[key]:
            raise ValidationFailed(fields=[key])
        return value

    @validates("user_id")
    def _validate_user_id(self, key, value):
        return _guard_owner(self, value)
