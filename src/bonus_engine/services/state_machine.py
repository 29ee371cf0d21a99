"""Review, payment and run state machines with transition validation."""

from __future__ import annotations

from enum import Enum


class ReviewStatus(str, Enum):
    """Allocation result review status values."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ADJUSTED = "adjusted"
    LOCKED = "locked"
    PAID = "paid"


class PaymentStatus(str, Enum):
    """Allocation result payment status values."""

    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    """Calculation run status values."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StateConflictError(Exception):
    """Raised when an action conflicts with the current state."""

    def __init__(
        self,
        entity: str,
        current: str,
        requested: str,
        reason: str | None = None,
    ):
        self.entity = entity
        self.current = str(getattr(current, "value", current))
        self.requested = str(getattr(requested, "value", requested))
        self.reason = reason
        msg = f"Cannot move {entity} from '{self.current}' to '{self.requested}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ImmutableResultError(StateConflictError):
    """Raised when a locked or paid result would be modified."""

    def __init__(self, current: str, requested: str = "modify", reason: str | None = None):
        super().__init__(
            "allocation result",
            current,
            requested,
            reason or "locked and paid results are read-only",
        )


class AnomalyReviewRequiredError(StateConflictError):
    """Raised when an anomalous result is approved without acknowledgement."""

    def __init__(self, current: str, anomaly_codes: list[str]):
        self.anomaly_codes = anomaly_codes
        super().__init__(
            "allocation result",
            current,
            ReviewStatus.APPROVED,
            "anomalies must be acknowledged before approval: " + ", ".join(anomaly_codes),
        )


class _StateMachine:
    ENTITY = "entity"
    VALID_TRANSITIONS: dict[str, list[str]] = {}

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising StateConflictError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise StateConflictError(cls.ENTITY, from_status, to_status)

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        return cls.VALID_TRANSITIONS.get(current_status, [])

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return not cls.VALID_TRANSITIONS.get(status)


class ReviewStateMachine(_StateMachine):
    """State machine for allocation result review.

    Allowed transitions:
    - pending → approved | rejected | adjusted
    - adjusted → pending (resubmit)
    - approved → locked
    - locked → paid
    """

    ENTITY = "review"

    VALID_TRANSITIONS: dict[str, list[str]] = {
        ReviewStatus.PENDING: [
            ReviewStatus.APPROVED,
            ReviewStatus.REJECTED,
            ReviewStatus.ADJUSTED,
        ],
        ReviewStatus.ADJUSTED: [ReviewStatus.PENDING],
        ReviewStatus.APPROVED: [ReviewStatus.LOCKED],
        ReviewStatus.LOCKED: [ReviewStatus.PAID],
        ReviewStatus.REJECTED: [],  # Terminal state
        ReviewStatus.PAID: [],  # Terminal state
    }

    # Statuses where results are immutable
    RESULTS_IMMUTABLE = {
        ReviewStatus.LOCKED,
        ReviewStatus.PAID,
    }

    # Statuses from which payment may start
    PAYABLE = {
        ReviewStatus.APPROVED,
        ReviewStatus.LOCKED,
    }

    @classmethod
    def are_results_immutable(cls, status: str) -> bool:
        """Check if results (amounts, scores) are immutable."""
        return status in cls.RESULTS_IMMUTABLE

    @classmethod
    def can_start_payment(cls, status: str) -> bool:
        return status in cls.PAYABLE

    @classmethod
    def is_repeat_approval(cls, from_status: str, to_status: str) -> bool:
        """Approving an approved result is a no-op rather than an error."""
        return from_status == ReviewStatus.APPROVED and to_status == ReviewStatus.APPROVED


class PaymentStateMachine(_StateMachine):
    """State machine for allocation result payment.

    Allowed transitions:
    - pending → processing | cancelled
    - processing → paid | failed | cancelled
    """

    ENTITY = "payment"

    VALID_TRANSITIONS: dict[str, list[str]] = {
        PaymentStatus.PENDING: [PaymentStatus.PROCESSING, PaymentStatus.CANCELLED],
        PaymentStatus.PROCESSING: [
            PaymentStatus.PAID,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
        ],
        PaymentStatus.PAID: [],
        PaymentStatus.FAILED: [],
        PaymentStatus.CANCELLED: [],
    }


class RunStateMachine(_StateMachine):
    """State machine for calculation runs. Every status but running is terminal."""

    ENTITY = "calculation run"

    VALID_TRANSITIONS: dict[str, list[str]] = {
        RunStatus.RUNNING: [RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED],
        RunStatus.COMPLETED: [],
        RunStatus.FAILED: [],
        RunStatus.CANCELLED: [],
    }
