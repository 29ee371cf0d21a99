"""Bonus engine services.

Service classes are imported from their modules; models depend on the
state machines exported here.
"""

from bonus_engine.services.state_machine import (
    AnomalyReviewRequiredError,
    ImmutableResultError,
    PaymentStateMachine,
    PaymentStatus,
    ReviewStateMachine,
    ReviewStatus,
    RunStateMachine,
    RunStatus,
    StateConflictError,
)

__all__ = [
    "AnomalyReviewRequiredError",
    "ImmutableResultError",
    "PaymentStateMachine",
    "PaymentStatus",
    "ReviewStateMachine",
    "ReviewStatus",
    "RunStateMachine",
    "RunStatus",
    "StateConflictError",
]
