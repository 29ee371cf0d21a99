"""Review and payment actions on allocation results."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bonus_engine.calculators.anomaly import AnomalyDetector
from bonus_engine.calculators.constraints import round_amount
from bonus_engine.calculators.types import RoundingMethod
from bonus_engine.config import get_settings
from bonus_engine.models import AllocationResult, AllocationRule, ReviewEvent
from bonus_engine.services.state_machine import (
    AnomalyReviewRequiredError,
    ImmutableResultError,
    PaymentStateMachine,
    PaymentStatus,
    ReviewStateMachine,
    ReviewStatus,
    StateConflictError,
)

logger = logging.getLogger(__name__)


class ResultNotFoundError(LookupError):
    """Raised when an allocation result does not exist."""

    def __init__(self, allocation_result_id: UUID):
        self.allocation_result_id = allocation_result_id
        super().__init__(f"Allocation result {allocation_result_id} not found")


@dataclass
class BulkApprovalOutcome:
    approved: list[UUID] = field(default_factory=list)
    unchanged: list[UUID] = field(default_factory=list)
    skipped: dict[UUID, str] = field(default_factory=dict)


class ReviewService:
    """Service for review and payment transitions.

    Every action validates against the state machines and appends a
    ReviewEvent. Callers own the transaction and commit.
    """

    def __init__(self, session: AsyncSession, detector: AnomalyDetector | None = None):
        self.session = session
        if detector is None:
            settings = get_settings()
            detector = AnomalyDetector(
                settings.anomaly_amount_ceiling, settings.min_data_completeness
            )
        self.detector = detector

    async def get_result(self, allocation_result_id: UUID) -> AllocationResult:
        result = await self.session.get(AllocationResult, allocation_result_id)
        if result is None:
            raise ResultNotFoundError(allocation_result_id)
        return result

    # === Review ===

    async def approve(
        self,
        allocation_result_id: UUID,
        actor: str | None = None,
        comments: str | None = None,
        acknowledge_anomalies: bool = False,
    ) -> AllocationResult:
        """pending → approved. Repeat approval is a no-op.

        Raises StateConflictError for any other current status, and
        AnomalyReviewRequiredError when anomalies are not acknowledged.
        """
        result = await self.get_result(allocation_result_id)
        current = result.review_status

        if ReviewStateMachine.is_repeat_approval(current, ReviewStatus.APPROVED):
            logger.info("Result %s already approved; nothing to do", allocation_result_id)
            return result

        ReviewStateMachine.validate_transition(current, ReviewStatus.APPROVED)
        if result.has_anomalies and not acknowledge_anomalies:
            codes = [r.get("code", "") for r in (result.anomaly_reasons or [])]
            raise AnomalyReviewRequiredError(current, codes)

        self._set_review(result, ReviewStatus.APPROVED, actor, comments)
        await self._record(
            result,
            "approve",
            current,
            ReviewStatus.APPROVED,
            actor,
            comments,
            {"anomalies_acknowledged": True} if result.has_anomalies else None,
        )
        return result

    async def reject(
        self,
        allocation_result_id: UUID,
        actor: str | None = None,
        comments: str | None = None,
    ) -> AllocationResult:
        """pending → rejected (terminal)."""
        result = await self.get_result(allocation_result_id)
        current = result.review_status
        self._ensure_mutable(current, ReviewStatus.REJECTED)
        ReviewStateMachine.validate_transition(current, ReviewStatus.REJECTED)
        self._set_review(result, ReviewStatus.REJECTED, actor, comments)
        await self._record(result, "reject", current, ReviewStatus.REJECTED, actor, comments)
        return result

    async def adjust(
        self,
        allocation_result_id: UUID,
        actor: str | None = None,
        comments: str | None = None,
        new_score: Decimal | None = None,
        new_amount: Decimal | None = None,
    ) -> AllocationResult:
        """pending → adjusted, applying a new score and/or amount.

        A new amount flows through the adjustment component so the total
        stays the sum of its parts; anomaly checks are re-run.
        """
        if new_score is None and new_amount is None:
            raise ValueError("An adjustment needs a new score or a new amount")

        result = await self.get_result(allocation_result_id)
        current = result.review_status
        self._ensure_mutable(current, ReviewStatus.ADJUSTED)
        ReviewStateMachine.validate_transition(current, ReviewStatus.ADJUSTED)

        payload: dict[str, Any] = {}
        if new_score is not None:
            payload["score"] = {"from": str(result.final_score), "to": str(new_score)}
            result.adjusted_score = new_score
            result.final_score = new_score
        if new_amount is not None:
            rule = await self.session.get(AllocationRule, result.allocation_rule_id)
            new_amount = round_amount(
                Decimal(new_amount),
                RoundingMethod(rule.rounding_method),
                rule.calculation_precision,
            )
            payload["amount"] = {"from": str(result.total_amount), "to": str(new_amount)}
            result.adjustment_amount = (
                new_amount - Decimal(result.base_amount) - Decimal(result.performance_amount)
            )
            result.total_amount = new_amount

        reasons = self.detector.inspect(result, Decimal(result.data_completeness))
        result.has_anomalies = bool(reasons)
        result.anomaly_reasons = [r.to_dict() for r in reasons] or None

        self._set_review(result, ReviewStatus.ADJUSTED, actor, comments)
        await self._record(result, "adjust", current, ReviewStatus.ADJUSTED, actor, comments, payload)
        return result

    async def resubmit(
        self,
        allocation_result_id: UUID,
        actor: str | None = None,
        comments: str | None = None,
    ) -> AllocationResult:
        """adjusted → pending."""
        result = await self.get_result(allocation_result_id)
        current = result.review_status
        ReviewStateMachine.validate_transition(current, ReviewStatus.PENDING)
        self._set_review(result, ReviewStatus.PENDING, actor, comments)
        await self._record(result, "resubmit", current, ReviewStatus.PENDING, actor, comments)
        return result

    async def lock(
        self,
        allocation_result_id: UUID,
        actor: str | None = None,
        comments: str | None = None,
    ) -> AllocationResult:
        """approved → locked. The result is read-only afterwards."""
        result = await self.get_result(allocation_result_id)
        await self._lock(result, actor, comments)
        return result

    async def bulk_approve(
        self,
        allocation_result_ids: list[UUID],
        actor: str | None = None,
        comments: str | None = None,
    ) -> BulkApprovalOutcome:
        """Approve many pending results. Anomalous results are skipped, never acknowledged."""
        outcome = BulkApprovalOutcome()
        rows = await self.session.execute(
            select(AllocationResult).where(
                AllocationResult.allocation_result_id.in_(allocation_result_ids)
            )
        )
        found = {r.allocation_result_id: r for r in rows.scalars().all()}

        for result_id in allocation_result_ids:
            result = found.get(result_id)
            if result is None:
                outcome.skipped[result_id] = "not found"
                continue
            current = result.review_status
            if current == ReviewStatus.APPROVED:
                outcome.unchanged.append(result_id)
                continue
            if not ReviewStateMachine.can_transition(current, ReviewStatus.APPROVED):
                outcome.skipped[result_id] = f"status is {current}"
                continue
            if result.has_anomalies:
                outcome.skipped[result_id] = "anomalies require individual review"
                continue
            self._set_review(result, ReviewStatus.APPROVED, actor, comments)
            await self._record(
                result, "bulk_approve", current, ReviewStatus.APPROVED, actor, comments
            )
            outcome.approved.append(result_id)

        logger.info(
            "Bulk approval: %d approved, %d unchanged, %d skipped",
            len(outcome.approved),
            len(outcome.unchanged),
            len(outcome.skipped),
        )
        return outcome

    # === Payment ===

    async def submit_payment(
        self,
        allocation_result_id: UUID,
        actor: str | None = None,
        payment_reference: str | None = None,
    ) -> AllocationResult:
        """payment pending → processing. An approved result is locked first."""
        result = await self.get_result(allocation_result_id)
        if not ReviewStateMachine.can_start_payment(result.review_status):
            raise _payment_not_allowed(result.review_status)

        PaymentStateMachine.validate_transition(result.payment_status, PaymentStatus.PROCESSING)
        if result.review_status == ReviewStatus.APPROVED:
            await self._lock(result, actor, "Locked for payment")

        await self._set_payment(result, PaymentStatus.PROCESSING, actor, "submit_payment")
        if payment_reference:
            result.payment_reference = payment_reference
        return result

    async def settle_payment(
        self,
        allocation_result_id: UUID,
        actor: str | None = None,
        payment_date: date | None = None,
        payment_reference: str | None = None,
    ) -> AllocationResult:
        """payment processing → paid; review locked → paid."""
        result = await self.get_result(allocation_result_id)
        PaymentStateMachine.validate_transition(result.payment_status, PaymentStatus.PAID)
        ReviewStateMachine.validate_transition(result.review_status, ReviewStatus.PAID)

        await self._set_payment(result, PaymentStatus.PAID, actor, "settle_payment")
        result.payment_date = payment_date or date.today()
        if payment_reference:
            result.payment_reference = payment_reference

        current = result.review_status
        result.review_status = ReviewStatus.PAID.value
        await self._record(result, "review_paid", current, ReviewStatus.PAID, actor, None)
        return result

    async def fail_payment(
        self,
        allocation_result_id: UUID,
        actor: str | None = None,
        reason: str | None = None,
    ) -> AllocationResult:
        """payment processing → failed (terminal)."""
        result = await self.get_result(allocation_result_id)
        PaymentStateMachine.validate_transition(result.payment_status, PaymentStatus.FAILED)
        await self._set_payment(result, PaymentStatus.FAILED, actor, "fail_payment", reason)
        return result

    async def cancel_payment(
        self,
        allocation_result_id: UUID,
        actor: str | None = None,
        reason: str | None = None,
    ) -> AllocationResult:
        """payment pending/processing → cancelled."""
        result = await self.get_result(allocation_result_id)
        PaymentStateMachine.validate_transition(result.payment_status, PaymentStatus.CANCELLED)
        await self._set_payment(result, PaymentStatus.CANCELLED, actor, "cancel_payment", reason)
        return result

    # === Internals ===

    @staticmethod
    def _ensure_mutable(current: str, requested: ReviewStatus) -> None:
        if ReviewStateMachine.are_results_immutable(current):
            raise ImmutableResultError(current, requested.value)

    async def _lock(
        self, result: AllocationResult, actor: str | None, comments: str | None
    ) -> None:
        current = result.review_status
        ReviewStateMachine.validate_transition(current, ReviewStatus.LOCKED)
        result.review_status = ReviewStatus.LOCKED.value
        await self._record(result, "lock", current, ReviewStatus.LOCKED, actor, comments)

    @staticmethod
    def _set_review(
        result: AllocationResult,
        status: ReviewStatus,
        actor: str | None,
        comments: str | None,
    ) -> None:
        result.review_status = status.value
        result.reviewed_by = actor
        result.reviewed_at = datetime.now(timezone.utc)
        if comments is not None:
            result.review_comments = comments

    async def _set_payment(
        self,
        result: AllocationResult,
        status: PaymentStatus,
        actor: str | None,
        action: str,
        comments: str | None = None,
    ) -> None:
        current = result.payment_status
        result.payment_status = status.value
        await self._record(result, action, current, status, actor, comments)

    async def _record(
        self,
        result: AllocationResult,
        action: str,
        from_status: str,
        to_status: str,
        actor: str | None,
        comments: str | None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        self.session.add(
            ReviewEvent(
                allocation_result_id=result.allocation_result_id,
                action=action,
                from_status=str(getattr(from_status, "value", from_status)),
                to_status=str(getattr(to_status, "value", to_status)),
                actor=actor,
                comments=comments,
                payload=payload,
            )
        )
        await self.session.flush()
        logger.debug(
            "Result %s: %s (%s → %s) by %s",
            result.allocation_result_id,
            action,
            from_status,
            to_status,
            actor,
        )


def _payment_not_allowed(review_status: str) -> StateConflictError:
    return StateConflictError(
        "payment",
        PaymentStatus.PENDING,
        PaymentStatus.PROCESSING,
        f"review status is '{review_status}'; payment needs an approved or locked result",
    )
