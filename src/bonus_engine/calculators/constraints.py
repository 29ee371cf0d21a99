"""Guarantee and constraint enforcement for an allocated batch."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_EVEN, ROUND_HALF_UP, Decimal

from bonus_engine.calculators.types import (
    SCORE_PRECISION,
    AllocationDraft,
    AllocationRuleSpec,
    RoundingMethod,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
# Sums within this distance of capacity count as fitting before rounding
CAPACITY_EPSILON = Decimal("0.000001")

ROUNDING_MODES = {
    RoundingMethod.ROUND: ROUND_HALF_UP,
    RoundingMethod.FLOOR: ROUND_FLOOR,
    RoundingMethod.CEIL: ROUND_CEILING,
    RoundingMethod.BANKER: ROUND_HALF_EVEN,
}


def round_amount(amount: Decimal, method: RoundingMethod, precision: int) -> Decimal:
    exponent = Decimal(1).scaleb(-precision)
    return amount.quantize(exponent, rounding=ROUNDING_MODES[method])


@dataclass
class ConstraintOutcome:
    """What enforcement did to the batch."""

    capacity: Decimal
    cohort_average: Decimal = ZERO
    floor: Decimal | None = None
    ceiling: Decimal | None = None
    iterations: int = 0
    rebalanced: bool = False
    floors_scaled: bool = False
    rounding_drift: Decimal = ZERO
    warnings: list[str] = field(default_factory=list)


class ConstraintEnforcer:
    """Clamps amounts to floor/ceiling bounds and fits the batch into capacity.

    Order: clamp, rebalance, round, reconcile rounding drift. Ineligible
    drafts were zeroed during allocation and are left alone.
    """

    def __init__(self, rule: AllocationRuleSpec, max_iterations: int = 50):
        self.rule = rule
        self.max_iterations = max_iterations

    def bounds(self, average: Decimal) -> tuple[Decimal | None, Decimal | None]:
        """Effective floor and ceiling for a cohort average."""
        rule = self.rule
        floors = [v for v in (rule.min_bonus_amount,) if v is not None]
        if rule.min_bonus_ratio is not None:
            floors.append(rule.min_bonus_ratio * average)
        ceilings = [v for v in (rule.max_bonus_amount,) if v is not None]
        if rule.max_bonus_ratio is not None:
            ceilings.append(rule.max_bonus_ratio * average)
        return (max(floors) if floors else None, min(ceilings) if ceilings else None)

    def enforce(self, drafts: list[AllocationDraft], capacity: Decimal) -> ConstraintOutcome:
        outcome = ConstraintOutcome(capacity=capacity)
        eligible = [d for d in drafts if d.eligible_for_bonus]
        if not eligible:
            return outcome

        outcome.cohort_average = sum(
            (d.original_calculated_amount or d.total_amount for d in eligible), ZERO
        ) / Decimal(len(eligible))
        outcome.floor, outcome.ceiling = self.bounds(outcome.cohort_average)

        self.clamp(eligible, outcome.floor, outcome.ceiling)
        self.rebalance(eligible, capacity, outcome)
        self.round_amounts(drafts)
        self.reconcile_rounding(eligible, capacity, outcome)

        for draft in drafts:
            if draft.original_calculated_amount is not None:
                draft.original_calculated_amount = round_amount(
                    draft.original_calculated_amount,
                    self.rule.rounding_method,
                    self.rule.calculation_precision,
                )
            draft.pool_allocation_ratio = (
                (draft.total_amount / capacity).quantize(SCORE_PRECISION)
                if capacity > 0
                else ZERO
            )
        return outcome

    @staticmethod
    def clamp(
        drafts: list[AllocationDraft], floor: Decimal | None, ceiling: Decimal | None
    ) -> None:
        """Apply the floor, then the ceiling. The ceiling wins if they cross."""
        for draft in drafts:
            if floor is not None and draft.total_amount < floor:
                draft.set_total(floor)
                draft.min_amount_applied = True
                draft.applied_rules.append("guarantee:floor")
            if ceiling is not None and draft.total_amount > ceiling:
                draft.set_total(ceiling)
                draft.max_amount_applied = True
                draft.min_amount_applied = False
                draft.applied_rules.append("guarantee:ceiling")

    def rebalance(
        self, drafts: list[AllocationDraft], capacity: Decimal, outcome: ConstraintOutcome
    ) -> None:
        """Scale unclamped amounts down until the batch fits capacity.

        Floor-clamped amounts are held fixed; any amount pushed under the floor
        by scaling becomes floor-clamped and the pass repeats.
        """
        for iteration in range(1, self.max_iterations + 1):
            total = sum((d.total_amount for d in drafts), ZERO)
            if total <= capacity + CAPACITY_EPSILON:
                return
            outcome.rebalanced = True
            outcome.iterations = iteration

            fixed = [d for d in drafts if d.min_amount_applied]
            free = [d for d in drafts if not d.min_amount_applied]
            fixed_sum = sum((d.total_amount for d in fixed), ZERO)
            free_sum = sum((d.total_amount for d in free), ZERO)
            room = capacity - fixed_sum
            if free_sum <= 0 or room <= 0:
                break

            factor = room / free_sum
            for draft in free:
                draft.scale_amounts(factor)
            self._release_ceiling(free, outcome.ceiling)

            if outcome.floor is not None:
                for draft in free:
                    if draft.total_amount < outcome.floor:
                        draft.set_total(outcome.floor)
                        draft.min_amount_applied = True
                        draft.max_amount_applied = False
                        draft.applied_rules.append("guarantee:floor")

        total = sum((d.total_amount for d in drafts), ZERO)
        if total <= capacity + CAPACITY_EPSILON:
            return

        # Guarantees alone exceed capacity
        factor = capacity / total if total > 0 else ZERO
        for draft in drafts:
            draft.scale_amounts(factor)
        self._release_ceiling(drafts, outcome.ceiling)
        outcome.floors_scaled = True
        message = (
            f"Guaranteed amounts exceed the distributable pool {capacity}; "
            f"all amounts scaled by {factor.quantize(SCORE_PRECISION)}"
        )
        outcome.warnings.append(message)
        logger.warning(message)

    @staticmethod
    def _release_ceiling(drafts: list[AllocationDraft], ceiling: Decimal | None) -> None:
        """Amounts scaled below the ceiling are no longer capped by it."""
        if ceiling is None:
            return
        for draft in drafts:
            if draft.max_amount_applied and draft.total_amount < ceiling:
                draft.max_amount_applied = False

    def round_amounts(self, drafts: list[AllocationDraft]) -> None:
        """Round components last; the adjustment absorbs the difference to the rounded total."""
        method = self.rule.rounding_method
        precision = self.rule.calculation_precision
        for draft in drafts:
            total = round_amount(draft.total_amount, method, precision)
            draft.base_amount = round_amount(draft.base_amount, method, precision)
            draft.performance_amount = round_amount(draft.performance_amount, method, precision)
            draft.set_total(total)

    def reconcile_rounding(
        self, drafts: list[AllocationDraft], capacity: Decimal, outcome: ConstraintOutcome
    ) -> None:
        """Absorb rounding overshoot in the top-ranked unclamped result.

        Does nothing when the rounded batch already fits.
        """
        total = sum((d.total_amount for d in drafts), ZERO)
        excess = total - capacity
        if excess <= 0:
            return
        excess = round_amount(excess, RoundingMethod.CEIL, self.rule.calculation_precision)

        candidates = [
            d
            for d in drafts
            if not d.min_amount_applied and d.total_amount >= excess
        ] or sorted(drafts, key=lambda d: -d.total_amount)
        target = candidates[0]
        target.adjustment_amount -= excess
        target.applied_rules.append("rounding_reconciliation")
        outcome.rounding_drift = excess
        logger.debug("Rounding drift %s absorbed by %s", excess, target.employee_id)
