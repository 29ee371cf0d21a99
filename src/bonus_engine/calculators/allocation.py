"""Allocation rule evaluation.

Each allocation method is an independent function registered in
ALLOCATION_STRATEGIES. Strategies set the base and performance coefficients
and the base/performance amounts of eligible drafts; position, department and
special coefficients are applied beforehand by AllocationEvaluator.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Callable

from bonus_engine.calculators.types import (
    PERFORMANCE,
    AllocationDraft,
    AllocationMethod,
    AllocationRuleSpec,
    CompositeScoreDraft,
    DistributionCurve,
    EmployeeInput,
    PoolGroupBy,
    TierSpec,
    months_between,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
ONE = Decimal("1")

SPECIAL_COEFF_MIN = Decimal("0.1")
SPECIAL_COEFF_MAX = Decimal("5")

HIGH_PERFORMANCE = Decimal("0.8")
LOW_PERFORMANCE = Decimal("0.4")
HIGH_PERFORMANCE_COEFF = Decimal("1.2")
LOW_PERFORMANCE_COEFF = Decimal("0.8")

_E_SQUARED_MINUS_ONE = Decimal(2).exp() - ONE
_LN_TEN = Decimal(10).ln()

ScaleFraction = Callable[[Decimal], Decimal]
Strategy = Callable[
    [list[AllocationDraft], AllocationRuleSpec, Decimal, ScaleFraction], list[str]
]


def distributable_amount(pool_total: Decimal, rule: AllocationRuleSpec) -> Decimal:
    """pool × totalAllocationLimit − pool × reserveRatio."""
    return pool_total * rule.total_allocation_limit - pool_total * rule.reserve_ratio


def curve_value(t: Decimal, curve: DistributionCurve) -> Decimal:
    """Monotonic transform of t in [0, 1] onto [0, 1]."""
    t = min(max(t, ZERO), ONE)
    if curve == DistributionCurve.LINEAR:
        return t
    if curve == DistributionCurve.EXPONENTIAL:
        return ((2 * t).exp() - ONE) / _E_SQUARED_MINUS_ONE
    if curve == DistributionCurve.LOGARITHMIC:
        return (ONE + 9 * t).ln() / _LN_TEN
    if curve == DistributionCurve.POWER:
        return t * t
    if curve == DistributionCurve.STEP:
        return Decimal(math.floor(t * 5)) / 5
    raise ValueError(f"Unknown distribution curve: {curve}")


def curve_coefficient(
    score: Decimal,
    min_score: Decimal,
    max_score: Decimal,
    curve: DistributionCurve,
    max_multiplier: Decimal,
    min_coeff: Decimal = ONE,
) -> Decimal:
    """Coefficient in [min_coeff, max_multiplier] derived from a cohort score.

    Linear: min_coeff + (score - min) / (max - min) × (max_multiplier - min_coeff).
    A cohort with a single distinct score gets min_coeff throughout.
    """
    if max_score == min_score:
        return min_coeff
    t = (score - min_score) / (max_score - min_score)
    return min_coeff + curve_value(t, curve) * (max_multiplier - min_coeff)


def performance_coefficient(fraction: Decimal) -> Decimal:
    if fraction > HIGH_PERFORMANCE:
        return HIGH_PERFORMANCE_COEFF
    if fraction < LOW_PERFORMANCE:
        return LOW_PERFORMANCE_COEFF
    return ONE


def special_coefficient(
    draft: AllocationDraft, rule: AllocationRuleSpec
) -> tuple[Decimal, list[str]]:
    """Product of applicable special factors, clamped to [0.1, 5]."""
    special = rule.special_rules
    coeff = ONE
    applied: list[str] = []
    if (
        special.new_employee_reduction
        and draft.work_months is not None
        and draft.work_months < special.new_employee_months
    ):
        coeff *= special.new_employee_factor
        applied.append("special:new_employee_reduction")
    if special.excellent_employee_bonus and draft.final_score > special.excellent_threshold:
        coeff *= special.excellent_factor
        applied.append("special:excellent_employee_bonus")
    if special.key_position_bonus and draft.position_level in special.key_position_levels:
        coeff *= special.key_position_factor
        applied.append("special:key_position_bonus")
    return min(max(coeff, SPECIAL_COEFF_MIN), SPECIAL_COEFF_MAX), applied


def _base_weight(draft: AllocationDraft) -> Decimal:
    return (
        draft.base_allocation_coeff
        * draft.position_coeff
        * draft.department_coeff
        * draft.special_coeff
    )


def split_pool(
    drafts: list[AllocationDraft], base_pool: Decimal, performance_pool: Decimal
) -> None:
    """Distribute both pool shares proportionally across drafts.

    The base share follows every coefficient except performance_coeff; the
    performance share follows final_coeff.
    """
    if not drafts:
        return
    base_weights = [_base_weight(d) for d in drafts]
    perf_weights = [d.final_coeff for d in drafts]
    base_total = sum(base_weights, ZERO)
    perf_total = sum(perf_weights, ZERO)
    for draft, base_w, perf_w in zip(drafts, base_weights, perf_weights):
        draft.base_amount = base_pool * base_w / base_total if base_total > 0 else ZERO
        draft.performance_amount = (
            performance_pool * perf_w / perf_total if perf_total > 0 else ZERO
        )


def _split_by_ratio(
    drafts: list[AllocationDraft], rule: AllocationRuleSpec, amount: Decimal
) -> None:
    split_pool(
        drafts,
        amount * rule.base_allocation_ratio,
        amount * rule.performance_allocation_ratio,
    )


def _relative_score_coefficients(drafts: list[AllocationDraft]) -> None:
    """Base coefficient = score / group mean, so shares follow score within a group."""
    mean = sum((d.final_score for d in drafts), ZERO) / Decimal(len(drafts))
    for draft in drafts:
        draft.base_allocation_coeff = draft.final_score / mean if mean > 0 else ONE
        draft.performance_coeff = ONE


def allocate_score_based(
    drafts: list[AllocationDraft],
    rule: AllocationRuleSpec,
    distributable: Decimal,
    scale_fraction: ScaleFraction,
) -> list[str]:
    if not drafts:
        return []
    scores = [d.final_score for d in drafts]
    low, high = min(scores), max(scores)
    for draft in drafts:
        draft.base_allocation_coeff = curve_coefficient(
            draft.final_score,
            low,
            high,
            rule.score_distribution_method,
            rule.max_score_multiplier,
        )
        draft.performance_coeff = performance_coefficient(
            scale_fraction(draft.composite.normalized[PERFORMANCE])
        )
        draft.applied_rules.append(f"curve:{rule.score_distribution_method.value}")
    _split_by_ratio(drafts, rule, distributable)
    return []


def allocate_hybrid(
    drafts: list[AllocationDraft],
    rule: AllocationRuleSpec,
    distributable: Decimal,
    scale_fraction: ScaleFraction,
) -> list[str]:
    """Flat base share; the performance share follows the score curve."""
    if not drafts:
        return []
    scores = [d.final_score for d in drafts]
    low, high = min(scores), max(scores)
    for draft in drafts:
        draft.base_allocation_coeff = ONE
        draft.performance_coeff = curve_coefficient(
            draft.final_score,
            low,
            high,
            rule.score_distribution_method,
            rule.max_score_multiplier,
        )
        draft.applied_rules.append(f"curve:{rule.score_distribution_method.value}")
    _split_by_ratio(drafts, rule, distributable)
    return []


def assign_tier(score: Decimal, tiers: tuple[TierSpec, ...]) -> TierSpec:
    """First tier whose threshold the score reaches; below all tiers means the lowest.

    Thresholds are fractions of the score scale, so callers pass the scale
    fraction of the final score.
    """
    for tier in tiers:
        if score >= tier.min_score:
            return tier
    return tiers[-1]


def allocate_tier_based(
    drafts: list[AllocationDraft],
    rule: AllocationRuleSpec,
    distributable: Decimal,
    scale_fraction: ScaleFraction,
) -> list[str]:
    warnings: list[str] = []
    members: dict[str, list[AllocationDraft]] = {t.tier: [] for t in rule.tiers}
    for draft in drafts:
        tier = assign_tier(scale_fraction(draft.final_score), rule.tiers)
        draft.tier_level = tier.tier
        draft.applied_rules.append(f"tier:{tier.tier}")
        members[tier.tier].append(draft)

    for tier in rule.tiers:
        group = members[tier.tier]
        if not group:
            warnings.append(f"Tier '{tier.tier}' has no members; its share stays unallocated")
            continue
        _relative_score_coefficients(group)
        _split_by_ratio(group, rule, distributable * tier.ratio)
    return warnings


def _group_key(draft: AllocationDraft, group_by: PoolGroupBy) -> str | None:
    if group_by == PoolGroupBy.BUSINESS_LINE:
        return draft.business_line
    return draft.department_id


def allocate_pool_percentage(
    drafts: list[AllocationDraft],
    rule: AllocationRuleSpec,
    distributable: Decimal,
    scale_fraction: ScaleFraction,
) -> list[str]:
    warnings: list[str] = []
    if not drafts:
        return warnings
    group_by = rule.pool_groups.group_by if rule.pool_groups else PoolGroupBy.DEPARTMENT
    configured = dict(rule.pool_groups.shares) if rule.pool_groups else {}

    groups: dict[str, list[AllocationDraft]] = defaultdict(list)
    for draft in drafts:
        key = _group_key(draft, group_by) or "unassigned"
        draft.pool_group = key
        groups[key].append(draft)

    if configured:
        shares = configured
    else:
        headcount = Decimal(len(drafts))
        shares = {key: Decimal(len(group)) / headcount for key, group in groups.items()}

    for key in sorted(groups):
        group = groups[key]
        share = shares.get(key)
        if share is None:
            warnings.append(f"Group '{key}' has no configured share; members receive nothing")
            for draft in group:
                draft.zero_amounts()
            continue
        _relative_score_coefficients(group)
        for draft in group:
            draft.applied_rules.append(f"pool_group:{key}")
        _split_by_ratio(group, rule, distributable * share)

    for key in sorted(set(shares) - set(groups)):
        warnings.append(f"Group '{key}' has no members; its share stays unallocated")
    return warnings


def allocate_fixed_amount(
    drafts: list[AllocationDraft],
    rule: AllocationRuleSpec,
    distributable: Decimal,
    scale_fraction: ScaleFraction,
) -> list[str]:
    """Predetermined amounts replace score-driven computation."""
    fixed = rule.fixed_amounts
    for draft in drafts:
        draft.base_allocation_coeff = ONE
        draft.performance_coeff = ONE
        draft.position_coeff = ONE
        draft.department_coeff = ONE
        draft.special_coeff = ONE
        amount = fixed.amount_for(draft.employee_id) if fixed else None
        if amount is None:
            draft.warnings.append("No fixed amount configured; allocated zero")
            amount = ZERO
        draft.base_amount = amount
        draft.performance_amount = ZERO
        draft.applied_rules.append("fixed_amount")
    return []


ALLOCATION_STRATEGIES: dict[AllocationMethod, Strategy] = {
    AllocationMethod.SCORE_BASED: allocate_score_based,
    AllocationMethod.TIER_BASED: allocate_tier_based,
    AllocationMethod.POOL_PERCENTAGE: allocate_pool_percentage,
    AllocationMethod.FIXED_AMOUNT: allocate_fixed_amount,
    AllocationMethod.HYBRID: allocate_hybrid,
}


class AllocationEvaluator:
    """Turns ranked composite scores into allocation drafts for one rule."""

    def __init__(
        self,
        rule: AllocationRuleSpec,
        min_work_months: int,
        period_end: date,
        scale_fraction: ScaleFraction | None = None,
    ):
        self.rule = rule
        self.min_work_months = min_work_months
        self.period_end = period_end
        self.scale_fraction = scale_fraction or (lambda value: value)

    def work_months(self, employee: EmployeeInput) -> int | None:
        if employee.work_months is not None:
            return employee.work_months
        if employee.hire_date is not None:
            return months_between(employee.hire_date, self.period_end)
        return None

    def prepare(
        self,
        employees: list[EmployeeInput],
        composites: dict[str, CompositeScoreDraft],
    ) -> list[AllocationDraft]:
        """Build drafts for applicable employees, in rank order.

        Eligibility is settled here so ineligible employees never enter the
        distribution denominator.
        """
        by_id = {emp.employee_id: emp for emp in employees}
        ranked = sorted(composites.values(), key=lambda c: (c.score_rank or 0, c.employee_id))

        drafts: list[AllocationDraft] = []
        for composite in ranked:
            emp = by_id[composite.employee_id]
            if not self.rule.applicability.matches(emp):
                continue
            draft = AllocationDraft(
                employee_id=emp.employee_id,
                composite=composite,
                department_id=emp.department_id,
                position_level=emp.position_level,
                business_line=emp.business_line,
                work_months=self.work_months(emp),
            )
            draft.applied_rules.append(f"rule:{self.rule.name}")

            if draft.work_months is None:
                draft.warnings.append("Tenure unknown; eligibility not restricted by tenure")
            elif draft.work_months < self.min_work_months:
                draft.eligible_for_bonus = False
                draft.ineligible_reason = (
                    f"Tenure {draft.work_months} months is below the "
                    f"{self.min_work_months} month minimum"
                )
            if draft.eligible_for_bonus and draft.final_score < self.rule.min_score_threshold:
                draft.eligible_for_bonus = False
                draft.ineligible_reason = (
                    f"Score {draft.final_score} is below the threshold "
                    f"{self.rule.min_score_threshold}"
                )

            self._apply_profile_coefficients(draft)
            drafts.append(draft)
        return drafts

    def _apply_profile_coefficients(self, draft: AllocationDraft) -> None:
        rule = self.rule
        if draft.position_level in rule.position_level_weights:
            draft.position_coeff = rule.position_level_weights[draft.position_level]
            draft.applied_rules.append(f"position_weight:{draft.position_level}")
        if draft.department_id in rule.department_weights:
            draft.department_coeff = rule.department_weights[draft.department_id]
            draft.applied_rules.append(f"department_weight:{draft.department_id}")
        draft.special_coeff, applied = special_coefficient(draft, rule)
        draft.applied_rules.extend(applied)

    def allocate(self, drafts: list[AllocationDraft], distributable: Decimal) -> list[str]:
        """Run the configured strategy over eligible drafts. Returns batch warnings."""
        eligible = [d for d in drafts if d.eligible_for_bonus]
        for draft in drafts:
            if not draft.eligible_for_bonus:
                draft.zero_amounts()

        strategy = ALLOCATION_STRATEGIES.get(self.rule.allocation_method)
        if strategy is None:
            raise ValueError(f"Unknown allocation method: {self.rule.allocation_method}")

        logger.debug(
            "Allocating %s over %d eligible employee(s) with %s",
            distributable,
            len(eligible),
            self.rule.allocation_method.value,
        )
        warnings = strategy(eligible, self.rule, distributable, self.scale_fraction)
        for draft in eligible:
            draft.original_calculated_amount = draft.total_amount
        return warnings
