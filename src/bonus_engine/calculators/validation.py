"""Configuration validation for weight configs, allocation rules and pools.

Validators return a list of error messages (empty if valid) so callers can
report every problem at once; ensure_valid raises ConfigurationError.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable

from bonus_engine.calculators.types import (
    RATIO_TOLERANCE,
    AllocationMethod,
    AllocationRuleSpec,
    EmployeeInput,
    PoolSpec,
    TierSpec,
    WeightConfigSpec,
    period_end_date,
)

ONE = Decimal("1")
ZERO = Decimal("0")


class ConfigurationError(Exception):
    """Raised when a configuration fails validation. Nothing is saved."""

    def __init__(self, errors: list[str], entity: str = "configuration"):
        self.errors = errors
        self.entity = entity
        super().__init__(f"Invalid {entity}: " + "; ".join(errors))


def ensure_valid(errors: list[str], entity: str = "configuration") -> None:
    if errors:
        raise ConfigurationError(errors, entity)


def _sums_to_one(values: Iterable[Decimal]) -> bool:
    return abs(sum(values, ZERO) - ONE) <= RATIO_TOLERANCE


def validate_weight_config(spec: WeightConfigSpec) -> list[str]:
    errors: list[str] = []
    weights = spec.weights()
    for name, weight in weights.items():
        if weight < ZERO or weight > ONE:
            errors.append(f"{name} weight must be between 0 and 1, got {weight}")
    if not _sums_to_one(weights.values()):
        errors.append(
            f"Dimension weights must sum to 1 (±{RATIO_TOLERANCE}), "
            f"got {sum(weights.values(), ZERO)}"
        )
    if spec.scale_lower >= spec.scale_upper:
        errors.append("Normalization scale lower bound must be below upper bound")

    adj = spec.adjustments
    if adj is not None:
        if adj.excellence_bonus is not None and adj.excellence_bonus < ZERO:
            errors.append("Excellence bonus must not be negative")
        if adj.performance_multiplier is not None and adj.performance_multiplier <= ZERO:
            errors.append("Performance multiplier must be positive")
        for level, mult in adj.position_level_multipliers.items():
            if mult <= ZERO:
                errors.append(f"Position level multiplier for '{level}' must be positive")
    return errors


def validate_tiers(tiers: Iterable[TierSpec]) -> list[str]:
    """Tier names unique and non-empty, ratios sum to 1, thresholds strictly decreasing."""
    tiers = list(tiers)
    errors: list[str] = []
    if not tiers:
        return ["Tier configuration must contain at least one tier"]

    names = [t.tier for t in tiers]
    if any(not name or not name.strip() for name in names):
        errors.append("Tier names must not be empty")
    if len(set(names)) != len(names):
        errors.append("Tier names must be unique")

    for t in tiers:
        if t.ratio <= ZERO or t.ratio > ONE:
            errors.append(f"Tier '{t.tier}' ratio must be in (0, 1], got {t.ratio}")
        if t.min_score < ZERO or t.min_score > ONE:
            errors.append(
                f"Tier '{t.tier}' min_score must be a fraction of the score scale "
                f"in [0, 1], got {t.min_score}"
            )

    if not _sums_to_one(t.ratio for t in tiers):
        errors.append(
            f"Tier ratios must sum to 1 (±{RATIO_TOLERANCE}), "
            f"got {sum((t.ratio for t in tiers), ZERO)}"
        )

    for upper, lower in zip(tiers, tiers[1:]):
        if lower.min_score >= upper.min_score:
            errors.append(
                f"Tier thresholds must be strictly decreasing: "
                f"'{lower.tier}' ({lower.min_score}) is not below "
                f"'{upper.tier}' ({upper.min_score})"
            )
    return errors


def validate_allocation_rule(spec: AllocationRuleSpec) -> list[str]:
    errors: list[str] = []

    if not spec.name or not spec.name.strip():
        errors.append("Rule name is required")

    for label, ratio in (
        ("base_allocation_ratio", spec.base_allocation_ratio),
        ("performance_allocation_ratio", spec.performance_allocation_ratio),
    ):
        if ratio < ZERO or ratio > ONE:
            errors.append(f"{label} must be between 0 and 1, got {ratio}")
    if not _sums_to_one((spec.base_allocation_ratio, spec.performance_allocation_ratio)):
        errors.append(
            "Base and performance allocation ratios must sum to 1 "
            f"(±{RATIO_TOLERANCE}), got "
            f"{spec.base_allocation_ratio + spec.performance_allocation_ratio}"
        )

    if not Decimal("1") <= spec.max_score_multiplier <= Decimal("10"):
        errors.append(f"max_score_multiplier must be in [1, 10], got {spec.max_score_multiplier}")
    if spec.min_score_threshold < ZERO:
        errors.append("min_score_threshold must not be negative")

    if not Decimal("0.5") <= spec.total_allocation_limit <= Decimal("1.2"):
        errors.append(
            f"total_allocation_limit must be in [0.5, 1.2], got {spec.total_allocation_limit}"
        )
    if not ZERO <= spec.reserve_ratio <= Decimal("0.2"):
        errors.append(f"reserve_ratio must be in [0, 0.2], got {spec.reserve_ratio}")
    if spec.reserve_ratio >= spec.total_allocation_limit:
        errors.append("reserve_ratio must be below total_allocation_limit")

    for label, amount in (
        ("min_bonus_amount", spec.min_bonus_amount),
        ("max_bonus_amount", spec.max_bonus_amount),
        ("min_bonus_ratio", spec.min_bonus_ratio),
        ("max_bonus_ratio", spec.max_bonus_ratio),
    ):
        if amount is not None and amount < ZERO:
            errors.append(f"{label} must not be negative")
    if (
        spec.min_bonus_amount is not None
        and spec.max_bonus_amount is not None
        and spec.min_bonus_amount > spec.max_bonus_amount
    ):
        errors.append("min_bonus_amount must not exceed max_bonus_amount")
    if (
        spec.min_bonus_ratio is not None
        and spec.max_bonus_ratio is not None
        and spec.min_bonus_ratio >= spec.max_bonus_ratio
    ):
        errors.append("min_bonus_ratio must be below max_bonus_ratio")

    if not 0 <= spec.calculation_precision <= 4:
        errors.append("calculation_precision must be between 0 and 4")

    for label, weights in (
        ("position level", spec.position_level_weights),
        ("department", spec.department_weights),
    ):
        for key, weight in weights.items():
            if weight <= ZERO:
                errors.append(f"{label} weight for '{key}' must be positive")

    method = spec.allocation_method
    if method == AllocationMethod.TIER_BASED:
        errors.extend(validate_tiers(spec.tiers))
    elif spec.tiers:
        errors.extend(validate_tiers(spec.tiers))

    if method == AllocationMethod.POOL_PERCENTAGE and spec.pool_groups is not None:
        shares = spec.pool_groups.shares
        for group, share in shares.items():
            if share < ZERO or share > ONE:
                errors.append(f"Pool share for '{group}' must be between 0 and 1")
        if shares and not _sums_to_one(shares.values()):
            errors.append(f"Pool group shares must sum to 1 (±{RATIO_TOLERANCE})")

    if method == AllocationMethod.FIXED_AMOUNT:
        fixed = spec.fixed_amounts
        if fixed is None or (not fixed.amounts and fixed.default_amount is None):
            errors.append("fixed_amount rules need per-employee amounts or a default amount")
        else:
            values = list(fixed.amounts.values())
            if fixed.default_amount is not None:
                values.append(fixed.default_amount)
            if any(v < ZERO for v in values):
                errors.append("Fixed amounts must not be negative")
    return errors


def validate_pool(pool: PoolSpec) -> list[str]:
    errors: list[str] = []
    if pool.total_amount < ZERO:
        errors.append("Pool amount must not be negative")
    try:
        period_end_date(pool.period)
    except ValueError as e:
        errors.append(str(e))
    return errors


def validate_employee_inputs(employees: list[EmployeeInput]) -> list[str]:
    """Structural checks on a run's cohort. Missing values are not errors."""
    errors: list[str] = []
    seen: set[str] = set()
    for emp in employees:
        if not emp.employee_id:
            errors.append("Employee id is required")
            continue
        if emp.employee_id in seen:
            errors.append(f"Duplicate employee id '{emp.employee_id}'")
        seen.add(emp.employee_id)
        if emp.work_months is not None and emp.work_months < 0:
            errors.append(f"Employee '{emp.employee_id}' has negative work_months")
    return errors
