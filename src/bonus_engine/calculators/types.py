"""Type definitions for the bonus calculation pipeline."""

from __future__ import annotations

import re
from calendar import monthrange
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

# Precision for stored scores and coefficients
SCORE_PRECISION = Decimal("0.000001")
# Precision for percentages (completeness, confidence, percentile, rates)
PERCENT_PRECISION = Decimal("0.01")

# Weight and ratio sums are accepted within this tolerance
RATIO_TOLERANCE = Decimal("0.001")

PROFIT = "profit_contribution"
POSITION = "position_value"
PERFORMANCE = "performance"
DIMENSIONS: tuple[str, ...] = (PROFIT, POSITION, PERFORMANCE)


class NormalizationMethod(str, Enum):
    """Cohort normalization methods."""

    MIN_MAX = "min_max"
    Z_SCORE = "z_score"
    RANK_BASED = "rank_based"
    PERCENTILE = "percentile"


class CompositeMethod(str, Enum):
    """How weighted dimension scores combine into a total."""

    WEIGHTED_SUM = "weighted_sum"
    WEIGHTED_PRODUCT = "weighted_product"
    HYBRID = "hybrid"


class AllocationMethod(str, Enum):
    """Allocation strategies."""

    SCORE_BASED = "score_based"
    TIER_BASED = "tier_based"
    POOL_PERCENTAGE = "pool_percentage"
    FIXED_AMOUNT = "fixed_amount"
    HYBRID = "hybrid"


class DistributionCurve(str, Enum):
    """Score-to-coefficient curves."""

    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    LOGARITHMIC = "logarithmic"
    POWER = "power"
    STEP = "step"


class RoundingMethod(str, Enum):
    """Final amount rounding modes."""

    ROUND = "round"
    FLOOR = "floor"
    CEIL = "ceil"
    BANKER = "banker"


class Trend(str, Enum):
    """Period-over-period score trend."""

    IMPROVING = "improving"
    DECLINING = "declining"
    STABLE = "stable"
    VOLATILE = "volatile"


class PoolGroupBy(str, Enum):
    """Grouping key for pool_percentage allocation."""

    DEPARTMENT = "department"
    BUSINESS_LINE = "business_line"


def _dec(value: Any) -> Decimal | None:
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


@dataclass
class EmployeeInput:
    """One employee's directory snapshot and raw dimension values for a period."""

    employee_id: str
    department_id: str | None = None
    position_level: str | None = None
    business_line: str | None = None
    employee_type: str | None = None
    hire_date: date | None = None
    work_months: int | None = None  # Overrides hire_date derivation when set

    profit_contribution: Decimal | None = None
    position_value: Decimal | None = None
    performance: Decimal | None = None
    previous_score: Decimal | None = None

    def __post_init__(self) -> None:
        self.profit_contribution = _dec(self.profit_contribution)
        self.position_value = _dec(self.position_value)
        self.performance = _dec(self.performance)
        self.previous_score = _dec(self.previous_score)

    def raw_value(self, dimension: str) -> Decimal | None:
        return getattr(self, dimension)

    def to_canonical_dict(self) -> dict[str, Any]:
        """Return canonical dict for hashing (deterministic ordering)."""
        return {
            "employee_id": self.employee_id,
            "department_id": self.department_id,
            "position_level": self.position_level,
            "business_line": self.business_line,
            "employee_type": self.employee_type,
            "hire_date": self.hire_date.isoformat() if self.hire_date else None,
            "work_months": self.work_months,
            "profit_contribution": _str_or_none(self.profit_contribution),
            "position_value": _str_or_none(self.position_value),
            "performance": _str_or_none(self.performance),
            "previous_score": _str_or_none(self.previous_score),
        }


def _str_or_none(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


@dataclass(frozen=True)
class ScoreAdjustments:
    """Multiplicative score adjustments applied to the composite total."""

    excellence_bonus: Decimal | None = None
    excellence_threshold: Decimal = Decimal("0.9")
    performance_multiplier: Decimal | None = None
    performance_threshold: Decimal = Decimal("0.8")
    position_level_multipliers: dict[str, Decimal] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return (
            self.excellence_bonus is not None
            or self.performance_multiplier is not None
            or bool(self.position_level_multipliers)
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ScoreAdjustments | None:
        if not data:
            return None
        return cls(
            excellence_bonus=_dec(data.get("excellence_bonus")),
            excellence_threshold=_dec(data.get("excellence_threshold", "0.9")),
            performance_multiplier=_dec(data.get("performance_multiplier")),
            performance_threshold=_dec(data.get("performance_threshold", "0.8")),
            position_level_multipliers={
                k: _dec(v) for k, v in (data.get("position_level_multipliers") or {}).items()
            },
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "excellence_bonus": _str_or_none(self.excellence_bonus),
            "excellence_threshold": str(self.excellence_threshold),
            "performance_multiplier": _str_or_none(self.performance_multiplier),
            "performance_threshold": str(self.performance_threshold),
            "position_level_multipliers": {
                k: str(v) for k, v in sorted(self.position_level_multipliers.items())
            },
        }


@dataclass(frozen=True)
class WeightConfigSpec:
    """Dimension weights plus normalization and composite settings."""

    profit_weight: Decimal
    position_weight: Decimal
    performance_weight: Decimal
    normalization_method: NormalizationMethod = NormalizationMethod.MIN_MAX
    calculation_method: CompositeMethod = CompositeMethod.WEIGHTED_SUM
    scale_lower: Decimal = Decimal("0")
    scale_upper: Decimal = Decimal("1")
    adjustments: ScoreAdjustments | None = None
    config_id: str | None = None
    version: int = 1

    def weights(self) -> dict[str, Decimal]:
        return {
            PROFIT: self.profit_weight,
            POSITION: self.position_weight,
            PERFORMANCE: self.performance_weight,
        }

    def to_canonical_dict(self) -> dict[str, Any]:
        return {
            "config_id": self.config_id,
            "version": self.version,
            "weights": {k: str(v) for k, v in self.weights().items()},
            "normalization_method": self.normalization_method.value,
            "calculation_method": self.calculation_method.value,
            "scale": [str(self.scale_lower), str(self.scale_upper)],
            "adjustments": self.adjustments.to_dict() if self.adjustments else None,
        }


@dataclass(frozen=True)
class TierSpec:
    """One tier of a tier_based rule."""

    tier: str
    ratio: Decimal
    min_score: Decimal


@dataclass(frozen=True)
class SpecialRules:
    """Special coefficient factors applied per employee."""

    new_employee_reduction: bool = False
    new_employee_months: int = 12
    new_employee_factor: Decimal = Decimal("0.5")
    excellent_employee_bonus: bool = False
    excellent_threshold: Decimal = Decimal("0.9")
    excellent_factor: Decimal = Decimal("1.3")
    key_position_bonus: bool = False
    key_position_levels: tuple[str, ...] = ("senior",)
    key_position_factor: Decimal = Decimal("1.1")

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SpecialRules:
        if not data:
            return cls()
        defaults = cls()
        return cls(
            new_employee_reduction=bool(data.get("new_employee_reduction", False)),
            new_employee_months=int(data.get("new_employee_months", defaults.new_employee_months)),
            new_employee_factor=_dec(data.get("new_employee_factor", defaults.new_employee_factor)),
            excellent_employee_bonus=bool(data.get("excellent_employee_bonus", False)),
            excellent_threshold=_dec(data.get("excellent_threshold", defaults.excellent_threshold)),
            excellent_factor=_dec(data.get("excellent_factor", defaults.excellent_factor)),
            key_position_bonus=bool(data.get("key_position_bonus", False)),
            key_position_levels=tuple(data.get("key_position_levels", defaults.key_position_levels)),
            key_position_factor=_dec(data.get("key_position_factor", defaults.key_position_factor)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "new_employee_reduction": self.new_employee_reduction,
            "new_employee_months": self.new_employee_months,
            "new_employee_factor": str(self.new_employee_factor),
            "excellent_employee_bonus": self.excellent_employee_bonus,
            "excellent_threshold": str(self.excellent_threshold),
            "excellent_factor": str(self.excellent_factor),
            "key_position_bonus": self.key_position_bonus,
            "key_position_levels": list(self.key_position_levels),
            "key_position_factor": str(self.key_position_factor),
        }


@dataclass(frozen=True)
class ApplicabilityFilter:
    """Restricts a rule to matching employees. Empty tuples match everyone."""

    business_lines: tuple[str, ...] = ()
    departments: tuple[str, ...] = ()
    position_levels: tuple[str, ...] = ()
    employee_types: tuple[str, ...] = ()

    def matches(self, employee: EmployeeInput) -> bool:
        checks = (
            (self.business_lines, employee.business_line),
            (self.departments, employee.department_id),
            (self.position_levels, employee.position_level),
            (self.employee_types, employee.employee_type),
        )
        return all(not allowed or value in allowed for allowed, value in checks)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ApplicabilityFilter:
        data = data or {}
        return cls(
            business_lines=tuple(data.get("business_lines") or ()),
            departments=tuple(data.get("departments") or ()),
            position_levels=tuple(data.get("position_levels") or ()),
            employee_types=tuple(data.get("employee_types") or ()),
        )

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "business_lines": list(self.business_lines),
            "departments": list(self.departments),
            "position_levels": list(self.position_levels),
            "employee_types": list(self.employee_types),
        }


@dataclass(frozen=True)
class PoolGroupConfig:
    """Group shares for pool_percentage allocation."""

    group_by: PoolGroupBy = PoolGroupBy.DEPARTMENT
    shares: dict[str, Decimal] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> PoolGroupConfig | None:
        if data is None:
            return None
        return cls(
            group_by=PoolGroupBy(data.get("group_by", PoolGroupBy.DEPARTMENT.value)),
            shares={k: _dec(v) for k, v in (data.get("shares") or {}).items()},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_by": self.group_by.value,
            "shares": {k: str(v) for k, v in sorted(self.shares.items())},
        }


@dataclass(frozen=True)
class FixedAmountConfig:
    """Predetermined amounts for fixed_amount allocation."""

    amounts: dict[str, Decimal] = field(default_factory=dict)
    default_amount: Decimal | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> FixedAmountConfig | None:
        if data is None:
            return None
        return cls(
            amounts={k: _dec(v) for k, v in (data.get("amounts") or {}).items()},
            default_amount=_dec(data.get("default_amount")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "amounts": {k: str(v) for k, v in sorted(self.amounts.items())},
            "default_amount": _str_or_none(self.default_amount),
        }

    def amount_for(self, employee_id: str) -> Decimal | None:
        return self.amounts.get(employee_id, self.default_amount)


@dataclass(frozen=True)
class AllocationRuleSpec:
    """Allocation rule as consumed by the engine."""

    name: str
    allocation_method: AllocationMethod
    base_allocation_ratio: Decimal = Decimal("0.8")
    performance_allocation_ratio: Decimal = Decimal("0.2")
    score_distribution_method: DistributionCurve = DistributionCurve.LINEAR
    min_score_threshold: Decimal = Decimal("0")
    max_score_multiplier: Decimal = Decimal("3.0")
    tiers: tuple[TierSpec, ...] = ()
    min_bonus_amount: Decimal | None = None
    max_bonus_amount: Decimal | None = None
    min_bonus_ratio: Decimal | None = None
    max_bonus_ratio: Decimal | None = None
    total_allocation_limit: Decimal = Decimal("1.0")
    reserve_ratio: Decimal = Decimal("0.05")
    rounding_method: RoundingMethod = RoundingMethod.ROUND
    calculation_precision: int = 2
    position_level_weights: dict[str, Decimal] = field(default_factory=dict)
    department_weights: dict[str, Decimal] = field(default_factory=dict)
    special_rules: SpecialRules = field(default_factory=SpecialRules)
    pool_groups: PoolGroupConfig | None = None
    fixed_amounts: FixedAmountConfig | None = None
    applicability: ApplicabilityFilter = field(default_factory=ApplicabilityFilter)
    rule_id: str | None = None
    version: int = 1

    def to_canonical_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "version": self.version,
            "name": self.name,
            "allocation_method": self.allocation_method.value,
            "base_allocation_ratio": str(self.base_allocation_ratio),
            "performance_allocation_ratio": str(self.performance_allocation_ratio),
            "score_distribution_method": self.score_distribution_method.value,
            "min_score_threshold": str(self.min_score_threshold),
            "max_score_multiplier": str(self.max_score_multiplier),
            "tiers": [[t.tier, str(t.ratio), str(t.min_score)] for t in self.tiers],
            "min_bonus_amount": _str_or_none(self.min_bonus_amount),
            "max_bonus_amount": _str_or_none(self.max_bonus_amount),
            "min_bonus_ratio": _str_or_none(self.min_bonus_ratio),
            "max_bonus_ratio": _str_or_none(self.max_bonus_ratio),
            "total_allocation_limit": str(self.total_allocation_limit),
            "reserve_ratio": str(self.reserve_ratio),
            "rounding_method": self.rounding_method.value,
            "calculation_precision": self.calculation_precision,
            "position_level_weights": {
                k: str(v) for k, v in sorted(self.position_level_weights.items())
            },
            "department_weights": {
                k: str(v) for k, v in sorted(self.department_weights.items())
            },
            "special_rules": self.special_rules.to_dict(),
            "pool_groups": self.pool_groups.to_dict() if self.pool_groups else None,
            "fixed_amounts": self.fixed_amounts.to_dict() if self.fixed_amounts else None,
            "applicability": self.applicability.to_dict(),
        }


@dataclass(frozen=True)
class PoolSpec:
    """The bonus pool a run distributes."""

    pool_id: str
    period: str
    total_amount: Decimal


@dataclass(frozen=True)
class AnomalyReason:
    """Why a result needs mandatory review."""

    code: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


@dataclass
class CompositeScoreDraft:
    """Composite score for one employee before persistence."""

    employee_id: str
    department_id: str | None
    position_level: str | None
    normalized: dict[str, Decimal] = field(default_factory=dict)
    weighted: dict[str, Decimal] = field(default_factory=dict)
    present: dict[str, bool] = field(default_factory=dict)
    total_score: Decimal = Decimal("0")
    adjusted_score: Decimal | None = None
    score_rank: int | None = None
    percentile_rank: Decimal | None = None
    department_rank: int | None = None
    level_rank: int | None = None
    data_completeness: Decimal = Decimal("100")
    calculation_confidence: Decimal = Decimal("80")
    outlier_flag: bool = False
    previous_score: Decimal | None = None
    score_change_rate: Decimal | None = None
    trend: Trend | None = None
    contribution_rates: dict[str, Decimal] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    @property
    def final_score(self) -> Decimal:
        return self.adjusted_score if self.adjusted_score is not None else self.total_score


@dataclass
class AllocationDraft:
    """Allocation for one employee before persistence.

    total_amount and final_coeff are derived so the component identities hold
    by construction.
    """

    employee_id: str
    composite: CompositeScoreDraft
    department_id: str | None = None
    position_level: str | None = None
    business_line: str | None = None
    work_months: int | None = None
    eligible_for_bonus: bool = True
    ineligible_reason: str | None = None
    tier_level: str | None = None
    pool_group: str | None = None

    base_allocation_coeff: Decimal = Decimal("1")
    performance_coeff: Decimal = Decimal("1")
    position_coeff: Decimal = Decimal("1")
    department_coeff: Decimal = Decimal("1")
    special_coeff: Decimal = Decimal("1")

    base_amount: Decimal = Decimal("0")
    performance_amount: Decimal = Decimal("0")
    adjustment_amount: Decimal = Decimal("0")
    original_calculated_amount: Decimal | None = None
    pool_allocation_ratio: Decimal = Decimal("0")

    min_amount_applied: bool = False
    max_amount_applied: bool = False
    has_anomalies: bool = False
    anomaly_reasons: list[AnomalyReason] = field(default_factory=list)
    applied_rules: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    calculation_id: UUID | None = None

    @property
    def final_coeff(self) -> Decimal:
        return (
            self.base_allocation_coeff
            * self.performance_coeff
            * self.position_coeff
            * self.department_coeff
            * self.special_coeff
        )

    @property
    def total_amount(self) -> Decimal:
        return self.base_amount + self.performance_amount + self.adjustment_amount

    @property
    def final_score(self) -> Decimal:
        return self.composite.final_score

    @property
    def score_rank(self) -> int | None:
        return self.composite.score_rank

    def scale_amounts(self, factor: Decimal) -> None:
        self.base_amount *= factor
        self.performance_amount *= factor
        self.adjustment_amount *= factor

    def set_total(self, target: Decimal) -> None:
        """Move the total to target through the adjustment component."""
        self.adjustment_amount = target - self.base_amount - self.performance_amount

    def zero_amounts(self) -> None:
        self.base_amount = Decimal("0")
        self.performance_amount = Decimal("0")
        self.adjustment_amount = Decimal("0")


_PERIOD_PATTERNS = (
    (re.compile(r"^(\d{4})$"), "year"),
    (re.compile(r"^(\d{4})-(\d{2})$"), "month"),
    (re.compile(r"^(\d{4})-Q([1-4])$"), "quarter"),
    (re.compile(r"^(\d{4})-H([12])$"), "half"),
)


def period_end_date(period: str) -> date:
    """Last day of a period label (YYYY, YYYY-MM, YYYY-Qn, YYYY-Hn)."""
    for pattern, kind in _PERIOD_PATTERNS:
        match = pattern.match(period)
        if match is None:
            continue
        year = int(match.group(1))
        if kind == "year":
            month = 12
        elif kind == "month":
            month = int(match.group(2))
            if not 1 <= month <= 12:
                break
        elif kind == "quarter":
            month = int(match.group(2)) * 3
        else:
            month = int(match.group(2)) * 6
        return date(year, month, monthrange(year, month)[1])
    raise ValueError(f"Unrecognized period '{period}'")


def months_between(start: date, end: date) -> int:
    """Whole calendar months from start to end, never negative."""
    months = (end.year - start.year) * 12 + (end.month - start.month)
    return max(months, 0)
