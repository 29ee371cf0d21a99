"""Weight config, allocation rule and bonus pool models."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    Date,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from bonus_engine.calculators.types import (
    AllocationMethod,
    AllocationRuleSpec,
    ApplicabilityFilter,
    CompositeMethod,
    DistributionCurve,
    FixedAmountConfig,
    NormalizationMethod,
    PoolGroupConfig,
    PoolSpec,
    RoundingMethod,
    ScoreAdjustments,
    SpecialRules,
    TierSpec,
    WeightConfigSpec,
)
from bonus_engine.models.base import Base, UpdatedAtMixin

CONFIG_STATUSES = "('draft', 'active', 'inactive', 'archived')"


def _opt(value: Any) -> Decimal | None:
    return Decimal(str(value)) if value is not None else None


def _dec(value: Any, default: str) -> Decimal:
    """Column value, or its insert default when the row has not been flushed yet."""
    return Decimal(str(value)) if value is not None else Decimal(default)


class WeightConfig(Base, UpdatedAtMixin):
    """Versioned three-dimension weight configuration."""

    __tablename__ = "weight_config"

    weight_config_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    code: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(String, nullable=False, default="active")

    profit_weight: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False)
    position_weight: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False)
    performance_weight: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False)

    normalization_method: Mapped[str] = mapped_column(
        String, nullable=False, default=NormalizationMethod.MIN_MAX.value
    )
    calculation_method: Mapped[str] = mapped_column(
        String, nullable=False, default=CompositeMethod.WEIGHTED_SUM.value
    )
    scale_lower: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False, default=0)
    scale_upper: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False, default=1)
    adjustments: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)

    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date | None] = mapped_column(Date, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("code", "version", name="weight_config_code_version_unique"),
        CheckConstraint(f"status IN {CONFIG_STATUSES}", name="weight_config_status_check"),
        CheckConstraint(
            "effective_to IS NULL OR effective_to >= effective_from",
            name="weight_config_effective_range_check",
        ),
    )

    def to_spec(self) -> WeightConfigSpec:
        return WeightConfigSpec(
            profit_weight=Decimal(self.profit_weight),
            position_weight=Decimal(self.position_weight),
            performance_weight=Decimal(self.performance_weight),
            normalization_method=NormalizationMethod(
                self.normalization_method or NormalizationMethod.MIN_MAX.value
            ),
            calculation_method=CompositeMethod(
                self.calculation_method or CompositeMethod.WEIGHTED_SUM.value
            ),
            scale_lower=_dec(self.scale_lower, "0"),
            scale_upper=_dec(self.scale_upper, "1"),
            adjustments=ScoreAdjustments.from_dict(self.adjustments),
            config_id=str(self.weight_config_id) if self.weight_config_id else None,
            version=self.version or 1,
        )


class AllocationRule(Base, UpdatedAtMixin):
    """Versioned allocation rule."""

    __tablename__ = "allocation_rule"

    allocation_rule_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    code: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    parent_rule_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("allocation_rule.allocation_rule_id"), nullable=True
    )
    status: Mapped[str] = mapped_column(String, nullable=False, default="active")

    allocation_method: Mapped[str] = mapped_column(String, nullable=False)
    base_allocation_ratio: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False)
    performance_allocation_ratio: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False)
    score_distribution_method: Mapped[str] = mapped_column(
        String, nullable=False, default=DistributionCurve.LINEAR.value
    )
    min_score_threshold: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False, default=0)
    max_score_multiplier: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False, default=3)
    tier_config: Mapped[list[Any] | None] = mapped_column(nullable=True)

    min_bonus_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    max_bonus_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    min_bonus_ratio: Mapped[Decimal | None] = mapped_column(Numeric(6, 4), nullable=True)
    max_bonus_ratio: Mapped[Decimal | None] = mapped_column(Numeric(6, 4), nullable=True)
    total_allocation_limit: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False, default=1)
    reserve_ratio: Mapped[Decimal] = mapped_column(
        Numeric(6, 4), nullable=False, default=Decimal("0.05")
    )
    rounding_method: Mapped[str] = mapped_column(
        String, nullable=False, default=RoundingMethod.ROUND.value
    )
    calculation_precision: Mapped[int] = mapped_column(Integer, nullable=False, default=2)

    position_level_weights: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)
    department_weights: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)
    special_rules: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)
    pool_groups: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)
    fixed_amounts: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)
    applicability: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)

    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date | None] = mapped_column(Date, nullable=True)

    __table_args__ = (
        UniqueConstraint("code", "version", name="allocation_rule_code_version_unique"),
        CheckConstraint(f"status IN {CONFIG_STATUSES}", name="allocation_rule_status_check"),
        CheckConstraint(
            "allocation_method IN ('score_based', 'tier_based', 'pool_percentage', "
            "'fixed_amount', 'hybrid')",
            name="allocation_rule_method_check",
        ),
        CheckConstraint(
            "rounding_method IN ('round', 'floor', 'ceil', 'banker')",
            name="allocation_rule_rounding_check",
        ),
        CheckConstraint(
            "effective_to IS NULL OR effective_to >= effective_from",
            name="allocation_rule_effective_range_check",
        ),
    )

    def to_spec(self) -> AllocationRuleSpec:
        return AllocationRuleSpec(
            name=self.name,
            allocation_method=AllocationMethod(self.allocation_method),
            base_allocation_ratio=Decimal(self.base_allocation_ratio),
            performance_allocation_ratio=Decimal(self.performance_allocation_ratio),
            score_distribution_method=DistributionCurve(
                self.score_distribution_method or DistributionCurve.LINEAR.value
            ),
            min_score_threshold=_dec(self.min_score_threshold, "0"),
            max_score_multiplier=_dec(self.max_score_multiplier, "3"),
            tiers=tuple(
                TierSpec(t["tier"], Decimal(str(t["ratio"])), Decimal(str(t["min_score"])))
                for t in (self.tier_config or [])
            ),
            min_bonus_amount=_opt(self.min_bonus_amount),
            max_bonus_amount=_opt(self.max_bonus_amount),
            min_bonus_ratio=_opt(self.min_bonus_ratio),
            max_bonus_ratio=_opt(self.max_bonus_ratio),
            total_allocation_limit=_dec(self.total_allocation_limit, "1"),
            reserve_ratio=_dec(self.reserve_ratio, "0.05"),
            rounding_method=RoundingMethod(self.rounding_method or RoundingMethod.ROUND.value),
            calculation_precision=(
                self.calculation_precision if self.calculation_precision is not None else 2
            ),
            position_level_weights={
                k: Decimal(str(v)) for k, v in (self.position_level_weights or {}).items()
            },
            department_weights={
                k: Decimal(str(v)) for k, v in (self.department_weights or {}).items()
            },
            special_rules=SpecialRules.from_dict(self.special_rules),
            pool_groups=PoolGroupConfig.from_dict(self.pool_groups),
            fixed_amounts=FixedAmountConfig.from_dict(self.fixed_amounts),
            applicability=ApplicabilityFilter.from_dict(self.applicability),
            rule_id=str(self.allocation_rule_id) if self.allocation_rule_id else None,
            version=self.version or 1,
        )


class BonusPool(Base, UpdatedAtMixin):
    """Money available for one period's distribution."""

    __tablename__ = "bonus_pool"

    bonus_pool_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String, nullable=False)
    period: Mapped[str] = mapped_column(String, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(16, 2), nullable=False)
    weight_config_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("weight_config.weight_config_id"), nullable=True
    )
    status: Mapped[str] = mapped_column(String, nullable=False, default="active")
    allocated_amount: Mapped[Decimal] = mapped_column(Numeric(16, 2), nullable=False, default=0)
    allocated_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft', 'active', 'allocated', 'archived')",
            name="bonus_pool_status_check",
        ),
        CheckConstraint("total_amount >= 0", name="bonus_pool_amount_check"),
    )

    def to_spec(self) -> PoolSpec:
        return PoolSpec(
            pool_id=str(self.bonus_pool_id),
            period=self.period,
            total_amount=Decimal(self.total_amount),
        )
