"""Pydantic schemas for API request/response models."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from bonus_engine.calculators.types import EmployeeInput


# ============================================================================
# Error schemas
# ============================================================================


class ErrorResponse(BaseModel):
    """Structured error body."""

    detail: str
    code: str
    errors: list[str] | None = None
    current: str | None = None
    requested: str | None = None


# ============================================================================
# Weight config schemas
# ============================================================================


class WeightConfigCreate(BaseModel):
    """Schema for saving a weight config version."""

    code: str
    name: str
    version: int | None = None
    status: str = "active"
    profit_weight: Decimal
    position_weight: Decimal
    performance_weight: Decimal
    normalization_method: str = "min_max"
    calculation_method: str = "weighted_sum"
    scale_lower: Decimal = Decimal("0")
    scale_upper: Decimal = Decimal("1")
    adjustments: dict[str, Any] | None = None
    effective_from: date
    effective_to: date | None = None
    description: str | None = None


class WeightConfigResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    weight_config_id: UUID
    code: str
    name: str
    version: int
    status: str
    profit_weight: Decimal
    position_weight: Decimal
    performance_weight: Decimal
    normalization_method: str
    calculation_method: str
    scale_lower: Decimal
    scale_upper: Decimal
    adjustments: dict[str, Any] | None = None
    effective_from: date
    effective_to: date | None = None
    description: str | None = None


# ============================================================================
# Allocation rule schemas
# ============================================================================


class TierConfig(BaseModel):
    tier: str
    ratio: Decimal
    min_score: Decimal


class AllocationRuleCreate(BaseModel):
    """Schema for saving an allocation rule version."""

    code: str
    name: str
    description: str | None = None
    version: int | None = None
    parent_rule_id: UUID | None = None
    status: str = "active"
    allocation_method: str
    base_allocation_ratio: Decimal = Decimal("0.8")
    performance_allocation_ratio: Decimal = Decimal("0.2")
    score_distribution_method: str = "linear"
    min_score_threshold: Decimal = Decimal("0")
    max_score_multiplier: Decimal = Decimal("3.0")
    tier_config: list[TierConfig] | None = None
    min_bonus_amount: Decimal | None = None
    max_bonus_amount: Decimal | None = None
    min_bonus_ratio: Decimal | None = None
    max_bonus_ratio: Decimal | None = None
    total_allocation_limit: Decimal = Decimal("1.0")
    reserve_ratio: Decimal = Decimal("0.05")
    rounding_method: str = "round"
    calculation_precision: int = 2
    position_level_weights: dict[str, Decimal] | None = None
    department_weights: dict[str, Decimal] | None = None
    special_rules: dict[str, Any] | None = None
    pool_groups: dict[str, Any] | None = None
    fixed_amounts: dict[str, Any] | None = None
    applicability: dict[str, Any] | None = None
    effective_from: date
    effective_to: date | None = None


class AllocationRuleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    allocation_rule_id: UUID
    code: str
    name: str
    description: str | None = None
    version: int
    parent_rule_id: UUID | None = None
    status: str
    allocation_method: str
    base_allocation_ratio: Decimal
    performance_allocation_ratio: Decimal
    score_distribution_method: str
    min_score_threshold: Decimal
    max_score_multiplier: Decimal
    tier_config: list[dict[str, Any]] | None = None
    min_bonus_amount: Decimal | None = None
    max_bonus_amount: Decimal | None = None
    min_bonus_ratio: Decimal | None = None
    max_bonus_ratio: Decimal | None = None
    total_allocation_limit: Decimal
    reserve_ratio: Decimal
    rounding_method: str
    calculation_precision: int
    position_level_weights: dict[str, Any] | None = None
    department_weights: dict[str, Any] | None = None
    special_rules: dict[str, Any] | None = None
    pool_groups: dict[str, Any] | None = None
    fixed_amounts: dict[str, Any] | None = None
    applicability: dict[str, Any] | None = None
    effective_from: date
    effective_to: date | None = None


# ============================================================================
# Bonus pool schemas
# ============================================================================


class BonusPoolCreate(BaseModel):
    name: str
    period: str
    total_amount: Decimal = Field(ge=0)
    weight_config_id: UUID | None = None
    status: str = "active"
    notes: str | None = None


class BonusPoolResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    bonus_pool_id: UUID
    name: str
    period: str
    total_amount: Decimal
    weight_config_id: UUID | None = None
    status: str
    allocated_amount: Decimal
    allocated_count: int
    notes: str | None = None


# ============================================================================
# Calculation run schemas
# ============================================================================


class EmployeeInputSchema(BaseModel):
    """Directory snapshot and raw dimension values for one employee."""

    employee_id: str
    department_id: str | None = None
    position_level: str | None = None
    business_line: str | None = None
    employee_type: str | None = None
    hire_date: date | None = None
    work_months: int | None = None
    profit_contribution: Decimal | None = None
    position_value: Decimal | None = None
    performance: Decimal | None = None
    previous_score: Decimal | None = None

    def to_input(self) -> EmployeeInput:
        return EmployeeInput(**self.model_dump())


class RunCreate(BaseModel):
    """Schema for submitting a calculation run."""

    bonus_pool_id: UUID
    allocation_rule_id: UUID
    weight_config_id: UUID | None = None
    requested_by: str | None = None
    employees: list[EmployeeInputSchema]


class RunResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    run_id: UUID
    bonus_pool_id: UUID
    period: str
    allocation_rule_id: UUID
    weight_config_id: UUID
    version: int
    status: str
    failure_reasons: list[str] | None = None
    warnings: list[str] | None = None
    inputs_fingerprint: str | None = None
    rules_fingerprint: str | None = None
    employee_count: int
    result_count: int
    distributable_amount: Decimal | None = None
    total_allocated: Decimal | None = None
    anomaly_count: int
    requested_by: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


class RunCancelRequest(BaseModel):
    actor: str | None = None


# ============================================================================
# Result schemas
# ============================================================================


class CompositeScoreResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    composite_score_id: UUID
    employee_id: str
    weight_config_id: UUID
    period: str
    run_id: UUID | None = None
    department_id: str | None = None
    position_level: str | None = None
    normalized_profit_score: Decimal
    normalized_position_score: Decimal
    normalized_performance_score: Decimal
    weighted_profit_score: Decimal
    weighted_position_score: Decimal
    weighted_performance_score: Decimal
    total_score: Decimal
    adjusted_score: Decimal | None = None
    final_score: Decimal
    score_rank: int | None = None
    percentile_rank: Decimal | None = None
    department_rank: int | None = None
    level_rank: int | None = None
    data_completeness: Decimal
    calculation_confidence: Decimal
    outlier_flag: bool
    previous_score: Decimal | None = None
    score_change_rate: Decimal | None = None
    trend: str | None = None
    warnings: list[str] | None = None


class AllocationResultResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    allocation_result_id: UUID
    run_id: UUID
    run_version: int
    bonus_pool_id: UUID
    allocation_rule_id: UUID
    employee_id: str
    period: str
    calculation_id: UUID
    department_id: str | None = None
    position_level: str | None = None
    business_line: str | None = None
    normalized_profit_score: Decimal | None = None
    normalized_position_score: Decimal | None = None
    normalized_performance_score: Decimal | None = None
    weighted_profit_score: Decimal | None = None
    weighted_position_score: Decimal | None = None
    weighted_performance_score: Decimal | None = None
    original_score: Decimal
    adjusted_score: Decimal | None = None
    final_score: Decimal
    score_rank: int | None = None
    percentile_rank: Decimal | None = None
    tier_level: str | None = None
    base_allocation_coeff: Decimal
    performance_coeff: Decimal
    position_coeff: Decimal
    department_coeff: Decimal
    special_coeff: Decimal
    final_coeff: Decimal
    base_amount: Decimal
    performance_amount: Decimal
    adjustment_amount: Decimal
    total_amount: Decimal
    original_calculated_amount: Decimal | None = None
    pool_allocation_ratio: Decimal
    min_amount_applied: bool
    max_amount_applied: bool
    eligible_for_bonus: bool
    ineligible_reason: str | None = None
    work_months: int | None = None
    data_completeness: Decimal
    has_anomalies: bool
    anomaly_reasons: list[dict[str, Any]] | None = None
    applied_rules: list[Any] | None = None
    warnings: list[str] | None = None
    review_status: str
    review_comments: str | None = None
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    payment_status: str
    payment_reference: str | None = None
    payment_date: date | None = None


class ReviewEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    review_event_id: UUID
    action: str
    from_status: str | None = None
    to_status: str | None = None
    actor: str | None = None
    comments: str | None = None
    payload: dict[str, Any] | None = None
    created_at: datetime


class ReviewRequest(BaseModel):
    actor: str | None = None
    comments: str | None = None


class ApproveRequest(ReviewRequest):
    acknowledge_anomalies: bool = False


class AdjustRequest(ReviewRequest):
    new_score: Decimal | None = None
    new_amount: Decimal | None = None


class BulkApproveRequest(ReviewRequest):
    allocation_result_ids: list[UUID]


class BulkApproveResponse(BaseModel):
    approved: list[UUID]
    unchanged: list[UUID]
    skipped: dict[str, str]


class PaymentRequest(BaseModel):
    actor: str | None = None
    payment_reference: str | None = None
    payment_date: date | None = None
    reason: str | None = None


class SummaryResponse(BaseModel):
    """Aggregate summary of a pool's latest results."""

    pool_amount: Decimal
    distributable_amount: Decimal | None = None
    employee_count: int
    eligible_count: int
    total_allocated: Decimal
    remaining_amount: Decimal
    average_amount: Decimal
    median_amount: Decimal
    max_amount: Decimal
    min_amount: Decimal
    std_dev: Decimal
    min_applied_count: int
    max_applied_count: int
    anomaly_count: int
    by_department: dict[str, dict[str, Any]]
    by_tier: dict[str, dict[str, Any]]
    fairness: dict[str, Any]
