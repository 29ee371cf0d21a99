"""Calculation run, composite score, allocation result and review audit models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
    inspect,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bonus_engine.models.base import Base, TimestampMixin, UpdatedAtMixin
from bonus_engine.services.state_machine import (
    ImmutableResultError,
    PaymentStatus,
    ReviewStateMachine,
    ReviewStatus,
    RunStatus,
)

SCORE = Numeric(12, 6)
PERCENT = Numeric(6, 2)
MONEY = Numeric(16, 4)


class CalculationRun(Base, TimestampMixin):
    """One versioned calculation over a (period, allocation rule) cohort.

    A row in status 'running' is the run lease: the partial unique index
    allows one in-flight run per (period, allocation_rule_id).
    """

    __tablename__ = "calculation_run"

    run_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    bonus_pool_id: Mapped[UUID] = mapped_column(
        ForeignKey("bonus_pool.bonus_pool_id"), nullable=False
    )
    period: Mapped[str] = mapped_column(String, nullable=False)
    allocation_rule_id: Mapped[UUID] = mapped_column(
        ForeignKey("allocation_rule.allocation_rule_id"), nullable=False
    )
    weight_config_id: Mapped[UUID] = mapped_column(
        ForeignKey("weight_config.weight_config_id"), nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default=RunStatus.RUNNING.value)
    failure_reasons: Mapped[list[Any] | None] = mapped_column(nullable=True)
    warnings: Mapped[list[Any] | None] = mapped_column(nullable=True)

    inputs_fingerprint: Mapped[str | None] = mapped_column(String, nullable=True)
    rules_fingerprint: Mapped[str | None] = mapped_column(String, nullable=True)
    employee_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    result_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    distributable_amount: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    total_allocated: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    anomaly_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    requested_by: Mapped[str | None] = mapped_column(String, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "bonus_pool_id", "allocation_rule_id", "version", name="calculation_run_version_unique"
        ),
        Index(
            "calculation_run_in_flight",
            "period",
            "allocation_rule_id",
            unique=True,
            sqlite_where=text("status = 'running'"),
            postgresql_where=text("status = 'running'"),
        ),
        CheckConstraint(
            "status IN ('running', 'completed', 'failed', 'cancelled')",
            name="calculation_run_status_check",
        ),
    )


class CompositeScore(Base, UpdatedAtMixin):
    """Composite score per (employee, weight config, period)."""

    __tablename__ = "composite_score"

    composite_score_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    employee_id: Mapped[str] = mapped_column(String, nullable=False)
    weight_config_id: Mapped[UUID] = mapped_column(
        ForeignKey("weight_config.weight_config_id"), nullable=False
    )
    period: Mapped[str] = mapped_column(String, nullable=False)
    run_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("calculation_run.run_id"), nullable=True
    )
    department_id: Mapped[str | None] = mapped_column(String, nullable=True)
    position_level: Mapped[str | None] = mapped_column(String, nullable=True)

    normalized_profit_score: Mapped[Decimal] = mapped_column(SCORE, nullable=False)
    normalized_position_score: Mapped[Decimal] = mapped_column(SCORE, nullable=False)
    normalized_performance_score: Mapped[Decimal] = mapped_column(SCORE, nullable=False)
    weighted_profit_score: Mapped[Decimal] = mapped_column(SCORE, nullable=False)
    weighted_position_score: Mapped[Decimal] = mapped_column(SCORE, nullable=False)
    weighted_performance_score: Mapped[Decimal] = mapped_column(SCORE, nullable=False)
    total_score: Mapped[Decimal] = mapped_column(SCORE, nullable=False)
    adjusted_score: Mapped[Decimal | None] = mapped_column(SCORE, nullable=True)
    final_score: Mapped[Decimal] = mapped_column(SCORE, nullable=False)

    score_rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    percentile_rank: Mapped[Decimal | None] = mapped_column(PERCENT, nullable=True)
    department_rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    level_rank: Mapped[int | None] = mapped_column(Integer, nullable=True)

    data_completeness: Mapped[Decimal] = mapped_column(PERCENT, nullable=False)
    calculation_confidence: Mapped[Decimal] = mapped_column(PERCENT, nullable=False)
    outlier_flag: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    previous_score: Mapped[Decimal | None] = mapped_column(SCORE, nullable=True)
    score_change_rate: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    trend: Mapped[str | None] = mapped_column(String, nullable=True)
    contribution_rates: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)
    warnings: Mapped[list[Any] | None] = mapped_column(nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "employee_id", "weight_config_id", "period", name="composite_score_employee_unique"
        ),
    )


class AllocationResult(Base, UpdatedAtMixin):
    """Allocation for one employee within one run version.

    Review and payment transitions are the only permitted mutations; once
    review_status is locked or paid the amount and score columns are frozen.
    The dimension scores are copied from the composite at persist time; the
    composite row is shared per (employee, weight config, period) and a
    later run refreshes it, so a result never reads its scores back from it.
    """

    __tablename__ = "allocation_result"

    allocation_result_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    run_id: Mapped[UUID] = mapped_column(ForeignKey("calculation_run.run_id"), nullable=False)
    run_version: Mapped[int] = mapped_column(Integer, nullable=False)
    bonus_pool_id: Mapped[UUID] = mapped_column(
        ForeignKey("bonus_pool.bonus_pool_id"), nullable=False
    )
    allocation_rule_id: Mapped[UUID] = mapped_column(
        ForeignKey("allocation_rule.allocation_rule_id"), nullable=False
    )
    employee_id: Mapped[str] = mapped_column(String, nullable=False)
    period: Mapped[str] = mapped_column(String, nullable=False)
    composite_score_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("composite_score.composite_score_id"), nullable=True
    )
    calculation_id: Mapped[UUID] = mapped_column(nullable=False)

    department_id: Mapped[str | None] = mapped_column(String, nullable=True)
    position_level: Mapped[str | None] = mapped_column(String, nullable=True)
    business_line: Mapped[str | None] = mapped_column(String, nullable=True)

    normalized_profit_score: Mapped[Decimal | None] = mapped_column(SCORE, nullable=True)
    normalized_position_score: Mapped[Decimal | None] = mapped_column(SCORE, nullable=True)
    normalized_performance_score: Mapped[Decimal | None] = mapped_column(SCORE, nullable=True)
    weighted_profit_score: Mapped[Decimal | None] = mapped_column(SCORE, nullable=True)
    weighted_position_score: Mapped[Decimal | None] = mapped_column(SCORE, nullable=True)
    weighted_performance_score: Mapped[Decimal | None] = mapped_column(SCORE, nullable=True)

    original_score: Mapped[Decimal] = mapped_column(SCORE, nullable=False)
    adjusted_score: Mapped[Decimal | None] = mapped_column(SCORE, nullable=True)
    final_score: Mapped[Decimal] = mapped_column(SCORE, nullable=False)
    score_rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    percentile_rank: Mapped[Decimal | None] = mapped_column(PERCENT, nullable=True)
    department_rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    level_rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tier_level: Mapped[str | None] = mapped_column(String, nullable=True)

    base_allocation_coeff: Mapped[Decimal] = mapped_column(SCORE, nullable=False)
    performance_coeff: Mapped[Decimal] = mapped_column(SCORE, nullable=False)
    position_coeff: Mapped[Decimal] = mapped_column(SCORE, nullable=False)
    department_coeff: Mapped[Decimal] = mapped_column(SCORE, nullable=False)
    special_coeff: Mapped[Decimal] = mapped_column(SCORE, nullable=False)
    final_coeff: Mapped[Decimal] = mapped_column(SCORE, nullable=False)

    base_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    performance_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    adjustment_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    original_calculated_amount: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    pool_allocation_ratio: Mapped[Decimal] = mapped_column(SCORE, nullable=False, default=0)

    min_amount_applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    max_amount_applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    eligible_for_bonus: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    ineligible_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    work_months: Mapped[int | None] = mapped_column(Integer, nullable=True)
    data_completeness: Mapped[Decimal] = mapped_column(PERCENT, nullable=False)

    has_anomalies: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    anomaly_reasons: Mapped[list[Any] | None] = mapped_column(nullable=True)
    applied_rules: Mapped[list[Any] | None] = mapped_column(nullable=True)
    warnings: Mapped[list[Any] | None] = mapped_column(nullable=True)

    review_status: Mapped[str] = mapped_column(
        String, nullable=False, default=ReviewStatus.PENDING.value
    )
    review_comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_status: Mapped[str] = mapped_column(
        String, nullable=False, default=PaymentStatus.PENDING.value
    )
    payment_reference: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    events: Mapped[list[ReviewEvent]] = relationship(
        back_populates="allocation_result", order_by="ReviewEvent.created_at"
    )

    __table_args__ = (
        UniqueConstraint(
            "bonus_pool_id",
            "employee_id",
            "allocation_rule_id",
            "run_version",
            name="allocation_result_employee_unique",
        ),
        CheckConstraint(
            "review_status IN ('pending', 'approved', 'rejected', 'adjusted', 'locked', 'paid')",
            name="allocation_result_review_status_check",
        ),
        CheckConstraint(
            "payment_status IN ('pending', 'processing', 'paid', 'failed', 'cancelled')",
            name="allocation_result_payment_status_check",
        ),
    )


# Columns frozen once a result is locked or paid
IMMUTABLE_COLUMNS = (
    "normalized_profit_score",
    "normalized_position_score",
    "normalized_performance_score",
    "weighted_profit_score",
    "weighted_position_score",
    "weighted_performance_score",
    "original_score",
    "adjusted_score",
    "final_score",
    "score_rank",
    "percentile_rank",
    "tier_level",
    "base_allocation_coeff",
    "performance_coeff",
    "position_coeff",
    "department_coeff",
    "special_coeff",
    "final_coeff",
    "base_amount",
    "performance_amount",
    "adjustment_amount",
    "total_amount",
    "original_calculated_amount",
    "min_amount_applied",
    "max_amount_applied",
    "eligible_for_bonus",
    "has_anomalies",
    "anomaly_reasons",
)


@event.listens_for(AllocationResult, "before_update")
def _guard_locked_results(mapper: Any, connection: Any, target: AllocationResult) -> None:
    """Refuse to flush changes to frozen columns of a locked or paid result."""
    state = inspect(target)
    status_history = state.attrs.review_status.history
    persisted_status = (
        status_history.deleted[0] if status_history.deleted else target.review_status
    )
    if not ReviewStateMachine.are_results_immutable(persisted_status):
        return
    changed = [name for name in IMMUTABLE_COLUMNS if state.attrs[name].history.has_changes()]
    if changed:
        raise ImmutableResultError(
            persisted_status, "modify", f"attempted to change {', '.join(changed)}"
        )


class ReviewEvent(Base, TimestampMixin):
    """Append-only audit entry for a review or payment action."""

    __tablename__ = "review_event"

    review_event_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    allocation_result_id: Mapped[UUID] = mapped_column(
        ForeignKey("allocation_result.allocation_result_id"), nullable=False
    )
    action: Mapped[str] = mapped_column(String, nullable=False)
    from_status: Mapped[str | None] = mapped_column(String, nullable=True)
    to_status: Mapped[str | None] = mapped_column(String, nullable=True)
    actor: Mapped[str | None] = mapped_column(String, nullable=True)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)

    allocation_result: Mapped[AllocationResult] = relationship(back_populates="events")
