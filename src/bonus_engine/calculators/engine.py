"""Bonus calculation engine - main orchestrator."""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

from bonus_engine.calculators.aggregator import ScoreAggregator
from bonus_engine.calculators.allocation import AllocationEvaluator, distributable_amount
from bonus_engine.calculators.anomaly import AnomalyDetector
from bonus_engine.calculators.constraints import ConstraintEnforcer, ConstraintOutcome
from bonus_engine.calculators.normalizer import ScoreNormalizer
from bonus_engine.calculators.summary import AllocationSummary, summarize
from bonus_engine.calculators.types import (
    AllocationDraft,
    AllocationRuleSpec,
    CompositeScoreDraft,
    EmployeeInput,
    PoolSpec,
    WeightConfigSpec,
    period_end_date,
)
from bonus_engine.calculators.validation import (
    ConfigurationError,
    validate_allocation_rule,
    validate_employee_inputs,
    validate_pool,
    validate_weight_config,
)

if TYPE_CHECKING:
    from bonus_engine.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineConfig:
    """Engine tunables."""

    engine_version: str = "1.0.0"
    min_work_months: int = 6
    anomaly_amount_ceiling: Decimal = Decimal("1000000")
    min_data_completeness: Decimal = Decimal("100")
    base_confidence: Decimal = Decimal("80")
    rebalance_max_iterations: int = 50

    def __post_init__(self) -> None:
        if self.min_work_months < 0:
            raise ValueError("min_work_months must not be negative")
        if self.anomaly_amount_ceiling <= 0:
            raise ValueError("anomaly_amount_ceiling must be positive")
        if not Decimal("0") <= self.min_data_completeness <= Decimal("100"):
            raise ValueError("min_data_completeness must be between 0 and 100")
        if not Decimal("0") <= self.base_confidence <= Decimal("100"):
            raise ValueError("base_confidence must be between 0 and 100")
        if self.rebalance_max_iterations < 1:
            raise ValueError("rebalance_max_iterations must be at least 1")

    @classmethod
    def from_settings(cls, settings: Settings) -> EngineConfig:
        return cls(
            engine_version=settings.engine_version,
            min_work_months=settings.min_work_months,
            anomaly_amount_ceiling=settings.anomaly_amount_ceiling,
            min_data_completeness=settings.min_data_completeness,
            base_confidence=settings.base_confidence,
            rebalance_max_iterations=settings.rebalance_max_iterations,
        )


@dataclass
class CalculationContext:
    """Everything one run reads. Nothing outside it influences the result."""

    period: str
    pool: PoolSpec
    weight_config: WeightConfigSpec
    rule: AllocationRuleSpec
    employees: list[EmployeeInput]


@dataclass
class EngineRunResult:
    """Result of running the engine over one cohort."""

    period: str
    pool: PoolSpec
    composites: list[CompositeScoreDraft]  # rank order
    allocations: list[AllocationDraft]  # rank order, applicable employees only
    distributable: Decimal
    inputs_fingerprint: str
    rules_fingerprint: str
    constraints: ConstraintOutcome
    warnings: list[str] = field(default_factory=list)
    excluded_count: int = 0

    @property
    def total_allocated(self) -> Decimal:
        return sum((a.total_amount for a in self.allocations), Decimal("0"))

    @property
    def anomaly_count(self) -> int:
        return sum(1 for a in self.allocations if a.has_anomalies)

    def summary(self) -> AllocationSummary:
        return summarize(self.allocations, self.pool.total_amount, self.distributable)


class BonusEngine:
    """Main bonus calculation engine.

    Pipeline (phases run in order, each over the whole cohort):
    1) Validate configuration and cohort
    2) Normalize dimension scores
    3) Composite scoring, then ranking (needs the full cohort)
    4) Eligibility and profile coefficients
    5) Allocation strategy
    6) Guarantees, capacity rebalancing and rounding
    7) Anomaly detection
    8) Deterministic calculation ids

    The engine is pure: it reads only the context and returns drafts.
    """

    def __init__(self, config: EngineConfig | None = None):
        self.config = config or EngineConfig()

    def validate(self, ctx: CalculationContext) -> list[str]:
        errors: list[str] = []
        errors.extend(validate_weight_config(ctx.weight_config))
        errors.extend(validate_allocation_rule(ctx.rule))
        errors.extend(validate_pool(ctx.pool))
        errors.extend(validate_employee_inputs(ctx.employees))
        if ctx.pool.period != ctx.period:
            errors.append(f"Pool period '{ctx.pool.period}' does not match run period '{ctx.period}'")
        return errors

    def run(self, ctx: CalculationContext) -> EngineRunResult:
        errors = self.validate(ctx)
        if errors:
            raise ConfigurationError(errors, "calculation request")

        inputs_fp = self._compute_inputs_fingerprint(ctx)
        rules_fp = self._compute_rules_fingerprint(ctx)

        normalizer = ScoreNormalizer(ctx.weight_config, self.config.base_confidence)
        composites = normalizer.normalize(ctx.employees)

        aggregator = ScoreAggregator(ctx.weight_config, normalizer.scale_fraction)
        ranked = aggregator.score_and_rank(composites.values())

        evaluator = AllocationEvaluator(
            ctx.rule,
            self.config.min_work_months,
            period_end_date(ctx.period),
            normalizer.scale_fraction,
        )
        drafts = evaluator.prepare(ctx.employees, composites)
        excluded = len(ctx.employees) - len(drafts)

        distributable = distributable_amount(ctx.pool.total_amount, ctx.rule)
        warnings = evaluator.allocate(drafts, distributable)

        enforcer = ConstraintEnforcer(ctx.rule, self.config.rebalance_max_iterations)
        outcome = enforcer.enforce(drafts, distributable)
        warnings.extend(outcome.warnings)

        detector = AnomalyDetector(
            self.config.anomaly_amount_ceiling, self.config.min_data_completeness
        )
        for draft in drafts:
            draft.anomaly_reasons = detector.inspect(draft, draft.composite.data_completeness)
            draft.has_anomalies = bool(draft.anomaly_reasons)
            draft.calculation_id = self._generate_calculation_id(
                ctx.pool.pool_id, draft.employee_id, ctx.period, inputs_fp, rules_fp
            )

        result = EngineRunResult(
            period=ctx.period,
            pool=ctx.pool,
            composites=ranked,
            allocations=drafts,
            distributable=distributable,
            inputs_fingerprint=inputs_fp,
            rules_fingerprint=rules_fp,
            constraints=outcome,
            warnings=warnings,
            excluded_count=excluded,
        )
        logger.info(
            "Calculated %s for pool %s: %d result(s), %s allocated of %s, %d anomalies",
            ctx.period,
            ctx.pool.pool_id,
            len(drafts),
            result.total_allocated,
            distributable,
            result.anomaly_count,
        )
        return result

    def _generate_calculation_id(
        self,
        pool_id: str,
        employee_id: str,
        period: str,
        inputs_fingerprint: str,
        rules_fingerprint: str,
    ) -> UUID:
        """Generate deterministic calculation ID."""
        data = {
            "pool_id": str(pool_id),
            "employee_id": employee_id,
            "period": period,
            "engine_version": self.config.engine_version,
            "inputs_fingerprint": inputs_fingerprint,
            "rules_fingerprint": rules_fingerprint,
        }
        json_str = json.dumps(data, sort_keys=True)
        hash_bytes = hashlib.sha256(json_str.encode()).digest()
        return UUID(bytes=hash_bytes[:16])

    def _compute_inputs_fingerprint(self, ctx: CalculationContext) -> str:
        """Compute fingerprint of the cohort and pool used in calculation."""
        inputs_data: list[Any] = sorted(
            (emp.to_canonical_dict() for emp in ctx.employees),
            key=lambda d: d["employee_id"],
        )
        payload = {
            "period": ctx.period,
            "pool": [str(ctx.pool.pool_id), str(ctx.pool.total_amount)],
            "employees": inputs_data,
        }
        json_str = json.dumps(payload, sort_keys=True)
        return hashlib.sha256(json_str.encode()).hexdigest()[:32]

    def _compute_rules_fingerprint(self, ctx: CalculationContext) -> str:
        """Compute fingerprint of the weight config and rule used in calculation."""
        payload = {
            "weight_config": ctx.weight_config.to_canonical_dict(),
            "rule": ctx.rule.to_canonical_dict(),
            "min_work_months": self.config.min_work_months,
        }
        json_str = json.dumps(payload, sort_keys=True)
        return hashlib.sha256(json_str.encode()).hexdigest()[:32]
