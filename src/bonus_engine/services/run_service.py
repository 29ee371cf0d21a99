"""Calculation run service - orchestrates lease, engine and atomic persistence."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from bonus_engine.calculators.engine import (
    BonusEngine,
    CalculationContext,
    EngineConfig,
    EngineRunResult,
)
from bonus_engine.calculators.types import (
    PERFORMANCE,
    POSITION,
    PROFIT,
    AllocationDraft,
    CompositeScoreDraft,
    EmployeeInput,
)
from bonus_engine.calculators.validation import ConfigurationError
from bonus_engine.config import get_settings
from bonus_engine.models import (
    AllocationResult,
    AllocationRule,
    BonusPool,
    CalculationRun,
    CompositeScore,
    WeightConfig,
)
from bonus_engine.models.base import utcnow
from bonus_engine.services.config_service import ConfigService
from bonus_engine.services.locking_service import LockingService
from bonus_engine.services.state_machine import RunStatus, StateConflictError

logger = logging.getLogger(__name__)


class RunValidationError(Exception):
    """Raised when a run request fails validation. No run is created."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("Invalid calculation request: " + "; ".join(errors))


class RunFailedError(Exception):
    """Raised when a run aborts. The run is marked failed and nothing is persisted."""

    def __init__(self, run_id: UUID, reasons: list[str]):
        self.run_id = run_id
        self.reasons = reasons
        super().__init__(f"Calculation run {run_id} failed: " + "; ".join(reasons))


class RunNotFoundError(LookupError):
    """Raised when a calculation run does not exist."""

    def __init__(self, run_id: UUID):
        self.run_id = run_id
        super().__init__(f"Calculation run {run_id} not found")


class RunCancelledError(Exception):
    """Raised when a run was cancelled before its results were committed."""

    def __init__(self, run_id: UUID):
        self.run_id = run_id
        super().__init__(f"Calculation run {run_id} was cancelled")


@dataclass
class RunRequest:
    """A request to calculate one pool under one rule."""

    bonus_pool_id: UUID
    allocation_rule_id: UUID
    employees: list[EmployeeInput]
    weight_config_id: UUID | None = None
    requested_by: str | None = None


@dataclass
class RunOutcome:
    run: CalculationRun
    result: EngineRunResult
    warnings: list[str] = field(default_factory=list)


def _upsert_insert(session: AsyncSession):
    """Dialect insert construct supporting ON CONFLICT."""
    if session.get_bind().dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


class RunService:
    """Service for calculation run lifecycle.

    Operations:
    - submit_run: validate, take the lease, compute, persist all-or-nothing
    - cancel_run: cancel an in-flight run before its results are committed
    - get_run: load a run with its status and failure reasons

    There is no automatic retry; a failed run is resubmitted explicitly and
    gets a new version.
    """

    def __init__(self, session: AsyncSession, engine_config: EngineConfig | None = None):
        self.session = session
        self.config_service = ConfigService(session)
        self.locking_service = LockingService(session)
        self.engine = BonusEngine(engine_config or EngineConfig.from_settings(get_settings()))

    async def get_run(self, run_id: UUID) -> CalculationRun | None:
        return await self.session.get(CalculationRun, run_id)

    async def list_runs(
        self, period: str | None = None, allocation_rule_id: UUID | None = None
    ) -> list[CalculationRun]:
        query = select(CalculationRun)
        if period:
            query = query.where(CalculationRun.period == period)
        if allocation_rule_id:
            query = query.where(CalculationRun.allocation_rule_id == allocation_rule_id)
        result = await self.session.execute(
            query.order_by(CalculationRun.created_at.desc(), CalculationRun.version.desc())
        )
        return list(result.scalars().all())

    async def submit_run(self, request: RunRequest) -> RunOutcome:
        """Run a full calculation for a pool and rule.

        Raises:
            RunValidationError: request or configuration invalid (nothing created)
            RunConflictError: another run holds the lease
            RunCancelledError: cancelled before results were committed
            RunFailedError: computation or persistence failed (run marked failed)
        """
        pool, rule, weight_config = await self._resolve(request)
        ctx = CalculationContext(
            period=pool.period,
            pool=pool.to_spec(),
            weight_config=weight_config.to_spec(),
            rule=rule.to_spec(),
            employees=list(request.employees),
        )
        errors = self.engine.validate(ctx)
        if errors:
            raise RunValidationError(errors)

        run = await self.locking_service.acquire_run_lease(
            bonus_pool_id=pool.bonus_pool_id,
            period=pool.period,
            allocation_rule_id=rule.allocation_rule_id,
            weight_config_id=weight_config.weight_config_id,
            requested_by=request.requested_by,
        )
        run_id = run.run_id
        run.employee_count = len(request.employees)

        try:
            result = self.engine.run(ctx)
        except Exception as e:
            logger.exception("Calculation run %s failed during computation", run_id)
            reasons = [f"Computation failed: {e}"]
            await self._fail_run(run, reasons)
            raise RunFailedError(run_id, reasons) from e

        status = await self.locking_service.current_status(run_id)
        if status == RunStatus.CANCELLED.value:
            logger.info("Calculation run %s cancelled before persistence", run_id)
            await self.session.refresh(run)
            raise RunCancelledError(run_id)

        try:
            if not await self.locking_service.lock_for_persist(run):
                raise RuntimeError("Result persistence for this period and rule is locked")
            await self._persist(run, pool, weight_config, result)
            await self.session.commit()
        except RunCancelledError:
            await self.session.rollback()
            await self.session.refresh(run)
            logger.info("Calculation run %s cancelled before persistence", run_id)
            raise
        except Exception as e:
            await self.session.rollback()
            logger.exception("Calculation run %s failed during persistence", run_id)
            reasons = [f"Persistence failed: {e}"]
            await self._fail_run(run, reasons)
            raise RunFailedError(run_id, reasons) from e

        logger.info(
            "Run %s v%d completed: %d result(s), %s allocated",
            run.run_id,
            run.version,
            run.result_count,
            run.total_allocated,
        )
        return RunOutcome(run=run, result=result, warnings=list(result.warnings))

    async def cancel_run(self, run_id: UUID, actor: str | None = None) -> CalculationRun:
        """Cancel a run that has not committed its results."""
        run = await self.session.get(CalculationRun, run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        if run.status != RunStatus.RUNNING.value:
            raise StateConflictError(
                "calculation run",
                run.status,
                RunStatus.CANCELLED,
                "only in-flight runs can be cancelled",
            )
        await self.locking_service.release_run_lease(
            run, RunStatus.CANCELLED, [f"Cancelled by {actor or 'operator'}"]
        )
        await self.session.commit()
        logger.info("Calculation run %s cancelled by %s", run_id, actor or "operator")
        return run

    # === Internals ===

    async def _resolve(
        self, request: RunRequest
    ) -> tuple[BonusPool, AllocationRule, WeightConfig]:
        pool = await self.session.get(BonusPool, request.bonus_pool_id)
        if pool is None:
            raise RunValidationError([f"Bonus pool {request.bonus_pool_id} not found"])
        if pool.status not in ("active", "allocated"):
            raise RunValidationError([f"Bonus pool is {pool.status}; it must be active"])

        weight_config_id = request.weight_config_id or pool.weight_config_id
        if weight_config_id is None:
            raise RunValidationError(["No weight config given and the pool has none"])

        errors: list[str] = []
        rule = weight_config = None
        try:
            rule = await self.config_service.resolve_allocation_rule(
                request.allocation_rule_id, pool.period
            )
        except ConfigurationError as e:
            errors.extend(e.errors)
        try:
            weight_config = await self.config_service.resolve_weight_config(
                weight_config_id, pool.period
            )
        except ConfigurationError as e:
            errors.extend(e.errors)
        if errors:
            raise RunValidationError(errors)
        return pool, rule, weight_config

    async def _fail_run(self, run: CalculationRun, reasons: list[str]) -> None:
        """Mark the run failed unless it already reached a terminal status."""
        await self.session.refresh(run)
        if run.status != RunStatus.RUNNING.value:
            return
        await self.locking_service.release_run_lease(run, RunStatus.FAILED, reasons)
        await self.session.commit()

    async def _persist(
        self,
        run: CalculationRun,
        pool: BonusPool,
        weight_config: WeightConfig,
        result: EngineRunResult,
    ) -> None:
        """Write composites, results and run/pool totals in the current transaction."""
        composite_ids = await self._upsert_composites(run, weight_config, result.composites)

        for draft in result.allocations:
            self.session.add(
                self._build_result(run, draft, composite_ids.get(draft.employee_id))
            )

        finished_at = datetime.now(timezone.utc)
        claimed = await self.session.execute(
            update(CalculationRun)
            .where(
                CalculationRun.run_id == run.run_id,
                CalculationRun.status == RunStatus.RUNNING.value,
            )
            .values(status=RunStatus.COMPLETED.value, finished_at=finished_at)
        )
        if claimed.rowcount != 1:
            raise RunCancelledError(run.run_id)

        total = result.total_allocated
        run.status = RunStatus.COMPLETED.value
        run.finished_at = finished_at
        run.inputs_fingerprint = result.inputs_fingerprint
        run.rules_fingerprint = result.rules_fingerprint
        run.result_count = len(result.allocations)
        run.distributable_amount = result.distributable
        run.total_allocated = total
        run.anomaly_count = result.anomaly_count
        run.warnings = list(result.warnings) or None

        pool.allocated_amount = total
        pool.allocated_count = sum(1 for a in result.allocations if a.eligible_for_bonus)
        pool.status = "allocated"
        await self.session.flush()

    async def _upsert_composites(
        self,
        run: CalculationRun,
        weight_config: WeightConfig,
        composites: list[CompositeScoreDraft],
    ) -> dict[str, UUID]:
        """Insert or refresh one composite per (employee, weight config, period)."""
        insert = _upsert_insert(self.session)
        for draft in composites:
            values = self._composite_values(run, weight_config, draft)
            stmt = insert(CompositeScore).values(**values)
            updates = {
                k: stmt.excluded[k]
                for k in values
                if k not in ("composite_score_id", "employee_id", "weight_config_id", "period")
            }
            updates["updated_at"] = utcnow()
            stmt = stmt.on_conflict_do_update(
                index_elements=["employee_id", "weight_config_id", "period"],
                set_=updates,
            )
            await self.session.execute(stmt)

        rows = await self.session.execute(
            select(CompositeScore.employee_id, CompositeScore.composite_score_id).where(
                CompositeScore.weight_config_id == weight_config.weight_config_id,
                CompositeScore.period == run.period,
                CompositeScore.employee_id.in_([c.employee_id for c in composites]),
            )
        )
        return {employee_id: cid for employee_id, cid in rows.all()}

    @staticmethod
    def _composite_values(
        run: CalculationRun, weight_config: WeightConfig, draft: CompositeScoreDraft
    ) -> dict[str, Any]:
        return {
            "composite_score_id": uuid4(),
            "employee_id": draft.employee_id,
            "weight_config_id": weight_config.weight_config_id,
            "period": run.period,
            "run_id": run.run_id,
            "department_id": draft.department_id,
            "position_level": draft.position_level,
            "normalized_profit_score": draft.normalized[PROFIT],
            "normalized_position_score": draft.normalized[POSITION],
            "normalized_performance_score": draft.normalized[PERFORMANCE],
            "weighted_profit_score": draft.weighted[PROFIT],
            "weighted_position_score": draft.weighted[POSITION],
            "weighted_performance_score": draft.weighted[PERFORMANCE],
            "total_score": draft.total_score,
            "adjusted_score": draft.adjusted_score,
            "final_score": draft.final_score,
            "score_rank": draft.score_rank,
            "percentile_rank": draft.percentile_rank,
            "department_rank": draft.department_rank,
            "level_rank": draft.level_rank,
            "data_completeness": draft.data_completeness,
            "calculation_confidence": draft.calculation_confidence,
            "outlier_flag": draft.outlier_flag,
            "previous_score": draft.previous_score,
            "score_change_rate": draft.score_change_rate,
            "trend": draft.trend.value if draft.trend else None,
            "contribution_rates": {k: str(v) for k, v in draft.contribution_rates.items()},
            "warnings": list(draft.warnings) or None,
        }

    @staticmethod
    def _build_result(
        run: CalculationRun, draft: AllocationDraft, composite_id: UUID | None
    ) -> AllocationResult:
        composite = draft.composite
        return AllocationResult(
            run_id=run.run_id,
            run_version=run.version,
            bonus_pool_id=run.bonus_pool_id,
            allocation_rule_id=run.allocation_rule_id,
            employee_id=draft.employee_id,
            period=run.period,
            composite_score_id=composite_id,
            calculation_id=draft.calculation_id,
            department_id=draft.department_id,
            position_level=draft.position_level,
            business_line=draft.business_line,
            normalized_profit_score=composite.normalized[PROFIT],
            normalized_position_score=composite.normalized[POSITION],
            normalized_performance_score=composite.normalized[PERFORMANCE],
            weighted_profit_score=composite.weighted[PROFIT],
            weighted_position_score=composite.weighted[POSITION],
            weighted_performance_score=composite.weighted[PERFORMANCE],
            original_score=composite.total_score,
            adjusted_score=composite.adjusted_score,
            final_score=composite.final_score,
            score_rank=composite.score_rank,
            percentile_rank=composite.percentile_rank,
            department_rank=composite.department_rank,
            level_rank=composite.level_rank,
            tier_level=draft.tier_level,
            base_allocation_coeff=_coeff(draft.base_allocation_coeff),
            performance_coeff=_coeff(draft.performance_coeff),
            position_coeff=_coeff(draft.position_coeff),
            department_coeff=_coeff(draft.department_coeff),
            special_coeff=_coeff(draft.special_coeff),
            final_coeff=_coeff(draft.final_coeff),
            base_amount=draft.base_amount,
            performance_amount=draft.performance_amount,
            adjustment_amount=draft.adjustment_amount,
            total_amount=draft.total_amount,
            original_calculated_amount=draft.original_calculated_amount,
            pool_allocation_ratio=draft.pool_allocation_ratio,
            min_amount_applied=draft.min_amount_applied,
            max_amount_applied=draft.max_amount_applied,
            eligible_for_bonus=draft.eligible_for_bonus,
            ineligible_reason=draft.ineligible_reason,
            work_months=draft.work_months,
            data_completeness=composite.data_completeness,
            has_anomalies=draft.has_anomalies,
            anomaly_reasons=[r.to_dict() for r in draft.anomaly_reasons] or None,
            applied_rules=list(draft.applied_rules),
            warnings=list(draft.warnings + composite.warnings) or None,
        )


def _coeff(value: Decimal) -> Decimal:
    return value.quantize(Decimal("0.000001"))
