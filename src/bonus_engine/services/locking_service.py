"""Run lease management for calculation runs."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from bonus_engine.database import acquire_advisory_lock
from bonus_engine.models import CalculationRun
from bonus_engine.services.state_machine import RunStateMachine, RunStatus

logger = logging.getLogger(__name__)


class RunConflictError(Exception):
    """Raised when a run is already in flight for the same period and rule."""

    def __init__(self, period: str, allocation_rule_id: UUID, existing_run_id: UUID | None = None):
        self.period = period
        self.allocation_rule_id = allocation_rule_id
        self.existing_run_id = existing_run_id
        msg = f"A calculation run for period {period} and rule {allocation_rule_id} is already in flight"
        if existing_run_id:
            msg += f" (run {existing_run_id})"
        super().__init__(msg)


class LockingService:
    """Service for the one-in-flight-run-per-(period, rule) lease.

    The lease is a calculation_run row in status 'running'. A partial unique
    index rejects a second running row for the same key even when two
    requests race past the pre-check. The lease is released by moving the
    run to a terminal status.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_in_flight(self, period: str, allocation_rule_id: UUID) -> CalculationRun | None:
        result = await self.session.execute(
            select(CalculationRun).where(
                CalculationRun.period == period,
                CalculationRun.allocation_rule_id == allocation_rule_id,
                CalculationRun.status == RunStatus.RUNNING.value,
            )
        )
        return result.scalar_one_or_none()

    async def acquire_run_lease(
        self,
        bonus_pool_id: UUID,
        period: str,
        allocation_rule_id: UUID,
        weight_config_id: UUID,
        requested_by: str | None = None,
    ) -> CalculationRun:
        """Create the running row for a new run version and commit it.

        Raises RunConflictError if another run holds the lease.
        """
        existing = await self.find_in_flight(period, allocation_rule_id)
        if existing is not None:
            raise RunConflictError(period, allocation_rule_id, existing.run_id)

        current = await self.session.scalar(
            select(func.max(CalculationRun.version)).where(
                CalculationRun.bonus_pool_id == bonus_pool_id,
                CalculationRun.allocation_rule_id == allocation_rule_id,
            )
        )
        run = CalculationRun(
            bonus_pool_id=bonus_pool_id,
            period=period,
            allocation_rule_id=allocation_rule_id,
            weight_config_id=weight_config_id,
            version=(current or 0) + 1,
            status=RunStatus.RUNNING.value,
            requested_by=requested_by,
            started_at=datetime.now(timezone.utc),
        )
        self.session.add(run)
        try:
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            raise RunConflictError(period, allocation_rule_id) from e

        logger.info("Acquired run lease %s (v%d) for %s", run.run_id, run.version, period)
        return run

    async def lock_for_persist(self, run: CalculationRun) -> bool:
        """Serialize result persistence for the run key inside the current transaction."""
        return await acquire_advisory_lock(
            self.session, f"bonus_run:{run.period}:{run.allocation_rule_id}"
        )

    async def release_run_lease(
        self,
        run: CalculationRun,
        status: RunStatus,
        reasons: list[str] | None = None,
    ) -> CalculationRun:
        """Move the run to a terminal status."""
        RunStateMachine.validate_transition(run.status, status)
        run.status = status.value
        run.finished_at = datetime.now(timezone.utc)
        if reasons:
            run.failure_reasons = reasons
        return run

    async def current_status(self, run_id: UUID) -> str | None:
        """Read the run status from the database, bypassing the identity map."""
        result = await self.session.execute(
            select(CalculationRun.status).where(CalculationRun.run_id == run_id)
        )
        return result.scalar_one_or_none()
