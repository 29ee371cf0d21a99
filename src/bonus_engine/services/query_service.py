"""Read-side queries over composite scores, allocation results and summaries."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from bonus_engine.calculators.summary import AllocationSummary, summarize
from bonus_engine.models import (
    AllocationResult,
    BonusPool,
    CalculationRun,
    CompositeScore,
    ReviewEvent,
)
from bonus_engine.services.state_machine import ReviewStatus, RunStatus

FINALIZED_STATUSES = (ReviewStatus.LOCKED.value, ReviewStatus.PAID.value)


class QueryService:
    """Query interface for results and scores.

    Results default to the latest run version per (pool, rule) so that
    superseded batches stay queryable by run_id but never mix into listings.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_result(self, allocation_result_id: UUID) -> AllocationResult | None:
        return await self.session.get(AllocationResult, allocation_result_id)

    async def list_results(
        self,
        bonus_pool_id: UUID | None = None,
        allocation_rule_id: UUID | None = None,
        employee_id: str | None = None,
        period: str | None = None,
        review_status: str | None = None,
        run_id: UUID | None = None,
        latest_only: bool = True,
    ) -> list[AllocationResult]:
        query = select(AllocationResult)
        if run_id is not None:
            query = query.where(AllocationResult.run_id == run_id)
        elif latest_only:
            latest = (
                select(
                    AllocationResult.bonus_pool_id,
                    AllocationResult.allocation_rule_id,
                    func.max(AllocationResult.run_version).label("run_version"),
                )
                .group_by(AllocationResult.bonus_pool_id, AllocationResult.allocation_rule_id)
                .subquery()
            )
            query = query.join(
                latest,
                and_(
                    AllocationResult.bonus_pool_id == latest.c.bonus_pool_id,
                    AllocationResult.allocation_rule_id == latest.c.allocation_rule_id,
                    AllocationResult.run_version == latest.c.run_version,
                ),
            )
        if bonus_pool_id is not None:
            query = query.where(AllocationResult.bonus_pool_id == bonus_pool_id)
        if allocation_rule_id is not None:
            query = query.where(AllocationResult.allocation_rule_id == allocation_rule_id)
        if employee_id:
            query = query.where(AllocationResult.employee_id == employee_id)
        if period:
            query = query.where(AllocationResult.period == period)
        if review_status:
            query = query.where(AllocationResult.review_status == review_status)

        result = await self.session.execute(
            query.order_by(
                AllocationResult.period,
                AllocationResult.run_version.desc(),
                AllocationResult.score_rank,
                AllocationResult.employee_id,
            )
        )
        return list(result.scalars().all())

    async def list_composite_scores(
        self,
        period: str | None = None,
        employee_id: str | None = None,
        weight_config_id: UUID | None = None,
    ) -> list[CompositeScore]:
        query = select(CompositeScore)
        if period:
            query = query.where(CompositeScore.period == period)
        if employee_id:
            query = query.where(CompositeScore.employee_id == employee_id)
        if weight_config_id is not None:
            query = query.where(CompositeScore.weight_config_id == weight_config_id)
        result = await self.session.execute(
            query.order_by(CompositeScore.period, CompositeScore.score_rank, CompositeScore.employee_id)
        )
        return list(result.scalars().all())

    async def finalized_feed(
        self, period: str | None = None, bonus_pool_id: UUID | None = None
    ) -> list[AllocationResult]:
        """Locked and paid results only. Downstream payment systems read this feed."""
        query = select(AllocationResult).where(AllocationResult.review_status.in_(FINALIZED_STATUSES))
        if period:
            query = query.where(AllocationResult.period == period)
        if bonus_pool_id is not None:
            query = query.where(AllocationResult.bonus_pool_id == bonus_pool_id)
        result = await self.session.execute(
            query.order_by(AllocationResult.period, AllocationResult.employee_id)
        )
        return list(result.scalars().all())

    async def pool_summary(
        self, bonus_pool_id: UUID, allocation_rule_id: UUID | None = None
    ) -> AllocationSummary | None:
        """Summary over the latest results of a pool; None if the pool does not exist."""
        pool = await self.session.get(BonusPool, bonus_pool_id)
        if pool is None:
            return None
        results = await self.list_results(
            bonus_pool_id=bonus_pool_id, allocation_rule_id=allocation_rule_id
        )
        runs = select(CalculationRun.distributable_amount).where(
            CalculationRun.bonus_pool_id == bonus_pool_id,
            CalculationRun.status == RunStatus.COMPLETED.value,
        )
        if allocation_rule_id is not None:
            runs = runs.where(CalculationRun.allocation_rule_id == allocation_rule_id)
        distributable = await self.session.scalar(
            runs.order_by(CalculationRun.finished_at.desc()).limit(1)
        )
        return summarize(results, pool.total_amount, distributable)

    async def review_history(self, allocation_result_id: UUID) -> list[ReviewEvent]:
        result = await self.session.execute(
            select(ReviewEvent)
            .where(ReviewEvent.allocation_result_id == allocation_result_id)
            .order_by(ReviewEvent.created_at)
        )
        return list(result.scalars().all())
