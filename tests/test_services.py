"""Tests for configuration, run, review and query services."""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from bonus_engine.calculators.engine import EngineConfig
from bonus_engine.calculators.validation import ConfigurationError
from bonus_engine.models import (
    AllocationResult,
    AllocationRule,
    BonusPool,
    CalculationRun,
    CompositeScore,
    WeightConfig,
)
from bonus_engine.services.config_service import ConfigService
from bonus_engine.services.locking_service import RunConflictError
from bonus_engine.services.query_service import QueryService
from bonus_engine.services.review_service import ResultNotFoundError, ReviewService
from bonus_engine.services.run_service import (
    RunCancelledError,
    RunFailedError,
    RunNotFoundError,
    RunRequest,
    RunService,
    RunValidationError,
)
from bonus_engine.services.state_machine import (
    AnomalyReviewRequiredError,
    ImmutableResultError,
    StateConflictError,
)
from tests.conftest import PERIOD, employee

TOLERANCE = Decimal("0.05")


async def count(session, model) -> int:
    return await session.scalar(select(func.count()).select_from(model))


def run_request(bonus_pool, allocation_rule, employees) -> RunRequest:
    return RunRequest(
        bonus_pool_id=bonus_pool.bonus_pool_id,
        allocation_rule_id=allocation_rule.allocation_rule_id,
        employees=employees,
        requested_by="tester",
    )


@pytest_asyncio.fixture
async def completed_run(session, bonus_pool, allocation_rule, cohort):
    service = RunService(session, EngineConfig())
    return await service.submit_run(run_request(bonus_pool, allocation_rule, cohort))


@pytest_asyncio.fixture
async def results(session, completed_run, bonus_pool):
    return await QueryService(session).list_results(bonus_pool_id=bonus_pool.bonus_pool_id)


# ============================================================================
# Configuration
# ============================================================================


class TestConfigService:
    """Test validated, versioned configuration saves."""

    async def test_invalid_weight_config_saves_nothing(self, session):
        config = WeightConfig(
            code="broken",
            name="Broken",
            profit_weight=Decimal("0.5"),
            position_weight=Decimal("0.3"),
            performance_weight=Decimal("0.3"),
            effective_from=date(2025, 1, 1),
        )
        with pytest.raises(ConfigurationError) as exc_info:
            await ConfigService(session).save_weight_config(config)

        assert any("sum to 1" in e for e in exc_info.value.errors)
        assert await count(session, WeightConfig) == 0

    async def test_weight_config_versions_increment(self, session, weight_config):
        config = WeightConfig(
            code="default",
            name="Default weights v2",
            profit_weight=Decimal("0.5"),
            position_weight=Decimal("0.25"),
            performance_weight=Decimal("0.25"),
            effective_from=date(2025, 6, 1),
        )
        saved = await ConfigService(session).save_weight_config(config)
        assert saved.version == 2

        effective = await ConfigService(session).resolve_weight_config(
            weight_config.weight_config_id, PERIOD
        )
        assert effective.weight_config_id == saved.weight_config_id

    async def test_rule_versions_link_to_parent(self, session, allocation_rule):
        rule = AllocationRule(
            code="standard",
            name="Standard v2",
            allocation_method="score_based",
            base_allocation_ratio=Decimal("0.7"),
            performance_allocation_ratio=Decimal("0.3"),
            reserve_ratio=Decimal("0"),
            effective_from=date(2026, 1, 1),
        )
        saved = await ConfigService(session).save_allocation_rule(rule)

        assert saved.version == 2
        assert saved.parent_rule_id == allocation_rule.allocation_rule_id

    async def test_resolve_picks_version_effective_for_period(self, session, allocation_rule):
        service = ConfigService(session)
        await service.save_allocation_rule(
            AllocationRule(
                code="standard",
                name="Standard 2026",
                allocation_method="score_based",
                base_allocation_ratio=Decimal("0.7"),
                performance_allocation_ratio=Decimal("0.3"),
                effective_from=date(2026, 1, 1),
            )
        )

        for_2025 = await service.resolve_allocation_rule(allocation_rule.allocation_rule_id, PERIOD)
        for_2026 = await service.resolve_allocation_rule(allocation_rule.allocation_rule_id, "2026-Q1")

        assert for_2025.version == 1
        assert for_2026.version == 2

    async def test_invalid_rule_reports_every_error(self, session):
        rule = AllocationRule(
            code="bad",
            name="Bad",
            allocation_method="score_based",
            base_allocation_ratio=Decimal("0.9"),
            performance_allocation_ratio=Decimal("0.3"),
            reserve_ratio=Decimal("0.5"),
            effective_from=date(2025, 1, 1),
            effective_to=date(2024, 1, 1),
        )
        with pytest.raises(ConfigurationError) as exc_info:
            await ConfigService(session).save_allocation_rule(rule)
        assert len(exc_info.value.errors) >= 3
        assert await count(session, AllocationRule) == 0

    async def test_pool_period_validated(self, session):
        pool = BonusPool(name="Bad", period="Q4-2025", total_amount=Decimal("1000"))
        with pytest.raises(ConfigurationError):
            await ConfigService(session).save_bonus_pool(pool)


# ============================================================================
# Calculation runs
# ============================================================================


class TestRunService:
    """Test run lease, computation and atomic persistence."""

    async def test_successful_run_persists_batch(self, session, completed_run, bonus_pool):
        run = completed_run.run
        assert run.status == "completed"
        assert run.version == 1
        assert run.result_count == 4
        assert run.inputs_fingerprint
        assert abs(Decimal(run.total_allocated) - Decimal("100000")) < TOLERANCE

        assert await count(session, AllocationResult) == 4
        assert await count(session, CompositeScore) == 4
        assert bonus_pool.status == "allocated"
        assert bonus_pool.allocated_count == 4

    async def test_results_carry_run_version_and_rank(self, session, results):
        assert [r.employee_id for r in results] == ["E1", "E3", "E2", "E4"]
        assert all(r.run_version == 1 for r in results)
        assert all(r.review_status == "pending" for r in results)
        assert all(r.payment_status == "pending" for r in results)

    async def test_lease_conflict(self, session, bonus_pool, allocation_rule, weight_config, cohort):
        session.add(
            CalculationRun(
                bonus_pool_id=bonus_pool.bonus_pool_id,
                period=PERIOD,
                allocation_rule_id=allocation_rule.allocation_rule_id,
                weight_config_id=weight_config.weight_config_id,
                version=1,
                status="running",
            )
        )
        await session.commit()

        with pytest.raises(RunConflictError):
            await RunService(session, EngineConfig()).submit_run(
                run_request(bonus_pool, allocation_rule, cohort)
            )

    async def test_validation_error_creates_no_run(self, session, bonus_pool, allocation_rule, cohort):
        cohort.append(cohort[0])
        with pytest.raises(RunValidationError) as exc_info:
            await RunService(session, EngineConfig()).submit_run(
                run_request(bonus_pool, allocation_rule, cohort)
            )
        assert any("Duplicate" in e for e in exc_info.value.errors)
        assert await count(session, CalculationRun) == 0

    async def test_persistence_failure_is_atomic(
        self, session, bonus_pool, allocation_rule, cohort, monkeypatch
    ):
        """A failure mid-batch leaves no results and a failed run with reasons."""

        def boom(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(RunService, "_build_result", staticmethod(boom))

        with pytest.raises(RunFailedError) as exc_info:
            await RunService(session, EngineConfig()).submit_run(
                run_request(bonus_pool, allocation_rule, cohort)
            )

        run = await session.get(CalculationRun, exc_info.value.run_id)
        assert run.status == "failed"
        assert any("disk full" in r for r in run.failure_reasons)
        assert await count(session, AllocationResult) == 0
        assert await count(session, CompositeScore) == 0

    async def test_cancellation_before_commit_discards_results(
        self, session, session_factory, bonus_pool, allocation_rule, cohort
    ):
        service = RunService(session, EngineConfig())

        async def cancel_then_lock(run):
            async with session_factory() as other:
                await RunService(other, EngineConfig()).cancel_run(run.run_id, "operator")
            return True

        service.locking_service.lock_for_persist = cancel_then_lock

        with pytest.raises(RunCancelledError) as exc_info:
            await service.submit_run(run_request(bonus_pool, allocation_rule, cohort))

        run = await session.get(CalculationRun, exc_info.value.run_id)
        assert run.status == "cancelled"
        assert await count(session, AllocationResult) == 0

    async def test_cancel_completed_run_conflicts(self, session, completed_run):
        with pytest.raises(StateConflictError):
            await RunService(session, EngineConfig()).cancel_run(completed_run.run.run_id)

    async def test_cancel_missing_run(self, session):
        with pytest.raises(RunNotFoundError):
            await RunService(session, EngineConfig()).cancel_run(uuid4())

    async def test_rerun_creates_new_version(
        self, session, completed_run, bonus_pool, allocation_rule, cohort
    ):
        second = await RunService(session, EngineConfig()).submit_run(
            run_request(bonus_pool, allocation_rule, cohort)
        )
        assert second.run.version == 2

        query = QueryService(session)
        latest = await query.list_results(bonus_pool_id=bonus_pool.bonus_pool_id)
        everything = await query.list_results(
            bonus_pool_id=bonus_pool.bonus_pool_id, latest_only=False
        )
        by_run = await query.list_results(run_id=completed_run.run.run_id)

        assert {r.run_version for r in latest} == {2}
        assert len(latest) == 4
        assert len(everything) == 8
        assert {r.run_version for r in by_run} == {1}
        # Composite scores are refreshed, not duplicated
        assert await count(session, CompositeScore) == 4

    async def test_rerun_leaves_locked_result_scores_intact(
        self, session, results, bonus_pool, allocation_rule, cohort
    ):
        first = next(r for r in results if r.employee_id == "E1")
        review = ReviewService(session)
        await review.approve(first.allocation_result_id, actor="lead")
        await review.lock(first.allocation_result_id, actor="lead")
        await session.commit()

        changed = [employee("E1", "1", "1", "1", department_id="sales"), *cohort[1:]]
        await RunService(session, EngineConfig()).submit_run(
            run_request(bonus_pool, allocation_rule, changed)
        )

        # The shared composite row now holds the latest run's scores
        composite = await session.get(CompositeScore, first.composite_score_id)
        await session.refresh(composite)
        assert abs(composite.final_score) < Decimal("0.0001")

        await session.refresh(first)
        assert first.review_status == "locked"
        assert abs(first.final_score - Decimal("0.85")) < Decimal("0.0001")
        assert abs(first.normalized_profit_score - Decimal("1")) < Decimal("0.0001")
        assert abs(first.weighted_profit_score - Decimal("0.4")) < Decimal("0.0001")
        assert abs(first.weighted_performance_score - Decimal("0.3")) < Decimal("0.0001")


# ============================================================================
# Review and payment
# ============================================================================


class TestReviewService:
    """Test review transitions and their audit trail."""

    async def test_approve(self, session, results):
        review = ReviewService(session)
        result = await review.approve(results[0].allocation_result_id, actor="hr", comments="ok")

        assert result.review_status == "approved"
        assert result.reviewed_by == "hr"
        history = await QueryService(session).review_history(result.allocation_result_id)
        assert [e.action for e in history] == ["approve"]

    async def test_repeat_approval_is_noop(self, session, results):
        review = ReviewService(session)
        result_id = results[0].allocation_result_id
        await review.approve(result_id, actor="hr")
        await review.approve(result_id, actor="hr")

        history = await QueryService(session).review_history(result_id)
        assert len(history) == 1

    async def test_reject_is_terminal(self, session, results):
        review = ReviewService(session)
        result_id = results[1].allocation_result_id
        await review.reject(result_id, actor="hr", comments="recheck data")

        with pytest.raises(StateConflictError) as exc_info:
            await review.approve(result_id)
        assert exc_info.value.current == "rejected"

    async def test_adjust_amount_flows_through_adjustment(self, session, results):
        review = ReviewService(session)
        result = await review.adjust(
            results[2].allocation_result_id, actor="hr", new_amount=Decimal("1234.567")
        )

        assert result.review_status == "adjusted"
        assert result.total_amount == Decimal("1234.57")
        assert (
            Decimal(result.base_amount)
            + Decimal(result.performance_amount)
            + Decimal(result.adjustment_amount)
            == result.total_amount
        )

        resubmitted = await review.resubmit(result.allocation_result_id, actor="hr")
        assert resubmitted.review_status == "pending"

    async def test_adjust_rounds_like_the_rule(self, session, results, allocation_rule):
        allocation_rule.rounding_method = "floor"
        allocation_rule.calculation_precision = 0
        await session.commit()

        result = await ReviewService(session).adjust(
            results[1].allocation_result_id, actor="hr", new_amount=Decimal("1234.99")
        )
        assert result.total_amount == Decimal("1234")

    async def test_adjust_requires_a_change(self, session, results):
        with pytest.raises(ValueError):
            await ReviewService(session).adjust(results[0].allocation_result_id)

    async def test_adjust_reruns_anomaly_checks(self, session, results):
        result = await ReviewService(session).adjust(
            results[0].allocation_result_id, new_amount=Decimal("-10")
        )
        assert result.has_anomalies is True
        assert {r["code"] for r in result.anomaly_reasons} == {"negative_amount"}

    async def test_anomalies_must_be_acknowledged(self, session, results):
        result = results[0]
        result.has_anomalies = True
        result.anomaly_reasons = [{"code": "amount_ceiling", "message": "too large"}]
        await session.flush()

        review = ReviewService(session)
        with pytest.raises(AnomalyReviewRequiredError) as exc_info:
            await review.approve(result.allocation_result_id)
        assert exc_info.value.anomaly_codes == ["amount_ceiling"]

        approved = await review.approve(result.allocation_result_id, acknowledge_anomalies=True)
        assert approved.review_status == "approved"
        history = await QueryService(session).review_history(result.allocation_result_id)
        assert history[-1].payload == {"anomalies_acknowledged": True}

    async def test_locked_result_is_immutable(self, session, results):
        review = ReviewService(session)
        result_id = results[0].allocation_result_id
        await review.approve(result_id)
        await review.lock(result_id)

        with pytest.raises(ImmutableResultError):
            await review.adjust(result_id, new_amount=Decimal("1"))
        with pytest.raises(ImmutableResultError):
            await review.reject(result_id)

    async def test_direct_write_to_locked_result_is_refused(self, session, results):
        review = ReviewService(session)
        result = await review.approve(results[0].allocation_result_id)
        await review.lock(result.allocation_result_id)
        await session.commit()

        result.total_amount = Decimal("1")
        with pytest.raises(ImmutableResultError):
            await session.flush()

    async def test_missing_result(self, session):
        with pytest.raises(ResultNotFoundError):
            await ReviewService(session).approve(uuid4())

    async def test_bulk_approve_skips_anomalies(self, session, results):
        anomalous = results[3]
        anomalous.has_anomalies = True
        await session.flush()

        review = ReviewService(session)
        await review.approve(results[0].allocation_result_id)
        missing = uuid4()
        ids = [r.allocation_result_id for r in results] + [missing]
        outcome = await review.bulk_approve(ids, actor="hr")

        assert outcome.unchanged == [results[0].allocation_result_id]
        assert outcome.approved == [results[1].allocation_result_id, results[2].allocation_result_id]
        assert set(outcome.skipped) == {anomalous.allocation_result_id, missing}
        assert anomalous.review_status == "pending"


class TestPaymentFlow:
    """Test payment transitions and the finalized feed."""

    async def test_payment_requires_approval(self, session, results):
        with pytest.raises(StateConflictError):
            await ReviewService(session).submit_payment(results[0].allocation_result_id)

    async def test_submit_locks_and_settle_pays(self, session, results):
        review = ReviewService(session)
        result_id = results[0].allocation_result_id
        await review.approve(result_id, actor="hr")

        submitted = await review.submit_payment(result_id, actor="finance", payment_reference="PAY-1")
        assert submitted.review_status == "locked"
        assert submitted.payment_status == "processing"
        assert submitted.payment_reference == "PAY-1"

        settled = await review.settle_payment(result_id, actor="finance", payment_date=date(2026, 1, 15))
        assert settled.review_status == "paid"
        assert settled.payment_status == "paid"
        assert settled.payment_date == date(2026, 1, 15)
        await session.commit()

        feed = await QueryService(session).finalized_feed(PERIOD)
        assert [r.allocation_result_id for r in feed] == [result_id]

        history = await QueryService(session).review_history(result_id)
        assert {e.action for e in history} == {
            "approve",
            "lock",
            "submit_payment",
            "settle_payment",
            "review_paid",
        }

    async def test_failed_payment_is_terminal(self, session, results):
        review = ReviewService(session)
        result_id = results[0].allocation_result_id
        await review.approve(result_id)
        await review.submit_payment(result_id)
        await review.fail_payment(result_id, reason="bank rejected")

        with pytest.raises(StateConflictError):
            await review.settle_payment(result_id)

    async def test_cancel_pending_payment(self, session, results):
        review = ReviewService(session)
        result = await review.cancel_payment(results[0].allocation_result_id, reason="on hold")
        assert result.payment_status == "cancelled"


# ============================================================================
# Queries
# ============================================================================


class TestQueryService:
    async def test_pool_summary(self, session, results, bonus_pool):
        summary = await QueryService(session).pool_summary(bonus_pool.bonus_pool_id)

        assert summary.employee_count == 4
        assert summary.eligible_count == 4
        assert abs(summary.total_allocated - Decimal("100000")) < TOLERANCE
        assert abs(summary.remaining_amount) < TOLERANCE
        assert set(summary.by_department) == {"sales", "ops"}

    async def test_pool_summary_missing_pool(self, session):
        assert await QueryService(session).pool_summary(uuid4()) is None

    async def test_composite_scores(self, session, completed_run, weight_config):
        scores = await QueryService(session).list_composite_scores(
            period=PERIOD, weight_config_id=weight_config.weight_config_id
        )
        assert [s.employee_id for s in scores] == ["E1", "E3", "E2", "E4"]
        assert scores[0].score_rank == 1

    async def test_filter_by_employee(self, session, results):
        rows = await QueryService(session).list_results(employee_id="E2")
        assert [r.employee_id for r in rows] == ["E2"]
