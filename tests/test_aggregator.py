"""Tests for composite scoring and ranking."""

from decimal import Decimal

from bonus_engine.calculators.aggregator import ScoreAggregator, classify_trend
from bonus_engine.calculators.normalizer import ScoreNormalizer
from bonus_engine.calculators.types import (
    PERFORMANCE,
    POSITION,
    PROFIT,
    CompositeMethod,
    ScoreAdjustments,
    Trend,
)
from tests.conftest import employee, weight_spec


def score_cohort(employees, **weights):
    spec = weight_spec(**weights)
    normalizer = ScoreNormalizer(spec)
    drafts = normalizer.normalize(employees)
    aggregator = ScoreAggregator(spec, normalizer.scale_fraction)
    return aggregator, aggregator.score_and_rank(drafts.values())


class TestCompositeScore:
    """Test composite score computation."""

    def test_ranking_scenario(self):
        """A(8, 6, 9) outranks B(5, 5, 5) under weights 0.4/0.3/0.3."""
        _, ranked = score_cohort([employee("A", "8", "6", "9"), employee("B", "5", "5", "5")])
        a, b = ranked

        assert a.employee_id == "A"
        assert a.score_rank == 1
        assert b.score_rank == 2
        assert a.total_score == Decimal("1")
        assert b.total_score == Decimal("0")
        assert a.percentile_rank == Decimal("100.00")
        assert b.percentile_rank == Decimal("50.00")

    def test_weighted_scores_and_contributions(self):
        _, ranked = score_cohort([employee("A", "8", "6", "9"), employee("B", "5", "5", "5")])
        a = ranked[0]
        assert a.weighted == {
            PROFIT: Decimal("0.4"),
            POSITION: Decimal("0.3"),
            PERFORMANCE: Decimal("0.3"),
        }
        assert a.contribution_rates[PROFIT] == Decimal("40.00")
        assert a.contribution_rates[PERFORMANCE] == Decimal("30.00")

    def test_hybrid_blends_sum_and_product(self):
        aggregator, ranked = score_cohort(
            [employee("A", "8", "6", "9"), employee("B", "5", "5", "5")],
            calculation_method=CompositeMethod.HYBRID,
        )
        a = ranked[0]
        total = sum(a.weighted.values(), Decimal("0"))
        product = aggregator._weighted_product(a.weighted)
        expected = total * Decimal("0.7") + product * Decimal("0.3")
        assert abs(a.total_score - expected) < Decimal("0.000001")

    def test_ties_broken_by_employee_id(self):
        _, ranked = score_cohort(
            [
                employee("B", "5", "5", "5"),
                employee("A", "5", "5", "5"),
                employee("C", "1", "1", "1"),
            ]
        )
        assert [d.employee_id for d in ranked] == ["A", "B", "C"]
        assert [d.score_rank for d in ranked] == [1, 2, 3]

    def test_department_and_level_ranks(self, cohort):
        _, ranked = score_cohort(cohort)
        by_id = {d.employee_id: d for d in ranked}
        assert by_id["E1"].department_rank == 1
        assert by_id["E2"].department_rank == 2
        assert by_id["E3"].department_rank == 1
        assert by_id["E4"].department_rank == 2
        assert by_id["E1"].level_rank == 1
        assert by_id["E3"].level_rank == 2

    def test_outlier_flag(self):
        _, ranked = score_cohort([employee("A", "8", "6", "9"), employee("B", "5", "5", "5")])
        assert ranked[0].outlier_flag is False
        assert ranked[1].outlier_flag is True


class TestAdjustments:
    """Test multiplicative score adjustments."""

    def test_excellence_bonus(self):
        _, ranked = score_cohort(
            [employee("A", "8", "6", "9"), employee("B", "5", "5", "5")],
            adjustments=ScoreAdjustments(excellence_bonus=Decimal("0.1")),
        )
        a, b = ranked
        assert a.adjusted_score == Decimal("1.1")
        assert a.final_score == Decimal("1.1")
        assert b.adjusted_score == Decimal("0")

    def test_position_level_multiplier(self):
        _, ranked = score_cohort(
            [
                employee("A", "8", "6", "9", position_level="senior"),
                employee("B", "5", "5", "5", position_level="junior"),
            ],
            adjustments=ScoreAdjustments(position_level_multipliers={"senior": Decimal("1.2")}),
        )
        assert ranked[0].final_score == Decimal("1.2")

    def test_no_adjustments_leaves_adjusted_empty(self):
        _, ranked = score_cohort([employee("A", "8", "6", "9"), employee("B", "5", "5", "5")])
        assert ranked[0].adjusted_score is None


class TestTrend:
    """Test period-over-period trend classification."""

    def test_classify(self):
        assert classify_trend(Decimal("25")) == Trend.IMPROVING
        assert classify_trend(Decimal("-12")) == Trend.DECLINING
        assert classify_trend(Decimal("3")) == Trend.STABLE
        assert classify_trend(Decimal("-5")) == Trend.STABLE
        assert classify_trend(Decimal("7")) == Trend.VOLATILE

    def test_change_rate_from_previous_score(self):
        _, ranked = score_cohort(
            [
                employee("A", "8", "6", "9", previous_score=Decimal("0.8")),
                employee("B", "5", "5", "5"),
            ]
        )
        a, b = ranked
        assert a.score_change_rate == Decimal("25.00")
        assert a.trend == Trend.IMPROVING
        assert b.score_change_rate is None
        assert b.trend is None
