"""Unit tests for BonusEngine.

Tests the pure pipeline end to end with in-memory inputs.
"""

from decimal import Decimal

import pytest

from bonus_engine.calculators.engine import BonusEngine, CalculationContext, EngineConfig
from bonus_engine.calculators.types import PoolSpec
from bonus_engine.calculators.validation import ConfigurationError
from tests.conftest import PERIOD, employee, pool_spec, rule_spec, weight_spec


def context(employees, rule=None, pool=None, period=PERIOD, weights=None):
    return CalculationContext(
        period=period,
        pool=pool or pool_spec(),
        weight_config=weights or weight_spec(),
        rule=rule or rule_spec(),
        employees=employees,
    )


class TestCalculationIdGeneration:
    """Test deterministic calculation ID generation."""

    def test_same_inputs_produce_same_id(self):
        """Same inputs should always produce the same calculation ID."""
        engine = BonusEngine.__new__(BonusEngine)
        engine.config = EngineConfig()

        id1 = engine._generate_calculation_id("pool-1", "E1", PERIOD, "abc123", "def456")
        id2 = engine._generate_calculation_id("pool-1", "E1", PERIOD, "abc123", "def456")

        assert id1 == id2

    def test_different_inputs_produce_different_id(self):
        """Different inputs should produce different calculation IDs."""
        engine = BonusEngine.__new__(BonusEngine)
        engine.config = EngineConfig()

        id1 = engine._generate_calculation_id("pool-1", "E1", PERIOD, "abc123", "def456")
        id2 = engine._generate_calculation_id("pool-1", "E1", PERIOD, "xyz789", "def456")

        assert id1 != id2

    def test_engine_version_affects_id(self):
        """Different engine versions should produce different IDs."""
        engine1 = BonusEngine(EngineConfig(engine_version="1.0.0"))
        engine2 = BonusEngine(EngineConfig(engine_version="2.0.0"))

        id1 = engine1._generate_calculation_id("pool-1", "E1", PERIOD, "abc", "def")
        id2 = engine2._generate_calculation_id("pool-1", "E1", PERIOD, "abc", "def")

        assert id1 != id2


class TestFingerprints:
    """Test input and rule fingerprints."""

    def test_input_order_does_not_matter(self, cohort):
        engine = BonusEngine()
        fp1 = engine._compute_inputs_fingerprint(context(cohort))
        fp2 = engine._compute_inputs_fingerprint(context(list(reversed(cohort))))
        assert fp1 == fp2

    def test_changed_value_changes_inputs_fingerprint(self, cohort):
        engine = BonusEngine()
        fp1 = engine._compute_inputs_fingerprint(context(cohort))
        cohort[3] = employee("E4", "3", "4", "2.5", department_id="ops", position_level="junior")
        fp2 = engine._compute_inputs_fingerprint(context(cohort))
        assert fp1 != fp2

    def test_rule_change_changes_rules_fingerprint(self, cohort):
        engine = BonusEngine()
        fp1 = engine._compute_rules_fingerprint(context(cohort))
        fp2 = engine._compute_rules_fingerprint(
            context(cohort, rule=rule_spec(max_score_multiplier=Decimal("2")))
        )
        assert fp1 != fp2
        assert len(fp1) == 32


class TestDeterminism:
    def test_identical_runs_produce_identical_results(self, cohort):
        """Same cohort, config and rule give the same amounts and ids."""
        first = BonusEngine().run(context(cohort))
        second = BonusEngine().run(context(list(reversed(cohort))))

        def snapshot(result):
            return sorted(
                (a.employee_id, a.calculation_id, a.total_amount, a.final_coeff)
                for a in result.allocations
            )

        assert snapshot(first) == snapshot(second)
        assert first.inputs_fingerprint == second.inputs_fingerprint


class TestEngineRun:
    """Test the full pipeline."""

    def test_allocates_within_capacity(self, cohort):
        result = BonusEngine().run(context(cohort))

        assert result.distributable == Decimal("100000")
        assert result.total_allocated <= result.distributable
        assert result.total_allocated >= Decimal("99999.99")
        assert [c.employee_id for c in result.composites] == ["E1", "E3", "E2", "E4"]

    def test_amounts_respect_precision_and_components(self, cohort):
        result = BonusEngine().run(context(cohort))
        for a in result.allocations:
            assert a.total_amount == a.total_amount.quantize(Decimal("0.01"))
            assert a.base_amount + a.performance_amount + a.adjustment_amount == a.total_amount
            assert a.calculation_id is not None

    def test_reserve_reduces_distributable(self, cohort):
        rule = rule_spec(total_allocation_limit=Decimal("0.9"), reserve_ratio=Decimal("0.05"))
        result = BonusEngine().run(context(cohort, rule=rule))
        assert result.distributable == Decimal("85000")
        assert result.total_allocated <= Decimal("85000")

    def test_ineligible_employee_keeps_composite(self, cohort):
        cohort[1] = employee(
            "E2", "5", "5", "5", department_id="sales", position_level="junior", work_months=5
        )
        result = BonusEngine().run(context(cohort))

        e2 = next(a for a in result.allocations if a.employee_id == "E2")
        assert e2.eligible_for_bonus is False
        assert e2.total_amount == Decimal("0")
        assert any(c.employee_id == "E2" for c in result.composites)

    def test_missing_data_flags_anomaly(self, cohort):
        cohort[1] = employee(
            "E2", "5", None, "5", department_id="sales", position_level="junior"
        )
        result = BonusEngine().run(context(cohort))

        e2 = next(a for a in result.allocations if a.employee_id == "E2")
        assert e2.has_anomalies is True
        assert "low_completeness" in {r.code for r in e2.anomaly_reasons}
        assert result.anomaly_count == 1

    def test_summary(self, cohort):
        result = BonusEngine().run(context(cohort))
        summary = result.summary()
        assert summary.employee_count == 4
        assert summary.total_allocated == result.total_allocated
        assert summary.fairness.score_correlation > Decimal("0")


class TestEngineValidation:
    """Test validation before calculation."""

    def test_valid_context(self, cohort):
        assert BonusEngine().validate(context(cohort)) == []

    def test_pool_period_must_match(self, cohort):
        errors = BonusEngine().validate(context(cohort, pool=pool_spec(period="2025-Q3")))
        assert any("does not match" in e for e in errors)

    def test_run_raises_with_all_errors(self, cohort):
        ctx = context(
            cohort,
            weights=weight_spec(profit_weight=Decimal("0.9")),
            pool=PoolSpec("pool-1", PERIOD, Decimal("-5")),
        )
        with pytest.raises(ConfigurationError) as exc_info:
            BonusEngine().run(ctx)
        assert len(exc_info.value.errors) >= 2

    def test_engine_config_bounds(self):
        with pytest.raises(ValueError):
            EngineConfig(min_work_months=-1)
        with pytest.raises(ValueError):
            EngineConfig(min_data_completeness=Decimal("101"))
