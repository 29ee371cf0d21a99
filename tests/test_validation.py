"""Tests for configuration validation."""

from decimal import Decimal

import pytest

from bonus_engine.calculators.types import (
    AllocationMethod,
    EmployeeInput,
    FixedAmountConfig,
    PoolGroupBy,
    PoolGroupConfig,
    PoolSpec,
    TierSpec,
)
from bonus_engine.calculators.validation import (
    ConfigurationError,
    ensure_valid,
    validate_allocation_rule,
    validate_employee_inputs,
    validate_pool,
    validate_tiers,
    validate_weight_config,
)
from tests.conftest import rule_spec, weight_spec


class TestWeightConfigValidation:
    def test_valid_weights(self):
        assert validate_weight_config(weight_spec()) == []

    def test_weights_within_tolerance(self):
        spec = weight_spec(performance_weight=Decimal("0.3009"))
        assert validate_weight_config(spec) == []

    def test_weights_must_sum_to_one(self):
        errors = validate_weight_config(weight_spec(performance_weight=Decimal("0.4")))
        assert any("sum to 1" in e for e in errors)

    def test_negative_weight(self):
        errors = validate_weight_config(
            weight_spec(profit_weight=Decimal("-0.1"), position_weight=Decimal("0.8"))
        )
        assert any("between 0 and 1" in e for e in errors)

    def test_scale_bounds(self):
        errors = validate_weight_config(
            weight_spec(scale_lower=Decimal("1"), scale_upper=Decimal("1"))
        )
        assert errors


class TestTierValidation:
    """Test tier configuration checks."""

    def test_valid_tiers(self):
        tiers = [
            TierSpec("A", Decimal("0.5"), Decimal("0.8")),
            TierSpec("B", Decimal("0.5"), Decimal("0")),
        ]
        assert validate_tiers(tiers) == []

    def test_ratios_must_sum_to_one(self):
        tiers = [
            TierSpec("A", Decimal("0.5"), Decimal("0.8")),
            TierSpec("B", Decimal("0.4"), Decimal("0")),
        ]
        assert any("sum to 1" in e for e in validate_tiers(tiers))

    def test_thresholds_strictly_decreasing(self):
        tiers = [
            TierSpec("A", Decimal("0.5"), Decimal("0.5")),
            TierSpec("B", Decimal("0.5"), Decimal("0.5")),
        ]
        assert any("strictly decreasing" in e for e in validate_tiers(tiers))

    def test_unique_names(self):
        tiers = [
            TierSpec("A", Decimal("0.5"), Decimal("0.8")),
            TierSpec("A", Decimal("0.5"), Decimal("0")),
        ]
        assert any("unique" in e for e in validate_tiers(tiers))

    def test_empty(self):
        assert validate_tiers([])


class TestAllocationRuleValidation:
    """Test allocation rule checks."""

    def test_valid_rule(self):
        assert validate_allocation_rule(rule_spec()) == []

    def test_ratio_split_must_sum_to_one(self):
        errors = validate_allocation_rule(
            rule_spec(base_allocation_ratio=Decimal("0.7"), performance_allocation_ratio=Decimal("0.2"))
        )
        assert any("sum to 1" in e for e in errors)

    @pytest.mark.parametrize(
        "field,value",
        [
            ("max_score_multiplier", Decimal("0.5")),
            ("max_score_multiplier", Decimal("11")),
            ("total_allocation_limit", Decimal("1.3")),
            ("reserve_ratio", Decimal("0.25")),
            ("calculation_precision", 5),
        ],
    )
    def test_bounds(self, field, value):
        assert validate_allocation_rule(rule_spec(**{field: value}))

    def test_min_above_max_amount(self):
        errors = validate_allocation_rule(
            rule_spec(min_bonus_amount=Decimal("500"), max_bonus_amount=Decimal("100"))
        )
        assert any("min_bonus_amount" in e for e in errors)

    def test_tier_rule_requires_tiers(self):
        errors = validate_allocation_rule(rule_spec(allocation_method=AllocationMethod.TIER_BASED))
        assert any("at least one tier" in e for e in errors)

    def test_pool_shares_must_sum_to_one(self):
        errors = validate_allocation_rule(
            rule_spec(
                allocation_method=AllocationMethod.POOL_PERCENTAGE,
                pool_groups=PoolGroupConfig(PoolGroupBy.DEPARTMENT, {"a": Decimal("0.5")}),
            )
        )
        assert any("shares" in e for e in errors)

    def test_fixed_amount_requires_amounts(self):
        errors = validate_allocation_rule(rule_spec(allocation_method=AllocationMethod.FIXED_AMOUNT))
        assert errors
        ok = rule_spec(
            allocation_method=AllocationMethod.FIXED_AMOUNT,
            fixed_amounts=FixedAmountConfig(default_amount=Decimal("100")),
        )
        assert validate_allocation_rule(ok) == []

    def test_all_errors_reported(self):
        errors = validate_allocation_rule(
            rule_spec(
                base_allocation_ratio=Decimal("0.9"),
                reserve_ratio=Decimal("0.5"),
                max_score_multiplier=Decimal("20"),
            )
        )
        assert len(errors) >= 3


class TestPoolAndCohortValidation:
    def test_pool_period_format(self):
        assert validate_pool(PoolSpec("p", "2025-Q4", Decimal("1"))) == []
        assert validate_pool(PoolSpec("p", "2025-13", Decimal("1")))
        assert validate_pool(PoolSpec("p", "Q4", Decimal("1")))

    def test_negative_pool(self):
        assert validate_pool(PoolSpec("p", "2025", Decimal("-1")))

    def test_duplicate_employees(self):
        errors = validate_employee_inputs([EmployeeInput("E1"), EmployeeInput("E1")])
        assert any("Duplicate" in e for e in errors)

    def test_missing_values_are_not_errors(self):
        assert validate_employee_inputs([EmployeeInput("E1")]) == []

    def test_ensure_valid_raises_with_every_error(self):
        with pytest.raises(ConfigurationError) as exc_info:
            ensure_valid(["first", "second"], "allocation rule")
        assert exc_info.value.errors == ["first", "second"]
        assert "allocation rule" in str(exc_info.value)
