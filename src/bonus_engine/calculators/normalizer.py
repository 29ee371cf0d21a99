"""Dimension score normalization across a cohort."""

from __future__ import annotations

import logging
from decimal import Decimal

from bonus_engine.calculators.types import (
    DIMENSIONS,
    PERCENT_PRECISION,
    SCORE_PRECISION,
    CompositeScoreDraft,
    EmployeeInput,
    NormalizationMethod,
    WeightConfigSpec,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
CONFIDENCE_PENALTY_PER_MISSING = Decimal("20")


class ScoreNormalizer:
    """Rescales raw per-dimension values onto a common scale.

    Every method is monotonic, so the relative order of employees within a
    dimension is preserved. Missing values are excluded from the cohort
    statistics, normalize to zero and reduce completeness and confidence.
    """

    def __init__(self, weight_config: WeightConfigSpec, base_confidence: Decimal = Decimal("80")):
        self.weight_config = weight_config
        self.base_confidence = base_confidence

    def normalize(self, employees: list[EmployeeInput]) -> dict[str, CompositeScoreDraft]:
        """Normalize all dimensions for the cohort, keyed by employee id."""
        per_dimension: dict[str, dict[str, Decimal]] = {}
        for dimension in DIMENSIONS:
            present = {
                emp.employee_id: emp.raw_value(dimension)
                for emp in employees
                if emp.raw_value(dimension) is not None
            }
            per_dimension[dimension] = self.normalize_values(present)

        drafts: dict[str, CompositeScoreDraft] = {}
        for emp in employees:
            draft = CompositeScoreDraft(
                employee_id=emp.employee_id,
                department_id=emp.department_id,
                position_level=emp.position_level,
                previous_score=emp.previous_score,
            )
            missing = 0
            for dimension in DIMENSIONS:
                value = per_dimension[dimension].get(emp.employee_id)
                draft.present[dimension] = value is not None
                if value is None:
                    missing += 1
                    draft.normalized[dimension] = ZERO
                    draft.warnings.append(f"Missing {dimension} value; scored as zero")
                else:
                    draft.normalized[dimension] = value

            present_count = len(DIMENSIONS) - missing
            draft.data_completeness = (
                Decimal(present_count) / Decimal(len(DIMENSIONS)) * 100
            ).quantize(PERCENT_PRECISION)
            draft.calculation_confidence = max(
                self.base_confidence - CONFIDENCE_PENALTY_PER_MISSING * missing, ZERO
            )
            if missing:
                logger.debug(
                    "Employee %s missing %d dimension(s)", emp.employee_id, missing
                )
            drafts[emp.employee_id] = draft
        return drafts

    def normalize_values(self, values: dict[str, Decimal]) -> dict[str, Decimal]:
        """Normalize one dimension's present values with the configured method."""
        if not values:
            return {}
        method = self.weight_config.normalization_method
        if method == NormalizationMethod.MIN_MAX:
            result = self.min_max(
                values, self.weight_config.scale_lower, self.weight_config.scale_upper
            )
        elif method == NormalizationMethod.Z_SCORE:
            result = self.z_score(values)
        elif method == NormalizationMethod.RANK_BASED:
            result = self.rank_based(values)
        elif method == NormalizationMethod.PERCENTILE:
            result = self.percentile(values)
        else:
            raise ValueError(f"Unknown normalization method: {method}")
        return {k: v.quantize(SCORE_PRECISION) for k, v in result.items()}

    def scale_fraction(self, value: Decimal) -> Decimal:
        """Position of a normalized value within the configured scale.

        Only min-max output lives on the configurable scale; the other methods
        already produce fractions (or standard scores for z-score).
        """
        if self.weight_config.normalization_method != NormalizationMethod.MIN_MAX:
            return value
        lower = self.weight_config.scale_lower
        span = self.weight_config.scale_upper - lower
        return (value - lower) / span

    @staticmethod
    def min_max(
        values: dict[str, Decimal], lower: Decimal = ZERO, upper: Decimal = Decimal("1")
    ) -> dict[str, Decimal]:
        """Linear rescale onto [lower, upper]. A constant dimension maps to the midpoint."""
        low = min(values.values())
        high = max(values.values())
        if high == low:
            midpoint = (lower + upper) / 2
            return {k: midpoint for k in values}
        span = high - low
        return {k: lower + (v - low) / span * (upper - lower) for k, v in values.items()}

    @staticmethod
    def z_score(values: dict[str, Decimal]) -> dict[str, Decimal]:
        """Standard score using the population standard deviation."""
        n = Decimal(len(values))
        mean = sum(values.values(), ZERO) / n
        variance = sum(((v - mean) ** 2 for v in values.values()), ZERO) / n
        std = variance.sqrt()
        if std == 0:
            return {k: ZERO for k in values}
        return {k: (v - mean) / std for k, v in values.items()}

    @staticmethod
    def rank_based(values: dict[str, Decimal]) -> dict[str, Decimal]:
        """1 for the best value, decreasing by 1/n per rank; ties share a rank."""
        n = Decimal(len(values))
        ordered = list(values.values())
        result = {}
        for key, value in values.items():
            rank = 1 + sum(1 for other in ordered if other > value)
            result[key] = Decimal("1") - Decimal(rank - 1) / n
        return result

    @staticmethod
    def percentile(values: dict[str, Decimal]) -> dict[str, Decimal]:
        """Share of the cohort at or below each value."""
        n = Decimal(len(values))
        ordered = list(values.values())
        return {
            key: Decimal(sum(1 for other in ordered if other <= value)) / n
            for key, value in values.items()
        }
