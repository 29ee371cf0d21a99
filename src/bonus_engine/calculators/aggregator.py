"""Composite scoring, ranking and trend classification."""

from __future__ import annotations

from collections import defaultdict
from decimal import Decimal
from typing import Callable, Iterable

from bonus_engine.calculators.types import (
    DIMENSIONS,
    PERCENT_PRECISION,
    PERFORMANCE,
    SCORE_PRECISION,
    CompositeMethod,
    CompositeScoreDraft,
    Trend,
    WeightConfigSpec,
)

ZERO = Decimal("0")
ONE = Decimal("1")
HUNDRED = Decimal("100")

HYBRID_SUM_SHARE = Decimal("0.7")
HYBRID_PRODUCT_SHARE = Decimal("0.3")

OUTLIER_MIN = Decimal("0.1")
OUTLIER_MAX = Decimal("10")

TREND_IMPROVING = Decimal("10")
TREND_DECLINING = Decimal("-10")
TREND_STABLE_BAND = Decimal("5")


def rank_key(draft: CompositeScoreDraft) -> tuple[Decimal, str]:
    """Descending score, ties broken by employee id."""
    return (-draft.final_score, draft.employee_id)


def classify_trend(change_rate: Decimal) -> Trend:
    """Classify a period-over-period change in percent."""
    if change_rate > TREND_IMPROVING:
        return Trend.IMPROVING
    if change_rate < TREND_DECLINING:
        return Trend.DECLINING
    if abs(change_rate) <= TREND_STABLE_BAND:
        return Trend.STABLE
    return Trend.VOLATILE


class ScoreAggregator:
    """Combines normalized dimension scores into a ranked composite.

    Scoring is per employee; ranking is a barrier over the whole cohort.
    """

    def __init__(
        self,
        weight_config: WeightConfigSpec,
        scale_fraction: Callable[[Decimal], Decimal] | None = None,
    ):
        self.weight_config = weight_config
        self.scale_fraction = scale_fraction or (lambda value: value)

    def score(self, draft: CompositeScoreDraft) -> CompositeScoreDraft:
        """Compute weighted scores, total, adjustments and trend for one employee."""
        weights = self.weight_config.weights()
        draft.weighted = {
            dim: (weights[dim] * draft.normalized[dim]).quantize(SCORE_PRECISION)
            for dim in DIMENSIONS
        }
        total = self.combine(draft.weighted)
        draft.total_score = total.quantize(SCORE_PRECISION)

        adjusted = self.apply_adjustments(draft)
        draft.adjusted_score = adjusted.quantize(SCORE_PRECISION) if adjusted is not None else None

        draft.contribution_rates = self.contribution_rates(draft.weighted, draft.total_score)

        if draft.previous_score is not None and draft.previous_score > 0:
            rate = (draft.final_score - draft.previous_score) / draft.previous_score * HUNDRED
            draft.score_change_rate = rate.quantize(PERCENT_PRECISION)
            draft.trend = classify_trend(rate)

        final = draft.final_score
        draft.outlier_flag = final < OUTLIER_MIN or final > OUTLIER_MAX
        return draft

    def combine(self, weighted: dict[str, Decimal]) -> Decimal:
        method = self.weight_config.calculation_method
        total = sum(weighted.values(), ZERO)
        if method == CompositeMethod.WEIGHTED_SUM:
            return total
        product = self._weighted_product(weighted)
        if method == CompositeMethod.WEIGHTED_PRODUCT:
            return product
        if method == CompositeMethod.HYBRID:
            return total * HYBRID_SUM_SHARE + product * HYBRID_PRODUCT_SHARE
        raise ValueError(f"Unknown calculation method: {method}")

    def _weighted_product(self, weighted: dict[str, Decimal]) -> Decimal:
        """Π (weighted_i + 1) ^ weight_i - 1."""
        weights = self.weight_config.weights()
        product = ONE
        for dim in DIMENSIONS:
            weight = weights[dim]
            if weight == 0:
                continue
            base = weighted[dim] + ONE
            if base <= 0:
                return -ONE
            product *= base**weight
        return product - ONE

    def apply_adjustments(self, draft: CompositeScoreDraft) -> Decimal | None:
        """Multiplicative adjustments; None when no adjustment is configured."""
        adj = self.weight_config.adjustments
        if adj is None or not adj.is_active:
            return None

        score = draft.total_score
        fractions = [self.scale_fraction(draft.normalized[dim]) for dim in DIMENSIONS]
        mean_fraction = sum(fractions, ZERO) / Decimal(len(fractions))

        if adj.excellence_bonus is not None and mean_fraction > adj.excellence_threshold:
            score *= ONE + adj.excellence_bonus
        if (
            adj.performance_multiplier is not None
            and self.scale_fraction(draft.normalized[PERFORMANCE]) > adj.performance_threshold
        ):
            score *= adj.performance_multiplier
        if draft.position_level is not None:
            score *= adj.position_level_multipliers.get(draft.position_level, ONE)
        return max(score, ZERO)

    @staticmethod
    def contribution_rates(weighted: dict[str, Decimal], total: Decimal) -> dict[str, Decimal]:
        """Share of each weighted dimension in the total, in percent."""
        if total == 0:
            return {dim: ZERO for dim in weighted}
        return {
            dim: (value / total * HUNDRED).quantize(PERCENT_PRECISION)
            for dim, value in weighted.items()
        }

    def rank(self, drafts: Iterable[CompositeScoreDraft]) -> list[CompositeScoreDraft]:
        """Assign overall, department and level ranks. Returns drafts in rank order."""
        ordered = sorted(drafts, key=rank_key)
        for position, (draft, percentile) in enumerate(_rank_group(ordered), start=1):
            draft.score_rank = position
            draft.percentile_rank = percentile

        by_department: dict[str, list[CompositeScoreDraft]] = defaultdict(list)
        by_level: dict[str, list[CompositeScoreDraft]] = defaultdict(list)
        for draft in ordered:
            if draft.department_id is not None:
                by_department[draft.department_id].append(draft)
            if draft.position_level is not None:
                by_level[draft.position_level].append(draft)

        for members in by_department.values():
            for position, draft in enumerate(members, start=1):
                draft.department_rank = position
        for members in by_level.values():
            for position, draft in enumerate(members, start=1):
                draft.level_rank = position
        return ordered

    def score_and_rank(self, drafts: Iterable[CompositeScoreDraft]) -> list[CompositeScoreDraft]:
        scored = [self.score(d) for d in drafts]
        return self.rank(scored)


def _rank_group(
    ordered: list[CompositeScoreDraft],
) -> list[tuple[CompositeScoreDraft, Decimal]]:
    """Pair each draft with its percentile: share of the cohort at or below its score."""
    n = Decimal(len(ordered))
    scores = [d.final_score for d in ordered]
    return [
        (
            draft,
            (Decimal(sum(1 for s in scores if s <= draft.final_score)) / n * HUNDRED).quantize(
                PERCENT_PRECISION
            ),
        )
        for draft in ordered
    ]
