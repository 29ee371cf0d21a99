"""Aggregate summaries derived from per-employee allocation results."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable

ZERO = Decimal("0")
MONEY = Decimal("0.01")
RATIO = Decimal("0.0001")


@dataclass
class GroupSummary:
    count: int = 0
    total: Decimal = ZERO

    @property
    def average(self) -> Decimal:
        if not self.count:
            return ZERO
        return (self.total / self.count).quantize(MONEY)


@dataclass
class FairnessMetrics:
    gini_coefficient: Decimal = ZERO
    score_correlation: Decimal | None = None
    coefficient_of_variation: Decimal = ZERO


@dataclass
class AllocationSummary:
    """Pool totals, distribution statistics and fairness indicators."""

    pool_amount: Decimal
    distributable_amount: Decimal | None
    employee_count: int = 0
    eligible_count: int = 0
    total_allocated: Decimal = ZERO
    average_amount: Decimal = ZERO
    median_amount: Decimal = ZERO
    max_amount: Decimal = ZERO
    min_amount: Decimal = ZERO
    std_dev: Decimal = ZERO
    min_applied_count: int = 0
    max_applied_count: int = 0
    anomaly_count: int = 0
    by_department: dict[str, GroupSummary] = field(default_factory=dict)
    by_tier: dict[str, GroupSummary] = field(default_factory=dict)
    fairness: FairnessMetrics = field(default_factory=FairnessMetrics)

    @property
    def remaining_amount(self) -> Decimal:
        base = self.distributable_amount if self.distributable_amount is not None else self.pool_amount
        return base - self.total_allocated

    def to_dict(self) -> dict[str, Any]:
        return {
            "pool_amount": self.pool_amount,
            "distributable_amount": self.distributable_amount,
            "employee_count": self.employee_count,
            "eligible_count": self.eligible_count,
            "total_allocated": self.total_allocated,
            "remaining_amount": self.remaining_amount,
            "average_amount": self.average_amount,
            "median_amount": self.median_amount,
            "max_amount": self.max_amount,
            "min_amount": self.min_amount,
            "std_dev": self.std_dev,
            "min_applied_count": self.min_applied_count,
            "max_applied_count": self.max_applied_count,
            "anomaly_count": self.anomaly_count,
            "by_department": {
                k: {"count": g.count, "total": g.total, "average": g.average}
                for k, g in sorted(self.by_department.items())
            },
            "by_tier": {
                k: {"count": g.count, "total": g.total, "average": g.average}
                for k, g in sorted(self.by_tier.items())
            },
            "fairness": {
                "gini_coefficient": self.fairness.gini_coefficient,
                "score_correlation": self.fairness.score_correlation,
                "coefficient_of_variation": self.fairness.coefficient_of_variation,
            },
        }


def _median(values: list[Decimal]) -> Decimal:
    ordered = sorted(values)
    n = len(ordered)
    mid = n // 2
    if n % 2:
        return ordered[mid]
    return (ordered[mid - 1] + ordered[mid]) / 2


def gini(values: list[Decimal]) -> Decimal:
    """Gini coefficient of non-negative amounts; 0 is perfectly even."""
    n = len(values)
    total = sum(values, ZERO)
    if n == 0 or total <= 0:
        return ZERO
    ordered = sorted(values)
    weighted = sum((Decimal(i) * v for i, v in enumerate(ordered, start=1)), ZERO)
    return (2 * weighted) / (n * total) - Decimal(n + 1) / n


def correlation(xs: list[Decimal], ys: list[Decimal]) -> Decimal | None:
    """Pearson correlation; None when either series is constant."""
    n = len(xs)
    if n < 2:
        return None
    mean_x = sum(xs, ZERO) / n
    mean_y = sum(ys, ZERO) / n
    cov = sum(((x - mean_x) * (y - mean_y) for x, y in zip(xs, ys)), ZERO)
    var_x = sum(((x - mean_x) ** 2 for x in xs), ZERO)
    var_y = sum(((y - mean_y) ** 2 for y in ys), ZERO)
    if var_x == 0 or var_y == 0:
        return None
    return cov / (var_x * var_y).sqrt()


def summarize(
    results: Iterable[Any],
    pool_amount: Decimal,
    distributable_amount: Decimal | None = None,
) -> AllocationSummary:
    """Build a summary from allocation drafts or persisted results."""
    results = list(results)
    summary = AllocationSummary(
        pool_amount=Decimal(pool_amount),
        distributable_amount=distributable_amount,
        employee_count=len(results),
    )
    eligible = [r for r in results if r.eligible_for_bonus]
    summary.eligible_count = len(eligible)
    summary.total_allocated = sum((Decimal(r.total_amount) for r in results), ZERO)
    summary.min_applied_count = sum(1 for r in results if r.min_amount_applied)
    summary.max_applied_count = sum(1 for r in results if r.max_amount_applied)
    summary.anomaly_count = sum(1 for r in results if r.has_anomalies)

    by_department: dict[str, GroupSummary] = defaultdict(GroupSummary)
    by_tier: dict[str, GroupSummary] = defaultdict(GroupSummary)
    for r in eligible:
        amount = Decimal(r.total_amount)
        dept = by_department[r.department_id or "unassigned"]
        dept.count += 1
        dept.total += amount
        if r.tier_level:
            tier = by_tier[r.tier_level]
            tier.count += 1
            tier.total += amount
    summary.by_department = dict(by_department)
    summary.by_tier = dict(by_tier)

    if not eligible:
        return summary

    amounts = [Decimal(r.total_amount) for r in eligible]
    scores = [Decimal(r.final_score) for r in eligible]
    n = len(amounts)
    mean = sum(amounts, ZERO) / n
    summary.average_amount = mean.quantize(MONEY)
    summary.median_amount = _median(amounts).quantize(MONEY)
    summary.max_amount = max(amounts)
    summary.min_amount = min(amounts)
    std = (sum(((a - mean) ** 2 for a in amounts), ZERO) / n).sqrt()
    summary.std_dev = std.quantize(MONEY)

    corr = correlation(scores, amounts)
    summary.fairness = FairnessMetrics(
        gini_coefficient=gini(amounts).quantize(RATIO),
        score_correlation=corr.quantize(RATIO) if corr is not None else None,
        coefficient_of_variation=(std / mean).quantize(RATIO) if mean > 0 else ZERO,
    )
    return summary
