"""Anomaly detection for allocation results."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Protocol

from bonus_engine.calculators.types import AnomalyReason

COEFF_MIN = Decimal("0.1")
COEFF_MAX = Decimal("5.0")
SCORE_MIN = Decimal("0")
SCORE_MAX = Decimal("10")

NEGATIVE_AMOUNT = "negative_amount"
AMOUNT_CEILING = "amount_ceiling"
COEFFICIENT_RANGE = "coefficient_range"
SCORE_RANGE = "score_range"
LOW_COMPLETENESS = "low_completeness"


class ResultLike(Protocol):
    total_amount: Any
    final_coeff: Any
    final_score: Any


class AnomalyDetector:
    """Flags results that need human review before approval.

    Checks are independent; every failing check contributes a reason.
    """

    def __init__(
        self,
        amount_ceiling: Decimal = Decimal("1000000"),
        min_data_completeness: Decimal = Decimal("100"),
    ):
        self.amount_ceiling = amount_ceiling
        self.min_data_completeness = min_data_completeness

    def detect(
        self,
        total_amount: Decimal,
        final_coeff: Decimal,
        final_score: Decimal,
        data_completeness: Decimal,
    ) -> list[AnomalyReason]:
        reasons: list[AnomalyReason] = []
        if total_amount < 0:
            reasons.append(
                AnomalyReason(NEGATIVE_AMOUNT, f"Total amount {total_amount} is negative")
            )
        if total_amount > self.amount_ceiling:
            reasons.append(
                AnomalyReason(
                    AMOUNT_CEILING,
                    f"Total amount {total_amount} exceeds {self.amount_ceiling}",
                )
            )
        if final_coeff < COEFF_MIN or final_coeff > COEFF_MAX:
            reasons.append(
                AnomalyReason(
                    COEFFICIENT_RANGE,
                    f"Final coefficient {final_coeff} outside [{COEFF_MIN}, {COEFF_MAX}]",
                )
            )
        if final_score < SCORE_MIN or final_score > SCORE_MAX:
            reasons.append(
                AnomalyReason(
                    SCORE_RANGE,
                    f"Final score {final_score} outside [{SCORE_MIN}, {SCORE_MAX}]",
                )
            )
        if data_completeness < self.min_data_completeness:
            reasons.append(
                AnomalyReason(
                    LOW_COMPLETENESS,
                    f"Data completeness {data_completeness}% below "
                    f"{self.min_data_completeness}%",
                )
            )
        return reasons

    def inspect(self, result: ResultLike, data_completeness: Decimal) -> list[AnomalyReason]:
        """Run every check against an allocation draft or persisted result."""
        return self.detect(
            Decimal(result.total_amount),
            Decimal(result.final_coeff),
            Decimal(result.final_score),
            data_completeness,
        )
