"""Tests for anomaly detection."""

from decimal import Decimal

from bonus_engine.calculators.anomaly import (
    AMOUNT_CEILING,
    COEFFICIENT_RANGE,
    LOW_COMPLETENESS,
    NEGATIVE_AMOUNT,
    SCORE_RANGE,
    AnomalyDetector,
)


def codes(reasons):
    return {r.code for r in reasons}


class TestAnomalyDetector:
    """Test independent anomaly checks."""

    def setup_method(self):
        self.detector = AnomalyDetector(Decimal("100000"), Decimal("100"))

    def test_clean_result_has_no_anomalies(self):
        reasons = self.detector.detect(
            Decimal("5000"), Decimal("1.5"), Decimal("0.7"), Decimal("100")
        )
        assert reasons == []

    def test_negative_amount(self):
        reasons = self.detector.detect(
            Decimal("-1"), Decimal("1"), Decimal("0.5"), Decimal("100")
        )
        assert codes(reasons) == {NEGATIVE_AMOUNT}

    def test_amount_above_ceiling(self):
        reasons = self.detector.detect(
            Decimal("100000.01"), Decimal("1"), Decimal("0.5"), Decimal("100")
        )
        assert codes(reasons) == {AMOUNT_CEILING}

    def test_coefficient_bounds_are_inclusive(self):
        assert self.detector.detect(
            Decimal("1"), Decimal("0.1"), Decimal("0.5"), Decimal("100")
        ) == []
        assert self.detector.detect(
            Decimal("1"), Decimal("5"), Decimal("0.5"), Decimal("100")
        ) == []
        reasons = self.detector.detect(
            Decimal("1"), Decimal("5.01"), Decimal("0.5"), Decimal("100")
        )
        assert codes(reasons) == {COEFFICIENT_RANGE}

    def test_multiple_reasons_reported_together(self):
        reasons = self.detector.detect(
            Decimal("-5"), Decimal("0.05"), Decimal("11"), Decimal("66.67")
        )
        assert codes(reasons) == {NEGATIVE_AMOUNT, COEFFICIENT_RANGE, SCORE_RANGE, LOW_COMPLETENESS}
        assert all(r.message for r in reasons)

    def test_inspect_reads_result_attributes(self):
        class Row:
            total_amount = Decimal("2000000")
            final_coeff = Decimal("1")
            final_score = Decimal("0.5")

        detector = AnomalyDetector()
        assert codes(detector.inspect(Row(), Decimal("100"))) == {AMOUNT_CEILING}
