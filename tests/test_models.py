"""
Tests for settlement data models.

Tests cover:
- Amount conversion and precision
- Fleet budget invariant
- Correlation memos
- Redemption audit record serialization
"""
from __future__ import annotations

import sys
from decimal import Decimal
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from fuelanchor_settlement.exceptions import ValidationError
from fuelanchor_settlement.models import (
    Asset,
    FleetBudget,
    FuelType,
    GeoPoint,
    Redemption,
    RedemptionOutcome,
    correlation_memo,
    format_amount,
    new_id,
    require_positive,
    to_amount,
)


class TestAmounts:
    """Tests for amount helpers."""

    def test_to_amount_accepts_seven_decimals(self):
        """Should accept one stroop."""
        assert to_amount("0.0000001") == Decimal("0.0000001")

    def test_to_amount_rejects_eight_decimals(self):
        """Should reject precision finer than a stroop."""
        with pytest.raises(ValidationError):
            to_amount("0.00000001")

    def test_to_amount_from_float(self):
        """Should convert floats through their string form."""
        assert to_amount(12.5) == Decimal("12.5")

    @pytest.mark.parametrize("value", ["abc", "NaN", "Infinity", True, None, [1]])
    def test_to_amount_rejects_garbage(self, value):
        """Should reject non-numeric and non-finite values."""
        with pytest.raises(ValidationError):
            to_amount(value)

    @pytest.mark.parametrize("value", ["0", "-1", 0])
    def test_require_positive(self, value):
        """Should reject zero and negative amounts."""
        with pytest.raises(ValidationError) as exc_info:
            require_positive(value, "liters")
        assert exc_info.value.details["field"] == "liters"

    def test_format_amount(self):
        """Should render fixed-point with seven decimals."""
        assert format_amount(Decimal("12")) == "12.0000000"
        assert format_amount(Decimal("1E+3")) == "1000.0000000"


class TestFleetBudget:
    """Tests for FleetBudget."""

    def _budget(self) -> FleetBudget:
        return FleetBudget("fl_1", "G" + "A" * 55)

    def test_fund_and_debit(self):
        """Should track funding and debits."""
        budget = self._budget()
        budget.fund(Decimal("1000"))
        budget.debit(Decimal("250"))
        assert budget.total_funded == Decimal("1000")
        assert budget.remaining == Decimal("750")
        assert budget.utilization_percent() == pytest.approx(25.0)

    def test_debit_beyond_remaining_fails(self):
        """Should refuse to go below zero."""
        budget = self._budget()
        budget.fund(Decimal("100"))
        with pytest.raises(ValueError):
            budget.debit(Decimal("100.0000001"))
        assert budget.remaining == Decimal("100")

    def test_refund_cannot_exceed_total(self):
        """Should keep remaining <= total_funded."""
        budget = self._budget()
        budget.fund(Decimal("100"))
        with pytest.raises(ValueError):
            budget.refund(Decimal("1"))

    def test_invalid_construction(self):
        """Should reject remaining above total_funded."""
        with pytest.raises(ValueError):
            FleetBudget("fl_1", "G" + "A" * 55, total_funded=Decimal("1"), remaining=Decimal("2"))

    def test_utilization_of_unfunded_budget(self):
        """Should report zero utilization without funding."""
        assert self._budget().utilization_percent() == 0.0


class TestCorrelationMemo:
    """Tests for redemption correlation memos."""

    def test_fits_text_memo(self):
        """Should fit in 28 bytes."""
        memo = correlation_memo(new_id("rdm"))
        assert memo.startswith("rdm:")
        assert len(memo.encode("utf-8")) <= 28

    def test_deterministic(self):
        """Should derive the same memo from the same id."""
        redemption_id = new_id("rdm")
        assert correlation_memo(redemption_id) == correlation_memo(redemption_id)

    def test_follow_up_uses_original_memo(self):
        """Should correlate a follow-up record with the original transfer."""
        original = Redemption(
            redemption_id=new_id("rdm"),
            station_id="st_1",
            driver_id="dr_1",
            driver_wallet="G" + "A" * 55,
            fuel_type=FuelType.PETROL,
            amount=Decimal("10"),
            liters=Decimal("1"),
            location=GeoPoint(0.0, 0.0),
            outcome=RedemptionOutcome.INDETERMINATE,
        )
        follow_up = Redemption(
            **{**original.__dict__, "redemption_id": new_id("rdm"), "resolves": original.redemption_id}
        )
        assert follow_up.correlation_memo == original.correlation_memo

    def test_to_dict(self):
        """Should serialize enums, decimals and location."""
        record = Redemption(
            redemption_id="rdm_abc",
            station_id="st_1",
            driver_id="dr_1",
            driver_wallet="G" + "A" * 55,
            fuel_type=FuelType.DIESEL,
            amount=Decimal("10"),
            liters=Decimal("1.5"),
            location=GeoPoint(1.0, 2.0),
            outcome=RedemptionOutcome.DENIED,
            reason="exceeds_daily_limit",
        )
        payload = record.to_dict()
        assert payload["fuel_type"] == "diesel"
        assert payload["outcome"] == "denied"
        assert payload["amount"] == "10"
        assert payload["location"] == {"latitude": 1.0, "longitude": 2.0}


class TestAsset:
    """Tests for Asset."""

    def test_matches(self):
        """Should match code and issuer."""
        asset = Asset("FUEL", "G" + "I" * 55)
        assert asset.matches("FUEL", "G" + "I" * 55)
        assert not asset.matches("FUEL", "G" + "J" * 55)
        assert str(asset) == f"FUEL:{'G' + 'I' * 55}"
