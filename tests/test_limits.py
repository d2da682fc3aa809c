"""
Tests for multi-level spend-limit evaluation.

Tests cover:
- Approval within every limit
- Each denial reason
- Evaluation order when several limits fail
- Purity (inputs are not mutated)
"""
from __future__ import annotations

import copy
import sys
from decimal import Decimal
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from fuelanchor_settlement.limits import DenialReason, LimitEnforcer, evaluate
from fuelanchor_settlement.models import DriverLimits, FleetBudget


def _limits(**overrides) -> DriverLimits:
    values = dict(
        driver_id="dr_1",
        wallet_identity="G" + "B" * 55,
        daily_limit=Decimal("5000"),
        weekly_limit=Decimal("20000"),
        per_transaction_limit=Decimal("1000"),
    )
    values.update(overrides)
    return DriverLimits(**values)


class TestEvaluate:
    """Tests for evaluate()."""

    def test_approves_within_limits(self):
        """Should approve an amount below every limit."""
        decision = evaluate(Decimal("300"), _limits(), chain_balance=Decimal("1000"))
        assert decision.approved is True
        assert decision.reason is None
        assert decision.violations == ()

    def test_daily_limit(self):
        """Should deny 300 when 4800 of a 5000 daily limit is spent."""
        limits = _limits(daily_spent=Decimal("4800"))
        decision = evaluate(Decimal("300"), limits)
        assert decision.denied
        assert decision.reason == DenialReason.EXCEEDS_DAILY_LIMIT

    def test_per_transaction_limit(self):
        """Should deny an amount above the per-transaction cap."""
        decision = evaluate(Decimal("1000.0000001"), _limits())
        assert decision.reason == DenialReason.EXCEEDS_PER_TRANSACTION_LIMIT

    def test_amount_equal_to_limit_is_allowed(self):
        """Should allow an amount exactly at the per-transaction cap."""
        assert evaluate(Decimal("1000"), _limits()).approved

    def test_weekly_limit(self):
        """Should deny when the weekly accumulator would overflow."""
        limits = _limits(weekly_spent=Decimal("19900"))
        decision = evaluate(Decimal("200"), limits)
        assert decision.reason == DenialReason.EXCEEDS_WEEKLY_LIMIT

    def test_fleet_budget(self):
        """Should deny a fleet-funded amount above the remaining budget."""
        budget = FleetBudget(
            fleet_id="fl_1",
            wallet_identity="G" + "C" * 55,
            total_funded=Decimal("1000"),
            remaining=Decimal("100"),
        )
        decision = evaluate(Decimal("200"), _limits(fleet_id="fl_1"), fleet_budget=budget)
        assert decision.reason == DenialReason.EXCEEDS_FLEET_BUDGET

    def test_chain_balance(self):
        """Should deny when the on-chain balance is too small."""
        decision = evaluate(Decimal("200"), _limits(), chain_balance=Decimal("199.9999999"))
        assert decision.reason == DenialReason.INSUFFICIENT_CHAIN_BALANCE

    def test_first_failing_check_is_reported(self):
        """Should report the per-transaction limit before later failures."""
        limits = _limits(daily_spent=Decimal("4900"), weekly_spent=Decimal("19900"))
        decision = evaluate(Decimal("1500"), limits, chain_balance=Decimal("0"))
        assert decision.reason == DenialReason.EXCEEDS_PER_TRANSACTION_LIMIT
        reasons = [v.reason for v in decision.violations]
        assert reasons == [
            DenialReason.EXCEEDS_PER_TRANSACTION_LIMIT,
            DenialReason.EXCEEDS_DAILY_LIMIT,
            DenialReason.EXCEEDS_WEEKLY_LIMIT,
            DenialReason.INSUFFICIENT_CHAIN_BALANCE,
        ]

    def test_does_not_mutate_inputs(self):
        """Should leave limits and budget untouched."""
        limits = _limits(daily_spent=Decimal("100"))
        budget = FleetBudget("fl_1", "G" + "C" * 55, Decimal("500"), Decimal("500"))
        before = (copy.deepcopy(limits), copy.deepcopy(budget))
        evaluate(Decimal("300"), limits, budget, Decimal("1000"))
        assert (limits, budget) == before

    def test_decision_to_dict(self):
        """Should serialize the reason and violations."""
        decision = evaluate(Decimal("300"), _limits(daily_spent=Decimal("4800")))
        payload = decision.to_dict()
        assert payload["approved"] is False
        assert payload["reason"] == "exceeds_daily_limit"
        assert payload["violations"] == ["exceeds_daily_limit: 5100 > 5000"]


class TestLimitEnforcer:
    """Tests for the LimitEnforcer wrapper."""

    def test_delegates_to_evaluate(self):
        """Should return the same decision as evaluate()."""
        limits = _limits(daily_spent=Decimal("4800"))
        assert LimitEnforcer().evaluate(Decimal("300"), limits) == evaluate(Decimal("300"), limits)


class TestDriverLimitsAccounting:
    """Tests for DriverLimits spend accounting."""

    def test_record_spend_refuses_overflow(self):
        """Should refuse to record a spend that breaks the daily cap."""
        limits = _limits(daily_spent=Decimal("4800"))
        with pytest.raises(ValueError):
            limits.record_spend(Decimal("300"))
        assert limits.daily_spent == Decimal("4800")

    def test_release_spend_floors_at_zero(self):
        """Should not go negative when released after a reset."""
        limits = _limits(daily_spent=Decimal("100"), weekly_spent=Decimal("400"))
        limits.reset_daily()
        limits.release_spend(Decimal("300"))
        assert limits.daily_spent == Decimal("0")
        assert limits.weekly_spent == Decimal("100")
