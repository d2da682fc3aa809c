"""
Multi-level spend-limit evaluation.

Checks run in a fixed order and the first failing one is the reported
reason:

1. per-transaction limit
2. daily limit
3. weekly limit
4. fleet budget (fleet-funded drivers only)
5. on-chain settlement balance (when supplied)

Evaluation is pure: it reads its inputs and mutates nothing.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .models import DriverLimits, FleetBudget


class DenialReason(str, Enum):
    EXCEEDS_PER_TRANSACTION_LIMIT = "exceeds_per_transaction_limit"
    EXCEEDS_DAILY_LIMIT = "exceeds_daily_limit"
    EXCEEDS_WEEKLY_LIMIT = "exceeds_weekly_limit"
    EXCEEDS_FLEET_BUDGET = "exceeds_fleet_budget"
    INSUFFICIENT_CHAIN_BALANCE = "insufficient_chain_balance"


@dataclass(frozen=True)
class LimitViolation:
    reason: DenialReason
    limit: Decimal
    attempted: Decimal

    def describe(self) -> str:
        return f"{self.reason.value}: {self.attempted} > {self.limit}"


@dataclass(frozen=True)
class LimitDecision:
    """Approved, or denied with the first failing check as ``reason``."""
    approved: bool
    reason: Optional[DenialReason] = None
    violations: Tuple[LimitViolation, ...] = ()

    @property
    def denied(self) -> bool:
        return not self.approved

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approved": self.approved,
            "reason": self.reason.value if self.reason else None,
            "violations": [v.describe() for v in self.violations],
        }


def evaluate(
    amount: Decimal,
    limits: DriverLimits,
    fleet_budget: Optional[FleetBudget] = None,
    chain_balance: Optional[Decimal] = None,
) -> LimitDecision:
    """Evaluate ``amount`` against every limit level."""
    violations: List[LimitViolation] = []

    if amount > limits.per_transaction_limit:
        violations.append(
            LimitViolation(
                DenialReason.EXCEEDS_PER_TRANSACTION_LIMIT, limits.per_transaction_limit, amount
            )
        )
    if limits.daily_spent + amount > limits.daily_limit:
        violations.append(
            LimitViolation(
                DenialReason.EXCEEDS_DAILY_LIMIT, limits.daily_limit, limits.daily_spent + amount
            )
        )
    if limits.weekly_spent + amount > limits.weekly_limit:
        violations.append(
            LimitViolation(
                DenialReason.EXCEEDS_WEEKLY_LIMIT, limits.weekly_limit, limits.weekly_spent + amount
            )
        )
    if fleet_budget is not None and amount > fleet_budget.remaining:
        violations.append(
            LimitViolation(DenialReason.EXCEEDS_FLEET_BUDGET, fleet_budget.remaining, amount)
        )
    if chain_balance is not None and amount > chain_balance:
        violations.append(
            LimitViolation(DenialReason.INSUFFICIENT_CHAIN_BALANCE, chain_balance, amount)
        )

    if not violations:
        return LimitDecision(approved=True)
    return LimitDecision(
        approved=False,
        reason=violations[0].reason,
        violations=tuple(violations),
    )


class LimitEnforcer:
    """Object wrapper over evaluate() for injection into the coordinator."""

    def evaluate(
        self,
        amount: Decimal,
        limits: DriverLimits,
        fleet_budget: Optional[FleetBudget] = None,
        chain_balance: Optional[Decimal] = None,
    ) -> LimitDecision:
        return evaluate(amount, limits, fleet_budget, chain_balance)
