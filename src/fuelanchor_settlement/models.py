"""Settlement data models.

Amounts are Decimals with seven fractional digits, the ledger's native
precision (one stroop = 0.0000001 units).
"""
from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .exceptions import ValidationError

AMOUNT_SCALE = 7
AMOUNT_QUANTUM = Decimal(10) ** -AMOUNT_SCALE
ZERO = Decimal("0")


def to_amount(value: Any, field_name: str = "amount") -> Decimal:
    """
    Convert a numeric value to a ledger amount.

    Raises:
        ValidationError: non-numeric, non-finite, or finer than one stroop
    """
    try:
        if isinstance(value, Decimal):
            d = value
        elif isinstance(value, float):
            d = Decimal(str(value))
        elif isinstance(value, (int, str)) and not isinstance(value, bool):
            d = Decimal(value)
        else:
            raise ValidationError(
                f"Cannot convert {type(value).__name__} to an amount", field=field_name
            )
    except InvalidOperation:
        raise ValidationError(f"Invalid {field_name}: {value!r}", field=field_name)

    if not d.is_finite():
        raise ValidationError(f"{field_name} must be finite", field=field_name)
    if d != d.quantize(AMOUNT_QUANTUM):
        raise ValidationError(
            f"{field_name} has more than {AMOUNT_SCALE} decimal places", field=field_name
        )
    return d.quantize(AMOUNT_QUANTUM)


def require_positive(value: Any, field_name: str = "amount") -> Decimal:
    amount = to_amount(value, field_name)
    if amount <= ZERO:
        raise ValidationError(f"{field_name} must be positive", field=field_name)
    return amount


def format_amount(amount: Decimal) -> str:
    """Render an amount the way the ledger expects it."""
    return f"{amount.quantize(AMOUNT_QUANTUM):f}"


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Ledger projections
# =============================================================================

@dataclass(frozen=True)
class Asset:
    """An issued asset, identified by code and issuer."""
    code: str
    issuer: str

    def matches(self, code: Optional[str], issuer: Optional[str]) -> bool:
        return self.code == code and self.issuer == issuer

    def __str__(self) -> str:
        return f"{self.code}:{self.issuer}"


@dataclass(frozen=True)
class Balance:
    """One balance line of an account."""
    asset_code: Optional[str]
    asset_issuer: Optional[str]
    amount: Decimal
    limit: Optional[Decimal] = None

    @property
    def is_native(self) -> bool:
        return self.asset_code is None


@dataclass(frozen=True)
class Account:
    """Network-observed projection of a wallet; read-only."""
    account_id: str
    sequence: int
    balances: Tuple[Balance, ...] = ()

    def balance_of(self, asset: Asset) -> Optional[Balance]:
        for balance in self.balances:
            if asset.matches(balance.asset_code, balance.asset_issuer):
                return balance
        return None


@dataclass(frozen=True)
class TransactionRecord:
    """A transaction as reported by the ledger's history endpoints."""
    tx_hash: str
    ledger: Optional[int]
    source_account: str
    successful: bool
    memo: Optional[str] = None
    created_at: Optional[datetime] = None
    paging_token: Optional[str] = None
    result_codes: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class HistoryPage:
    """One cursor page of account history."""
    records: Tuple[TransactionRecord, ...]
    next_cursor: Optional[str]


# =============================================================================
# Wallets
# =============================================================================

class OwnerType(str, Enum):
    """Entity a wallet was minted for."""
    DRIVER = "driver"
    STATION = "station"
    FLEET = "fleet"
    DISTRIBUTOR = "distributor"


@dataclass(frozen=True)
class Wallet:
    """
    A ledger wallet owned by exactly one entity.

    The signing secret is not part of this record; it is held by the
    KeyManager's encrypted store under ``public_identity``.
    """
    public_identity: str
    owner_type: OwnerType
    owner_id: str
    phone: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class WalletCreation:
    """Wallet plus its secret, returned once on non-production networks."""
    wallet: Wallet
    secret: str = field(repr=False)


# =============================================================================
# Geography and stations
# =============================================================================

@dataclass(frozen=True)
class GeoPoint:
    """Latitude / longitude in decimal degrees."""
    latitude: float
    longitude: float

    def validate(self) -> "GeoPoint":
        for name, value, bound in (
            ("latitude", self.latitude, 90.0),
            ("longitude", self.longitude, 180.0),
        ):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValidationError(f"{name} must be a number", field=name)
            if not math.isfinite(value) or abs(value) > bound:
                raise ValidationError(f"{name} out of range: {value}", field=name)
        return self


class FuelType(str, Enum):
    PETROL = "petrol"
    DIESEL = "diesel"
    PREMIUM = "premium"


@dataclass
class Station:
    """A fuel station able to redeem the settlement asset."""
    station_id: str
    name: str
    wallet_identity: str
    location: GeoPoint
    geofence_radius_m: float = 100.0
    fuel_prices: Dict[FuelType, Decimal] = field(default_factory=dict)
    total_redemptions: int = 0
    total_volume: Decimal = ZERO
    is_active: bool = True
    version: int = 0

    def price_for(self, fuel_type: FuelType) -> Optional[Decimal]:
        return self.fuel_prices.get(fuel_type)

    def record_redemption(self, liters: Decimal) -> None:
        self.total_redemptions += 1
        self.total_volume += liters
        self.version += 1


# =============================================================================
# Budgets and limits
# =============================================================================

@dataclass
class FleetBudget:
    """Funds a fleet has bought and not yet spent.

    Invariant: 0 <= remaining <= total_funded.
    """
    fleet_id: str
    wallet_identity: str
    total_funded: Decimal = ZERO
    remaining: Decimal = ZERO
    is_active: bool = True
    version: int = 0

    def __post_init__(self) -> None:
        self._check()

    def _check(self) -> None:
        if not (ZERO <= self.remaining <= self.total_funded):
            raise ValueError(
                f"Fleet budget invariant violated: remaining={self.remaining}, "
                f"total_funded={self.total_funded}"
            )

    def fund(self, amount: Decimal) -> None:
        """Credit a successful purchase."""
        self.total_funded += amount
        self.remaining += amount
        self.version += 1
        self._check()

    def debit(self, amount: Decimal) -> None:
        """Charge a successful distribution or redemption."""
        if amount > self.remaining:
            raise ValueError(f"Fleet budget {self.fleet_id} has only {self.remaining}")
        self.remaining -= amount
        self.version += 1
        self._check()

    def refund(self, amount: Decimal) -> None:
        """Return a reserved debit whose transfer never applied."""
        self.remaining += amount
        self.version += 1
        self._check()

    def utilization_percent(self) -> float:
        if self.total_funded <= 0:
            return 0.0
        return float((self.total_funded - self.remaining) / self.total_funded * 100)


@dataclass
class DriverLimits:
    """Driver spending caps and accumulators.

    Spent accumulators are reset by an external scheduler on day/week
    rollover via reset_daily() / reset_weekly().
    """
    driver_id: str
    wallet_identity: str
    daily_limit: Decimal
    weekly_limit: Decimal
    per_transaction_limit: Decimal
    fleet_id: Optional[str] = None
    daily_spent: Decimal = ZERO
    weekly_spent: Decimal = ZERO
    allowed_stations: Tuple[str, ...] = ()
    is_active: bool = True
    pending_reconciliation: Optional[str] = None
    version: int = 0

    def record_spend(self, amount: Decimal) -> None:
        if self.daily_spent + amount > self.daily_limit:
            raise ValueError(f"Daily limit of {self.daily_limit} would be exceeded")
        if self.weekly_spent + amount > self.weekly_limit:
            raise ValueError(f"Weekly limit of {self.weekly_limit} would be exceeded")
        self.daily_spent += amount
        self.weekly_spent += amount
        self.version += 1

    def release_spend(self, amount: Decimal) -> None:
        """Undo a recorded spend; floors at zero if a reset happened since."""
        self.daily_spent = max(ZERO, self.daily_spent - amount)
        self.weekly_spent = max(ZERO, self.weekly_spent - amount)
        self.version += 1

    def reset_daily(self) -> None:
        self.daily_spent = ZERO
        self.version += 1

    def reset_weekly(self) -> None:
        self.weekly_spent = ZERO
        self.version += 1

    def allows_station(self, station_id: str) -> bool:
        return not self.allowed_stations or station_id in self.allowed_stations


# =============================================================================
# Receipts and audit records
# =============================================================================

@dataclass(frozen=True)
class TransferReceipt:
    """Confirmed payment of the settlement asset."""
    tx_hash: str
    ledger: Optional[int]
    source: str
    destination: str
    amount: Decimal
    memo: Optional[str] = None
    confirmed_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class AuthorizationReceipt:
    """Result of establishing an authorization record for the asset."""
    account_id: str
    asset: Asset
    limit: Decimal
    tx_hash: Optional[str] = None
    already_authorized: bool = False


class RedemptionOutcome(str, Enum):
    COMPLETED = "completed"
    DENIED = "denied"  # spend limit
    REJECTED = "rejected"  # station / driver / geofence policy
    FAILED = "failed"  # network-terminal, nothing applied
    INDETERMINATE = "indeterminate"  # submitted, outcome unknown


@dataclass(frozen=True)
class Redemption:
    """Immutable audit record of one redemption attempt."""
    redemption_id: str
    station_id: str
    driver_id: str
    driver_wallet: str
    fuel_type: FuelType
    amount: Decimal
    liters: Decimal
    location: GeoPoint
    outcome: RedemptionOutcome
    fleet_id: Optional[str] = None
    price_per_liter: Optional[Decimal] = None
    tx_hash: Optional[str] = None
    reason: Optional[str] = None
    detail: Optional[str] = None
    resolves: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def correlation_memo(self) -> str:
        """Text memo attached to the transfer for audit correlation."""
        return correlation_memo(self.resolves or self.redemption_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "redemption_id": self.redemption_id,
            "station_id": self.station_id,
            "driver_id": self.driver_id,
            "driver_wallet": self.driver_wallet,
            "fleet_id": self.fleet_id,
            "fuel_type": self.fuel_type.value,
            "amount": str(self.amount),
            "liters": str(self.liters),
            "price_per_liter": str(self.price_per_liter) if self.price_per_liter is not None else None,
            "location": {"latitude": self.location.latitude, "longitude": self.location.longitude},
            "outcome": self.outcome.value,
            "tx_hash": self.tx_hash,
            "reason": self.reason,
            "detail": self.detail,
            "resolves": self.resolves,
            "timestamp": self.timestamp.isoformat(),
        }


def correlation_memo(redemption_id: str) -> str:
    # "rdm_" + 24 hex chars fits the 28-byte text memo
    return f"rdm:{redemption_id.split('_', 1)[-1][:24]}"


@dataclass(frozen=True)
class StationAnalytics:
    station_id: str
    total_redemptions: int
    total_volume: Decimal
    average_volume: Decimal
    redemptions_by_fuel_type: Dict[str, int]


@dataclass(frozen=True)
class DistributionResult:
    driver_id: str
    amount: Decimal
    success: bool
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    # Sent but unconfirmed: the debit stays reserved until reconciled
    indeterminate: bool = False
    distribution_id: Optional[str] = None


@dataclass(frozen=True)
class FleetPurchase:
    fleet_id: str
    amount: Decimal
    reference: str
    tx_hash: str
    remaining: Decimal


__all__: List[str] = [
    "AMOUNT_SCALE",
    "Account",
    "Asset",
    "AuthorizationReceipt",
    "Balance",
    "DistributionResult",
    "DriverLimits",
    "FleetBudget",
    "FleetPurchase",
    "FuelType",
    "GeoPoint",
    "HistoryPage",
    "OwnerType",
    "Redemption",
    "RedemptionOutcome",
    "Station",
    "StationAnalytics",
    "TransactionRecord",
    "TransferReceipt",
    "Wallet",
    "WalletCreation",
    "correlation_memo",
    "format_amount",
    "new_id",
    "require_positive",
    "to_amount",
]
