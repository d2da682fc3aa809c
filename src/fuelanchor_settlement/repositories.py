"""
Persistence interfaces for settlement state.

SettlementRepository is the contract durable stores implement. The
in-memory implementation is for development and tests: it hands out
deep copies so callers never hold live references, and serializes
read-modify-write updates per record.
"""
from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional

from .exceptions import NotFoundError
from .models import (
    DriverLimits,
    FleetBudget,
    OwnerType,
    Redemption,
    Station,
    TransferReceipt,
    Wallet,
)
from .sequencing import KeyedLocks

logger = logging.getLogger(__name__)


class ExternalPaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ExternalPaymentRecord:
    """
    An external (mobile-money) payment, keyed by reference.

    Stored as PENDING before its mint is signed; ``tx_hash`` is the last
    envelope handed to the ledger. COMPLETED records carry the receipt.
    """
    reference: str
    payer: str
    wallet_identity: str
    amount: Decimal
    status: ExternalPaymentStatus = ExternalPaymentStatus.PENDING
    tx_hash: Optional[str] = None
    receipt: Optional[TransferReceipt] = None
    submitted_at: datetime = field(default_factory=_utcnow)
    processed_at: Optional[datetime] = None


@dataclass(frozen=True)
class PendingDistribution:
    """A distribution transfer that was sent but never confirmed; its debit is reserved."""
    distribution_id: str
    fleet_id: str
    driver_id: str
    driver_wallet: str
    amount: Decimal
    tx_hash: str
    memo: str
    submitted_at: datetime = field(default_factory=_utcnow)


class SettlementRepository(ABC):
    """Abstract interface for settlement state storage."""

    # Stations
    @abstractmethod
    async def get_station(self, station_id: str) -> Station:
        """Raises NotFoundError for unknown stations."""
        pass

    @abstractmethod
    async def save_station(self, station: Station) -> None:
        pass

    @abstractmethod
    async def update_station(self, station_id: str, fn: Callable[[Station], None]) -> Station:
        """Atomically apply ``fn`` to the stored station and persist it."""
        pass

    # Driver limits
    @abstractmethod
    async def load_driver_limits(self, driver_id: str) -> DriverLimits:
        pass

    @abstractmethod
    async def save_driver_limits(self, limits: DriverLimits) -> None:
        pass

    @abstractmethod
    async def update_driver_limits(
        self, driver_id: str, fn: Callable[[DriverLimits], None]
    ) -> DriverLimits:
        pass

    @abstractmethod
    async def list_driver_limits(self, fleet_id: Optional[str] = None) -> List[DriverLimits]:
        pass

    # Fleet budgets
    @abstractmethod
    async def load_fleet_budget(self, fleet_id: str) -> FleetBudget:
        pass

    @abstractmethod
    async def save_fleet_budget(self, budget: FleetBudget) -> None:
        pass

    @abstractmethod
    async def update_fleet_budget(
        self, fleet_id: str, fn: Callable[[FleetBudget], None]
    ) -> FleetBudget:
        pass

    # Redemptions (append-only)
    @abstractmethod
    async def append_redemption(self, redemption: Redemption) -> None:
        pass

    @abstractmethod
    async def get_redemption(self, redemption_id: str) -> Redemption:
        pass

    @abstractmethod
    async def list_redemptions(
        self,
        station_id: Optional[str] = None,
        driver_id: Optional[str] = None,
    ) -> List[Redemption]:
        pass

    @abstractmethod
    async def find_resolution(self, redemption_id: str) -> Optional[Redemption]:
        """The follow-up record that resolves ``redemption_id``, if any."""
        pass

    # Wallets
    @abstractmethod
    async def save_wallet(self, wallet: Wallet) -> None:
        pass

    @abstractmethod
    async def get_wallet(self, identity: str) -> Optional[Wallet]:
        pass

    @abstractmethod
    async def find_wallet_by_phone(self, phone: str) -> Optional[Wallet]:
        pass

    @abstractmethod
    async def find_wallet_by_owner(
        self, owner_type: OwnerType, owner_id: str
    ) -> Optional[Wallet]:
        pass

    # External payments
    @abstractmethod
    async def get_external_payment(self, reference: str) -> Optional[ExternalPaymentRecord]:
        pass

    @abstractmethod
    async def save_external_payment(self, record: ExternalPaymentRecord) -> bool:
        """Store the record; False if the reference already exists."""
        pass

    @abstractmethod
    async def update_external_payment(self, record: ExternalPaymentRecord) -> None:
        """Replace the stored record for ``record.reference``."""
        pass

    # Distributions awaiting reconciliation
    @abstractmethod
    async def save_pending_distribution(self, pending: PendingDistribution) -> None:
        pass

    @abstractmethod
    async def list_pending_distributions(
        self, fleet_id: Optional[str] = None
    ) -> List[PendingDistribution]:
        pass

    @abstractmethod
    async def delete_pending_distribution(self, distribution_id: str) -> None:
        pass


class InMemorySettlementRepository(SettlementRepository):
    """
    In-memory repository for development and testing.

    Note: state is process-local. Use a durable store in production.
    """

    def __init__(self) -> None:
        self._stations: Dict[str, Station] = {}
        self._limits: Dict[str, DriverLimits] = {}
        self._budgets: Dict[str, FleetBudget] = {}
        self._redemptions: List[Redemption] = []
        self._redemption_index: Dict[str, int] = {}
        self._wallets: Dict[str, Wallet] = {}
        self._external_payments: Dict[str, ExternalPaymentRecord] = {}
        self._pending_distributions: Dict[str, PendingDistribution] = {}
        self._locks = KeyedLocks()

    # Stations

    async def get_station(self, station_id: str) -> Station:
        station = self._stations.get(station_id)
        if station is None:
            raise NotFoundError("station", station_id)
        return copy.deepcopy(station)

    async def save_station(self, station: Station) -> None:
        self._stations[station.station_id] = copy.deepcopy(station)

    async def update_station(self, station_id: str, fn: Callable[[Station], None]) -> Station:
        async with self._locks.get(("station", station_id)):
            station = await self.get_station(station_id)
            fn(station)
            self._stations[station_id] = copy.deepcopy(station)
            return station

    # Driver limits

    async def load_driver_limits(self, driver_id: str) -> DriverLimits:
        limits = self._limits.get(driver_id)
        if limits is None:
            raise NotFoundError("driver", driver_id)
        return copy.deepcopy(limits)

    async def save_driver_limits(self, limits: DriverLimits) -> None:
        self._limits[limits.driver_id] = copy.deepcopy(limits)

    async def update_driver_limits(
        self, driver_id: str, fn: Callable[[DriverLimits], None]
    ) -> DriverLimits:
        async with self._locks.get(("driver", driver_id)):
            limits = await self.load_driver_limits(driver_id)
            fn(limits)
            self._limits[driver_id] = copy.deepcopy(limits)
            return limits

    async def list_driver_limits(self, fleet_id: Optional[str] = None) -> List[DriverLimits]:
        return [
            copy.deepcopy(limits)
            for limits in self._limits.values()
            if fleet_id is None or limits.fleet_id == fleet_id
        ]

    # Fleet budgets

    async def load_fleet_budget(self, fleet_id: str) -> FleetBudget:
        budget = self._budgets.get(fleet_id)
        if budget is None:
            raise NotFoundError("fleet", fleet_id)
        return copy.deepcopy(budget)

    async def save_fleet_budget(self, budget: FleetBudget) -> None:
        self._budgets[budget.fleet_id] = copy.deepcopy(budget)

    async def update_fleet_budget(
        self, fleet_id: str, fn: Callable[[FleetBudget], None]
    ) -> FleetBudget:
        async with self._locks.get(("fleet", fleet_id)):
            budget = await self.load_fleet_budget(fleet_id)
            fn(budget)
            self._budgets[fleet_id] = copy.deepcopy(budget)
            return budget

    # Redemptions

    async def append_redemption(self, redemption: Redemption) -> None:
        if redemption.redemption_id in self._redemption_index:
            raise ValueError(f"Redemption {redemption.redemption_id} already recorded")
        self._redemption_index[redemption.redemption_id] = len(self._redemptions)
        self._redemptions.append(redemption)

    async def get_redemption(self, redemption_id: str) -> Redemption:
        index = self._redemption_index.get(redemption_id)
        if index is None:
            raise NotFoundError("redemption", redemption_id)
        return self._redemptions[index]

    async def list_redemptions(
        self,
        station_id: Optional[str] = None,
        driver_id: Optional[str] = None,
    ) -> List[Redemption]:
        return [
            r for r in self._redemptions
            if (station_id is None or r.station_id == station_id)
            and (driver_id is None or r.driver_id == driver_id)
        ]

    async def find_resolution(self, redemption_id: str) -> Optional[Redemption]:
        for redemption in self._redemptions:
            if redemption.resolves == redemption_id:
                return redemption
        return None

    # Wallets

    async def save_wallet(self, wallet: Wallet) -> None:
        self._wallets[wallet.public_identity] = wallet

    async def get_wallet(self, identity: str) -> Optional[Wallet]:
        return self._wallets.get(identity)

    async def find_wallet_by_phone(self, phone: str) -> Optional[Wallet]:
        for wallet in self._wallets.values():
            if wallet.phone == phone:
                return wallet
        return None

    async def find_wallet_by_owner(
        self, owner_type: OwnerType, owner_id: str
    ) -> Optional[Wallet]:
        for wallet in self._wallets.values():
            if wallet.owner_type == owner_type and wallet.owner_id == owner_id:
                return wallet
        return None

    # External payments

    async def get_external_payment(self, reference: str) -> Optional[ExternalPaymentRecord]:
        return self._external_payments.get(reference)

    async def save_external_payment(self, record: ExternalPaymentRecord) -> bool:
        if record.reference in self._external_payments:
            return False
        self._external_payments[record.reference] = record
        return True

    async def update_external_payment(self, record: ExternalPaymentRecord) -> None:
        if record.reference not in self._external_payments:
            raise NotFoundError("external payment", record.reference)
        self._external_payments[record.reference] = record

    # Distributions awaiting reconciliation

    async def save_pending_distribution(self, pending: PendingDistribution) -> None:
        self._pending_distributions[pending.distribution_id] = pending

    async def list_pending_distributions(
        self, fleet_id: Optional[str] = None
    ) -> List[PendingDistribution]:
        return [
            pending for pending in self._pending_distributions.values()
            if fleet_id is None or pending.fleet_id == fleet_id
        ]

    async def delete_pending_distribution(self, distribution_id: str) -> None:
        self._pending_distributions.pop(distribution_id, None)


__all__: List[str] = [
    "ExternalPaymentRecord",
    "ExternalPaymentStatus",
    "InMemorySettlementRepository",
    "PendingDistribution",
    "SettlementRepository",
]
