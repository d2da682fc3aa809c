"""
Pytest configuration for fuelanchor-settlement tests.
"""
from __future__ import annotations

import os
import sys
from decimal import Decimal
from pathlib import Path
from typing import Optional

import pytest

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(package_src))

# Set test environment
os.environ.setdefault("FUELANCHOR_ENVIRONMENT", "dev")
os.environ.setdefault("FUELANCHOR_LEDGER_MODE", "simulated")
os.environ.setdefault("FUELANCHOR_NETWORK", "testnet")

from fuelanchor_settlement.config import SettlementSettings
from fuelanchor_settlement.models import (
    DriverLimits,
    FleetBudget,
    FuelType,
    GeoPoint,
    OwnerType,
    Station,
)
from fuelanchor_settlement.redemption import RedemptionRequest
from fuelanchor_settlement.service import Settlement
from fuelanchor_settlement.simulated import SimulatedLedgerNetwork

# Lagos, used as the default station location
STATION_LOCATION = GeoPoint(6.5244, 3.3792)


def make_settings(**overrides) -> SettlementSettings:
    """Settings with short timeouts suitable for the simulated ledger."""
    values = dict(
        environment="dev",
        ledger_mode="simulated",
        network="testnet",
        payment_confirmation_timeout=0.5,
        payment_poll_interval=0.01,
        contract_poll_interval=0.01,
        contract_poll_deadline=0.2,
        request_timeout_seconds=2.0,
        max_retries=2,
        retry_delay_seconds=0.001,
    )
    values.update(overrides)
    return SettlementSettings(_env_file=None, **values)


class SettlementWorld:
    """Builds stations, drivers and fleets on a simulated ledger."""

    def __init__(self, settlement: Settlement):
        self.settlement = settlement

    @property
    def network(self) -> SimulatedLedgerNetwork:
        return self.settlement.network

    @property
    def repository(self):
        return self.settlement.repository

    async def wallet(
        self,
        owner_type: OwnerType,
        owner_id: str,
        balance: Decimal = Decimal("0"),
        phone: Optional[str] = None,
    ) -> str:
        provisioned = await self.settlement.wallets.provision(owner_type, owner_id, phone=phone)
        identity = provisioned.wallet.public_identity
        if balance > 0:
            await self.settlement.transfers.mint(identity, balance)
        return identity

    def balance(self, identity: str) -> Decimal:
        settings = self.settlement.settings
        return self.network.balance_of(identity, settings.asset_code, settings.asset_issuer)

    async def add_station(
        self,
        station_id: str = "st_lagos",
        location: GeoPoint = STATION_LOCATION,
        radius_m: float = 100.0,
        **kwargs,
    ) -> Station:
        identity = await self.wallet(OwnerType.STATION, station_id)
        station = Station(
            station_id=station_id,
            name=f"Station {station_id}",
            wallet_identity=identity,
            location=location,
            geofence_radius_m=radius_m,
            fuel_prices={FuelType.PETROL: Decimal("650"), FuelType.DIESEL: Decimal("700")},
            **kwargs,
        )
        await self.repository.save_station(station)
        return station

    async def add_fleet(self, fleet_id: str = "fl_acme", funded: Decimal = Decimal("0")) -> FleetBudget:
        identity = await self.wallet(OwnerType.FLEET, fleet_id)
        await self.repository.save_fleet_budget(FleetBudget(fleet_id=fleet_id, wallet_identity=identity))
        if funded > 0:
            await self.settlement.funding.purchase(fleet_id, funded, reference=f"seed-{fleet_id}")
        return await self.repository.load_fleet_budget(fleet_id)

    async def add_driver(
        self,
        driver_id: str = "dr_ada",
        balance: Decimal = Decimal("10000"),
        daily_limit: Decimal = Decimal("5000"),
        weekly_limit: Decimal = Decimal("20000"),
        per_transaction_limit: Decimal = Decimal("1000"),
        phone: Optional[str] = None,
        **kwargs,
    ) -> DriverLimits:
        identity = await self.wallet(OwnerType.DRIVER, driver_id, balance, phone=phone)
        limits = DriverLimits(
            driver_id=driver_id,
            wallet_identity=identity,
            daily_limit=daily_limit,
            weekly_limit=weekly_limit,
            per_transaction_limit=per_transaction_limit,
            **kwargs,
        )
        await self.repository.save_driver_limits(limits)
        return limits


def redemption_request(
    driver_id: str = "dr_ada",
    station_id: str = "st_lagos",
    amount: str = "300",
    liters: str = "0.5",
    location: GeoPoint = STATION_LOCATION,
    fuel_type: str = "petrol",
) -> RedemptionRequest:
    return RedemptionRequest(
        station_id=station_id,
        driver_id=driver_id,
        fuel_type=fuel_type,
        amount=Decimal(amount),
        liters=Decimal(liters),
        driver_location=location,
    )


@pytest.fixture
def settings() -> SettlementSettings:
    """Dev settings for the simulated testnet."""
    return make_settings()


@pytest.fixture
def network(settings) -> SimulatedLedgerNetwork:
    """Fresh simulated ledger."""
    return SimulatedLedgerNetwork(settings.network_passphrase)


@pytest.fixture
def settlement(settings, network) -> Settlement:
    """Fully wired settlement core with a bootstrapped issuer."""
    return Settlement.build(settings=settings, network=network)


@pytest.fixture
def world(settlement) -> SettlementWorld:
    return SettlementWorld(settlement)
