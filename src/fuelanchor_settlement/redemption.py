"""
Fuel redemption protocol.

A redemption passes these gates in order; each failure is recorded in
the append-only audit trail and raised as a structured error:

0. input validation (nothing recorded)
1. station active, driver active, station allowed for the driver
2. driver inside the station's geofence
3. spend limits, evaluated under the driver (then fleet) lock against
   freshly loaded limits, budget and on-chain balance
4. settlement transfer driver -> station with a correlation memo
5. bookkeeping: driver spend, fleet budget, station counters

A transfer whose outcome is unknown after submission is recorded as
Indeterminate and the driver is blocked until the Reconciler resolves it.
"""
from __future__ import annotations

import asyncio
import functools
import logging
from collections import Counter
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, List, Optional, Union

from .credit import CreditScoreRecorder
from .exceptions import (
    DriverInactive,
    LedgerError,
    LedgerTimeout,
    LimitExceeded,
    NetworkRejected,
    OutOfGeofence,
    PolicyError,
    ReconciliationRequired,
    RedemptionIndeterminate,
    SettlementError,
    StationInactive,
    StationNotAllowed,
    ValidationError,
)
from .geo import within_geofence
from .ledger_client import LedgerClient
from .limits import LimitEnforcer
from .logging_utils import OperationType, SettlementLogger, get_settlement_logger
from .models import (
    ZERO,
    FuelType,
    GeoPoint,
    Redemption,
    RedemptionOutcome,
    StationAnalytics,
    correlation_memo,
    new_id,
    require_positive,
)
from .repositories import SettlementRepository
from .sequencing import KeyedLocks
from .transfer import TransferEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RedemptionRequest:
    station_id: str
    driver_id: str
    fuel_type: Union[FuelType, str]
    amount: Decimal
    liters: Decimal
    driver_location: GeoPoint


def parse_fuel_type(value: Union[FuelType, str]) -> FuelType:
    try:
        return FuelType(value)
    except ValueError:
        raise ValidationError(f"Unknown fuel type: {value!r}", field="fuel_type")


class RedemptionCoordinator:
    """Runs the redemption protocol against injected repositories."""

    def __init__(
        self,
        repository: SettlementRepository,
        transfers: TransferEngine,
        client: LedgerClient,
        enforcer: Optional[LimitEnforcer] = None,
        credit: Optional[CreditScoreRecorder] = None,
        slog: Optional[SettlementLogger] = None,
        locks: Optional[KeyedLocks] = None,
    ):
        self._repository = repository
        self._transfers = transfers
        self._client = client
        self._enforcer = enforcer or LimitEnforcer()
        self._credit = credit
        self._slog = slog or get_settlement_logger()
        # Shared with fleet funding so distributions and redemptions serialize per fleet
        self._locks = locks or KeyedLocks()

    async def redeem(self, request: RedemptionRequest) -> Redemption:
        """
        Redeem fuel for a driver at a station.

        Raises:
            ValidationError: malformed request (not recorded)
            NotFoundError: unknown station or driver (not recorded)
            StationInactive, DriverInactive, StationNotAllowed, OutOfGeofence,
            ReconciliationRequired: recorded as Rejected
            LimitExceeded: recorded as Denied, ``reason`` set
            LedgerError: network failure before submission, recorded as Failed
            RedemptionIndeterminate: submitted, outcome unknown
        """
        amount = require_positive(request.amount)
        liters = require_positive(request.liters, "liters")
        location = request.driver_location.validate()
        fuel_type = parse_fuel_type(request.fuel_type)

        station = await self._repository.get_station(request.station_id)
        limits = await self._repository.load_driver_limits(request.driver_id)

        record = functools.partial(
            Redemption,
            redemption_id=new_id("rdm"),
            station_id=station.station_id,
            driver_id=limits.driver_id,
            driver_wallet=limits.wallet_identity,
            fleet_id=limits.fleet_id,
            fuel_type=fuel_type,
            amount=amount,
            liters=liters,
            location=location,
            price_per_liter=station.price_for(fuel_type),
        )

        async with self._slog.operation(
            OperationType.REDEMPTION,
            limits.wallet_identity,
            station_id=station.station_id,
            amount=amount,
        ) as ctx:
            if limits.pending_reconciliation:
                await self._reject(
                    record, self._reconciliation_required(limits.pending_reconciliation)
                )
            if not station.is_active:
                await self._reject(
                    record, StationInactive(f"Station {station.station_id} is inactive")
                )
            if not limits.is_active:
                await self._reject(
                    record, DriverInactive(f"Driver {limits.driver_id} is inactive")
                )
            if not limits.allows_station(station.station_id):
                await self._reject(
                    record,
                    StationNotAllowed(
                        f"Station {station.station_id} is not allowed for driver {limits.driver_id}"
                    ),
                )

            inside, distance = within_geofence(location, station)
            if not inside:
                await self._reject(
                    record,
                    OutOfGeofence(
                        f"Driver is {distance:.0f}m from station {station.station_id} "
                        f"(radius {station.geofence_radius_m:.0f}m)",
                        distance_m=distance,
                        radius_m=station.geofence_radius_m,
                    ),
                )

            async with self._locks.hold(
                ("driver", limits.driver_id),
                ("fleet", limits.fleet_id) if limits.fleet_id else None,
            ):
                redemption = await self._settle(record, station.wallet_identity)

            ctx.metadata["redemption_id"] = redemption.redemption_id
            ctx.metadata["tx_hash"] = redemption.tx_hash

        if self._credit is not None:
            self._credit.schedule(redemption)
        return redemption

    async def _settle(self, record: Callable[..., Redemption], station_wallet: str) -> Redemption:
        """Steps 3-5; caller holds the driver and fleet locks."""
        draft = record(outcome=RedemptionOutcome.COMPLETED)
        limits = await self._repository.load_driver_limits(draft.driver_id)
        if limits.pending_reconciliation:
            await self._reject(
                record, self._reconciliation_required(limits.pending_reconciliation)
            )

        try:
            budget = (
                await self._repository.load_fleet_budget(limits.fleet_id)
                if limits.fleet_id
                else None
            )
            chain_balance = await self._client.get_settlement_balance(limits.wallet_identity)
        except LedgerError as e:
            await self._fail(record, e)
            raise

        decision = self._enforcer.evaluate(draft.amount, limits, budget, chain_balance)
        if decision.denied:
            await self._append(
                record(
                    outcome=RedemptionOutcome.DENIED,
                    reason=decision.reason.value,
                    detail="; ".join(v.describe() for v in decision.violations),
                )
            )
            raise LimitExceeded(
                f"Redemption denied: {decision.reason.value}",
                reason=decision.reason,
                details={"violations": [v.describe() for v in decision.violations]},
            )

        submitted: List[str] = []
        try:
            receipt = await self._transfers.transfer(
                limits.wallet_identity,
                station_wallet,
                draft.amount,
                memo=correlation_memo(draft.redemption_id),
                on_submitted=submitted.append,
            )
        except NetworkRejected as e:
            # A definitive ledger verdict: nothing was applied
            await self._fail(record, e, tx_hash=e.tx_hash)
            raise
        except LedgerTimeout as e:
            tx_hash = e.tx_hash or (submitted[-1] if submitted else None)
            if tx_hash is None:
                await self._fail(record, e)
                raise
            raise await self._mark_indeterminate(record, tx_hash, e) from e
        except LedgerError as e:
            if submitted:
                raise await self._mark_indeterminate(record, submitted[-1], e) from e
            await self._fail(record, e)
            raise
        except asyncio.CancelledError:
            if submitted:
                await asyncio.shield(
                    self._mark_indeterminate(record, submitted[-1], None)
                )
            raise

        await self._charge(draft)
        await self._repository.update_station(
            draft.station_id, lambda station: station.record_redemption(draft.liters)
        )
        completed = record(outcome=RedemptionOutcome.COMPLETED, tx_hash=receipt.tx_hash)
        await self._append(completed)
        logger.info(
            f"Redemption {completed.redemption_id} completed: {completed.amount} for "
            f"{completed.liters}L at {completed.station_id} (tx {receipt.tx_hash})"
        )
        return completed

    async def _charge(self, redemption: Redemption, flag_pending: bool = False) -> None:
        """Record the driver spend and fleet debit for a redemption."""

        def charge_driver(limits: Any) -> None:
            limits.record_spend(redemption.amount)
            if flag_pending:
                limits.pending_reconciliation = redemption.redemption_id

        await self._repository.update_driver_limits(redemption.driver_id, charge_driver)
        if redemption.fleet_id:
            await self._repository.update_fleet_budget(
                redemption.fleet_id, lambda budget: budget.debit(redemption.amount)
            )

    async def _mark_indeterminate(
        self,
        record: Callable[..., Redemption],
        tx_hash: str,
        error: Optional[SettlementError],
    ) -> RedemptionIndeterminate:
        redemption = record(
            outcome=RedemptionOutcome.INDETERMINATE,
            tx_hash=tx_hash,
            reason=error.error_code if error else "CANCELLED",
            detail=error.message if error else "cancelled after submission",
        )
        await self._append(redemption)
        # Reserve spend and budget until reconciliation says whether it applied
        await self._charge(redemption, flag_pending=True)
        logger.warning(
            f"Redemption {redemption.redemption_id} indeterminate (tx {tx_hash}); "
            f"driver {redemption.driver_id} blocked pending reconciliation"
        )
        return RedemptionIndeterminate(
            f"Transfer for redemption {redemption.redemption_id} submitted but unconfirmed",
            redemption_id=redemption.redemption_id,
            tx_hash=tx_hash,
        )

    def _reconciliation_required(self, redemption_id: str) -> ReconciliationRequired:
        return ReconciliationRequired(
            f"Redemption {redemption_id} must be reconciled first",
            details={"pending_redemption_id": redemption_id},
        )

    async def _fail(
        self,
        record: Callable[..., Redemption],
        error: LedgerError,
        tx_hash: Optional[str] = None,
    ) -> None:
        await self._append(
            record(
                outcome=RedemptionOutcome.FAILED,
                tx_hash=tx_hash,
                reason=error.error_code,
                detail=error.message,
            )
        )

    async def _reject(self, record: Callable[..., Redemption], error: PolicyError) -> None:
        await self._append(
            record(outcome=RedemptionOutcome.REJECTED, reason=error.error_code, detail=error.message)
        )
        raise error

    async def _append(self, redemption: Redemption) -> None:
        await self._repository.append_redemption(redemption)
        if redemption.outcome != RedemptionOutcome.COMPLETED:
            logger.info(
                f"Redemption {redemption.redemption_id} {redemption.outcome.value}: {redemption.reason}",
                extra={"redemption": redemption.to_dict()},
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def effective_outcome(self, redemption_id: str) -> Redemption:
        """The record itself, or its reconciliation follow-up when one exists."""
        resolution = await self._repository.find_resolution(redemption_id)
        if resolution is not None:
            return resolution
        return await self._repository.get_redemption(redemption_id)

    async def station_analytics(self, station_id: str) -> StationAnalytics:
        await self._repository.get_station(station_id)
        completed = [
            r for r in await self._repository.list_redemptions(station_id=station_id)
            if r.outcome == RedemptionOutcome.COMPLETED
        ]
        total_volume = sum((r.liters for r in completed), ZERO)
        count = len(completed)
        return StationAnalytics(
            station_id=station_id,
            total_redemptions=count,
            total_volume=total_volume,
            average_volume=(total_volume / count).quantize(Decimal("0.01")) if count else ZERO,
            redemptions_by_fuel_type=dict(Counter(r.fuel_type.value for r in completed)),
        )

    async def fleet_utilization(self, fleet_id: str) -> float:
        budget = await self._repository.load_fleet_budget(fleet_id)
        return budget.utilization_percent()
