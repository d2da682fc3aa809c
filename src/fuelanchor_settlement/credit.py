"""
Credit-score hook.

After a completed redemption the driver's activity is recorded on the
credit-score contract in a background task. Recording failures are
logged and never affect the redemption.
"""
from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Optional, Set

from stellar_sdk import scval

from .config import SettlementSettings
from .contracts import ContractInvoker, InvocationResult
from .exceptions import InvocationRejected, SettlementError
from .logging_utils import mask_identity
from .models import AMOUNT_SCALE, Redemption, RedemptionOutcome
from .repositories import SettlementRepository

logger = logging.getLogger(__name__)


def to_stroops(amount: Decimal) -> int:
    return int(amount.scaleb(AMOUNT_SCALE))


class CreditScoreRecorder:
    """Reports completed redemptions to the credit-score contract."""

    def __init__(
        self,
        invoker: ContractInvoker,
        repository: SettlementRepository,
        settings: SettlementSettings,
    ):
        self._invoker = invoker
        self._repository = repository
        self._settings = settings
        self._background: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self._settings.credit_score_contract_id and self._settings.distributor_identity)

    async def _station_count(self, driver_id: str) -> int:
        redemptions = await self._repository.list_redemptions(driver_id=driver_id)
        return len({r.station_id for r in redemptions if r.outcome == RedemptionOutcome.COMPLETED})

    async def record_transaction(self, redemption: Redemption) -> InvocationResult:
        station_count = await self._station_count(redemption.driver_id)
        args = [
            scval.to_address(redemption.driver_wallet),
            scval.to_int128(to_stroops(redemption.amount)),
            scval.to_uint32(station_count),
            scval.to_uint64(int(redemption.timestamp.timestamp())),
        ]
        return await self._invoker.invoke(
            self._settings.credit_score_contract_id,
            "record_transaction",
            args,
            self._settings.distributor_identity,
            invocation_key=f"credit:{redemption.resolves or redemption.redemption_id}",
        )

    async def _record_in_background(self, redemption: Redemption) -> None:
        try:
            result = await self.record_transaction(redemption)
        except SettlementError as e:
            logger.warning(
                f"Credit score update for {redemption.driver_id} failed: {e.error_code} {e}"
            )
            return
        if not result.succeeded:
            logger.warning(
                f"Credit score update for {redemption.driver_id} is {result.state.value} "
                f"(tx {result.tx_hash})"
            )

    def schedule(self, redemption: Redemption) -> Optional["asyncio.Task[None]"]:
        """Record in the background when a credit-score contract is configured."""
        if not self.enabled:
            return None
        task = asyncio.create_task(self._record_in_background(redemption))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def get_score(self, driver_wallet: str) -> Optional[int]:
        """Current score, or None when the driver has no credit profile."""
        if not self.enabled:
            return None
        try:
            value = await self._invoker.read(
                self._settings.credit_score_contract_id,
                "get_score",
                [scval.to_address(driver_wallet)],
                self._settings.distributor_identity,
            )
        except InvocationRejected:
            logger.debug(f"No credit profile for {mask_identity(driver_wallet)}")
            return None
        return scval.from_uint32(value)
