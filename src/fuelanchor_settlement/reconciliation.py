"""
Resolution of Indeterminate redemptions against ledger history.

A redemption whose transfer was submitted but never confirmed reserves
the driver's spend and fleet budget and blocks the driver. The Reconciler
looks the transfer up by hash, then by correlation memo in the driver's
history, and appends a follow-up record:

- transfer applied: Completed follow-up, station counters updated
- transfer failed, or absent past its validity window: Failed follow-up,
  reservations released
- still unknown: nothing recorded, stays pending

The original Indeterminate record is never modified.
"""
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, List, Optional

from .config import SettlementSettings
from .credit import CreditScoreRecorder
from .exceptions import ValidationError
from .ledger_client import LedgerClient
from .logging_utils import OperationType, SettlementLogger, get_settlement_logger
from .models import Redemption, RedemptionOutcome, TransactionRecord, new_id
from .repositories import SettlementRepository

logger = logging.getLogger(__name__)

# Ledger close times vs. our local clock
CLOCK_SKEW = timedelta(seconds=60)


def validity_expired(submitted_at: datetime, settings: SettlementSettings) -> bool:
    """True once a payment submitted at ``submitted_at`` can no longer apply."""
    window = timedelta(
        seconds=settings.tx_timeout_seconds + settings.payment_confirmation_timeout
    )
    return datetime.now(timezone.utc) > submitted_at + window + CLOCK_SKEW


async def find_transaction(
    client: LedgerClient,
    identity: str,
    tx_hash: Optional[str],
    memo: str,
    since: datetime,
    page_size: int = 50,
    max_pages: int = 10,
) -> Optional[TransactionRecord]:
    """
    Look a payment up by hash, then by memo in ``identity``'s history.

    The history scan runs newest first and stops at records older than
    ``since`` (less the clock skew allowance).
    """
    if tx_hash:
        record = await client.get_transaction(tx_hash)
        if record is not None:
            return record

    oldest_relevant = since - CLOCK_SKEW
    cursor = None
    for _ in range(max_pages):
        page = await client.get_transaction_history(
            identity, cursor=cursor, limit=page_size, order="desc"
        )
        for record in page.records:
            if record.memo == memo:
                logger.info(f"Found {record.tx_hash} by memo {memo}")
                return record
            if record.created_at is not None and record.created_at < oldest_relevant:
                return None
        if len(page.records) < page_size:
            return None
        cursor = page.next_cursor
    return None


class ReconciliationStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    PENDING = "pending"
    ALREADY_RESOLVED = "already_resolved"


@dataclass(frozen=True)
class ReconciliationResult:
    redemption_id: str
    status: ReconciliationStatus
    follow_up: Optional[Redemption] = None
    tx_hash: Optional[str] = None


class Reconciler:
    """Resolves Indeterminate redemptions."""

    def __init__(
        self,
        repository: SettlementRepository,
        client: LedgerClient,
        settings: SettlementSettings,
        credit: Optional[CreditScoreRecorder] = None,
        history_page_size: int = 50,
        max_history_pages: int = 10,
        slog: Optional[SettlementLogger] = None,
    ):
        self._repository = repository
        self._client = client
        self._settings = settings
        self._credit = credit
        self._page_size = history_page_size
        self._max_pages = max_history_pages
        self._slog = slog or get_settlement_logger()

    async def reconcile(self, redemption_id: str) -> ReconciliationResult:
        original = await self._repository.get_redemption(redemption_id)
        if original.outcome != RedemptionOutcome.INDETERMINATE:
            raise ValidationError(
                f"Redemption {redemption_id} is {original.outcome.value}, not indeterminate",
                field="redemption_id",
            )

        existing = await self._repository.find_resolution(redemption_id)
        if existing is not None:
            return ReconciliationResult(
                redemption_id, ReconciliationStatus.ALREADY_RESOLVED, existing, existing.tx_hash
            )

        async with self._slog.operation(
            OperationType.RECONCILIATION, original.driver_wallet, redemption_id=redemption_id
        ) as ctx:
            record = await find_transaction(
                self._client,
                original.driver_wallet,
                original.tx_hash,
                original.correlation_memo,
                original.timestamp,
                self._page_size,
                self._max_pages,
            )
            if record is not None and record.successful:
                result = await self._complete(original, record)
            elif record is not None:
                result = await self._fail(original, record.tx_hash, "transfer failed on the ledger")
            elif validity_expired(original.timestamp, self._settings):
                result = await self._fail(
                    original, original.tx_hash, "transfer never applied within its validity window"
                )
            else:
                logger.info(f"Redemption {redemption_id} still unresolved")
                result = ReconciliationResult(
                    redemption_id, ReconciliationStatus.PENDING, tx_hash=original.tx_hash
                )
            ctx.metadata["status"] = result.status.value
        return result

    async def reconcile_pending(self) -> List[ReconciliationResult]:
        """Reconcile every unresolved Indeterminate redemption."""
        results = []
        for redemption in await self._repository.list_redemptions():
            if redemption.outcome != RedemptionOutcome.INDETERMINATE:
                continue
            if await self._repository.find_resolution(redemption.redemption_id) is not None:
                continue
            results.append(await self.reconcile(redemption.redemption_id))
        return results

    async def _complete(self, original: Redemption, record: TransactionRecord) -> ReconciliationResult:
        await self._repository.update_station(
            original.station_id, lambda station: station.record_redemption(original.liters)
        )
        await self._clear_flag(original)
        follow_up = await self._append_follow_up(
            original, RedemptionOutcome.COMPLETED, record.tx_hash, "transfer confirmed"
        )
        if self._credit is not None:
            self._credit.schedule(follow_up)
        return ReconciliationResult(
            original.redemption_id, ReconciliationStatus.COMPLETED, follow_up, record.tx_hash
        )

    async def _fail(
        self,
        original: Redemption,
        tx_hash: Optional[str],
        detail: str,
    ) -> ReconciliationResult:
        await self._clear_flag(original, release=True)
        if original.fleet_id:
            await self._repository.update_fleet_budget(
                original.fleet_id, lambda budget: budget.refund(original.amount)
            )
        follow_up = await self._append_follow_up(original, RedemptionOutcome.FAILED, tx_hash, detail)
        return ReconciliationResult(
            original.redemption_id, ReconciliationStatus.FAILED, follow_up, tx_hash
        )

    async def _clear_flag(self, original: Redemption, release: bool = False) -> None:
        def clear(limits: Any) -> None:
            if release:
                limits.release_spend(original.amount)
            if limits.pending_reconciliation == original.redemption_id:
                limits.pending_reconciliation = None

        await self._repository.update_driver_limits(original.driver_id, clear)

    async def _append_follow_up(
        self,
        original: Redemption,
        outcome: RedemptionOutcome,
        tx_hash: Optional[str],
        detail: str,
    ) -> Redemption:
        follow_up = dataclasses.replace(
            original,
            redemption_id=new_id("rdm"),
            outcome=outcome,
            tx_hash=tx_hash,
            reason="RECONCILED",
            detail=detail,
            resolves=original.redemption_id,
            timestamp=datetime.now(timezone.utc),
        )
        await self._repository.append_redemption(follow_up)
        logger.info(
            f"Reconciled redemption {original.redemption_id} as {outcome.value} ({detail})"
        )
        return follow_up
