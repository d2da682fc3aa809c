"""
Retrying, timeout-bounded access to the ledger network.

Reads and simulations are retried on transient failures with exponential
backoff. Submissions are never retried: a submission that times out
raises LedgerTimeout carrying the transaction hash, and the caller must
query by hash before building a new transaction.
"""
from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

from .config import SettlementSettings
from .exceptions import (
    LedgerError,
    LedgerTimeout,
    SequenceConflict,
    exception_from_result_codes,
)
from .logging_utils import OperationType, SettlementLogger, get_settlement_logger, mask_identity
from .models import ZERO, Account, Asset, HistoryPage, TransactionRecord
from .network import (
    ContractStatus,
    LedgerNetwork,
    SimulationResult,
    SubmissionResult,
    SubmissionStatus,
)
from .transactions import SignedTransaction, TransactionDraft

logger = logging.getLogger(__name__)


class LedgerClient:
    """Transport policy over a LedgerNetwork adapter."""

    def __init__(
        self,
        network: LedgerNetwork,
        settings: SettlementSettings,
        slog: Optional[SettlementLogger] = None,
    ):
        self._network = network
        self._settings = settings
        self._slog = slog or get_settlement_logger()

    @property
    def network(self) -> LedgerNetwork:
        return self._network

    @property
    def settlement_asset(self) -> Asset:
        return Asset(self._settings.asset_code, self._settings.asset_issuer)

    def is_settlement_asset(self, asset: Asset) -> bool:
        return asset == self.settlement_asset

    async def _call(
        self,
        name: str,
        fn: Callable[..., Awaitable[Any]],
        *args: Any,
        retry: bool = True,
        submitted_hash: Optional[str] = None,
    ) -> Any:
        attempts = self._settings.max_retries + 1 if retry else 1
        last_error: Optional[LedgerError] = None

        for attempt in range(attempts):
            try:
                async with asyncio.timeout(self._settings.request_timeout_seconds):
                    return await fn(*args)
            except TimeoutError:
                last_error = LedgerTimeout(
                    f"{name} timed out after {self._settings.request_timeout_seconds}s",
                    tx_hash=submitted_hash,
                )
            except LedgerError as e:
                if not e.retryable or e.tx_hash:
                    raise
                last_error = e

            if not retry or submitted_hash:
                break
            if attempt < attempts - 1:
                delay = self._settings.retry_delay_seconds * (2 ** attempt)
                logger.warning(
                    f"{name} failed (attempt {attempt + 1}/{attempts}): {last_error}, "
                    f"retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)

        assert last_error is not None
        raise last_error

    async def load_account(self, identity: str) -> Account:
        return await self._call("load_account", self._network.load_account, identity)

    async def get_settlement_balance(self, identity: str) -> Decimal:
        """Balance of the settlement asset; zero without an authorization record."""
        account = await self.load_account(identity)
        balance = account.balance_of(self.settlement_asset)
        return balance.amount if balance is not None else ZERO

    async def submit_transaction(self, tx: SignedTransaction) -> SubmissionResult:
        self._slog.log_transaction_submitted(tx.tx_hash, tx.source, tx.draft.kind, tx.sequence)
        try:
            return await self._call(
                "submit_transaction",
                self._network.submit_transaction,
                tx,
                retry=False,
                submitted_hash=tx.tx_hash,
            )
        except SequenceConflict:
            # The same envelope may already have been applied by an earlier attempt
            existing = await self.get_transaction(tx.tx_hash)
            if existing is not None and existing.successful:
                logger.info(f"Transaction {tx.tx_hash} already applied, treating as duplicate")
                return SubmissionResult(tx.tx_hash, SubmissionStatus.DUPLICATE, existing.ledger)
            raise
        except LedgerError as e:
            self._slog.log_transaction_failed(tx.tx_hash, str(e))
            raise

    async def get_transaction(self, tx_hash: str) -> Optional[TransactionRecord]:
        return await self._call("get_transaction", self._network.get_transaction, tx_hash)

    async def get_transaction_history(
        self,
        identity: str,
        cursor: Optional[str] = None,
        limit: int = 20,
        order: str = "desc",
    ) -> HistoryPage:
        return await self._call(
            "get_transaction_history",
            self._network.get_transaction_history,
            identity,
            cursor,
            limit,
            order,
        )

    async def wait_for_transaction(
        self,
        tx_hash: str,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> TransactionRecord:
        """
        Poll transaction-by-hash until it is recorded.

        Raises:
            LedgerTimeout: not recorded before the deadline (``tx_hash`` set)
            NetworkRejected: recorded as failed
        """
        timeout = timeout if timeout is not None else self._settings.payment_confirmation_timeout
        interval = (
            poll_interval if poll_interval is not None else self._settings.payment_poll_interval
        )

        try:
            async with self._slog.operation(OperationType.TRANSACTION_CONFIRM, tx_hash):
                async with asyncio.timeout(timeout):
                    while True:
                        try:
                            record = await self.get_transaction(tx_hash)
                        except LedgerError as e:
                            if not e.retryable:
                                raise
                            logger.warning(f"Confirmation poll for {tx_hash} failed: {e}")
                            record = None

                        if record is not None:
                            break
                        await asyncio.sleep(interval)
        except TimeoutError:
            self._slog.log_transaction_failed(tx_hash, "confirmation timed out")
            raise LedgerTimeout(
                f"Transaction {tx_hash} not confirmed within {timeout}s",
                tx_hash=tx_hash,
            )

        if not record.successful:
            codes = record.result_codes
            error = exception_from_result_codes(
                codes.get("transaction") or "tx_failed",
                codes.get("operations"),
                tx_hash=tx_hash,
            )
            self._slog.log_transaction_failed(tx_hash, str(error))
            raise error

        self._slog.log_transaction_confirmed(tx_hash, record.ledger)
        return record

    async def simulate_contract(self, draft: TransactionDraft) -> SimulationResult:
        return await self._call("simulate_contract", self._network.simulate_contract, draft)

    async def send_contract(self, tx: SignedTransaction) -> SubmissionResult:
        self._slog.log_transaction_submitted(tx.tx_hash, tx.source, tx.draft.kind, tx.sequence)
        return await self._call(
            "send_contract",
            self._network.send_contract,
            tx,
            retry=False,
            submitted_hash=tx.tx_hash,
        )

    async def get_contract_status(self, tx_hash: str) -> ContractStatus:
        return await self._call("get_contract_status", self._network.get_contract_status, tx_hash)

    async def fund_test_account(self, identity: str) -> None:
        logger.info(f"Requesting test funding for {mask_identity(identity)}")
        await self._call(
            "fund_test_account", self._network.fund_test_account, identity, retry=False
        )

    async def close(self) -> None:
        await self._network.close()
