"""
Fleet funding and external payment crediting.

Purchases and external payments mint the settlement asset from the
distributor wallet, at most once per external reference. The reference
is stored as pending before its mint is signed. When a reference comes
back while its mint is still pending, the ledger is asked first (by
hash, then by reference memo in the recipient's history) and the mint
is repeated only once the earlier attempt failed or can no longer apply.

Distribution transfers that were sent but never confirmed keep their
budget debit reserved until reconcile_distributions settles them.
"""
from __future__ import annotations

import dataclasses
import hashlib
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from .config import SettlementSettings
from .exceptions import (
    DuplicateReferenceError,
    LedgerError,
    LedgerTimeout,
    NetworkRejected,
    NotFoundError,
    SettlementError,
    ValidationError,
)
from .ledger_client import LedgerClient
from .logging_utils import OperationType, SettlementLogger, get_settlement_logger, mask_identity
from .models import (
    DistributionResult,
    FleetPurchase,
    TransferReceipt,
    new_id,
    require_positive,
)
from .reconciliation import find_transaction, validity_expired
from .repositories import (
    ExternalPaymentRecord,
    ExternalPaymentStatus,
    PendingDistribution,
    SettlementRepository,
)
from .sequencing import KeyedLocks
from .transfer import TransferEngine

logger = logging.getLogger(__name__)


def reference_memo(reference: str) -> str:
    """Fixed-size text memo derived from an external reference."""
    return f"ref:{hashlib.sha256(reference.encode('utf-8')).hexdigest()[:24]}"


def distribution_memo(distribution_id: str) -> str:
    # "dst:" + 24 hex chars fits the 28-byte text memo
    return f"dst:{distribution_id.split('_', 1)[-1][:24]}"


class ReferenceMinter:
    """Mints the settlement asset at most once per external reference."""

    def __init__(
        self,
        repository: SettlementRepository,
        transfers: TransferEngine,
        client: LedgerClient,
        settings: SettlementSettings,
        history_page_size: int = 50,
        max_history_pages: int = 10,
    ):
        self._repository = repository
        self._transfers = transfers
        self._client = client
        self._settings = settings
        self._page_size = history_page_size
        self._max_pages = max_history_pages

    async def existing(
        self, reference: str, payer: str, amount: Decimal
    ) -> Optional[ExternalPaymentRecord]:
        """The stored record for a reused reference; parameters must match."""
        record = await self._repository.get_external_payment(reference)
        if record is not None and (record.payer != payer or record.amount != amount):
            raise DuplicateReferenceError(
                f"Reference {reference} was already used for a different payment",
                details={"reference": reference},
            )
        return record

    async def mint_once(
        self,
        reference: str,
        payer: str,
        wallet_identity: str,
        amount: Decimal,
    ) -> Tuple[TransferReceipt, bool]:
        """
        Mint ``amount`` for ``reference`` unless an earlier mint applied.

        Returns the receipt and whether this call completed the payment
        (False when it had already been completed). The caller holds the
        reference lock.

        Raises:
            DuplicateReferenceError: reference reused with different parameters
            LedgerTimeout: an earlier mint is unconfirmed and may still apply
        """
        record = await self.existing(reference, payer, amount)
        if record is not None:
            if record.status == ExternalPaymentStatus.COMPLETED:
                logger.info(f"Reference {reference} already processed, returning original receipt")
                return record.receipt, False
            if record.status == ExternalPaymentStatus.PENDING:
                receipt = await self._recover(record)
                if receipt is not None:
                    return receipt, True

        attempt = ExternalPaymentRecord(
            reference=reference, payer=payer, wallet_identity=wallet_identity, amount=amount
        )
        if record is None:
            await self._repository.save_external_payment(attempt)
        else:
            await self._repository.update_external_payment(attempt)

        async def remember(tx_hash: str) -> None:
            nonlocal attempt
            attempt = dataclasses.replace(attempt, tx_hash=tx_hash)
            await self._repository.update_external_payment(attempt)

        try:
            receipt = await self._transfers.mint(
                wallet_identity, amount, memo=reference_memo(reference), on_submitted=remember
            )
        except SettlementError as e:
            if isinstance(e, NetworkRejected) or attempt.tx_hash is None:
                await self._repository.update_external_payment(
                    dataclasses.replace(attempt, status=ExternalPaymentStatus.FAILED)
                )
            else:
                logger.warning(
                    f"Mint for reference {reference} unconfirmed (tx {attempt.tx_hash}), "
                    f"kept pending: {e}"
                )
            raise
        return await self._complete(attempt, receipt), True

    async def _recover(self, record: ExternalPaymentRecord) -> Optional[TransferReceipt]:
        """Receipt of an earlier mint that applied; None when it is safe to mint again."""
        found = await find_transaction(
            self._client,
            record.wallet_identity,
            record.tx_hash,
            reference_memo(record.reference),
            record.submitted_at,
            self._page_size,
            self._max_pages,
        )
        if found is not None and found.successful:
            logger.info(f"Earlier mint for reference {record.reference} applied in {found.tx_hash}")
            receipt = TransferReceipt(
                tx_hash=found.tx_hash,
                ledger=found.ledger,
                source=found.source_account,
                destination=record.wallet_identity,
                amount=record.amount,
                memo=found.memo,
            )
            return await self._complete(record, receipt)
        if found is None and not validity_expired(record.submitted_at, self._settings):
            raise LedgerTimeout(
                f"Mint for reference {record.reference} is unconfirmed and may still apply",
                tx_hash=record.tx_hash,
            )
        logger.info(f"Earlier mint for reference {record.reference} never applied, minting again")
        return None

    async def _complete(
        self, record: ExternalPaymentRecord, receipt: TransferReceipt
    ) -> TransferReceipt:
        await self._repository.update_external_payment(
            dataclasses.replace(
                record,
                status=ExternalPaymentStatus.COMPLETED,
                tx_hash=receipt.tx_hash,
                receipt=receipt,
                processed_at=datetime.now(timezone.utc),
            )
        )
        return receipt


class FleetFunding:
    """Fleet purchases (mint to the fleet wallet) and driver distributions."""

    def __init__(
        self,
        repository: SettlementRepository,
        transfers: TransferEngine,
        client: LedgerClient,
        settings: SettlementSettings,
        locks: Optional[KeyedLocks] = None,
        slog: Optional[SettlementLogger] = None,
    ):
        self._repository = repository
        self._transfers = transfers
        self._client = client
        self._settings = settings
        self._minter = ReferenceMinter(repository, transfers, client, settings)
        self._locks = locks or KeyedLocks()
        self._slog = slog or get_settlement_logger()

    async def purchase(self, fleet_id: str, amount: Decimal, reference: str) -> FleetPurchase:
        """
        Mint ``amount`` to the fleet wallet and credit its budget.

        The budget is credited once, by the call that completes the mint.
        """
        amount = require_positive(amount)
        if not reference:
            raise ValidationError("reference is required", field="reference")
        payer = f"fleet:{fleet_id}"

        async with self._locks.hold(("reference", reference)):
            budget = await self._repository.load_fleet_budget(fleet_id)
            async with self._slog.operation(
                OperationType.FUNDING, budget.wallet_identity, fleet_id=fleet_id, amount=amount
            ) as ctx:
                receipt, completed = await self._minter.mint_once(
                    reference, payer, budget.wallet_identity, amount
                )
                ctx.metadata["tx_hash"] = receipt.tx_hash
                if completed:
                    async with self._locks.hold(("fleet", fleet_id)):
                        budget = await self._repository.update_fleet_budget(
                            fleet_id, lambda b: b.fund(amount)
                        )
                    logger.info(
                        f"Fleet {fleet_id} purchased {amount}; remaining budget {budget.remaining}"
                    )

        return FleetPurchase(fleet_id, amount, reference, receipt.tx_hash, budget.remaining)

    async def distribute(
        self,
        fleet_id: str,
        allocations: Sequence[Tuple[str, Decimal]],
    ) -> List[DistributionResult]:
        """
        Transfer from the fleet wallet to each driver.

        Items are processed in order; each is checked against the budget
        remaining at that point and debited only if its transfer succeeds.
        A transfer that was sent but not confirmed is reported as
        indeterminate with its debit reserved; reconcile_distributions
        settles it later.
        """
        if not allocations:
            raise ValidationError("allocations must not be empty", field="allocations")
        budget = await self._repository.load_fleet_budget(fleet_id)

        results: List[DistributionResult] = []
        for driver_id, raw_amount in allocations:
            amount = require_positive(raw_amount)
            async with self._locks.hold(("fleet", fleet_id)):
                budget = await self._repository.load_fleet_budget(fleet_id)
                if amount > budget.remaining:
                    results.append(
                        DistributionResult(
                            driver_id, amount, False, error="exceeds remaining fleet budget"
                        )
                    )
                    continue
                results.append(
                    await self._distribute_one(fleet_id, budget.wallet_identity, driver_id, amount)
                )

        succeeded = sum(1 for r in results if r.success)
        pending = sum(1 for r in results if r.indeterminate)
        logger.info(
            f"Fleet {fleet_id} distributed to {succeeded}/{len(results)} drivers"
            + (f", {pending} unconfirmed" if pending else "")
        )
        return results

    async def _distribute_one(
        self, fleet_id: str, fleet_wallet: str, driver_id: str, amount: Decimal
    ) -> DistributionResult:
        """One allocation; caller holds the fleet lock."""
        distribution_id = new_id("dst")
        memo = distribution_memo(distribution_id)
        submitted: List[str] = []
        try:
            limits = await self._repository.load_driver_limits(driver_id)
            if limits.fleet_id not in (None, fleet_id):
                raise ValidationError(
                    f"Driver {driver_id} belongs to another fleet", field="driver_id"
                )
            receipt = await self._transfers.transfer(
                fleet_wallet,
                limits.wallet_identity,
                amount,
                memo=memo,
                on_submitted=submitted.append,
            )
        except NetworkRejected as e:
            logger.warning(f"Distribution to {driver_id} rejected: {e.error_code} {e}")
            return DistributionResult(driver_id, amount, False, tx_hash=e.tx_hash, error=e.error_code)
        except LedgerError as e:
            if not submitted:
                logger.warning(f"Distribution to {driver_id} failed: {e.error_code} {e}")
                return DistributionResult(driver_id, amount, False, error=e.error_code)
            tx_hash = e.tx_hash or submitted[-1]
            await self._repository.update_fleet_budget(fleet_id, lambda b: b.debit(amount))
            await self._repository.save_pending_distribution(
                PendingDistribution(
                    distribution_id=distribution_id,
                    fleet_id=fleet_id,
                    driver_id=driver_id,
                    driver_wallet=limits.wallet_identity,
                    amount=amount,
                    tx_hash=tx_hash,
                    memo=memo,
                )
            )
            logger.warning(
                f"Distribution {distribution_id} to {driver_id} unconfirmed (tx {tx_hash}); "
                f"{amount} reserved pending reconciliation"
            )
            return DistributionResult(
                driver_id,
                amount,
                False,
                tx_hash=tx_hash,
                error=e.error_code,
                indeterminate=True,
                distribution_id=distribution_id,
            )
        except SettlementError as e:
            logger.warning(f"Distribution to {driver_id} failed: {e.error_code} {e}")
            return DistributionResult(driver_id, amount, False, error=e.error_code)

        await self._repository.update_fleet_budget(fleet_id, lambda b: b.debit(amount))
        return DistributionResult(
            driver_id, amount, True, tx_hash=receipt.tx_hash, distribution_id=distribution_id
        )

    async def reconcile_distributions(self, fleet_id: str) -> List[DistributionResult]:
        """
        Settle unconfirmed distributions of ``fleet_id`` against ledger history.

        An applied transfer keeps its debit. A failed transfer, or one
        absent past its validity window, has its debit refunded. Anything
        else stays pending and is reported as indeterminate again.
        """
        results: List[DistributionResult] = []
        for pending in await self._repository.list_pending_distributions(fleet_id):
            async with self._locks.hold(("fleet", fleet_id)):
                results.append(await self._reconcile_one(pending))
        return results

    async def _reconcile_one(self, pending: PendingDistribution) -> DistributionResult:
        found = await find_transaction(
            self._client,
            pending.driver_wallet,
            pending.tx_hash,
            pending.memo,
            pending.submitted_at,
        )
        if found is not None and found.successful:
            await self._repository.delete_pending_distribution(pending.distribution_id)
            logger.info(f"Distribution {pending.distribution_id} confirmed in {found.tx_hash}")
            return DistributionResult(
                pending.driver_id,
                pending.amount,
                True,
                tx_hash=found.tx_hash,
                distribution_id=pending.distribution_id,
            )

        if found is not None or validity_expired(pending.submitted_at, self._settings):
            await self._repository.update_fleet_budget(
                pending.fleet_id, lambda b: b.refund(pending.amount)
            )
            await self._repository.delete_pending_distribution(pending.distribution_id)
            error = "TRANSFER_FAILED" if found is not None else "TRANSFER_EXPIRED"
            logger.info(
                f"Distribution {pending.distribution_id} never applied ({error}); "
                f"refunded {pending.amount} to fleet {pending.fleet_id}"
            )
            return DistributionResult(
                pending.driver_id,
                pending.amount,
                False,
                tx_hash=pending.tx_hash,
                error=error,
                distribution_id=pending.distribution_id,
            )

        logger.info(f"Distribution {pending.distribution_id} still unresolved")
        return DistributionResult(
            pending.driver_id,
            pending.amount,
            False,
            tx_hash=pending.tx_hash,
            indeterminate=True,
            distribution_id=pending.distribution_id,
        )


class ExternalPaymentProcessor:
    """Credits wallets for payments received through an external gateway."""

    def __init__(
        self,
        repository: SettlementRepository,
        transfers: TransferEngine,
        client: LedgerClient,
        settings: SettlementSettings,
        locks: Optional[KeyedLocks] = None,
        slog: Optional[SettlementLogger] = None,
    ):
        self._repository = repository
        self._minter = ReferenceMinter(repository, transfers, client, settings)
        self._locks = locks or KeyedLocks()
        self._slog = slog or get_settlement_logger()

    async def _resolve_wallet(self, payer_identity: str) -> str:
        wallet = await self._repository.get_wallet(payer_identity)
        if wallet is None:
            wallet = await self._repository.find_wallet_by_phone(payer_identity)
        if wallet is None:
            raise NotFoundError("wallet", payer_identity)
        return wallet.public_identity

    async def credit_from_external_payment(
        self,
        payer_identity: str,
        amount: Decimal,
        reference: str,
    ) -> TransferReceipt:
        """
        Mint ``amount`` to the payer's wallet.

        ``payer_identity`` is a wallet identity or a registered phone number.

        Raises:
            NotFoundError: no wallet for the payer
            DuplicateReferenceError: reference reused with different parameters
            LedgerTimeout: an earlier mint for the reference may still apply
        """
        amount = require_positive(amount)
        if not reference:
            raise ValidationError("reference is required", field="reference")

        async with self._locks.hold(("reference", reference)):
            existing = await self._minter.existing(reference, payer_identity, amount)
            if existing is not None:
                wallet_identity = existing.wallet_identity
            else:
                wallet_identity = await self._resolve_wallet(payer_identity)
            async with self._slog.operation(
                OperationType.FUNDING, wallet_identity, reference=reference, amount=amount
            ) as ctx:
                receipt, completed = await self._minter.mint_once(
                    reference, payer_identity, wallet_identity, amount
                )
                ctx.metadata["tx_hash"] = receipt.tx_hash

        if completed:
            logger.info(
                f"Credited {amount} to {mask_identity(wallet_identity)} "
                f"for external payment {reference}"
            )
        return receipt
