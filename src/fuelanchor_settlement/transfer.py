"""
Settlement-asset payments.

A transfer is one payment operation, optionally with a text memo. It is
submitted and then confirmed by polling the transaction by hash, all
while holding the source account's sequence lock.
"""
from __future__ import annotations

import inspect
import logging
from decimal import Decimal
from typing import Any, Callable, Optional

from .config import SettlementSettings
from .exceptions import ConfigurationError, LedgerTimeout, ValidationError
from .keys import KeyManager
from .ledger_client import LedgerClient
from .logging_utils import OperationType, SettlementLogger, get_settlement_logger, mask_identity
from .models import TransferReceipt, require_positive
from .network import SubmissionStatus
from .sequencing import SequenceManager
from .transactions import PaymentOp, SignedTransaction, TransactionDraft

logger = logging.getLogger(__name__)

# Called with each signed hash before it is sent; may be a coroutine function
SubmittedCallback = Callable[[str], Any]


class TransferEngine:
    """Moves the settlement asset between wallets."""

    def __init__(
        self,
        client: LedgerClient,
        keys: KeyManager,
        sequences: SequenceManager,
        settings: SettlementSettings,
        slog: Optional[SettlementLogger] = None,
    ):
        self._client = client
        self._keys = keys
        self._sequences = sequences
        self._settings = settings
        self._slog = slog or get_settlement_logger()

    def validate_memo(self, memo: Optional[str]) -> Optional[str]:
        if memo is None or memo == "":
            return None
        if len(memo.encode("utf-8")) > self._settings.memo_max_bytes:
            raise ValidationError(
                f"memo exceeds {self._settings.memo_max_bytes} bytes", field="memo"
            )
        return memo

    async def transfer(
        self,
        from_identity: str,
        to_identity: str,
        amount: Decimal,
        memo: Optional[str] = None,
        on_submitted: Optional[SubmittedCallback] = None,
    ) -> TransferReceipt:
        """
        Pay ``amount`` of the settlement asset and wait for confirmation.

        Raises:
            ValidationError: bad amount, memo, or source equals destination
            InsufficientBalance, UnauthorizedAsset, NetworkRejected
            SequenceConflict: still conflicting after one refresh and retry
            LedgerTimeout: submitted, outcome unknown (``tx_hash`` set)
        """
        return await self._pay(
            OperationType.TRANSFER, from_identity, to_identity, amount, memo, on_submitted
        )

    async def mint(
        self,
        to_identity: str,
        amount: Decimal,
        memo: Optional[str] = None,
        on_submitted: Optional[SubmittedCallback] = None,
    ) -> TransferReceipt:
        """Issue the settlement asset from the distributor wallet."""
        distributor = self._settings.distributor_identity
        if not distributor:
            raise ConfigurationError("No distributor identity configured for minting")
        return await self._pay(
            OperationType.MINT, distributor, to_identity, amount, memo, on_submitted
        )

    async def _pay(
        self,
        operation_type: OperationType,
        source: str,
        destination: str,
        amount: Decimal,
        memo: Optional[str],
        on_submitted: Optional[SubmittedCallback],
    ) -> TransferReceipt:
        amount = require_positive(amount)
        memo = self.validate_memo(memo)
        if source == destination:
            raise ValidationError("Source and destination must differ", field="to_identity")

        async with self._slog.operation(
            operation_type, source, destination=destination, amount=amount
        ) as ctx:

            async def announce(signed: SignedTransaction) -> None:
                ctx.metadata["tx_hash"] = signed.tx_hash
                if on_submitted is not None:
                    result = on_submitted(signed.tx_hash)
                    if inspect.isawaitable(result):
                        await result

            def sign(sequence: int) -> SignedTransaction:
                draft = TransactionDraft(
                    source=source,
                    sequence=sequence,
                    operations=(
                        PaymentOp(
                            destination=destination,
                            asset=self._client.settlement_asset,
                            amount=amount,
                        ),
                    ),
                    base_fee=self._settings.base_fee,
                    timeout_seconds=self._settings.tx_timeout_seconds,
                    memo=memo,
                )
                return self._keys.sign(draft, source)

            # The account stays locked until the payment is confirmed
            async with self._sequences.account(source) as lease:
                signed, submission = await self._sequences.submit(
                    lease, sign, self._client.submit_transaction, before_send=announce
                )
                if submission.status == SubmissionStatus.PENDING:
                    try:
                        record = await self._client.wait_for_transaction(signed.tx_hash)
                    except LedgerTimeout:
                        lease.discard()
                        raise
                    ledger = record.ledger
                else:
                    ledger = submission.ledger
                    self._slog.log_transaction_confirmed(signed.tx_hash, ledger)

        logger.info(
            f"{operation_type.value} of {amount} {self._settings.asset_code} "
            f"{mask_identity(source)} -> {mask_identity(destination)} confirmed in ledger {ledger}"
        )
        return TransferReceipt(
            tx_hash=signed.tx_hash,
            ledger=ledger,
            source=source,
            destination=destination,
            amount=amount,
            memo=memo,
        )
