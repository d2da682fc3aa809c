"""Authorization records (trustlines) for the settlement asset."""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from .config import SettlementSettings
from .exceptions import LedgerTimeout
from .keys import KeyManager
from .ledger_client import LedgerClient
from .logging_utils import OperationType, SettlementLogger, get_settlement_logger, mask_identity
from .models import AuthorizationReceipt, require_positive
from .network import SubmissionStatus
from .sequencing import SequenceManager
from .transactions import ChangeTrustOp, TransactionDraft

logger = logging.getLogger(__name__)


class AssetAuthorizer:
    """Establishes an account's authorization to hold the settlement asset."""

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

    async def is_authorized(self, identity: str) -> bool:
        account = await self._client.load_account(identity)
        return account.balance_of(self._client.settlement_asset) is not None

    async def authorize(
        self,
        identity: str,
        max_holding: Optional[Decimal] = None,
    ) -> AuthorizationReceipt:
        """
        Create or raise the account's trustline for the settlement asset.

        Idempotent: an existing record with a limit at or above the
        ceiling returns ``already_authorized=True`` without submitting.

        Raises:
            NetworkRejected: the network refused the change-trust operation
            SequenceConflict: still conflicting after one refresh and retry
            LedgerTimeout: submitted but unconfirmed
        """
        ceiling = (
            require_positive(max_holding, "max_holding")
            if max_holding is not None
            else self._settings.holding_ceiling
        )
        asset = self._client.settlement_asset

        async with self._slog.operation(OperationType.AUTHORIZATION, identity) as ctx:
            async with self._sequences.account(identity) as lease:
                account = await self._client.load_account(identity)
                existing = account.balance_of(asset)
                if existing is not None and existing.limit is not None and existing.limit >= ceiling:
                    logger.debug(f"{mask_identity(identity)} already authorized for {asset.code}")
                    ctx.metadata["already_authorized"] = True
                    return AuthorizationReceipt(
                        account_id=identity,
                        asset=asset,
                        limit=existing.limit,
                        already_authorized=True,
                    )

                draft = TransactionDraft(
                    source=identity,
                    sequence=lease.sequence,
                    operations=(ChangeTrustOp(asset=asset, limit=ceiling),),
                    base_fee=self._settings.base_fee,
                    timeout_seconds=self._settings.tx_timeout_seconds,
                )
                signed, submission = await self._sequences.submit(
                    lease,
                    lambda sequence: self._keys.sign(draft.with_sequence(sequence), identity),
                    self._client.submit_transaction,
                )
                ctx.metadata["tx_hash"] = signed.tx_hash
                if submission.status == SubmissionStatus.PENDING:
                    try:
                        await self._client.wait_for_transaction(signed.tx_hash)
                    except LedgerTimeout:
                        lease.discard()
                        raise
                else:
                    self._slog.log_transaction_confirmed(signed.tx_hash, submission.ledger)

        logger.info(f"Authorized {mask_identity(identity)} to hold {asset.code} up to {ceiling}")
        return AuthorizationReceipt(
            account_id=identity,
            asset=asset,
            limit=ceiling,
            tx_hash=signed.tx_hash,
        )
