"""
Tests for the retrying ledger client and the simulated ledger.

Tests cover:
- Retries with backoff for transient read failures
- Submissions are never retried
- Confirmation polling and its deadline
- Duplicate detection after a sequence conflict
- Simulated ledger admission checks
"""
from __future__ import annotations

import asyncio
import sys
from decimal import Decimal
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest
from stellar_sdk import Keypair

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from conftest import make_settings

from fuelanchor_settlement.exceptions import (
    AccountNotFound,
    InsufficientBalance,
    LedgerConnectionError,
    LedgerTimeout,
    NetworkRejected,
    SequenceConflict,
    UnauthorizedAsset,
)
from fuelanchor_settlement.keys import KeyManager
from fuelanchor_settlement.ledger_client import LedgerClient
from fuelanchor_settlement.models import Asset, OwnerType
from fuelanchor_settlement.network import SubmissionStatus
from fuelanchor_settlement.simulated import SimulatedLedgerNetwork
from fuelanchor_settlement.transactions import (
    ChangeTrustOp,
    PaymentOp,
    SignedTransaction,
    TransactionDraft,
    encode_draft,
)


class Ledger:
    """Simulated ledger with an issuer and signing keys."""

    def __init__(self, **overrides: Any):
        self.settings = make_settings(**overrides)
        self.network = SimulatedLedgerNetwork(self.settings.network_passphrase)
        self.keys = KeyManager(self.settings)
        self.issuer = self.account()
        self.settings = self.settings.model_copy(update={"asset_issuer": self.issuer})
        self.client = LedgerClient(self.network, self.settings)

    @property
    def asset(self) -> Asset:
        return Asset(self.settings.asset_code, self.issuer)

    def account(self) -> str:
        identity = self.keys.create_wallet(OwnerType.DRIVER, "x").public_identity
        self.network.create_account(identity)
        return identity

    async def sequence(self, identity: str) -> int:
        return (await self.client.load_account(identity)).sequence

    async def sign(self, source: str, *operations: Any, memo=None):
        draft = TransactionDraft(
            source=source,
            sequence=await self.sequence(source),
            operations=operations,
            memo=memo,
        )
        return self.keys.sign(draft)

    async def trust(self, identity: str) -> None:
        signed = await self.sign(identity, ChangeTrustOp(self.asset, Decimal("1000000")))
        await self.client.submit_transaction(signed)

    async def pay(self, source: str, destination: str, amount: str):
        signed = await self.sign(source, PaymentOp(destination, self.asset, Decimal(amount)))
        return signed, await self.client.submit_transaction(signed)


class TestRetries:
    """Tests for LedgerClient retry policy."""

    @pytest.mark.asyncio
    async def test_read_retried_on_transient_failure(self):
        """Should retry a read after a connection error."""
        ledger = Ledger()
        ledger.network.inject_failure("load_account", LedgerConnectionError("blip"), times=2)
        account = await ledger.client.load_account(ledger.issuer)
        assert account.account_id == ledger.issuer

    @pytest.mark.asyncio
    async def test_read_gives_up_after_max_retries(self):
        """Should raise the last error once retries are exhausted."""
        ledger = Ledger(max_retries=1)
        ledger.network.inject_failure("load_account", LedgerConnectionError("down"), times=2)
        with pytest.raises(LedgerConnectionError):
            await ledger.client.load_account(ledger.issuer)

    @pytest.mark.asyncio
    async def test_terminal_errors_not_retried(self):
        """Should not retry an account that does not exist."""
        ledger = Ledger()
        with pytest.raises(AccountNotFound):
            await ledger.client.load_account(Keypair.random().public_key)

    @pytest.mark.asyncio
    async def test_submission_never_retried(self):
        """Should surface a submission failure without resubmitting."""
        ledger = Ledger()
        network = AsyncMock(spec=SimulatedLedgerNetwork)
        network.submit_transaction.side_effect = LedgerConnectionError("reset")
        client = LedgerClient(network, ledger.settings)
        signed = await ledger.sign(ledger.issuer, ChangeTrustOp(ledger.asset, Decimal("1")))
        with pytest.raises(LedgerConnectionError):
            await client.submit_transaction(signed)
        assert network.submit_transaction.await_count == 1

    @pytest.mark.asyncio
    async def test_slow_call_times_out(self):
        """Should bound each call with the request timeout."""
        ledger = Ledger(request_timeout_seconds=0.01, max_retries=0)

        async def slow(*args):
            await asyncio.sleep(1)

        network = AsyncMock(spec=SimulatedLedgerNetwork)
        network.load_account.side_effect = slow
        client = LedgerClient(network, ledger.settings)
        with pytest.raises(LedgerTimeout) as exc_info:
            await client.load_account(ledger.issuer)
        assert exc_info.value.tx_hash is None


class TestSubmission:
    """Tests for submission and confirmation."""

    @pytest.mark.asyncio
    async def test_payment_confirmed(self):
        """Should confirm a mint from the issuer."""
        ledger = Ledger()
        driver = ledger.account()
        await ledger.trust(driver)
        _, result = await ledger.pay(ledger.issuer, driver, "25")
        assert result.status == SubmissionStatus.CONFIRMED
        assert await ledger.client.get_settlement_balance(driver) == Decimal("25")

    @pytest.mark.asyncio
    async def test_balance_without_authorization_is_zero(self):
        """Should report zero for accounts without an authorization record."""
        ledger = Ledger()
        assert await ledger.client.get_settlement_balance(ledger.account()) == Decimal("0")

    @pytest.mark.asyncio
    async def test_payment_to_unauthorized_account(self):
        """Should map op_no_trust to UnauthorizedAsset."""
        ledger = Ledger()
        with pytest.raises(UnauthorizedAsset) as exc_info:
            await ledger.pay(ledger.issuer, ledger.account(), "1")
        assert exc_info.value.tx_hash is not None

    @pytest.mark.asyncio
    async def test_underfunded_payment_applies_nothing(self):
        """Should map op_underfunded and leave balances unchanged."""
        ledger = Ledger()
        a, b = ledger.account(), ledger.account()
        await ledger.trust(a)
        await ledger.trust(b)
        await ledger.pay(ledger.issuer, a, "5")
        with pytest.raises(InsufficientBalance):
            await ledger.pay(a, b, "6")
        assert await ledger.client.get_settlement_balance(a) == Decimal("5")
        assert await ledger.client.get_settlement_balance(b) == Decimal("0")

    @pytest.mark.asyncio
    async def test_stale_sequence_conflicts(self):
        """Should raise SequenceConflict for a reused sequence number."""
        ledger = Ledger()
        driver = ledger.account()
        stale = await ledger.sign(driver, ChangeTrustOp(ledger.asset, Decimal("10")))
        await ledger.trust(driver)
        with pytest.raises(SequenceConflict):
            await ledger.client.submit_transaction(stale)

    @pytest.mark.asyncio
    async def test_resubmission_is_duplicate(self):
        """Should treat a resubmitted, already applied envelope as a duplicate."""
        ledger = Ledger()
        driver = ledger.account()
        signed = await ledger.sign(driver, ChangeTrustOp(ledger.asset, Decimal("10")))
        await ledger.client.submit_transaction(signed)
        result = await ledger.client.submit_transaction(signed)
        assert result.status == SubmissionStatus.DUPLICATE

    @pytest.mark.asyncio
    async def test_unsigned_by_source_rejected(self):
        """Should reject an envelope not signed by the source account."""
        ledger = Ledger()
        driver = ledger.account()
        draft = TransactionDraft(
            source=driver,
            sequence=await ledger.sequence(driver),
            operations=(ChangeTrustOp(ledger.asset, Decimal("10")),),
        )
        envelope = encode_draft(draft, ledger.settings.network_passphrase)
        envelope.sign(Keypair.random())
        forged = SignedTransaction(draft, envelope.to_xdr(), envelope.hash_hex())
        with pytest.raises(NetworkRejected) as exc_info:
            await ledger.client.submit_transaction(forged)
        assert exc_info.value.result_codes["transaction"] == "tx_bad_auth"


class TestWaitForTransaction:
    """Tests for confirmation polling."""

    @pytest.mark.asyncio
    async def test_waits_through_latency(self):
        """Should poll until the transaction becomes visible."""
        ledger = Ledger()
        ledger.network.confirmation_delay = 3
        driver = ledger.account()
        signed = await ledger.sign(driver, ChangeTrustOp(ledger.asset, Decimal("10")))
        result = await ledger.client.submit_transaction(signed)
        assert result.status == SubmissionStatus.PENDING
        record = await ledger.client.wait_for_transaction(signed.tx_hash)
        assert record.successful

    @pytest.mark.asyncio
    async def test_deadline_raises_timeout_with_hash(self):
        """Should raise LedgerTimeout carrying the hash on deadline."""
        ledger = Ledger()
        ledger.network.withhold_confirmations = True
        with pytest.raises(LedgerTimeout) as exc_info:
            await ledger.client.wait_for_transaction("ab" * 32, timeout=0.05, poll_interval=0.01)
        assert exc_info.value.tx_hash == "ab" * 32
        assert exc_info.value.submitted

    @pytest.mark.asyncio
    async def test_transient_poll_errors_tolerated(self):
        """Should keep polling after a transient lookup error."""
        ledger = Ledger(max_retries=0)
        driver = ledger.account()
        signed = await ledger.sign(driver, ChangeTrustOp(ledger.asset, Decimal("10")))
        await ledger.client.submit_transaction(signed)
        ledger.network.inject_failure("get_transaction", LedgerConnectionError("blip"))
        record = await ledger.client.wait_for_transaction(signed.tx_hash)
        assert record.tx_hash == signed.tx_hash


class TestHistory:
    """Tests for transaction history paging on the simulated ledger."""

    @pytest.mark.asyncio
    async def test_descending_pages(self):
        """Should page newest first with a cursor."""
        ledger = Ledger()
        driver = ledger.account()
        await ledger.trust(driver)
        for i in range(5):
            await ledger.pay(ledger.issuer, driver, str(i + 1))

        first = await ledger.client.get_transaction_history(driver, limit=2)
        second = await ledger.client.get_transaction_history(
            driver, cursor=first.next_cursor, limit=2
        )
        tokens = [int(r.paging_token) for r in first.records + second.records]
        assert tokens == sorted(tokens, reverse=True)
        assert len(set(tokens)) == 4

    @pytest.mark.asyncio
    async def test_memo_recorded(self):
        """Should expose the text memo of recorded transactions."""
        ledger = Ledger()
        driver = ledger.account()
        await ledger.trust(driver)
        signed = await ledger.sign(
            ledger.issuer,
            PaymentOp(driver, ledger.asset, Decimal("1")),
            memo="rdm:0123456789abcdef01234567",
        )
        await ledger.client.submit_transaction(signed)
        page = await ledger.client.get_transaction_history(driver, limit=1)
        assert page.records[0].memo == "rdm:0123456789abcdef01234567"
