"""
In-memory ledger network for dev mode and tests.

Models the parts of the ledger the settlement core depends on:

- account sequence numbers (a transaction must use sequence + 1)
- signature verification against the source account
- trustlines with limits, balances and issuer minting/burning
- atomic operation application (a failed transaction applies nothing
  but still consumes its sequence number)
- contract calls through registered Python handlers
- confirmation latency and fault injection
"""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from stellar_sdk import Keypair, SorobanDataBuilder
from stellar_sdk.exceptions import BadSignatureError

from .exceptions import (
    AccountNotFound,
    LedgerError,
    LedgerTimeout,
    NetworkRejected,
    exception_from_result_codes,
)
from .logging_utils import mask_identity
from .models import Account, Balance, HistoryPage, TransactionRecord, ZERO
from .network import (
    ContractCallStatus,
    ContractStatus,
    LedgerNetwork,
    SimulationResult,
    SubmissionResult,
    SubmissionStatus,
)
from .transactions import (
    ChangeTrustOp,
    InvokeContractOp,
    PaymentOp,
    SignedTransaction,
    TransactionDraft,
    decode_envelope,
    encode_draft,
)

logger = logging.getLogger(__name__)

# handler(function, args, invoker, simulate) -> return value (SCVal)
ContractHandler = Callable[[str, List[Any], str, bool], Any]


@dataclass
class _Trustline:
    balance: Decimal = ZERO
    limit: Decimal = ZERO


@dataclass
class _SimAccount:
    account_id: str
    sequence: int
    native: Decimal
    trustlines: Dict[Tuple[str, str], _Trustline] = field(default_factory=dict)


@dataclass
class _Recorded:
    record: TransactionRecord
    hidden_polls: int = 0
    contract_status: Optional[ContractStatus] = None


class SimulatedLedgerNetwork(LedgerNetwork):
    """Deterministic in-memory ledger."""

    STARTING_BALANCE = Decimal("10000")

    def __init__(self, network_passphrase: str, resource_fee: int = 50_000):
        self._passphrase = network_passphrase
        self._accounts: Dict[str, _SimAccount] = {}
        self._transactions: Dict[str, _Recorded] = {}
        self._history: Dict[str, List[str]] = {}
        self._contracts: Dict[str, ContractHandler] = {}
        self._faults: Dict[str, List[Exception]] = {}
        self._submit_failures: List[Tuple[bool, Optional[LedgerError]]] = []
        self._ledger = 2
        self._paging = 0
        self.resource_fee = resource_fee
        self.confirmation_delay = 0
        self.withhold_confirmations = False
        self.submitted: List[SignedTransaction] = []
        self.simulations: List[TransactionDraft] = []

    # ------------------------------------------------------------------
    # Test and dev controls
    # ------------------------------------------------------------------

    def create_account(self, account_id: str, native_balance: Optional[Decimal] = None) -> None:
        if account_id in self._accounts:
            raise ValueError(f"Account {account_id} already exists")
        self._accounts[account_id] = _SimAccount(
            account_id=account_id,
            sequence=self._ledger << 32,
            native=native_balance if native_balance is not None else self.STARTING_BALANCE,
        )
        logger.debug(f"Simulated account created: {mask_identity(account_id)}")

    def has_account(self, account_id: str) -> bool:
        return account_id in self._accounts

    def balance_of(self, account_id: str, code: str, issuer: str) -> Decimal:
        account = self._require_account(account_id)
        line = account.trustlines.get((code, issuer))
        return line.balance if line else ZERO

    def outstanding(self, account_id: str) -> int:
        """Transactions from ``account_id`` that are submitted but not yet visible."""
        return sum(
            1 for recorded in self._transactions.values()
            if recorded.record.source_account == account_id and recorded.hidden_polls > 0
        )

    def register_contract(self, contract_id: str, handler: ContractHandler) -> None:
        self._contracts[contract_id] = handler

    def inject_failure(self, method: str, exc: Exception, times: int = 1) -> None:
        """Make the next ``times`` calls of ``method`` raise ``exc``."""
        self._faults.setdefault(method, []).extend([exc] * times)

    def inject_submit_timeout(self, apply: bool = True) -> None:
        """Make the next submission time out; ``apply`` decides whether it landed."""
        self.inject_submit_failure(None, apply=apply)

    def inject_submit_failure(self, exc: Optional[LedgerError] = None, apply: bool = True) -> None:
        """Make the next submission raise ``exc`` (a LedgerTimeout by default)."""
        self._submit_failures.append((apply, exc))

    # ------------------------------------------------------------------
    # LedgerNetwork
    # ------------------------------------------------------------------

    async def load_account(self, account_id: str) -> Account:
        self._check_fault("load_account")
        account = self._require_account(account_id)
        balances = [Balance(asset_code=None, asset_issuer=None, amount=account.native)]
        for (code, issuer), line in account.trustlines.items():
            balances.append(
                Balance(asset_code=code, asset_issuer=issuer, amount=line.balance, limit=line.limit)
            )
        return Account(account_id=account_id, sequence=account.sequence, balances=tuple(balances))

    async def submit_transaction(self, tx: SignedTransaction) -> SubmissionResult:
        self._check_fault("submit_transaction")
        duplicate = self._admit(tx)
        if duplicate is not None:
            return duplicate
        self.submitted.append(tx)

        failure = self._submit_failures.pop(0) if self._submit_failures else None
        if failure is not None and not failure[0]:
            raise self._submit_error(tx, failure[1])

        account = self._accounts[tx.source]
        account.sequence += 1
        snapshot = copy.deepcopy(self._accounts)
        failures = [self._apply(tx.source, op) for op in tx.draft.operations]
        codes = [code for code in failures if code != "op_success"]
        if codes:
            self._accounts = snapshot
            self._record(tx, successful=False, result_codes={"transaction": "tx_failed", "operations": failures})
            if failure is not None:
                raise self._submit_error(tx, failure[1])
            raise exception_from_result_codes("tx_failed", failures, tx_hash=tx.tx_hash)

        recorded = self._record(tx, successful=True)
        if failure is not None:
            raise self._submit_error(tx, failure[1])
        if recorded.hidden_polls or self.withhold_confirmations:
            return SubmissionResult(tx.tx_hash, SubmissionStatus.PENDING)
        return SubmissionResult(tx.tx_hash, SubmissionStatus.CONFIRMED, recorded.record.ledger)

    async def get_transaction(self, tx_hash: str) -> Optional[TransactionRecord]:
        self._check_fault("get_transaction")
        recorded = self._visible(tx_hash, consume_poll=True)
        return recorded.record if recorded else None

    async def get_transaction_history(
        self,
        account_id: str,
        cursor: Optional[str] = None,
        limit: int = 20,
        order: str = "desc",
    ) -> HistoryPage:
        self._check_fault("get_transaction_history")
        self._require_account(account_id)
        records = [
            r.record for r in (self._visible(h) for h in self._history.get(account_id, []))
            if r is not None
        ]
        if order == "desc":
            records.reverse()
            if cursor and cursor != "now":
                records = [r for r in records if int(r.paging_token) < int(cursor)]
        else:
            if cursor == "now":
                records = []
            elif cursor:
                records = [r for r in records if int(r.paging_token) > int(cursor)]
        page = tuple(records[:limit])
        next_cursor = page[-1].paging_token if page else cursor
        return HistoryPage(records=page, next_cursor=next_cursor)

    async def simulate_contract(self, draft: TransactionDraft) -> SimulationResult:
        self._check_fault("simulate_contract")
        self.simulations.append(draft)
        op = draft.operations[0] if draft.operations else None
        if not isinstance(op, InvokeContractOp):
            return SimulationResult(error="transaction does not invoke a contract")
        if draft.source not in self._accounts:
            return SimulationResult(error=f"source account {draft.source} not found")
        handler = self._contracts.get(op.contract_id)
        if handler is None:
            return SimulationResult(error=f"contract {op.contract_id} not found")
        try:
            value = handler(op.function, list(op.args), draft.source, True)
        except (ValueError, KeyError, TypeError, ArithmeticError) as e:
            return SimulationResult(error=f"HostError: {e}")

        soroban_data = SorobanDataBuilder().set_resource_fee(self.resource_fee).build()
        return SimulationResult(
            transaction_data=soroban_data.to_xdr(),
            min_resource_fee=self.resource_fee,
            return_value=value,
        )

    async def send_contract(self, tx: SignedTransaction) -> SubmissionResult:
        self._check_fault("send_contract")
        duplicate = self._admit(tx)
        if duplicate is not None:
            return duplicate
        self.submitted.append(tx)

        failure = self._submit_failures.pop(0) if self._submit_failures else None
        if failure is not None and not failure[0]:
            raise self._submit_error(tx, failure[1])

        self._accounts[tx.source].sequence += 1
        op = tx.draft.operations[0]
        handler = self._contracts.get(op.contract_id)
        error = None
        value = None
        if handler is None:
            error = f"contract {op.contract_id} not found"
        else:
            try:
                value = handler(op.function, list(op.args), tx.source, False)
            except (ValueError, KeyError, TypeError, ArithmeticError) as e:
                error = f"HostError: {e}"

        recorded = self._record(tx, successful=error is None)
        recorded.contract_status = ContractStatus(
            tx_hash=tx.tx_hash,
            status=ContractCallStatus.SUCCESS if error is None else ContractCallStatus.FAILED,
            ledger=recorded.record.ledger,
            return_value=value,
            error=error,
        )
        if failure is not None:
            raise self._submit_error(tx, failure[1])
        return SubmissionResult(tx.tx_hash, SubmissionStatus.PENDING)

    async def get_contract_status(self, tx_hash: str) -> ContractStatus:
        self._check_fault("get_contract_status")
        recorded = self._visible(tx_hash, consume_poll=True)
        if recorded is None or recorded.contract_status is None:
            return ContractStatus(tx_hash=tx_hash, status=ContractCallStatus.NOT_FOUND)
        return recorded.contract_status

    async def fund_test_account(self, account_id: str) -> None:
        self._check_fault("fund_test_account")
        if account_id in self._accounts:
            raise LedgerError(f"Account {mask_identity(account_id)} is already funded")
        self.create_account(account_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _submit_error(self, tx: SignedTransaction, exc: Optional[LedgerError]) -> LedgerError:
        return exc if exc is not None else LedgerTimeout("Submission timed out", tx_hash=tx.tx_hash)

    def _check_fault(self, method: str) -> None:
        pending = self._faults.get(method)
        if pending:
            raise pending.pop(0)

    def _require_account(self, account_id: str) -> _SimAccount:
        account = self._accounts.get(account_id)
        if account is None:
            raise AccountNotFound(f"Account {mask_identity(account_id)} not found")
        return account

    def _admit(self, tx: SignedTransaction) -> Optional[SubmissionResult]:
        """Validate envelope, signature and sequence; detect duplicates."""
        envelope = decode_envelope(tx.envelope_xdr, self._passphrase)
        tx_hash = envelope.hash_hex()
        if tx_hash != tx.tx_hash or encode_draft(tx.draft, self._passphrase).hash_hex() != tx_hash:
            raise NetworkRejected(
                "Envelope does not match transaction",
                result_codes={"transaction": "tx_malformed"},
                tx_hash=tx.tx_hash,
            )

        existing = self._transactions.get(tx_hash)
        if existing is not None:
            return SubmissionResult(tx_hash, SubmissionStatus.DUPLICATE, existing.record.ledger)

        account = self._accounts.get(tx.source)
        if account is None:
            raise exception_from_result_codes("tx_no_source_account", [], tx_hash=tx_hash)

        source_key = Keypair.from_public_key(tx.source)
        signed_by_source = False
        for decorated in envelope.signatures:
            try:
                source_key.verify(envelope.hash(), decorated.signature)
                signed_by_source = True
                break
            except BadSignatureError:
                continue
        if not signed_by_source:
            raise exception_from_result_codes("tx_bad_auth", [], tx_hash=tx_hash)

        if envelope.transaction.sequence != account.sequence + 1:
            raise exception_from_result_codes("tx_bad_seq", [], tx_hash=tx_hash)
        return None

    def _apply(self, source: str, op: Any) -> str:
        if isinstance(op, PaymentOp):
            return self._apply_payment(source, op)
        if isinstance(op, ChangeTrustOp):
            return self._apply_change_trust(source, op)
        return "op_not_supported"

    def _apply_payment(self, source: str, op: PaymentOp) -> str:
        key = (op.asset.code, op.asset.issuer)
        destination = self._accounts.get(op.destination)
        if destination is None:
            return "op_no_destination"

        if source != op.asset.issuer:
            src_line = self._accounts[source].trustlines.get(key)
            if src_line is None:
                return "op_src_no_trust"
            if src_line.balance < op.amount:
                return "op_underfunded"

        if op.destination != op.asset.issuer:
            dst_line = destination.trustlines.get(key)
            if dst_line is None:
                return "op_no_trust"
            if dst_line.balance + op.amount > dst_line.limit:
                return "op_line_full"
            dst_line.balance += op.amount

        if source != op.asset.issuer:
            self._accounts[source].trustlines[key].balance -= op.amount
        return "op_success"

    def _apply_change_trust(self, source: str, op: ChangeTrustOp) -> str:
        if source == op.asset.issuer:
            return "op_self_not_allowed"
        if op.asset.issuer not in self._accounts:
            return "op_no_issuer"
        key = (op.asset.code, op.asset.issuer)
        account = self._accounts[source]
        line = account.trustlines.get(key)
        if line is not None and op.limit < line.balance:
            return "op_invalid_limit"
        if op.limit == ZERO:
            account.trustlines.pop(key, None)
        elif line is None:
            account.trustlines[key] = _Trustline(limit=op.limit)
        else:
            line.limit = op.limit
        return "op_success"

    def _record(
        self,
        tx: SignedTransaction,
        successful: bool,
        result_codes: Optional[Dict[str, Any]] = None,
    ) -> _Recorded:
        self._ledger += 1
        self._paging += 1
        record = TransactionRecord(
            tx_hash=tx.tx_hash,
            ledger=self._ledger,
            source_account=tx.source,
            successful=successful,
            memo=tx.draft.memo,
            created_at=datetime.now(timezone.utc),
            paging_token=str(self._paging),
            result_codes=result_codes or {},
        )
        recorded = _Recorded(record=record, hidden_polls=self.confirmation_delay)
        self._transactions[tx.tx_hash] = recorded

        participants = {tx.source}
        for op in tx.draft.operations:
            if isinstance(op, PaymentOp):
                participants.add(op.destination)
        for account_id in participants:
            self._history.setdefault(account_id, []).append(tx.tx_hash)
        return recorded

    def _visible(self, tx_hash: str, consume_poll: bool = False) -> Optional[_Recorded]:
        recorded = self._transactions.get(tx_hash)
        if recorded is None or self.withhold_confirmations:
            return None
        if recorded.hidden_polls > 0:
            if consume_poll:
                recorded.hidden_polls -= 1
            return None
        return recorded
