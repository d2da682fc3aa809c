"""
Smart-contract invocation with network confirmation.

Every invocation is a small state machine:

    INIT -> SIMULATING -> ASSEMBLED -> SIGNED -> SUBMITTED -> PENDING
         -> SUCCESS | FAILED | TIMED_OUT

plus REJECTED when simulation fails (nothing was submitted). The
registry remembers each invocation by key, so a caller that retries a
call whose earlier attempt is still unresolved fails fast instead of
submitting a second transaction.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Sequence

from .config import SettlementSettings
from .exceptions import (
    InvalidStateTransition,
    InvocationFailed,
    InvocationInProgress,
    InvocationRejected,
    InvocationTimedOut,
    LedgerError,
    NetworkRejected,
    NotFoundError,
    SettlementError,
)
from .keys import KeyManager
from .ledger_client import LedgerClient
from .logging_utils import OperationType, SettlementLogger, get_settlement_logger
from .network import ContractCallStatus
from .sequencing import SequenceManager
from .transactions import InvokeContractOp, SignedTransaction, TransactionDraft

logger = logging.getLogger(__name__)


class InvocationState(str, Enum):
    INIT = "init"
    SIMULATING = "simulating"
    ASSEMBLED = "assembled"
    SIGNED = "signed"
    SUBMITTED = "submitted"
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    REJECTED = "rejected"


S = InvocationState

TRANSITIONS: Dict[InvocationState, FrozenSet[InvocationState]] = {
    S.INIT: frozenset({S.SIMULATING}),
    S.SIMULATING: frozenset({S.ASSEMBLED, S.REJECTED}),
    S.ASSEMBLED: frozenset({S.SIGNED, S.FAILED}),
    S.SIGNED: frozenset({S.SUBMITTED, S.FAILED}),
    # SIGNED again when a sequence conflict forces a re-sign
    S.SUBMITTED: frozenset({S.SIGNED, S.PENDING, S.FAILED, S.TIMED_OUT}),
    S.PENDING: frozenset({S.SUCCESS, S.FAILED, S.TIMED_OUT}),
    S.TIMED_OUT: frozenset({S.SUCCESS, S.FAILED}),
    S.SUCCESS: frozenset(),
    S.FAILED: frozenset(),
    S.REJECTED: frozenset(),
}

TERMINAL_STATES = frozenset({S.SUCCESS, S.FAILED, S.REJECTED})

# Never applied on the ledger, so a new attempt cannot double-apply
RESTARTABLE_STATES = frozenset({S.FAILED, S.REJECTED})


@dataclass(frozen=True)
class InvocationResult:
    key: str
    state: InvocationState
    tx_hash: Optional[str] = None
    return_value: Any = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state == S.SUCCESS

    def raise_for_state(self) -> "InvocationResult":
        """Raise the typed error for a non-successful result."""
        if self.state == S.TIMED_OUT:
            raise InvocationTimedOut(
                f"Invocation {self.key} unresolved after poll deadline", tx_hash=self.tx_hash
            )
        if self.state == S.FAILED:
            raise InvocationFailed(self.error or "Invocation failed", tx_hash=self.tx_hash)
        if self.state == S.REJECTED:
            raise InvocationRejected(self.error or "Simulation failed")
        if self.state != S.SUCCESS:
            raise InvocationInProgress(f"Invocation {self.key} is {self.state.value}")
        return self


@dataclass
class Invocation:
    key: str
    contract_id: str
    function: str
    signer: str
    state: InvocationState = S.INIT
    tx_hash: Optional[str] = None
    return_value: Any = None
    error: Optional[str] = None
    expires_at: Optional[datetime] = None
    history: List[InvocationState] = field(default_factory=lambda: [S.INIT])

    def transition(self, new_state: InvocationState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidStateTransition(
                f"Invocation {self.key}: {self.state.value} -> {new_state.value} is not allowed",
                details={"from": self.state.value, "to": new_state.value},
            )
        logger.debug(f"Invocation {self.key[:12]}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)

    def result(self) -> InvocationResult:
        return InvocationResult(
            key=self.key,
            state=self.state,
            tx_hash=self.tx_hash,
            return_value=self.return_value,
            error=self.error,
        )


def derive_invocation_key(
    contract_id: str,
    function: str,
    args: Sequence[Any],
    signer: str,
) -> str:
    digest = hashlib.sha256()
    for part in (contract_id, function, signer):
        digest.update(part.encode("utf-8"))
        digest.update(b"\x00")
    for arg in args:
        digest.update(arg.to_xdr().encode("ascii"))
        digest.update(b"\x00")
    return digest.hexdigest()


class ContractInvoker:
    """Simulates, assembles, signs, submits and confirms contract calls."""

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
        self._registry: Dict[str, Invocation] = {}

    def get(self, invocation_key: str) -> Optional[InvocationResult]:
        invocation = self._registry.get(invocation_key)
        return invocation.result() if invocation else None

    def forget(self, invocation_key: str) -> bool:
        """Discard a terminal invocation so its key can be reused."""
        invocation = self._registry.get(invocation_key)
        if invocation is None:
            return False
        if invocation.state not in TERMINAL_STATES:
            raise InvocationInProgress(
                f"Invocation {invocation_key} is {invocation.state.value} and cannot be forgotten"
            )
        del self._registry[invocation_key]
        return True

    async def read(
        self,
        contract_id: str,
        function: str,
        args: Sequence[Any],
        signer_identity: str,
    ) -> Any:
        """Simulate a read-only call and return its value; nothing is submitted."""
        account = await self._client.load_account(signer_identity)
        draft = TransactionDraft(
            source=signer_identity,
            sequence=account.sequence,
            operations=(InvokeContractOp(contract_id, function, tuple(args)),),
            base_fee=self._settings.base_fee,
            timeout_seconds=self._settings.tx_timeout_seconds,
        )
        simulation = await self._client.simulate_contract(draft)
        if simulation.error is not None:
            raise InvocationRejected(
                f"Simulation of {function} failed: {simulation.error}",
                details={"contract_id": contract_id, "function": function},
            )
        return simulation.return_value

    async def invoke(
        self,
        contract_id: str,
        function: str,
        args: Sequence[Any],
        signer_identity: str,
        invocation_key: Optional[str] = None,
    ) -> InvocationResult:
        """
        Invoke ``function`` on ``contract_id`` and wait for the outcome.

        Returns the InvocationResult for SUCCESS and TIMED_OUT. A sequence
        conflict is retried once after a refresh; any other error once the
        transaction was sent leaves the call TIMED_OUT.

        Raises:
            InvocationRejected: simulation failed or could not run, nothing submitted
            InvocationFailed: the ledger rejected the transaction or reported failure
            InvocationInProgress: an earlier attempt with this key is unresolved
        """
        args = tuple(args)
        key = invocation_key or derive_invocation_key(contract_id, function, args, signer_identity)

        existing = self._registry.get(key)
        if existing is not None:
            if existing.state == S.SUCCESS:
                return existing.result()
            if existing.state not in RESTARTABLE_STATES:
                raise InvocationInProgress(
                    f"Invocation {key} is {existing.state.value}; resolve it before retrying",
                    tx_hash=existing.tx_hash,
                )

        invocation = Invocation(
            key=key, contract_id=contract_id, function=function, signer=signer_identity
        )
        self._registry[key] = invocation
        # Leave INIT before the first await so concurrent retries see it in flight
        invocation.transition(S.SIMULATING)

        async with self._slog.operation(
            OperationType.CONTRACT_INVOKE,
            signer_identity,
            contract_id=contract_id,
            function=function,
        ) as ctx:
            # The account stays locked until the call is confirmed
            async with self._sequences.account(signer_identity) as lease:
                draft = TransactionDraft(
                    source=signer_identity,
                    sequence=lease.sequence,
                    operations=(InvokeContractOp(contract_id, function, args),),
                    base_fee=self._settings.base_fee,
                    timeout_seconds=self._settings.tx_timeout_seconds,
                )
                try:
                    simulation = await self._client.simulate_contract(draft)
                except LedgerError as e:
                    invocation.error = str(e)
                    invocation.transition(S.REJECTED)
                    raise InvocationRejected(
                        f"Simulation of {function} failed: {e}",
                        details={"contract_id": contract_id, "function": function},
                    ) from e
                if not simulation.ok:
                    invocation.error = simulation.error or "simulation returned no resource data"
                    invocation.transition(S.REJECTED)
                    raise InvocationRejected(
                        f"Simulation of {function} failed: {invocation.error}",
                        details={"contract_id": contract_id, "function": function},
                    )

                assembled = draft.assembled(
                    soroban_data=simulation.transaction_data,
                    resource_fee=simulation.min_resource_fee,
                    auth=simulation.auth,
                )
                invocation.transition(S.ASSEMBLED)

                async def mark_submitted(signed: SignedTransaction) -> None:
                    if invocation.state == S.SUBMITTED:
                        logger.info(f"Invocation {key[:12]} re-signed after a sequence refresh")
                    invocation.tx_hash = signed.tx_hash
                    invocation.expires_at = datetime.now(timezone.utc) + timedelta(
                        seconds=self._settings.tx_timeout_seconds
                    )
                    invocation.transition(S.SIGNED)
                    invocation.transition(S.SUBMITTED)
                    ctx.metadata["tx_hash"] = signed.tx_hash

                try:
                    await self._sequences.submit(
                        lease,
                        lambda sequence: self._keys.sign(
                            assembled.with_sequence(sequence), signer_identity
                        ),
                        self._client.send_contract,
                        before_send=mark_submitted,
                    )
                except NetworkRejected as e:
                    invocation.error = str(e)
                    invocation.transition(S.FAILED)
                    raise InvocationFailed(
                        f"Submission of {function} rejected: {e}", tx_hash=invocation.tx_hash
                    ) from e
                except LedgerError as e:
                    # Sent but unanswered: it may still apply
                    invocation.error = str(e)
                    invocation.transition(S.TIMED_OUT)
                    logger.warning(f"Invocation {key[:12]} submission outcome unknown: {e}")
                    return invocation.result()
                except SettlementError as e:
                    invocation.error = str(e)
                    invocation.transition(S.FAILED)
                    raise

                invocation.transition(S.PENDING)
                result = await self._poll(invocation)
                if result.state == S.TIMED_OUT:
                    lease.discard()
            ctx.metadata["state"] = result.state.value
            return result

    async def _poll(self, invocation: Invocation) -> InvocationResult:
        interval = self._settings.contract_poll_interval
        deadline = self._settings.contract_poll_deadline
        try:
            async with asyncio.timeout(deadline):
                while True:
                    if await self._check_status(invocation):
                        return invocation.result()
                    await asyncio.sleep(interval)
        except TimeoutError:
            invocation.transition(S.TIMED_OUT)
            logger.warning(
                f"Invocation {invocation.key[:12]} ({invocation.tx_hash}) unresolved after {deadline}s"
            )
            return invocation.result()

    async def _check_status(self, invocation: Invocation) -> bool:
        """Query by hash; True once the invocation reached SUCCESS."""
        try:
            status = await self._client.get_contract_status(invocation.tx_hash)
        except LedgerError as e:
            if not e.retryable:
                raise
            logger.warning(f"Status poll for {invocation.tx_hash} failed: {e}")
            return False

        if status.status == ContractCallStatus.SUCCESS:
            invocation.return_value = status.return_value
            invocation.error = None
            invocation.transition(S.SUCCESS)
            return True
        if status.status == ContractCallStatus.FAILED:
            invocation.error = status.error or "contract call failed"
            invocation.transition(S.FAILED)
            raise InvocationFailed(
                f"Invocation of {invocation.function} failed: {invocation.error}",
                tx_hash=invocation.tx_hash,
            )
        return False

    async def resolve(self, invocation_key: str) -> InvocationResult:
        """
        Settle an unresolved invocation by querying its transaction hash.

        SUCCESS and FAILED are recorded as terminal. A transaction still
        unknown past its validity window can no longer apply and is
        recorded as FAILED; otherwise the invocation stays TIMED_OUT.
        """
        invocation = self._registry.get(invocation_key)
        if invocation is None:
            raise NotFoundError("invocation", invocation_key)
        if invocation.state in TERMINAL_STATES or invocation.tx_hash is None:
            return invocation.result()

        if invocation.state == S.SUBMITTED:
            invocation.transition(S.PENDING)
        try:
            await self._check_status(invocation)
        except InvocationFailed:
            return invocation.result()

        if invocation.state in (S.PENDING, S.TIMED_OUT):
            if invocation.state == S.PENDING:
                invocation.transition(S.TIMED_OUT)
            expires_at = invocation.expires_at
            if expires_at is not None and datetime.now(timezone.utc) > expires_at:
                invocation.error = "transaction expired without being applied"
                invocation.transition(S.FAILED)
        logger.info(f"Resolved invocation {invocation_key[:12]}: {invocation.state.value}")
        return invocation.result()
