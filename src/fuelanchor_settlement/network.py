"""
Ledger network port.

The settlement core talks to the ledger only through LedgerNetwork.
Two adapters implement it:

- StellarLedgerNetwork (horizon.py): live Horizon REST + Soroban RPC
- SimulatedLedgerNetwork (simulated.py): in-memory ledger for dev and tests

Adapters raise the typed exceptions from exceptions.py; retry and
timeout policy lives in LedgerClient, not here.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional, Tuple

from .models import Account, HistoryPage, TransactionRecord
from .transactions import SignedTransaction, TransactionDraft


class SubmissionStatus(str, Enum):
    CONFIRMED = "confirmed"  # included in a ledger, result known
    PENDING = "pending"  # accepted, awaiting inclusion
    DUPLICATE = "duplicate"  # already applied earlier


@dataclass(frozen=True)
class SubmissionResult:
    tx_hash: str
    status: SubmissionStatus
    ledger: Optional[int] = None


@dataclass(frozen=True)
class SimulationResult:
    """Outcome of a contract-call simulation."""
    transaction_data: Optional[str] = None
    min_resource_fee: int = 0
    auth: Tuple[str, ...] = ()
    return_value: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.transaction_data is not None


class ContractCallStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    NOT_FOUND = "NOT_FOUND"


@dataclass(frozen=True)
class ContractStatus:
    tx_hash: str
    status: ContractCallStatus
    ledger: Optional[int] = None
    return_value: Any = None
    error: Optional[str] = None


class LedgerNetwork(ABC):
    """Port to the ledger network."""

    @abstractmethod
    async def load_account(self, account_id: str) -> Account:
        """Return the account's sequence and balances.

        Raises:
            AccountNotFound: the account does not exist on the network
        """
        pass

    @abstractmethod
    async def submit_transaction(self, tx: SignedTransaction) -> SubmissionResult:
        """Submit a signed classic transaction.

        Raises:
            NetworkRejected (or a subclass): the network rejected it
            LedgerTimeout: outcome unknown, ``tx_hash`` set
        """
        pass

    @abstractmethod
    async def get_transaction(self, tx_hash: str) -> Optional[TransactionRecord]:
        """Return the transaction if the network has recorded it."""
        pass

    @abstractmethod
    async def get_transaction_history(
        self,
        account_id: str,
        cursor: Optional[str] = None,
        limit: int = 20,
        order: str = "desc",
    ) -> HistoryPage:
        """Return one page of an account's transactions."""
        pass

    @abstractmethod
    async def simulate_contract(self, draft: TransactionDraft) -> SimulationResult:
        """Simulate a contract call without submitting it."""
        pass

    @abstractmethod
    async def send_contract(self, tx: SignedTransaction) -> SubmissionResult:
        """Send a signed, assembled contract call."""
        pass

    @abstractmethod
    async def get_contract_status(self, tx_hash: str) -> ContractStatus:
        """Return the status of a sent contract call."""
        pass

    @abstractmethod
    async def fund_test_account(self, account_id: str) -> None:
        """Create and fund an account on a test network."""
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None


__all__: List[str] = [
    "ContractCallStatus",
    "ContractStatus",
    "LedgerNetwork",
    "SimulationResult",
    "SubmissionResult",
    "SubmissionStatus",
]
