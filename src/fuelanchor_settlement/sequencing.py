"""
Per-account transaction serialization and sequence-number tracking.

Each source account has one asyncio.Lock; holding it means owning the
account's next sequence number. Callers keep the lock until the
transaction is confirmed, so at most one transaction per account is
outstanding. The sequence is cached between uses and reloaded from the
network when the cache is stale, after a conflict, or after any
transaction whose outcome did not consume exactly one number.
"""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Dict, Hashable, List, Optional, Tuple, TypeVar

from .exceptions import SequenceConflict
from .ledger_client import LedgerClient
from .logging_utils import SettlementLogger, get_settlement_logger, mask_identity
from .transactions import SignedTransaction

logger = logging.getLogger(__name__)

R = TypeVar("R")


class KeyedLocks:
    """Lazily created asyncio.Lock per key."""

    def __init__(self) -> None:
        self._locks: Dict[Hashable, asyncio.Lock] = {}

    def get(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            # No await between lookup and insert, so this is atomic on the loop
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, *keys: Optional[Hashable]) -> AsyncIterator[None]:
        """Acquire the locks for ``keys`` in the order given (None skipped)."""
        acquired: List[asyncio.Lock] = []
        try:
            for key in keys:
                if key is None:
                    continue
                lock = self.get(key)
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


@dataclass
class SequenceLease:
    """Exclusive use of an account's next sequence number."""
    identity: str
    sequence: int
    consumed: bool = False

    def consume(self) -> None:
        """Mark the sequence as used by an accepted transaction."""
        self.consumed = True

    def discard(self) -> None:
        """Outcome unknown; reload the sequence from the network on release."""
        self.consumed = False


class SequenceManager:
    """
    Serializes transactions per source account.

    Usage:
        async with sequences.account(identity) as lease:
            draft = TransactionDraft(source=identity, sequence=lease.sequence, ...)
            ...
            lease.consume()
    """

    def __init__(
        self,
        client: LedgerClient,
        cache_ttl_seconds: float = 30.0,
        slog: Optional[SettlementLogger] = None,
    ):
        self._client = client
        self._ttl = cache_ttl_seconds
        self._slog = slog or get_settlement_logger()
        self._locks = KeyedLocks()
        self._sequences: Dict[str, int] = {}
        self._last_sync: Dict[str, float] = {}

    async def _load(self, identity: str) -> int:
        account = await self._client.load_account(identity)
        self._sequences[identity] = account.sequence
        self._last_sync[identity] = time.monotonic()
        self._slog.log_sequence(identity, "synced", account.sequence)
        return account.sequence

    async def _current(self, identity: str) -> int:
        last_sync = self._last_sync.get(identity)
        if (
            identity not in self._sequences
            or last_sync is None
            or time.monotonic() - last_sync > self._ttl
        ):
            return await self._load(identity)
        return self._sequences[identity]

    @asynccontextmanager
    async def account(self, identity: str) -> AsyncIterator[SequenceLease]:
        """Hold the account's lock and lease its current sequence number."""
        async with self._locks.get(identity):
            lease = SequenceLease(identity=identity, sequence=await self._current(identity))
            try:
                yield lease
            finally:
                if lease.consumed:
                    self._sequences[identity] = lease.sequence + 1
                    self._slog.log_sequence(identity, "consumed", lease.sequence + 1)
                else:
                    self.invalidate(identity)

    async def refresh(self, lease: SequenceLease) -> int:
        """Reload the sequence from the network (caller holds the lease)."""
        lease.sequence = await self._load(lease.identity)
        return lease.sequence

    async def submit(
        self,
        lease: SequenceLease,
        sign: Callable[[int], SignedTransaction],
        send: Callable[[SignedTransaction], Awaitable[R]],
        before_send: Optional[Callable[[SignedTransaction], Awaitable[None]]] = None,
    ) -> Tuple[SignedTransaction, R]:
        """
        Sign with the leased sequence and send, consuming the lease.

        A SequenceConflict triggers one refresh from the network, a
        re-sign and a single retry. ``before_send`` sees every signed
        envelope before it leaves the process.
        """
        retried = False
        while True:
            signed = sign(lease.sequence)
            if before_send is not None:
                await before_send(signed)
            try:
                result = await send(signed)
            except SequenceConflict:
                if retried:
                    raise
                retried = True
                logger.warning(
                    f"Sequence conflict for {mask_identity(lease.identity)}, refreshing and retrying"
                )
                await self.refresh(lease)
                continue
            lease.consume()
            return signed, result

    def invalidate(self, identity: str) -> None:
        self._sequences.pop(identity, None)
        self._last_sync.pop(identity, None)

    def is_busy(self, identity: str) -> bool:
        return self._locks.locked(identity)
