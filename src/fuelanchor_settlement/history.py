"""
Transaction history paging and polling streams.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional, Union

from .exceptions import SettlementError
from .ledger_client import LedgerClient
from .logging_utils import mask_identity
from .models import TransactionRecord

logger = logging.getLogger(__name__)

RecordCallback = Callable[[TransactionRecord], Union[None, Awaitable[None]]]
ErrorCallback = Callable[[SettlementError], Union[None, Awaitable[None]]]


async def iter_history(
    client: LedgerClient,
    identity: str,
    page_size: int = 20,
    max_pages: Optional[int] = None,
    order: str = "desc",
) -> AsyncIterator[TransactionRecord]:
    """Yield an account's transactions page by page until exhausted."""
    cursor: Optional[str] = None
    pages = 0
    while max_pages is None or pages < max_pages:
        page = await client.get_transaction_history(
            identity, cursor=cursor, limit=page_size, order=order
        )
        pages += 1
        for record in page.records:
            yield record
        if len(page.records) < page_size or not page.next_cursor:
            return
        cursor = page.next_cursor


async def _maybe_await(result: Union[None, Awaitable[None]]) -> None:
    if inspect.isawaitable(result):
        await result


class TransactionStream:
    """
    Polls an account for transactions newer than when it was started.

    Each new record is passed to ``on_record`` in ledger order. Errors
    while polling go to ``on_error`` and polling continues.
    """

    def __init__(
        self,
        client: LedgerClient,
        identity: str,
        on_record: RecordCallback,
        on_error: Optional[ErrorCallback] = None,
        poll_interval: float = 5.0,
        page_size: int = 50,
    ):
        self._client = client
        self._identity = identity
        self._on_record = on_record
        self._on_error = on_error
        self._poll_interval = poll_interval
        self._page_size = page_size
        self._cursor: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def cursor(self) -> Optional[str]:
        return self._cursor

    async def start(self) -> "asyncio.Task[None]":
        """Pin the cursor to the newest existing record and start polling."""
        if self.running:
            raise RuntimeError("Stream already started")
        latest = await self._client.get_transaction_history(
            self._identity, limit=1, order="desc"
        )
        self._cursor = latest.records[0].paging_token if latest.records else "0"
        self._task = asyncio.create_task(self._run())
        logger.info(f"Streaming transactions for {mask_identity(self._identity)}")
        return self._task

    async def poll_once(self) -> int:
        """Fetch and dispatch new records; returns how many were dispatched."""
        dispatched = 0
        while True:
            page = await self._client.get_transaction_history(
                self._identity, cursor=self._cursor, limit=self._page_size, order="asc"
            )
            for record in page.records:
                await _maybe_await(self._on_record(record))
                self._cursor = record.paging_token or self._cursor
                dispatched += 1
            if len(page.records) < self._page_size:
                return dispatched

    async def _run(self) -> None:
        try:
            while True:
                try:
                    await self.poll_once()
                except SettlementError as e:
                    logger.warning(
                        f"Transaction stream for {mask_identity(self._identity)} failed: {e}"
                    )
                    if self._on_error is not None:
                        await _maybe_await(self._on_error(e))
                await asyncio.sleep(self._poll_interval)
        except asyncio.CancelledError:
            logger.info(f"Transaction stream for {mask_identity(self._identity)} stopped")
            raise

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
