"""
Logging utilities for ledger settlement operations.

Features:
- Structured operation contexts with ids and durations
- Transaction lifecycle logging (submitted / confirmed / failed)
- Identity masking and secret redaction
- Plain or JSON log formatting
"""
from __future__ import annotations

import json
import logging
import re
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .config import SettlementSettings

logger = logging.getLogger(__name__)

# Stellar secret seeds are 56-char base32 strings starting with "S"
_SECRET_SEED_RE = re.compile(r"\bS[A-Z2-7]{55}\b")


class OperationType(str, Enum):
    """Types of ledger operations."""
    ACCOUNT_LOAD = "account_load"
    TRANSACTION_SUBMIT = "transaction_submit"
    TRANSACTION_CONFIRM = "transaction_confirm"
    AUTHORIZATION = "authorization"
    TRANSFER = "transfer"
    MINT = "mint"
    CONTRACT_INVOKE = "contract_invoke"
    REDEMPTION = "redemption"
    RECONCILIATION = "reconciliation"
    FUNDING = "funding"


def mask_identity(identity: Optional[str]) -> str:
    """Mask middle portion of a public identity for logs."""
    if not identity:
        return "<none>"
    if len(identity) < 12:
        return identity
    return f"{identity[:4]}...{identity[-4:]}"


def redact(text: str) -> str:
    """Remove anything shaped like a secret seed from a log string."""
    return _SECRET_SEED_RE.sub("<redacted>", text)


def _convert(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    return obj


@dataclass
class OperationContext:
    """Context for a ledger operation."""
    operation_id: str
    operation_type: OperationType
    subject: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    success: bool = False
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def complete(self, success: bool = True, error: Optional[str] = None) -> None:
        """Mark operation as complete."""
        self.completed_at = datetime.now(timezone.utc)
        self.duration_ms = (
            (self.completed_at - self.started_at).total_seconds() * 1000
        )
        self.success = success
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "operation_type": self.operation_type.value,
            "subject": self.subject,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error": self.error,
            "metadata": {k: _convert(v) for k, v in self.metadata.items()},
        }


@dataclass
class TransactionLog:
    """Log entry for a submitted transaction."""
    tx_hash: str
    source: str
    kind: str
    sequence: int
    submitted_at: datetime
    status: str = "submitted"
    ledger: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "source": mask_identity(self.source),
            "kind": self.kind,
            "sequence": self.sequence,
            "submitted_at": self.submitted_at.isoformat(),
            "status": self.status,
            "ledger": self.ledger,
            "error": self.error,
        }


class SettlementLogger:
    """
    Structured logger for ledger settlement operations.

    Keeps a bounded in-memory history of transaction logs so status
    changes can be attached to the original submission entry.
    """

    def __init__(self, name: str = "fuelanchor_settlement", max_history: int = 1000):
        self._logger = logging.getLogger(name)
        self._operation_counter = 0
        self._transactions: Dict[str, TransactionLog] = {}
        self._max_history = max_history

    def _generate_operation_id(self) -> str:
        self._operation_counter += 1
        timestamp = int(time.time() * 1000)
        return f"op_{timestamp}_{self._operation_counter}"

    @asynccontextmanager
    async def operation(
        self,
        operation_type: OperationType,
        subject: str,
        **metadata: Any,
    ):
        """
        Context manager for tracking an operation.

        Usage:
            async with slog.operation(OperationType.TRANSFER, source) as ctx:
                ctx.metadata["tx_hash"] = receipt.tx_hash
        """
        ctx = OperationContext(
            operation_id=self._generate_operation_id(),
            operation_type=operation_type,
            subject=mask_identity(subject),
            metadata=metadata,
        )

        self._logger.debug(
            f"Starting {operation_type.value} for {ctx.subject}",
            extra={"operation": ctx.to_dict()},
        )

        try:
            yield ctx
            ctx.complete(success=True)
        except BaseException as e:
            ctx.complete(success=False, error=redact(str(e)))
            raise
        finally:
            level = logging.INFO if ctx.success else logging.WARNING
            self._logger.log(
                level,
                f"Completed {operation_type.value} for {ctx.subject} in "
                f"{ctx.duration_ms:.0f}ms (success={ctx.success})",
                extra={"operation": ctx.to_dict()},
            )

    def log_transaction_submitted(
        self,
        tx_hash: str,
        source: str,
        kind: str,
        sequence: int,
    ) -> None:
        """Log transaction submission."""
        entry = TransactionLog(
            tx_hash=tx_hash,
            source=source,
            kind=kind,
            sequence=sequence,
            submitted_at=datetime.now(timezone.utc),
        )
        self._transactions[tx_hash] = entry
        if len(self._transactions) > self._max_history:
            oldest = next(iter(self._transactions))
            del self._transactions[oldest]

        self._logger.info(
            f"Transaction submitted: {tx_hash} ({kind}) from {mask_identity(source)} "
            f"seq={sequence}",
            extra={"transaction": entry.to_dict()},
        )

    def log_transaction_confirmed(self, tx_hash: str, ledger: Optional[int]) -> None:
        """Log transaction confirmation."""
        entry = self._transactions.get(tx_hash)
        if entry is not None:
            entry.status = "confirmed"
            entry.ledger = ledger

        self._logger.info(
            f"Transaction confirmed: {tx_hash} in ledger {ledger}",
            extra={"transaction": entry.to_dict() if entry else {"tx_hash": tx_hash}},
        )

    def log_transaction_failed(self, tx_hash: Optional[str], error: str) -> None:
        """Log transaction failure."""
        entry = self._transactions.get(tx_hash) if tx_hash else None
        if entry is not None:
            entry.status = "failed"
            entry.error = redact(error)

        self._logger.error(
            f"Transaction failed: {tx_hash or '<unsubmitted>'} - {redact(error)}",
            extra={"transaction": entry.to_dict() if entry else {"tx_hash": tx_hash}},
        )

    def log_sequence(self, identity: str, action: str, sequence: int) -> None:
        """Log sequence-number management."""
        self._logger.debug(f"Sequence {action} for {mask_identity(identity)}: {sequence}")

    def get_transaction_log(self, tx_hash: str) -> Optional[TransactionLog]:
        return self._transactions.get(tx_hash)


class JsonFormatter(logging.Formatter):
    """One JSON object per record, with structured extras merged in."""

    _EXTRA_KEYS = ("operation", "transaction", "redemption")

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": redact(record.getMessage()),
        }
        for key in self._EXTRA_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = redact(self.formatException(record.exc_info))
        return json.dumps(payload, default=str)


def configure_logging(settings: "SettlementSettings") -> None:
    """Install the root handler for the settlement package."""
    handler = logging.StreamHandler()
    if settings.log_json:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )

    package_logger = logging.getLogger("fuelanchor_settlement")
    package_logger.handlers = [handler]
    package_logger.setLevel(settings.log_level.upper())
    package_logger.propagate = False


_settlement_logger: Optional[SettlementLogger] = None


def get_settlement_logger() -> SettlementLogger:
    """Get the process-wide settlement logger."""
    global _settlement_logger
    if _settlement_logger is None:
        _settlement_logger = SettlementLogger()
    return _settlement_logger
