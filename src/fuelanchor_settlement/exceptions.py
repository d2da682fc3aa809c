"""Unified exception hierarchy for the settlement core.

All settlement exceptions inherit from SettlementError, enabling:
- Consistent error handling across components
- Stable machine-readable error codes for the caller-facing layer
- Classification into validation / policy / network-transient /
  network-terminal failures, which decides retry behaviour
- Mapping from raw ledger result codes to typed exceptions

Usage:
    from fuelanchor_settlement.exceptions import (
        SettlementError,
        OutOfGeofence,
        exception_from_result_codes,
    )

    try:
        receipt = await engine.transfer(driver, station, amount)
    except SettlementError as e:
        payload = e.to_dict()

All exceptions have:
- error_code: Machine-readable error code (e.g., "OUT_OF_GEOFENCE")
- category: One of ErrorCategory
- retryable: Whether the caller may retry without reconciliation
- message: Human-readable detail string
- details: Optional additional context dictionary
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Optional, Sequence

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    """Failure classes used to decide retry behaviour."""
    VALIDATION = "validation"
    POLICY = "policy"
    NETWORK_TRANSIENT = "network_transient"
    NETWORK_TERMINAL = "network_terminal"
    INTERNAL = "internal"


class SettlementError(Exception):
    """Base exception for all settlement errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Optional additional context
    """

    error_code: str = "SETTLEMENT_ERROR"
    category: ErrorCategory = ErrorCategory.INTERNAL
    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a structured error payload."""
        result = {
            "error": self.error_code,
            "category": self.category.value,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Validation Errors
# =============================================================================

class ValidationError(SettlementError):
    """Malformed input, rejected before any network call."""

    error_code = "VALIDATION_ERROR"
    category = ErrorCategory.VALIDATION

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details)


class NotFoundError(SettlementError):
    """Requested record not found."""

    error_code = "NOT_FOUND"
    category = ErrorCategory.VALIDATION

    def __init__(
        self,
        resource_type: str,
        resource_id: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        message = f"{resource_type} '{resource_id}' not found"
        details = details or {}
        details["resource_type"] = resource_type
        details["resource_id"] = resource_id
        super().__init__(message, details=details)


class ConfigurationError(SettlementError):
    """Required configuration is missing or inconsistent."""

    error_code = "CONFIGURATION_ERROR"


class DuplicateReferenceError(SettlementError):
    """An external reference was already processed with different parameters."""

    error_code = "DUPLICATE_REFERENCE"
    category = ErrorCategory.VALIDATION


# =============================================================================
# Policy Errors (terminal, reported verbatim, never retried automatically)
# =============================================================================

class PolicyError(SettlementError):
    """Base class for policy rejections."""

    error_code = "POLICY_VIOLATION"
    category = ErrorCategory.POLICY


class StationInactive(PolicyError):
    error_code = "STATION_INACTIVE"


class DriverInactive(PolicyError):
    error_code = "DRIVER_INACTIVE"


class StationNotAllowed(PolicyError):
    """Station is outside the driver's allowed-stations list."""

    error_code = "STATION_NOT_ALLOWED"


class OutOfGeofence(PolicyError):
    """Driver location is outside the station's geofence."""

    error_code = "OUT_OF_GEOFENCE"

    def __init__(
        self,
        message: str,
        distance_m: Optional[float] = None,
        radius_m: Optional[float] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if distance_m is not None:
            details["distance_m"] = round(distance_m, 2)
        if radius_m is not None:
            details["radius_m"] = radius_m
        super().__init__(message, details=details)


class LimitExceeded(PolicyError):
    """A spending limit denied the request."""

    error_code = "LIMIT_EXCEEDED"

    def __init__(
        self,
        message: str,
        reason: Any = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.reason = reason
        details = details or {}
        if reason is not None:
            details["reason"] = getattr(reason, "value", str(reason))
        super().__init__(message, details=details)


class ReconciliationRequired(PolicyError):
    """A previous outcome is unresolved and must be reconciled first."""

    error_code = "RECONCILIATION_REQUIRED"


class ProductionFundingDisabled(PolicyError):
    """Test-network funding was requested against the production network."""

    error_code = "PRODUCTION_FUNDING_DISABLED"


class SecretExposureDisabled(PolicyError):
    """Secret material may only be returned on non-production networks."""

    error_code = "SECRET_EXPOSURE_DISABLED"


# =============================================================================
# Network Errors
# =============================================================================

class LedgerError(SettlementError):
    """Base class for ledger network errors."""

    error_code = "LEDGER_ERROR"
    category = ErrorCategory.NETWORK_TERMINAL

    def __init__(
        self,
        message: str,
        tx_hash: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.tx_hash = tx_hash
        details = details or {}
        if tx_hash:
            details["tx_hash"] = tx_hash
        super().__init__(message, details=details)


class LedgerTimeout(LedgerError):
    """A network wait expired.

    When ``tx_hash`` is set the transaction was submitted and may still
    apply; callers must query it by hash before submitting a new one.
    """

    error_code = "TIMEOUT"
    category = ErrorCategory.NETWORK_TRANSIENT
    retryable = True

    @property
    def submitted(self) -> bool:
        return self.tx_hash is not None


class LedgerConnectionError(LedgerError):
    error_code = "CONNECTION_ERROR"
    category = ErrorCategory.NETWORK_TRANSIENT
    retryable = True


class NetworkRejected(LedgerError):
    """The network rejected the transaction (bad sequence, low reserve, ...)."""

    error_code = "NETWORK_REJECTED"

    def __init__(
        self,
        message: str,
        result_codes: Optional[dict[str, Any]] = None,
        tx_hash: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.result_codes = result_codes or {}
        details = details or {}
        if result_codes:
            details["result_codes"] = result_codes
        super().__init__(message, tx_hash=tx_hash, details=details)


class SequenceConflict(NetworkRejected):
    error_code = "SEQUENCE_CONFLICT"


class InsufficientBalance(NetworkRejected):
    error_code = "INSUFFICIENT_BALANCE"


class UnauthorizedAsset(NetworkRejected):
    """Source or destination lacks an authorization record for the asset."""

    error_code = "UNAUTHORIZED_ASSET"


class AccountNotFound(LedgerError):
    error_code = "ACCOUNT_NOT_FOUND"


# =============================================================================
# Contract Invocation Errors
# =============================================================================

class InvocationError(LedgerError):
    error_code = "INVOCATION_ERROR"


class InvocationRejected(InvocationError):
    """Simulation failed; the call was never submitted."""

    error_code = "INVOCATION_REJECTED"


class InvocationFailed(InvocationError):
    """The ledger reported a terminal failure for a submitted call."""

    error_code = "INVOCATION_FAILED"


class InvocationTimedOut(InvocationError):
    """Poll deadline expired with the call unresolved."""

    error_code = "INVOCATION_TIMED_OUT"
    category = ErrorCategory.NETWORK_TRANSIENT


class InvocationInProgress(InvocationError):
    """The same call already left INIT and has not been resolved by hash."""

    error_code = "INVOCATION_IN_PROGRESS"
    category = ErrorCategory.POLICY


class InvalidStateTransition(SettlementError):
    error_code = "INVALID_STATE_TRANSITION"


# =============================================================================
# Redemption Errors
# =============================================================================

class RedemptionIndeterminate(SettlementError):
    """Transfer submitted but its confirmation is unknown."""

    error_code = "REDEMPTION_INDETERMINATE"
    category = ErrorCategory.NETWORK_TRANSIENT

    def __init__(
        self,
        message: str,
        redemption_id: str,
        tx_hash: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.redemption_id = redemption_id
        self.tx_hash = tx_hash
        details = details or {}
        details["redemption_id"] = redemption_id
        if tx_hash:
            details["tx_hash"] = tx_hash
        super().__init__(message, details=details)


# =============================================================================
# Error Mapping Utilities
# =============================================================================

# Operation result codes and the exception they map to
OPERATION_RESULT_CODES: dict[str, type[NetworkRejected]] = {
    "op_underfunded": InsufficientBalance,
    "op_no_trust": UnauthorizedAsset,
    "op_src_no_trust": UnauthorizedAsset,
    "op_not_authorized": UnauthorizedAsset,
    "op_src_not_authorized": UnauthorizedAsset,
    "op_no_destination": UnauthorizedAsset,
    "op_low_reserve": NetworkRejected,
    "op_line_full": NetworkRejected,
}

TRANSACTION_RESULT_CODES: dict[str, type[NetworkRejected]] = {
    "tx_bad_seq": SequenceConflict,
    "tx_insufficient_balance": InsufficientBalance,
    "tx_insufficient_fee": NetworkRejected,
    "tx_bad_auth": NetworkRejected,
    "tx_too_late": NetworkRejected,
    "tx_no_source_account": NetworkRejected,
}


def exception_from_result_codes(
    transaction_code: Optional[str],
    operation_codes: Optional[Sequence[str]] = None,
    tx_hash: Optional[str] = None,
) -> NetworkRejected:
    """Convert ledger result codes to the appropriate typed exception.

    Operation codes are more specific than the transaction code, so they
    are consulted first.

    Args:
        transaction_code: Transaction-level result code (e.g. "tx_failed")
        operation_codes: Per-operation result codes
        tx_hash: Transaction hash if known

    Returns:
        NetworkRejected or one of its subclasses
    """
    operation_codes = list(operation_codes or [])
    result_codes = {"transaction": transaction_code, "operations": operation_codes}

    for code in operation_codes:
        exc_class = OPERATION_RESULT_CODES.get(code)
        if exc_class is not None:
            return exc_class(
                f"Ledger rejected operation: {code}",
                result_codes=result_codes,
                tx_hash=tx_hash,
            )

    exc_class = TRANSACTION_RESULT_CODES.get(transaction_code or "", NetworkRejected)
    return exc_class(
        f"Ledger rejected transaction: {transaction_code or 'unknown'}",
        result_codes=result_codes,
        tx_hash=tx_hash,
    )
