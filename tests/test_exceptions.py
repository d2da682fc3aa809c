"""
Tests for the settlement exception hierarchy.

Tests cover:
- Error codes, categories and retryability
- Structured payloads
- Mapping of ledger result codes to typed exceptions
"""
from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from fuelanchor_settlement.exceptions import (
    ErrorCategory,
    InsufficientBalance,
    LedgerConnectionError,
    LedgerTimeout,
    LimitExceeded,
    NetworkRejected,
    NotFoundError,
    OutOfGeofence,
    PolicyError,
    RedemptionIndeterminate,
    SequenceConflict,
    SettlementError,
    UnauthorizedAsset,
    ValidationError,
    exception_from_result_codes,
)
from fuelanchor_settlement.limits import DenialReason


class TestHierarchy:
    """Tests for classification attributes."""

    def test_all_errors_are_settlement_errors(self):
        """Should derive every error from SettlementError."""
        for exc in (
            ValidationError("x"),
            NotFoundError("station", "st_1"),
            OutOfGeofence("x"),
            LedgerTimeout("x"),
            SequenceConflict("x"),
        ):
            assert isinstance(exc, SettlementError)

    def test_retryable_classes(self):
        """Should mark only transient network errors as retryable."""
        assert LedgerTimeout("x").retryable
        assert LedgerConnectionError("x").retryable
        assert not NetworkRejected("x").retryable
        assert not ValidationError("x").retryable

    def test_policy_category(self):
        """Should classify policy rejections."""
        error = OutOfGeofence("far", distance_m=1234.5678, radius_m=100)
        assert isinstance(error, PolicyError)
        assert error.category == ErrorCategory.POLICY
        assert error.details == {"distance_m": 1234.57, "radius_m": 100}

    def test_timeout_submitted_flag(self):
        """Should report whether a timed-out transaction was submitted."""
        assert LedgerTimeout("x", tx_hash="ab").submitted
        assert not LedgerTimeout("x").submitted


class TestPayloads:
    """Tests for to_dict()."""

    def test_validation_payload(self):
        """Should include the field in details."""
        payload = ValidationError("bad amount", field="amount").to_dict()
        assert payload == {
            "error": "VALIDATION_ERROR",
            "category": "validation",
            "message": "bad amount",
            "details": {"field": "amount"},
        }

    def test_limit_payload(self):
        """Should expose the denial reason value."""
        error = LimitExceeded("denied", reason=DenialReason.EXCEEDS_DAILY_LIMIT)
        assert error.to_dict()["details"]["reason"] == "exceeds_daily_limit"
        assert error.reason == DenialReason.EXCEEDS_DAILY_LIMIT

    def test_indeterminate_payload(self):
        """Should carry the redemption id and hash."""
        error = RedemptionIndeterminate("unknown", redemption_id="rdm_1", tx_hash="ff")
        assert error.to_dict()["details"] == {"redemption_id": "rdm_1", "tx_hash": "ff"}

    def test_payload_without_details(self):
        """Should omit empty details."""
        assert "details" not in SettlementError("boom").to_dict()


class TestResultCodeMapping:
    """Tests for exception_from_result_codes()."""

    @pytest.mark.parametrize(
        "tx_code,op_codes,exc_class",
        [
            ("tx_failed", ["op_underfunded"], InsufficientBalance),
            ("tx_failed", ["op_no_trust"], UnauthorizedAsset),
            ("tx_failed", ["op_src_not_authorized"], UnauthorizedAsset),
            ("tx_bad_seq", [], SequenceConflict),
            ("tx_insufficient_balance", None, InsufficientBalance),
            ("tx_bad_auth", [], NetworkRejected),
            ("tx_something_new", [], NetworkRejected),
            (None, None, NetworkRejected),
        ],
    )
    def test_mapping(self, tx_code, op_codes, exc_class):
        """Should pick the most specific exception class."""
        error = exception_from_result_codes(tx_code, op_codes, tx_hash="ab")
        assert type(error) is exc_class
        assert error.tx_hash == "ab"
        assert error.result_codes["transaction"] == tx_code

    def test_operation_codes_win(self):
        """Should prefer the first mapped operation code."""
        error = exception_from_result_codes("tx_bad_seq", ["op_success", "op_underfunded"])
        assert isinstance(error, InsufficientBalance)
