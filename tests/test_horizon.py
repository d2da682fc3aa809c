"""
Tests for the live Horizon / Soroban RPC adapter.

Tests cover:
- Account and transaction parsing
- Result-code mapping on rejected submissions
- Transport failures before and during submission
- Soroban RPC simulate, send and status calls
"""
from __future__ import annotations

import json
import sys
from decimal import Decimal
from pathlib import Path
from typing import Callable, List

import httpx
import pytest
from stellar_sdk import Keypair, scval
from stellar_sdk import xdr as stellar_xdr

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from conftest import make_settings

from fuelanchor_settlement.exceptions import (
    AccountNotFound,
    InsufficientBalance,
    LedgerConnectionError,
    LedgerError,
    LedgerTimeout,
    NetworkRejected,
    SequenceConflict,
)
from fuelanchor_settlement.horizon import StellarLedgerNetwork, _result_code_name
from fuelanchor_settlement.keys import KeyManager
from fuelanchor_settlement.models import Asset, OwnerType
from fuelanchor_settlement.network import ContractCallStatus, SubmissionStatus
from fuelanchor_settlement.transactions import PaymentOp, TransactionDraft

ISSUER = Keypair.random().public_key
ACCOUNT = Keypair.random().public_key
TX_HASH = "ab" * 32

Handler = Callable[[httpx.Request], httpx.Response]


class Recorder:
    """MockTransport handler that records requests."""

    def __init__(self, handler: Handler):
        self.handler = handler
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)


def _network(handler: Handler):
    settings = make_settings(ledger_mode="live", asset_issuer=ISSUER)
    recorder = Recorder(handler)
    return StellarLedgerNetwork(settings, transport=httpx.MockTransport(recorder)), recorder


def _signed():
    settings = make_settings()
    keys = KeyManager(settings)
    source = keys.create_wallet(OwnerType.DRIVER, "dr_1").public_identity
    draft = TransactionDraft(
        source=source,
        sequence=10,
        operations=(PaymentOp(ACCOUNT, Asset("FUEL", ISSUER), Decimal("5")),),
    )
    return keys.sign(draft)


def _rpc_result(result):
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    return handler


class TestHorizonReads:
    """Tests for account, transaction and history reads."""

    @pytest.mark.asyncio
    async def test_load_account(self):
        """Should parse sequence, native and credit balances."""
        network, recorder = _network(
            lambda request: httpx.Response(
                200,
                json={
                    "account_id": ACCOUNT,
                    "sequence": "4294967300",
                    "balances": [
                        {"asset_type": "credit_alphanum4", "asset_code": "FUEL",
                         "asset_issuer": ISSUER, "balance": "12.5000000", "limit": "1000.0000000"},
                        {"asset_type": "native", "balance": "9999.9999900"},
                    ],
                },
            )
        )
        account = await network.load_account(ACCOUNT)
        assert account.sequence == 4294967300
        fuel = account.balance_of(Asset("FUEL", ISSUER))
        assert fuel.amount == Decimal("12.5")
        assert fuel.limit == Decimal("1000")
        assert recorder.requests[0].url.path == f"/accounts/{ACCOUNT}"
        await network.close()

    @pytest.mark.asyncio
    async def test_missing_account(self):
        """Should raise AccountNotFound on 404."""
        network, _ = _network(lambda request: httpx.Response(404, json={"status": 404}))
        with pytest.raises(AccountNotFound):
            await network.load_account(ACCOUNT)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_server_errors_are_transient(self, status):
        """Should raise a retryable LedgerConnectionError."""
        network, _ = _network(lambda request: httpx.Response(status, json={}))
        with pytest.raises(LedgerConnectionError) as exc_info:
            await network.load_account(ACCOUNT)
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_get_transaction(self):
        """Should parse a recorded transaction and its text memo."""
        network, _ = _network(
            lambda request: httpx.Response(
                200,
                json={
                    "hash": TX_HASH,
                    "ledger": 77,
                    "source_account": ACCOUNT,
                    "successful": True,
                    "memo_type": "text",
                    "memo": "rdm:abc",
                    "created_at": "2025-01-02T03:04:05Z",
                    "paging_token": "330712485662720",
                },
            )
        )
        record = await network.get_transaction(TX_HASH)
        assert record.ledger == 77
        assert record.memo == "rdm:abc"
        assert record.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_unknown_transaction(self):
        """Should return None for a hash Horizon has not recorded."""
        network, _ = _network(lambda request: httpx.Response(404, json={}))
        assert await network.get_transaction(TX_HASH) is None

    @pytest.mark.asyncio
    async def test_history_page(self):
        """Should pass cursor, order and limit and return the next cursor."""
        records = [
            {"hash": "01" * 32, "paging_token": "9", "successful": True, "memo_type": "none"},
            {"hash": "02" * 32, "paging_token": "8", "successful": True, "memo_type": "none"},
        ]
        network, recorder = _network(
            lambda request: httpx.Response(200, json={"_embedded": {"records": records}})
        )
        page = await network.get_transaction_history(ACCOUNT, cursor="10", limit=2)
        assert [r.paging_token for r in page.records] == ["9", "8"]
        assert page.next_cursor == "8"
        params = recorder.requests[0].url.params
        assert params["cursor"] == "10"
        assert params["order"] == "desc"
        assert params["limit"] == "2"


class TestHorizonSubmission:
    """Tests for classic transaction submission."""

    @pytest.mark.asyncio
    async def test_submit_confirmed(self):
        """Should report a 200 response as confirmed."""
        signed = _signed()
        network, recorder = _network(
            lambda request: httpx.Response(200, json={"hash": signed.tx_hash, "ledger": 5})
        )
        result = await network.submit_transaction(signed)
        assert result.status == SubmissionStatus.CONFIRMED
        assert result.ledger == 5
        assert b"tx=" in recorder.requests[0].content

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "codes,exc_class",
        [
            ({"transaction": "tx_failed", "operations": ["op_underfunded"]}, InsufficientBalance),
            ({"transaction": "tx_bad_seq"}, SequenceConflict),
            ({"transaction": "tx_insufficient_fee"}, NetworkRejected),
        ],
    )
    async def test_result_codes(self, codes, exc_class):
        """Should map Horizon result codes to typed errors."""
        signed = _signed()
        network, _ = _network(
            lambda request: httpx.Response(400, json={"extras": {"result_codes": codes}})
        )
        with pytest.raises(exc_class) as exc_info:
            await network.submit_transaction(signed)
        assert exc_info.value.tx_hash == signed.tx_hash
        assert exc_info.value.result_codes["transaction"] == codes["transaction"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 502, 503, 504])
    async def test_server_error_on_submission_carries_hash(self, status):
        """Should treat a 429 or 5xx on submission as outcome unknown."""
        signed = _signed()
        network, _ = _network(lambda request: httpx.Response(status, json={}))
        with pytest.raises(LedgerTimeout) as exc_info:
            await network.submit_transaction(signed)
        assert exc_info.value.tx_hash == signed.tx_hash
        assert exc_info.value.details["status_code"] == status

    @pytest.mark.asyncio
    async def test_connection_lost_during_submission(self):
        """Should raise LedgerTimeout with the hash when the response is lost."""
        signed = _signed()

        def handler(request):
            raise httpx.ReadError("connection reset", request=request)

        network, _ = _network(handler)
        with pytest.raises(LedgerTimeout) as exc_info:
            await network.submit_transaction(signed)
        assert exc_info.value.submitted

    @pytest.mark.asyncio
    async def test_connect_error_is_not_submitted(self):
        """Should raise LedgerConnectionError when the server is unreachable."""
        signed = _signed()

        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        network, _ = _network(handler)
        with pytest.raises(LedgerConnectionError) as exc_info:
            await network.submit_transaction(signed)
        assert exc_info.value.tx_hash is None

    @pytest.mark.asyncio
    async def test_friendbot(self):
        """Should call friendbot with the account address."""
        network, recorder = _network(lambda request: httpx.Response(200, json={}))
        await network.fund_test_account(ACCOUNT)
        assert recorder.requests[0].url.params["addr"] == ACCOUNT


class TestSorobanRpc:
    """Tests for contract calls over JSON-RPC."""

    def _draft(self):
        return _signed().draft

    @pytest.mark.asyncio
    async def test_simulate(self):
        """Should parse resource data, fee and return value."""
        network, recorder = _network(
            _rpc_result(
                {
                    "transactionData": "AAAA",
                    "minResourceFee": "12345",
                    "results": [{"auth": [], "xdr": scval.to_uint32(5).to_xdr()}],
                }
            )
        )
        simulation = await network.simulate_contract(self._draft())
        assert simulation.ok
        assert simulation.min_resource_fee == 12345
        assert scval.from_uint32(simulation.return_value) == 5
        assert json.loads(recorder.requests[0].content)["method"] == "simulateTransaction"

    @pytest.mark.asyncio
    async def test_simulate_error(self):
        """Should return a failed simulation without raising."""
        network, _ = _network(_rpc_result({"error": "HostError: trapped"}))
        simulation = await network.simulate_contract(self._draft())
        assert not simulation.ok
        assert "trapped" in simulation.error

    @pytest.mark.asyncio
    async def test_rpc_error(self):
        """Should raise LedgerError for JSON-RPC errors."""
        network, _ = _network(
            lambda request: httpx.Response(
                200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32600, "message": "bad"}}
            )
        )
        with pytest.raises(LedgerError) as exc_info:
            await network.get_contract_status(TX_HASH)
        assert exc_info.value.details["rpc_code"] == -32600

    @pytest.mark.asyncio
    async def test_send_pending(self):
        """Should report a PENDING send."""
        signed = _signed()
        network, _ = _network(_rpc_result({"status": "PENDING", "hash": signed.tx_hash}))
        result = await network.send_contract(signed)
        assert result.status == SubmissionStatus.PENDING

    @pytest.mark.asyncio
    async def test_send_server_error_carries_hash(self):
        """Should treat a 5xx from sendTransaction as outcome unknown."""
        signed = _signed()
        network, _ = _network(lambda request: httpx.Response(502, json={}))
        with pytest.raises(LedgerTimeout) as exc_info:
            await network.send_contract(signed)
        assert exc_info.value.tx_hash == signed.tx_hash

    @pytest.mark.asyncio
    async def test_send_try_again_later(self):
        """Should reject sends the server refused to queue."""
        signed = _signed()
        network, _ = _network(_rpc_result({"status": "TRY_AGAIN_LATER", "hash": signed.tx_hash}))
        with pytest.raises(NetworkRejected) as exc_info:
            await network.send_contract(signed)
        assert exc_info.value.result_codes["transaction"] == "try_again_later"

    @pytest.mark.asyncio
    async def test_contract_status(self):
        """Should decode the return value of a successful call."""
        network, _ = _network(
            _rpc_result(
                {"status": "SUCCESS", "ledger": 9, "returnValue": scval.to_uint32(42).to_xdr()}
            )
        )
        status = await network.get_contract_status(TX_HASH)
        assert status.status == ContractCallStatus.SUCCESS
        assert scval.from_uint32(status.return_value) == 42

    @pytest.mark.asyncio
    async def test_contract_status_not_found(self):
        """Should report NOT_FOUND for unknown hashes."""
        network, _ = _network(_rpc_result({"status": "NOT_FOUND"}))
        status = await network.get_contract_status(TX_HASH)
        assert status.status == ContractCallStatus.NOT_FOUND

    def test_result_code_names(self):
        """Should convert XDR result code names to Horizon spelling."""
        assert _result_code_name(stellar_xdr.TransactionResultCode.txBAD_SEQ) == "tx_bad_seq"
        assert _result_code_name(stellar_xdr.TransactionResultCode.txFAILED) == "tx_failed"
