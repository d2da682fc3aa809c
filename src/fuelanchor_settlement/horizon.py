"""
Live ledger adapter: Horizon REST for classic transactions and Soroban
JSON-RPC for contract calls, both over a shared httpx.AsyncClient.

Transport failures are classified by whether a transaction may have
reached the network:

- before submission, or on reads: LedgerConnectionError / LedgerTimeout
  without a hash (safe to retry)
- during submission: LedgerTimeout carrying the hash (outcome unknown,
  query by hash before resubmitting)
"""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
from stellar_sdk import xdr as stellar_xdr

from .config import SettlementSettings
from .exceptions import (
    AccountNotFound,
    LedgerConnectionError,
    LedgerError,
    LedgerTimeout,
    NetworkRejected,
    exception_from_result_codes,
)
from .logging_utils import mask_identity
from .models import Account, Balance, HistoryPage, TransactionRecord
from .network import (
    ContractCallStatus,
    ContractStatus,
    LedgerNetwork,
    SimulationResult,
    SubmissionResult,
    SubmissionStatus,
)
from .transactions import SignedTransaction, TransactionDraft, encode_unsigned

logger = logging.getLogger(__name__)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _parse_record(body: Dict[str, Any]) -> TransactionRecord:
    return TransactionRecord(
        tx_hash=body["hash"],
        ledger=body.get("ledger"),
        source_account=body.get("source_account", ""),
        successful=bool(body.get("successful", False)),
        memo=body.get("memo") if body.get("memo_type") == "text" else None,
        created_at=_parse_timestamp(body.get("created_at")),
        paging_token=body.get("paging_token"),
    )


def _decode_scval(value: Optional[str]) -> Any:
    if not value:
        return None
    return stellar_xdr.SCVal.from_xdr(value)


def _result_code_name(code: Any) -> str:
    """XDR result code name (``txBAD_SEQ``) as a Horizon code (``tx_bad_seq``)."""
    name = code.name
    if name.startswith("tx") and not name.startswith("tx_"):
        return f"tx_{name[2:].lower()}"
    return name.lower()


def _return_value_from_meta(meta_xdr: Optional[str]) -> Any:
    if not meta_xdr:
        return None
    meta = stellar_xdr.TransactionMeta.from_xdr(meta_xdr)
    for version in ("v4", "v3"):
        body = getattr(meta, version, None)
        soroban_meta = getattr(body, "soroban_meta", None) if body is not None else None
        if soroban_meta is not None:
            return soroban_meta.return_value
    return None


class StellarLedgerNetwork(LedgerNetwork):
    """LedgerNetwork backed by Horizon and Soroban RPC."""

    def __init__(
        self,
        settings: SettlementSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._horizon_url = settings.horizon_url.rstrip("/")
        self._rpc_url = settings.soroban_rpc_url
        self._friendbot_url = settings.friendbot_url
        self._passphrase = settings.network_passphrase
        self._timeout = settings.request_timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._request_id = 0

        logger.info(f"Initialized ledger adapter for {self._horizon_url}")

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout, connect=10.0),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
                transport=self._transport,
            )
        return self._client

    async def _request(
        self,
        method: str,
        url: str,
        submitted_hash: Optional[str] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = await self._get_client().request(method, url, **kwargs)
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            raise LedgerConnectionError(f"Cannot reach {url}: {e}")
        except httpx.TimeoutException as e:
            raise LedgerTimeout(f"Request to {url} timed out: {e}", tx_hash=submitted_hash)
        except httpx.TransportError as e:
            if submitted_hash:
                raise LedgerTimeout(
                    f"Connection lost during submission: {e}", tx_hash=submitted_hash
                )
            raise LedgerConnectionError(f"Transport error for {url}: {e}")

        if response.status_code == 429 or response.status_code >= 500:
            if submitted_hash:
                # The envelope reached the server; it may still be applied
                raise LedgerTimeout(
                    f"Submission answered with {response.status_code}, outcome unknown",
                    tx_hash=submitted_hash,
                    details={"status_code": response.status_code},
                )
            raise LedgerConnectionError(
                f"{url} returned {response.status_code}",
                details={"status_code": response.status_code},
            )
        return response

    # ------------------------------------------------------------------
    # Horizon
    # ------------------------------------------------------------------

    async def load_account(self, account_id: str) -> Account:
        response = await self._request("GET", f"{self._horizon_url}/accounts/{account_id}")
        if response.status_code == 404:
            raise AccountNotFound(f"Account {mask_identity(account_id)} not found")
        if response.status_code != 200:
            raise LedgerError(f"Loading account failed with status {response.status_code}")

        body = response.json()
        balances = []
        for line in body.get("balances", []):
            if line.get("asset_type") == "native":
                balances.append(Balance(None, None, Decimal(line["balance"])))
            elif "asset_code" in line:
                balances.append(
                    Balance(
                        asset_code=line["asset_code"],
                        asset_issuer=line.get("asset_issuer"),
                        amount=Decimal(line["balance"]),
                        limit=Decimal(line["limit"]) if "limit" in line else None,
                    )
                )
        return Account(
            account_id=body["account_id"],
            sequence=int(body["sequence"]),
            balances=tuple(balances),
        )

    async def submit_transaction(self, tx: SignedTransaction) -> SubmissionResult:
        response = await self._request(
            "POST",
            f"{self._horizon_url}/transactions",
            submitted_hash=tx.tx_hash,
            data={"tx": tx.envelope_xdr},
        )
        body = response.json()
        if response.status_code == 200:
            return SubmissionResult(
                tx_hash=body.get("hash", tx.tx_hash),
                status=SubmissionStatus.CONFIRMED,
                ledger=body.get("ledger"),
            )

        result_codes = body.get("extras", {}).get("result_codes", {})
        if response.status_code == 400 and result_codes:
            raise exception_from_result_codes(
                result_codes.get("transaction"),
                result_codes.get("operations"),
                tx_hash=tx.tx_hash,
            )
        raise NetworkRejected(
            body.get("detail") or f"Submission failed with status {response.status_code}",
            result_codes=result_codes,
            tx_hash=tx.tx_hash,
        )

    async def get_transaction(self, tx_hash: str) -> Optional[TransactionRecord]:
        response = await self._request("GET", f"{self._horizon_url}/transactions/{tx_hash}")
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise LedgerError(f"Transaction lookup failed with status {response.status_code}")
        return _parse_record(response.json())

    async def get_transaction_history(
        self,
        account_id: str,
        cursor: Optional[str] = None,
        limit: int = 20,
        order: str = "desc",
    ) -> HistoryPage:
        params: Dict[str, Any] = {"order": order, "limit": limit}
        if cursor:
            params["cursor"] = cursor
        response = await self._request(
            "GET",
            f"{self._horizon_url}/accounts/{account_id}/transactions",
            params=params,
        )
        if response.status_code == 404:
            raise AccountNotFound(f"Account {mask_identity(account_id)} not found")
        if response.status_code != 200:
            raise LedgerError(f"History lookup failed with status {response.status_code}")

        records = tuple(
            _parse_record(r) for r in response.json().get("_embedded", {}).get("records", [])
        )
        next_cursor = records[-1].paging_token if records else cursor
        return HistoryPage(records=records, next_cursor=next_cursor)

    async def fund_test_account(self, account_id: str) -> None:
        if not self._friendbot_url:
            raise LedgerError("No friendbot configured for this network")
        response = await self._request("GET", self._friendbot_url, params={"addr": account_id})
        if response.status_code != 200:
            raise LedgerError(
                f"Friendbot returned {response.status_code}",
                details={"status_code": response.status_code},
            )

    # ------------------------------------------------------------------
    # Soroban RPC
    # ------------------------------------------------------------------

    async def _rpc(
        self,
        method: str,
        params: Dict[str, Any],
        submitted_hash: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not self._rpc_url:
            raise LedgerError("No Soroban RPC endpoint configured")
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params,
        }
        response = await self._request(
            "POST", self._rpc_url, submitted_hash=submitted_hash, json=payload
        )
        body = response.json()
        if "error" in body:
            error = body["error"]
            raise LedgerError(
                f"RPC {method} failed: {error.get('message', error)}",
                tx_hash=submitted_hash,
                details={"rpc_code": error.get("code")},
            )
        logger.debug(f"RPC call {method} succeeded")
        return body.get("result") or {}

    async def simulate_contract(self, draft: TransactionDraft) -> SimulationResult:
        result = await self._rpc(
            "simulateTransaction",
            {"transaction": encode_unsigned(draft, self._passphrase)},
        )
        if result.get("error"):
            return SimulationResult(error=str(result["error"]))

        results = result.get("results") or []
        first = results[0] if results else {}
        return SimulationResult(
            transaction_data=result.get("transactionData"),
            min_resource_fee=int(result.get("minResourceFee", 0)),
            auth=tuple(first.get("auth") or ()),
            return_value=_decode_scval(first.get("xdr")),
        )

    async def send_contract(self, tx: SignedTransaction) -> SubmissionResult:
        result = await self._rpc(
            "sendTransaction",
            {"transaction": tx.envelope_xdr},
            submitted_hash=tx.tx_hash,
        )
        status = result.get("status")
        tx_hash = result.get("hash", tx.tx_hash)
        if status == "PENDING":
            return SubmissionResult(tx_hash, SubmissionStatus.PENDING)
        if status == "DUPLICATE":
            return SubmissionResult(tx_hash, SubmissionStatus.DUPLICATE)
        if status == "ERROR" and result.get("errorResultXdr"):
            tx_result = stellar_xdr.TransactionResult.from_xdr(result["errorResultXdr"])
            raise exception_from_result_codes(
                _result_code_name(tx_result.result.code), [], tx_hash=tx_hash
            )
        raise NetworkRejected(
            f"Contract submission not accepted: {status}",
            result_codes={"transaction": str(status).lower()},
            tx_hash=tx_hash,
        )

    async def get_contract_status(self, tx_hash: str) -> ContractStatus:
        result = await self._rpc("getTransaction", {"hash": tx_hash})
        status = ContractCallStatus(result.get("status", "NOT_FOUND"))
        if status == ContractCallStatus.NOT_FOUND:
            return ContractStatus(tx_hash=tx_hash, status=status)

        if "returnValue" in result:
            return_value = _decode_scval(result.get("returnValue"))
        else:
            return_value = _return_value_from_meta(result.get("resultMetaXdr"))
        return ContractStatus(
            tx_hash=tx_hash,
            status=status,
            ledger=result.get("ledger"),
            return_value=return_value if status == ContractCallStatus.SUCCESS else None,
            error=result.get("resultXdr") if status == ContractCallStatus.FAILED else None,
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
