"""
Network-agnostic transaction drafts and their XDR encoding.

A TransactionDraft describes what a transaction does; encode_draft()
turns it into a stellar-sdk envelope for a given network passphrase.
Signing happens in the KeyManager, which is the only component holding
secrets.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Optional, Tuple, Union

from stellar_sdk import Account as SdkAccount
from stellar_sdk import Asset as SdkAsset
from stellar_sdk import TransactionBuilder, TransactionEnvelope
from stellar_sdk import xdr as stellar_xdr

from .models import Asset, format_amount


@dataclass(frozen=True)
class PaymentOp:
    destination: str
    asset: Asset
    amount: Decimal


@dataclass(frozen=True)
class ChangeTrustOp:
    asset: Asset
    limit: Decimal


@dataclass(frozen=True)
class InvokeContractOp:
    contract_id: str
    function: str
    args: Tuple[stellar_xdr.SCVal, ...] = ()
    # base64 SorobanAuthorizationEntry values returned by simulation
    auth: Tuple[str, ...] = ()


Operation = Union[PaymentOp, ChangeTrustOp, InvokeContractOp]


@dataclass(frozen=True)
class TransactionDraft:
    """
    Unsigned transaction description.

    ``sequence`` is the source account's current sequence number; the
    encoded transaction uses ``sequence + 1``.
    """
    source: str
    sequence: int
    operations: Tuple[Operation, ...]
    base_fee: int = 100
    timeout_seconds: int = 30
    memo: Optional[str] = None
    soroban_data: Optional[str] = None
    resource_fee: int = 0

    @property
    def kind(self) -> str:
        op = self.operations[0] if self.operations else None
        if isinstance(op, PaymentOp):
            return "payment"
        if isinstance(op, ChangeTrustOp):
            return "change_trust"
        if isinstance(op, InvokeContractOp):
            return "invoke_contract"
        return "empty"

    @property
    def fee(self) -> int:
        return self.base_fee * len(self.operations) + self.resource_fee

    def with_sequence(self, sequence: int) -> "TransactionDraft":
        return replace(self, sequence=sequence)

    def assembled(
        self,
        soroban_data: str,
        resource_fee: int,
        auth: Tuple[str, ...] = (),
    ) -> "TransactionDraft":
        """Attach the resource footprint, fee and auth entries from simulation."""
        operations = tuple(
            replace(op, auth=tuple(auth)) if isinstance(op, InvokeContractOp) else op
            for op in self.operations
        )
        return replace(
            self,
            operations=operations,
            soroban_data=soroban_data,
            resource_fee=resource_fee,
        )


@dataclass(frozen=True)
class SignedTransaction:
    """Signed envelope, ready for submission."""
    draft: TransactionDraft
    envelope_xdr: str = field(repr=False)
    tx_hash: str = ""

    @property
    def source(self) -> str:
        return self.draft.source

    @property
    def sequence(self) -> int:
        return self.draft.sequence + 1


def to_sdk_asset(asset: Asset) -> SdkAsset:
    return SdkAsset(asset.code, asset.issuer)


def encode_draft(draft: TransactionDraft, network_passphrase: str) -> TransactionEnvelope:
    """Build an unsigned stellar-sdk envelope from a draft."""
    if not draft.operations:
        raise ValueError("A transaction needs at least one operation")

    builder = TransactionBuilder(
        source_account=SdkAccount(draft.source, draft.sequence),
        network_passphrase=network_passphrase,
        base_fee=draft.base_fee,
    )
    for op in draft.operations:
        _append_operation(builder, op)
    if draft.memo:
        builder.add_text_memo(draft.memo)
    builder.set_timeout(draft.timeout_seconds)
    if draft.soroban_data:
        builder.set_soroban_data(draft.soroban_data)

    envelope = builder.build()
    # Soroban calls pay the inclusion fee plus the simulated resource fee
    envelope.transaction.fee = draft.fee
    return envelope


def _append_operation(builder: TransactionBuilder, op: Any) -> None:
    if isinstance(op, PaymentOp):
        builder.append_payment_op(
            destination=op.destination,
            asset=to_sdk_asset(op.asset),
            amount=format_amount(op.amount),
        )
    elif isinstance(op, ChangeTrustOp):
        builder.append_change_trust_op(
            asset=to_sdk_asset(op.asset),
            limit=format_amount(op.limit),
        )
    elif isinstance(op, InvokeContractOp):
        auth = [stellar_xdr.SorobanAuthorizationEntry.from_xdr(a) for a in op.auth]
        builder.append_invoke_contract_function_op(
            contract_id=op.contract_id,
            function_name=op.function,
            parameters=list(op.args),
            auth=auth or None,
        )
    else:
        raise TypeError(f"Unsupported operation: {type(op).__name__}")


def encode_unsigned(draft: TransactionDraft, network_passphrase: str) -> str:
    """Unsigned envelope XDR (used for contract simulation)."""
    return encode_draft(draft, network_passphrase).to_xdr()


def decode_envelope(envelope_xdr: str, network_passphrase: str) -> TransactionEnvelope:
    return TransactionEnvelope.from_xdr(envelope_xdr, network_passphrase)
