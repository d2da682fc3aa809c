"""
Wallet key management.

Secrets are generated by stellar-sdk (ed25519, OS CSPRNG), encrypted
with Fernet and kept in a SecretStore keyed by public identity. Signing
decrypts the seed into a SecretHandle that is wiped as soon as the
signature is produced.

SECURITY: secret seeds are never logged, never part of a Wallet record
and are only returned (once, via WalletCreation) on non-production
networks.
"""
from __future__ import annotations

import asyncio
import base64
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import TYPE_CHECKING, Dict, Iterator, Optional, Set, Union

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from stellar_sdk import Keypair

from .config import SettlementSettings
from .exceptions import (
    ConfigurationError,
    LedgerError,
    NotFoundError,
    ProductionFundingDisabled,
    SecretExposureDisabled,
    ValidationError,
)
from .logging_utils import mask_identity
from .models import OwnerType, Wallet, WalletCreation
from .transactions import SignedTransaction, TransactionDraft, encode_draft

if TYPE_CHECKING:
    from .ledger_client import LedgerClient

logger = logging.getLogger(__name__)


class SecretStore(ABC):
    """Storage for encrypted secret seeds, keyed by public identity."""

    @abstractmethod
    def put(self, identity: str, token: bytes) -> None:
        pass

    @abstractmethod
    def get(self, identity: str) -> Optional[bytes]:
        pass

    @abstractmethod
    def delete(self, identity: str) -> bool:
        pass


class InMemorySecretStore(SecretStore):
    """Process-local secret store (dev and tests)."""

    def __init__(self) -> None:
        self._tokens: Dict[str, bytes] = {}

    def put(self, identity: str, token: bytes) -> None:
        self._tokens[identity] = token

    def get(self, identity: str) -> Optional[bytes]:
        return self._tokens.get(identity)

    def delete(self, identity: str) -> bool:
        return self._tokens.pop(identity, None) is not None

    def __len__(self) -> int:
        return len(self._tokens)


class SecretHandle:
    """
    Short-lived, zeroizable holder of a raw ed25519 seed.

    Only the KeyManager creates handles; they are wiped on leaving
    KeyManager.signing_handle().
    """

    __slots__ = ("_identity", "_seed", "_wiped")

    def __init__(self, identity: str, seed: bytearray):
        self._identity = identity
        self._seed = seed
        self._wiped = False

    @property
    def identity(self) -> str:
        return self._identity

    @property
    def is_wiped(self) -> bool:
        return self._wiped

    def keypair(self) -> Keypair:
        if self._wiped:
            raise RuntimeError("Secret handle has been wiped")
        return Keypair.from_raw_ed25519_seed(bytes(self._seed))

    def wipe(self) -> None:
        for i in range(len(self._seed)):
            self._seed[i] = 0
        self._wiped = True

    def __repr__(self) -> str:
        return f"SecretHandle({mask_identity(self._identity)}, wiped={self._wiped})"

    __str__ = __repr__


def derive_fernet_key(secret_store_key: str) -> bytes:
    """Derive a Fernet key from the configured secret store key."""
    raw = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=b"fuelanchor-secret-store",
    ).derive(secret_store_key.encode("utf-8"))
    return base64.urlsafe_b64encode(raw)


class KeyManager:
    """Creates wallets, stores their secrets encrypted and signs with them."""

    def __init__(
        self,
        settings: SettlementSettings,
        client: Optional["LedgerClient"] = None,
        store: Optional[SecretStore] = None,
    ):
        self._settings = settings
        self._client = client
        self._store = store or InMemorySecretStore()
        self._fernet = Fernet(derive_fernet_key(settings.secret_store_key))
        self._background: Set[asyncio.Task] = set()

    def attach_client(self, client: "LedgerClient") -> None:
        self._client = client

    def create_wallet(
        self,
        owner_type: Union[OwnerType, str],
        owner_id: str,
        phone: Optional[str] = None,
        expose_secret: bool = False,
    ) -> Union[Wallet, WalletCreation]:
        """
        Generate a fresh key pair and store its secret.

        Returns the Wallet, or a WalletCreation carrying the secret once
        when ``expose_secret`` is set on a non-production network.
        """
        if expose_secret and self._settings.is_production_network:
            raise SecretExposureDisabled(
                "Secrets cannot be returned on the production network"
            )

        keypair = Keypair.random()
        self._store_seed(keypair.public_key, keypair.raw_secret_key())
        wallet = Wallet(
            public_identity=keypair.public_key,
            owner_type=OwnerType(owner_type),
            owner_id=owner_id,
            phone=phone,
        )
        logger.info(
            f"Created {wallet.owner_type.value} wallet {mask_identity(wallet.public_identity)} "
            f"for {owner_id}"
        )
        if expose_secret:
            return WalletCreation(wallet=wallet, secret=keypair.secret)
        return wallet

    def import_secret(self, secret: str) -> str:
        """Store an existing secret seed; returns its public identity."""
        try:
            keypair = Keypair.from_secret(secret)
        except ValueError:
            raise ValidationError("Invalid secret seed", field="secret")
        self._store_seed(keypair.public_key, keypair.raw_secret_key())
        logger.info(f"Imported signing key for {mask_identity(keypair.public_key)}")
        return keypair.public_key

    def has_secret(self, identity: str) -> bool:
        return self._store.get(identity) is not None

    def _store_seed(self, identity: str, seed: bytes) -> None:
        self._store.put(identity, self._fernet.encrypt(seed))

    @contextmanager
    def signing_handle(self, identity: str) -> Iterator[SecretHandle]:
        """Decrypt the identity's seed into a handle that is wiped on exit."""
        token = self._store.get(identity)
        if token is None:
            raise NotFoundError("signing key", mask_identity(identity))
        try:
            handle = SecretHandle(identity, bytearray(self._fernet.decrypt(token)))
        except InvalidToken:
            raise ConfigurationError(
                f"Secret for {mask_identity(identity)} cannot be decrypted with the "
                f"configured secret store key"
            )
        try:
            yield handle
        finally:
            handle.wipe()

    def sign(self, draft: TransactionDraft, identity: Optional[str] = None) -> SignedTransaction:
        """Encode and sign a draft with the source account's key."""
        identity = identity or draft.source
        if identity != draft.source:
            raise ValidationError("Signer must be the transaction source", field="identity")

        envelope = encode_draft(draft, self._settings.network_passphrase)
        with self.signing_handle(identity) as handle:
            envelope.sign(handle.keypair())
        return SignedTransaction(
            draft=draft,
            envelope_xdr=envelope.to_xdr(),
            tx_hash=envelope.hash_hex(),
        )

    async def fund_on_test_network(self, identity: str) -> bool:
        """
        Best-effort test-network funding.

        Returns False (logged as a warning) when funding fails.

        Raises:
            ProductionFundingDisabled: the configured network is production
        """
        if self._settings.is_production_network:
            raise ProductionFundingDisabled(
                "Test funding is not available on the production network"
            )
        if self._client is None:
            raise ConfigurationError("KeyManager has no ledger client for funding")

        try:
            await self._client.fund_test_account(identity)
        except LedgerError as e:
            logger.warning(f"Test funding failed for {mask_identity(identity)}: {e}")
            return False
        logger.info(f"Funded {mask_identity(identity)} on test network")
        return True

    def schedule_test_funding(self, identity: str) -> "asyncio.Task[bool]":
        """Run fund_on_test_network in the background."""
        task = asyncio.create_task(self.fund_on_test_network(identity))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
