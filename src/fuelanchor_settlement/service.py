"""
Wiring of the settlement components.

``Settlement.build()`` assembles one object graph per process: a ledger
network adapter chosen by ``ledger_mode``, the retrying client, key and
sequence management, and the redemption, funding and reconciliation
services on top.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from .authorizer import AssetAuthorizer
from .config import SettlementSettings, get_settings
from .contracts import ContractInvoker
from .credit import CreditScoreRecorder
from .exceptions import ConfigurationError
from .funding import ExternalPaymentProcessor, FleetFunding
from .horizon import StellarLedgerNetwork
from .keys import KeyManager, SecretStore
from .ledger_client import LedgerClient
from .limits import LimitEnforcer
from .logging_utils import SettlementLogger, get_settlement_logger, mask_identity
from .models import OwnerType
from .network import LedgerNetwork
from .reconciliation import Reconciler
from .redemption import RedemptionCoordinator
from .repositories import InMemorySettlementRepository, SettlementRepository
from .sequencing import KeyedLocks, SequenceManager
from .simulated import SimulatedLedgerNetwork
from .transfer import TransferEngine
from .wallets import WalletProvisioner

logger = logging.getLogger(__name__)

# Native reserve given to bootstrap accounts on the simulated ledger
BOOTSTRAP_NATIVE_BALANCE = Decimal("10000")


class Settlement:
    """The assembled settlement core."""

    def __init__(
        self,
        settings: SettlementSettings,
        network: LedgerNetwork,
        keys: KeyManager,
        repository: SettlementRepository,
        slog: Optional[SettlementLogger] = None,
    ):
        self.settings = settings
        self.network = network
        self.slog = slog or get_settlement_logger()
        self.repository = repository

        self.client = LedgerClient(network, settings, self.slog)
        self.keys = keys
        self.keys.attach_client(self.client)
        self.sequences = SequenceManager(
            self.client, settings.sequence_cache_ttl_seconds, self.slog
        )
        self.locks = KeyedLocks()

        self.authorizer = AssetAuthorizer(
            self.client, self.keys, self.sequences, settings, self.slog
        )
        self.transfers = TransferEngine(
            self.client, self.keys, self.sequences, settings, self.slog
        )
        self.invoker = ContractInvoker(
            self.client, self.keys, self.sequences, settings, self.slog
        )
        self.credit = CreditScoreRecorder(self.invoker, repository, settings)
        self.coordinator = RedemptionCoordinator(
            repository,
            self.transfers,
            self.client,
            enforcer=LimitEnforcer(),
            credit=self.credit,
            slog=self.slog,
            locks=self.locks,
        )
        self.reconciler = Reconciler(
            repository, self.client, settings, credit=self.credit, slog=self.slog
        )
        self.funding = FleetFunding(
            repository, self.transfers, self.client, settings, self.locks, self.slog
        )
        self.payments = ExternalPaymentProcessor(
            repository, self.transfers, self.client, settings, self.locks, self.slog
        )
        self.wallets = WalletProvisioner(
            self.keys,
            self.authorizer,
            repository,
            fund_on_test_network=not settings.is_production_network,
        )

    @classmethod
    def build(
        cls,
        settings: Optional[SettlementSettings] = None,
        network: Optional[LedgerNetwork] = None,
        repository: Optional[SettlementRepository] = None,
        secret_store: Optional[SecretStore] = None,
    ) -> "Settlement":
        """
        Assemble a Settlement from configuration.

        In simulated mode without a configured issuer a fresh issuer is
        created on the simulated ledger and also acts as distributor.
        """
        settings = settings or get_settings()
        keys = KeyManager(settings, store=secret_store)

        if settings.distributor_secret is not None:
            identity = keys.import_secret(settings.distributor_secret.get_secret_value())
            if settings.distributor_identity and settings.distributor_identity != identity:
                raise ConfigurationError(
                    "distributor_secret does not belong to distributor_identity"
                )
            settings = settings.model_copy(update={"distributor_identity": identity})

        if network is None:
            if settings.ledger_mode == "live":
                network = StellarLedgerNetwork(settings)
            else:
                network = SimulatedLedgerNetwork(settings.network_passphrase)

        if isinstance(network, SimulatedLedgerNetwork) and not settings.asset_issuer:
            settings = cls._bootstrap_simulated(settings, keys, network)

        return cls(settings, network, keys, repository or InMemorySettlementRepository())

    @staticmethod
    def _bootstrap_simulated(
        settings: SettlementSettings,
        keys: KeyManager,
        network: SimulatedLedgerNetwork,
    ) -> SettlementSettings:
        issuer = keys.create_wallet(OwnerType.DISTRIBUTOR, "issuer")
        network.create_account(issuer.public_identity, BOOTSTRAP_NATIVE_BALANCE)
        logger.info(
            f"Bootstrapped simulated issuer {mask_identity(issuer.public_identity)} "
            f"for {settings.asset_code}"
        )
        return settings.model_copy(
            update={
                "asset_issuer": issuer.public_identity,
                "distributor_identity": settings.distributor_identity or issuer.public_identity,
            }
        )

    async def close(self) -> None:
        await self.client.close()

    async def __aenter__(self) -> "Settlement":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
