"""FuelAnchor ledger settlement and redemption core."""

from .config import SettlementSettings, get_settings, reset_settings
from .contracts import ContractInvoker, InvocationResult, InvocationState
from .exceptions import (
    ErrorCategory,
    LedgerError,
    LedgerTimeout,
    LimitExceeded,
    NetworkRejected,
    OutOfGeofence,
    PolicyError,
    ReconciliationRequired,
    RedemptionIndeterminate,
    SettlementError,
    ValidationError,
)
from .funding import ExternalPaymentProcessor, FleetFunding
from .history import TransactionStream, iter_history
from .horizon import StellarLedgerNetwork
from .keys import InMemorySecretStore, KeyManager, SecretStore
from .ledger_client import LedgerClient
from .limits import DenialReason, LimitDecision, LimitEnforcer
from .logging_utils import configure_logging
from .models import (
    DriverLimits,
    FleetBudget,
    FuelType,
    GeoPoint,
    OwnerType,
    Redemption,
    RedemptionOutcome,
    Station,
    Wallet,
)
from .network import LedgerNetwork
from .reconciliation import Reconciler, ReconciliationResult, ReconciliationStatus
from .redemption import RedemptionCoordinator, RedemptionRequest
from .repositories import InMemorySettlementRepository, SettlementRepository
from .service import Settlement
from .simulated import SimulatedLedgerNetwork
from .wallets import ProvisionedWallet, WalletProvisioner

__version__ = "0.1.0"

__all__ = [
    "ContractInvoker",
    "DenialReason",
    "DriverLimits",
    "ErrorCategory",
    "ExternalPaymentProcessor",
    "FleetBudget",
    "FleetFunding",
    "FuelType",
    "GeoPoint",
    "InMemorySecretStore",
    "InMemorySettlementRepository",
    "InvocationResult",
    "InvocationState",
    "KeyManager",
    "LedgerClient",
    "LedgerError",
    "LedgerNetwork",
    "LedgerTimeout",
    "LimitDecision",
    "LimitEnforcer",
    "LimitExceeded",
    "NetworkRejected",
    "OutOfGeofence",
    "OwnerType",
    "PolicyError",
    "ProvisionedWallet",
    "ReconciliationRequired",
    "ReconciliationResult",
    "ReconciliationStatus",
    "Reconciler",
    "Redemption",
    "RedemptionCoordinator",
    "RedemptionIndeterminate",
    "RedemptionOutcome",
    "RedemptionRequest",
    "SecretStore",
    "Settlement",
    "SettlementError",
    "SettlementRepository",
    "SettlementSettings",
    "SimulatedLedgerNetwork",
    "Station",
    "StellarLedgerNetwork",
    "TransactionStream",
    "ValidationError",
    "Wallet",
    "WalletProvisioner",
    "configure_logging",
    "get_settings",
    "iter_history",
    "reset_settings",
]
