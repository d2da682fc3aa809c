"""Canonical configuration surface for the settlement core."""
from __future__ import annotations

import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings

DEV_SECRET_STORE_KEY = "dev-only-secret-store-key-not-for-production"

# Network presets: passphrase, Horizon, Soroban RPC, friendbot
NETWORK_PRESETS = {
    "testnet": {
        "passphrase": "Test SDF Network ; September 2015",
        "horizon_url": "https://horizon-testnet.stellar.org",
        "soroban_rpc_url": "https://soroban-testnet.stellar.org",
        "friendbot_url": "https://friendbot.stellar.org",
    },
    "mainnet": {
        "passphrase": "Public Global Stellar Network ; September 2015",
        "horizon_url": "https://horizon.stellar.org",
        "soroban_rpc_url": "",
        "friendbot_url": "",
    },
}


class SettlementSettings(BaseSettings):
    """Main settlement configuration."""

    # Environment
    environment: Literal["dev", "sandbox", "prod"] = "dev"

    # Ledger execution mode
    ledger_mode: Literal["simulated", "live"] = "simulated"

    # Network selection
    network: Literal["testnet", "mainnet", "custom"] = "testnet"
    horizon_url: str = ""
    soroban_rpc_url: str = ""
    network_passphrase: str = ""
    friendbot_url: str = ""

    # Settlement asset
    asset_code: str = "FUEL"
    asset_issuer: str = ""
    distributor_identity: str = ""
    # Imported into the secret store at startup in live mode; never logged
    distributor_secret: Optional[SecretStr] = None

    # Authorization ceiling for holders of the settlement asset
    holding_ceiling: Decimal = Decimal("1000000000")

    # Transaction building
    base_fee: int = 100  # stroops
    memo_max_bytes: int = 28
    tx_timeout_seconds: int = 30

    # Transport
    request_timeout_seconds: float = 15.0
    max_retries: int = 3
    retry_delay_seconds: float = 0.5

    # Confirmation
    payment_confirmation_timeout: float = 30.0
    payment_poll_interval: float = 1.0
    contract_poll_interval: float = 1.0
    contract_poll_deadline: float = 30.0
    sequence_cache_ttl_seconds: float = 30.0

    # Optional contracts
    credit_score_contract_id: str = ""

    # Security
    secret_store_key: str = ""

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    class Config:
        env_prefix = "FUELANCHOR_"
        env_nested_delimiter = "__"
        env_file = ".env"
        extra = "ignore"

    @field_validator("asset_code")
    @classmethod
    def validate_asset_code(cls, v: str) -> str:
        if not v or len(v) > 12 or not v.isalnum():
            raise ValueError("asset_code must be 1-12 alphanumeric characters")
        return v

    @field_validator("holding_ceiling")
    @classmethod
    def validate_holding_ceiling(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("holding_ceiling must be positive")
        return v

    @field_validator("secret_store_key")
    @classmethod
    def validate_secret_store_key(cls, v: str) -> str:
        env = os.getenv("FUELANCHOR_ENVIRONMENT", "dev")
        if env != "dev" and (not v or len(v) < 32):
            raise ValueError(
                "SECRET_STORE_KEY must be at least 32 characters outside dev. "
                "Generate with: python -c \"import secrets; print(secrets.token_urlsafe(32))\""
            )
        return v or DEV_SECRET_STORE_KEY

    @model_validator(mode="after")
    def apply_network_defaults(self) -> "SettlementSettings":
        """Fill endpoint and passphrase defaults from the selected network."""
        preset = NETWORK_PRESETS.get(self.network)
        if preset is not None:
            self.network_passphrase = self.network_passphrase or preset["passphrase"]
            self.horizon_url = self.horizon_url or preset["horizon_url"]
            self.soroban_rpc_url = self.soroban_rpc_url or preset["soroban_rpc_url"]
            self.friendbot_url = self.friendbot_url or preset["friendbot_url"]
        elif not self.network_passphrase:
            raise ValueError("network_passphrase is required for a custom network")

        if self.network == "mainnet" and self.secret_store_key == DEV_SECRET_STORE_KEY:
            raise ValueError("The dev secret store key cannot be used on mainnet")

        if self.ledger_mode == "live" and not self.asset_issuer:
            raise ValueError("asset_issuer is required in live ledger mode")

        return self

    @property
    def is_production_network(self) -> bool:
        return self.network == "mainnet"


@lru_cache
def get_settings(env_file: Optional[str] = None) -> SettlementSettings:
    """Load SettlementSettings once per process to keep services consistent."""
    env_path = Path(env_file) if env_file else None
    return SettlementSettings(_env_file=env_path)


def reset_settings() -> None:
    """Drop the cached settings (tests and reconfiguration)."""
    get_settings.cache_clear()
