"""Wallet provisioning for drivers, stations and fleets."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union

from .authorizer import AssetAuthorizer
from .exceptions import LedgerError
from .keys import KeyManager
from .logging_utils import mask_identity
from .models import OwnerType, Wallet
from .repositories import SettlementRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProvisionedWallet:
    wallet: Wallet
    funded: bool
    authorized: bool
    created: bool = True


class WalletProvisioner:
    """
    Create, fund and authorize a wallet, then store its record.

    Funding and authorization are best effort: a wallet whose
    authorization failed is still stored and reported with
    ``authorized=False`` so it can be authorized later.
    """

    def __init__(
        self,
        keys: KeyManager,
        authorizer: AssetAuthorizer,
        repository: SettlementRepository,
        fund_on_test_network: bool = True,
    ):
        self._keys = keys
        self._authorizer = authorizer
        self._repository = repository
        self._fund = fund_on_test_network

    async def provision(
        self,
        owner_type: Union[OwnerType, str],
        owner_id: str,
        phone: Optional[str] = None,
    ) -> ProvisionedWallet:
        owner_type = OwnerType(owner_type)
        existing = await self._repository.find_wallet_by_owner(owner_type, owner_id)
        if existing is not None:
            logger.info(f"{owner_type.value} {owner_id} already has wallet "
                        f"{mask_identity(existing.public_identity)}")
            return ProvisionedWallet(
                wallet=existing,
                funded=False,
                authorized=await self._is_authorized(existing.public_identity),
                created=False,
            )

        wallet = self._keys.create_wallet(owner_type, owner_id, phone=phone)

        funded = False
        if self._fund:
            # Accounts must exist on the ledger before they can be authorized
            funded = await self._keys.fund_on_test_network(wallet.public_identity)

        authorized = True
        try:
            await self._authorizer.authorize(wallet.public_identity)
        except LedgerError as e:
            authorized = False
            logger.warning(
                f"Authorization of {mask_identity(wallet.public_identity)} failed: "
                f"{e.error_code} {e}"
            )

        await self._repository.save_wallet(wallet)
        return ProvisionedWallet(wallet=wallet, funded=funded, authorized=authorized)

    async def _is_authorized(self, identity: str) -> bool:
        try:
            return await self._authorizer.is_authorized(identity)
        except LedgerError as e:
            logger.debug(f"Cannot check authorization of {mask_identity(identity)}: {e}")
            return False
