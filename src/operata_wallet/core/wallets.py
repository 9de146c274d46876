"""High-level wallet manager used by the app context and CLI."""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Optional

from operata_wallet.chain.chains import get_chain
from operata_wallet.chain.provider import Web3Provider
from operata_wallet.errors import CustodyError, NotFoundError
from operata_wallet.storage.ledger import Ledger
from operata_wallet.storage.models import KeyPairRecord, WalletRecord
from operata_wallet.vault.keystore import KeyVault

logger = logging.getLogger("operata_wallet.core.wallets")


class WalletManager:
    """Orchestrates vault, Web3 provider and ledger for wallet operations."""

    def __init__(
        self,
        ledger: Ledger,
        provider: Web3Provider,
        vault: Optional[KeyVault] = None,
        default_chain: str = "sepolia",
    ) -> None:
        self.ledger = ledger
        self.provider = provider
        self.vault = vault
        self.default_chain = default_chain

    async def create_wallet(self, workspace_id: str, chain: str | None = None) -> WalletRecord:
        """Generate a sealed keypair and register a wallet for a workspace.

        Raises
        ------
        NotFoundError
            If the workspace does not exist.
        KeyError
            If *chain* is not a supported network.
        CustodyError
            If no vault master secret is configured.
        """
        if self.vault is None:
            raise CustodyError("Vault master secret is not configured")
        chain = chain or self.default_chain
        get_chain(chain)
        if await self.ledger.get_workspace(workspace_id) is None:
            raise NotFoundError(f"Workspace {workspace_id} not found")

        sealed = self.vault.generate()
        wallet = WalletRecord(workspace_id=workspace_id, address=sealed.address, chain=chain)
        await self.ledger.add_wallet(
            wallet,
            KeyPairRecord(
                wallet_id=wallet.id,
                public_key=sealed.public_key,
                private_key=sealed.sealed_private_key,
            ),
        )
        logger.info(f"Wallet {wallet.address} created on {chain} (id={wallet.id})")
        return wallet

    async def require_wallet(self, wallet_id: str) -> WalletRecord:
        wallet = await self.ledger.get_wallet(wallet_id)
        if wallet is None:
            raise NotFoundError(f"Wallet {wallet_id} not found")
        return wallet

    async def link_databases(
        self,
        wallet_id: str,
        *,
        notion_page_id: str | None = None,
        scheduled_transactions_db_id: str | None = None,
        transactions_db_id: str | None = None,
        nft_db_id: str | None = None,
        received_transactions_db_id: str | None = None,
    ) -> WalletRecord:
        """Record the Notion page and databases that belong to a wallet."""
        await self.require_wallet(wallet_id)
        await self.ledger.link_wallet_containers(
            wallet_id,
            notion_page_id=notion_page_id,
            scheduled_transactions_db_id=scheduled_transactions_db_id,
            transactions_db_id=transactions_db_id,
            nft_db_id=nft_db_id,
            received_transactions_db_id=received_transactions_db_id,
        )
        return await self.require_wallet(wallet_id)

    async def get_balance(self, wallet_id: str) -> Decimal:
        """Query the chain for the wallet's native balance and cache it."""
        wallet = await self.require_wallet(wallet_id)
        balance = await asyncio.to_thread(
            self.provider.get_native_balance, wallet.address, wallet.chain
        )
        await self.ledger.update_balance(wallet.id, str(balance))
        return balance
