"""Transaction executor: unseal, sign, broadcast, confirm.

The executor is the only place plaintext key material exists, and only
inside the vault's ``unsealed`` block around the chain call.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional

from operata_wallet.chain.provider import Web3Provider
from operata_wallet.errors import ChainError, CustodyError
from operata_wallet.pipeline.mirror import StatusMirror
from operata_wallet.storage.ledger import Ledger
from operata_wallet.storage.models import (
    OperataStatus,
    TransactionRecord,
    TransactionStatus,
    WalletRecord,
)
from operata_wallet.vault.keystore import KeyVault

logger = logging.getLogger("operata_wallet.pipeline.executor")


class ExecutionOutcome(str, Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass(frozen=True)
class ExecutionResult:
    """What the job queue should do with a processed job."""

    outcome: ExecutionOutcome
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False

    @classmethod
    def success(cls, tx_hash: str | None = None) -> ExecutionResult:
        return cls(ExecutionOutcome.SUCCESS, tx_hash=tx_hash)

    @classmethod
    def skip(cls, reason: str) -> ExecutionResult:
        return cls(ExecutionOutcome.SUCCESS, error=reason, skipped=True)

    @classmethod
    def retryable(cls, error: str) -> ExecutionResult:
        return cls(ExecutionOutcome.RETRYABLE, error=error)

    @classmethod
    def fatal(cls, error: str) -> ExecutionResult:
        return cls(ExecutionOutcome.FATAL, error=error)


def _parse_amount(amount: str) -> Optional[Decimal]:
    try:
        value = Decimal(amount)
    except (InvalidOperation, TypeError):
        return None
    if not value.is_finite() or value <= 0:
        return None
    return value


class TransactionExecutor:
    """Runs one scheduled native-token transfer to completion.

    Parameters
    ----------
    ledger:
        Authoritative store for wallets, key pairs and transactions.
    vault:
        Opens the wallet's sealed signing key.
    provider:
        Blocking Web3 provider; calls run in a worker thread.
    mirror:
        Writes the resulting status back to the Notion page.
    """

    def __init__(
        self,
        ledger: Ledger,
        vault: KeyVault,
        provider: Web3Provider,
        mirror: StatusMirror,
    ) -> None:
        self.ledger = ledger
        self.vault = vault
        self.provider = provider
        self.mirror = mirror

    async def execute(
        self,
        wallet_id: str,
        to_address: str,
        amount: str,
        page_id: str,
    ) -> ExecutionResult:
        """Transfer *amount* from the wallet to *to_address*.

        Returns
        -------
        ExecutionResult
            ``SUCCESS`` with the transaction hash, ``FATAL`` for failures a
            retry cannot fix (the page is marked Failed), or ``RETRYABLE``
            for chain and network errors (the page stays Processing).
        """
        wallet = await self.ledger.get_wallet(wallet_id)
        if wallet is None:
            return await self._fail(page_id, None, f"Wallet {wallet_id} not found")

        key_pair = await self.ledger.get_key_pair(wallet_id)
        if key_pair is None:
            return await self._fail(page_id, wallet, f"No key pair for wallet {wallet_id}")

        if not self.provider.is_address(to_address):
            return await self._fail(page_id, wallet, f"Invalid destination address {to_address!r}")

        if _parse_amount(amount) is None:
            return await self._fail(page_id, wallet, f"Invalid amount {amount!r}")

        try:
            with self.vault.unsealed(key_pair.private_key) as private_key:
                tx_hash = await asyncio.to_thread(
                    self.provider.submit_transfer,
                    private_key,
                    to_address,
                    amount,
                    wallet.chain,
                )
        except CustodyError as exc:
            return await self._fail(page_id, wallet, f"Signing key unavailable: {exc}")
        except ChainError as exc:
            logger.warning(f"Transfer for page {page_id} was not broadcast, will retry: {exc}")
            return ExecutionResult.retryable(str(exc))

        # Broadcast happened: from here on a retry must confirm this hash, never resend.
        transaction = await self.ledger.add_transaction(
            TransactionRecord(
                hash=tx_hash,
                from_address=wallet.address,
                to_address=to_address,
                value=amount,
                status=TransactionStatus.PENDING,
                wallet_id=wallet.id,
                notion_page_id=page_id,
            )
        )
        logger.info(f"Broadcast {amount} to {to_address} on {wallet.chain}: tx={tx_hash} (page {page_id})")
        return await self.confirm(transaction, wallet)

    async def confirm(
        self,
        transaction: TransactionRecord,
        wallet: WalletRecord | None = None,
    ) -> ExecutionResult:
        """Await the receipt of an already broadcast transfer.

        A missing receipt is ``RETRYABLE`` and leaves the transaction
        Pending, so the next attempt waits on the same hash. A reverted
        transfer is marked Failed and is also ``RETRYABLE``: no value moved,
        so the next attempt may submit again.
        """
        page_id = transaction.notion_page_id
        if wallet is None:
            wallet = await self.ledger.get_wallet(transaction.wallet_id)
            if wallet is None:
                return await self._fail(page_id, None, f"Wallet {transaction.wallet_id} not found")

        try:
            receipt = await asyncio.to_thread(
                self.provider.wait_for_receipt, transaction.hash, wallet.chain
            )
        except ChainError as exc:
            logger.warning(f"Transfer {transaction.hash} for page {page_id} unconfirmed, will retry: {exc}")
            return ExecutionResult.retryable(str(exc))

        if not receipt.succeeded:
            await self.ledger.set_transaction_status(transaction.hash, TransactionStatus.FAILED)
            logger.warning(f"Transfer {transaction.hash} for page {page_id} reverted, will retry")
            return ExecutionResult.retryable(f"Transaction {transaction.hash} reverted")

        await self.ledger.set_transaction_status(transaction.hash, TransactionStatus.SUCCESS)
        await self.ledger.set_operata_status(page_id, OperataStatus.COMPLETED)
        logger.info(
            f"Sent {transaction.value} from {wallet.address} to {transaction.to_address} "
            f"on {wallet.chain}: tx={transaction.hash} block={receipt.block_number} (page {page_id})"
        )
        await self.mirror.push(page_id, wallet, operata=OperataStatus.COMPLETED)
        return ExecutionResult.success(transaction.hash)

    async def _fail(
        self,
        page_id: str,
        wallet: WalletRecord | None,
        reason: str,
    ) -> ExecutionResult:
        logger.error(f"Scheduled transaction {page_id} failed: {reason}")
        await self.ledger.set_operata_status(page_id, OperataStatus.FAILED)
        if wallet is not None:
            await self.mirror.push(page_id, wallet, operata=OperataStatus.FAILED)
        return ExecutionResult.fatal(reason)
