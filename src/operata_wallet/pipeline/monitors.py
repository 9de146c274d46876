"""Periodic wallet scans: balance sync and incoming transfer polling."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Optional

from operata_wallet.chain.chains import get_chain
from operata_wallet.chain.provider import Web3Provider
from operata_wallet.config import MonitorConfig
from operata_wallet.notion.client import NotionClientFactory
from operata_wallet.notion.pages import received_transaction_properties
from operata_wallet.storage.ledger import Ledger
from operata_wallet.storage.models import ReceivedTransactionRecord, WalletRecord

logger = logging.getLogger("operata_wallet.pipeline.monitors")


class _PeriodicScan:
    """Runs :meth:`scan_wallet` over every wallet on a fixed interval.

    The first scan runs immediately. A failure on one wallet is logged and
    the scan moves on to the next.
    """

    label = "scan"

    def __init__(self, ledger: Ledger, interval_seconds: float) -> None:
        self.ledger = ledger
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def scan_wallet(self, wallet: WalletRecord) -> None:
        raise NotImplementedError

    async def run_once(self) -> int:
        """Scan every wallet once. Returns how many wallets failed."""
        failures = 0
        for wallet in await self.ledger.list_wallets():
            try:
                await self.scan_wallet(wallet)
            except Exception as exc:
                failures += 1
                logger.warning(f"{self.label} failed for wallet {wallet.address}: {exc}")
        return failures

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception(f"{self.label} pass failed")
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop(), name=self.label)
            logger.info(f"{self.label} started (every {self.interval_seconds:g}s)")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None


class BalanceSyncScheduler(_PeriodicScan):
    """Refreshes each wallet's cached native balance."""

    label = "Balance sync"

    def __init__(self, ledger: Ledger, provider: Web3Provider, config: MonitorConfig | None = None) -> None:
        config = config or MonitorConfig()
        super().__init__(ledger, config.balance_sync_interval_seconds)
        self.provider = provider

    async def scan_wallet(self, wallet: WalletRecord) -> None:
        balance = await asyncio.to_thread(
            self.provider.get_native_balance, wallet.address, wallet.chain
        )
        await self.ledger.update_balance(wallet.id, str(balance))


class TransactionMonitor(_PeriodicScan):
    """Records native transfers received by each wallet.

    New blocks since ``last_scanned_block`` are scanned, at most
    ``max_blocks_per_scan`` per pass. Each new transfer is stored once and,
    when the wallet has a Received Transactions database, added to it.
    """

    label = "Transaction monitor"

    def __init__(
        self,
        ledger: Ledger,
        provider: Web3Provider,
        notion: NotionClientFactory,
        config: MonitorConfig | None = None,
    ) -> None:
        config = config or MonitorConfig()
        super().__init__(ledger, config.transaction_poll_interval_seconds)
        self.provider = provider
        self.notion = notion
        self.max_blocks = config.max_blocks_per_scan

    async def scan_wallet(self, wallet: WalletRecord) -> None:
        head = await asyncio.to_thread(self.provider.get_block_number, wallet.chain)
        if wallet.last_scanned_block is None:
            start = max(0, head - self.max_blocks + 1)
        else:
            start = wallet.last_scanned_block + 1
        if start > head:
            return
        end = min(head, start + self.max_blocks - 1)

        transfers = await asyncio.to_thread(
            self.provider.get_incoming_transfers, wallet.address, wallet.chain, start, end
        )
        symbol = get_chain(wallet.chain).native_symbol
        for transfer in transfers:
            if await self.ledger.has_received(wallet.id, transfer.tx_hash):
                continue
            record = ReceivedTransactionRecord(
                wallet_id=wallet.id,
                from_address=transfer.sender,
                amount=format(transfer.amount.normalize(), "f"),
                token_name=symbol,
                transaction_hash=transfer.tx_hash,
                date=transfer.timestamp,
            )
            record.notion_page_id = await self._add_page(wallet, record, transfer.amount)
            await self.ledger.add_received(record)
            logger.info(
                f"Received {record.amount} {symbol} from {record.from_address} "
                f"in wallet {wallet.address} (tx={record.transaction_hash})"
            )
        await self.ledger.update_last_scanned_block(wallet.id, end)

    async def _add_page(self, wallet: WalletRecord, record: ReceivedTransactionRecord, amount) -> Optional[str]:
        if not wallet.received_transactions_db_id:
            return None
        workspace = await self.ledger.get_workspace(wallet.workspace_id)
        if workspace is None:
            return None
        client = self.notion.for_token(workspace.notion_token)
        try:
            page = await client.create_page(
                wallet.received_transactions_db_id,
                received_transaction_properties(
                    from_address=record.from_address,
                    amount=amount,
                    token_name=record.token_name,
                    transaction_hash=record.transaction_hash,
                    date=record.date,
                    status=record.status,
                ),
            )
        except Exception as exc:
            logger.warning(f"Could not add received transaction {record.transaction_hash} to Notion: {exc}")
            return None
        return page.get("id")
