"""AppContext - wires the ledger, vault, queue and pipeline together."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

import httpx

from operata_wallet.chain.provider import Web3Provider
from operata_wallet.config import (
    AppConfig,
    get_data_dir,
    is_unexpanded,
    load_config,
    resolve_database_path,
    save_config,
)
from operata_wallet.core.wallets import WalletManager
from operata_wallet.notion.client import NotionClientFactory
from operata_wallet.pipeline.executor import TransactionExecutor
from operata_wallet.pipeline.mirror import StatusMirror
from operata_wallet.pipeline.monitors import BalanceSyncScheduler, TransactionMonitor
from operata_wallet.pipeline.processor import ScheduledTransactionProcessor
from operata_wallet.pipeline.queue import JobQueue
from operata_wallet.pipeline.router import WebhookRouter
from operata_wallet.pipeline.synchronizer import StateSynchronizer
from operata_wallet.storage.database import Database, get_database
from operata_wallet.storage.ledger import Ledger
from operata_wallet.vault.keystore import KeyVault

logger = logging.getLogger("operata_wallet.core.context")

CONFIG_FILENAME = "config.yaml"


class AppContext:
    """Every long-lived service of a running Operata Wallet instance.

    Constructing the context only wires objects together. :meth:`start`
    launches the queue workers and background monitors, :meth:`shutdown`
    stops them and closes the database.
    """

    def __init__(
        self,
        config: AppConfig,
        data_dir: Path,
        db: Database,
        provider: Optional[Web3Provider] = None,
        http: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.data_dir = data_dir
        self.db = db
        self.ledger = Ledger(db)
        self.provider = provider or Web3Provider(
            rpc_overrides=config.chain.rpc_urls,
            receipt_timeout=config.chain.receipt_timeout_seconds,
        )
        self.notion = NotionClientFactory(config.notion, http)

        secret = config.vault.master_secret
        self.vault: Optional[KeyVault] = (
            KeyVault(secret) if secret and not is_unexpanded(secret) else None
        )

        self.wallets = WalletManager(
            self.ledger, self.provider, self.vault, config.chain.default_chain
        )
        self.mirror = StatusMirror(self.ledger, self.notion)
        self.queue = JobQueue(db, config.queue, clock=clock)
        self.synchronizer = StateSynchronizer(
            self.ledger,
            self.queue,
            self.mirror,
            clock=lambda: datetime.fromtimestamp(clock(), tz=timezone.utc),
        )
        self.router = WebhookRouter(self.ledger, self.synchronizer, self.notion, config.notion)

        self.executor: Optional[TransactionExecutor] = None
        self.processor: Optional[ScheduledTransactionProcessor] = None
        if self.vault is not None:
            self.executor = TransactionExecutor(self.ledger, self.vault, self.provider, self.mirror)
            self.processor = ScheduledTransactionProcessor(self.ledger, self.executor, self.mirror)
            self.queue.bind(self.processor, self.processor.on_exhausted)

        self.balance_sync = BalanceSyncScheduler(self.ledger, self.provider, config.monitors)
        self.transaction_monitor = TransactionMonitor(
            self.ledger, self.provider, self.notion, config.monitors
        )
        self._started = False

    @classmethod
    async def load(cls, base_path: Path | None = None) -> AppContext:
        """Load an existing instance from a ``.operata`` directory."""
        data_dir = get_data_dir(base_path, create=False)
        config_path = data_dir / CONFIG_FILENAME
        if not config_path.exists():
            raise FileNotFoundError(
                f"No Operata Wallet config at {config_path}. Run 'operata init' first."
            )
        config = load_config(config_path)
        db = get_database(resolve_database_path(config, data_dir))
        await db.connect()
        return cls(config=config, data_dir=data_dir, db=db)

    @classmethod
    async def init(cls, base_path: Path | None = None, config: AppConfig | None = None) -> AppContext:
        """Write a default config and create the database."""
        data_dir = get_data_dir(base_path)
        config = config or AppConfig()
        save_config(config, data_dir / CONFIG_FILENAME)
        db = get_database(resolve_database_path(config, data_dir))
        await db.connect()
        return cls(config=config, data_dir=data_dir, db=db)

    async def start(self) -> None:
        """Start the job workers and, if enabled, the wallet monitors.

        Raises
        ------
        ValueError
            If the vault master secret is not configured.
        """
        if self.vault is None:
            raise ValueError(
                "Vault master secret is not set. Export OPERATA_ENCRYPTION_KEY "
                "or set vault.master_secret in config.yaml."
            )
        await self.queue.start()
        if self.config.monitors.balance_sync_enabled:
            self.balance_sync.start()
        if self.config.monitors.transaction_poll_enabled:
            self.transaction_monitor.start()
        self._started = True
        logger.info("Operata Wallet started")

    async def status(self) -> dict:
        return {
            "queue": self.config.queue.name,
            "paused": self.queue.is_paused,
            "jobs": await self.queue.status(),
            "workspaces": len(await self.ledger.list_workspaces()),
            "wallets": len(await self.ledger.list_wallets()),
        }

    async def shutdown(self) -> None:
        """Clean shutdown."""
        if self._started:
            await self.balance_sync.stop()
            await self.transaction_monitor.stop()
            await self.queue.close()
            self._started = False
        await self.db.close()
