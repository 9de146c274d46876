"""Relational ledger: typed queries over the Operata Wallet tables.

The ledger is the authoritative store. Notion only ever mirrors what is
written here.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from operata_wallet.errors import NotFoundError
from operata_wallet.storage.database import Database
from operata_wallet.storage.models import (
    KeyPairRecord,
    OperataStatus,
    ReceivedTransactionRecord,
    ScheduledTransactionRecord,
    TransactionRecord,
    TransactionStatus,
    WalletRecord,
    WorkspaceRecord,
    utcnow,
)

logger = logging.getLogger("operata_wallet.storage.ledger")

# Columns a caller may change through update_scheduled().
_SCHEDULED_MUTABLE = {
    "transaction_name",
    "to_address",
    "amount",
    "schedule_date",
    "admin_status",
    "operata_status",
}

_WALLET_CONTAINERS = {
    "notion_page_id",
    "scheduled_transactions_db_id",
    "transactions_db_id",
    "nft_db_id",
    "received_transactions_db_id",
}


def _db_value(value: Any) -> Any:
    """Convert enums and datetimes to their column representation."""
    if hasattr(value, "value"):
        return value.value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


class Ledger:
    """Typed access to workspaces, wallets, scheduled transfers and jobs."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Workspaces
    # ------------------------------------------------------------------

    async def add_workspace(self, workspace: WorkspaceRecord) -> WorkspaceRecord:
        await self.db.execute(
            "INSERT INTO workspaces (id, notion_workspace_id, notion_token, name, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                workspace.id,
                workspace.notion_workspace_id,
                workspace.notion_token,
                workspace.name,
                workspace.created_at.isoformat(),
            ),
        )
        logger.info(f"Workspace registered: {workspace.notion_workspace_id} (id={workspace.id})")
        return workspace

    async def get_workspace(self, workspace_id: str) -> Optional[WorkspaceRecord]:
        row = await self.db.fetch_one(
            "SELECT * FROM workspaces WHERE id = ?", (workspace_id,)
        )
        return WorkspaceRecord.model_validate(row) if row else None

    async def get_workspace_by_notion_id(self, notion_workspace_id: str) -> Optional[WorkspaceRecord]:
        row = await self.db.fetch_one(
            "SELECT * FROM workspaces WHERE notion_workspace_id = ?",
            (notion_workspace_id,),
        )
        return WorkspaceRecord.model_validate(row) if row else None

    async def list_workspaces(self) -> list[WorkspaceRecord]:
        rows = await self.db.fetch_all("SELECT * FROM workspaces ORDER BY created_at")
        return [WorkspaceRecord.model_validate(r) for r in rows]

    # ------------------------------------------------------------------
    # Wallets and key pairs
    # ------------------------------------------------------------------

    async def add_wallet(self, wallet: WalletRecord, key_pair: KeyPairRecord) -> WalletRecord:
        """Insert a wallet together with its sealed key pair."""
        await self.db.execute(
            "INSERT INTO wallets (id, workspace_id, address, chain, balance, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                wallet.id,
                wallet.workspace_id,
                wallet.address,
                wallet.chain,
                wallet.balance,
                wallet.created_at.isoformat(),
            ),
        )
        await self.db.execute(
            "INSERT INTO key_pairs (wallet_id, public_key, private_key, created_at) "
            "VALUES (?, ?, ?, ?)",
            (
                key_pair.wallet_id,
                key_pair.public_key,
                key_pair.private_key,
                key_pair.created_at.isoformat(),
            ),
        )
        return wallet

    async def get_wallet(self, wallet_id: str) -> Optional[WalletRecord]:
        row = await self.db.fetch_one("SELECT * FROM wallets WHERE id = ?", (wallet_id,))
        return WalletRecord.model_validate(row) if row else None

    async def list_wallets(self, workspace_id: str | None = None) -> list[WalletRecord]:
        if workspace_id:
            rows = await self.db.fetch_all(
                "SELECT * FROM wallets WHERE workspace_id = ? ORDER BY created_at",
                (workspace_id,),
            )
        else:
            rows = await self.db.fetch_all("SELECT * FROM wallets ORDER BY created_at")
        return [WalletRecord.model_validate(r) for r in rows]

    async def get_key_pair(self, wallet_id: str) -> Optional[KeyPairRecord]:
        row = await self.db.fetch_one(
            "SELECT * FROM key_pairs WHERE wallet_id = ?", (wallet_id,)
        )
        return KeyPairRecord.model_validate(row) if row else None

    async def link_wallet_containers(self, wallet_id: str, **containers: str | None) -> None:
        """Record the Notion page and per-purpose database ids for a wallet."""
        unknown = set(containers) - _WALLET_CONTAINERS
        if unknown:
            raise ValueError(f"Unknown wallet container fields: {sorted(unknown)}")
        fields = {k: v for k, v in containers.items() if v is not None}
        if not fields:
            return
        assignments = ", ".join(f"{k} = ?" for k in fields)
        await self.db.execute(
            f"UPDATE wallets SET {assignments} WHERE id = ?",
            (*fields.values(), wallet_id),
        )

    async def update_balance(self, wallet_id: str, balance: str) -> None:
        await self.db.execute(
            "UPDATE wallets SET balance = ?, last_sync_at = ? WHERE id = ?",
            (balance, utcnow().isoformat(), wallet_id),
        )

    async def update_last_scanned_block(self, wallet_id: str, block_number: int) -> None:
        await self.db.execute(
            "UPDATE wallets SET last_scanned_block = ? WHERE id = ?",
            (block_number, wallet_id),
        )

    # ------------------------------------------------------------------
    # Scheduled transactions
    # ------------------------------------------------------------------

    async def get_scheduled(self, notion_page_id: str) -> Optional[ScheduledTransactionRecord]:
        row = await self.db.fetch_one(
            "SELECT * FROM scheduled_transactions WHERE notion_page_id = ?",
            (notion_page_id,),
        )
        return ScheduledTransactionRecord.model_validate(row) if row else None

    async def list_scheduled(self, status: OperataStatus | None = None) -> list[ScheduledTransactionRecord]:
        if status:
            rows = await self.db.fetch_all(
                "SELECT * FROM scheduled_transactions WHERE operata_status = ? "
                "ORDER BY schedule_date",
                (status.value,),
            )
        else:
            rows = await self.db.fetch_all(
                "SELECT * FROM scheduled_transactions ORDER BY schedule_date"
            )
        return [ScheduledTransactionRecord.model_validate(r) for r in rows]

    async def upsert_scheduled(self, record: ScheduledTransactionRecord) -> ScheduledTransactionRecord:
        """Insert or update by ``notion_page_id``.

        On conflict the detail fields and admin status are refreshed only
        while the stored row is still Pending; the stored operata status and
        the row id are always kept. Callers compare the returned row's
        status to learn whether the update was refused.
        """
        now = utcnow().isoformat()
        await self.db.execute(
            "INSERT INTO scheduled_transactions "
            "(id, notion_page_id, wallet_id, transaction_name, to_address, amount, "
            "schedule_date, admin_status, operata_status, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(notion_page_id) DO UPDATE SET "
            "transaction_name = excluded.transaction_name, "
            "to_address = excluded.to_address, "
            "amount = excluded.amount, "
            "schedule_date = excluded.schedule_date, "
            "admin_status = excluded.admin_status, "
            "updated_at = excluded.updated_at "
            "WHERE scheduled_transactions.operata_status = ?",
            (
                record.id,
                record.notion_page_id,
                record.wallet_id,
                record.transaction_name,
                record.to_address,
                record.amount,
                record.schedule_date.isoformat(),
                record.admin_status.value,
                record.operata_status.value,
                now,
                now,
                OperataStatus.PENDING.value,
            ),
        )
        stored = await self.get_scheduled(record.notion_page_id)
        if stored is None:
            raise NotFoundError(f"Scheduled transaction {record.notion_page_id} vanished after upsert")
        return stored

    async def update_scheduled(
        self,
        notion_page_id: str,
        expected: OperataStatus | None = None,
        **fields: Any,
    ) -> bool:
        """Persist only the given columns of a scheduled transaction.

        With *expected*, the row is only changed while its operata status
        still equals it. Returns ``False`` if nothing was written.
        """
        unknown = set(fields) - _SCHEDULED_MUTABLE
        if unknown:
            raise ValueError(f"Unknown scheduled transaction fields: {sorted(unknown)}")
        if not fields:
            return False
        assignments = ", ".join(f"{k} = ?" for k in fields)
        sql = f"UPDATE scheduled_transactions SET {assignments}, updated_at = ? WHERE notion_page_id = ?"
        params = [*(_db_value(v) for v in fields.values()), utcnow().isoformat(), notion_page_id]
        if expected is not None:
            sql += " AND operata_status = ?"
            params.append(expected.value)
        cursor = await self.db.execute(sql, tuple(params))
        return cursor.rowcount > 0

    async def set_operata_status(self, notion_page_id: str, status: OperataStatus) -> None:
        await self.update_scheduled(notion_page_id, operata_status=status)

    async def transition_status(
        self,
        notion_page_id: str,
        expected: OperataStatus,
        new: OperataStatus,
    ) -> bool:
        """Move ``operata_status`` from *expected* to *new* atomically.

        Returns ``False`` (and changes nothing) if the stored status was not
        *expected*.
        """
        cursor = await self.db.execute(
            "UPDATE scheduled_transactions SET operata_status = ?, updated_at = ? "
            "WHERE notion_page_id = ? AND operata_status = ?",
            (new.value, utcnow().isoformat(), notion_page_id, expected.value),
        )
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def add_transaction(self, record: TransactionRecord) -> TransactionRecord:
        await self.db.execute(
            "INSERT INTO transactions "
            "(id, hash, from_address, to_address, value, status, wallet_id, notion_page_id, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                record.id,
                record.hash,
                record.from_address,
                record.to_address,
                record.value,
                record.status.value,
                record.wallet_id,
                record.notion_page_id,
                record.created_at.isoformat(),
            ),
        )
        return record

    async def find_transaction(
        self,
        notion_page_id: str,
        status: TransactionStatus,
    ) -> Optional[TransactionRecord]:
        """Most recent transfer for a scheduled page in the given status."""
        row = await self.db.fetch_one(
            "SELECT * FROM transactions WHERE notion_page_id = ? AND status = ? "
            "ORDER BY created_at DESC LIMIT 1",
            (notion_page_id, status.value),
        )
        return TransactionRecord.model_validate(row) if row else None

    async def set_transaction_status(self, tx_hash: str, status: TransactionStatus) -> None:
        await self.db.execute(
            "UPDATE transactions SET status = ? WHERE hash = ?",
            (status.value, tx_hash),
        )

    async def list_transactions(self, wallet_id: str | None = None) -> list[TransactionRecord]:
        if wallet_id:
            rows = await self.db.fetch_all(
                "SELECT * FROM transactions WHERE wallet_id = ? ORDER BY created_at DESC",
                (wallet_id,),
            )
        else:
            rows = await self.db.fetch_all(
                "SELECT * FROM transactions ORDER BY created_at DESC"
            )
        return [TransactionRecord.model_validate(r) for r in rows]

    # ------------------------------------------------------------------
    # Received transactions
    # ------------------------------------------------------------------

    async def has_received(self, wallet_id: str, transaction_hash: str) -> bool:
        row = await self.db.fetch_one(
            "SELECT id FROM received_transactions WHERE wallet_id = ? AND transaction_hash = ?",
            (wallet_id, transaction_hash),
        )
        return row is not None

    async def add_received(self, record: ReceivedTransactionRecord) -> ReceivedTransactionRecord:
        await self.db.execute(
            "INSERT INTO received_transactions "
            "(id, wallet_id, from_address, amount, token_name, transaction_hash, date, "
            "status, notion_page_id, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                record.id,
                record.wallet_id,
                record.from_address,
                record.amount,
                record.token_name,
                record.transaction_hash,
                record.date.isoformat(),
                record.status,
                record.notion_page_id,
                record.created_at.isoformat(),
            ),
        )
        return record

    async def list_received(self, wallet_id: str) -> list[ReceivedTransactionRecord]:
        rows = await self.db.fetch_all(
            "SELECT * FROM received_transactions WHERE wallet_id = ? ORDER BY date DESC",
            (wallet_id,),
        )
        return [ReceivedTransactionRecord.model_validate(r) for r in rows]
