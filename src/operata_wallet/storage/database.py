"""Async SQLite database layer for Operata Wallet.

Uses ``aiosqlite`` for non-blocking database access with WAL mode and
dictionary-style row results.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Optional

import aiosqlite


class Database:
    """Thin async wrapper around an SQLite database.

    Parameters
    ----------
    db_path:
        Filesystem path to the SQLite database file.  The file (and any
        intermediate directories) will be created automatically on
        :meth:`connect` if they do not already exist.  ``":memory:"`` opens
        a private in-memory database.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = db_path if db_path == ":memory:" else Path(db_path)
        self._conn: Optional[aiosqlite.Connection] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the database connection, enable WAL mode, and run migrations."""
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(str(self.db_path))

        # Enable WAL mode for better concurrent read performance.
        await self._conn.execute("PRAGMA journal_mode=WAL;")

        # Return rows as ``sqlite3.Row`` so we can convert to dicts easily.
        self._conn.row_factory = sqlite3.Row

        # Enable foreign key enforcement.
        await self._conn.execute("PRAGMA foreign_keys=ON;")

        await self._migrate()

    async def close(self) -> None:
        """Close the database connection gracefully."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------

    async def execute(self, sql: str, params: tuple = ()) -> aiosqlite.Cursor:
        """Execute a SQL statement and commit.

        Returns the raw ``aiosqlite.Cursor`` so callers can inspect
        ``lastrowid``, ``rowcount``, etc.
        """
        assert self._conn is not None, "Database not connected. Call connect() first."
        cursor = await self._conn.execute(sql, params)
        await self._conn.commit()
        return cursor

    async def fetch_one(self, sql: str, params: tuple = ()) -> Optional[dict]:
        """Execute a query and return the first row as a dict, or ``None``."""
        assert self._conn is not None, "Database not connected. Call connect() first."
        cursor = await self._conn.execute(sql, params)
        row = await cursor.fetchone()
        if row is None:
            return None
        return dict(row)

    async def fetch_all(self, sql: str, params: tuple = ()) -> list[dict]:
        """Execute a query and return all rows as a list of dicts."""
        assert self._conn is not None, "Database not connected. Call connect() first."
        cursor = await self._conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Migrations
    # ------------------------------------------------------------------

    async def _migrate(self) -> None:
        """Create all required tables if they do not already exist."""
        assert self._conn is not None

        await self._conn.executescript(
            """\
            CREATE TABLE IF NOT EXISTS workspaces (
                id TEXT PRIMARY KEY,
                notion_workspace_id TEXT UNIQUE NOT NULL,
                notion_token TEXT NOT NULL,
                name TEXT DEFAULT '',
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS wallets (
                id TEXT PRIMARY KEY,
                workspace_id TEXT NOT NULL,
                address TEXT NOT NULL,
                chain TEXT NOT NULL,
                balance TEXT DEFAULT '0',
                last_sync_at TIMESTAMP,
                last_scanned_block INTEGER,
                notion_page_id TEXT,
                scheduled_transactions_db_id TEXT,
                transactions_db_id TEXT,
                nft_db_id TEXT,
                received_transactions_db_id TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (workspace_id) REFERENCES workspaces(id)
            );

            CREATE TABLE IF NOT EXISTS key_pairs (
                wallet_id TEXT PRIMARY KEY,
                public_key TEXT NOT NULL,
                private_key TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (wallet_id) REFERENCES wallets(id)
            );

            CREATE TABLE IF NOT EXISTS scheduled_transactions (
                id TEXT PRIMARY KEY,
                notion_page_id TEXT UNIQUE NOT NULL,
                wallet_id TEXT NOT NULL,
                transaction_name TEXT NOT NULL,
                to_address TEXT NOT NULL,
                amount TEXT NOT NULL,
                schedule_date TIMESTAMP NOT NULL,
                admin_status TEXT DEFAULT 'Scheduled',
                operata_status TEXT DEFAULT 'Pending',
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (wallet_id) REFERENCES wallets(id)
            );

            CREATE TABLE IF NOT EXISTS transactions (
                id TEXT PRIMARY KEY,
                hash TEXT UNIQUE NOT NULL,
                from_address TEXT NOT NULL,
                to_address TEXT NOT NULL,
                value TEXT NOT NULL,
                status TEXT DEFAULT 'Pending',
                wallet_id TEXT NOT NULL,
                notion_page_id TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (wallet_id) REFERENCES wallets(id)
            );

            CREATE TABLE IF NOT EXISTS received_transactions (
                id TEXT PRIMARY KEY,
                wallet_id TEXT NOT NULL,
                from_address TEXT NOT NULL,
                amount TEXT NOT NULL,
                token_name TEXT NOT NULL,
                transaction_hash TEXT NOT NULL,
                date TIMESTAMP NOT NULL,
                status TEXT DEFAULT 'Confirmed',
                notion_page_id TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE (wallet_id, transaction_hash),
                FOREIGN KEY (wallet_id) REFERENCES wallets(id)
            );

            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                queue TEXT NOT NULL,
                type TEXT NOT NULL,
                payload_json TEXT DEFAULT '{}',
                state TEXT NOT NULL,
                attempts_made INTEGER DEFAULT 0,
                max_attempts INTEGER DEFAULT 6,
                backoff_type TEXT DEFAULT 'exponential',
                backoff_delay_ms INTEGER DEFAULT 10000,
                available_at REAL NOT NULL,
                locked_by TEXT,
                lock_expires_at REAL,
                last_error TEXT,
                created_at REAL NOT NULL,
                finished_at REAL
            );

            CREATE INDEX IF NOT EXISTS idx_jobs_ready
                ON jobs (queue, state, available_at);
            """
        )
        await self._conn.commit()


# ------------------------------------------------------------------
# Convenience factory
# ------------------------------------------------------------------

def get_database(db_path: Path) -> Database:
    """Return a :class:`Database` instance pointing at *db_path*.

    The caller is responsible for calling :meth:`Database.connect` before
    using the returned instance.
    """
    return Database(db_path)
