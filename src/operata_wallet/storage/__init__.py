"""Operata Wallet storage layer -- async SQLite database, ledger and Pydantic models."""

from operata_wallet.storage.database import Database, get_database
from operata_wallet.storage.ledger import Ledger
from operata_wallet.storage.models import (
    AdminStatus,
    JobRecord,
    JobState,
    KeyPairRecord,
    OperataStatus,
    ReceivedTransactionRecord,
    ScheduledTransactionRecord,
    TransactionRecord,
    TransactionStatus,
    WalletRecord,
    WorkspaceRecord,
)

__all__ = [
    "Database",
    "get_database",
    "Ledger",
    "AdminStatus",
    "JobRecord",
    "JobState",
    "KeyPairRecord",
    "OperataStatus",
    "ReceivedTransactionRecord",
    "ScheduledTransactionRecord",
    "TransactionRecord",
    "TransactionStatus",
    "WalletRecord",
    "WorkspaceRecord",
]
