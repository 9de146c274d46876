"""Pydantic models mapping to the Operata Wallet database tables."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class AdminStatus(str, Enum):
    SCHEDULED = "Scheduled"
    APPROVED = "Approved"


class OperataStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (OperataStatus.COMPLETED, OperataStatus.FAILED)


class TransactionStatus(str, Enum):
    PENDING = "Pending"
    SUCCESS = "Success"
    FAILED = "Failed"


class JobState(str, Enum):
    DELAYED = "delayed"
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _new_id() -> str:
    """Generate a short hex ID (12 characters)."""
    return uuid.uuid4().hex[:12]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Record models
# ---------------------------------------------------------------------------

class WorkspaceRecord(BaseModel):
    """Maps to the ``workspaces`` table."""

    id: str = Field(default_factory=_new_id)
    notion_workspace_id: str
    notion_token: str
    name: str = ""
    created_at: datetime = Field(default_factory=utcnow)


class WalletRecord(BaseModel):
    """Maps to the ``wallets`` table."""

    id: str = Field(default_factory=_new_id)
    workspace_id: str
    address: str
    chain: str
    balance: str = "0"
    last_sync_at: Optional[datetime] = None
    last_scanned_block: Optional[int] = None
    notion_page_id: Optional[str] = None
    scheduled_transactions_db_id: Optional[str] = None
    transactions_db_id: Optional[str] = None
    nft_db_id: Optional[str] = None
    received_transactions_db_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class KeyPairRecord(BaseModel):
    """Maps to the ``key_pairs`` table.

    ``private_key`` is the sealed envelope produced by the vault, never the
    raw key.
    """

    wallet_id: str
    public_key: str
    private_key: str
    created_at: datetime = Field(default_factory=utcnow)


class ScheduledTransactionRecord(BaseModel):
    """Maps to the ``scheduled_transactions`` table."""

    id: str = Field(default_factory=_new_id)
    notion_page_id: str
    wallet_id: str
    transaction_name: str
    to_address: str
    amount: str  # stored as string to preserve decimal precision
    schedule_date: datetime
    admin_status: AdminStatus = AdminStatus.SCHEDULED
    operata_status: OperataStatus = OperataStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.operata_status.is_terminal


class TransactionRecord(BaseModel):
    """Maps to the ``transactions`` table."""

    id: str = Field(default_factory=_new_id)
    hash: str
    from_address: str
    to_address: str
    value: str
    status: TransactionStatus = TransactionStatus.PENDING
    wallet_id: str
    notion_page_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class ReceivedTransactionRecord(BaseModel):
    """Maps to the ``received_transactions`` table."""

    id: str = Field(default_factory=_new_id)
    wallet_id: str
    from_address: str
    amount: str
    token_name: str
    transaction_hash: str
    date: datetime
    status: str = "Confirmed"
    notion_page_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class JobRecord(BaseModel):
    """Maps to the ``jobs`` table."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    queue: str
    type: str
    payload_json: str = "{}"
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    max_attempts: int = 6
    backoff_type: str = "exponential"
    backoff_delay_ms: int = 10_000
    available_at: float = 0.0
    locked_by: Optional[str] = None
    lock_expires_at: Optional[float] = None
    last_error: Optional[str] = None
    created_at: float = 0.0
    finished_at: Optional[float] = None
