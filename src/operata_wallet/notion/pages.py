"""Page schemas of the wallet's Notion databases."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from operata_wallet.errors import ValidationError
from operata_wallet.notion.properties import (
    PageProperties,
    encode_date,
    encode_number,
    encode_rich_text,
    encode_select,
    encode_title,
)
from operata_wallet.storage.models import AdminStatus, OperataStatus

logger = logging.getLogger("operata_wallet.notion.pages")

# Scheduled Transactions database
TRANSACTION_NAME = "Transaction Name"
TO_ADDRESS = "To Address"
AMOUNT = "Amount"
SCHEDULE_DATE = "Schedule Date"
ADMIN_STATUS = "Admin Status"
OPERATA_STATUS = "Operata Status"

# Received Transactions database
FROM_ADDRESS = "From Address"
TOKEN_NAME = "Token Name"
TRANSACTION_HASH = "Transaction Hash"
DATE = "Date"
STATUS = "Status"


def parent_database_id(page: dict) -> Optional[str]:
    """Return the id of the database a page lives in, if any."""
    parent = page.get("parent") or {}
    if parent.get("type") != "database_id":
        return None
    return parent.get("database_id")


def parse_notion_date(value: str) -> datetime:
    """Parse a Notion date ``start`` value into an aware datetime.

    Date-only values and naive timestamps are taken as UTC.
    """
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class ScheduledTransactionPage:
    """Decoded fields of a Scheduled Transactions page."""

    page_id: str
    transaction_name: Optional[str]
    to_address: Optional[str]
    amount: Optional[Decimal]
    schedule_date: Optional[datetime]
    admin_status: Optional[AdminStatus]
    operata_status: Optional[OperataStatus]

    def missing_fields(self) -> list[str]:
        missing = []
        if not self.transaction_name:
            missing.append("transactionName")
        if not self.to_address:
            missing.append("toAddress")
        if self.amount is None or self.amount <= 0:
            missing.append("amount")
        if self.schedule_date is None:
            missing.append("scheduleDate")
        return missing

    def require_complete(self) -> None:
        """Raise :class:`ValidationError` if any required field is missing."""
        missing = self.missing_fields()
        if missing:
            raise ValidationError(self.page_id, missing)

    @property
    def amount_text(self) -> str:
        if self.amount is None:
            raise ValidationError(self.page_id, ["amount"])
        return format(self.amount.normalize(), "f")


def _status(enum_cls, raw: Optional[str], page_id: str, field: str):
    if raw is None:
        return None
    try:
        return enum_cls(raw)
    except ValueError:
        logger.warning(f"Ignoring unknown {field} '{raw}' on page {page_id}")
        return None


def parse_scheduled_transaction(page: dict) -> ScheduledTransactionPage:
    """Decode a Scheduled Transactions page.

    Raises
    ------
    UnsupportedPropertyError, PropertyTypeError
        If a schema property has an unexpected kind.
    """
    props = PageProperties(page)
    page_id = props.page_id
    raw_date = props.date(SCHEDULE_DATE)
    schedule_date = None
    if raw_date:
        try:
            schedule_date = parse_notion_date(raw_date)
        except ValueError:
            logger.warning(f"Unparseable schedule date '{raw_date}' on page {page_id}")

    return ScheduledTransactionPage(
        page_id=page_id,
        transaction_name=props.title(TRANSACTION_NAME),
        to_address=props.text(TO_ADDRESS),
        amount=props.number(AMOUNT),
        schedule_date=schedule_date,
        admin_status=_status(AdminStatus, props.select(ADMIN_STATUS), page_id, ADMIN_STATUS),
        operata_status=_status(OperataStatus, props.select(OPERATA_STATUS), page_id, OPERATA_STATUS),
    )


def status_properties(
    operata: OperataStatus | None = None,
    admin: AdminStatus | None = None,
) -> dict[str, Any]:
    """Property payload setting the status selects of a scheduled transaction."""
    properties: dict[str, Any] = {}
    if admin is not None:
        properties[ADMIN_STATUS] = encode_select(admin.value)
    if operata is not None:
        properties[OPERATA_STATUS] = encode_select(operata.value)
    return properties


def received_transaction_properties(
    from_address: str,
    amount: Decimal,
    token_name: str,
    transaction_hash: str,
    date: datetime,
    status: str = "Confirmed",
) -> dict[str, Any]:
    """Property payload for a new Received Transactions page."""
    return {
        FROM_ADDRESS: encode_title(from_address),
        AMOUNT: encode_number(amount),
        TOKEN_NAME: encode_select(token_name),
        TRANSACTION_HASH: encode_rich_text(transaction_hash),
        DATE: encode_date(date.isoformat()),
        STATUS: encode_select(status),
    }
