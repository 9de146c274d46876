"""Reconciles Scheduled Transactions pages with the ledger.

Completed and Failed are terminal. Once stored, no edit seen on Notion can
change them; the page is overwritten with the stored values instead.
While a record is Processing its queued job owns it, so page edits are
refused until the job settles.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from operata_wallet.errors import PropertyTypeError, UnsupportedPropertyError, ValidationError
from operata_wallet.notion.pages import ScheduledTransactionPage, parse_scheduled_transaction
from operata_wallet.pipeline.mirror import StatusMirror
from operata_wallet.pipeline.queue import SCHEDULED_TRANSACTION, JobQueue, compute_delay_ms
from operata_wallet.storage.ledger import Ledger
from operata_wallet.storage.models import (
    AdminStatus,
    OperataStatus,
    ScheduledTransactionRecord,
    WalletRecord,
    utcnow,
)

logger = logging.getLogger("operata_wallet.pipeline.synchronizer")


class StateSynchronizer:
    """Applies Notion page changes to the ledger and gates enqueueing.

    Parameters
    ----------
    ledger:
        Authoritative store.
    queue:
        Receives a job when a transaction becomes approved.
    mirror:
        Writes reconciled or new status values back to Notion.
    clock:
        Returns the current aware datetime; used for the job delay.
    """

    def __init__(
        self,
        ledger: Ledger,
        queue: JobQueue,
        mirror: StatusMirror,
        clock: Callable = utcnow,
    ) -> None:
        self.ledger = ledger
        self.queue = queue
        self.mirror = mirror
        self._clock = clock

    def _parse(self, page: dict) -> Optional[ScheduledTransactionPage]:
        try:
            return parse_scheduled_transaction(page)
        except (UnsupportedPropertyError, PropertyTypeError) as exc:
            logger.error(f"Cannot read page {page.get('id')}: {exc}")
            return None

    async def ingest(self, page: dict, wallet: WalletRecord) -> Optional[ScheduledTransactionRecord]:
        """Create or refresh the record for a page, then apply the enqueue gate.

        Returns the stored record, or ``None`` if the page was rejected.
        """
        parsed = self._parse_complete(page)
        if parsed is None:
            return None

        existing = await self.ledger.get_scheduled(parsed.page_id)
        if existing is not None and existing.operata_status is not OperataStatus.PENDING:
            return await self._hold(existing, parsed, wallet)

        record = await self.ledger.upsert_scheduled(
            ScheduledTransactionRecord(
                notion_page_id=parsed.page_id,
                wallet_id=wallet.id,
                transaction_name=parsed.transaction_name,
                to_address=parsed.to_address,
                amount=parsed.amount_text,
                schedule_date=parsed.schedule_date,
                admin_status=parsed.admin_status or AdminStatus.SCHEDULED,
                operata_status=OperataStatus.PENDING,
            )
        )
        if record.operata_status is not OperataStatus.PENDING:
            # The row left Pending between the read and the upsert.
            return await self._hold(record, parsed, wallet)
        if existing is None:
            logger.info(f"Tracking scheduled transaction {record.notion_page_id} ({record.transaction_name})")
        return await self._maybe_enqueue(record, wallet)

    async def sync_properties(self, page: dict, wallet: WalletRecord) -> Optional[ScheduledTransactionRecord]:
        """Apply edits made on Notion to an existing Pending record.

        Operata Status belongs to the pipeline: an edit to it is reverted on
        Notion and never stored. Detail fields are re-read so an approval
        always enqueues the values currently on the page.
        """
        page_id = page.get("id", "")
        stored = await self.ledger.get_scheduled(page_id)
        if stored is None:
            logger.debug(f"No scheduled transaction for page {page_id}; ignoring property update")
            return None

        if stored.is_terminal:
            await self.mirror.reconcile(stored, wallet)
            return stored

        parsed = self._parse(page)
        if parsed is None:
            return stored

        if stored.operata_status is not OperataStatus.PENDING:
            return await self._hold(stored, parsed, wallet)

        if parsed.operata_status is not None and parsed.operata_status is not stored.operata_status:
            logger.warning(
                f"Operata Status of page {page_id} edited to {parsed.operata_status.value} on Notion; "
                f"restoring {stored.operata_status.value}"
            )
            await self.mirror.push(page_id, wallet, operata=stored.operata_status)

        try:
            parsed.require_complete()
        except ValidationError as exc:
            logger.error(str(exc))
            return stored

        changes = self._changes(stored, parsed)
        if changes:
            applied = await self.ledger.update_scheduled(page_id, expected=OperataStatus.PENDING, **changes)
            stored = await self.ledger.get_scheduled(page_id) or stored
            if not applied:
                return await self._hold(stored, parsed, wallet)
            logger.info(f"Page {page_id} changed on Notion: {', '.join(sorted(changes))}")

        return await self._maybe_enqueue(stored, wallet)

    def _parse_complete(self, page: dict) -> Optional[ScheduledTransactionPage]:
        parsed = self._parse(page)
        if parsed is None:
            return None
        try:
            parsed.require_complete()
        except ValidationError as exc:
            logger.error(str(exc))
            return None
        return parsed

    @staticmethod
    def _changes(stored: ScheduledTransactionRecord, parsed: ScheduledTransactionPage) -> dict:
        incoming = {
            "transaction_name": parsed.transaction_name,
            "to_address": parsed.to_address,
            "amount": parsed.amount_text,
            "schedule_date": parsed.schedule_date,
            "admin_status": parsed.admin_status or stored.admin_status,
        }
        return {k: v for k, v in incoming.items() if getattr(stored, k) != v}

    async def _hold(
        self,
        record: ScheduledTransactionRecord,
        parsed: ScheduledTransactionPage,
        wallet: WalletRecord,
    ) -> ScheduledTransactionRecord:
        """Refuse page edits to a record the pipeline owns.

        Terminal records are always reconciled. A Processing record is
        reconciled only when the page shows different statuses.
        """
        if record.is_terminal:
            await self.mirror.reconcile(record, wallet)
            return record
        if not parsed.missing_fields():
            edited = sorted(k for k in self._changes(record, parsed) if k != "admin_status")
            if edited:
                logger.warning(
                    f"Ignoring edits to {', '.join(edited)} on page {record.notion_page_id} "
                    f"while it is {record.operata_status.value}"
                )
        if parsed.operata_status is not record.operata_status or (
            parsed.admin_status is not None and parsed.admin_status is not record.admin_status
        ):
            await self.mirror.reconcile(record, wallet)
        return record

    async def _maybe_enqueue(
        self,
        record: ScheduledTransactionRecord,
        wallet: WalletRecord,
    ) -> ScheduledTransactionRecord:
        if record.admin_status is not AdminStatus.APPROVED:
            return record
        if record.operata_status is not OperataStatus.PENDING:
            return record

        page_id = record.notion_page_id
        claimed = await self.ledger.transition_status(
            page_id, OperataStatus.PENDING, OperataStatus.PROCESSING
        )
        if not claimed:
            logger.debug(f"Page {page_id} was enqueued concurrently")
            return await self.ledger.get_scheduled(page_id) or record

        delay_ms = compute_delay_ms(record.schedule_date, self._clock())
        try:
            await self.queue.enqueue(
                SCHEDULED_TRANSACTION,
                {
                    "pageId": page_id,
                    "walletId": record.wallet_id,
                    "toAddress": record.to_address,
                    "amount": record.amount,
                    "scheduleDate": record.schedule_date.isoformat(),
                    "transactionName": record.transaction_name,
                },
                delay_ms=delay_ms,
            )
        except Exception:
            await self.ledger.set_operata_status(page_id, OperataStatus.PENDING)
            raise

        await self.mirror.push(page_id, wallet, operata=OperataStatus.PROCESSING)
        return await self.ledger.get_scheduled(page_id) or record
