"""Queue callback for scheduled transaction jobs."""

from __future__ import annotations

import json
import logging
from typing import Optional

from operata_wallet.pipeline.executor import ExecutionResult, TransactionExecutor
from operata_wallet.pipeline.mirror import StatusMirror
from operata_wallet.pipeline.queue import SCHEDULED_TRANSACTION
from operata_wallet.storage.ledger import Ledger
from operata_wallet.storage.models import JobRecord, OperataStatus, TransactionStatus

logger = logging.getLogger("operata_wallet.pipeline.processor")

_REQUIRED_PAYLOAD = ("pageId", "walletId", "toAddress", "amount")


def _payload(job: JobRecord) -> Optional[dict]:
    try:
        data = json.loads(job.payload_json)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


class ScheduledTransactionProcessor:
    """Checks a delivered job is still due, then hands it to the executor.

    Delivery is at-least-once, so a job whose scheduled transaction is
    already terminal, or already has a successful transfer on record, is
    acknowledged without touching the chain. A transfer that was broadcast
    but never confirmed is awaited again rather than resubmitted.
    """

    def __init__(self, ledger: Ledger, executor: TransactionExecutor, mirror: StatusMirror) -> None:
        self.ledger = ledger
        self.executor = executor
        self.mirror = mirror

    async def __call__(self, job: JobRecord) -> ExecutionResult:
        if job.type != SCHEDULED_TRANSACTION:
            return ExecutionResult.fatal(f"Unknown job type {job.type!r}")

        data = _payload(job)
        if data is None:
            return ExecutionResult.fatal(f"Job {job.id} has an unreadable payload")
        missing = [key for key in _REQUIRED_PAYLOAD if not data.get(key)]
        if missing:
            return ExecutionResult.fatal(f"Job {job.id} payload is missing {', '.join(missing)}")

        page_id = data["pageId"]
        record = await self.ledger.get_scheduled(page_id)
        if record is None:
            return ExecutionResult.fatal(f"Scheduled transaction {page_id} not found")

        if record.is_terminal:
            logger.info(
                f"Skipping job {job.id}: page {page_id} is already {record.operata_status.value}"
            )
            return ExecutionResult.skip(f"already {record.operata_status.value}")

        existing = await self.ledger.find_transaction(page_id, TransactionStatus.SUCCESS)
        if existing is not None:
            logger.info(
                f"Skipping job {job.id}: page {page_id} already sent in {existing.hash}"
            )
            await self.ledger.set_operata_status(page_id, OperataStatus.COMPLETED)
            await self.mirror.push(page_id, record.wallet_id, operata=OperataStatus.COMPLETED)
            return ExecutionResult.skip(f"already sent in {existing.hash}")

        pending = await self.ledger.find_transaction(page_id, TransactionStatus.PENDING)
        if pending is not None:
            logger.info(f"Job {job.id}: page {page_id} was broadcast in {pending.hash}; awaiting its receipt")
            return await self.executor.confirm(pending)

        return await self.executor.execute(
            wallet_id=data["walletId"],
            to_address=data["toAddress"],
            amount=str(data["amount"]),
            page_id=page_id,
        )

    async def on_exhausted(self, job: JobRecord, error: str) -> None:
        """Mark the scheduled transaction Failed once the job gives up."""
        data = _payload(job) or {}
        page_id = data.get("pageId")
        if not page_id:
            return
        record = await self.ledger.get_scheduled(page_id)
        if record is None or record.is_terminal:
            return
        await self.ledger.set_operata_status(page_id, OperataStatus.FAILED)
        logger.error(f"Scheduled transaction {page_id} marked Failed: {error}")
        await self.mirror.push(page_id, record.wallet_id, operata=OperataStatus.FAILED)
