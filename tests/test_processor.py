import json
from unittest.mock import MagicMock

from web3.exceptions import TimeExhausted

from operata_wallet.chain.provider import Web3Provider
from operata_wallet.errors import ChainError
from operata_wallet.pipeline.executor import ExecutionOutcome, TransactionExecutor
from operata_wallet.pipeline.processor import ScheduledTransactionProcessor
from operata_wallet.pipeline.queue import SCHEDULED_TRANSACTION
from operata_wallet.pipeline.router import WebhookEvent
from operata_wallet.storage.models import (
    JobRecord,
    JobState,
    OperataStatus,
    TransactionRecord,
    TransactionStatus,
)

from conftest import RECIPIENT


async def _approve(synchronizer, notion, wallet, make_page, page_id, **kwargs):
    page = notion.add_page(make_page(page_id, **kwargs))
    return await synchronizer.ingest(page, wallet)


async def test_content_updated_to_completed(
    router, processor, queue, ledger, provider, notion, workspace, wallet, clock, make_page, make_event
):
    notion.add_page(make_page("page-1", schedule_in=5, amount=0.25))
    event = WebhookEvent.model_validate(make_event("page.content_updated", "page-1"))
    await router.dispatch(event, workspace)

    [job] = await queue.list_jobs()
    assert round((job.available_at - clock.now) * 1000) == 5000
    assert await queue.process_next() is None

    clock.advance(5)
    settled = await queue.process_next()
    assert settled.state is JobState.COMPLETED

    stored = await ledger.get_scheduled("page-1")
    assert stored.operata_status is OperataStatus.COMPLETED
    [tx] = await ledger.list_transactions(wallet.id)
    assert tx.status is TransactionStatus.SUCCESS
    assert tx.notion_page_id == "page-1"
    assert tx.from_address == wallet.address
    assert tx.to_address == RECIPIENT
    assert tx.value == "0.25"
    assert provider.transfers == [{"to": RECIPIENT, "amount": "0.25", "chain": "sepolia"}]
    assert notion.status_updates("page-1") == ["Processing", "Completed"]


async def test_redelivered_completed_job_is_skipped(
    synchronizer, processor, queue, ledger, provider, notion, wallet, clock, make_page
):
    await _approve(synchronizer, notion, wallet, make_page, "page-2", schedule_in=0)
    [job] = await queue.list_jobs()
    await queue.process_next()
    assert len(provider.transfers) == 1

    result = await processor(await queue.get_job(job.id))
    assert result.outcome is ExecutionOutcome.SUCCESS
    assert result.skipped
    assert len(provider.transfers) == 1
    assert len(await ledger.list_transactions()) == 1


async def test_existing_success_row_marks_completed_without_resending(
    synchronizer, processor, queue, ledger, provider, notion, wallet, make_page
):
    await _approve(synchronizer, notion, wallet, make_page, "page-3", schedule_in=0)
    await ledger.add_transaction(
        TransactionRecord(
            hash="0xabc", from_address=wallet.address, to_address=RECIPIENT,
            value="0.25", status=TransactionStatus.SUCCESS, wallet_id=wallet.id,
            notion_page_id="page-3",
        )
    )
    settled = await queue.process_next()
    assert settled.state is JobState.COMPLETED
    assert provider.transfers == []
    assert (await ledger.get_scheduled("page-3")).operata_status is OperataStatus.COMPLETED


async def test_chain_failure_retries_then_succeeds(
    synchronizer, processor, queue, ledger, provider, notion, wallet, clock, make_page
):
    await _approve(synchronizer, notion, wallet, make_page, "page-4", schedule_in=0)
    provider.fail_next(2)

    first = await queue.process_next()
    assert first.state is JobState.DELAYED
    assert (await ledger.get_scheduled("page-4")).operata_status is OperataStatus.PROCESSING

    clock.now = first.available_at
    second = await queue.process_next()
    assert second.attempts_made == 2

    clock.now = second.available_at
    third = await queue.process_next()
    assert third.state is JobState.COMPLETED
    assert (await ledger.get_scheduled("page-4")).operata_status is OperataStatus.COMPLETED


async def test_exhausted_retries_mark_failed(
    synchronizer, processor, queue, ledger, provider, notion, wallet, clock, make_page
):
    await _approve(synchronizer, notion, wallet, make_page, "page-5", schedule_in=0)
    provider.errors.extend(ChainError("reverted") for _ in range(6))

    for _ in range(6):
        settled = await queue.process_next()
        clock.now = max(clock.now, settled.available_at)

    assert settled.state is JobState.FAILED
    assert settled.attempts_made == 6
    assert (await ledger.get_scheduled("page-5")).operata_status is OperataStatus.FAILED
    assert notion.status_updates("page-5")[-1] == "Failed"
    assert await ledger.list_transactions() == []


async def test_invalid_destination_is_fatal(
    synchronizer, processor, queue, ledger, provider, notion, wallet, make_page
):
    await _approve(synchronizer, notion, wallet, make_page, "page-6", schedule_in=0, to_address="not-an-address")
    settled = await queue.process_next()
    assert settled.state is JobState.FAILED
    assert settled.attempts_made == 1
    assert provider.transfers == []
    assert (await ledger.get_scheduled("page-6")).operata_status is OperataStatus.FAILED


async def test_custody_failure_is_fatal(
    synchronizer, processor, queue, ledger, db, provider, notion, wallet, make_page
):
    await db.execute(
        "UPDATE key_pairs SET private_key = ? WHERE wallet_id = ?", ("AAAA", wallet.id)
    )
    await _approve(synchronizer, notion, wallet, make_page, "page-7", schedule_in=0)
    settled = await queue.process_next()
    assert settled.state is JobState.FAILED
    assert provider.transfers == []
    assert (await ledger.get_scheduled("page-7")).operata_status is OperataStatus.FAILED


async def test_unknown_job_type_and_missing_record_are_fatal(processor):
    job = JobRecord(queue="q", type="OTHER")
    assert (await processor(job)).outcome is ExecutionOutcome.FATAL

    job = JobRecord(
        queue="q",
        type=SCHEDULED_TRANSACTION,
        payload_json=json.dumps(
            {"pageId": "nope", "walletId": "w", "toAddress": RECIPIENT, "amount": "1"}
        ),
    )
    assert (await processor(job)).outcome is ExecutionOutcome.FATAL


async def test_missing_key_pair_is_fatal(executor, ledger, wallet, synchronizer, notion, make_page, db):
    await _approve(synchronizer, notion, wallet, make_page, "page-8", schedule_in=0)
    await db.execute("DELETE FROM key_pairs WHERE wallet_id = ?", (wallet.id,))
    result = await executor.execute(wallet.id, RECIPIENT, "0.25", "page-8")
    assert result.outcome is ExecutionOutcome.FATAL
    assert (await ledger.get_scheduled("page-8")).operata_status is OperataStatus.FAILED


def _mock_web3(receipts):
    w3 = MagicMock()
    w3.eth.get_transaction_count.return_value = 0
    w3.eth.get_block.return_value = {"baseFeePerGas": 10}
    w3.eth.estimate_gas.return_value = 21_000
    w3.eth.account.from_key.return_value.address = "0x8ba1f109551bD432803012645Ac136ddd64DBA72"
    w3.eth.account.sign_transaction.return_value.raw_transaction = b"\x02signed"
    w3.eth.send_raw_transaction.return_value = b"\x12" * 32
    w3.eth.wait_for_transaction_receipt.side_effect = receipts
    return w3


async def test_receipt_timeout_awaits_same_hash_without_rebroadcast(
    synchronizer, queue, ledger, vault, mirror, notion, wallet, clock, make_page
):
    w3 = _mock_web3([TimeExhausted("not mined yet"), {"status": 1, "blockNumber": 101}])
    provider = Web3Provider(receipt_timeout=1)
    provider._instances["sepolia"] = w3
    proc = ScheduledTransactionProcessor(ledger, TransactionExecutor(ledger, vault, provider, mirror), mirror)
    queue.bind(proc, proc.on_exhausted)
    await _approve(synchronizer, notion, wallet, make_page, "page-9", schedule_in=0)

    first = await queue.process_next()
    assert first.state is JobState.DELAYED
    [tx] = await ledger.list_transactions(wallet.id)
    assert tx.status is TransactionStatus.PENDING
    assert tx.hash == "0x" + "12" * 32
    assert (await ledger.get_scheduled("page-9")).operata_status is OperataStatus.PROCESSING

    clock.now = first.available_at
    second = await queue.process_next()
    assert second.state is JobState.COMPLETED
    assert w3.eth.send_raw_transaction.call_count == 1
    assert w3.eth.wait_for_transaction_receipt.call_count == 2
    [tx] = await ledger.list_transactions(wallet.id)
    assert tx.status is TransactionStatus.SUCCESS
    assert (await ledger.get_scheduled("page-9")).operata_status is OperataStatus.COMPLETED


async def test_unconfirmed_broadcast_is_never_resent(
    synchronizer, processor, queue, ledger, provider, notion, wallet, clock, make_page
):
    await _approve(synchronizer, notion, wallet, make_page, "page-10", schedule_in=0)
    provider.receipt_errors.extend(ChainError("receipt timeout") for _ in range(2))

    for _ in range(3):
        settled = await queue.process_next()
        clock.now = max(clock.now, settled.available_at)

    assert settled.state is JobState.COMPLETED
    assert len(provider.transfers) == 1
    assert provider.receipt_waits == [f"0x{1:064x}"] * 3
    assert [t.status for t in await ledger.list_transactions()] == [TransactionStatus.SUCCESS]


async def test_reverted_transfer_is_marked_failed_and_resubmitted(
    synchronizer, processor, queue, ledger, provider, notion, wallet, clock, make_page
):
    await _approve(synchronizer, notion, wallet, make_page, "page-11", schedule_in=0)
    provider.reverted.add(f"0x{1:064x}")

    first = await queue.process_next()
    assert first.state is JobState.DELAYED
    clock.now = first.available_at
    second = await queue.process_next()

    assert second.state is JobState.COMPLETED
    assert len(provider.transfers) == 2
    statuses = {t.hash: t.status for t in await ledger.list_transactions()}
    assert statuses == {
        f"0x{1:064x}": TransactionStatus.FAILED,
        f"0x{2:064x}": TransactionStatus.SUCCESS,
    }
