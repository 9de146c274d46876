"""Shared fixtures: an in-memory ledger, a fake Notion API and a fake chain."""

from __future__ import annotations

import json
import re
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest

from operata_wallet.chain.provider import IncomingTransfer, TransferReceipt, Web3Provider
from operata_wallet.config import NotionConfig, QueueConfig
from operata_wallet.core.wallets import WalletManager
from operata_wallet.errors import ChainError
from operata_wallet.notion.client import NotionClientFactory
from operata_wallet.pipeline.executor import TransactionExecutor
from operata_wallet.pipeline.mirror import StatusMirror
from operata_wallet.pipeline.processor import ScheduledTransactionProcessor
from operata_wallet.pipeline.queue import JobQueue
from operata_wallet.pipeline.router import WebhookRouter
from operata_wallet.pipeline.synchronizer import StateSynchronizer
from operata_wallet.storage.database import Database
from operata_wallet.storage.ledger import Ledger
from operata_wallet.storage.models import WorkspaceRecord
from operata_wallet.vault.keystore import KeyVault

MASTER_SECRET = "test-master-secret"
RECIPIENT = "0x52908400098527886E0F7030069857D2E4169EE7"
SCHEDULED_DB = "a1b2c3d4-0000-4000-8000-000000000001"
TRANSACTIONS_DB = "a1b2c3d4-0000-4000-8000-000000000002"
NOTION_WORKSPACE = "notion-ws-1"


class FakeClock:
    """Epoch-seconds clock the tests move by hand."""

    def __init__(self, start: float = 1_750_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def datetime(self) -> datetime:
        return datetime.fromtimestamp(self.now, tz=timezone.utc)


class FakeNotion:
    """In-memory stand-in for the Notion REST API, served via httpx.MockTransport."""

    def __init__(self) -> None:
        self.pages: dict[str, dict] = {}
        self.updates: list[tuple[str, dict]] = []
        self.created: list[tuple[str, dict]] = []
        self.queries: list[tuple[str, dict]] = []
        self.fail_updates = False

    def add_page(self, page: dict) -> dict:
        self.pages[page["id"]] = page
        return page

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/v1")
        body = json.loads(request.content) if request.content else {}

        match = re.fullmatch(r"/pages/([^/]+)", path)
        if match and request.method == "GET":
            page = self.pages.get(match.group(1))
            if page is None:
                return httpx.Response(404, json={"code": "object_not_found", "message": "Not found"})
            return httpx.Response(200, json=page)

        if match and request.method == "PATCH":
            if self.fail_updates:
                return httpx.Response(502, json={"code": "bad_gateway", "message": "Upstream down"})
            page_id = match.group(1)
            self.updates.append((page_id, body["properties"]))
            page = self.pages.setdefault(page_id, {"id": page_id, "properties": {}})
            for name, value in body["properties"].items():
                kind = next(iter(value))
                page["properties"][name] = {"type": kind, **value}
            return httpx.Response(200, json=page)

        if path == "/pages" and request.method == "POST":
            database_id = body["parent"]["database_id"]
            self.created.append((database_id, body["properties"]))
            page = {
                "id": str(uuid.uuid4()),
                "parent": {"type": "database_id", "database_id": database_id},
                "properties": body["properties"],
            }
            self.pages[page["id"]] = page
            return httpx.Response(200, json=page)

        match = re.fullmatch(r"/databases/([^/]+)/query", path)
        if match and request.method == "POST":
            database_id = match.group(1)
            self.queries.append((database_id, body))
            results = [
                p for p in self.pages.values()
                if (p.get("parent") or {}).get("database_id") == database_id
            ]
            return httpx.Response(200, json={"results": results, "has_more": False})

        return httpx.Response(400, json={"code": "invalid_request", "message": path})

    def status_updates(self, page_id: str) -> list[str]:
        """Operata Status values written to a page, in order."""
        return [
            props["Operata Status"]["select"]["name"]
            for pid, props in self.updates
            if pid == page_id and "Operata Status" in props
        ]


class FakeProvider:
    """Chain provider double recording transfers instead of sending them."""

    is_address = staticmethod(Web3Provider.is_address)

    def __init__(self) -> None:
        self.transfers: list[dict] = []
        self.errors: list[Exception] = []
        self.receipt_errors: list[Exception] = []
        self.receipt_waits: list[str] = []
        self.reverted: set[str] = set()
        self.balance = Decimal("1.5")
        self.block_number = 100
        self.incoming: list[IncomingTransfer] = []
        self.scanned: list[tuple[int, int]] = []

    def submit_transfer(self, private_key, to_address, amount_ether, chain_name) -> str:
        if self.errors:
            raise self.errors.pop(0)
        assert isinstance(private_key, bytes) and len(private_key) == 32
        self.transfers.append({"to": to_address, "amount": amount_ether, "chain": chain_name})
        return f"0x{len(self.transfers):064x}"

    def wait_for_receipt(self, tx_hash, chain_name) -> TransferReceipt:
        self.receipt_waits.append(tx_hash)
        if self.receipt_errors:
            raise self.receipt_errors.pop(0)
        return TransferReceipt(
            tx_hash=tx_hash,
            block_number=self.block_number,
            succeeded=tx_hash not in self.reverted,
        )

    def get_native_balance(self, address, chain_name) -> Decimal:
        if self.errors:
            raise self.errors.pop(0)
        return self.balance

    def get_block_number(self, chain_name) -> int:
        return self.block_number

    def get_incoming_transfers(self, address, chain_name, from_block, to_block):
        self.scanned.append((from_block, to_block))
        return [t for t in self.incoming if from_block <= t.block_number <= to_block]

    def fail_next(self, count: int = 1, message: str = "RPC timeout") -> None:
        self.errors.extend(ChainError(message) for _ in range(count))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def db():
    database = Database(":memory:")
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def ledger(db):
    return Ledger(db)


@pytest.fixture
def notion():
    return FakeNotion()


@pytest.fixture
async def http(notion):
    client = httpx.AsyncClient(transport=httpx.MockTransport(notion.handler))
    yield client
    await client.aclose()


@pytest.fixture
def notion_factory(http):
    return NotionClientFactory(NotionConfig(), http)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def vault():
    return KeyVault(MASTER_SECRET)


@pytest.fixture
async def workspace(ledger):
    return await ledger.add_workspace(
        WorkspaceRecord(notion_workspace_id=NOTION_WORKSPACE, notion_token="secret_token", name="Acme")
    )


@pytest.fixture
async def wallet(ledger, provider, vault, workspace):
    manager = WalletManager(ledger, provider, vault)
    created = await manager.create_wallet(workspace.id, "sepolia")
    return await manager.link_databases(
        created.id,
        notion_page_id="wallet-page",
        scheduled_transactions_db_id=SCHEDULED_DB,
        transactions_db_id=TRANSACTIONS_DB,
    )


@pytest.fixture
def queue(db, clock):
    return JobQueue(db, QueueConfig(), clock=clock)


@pytest.fixture
def mirror(ledger, notion_factory):
    return StatusMirror(ledger, notion_factory)


@pytest.fixture
def synchronizer(ledger, queue, mirror, clock):
    return StateSynchronizer(ledger, queue, mirror, clock=clock.datetime)


@pytest.fixture
def executor(ledger, vault, provider, mirror):
    return TransactionExecutor(ledger, vault, provider, mirror)


@pytest.fixture
def processor(ledger, executor, mirror, queue):
    proc = ScheduledTransactionProcessor(ledger, executor, mirror)
    queue.bind(proc, proc.on_exhausted)
    return proc


@pytest.fixture
def router(ledger, synchronizer, notion_factory):
    return WebhookRouter(ledger, synchronizer, notion_factory, NotionConfig())


@pytest.fixture
def make_page(clock):
    """Build a Scheduled Transactions page as the Notion API returns it."""

    def _make(
        page_id: str | None = None,
        *,
        database_id: str = SCHEDULED_DB,
        name: str | None = "Contractor payout",
        to_address: str | None = RECIPIENT,
        amount: float | None = 0.25,
        schedule_in: float | None = 5.0,
        admin: str | None = "Approved",
        operata: str | None = "Pending",
    ) -> dict:
        props: dict = {}
        if name is not None:
            props["Transaction Name"] = {
                "id": "title", "type": "title",
                "title": [{"type": "text", "plain_text": name, "text": {"content": name}}],
            }
        if to_address is not None:
            props["To Address"] = {
                "id": "to", "type": "rich_text",
                "rich_text": [{"type": "text", "plain_text": to_address, "text": {"content": to_address}}],
            }
        if amount is not None:
            props["Amount"] = {"id": "amt", "type": "number", "number": amount}
        if schedule_in is not None:
            start = (clock.datetime() + timedelta(seconds=schedule_in)).isoformat()
            props["Schedule Date"] = {"id": "date", "type": "date", "date": {"start": start, "end": None}}
        if admin is not None:
            props["Admin Status"] = {"id": "adm", "type": "select", "select": {"name": admin}}
        if operata is not None:
            props["Operata Status"] = {"id": "ops", "type": "select", "select": {"name": operata}}
        return {
            "object": "page",
            "id": page_id or str(uuid.uuid4()),
            "parent": {"type": "database_id", "database_id": database_id},
            "properties": props,
        }

    return _make


@pytest.fixture
def make_event(workspace):
    def _make(event_type: str, entity_id: str | None, authors: list[dict] | None = None) -> dict:
        return {
            "id": str(uuid.uuid4()),
            "timestamp": "2025-06-15T12:00:00.000Z",
            "workspace_id": workspace.notion_workspace_id,
            "subscription_id": "sub-1",
            "integration_id": "int-1",
            "type": event_type,
            "entity": {"id": entity_id, "type": "page"} if entity_id else {},
            "authors": authors if authors is not None else [{"id": "user-1", "type": "person"}],
            "data": {},
        }

    return _make
