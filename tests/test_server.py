import hashlib
import hmac
import json

import httpx
import pytest

from operata_wallet.config import AppConfig, ServerConfig, VaultConfig
from operata_wallet.core.context import AppContext
from operata_wallet.server.app import create_app, verify_signature

from conftest import MASTER_SECRET, SCHEDULED_DB


@pytest.fixture
def context(db, provider, http, tmp_path, clock):
    config = AppConfig(vault=VaultConfig(master_secret=MASTER_SECRET))
    return AppContext(config, tmp_path, db, provider=provider, http=http, clock=clock)


@pytest.fixture
async def client(context):
    app = create_app(context, start=False)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.fixture
async def linked_wallet(context, workspace):
    wallet = await context.wallets.create_wallet(workspace.id, "sepolia")
    return await context.wallets.link_databases(wallet.id, scheduled_transactions_db_id=SCHEDULED_DB)


async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


async def test_unknown_workspace_is_404(client, make_event):
    event = {**make_event("page.created", "p1"), "workspace_id": "nobody"}
    resp = await client.post("/webhooks/notion", json=event)
    assert resp.status_code == 404
    assert resp.json() == {"error": "Workspace not found"}


async def test_page_created_is_accepted(client, context, linked_wallet, notion, make_event, make_page):
    notion.add_page(make_page("page-1"))
    resp = await client.post("/webhooks/notion", json=make_event("page.created", "page-1"))
    assert resp.status_code == 200
    assert resp.json() == {"success": True}
    assert (await context.ledger.get_scheduled("page-1")) is not None

    queue = (await client.get("/api/queue")).json()
    assert queue["counts"]["delayed"] == 1


async def test_page_created_missing_amount_creates_no_row(client, context, linked_wallet, notion, make_event, make_page):
    notion.add_page(make_page("page-2", amount=None))
    resp = await client.post("/webhooks/notion", json=make_event("page.created", "page-2"))
    assert resp.status_code == 200
    assert await context.ledger.get_scheduled("page-2") is None
    assert (await context.queue.status())["delayed"] == 0


async def test_internal_failure_is_500(client, linked_wallet, make_event):
    resp = await client.post("/webhooks/notion", json=make_event("page.created", "missing-page"))
    assert resp.status_code == 500
    assert resp.json() == {"error": "Internal server error"}


async def test_verification_token_is_acknowledged(client):
    resp = await client.post("/webhooks/notion", json={"verification_token": "secret_abc"})
    assert resp.status_code == 200


async def test_malformed_event_is_400(client):
    resp = await client.post("/webhooks/notion", content=b"{not json")
    assert resp.status_code == 400
    resp = await client.post("/webhooks/notion", json={"type": "page.created"})
    assert resp.status_code == 400


async def test_signature_is_enforced_when_configured(db, provider, http, tmp_path, workspace, make_event):
    config = AppConfig(
        vault=VaultConfig(master_secret=MASTER_SECRET),
        server=ServerConfig(webhook_secret="whsec"),
    )
    app = create_app(AppContext(config, tmp_path, db, provider=provider, http=http), start=False)
    body = json.dumps(make_event("comment.created", "x")).encode()
    good = "sha256=" + hmac.new(b"whsec", body, hashlib.sha256).hexdigest()
    assert verify_signature(body, good, "whsec")

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        bad = await c.post("/webhooks/notion", content=body, headers={"X-Notion-Signature": "sha256=00"})
        ok = await c.post("/webhooks/notion", content=body, headers={"X-Notion-Signature": good})
    assert bad.status_code == 401
    assert ok.status_code == 200
