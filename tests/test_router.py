import pytest

from operata_wallet.pipeline.router import Lane, WebhookEvent, normalize_id, resolve_lane
from operata_wallet.storage.models import OperataStatus

from conftest import SCHEDULED_DB, TRANSACTIONS_DB


def test_event_ignores_unknown_fields(make_event):
    event = WebhookEvent.model_validate({**make_event("page.created", "p1"), "extra": {"x": 1}})
    assert event.entity.id == "p1"
    assert not event.is_bot_only


@pytest.mark.parametrize(
    "authors, bot_only",
    [
        ([{"id": "b", "type": "bot"}], True),
        ([{"id": "b", "type": "bot"}, {"id": "u", "type": "person"}], False),
        ([], False),
    ],
)
def test_bot_only_detection(make_event, authors, bot_only):
    assert WebhookEvent.model_validate(make_event("page.created", "p1", authors)).is_bot_only is bot_only


def test_resolve_lane_ignores_dashes(wallet):
    lane, found = resolve_lane(SCHEDULED_DB.replace("-", ""), [wallet])
    assert lane is Lane.SCHEDULED_TRANSACTION
    assert found.id == wallet.id
    assert resolve_lane(TRANSACTIONS_DB, [wallet])[0] is Lane.TRANSACTION
    assert resolve_lane("unrelated", [wallet]) is None
    assert normalize_id("AB-cd") == "abcd"


async def test_bot_authored_event_has_no_effect(router, workspace, wallet, notion, ledger, make_event, make_page):
    notion.add_page(make_page("page-1"))
    event = WebhookEvent.model_validate(
        make_event("page.created", "page-1", [{"id": "bot-1", "type": "bot"}])
    )
    assert await router.dispatch(event, workspace) is None
    assert await ledger.get_scheduled("page-1") is None
    assert notion.updates == []


async def test_unknown_type_and_missing_entity_are_dropped(router, workspace, wallet, make_event):
    assert await router.dispatch(WebhookEvent.model_validate(make_event("comment.created", "x")), workspace) is None
    assert await router.dispatch(WebhookEvent.model_validate(make_event("page.created", None)), workspace) is None


async def test_page_created_is_ingested(router, workspace, wallet, notion, ledger, make_event, make_page):
    notion.add_page(make_page("page-2"))
    lane = await router.dispatch(WebhookEvent.model_validate(make_event("page.created", "page-2")), workspace)
    assert lane is Lane.SCHEDULED_TRANSACTION
    assert (await ledger.get_scheduled("page-2")).operata_status is OperataStatus.PROCESSING


async def test_other_lanes_are_not_handled(router, workspace, wallet, notion, ledger, make_event, make_page):
    notion.add_page(make_page("page-3", database_id=TRANSACTIONS_DB))
    lane = await router.dispatch(WebhookEvent.model_validate(make_event("page.created", "page-3")), workspace)
    assert lane is Lane.TRANSACTION
    assert await ledger.list_scheduled() == []


async def test_page_outside_wallet_databases_is_noop(router, workspace, wallet, notion, ledger, make_event, make_page):
    notion.add_page(make_page("page-4", database_id="someone-elses-db"))
    assert await router.dispatch(WebhookEvent.model_validate(make_event("page.created", "page-4")), workspace) is None
    assert await ledger.list_scheduled() == []


async def test_database_updated_sweeps_pages(router, workspace, wallet, notion, ledger, queue, make_event, make_page):
    notion.add_page(make_page("page-5"))
    notion.add_page(make_page("page-6", admin="Scheduled"))
    notion.add_page(make_page("page-7", amount=None))

    event = make_event("database.updated", SCHEDULED_DB)
    lane = await router.dispatch(WebhookEvent.model_validate(event), workspace)

    assert lane is Lane.SCHEDULED_TRANSACTION
    database_id, body = notion.queries[0]
    assert database_id == SCHEDULED_DB
    assert body["page_size"] == 25
    assert {r.notion_page_id for r in await ledger.list_scheduled()} == {"page-5", "page-6"}
    assert len(await queue.list_jobs()) == 1


async def test_replayed_properties_update_is_idempotent(
    router, workspace, wallet, notion, ledger, queue, make_event, make_page
):
    notion.add_page(make_page("page-8", admin="Scheduled"))
    await router.dispatch(WebhookEvent.model_validate(make_event("page.created", "page-8")), workspace)
    notion.pages["page-8"]["properties"]["Admin Status"]["select"]["name"] = "Approved"

    event = WebhookEvent.model_validate(make_event("page.properties_updated", "page-8"))
    for _ in range(2):
        assert await router.dispatch(event, workspace) is Lane.SCHEDULED_TRANSACTION

    [record] = await ledger.list_scheduled()
    assert record.operata_status is OperataStatus.PROCESSING
    assert len(await queue.list_jobs()) == 1
    assert notion.status_updates("page-8") == ["Processing"]
