from datetime import datetime, timezone
from decimal import Decimal

import pytest

from operata_wallet.errors import PropertyTypeError, UnsupportedPropertyError, ValidationError
from operata_wallet.notion.pages import (
    parent_database_id,
    parse_notion_date,
    parse_scheduled_transaction,
    received_transaction_properties,
    status_properties,
)
from operata_wallet.notion.properties import PageProperties, PropertyKind, decode_property
from operata_wallet.storage.models import AdminStatus, OperataStatus


def test_decode_each_kind():
    assert decode_property(
        {"type": "title", "title": [{"plain_text": "Pay "}, {"plain_text": "rent"}]}
    ).value == "Pay rent"
    assert decode_property({"type": "rich_text", "rich_text": []}).value is None
    assert decode_property({"type": "number", "number": 0.1}).value == Decimal("0.1")
    assert decode_property({"type": "select", "select": {"name": "Approved"}}).value == "Approved"
    assert decode_property({"type": "select", "select": None}).value is None
    assert decode_property({"type": "date", "date": {"start": "2025-01-02"}}).value == "2025-01-02"
    assert decode_property({"type": "url", "url": "https://x.io"}).kind is PropertyKind.URL


def test_unknown_kind_is_rejected():
    with pytest.raises(UnsupportedPropertyError):
        decode_property({"type": "people", "people": []})


def test_accessor_absent_and_wrong_kind():
    props = PageProperties({"id": "p1", "properties": {"Amount": {"type": "number", "number": 3}}})
    assert props.text("Missing") is None
    assert props.number("Amount") == Decimal("3")
    with pytest.raises(PropertyTypeError):
        props.select("Amount")


def test_parse_notion_date_forms():
    assert parse_notion_date("2025-03-01") == datetime(2025, 3, 1, tzinfo=timezone.utc)
    assert parse_notion_date("2025-03-01T10:00:00.000Z") == datetime(2025, 3, 1, 10, tzinfo=timezone.utc)
    assert parse_notion_date("2025-03-01T12:00:00.000+02:00") == datetime(2025, 3, 1, 10, tzinfo=timezone.utc)


def test_parse_complete_page(make_page):
    page = make_page("page-1", amount=1.5, admin="Approved", operata="Pending")
    parsed = parse_scheduled_transaction(page)
    assert parsed.missing_fields() == []
    assert parsed.amount_text == "1.5"
    assert parsed.admin_status is AdminStatus.APPROVED
    assert parsed.operata_status is OperataStatus.PENDING
    assert parent_database_id(page) == page["parent"]["database_id"]


def test_missing_and_invalid_fields(make_page):
    parsed = parse_scheduled_transaction(make_page("page-2", amount=None, to_address=None))
    assert parsed.missing_fields() == ["toAddress", "amount"]
    with pytest.raises(ValidationError) as info:
        parsed.require_complete()
    assert info.value.missing == ["toAddress", "amount"]

    assert parse_scheduled_transaction(make_page(amount=0)).missing_fields() == ["amount"]
    assert parse_scheduled_transaction(make_page(amount=-1)).missing_fields() == ["amount"]

    with pytest.raises(ValidationError) as info:
        parsed.amount_text
    assert info.value.missing == ["amount"]


def test_unknown_select_option_reads_as_none(make_page):
    parsed = parse_scheduled_transaction(make_page(admin="Rejected"))
    assert parsed.admin_status is None


def test_encoders():
    assert status_properties(operata=OperataStatus.COMPLETED) == {
        "Operata Status": {"select": {"name": "Completed"}}
    }
    assert status_properties() == {}
    props = received_transaction_properties(
        from_address="0xabc",
        amount=Decimal("0.5"),
        token_name="ETH",
        transaction_hash="0xdef",
        date=datetime(2025, 1, 1, tzinfo=timezone.utc),
    )
    assert props["Amount"] == {"number": 0.5}
    assert props["Transaction Hash"]["rich_text"][0]["text"]["content"] == "0xdef"
    assert props["Status"] == {"select": {"name": "Confirmed"}}
