"""Notion integration: REST client, property accessor and page schemas."""

from operata_wallet.notion.client import NotionClient, NotionClientFactory
from operata_wallet.notion.properties import PageProperties, PropertyKind, decode_property

__all__ = [
    "NotionClient",
    "NotionClientFactory",
    "PageProperties",
    "PropertyKind",
    "decode_property",
]
