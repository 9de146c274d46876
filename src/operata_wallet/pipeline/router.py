"""Webhook event routing.

A Notion webhook names an entity (page or database). The router resolves
which wallet container that entity lives in and hands scheduled
transaction events to the synchronizer.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from operata_wallet.config import NotionConfig
from operata_wallet.notion.client import NotionClient, NotionClientFactory
from operata_wallet.notion.pages import parent_database_id
from operata_wallet.pipeline.synchronizer import StateSynchronizer
from operata_wallet.storage.ledger import Ledger
from operata_wallet.storage.models import WalletRecord, WorkspaceRecord

logger = logging.getLogger("operata_wallet.pipeline.router")

PAGE_CREATED = "page.created"
PAGE_CONTENT_UPDATED = "page.content_updated"
PAGE_PROPERTIES_UPDATED = "page.properties_updated"
DATABASE_UPDATED = "database.updated"

HANDLED_EVENTS = {PAGE_CREATED, PAGE_CONTENT_UPDATED, PAGE_PROPERTIES_UPDATED, DATABASE_UPDATED}


class Lane(str, Enum):
    SCHEDULED_TRANSACTION = "scheduled_transaction"
    TRANSACTION = "transaction"
    NFT = "nft"
    RECEIVED_TRANSACTION = "received_transaction"


_LANE_COLUMNS = {
    Lane.SCHEDULED_TRANSACTION: "scheduled_transactions_db_id",
    Lane.TRANSACTION: "transactions_db_id",
    Lane.NFT: "nft_db_id",
    Lane.RECEIVED_TRANSACTION: "received_transactions_db_id",
}


class WebhookAuthor(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = ""
    type: str = ""


class WebhookEntity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    type: Optional[str] = None


class WebhookEvent(BaseModel):
    """An inbound Notion webhook delivery."""

    model_config = ConfigDict(extra="ignore")

    id: str = ""
    timestamp: Optional[str] = None
    workspace_id: str
    subscription_id: Optional[str] = None
    type: str
    entity: WebhookEntity = Field(default_factory=WebhookEntity)
    authors: list[WebhookAuthor] = Field(default_factory=list)
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_bot_only(self) -> bool:
        """True if the event has authors and every one of them is a bot."""
        return bool(self.authors) and all(a.type == "bot" for a in self.authors)


def normalize_id(notion_id: str) -> str:
    """Notion ids appear with and without dashes; compare them undashed."""
    return notion_id.replace("-", "").lower()


def resolve_lane(
    database_id: str,
    wallets: list[WalletRecord],
) -> Optional[tuple[Lane, WalletRecord]]:
    """Find the wallet container a database id belongs to."""
    target = normalize_id(database_id)
    for wallet in wallets:
        for lane, column in _LANE_COLUMNS.items():
            container = getattr(wallet, column)
            if container and normalize_id(container) == target:
                return lane, wallet
    return None


class WebhookRouter:
    """Classifies webhook events and dispatches them."""

    def __init__(
        self,
        ledger: Ledger,
        synchronizer: StateSynchronizer,
        notion: NotionClientFactory,
        config: NotionConfig | None = None,
    ) -> None:
        self.ledger = ledger
        self.synchronizer = synchronizer
        self.notion = notion
        self.config = config or NotionConfig()

    async def dispatch(self, event: WebhookEvent, workspace: WorkspaceRecord) -> Optional[Lane]:
        """Route one event. Returns the lane it was routed to, if any."""
        if event.is_bot_only:
            logger.debug(f"Ignoring bot-authored event {event.id} ({event.type})")
            return None

        if event.type not in HANDLED_EVENTS:
            logger.info(f"Event type {event.type!r} is not handled (event {event.id})")
            return None

        entity_id = event.entity.id
        if not entity_id:
            logger.warning(f"Event {event.id} ({event.type}) has no entity id")
            return None

        client = self.notion.for_token(workspace.notion_token)
        wallets = await self.ledger.list_wallets(workspace.id)

        if event.type == DATABASE_UPDATED:
            return await self._sweep(client, entity_id, wallets)

        page = await client.retrieve_page(entity_id)
        database_id = parent_database_id(page)
        if database_id is None:
            logger.debug(f"Page {entity_id} is not in a database")
            return None

        match = resolve_lane(database_id, wallets)
        if match is None:
            logger.debug(f"Database {database_id} is not a wallet container")
            return None
        lane, wallet = match

        if lane is not Lane.SCHEDULED_TRANSACTION:
            logger.info(f"{lane.value} events are not handled (page {entity_id}, {event.type})")
            return lane

        if event.type == PAGE_PROPERTIES_UPDATED:
            await self.synchronizer.sync_properties(page, wallet)
        else:
            await self.synchronizer.ingest(page, wallet)
        return lane

    async def _sweep(
        self,
        client: NotionClient,
        database_id: str,
        wallets: list[WalletRecord],
    ) -> Optional[Lane]:
        match = resolve_lane(database_id, wallets)
        if match is None or match[0] is not Lane.SCHEDULED_TRANSACTION:
            logger.debug(f"Database {database_id} update ignored")
            return None
        _, wallet = match

        pages = await client.query_database(
            database_id,
            sorts=[{"timestamp": "last_edited_time", "direction": "descending"}],
            page_size=self.config.sweep_page_size,
        )
        logger.info(f"Sweeping {len(pages)} page(s) of scheduled transactions database {database_id}")
        for page in pages:
            try:
                await self.synchronizer.ingest(page, wallet)
            except Exception:
                logger.exception(f"Failed to ingest page {page.get('id')} during sweep")
        return Lane.SCHEDULED_TRANSACTION
