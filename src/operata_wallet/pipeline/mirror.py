"""Best-effort write-back of scheduled transaction status to Notion."""

from __future__ import annotations

import logging
from typing import Optional

from operata_wallet.notion.client import NotionClient, NotionClientFactory
from operata_wallet.notion.pages import status_properties
from operata_wallet.storage.ledger import Ledger
from operata_wallet.storage.models import (
    AdminStatus,
    OperataStatus,
    ScheduledTransactionRecord,
    WalletRecord,
)

logger = logging.getLogger("operata_wallet.pipeline.mirror")


class StatusMirror:
    """Pushes status selects to Notion pages.

    The ledger is authoritative: a failed push is logged and never rolls
    back the stored state.
    """

    def __init__(self, ledger: Ledger, notion: NotionClientFactory) -> None:
        self.ledger = ledger
        self.notion = notion

    async def client_for(self, wallet: WalletRecord) -> Optional[NotionClient]:
        workspace = await self.ledger.get_workspace(wallet.workspace_id)
        if workspace is None:
            logger.warning(f"Wallet {wallet.id} has no workspace; cannot reach Notion")
            return None
        return self.notion.for_token(workspace.notion_token)

    async def push(
        self,
        page_id: str,
        wallet: WalletRecord | str,
        operata: OperataStatus | None = None,
        admin: AdminStatus | None = None,
    ) -> bool:
        """Write the given status fields to *page_id*. Returns ``True`` on success."""
        properties = status_properties(operata=operata, admin=admin)
        if not properties:
            return True
        try:
            if isinstance(wallet, str):
                resolved = await self.ledger.get_wallet(wallet)
                if resolved is None:
                    logger.warning(f"Wallet {wallet} not found; skipping Notion update of {page_id}")
                    return False
                wallet = resolved
            client = await self.client_for(wallet)
            if client is None:
                return False
            await client.update_page(page_id, properties)
        except Exception as exc:
            logger.warning(f"Could not update Notion page {page_id}: {exc}")
            return False
        logger.debug(f"Mirrored {sorted(properties)} to Notion page {page_id}")
        return True

    async def reconcile(self, record: ScheduledTransactionRecord, wallet: WalletRecord) -> bool:
        """Overwrite both status fields on Notion with the stored values."""
        logger.info(
            f"Reconciling Notion page {record.notion_page_id} to stored status "
            f"{record.operata_status.value}/{record.admin_status.value}"
        )
        return await self.push(
            record.notion_page_id,
            wallet,
            operata=record.operata_status,
            admin=record.admin_status,
        )
