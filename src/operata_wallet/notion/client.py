"""Minimal async Notion REST client.

Uses Notion's REST API directly via httpx. Only the calls the wallet
pipeline needs are wrapped: pages (retrieve/update/create) and database
queries.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from operata_wallet.config import NotionConfig
from operata_wallet.errors import NotionAPIError

logger = logging.getLogger("operata_wallet.notion")


class NotionClient:
    """Notion API client bound to one integration token.

    Parameters
    ----------
    token:
        Integration or OAuth access token for the workspace.
    config:
        API base URL, version header and timeout.
    http:
        Optional shared ``httpx.AsyncClient`` (tests pass one with a mock
        transport). When omitted a client is created per request.
    """

    def __init__(
        self,
        token: str,
        config: NotionConfig | None = None,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._token = token
        self.config = config or NotionConfig()
        self._http = http

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Notion-Version": self.config.api_version,
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, json: dict | None = None) -> dict:
        url = f"{self.config.api_base}{path}"
        if self._http is not None:
            resp = await self._http.request(
                method, url, headers=self._headers(), json=json,
                timeout=self.config.timeout_seconds,
            )
        else:
            async with httpx.AsyncClient() as client:
                resp = await client.request(
                    method, url, headers=self._headers(), json=json,
                    timeout=self.config.timeout_seconds,
                )

        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = {}
            raise NotionAPIError(
                resp.status_code,
                code=body.get("code", ""),
                message=body.get("message", resp.text),
            )
        return resp.json()

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------

    async def retrieve_page(self, page_id: str) -> dict:
        return await self._request("GET", f"/pages/{page_id}")

    async def update_page(self, page_id: str, properties: dict[str, Any]) -> dict:
        return await self._request(
            "PATCH", f"/pages/{page_id}", json={"properties": properties}
        )

    async def create_page(self, database_id: str, properties: dict[str, Any]) -> dict:
        return await self._request(
            "POST",
            "/pages",
            json={"parent": {"database_id": database_id}, "properties": properties},
        )

    # ------------------------------------------------------------------
    # Databases
    # ------------------------------------------------------------------

    async def query_database(
        self,
        database_id: str,
        filter: dict | None = None,
        sorts: list[dict] | None = None,
        page_size: int | None = None,
    ) -> list[dict]:
        """Return the result pages of a database query (first page only)."""
        body: dict[str, Any] = {}
        if filter:
            body["filter"] = filter
        if sorts:
            body["sorts"] = sorts
        if page_size:
            body["page_size"] = min(page_size, 100)
        data = await self._request("POST", f"/databases/{database_id}/query", json=body)
        return data.get("results", [])


class NotionClientFactory:
    """Builds per-workspace clients that share one configuration."""

    def __init__(self, config: NotionConfig, http: Optional[httpx.AsyncClient] = None) -> None:
        self.config = config
        self._http = http

    def for_token(self, token: str) -> NotionClient:
        return NotionClient(token, self.config, self._http)
