"""FastAPI webhook server for Operata Wallet."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from operata_wallet import __version__
from operata_wallet.config import is_unexpanded
from operata_wallet.core.context import AppContext
from operata_wallet.pipeline.router import WebhookEvent

logger = logging.getLogger("operata_wallet.server")


def verify_signature(body: bytes, signature: str, secret: str) -> bool:
    """Check an ``X-Notion-Signature`` header (``sha256=<hex hmac>``)."""
    expected = "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature or "")


def create_app(
    context: AppContext | None = None,
    *,
    base_path: Path | None = None,
    start: bool = True,
) -> FastAPI:
    """Build the webhook application.

    Parameters
    ----------
    context:
        A ready context. When omitted one is loaded from *base_path* on
        startup and shut down with the app.
    start:
        Start the job workers and monitors with the app.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = context is None
        ctx = context or await AppContext.load(base_path)
        app.state.context = ctx
        if start:
            await ctx.start()
        logger.info(f"Webhook server ready (queue '{ctx.config.queue.name}')")
        try:
            yield
        finally:
            if owned or start:
                await ctx.shutdown()

    app = FastAPI(title="Operata Wallet", version=__version__, lifespan=lifespan)
    if context is not None:
        app.state.context = context

    @app.get("/health")
    async def health():
        return {"status": "ok", "version": __version__}

    @app.get("/api/queue")
    async def api_queue(request: Request):
        ctx: AppContext = request.app.state.context
        return {
            "queue": ctx.config.queue.name,
            "paused": ctx.queue.is_paused,
            "counts": await ctx.queue.status(),
        }

    @app.post("/webhooks/notion")
    async def notion_webhook(request: Request):
        ctx: AppContext = request.app.state.context
        body = await request.body()

        secret = ctx.config.server.webhook_secret
        if secret and not is_unexpanded(secret):
            if not verify_signature(body, request.headers.get("X-Notion-Signature", ""), secret):
                logger.warning("Rejected webhook with an invalid signature")
                return JSONResponse(status_code=401, content={"error": "Invalid signature"})

        try:
            payload = json.loads(body)
        except ValueError:
            return JSONResponse(status_code=400, content={"error": "Invalid JSON"})

        if isinstance(payload, dict) and "verification_token" in payload:
            logger.info(f"Notion webhook verification token: {payload['verification_token']}")
            return {"success": True}

        try:
            event = WebhookEvent.model_validate(payload)
        except PydanticValidationError as exc:
            logger.warning(f"Rejected malformed webhook: {exc.error_count()} error(s)")
            return JSONResponse(status_code=400, content={"error": "Invalid event"})

        try:
            workspace = await ctx.ledger.get_workspace_by_notion_id(event.workspace_id)
            if workspace is None:
                logger.warning(f"Webhook for unknown workspace {event.workspace_id}")
                return JSONResponse(status_code=404, content={"error": "Workspace not found"})
            await ctx.router.dispatch(event, workspace)
        except Exception:
            logger.exception(f"Failed to handle webhook {event.id} ({event.type})")
            return JSONResponse(status_code=500, content={"error": "Internal server error"})

        return {"success": True}

    return app


# ------------------------------------------------------------------
# Runner
# ------------------------------------------------------------------


def run_server(host: str = "0.0.0.0", port: int = 8080, base_path: Path | None = None) -> None:
    uvicorn.run(create_app(base_path=base_path), host=host, port=port, log_level="info")
