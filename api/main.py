"""
FastAPI Application — WHAPI webhooks + execution log API.

Provides:
- Webhook endpoint per (account, workflow token) for WHAPI deliveries
- Recent execution log entries per workflow
- Health check with messaging client diagnostics
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from channels.whapi_client import WhapiClientPool
from config.settings import Settings, get_settings
from core.errors import WebhookAuthError
from core.orchestrator import WebhookOrchestrator
from database.session import close_db, init_db
from database.store import SqlStore
from database.store_base import BaseStore, PersistenceError
from database.store_factory import create_store

logger = structlog.get_logger()


def create_app(
    store: BaseStore = None,
    clients: WhapiClientPool = None,
    settings: Settings = None,
) -> FastAPI:
    settings = settings or get_settings()
    store = store or create_store({"store_backend": settings.database.store_backend})
    clients = clients or WhapiClientPool(settings.whapi)
    orchestrator = WebhookOrchestrator(store, clients, settings)
    uses_sql = isinstance(store, SqlStore)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if uses_sql:
            await init_db(settings.database.url)
        logger.info("flowrelay_started", store=type(store).__name__,
                    whapi_mock=settings.whapi.mock, timezone=settings.timezone)
        yield
        await clients.aclose()
        if uses_sql:
            await close_db()
        logger.info("flowrelay_stopped")

    app = FastAPI(
        title="FlowRelay API",
        description="WhatsApp workflow engine driven by WHAPI webhooks",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.store = store
    app.state.clients = clients
    app.state.orchestrator = orchestrator

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "store": type(store).__name__,
            "messaging": await clients.health_check(),
        }

    # ══════════════════════════════════════════════════════════
    #  WEBHOOKS — WHAPI
    # ══════════════════════════════════════════════════════════

    @app.post("/webhooks/whapi/{account_id}/{webhook_token}")
    async def whapi_webhook(account_id: str, webhook_token: str, request: Request):
        try:
            payload: Any = await request.json()
        except ValueError:
            logger.warning("whapi_webhook_invalid_json", account_id=account_id)
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        try:
            return await orchestrator.handle_webhook(account_id, webhook_token, payload)
        except WebhookAuthError as e:
            raise HTTPException(status_code=401, detail=str(e))
        except PersistenceError as e:
            logger.error("whapi_webhook_persistence_failed", account_id=account_id, error=str(e))
            return JSONResponse(status_code=500, content={"success": False, "error": "Persistence failure"})

    # ══════════════════════════════════════════════════════════
    #  EXECUTION LOG
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/workflows/{workflow_id}/executions")
    async def list_executions(workflow_id: str, limit: int = Query(50, ge=1, le=500)):
        workflow = await store.get_workflow(workflow_id)
        if workflow is None:
            raise HTTPException(404, "Workflow not found")
        entries = await store.list_execution_logs(workflow_id, limit=limit)
        return {
            "workflowId": workflow_id,
            "count": len(entries),
            "executions": [e.model_dump(mode="json") for e in entries],
        }

    return app


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
