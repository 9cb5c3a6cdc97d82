"""ASGI entry point for the billing sync service.

Run with ``uvicorn --factory tracker_billing.main:create_app``.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tracker_billing.app.routes.billing import router as billing_router
from tracker_billing.app.routes.subscriptions import router as subscriptions_router
from tracker_billing.app.routes.webhooks import router as webhooks_router
from tracker_billing.app.services.billing import (
    get_connection_pool,
    get_settings,
    initialize_store,
)

logger = logging.getLogger("billing")


def create_app() -> FastAPI:
    """Build the application; raises ``ConfigurationError`` before serving anything."""

    load_dotenv()
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings.validate()

    app = FastAPI(title="Tracker Billing Sync")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(billing_router)
    app.include_router(webhooks_router)
    app.include_router(subscriptions_router)

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "environment": settings.app_env,
        }

    @app.on_event("startup")
    def setup_store() -> None:
        initialize_store()
        logger.info(
            "Billing sync started env=%s directory=%s",
            settings.app_env,
            settings.traccar_base_url,
        )

    @app.on_event("shutdown")
    def close_pool() -> None:
        if not settings.uses_memory_store:
            get_connection_pool().closeall()

    return app
