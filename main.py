"""
Purchase Tracker mailbox service — application entry point.
"""

from __future__ import annotations

import logging
import sys

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.cron import router as cron_router
from api.gmail import router as gmail_router
from api.google_auth import router as google_auth_router
from api.middleware import register_middleware
from api.notifications import router as notifications_router
from api.subscriptions import router as subscriptions_router
from config.settings import config
from utils.background import background_tasks

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "openai", "anthropic", "googleapiclient.discovery", "urllib3"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

_SHUTDOWN_DRAIN_SECONDS = 10.0


def create_app() -> FastAPI:
    app = FastAPI(
        title="Purchase Tracker Mailbox Service",
        version="1.0.0",
        description="Gmail order sync, expiry notifications and service-info lookup.",
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)

    # Routes
    app.include_router(google_auth_router, prefix="/api/v1/auth/google")
    app.include_router(gmail_router, prefix="/api/v1/gmail")
    app.include_router(cron_router, prefix="/api/v1/cron")
    app.include_router(notifications_router, prefix="/api/v1/notifications")
    app.include_router(subscriptions_router, prefix="/api/v1/subscriptions")

    @app.get("/api/v1/health", tags=["health"])
    async def health() -> dict:
        return {"status": "ok"}

    @app.on_event("startup")
    async def on_startup():
        if not config.cron_secret:
            logger.warning("CRON_SECRET is not set; the cron endpoint is unauthenticated")
        if not config.token_encryption_key:
            logger.warning("TOKEN_ENCRYPTION_KEY is not set; OAuth tokens are stored in plaintext")
        logger.info("Application ready to accept requests.")

    @app.on_event("shutdown")
    async def on_shutdown():
        if background_tasks.pending:
            logger.info("Waiting for %d background task(s)…", background_tasks.pending)
            await background_tasks.drain(timeout=_SHUTDOWN_DRAIN_SECONDS)

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )
