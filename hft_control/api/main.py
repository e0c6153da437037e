#hft_control\api\main.py
"""Control-plane API (dashboard intents)."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from hft_control.api.errors import install_error_handlers
from hft_control.api.routes.bot import router as bot_router
from hft_control.api.routes.health import router as health_router
from hft_control.api.routes.providers import router as providers_router
from hft_control.config import settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.database_url.startswith("sqlite"):
        # local development; Postgres is migrated with Alembic
        from hft_control.infrastructure.postgres.database import init_db
        init_db()
    logger.info("🚀 Control plane API started")
    yield


def create_app() -> FastAPI:
    app = FastAPI(title="HFT Control Plane API", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["authorization", "x-client-info", "apikey", "content-type", "x-actor"],
    )
    install_error_handlers(app)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    app.include_router(providers_router)
    app.include_router(health_router)
    app.include_router(bot_router)
    return app


app = create_app()
