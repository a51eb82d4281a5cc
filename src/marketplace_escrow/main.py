"""FastAPI application entry point for the marketplace escrow.

Lifecycle:
    1. Startup: Initialize logging, database, Redis, create tables (dev mode).
    2. Running: Serve REST API + MCP tools on a single Uvicorn process.
    3. Shutdown: Close database and Redis connections gracefully.

The MCP server is mounted at /mcp so agents can discover tools alongside
the REST API at /api/v1/*.

Run with:
    uvicorn marketplace_escrow.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from marketplace_escrow.config import get_settings
from marketplace_escrow.logging_config import get_logger, setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    settings = get_settings()

    # 1. Setup structured logging
    setup_logging(
        log_level=settings.app_log_level,
        json_logs=not settings.is_development,
    )
    logger = get_logger(__name__)
    logger.info(
        "app.starting",
        env=settings.app_env,
        debug=settings.app_debug,
        payment_mode=settings.payment_mode,
    )

    # 2. Initialize database
    from marketplace_escrow.infrastructure.database.engine import close_db, init_db

    await init_db()

    # 3. Initialize Redis (optional; idempotency falls back to database keys)
    from marketplace_escrow.infrastructure.redis_client import close_redis, init_redis

    try:
        await init_redis()
    except Exception as exc:
        logger.warning("app.redis_unavailable", error=str(exc))

    logger.info("app.started", host=settings.app_host, port=settings.app_port)

    yield

    # Shutdown
    logger.info("app.shutting_down")
    await close_db()
    await close_redis()
    logger.info("app.stopped")


def create_app() -> FastAPI:
    """Application factory: creates and configures the FastAPI app."""
    settings = get_settings()

    app = FastAPI(
        title="Marketplace Escrow",
        description=(
            "Bids, escrow holds, milestone evidence, disputes and "
            "automatic release for a service marketplace."
        ),
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # --- Middleware ---
    from marketplace_escrow.api.middleware import setup_middleware

    setup_middleware(app)

    # --- REST API Routes ---
    from marketplace_escrow.api.routes.disputes import router as disputes_router
    from marketplace_escrow.api.routes.escrow import router as escrow_router
    from marketplace_escrow.api.routes.health import router as health_router
    from marketplace_escrow.api.routes.milestones import router as milestones_router
    from marketplace_escrow.api.routes.scheduler import router as scheduler_router
    from marketplace_escrow.api.routes.work_orders import router as work_orders_router

    app.include_router(health_router)
    app.include_router(work_orders_router)
    app.include_router(escrow_router)
    app.include_router(milestones_router)
    app.include_router(disputes_router)
    app.include_router(scheduler_router)

    # --- MCP Server (mounted as sub-application) ---
    from marketplace_escrow.mcp_server.tools import mcp

    if settings.mcp_transport == "streamable-http":
        app.mount("/mcp", mcp.streamable_http_app())
    else:
        app.mount("/mcp", mcp.sse_app())

    return app


# The app instance used by Uvicorn
app = create_app()
