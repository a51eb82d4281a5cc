"""Health check endpoint.

Verifies connectivity to the database and Redis, returns structured status.
Redis is optional: without it the service runs with database-only
idempotency, so a missing Redis reports "degraded" rather than failing.
"""

from __future__ import annotations

from fastapi import APIRouter
from sqlalchemy import text

from marketplace_escrow.infrastructure.database.engine import get_engine
from marketplace_escrow.infrastructure.redis_client import get_redis, is_redis_ready
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.schemas.escrow import HealthResponse

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns the health status of the application and its dependencies.",
)
async def health_check() -> HealthResponse:
    db_status = "unknown"
    redis_status = "not_configured"

    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        db_status = "healthy"
    except Exception as exc:
        db_status = f"unhealthy: {exc}"
        logger.error("health.db_check_failed", error=str(exc))

    if is_redis_ready():
        try:
            await get_redis().ping()
            redis_status = "healthy"
        except Exception as exc:
            redis_status = f"unhealthy: {exc}"
            logger.error("health.redis_check_failed", error=str(exc))

    overall = "ok" if db_status == "healthy" and redis_status == "healthy" else "degraded"

    return HealthResponse(
        status=overall,
        version="0.1.0",
        database=db_status,
        redis=redis_status,
    )
