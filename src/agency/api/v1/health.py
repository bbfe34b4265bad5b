"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks. Readiness
verifies the record store database, and Redis when the change feed is
enabled.
"""

from __future__ import annotations

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.agency.config import get_settings
from src.agency.core.database import get_engine
from src.agency.core.redis import get_redis_pool

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check.

    No external dependencies are checked -- just that the server is running.
    """
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies() -> dict:
    """Check database and (if the change feed is on) Redis connectivity."""
    settings = get_settings()
    checks: dict = {"database": "ok", "redis": "disabled"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    if settings.CHANGE_FEED_ENABLED:
        try:
            redis = get_redis_pool()
            pong = await redis.ping()
            checks["redis"] = "ok" if pong else "error"
            if not pong:
                checks["redis_error"] = "PING did not return PONG"
        except Exception as e:
            checks["redis"] = "error"
            checks["redis_error"] = str(e)

    return checks


@router.get("/health/ready")
async def readiness_check():
    """Readiness check: 200 if all dependencies pass, 503 otherwise."""
    checks = await _check_dependencies()
    all_healthy = checks.get("database") == "ok" and checks.get("redis") in ("ok", "disabled")

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
        },
    )
