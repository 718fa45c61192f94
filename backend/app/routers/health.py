"""Liveness and readiness checks.

    GET /health         process is up (never touches dependencies)
    GET /health/ready   database and Redis reachable, else 503
"""

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.config import settings
from app.database import engine
from app.utils.clock import utcnow
from app.utils.redis_client import ping_redis

router = APIRouter(tags=["health"])


async def _check_database() -> str:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        return f"error: {str(exc)[:100]}"
    return "ok"


async def _check_redis() -> str:
    return "ok" if await ping_redis() else "error: unreachable"


@router.get("/health")
async def liveness():
    return {
        "status": "ok",
        "service": settings.brand_name,
        "environment": settings.environment,
        "timestamp": utcnow().isoformat(),
    }


@router.get("/health/ready")
async def readiness():
    checks = {
        "database": await _check_database(),
        "redis": await _check_redis(),
    }
    ready = all(result == "ok" for result in checks.values())
    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if ready else "unavailable",
            "service": settings.brand_name,
            "checks": checks,
            "timestamp": utcnow().isoformat(),
        },
    )
