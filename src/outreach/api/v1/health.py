"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready). Redis is only
checked when the change feed is configured.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.outreach.config import get_settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check database and Redis connectivity. Returns check results dict."""
    checks: dict = {"database": "ok", "redis": "disabled"}

    try:
        engine = request.app.state.engine
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    redis = getattr(request.app.state, "redis", None)
    if redis is not None:
        try:
            pong = await redis.ping()
            checks["redis"] = "ok" if pong else "error"
            if not pong:
                checks["redis_error"] = "PING did not return PONG"
        except Exception as e:
            checks["redis"] = "error"
            checks["redis_error"] = str(e)

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: 200 if all configured dependencies respond, 503 otherwise."""
    checks = await _check_dependencies(request)
    all_healthy = checks.get("database") == "ok" and checks.get("redis") in ("ok", "disabled")

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
        },
    )
