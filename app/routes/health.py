# app/routes/health.py
"""
Health check endpoints with database pool and Redis monitoring.
"""

import time

from fastapi import APIRouter

from app.config import settings
from app.db.pool import db_health_check
from app.services.redis_client import fast_redis

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "startup-login"}


@router.get("/readyz")
async def readyz():
    """
    Readiness check covering Redis, the database pool and login configuration.
    """
    checks = {}
    overall_ok = True

    # 1) Redis (optional; only required by the redis rate limit backend)
    if settings.REDIS_URL:
        t0 = time.time()
        try:
            redis_ok = await fast_redis.ping()
            checks["redis"] = {
                "ok": bool(redis_ok),
                "latency_ms": round((time.time() - t0) * 1000, 1),
            }
            overall_ok = overall_ok and bool(redis_ok)
        except Exception as e:
            checks["redis"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
            overall_ok = False
    else:
        checks["redis"] = {"ok": True, "configured": False}

    # 2) Database pool
    t0 = time.time()
    try:
        db_health = await db_health_check()
        is_healthy = db_health.get("healthy", False)

        checks["database"] = {
            "ok": is_healthy,
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }

        if "pool_stats" in db_health:
            pool_stats = db_health["pool_stats"]
            checks["database"].update(
                {
                    "pool_size": pool_stats.get("pool_size", 0),
                    "pool_available": pool_stats.get("pool_available", 0),
                    "connection_time_ms": db_health.get("connection_time_ms", 0),
                }
            )

        if not is_healthy:
            checks["database"]["error"] = db_health.get("error", "Database unhealthy")

        overall_ok = overall_ok and is_healthy

    except Exception as e:
        checks["database"] = {
            "ok": False,
            "error": f"{type(e).__name__}: {e}",
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        overall_ok = False

    # 3) Configuration checks
    config_issues = []

    if not settings.LOGIN_BOT_SHARED_SECRET:
        config_issues.append("LOGIN_BOT_SHARED_SECRET not set")

    if not settings.LOGIN_CREDENTIAL_SECRET:
        config_issues.append("LOGIN_CREDENTIAL_SECRET not set")

    if settings.CONFIRM_RATE_LIMIT_BACKEND == "redis" and not settings.REDIS_URL:
        config_issues.append("CONFIRM_RATE_LIMIT_BACKEND=redis but REDIS_URL not set")

    config_ok = not config_issues
    checks["configuration"] = {
        "ok": config_ok,
        "issues": config_issues or None,
        "environment": settings.environment,
    }
    overall_ok = overall_ok and config_ok

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}


@router.get("/health/database")
async def database_health():
    """Detailed database pool health information."""
    return await db_health_check()
