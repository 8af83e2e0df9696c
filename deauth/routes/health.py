"""
Health check endpoints.
"""

import time

from fastapi import APIRouter

from deauth.config import settings
from deauth.db.pool import db_health_check
from deauth.services.infrastructure.redis_client import fast_redis

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "inactive-user-deauth"}


@router.get("/readyz")
async def readyz():
    """Readiness check covering Redis (job lock) and the database pool."""
    checks = {}
    overall_ok = True

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

    t0 = time.time()
    try:
        db_health = await db_health_check()
        is_healthy = db_health.get("healthy", False)
        checks["database"] = {
            "ok": is_healthy,
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        if "pool_stats" in db_health:
            checks["database"]["pool_stats"] = db_health["pool_stats"]
        if not is_healthy:
            checks["database"]["error"] = db_health.get("error", "Database unhealthy")
        overall_ok = overall_ok and is_healthy
    except Exception as e:
        checks["database"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
        overall_ok = False

    checks["configuration"] = {
        "ok": bool(settings.JWT_SECRET),
        "issues": None if settings.JWT_SECRET else ["JWT_SECRET not set"],
        "environment": settings.environment,
    }
    overall_ok = overall_ok and bool(settings.JWT_SECRET)

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
