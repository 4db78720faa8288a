# app/routes/health.py
"""
Health check endpoints with storage backend and database pool monitoring.
"""

import time

from fastapi import APIRouter

from app.config import settings
from app.db.pool import db_health_check, db_pool
from app.infrastructure.observability.logging import log_health_check

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "infrastructure-healing-engine"}


@router.get("/readyz")
async def readyz():
    """
    Readiness check covering the storage backend and configuration.
    """
    checks = {}
    overall_ok = True

    # 1) Storage backend
    if settings.uses_postgres():
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
                        "pool_utilization_percent": pool_stats.get("pool_utilization_percent", 0),
                        "connection_time_ms": db_health.get("connection_time_ms", 0),
                    }
                )

            if not is_healthy:
                checks["database"]["error"] = db_health.get("error", "Database unhealthy")
                if "error_type" in db_health:
                    checks["database"]["error_type"] = db_health["error_type"]

            log_health_check("database", is_healthy, checks["database"]["latency_ms"], checks["database"].get("error"))
            overall_ok = overall_ok and is_healthy

        except Exception as e:
            checks["database"] = {
                "ok": False,
                "error": f"{type(e).__name__}: {e}",
                "latency_ms": round((time.time() - t0) * 1000, 1),
            }
            overall_ok = False
    else:
        checks["storage"] = {"ok": True, "backend": settings.STORAGE_BACKEND}

    # 2) Configuration checks
    config_issues = []
    if settings.uses_postgres() and not settings.DATABASE_URL:
        config_issues.append("DATABASE_URL not set")
    if settings.STORAGE_BACKEND.strip().lower() not in ("memory", "postgres"):
        config_issues.append(f"Unknown STORAGE_BACKEND '{settings.STORAGE_BACKEND}'")

    config_ok = not config_issues
    checks["configuration"] = {
        "ok": config_ok,
        "issues": config_issues if config_issues else None,
        "environment": settings.environment,
    }
    overall_ok = overall_ok and config_ok

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}


@router.get("/health/database")
async def database_health():
    """Detailed database pool health information."""
    if not settings.uses_postgres():
        return {"healthy": True, "service": "database_pool", "backend": settings.STORAGE_BACKEND, "pool": "not_used"}
    return await db_health_check()


@router.get("/health/pool-stats")
async def pool_stats():
    """Get real-time pool statistics."""
    if not db_pool.initialized:
        return {"error": "Pool not initialized", "pool_health": "not_initialized"}

    try:
        stats = db_pool.pool.get_stats()
        pool_size = stats.get("pool_size", 0)
        pool_available = stats.get("pool_available", 0)
        utilization = ((pool_size - pool_available) / pool_size * 100) if pool_size > 0 else 0

        return {
            "pool_health": "healthy",
            "pool_size": pool_size,
            "available_connections": pool_available,
            "active_connections": pool_size - pool_available,
            "utilization_percent": round(utilization, 1),
            "requests_waiting": stats.get("requests_waiting", 0),
            "total_requests": stats.get("requests_num", 0),
            "request_errors": stats.get("requests_errors", 0),
        }

    except Exception as e:
        return {"error": str(e), "pool_health": "error", "error_type": type(e).__name__}
