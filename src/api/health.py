"""
Health check endpoints - used by load balancers, Docker healthcheck, and monitoring.

- GET /health       - basic liveness (always 200 if app running)
- GET /health/ready - readiness check (DB + Redis)
- GET /health/deep  - deep check (DB + Redis + queue + workers + upstream breaker)
"""
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from src.database import get_db

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

VERSION = "1.0.0"
WORKER_HEARTBEAT_PATTERN = "agentpulse:worker_health:*"
QUEUE_BACKLOG_UNHEALTHY_SECONDS = 300


@router.get("/health")
async def health_check():
    """Basic liveness check - returns 200 if the app is running."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
    }


@router.get("/health/ready")
async def readiness_check(
    db: AsyncSession = Depends(get_db),
):
    """
    Readiness check - verifies database and Redis connectivity.
    Ingress needs the database to enqueue; Redis outages only degrade it.
    """
    checks = {
        "database": (await _check_database(db))["healthy"],
        "redis": (await _check_redis())["healthy"],
    }

    all_healthy = all(checks.values())
    return {
        "status": "ready" if all_healthy else "degraded",
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/health/deep")
async def deep_health_check(
    db: AsyncSession = Depends(get_db),
):
    """
    Deep health check - checks ALL dependencies.

    Checks:
    - PostgreSQL: SELECT 1
    - Redis: PING
    - Queue: counts, oldest due event age, dead letters awaiting review
    - Workers: heartbeat freshness
    - GitHub API: circuit breaker state
    """
    now = datetime.now(timezone.utc)
    checks = {}

    checks["database"] = await _check_database(db)
    checks["redis"] = await _check_redis()
    checks["queue"] = await _check_queue(db)
    checks["workers"] = await _check_workers()
    checks["github_api"] = await _check_breaker()

    # Overall status
    critical = ["database"]
    critical_healthy = all(checks.get(k, {}).get("healthy", False) for k in critical)
    all_healthy = all(c.get("healthy", False) for c in checks.values())

    if all_healthy:
        status = "healthy"
    elif critical_healthy:
        status = "degraded"
    else:
        status = "unhealthy"

    return {
        "status": status,
        "checks": checks,
        "timestamp": now.isoformat(),
        "version": VERSION,
    }


async def _check_database(db: AsyncSession) -> dict:
    """Check database connectivity."""
    try:
        result = await db.execute(text("SELECT 1"))
        result.scalar()
        return {"healthy": True}
    except Exception as e:
        logger.error("Health: database check failed: %s", str(e))
        return {"healthy": False, "error": str(e)}


async def _check_redis() -> dict:
    """Check Redis connectivity."""
    try:
        from src.utils.dedup import get_redis
        redis = await get_redis()
        await redis.ping()
        return {"healthy": True}
    except Exception as e:
        logger.warning("Health: Redis check failed: %s", str(e))
        return {"healthy": False, "error": str(e)}


async def _check_queue(db: AsyncSession) -> dict:
    """Queue depth and age of the oldest event waiting for a worker."""
    try:
        from src.services.event_queue import queue_stats
        stats = await queue_stats(db)
        age = stats["oldest_available_age_seconds"]
        return {
            "healthy": age is None or age < QUEUE_BACKLOG_UNHEALTHY_SECONDS,
            **stats,
        }
    except Exception as e:
        logger.error("Deep health: queue check failed: %s", str(e))
        return {"healthy": False, "error": str(e)}


async def _check_workers() -> dict:
    """Check worker heartbeat timestamps in Redis."""
    try:
        from src.utils.dedup import get_redis
        redis = await get_redis()

        workers = {}
        async for key in redis.scan_iter(match=WORKER_HEARTBEAT_PATTERN):
            workers[key.split(":")[-1]] = await redis.get(key)

        return {"healthy": bool(workers), "workers": workers}
    except Exception as e:
        return {"healthy": True, "note": "Unable to check worker heartbeats"}


async def _check_breaker() -> dict:
    """Report the GitHub API circuit state. An open circuit degrades, never fails."""
    try:
        from src.integrations.github_api import BREAKER_NAME
        from src.utils.circuit_breaker import STATE_CLOSED, get_breaker
        state = await get_breaker(BREAKER_NAME).state()
        return {"healthy": state == STATE_CLOSED, "state": state}
    except Exception as e:
        return {"healthy": True, "note": "Unable to check circuit state"}
