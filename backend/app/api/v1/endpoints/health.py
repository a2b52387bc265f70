"""
Health Check Endpoints

- /health/live  - Basic liveness (app is running)
- /health/ready - Readiness check (database reachable, gateway configured)
"""

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from datetime import datetime, timezone
from typing import Dict, Any
import time

from app.core.config import settings
from app.core.logging_config import logger


router = APIRouter(prefix="/health", tags=["Health Checks"])


async def check_database() -> Dict[str, Any]:
    """Check database connectivity and that the verification tables exist"""
    start = time.time()
    try:
        from app.core.database import get_session_local
        from sqlalchemy import text

        session_factory = get_session_local()
        async with session_factory() as session:
            await session.execute(text("SELECT 1 as health"))

            try:
                await session.execute(text("SELECT COUNT(*) FROM fastag_verifications"))
                tables_ok = True
            except Exception:
                tables_ok = False

            latency = (time.time() - start) * 1000
            return {
                "status": "healthy",
                "latency_ms": round(latency, 2),
                "connection": "ok",
                "tables_ready": tables_ok,
                "message": "Database connection successful"
            }
    except Exception as e:
        latency = (time.time() - start) * 1000
        logger.error(f"[HealthCheck] Database check failed: {e}")
        return {
            "status": "unhealthy",
            "latency_ms": round(latency, 2),
            "connection": "failed",
            "tables_ready": False,
            "error": str(e),
            "message": "Database connection failed - verifications cannot be cached"
        }


def check_gateway_config() -> Dict[str, Any]:
    """Check the vehicle data gateway configuration (not actual connectivity)"""
    if not settings.gateway_configured:
        return {
            "status": "degraded",
            "configured": False,
            "message": "VEHICLE_GATEWAY_URL not configured - only cached data can be served"
        }
    return {
        "status": "healthy",
        "configured": True,
        "proxy_token": bool(settings.VEHICLE_GATEWAY_PROXY_TOKEN),
        "api_key": bool(settings.VEHICLE_GATEWAY_API_KEY),
        "message": "Gateway configured"
    }


@router.get("/live")
async def liveness_check():
    """
    Liveness probe - indicates the application is running.
    """
    return {
        "status": "alive",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "app": settings.APP_NAME,
        "version": "1.0.0"
    }


@router.get("/ready")
async def readiness_check():
    """
    Readiness probe - 200 only when the database is usable.

    A missing gateway degrades the service (stale data only) but does not
    make it unready.
    """
    db_check = await check_database()
    gateway_check = check_gateway_config()

    is_ready = db_check.get("status") == "healthy" and db_check.get("tables_ready", False)

    response = {
        "status": "ready" if is_ready else "not_ready",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": db_check,
            "gateway": gateway_check,
        }
    }

    if not is_ready:
        logger.warning("[HealthCheck] Readiness check failed", extra={"checks": response["checks"]})
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=response)

    return response
