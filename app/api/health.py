"""
app/api/health.py

Purpose: Liveness, readiness and status probes

- /live answers while the process runs
- /ready requires the database
- /health reports database, live intake sessions and credential presence
"""

import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.logging import get_logger
from app.db.mongo import check_database_health
from app.flow.dispatcher import get_dispatcher

logger = get_logger(__name__)
router = APIRouter()

APP_VERSION = "1.0.0"


@router.get("/")
async def root():
    return {
        "name": "SubsBot API",
        "version": APP_VERSION,
        "status": "running",
        "environment": settings.ENVIRONMENT,
    }


@router.get("/health")
async def health_check():
    """
    Database reachability decides the status; missing credentials only
    show up under `checks` so operators can spot a half-configured deploy.
    """
    checks = {
        "telegram": "configured" if settings.TELEGRAM_BOT_TOKEN else "missing_token",
        "mercadopago": "configured" if settings.MERCADOPAGO_ACCESS_TOKEN else "missing_token",
        "group": "configured" if settings.TELEGRAM_GROUP_ID is not None else "missing_group_id",
    }

    try:
        db_healthy = await check_database_health()
    except Exception as e:
        logger.error(f"Database health check failed: {str(e)}")
        db_healthy = False
    checks["database"] = "healthy" if db_healthy else "unhealthy"

    body = {
        "status": "healthy" if db_healthy else "degraded",
        "timestamp": time.time(),
        "environment": settings.ENVIRONMENT,
        "version": APP_VERSION,
        "active_sessions": get_dispatcher().engine.store.active_count(),
        "checks": checks,
    }
    return JSONResponse(content=body, status_code=200 if db_healthy else 503)


@router.get("/ready")
async def readiness_check():
    if await check_database_health():
        return {"status": "ready"}
    return JSONResponse(
        status_code=503,
        content={"status": "not_ready", "reason": "database_unavailable"},
    )


@router.get("/live")
async def liveness_check():
    return {"status": "alive"}
