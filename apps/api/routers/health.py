"""
Health check endpoints.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from config import settings
from routers.rate_limit import ping_redis
from services.runtime import AppServices, get_services

router = APIRouter()


@router.get("/health")
async def health_check(services: AppServices = Depends(get_services)):
    """
    Health check endpoint.
    Returns overall system health status.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "store_backend": settings.STORE_BACKEND,
        "database": "unknown",
        "jobs": services.queue.stats(),
        "generation_api_key": "configured" if settings.GENERATION_API_KEY else "missing",
    }

    if settings.STORE_BACKEND == "sql":
        try:
            from database import engine
            from sqlalchemy import text
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            health_status["database"] = "up"
        except Exception as e:
            health_status["database"] = f"down: {str(e)}"
            health_status["status"] = "degraded"
    else:
        health_status["database"] = "not used"

    health_status["rate_limit_store"] = await ping_redis()

    return health_status


@router.get("/health/ready")
async def readiness_check(services: AppServices = Depends(get_services)):
    """Kubernetes-style readiness probe."""
    missing = []
    if not settings.GENERATION_API_KEY:
        missing.append("GENERATION_API_KEY")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True, "accepting_jobs": services.queue.can_start_processing()}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
