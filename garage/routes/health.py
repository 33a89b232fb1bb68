"""Health check endpoints."""

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from garage.bootstrap import Services
from garage.routes.deps import get_services
from garage.services.redis_client import check_redis_health

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "service": "garage-scheduler"}


@router.get("/health/db")
async def db_health_check(services: Services = Depends(get_services)):
    """Database health check."""
    try:
        await services.database.ping()
        return {"status": "healthy", "database": "connected"}
    except Exception as e:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "database": "disconnected", "error": str(e)},
        )


@router.get("/health/redis")
async def redis_health_check(services: Services = Depends(get_services)):
    """Redis health check. Redis is optional; without it the sweep lock is process-local."""
    if services.redis_client is None:
        return {"status": "healthy", "redis": "not_configured"}

    try:
        is_healthy = await check_redis_health(services.redis_client)
        if is_healthy:
            return {"status": "healthy", "redis": "connected"}
        else:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "unhealthy", "redis": "disconnected"},
            )
    except Exception as e:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "redis": "disconnected", "error": str(e)},
        )
