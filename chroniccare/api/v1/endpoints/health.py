"""Health check endpoints."""

import structlog
from fastapi import APIRouter, status
from pydantic import BaseModel

from chroniccare.config import settings
from chroniccare.core.redis_client import check_redis_connection
from chroniccare.database import check_database_connection
from chroniccare.dependencies import ClockDep, DatabaseSession, QueueDep
from chroniccare.services.notification_service import NotificationService

router = APIRouter()
logger = structlog.get_logger(__name__)


class HealthResponse(BaseModel):
    """Liveness response."""

    status: str
    version: str
    environment: str


class PipelineHealth(BaseModel):
    """Notification pipeline backlog."""

    queue_depth: int | None = None
    overdue_notifications: int | None = None
    healthy: bool


class DetailedHealthResponse(HealthResponse):
    """Readiness response including dependencies."""

    database: str
    redis: str
    notifications: PipelineHealth


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Basic health check",
)
async def health_check() -> HealthResponse:
    return HealthResponse(
        status="healthy",
        version=settings.app_version,
        environment=settings.environment,
    )


@router.get(
    "/health/detailed",
    response_model=DetailedHealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Detailed health check",
)
async def detailed_health_check(
    db: DatabaseSession,
    queue: QueueDep,
    clock: ClockDep,
) -> DetailedHealthResponse:
    """
    Dependency status plus the notification backlog across all tenants.

    The pipeline is unhealthy when more notifications are overdue than the
    alert threshold allows.
    """
    db_healthy = await check_database_connection()
    redis_healthy = await check_redis_connection()

    pipeline = PipelineHealth(healthy=False)
    if db_healthy:
        stats = await NotificationService.get_stats(db, None, clock.now())
        pipeline.overdue_notifications = stats.overdue
        pipeline.healthy = stats.healthy
    if redis_healthy and hasattr(queue, "depth"):
        try:
            pipeline.queue_depth = await queue.depth(settings.notification_queue)
        except Exception as e:
            logger.warning("queue_depth_unavailable", error=str(e))

    overall = db_healthy and redis_healthy and pipeline.healthy
    return DetailedHealthResponse(
        status="healthy" if overall else "degraded",
        version=settings.app_version,
        environment=settings.environment,
        database="healthy" if db_healthy else "unhealthy",
        redis="healthy" if redis_healthy else "unhealthy",
        notifications=pipeline,
    )


@router.get(
    "/ping",
    status_code=status.HTTP_200_OK,
    summary="Simple ping",
)
async def ping() -> dict[str, str]:
    return {"message": "pong"}
