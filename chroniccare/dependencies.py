"""FastAPI dependencies."""

from typing import Annotated
from uuid import UUID

import structlog
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from chroniccare.config import settings
from chroniccare.core.clock import Clock, SystemClock
from chroniccare.core.queue import NotificationQueue, RedisNotificationQueue
from chroniccare.core.redis_client import CacheManager, get_async_redis_client, get_redis_client
from chroniccare.core.security import decode_access_token
from chroniccare.database import get_db
from chroniccare.services.appointment_service import default_booking_locks
from chroniccare.services.conflict_checker import BookingLocks

logger = structlog.get_logger(__name__)

# Security
security = HTTPBearer()

_system_clock = SystemClock()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_tenant_id(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> UUID:
    """
    Extract the tenant id from the bearer token.

    Args:
        credentials: Bearer token credentials

    Returns:
        Tenant id from the ``tenant_id`` claim

    Raises:
        HTTPException: If the token is invalid, expired or carries no tenant
    """
    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise _unauthorized("Could not validate credentials")

    tenant_id = payload.get("tenant_id")
    if not isinstance(tenant_id, str):
        raise _unauthorized("Token carries no tenant")

    try:
        return UUID(tenant_id)
    except ValueError:
        raise _unauthorized("Invalid tenant ID format")


def get_clock() -> Clock:
    return _system_clock


def get_cache_manager() -> CacheManager | None:
    """Slot cache; None disables caching."""
    try:
        return CacheManager(get_redis_client())
    except Exception as e:
        logger.warning("cache_unavailable", error=str(e))
        return None


def get_notification_queue() -> NotificationQueue:
    return RedisNotificationQueue(
        get_async_redis_client(),
        max_deliveries=settings.queue_max_deliveries,
        dlq_retention_days=settings.dlq_retention_days,
    )


def get_booking_locks() -> BookingLocks:
    return default_booking_locks


# Type aliases for dependency injection
DatabaseSession = Annotated[AsyncSession, Depends(get_db)]
CurrentTenantId = Annotated[UUID, Depends(get_current_tenant_id)]
ClockDep = Annotated[Clock, Depends(get_clock)]
CacheDep = Annotated[CacheManager | None, Depends(get_cache_manager)]
QueueDep = Annotated[NotificationQueue, Depends(get_notification_queue)]
LocksDep = Annotated[BookingLocks, Depends(get_booking_locks)]
