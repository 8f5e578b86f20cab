"""Entry point of the notification worker process (scheduler + dispatch pool)."""

import asyncio
import signal

import structlog

from chroniccare.config import settings
from chroniccare.core.clock import SystemClock
from chroniccare.core.firebase import initialize_firebase
from chroniccare.core.queue import RedisNotificationQueue
from chroniccare.core.redis_client import close_redis_connection, get_async_redis_client
from chroniccare.database import AsyncSessionLocal, engine
from chroniccare.middleware.logging import configure_logging
from chroniccare.services.channels import build_transports
from chroniccare.services.notification_templates import TemplateRenderer
from chroniccare.workers.dispatch_pool import DispatchWorkerPool
from chroniccare.workers.notification_dispatcher import NotificationDispatcher
from chroniccare.workers.notification_scheduler import NotificationScheduler

logger = structlog.get_logger(__name__)


async def run_worker() -> None:
    clock = SystemClock()

    firebase_app = None
    if settings.firebase_credentials_path or settings.firebase_config_json:
        try:
            firebase_app = initialize_firebase(
                settings.firebase_credentials_path, settings.firebase_config_json
            )
        except Exception as e:
            logger.warning("firebase_initialization_failed", error=str(e))

    queue = RedisNotificationQueue(
        get_async_redis_client(),
        max_deliveries=settings.queue_max_deliveries,
        dlq_retention_days=settings.dlq_retention_days,
    )
    await queue.recover_inflight(settings.notification_queue)

    scheduler = NotificationScheduler(AsyncSessionLocal, queue, clock, settings)
    dispatcher = NotificationDispatcher(
        AsyncSessionLocal,
        build_transports(settings, firebase_app),
        clock,
        TemplateRenderer(),
        settings,
    )
    pool = DispatchWorkerPool(
        queue,
        dispatcher,
        settings.notification_queue,
        concurrency=settings.dispatch_concurrency,
        prefetch=settings.queue_prefetch,
        poll_interval=settings.queue_poll_interval_seconds,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, pool.stop)

    scheduler.start()
    logger.info("notification_worker_started", environment=settings.environment)
    try:
        await pool.run()
    finally:
        scheduler.stop()
        await engine.dispose()
        await close_redis_connection()
        logger.info("notification_worker_stopped")


def main() -> None:
    configure_logging()
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
