"""Periodic selection of due notifications and the retry sweep."""

import time
from dataclasses import dataclass
from datetime import timedelta
from uuid import UUID

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chroniccare.config import Settings
from chroniccare.core.clock import Clock
from chroniccare.core.queue import NotificationQueue
from chroniccare.models.notifications import notifications
from chroniccare.schemas.notifications import DeliveryStatus, FailureClass, NotificationStats
from chroniccare.services.notification_service import NotificationService

logger = structlog.get_logger(__name__)


@dataclass
class SchedulerRunSummary:
    selected: int = 0
    queued: int = 0
    skipped: int = 0
    publish_failed: int = 0
    duration_ms: float = 0.0


class NotificationScheduler:
    """
    Moves due notifications into the dispatch queue.

    ``run_once`` and ``retry_failed`` are plain coroutines so they can be
    driven by tests with a frozen clock; ``start`` wires them to APScheduler
    interval jobs.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue: NotificationQueue,
        clock: Clock,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.clock = clock
        self.settings = settings
        self._scheduler: AsyncIOScheduler | None = None

    async def run_once(self) -> SchedulerRunSummary:
        """
        Queue every pending notification due within the next interval.

        Records are taken highest priority first, then oldest send time, up to
        the batch size. Each record is claimed and published in its own
        transaction; a claim lost to a concurrent run is skipped.

        Returns:
            Counts for the run
        """
        started = time.perf_counter()
        now = self.clock.now()
        horizon = now + timedelta(seconds=self.settings.scheduler_interval_seconds)
        summary = SchedulerRunSummary()

        async with self.session_factory() as db:
            stmt = (
                select(notifications.c.id, notifications.c.tenant_id, notifications.c.priority)
                .where(
                    and_(
                        notifications.c.delivery_status == DeliveryStatus.PENDING.value,
                        notifications.c.scheduled_send_time <= horizon,
                    )
                )
                .order_by(notifications.c.priority.desc(), notifications.c.scheduled_send_time.asc())
                .limit(self.settings.scheduler_batch_size)
            )
            due = [dict(row) for row in (await db.execute(stmt)).mappings().all()]
            await db.rollback()
            summary.selected = len(due)

            for record in due:
                queued = await NotificationService.enqueue(
                    db, self.queue, record, now, self.settings.notification_queue
                )
                if queued:
                    summary.queued += 1
                    continue
                status = (
                    await db.execute(
                        select(notifications.c.delivery_status).where(notifications.c.id == record["id"])
                    )
                ).scalar_one_or_none()
                await db.rollback()
                if status == DeliveryStatus.FAILED.value:
                    summary.publish_failed += 1
                else:
                    summary.skipped += 1

        summary.duration_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info(
            "notification_scheduler_run",
            selected=summary.selected,
            queued=summary.queued,
            skipped=summary.skipped,
            publish_failed=summary.publish_failed,
            duration_ms=summary.duration_ms,
        )
        return summary

    async def retry_failed(self) -> int:
        """
        Reset retry-eligible failures to ``pending``.

        Eligible records are transient failures with attempts left that have
        not been touched for the cooldown window.

        Returns:
            Number of records reset
        """
        now = self.clock.now()
        cutoff = now - timedelta(minutes=self.settings.retry_cooldown_minutes)

        async with self.session_factory() as db:
            candidates = (
                select(notifications.c.id)
                .where(
                    and_(
                        notifications.c.delivery_status == DeliveryStatus.FAILED.value,
                        notifications.c.retry_count < self.settings.max_notification_attempts,
                        or_(
                            notifications.c.failure_class.is_(None),
                            notifications.c.failure_class != FailureClass.PERMANENT.value,
                        ),
                        notifications.c.updated_at < cutoff,
                    )
                )
                .order_by(notifications.c.updated_at.asc())
                .limit(self.settings.retry_sweep_limit)
            )
            ids: list[UUID] = list((await db.execute(candidates)).scalars().all())
            if not ids:
                await db.rollback()
                return 0

            result = await db.execute(
                update(notifications)
                .where(
                    and_(
                        notifications.c.id.in_(ids),
                        notifications.c.delivery_status == DeliveryStatus.FAILED.value,
                    )
                )
                .values(
                    delivery_status=DeliveryStatus.PENDING.value,
                    failure_class=None,
                    retry_count=notifications.c.retry_count + 1,
                    scheduled_send_time=now,
                    updated_at=now,
                )
            )
            await db.commit()

        reset = result.rowcount or 0
        logger.info("notification_retry_sweep", reset=reset)
        return reset

    async def stats(self, tenant_id: UUID | None = None) -> NotificationStats:
        """Pipeline counters; logs a warning when the backlog is unhealthy."""
        async with self.session_factory() as db:
            stats = await NotificationService.get_stats(
                db, tenant_id, self.clock.now(), self.settings.overdue_alert_threshold
            )
        if not stats.healthy:
            logger.warning(
                "notification_backlog_unhealthy",
                overdue=stats.overdue,
                threshold=self.settings.overdue_alert_threshold,
            )
        return stats

    async def _run_job(self) -> None:
        try:
            await self.run_once()
            await self.stats()
        except Exception as e:
            logger.error("notification_scheduler_run_failed", error=str(e), exc_info=True)

    async def _retry_job(self) -> None:
        try:
            await self.retry_failed()
        except Exception as e:
            logger.error("notification_retry_sweep_failed", error=str(e), exc_info=True)

    def start(self) -> None:
        """Register the scheduling and retry jobs and start APScheduler."""
        if not self.settings.scheduler_enabled:
            logger.info("notification_scheduler_disabled")
            return
        if self._scheduler is not None:
            logger.warning("notification_scheduler_already_running")
            return

        scheduler = AsyncIOScheduler(timezone="UTC")
        interval = IntervalTrigger(seconds=self.settings.scheduler_interval_seconds)
        scheduler.add_job(
            self._run_job,
            interval,
            id="notification_scheduler",
            name="Queue due notifications",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=self.clock.now(),
        )
        scheduler.add_job(
            self._retry_job,
            IntervalTrigger(seconds=self.settings.scheduler_interval_seconds),
            id="notification_retry_sweep",
            name="Retry failed notifications",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "notification_scheduler_started",
            interval_seconds=self.settings.scheduler_interval_seconds,
        )

    def stop(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("notification_scheduler_stopped")
