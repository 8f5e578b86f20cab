from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select

from chroniccare.config import settings
from chroniccare.models import notifications
from chroniccare.workers.notification_scheduler import NotificationScheduler


@pytest.fixture
def make_notification(insert_row, tenant_id, patient, clock):
    """Insert a notification record for the seeded patient."""

    async def _make(send_in=timedelta(0), priority=5, status="pending", **values):
        return await insert_row(
            notifications,
            tenant_id=tenant_id,
            patient_id=patient["id"],
            notification_type=values.pop("notification_type", "medication_reminder"),
            priority=priority,
            scheduled_send_time=clock.now() + send_in,
            delivery_status=status,
            created_at=clock.now(),
            updated_at=values.pop("updated_at", clock.now()),
            **values,
        )

    return _make


@pytest.fixture
def scheduler(session_factory, fake_queue, clock):
    return NotificationScheduler(session_factory, fake_queue, clock, settings)


async def _status(db_session, notification_id):
    result = await db_session.execute(select(notifications).where(notifications.c.id == notification_id))
    return dict(result.mappings().one())


@pytest.mark.asyncio
async def test_run_once_queues_due_records_by_priority(scheduler, make_notification, fake_queue, db_session):
    """Test due records are queued highest priority first, then oldest send time."""
    low = await make_notification(send_in=timedelta(minutes=-30), priority=3)
    urgent = await make_notification(send_in=timedelta(minutes=-5), priority=10)
    older_medium = await make_notification(send_in=timedelta(minutes=-20), priority=5)
    newer_medium = await make_notification(send_in=timedelta(minutes=-10), priority=5)

    summary = await scheduler.run_once()

    assert summary.selected == 4
    assert summary.queued == 4
    published = [m.body["notification_id"] for m in fake_queue.messages]
    assert published == [str(n["id"]) for n in (urgent, older_medium, newer_medium, low)]
    assert fake_queue.messages[0].priority == 10
    for record in (low, urgent, older_medium, newer_medium):
        assert (await _status(db_session, record["id"]))["delivery_status"] == "queued"


@pytest.mark.asyncio
async def test_run_once_respects_horizon(scheduler, make_notification, fake_queue, db_session):
    """Test records due after the next interval stay pending."""
    soon = await make_notification(send_in=timedelta(minutes=4))
    later = await make_notification(send_in=timedelta(hours=2))

    summary = await scheduler.run_once()

    assert summary.queued == 1
    assert (await _status(db_session, soon["id"]))["delivery_status"] == "queued"
    assert (await _status(db_session, later["id"]))["delivery_status"] == "pending"


@pytest.mark.asyncio
async def test_run_once_respects_batch_size(session_factory, fake_queue, clock, make_notification):
    """Test at most one batch is taken per run."""
    scheduler = NotificationScheduler(
        session_factory, fake_queue, clock, settings.model_copy(update={"scheduler_batch_size": 2})
    )
    for _ in range(3):
        await make_notification(send_in=timedelta(minutes=-1))

    summary = await scheduler.run_once()

    assert summary.selected == 2
    assert len(fake_queue.messages) == 2


@pytest.mark.asyncio
async def test_run_once_ignores_non_pending(scheduler, make_notification, fake_queue):
    """Test delivered, superseded and failed records are not selected."""
    for status in ("delivered", "superseded", "failed", "queued"):
        await make_notification(send_in=timedelta(minutes=-1), status=status)

    summary = await scheduler.run_once()

    assert summary.selected == 0
    assert fake_queue.messages == []


@pytest.mark.asyncio
async def test_publish_failure_marks_record_failed(scheduler, make_notification, fake_queue, db_session):
    """Test a broker outage leaves the record failed and retryable, not queued."""
    record = await make_notification(send_in=timedelta(minutes=-1))
    fake_queue.fail_publish = True

    summary = await scheduler.run_once()

    assert summary.publish_failed == 1
    assert summary.queued == 0
    stored = await _status(db_session, record["id"])
    assert stored["delivery_status"] == "failed"
    assert stored["failure_class"] == "transient"
    assert stored["delivery_details"]["stage"] == "publish"
    assert stored["retry_count"] == 0


@pytest.mark.asyncio
async def test_retry_sweep_resets_transient_failures(scheduler, make_notification, db_session, clock):
    """Test failures past the cooldown return to pending with one more attempt counted."""
    stale = clock.now() - timedelta(minutes=45)
    eligible = await make_notification(status="failed", failure_class="transient", retry_count=1, updated_at=stale)
    too_recent = await make_notification(status="failed", failure_class="transient", updated_at=clock.now())
    permanent = await make_notification(status="failed", failure_class="permanent", updated_at=stale)
    exhausted = await make_notification(status="failed", failure_class="transient", retry_count=3, updated_at=stale)

    reset = await scheduler.retry_failed()

    assert reset == 1
    stored = await _status(db_session, eligible["id"])
    assert stored["delivery_status"] == "pending"
    assert stored["retry_count"] == 2
    assert stored["failure_class"] is None
    assert stored["scheduled_send_time"] == clock.now()
    for record in (too_recent, permanent, exhausted):
        assert (await _status(db_session, record["id"]))["delivery_status"] == "failed"


@pytest.mark.asyncio
async def test_stats_flags_unhealthy_backlog(session_factory, fake_queue, clock, make_notification):
    """Test the backlog check warns when too many records are overdue."""
    scheduler = NotificationScheduler(
        session_factory, fake_queue, clock, settings.model_copy(update={"overdue_alert_threshold": 1})
    )
    await make_notification(send_in=timedelta(hours=-3))
    await make_notification(send_in=timedelta(hours=-2))
    await make_notification(send_in=timedelta(minutes=-10))

    with patch("chroniccare.workers.notification_scheduler.logger") as mock_logger:
        stats = await scheduler.stats()

    assert stats.pending == 3
    assert stats.overdue == 2
    assert stats.healthy is False
    mock_logger.warning.assert_called_once()
    assert mock_logger.warning.call_args[0][0] == "notification_backlog_unhealthy"


@pytest.mark.asyncio
async def test_start_registers_interval_jobs(scheduler):
    """Test start wires both periodic jobs and stop shuts them down."""
    scheduler.start()
    try:
        jobs = {job.id: job for job in scheduler._scheduler.get_jobs()}
        assert set(jobs) == {"notification_scheduler", "notification_retry_sweep"}
        assert jobs["notification_scheduler"].max_instances == 1
    finally:
        scheduler.stop()
