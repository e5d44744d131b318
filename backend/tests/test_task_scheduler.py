"""
Test the periodic trigger scheduler.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from licenseflow.scheduler.task_scheduler import DailyScheduledTask, ScheduledTask, TaskScheduler


def noop():
    return None


@pytest.mark.parametrize("now, hour, expected", [
    (datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc), 0, datetime(2025, 1, 2, 0, 0, tzinfo=timezone.utc)),
    (datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc), 12, datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)),
    (datetime(2025, 1, 1, 0, 0, tzinfo=timezone.utc), 0, datetime(2025, 1, 2, 0, 0, tzinfo=timezone.utc)),
    (datetime(2025, 12, 31, 23, 59, tzinfo=timezone.utc), 0, datetime(2026, 1, 1, 0, 0, tzinfo=timezone.utc)),
])
def test_daily_task_next_run(now, hour, expected):
    task = DailyScheduledTask("daily_earnings", noop, utc_hour=hour)

    assert task.calculate_next_run_time(now) == expected


def test_interval_task_runs_after_interval():
    task = ScheduledTask("sweep", noop, interval_seconds=60)
    assert not task.should_run()

    immediate = ScheduledTask("sweep", noop, interval_seconds=60, run_immediately=True)
    assert immediate.should_run()

    immediate.enabled = False
    assert not immediate.should_run()


@pytest.fixture
def worker_pool():
    pool = MagicMock()
    pool.schedule_daily_earnings = AsyncMock()
    pool.queue_pending_validations = AsyncMock(return_value=2)
    pool.queue_due_expirations = AsyncMock(side_effect=RuntimeError("database down"))
    pool.cleanup = AsyncMock()
    return pool


@pytest.mark.asyncio
async def test_default_tasks_registered(worker_pool, settings):
    scheduler = TaskScheduler(worker_pool, settings)
    await scheduler.initialize()

    assert set(scheduler.tasks) == {
        "daily_earnings",
        "pending_validation_sweep",
        "order_expiry_sweep",
        "queue_cleanup",
    }
    assert isinstance(scheduler.tasks["daily_earnings"], DailyScheduledTask)


@pytest.mark.asyncio
async def test_failing_task_does_not_stop_others(worker_pool, settings):
    scheduler = TaskScheduler(worker_pool, settings)
    await scheduler.initialize()

    ran = await scheduler.run_pending_tasks()

    # Only the sweeps are due right after start
    assert ran == 2
    worker_pool.queue_pending_validations.assert_awaited_once()
    worker_pool.queue_due_expirations.assert_awaited_once()
    worker_pool.schedule_daily_earnings.assert_not_awaited()

    assert scheduler.tasks["pending_validation_sweep"].run_count == 1
    assert scheduler.tasks["order_expiry_sweep"].error_count == 1
    assert scheduler.tasks["order_expiry_sweep"].last_error == "database down"

    # Both were rescheduled
    assert await scheduler.run_pending_tasks() == 0


@pytest.mark.asyncio
async def test_disabled_task_is_skipped(worker_pool, settings):
    scheduler = TaskScheduler(worker_pool, settings)
    await scheduler.initialize()
    scheduler.disable_task("order_expiry_sweep")

    assert await scheduler.run_pending_tasks() == 1
    worker_pool.queue_due_expirations.assert_not_awaited()

    health = await scheduler.health_check()
    assert health["tasks"]["order_expiry_sweep"]["enabled"] is False
