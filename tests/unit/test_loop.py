"""Tests for core/loop.py: NudgeDaemon."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import structlog

from nudge.core.orchestrator import CycleReport


def _make_settings(**kwargs):
    from nudge.config import Settings

    return Settings(db_password="testpass", **kwargs)


def _make_scheduler():
    scheduler = MagicMock()
    scheduler.close = AsyncMock()
    scheduler.run_cycle = AsyncMock(
        return_value=CycleReport(started_at=datetime(2026, 3, 2, tzinfo=UTC))
    )
    scheduler.dispatcher.transports = {}
    return scheduler


async def test_daemon_polling_start_and_shutdown():
    from nudge.core.loop import CYCLE_JOB_ID, NudgeDaemon

    scheduler = _make_scheduler()
    mock_jobs = MagicMock()
    mock_jobs.running = True

    with patch("nudge.core.loop.AsyncIOScheduler", return_value=mock_jobs):
        daemon = NudgeDaemon(_make_settings(scheduler_interval_ms=5000), scheduler)
        daemon._verify_dependencies = AsyncMock()
        daemon._run_forever = AsyncMock()
        await daemon.start()

    mock_jobs.add_job.assert_called_once()
    kwargs = mock_jobs.add_job.call_args.kwargs
    assert kwargs["id"] == CYCLE_JOB_ID
    assert kwargs["max_instances"] == 1
    assert kwargs["coalesce"] is True
    trigger = mock_jobs.add_job.call_args.args[1]
    assert trigger.interval.total_seconds() == 5
    mock_jobs.start.assert_called_once()
    mock_jobs.shutdown.assert_called_once_with(wait=False)
    scheduler.close.assert_awaited_once()
    assert daemon._running is False


async def test_daemon_webhook_mode_schedules_no_cycle():
    from nudge.core.loop import NudgeDaemon

    scheduler = _make_scheduler()
    mock_jobs = MagicMock()
    mock_jobs.running = False

    with patch("nudge.core.loop.AsyncIOScheduler", return_value=mock_jobs):
        daemon = NudgeDaemon(_make_settings(scheduler_mode="webhook"), scheduler)
        daemon._verify_dependencies = AsyncMock()
        daemon._run_forever = AsyncMock()
        await daemon.start()

    mock_jobs.add_job.assert_not_called()
    mock_jobs.shutdown.assert_not_called()


async def test_cycle_counts_completed_runs():
    from nudge.core.loop import NudgeDaemon

    scheduler = _make_scheduler()
    daemon = NudgeDaemon(_make_settings(), scheduler)
    await daemon._cycle()
    assert daemon.cycles == 1

    scheduler.run_cycle.return_value = CycleReport(
        started_at=datetime(2026, 3, 2, tzinfo=UTC), overlapped=True
    )
    await daemon._cycle()
    assert daemon.cycles == 1


async def test_cycle_crash_is_contained():
    from nudge.core.loop import NudgeDaemon

    scheduler = _make_scheduler()
    scheduler.run_cycle.side_effect = RuntimeError("boom")
    daemon = NudgeDaemon(_make_settings(), scheduler)
    await daemon._cycle()
    assert daemon.cycles == 0


async def test_health_tick_checks_transports():
    from nudge.core.loop import NudgeDaemon

    healthy = MagicMock()
    healthy.health_check = AsyncMock(return_value=True)
    broken = MagicMock()
    broken.health_check = AsyncMock(side_effect=RuntimeError("down"))
    scheduler = _make_scheduler()
    scheduler.dispatcher.transports = {"email": healthy, "telegram": broken}

    daemon = NudgeDaemon(_make_settings(), scheduler)
    await daemon._health_tick()

    healthy.health_check.assert_awaited_once()
    broken.health_check.assert_awaited_once()


async def test_run_forever_stops_when_signalled():
    from nudge.core.loop import NudgeDaemon

    daemon = NudgeDaemon(_make_settings(), _make_scheduler())
    daemon._running = True

    async def _tick():
        daemon.handle_signal(15)

    daemon._health_tick = _tick
    with patch("nudge.core.loop.asyncio.sleep", new=AsyncMock()):
        await daemon._run_forever()
    assert daemon._running is False


async def test_verify_dependencies_tolerates_failures():
    from nudge.core.loop import NudgeDaemon

    daemon = NudgeDaemon(_make_settings(), _make_scheduler())
    with (
        patch("nudge.db.session.get_session_factory", side_effect=RuntimeError("no db")),
        patch("redis.from_url", side_effect=RuntimeError("no redis")),
    ):
        await daemon._verify_dependencies()


def test_uptime_before_start():
    from nudge.core.loop import NudgeDaemon

    assert NudgeDaemon(_make_settings(), _make_scheduler()).uptime_seconds == 0.0


def test_configure_logging_installs_single_handler():
    from nudge.core.loop import configure_logging

    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        configure_logging("debug", json=True)
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, structlog.stdlib.ProcessorFormatter)
        assert root.level == logging.DEBUG
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
        structlog.reset_defaults()
