"""Nudge daemon: drives polling cycles on an interval."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import time

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from nudge.config import Settings, get_settings
from nudge.core.orchestrator import ReminderScheduler, build_scheduler

logger = structlog.get_logger(__name__)

CYCLE_JOB_ID = "reminder-cycle"


def configure_logging(level: str = "INFO", json: bool = False) -> None:
    """Route stdlib and structlog output through one structlog renderer."""
    renderer = (
        structlog.processors.JSONRenderer()
        if json
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )
    shared = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    structlog.configure(
        processors=[
            *shared,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level.upper())


class NudgeDaemon:
    """
    The Nudge daemon.

    On startup:
      1. Verifies the database and Redis are reachable
      2. In polling mode, schedules ``run_cycle`` every ``scheduler_interval_ms``
      3. Enters a tick-based health monitoring loop until signalled
    """

    def __init__(
        self,
        settings: Settings | None = None,
        scheduler: ReminderScheduler | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.scheduler = scheduler or build_scheduler(self.settings)
        self.jobs = AsyncIOScheduler(timezone="UTC")
        self._running = False
        self._start_time: float = 0.0
        self.cycles = 0

    async def start(self) -> None:
        logger.info("Nudge is starting", mode=self.settings.scheduler_mode)
        self._start_time = time.monotonic()

        await self._verify_dependencies()

        if self.settings.scheduler_mode == "polling":
            self.jobs.add_job(
                self._cycle,
                IntervalTrigger(seconds=self.settings.scheduler_interval_ms / 1000),
                id=CYCLE_JOB_ID,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            logger.info(
                "Polling reminders", interval_ms=self.settings.scheduler_interval_ms
            )
        else:
            logger.info("Webhook mode: alerts arrive through Celery callbacks")
        self.jobs.start()

        self._running = True
        try:
            await self._run_forever()
        finally:
            await self.shutdown()

    async def _cycle(self) -> None:
        try:
            report = await self.scheduler.run_cycle()
        except Exception:
            logger.exception("Reminder cycle crashed")
            return
        if not report.overlapped:
            self.cycles += 1

    async def _run_forever(self) -> None:
        """Tick-based health monitoring loop."""
        tick_interval = 10  # seconds between health ticks
        while self._running:
            try:
                await self._health_tick()
            except Exception:
                logger.exception("Health tick failed")
            await asyncio.sleep(tick_interval)

    async def _health_tick(self) -> None:
        for mode, transport in self.scheduler.dispatcher.transports.items():
            try:
                if not await transport.health_check():
                    logger.warning("Transport unhealthy", mode=str(mode))
            except Exception:
                logger.exception("Transport health check failed", mode=str(mode))

    async def _verify_dependencies(self) -> None:
        """Check DB and Redis are reachable before starting."""
        try:
            from sqlalchemy import text

            from nudge.db.session import get_session_factory

            async with get_session_factory()() as session:
                await session.execute(text("SELECT 1"))
            logger.info("DB connection verified")
        except Exception as exc:
            logger.warning("DB connection check failed", error=str(exc))

        try:
            import redis

            r = redis.from_url(self.settings.redis_url)
            r.ping()
            r.close()
            logger.info("Redis connection verified")
        except Exception as exc:
            logger.warning("Redis connection check failed", error=str(exc))

    @property
    def uptime_seconds(self) -> float:
        """Return seconds since the daemon started."""
        if not self._start_time:
            return 0.0
        return time.monotonic() - self._start_time

    async def shutdown(self) -> None:
        logger.info("Nudge is shutting down", cycles=self.cycles)
        self._running = False
        if self.jobs.running:
            self.jobs.shutdown(wait=False)
        await self.scheduler.close()
        logger.info("Nudge stopped")

    def handle_signal(self, sig: int) -> None:
        logger.info("Received signal, shutting down gracefully", signal=sig)
        self._running = False


async def run_daemon() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)
    daemon = NudgeDaemon(settings)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: daemon.handle_signal(s))
    await daemon.start()
