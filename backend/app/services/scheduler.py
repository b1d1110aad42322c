"""
Background settlement jobs.

APScheduler wiring, started from the application lifespan when
`settings.scheduler_enabled` is set: an interval job that releases stale
escrow and dispatches pending notifications.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from backend.app.core.config import settings
from backend.app.core.exceptions import SettlementError
from backend.app.domain.settlement.engine import SettlementEngine

logger = logging.getLogger(__name__)

SETTLEMENT_JOB_ID = "settlement_jobs"


async def run_settlement_jobs(engine: SettlementEngine) -> None:
    """One pass of every periodic job. Failures are logged, never raised."""
    try:
        report = await engine.auto_release_due()
        if report.released or report.failed:
            logger.info("Scheduled auto release: %s", report.as_dict())
    except (SettlementError, SQLAlchemyError) as exc:
        logger.error("Scheduled auto release failed: %s", exc)

    try:
        await engine.dispatcher.dispatch_pending()
    except (SettlementError, SQLAlchemyError) as exc:
        logger.error("Scheduled notification dispatch failed: %s", exc)


class SettlementScheduler:
    """
    Usage:
        scheduler = SettlementScheduler(AsyncSessionLocal)
        scheduler.start()  # inside the running event loop
        ...
        await scheduler.stop()
    """

    def __init__(self, session_factory: async_sessionmaker, interval_seconds: Optional[int] = None):
        self.engine = SettlementEngine(session_factory)
        self.interval_seconds = interval_seconds or settings.scheduler_interval_seconds
        self.scheduler = AsyncIOScheduler(timezone=timezone.utc)

    async def _run(self) -> None:
        await run_settlement_jobs(self.engine)

    def start(self) -> None:
        if self.scheduler.running:
            return
        # First pass right away, then every interval; a slow pass is never run twice in parallel
        self.scheduler.add_job(
            self._run,
            IntervalTrigger(seconds=self.interval_seconds),
            id=SETTLEMENT_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
        )
        self.scheduler.start()
        logger.info("Settlement scheduler started (every %ss)", self.interval_seconds)

    async def stop(self) -> None:
        if not self.scheduler.running:
            return
        self.scheduler.shutdown(wait=False)
        logger.info("Settlement scheduler stopped")
