"""
Expiry sweep for appointments whose window has passed, using APScheduler.

Each modality engine resolves its own lapsed appointments; the sweeper
runs them in turn and aggregates the counts. A failing modality does not
stop the others.

Supports Redis backend for horizontal scaling (multiple service instances).
"""

from datetime import datetime
from typing import Optional
from urllib.parse import urlparse

from apscheduler.jobstores.redis import RedisJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import settings
from engine.registry import Engines
from models.results import SweepReport
from utils.datetime_utils import utc_now
from utils.logging_config import setup_logging

logger = setup_logging(name=__name__, log_file="scheduler.log")


class ExpirySweeper:
    """Run every modality's sweep plus the doctor presence sweep."""

    def __init__(self, engines: Engines):
        self.engines = engines

    async def run(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Resolve everything that lapsed before ``now``.

        Running twice in a row is safe: the second run finds nothing left
        in a live status and reports zero transitions.

        Returns:
            SweepReport with per-modality counts and the names of any
            modality whose sweep raised
        """
        now = now or utc_now()
        report = SweepReport()

        for modality, engine in self.engines.by_modality().items():
            try:
                report.modalities[modality] = await engine.sweep(now)
            except Exception as e:
                logger.error(f"Expiry sweep failed for {modality}: {e}", exc_info=True)
                report.failed.append(modality)

        try:
            report.doctors_deactivated = await self.engines.presence.sweep(now)
        except Exception as e:
            logger.error(f"Doctor presence sweep failed: {e}", exc_info=True)
            report.failed.append("presence")

        logger.info(
            f"Expiry sweep complete: {report.total_transitions} transitions, "
            f"{report.doctors_deactivated} doctors deactivated, "
            f"{len(report.failed)} failed"
        )
        return report


def _create_scheduler() -> AsyncIOScheduler:
    """
    Create scheduler with Redis backend for clustering support.

    Falls back to default in-memory scheduler if Redis is not configured.
    """
    redis_url = settings.redis_url

    if not redis_url:
        logger.info("Scheduler using in-memory backend (single instance mode)")
        return AsyncIOScheduler()

    try:
        # Parse Redis URL: redis://host:port/db or redis://:password@host:port/db
        parsed = urlparse(redis_url)
        host = parsed.hostname or "localhost"
        port = parsed.port or 6379
        db = int(parsed.path.lstrip("/")) if parsed.path.lstrip("/") else 0
        password = parsed.password if parsed.password else None

        jobstores = {
            "default": RedisJobStore(
                host=host,
                port=port,
                db=db,
                password=password,
            )
        }
        logger.info(f"Scheduler using Redis backend: {host}:{port}/{db}")
        return AsyncIOScheduler(jobstores=jobstores)
    except Exception as e:
        logger.warning(
            f"Failed to initialize Redis scheduler: {e}. Falling back to in-memory scheduler."
        )
        return AsyncIOScheduler()


scheduler = _create_scheduler()

# Sweeper instance - injected via setup_scheduler. Jobs must stay
# argument-free: the Redis job store pickles them.
_sweeper: Optional[ExpirySweeper] = None


def set_sweeper(sweeper: ExpirySweeper) -> None:
    """Set the sweeper the scheduled job runs.

    Args:
        sweeper: ExpirySweeper bound to the service's engines
    """
    global _sweeper
    _sweeper = sweeper


async def run_expiry_sweep() -> None:
    """Scheduled job body; errors are logged so the job keeps its schedule."""
    if _sweeper is None:
        logger.error("Expiry sweep skipped: no sweeper configured")
        return

    try:
        await _sweeper.run()
    except Exception as e:
        logger.error(f"Unexpected error in expiry sweep: {e}", exc_info=True)


def setup_scheduler(sweeper: Optional[ExpirySweeper] = None) -> None:
    """Setup and start the scheduler.

    Args:
        sweeper: Optional sweeper to inject. If None, must be set later via set_sweeper()
    """
    if sweeper:
        set_sweeper(sweeper)

    scheduler.add_job(
        run_expiry_sweep,
        trigger=IntervalTrigger(minutes=settings.sweep_interval_minutes),
        id="expire_appointments",
        name="Expire lapsed appointments",
        replace_existing=True,
    )

    scheduler.start()
    logger.info(
        f"Scheduler started (expiry sweep every {settings.sweep_interval_minutes} min)"
    )


def shutdown_scheduler():
    """Shutdown the scheduler."""
    if not scheduler.running:
        return
    scheduler.shutdown()
    logger.info("Scheduler stopped")
