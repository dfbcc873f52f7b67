import asyncio
import logging
from datetime import datetime
from typing import Optional

from lease.config import config
from lease.database.core import AsyncSessionLocal, utcnow
from lease.services.billing_service import run_billing
from lease.services.termination_service import auto_finalize_expired_grace_periods, AutoFinalizeSummary

logger = logging.getLogger(__name__)


async def run_scheduled_jobs(now: Optional[datetime] = None, session_factory=None) -> AutoFinalizeSummary:
    """Billing first, then grace-period finalization."""
    now = now or utcnow()
    session_factory = session_factory or AsyncSessionLocal

    logger.info("Running scheduled jobs...")
    async with session_factory() as session:
        created = await run_billing(session, now.date())
        summary = await auto_finalize_expired_grace_periods(session, now)

    logger.info(
        f"Scheduled jobs finished: {created} obligation(s) created, "
        f"{summary.finalized_count} termination(s) finalized"
    )
    return summary


async def scheduler_loop():
    """Run jobs every SCHEDULER_INTERVAL_MINUTES."""
    interval = config.SCHEDULER_INTERVAL_MINUTES * 60

    logger.info("Scheduler started.")

    # Initial delay to settle startup
    await asyncio.sleep(10)

    while True:
        try:
            await run_scheduled_jobs()
        except Exception as e:
            logger.error(f"Scheduler error: {e}")

        logger.info(f"Next scheduler run in {config.SCHEDULER_INTERVAL_MINUTES} min")
        await asyncio.sleep(interval)
