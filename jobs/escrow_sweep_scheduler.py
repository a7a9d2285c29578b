"""
Escrow background jobs

Two interval jobs drive the escrow coordinator, which owns no timers itself:
1. Funding monitor - promotes pending escrows whose address received the committed amount
2. Expiry sweep - expires unfunded escrows, refunds funded ones, disputes abandoned claims

Both jobs run with max_instances=1 and coalesce=True; running them on several
workers at once is safe because every status change is a compare-and-swap.
"""

import logging
from datetime import datetime
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from services.escrow_coordinator import EscrowCoordinator, SweepResult

logger = logging.getLogger(__name__)


class EscrowSweepScheduler:
    """APScheduler wrapper for the escrow funding monitor and expiry sweep"""

    SWEEP_JOB_ID = "escrow_expiry_sweep"
    FUNDING_JOB_ID = "escrow_funding_monitor"

    def __init__(self, coordinator: EscrowCoordinator, interval_seconds: Optional[int] = None):
        self.coordinator = coordinator
        self.interval_seconds = interval_seconds or Config.SWEEP_INTERVAL_SECONDS

        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # Single instance enforcement
            'misfire_grace_time': 120,
        }
        self.scheduler = AsyncIOScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': AsyncIOExecutor()},
            job_defaults=job_defaults,
            timezone='UTC',
        )

    async def run_sweep(self) -> Optional[SweepResult]:
        try:
            return await self.coordinator.sweep_expired()
        except Exception as e:
            logger.error(f"❌ ESCROW_SWEEP_JOB_FAILED: {e}", exc_info=True)
            return None

    async def run_funding_check(self) -> int:
        try:
            funded = await self.coordinator.check_pending_funding()
        except Exception as e:
            logger.error(f"❌ FUNDING_MONITOR_JOB_FAILED: {e}", exc_info=True)
            return 0
        if funded:
            logger.info(f"💰 FUNDING_MONITOR: {funded} escrow(s) funded")
        return funded

    def setup_jobs(self):
        self.scheduler.add_job(
            self.run_funding_check,
            trigger=IntervalTrigger(seconds=60, start_date=datetime.now().replace(second=10, microsecond=0)),
            id=self.FUNDING_JOB_ID,
            name="💰 Escrow Funding Monitor",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.run_sweep,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=self.SWEEP_JOB_ID,
            name="🧹 Escrow Expiry Sweep",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        logger.info(f"✅ Escrow sweep scheduled every {self.interval_seconds} seconds")

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        logger.info(f"📋 Active jobs: {[job.id for job in self.scheduler.get_jobs()]}")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("📴 Escrow job scheduler stopped")
