"""
APScheduler Configuration for Payment Reconciliation

Runs the periodic sweep that expires initiated transactions whose payment
window has passed.
"""
import logging
from typing import Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.asyncio import AsyncIOExecutor

from ..config import settings

logger = logging.getLogger(__name__)

EXPIRY_JOB_ID = "expire_stale_transactions"


class ReconciliationScheduler:
    """
    Singleton scheduler for reconciliation jobs.

    Jobs are registered from code at startup, so the default in-memory job
    store is enough.
    """

    _instance: Optional["ReconciliationScheduler"] = None
    _scheduler: Optional[AsyncIOScheduler] = None

    def __new__(cls):
        """Singleton pattern to ensure only one scheduler instance."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        """Initialize scheduler if not already initialized."""
        if self._scheduler is None:
            self._initialize_scheduler()

    def _initialize_scheduler(self):
        """
        Configuration:
        - AsyncIOExecutor so jobs run on the app's event loop
        - Coalesce: True (collapse missed runs into one)
        - Max instances: 1 per job (sweeps never overlap)
        """
        job_defaults = {
            'coalesce': True,
            'max_instances': 1,
            'misfire_grace_time': 300
        }

        self._scheduler = AsyncIOScheduler(
            executors={'default': AsyncIOExecutor()},
            job_defaults=job_defaults,
            timezone='UTC'
        )

        logger.info("APScheduler initialized")

    @property
    def running(self) -> bool:
        return bool(self._scheduler and self._scheduler.running)

    def start(self):
        """
        Start the scheduler.

        Should be called during FastAPI app startup.
        """
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info(f"Scheduler started. Jobs: {len(self._scheduler.get_jobs())}")
        else:
            logger.warning("Scheduler already running")

    def shutdown(self, wait: bool = True):
        """
        Shutdown the scheduler gracefully.

        Args:
            wait: Wait for running jobs to complete before shutdown
        """
        if self._scheduler and self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info(f"Scheduler shutdown (wait={wait})")

    def add_interval_job(self, job_id: str, job_func, interval_minutes: float, **kwargs) -> str:
        """
        Register (or replace) a periodic job.

        Args:
            job_id: Unique job identifier
            job_func: Async function to execute periodically
            interval_minutes: How often to run job
            **kwargs: Additional arguments to pass to job_func

        Returns:
            Job ID
        """
        self._scheduler.add_job(
            job_func,
            trigger=IntervalTrigger(minutes=interval_minutes),
            id=job_id,
            name=f"Reconcile: {job_id}",
            replace_existing=True,
            kwargs=kwargs
        )
        logger.info(f"Added job: {job_id}, interval={interval_minutes}min")
        return job_id

    def get_job(self, job_id: str):
        return self._scheduler.get_job(job_id)


# ============================================================================
# Global Scheduler Instance
# ============================================================================

scheduler = ReconciliationScheduler()


# ============================================================================
# Jobs
# ============================================================================

async def run_expiry_sweep() -> int:
    """
    Expire stale transactions using a dedicated session.

    Errors are logged so one bad run does not unschedule the job.
    """
    from ..db.init_db import AsyncSessionLocal
    from .payment_service import expire_stale_transactions

    async with AsyncSessionLocal() as db:
        try:
            return await expire_stale_transactions(db)
        except Exception:
            logger.error("Transaction expiry sweep failed", exc_info=True)
            return 0


# ============================================================================
# Scheduler Lifecycle Functions (for FastAPI integration)
# ============================================================================

def start_scheduler():
    """
    Register reconciliation jobs and start the scheduler.

    Should be called in FastAPI lifespan/startup event.
    """
    scheduler.add_interval_job(EXPIRY_JOB_ID, run_expiry_sweep, settings.expiry_sweep_interval_minutes)
    scheduler.start()


def shutdown_scheduler(wait: bool = True):
    """
    Shutdown the scheduler during app shutdown.

    Args:
        wait: Wait for running jobs to complete
    """
    scheduler.shutdown(wait=wait)
