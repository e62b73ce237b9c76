"""
APScheduler Configuration for Maintenance Jobs

Periodic jobs that keep payments consistent when webhooks are late or lost:
- expiry sweep: pending/processing past expires_at -> expired
- status sync: poll providers for unsettled transactions
- webhook retry: re-run failed webhooks whose backoff has elapsed
- cleanup: retire old transactions, purge processed webhook logs

Each job opens its own session. Jobs are rebuilt at every startup, so the
default in-memory job store is used.
"""
import logging
from typing import Callable, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..providers.registry import ProviderRegistry
from .cleanup_service import CleanupService
from .payment_service import PaymentOrchestrator
from .signature_service import SignatureVerifier
from .webhook_service import WebhookProcessor

logger = logging.getLogger(__name__)


class MaintenanceScheduler:
    """
    Owns the AsyncIOScheduler and the maintenance jobs.

    Args:
        settings: Application settings (intervals, batch size, retention)
        session_factory: Factory for per-job sessions
        registry: Frozen provider registry
        signer: Signature verifier for webhook retries
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        registry: ProviderRegistry,
        signer: SignatureVerifier,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.registry = registry
        self.signer = signer
        self._scheduler = AsyncIOScheduler(
            executors={"default": AsyncIOExecutor()},
            job_defaults={
                "coalesce": True,  # Combine missed runs into one
                "max_instances": 1,  # A job never overlaps itself
                "misfire_grace_time": 60,
            },
            timezone="UTC",
        )

    # ========================================================================
    # Jobs
    # ========================================================================

    async def expire_overdue_payments(self) -> int:
        async with self.session_factory() as session:
            return await PaymentOrchestrator(session, self.registry, self.settings).sync_expired()

    async def sync_pending_payments(self) -> int:
        async with self.session_factory() as session:
            orchestrator = PaymentOrchestrator(session, self.registry, self.settings)
            return await orchestrator.sync_pending(limit=self.settings.batch_limit)

    async def retry_failed_webhooks(self) -> int:
        async with self.session_factory() as session:
            processor = WebhookProcessor(session, self.registry, self.settings, self.signer)
            return await processor.retry_failed(limit=self.settings.batch_limit)

    async def cleanup(self) -> None:
        async with self.session_factory() as session:
            service = CleanupService(session)
            await service.retire_transactions(self.settings.retention_days)
            await service.purge_webhook_logs(self.settings.retention_days)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def _add_job(self, job_id: str, job_func: Callable, trigger: IntervalTrigger) -> None:
        self._scheduler.add_job(
            self._guarded(job_id, job_func),
            trigger=trigger,
            id=job_id,
            name=job_id.replace("_", " "),
            replace_existing=True,
        )

    @staticmethod
    def _guarded(job_id: str, job_func: Callable) -> Callable:
        async def run():
            try:
                await job_func()
            except Exception as e:
                logger.error(f"Maintenance job {job_id} failed: {e}", exc_info=True)
        return run

    def start(self) -> None:
        """
        Register the jobs and start the scheduler.

        Should be called during FastAPI app startup.
        """
        if self._scheduler.running:
            logger.warning("Scheduler already running")
            return

        self._add_job(
            "expire_overdue_payments",
            self.expire_overdue_payments,
            IntervalTrigger(minutes=self.settings.expiry_sweep_interval_minutes),
        )
        self._add_job(
            "sync_pending_payments",
            self.sync_pending_payments,
            IntervalTrigger(minutes=self.settings.status_sync_interval_minutes),
        )
        self._add_job(
            "retry_failed_webhooks",
            self.retry_failed_webhooks,
            IntervalTrigger(minutes=self.settings.webhook_retry_interval_minutes),
        )
        self._add_job(
            "cleanup",
            self.cleanup,
            IntervalTrigger(hours=self.settings.cleanup_interval_hours),
        )
        self._scheduler.start()

        for job in self._scheduler.get_jobs():
            logger.info(f"  - Job {job.id}: next_run={job.next_run_time}")

    def shutdown(self, wait: bool = True) -> None:
        """
        Shutdown the scheduler gracefully.

        Args:
            wait: Wait for running jobs to complete before shutdown
        """
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info(f"Scheduler shutdown (wait={wait})")

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def get_job(self, job_id: str):
        return self._scheduler.get_job(job_id)

    def get_all_jobs(self):
        return self._scheduler.get_jobs()


def create_scheduler(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    registry: ProviderRegistry,
    signer: SignatureVerifier,
) -> Optional[MaintenanceScheduler]:
    """Scheduler for the app, or None when disabled in settings."""
    if not settings.scheduler_enabled:
        logger.info("Maintenance scheduler disabled")
        return None
    return MaintenanceScheduler(settings, session_factory, registry, signer)
