"""
Webhook Retry Scheduler

Decides when a failed webhook may be processed again and drives bulk and
manual retries.

Backoff policy:
- retry_delays_minutes configured: delay = table[min(retry_count, len - 1)]
- otherwise linear: retry_delay_minutes * (retry_count + 1)
Both are non-decreasing in retry_count. Once retry_count reaches
max_retry_attempts no further retry is scheduled and the log stays failed.
"""
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import WebhookSettings
from ..db.models import WebhookLogModel
from ..exceptions import WebhookRetryError
from ..models.status import WebhookStatus
from ..models.webhooks import WebhookResult
from ..utils import utcnow

if TYPE_CHECKING:
    from .webhook_service import WebhookProcessor

logger = logging.getLogger(__name__)


class RetryPolicy:
    """Backoff and eligibility rules, independent of any session."""

    def __init__(self, webhooks: WebhookSettings):
        self.max_attempts = webhooks.max_retry_attempts
        self.base_delay_minutes = webhooks.retry_delay_minutes
        self.delays_minutes = list(webhooks.retry_delays_minutes)

    def delay(self, retry_count: int) -> timedelta:
        if self.delays_minutes:
            index = min(retry_count, len(self.delays_minutes) - 1)
            return timedelta(minutes=self.delays_minutes[index])
        return timedelta(minutes=self.base_delay_minutes * (retry_count + 1))

    def next_retry_at(self, retry_count: int, now: Optional[datetime] = None) -> Optional[datetime]:
        """When the next attempt is due, or None once attempts are exhausted."""
        if retry_count >= self.max_attempts:
            return None
        return (now or utcnow()) + self.delay(retry_count)

    def can_retry(self, log: WebhookLogModel) -> bool:
        return (
            log.status == WebhookStatus.FAILED.value
            and bool(log.retryable)
            and log.retry_count < self.max_attempts
        )

    def is_eligible(self, log: WebhookLogModel, now: Optional[datetime] = None) -> bool:
        """failed AND retryable AND retry_count < max AND due."""
        now = now or utcnow()
        return self.can_retry(log) and (log.next_retry_at is None or log.next_retry_at <= now)


class RetryScheduler:
    """
    Bulk and manual webhook retries.

    Args:
        session: Database session shared with the processor
        processor: WebhookProcessor that re-runs a stored webhook
    """

    def __init__(self, session: AsyncSession, processor: "WebhookProcessor"):
        self.session = session
        self.processor = processor
        self.policy = processor.retry_policy

    async def find_eligible(
        self,
        provider: Optional[str] = None,
        limit: int = 50,
        now: Optional[datetime] = None,
    ) -> list:
        now = now or utcnow()
        stmt = select(WebhookLogModel.id).where(
            WebhookLogModel.status == WebhookStatus.FAILED.value,
            WebhookLogModel.retryable.is_(True),
            WebhookLogModel.retry_count < self.policy.max_attempts,
            or_(WebhookLogModel.next_retry_at.is_(None), WebhookLogModel.next_retry_at <= now),
        )
        if provider:
            stmt = stmt.where(WebhookLogModel.provider == provider)
        result = await self.session.execute(
            stmt.order_by(WebhookLogModel.created_at, WebhookLogModel.id).limit(limit)
        )
        return list(result.scalars().all())

    async def retry_failed(
        self,
        provider: Optional[str] = None,
        limit: int = 50,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Retry every eligible failed webhook, up to limit.

        Returns:
            Number of logs that ended in success
        """
        succeeded = 0
        log_ids = await self.find_eligible(provider, limit, now)
        for log_id in log_ids:
            log = await self.session.get(WebhookLogModel, log_id)
            if log is None:
                continue
            try:
                result = await self.processor.reprocess(log)
            except Exception as e:
                logger.warning(f"Retry of webhook {log_id} failed: {e}")
                continue
            if result.status == WebhookStatus.SUCCESS.value:
                succeeded += 1

        if log_ids:
            logger.info(f"Webhook retry: {succeeded}/{len(log_ids)} succeeded")
        return succeeded

    async def retry_one(self, log: WebhookLogModel) -> WebhookResult:
        """
        Manually retry one webhook, ignoring next_retry_at.

        Raises:
            WebhookRetryError: not failed, not retryable, or out of attempts
        """
        if not self.policy.can_retry(log):
            raise WebhookRetryError(
                "Webhook cannot be retried",
                {
                    "webhook_log_id": log.id,
                    "status": log.status,
                    "retryable": log.retryable,
                    "retry_count": log.retry_count,
                    "max_attempts": self.policy.max_attempts,
                }
            )
        return await self.processor.reprocess(log)
