"""
Cleanup Service

Retention for old data:
- terminal transactions are retired (soft delete via retired_at)
- successful and ignored webhook logs are deleted
Failed webhook logs are kept for inspection.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import TransactionModel, WebhookLogModel
from ..models.status import TERMINAL_STATUSES, WebhookStatus
from ..utils import utcnow

logger = logging.getLogger(__name__)

_PURGEABLE_WEBHOOK_STATUSES = [WebhookStatus.SUCCESS.value, WebhookStatus.IGNORED.value]


class CleanupService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def retire_transactions(
        self,
        older_than_days: int,
        dry_run: bool = False,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Retire terminal transactions not updated for older_than_days.

        Returns:
            Number of transactions retired (or that would be, on dry_run)
        """
        cutoff = (now or utcnow()) - timedelta(days=older_than_days)
        conditions = (
            TransactionModel.status.in_([status.value for status in TERMINAL_STATUSES]),
            TransactionModel.updated_at < cutoff,
            TransactionModel.retired_at.is_(None),
        )

        if dry_run:
            count = await self.session.scalar(
                select(func.count()).select_from(TransactionModel).where(*conditions)
            )
            return count or 0

        # Version counter is not bumped; only terminal rows are touched
        result = await self.session.execute(
            update(TransactionModel)
            .where(*conditions)
            .values(retired_at=now or utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        logger.info(f"Retired {result.rowcount} transaction(s) older than {older_than_days} days")
        return result.rowcount

    async def purge_webhook_logs(
        self,
        older_than_days: int,
        dry_run: bool = False,
        now: Optional[datetime] = None,
    ) -> int:
        """Delete success/ignored webhook logs created before the cutoff."""
        cutoff = (now or utcnow()) - timedelta(days=older_than_days)
        conditions = (
            WebhookLogModel.status.in_(_PURGEABLE_WEBHOOK_STATUSES),
            WebhookLogModel.created_at < cutoff,
        )

        if dry_run:
            count = await self.session.scalar(
                select(func.count()).select_from(WebhookLogModel).where(*conditions)
            )
            return count or 0

        result = await self.session.execute(
            delete(WebhookLogModel).where(*conditions).execution_options(synchronize_session=False)
        )
        await self.session.commit()
        logger.info(f"Purged {result.rowcount} webhook log(s) older than {older_than_days} days")
        return result.rowcount
