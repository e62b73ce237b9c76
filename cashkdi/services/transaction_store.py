"""
Transaction Store

Persistence for Transactions and their Payment attempts, and the single place
the lifecycle transition rule is applied.

Rules:
- Re-applying the current status is a no-op (redelivered webhooks)
- Leaving a terminal status raises InvalidStateTransitionError
- completed_at is set once, on the first move to success
- When a Transaction changes status its non-terminal Payment attempts follow
- JSON columns are reassigned, never mutated in place
- Retired rows are invisible to every read except reference_exists
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import PaymentModel, TransactionModel
from ..exceptions import InvalidStateTransitionError
from ..models.payments import PaymentFilters
from ..models.providers import ProviderTransactionData
from ..models.status import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    TransactionStatus,
    can_transition,
)
from ..utils import utcnow

logger = logging.getLogger(__name__)

_ACTIVE = [status.value for status in ACTIVE_STATUSES]
_TERMINAL = [status.value for status in TERMINAL_STATUSES]


def merge_json(current: Optional[Mapping[str, Any]], update: Mapping[str, Any]) -> Dict[str, Any]:
    """New dict with update layered over current."""
    return {**(current or {}), **update}


class TransactionStore:
    """Transaction and Payment queries bound to one AsyncSession."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ========================================================================
    # Reads
    # ========================================================================

    async def get(self, transaction_id: str) -> Optional[TransactionModel]:
        result = await self.session.execute(
            select(TransactionModel).where(
                TransactionModel.id == transaction_id,
                TransactionModel.retired_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def get_by_reference(self, reference: str, lock: bool = False) -> Optional[TransactionModel]:
        stmt = select(TransactionModel).where(
            TransactionModel.reference == reference,
            TransactionModel.retired_at.is_(None),
        )
        if lock:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_for_webhook(self, reference: str) -> Optional[TransactionModel]:
        """
        Locate a transaction by our reference or the provider's, with a row lock.

        Our own reference wins when both columns match different rows.
        """
        result = await self.session.execute(
            select(TransactionModel)
            .where(
                or_(
                    TransactionModel.reference == reference,
                    TransactionModel.provider_reference == reference,
                ),
                TransactionModel.retired_at.is_(None),
            )
            .with_for_update()
        )
        matches = list(result.scalars().all())
        if not matches:
            return None
        for transaction in matches:
            if transaction.reference == reference:
                return transaction
        return matches[0]

    async def reference_exists(self, reference: str) -> bool:
        """Includes retired rows: a reference is never reused."""
        result = await self.session.execute(
            select(TransactionModel.id).where(TransactionModel.reference == reference).limit(1)
        )
        return result.first() is not None

    async def list(self, filters: PaymentFilters) -> Tuple[List[TransactionModel], int]:
        """
        Filtered page of transactions, newest first.

        Ties on created_at are broken by id so pages are stable.
        """
        conditions = [TransactionModel.retired_at.is_(None)]
        if filters.status is not None:
            conditions.append(TransactionModel.status == filters.status.value)
        if filters.provider:
            conditions.append(TransactionModel.provider == filters.provider)
        if filters.currency:
            conditions.append(TransactionModel.currency == filters.currency.upper())
        if filters.from_date is not None:
            conditions.append(TransactionModel.created_at >= filters.from_date)
        if filters.to_date is not None:
            conditions.append(TransactionModel.created_at <= filters.to_date)
        if filters.min_amount is not None:
            conditions.append(TransactionModel.amount >= filters.min_amount)
        if filters.max_amount is not None:
            conditions.append(TransactionModel.amount <= filters.max_amount)

        total = await self.session.scalar(
            select(func.count()).select_from(TransactionModel).where(*conditions)
        )
        result = await self.session.execute(
            select(TransactionModel)
            .where(*conditions)
            .order_by(TransactionModel.created_at.desc(), TransactionModel.id.desc())
            .offset((filters.page - 1) * filters.per_page)
            .limit(filters.per_page)
        )
        return list(result.scalars().all()), total or 0

    async def find_overdue(self, now: datetime, limit: Optional[int] = None) -> List[TransactionModel]:
        """Non-terminal transactions whose expires_at has passed, locked for update."""
        stmt = (
            select(TransactionModel)
            .where(
                TransactionModel.status.in_(_ACTIVE),
                TransactionModel.expires_at <= now,
                TransactionModel.retired_at.is_(None),
            )
            .order_by(TransactionModel.expires_at, TransactionModel.id)
            .with_for_update()
        )
        if limit:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def find_unsettled(self, provider: Optional[str] = None, limit: int = 50) -> List[TransactionModel]:
        """Non-terminal transactions known to a provider, oldest first."""
        stmt = select(TransactionModel).where(
            TransactionModel.status.in_(_ACTIVE),
            TransactionModel.provider_reference.is_not(None),
            TransactionModel.retired_at.is_(None),
        )
        if provider:
            stmt = stmt.where(TransactionModel.provider == provider)
        result = await self.session.execute(
            stmt.order_by(TransactionModel.created_at, TransactionModel.id).limit(limit)
        )
        return list(result.scalars().all())

    async def list_payments_for(self, transaction: TransactionModel) -> List[PaymentModel]:
        result = await self.session.execute(
            select(PaymentModel)
            .where(PaymentModel.transaction_id == transaction.id)
            .order_by(PaymentModel.created_at, PaymentModel.id)
        )
        return list(result.scalars().all())

    # ========================================================================
    # Writes
    # ========================================================================

    def add(self, transaction: TransactionModel, first_attempt: Optional[PaymentModel] = None) -> None:
        self.session.add(transaction)
        if first_attempt is not None:
            self.session.add(first_attempt)

    async def transition(
        self,
        transaction: TransactionModel,
        target: TransactionStatus,
        failure_reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Apply a status change to a transaction.

        Returns:
            True if the status changed, False for a same-status no-op

        Raises:
            InvalidStateTransitionError: the lifecycle forbids the move
        """
        target = TransactionStatus(target)
        current = transaction.status
        if current == target.value:
            return False
        if not can_transition(current, target):
            raise InvalidStateTransitionError(current, target.value, {"reference": transaction.reference})

        now = now or utcnow()
        transaction.status = target.value
        transaction.updated_at = now
        if target == TransactionStatus.SUCCESS and transaction.completed_at is None:
            transaction.completed_at = now
        if target == TransactionStatus.FAILED and failure_reason:
            transaction.failure_reason = failure_reason[:1000]

        await self._align_payments(transaction, target, now)
        logger.info(f"Transaction {transaction.reference}: {current} -> {target.value}")
        return True

    async def _align_payments(self, transaction: TransactionModel, target: TransactionStatus, now: datetime) -> None:
        for payment in await self.list_payments_for(transaction):
            if payment.status in _TERMINAL or not can_transition(payment.status, target):
                continue
            payment.status = target.value
            if target in TERMINAL_STATUSES:
                payment.processed_at = payment.processed_at or now

    def merge_provider_response(self, transaction: TransactionModel, data: Mapping[str, Any]) -> None:
        transaction.provider_response = merge_json(transaction.provider_response, data)

    async def upsert_payment_attempt(
        self,
        transaction: TransactionModel,
        data: ProviderTransactionData,
        status: TransactionStatus,
        payment_method: str,
        provider_data: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> PaymentModel:
        """
        Record provider transaction data as a Payment attempt.

        Keyed by provider payment id. An attempt opened at creation time and
        not yet bound to a provider id is claimed before a new one is added.
        """
        now = now or utcnow()
        payments = await self.list_payments_for(transaction)
        payment = next(
            (p for p in payments if p.provider_payment_id == data.provider_payment_id), None
        ) or next(
            (p for p in payments if p.provider_payment_id is None), None
        )

        if payment is None:
            payment = PaymentModel(
                transaction_id=transaction.id,
                payment_method=payment_method,
                amount=data.amount or transaction.amount,
                currency=(data.currency or transaction.currency).upper(),
                status=TransactionStatus.PENDING.value,
                provider_data={},
                created_at=now,
                updated_at=now,
            )
            self.session.add(payment)
            logger.info(f"New payment attempt {data.provider_payment_id} for {transaction.reference}")

        payment.provider_payment_id = data.provider_payment_id
        payment.provider_data = merge_json(
            payment.provider_data,
            {"type": data.type, "fees": data.fees, **(provider_data or {})},
        )

        status = TransactionStatus(status)
        if status != TransactionStatus.PENDING and payment.status != status.value:
            if not can_transition(payment.status, status):
                raise InvalidStateTransitionError(
                    payment.status, status.value, {"payment_id": data.provider_payment_id}
                )
            payment.status = status.value
            if status in TERMINAL_STATUSES:
                payment.processed_at = payment.processed_at or now

        await self.session.flush()
        return payment
