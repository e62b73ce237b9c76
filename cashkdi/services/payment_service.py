"""
Payment Orchestrator

Drives the payment lifecycle: validation, reference allocation, provider
calls and the resulting status changes.

Lifecycle:
    pending -> processing -> {success | failed | canceled | expired}

Error policy on create:
- Definitive provider rejection: transaction marked failed, error re-raised
- Timeout (outcome unknown): transaction stays pending for status sync,
  never retried automatically, error re-raised
"""
import logging
import secrets
import string
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings
from ..db.models import PaymentModel, TransactionModel
from ..exceptions import (
    CashkdiError,
    DuplicateReferenceError,
    InvalidStateTransitionError,
    PaymentNotFoundError,
    PaymentValidationError,
    ProviderError,
)
from ..models.payments import CreatePaymentRequest, PaymentFilters, ProviderInfo
from ..models.providers import ProviderPaymentRequest
from ..models.status import CANONICAL_TO_TRANSACTION, TransactionStatus, is_terminal
from ..providers.base import ProviderAdapter
from ..providers.registry import ProviderRegistry
from ..utils import mask_phone, mask_sensitive, utcnow
from .transaction_store import TransactionStore

logger = logging.getLogger(__name__)

REFERENCE_ALPHABET = string.ascii_uppercase + string.digits


class PaymentOrchestrator:
    """
    Payment operations for one request or job.

    Args:
        session: Database session owned by the caller
        registry: Frozen provider registry
        settings: Application settings
    """

    def __init__(self, session: AsyncSession, registry: ProviderRegistry, settings: Settings):
        self.session = session
        self.registry = registry
        self.settings = settings
        self.store = TransactionStore(session)

    # ========================================================================
    # References
    # ========================================================================

    def _reference_candidate(self) -> str:
        suffix = "".join(secrets.choice(REFERENCE_ALPHABET) for _ in range(self.settings.reference_length))
        return f"{self.settings.reference_prefix}{suffix}"

    async def generate_reference(self) -> str:
        """
        Allocate an unused reference (CKD_ + 12 of [A-Z0-9]).

        Raises:
            DuplicateReferenceError: every attempt collided
        """
        attempts = self.settings.reference_max_attempts
        for attempt in range(1, attempts + 1):
            candidate = self._reference_candidate()
            if not await self.store.reference_exists(candidate):
                return candidate
            logger.warning(f"Reference collision on attempt {attempt}/{attempts}")
        raise DuplicateReferenceError(
            "Could not allocate a unique payment reference",
            {"attempts": attempts}
        )

    # ========================================================================
    # Validation
    # ========================================================================

    def _validate(self, adapter: ProviderAdapter, request: CreatePaymentRequest) -> None:
        provider_settings = adapter.settings
        currencies = adapter.get_supported_currencies()
        if request.currency not in currencies:
            raise PaymentValidationError(
                f"Currency {request.currency} is not supported by {adapter.name}",
                {"currency": request.currency, "supported_currencies": sorted(currencies)}
            )
        if not provider_settings.min_amount <= request.amount <= provider_settings.max_amount:
            raise PaymentValidationError(
                f"Amount must be between {provider_settings.min_amount} and {provider_settings.max_amount}",
                {
                    "amount": request.amount,
                    "min_amount": provider_settings.min_amount,
                    "max_amount": provider_settings.max_amount,
                }
            )
        if adapter.requires_phone:
            if not request.phone:
                raise PaymentValidationError(
                    f"A phone number is required for {adapter.name}",
                    {"field": "phone"}
                )
            if not adapter.validate_phone_number(request.phone):
                raise PaymentValidationError(
                    f"Invalid phone number for {adapter.name}",
                    {"phone": mask_phone(request.phone)}
                )

    # ========================================================================
    # Create
    # ========================================================================

    async def _insert_transaction(
        self,
        request: CreatePaymentRequest,
        adapter: ProviderAdapter,
        api_key_id: Optional[str],
    ) -> TransactionModel:
        """Persist a pending transaction and its first attempt, retrying reference clashes."""
        for attempt in range(1, self.settings.reference_max_attempts + 1):
            reference = await self.generate_reference()
            now = utcnow()
            transaction = TransactionModel(
                id=uuid.uuid4().hex,
                reference=reference,
                provider=adapter.name,
                amount=request.amount,
                currency=request.currency,
                customer_phone=request.phone,
                customer_email=request.email,
                description=request.description,
                callback_url=request.callback_url,
                return_url=request.return_url,
                metadata_=dict(request.metadata),
                status=TransactionStatus.PENDING.value,
                provider_response={},
                api_key_id=api_key_id,
                expires_at=now + timedelta(minutes=self.settings.payment_timeout_minutes),
                created_at=now,
                updated_at=now,
            )
            first_attempt = PaymentModel(
                transaction_id=transaction.id,
                payment_method=adapter.payment_method,
                amount=request.amount,
                currency=request.currency,
                status=TransactionStatus.PENDING.value,
                provider_data={},
                created_at=now,
                updated_at=now,
            )
            self.store.add(transaction, first_attempt)
            try:
                await self.session.commit()
                return transaction
            except IntegrityError:
                await self.session.rollback()
                if not await self.store.reference_exists(reference):
                    raise
                logger.warning(f"Reference {reference} taken at insert, retrying ({attempt})")

        raise DuplicateReferenceError(
            "Could not allocate a unique payment reference",
            {"attempts": self.settings.reference_max_attempts}
        )

    async def create_payment(
        self,
        request: CreatePaymentRequest,
        api_key_id: Optional[str] = None,
    ) -> TransactionModel:
        """
        Create a payment and hand it to the provider.

        Args:
            request: Validated payment request
            api_key_id: Calling API key, if any

        Returns:
            The persisted transaction (pending or processing)

        Raises:
            UnknownProviderError: provider not registered or disabled
            PaymentValidationError: currency, amount or phone rejected
            DuplicateReferenceError: no free reference
            ProviderError: provider rejected the payment (transaction failed)
            ProviderTimeoutError: outcome unknown (transaction left pending)
        """
        adapter = self.registry.resolve(request.provider)
        self._validate(adapter, request)

        transaction = await self._insert_transaction(request, adapter, api_key_id)
        logger.info(
            f"Created transaction {transaction.reference}: provider={adapter.name} "
            f"amount={transaction.amount} {transaction.currency} phone={mask_phone(transaction.customer_phone)}"
        )

        provider_request = ProviderPaymentRequest(
            reference=transaction.reference,
            amount=transaction.amount,
            currency=transaction.currency,
            phone=transaction.customer_phone,
            email=transaction.customer_email,
            description=transaction.description,
            callback_url=transaction.callback_url,
            return_url=transaction.return_url,
            metadata=transaction.metadata_ or {},
        )

        try:
            response = await adapter.create_payment(provider_request)
        except ProviderError as exc:
            exc.details["reference"] = transaction.reference
            self.store.merge_provider_response(transaction, {"last_error": exc.to_dict()})
            if exc.ambiguous:
                logger.warning(f"Create for {transaction.reference} timed out, left pending for sync")
            else:
                await self.store.transition(transaction, TransactionStatus.FAILED, failure_reason=exc.message)
                logger.warning(f"Create for {transaction.reference} rejected by {adapter.name}: {exc.message}")
            await self.session.commit()
            raise

        transaction.provider_reference = response.provider_reference
        transaction.external_id = response.external_id
        self.store.merge_provider_response(transaction, response.provider_data)
        if response.status != TransactionStatus.PENDING:
            await self.store.transition(transaction, response.status)
        await self.session.commit()

        logger.debug(
            f"Provider accepted {transaction.reference}: "
            f"{mask_sensitive(response.provider_data, self.settings.sensitive_fields)}"
        )
        return transaction

    # ========================================================================
    # Cancel / Sync
    # ========================================================================

    async def cancel_payment(self, transaction: TransactionModel, now: Optional[datetime] = None) -> TransactionModel:
        """
        Cancel a payment that is neither final nor expired.

        A provider failure leaves the transaction in its prior state.

        Raises:
            InvalidStateTransitionError: transaction final or expired
            ProviderError: provider cannot cancel or refused
        """
        now = now or utcnow()
        if is_terminal(transaction.status):
            raise InvalidStateTransitionError(
                transaction.status, TransactionStatus.CANCELED.value, {"reference": transaction.reference}
            )
        if transaction.expires_at <= now:
            raise InvalidStateTransitionError(
                transaction.status,
                TransactionStatus.CANCELED.value,
                {"reference": transaction.reference, "reason": "expired"}
            )

        adapter = self.registry.resolve(transaction.provider)
        if not adapter.get_capabilities().cancel:
            raise ProviderError(
                adapter.name,
                "cancel_payment",
                f"{adapter.name} does not support cancellation",
                error_code="provider:unsupported_operation",
            )
        if not transaction.provider_reference:
            raise PaymentValidationError(
                "Payment is not known to the provider yet; sync its status first",
                {"reference": transaction.reference}
            )

        result = await adapter.cancel_payment(transaction.provider_reference)

        await self.session.refresh(transaction, with_for_update=True)
        await self.store.transition(transaction, TransactionStatus.CANCELED, now=now)
        self.store.merge_provider_response(transaction, {"cancel": result.raw})
        await self.session.commit()
        logger.info(f"Canceled transaction {transaction.reference}")
        return transaction

    async def _sync(self, transaction: TransactionModel) -> bool:
        if not transaction.provider_reference:
            logger.debug(f"Transaction {transaction.reference} has no provider reference, nothing to sync")
            return False

        adapter = self.registry.resolve(transaction.provider)
        result = await adapter.get_payment_status(transaction.provider_reference)

        await self.session.refresh(transaction, with_for_update=True)
        synced_at = utcnow().isoformat()
        if not result.found:
            self.store.merge_provider_response(transaction, {"last_sync": {"found": False, "at": synced_at}})
            await self.session.commit()
            logger.warning(f"Provider {adapter.name} does not know {transaction.reference}")
            return False

        target = CANONICAL_TO_TRANSACTION[result.status]
        changed = False
        if target != TransactionStatus.PENDING:
            reason = result.raw.get("reason") or result.raw.get("message")
            changed = await self.store.transition(
                transaction, target, failure_reason=str(reason) if reason else None
            )
        self.store.merge_provider_response(
            transaction, {"last_sync": {"found": True, "at": synced_at, "status": result.status.value, "raw": result.raw}}
        )
        await self.session.commit()
        return changed

    async def sync_status(self, transaction: TransactionModel) -> TransactionModel:
        """
        Poll the provider and apply the reported status.

        Raises:
            InvalidStateTransitionError: provider reports a status the
                transaction can no longer move to
            ProviderError: provider unreachable or refused
        """
        await self._sync(transaction)
        return transaction

    async def sync_pending(self, provider: Optional[str] = None, limit: int = 50) -> int:
        """
        Reconcile unsettled transactions with their providers.

        Each transaction is independent: one failure does not stop the batch.

        Returns:
            Number of transactions whose status changed
        """
        # A rollback expires every loaded row, so each one is re-read by id
        batch = [(row.id, row.reference) for row in await self.store.find_unsettled(provider, limit)]
        changed = 0
        for transaction_id, reference in batch:
            try:
                transaction = await self.store.get(transaction_id)
                if transaction is not None and await self._sync(transaction):
                    changed += 1
            except CashkdiError as exc:
                await self.session.rollback()
                logger.warning(f"Status sync failed for {reference}: {exc.error_code} {exc.message}")
        if changed:
            logger.info(f"Status sync updated {changed} transaction(s)")
        return changed

    async def sync_expired(self, now: Optional[datetime] = None) -> int:
        """
        Mark overdue pending/processing transactions as expired.

        Returns:
            Number of transactions expired by this sweep
        """
        now = now or utcnow()
        expired = 0
        for transaction in await self.store.find_overdue(now, limit=self.settings.batch_limit):
            if await self.store.transition(transaction, TransactionStatus.EXPIRED, now=now):
                expired += 1
        await self.session.commit()
        if expired:
            logger.info(f"Expired {expired} overdue transaction(s)")
        return expired

    # ========================================================================
    # Queries
    # ========================================================================

    async def get_payment(self, reference: str) -> TransactionModel:
        transaction = await self.store.get_by_reference(reference)
        if transaction is None:
            raise PaymentNotFoundError(reference)
        return transaction

    async def list_payments(self, filters: PaymentFilters) -> Tuple[List[TransactionModel], int]:
        return await self.store.list(filters)

    def get_provider_info(self, name: str) -> ProviderInfo:
        adapter = self.registry.resolve(name)
        return ProviderInfo(
            name=adapter.name,
            enabled=adapter.settings.enabled,
            capabilities=adapter.get_capabilities().model_dump(),
            supported_currencies=sorted(adapter.get_supported_currencies()),
            min_amount=adapter.settings.min_amount,
            max_amount=adapter.settings.max_amount,
        )

    def get_available_providers(self) -> List[ProviderInfo]:
        return [self.get_provider_info(name) for name in self.registry.names()]

    def validate_phone_number(self, phone: str, provider: Optional[str] = None) -> Dict[str, object]:
        adapter = self.registry.resolve(provider or self.settings.default_provider)
        return {
            "provider": adapter.name,
            "phone": mask_phone(phone),
            "valid": adapter.validate_phone_number(phone),
        }

    def get_supported_currencies(self, provider: Optional[str] = None) -> Dict[str, List[str]]:
        """Currencies per provider, for one provider or all of them."""
        names = [self.registry.resolve(provider).name] if provider else self.registry.names()
        return {
            name: sorted(self.registry.resolve(name).get_supported_currencies())
            for name in names
        }
