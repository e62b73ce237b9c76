"""
Webhook Processor

Ingests provider callbacks and applies them to transactions.

Processing order:
1. WebhookLog committed as pending before anything else
2. Signature checked over the raw body (when enabled)
3. Ignored event types short-circuit to "ignored"
4. Reference extracted from the payload
5. Transaction found by our reference or the provider's
6. Normalized status applied under a row lock, provider data merged,
   payment attempt upserted
7. WebhookLog marked success in the same commit as the transaction update

Failures in 1-2 are final (retryable=False). Failures in 3-6 roll back,
mark the log failed with a next_retry_at, and re-raise.
"""
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings
from ..db.models import TransactionModel, WebhookLogModel
from ..exceptions import (
    CashkdiError,
    ConfigurationError,
    SignatureVerificationError,
    UnknownProviderError,
    WebhookLogNotFoundError,
    WebhookPayloadError,
    WebhookReferenceNotFoundError,
)
from ..models.status import CANONICAL_TO_TRANSACTION, TransactionStatus, WebhookStatus
from ..models.webhooks import WebhookResult
from ..providers.base import ProviderAdapter
from ..providers.registry import ProviderRegistry
from ..utils import mask_sensitive, utcnow
from .retry_scheduler import RetryPolicy, RetryScheduler
from .signature_service import SignatureVerifier
from .transaction_store import TransactionStore

logger = logging.getLogger(__name__)

# Checked in order before the adapter's own fields; first non-empty wins
REFERENCE_FIELDS = (
    "reference",
    "payment_reference",
    "transaction_reference",
    "external_reference",
    "merchant_reference",
)

EVENT_TYPE_FIELDS = ("event", "event_type", "type")

# Errors raised before the payload is trusted; retrying cannot fix them
_FINAL_ERRORS = (SignatureVerificationError, WebhookPayloadError, UnknownProviderError, ConfigurationError)


def extract_reference(payload: Mapping[str, Any], extra_fields=()) -> Optional[str]:
    for field in (*REFERENCE_FIELDS, *extra_fields):
        value = payload.get(field)
        if value not in (None, ""):
            return str(value)
    return None


def _event_type(payload: Optional[Mapping[str, Any]]) -> str:
    if not isinstance(payload, dict):
        return "unknown"
    for field in EVENT_TYPE_FIELDS:
        value = payload.get(field)
        if isinstance(value, str) and value:
            return value[:50]
    return "unknown"


def _parse_payload(raw_body: str) -> Optional[Dict[str, Any]]:
    try:
        payload = json.loads(raw_body)
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


class WebhookProcessor:
    """
    Webhook ingestion for one request or job.

    Args:
        session: Database session owned by the caller
        registry: Frozen provider registry
        settings: Application settings
        signer: Signature verifier built from the same settings
    """

    def __init__(
        self,
        session: AsyncSession,
        registry: ProviderRegistry,
        settings: Settings,
        signer: SignatureVerifier,
    ):
        self.session = session
        self.registry = registry
        self.settings = settings
        self.signer = signer
        self.store = TransactionStore(session)
        self.retry_policy = RetryPolicy(settings.webhooks)

    # ========================================================================
    # Entry points
    # ========================================================================

    async def process_webhook(
        self,
        provider: str,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> WebhookResult:
        """
        Record and apply one inbound callback.

        Args:
            provider: Provider name from the route
            raw_body: Exact request body bytes
            headers: Request headers

        Returns:
            WebhookResult with the log id and applied status

        Raises:
            SignatureVerificationError: signature missing or invalid
            WebhookPayloadError: body is not a JSON object
            WebhookReferenceNotFoundError: no reference or no transaction
            InvalidStateTransitionError: status conflicts with a final state
        """
        log = await self._record(provider, raw_body, headers)

        try:
            adapter = self.registry.resolve(provider)
            if self.settings.webhooks.verify_signatures:
                self.signer.verify_webhook(provider, raw_body, headers)
            payload = self._require_payload(log)
        except _FINAL_ERRORS as exc:
            await self._fail(log, exc, retryable=False)
            raise
        except Exception as exc:
            logger.exception(f"Unexpected error verifying webhook {log.id} from {provider}")
            await self._fail(log, exc, retryable=False)
            raise

        return await self._run(log, adapter, payload)

    async def reprocess(self, log: WebhookLogModel) -> WebhookResult:
        """
        Run a stored webhook again.

        The signature was checked when the webhook first arrived; only logs
        that passed that check are retryable, so it is not repeated here.
        """
        log.retry_count += 1
        log.next_retry_at = None
        log.error_message = None
        await self.session.commit()
        logger.info(f"Retrying webhook {log.id} (attempt {log.retry_count}/{self.retry_policy.max_attempts})")

        try:
            adapter = self.registry.resolve(log.provider)
            payload = self._require_payload(log)
        except _FINAL_ERRORS as exc:
            await self._fail(log, exc, retryable=False)
            raise

        return await self._run(log, adapter, payload)

    async def retry_webhook(self, log_id: str) -> WebhookResult:
        """Manual retry of one failed webhook by id."""
        log = await self.get_log(log_id)
        return await RetryScheduler(self.session, self).retry_one(log)

    async def retry_failed(self, provider: Optional[str] = None, limit: int = 50) -> int:
        return await RetryScheduler(self.session, self).retry_failed(provider=provider, limit=limit)

    # ========================================================================
    # Processing
    # ========================================================================

    async def _record(self, provider: str, raw_body: bytes, headers: Mapping[str, str]) -> WebhookLogModel:
        body_text = raw_body.decode("utf-8", errors="replace")
        payload = _parse_payload(body_text)
        now = utcnow()
        log = WebhookLogModel(
            provider=provider[:20],
            event_type=_event_type(payload),
            raw_body=body_text,
            payload=payload,
            headers={name.lower(): value for name, value in headers.items()},
            signature=self.signer.extract_signature(provider, headers) or None,
            status=WebhookStatus.PENDING.value,
            retry_count=0,
            retryable=True,
            created_at=now,
            updated_at=now,
        )
        self.session.add(log)
        await self.session.commit()
        logger.info(f"Received webhook {log.id} from {provider}: event={log.event_type}")
        return log

    def _require_payload(self, log: WebhookLogModel) -> Dict[str, Any]:
        payload = log.payload if isinstance(log.payload, dict) else _parse_payload(log.raw_body)
        if payload is None:
            raise WebhookPayloadError("Webhook body must be a JSON object", {"webhook_log_id": log.id})
        return payload

    async def _run(self, log: WebhookLogModel, adapter: ProviderAdapter, payload: Dict[str, Any]) -> WebhookResult:
        log.status = WebhookStatus.PROCESSING.value
        await self.session.commit()

        try:
            if log.event_type in self.settings.webhooks.ignored_event_types:
                log.status = WebhookStatus.IGNORED.value
                log.processed_at = utcnow()
                await self.session.commit()
                logger.info(f"Ignored webhook {log.id}: event={log.event_type}")
                return WebhookResult(webhook_log_id=log.id, status=log.status)

            transaction, changed = await self._apply(log, adapter, payload)

            log.status = WebhookStatus.SUCCESS.value
            log.processed_at = utcnow()
            await self.session.commit()
        except Exception as exc:
            await self.session.rollback()
            await self.session.refresh(log)
            await self._fail(log, exc, retryable=True)
            raise

        logger.info(
            f"Webhook {log.id} applied to {transaction.reference}: "
            f"status={transaction.status} changed={changed}"
        )
        return WebhookResult(
            webhook_log_id=log.id,
            status=log.status,
            transaction_reference=transaction.reference,
            transaction_status=transaction.status,
            changed=changed,
        )

    async def _apply(
        self,
        log: WebhookLogModel,
        adapter: ProviderAdapter,
        payload: Dict[str, Any],
    ) -> Tuple[TransactionModel, bool]:
        reference = extract_reference(payload, adapter.reference_fields)
        event = adapter.process_webhook(payload, log.headers or {})
        if reference is None and not event.provider_reference:
            raise WebhookReferenceNotFoundError(
                "Payment reference not found in webhook payload",
                {"webhook_log_id": log.id, "fields": list(REFERENCE_FIELDS + adapter.reference_fields)}
            )

        transaction = None
        for candidate in (reference, event.provider_reference):
            if not candidate:
                continue
            match = await self.store.find_for_webhook(candidate)
            if match is not None and match.provider == adapter.name:
                transaction = match
                break
        if transaction is None:
            raise WebhookReferenceNotFoundError(
                f"Transaction not found for reference {reference or event.provider_reference}",
                {"webhook_log_id": log.id, "reference": reference or event.provider_reference}
            )

        now = utcnow()
        target = CANONICAL_TO_TRANSACTION[event.status]
        changed = False
        if target != TransactionStatus.PENDING:
            reason = payload.get("reason") or payload.get("message")
            changed = await self.store.transition(
                transaction,
                target,
                failure_reason=str(reason) if reason else None,
                now=now,
            )

        history = list((transaction.provider_response or {}).get("webhooks", []))
        history.append({
            "webhook_log_id": log.id,
            "status": event.status.value,
            "raw_status": event.raw_status,
            "received_at": now.isoformat(),
        })
        self.store.merge_provider_response(transaction, {
            "webhooks": history,
            "last_webhook": mask_sensitive(payload, self.settings.sensitive_fields),
        })

        log.transaction_id = transaction.id
        if event.transaction_data is not None:
            applied = target if target != TransactionStatus.PENDING else TransactionStatus(transaction.status)
            payment = await self.store.upsert_payment_attempt(
                transaction,
                event.transaction_data,
                applied,
                payment_method=adapter.payment_method,
                provider_data={"raw_status": event.raw_status},
                now=now,
            )
            log.payment_id = payment.id

        return transaction, changed

    async def _fail(self, log: WebhookLogModel, exc: Exception, retryable: bool) -> None:
        now = utcnow()
        log.status = WebhookStatus.FAILED.value
        log.error_message = (exc.message if isinstance(exc, CashkdiError) else str(exc))[:2000]
        log.retryable = retryable
        log.next_retry_at = self.retry_policy.next_retry_at(log.retry_count, now) if retryable else None
        log.processed_at = None
        await self.session.commit()
        logger.warning(
            f"Webhook {log.id} from {log.provider} failed: {log.error_message} "
            f"(retryable={retryable}, next_retry_at={log.next_retry_at})"
        )

    # ========================================================================
    # Queries
    # ========================================================================

    async def get_log(self, log_id: str) -> WebhookLogModel:
        log = await self.session.get(WebhookLogModel, log_id)
        if log is None:
            raise WebhookLogNotFoundError(log_id)
        return log

    async def list_logs(
        self,
        provider: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        per_page: int = 15,
        since: Optional[datetime] = None,
    ) -> Tuple[List[WebhookLogModel], int]:
        conditions = []
        if provider:
            conditions.append(WebhookLogModel.provider == provider)
        if status:
            conditions.append(WebhookLogModel.status == status)
        if since is not None:
            conditions.append(WebhookLogModel.created_at >= since)

        total = await self.session.scalar(
            select(func.count()).select_from(WebhookLogModel).where(*conditions)
        )
        result = await self.session.execute(
            select(WebhookLogModel)
            .where(*conditions)
            .order_by(WebhookLogModel.created_at.desc(), WebhookLogModel.id.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        )
        return list(result.scalars().all()), total or 0
