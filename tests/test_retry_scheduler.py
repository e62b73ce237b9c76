"""Tests for webhook retry backoff, eligibility and retry runs."""
import json
from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError

from cashkdi.config import WebhookSettings
from cashkdi.db.models import TransactionModel, WebhookLogModel
from cashkdi.exceptions import SignatureVerificationError, WebhookReferenceNotFoundError, WebhookRetryError
from cashkdi.services.retry_scheduler import RetryPolicy, RetryScheduler
from cashkdi.utils import utcnow

EARLY_REFERENCE = "CKD_EARLYCALLBK1"
NOW = datetime(2026, 3, 1, 12, 0, 0)


def _log(**overrides) -> WebhookLogModel:
    data = {"status": "failed", "retryable": True, "retry_count": 0, "next_retry_at": None}
    data.update(overrides)
    return WebhookLogModel(provider="orange-money", **data)


async def _early_webhook(processor, signed_headers) -> str:
    """Deliver a callback for a transaction that does not exist yet."""
    body = json.dumps({"order_id": EARLY_REFERENCE, "status": "SUCCESS"}).encode()
    with pytest.raises(WebhookReferenceNotFoundError):
        await processor.process_webhook("orange-money", body, signed_headers("orange-money", body))
    logs, _ = await processor.list_logs(status="failed")
    return logs[0].id


async def _insert_transaction(session, reference=EARLY_REFERENCE) -> TransactionModel:
    now = utcnow()
    transaction = TransactionModel(
        reference=reference,
        provider="orange-money",
        amount=10000,
        currency="XOF",
        customer_phone="+22607123456",
        status="pending",
        provider_response={},
        metadata_={},
        expires_at=now + timedelta(minutes=30),
        created_at=now,
        updated_at=now,
    )
    session.add(transaction)
    await session.commit()
    return transaction


@pytest.mark.unit
class TestRetryPolicy:
    def test_linear_backoff_is_non_decreasing(self):
        policy = RetryPolicy(WebhookSettings(retry_delay_minutes=5, max_retry_attempts=3))
        delays = [policy.delay(count) for count in range(3)]
        assert delays == [timedelta(minutes=5), timedelta(minutes=10), timedelta(minutes=15)]

    def test_delay_table_clamps_to_last_entry(self):
        policy = RetryPolicy(WebhookSettings(retry_delays_minutes=[1, 5, 30]))
        assert policy.delay(0) == timedelta(minutes=1)
        assert policy.delay(2) == timedelta(minutes=30)
        assert policy.delay(7) == timedelta(minutes=30)

    def test_decreasing_table_rejected(self):
        with pytest.raises(ValidationError):
            WebhookSettings(retry_delays_minutes=[10, 5])

    def test_no_retry_after_max_attempts(self):
        policy = RetryPolicy(WebhookSettings(max_retry_attempts=3))
        assert policy.next_retry_at(2, NOW) == NOW + policy.delay(2)
        assert policy.next_retry_at(3, NOW) is None

    def test_eligibility(self):
        policy = RetryPolicy(WebhookSettings(max_retry_attempts=3))
        assert policy.is_eligible(_log(), NOW)
        assert policy.is_eligible(_log(next_retry_at=NOW), NOW)
        assert not policy.is_eligible(_log(next_retry_at=NOW + timedelta(seconds=1)), NOW)
        assert not policy.is_eligible(_log(retryable=False), NOW)
        assert not policy.is_eligible(_log(retry_count=3), NOW)
        assert not policy.is_eligible(_log(status="success"), NOW)


@pytest.mark.unit
class TestRetryScheduler:
    @pytest.mark.asyncio
    async def test_eligible_only_once_due(self, processor, signed_headers, db_session):
        log_id = await _early_webhook(processor, signed_headers)
        scheduler = RetryScheduler(db_session, processor)

        assert await scheduler.find_eligible(now=utcnow()) == []
        assert await scheduler.find_eligible(now=utcnow() + timedelta(minutes=10)) == [log_id]
        assert await scheduler.find_eligible(provider="cards", now=utcnow() + timedelta(minutes=10)) == []

    @pytest.mark.asyncio
    async def test_retry_succeeds_once_transaction_exists(self, processor, signed_headers, db_session):
        log_id = await _early_webhook(processor, signed_headers)
        transaction = await _insert_transaction(db_session)

        succeeded = await RetryScheduler(db_session, processor).retry_failed(
            now=utcnow() + timedelta(minutes=10)
        )
        assert succeeded == 1

        log = await processor.get_log(log_id)
        assert log.status == "success"
        assert log.retry_count == 1
        assert log.next_retry_at is None
        assert log.error_message is None
        assert log.transaction_id == transaction.id
        await db_session.refresh(transaction)
        assert transaction.status == "success"

    @pytest.mark.asyncio
    async def test_failed_retry_reschedules(self, processor, signed_headers, db_session):
        log_id = await _early_webhook(processor, signed_headers)

        succeeded = await RetryScheduler(db_session, processor).retry_failed(
            now=utcnow() + timedelta(minutes=10)
        )
        assert succeeded == 0

        log = await processor.get_log(log_id)
        assert log.status == "failed"
        assert log.retry_count == 1
        assert log.next_retry_at > utcnow() + timedelta(minutes=9)

    @pytest.mark.asyncio
    async def test_manual_retry_ignores_schedule(self, processor, signed_headers, db_session):
        log_id = await _early_webhook(processor, signed_headers)
        await _insert_transaction(db_session)

        result = await processor.retry_webhook(log_id)
        assert result.status == "success"
        assert result.transaction_reference == EARLY_REFERENCE

    @pytest.mark.asyncio
    async def test_manual_retry_stops_at_max_attempts(self, processor, signed_headers):
        log_id = await _early_webhook(processor, signed_headers)

        for _ in range(3):
            with pytest.raises(WebhookReferenceNotFoundError):
                await processor.retry_webhook(log_id)

        log = await processor.get_log(log_id)
        assert log.retry_count == 3
        assert log.next_retry_at is None
        with pytest.raises(WebhookRetryError) as exc_info:
            await processor.retry_webhook(log_id)
        assert exc_info.value.details["max_attempts"] == 3

    @pytest.mark.asyncio
    async def test_signature_failures_are_never_retried(self, processor, db_session):
        body = json.dumps({"order_id": EARLY_REFERENCE, "status": "SUCCESS"}).encode()
        with pytest.raises(SignatureVerificationError):
            await processor.process_webhook("orange-money", body, {"X-Orange-Signature": "bad"})
        [log], _ = await processor.list_logs()

        assert await RetryScheduler(db_session, processor).find_eligible(now=utcnow() + timedelta(days=1)) == []
        with pytest.raises(WebhookRetryError):
            await processor.retry_webhook(log.id)

    @pytest.mark.asyncio
    async def test_successful_log_cannot_be_retried(self, processor, signed_headers):
        body = json.dumps({"event": "ping"}).encode()
        result = await processor.process_webhook("orange-money", body, signed_headers("orange-money", body))
        with pytest.raises(WebhookRetryError):
            await processor.retry_webhook(result.webhook_log_id)
