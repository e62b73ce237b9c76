"""
Pydantic Webhook Models

Admin views of webhook logs and the result returned to providers.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..utils import mask_sensitive


class WebhookResult(BaseModel):
    webhook_log_id: str
    status: str
    transaction_reference: Optional[str] = None
    transaction_status: Optional[str] = None
    changed: bool = False


class WebhookLogOut(BaseModel):
    """Webhook log with sensitive payload and header values masked."""

    id: str
    provider: str
    event_type: str
    status: str
    transaction_id: Optional[str] = None
    payment_id: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    headers: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    retry_count: int = 0
    retryable: bool = True
    next_retry_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, log, sensitive_fields) -> "WebhookLogOut":
        return cls(
            id=log.id,
            provider=log.provider,
            event_type=log.event_type,
            status=log.status,
            transaction_id=log.transaction_id,
            payment_id=log.payment_id,
            payload=mask_sensitive(log.payload, sensitive_fields) if log.payload is not None else None,
            headers=mask_sensitive(log.headers or {}, sensitive_fields),
            error_message=log.error_message,
            retry_count=log.retry_count,
            retryable=log.retryable,
            next_retry_at=log.next_retry_at,
            processed_at=log.processed_at,
            created_at=log.created_at,
        )


class WebhookLogPage(BaseModel):
    items: List[WebhookLogOut]
    total: int
    page: int
    per_page: int


class RetryFailedRequest(BaseModel):
    provider: Optional[str] = None
    limit: int = Field(default=50, ge=1, le=100)
