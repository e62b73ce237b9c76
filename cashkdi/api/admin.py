"""
Admin API Endpoints

Webhook log inspection and retries. Payloads and headers are masked
before they leave the service.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query

from ..config import Settings
from ..db.models import ApiKeyModel
from ..models.status import WebhookStatus
from ..models.webhooks import RetryFailedRequest, WebhookLogOut, WebhookLogPage, WebhookResult
from ..services.api_key_service import SCOPE_ADMIN_READ, SCOPE_ADMIN_WRITE
from ..services.webhook_service import WebhookProcessor
from .dependencies import get_app_settings, get_webhook_processor, require_scope

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/webhooks", response_model=WebhookLogPage)
async def list_webhook_logs_endpoint(
    provider: Optional[str] = Query(default=None),
    status: Optional[WebhookStatus] = Query(default=None),
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=15, ge=1, le=100),
    api_key: ApiKeyModel = Depends(require_scope(SCOPE_ADMIN_READ)),
    processor: WebhookProcessor = Depends(get_webhook_processor),
    settings: Settings = Depends(get_app_settings),
) -> WebhookLogPage:
    logs, total = await processor.list_logs(
        provider=provider,
        status=status.value if status else None,
        page=page,
        per_page=per_page,
    )
    return WebhookLogPage(
        items=[WebhookLogOut.from_model(log, settings.sensitive_fields) for log in logs],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.post("/webhooks/retry-failed")
async def retry_failed_webhooks_endpoint(
    request: Optional[RetryFailedRequest] = Body(default=None),
    api_key: ApiKeyModel = Depends(require_scope(SCOPE_ADMIN_WRITE)),
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> Dict[str, Any]:
    """Retry every eligible failed webhook, optionally for one provider."""
    request = request or RetryFailedRequest()
    # Failed retries roll back the shared session and expire api_key
    key_id = api_key.key_id
    succeeded = await processor.retry_failed(provider=request.provider, limit=request.limit)
    logger.info(f"Bulk webhook retry by {key_id}: {succeeded} succeeded")
    return {"succeeded": succeeded, "provider": request.provider, "limit": request.limit}


@router.get("/webhooks/{log_id}", response_model=WebhookLogOut)
async def get_webhook_log_endpoint(
    log_id: str,
    api_key: ApiKeyModel = Depends(require_scope(SCOPE_ADMIN_READ)),
    processor: WebhookProcessor = Depends(get_webhook_processor),
    settings: Settings = Depends(get_app_settings),
) -> WebhookLogOut:
    log = await processor.get_log(log_id)
    return WebhookLogOut.from_model(log, settings.sensitive_fields)


@router.post("/webhooks/{log_id}/retry", response_model=WebhookResult)
async def retry_webhook_endpoint(
    log_id: str,
    api_key: ApiKeyModel = Depends(require_scope(SCOPE_ADMIN_WRITE)),
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> WebhookResult:
    logger.info(f"Manual retry of webhook {log_id} by {api_key.key_id}")
    return await processor.retry_webhook(log_id)
