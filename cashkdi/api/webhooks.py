"""
Webhook Endpoints

Inbound provider callbacks. No API key: each call is authenticated by the
provider's HMAC signature over the raw body.

Any failure answers non-2xx so the provider redelivers; 2xx is returned only
once the webhook log is success or ignored.
"""
import logging

from fastapi import APIRouter, Depends, Request

from ..models.webhooks import WebhookResult
from ..services.webhook_service import WebhookProcessor
from .dependencies import get_webhook_processor

logger = logging.getLogger(__name__)

router = APIRouter()


async def _handle(provider: str, request: Request, processor: WebhookProcessor) -> WebhookResult:
    raw_body = await request.body()
    return await processor.process_webhook(provider, raw_body, dict(request.headers))


@router.post("/orange-money", response_model=WebhookResult)
async def orange_money_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> WebhookResult:
    return await _handle("orange-money", request, processor)


@router.post("/mtn-momo", response_model=WebhookResult)
async def mtn_momo_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> WebhookResult:
    return await _handle("mtn-momo", request, processor)


@router.post("/cards", response_model=WebhookResult)
async def cards_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> WebhookResult:
    return await _handle("cards", request, processor)


@router.post("/payment/{provider}", response_model=WebhookResult)
async def provider_webhook(
    provider: str,
    request: Request,
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> WebhookResult:
    """Generic endpoint: the provider is taken from the path."""
    return await _handle(provider, request, processor)
