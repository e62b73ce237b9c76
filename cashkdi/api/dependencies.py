"""
FastAPI dependencies: app-scoped components, per-request services and the
API key gate (authentication, scope, rate limit).
"""
from typing import Callable, Optional

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings
from ..db.models import ApiKeyModel
from ..db.session import get_db
from ..providers.registry import ProviderRegistry
from ..services.api_key_service import ApiKeyService
from ..services.payment_service import PaymentOrchestrator
from ..services.signature_service import SignatureVerifier
from ..services.webhook_service import WebhookProcessor


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_registry(request: Request) -> ProviderRegistry:
    return request.app.state.registry


def get_signer(request: Request) -> SignatureVerifier:
    return request.app.state.signer


async def get_orchestrator(
    db: AsyncSession = Depends(get_db),
    registry: ProviderRegistry = Depends(get_registry),
    settings: Settings = Depends(get_app_settings),
) -> PaymentOrchestrator:
    return PaymentOrchestrator(db, registry, settings)


async def get_webhook_processor(
    db: AsyncSession = Depends(get_db),
    registry: ProviderRegistry = Depends(get_registry),
    settings: Settings = Depends(get_app_settings),
    signer: SignatureVerifier = Depends(get_signer),
) -> WebhookProcessor:
    return WebhookProcessor(db, registry, settings, signer)


def extract_token(request: Request) -> Optional[str]:
    """Bearer token from Authorization, falling back to X-API-Key."""
    authorization = request.headers.get("Authorization", "")
    if authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return request.headers.get("X-API-Key")


def require_scope(scope: str) -> Callable:
    """
    Dependency factory guarding a route with an API key scope.

    Usage:
        @router.get("/payments")
        async def list_payments(api_key: ApiKeyModel = Depends(require_scope("payments:read"))):
            ...
    """

    async def dependency(request: Request, db: AsyncSession = Depends(get_db)) -> ApiKeyModel:
        service = ApiKeyService(db, request.app.state.settings)
        api_key = await service.authenticate(extract_token(request))
        service.require_scope(api_key, scope)
        request.app.state.rate_limiter.check(api_key.key_id, api_key.rate_limit)
        await service.record_usage(api_key)
        return api_key

    return dependency
