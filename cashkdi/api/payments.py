"""
Payments API Endpoints

Merchant-facing payment operations. Every route requires an API key with
the listed scope.

Endpoints:
- POST /api/payments                     payments:create
- GET  /api/payments                     payments:read
- GET  /api/payments/{reference}         payments:read
- GET  /api/payments/{reference}/status  payments:read
- POST /api/payments/{reference}/cancel  payments:cancel
- POST /api/payments/{reference}/sync    payments:read
- GET  /api/providers[/{provider}]       payments:read
- POST /api/validate/phone               payments:read
- GET  /api/currencies[/{provider}]      payments:read
"""
import logging
from typing import Annotated, Any, Dict, List

from fastapi import APIRouter, Depends, Query, status

from ..db.models import ApiKeyModel
from ..models.payments import (
    CreatePaymentRequest,
    PaymentFilters,
    PaymentPage,
    PhoneValidationRequest,
    ProviderInfo,
    TransactionOut,
)
from ..services.api_key_service import (
    SCOPE_PAYMENTS_CANCEL,
    SCOPE_PAYMENTS_CREATE,
    SCOPE_PAYMENTS_READ,
)
from ..services.payment_service import PaymentOrchestrator
from .dependencies import get_orchestrator, require_scope

logger = logging.getLogger(__name__)

router = APIRouter()


async def _out(orchestrator: PaymentOrchestrator, transaction) -> TransactionOut:
    payments = await orchestrator.store.list_payments_for(transaction)
    return TransactionOut.from_model(transaction, payments)


@router.post("/payments", response_model=TransactionOut, status_code=status.HTTP_201_CREATED)
async def create_payment_endpoint(
    request: CreatePaymentRequest,
    api_key: ApiKeyModel = Depends(require_scope(SCOPE_PAYMENTS_CREATE)),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> TransactionOut:
    """
    Create a payment with the selected provider.

    Returns 201 with the transaction in pending (or processing). Provider
    rejections answer 502 and leave the transaction failed; timeouts answer
    504 and leave it pending.
    """
    transaction = await orchestrator.create_payment(request, api_key_id=api_key.id)
    return await _out(orchestrator, transaction)


@router.get("/payments", response_model=PaymentPage)
async def list_payments_endpoint(
    filters: Annotated[PaymentFilters, Query()],
    api_key: ApiKeyModel = Depends(require_scope(SCOPE_PAYMENTS_READ)),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> PaymentPage:
    """
    List payments, newest first.

    Example:
        GET /api/payments?status=pending&provider=orange-money&page=2&per_page=20
    """
    transactions, total = await orchestrator.list_payments(filters)
    return PaymentPage(
        items=[TransactionOut.from_model(t) for t in transactions],
        total=total,
        page=filters.page,
        per_page=filters.per_page,
    )


@router.get("/payments/{reference}", response_model=TransactionOut)
async def get_payment_endpoint(
    reference: str,
    api_key: ApiKeyModel = Depends(require_scope(SCOPE_PAYMENTS_READ)),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> TransactionOut:
    transaction = await orchestrator.get_payment(reference)
    return await _out(orchestrator, transaction)


@router.get("/payments/{reference}/status")
async def get_payment_status_endpoint(
    reference: str,
    api_key: ApiKeyModel = Depends(require_scope(SCOPE_PAYMENTS_READ)),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Lightweight status view, read from the store without polling the provider."""
    transaction = await orchestrator.get_payment(reference)
    return {
        "reference": transaction.reference,
        "status": transaction.status,
        "provider": transaction.provider,
        "provider_reference": transaction.provider_reference,
        "expires_at": transaction.expires_at,
        "completed_at": transaction.completed_at,
        "updated_at": transaction.updated_at,
    }


@router.post("/payments/{reference}/cancel", response_model=TransactionOut)
async def cancel_payment_endpoint(
    reference: str,
    api_key: ApiKeyModel = Depends(require_scope(SCOPE_PAYMENTS_CANCEL)),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> TransactionOut:
    transaction = await orchestrator.get_payment(reference)
    transaction = await orchestrator.cancel_payment(transaction)
    return await _out(orchestrator, transaction)


@router.post("/payments/{reference}/sync", response_model=TransactionOut)
async def sync_payment_endpoint(
    reference: str,
    api_key: ApiKeyModel = Depends(require_scope(SCOPE_PAYMENTS_READ)),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> TransactionOut:
    """Poll the provider now instead of waiting for the webhook."""
    transaction = await orchestrator.get_payment(reference)
    transaction = await orchestrator.sync_status(transaction)
    return await _out(orchestrator, transaction)


@router.get("/providers", response_model=List[ProviderInfo])
async def list_providers_endpoint(
    api_key: ApiKeyModel = Depends(require_scope(SCOPE_PAYMENTS_READ)),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> List[ProviderInfo]:
    return orchestrator.get_available_providers()


@router.get("/providers/{provider}", response_model=ProviderInfo)
async def get_provider_endpoint(
    provider: str,
    api_key: ApiKeyModel = Depends(require_scope(SCOPE_PAYMENTS_READ)),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> ProviderInfo:
    return orchestrator.get_provider_info(provider)


@router.post("/validate/phone")
async def validate_phone_endpoint(
    request: PhoneValidationRequest,
    api_key: ApiKeyModel = Depends(require_scope(SCOPE_PAYMENTS_READ)),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    return orchestrator.validate_phone_number(request.phone, request.provider)


@router.get("/currencies")
async def list_currencies_endpoint(
    api_key: ApiKeyModel = Depends(require_scope(SCOPE_PAYMENTS_READ)),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> Dict[str, List[str]]:
    return orchestrator.get_supported_currencies()


@router.get("/currencies/{provider}")
async def provider_currencies_endpoint(
    provider: str,
    api_key: ApiKeyModel = Depends(require_scope(SCOPE_PAYMENTS_READ)),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> Dict[str, List[str]]:
    return orchestrator.get_supported_currencies(provider)
