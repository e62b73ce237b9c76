"""
Pydantic models exchanged between the orchestrator and provider adapters.

Adapters translate these canonical shapes to and from each provider's wire
format. Amounts are integer minor units.
"""
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from .status import CanonicalStatus, TransactionStatus


class ProviderPaymentRequest(BaseModel):
    reference: str
    amount: int = Field(gt=0)
    currency: str
    phone: Optional[str] = None
    email: Optional[str] = None
    description: Optional[str] = None
    callback_url: Optional[str] = None
    return_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ProviderPaymentResponse(BaseModel):
    external_id: Optional[str] = None
    provider_reference: Optional[str] = None
    status: TransactionStatus = TransactionStatus.PENDING
    provider_data: Dict[str, Any] = Field(default_factory=dict)


class ProviderStatusResponse(BaseModel):
    """
    Result of polling the provider.

    found=False means the provider does not know the reference, which is
    different from a payment that is still pending.
    """

    status: CanonicalStatus = CanonicalStatus.PENDING
    found: bool = True
    raw: Dict[str, Any] = Field(default_factory=dict)


class ProviderCancelResponse(BaseModel):
    status: CanonicalStatus
    raw: Dict[str, Any] = Field(default_factory=dict)


class ProviderCapabilities(BaseModel):
    create: bool = True
    cancel: bool = False
    refund: bool = False
    recurring: bool = False


class ProviderTransactionData(BaseModel):
    """Transaction-level detail some providers attach to callbacks."""

    provider_payment_id: str
    type: str = "payment"
    amount: Optional[int] = None
    currency: Optional[str] = None
    fees: int = 0


class WebhookEvent(BaseModel):
    status: CanonicalStatus
    raw_status: Optional[str] = None
    provider_reference: Optional[str] = None
    transaction_data: Optional[ProviderTransactionData] = None
