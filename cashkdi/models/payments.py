"""
Pydantic Payment API Models

Request and response shapes for the merchant-facing payment API.
All monetary values are integer minor units; amount_display is the
major-unit rendering.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator, model_validator

from ..utils import format_minor_units, mask_phone
from .status import TransactionStatus


class CreatePaymentRequest(BaseModel):
    """
    Payment creation request.

    Validation that depends on the provider (currencies, limits, phone
    format) happens in the orchestrator against the provider's settings.
    """

    provider: str = Field(min_length=1, max_length=20)
    amount: StrictInt = Field(gt=0, description="Amount in minor units")
    currency: str = Field(min_length=3, max_length=3)
    phone: Optional[str] = Field(default=None, max_length=20)
    email: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = Field(default=None, max_length=255)
    callback_url: Optional[str] = Field(default=None, max_length=500)
    return_url: Optional[str] = Field(default=None, max_length=500)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = {
        "extra": "forbid",
        "json_schema_extra": {
            "example": {
                "provider": "orange-money",
                "amount": 10000,
                "currency": "XOF",
                "phone": "+22607123456",
                "description": "Order #1042",
                "callback_url": "https://merchant.example.com/payments/callback",
                "return_url": "https://merchant.example.com/checkout/done",
                "metadata": {"order_id": "1042"}
            }
        }
    }

    @field_validator("currency")
    @classmethod
    def currency_upper(cls, v: str) -> str:
        if not v.isalpha():
            raise ValueError("Currency must be a three-letter code")
        return v.upper()

    @field_validator("email")
    @classmethod
    def email_shape(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and ("@" not in v or v.startswith("@") or v.endswith("@")):
            raise ValueError("Invalid email address")
        return v

    @field_validator("callback_url", "return_url")
    @classmethod
    def http_url(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return v


class PaymentFilters(BaseModel):
    status: Optional[TransactionStatus] = None
    provider: Optional[str] = None
    currency: Optional[str] = None
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None
    min_amount: Optional[int] = Field(default=None, ge=0)
    max_amount: Optional[int] = Field(default=None, ge=0)
    page: int = Field(default=1, ge=1)
    per_page: int = Field(default=15, ge=1, le=100)

    @model_validator(mode="after")
    def ranges_ordered(self) -> "PaymentFilters":
        if self.from_date and self.to_date and self.from_date > self.to_date:
            raise ValueError("from_date must not be after to_date")
        if (
            self.min_amount is not None
            and self.max_amount is not None
            and self.min_amount > self.max_amount
        ):
            raise ValueError("min_amount must not exceed max_amount")
        return self


class PaymentAttemptOut(BaseModel):
    id: str
    payment_method: str
    amount: int
    currency: str
    status: str
    provider_payment_id: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class TransactionOut(BaseModel):
    """
    Transaction as returned to merchants.

    provider_response is never exposed: it may carry provider secrets.
    """

    id: str
    reference: str
    provider: str
    amount: int
    amount_display: str
    currency: str
    status: str
    customer_phone: str = ""
    customer_email: Optional[str] = None
    description: Optional[str] = None
    provider_reference: Optional[str] = None
    payment_url: Optional[str] = None
    callback_url: Optional[str] = None
    return_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    failure_reason: Optional[str] = None
    expires_at: datetime
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    payments: List[PaymentAttemptOut] = Field(default_factory=list)

    @classmethod
    def from_model(cls, transaction, payments=None) -> "TransactionOut":
        provider_response = transaction.provider_response or {}
        return cls(
            id=transaction.id,
            reference=transaction.reference,
            provider=transaction.provider,
            amount=transaction.amount,
            amount_display=format_minor_units(transaction.amount),
            currency=transaction.currency,
            status=transaction.status,
            customer_phone=mask_phone(transaction.customer_phone),
            customer_email=transaction.customer_email,
            description=transaction.description,
            provider_reference=transaction.provider_reference,
            payment_url=provider_response.get("payment_url"),
            callback_url=transaction.callback_url,
            return_url=transaction.return_url,
            metadata=transaction.metadata_ or {},
            failure_reason=transaction.failure_reason,
            expires_at=transaction.expires_at,
            completed_at=transaction.completed_at,
            created_at=transaction.created_at,
            payments=[PaymentAttemptOut.model_validate(p) for p in (payments or [])],
        )


class PaymentPage(BaseModel):
    items: List[TransactionOut]
    total: int
    page: int
    per_page: int


class PhoneValidationRequest(BaseModel):
    phone: str = Field(min_length=1, max_length=20)
    provider: Optional[str] = None


class ProviderInfo(BaseModel):
    name: str
    enabled: bool
    capabilities: Dict[str, bool]
    supported_currencies: List[str]
    min_amount: int
    max_amount: int
