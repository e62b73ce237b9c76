"""
Pydantic models and status taxonomies for Cashkdi.
"""
from .status import (
    TransactionStatus,
    PaymentStatus,
    WebhookStatus,
    CanonicalStatus,
    ApiKeyEnvironment,
    TERMINAL_STATUSES,
    ACTIVE_STATUSES,
    can_transition,
    is_terminal,
)

__all__ = [
    "TransactionStatus",
    "PaymentStatus",
    "WebhookStatus",
    "CanonicalStatus",
    "ApiKeyEnvironment",
    "TERMINAL_STATUSES",
    "ACTIVE_STATUSES",
    "can_transition",
    "is_terminal",
]
