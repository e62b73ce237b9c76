"""
Status taxonomies and the payment lifecycle graph.

Transactions and their Payment attempts share one lifecycle:
pending -> processing -> {success | failed | canceled | expired}.
"""
from enum import Enum
from typing import Dict, FrozenSet


class TransactionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELED = "canceled"
    EXPIRED = "expired"


# Payment attempts mirror the transaction lifecycle
PaymentStatus = TransactionStatus


class WebhookStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    IGNORED = "ignored"


class CanonicalStatus(str, Enum):
    """Normalized provider wording carried by webhooks and status polls."""

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PENDING = "pending"


class ApiKeyEnvironment(str, Enum):
    SANDBOX = "sandbox"
    PRODUCTION = "production"


TERMINAL_STATUSES: FrozenSet[TransactionStatus] = frozenset({
    TransactionStatus.SUCCESS,
    TransactionStatus.FAILED,
    TransactionStatus.CANCELED,
    TransactionStatus.EXPIRED,
})

ACTIVE_STATUSES: FrozenSet[TransactionStatus] = frozenset({
    TransactionStatus.PENDING,
    TransactionStatus.PROCESSING,
})

ALLOWED_TRANSITIONS: Dict[TransactionStatus, FrozenSet[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset({
        TransactionStatus.PROCESSING,
        *TERMINAL_STATUSES,
    }),
    TransactionStatus.PROCESSING: TERMINAL_STATUSES,
}

# Canonical webhook status -> transaction status. PENDING means "no change".
CANONICAL_TO_TRANSACTION: Dict[CanonicalStatus, TransactionStatus] = {
    CanonicalStatus.COMPLETED: TransactionStatus.SUCCESS,
    CanonicalStatus.FAILED: TransactionStatus.FAILED,
    CanonicalStatus.CANCELLED: TransactionStatus.CANCELED,
    CanonicalStatus.PENDING: TransactionStatus.PENDING,
}


def is_terminal(status: str) -> bool:
    return TransactionStatus(status) in TERMINAL_STATUSES


def can_transition(current: str, target: str) -> bool:
    """
    True when moving from current to target is allowed.

    Re-applying the current status is always allowed: it is a no-op, which
    makes redelivered webhooks harmless.
    """
    current_status = TransactionStatus(current)
    target_status = TransactionStatus(target)
    if current_status == target_status:
        return True
    return target_status in ALLOWED_TRANSITIONS.get(current_status, frozenset())
