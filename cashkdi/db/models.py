"""
SQLAlchemy ORM Models for Cashkdi

Transactions own their Payment attempts (cascade). Webhook logs reference
transactions and payments but outlive them (set null), so the audit trail
is never deleted with its parent.
"""
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

from ..utils import utcnow

Base = declarative_base()


def _new_id() -> str:
    return uuid.uuid4().hex


_TRANSACTION_STATUSES = "'pending', 'processing', 'success', 'failed', 'canceled', 'expired'"


class TransactionModel(Base):
    """
    ORM model for transactions table.

    Top-level payment intent. `version` is an optimistic-concurrency counter:
    two writers racing on the same row cannot both commit.
    """
    __tablename__ = "transactions"

    id = Column(String(32), primary_key=True, default=_new_id)
    reference = Column(String(50), nullable=False, unique=True)
    provider = Column(String(20), nullable=False)
    amount = Column(Integer, nullable=False)  # minor units
    currency = Column(String(3), nullable=False)
    customer_phone = Column(String(20))
    customer_email = Column(String(255))
    description = Column(Text)
    callback_url = Column(String(500))
    return_url = Column(String(500))
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    status = Column(String(20), nullable=False, default="pending")
    provider_reference = Column(String(100), index=True)
    external_id = Column(String(100))
    provider_response = Column(JSON, nullable=False, default=dict)  # may hold secrets, never log raw
    failure_reason = Column(Text)
    api_key_id = Column(String(32), ForeignKey("api_keys.id", ondelete="SET NULL"))
    expires_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    retired_at = Column(DateTime)
    version = Column(Integer, nullable=False)

    payments = relationship(
        "PaymentModel",
        back_populates="transaction",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="raise",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(f"status IN ({_TRANSACTION_STATUSES})", name="transaction_status_check"),
        CheckConstraint("amount > 0", name="transaction_amount_positive"),
        Index("idx_transactions_status_created", "status", "created_at"),
        Index("idx_transactions_provider_status", "provider", "status"),
        Index("idx_transactions_expires_status", "expires_at", "status"),
        Index("idx_transactions_currency_amount", "currency", "amount"),
    )


class PaymentModel(Base):
    """
    ORM model for payments table.

    One attempt/leg under a transaction, keyed by the provider's payment id.
    """
    __tablename__ = "payments"

    id = Column(String(32), primary_key=True, default=_new_id)
    transaction_id = Column(
        String(32),
        ForeignKey("transactions.id", ondelete="CASCADE"),
        nullable=False,
    )
    payment_method = Column(String(20), nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    provider_payment_id = Column(String(100), index=True)
    provider_data = Column(JSON, nullable=False, default=dict)
    processed_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    transaction = relationship("TransactionModel", back_populates="payments", lazy="raise")

    __table_args__ = (
        CheckConstraint(f"status IN ({_TRANSACTION_STATUSES})", name="payment_status_check"),
        Index("idx_payments_transaction_status", "transaction_id", "status"),
        Index("idx_payments_status_created", "status", "created_at"),
    )


class ApiKeyModel(Base):
    """
    ORM model for api_keys table.

    Only an HMAC of the secret is stored; the plaintext is shown once.
    """
    __tablename__ = "api_keys"

    id = Column(String(32), primary_key=True, default=_new_id)
    name = Column(String(100), nullable=False)
    key_id = Column(String(50), nullable=False, unique=True)
    secret_hash = Column(String(64), nullable=False)
    environment = Column(String(20), nullable=False, default="sandbox", index=True)
    scopes = Column(JSON, nullable=False, default=list)
    rate_limit = Column(Integer, nullable=False, default=1000)
    expires_at = Column(DateTime, index=True)
    last_used_at = Column(DateTime)
    revoked_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("environment IN ('sandbox', 'production')", name="api_key_environment_check"),
    )


class WebhookLogModel(Base):
    """
    ORM model for webhook_logs table.

    One row per inbound callback, written before any verification, also used
    to drive retries.
    """
    __tablename__ = "webhook_logs"

    id = Column(String(32), primary_key=True, default=_new_id)
    transaction_id = Column(String(32), ForeignKey("transactions.id", ondelete="SET NULL"))
    payment_id = Column(String(32), ForeignKey("payments.id", ondelete="SET NULL"))
    provider = Column(String(20), nullable=False)
    event_type = Column(String(50), nullable=False, default="unknown")
    raw_body = Column(Text, nullable=False, default="")
    payload = Column(JSON)
    headers = Column(JSON, nullable=False, default=dict)
    signature = Column(String(200))
    status = Column(String(20), nullable=False, default="pending")
    error_message = Column(Text)
    retry_count = Column(Integer, nullable=False, default=0)
    retryable = Column(Boolean, nullable=False, default=True)
    next_retry_at = Column(DateTime)
    processed_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'success', 'failed', 'ignored')",
            name="webhook_status_check",
        ),
        Index("idx_webhook_logs_provider_status", "provider", "status"),
        Index("idx_webhook_logs_status_next_retry", "status", "next_retry_at"),
        Index("idx_webhook_logs_retry_status", "retry_count", "status"),
        Index("idx_webhook_logs_created", "created_at"),
        Index("idx_webhook_logs_transaction", "transaction_id", "status"),
    )
