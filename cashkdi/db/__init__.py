"""
Database package for Cashkdi.

Exports engine/session setup and ORM models.
"""
from .session import create_engine, create_session_factory, initialize_database, get_db
from .models import (
    Base,
    TransactionModel,
    PaymentModel,
    ApiKeyModel,
    WebhookLogModel,
)

__all__ = [
    "create_engine",
    "create_session_factory",
    "initialize_database",
    "get_db",
    "Base",
    "TransactionModel",
    "PaymentModel",
    "ApiKeyModel",
    "WebhookLogModel",
]
