"""
Shared fixtures: a SQLite database per test, sandbox providers and the
services wired the way the application wires them.
"""
from typing import Callable, Dict

import pytest
import pytest_asyncio

from cashkdi.config import Settings, WebhookSettings
from cashkdi.db.session import create_engine, create_session_factory, initialize_database
from cashkdi.models.payments import CreatePaymentRequest
from cashkdi.providers.registry import build_registry
from cashkdi.services.payment_service import PaymentOrchestrator
from cashkdi.services.signature_service import SignatureVerifier
from cashkdi.services.webhook_service import WebhookProcessor


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'cashkdi_test.db'}",
        scheduler_enabled=False,
        webhooks=WebhookSettings(max_retry_attempts=3, retry_delay_minutes=5),
    )


@pytest_asyncio.fixture
async def engine(settings):
    engine = create_engine(settings)
    await initialize_database(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def signer(settings) -> SignatureVerifier:
    return SignatureVerifier(settings.providers, settings.webhooks)


@pytest_asyncio.fixture
async def registry(settings, signer):
    registry = build_registry(settings, signer)
    yield registry
    await registry.close()


@pytest.fixture
def orchestrator(db_session, registry, settings) -> PaymentOrchestrator:
    return PaymentOrchestrator(db_session, registry, settings)


@pytest.fixture
def processor(db_session, registry, settings, signer) -> WebhookProcessor:
    return WebhookProcessor(db_session, registry, settings, signer)


@pytest.fixture
def payment_request() -> CreatePaymentRequest:
    return CreatePaymentRequest(
        provider="orange-money",
        amount=10000,
        currency="XOF",
        phone="+22607123456",
        description="Order #1042",
        callback_url="https://merchant.example.com/payments/callback",
        return_url="https://merchant.example.com/checkout/done",
        metadata={"order_id": "1042"},
    )


@pytest.fixture
def signed_headers(signer) -> Callable[[str, bytes], Dict[str, str]]:
    """Headers a provider would send with a correctly signed body."""

    def build(provider: str, body: bytes) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            signer.signature_header(provider): signer.sign_payload(provider, body),
        }

    return build
