"""Tests for provider adapters, their sandboxes and the registry."""
import json

import httpx
import pytest

from cashkdi.config import ProviderSettings, Settings, WebhookSettings
from cashkdi.exceptions import ConfigurationError, ProviderError, ProviderTimeoutError, UnknownProviderError
from cashkdi.models.providers import ProviderPaymentRequest
from cashkdi.models.status import CanonicalStatus, TransactionStatus
from cashkdi.providers.base import ProviderAdapter
from cashkdi.providers.cards import CardsAdapter
from cashkdi.providers.orange_money import OrangeMoneyAdapter
from cashkdi.providers.registry import ProviderRegistry, build_registry
from cashkdi.services.signature_service import SignatureVerifier, compute_hmac


def _request(**overrides) -> ProviderPaymentRequest:
    data = {
        "reference": "CKD_TEST00000001",
        "amount": 10000,
        "currency": "XOF",
        "phone": "+22607123456",
        "callback_url": "https://merchant.example.com/cb",
    }
    data.update(overrides)
    return ProviderPaymentRequest(**data)


def _client_raising(exc_factory) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        raise exc_factory(request)
    return httpx.AsyncClient(base_url="https://api.orange.com", transport=httpx.MockTransport(handler))


@pytest.mark.unit
class TestStatusNormalization:
    def test_orange_money_table(self, registry):
        adapter = registry.resolve("orange-money")
        assert adapter.normalize_status("SUCCESS") == CanonicalStatus.COMPLETED
        assert adapter.normalize_status("Failed") == CanonicalStatus.FAILED
        assert adapter.normalize_status("CANCELLED") == CanonicalStatus.CANCELLED
        assert adapter.normalize_status("INITIATED") == CanonicalStatus.PENDING

    def test_unknown_status_defaults_to_pending(self, registry):
        for name in registry.names():
            adapter = registry.resolve(name)
            assert adapter.normalize_status("SOMETHING_NEW") == CanonicalStatus.PENDING
            assert adapter.normalize_status(None) == CanonicalStatus.PENDING

    def test_cards_table(self, registry):
        adapter = registry.resolve("cards")
        assert adapter.normalize_status("succeeded") == CanonicalStatus.COMPLETED
        assert adapter.normalize_status("voided") == CanonicalStatus.CANCELLED


@pytest.mark.unit
class TestValidation:
    def test_phone_rules(self, registry):
        orange = registry.resolve("orange-money")
        assert orange.validate_phone_number("+22607123456")
        assert orange.validate_phone_number("+23767123456")
        assert not orange.validate_phone_number("+3367123456")
        assert not orange.validate_phone_number("22607123456")
        assert not orange.validate_phone_number("+2260712345")

    def test_cards_accept_any_phone(self, registry):
        assert registry.resolve("cards").validate_phone_number("")

    def test_currencies(self, registry):
        assert registry.resolve("orange-money").get_supported_currencies() == {"XOF", "XAF"}
        assert registry.resolve("mtn-momo").get_supported_currencies() == {"XOF", "XAF", "EUR"}
        assert "USD" in registry.resolve("cards").get_supported_currencies()

    def test_signature_headers(self, registry):
        assert registry.resolve("orange-money").signature_header == "X-Orange-Signature"
        assert registry.resolve("mtn-momo").signature_header == "X-MTN-Signature"
        assert registry.resolve("cards").signature_header == "X-Webhook-Signature"

    def test_capabilities(self, registry):
        assert registry.resolve("orange-money").get_capabilities().cancel
        assert not registry.resolve("mtn-momo").get_capabilities().cancel
        cards = registry.resolve("cards").get_capabilities()
        assert cards.refund and cards.recurring


@pytest.mark.unit
class TestOrangeMoneySandbox:
    @pytest.mark.asyncio
    async def test_create_status_cancel(self, registry):
        adapter = registry.resolve("orange-money")
        created = await adapter.create_payment(_request())
        assert created.provider_reference.startswith("OM_")
        assert created.status == TransactionStatus.PENDING
        assert created.provider_data["payment_url"].endswith(created.provider_reference)

        status = await adapter.get_payment_status(created.provider_reference)
        assert status.found and status.status == CanonicalStatus.PENDING

        cancelled = await adapter.cancel_payment(created.provider_reference)
        assert cancelled.status == CanonicalStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_unknown_reference_is_not_found(self, registry):
        status = await registry.resolve("orange-money").get_payment_status("OM_MISSING")
        assert status.found is False

    @pytest.mark.asyncio
    async def test_decline_is_definitive(self, registry):
        with pytest.raises(ProviderError) as exc_info:
            await registry.resolve("orange-money").create_payment(_request(amount=99_900))
        assert exc_info.value.upstream_status == 400
        assert not exc_info.value.retryable
        assert not exc_info.value.ambiguous

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self, registry):
        with pytest.raises(ProviderError) as exc_info:
            await registry.resolve("orange-money").create_payment(_request(amount=99_700))
        assert exc_info.value.retryable
        assert exc_info.value.details["operation"] == "create_payment"

    def test_webhook_normalization(self, registry):
        event = registry.resolve("orange-money").process_webhook(
            {"status": "SUCCESS", "pay_token": "OM_1", "txnid": "MP230101", "amount": "10000"}, {}
        )
        assert event.status == CanonicalStatus.COMPLETED
        assert event.provider_reference == "OM_1"
        assert event.transaction_data.provider_payment_id == "MP230101"
        assert event.transaction_data.amount == 10000


@pytest.mark.unit
class TestMtnMomoSandbox:
    @pytest.mark.asyncio
    async def test_request_to_pay(self, registry):
        adapter = registry.resolve("mtn-momo")
        created = await adapter.create_payment(_request(phone="+22507123456"))
        assert created.provider_reference == created.external_id
        status = await adapter.get_payment_status(created.provider_reference)
        assert status.status == CanonicalStatus.PENDING

        adapter.ledger.settle(created.provider_reference, "SUCCESSFUL")
        status = await adapter.get_payment_status(created.provider_reference)
        assert status.status == CanonicalStatus.COMPLETED
        assert "financialTransactionId" in status.raw

    @pytest.mark.asyncio
    async def test_decline_reported_by_status(self, registry):
        adapter = registry.resolve("mtn-momo")
        created = await adapter.create_payment(_request(amount=99_800))
        status = await adapter.get_payment_status(created.provider_reference)
        assert status.status == CanonicalStatus.FAILED
        assert status.raw["reason"] == "payer_not_found"

    @pytest.mark.asyncio
    async def test_cancel_unsupported(self, registry):
        with pytest.raises(ProviderError) as exc_info:
            await registry.resolve("mtn-momo").cancel_payment("anything")
        assert exc_info.value.error_code == "provider:unsupported_operation"

    def test_webhook_major_unit_amount(self, registry):
        event = registry.resolve("mtn-momo").process_webhook(
            {"status": "SUCCESSFUL", "externalId": "CKD_X", "financialTransactionId": "123", "amount": "100.50"},
            {"X-Reference-Id": "ref-1"},
        )
        assert event.provider_reference == "ref-1"
        assert event.transaction_data.amount == 10050


@pytest.mark.unit
class TestCardsSandbox:
    @pytest.mark.asyncio
    async def test_create_returns_processing(self, registry):
        created = await registry.resolve("cards").create_payment(_request(phone=None, currency="EUR"))
        assert created.status == TransactionStatus.PROCESSING
        assert created.provider_data["payment_url"].startswith("https://checkout.")

    @pytest.mark.asyncio
    async def test_card_declined(self, registry):
        with pytest.raises(ProviderError) as exc_info:
            await registry.resolve("cards").create_payment(_request(amount=99_900))
        assert exc_info.value.upstream_status == 402

    def test_event_envelope(self, registry):
        event = registry.resolve("cards").process_webhook(
            {"type": "payment.succeeded", "data": {"id": "pay_1", "status": "succeeded", "charge_id": "ch_1"}}, {}
        )
        assert event.status == CanonicalStatus.COMPLETED
        assert event.provider_reference == "pay_1"
        assert event.transaction_data.provider_payment_id == "ch_1"


@pytest.mark.unit
class TestTransportFailures:
    @pytest.mark.asyncio
    async def test_timeout_is_ambiguous(self, signer):
        client = _client_raising(lambda request: httpx.ReadTimeout("timed out", request=request))
        adapter = OrangeMoneyAdapter(ProviderSettings(webhook_secret="s"), signer, http_client=client)
        with pytest.raises(ProviderTimeoutError) as exc_info:
            await adapter.create_payment(_request())
        assert exc_info.value.ambiguous
        await adapter.aclose()

    @pytest.mark.asyncio
    async def test_connection_error_is_retryable_rejection(self, signer):
        client = _client_raising(lambda request: httpx.ConnectError("refused", request=request))
        adapter = OrangeMoneyAdapter(ProviderSettings(webhook_secret="s"), signer, http_client=client)
        with pytest.raises(ProviderError) as exc_info:
            await adapter.create_payment(_request())
        assert exc_info.value.retryable
        assert not exc_info.value.ambiguous
        await adapter.aclose()

    @pytest.mark.asyncio
    async def test_outbound_signature_header(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["signature"] = request.headers.get("X-Signature")
            seen["body"] = request.content
            return httpx.Response(201, json={"pay_token": "OM_1", "payment_url": "https://x/OM_1"})

        provider_settings = ProviderSettings(webhook_secret="s", api_secret="api-secret")

        signer = SignatureVerifier({"orange-money": provider_settings}, WebhookSettings())
        client = httpx.AsyncClient(base_url="https://api.orange.com", transport=httpx.MockTransport(handler))
        adapter = OrangeMoneyAdapter(provider_settings, signer, http_client=client)
        await adapter.create_payment(_request())

        expected = signer.sign("orange-money", "POST", "/orange-money-webpay/v1/webpayment", seen["body"])
        assert seen["signature"] == expected
        assert json.loads(seen["body"])["amount"] == "100.00"
        await adapter.aclose()

    @pytest.mark.asyncio
    async def test_response_signature_checked(self):
        provider_settings = ProviderSettings(webhook_secret="s", api_secret="api-secret")
        signer = SignatureVerifier({"orange-money": provider_settings}, WebhookSettings())
        body = json.dumps({"pay_token": "OM_1", "payment_url": "https://x/OM_1"}).encode()
        signature = {"value": compute_hmac("api-secret", body)}

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(201, content=body, headers={"X-Signature": signature["value"]})

        client = httpx.AsyncClient(base_url="https://api.orange.com", transport=httpx.MockTransport(handler))
        adapter = OrangeMoneyAdapter(provider_settings, signer, http_client=client)
        created = await adapter.create_payment(_request())
        assert created.provider_reference == "OM_1"

        signature["value"] = "0" * 64
        with pytest.raises(ProviderError) as exc_info:
            await adapter.create_payment(_request())
        assert exc_info.value.error_code == "provider:invalid_response_signature"
        assert not exc_info.value.retryable
        await adapter.aclose()


@pytest.mark.unit
class TestRegistry:
    def test_resolve_unknown(self, registry):
        with pytest.raises(UnknownProviderError):
            registry.resolve("paypal")

    def test_names_and_contains(self, registry):
        assert registry.names() == ["cards", "mtn-momo", "orange-money"]
        assert "cards" in registry
        assert registry.frozen

    def test_frozen_registry_rejects_registration(self, registry, settings, signer):
        adapter = CardsAdapter(settings.providers["cards"], signer)
        with pytest.raises(ConfigurationError):
            registry.register("cards-2", adapter)

    def test_rejects_non_adapter(self):
        with pytest.raises(ConfigurationError):
            ProviderRegistry().register("fake", object())

    def test_rejects_incomplete_adapter(self, settings, signer):
        class BrokenAdapter(OrangeMoneyAdapter):
            process_webhook = None

        with pytest.raises(ConfigurationError) as exc_info:
            ProviderRegistry().register("broken", BrokenAdapter(settings.providers["orange-money"], signer))
        assert exc_info.value.details["missing"] == ["process_webhook"]

    def test_live_provider_needs_credentials(self, signer):
        live = ProviderSettings(test_mode=False, webhook_secret="s")
        with pytest.raises(ConfigurationError):
            ProviderRegistry().register("orange-money", OrangeMoneyAdapter(live, signer))

    def test_disabled_providers_are_skipped(self, tmp_path):
        settings = Settings(_env_file=None, database_url=f"sqlite+aiosqlite:///{tmp_path / 'x.db'}")
        settings.providers["mtn-momo"].enabled = False

        registry = build_registry(settings, SignatureVerifier(settings.providers, settings.webhooks))
        assert "mtn-momo" not in registry
        with pytest.raises(UnknownProviderError):
            registry.resolve("mtn-momo")

    def test_every_adapter_is_a_provider_adapter(self, registry):
        for name in registry.names():
            assert isinstance(registry.resolve(name), ProviderAdapter)
