"""End-to-end tests through the FastAPI application."""
import json

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport
from sqlalchemy import update

from cashkdi.db.models import WebhookLogModel
from cashkdi.main import create_app
from cashkdi.services.api_key_service import (
    ALL_SCOPES,
    SCOPE_PAYMENTS_CREATE,
    SCOPE_PAYMENTS_READ,
    ApiKeyService,
)
from cashkdi.utils import MASK

PAYMENT = {
    "provider": "orange-money",
    "amount": 10000,
    "currency": "XOF",
    "phone": "+22607123456",
    "description": "Order #1042",
    "callback_url": "https://merchant.example.com/payments/callback",
}


@pytest_asyncio.fixture
async def app(settings):
    app = create_app(settings)
    async with app.router.lifespan_context(app):
        yield app


@pytest_asyncio.fixture
async def client(app):
    async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def issue_key(app):
    async def issue(scopes=ALL_SCOPES, rate_limit=None):
        async with app.state.session_factory() as session:
            _, token = await ApiKeyService(session, app.state.settings).generate(
                "merchant", scopes, rate_limit=rate_limit
            )
        return {"Authorization": f"Bearer {token}"}
    return issue


@pytest_asyncio.fixture
async def auth(issue_key):
    return await issue_key()


async def _create(client, auth, **overrides):
    response = await client.post("/api/payments", json={**PAYMENT, **overrides}, headers=auth)
    assert response.status_code == 201, response.text
    return response.json()


@pytest.mark.integration
class TestHealthAndAuth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["providers"] == ["cards", "mtn-momo", "orange-money"]
        assert data["scheduler_running"] is False

    @pytest.mark.asyncio
    async def test_missing_key(self, client):
        response = await client.get("/api/payments")
        assert response.status_code == 401
        assert response.json()["error_code"] == "auth:unauthenticated"

    @pytest.mark.asyncio
    async def test_missing_scope(self, client, issue_key):
        headers = await issue_key([SCOPE_PAYMENTS_READ])
        response = await client.post("/api/payments", json=PAYMENT, headers=headers)
        assert response.status_code == 403
        assert response.json() == {
            "error_code": "auth:insufficient_scope",
            "message": "Insufficient permissions",
            "details": {"required_scope": SCOPE_PAYMENTS_CREATE},
        }

    @pytest.mark.asyncio
    async def test_x_api_key_header(self, client, issue_key):
        headers = await issue_key([SCOPE_PAYMENTS_READ])
        token = headers["Authorization"].split(" ", 1)[1]
        response = await client.get("/api/payments", headers={"X-API-Key": token})
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_rate_limit(self, client, issue_key):
        headers = await issue_key([SCOPE_PAYMENTS_READ], rate_limit=2)
        for _ in range(2):
            assert (await client.get("/api/providers", headers=headers)).status_code == 200
        response = await client.get("/api/providers", headers=headers)
        assert response.status_code == 429
        assert response.json()["error_code"] == "auth:rate_limited"


@pytest.mark.integration
class TestPaymentsApi:
    @pytest.mark.asyncio
    async def test_create_get_list(self, client, auth):
        created = await _create(client, auth)
        assert created["status"] == "pending"
        assert created["amount_display"] == "100.00"
        assert created["customer_phone"] == "+226******56"
        assert created["payment_url"]
        assert "provider_response" not in created
        assert len(created["payments"]) == 1

        reference = created["reference"]
        fetched = await client.get(f"/api/payments/{reference}", headers=auth)
        assert fetched.status_code == 200
        assert fetched.json()["id"] == created["id"]

        status = await client.get(f"/api/payments/{reference}/status", headers=auth)
        assert status.json()["status"] == "pending"

        listing = await client.get("/api/payments", params={"provider": "orange-money"}, headers=auth)
        assert listing.json()["total"] == 1
        assert listing.json()["items"][0]["reference"] == reference

    @pytest.mark.asyncio
    async def test_request_validation(self, client, auth):
        response = await client.post("/api/payments", json={**PAYMENT, "amount": "100"}, headers=auth)
        assert response.status_code == 422
        assert response.json()["error_code"] == "validation_error"

    @pytest.mark.asyncio
    async def test_provider_rules(self, client, auth):
        response = await client.post("/api/payments", json={**PAYMENT, "currency": "USD"}, headers=auth)
        assert response.status_code == 422
        assert response.json()["error_code"] == "payment:validation_failed"

    @pytest.mark.asyncio
    async def test_provider_decline(self, client, auth):
        response = await client.post("/api/payments", json={**PAYMENT, "amount": 99_900}, headers=auth)
        assert response.status_code == 502
        reference = response.json()["details"]["reference"]

        fetched = await client.get(f"/api/payments/{reference}", headers=auth)
        assert fetched.json()["status"] == "failed"

    @pytest.mark.asyncio
    async def test_unknown_reference(self, client, auth):
        response = await client.get("/api/payments/CKD_000000000000", headers=auth)
        assert response.status_code == 404
        assert response.json()["error_code"] == "payment:not_found"

    @pytest.mark.asyncio
    async def test_cancel(self, client, auth):
        reference = (await _create(client, auth))["reference"]

        response = await client.post(f"/api/payments/{reference}/cancel", headers=auth)
        assert response.status_code == 200
        assert response.json()["status"] == "canceled"

        again = await client.post(f"/api/payments/{reference}/cancel", headers=auth)
        assert again.status_code == 409
        assert again.json()["error_code"] == "payment:invalid_transition"

    @pytest.mark.asyncio
    async def test_sync(self, app, client, auth):
        created = await _create(client, auth)
        app.state.registry.resolve("orange-money").ledger.settle(created["provider_reference"], "SUCCESS")

        response = await client.post(f"/api/payments/{created['reference']}/sync", headers=auth)
        assert response.json()["status"] == "success"
        assert response.json()["completed_at"] is not None

    @pytest.mark.asyncio
    async def test_provider_metadata_routes(self, client, auth):
        providers = (await client.get("/api/providers", headers=auth)).json()
        assert [p["name"] for p in providers] == ["cards", "mtn-momo", "orange-money"]

        missing = await client.get("/api/providers/paypal", headers=auth)
        assert missing.status_code == 404

        currencies = (await client.get("/api/currencies/mtn-momo", headers=auth)).json()
        assert currencies == {"mtn-momo": ["EUR", "XAF", "XOF"]}

        phone = await client.post(
            "/api/validate/phone", json={"phone": "+22607123456", "provider": "mtn-momo"}, headers=auth
        )
        assert phone.json()["valid"] is True


@pytest.mark.integration
class TestWebhooksApi:
    @pytest.mark.asyncio
    async def test_signed_webhook_settles_payment(self, client, auth, signed_headers):
        created = await _create(client, auth)
        body = json.dumps({
            "order_id": created["reference"],
            "status": "SUCCESS",
            "txnid": "MP260101.1200.A00001",
            "pay_token": created["provider_reference"],
        }).encode()

        response = await client.post(
            "/webhooks/orange-money", content=body, headers=signed_headers("orange-money", body)
        )
        assert response.status_code == 200
        assert response.json()["transaction_status"] == "success"

        fetched = (await client.get(f"/api/payments/{created['reference']}", headers=auth)).json()
        assert fetched["status"] == "success"
        assert fetched["payments"][0]["provider_payment_id"] == "MP260101.1200.A00001"

    @pytest.mark.asyncio
    async def test_generic_route(self, client, auth, signed_headers):
        created = await _create(client, auth, provider="cards", currency="EUR", phone=None)
        body = json.dumps({"type": "payment.failed", "data": {"id": created["provider_reference"], "status": "declined"}}).encode()

        response = await client.post("/webhooks/payment/cards", content=body, headers=signed_headers("cards", body))
        assert response.status_code == 200
        assert response.json()["transaction_status"] == "failed"

    @pytest.mark.asyncio
    async def test_bad_signature(self, client, auth):
        created = await _create(client, auth)
        body = json.dumps({"order_id": created["reference"], "status": "SUCCESS"}).encode()

        response = await client.post(
            "/webhooks/orange-money", content=body, headers={"X-Orange-Signature": "0" * 64}
        )
        assert response.status_code == 401
        assert response.json()["error_code"] == "webhook:signature_invalid"

        fetched = (await client.get(f"/api/payments/{created['reference']}", headers=auth)).json()
        assert fetched["status"] == "pending"

    @pytest.mark.asyncio
    async def test_unknown_reference_answers_404(self, client, signed_headers):
        body = json.dumps({"order_id": "CKD_NOBODY000000", "status": "SUCCESS"}).encode()
        response = await client.post(
            "/webhooks/orange-money", content=body, headers=signed_headers("orange-money", body)
        )
        assert response.status_code == 404
        assert response.json()["error_code"] == "webhook:reference_not_found"


@pytest.mark.integration
class TestAdminApi:
    @pytest.mark.asyncio
    async def test_logs_are_masked(self, client, auth, signed_headers):
        created = await _create(client, auth)
        body = json.dumps({
            "order_id": created["reference"],
            "status": "SUCCESS",
            "pay_token": created["provider_reference"],
        }).encode()
        headers = {**signed_headers("orange-money", body), "Authorization": "Bearer provider-token"}
        await client.post("/webhooks/orange-money", content=body, headers=headers)

        listing = await client.get("/api/admin/webhooks", params={"status": "success"}, headers=auth)
        assert listing.status_code == 200
        [item] = listing.json()["items"]
        assert item["payload"]["pay_token"] == MASK
        assert item["payload"]["order_id"] == created["reference"]
        assert item["headers"]["authorization"] == MASK

        detail = await client.get(f"/api/admin/webhooks/{item['id']}", headers=auth)
        assert detail.json()["payload"]["pay_token"] == MASK

    @pytest.mark.asyncio
    async def test_admin_scope_required(self, client, issue_key):
        headers = await issue_key([SCOPE_PAYMENTS_READ])
        response = await client.get("/api/admin/webhooks", headers=headers)
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_retry_endpoints(self, client, auth, signed_headers):
        body = json.dumps({"order_id": "CKD_NOBODY000000", "status": "SUCCESS"}).encode()
        await client.post("/webhooks/orange-money", content=body, headers=signed_headers("orange-money", body))
        [log] = (await client.get("/api/admin/webhooks", params={"status": "failed"}, headers=auth)).json()["items"]

        retry = await client.post(f"/api/admin/webhooks/{log['id']}/retry", headers=auth)
        assert retry.status_code == 404

        detail = (await client.get(f"/api/admin/webhooks/{log['id']}", headers=auth)).json()
        assert detail["retry_count"] == 1
        assert detail["status"] == "failed"

        bulk = await client.post("/api/admin/webhooks/retry-failed", headers=auth)
        assert bulk.status_code == 200
        assert bulk.json() == {"succeeded": 0, "provider": None, "limit": 50}

    @pytest.mark.asyncio
    async def test_bulk_retry_with_failing_retry(self, app, client, auth, signed_headers):
        body = json.dumps({"order_id": "CKD_NOBODY000000", "status": "SUCCESS"}).encode()
        await client.post("/webhooks/orange-money", content=body, headers=signed_headers("orange-money", body))
        async with app.state.session_factory() as session:
            await session.execute(update(WebhookLogModel).values(next_retry_at=None))
            await session.commit()

        bulk = await client.post("/api/admin/webhooks/retry-failed", headers=auth)
        assert bulk.status_code == 200, bulk.text
        assert bulk.json()["succeeded"] == 0

        [log] = (await client.get("/api/admin/webhooks", params={"status": "failed"}, headers=auth)).json()["items"]
        assert log["retry_count"] == 1
        assert log["next_retry_at"] is not None

    @pytest.mark.asyncio
    async def test_unknown_log(self, client, auth):
        response = await client.get("/api/admin/webhooks/missing", headers=auth)
        assert response.status_code == 404
        assert response.json()["error_code"] == "webhook:log_not_found"
