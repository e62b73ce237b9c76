"""
Card processor adapter.

Hosted-checkout style: the processor returns a checkout URL, the card holder
pays there and the processor calls back with the outcome. Amounts are sent
as integer minor units.
"""
import json
import logging
from typing import Any, Mapping

import httpx

from ..exceptions import ProviderError
from ..models.providers import (
    ProviderCancelResponse,
    ProviderCapabilities,
    ProviderPaymentRequest,
    ProviderPaymentResponse,
    ProviderStatusResponse,
    WebhookEvent,
)
from ..models.status import CANONICAL_TO_TRANSACTION, CanonicalStatus, TransactionStatus
from .base import ProviderAdapter
from .sandbox import SandboxLedger, json_response, not_found

logger = logging.getLogger(__name__)

PAYMENTS_PATH = "/v1/payments"

# Processor states meaning "accepted, waiting for the card holder or capture"
_PROCESSING_STATES = {"processing", "authorized", "requires_action"}


class CardsAdapter(ProviderAdapter):
    name = "cards"
    payment_method = "card"
    requires_phone = False

    STATUS_MAP = {
        "succeeded": CanonicalStatus.COMPLETED,
        "captured": CanonicalStatus.COMPLETED,
        "paid": CanonicalStatus.COMPLETED,
        "completed": CanonicalStatus.COMPLETED,
        "success": CanonicalStatus.COMPLETED,
        "failed": CanonicalStatus.FAILED,
        "declined": CanonicalStatus.FAILED,
        "expired": CanonicalStatus.FAILED,
        "canceled": CanonicalStatus.CANCELLED,
        "cancelled": CanonicalStatus.CANCELLED,
        "voided": CanonicalStatus.CANCELLED,
        "pending": CanonicalStatus.PENDING,
        "processing": CanonicalStatus.PENDING,
        "authorized": CanonicalStatus.PENDING,
        "requires_action": CanonicalStatus.PENDING,
    }
    reference_fields = ("order_reference", "payment_id")
    transaction_id_fields = ("charge_id", "transaction_id", "provider_transaction_id")

    def __init__(self, *args, **kwargs):
        self.ledger = SandboxLedger("pay_")
        super().__init__(*args, **kwargs)

    async def create_payment(self, request: ProviderPaymentRequest) -> ProviderPaymentResponse:
        body = {
            "amount": request.amount,
            "currency": request.currency,
            "reference": request.reference,
            "description": request.description,
            "customer_email": request.email,
            "return_url": request.return_url,
            "webhook_url": request.callback_url,
            "metadata": request.metadata,
        }
        response = await self._request("create_payment", "POST", PAYMENTS_PATH, json_body=body)
        data = self._json(response)

        payment_id = data.get("id")
        if not payment_id:
            raise ProviderError(
                self.name,
                "create_payment",
                "Card processor response did not include a payment id",
                upstream_status=response.status_code,
            )

        raw_status = str(data.get("status") or "pending").lower()
        if raw_status in _PROCESSING_STATES:
            status = TransactionStatus.PROCESSING
        else:
            status = CANONICAL_TO_TRANSACTION[self.normalize_status(raw_status)]

        return ProviderPaymentResponse(
            external_id=payment_id,
            provider_reference=payment_id,
            status=status,
            provider_data={"payment_url": data.get("checkout_url"), "processor_status": raw_status},
        )

    async def get_payment_status(self, provider_reference: str) -> ProviderStatusResponse:
        response = await self._request(
            "get_payment_status", "GET", f"{PAYMENTS_PATH}/{provider_reference}", allow_not_found=True
        )
        data = self._json(response)
        if response.status_code == 404:
            return ProviderStatusResponse(found=False, raw=data)
        return ProviderStatusResponse(status=self.normalize_status(data.get("status")), raw=data)

    async def cancel_payment(self, provider_reference: str) -> ProviderCancelResponse:
        response = await self._request("cancel_payment", "POST", f"{PAYMENTS_PATH}/{provider_reference}/cancel")
        data = self._json(response)
        return ProviderCancelResponse(status=self.normalize_status(data.get("status")), raw=data)

    def get_capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(create=True, cancel=True, refund=True, recurring=True)

    def process_webhook(self, payload: Mapping[str, Any], headers: Mapping[str, str]) -> WebhookEvent:
        # Processor events wrap the payment object: {"type": ..., "data": {...}}
        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        raw_status = self._raw_status(data)
        return WebhookEvent(
            status=self.normalize_status(raw_status),
            raw_status=raw_status,
            provider_reference=data.get("id") or data.get("payment_id"),
            transaction_data=self._transaction_data(data),
        )

    # ------------------------------------------------------------------
    # Sandbox
    # ------------------------------------------------------------------

    def sandbox_handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path

        if request.method == "POST" and path == PAYMENTS_PATH:
            body = json.loads(request.content or b"{}")
            amount = int(body.get("amount") or 0)
            if self.ledger.is_server_error(amount):
                return json_response(503, {"error": "processor_unavailable"})
            reason = self.ledger.decline_reason(amount)
            if reason:
                return json_response(402, {"error": "card_declined", "reason": reason})
            payment_id = self.ledger.new_id().lower()
            self.ledger.open(payment_id, "requires_action", reference=body.get("reference"), amount=amount)
            return json_response(201, {
                "id": payment_id,
                "status": "requires_action",
                "amount": amount,
                "currency": body.get("currency"),
                "checkout_url": f"https://checkout.cards.example.com/pay/{payment_id}",
            })

        if request.method == "GET" and path.startswith(f"{PAYMENTS_PATH}/"):
            payment_id = path.rsplit("/", 1)[-1]
            record = self.ledger.get(payment_id)
            if record is None:
                return not_found("No such payment")
            return json_response(200, {"id": payment_id, **record})

        if request.method == "POST" and path.startswith(f"{PAYMENTS_PATH}/") and path.endswith("/cancel"):
            payment_id = path.split("/")[-2]
            record = self.ledger.get(payment_id)
            if record is None:
                return not_found("No such payment")
            if record["status"] not in ("requires_action", "authorized", "processing"):
                return json_response(409, {"error": f"payment is {record['status']}"})
            self.ledger.settle(payment_id, "canceled")
            return json_response(200, {"id": payment_id, "status": "canceled"})

        return not_found()
