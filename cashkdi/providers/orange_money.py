"""
Orange Money Web Payment adapter.

The merchant opens a web payment and receives a pay_token plus a payment
URL the customer is redirected to. Orange then notifies the merchant with
the final status.
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
from ..models.status import CANONICAL_TO_TRANSACTION, CanonicalStatus
from ..utils import format_minor_units, parse_major_units
from .base import ProviderAdapter
from .sandbox import SandboxLedger, json_response, not_found

logger = logging.getLogger(__name__)

WEBPAY_PATH = "/orange-money-webpay/v1/webpayment"
STATUS_PATH = "/orange-money-webpay/v1/transactionstatus"


class OrangeMoneyAdapter(ProviderAdapter):
    name = "orange-money"
    payment_method = "mobile_money"
    requires_phone = True

    STATUS_MAP = {
        "successful": CanonicalStatus.COMPLETED,
        "success": CanonicalStatus.COMPLETED,
        "completed": CanonicalStatus.COMPLETED,
        "failed": CanonicalStatus.FAILED,
        "error": CanonicalStatus.FAILED,
        "declined": CanonicalStatus.FAILED,
        "expired": CanonicalStatus.FAILED,
        "cancelled": CanonicalStatus.CANCELLED,
        "canceled": CanonicalStatus.CANCELLED,
        "initiated": CanonicalStatus.PENDING,
        "pending": CanonicalStatus.PENDING,
    }
    reference_fields = ("order_id", "pay_token")
    transaction_id_fields = ("txnid", "transaction_id", "provider_transaction_id")

    def __init__(self, *args, **kwargs):
        self.ledger = SandboxLedger("OM_")
        super().__init__(*args, **kwargs)

    async def create_payment(self, request: ProviderPaymentRequest) -> ProviderPaymentResponse:
        body = {
            "merchant_key": self.settings.api_key,
            "currency": request.currency,
            "order_id": request.reference,
            "amount": format_minor_units(request.amount),
            "return_url": request.return_url,
            "cancel_url": request.return_url,
            "notif_url": request.callback_url,
            "lang": "fr",
            "reference": request.description or request.reference,
            "customer_msisdn": request.phone,
        }
        response = await self._request("create_payment", "POST", WEBPAY_PATH, json_body=body)
        data = self._json(response)

        pay_token = data.get("pay_token")
        if not pay_token:
            raise ProviderError(
                self.name,
                "create_payment",
                "Orange Money response did not include a pay_token",
                upstream_status=response.status_code,
            )

        return ProviderPaymentResponse(
            external_id=pay_token,
            provider_reference=pay_token,
            status=CANONICAL_TO_TRANSACTION[CanonicalStatus.PENDING],
            provider_data={
                "payment_url": data.get("payment_url"),
                "pay_token": pay_token,
                "notif_token": data.get("notif_token"),
            },
        )

    async def get_payment_status(self, provider_reference: str) -> ProviderStatusResponse:
        response = await self._request(
            "get_payment_status",
            "GET",
            f"{STATUS_PATH}/{provider_reference}",
            allow_not_found=True,
        )
        data = self._json(response)
        if response.status_code == 404:
            return ProviderStatusResponse(found=False, raw=data)
        return ProviderStatusResponse(status=self.normalize_status(data.get("status")), raw=data)

    async def cancel_payment(self, provider_reference: str) -> ProviderCancelResponse:
        response = await self._request(
            "cancel_payment", "POST", f"{WEBPAY_PATH}/{provider_reference}/cancel"
        )
        data = self._json(response)
        return ProviderCancelResponse(status=self.normalize_status(data.get("status")), raw=data)

    def get_capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(create=True, cancel=True, refund=False, recurring=False)

    def process_webhook(self, payload: Mapping[str, Any], headers: Mapping[str, str]) -> WebhookEvent:
        raw_status = self._raw_status(payload)
        return WebhookEvent(
            status=self.normalize_status(raw_status),
            raw_status=raw_status,
            provider_reference=payload.get("pay_token"),
            transaction_data=self._transaction_data(payload),
        )

    # ------------------------------------------------------------------
    # Sandbox
    # ------------------------------------------------------------------

    def sandbox_handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path

        if request.method == "POST" and path == WEBPAY_PATH:
            body = json.loads(request.content or b"{}")
            amount = parse_major_units(body.get("amount", "0"))
            if self.ledger.is_server_error(amount):
                return json_response(500, {"message": "Internal error"})
            reason = self.ledger.decline_reason(amount)
            if reason:
                return json_response(400, {"message": reason})
            pay_token = self.ledger.new_id()
            self.ledger.open(pay_token, "INITIATED", order_id=body.get("order_id"), amount=amount)
            return json_response(201, {
                "status": 201,
                "message": "OK",
                "pay_token": pay_token,
                "payment_url": f"https://webpayment-sandbox.orange-money.com/payment/pay_token/{pay_token}",
                "notif_token": self.ledger.new_id().lower(),
            })

        if request.method == "GET" and path.startswith(f"{STATUS_PATH}/"):
            pay_token = path.rsplit("/", 1)[-1]
            record = self.ledger.get(pay_token)
            if record is None:
                return not_found("Unknown pay_token")
            return json_response(200, {
                "status": record["status"],
                "order_id": record.get("order_id"),
                "pay_token": pay_token,
            })

        if request.method == "POST" and path.startswith(f"{WEBPAY_PATH}/") and path.endswith("/cancel"):
            pay_token = path.split("/")[-2]
            record = self.ledger.get(pay_token)
            if record is None:
                return not_found("Unknown pay_token")
            if record["status"] not in ("INITIATED", "PENDING"):
                return json_response(409, {"message": f"Payment already {record['status']}"})
            self.ledger.settle(pay_token, "CANCELLED")
            return json_response(200, {"status": "CANCELLED", "pay_token": pay_token})

        return not_found()
