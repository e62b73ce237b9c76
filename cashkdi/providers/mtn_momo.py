"""
MTN Mobile Money (MoMo) Collection adapter.

Request-to-pay is asynchronous: the API answers 202 Accepted and the payer
approves on their handset. The X-Reference-Id we generate is MTN's handle
for the request and becomes the provider reference.
"""
import json
import logging
import uuid
from typing import Any, Dict, Mapping

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
from ..models.status import CanonicalStatus, TransactionStatus
from ..utils import format_minor_units, parse_major_units
from .base import ProviderAdapter
from .sandbox import SandboxLedger, json_response, not_found

logger = logging.getLogger(__name__)

REQUEST_TO_PAY_PATH = "/collection/v1_0/requesttopay"


class MtnMomoAdapter(ProviderAdapter):
    name = "mtn-momo"
    payment_method = "mobile_money"
    requires_phone = True

    STATUS_MAP = {
        "successful": CanonicalStatus.COMPLETED,
        "success": CanonicalStatus.COMPLETED,
        "completed": CanonicalStatus.COMPLETED,
        "failed": CanonicalStatus.FAILED,
        "rejected": CanonicalStatus.FAILED,
        "timeout": CanonicalStatus.FAILED,
        "expired": CanonicalStatus.FAILED,
        "cancelled": CanonicalStatus.CANCELLED,
        "canceled": CanonicalStatus.CANCELLED,
        "pending": CanonicalStatus.PENDING,
        "ongoing": CanonicalStatus.PENDING,
    }
    reference_fields = ("externalId", "referenceId")
    transaction_id_fields = ("financialTransactionId", "transaction_id")

    def __init__(self, *args, **kwargs):
        self.ledger = SandboxLedger("")
        super().__init__(*args, **kwargs)

    def _momo_headers(self) -> Dict[str, str]:
        headers = {"X-Target-Environment": self.settings.target_environment}
        if self.settings.subscription_key:
            headers["Ocp-Apim-Subscription-Key"] = self.settings.subscription_key
        return headers

    async def create_payment(self, request: ProviderPaymentRequest) -> ProviderPaymentResponse:
        reference_id = str(uuid.uuid4())
        body = {
            "amount": format_minor_units(request.amount),
            "currency": request.currency,
            "externalId": request.reference,
            "payer": {"partyIdType": "MSISDN", "partyId": (request.phone or "").lstrip("+")},
            "payerMessage": request.description or request.reference,
            "payeeNote": request.reference,
        }
        headers = {**self._momo_headers(), "X-Reference-Id": reference_id}
        if request.callback_url:
            headers["X-Callback-Url"] = request.callback_url

        response = await self._request(
            "create_payment", "POST", REQUEST_TO_PAY_PATH, json_body=body, headers=headers
        )
        if response.status_code != 202:
            raise ProviderError(
                self.name,
                "create_payment",
                f"Unexpected answer to request-to-pay: {response.status_code}",
                upstream_status=response.status_code,
            )

        return ProviderPaymentResponse(
            external_id=reference_id,
            provider_reference=reference_id,
            status=TransactionStatus.PENDING,
            provider_data={"reference_id": reference_id, "target_environment": self.settings.target_environment},
        )

    async def get_payment_status(self, provider_reference: str) -> ProviderStatusResponse:
        response = await self._request(
            "get_payment_status",
            "GET",
            f"{REQUEST_TO_PAY_PATH}/{provider_reference}",
            headers=self._momo_headers(),
            allow_not_found=True,
        )
        data = self._json(response)
        if response.status_code == 404:
            return ProviderStatusResponse(found=False, raw=data)
        return ProviderStatusResponse(status=self.normalize_status(data.get("status")), raw=data)

    async def cancel_payment(self, provider_reference: str) -> ProviderCancelResponse:
        raise ProviderError(
            self.name,
            "cancel_payment",
            "MTN MoMo does not support cancelling a request-to-pay",
            error_code="provider:unsupported_operation",
        )

    def get_capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(create=True, cancel=False, refund=False, recurring=False)

    def process_webhook(self, payload: Mapping[str, Any], headers: Mapping[str, str]) -> WebhookEvent:
        raw_status = self._raw_status(payload)
        reference_id = payload.get("referenceId") or next(
            (v for k, v in headers.items() if k.lower() == "x-reference-id"), None
        )
        transaction_data = self._transaction_data(payload)
        # MoMo sends amounts as major-unit strings ("100.50")
        if transaction_data is not None and transaction_data.amount is None and payload.get("amount"):
            try:
                transaction_data.amount = parse_major_units(str(payload["amount"]))
            except ValueError:
                logger.warning(f"Unparseable MoMo amount in callback: {payload['amount']!r}")
        return WebhookEvent(
            status=self.normalize_status(raw_status),
            raw_status=raw_status,
            provider_reference=reference_id,
            transaction_data=transaction_data,
        )

    # ------------------------------------------------------------------
    # Sandbox
    # ------------------------------------------------------------------

    def sandbox_handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path

        if request.method == "POST" and path == REQUEST_TO_PAY_PATH:
            reference_id = request.headers.get("X-Reference-Id")
            if not reference_id:
                return json_response(400, {"code": "INVALID_REFERENCE_ID", "message": "Missing X-Reference-Id"})
            body = json.loads(request.content or b"{}")
            amount = parse_major_units(body.get("amount", "0"))
            if self.ledger.is_server_error(amount):
                return json_response(500, {"code": "INTERNAL_PROCESSING_ERROR", "message": "Internal error"})
            reason = self.ledger.decline_reason(amount)
            self.ledger.open(
                reference_id,
                "FAILED" if reason else "PENDING",
                externalId=body.get("externalId"),
                amount=body.get("amount"),
                currency=body.get("currency"),
                reason=reason,
            )
            return json_response(202)

        if request.method == "GET" and path.startswith(f"{REQUEST_TO_PAY_PATH}/"):
            reference_id = path.rsplit("/", 1)[-1]
            record = self.ledger.get(reference_id)
            if record is None:
                return json_response(404, {"code": "RESOURCE_NOT_FOUND", "message": "Requested resource was not found."})
            data = {
                "status": record["status"],
                "externalId": record.get("externalId"),
                "amount": record.get("amount"),
                "currency": record.get("currency"),
            }
            if record.get("reason"):
                data["reason"] = record["reason"]
            if record["status"] == "SUCCESSFUL":
                data["financialTransactionId"] = reference_id.replace("-", "")[:10]
            return json_response(200, data)

        return not_found()
