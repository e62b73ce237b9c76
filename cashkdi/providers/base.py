"""
Payment provider adapter interface.

Every provider (Orange Money, MTN MoMo, cards) implements ProviderAdapter.
Adapters translate the canonical request/response models to the provider's
wire format and back. They never touch the database.
"""
import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional, Set, Tuple

import httpx

from ..config import ProviderSettings
from ..exceptions import ProviderError, ProviderTimeoutError
from ..models.providers import (
    ProviderCancelResponse,
    ProviderCapabilities,
    ProviderPaymentRequest,
    ProviderPaymentResponse,
    ProviderStatusResponse,
    ProviderTransactionData,
    WebhookEvent,
)
from ..models.status import CanonicalStatus
from ..services.signature_service import SignatureVerifier
from ..utils import coerce_minor_units

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Signature"

# Methods a registered adapter must implement
INTERFACE_METHODS: Tuple[str, ...] = (
    "create_payment",
    "get_payment_status",
    "cancel_payment",
    "validate_phone_number",
    "get_supported_currencies",
    "get_capabilities",
    "process_webhook",
)


class ProviderAdapter(ABC):
    """
    Abstract base class for payment provider adapters.

    Subclasses declare:
    - name: provider identifier used in routes and configuration
    - payment_method: value recorded on Payment attempts
    - STATUS_MAP: lowercase provider status -> canonical status
    - reference_fields: payload fields that may carry our reference,
      checked after the generic candidates
    """

    name: str = ""
    payment_method: str = "mobile_money"
    requires_phone: bool = True
    STATUS_MAP: Dict[str, CanonicalStatus] = {}
    reference_fields: Tuple[str, ...] = ()
    transaction_id_fields: Tuple[str, ...] = ("transaction_id", "provider_transaction_id")

    def __init__(
        self,
        settings: ProviderSettings,
        signer: SignatureVerifier,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        self.signer = signer
        self._client = http_client or self._build_client()
        if settings.phone_country_codes:
            codes = "|".join(re.escape(code) for code in settings.phone_country_codes)
            self._phone_pattern = re.compile(rf"^\+({codes})\d{{8}}$")
        else:
            self._phone_pattern = re.compile(r"^\+\d{8,15}$")

    def _build_client(self) -> httpx.AsyncClient:
        """
        HTTP client bound to the provider's base URL and timeout.

        In test mode requests never leave the process: they are answered by
        the adapter's sandbox handler.
        """
        transport = httpx.MockTransport(self.sandbox_handler) if self.settings.test_mode else None
        return httpx.AsyncClient(
            base_url=self.settings.api_url,
            timeout=self.settings.timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Interface
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_payment(self, request: ProviderPaymentRequest) -> ProviderPaymentResponse:
        """
        Initiate a payment with the provider.

        Raises:
            ProviderError: definitive rejection
            ProviderTimeoutError: outcome unknown
        """

    @abstractmethod
    async def get_payment_status(self, provider_reference: str) -> ProviderStatusResponse:
        """Poll the provider; an unknown reference returns found=False."""

    @abstractmethod
    async def cancel_payment(self, provider_reference: str) -> ProviderCancelResponse:
        """Cancel a non-terminal payment, when the provider supports it."""

    @abstractmethod
    def get_capabilities(self) -> ProviderCapabilities:
        ...

    @abstractmethod
    def process_webhook(self, payload: Mapping[str, Any], headers: Mapping[str, str]) -> WebhookEvent:
        """Normalize a callback into canonical fields. Pure: no side effects."""

    @abstractmethod
    def sandbox_handler(self, request: httpx.Request) -> httpx.Response:
        """Simulated provider used when test_mode is on."""

    def validate_phone_number(self, phone: str) -> bool:
        if not self.requires_phone:
            return True
        return bool(phone) and bool(self._phone_pattern.match(phone))

    def get_supported_currencies(self) -> Set[str]:
        return {currency.upper() for currency in self.settings.currencies}

    @property
    def signature_header(self) -> str:
        """Header carrying this provider's webhook signature."""
        return self.signer.signature_header(self.name)

    def normalize_status(self, raw_status: Optional[str]) -> CanonicalStatus:
        """
        Map provider wording to the canonical taxonomy (case-insensitive).

        Unknown statuses are treated as pending: providers add transient
        states without notice and those must not break processing.
        """
        if not raw_status:
            return CanonicalStatus.PENDING
        return self.STATUS_MAP.get(str(raw_status).strip().lower(), CanonicalStatus.PENDING)

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def _auth_headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.settings.api_key:
            headers["Authorization"] = f"Bearer {self.settings.api_key}"
        return headers

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        json_body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        allow_not_found: bool = False,
    ) -> httpx.Response:
        """
        Send a request to the provider and map failures to ProviderError.

        When an API secret is configured the body is signed over
        METHOD, URL path and body, and sent in X-Signature. A response
        carrying X-Signature must match HMAC(api_secret, response body).
        """
        body = json.dumps(json_body, separators=(",", ":")) if json_body is not None else ""
        request_headers = {**self._auth_headers(), **(headers or {})}
        if body:
            request_headers["Content-Type"] = "application/json"

        request = self._client.build_request(
            method, path, content=body.encode("utf-8") if body else None, headers=request_headers
        )
        if self.settings.api_secret:
            request.headers[SIGNATURE_HEADER] = self.signer.sign(self.name, method, request.url.path, body)

        try:
            response = await self._client.send(request)
        except httpx.TimeoutException as exc:
            logger.warning(f"{self.name} {operation} timed out: {exc}")
            raise ProviderTimeoutError(self.name, operation, f"{self.name} did not answer in time")
        except httpx.TransportError as exc:
            logger.warning(f"{self.name} {operation} transport error: {exc}")
            raise ProviderError(
                self.name,
                operation,
                f"Could not reach {self.name}: {exc}",
                retryable=True,
            )

        if allow_not_found and response.status_code == 404:
            return response

        if response.status_code >= 400:
            raise ProviderError(
                self.name,
                operation,
                self._error_message(response),
                upstream_status=response.status_code,
                retryable=response.status_code >= 500,
            )

        response_signature = response.headers.get(SIGNATURE_HEADER)
        if response_signature is not None and not self.signer.verify_api_response_signature(
            self.name, response.content, response_signature
        ):
            logger.warning(f"{self.name} {operation} response failed signature verification")
            raise ProviderError(
                self.name,
                operation,
                f"{self.name} response signature is invalid",
                upstream_status=response.status_code,
                error_code="provider:invalid_response_signature",
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError:
            return {"body": response.text}
        return data if isinstance(data, dict) else {"data": data}

    def _error_message(self, response: httpx.Response) -> str:
        data = self._json(response)
        detail = data.get("message") or data.get("reason") or data.get("error") or response.reason_phrase
        return f"{self.name} rejected the request ({response.status_code}): {detail}"

    def _transaction_data(self, payload: Mapping[str, Any]) -> Optional[ProviderTransactionData]:
        payment_id = next(
            (str(payload[field]) for field in self.transaction_id_fields if payload.get(field)),
            None,
        )
        if payment_id is None:
            return None
        amount = coerce_minor_units(payload.get("amount"))
        fees = coerce_minor_units(payload.get("fees")) or 0
        return ProviderTransactionData(
            provider_payment_id=payment_id,
            type=str(payload.get("transaction_type") or "payment"),
            amount=amount,
            currency=payload.get("currency"),
            fees=fees,
        )

    @staticmethod
    def _raw_status(payload: Mapping[str, Any]) -> Optional[str]:
        value = payload.get("status") or payload.get("transaction_status")
        return str(value) if value is not None else None
