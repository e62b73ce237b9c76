"""
Signature Service for Provider Webhooks and API Calls

Implements HMAC-SHA256 signature generation and verification per provider.
Webhook signatures are always computed over the raw request body bytes,
never over re-serialized JSON.
"""
import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Dict, Mapping, Optional

from ..config import ProviderSettings, WebhookSettings
from ..exceptions import ConfigurationError, SignatureVerificationError
from ..utils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_SIGNATURE_HEADER = "X-Signature"

SIGNATURE_HEADERS: Dict[str, str] = {
    "orange-money": "X-Orange-Signature",
    "mtn-momo": "X-MTN-Signature",
    "cards": "X-Webhook-Signature",
}


def compute_hmac(secret: str, message: bytes) -> str:
    """HMAC-SHA256 hex digest of message."""
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def _as_bytes(body) -> bytes:
    if isinstance(body, bytes):
        return body
    return body.encode("utf-8")


def signatures_match(expected: str, received: Optional[str]) -> bool:
    """Constant-time comparison that tolerates non-ASCII header values."""
    if not received:
        return False
    candidate = received.strip().lower().encode("utf-8", "surrogateescape")
    return hmac.compare_digest(expected.encode("ascii"), candidate)


class SignatureVerifier:
    """
    Signs outbound provider requests and verifies inbound webhooks.

    Secrets come from each provider's settings. A provider without a
    configured secret is a configuration error, never a silent pass.
    """

    def __init__(self, providers: Mapping[str, ProviderSettings], webhooks: WebhookSettings):
        self._providers = providers
        self._webhooks = webhooks

    def _provider_settings(self, provider: str) -> ProviderSettings:
        provider_settings = self._providers.get(provider)
        if provider_settings is None:
            raise ConfigurationError(
                f"No configuration for provider: {provider}",
                {"provider": provider}
            )
        return provider_settings

    def webhook_secret(self, provider: str) -> str:
        secret = self._provider_settings(provider).webhook_secret
        if not secret:
            raise ConfigurationError(
                f"Webhook secret not configured for provider: {provider}",
                {"provider": provider}
            )
        return secret

    def api_secret(self, provider: str) -> str:
        secret = self._provider_settings(provider).api_secret
        if not secret:
            raise ConfigurationError(
                f"API secret not configured for provider: {provider}",
                {"provider": provider}
            )
        return secret

    # ------------------------------------------------------------------
    # Inbound webhooks
    # ------------------------------------------------------------------

    @staticmethod
    def signature_header(provider: str) -> str:
        return SIGNATURE_HEADERS.get(provider, DEFAULT_SIGNATURE_HEADER)

    def extract_signature(self, provider: str, headers: Mapping[str, str]) -> str:
        """Read the provider's signature header (header names are case-insensitive)."""
        wanted = self.signature_header(provider).lower()
        for name, value in headers.items():
            if name.lower() == wanted:
                return value or ""
        return ""

    def sign_payload(self, provider: str, raw_body) -> str:
        """Signature a provider would send for this body."""
        return compute_hmac(self.webhook_secret(provider), _as_bytes(raw_body))

    def verify(self, provider: str, raw_body: bytes, header_signature: Optional[str]) -> bool:
        """
        Verify a webhook signature using constant-time comparison.

        Returns:
            True if the signature matches the exact body bytes

        Raises:
            ConfigurationError: no webhook secret for the provider
        """
        expected = compute_hmac(self.webhook_secret(provider), _as_bytes(raw_body))
        return signatures_match(expected, header_signature)

    def check_timestamp(self, headers: Mapping[str, str], now: Optional[datetime] = None) -> None:
        """
        Reject callbacks whose timestamp header is outside the tolerance window.

        Providers that send no timestamp header are not checked.
        """
        tolerance = self._webhooks.tolerance_seconds
        if tolerance <= 0:
            return
        wanted = self._webhooks.timestamp_header.lower()
        raw = next((v for k, v in headers.items() if k.lower() == wanted), None)
        if raw is None:
            return
        try:
            sent_at = datetime.fromtimestamp(int(raw), timezone.utc).replace(tzinfo=None)
        except (TypeError, ValueError, OverflowError, OSError):
            raise SignatureVerificationError("Invalid webhook timestamp", {"timestamp": raw})
        skew = abs(((now or utcnow()) - sent_at).total_seconds())
        if skew > tolerance:
            raise SignatureVerificationError(
                "Webhook timestamp outside tolerance window",
                {"skew_seconds": int(skew), "tolerance_seconds": tolerance}
            )

    def verify_webhook(self, provider: str, raw_body: bytes, headers: Mapping[str, str]) -> str:
        """
        Full inbound check: timestamp window, then HMAC over the raw body.

        Returns:
            The signature that was verified

        Raises:
            SignatureVerificationError: signature missing or invalid
            ConfigurationError: no webhook secret for the provider
        """
        self.webhook_secret(provider)
        signature = self.extract_signature(provider, headers)
        if not signature:
            raise SignatureVerificationError(
                "Missing webhook signature",
                {"provider": provider, "header": self.signature_header(provider)}
            )
        self.check_timestamp(headers)
        if not self.verify(provider, raw_body, signature):
            logger.warning(f"Invalid webhook signature from provider={provider}")
            raise SignatureVerificationError("Invalid webhook signature", {"provider": provider})
        return signature

    # ------------------------------------------------------------------
    # Outbound API calls
    # ------------------------------------------------------------------

    def sign(self, provider: str, method: str, path: str, body) -> str:
        """
        Sign an outbound API request.

        String to sign: UPPER(method) + "\\n" + path + "\\n" + body
        """
        string_to_sign = f"{method.upper()}\n{path}\n".encode("utf-8") + _as_bytes(body)
        return compute_hmac(self.api_secret(provider), string_to_sign)

    def verify_api_response_signature(self, provider: str, raw_body: bytes, signature: str) -> bool:
        """Verify a signed provider response; skipped when no API secret is configured."""
        secret = self._provider_settings(provider).api_secret
        if not secret:
            return True
        return signatures_match(compute_hmac(secret, _as_bytes(raw_body)), signature)
