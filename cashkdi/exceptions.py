"""
Cashkdi Exception Hierarchy

Stable error codes returned to API clients and payment providers.
Every error carries the HTTP status the API layer answers with.
"""
from typing import Optional, Dict, Any


class CashkdiError(Exception):
    """
    Base exception for all payment orchestration errors.

    Serialized by the API layer as {"error_code", "message", "details"}.
    """

    status_code: int = 400

    def __init__(
        self,
        error_code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to API error response format."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details
        }


class ConfigurationError(CashkdiError):
    """
    Missing or invalid provider credentials or secrets.

    Fatal at startup when detected by the provider registry.
    """

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("configuration_error", message, details)


class UnknownProviderError(CashkdiError):
    """Provider name not registered."""

    status_code = 404

    def __init__(self, provider: str):
        super().__init__(
            "provider:unknown",
            f"Payment provider '{provider}' is not registered",
            {"provider": provider}
        )
        self.provider = provider


class InvalidStateTransitionError(CashkdiError):
    """
    Status change not allowed by the lifecycle graph.

    Examples:
    - success -> failed
    - canceling an expired transaction
    """

    status_code = 409

    def __init__(self, current: str, target: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            "payment:invalid_transition",
            f"Cannot change status from {current} to {target}",
            {"current_status": current, "target_status": target, **(details or {})}
        )
        self.current = current
        self.target = target


class DuplicateReferenceError(CashkdiError):
    """Could not allocate a unique payment reference."""

    status_code = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:duplicate_reference", message, details)


class PaymentValidationError(CashkdiError):
    """
    Payment request rejected before reaching the provider.

    Examples:
    - Currency not supported by the provider
    - Amount outside provider limits
    - Phone number format invalid for the operator
    """

    status_code = 422

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:validation_failed", message, details)


class PaymentNotFoundError(CashkdiError):
    """No transaction with the given reference."""

    status_code = 404

    def __init__(self, reference: str):
        super().__init__(
            "payment:not_found",
            f"No payment found with reference: {reference}",
            {"reference": reference}
        )


class ProviderError(CashkdiError):
    """
    Upstream provider failure.

    Carries the provider, the adapter operation and the upstream status so the
    caller can decide between failing the transaction and retrying later.
    """

    status_code = 502
    ambiguous = False

    def __init__(
        self,
        provider: str,
        operation: str,
        message: str,
        upstream_status: Optional[int] = None,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None,
        error_code: str = "provider:error",
    ):
        super().__init__(
            error_code,
            message,
            {
                "provider": provider,
                "operation": operation,
                "upstream_status": upstream_status,
                **(details or {}),
            }
        )
        self.provider = provider
        self.operation = operation
        self.upstream_status = upstream_status
        self.retryable = retryable


class ProviderTimeoutError(ProviderError):
    """
    Provider did not answer in time.

    The outcome on the provider side is unknown: the transaction stays pending
    and is reconciled by status sync, never retried automatically.
    """

    status_code = 504
    ambiguous = True

    def __init__(self, provider: str, operation: str, message: str):
        super().__init__(
            provider,
            operation,
            message,
            retryable=True,
            error_code="provider:timeout",
        )


class SignatureVerificationError(CashkdiError):
    """
    Webhook signature verification failed.

    Examples:
    - Signature header missing
    - HMAC does not match the raw body
    - Timestamp outside the tolerance window
    """

    status_code = 401

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("webhook:signature_invalid", message, details)


class WebhookPayloadError(CashkdiError):
    """Webhook body is not a JSON object."""

    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("webhook:payload_invalid", message, details)


class WebhookReferenceNotFoundError(CashkdiError):
    """
    Webhook could not be matched to a transaction.

    Retryable: the transaction may not be committed yet when an eager
    provider calls back.
    """

    status_code = 404

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("webhook:reference_not_found", message, details)


class WebhookRetryError(CashkdiError):
    """Webhook log is not in a retryable state."""

    status_code = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("webhook:retry_rejected", message, details)


class WebhookLogNotFoundError(CashkdiError):
    status_code = 404

    def __init__(self, log_id: str):
        super().__init__(
            "webhook:log_not_found",
            f"No webhook log found with ID: {log_id}",
            {"webhook_log_id": log_id}
        )


class AuthenticationError(CashkdiError):
    """API key missing, unknown, expired or revoked."""

    status_code = 401

    def __init__(self, message: str = "Invalid or expired API key"):
        super().__init__("auth:unauthenticated", message)


class PermissionDeniedError(CashkdiError):
    """API key lacks the scope required by the route."""

    status_code = 403

    def __init__(self, scope: str):
        super().__init__(
            "auth:insufficient_scope",
            "Insufficient permissions",
            {"required_scope": scope}
        )


class RateLimitExceededError(CashkdiError):
    status_code = 429

    def __init__(self, key_id: str, limit: int):
        super().__init__(
            "auth:rate_limited",
            "Rate limit exceeded",
            {"key_id": key_id, "limit": limit}
        )
