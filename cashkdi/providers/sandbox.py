"""
Sandbox Provider Ledger

Simulates provider-side payment state for adapters running in test mode.
Deterministic test scenarios are driven by the amount:

- 99_900 minor units: declined, insufficient funds
- 99_800 minor units: declined, payer not found
- 99_700 minor units: provider error (HTTP 500)

Every other payment is accepted and stays pending until a webhook or a
manual `settle` call moves it.
"""
import uuid
from typing import Any, Dict, Optional

import httpx

DECLINE_AMOUNTS: Dict[int, str] = {
    99_900: "insufficient_funds",
    99_800: "payer_not_found",
}
SERVER_ERROR_AMOUNT = 99_700


class SandboxLedger:
    """In-memory record of sandbox payments, one per adapter instance."""

    def __init__(self, prefix: str):
        self.prefix = prefix
        self._payments: Dict[str, Dict[str, Any]] = {}

    def new_id(self) -> str:
        return f"{self.prefix}{uuid.uuid4().hex[:16].upper()}"

    def decline_reason(self, amount_minor: int) -> Optional[str]:
        return DECLINE_AMOUNTS.get(amount_minor)

    def is_server_error(self, amount_minor: int) -> bool:
        return amount_minor == SERVER_ERROR_AMOUNT

    def open(self, provider_reference: str, status: str, **data: Any) -> Dict[str, Any]:
        record = {"status": status, **data}
        self._payments[provider_reference] = record
        return record

    def get(self, provider_reference: str) -> Optional[Dict[str, Any]]:
        return self._payments.get(provider_reference)

    def settle(self, provider_reference: str, status: str) -> None:
        """Move a sandbox payment to a new provider status (test helper)."""
        if provider_reference in self._payments:
            self._payments[provider_reference]["status"] = status


def json_response(status_code: int, data: Optional[Dict[str, Any]] = None) -> httpx.Response:
    if data is None:
        return httpx.Response(status_code)
    return httpx.Response(status_code, json=data)


def not_found(message: str = "Resource not found") -> httpx.Response:
    return json_response(404, {"message": message})
