"""Tests for webhook signature verification and outbound request signing."""
import hashlib
import hmac
import time
from datetime import datetime, timedelta

import pytest

from cashkdi.config import ProviderSettings, WebhookSettings
from cashkdi.exceptions import ConfigurationError, SignatureVerificationError
from cashkdi.services.signature_service import SignatureVerifier, compute_hmac

BODY = b'{"reference":"CKD_ABCDEF123456","status":"SUCCESS","amount":10000}'


@pytest.fixture
def verifier() -> SignatureVerifier:
    providers = {
        "orange-money": ProviderSettings(webhook_secret="om-secret", api_secret="om-api-secret"),
        "mtn-momo": ProviderSettings(webhook_secret="mtn-secret"),
        "cards": ProviderSettings(webhook_secret=None),
    }
    return SignatureVerifier(providers, WebhookSettings(tolerance_seconds=300))


@pytest.mark.unit
class TestVerify:
    def test_round_trip(self, verifier):
        signature = verifier.sign_payload("orange-money", BODY)
        assert verifier.verify("orange-money", BODY, signature)

    def test_single_byte_mutation_fails(self, verifier):
        signature = verifier.sign_payload("orange-money", BODY)
        for index in (0, len(BODY) // 2, len(BODY) - 1):
            mutated = bytearray(BODY)
            mutated[index] ^= 0x01
            assert not verifier.verify("orange-money", bytes(mutated), signature)

    def test_reserialized_json_does_not_match(self, verifier):
        signature = verifier.sign_payload("orange-money", BODY)
        reserialized = BODY.replace(b",", b", ")
        assert not verifier.verify("orange-money", reserialized, signature)

    def test_secret_is_per_provider(self, verifier):
        signature = verifier.sign_payload("orange-money", BODY)
        assert not verifier.verify("mtn-momo", BODY, signature)

    def test_empty_signature_is_rejected(self, verifier):
        assert not verifier.verify("orange-money", BODY, "")
        assert not verifier.verify("orange-money", BODY, None)

    def test_non_ascii_signature_is_rejected(self, verifier):
        assert not verifier.verify("orange-money", BODY, "caf\u00e9")
        assert not verifier.verify_api_response_signature("orange-money", BODY, "caf\u00e9")

    def test_missing_secret_is_configuration_error(self, verifier):
        with pytest.raises(ConfigurationError):
            verifier.verify("cards", BODY, "abc")

    def test_unknown_provider_is_configuration_error(self, verifier):
        with pytest.raises(ConfigurationError):
            verifier.sign_payload("paypal", BODY)


@pytest.mark.unit
class TestVerifyWebhook:
    def test_accepts_provider_header_case_insensitively(self, verifier):
        signature = verifier.sign_payload("orange-money", BODY)
        headers = {"x-orange-signature": signature}
        assert verifier.verify_webhook("orange-money", BODY, headers) == signature

    def test_wrong_header_name_counts_as_missing(self, verifier):
        signature = verifier.sign_payload("orange-money", BODY)
        with pytest.raises(SignatureVerificationError) as exc_info:
            verifier.verify_webhook("orange-money", BODY, {"X-Signature": signature})
        assert "Missing" in exc_info.value.message

    def test_invalid_signature(self, verifier):
        with pytest.raises(SignatureVerificationError):
            verifier.verify_webhook("mtn-momo", BODY, {"X-MTN-Signature": "0" * 64})

    def test_missing_secret_checked_before_header(self, verifier):
        with pytest.raises(ConfigurationError):
            verifier.verify_webhook("cards", BODY, {})

    def test_timestamp_outside_window(self, verifier):
        signature = verifier.sign_payload("orange-money", BODY)
        stale = int(time.time()) - 600
        headers = {"X-Orange-Signature": signature, "X-Webhook-Timestamp": str(stale)}
        with pytest.raises(SignatureVerificationError) as exc_info:
            verifier.verify_webhook("orange-money", BODY, headers)
        assert exc_info.value.details["tolerance_seconds"] == 300

    def test_check_timestamp_uses_given_clock(self, verifier):
        sent = datetime(2026, 1, 1, 12, 0, 0)
        epoch = int((sent - datetime(1970, 1, 1)).total_seconds())
        headers = {"X-Webhook-Timestamp": str(epoch)}
        verifier.check_timestamp(headers, now=sent + timedelta(seconds=299))
        with pytest.raises(SignatureVerificationError):
            verifier.check_timestamp(headers, now=sent + timedelta(seconds=301))

    def test_garbage_timestamp(self, verifier):
        with pytest.raises(SignatureVerificationError):
            verifier.check_timestamp({"X-Webhook-Timestamp": "yesterday"})


@pytest.mark.unit
class TestSign:
    def test_canonical_string(self, verifier):
        body = '{"amount":"100.00"}'
        expected = hmac.new(
            b"om-api-secret",
            b"POST\n/orange-money-webpay/v1/webpayment\n" + body.encode(),
            hashlib.sha256,
        ).hexdigest()
        assert verifier.sign("orange-money", "post", "/orange-money-webpay/v1/webpayment", body) == expected

    def test_sign_requires_api_secret(self, verifier):
        with pytest.raises(ConfigurationError):
            verifier.sign("mtn-momo", "GET", "/collection/v1_0/requesttopay/x", "")

    def test_response_signature_skipped_without_api_secret(self, verifier):
        assert verifier.verify_api_response_signature("mtn-momo", BODY, "anything")

    def test_response_signature_checked_with_api_secret(self, verifier):
        good = compute_hmac("om-api-secret", BODY)
        assert verifier.verify_api_response_signature("orange-money", BODY, good)
        assert not verifier.verify_api_response_signature("orange-money", BODY, "bad")
