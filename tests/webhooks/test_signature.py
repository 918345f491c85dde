"""Tests for webhook HMAC signature verification."""

from app.webhooks.signature import WebhookSignatureVerifier, compute_signature

SECRET = "shared-secret"
BODY = b'{"user_id": "abc", "data_structure": "sleep_summary"}'


def test_valid_prefixed_signature_is_accepted():
    verifier = WebhookSignatureVerifier(SECRET)
    assert verifier.verify(BODY, f"sha256={compute_signature(SECRET, BODY)}")


def test_bare_hex_signature_is_accepted():
    verifier = WebhookSignatureVerifier(SECRET)
    assert verifier.verify(BODY, compute_signature(SECRET, BODY).upper())


def test_signature_over_different_bytes_is_rejected():
    verifier = WebhookSignatureVerifier(SECRET)
    signature = compute_signature(SECRET, BODY)
    assert not verifier.verify(BODY + b" ", f"sha256={signature}")


def test_wrong_secret_is_rejected():
    verifier = WebhookSignatureVerifier(SECRET)
    assert not verifier.verify(BODY, f"sha256={compute_signature('other', BODY)}")


def test_missing_or_malformed_header_is_rejected():
    verifier = WebhookSignatureVerifier(SECRET)
    assert not verifier.verify(BODY, None)
    assert not verifier.verify(BODY, "")
    assert not verifier.verify(BODY, "sha256=not-hex")
    assert not verifier.verify(BODY, "sha256=abcd")


def test_missing_secret_fails_closed():
    verifier = WebhookSignatureVerifier("")
    assert not verifier.verify(BODY, f"sha256={compute_signature('', BODY)}")


class TestBypass:
    def test_bypass_accepts_unsigned_outside_production(self):
        verifier = WebhookSignatureVerifier("", bypass=True, production=False)
        assert verifier.bypass
        assert verifier.verify(BODY, None)

    def test_bypass_is_refused_in_production(self):
        verifier = WebhookSignatureVerifier(SECRET, bypass=True, production=True)
        assert not verifier.bypass
        assert not verifier.verify(BODY, None)
