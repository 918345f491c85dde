"""HMAC signature verification for inbound provider webhooks."""

from __future__ import annotations

import hashlib
import hmac
import re

from loguru import logger

from app.config.settings import Settings

SIGNATURE_HEADER = "X-ROOK-HASH"
SIGNATURE_PREFIX = "sha256="

_HEX_DIGEST = re.compile(r"^[0-9a-fA-F]{64}$")


def compute_signature(secret: str, raw_body: bytes) -> str:
    """HMAC-SHA256 hex digest of the exact request bytes."""
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


class WebhookSignatureVerifier:
    """Verify the ``X-ROOK-HASH`` header against the raw request body.

    Fails closed: without a configured secret, or with a missing/malformed
    header, verification returns False. ``bypass`` accepts every request and
    exists for local development only; it is refused in production.
    """

    def __init__(self, secret: str, *, bypass: bool = False, production: bool = True) -> None:
        self._secret = secret
        if bypass and production:
            logger.error("[WEBHOOK_SIGNATURE] Signature bypass requested in production; ignoring it")
            bypass = False
        elif bypass:
            logger.warning("[WEBHOOK_SIGNATURE] Signature verification BYPASSED (non-production only)")
        self.bypass = bypass

    @classmethod
    def from_settings(cls, settings: Settings) -> WebhookSignatureVerifier:
        return cls(
            settings.rook_secret_hash_key,
            bypass=settings.webhook_signature_bypass,
            production=settings.is_production,
        )

    def verify(self, raw_body: bytes, provided_signature_header: str | None) -> bool:
        """Return True when the header carries a valid signature for ``raw_body``.

        Args:
            raw_body: Request body exactly as received
            provided_signature_header: ``sha256=<hex>`` or a bare hex digest

        Returns:
            True if signature is valid (or bypass is active), False otherwise
        """
        if self.bypass:
            return True

        if not self._secret:
            logger.error("[WEBHOOK_SIGNATURE] Secret not configured; rejecting webhook")
            return False

        if not provided_signature_header:
            logger.warning(f"[WEBHOOK_SIGNATURE] Missing {SIGNATURE_HEADER} header")
            return False

        provided = provided_signature_header.strip()
        if provided.lower().startswith(SIGNATURE_PREFIX):
            provided = provided[len(SIGNATURE_PREFIX) :]

        if not _HEX_DIGEST.match(provided):
            logger.warning(f"[WEBHOOK_SIGNATURE] Malformed signature header: {provided_signature_header[:20]}...")
            return False

        expected = compute_signature(self._secret, raw_body)
        is_valid = hmac.compare_digest(expected, provided.lower())
        if not is_valid:
            logger.warning("[WEBHOOK_SIGNATURE] Invalid webhook signature")
        return is_valid
