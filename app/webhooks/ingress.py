"""Webhook ack path: verify, route, store raw, enqueue, respond.

Rules: never wait on downstream processing, never persist anything for an
unauthenticated request, and acknowledge (200) everything that retrying
cannot fix so the provider stops redelivering it. A 500 is returned only when
nothing durable was written, so the provider's own retry is safe.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from loguru import logger

from app.health.models import QueueMessage
from app.persistence.health_state import HealthStateStore
from app.persistence.raw_webhooks import RawWebhookStore, WebhookMetadata
from app.queue.types import WebhookQueue
from app.webhooks.errors import RoutingError, SignatureVerificationError
from app.webhooks.routing import is_well_formed_user_id, map_device_source, route_payload
from app.webhooks.signature import SIGNATURE_HEADER, WebhookSignatureVerifier

NOTIFICATION_STRUCTURE = "notification"

CONNECT_ACTIONS = frozenset({"user_connected", "connection_established"})
REVOKE_ACTIONS = frozenset({"user_disconnected", "connection_revoked"})
LOG_ONLY_ACTIONS = frozenset({"user_created", "user_deleted"})


@dataclass(frozen=True)
class IngressResult:
    status_code: int
    content: dict[str, Any]


def _header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None


def _parse_json(raw_body: bytes) -> dict[str, Any] | None:
    try:
        payload = json.loads(raw_body.decode())
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning(f"[ROOK_WEBHOOK] Invalid JSON body: {e}")
        return None
    if not isinstance(payload, dict):
        logger.warning(f"[ROOK_WEBHOOK] JSON body is not an object: {type(payload).__name__}")
        return None
    return payload


class WebhookIngress:
    def __init__(
        self,
        verifier: WebhookSignatureVerifier,
        raw_store: RawWebhookStore,
        state_store: HealthStateStore,
        queue: WebhookQueue,
        provider: str = "rook",
    ) -> None:
        self.verifier = verifier
        self.raw_store = raw_store
        self.state_store = state_store
        self.queue = queue
        self.provider = provider

    def _authenticate(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        """Reject requests whose signature is missing or does not match the body.

        Raises:
            SignatureVerificationError: on any verification failure
        """
        if not self.verifier.verify(raw_body, _header(headers, SIGNATURE_HEADER)):
            raise SignatureVerificationError("Invalid signature")

    def _metadata(self, external_user_id: Any, data_structure: str, headers: Mapping[str, str], client_ip: str | None) -> WebhookMetadata:
        return WebhookMetadata(
            provider=self.provider,
            external_user_id=str(external_user_id or ""),
            data_structure=data_structure,
            user_agent=_header(headers, "User-Agent"),
            ip_address=client_ip,
            received_at=datetime.now(timezone.utc),
        )

    def receive_health_data(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        client_ip: str | None = None,
    ) -> IngressResult:
        """Acknowledge a health-data webhook.

        Returns:
            401 on signature failure; 500 when the raw payload could not be
            stored; 200 otherwise, with ``queued`` telling whether a worker
            will pick it up.
        """
        try:
            self._authenticate(raw_body, headers)
        except SignatureVerificationError as e:
            return IngressResult(401, {"error": str(e)})

        payload = _parse_json(raw_body)
        if payload is None:
            return IngressResult(200, {"status": "ignored", "reason": "invalid_payload"})

        try:
            route = route_payload(payload, self.state_store.user_exists)
        except RoutingError as e:
            logger.bind(user_id=payload.get("user_id")).warning(f"[ROOK_WEBHOOK] Acknowledged and dropped: {e}")
            return IngressResult(200, {"status": "ignored", "reason": e.reason})
        except Exception:
            logger.exception("[ROOK_WEBHOOK] User lookup failed")
            return IngressResult(500, {"error": "Internal server error"})

        log = logger.bind(user_id=route.user_id, device_source=route.device_source, data_structure=route.data_structure)

        try:
            raw_id = self.raw_store.record(payload, self._metadata(route.user_id, route.data_structure, headers, client_ip))
        except Exception:
            log.exception("[ROOK_WEBHOOK] Failed to store raw webhook")
            return IngressResult(500, {"error": "Failed to store webhook"})

        message = QueueMessage(
            raw_webhook_id=raw_id,
            user_id=route.user_id,
            device_source=route.device_source,
            data_structure=route.data_structure,
            payload=payload,
        )
        try:
            message_id = self.queue.enqueue(message.model_dump_json())
        except Exception:
            # Row stays processed=False and is picked up by replay
            log.bind(raw_webhook_id=raw_id).exception("[ROOK_WEBHOOK] Failed to enqueue webhook")
            return IngressResult(200, {"status": "accepted", "queued": False, "raw_webhook_id": raw_id})

        try:
            self.raw_store.attach_queue_message_id(raw_id, message_id)
        except Exception:
            log.bind(raw_webhook_id=raw_id, message_id=message_id).exception(
                "[ROOK_WEBHOOK] Failed to attach queue message id"
            )

        log.bind(raw_webhook_id=raw_id, message_id=message_id).info("[ROOK_WEBHOOK] Webhook queued")
        return IngressResult(
            200,
            {"status": "accepted", "queued": True, "raw_webhook_id": raw_id, "message_id": message_id},
        )

    def receive_notification(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        client_ip: str | None = None,
    ) -> IngressResult:
        """Apply a connection lifecycle notification inline; it is a single small write."""
        try:
            self._authenticate(raw_body, headers)
        except SignatureVerificationError as e:
            return IngressResult(401, {"error": str(e)})

        payload = _parse_json(raw_body)
        if payload is None:
            return IngressResult(200, {"status": "ignored", "reason": "invalid_payload"})

        action = payload.get("action")
        user_id = payload.get("user_id")
        device_source = map_device_source(payload.get("data_source"))
        log = logger.bind(action=action, user_id=user_id, device_source=device_source)
        log.info(f"[ROOK_NOTIFICATION] Received notification: {action}")

        try:
            raw_id = self.raw_store.record(payload, self._metadata(user_id, NOTIFICATION_STRUCTURE, headers, client_ip))
        except Exception:
            log.exception("[ROOK_NOTIFICATION] Failed to store notification")
            return IngressResult(500, {"error": "Failed to store webhook"})

        if action not in CONNECT_ACTIONS and action not in REVOKE_ACTIONS:
            if action in LOG_ONLY_ACTIONS:
                log.info(f"[ROOK_NOTIFICATION] {action} for provider user {user_id}")
            else:
                log.info(f"[ROOK_NOTIFICATION] Unknown notification action: {action}")
            return self._settle_notification(raw_id, None, log, {"status": "processed", "action": action})

        reason = None
        try:
            if not is_well_formed_user_id(user_id):
                reason = "invalid_user_id"
            elif device_source is None:
                reason = "unknown_data_source"
            elif not self.state_store.user_exists(user_id):
                reason = "unknown_user"
            else:
                self.state_store.set_connection(user_id, device_source, connected=action in CONNECT_ACTIONS)
        except Exception:
            log.bind(raw_webhook_id=raw_id).exception("[ROOK_NOTIFICATION] Failed to apply notification")
            return IngressResult(500, {"error": "Internal server error"})

        if reason is not None:
            log.warning(f"[ROOK_NOTIFICATION] Acknowledged and dropped: {reason}")
            return self._settle_notification(raw_id, reason, log, {"status": "ignored", "reason": reason})
        return self._settle_notification(raw_id, None, log, {"status": "processed", "action": action})

    def _settle_notification(self, raw_id: str, reason: str | None, log: Any, content: dict[str, Any]) -> IngressResult:
        try:
            self.raw_store.mark_processed(raw_id, error=reason)
        except Exception:
            log.bind(raw_webhook_id=raw_id).exception("[ROOK_NOTIFICATION] Failed to mark notification processed")
            return IngressResult(500, {"error": "Internal server error"})
        return IngressResult(200, content)
