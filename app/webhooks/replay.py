"""Re-enqueue stored raw webhooks for reprocessing.

Routing is derived again from the stored payload rather than copied from the
original queue message, so fixes to routing apply to replayed rows.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger

from app.health.models import QueueMessage
from app.persistence.health_state import HealthStateStore
from app.persistence.raw_webhooks import RawWebhookRecord, RawWebhookStore
from app.queue.types import WebhookQueue
from app.webhooks.errors import RoutingError
from app.webhooks.ingress import NOTIFICATION_STRUCTURE
from app.webhooks.routing import route_payload


@dataclass
class ReplaySummary:
    queued: dict[str, str] = field(default_factory=dict)
    skipped: dict[str, str] = field(default_factory=dict)


class WebhookReplayer:
    def __init__(self, raw_store: RawWebhookStore, state_store: HealthStateStore, queue: WebhookQueue) -> None:
        self.raw_store = raw_store
        self.state_store = state_store
        self.queue = queue

    def replay(self, raw_id: str) -> str:
        """Enqueue a fresh message for one raw webhook.

        Returns:
            The new queue message id

        Raises:
            LookupError: no raw webhook with that id
            RoutingError: the stored payload no longer routes to a user/device
        """
        record = self.raw_store.get(raw_id)
        if record is None:
            raise LookupError(f"Raw webhook not found: {raw_id}")
        return self._replay_record(record)

    def _replay_record(self, record: RawWebhookRecord) -> str:
        if record.data_structure == NOTIFICATION_STRUCTURE:
            raise RoutingError("notification", "Notifications are applied at ingress and cannot be replayed")

        route = route_payload(record.payload, self.state_store.user_exists)
        message = QueueMessage(
            raw_webhook_id=record.id,
            user_id=route.user_id,
            device_source=route.device_source,
            data_structure=route.data_structure,
            payload=record.payload,
        )
        message_id = self.queue.enqueue(message.model_dump_json())
        # No-op when the row already carries the id of its first enqueue
        self.raw_store.attach_queue_message_id(record.id, message_id)
        logger.bind(raw_webhook_id=record.id, message_id=message_id).info("[WEBHOOK_REPLAY] Raw webhook re-enqueued")
        return message_id

    def _replay_many(self, records: list[RawWebhookRecord]) -> ReplaySummary:
        summary = ReplaySummary()
        for record in records:
            try:
                summary.queued[record.id] = self._replay_record(record)
            except RoutingError as e:
                logger.bind(raw_webhook_id=record.id).warning(f"[WEBHOOK_REPLAY] Skipped: {e}")
                summary.skipped[record.id] = e.reason
        logger.info(f"[WEBHOOK_REPLAY] Replayed {len(summary.queued)} webhook(s), skipped {len(summary.skipped)}")
        return summary

    def replay_unprocessed(self, limit: int = 100) -> ReplaySummary:
        return self._replay_many(self.raw_store.find_unprocessed(limit))

    def replay_failed(self, limit: int = 100) -> ReplaySummary:
        return self._replay_many(self.raw_store.find_failed(limit))
