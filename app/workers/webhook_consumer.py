"""Queue consumer: transform, merge and persist queued provider webhooks.

Run with ``python -m app.workers.webhook_consumer``. Several processes can
run side by side; the queue's visibility timeout keeps each message with one
worker at a time and hands it to another if that worker dies.

Outcome per message:
- ACKED: merged and persisted, or failed permanently and recorded on the raw row
- RETRY: transient failure; left on the queue for redelivery after the
  visibility timeout (the queue dead-letters it after max deliveries)
- DEAD_LETTER: envelope undecodable, nothing to record the failure against
"""

from __future__ import annotations

import json
import os
import signal
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, TypeVar

from loguru import logger
from pydantic import ValidationError
from redis import exceptions as redis_exc
from sqlalchemy import exc as sa_exc

from app.config.settings import Settings
from app.health.merge import merge
from app.health.models import DataCategory, QueueMessage, fragment_is_empty
from app.health.transform import category_for, transform
from app.persistence.health_state import HealthStateStore
from app.persistence.raw_webhooks import RawWebhookStore
from app.queue.types import ReceivedMessage, WebhookQueue
from app.webhooks.errors import (
    InvalidUserIdError,
    MalformedMessageError,
    NoDataExtractedError,
    PermanentProcessingError,
    TransientProcessingError,
    UnknownDataStructureError,
    UserNotFoundError,
)
from app.webhooks.routing import is_well_formed_user_id

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    TransientProcessingError,
    sa_exc.OperationalError,
    sa_exc.DisconnectionError,
    sa_exc.TimeoutError,
    redis_exc.ConnectionError,
    redis_exc.TimeoutError,
    ConnectionError,
    TimeoutError,
)

PERMANENT_ERRORS: tuple[type[BaseException], ...] = (
    PermanentProcessingError,
    ValidationError,
    ValueError,
    TypeError,
)


class ProcessingOutcome(StrEnum):
    ACKED = "acked"
    RETRY = "retry"
    DEAD_LETTER = "dead_letter"


@dataclass(frozen=True)
class MessageResult:
    outcome: ProcessingOutcome
    message_id: str
    raw_webhook_id: str | None = None
    error: str | None = None


def is_permanent_error(error: BaseException) -> bool:
    """Classify a processing failure; anything unrecognized is transient."""
    if isinstance(error, TRANSIENT_ERRORS):
        return False
    return isinstance(error, PERMANENT_ERRORS)


def _describe(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}"


def _raw_id_from_body(body: str) -> str | None:
    """Best-effort recovery of raw_webhook_id from an envelope that failed validation."""
    try:
        data = json.loads(body)
    except (TypeError, ValueError):
        return None
    raw_id = data.get("raw_webhook_id") if isinstance(data, dict) else None
    return raw_id if isinstance(raw_id, str) and raw_id else None


class WebhookConsumer:
    def __init__(
        self,
        queue: WebhookQueue,
        raw_store: RawWebhookStore,
        state_store: HealthStateStore,
        *,
        max_messages: int = 1,
        wait_seconds: float = 5.0,
        poll_interval: float = 1.0,
        error_backoff: float = 5.0,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.queue = queue
        self.raw_store = raw_store
        self.state_store = state_store
        self.max_messages = max_messages
        self.wait_seconds = wait_seconds
        self.poll_interval = poll_interval
        self.error_backoff = error_backoff
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay
        self._sleep = sleep
        self._stop = threading.Event()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        queue: WebhookQueue,
        raw_store: RawWebhookStore,
        state_store: HealthStateStore,
    ) -> WebhookConsumer:
        return cls(
            queue,
            raw_store,
            state_store,
            max_messages=settings.worker_max_messages,
            wait_seconds=settings.worker_wait_seconds,
            poll_interval=settings.worker_poll_interval_seconds,
            error_backoff=settings.worker_error_backoff_seconds,
            retry_attempts=settings.worker_retry_attempts,
            retry_delay=settings.worker_retry_delay_seconds,
        )

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def request_stop(self) -> None:
        """Stop polling; the message in flight is allowed to finish."""
        if not self._stop.is_set():
            logger.info("[WEBHOOK_WORKER] Stop requested; finishing in-flight work")
        self._stop.set()

    def process_message(self, message: QueueMessage) -> DataCategory:
        """Transform, merge and persist one message.

        Raises:
            PermanentProcessingError: retrying the same message cannot succeed
            Exception: storage/network failures propagate for classification
        """
        if not is_well_formed_user_id(message.user_id):
            raise InvalidUserIdError(f"Invalid user_id format: {message.user_id!r}")
        if not self.state_store.user_exists(message.user_id):
            raise UserNotFoundError(f"User not found: {message.user_id}")

        category = category_for(message.data_structure)
        if category is None:
            raise UnknownDataStructureError(f"Unknown data structure: {message.data_structure}")

        fragment = transform(message.data_structure, message.payload)
        if fragment is None or fragment_is_empty(fragment):
            raise NoDataExtractedError(f"No data extracted from {message.data_structure}")

        existing = self.state_store.get_category(message.user_id, message.device_source, category)
        merged = merge(existing, fragment, category)
        self.state_store.apply_category(
            message.user_id,
            message.device_source,
            category,
            merged,
            synced_at=datetime.now(timezone.utc),
        )
        return category

    def _with_retry(self, operation: Callable[[], T], log: Any) -> T:
        """Run ``operation``, retrying transient failures with a fixed delay."""
        attempt = 1
        while True:
            try:
                return operation()
            except Exception as e:
                if is_permanent_error(e) or attempt >= self.retry_attempts:
                    raise
                log.warning(
                    f"[WEBHOOK_WORKER] Transient failure (attempt {attempt}/{self.retry_attempts}), "
                    f"retrying in {self.retry_delay}s: {_describe(e)}"
                )
                self._sleep(self.retry_delay)
                attempt += 1

    def handle_message(self, received: ReceivedMessage) -> MessageResult:
        """Process one delivery and settle it on the queue."""
        log = logger.bind(message_id=received.id, receive_count=received.receive_count)

        try:
            message = QueueMessage.model_validate_json(received.body)
        except ValidationError as e:
            raw_id = _raw_id_from_body(received.body)
            if raw_id is None:
                return self._dead_letter(received, f"Undecodable queue message: {_describe(e)}", log)
            error = MalformedMessageError(f"Malformed queue message: {e.error_count()} validation error(s)")
            return self._fail_permanently(received, raw_id, error, log)

        raw_id = message.raw_webhook_id
        log = log.bind(
            raw_webhook_id=raw_id,
            user_id=message.user_id,
            device_source=message.device_source,
            data_structure=message.data_structure,
        )

        try:
            category = self._with_retry(lambda: self.process_message(message), log)
        except Exception as e:
            if is_permanent_error(e):
                return self._fail_permanently(received, raw_id, e, log)
            log.error(f"[WEBHOOK_WORKER] Transient failure, leaving message for redelivery: {_describe(e)}")
            return MessageResult(ProcessingOutcome.RETRY, received.id, raw_id, _describe(e))

        return self._acknowledge(received, raw_id, category, log)

    def _acknowledge(self, received: ReceivedMessage, raw_id: str, category: DataCategory, log: Any) -> MessageResult:
        try:
            if not self.queue.delete(received.receipt_handle):
                log.warning("[WEBHOOK_WORKER] Receipt expired before delete; message may be delivered again")
        except Exception as e:
            log.exception("[WEBHOOK_WORKER] Failed to delete processed message")
            return MessageResult(ProcessingOutcome.RETRY, received.id, raw_id, _describe(e))

        try:
            self.raw_store.mark_processed(raw_id)
        except Exception:
            log.exception("[WEBHOOK_WORKER] Processed but failed to mark raw webhook")

        log.info(f"[WEBHOOK_WORKER] Merged {category} data")
        return MessageResult(ProcessingOutcome.ACKED, received.id, raw_id)

    def _fail_permanently(self, received: ReceivedMessage, raw_id: str, error: BaseException, log: Any) -> MessageResult:
        description = _describe(error)
        log.warning(f"[WEBHOOK_WORKER] Permanent failure, acknowledging: {description}")
        try:
            self.raw_store.mark_processed(raw_id, error=description)
            self.queue.delete(received.receipt_handle)
        except Exception as e:
            log.exception("[WEBHOOK_WORKER] Failed to record permanent failure")
            return MessageResult(ProcessingOutcome.RETRY, received.id, raw_id, _describe(e))
        return MessageResult(ProcessingOutcome.ACKED, received.id, raw_id, description)

    def _dead_letter(self, received: ReceivedMessage, reason: str, log: Any) -> MessageResult:
        log.error(f"[WEBHOOK_WORKER] {reason}")
        try:
            self.queue.dead_letter(received.receipt_handle, reason)
        except Exception as e:
            log.exception("[WEBHOOK_WORKER] Failed to dead-letter message")
            return MessageResult(ProcessingOutcome.RETRY, received.id, None, _describe(e))
        return MessageResult(ProcessingOutcome.DEAD_LETTER, received.id, None, reason)

    def poll_once(self) -> list[MessageResult]:
        """Receive one batch and process it sequentially."""
        messages = self.queue.receive(self.max_messages, self.wait_seconds)
        results = []
        for received in messages:
            if self._stop.is_set():
                # Unprocessed deliveries reappear after the visibility timeout
                break
            results.append(self.handle_message(received))
        return results

    def run(self) -> None:
        logger.info(
            f"[WEBHOOK_WORKER] Starting webhook consumer "
            f"(max_messages={self.max_messages}, wait={self.wait_seconds}s)"
        )
        while not self._stop.is_set():
            try:
                self.poll_once()
                self._stop.wait(self.poll_interval)
            except Exception:
                logger.exception("[WEBHOOK_WORKER] Unexpected error in consumer loop")
                self._stop.wait(self.error_backoff)
        logger.info("[WEBHOOK_WORKER] Webhook consumer stopped")


def install_signal_handlers(consumer: WebhookConsumer, grace_seconds: float) -> None:
    """SIGTERM/SIGINT stop polling; the process is forced down after ``grace_seconds``."""

    def _force_exit() -> None:
        logger.error(f"[WEBHOOK_WORKER] In-flight work did not finish within {grace_seconds}s; forcing exit")
        os._exit(1)

    def _handle(signum: int, _frame: Any) -> None:
        name = signal.Signals(signum).name
        if consumer.stopping:
            logger.warning(f"[WEBHOOK_WORKER] Received {name} again; exiting now")
            os._exit(1)
        logger.info(f"[WEBHOOK_WORKER] Received {name}; shutting down (grace {grace_seconds}s)")
        consumer.request_stop()
        timer = threading.Timer(grace_seconds, _force_exit)
        timer.daemon = True
        timer.start()

    signal.signal(signal.SIGTERM, _handle)
    signal.signal(signal.SIGINT, _handle)


def build_consumer(settings: Settings) -> WebhookConsumer:
    from app.db.session import get_session_factory
    from app.queue.factory import build_queue

    session_factory = get_session_factory()
    return WebhookConsumer.from_settings(
        settings,
        build_queue(settings),
        RawWebhookStore(session_factory),
        HealthStateStore(session_factory),
    )


def main() -> None:
    from app.config.settings import settings
    from app.core.logger import setup_logger
    from app.db.session import check_database_connection, get_engine

    setup_logger(level=settings.log_level)
    check_database_connection(get_engine())
    consumer = build_consumer(settings)
    install_signal_handlers(consumer, settings.worker_shutdown_grace_seconds)
    consumer.run()


if __name__ == "__main__":
    main()
