"""In-process queue with the same delivery semantics as the Redis queue.

For local runs and tests only: messages do not survive a restart.
"""

from __future__ import annotations

import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass

from loguru import logger

from app.queue.types import DeadLetter, ReceivedMessage, message_id_from_receipt


@dataclass
class _Entry:
    body: str
    visible_at: float
    receive_count: int = 0
    receipt: str = ""


class InMemoryWebhookQueue:
    def __init__(
        self,
        name: str = "webhooks",
        *,
        visibility_timeout: float = 60,
        max_receive_count: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.visibility_timeout = visibility_timeout
        self.max_receive_count = max_receive_count
        self._clock = clock
        self._lock = threading.Lock()
        self._messages: dict[str, _Entry] = {}
        self._dead: list[DeadLetter] = []

    def enqueue(self, body: str) -> str:
        message_id = uuid.uuid4().hex
        with self._lock:
            self._messages[message_id] = _Entry(body=body, visible_at=self._clock())
        logger.bind(message_id=message_id, queue=self.name).debug("[WEBHOOK_QUEUE] Message enqueued (memory)")
        return message_id

    def receive(self, max_messages: int = 1, wait_seconds: float = 0.0) -> list[ReceivedMessage]:
        deadline = self._clock() + wait_seconds
        while True:
            messages = self._claim_batch(max_messages)
            remaining = deadline - self._clock()
            if messages or remaining <= 0:
                return messages
            time.sleep(min(0.05, remaining))

    def _claim_batch(self, max_messages: int) -> list[ReceivedMessage]:
        claimed: list[ReceivedMessage] = []
        with self._lock:
            now = self._clock()
            ready = sorted(
                (item for item in self._messages.items() if item[1].visible_at <= now),
                key=lambda item: item[1].visible_at,
            )
            for message_id, entry in ready:
                if len(claimed) >= max_messages:
                    break
                if entry.receive_count + 1 > self.max_receive_count:
                    self._move_to_dead(message_id, f"max receive count ({self.max_receive_count}) exceeded")
                    continue
                entry.receive_count += 1
                entry.receipt = f"{message_id}:{uuid.uuid4().hex}"
                entry.visible_at = now + self.visibility_timeout
                claimed.append(
                    ReceivedMessage(
                        id=message_id,
                        receipt_handle=entry.receipt,
                        body=entry.body,
                        receive_count=entry.receive_count,
                    )
                )
        return claimed

    def _move_to_dead(self, message_id: str, reason: str) -> None:
        entry = self._messages.pop(message_id)
        self._dead.append(
            DeadLetter(
                id=message_id,
                body=entry.body,
                receive_count=entry.receive_count,
                reason=reason,
                dead_lettered_at=time.time(),
            )
        )
        logger.bind(message_id=message_id, queue=self.name).warning(
            f"[WEBHOOK_QUEUE] Message moved to dead-letter queue: {reason}"
        )

    def _current(self, receipt_handle: str) -> str | None:
        message_id = message_id_from_receipt(receipt_handle)
        entry = self._messages.get(message_id)
        if entry is None or entry.receipt != receipt_handle:
            logger.bind(message_id=message_id, queue=self.name).warning(
                "[WEBHOOK_QUEUE] Stale or unknown receipt handle; message not settled"
            )
            return None
        return message_id

    def delete(self, receipt_handle: str) -> bool:
        with self._lock:
            message_id = self._current(receipt_handle)
            if message_id is None:
                return False
            del self._messages[message_id]
            return True

    def dead_letter(self, receipt_handle: str, reason: str) -> bool:
        with self._lock:
            message_id = self._current(receipt_handle)
            if message_id is None:
                return False
            self._move_to_dead(message_id, reason)
            return True

    def dead_letters(self, limit: int = 100) -> list[DeadLetter]:
        with self._lock:
            return list(self._dead[:limit])

    def depth(self) -> int:
        with self._lock:
            return len(self._messages)
