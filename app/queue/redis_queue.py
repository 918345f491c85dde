"""Redis-backed durable queue for webhook processing.

Layout per queue name:
    {name}:visible      sorted set, message id -> time it becomes receivable
    {name}:msg:{id}     hash with body, receive_count, receipt, enqueued_at
    {name}:dlq          list of JSON dead letters

A receive moves the message's score to now + visibility timeout, so a worker
that dies mid-message simply lets it reappear. State changes on a message go
through WATCH/MULTI so two workers can never claim the same delivery.
"""

from __future__ import annotations

import json
import time
import uuid
from collections.abc import Callable

import redis
from loguru import logger

from app.queue.types import DeadLetter, ReceivedMessage, message_id_from_receipt

_POLL_SLEEP_SECONDS = 0.2


class RedisWebhookQueue:
    def __init__(
        self,
        client: redis.Redis,
        name: str,
        *,
        visibility_timeout: float = 60,
        max_receive_count: int = 3,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self.name = name
        self.visibility_timeout = visibility_timeout
        self.max_receive_count = max_receive_count
        self._clock = clock
        self._visible_key = f"{name}:visible"
        self._dlq_key = f"{name}:dlq"

    @classmethod
    def from_url(cls, url: str, name: str, **kwargs) -> RedisWebhookQueue:
        return cls(redis.from_url(url, decode_responses=True), name, **kwargs)

    def _msg_key(self, message_id: str) -> str:
        return f"{self.name}:msg:{message_id}"

    def enqueue(self, body: str) -> str:
        message_id = uuid.uuid4().hex
        now = self._clock()
        pipe = self._client.pipeline(transaction=True)
        pipe.hset(self._msg_key(message_id), mapping={"body": body, "receive_count": 0, "receipt": "", "enqueued_at": now})
        pipe.zadd(self._visible_key, {message_id: now})
        pipe.execute()
        logger.bind(message_id=message_id, queue=self.name).debug("[WEBHOOK_QUEUE] Message enqueued")
        return message_id

    def receive(self, max_messages: int = 1, wait_seconds: float = 0.0) -> list[ReceivedMessage]:
        """Claim up to ``max_messages`` visible messages, long-polling up to ``wait_seconds``."""
        deadline = self._clock() + wait_seconds
        while True:
            messages = self._claim_batch(max_messages)
            remaining = deadline - self._clock()
            if messages or remaining <= 0:
                return messages
            time.sleep(min(_POLL_SLEEP_SECONDS, remaining))

    def _claim_batch(self, max_messages: int) -> list[ReceivedMessage]:
        claimed: list[ReceivedMessage] = []
        while len(claimed) < max_messages:
            now = self._clock()
            candidates = self._client.zrangebyscore(self._visible_key, "-inf", now, start=0, num=max_messages)
            if not candidates:
                break
            for message_id in candidates:
                message = self._claim(message_id, now)
                if message is not None:
                    claimed.append(message)
                    if len(claimed) >= max_messages:
                        break
        return claimed

    def _claim(self, message_id: str, now: float) -> ReceivedMessage | None:
        msg_key = self._msg_key(message_id)

        def claim(pipe: redis.client.Pipeline) -> ReceivedMessage | None:
            score = pipe.zscore(self._visible_key, message_id)
            if score is None or score > now:
                return None
            fields = pipe.hgetall(msg_key)
            pipe.multi()
            if not fields:
                pipe.zrem(self._visible_key, message_id)
                return None

            receive_count = int(fields.get("receive_count", 0)) + 1
            if receive_count > self.max_receive_count:
                reason = f"max receive count ({self.max_receive_count}) exceeded"
                self._queue_dead_letter(pipe, message_id, fields, reason, receive_count - 1)
                return None

            receipt = f"{message_id}:{uuid.uuid4().hex}"
            pipe.hset(msg_key, mapping={"receive_count": receive_count, "receipt": receipt})
            pipe.zadd(self._visible_key, {message_id: now + self.visibility_timeout})
            return ReceivedMessage(id=message_id, receipt_handle=receipt, body=fields["body"], receive_count=receive_count)

        return self._client.transaction(claim, self._visible_key, msg_key, value_from_callable=True)

    def _queue_dead_letter(
        self,
        pipe: redis.client.Pipeline,
        message_id: str,
        fields: dict[str, str],
        reason: str,
        receive_count: int,
    ) -> None:
        entry = {
            "id": message_id,
            "body": fields.get("body", ""),
            "receive_count": receive_count,
            "reason": reason,
            "dead_lettered_at": self._clock(),
        }
        pipe.rpush(self._dlq_key, json.dumps(entry))
        pipe.zrem(self._visible_key, message_id)
        pipe.delete(self._msg_key(message_id))
        logger.bind(message_id=message_id, queue=self.name, receive_count=receive_count).warning(
            f"[WEBHOOK_QUEUE] Message moved to dead-letter queue: {reason}"
        )

    def _settle(self, receipt_handle: str, reason: str | None) -> bool:
        message_id = message_id_from_receipt(receipt_handle)
        msg_key = self._msg_key(message_id)

        def settle(pipe: redis.client.Pipeline) -> bool:
            fields = pipe.hgetall(msg_key)
            if not fields or fields.get("receipt") != receipt_handle:
                return False
            pipe.multi()
            if reason is None:
                pipe.zrem(self._visible_key, message_id)
                pipe.delete(msg_key)
            else:
                self._queue_dead_letter(pipe, message_id, fields, reason, int(fields.get("receive_count", 0)))
            return True

        settled = self._client.transaction(settle, msg_key, value_from_callable=True)
        if not settled:
            logger.bind(message_id=message_id, queue=self.name).warning(
                "[WEBHOOK_QUEUE] Stale or unknown receipt handle; message not settled"
            )
        return settled

    def delete(self, receipt_handle: str) -> bool:
        """Acknowledge a delivery. Returns False if the receipt is no longer current."""
        return self._settle(receipt_handle, None)

    def dead_letter(self, receipt_handle: str, reason: str) -> bool:
        return self._settle(receipt_handle, reason)

    def dead_letters(self, limit: int = 100) -> list[DeadLetter]:
        entries = self._client.lrange(self._dlq_key, 0, limit - 1)
        return [DeadLetter(**json.loads(entry)) for entry in entries]

    def depth(self) -> int:
        """Messages still on the main queue, in flight or visible."""
        return int(self._client.zcard(self._visible_key))
