from loguru import logger

from app.config.settings import Settings
from app.queue.memory import InMemoryWebhookQueue
from app.queue.redis_queue import RedisWebhookQueue
from app.queue.types import WebhookQueue

_memory_queues: dict[str, InMemoryWebhookQueue] = {}


def build_queue(settings: Settings) -> WebhookQueue:
    """Build the configured queue backend.

    The memory backend is shared per queue name within a process so the API
    and an in-process worker see the same messages.
    """
    if settings.queue_backend == "memory":
        if settings.is_production:
            logger.error("[WEBHOOK_QUEUE] In-memory queue configured in production; messages will not survive restarts")
        queue = _memory_queues.get(settings.queue_name)
        if queue is None:
            queue = InMemoryWebhookQueue(
                settings.queue_name,
                visibility_timeout=settings.queue_visibility_timeout_seconds,
                max_receive_count=settings.queue_max_receive_count,
            )
            _memory_queues[settings.queue_name] = queue
        return queue

    return RedisWebhookQueue.from_url(
        settings.redis_url,
        settings.queue_name,
        visibility_timeout=settings.queue_visibility_timeout_seconds,
        max_receive_count=settings.queue_max_receive_count,
    )
