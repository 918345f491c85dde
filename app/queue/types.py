"""Types shared by the durable webhook queue backends."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class ReceivedMessage:
    """One delivery of a queued message.

    Attributes:
        id: Stable message id (returned by enqueue)
        receipt_handle: Handle for this delivery only; a redelivery gets a new one
        body: Serialized QueueMessage
        receive_count: Number of deliveries so far, including this one
    """

    id: str
    receipt_handle: str
    body: str
    receive_count: int


@dataclass(frozen=True)
class DeadLetter:
    id: str
    body: str
    receive_count: int
    reason: str
    dead_lettered_at: float


class WebhookQueue(Protocol):
    """At-least-once queue with visibility timeouts and a dead-letter channel."""

    def enqueue(self, body: str) -> str: ...

    def receive(self, max_messages: int = 1, wait_seconds: float = 0.0) -> list[ReceivedMessage]: ...

    def delete(self, receipt_handle: str) -> bool: ...

    def dead_letter(self, receipt_handle: str, reason: str) -> bool: ...

    def dead_letters(self, limit: int = 100) -> list[DeadLetter]: ...

    def depth(self) -> int: ...


def message_id_from_receipt(receipt_handle: str) -> str:
    """Receipt handles are ``<message id>:<delivery token>``."""
    return receipt_handle.split(":", 1)[0]
