"""Append-only store of raw webhook payloads.

Rows are the audit trail and the replay source: they are never deleted and
only their status fields change after processing.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from app.db.models import RawWebhook
from app.db.session import session_scope


@dataclass(frozen=True)
class RawWebhookRecord:
    """Detached, read-only view of a raw_webhooks row."""

    id: str
    provider: str
    external_user_id: str
    data_structure: str
    payload: dict[str, Any]
    received_at: datetime
    processed: bool
    processed_at: datetime | None
    error: str | None
    queue_message_id: str | None
    user_agent: str | None
    ip_address: str | None

    @classmethod
    def from_row(cls, row: RawWebhook) -> RawWebhookRecord:
        return cls(
            id=row.id,
            provider=row.provider,
            external_user_id=row.external_user_id,
            data_structure=row.data_structure,
            payload=row.payload,
            received_at=row.received_at,
            processed=row.processed,
            processed_at=row.processed_at,
            error=row.error,
            queue_message_id=row.queue_message_id,
            user_agent=row.user_agent,
            ip_address=row.ip_address,
        )


@dataclass(frozen=True)
class WebhookMetadata:
    provider: str
    external_user_id: str
    data_structure: str
    user_agent: str | None = None
    ip_address: str | None = None
    received_at: datetime | None = None


class RawWebhookStore:
    """SQLAlchemy-backed raw webhook audit log."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def record(self, payload: dict[str, Any], metadata: WebhookMetadata) -> str:
        """Store a payload verbatim with processed=False. Returns the row id."""
        with session_scope(self._session_factory) as session:
            row = RawWebhook(
                provider=metadata.provider,
                external_user_id=metadata.external_user_id,
                data_structure=metadata.data_structure,
                payload=payload,
                received_at=metadata.received_at or datetime.now(timezone.utc),
                processed=False,
                user_agent=metadata.user_agent,
                ip_address=metadata.ip_address,
            )
            session.add(row)
            session.flush()
            raw_id = row.id

        logger.bind(raw_webhook_id=raw_id, data_structure=metadata.data_structure).debug("[RAW_WEBHOOK] Stored raw webhook")
        return raw_id

    def attach_queue_message_id(self, raw_id: str, message_id: str) -> None:
        """Set the correlation id once; an existing value is never overwritten."""
        with session_scope(self._session_factory) as session:
            result = session.execute(
                update(RawWebhook)
                .where(RawWebhook.id == raw_id, RawWebhook.queue_message_id.is_(None))
                .values(queue_message_id=message_id)
            )
        if result.rowcount == 0:
            logger.debug(f"[RAW_WEBHOOK] Queue message id already set or row missing: {raw_id}")

    def mark_processed(self, raw_id: str, error: str | None = None) -> None:
        """Record the terminal outcome of processing.

        A later successful reprocess (replay) clears a previously recorded error.
        """
        with session_scope(self._session_factory) as session:
            result = session.execute(
                update(RawWebhook)
                .where(RawWebhook.id == raw_id)
                .values(processed=True, processed_at=datetime.now(timezone.utc), error=error)
            )
        if result.rowcount == 0:
            logger.warning(f"[RAW_WEBHOOK] mark_processed: raw webhook not found: {raw_id}")
            return
        if error:
            logger.bind(raw_webhook_id=raw_id).info(f"[RAW_WEBHOOK] Marked processed with error: {error}")

    def get(self, raw_id: str) -> RawWebhookRecord | None:
        with session_scope(self._session_factory) as session:
            row = session.get(RawWebhook, raw_id)
            return RawWebhookRecord.from_row(row) if row else None

    def find_unprocessed(self, limit: int = 100) -> list[RawWebhookRecord]:
        """Rows not yet handled by a worker, oldest first."""
        with session_scope(self._session_factory) as session:
            rows = session.scalars(
                select(RawWebhook)
                .where(RawWebhook.processed.is_(False))
                .order_by(RawWebhook.received_at.asc())
                .limit(limit)
            ).all()
            return [RawWebhookRecord.from_row(row) for row in rows]

    def find_failed(self, limit: int = 100) -> list[RawWebhookRecord]:
        """Rows processed with a recorded error, newest first."""
        with session_scope(self._session_factory) as session:
            rows = session.scalars(
                select(RawWebhook)
                .where(RawWebhook.processed.is_(True), RawWebhook.error.is_not(None))
                .order_by(RawWebhook.received_at.desc())
                .limit(limit)
            ).all()
            return [RawWebhookRecord.from_row(row) for row in rows]
