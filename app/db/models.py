from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""


class User(Base):
    """Local user that provider webhooks are routed to.

    The provider is given ``id`` as its user id when the user links a device,
    so inbound webhooks carry it back verbatim. Authentication lives elsewhere.
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email: Mapped[str | None] = mapped_column(String, nullable=True, unique=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class RawWebhook(Base):
    """Immutable copy of every webhook received.

    Audit trail and replay source of truth: rows are never deleted, and only
    processed/processed_at/error change after the queue message is handled.
    queue_message_id is attached once, right after enqueue.
    """

    __tablename__ = "raw_webhooks"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    provider: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    external_user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    data_structure: Mapped[str] = mapped_column(String(80), nullable=False, index=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    queue_message_id: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        Index("ix_raw_webhooks_provider_user_time", "provider", "external_user_id", "received_at"),
        Index("ix_raw_webhooks_processed_time", "processed", "received_at"),
    )


class DeviceConnection(Base):
    """One device source connected to a user, with its merged canonical data.

    Each canonical category is its own JSON column so a merge writes exactly
    one (user, device, category) path in a single statement.
    """

    __tablename__ = "device_connections"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    device_source: Mapped[str] = mapped_column(String(40), nullable=False)
    connected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_sync: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    connected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    sleep: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    physical: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    body: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    activity_events: Mapped[list | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (UniqueConstraint("user_id", "device_source", name="uq_device_connections_user_device"),)
