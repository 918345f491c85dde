"""Canonical state store: per-user device connections and merged health data.

The user's document is the set of device_connections rows for that user.
Writes never read-modify-write the whole document: each update is one
INSERT ... ON CONFLICT DO UPDATE touching only the columns being set, so
concurrent writes to different categories of the same user cannot clobber
each other.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from loguru import logger
from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, sessionmaker

from app.db.models import DeviceConnection, User
from app.db.session import session_scope
from app.health.models import (
    CanonicalFragment,
    DataCategory,
    DeviceConnectionState,
    UserHealthDocument,
    fragment_from_document,
    fragment_to_document,
)

_CATEGORY_COLUMNS: dict[DataCategory, str] = {
    DataCategory.SLEEP: "sleep",
    DataCategory.PHYSICAL: "physical",
    DataCategory.BODY: "body",
    DataCategory.ACTIVITY_EVENTS: "activity_events",
}


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class HealthStateStore:
    """SQLAlchemy-backed canonical state store."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def create_user(self, *, user_id: str | None = None, email: str | None = None) -> str:
        with session_scope(self._session_factory) as session:
            user = User(id=user_id or str(uuid.uuid4()), email=email)
            session.add(user)
            session.flush()
            return user.id

    def user_exists(self, user_id: str) -> bool:
        with session_scope(self._session_factory) as session:
            return session.get(User, user_id) is not None

    def get_category(self, user_id: str, device_source: str, category: DataCategory) -> CanonicalFragment | None:
        """Currently stored record for one (user, device, category) path."""
        column = getattr(DeviceConnection, _CATEGORY_COLUMNS[category])
        with session_scope(self._session_factory) as session:
            document = session.execute(
                select(column).where(
                    DeviceConnection.user_id == user_id,
                    DeviceConnection.device_source == device_source,
                )
            ).scalar_one_or_none()
        return fragment_from_document(category, document)

    def apply_category(
        self,
        user_id: str,
        device_source: str,
        category: DataCategory,
        record: CanonicalFragment,
        synced_at: datetime | None = None,
    ) -> None:
        """Atomically set one category and stamp the device as synced and connected."""
        now = synced_at or datetime.now(timezone.utc)
        values = {
            _CATEGORY_COLUMNS[category]: fragment_to_document(record),
            "last_sync": now,
            "connected": True,
            "updated_at": now,
        }
        self._upsert(user_id, device_source, values)
        logger.bind(user_id=user_id, device_source=device_source, category=str(category)).debug(
            "[HEALTH_STATE] Category updated"
        )

    def set_connection(self, user_id: str, device_source: str, *, connected: bool, at: datetime | None = None) -> None:
        """Apply a connect/revoke lifecycle event for one device."""
        now = at or datetime.now(timezone.utc)
        values: dict[str, Any] = {"connected": connected, "updated_at": now}
        if connected:
            values.update(connected_at=now, last_sync=now)
        else:
            values["revoked_at"] = now
        self._upsert(user_id, device_source, values)
        logger.bind(user_id=user_id, device_source=device_source).info(
            f"[HEALTH_STATE] Device {'connected' if connected else 'revoked'}"
        )

    def get_document(self, user_id: str) -> UserHealthDocument | None:
        """Assemble the per-user document: device source -> connection state."""
        with session_scope(self._session_factory) as session:
            if session.get(User, user_id) is None:
                return None
            rows = session.scalars(select(DeviceConnection).where(DeviceConnection.user_id == user_id)).all()
            wearables = {row.device_source: self._to_state(row) for row in rows}
        return UserHealthDocument(user_id=user_id, wearables=wearables)

    @staticmethod
    def _to_state(row: DeviceConnection) -> DeviceConnectionState:
        return DeviceConnectionState(
            device_source=row.device_source,
            connected=row.connected,
            last_sync=_as_utc(row.last_sync),
            connected_at=_as_utc(row.connected_at),
            revoked_at=_as_utc(row.revoked_at),
            sleep=fragment_from_document(DataCategory.SLEEP, row.sleep),
            physical=fragment_from_document(DataCategory.PHYSICAL, row.physical),
            body=fragment_from_document(DataCategory.BODY, row.body),
            activity_events=fragment_from_document(DataCategory.ACTIVITY_EVENTS, row.activity_events) or [],
        )

    def _upsert(self, user_id: str, device_source: str, values: dict[str, Any]) -> None:
        with session_scope(self._session_factory) as session:
            dialect = session.get_bind().dialect.name
            if dialect == "postgresql":
                insert = postgresql.insert
            elif dialect == "sqlite":
                insert = sqlite.insert
            else:
                raise ValueError(f"Upsert not supported for dialect: {dialect}")

            stmt = insert(DeviceConnection).values(
                id=str(uuid.uuid4()),
                user_id=user_id,
                device_source=device_source,
                created_at=values["updated_at"],
                **values,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[DeviceConnection.user_id, DeviceConnection.device_source],
                set_=values,
            )
            session.execute(stmt)
