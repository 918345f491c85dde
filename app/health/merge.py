"""Merge engine for canonical health records.

Pure functions, no I/O. Rules:
- Recency guard: when both sides carry ``last_updated`` and the incoming one is
  strictly older, the stored record is returned unchanged.
- Otherwise every field is ``incoming if incoming is not None else existing``,
  recursively for nested groups (heart rate, HRV, breathing, blood pressure).
- Activity events are unioned, deduplicated by start time, sorted newest first
  and capped at ACTIVITY_EVENTS_LIMIT.

Applying the same or an older update twice yields the same result, which is
what makes at-least-once delivery safe.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TypeVar

from loguru import logger
from pydantic import BaseModel

from app.health.models import (
    ActivityEvent,
    CanonicalFragment,
    DataCategory,
    TimestampedRecord,
)

ACTIVITY_EVENTS_LIMIT = 50

_MIN_TIME = datetime.min.replace(tzinfo=timezone.utc)

ModelT = TypeVar("ModelT", bound=BaseModel)


def is_stale(existing: TimestampedRecord | None, incoming: TimestampedRecord) -> bool:
    """True when incoming data is strictly older than what is stored."""
    if existing is None or existing.last_updated is None or incoming.last_updated is None:
        return False
    return incoming.last_updated < existing.last_updated


def coalesce(existing: ModelT | None, incoming: ModelT) -> ModelT:
    """Field-level null-coalescing merge, preferring incoming values."""
    if existing is None:
        return incoming.model_copy(deep=True)

    merged: dict[str, object] = {}
    for name in type(incoming).model_fields:
        new_value = getattr(incoming, name)
        old_value = getattr(existing, name)
        if isinstance(new_value, BaseModel) and isinstance(old_value, BaseModel):
            merged[name] = coalesce(old_value, new_value)
        elif new_value is not None:
            merged[name] = new_value
        else:
            merged[name] = old_value
    return type(incoming).model_validate(merged)


def merge_record(existing: TimestampedRecord | None, incoming: TimestampedRecord) -> TimestampedRecord:
    """Merge one summary record (sleep, physical or body)."""
    if is_stale(existing, incoming):
        logger.debug(
            f"[MERGE] Skipping older {type(incoming).__name__}: "
            f"incoming={incoming.last_updated} stored={existing.last_updated}"
        )
        return existing
    return coalesce(existing, incoming)


def _event_sort_key(event: ActivityEvent) -> datetime:
    return event.start_time or _MIN_TIME


def _prefer(stored: ActivityEvent, candidate: ActivityEvent) -> ActivityEvent:
    """Pick between two events sharing a start time; ties keep the stored one."""
    if candidate.last_updated is not None and (
        stored.last_updated is None or candidate.last_updated > stored.last_updated
    ):
        return candidate
    return stored


def merge_activity_events(
    existing: list[ActivityEvent] | None,
    incoming: list[ActivityEvent],
    limit: int = ACTIVITY_EVENTS_LIMIT,
) -> list[ActivityEvent]:
    """Union, dedupe by start time, sort newest first, keep ``limit`` events."""
    by_start: dict[datetime | None, ActivityEvent] = {}
    for event in [*(existing or []), *incoming]:
        key = event.start_time
        if key in by_start:
            by_start[key] = _prefer(by_start[key], event)
        else:
            by_start[key] = event

    ordered = sorted(by_start.values(), key=_event_sort_key, reverse=True)
    merged = [event.model_copy(deep=True) for event in ordered[:limit]]
    logger.debug(f"[MERGE] Activity events merged: {len(incoming)} new, {len(merged)} total")
    return merged


def merge(
    existing: CanonicalFragment | None,
    incoming: CanonicalFragment,
    category: DataCategory,
) -> CanonicalFragment:
    """Merge an incoming canonical fragment into the stored one for a category.

    Args:
        existing: Currently stored record for (user, device, category), if any
        incoming: Freshly transformed fragment
        category: Which canonical category both belong to

    Returns:
        The merged record. When the incoming record is stale, this is the
        stored record unchanged.
    """
    if category == DataCategory.ACTIVITY_EVENTS:
        if not isinstance(incoming, list):
            raise TypeError(f"activity_events merge expects a list, got {type(incoming).__name__}")
        return merge_activity_events(existing if isinstance(existing, list) else None, incoming)

    if not isinstance(incoming, TimestampedRecord):
        raise TypeError(f"{category} merge expects a record, got {type(incoming).__name__}")
    if existing is not None and type(existing) is not type(incoming):
        raise TypeError(f"Cannot merge {type(incoming).__name__} into {type(existing).__name__}")
    return merge_record(existing, incoming)
