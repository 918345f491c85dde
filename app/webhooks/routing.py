"""Resolve who and what an inbound ROOK payload is about.

Routing never trusts the payload shape: every lookup tolerates missing or
wrongly-typed sections and a failure is reported as a RoutingError, which
callers acknowledge and drop.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from app.webhooks.errors import RoutingError

DEVICE_SOURCES: dict[str, str] = {
    "oura": "oura",
    "garmin": "garmin",
    "fitbit": "fitbit",
    "whoop": "whoop",
    "apple_health": "apple",
    "apple health": "apple",
    "apple": "apple",
    "samsung_health": "samsung",
    "samsung health": "samsung",
    "samsung": "samsung",
    "polar": "polar",
    "withings": "withings",
}

# Scanned in order; the first metadata block with a non-empty source list wins.
_SOURCE_METADATA_PATHS: tuple[tuple[str, ...], ...] = (
    ("sleep_health", "summary", "sleep_summary", "metadata"),
    ("physical_health", "summary", "physical_summary", "metadata"),
    ("body_health", "summary", "body_summary", "metadata"),
    ("physical_health", "events", "activity_event", 0, "metadata"),
    ("body_health", "events", "body_metrics_event", 0, "metadata"),
)


@dataclass(frozen=True)
class WebhookRoute:
    user_id: str
    device_source: str
    data_structure: str


def _lookup(payload: Any, path: tuple) -> Any:
    current = payload
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, list) or len(current) <= key:
                return None
        elif not isinstance(current, dict):
            return None
        current = current[key] if isinstance(key, int) else current.get(key)
    return current


def resolve_data_structure(payload: dict[str, Any]) -> str | None:
    value = payload.get("data_structure")
    return value if isinstance(value, str) and value else None


def resolve_data_source(payload: dict[str, Any]) -> str | None:
    """Provider source label: top-level ``data_source`` or the first metadata source."""
    data_source = payload.get("data_source")
    if isinstance(data_source, str) and data_source:
        return data_source

    for path in _SOURCE_METADATA_PATHS:
        sources = _lookup(payload, (*path, "sources_of_data_array"))
        if isinstance(sources, list) and sources and isinstance(sources[0], str):
            return sources[0]
    return None


def map_device_source(data_source: Any) -> str | None:
    """Map a provider source label to the local device name, or None if unknown."""
    if not isinstance(data_source, str) or not data_source:
        return None
    return DEVICE_SOURCES.get(data_source.strip().lower())


def is_well_formed_user_id(user_id: Any) -> bool:
    if not isinstance(user_id, str) or not user_id:
        return False
    try:
        uuid.UUID(user_id)
    except ValueError:
        return False
    return True


def route_payload(payload: dict[str, Any], user_exists: Callable[[str], bool]) -> WebhookRoute:
    """Resolve the local (user, device, structure) for a health-data payload.

    Raises:
        RoutingError: reason is one of ``invalid_user_id``, ``unknown_user``,
            ``unknown_data_source``
    """
    user_id = payload.get("user_id")
    if not is_well_formed_user_id(user_id):
        raise RoutingError("invalid_user_id", f"Invalid user_id format: {user_id!r}")

    data_source = resolve_data_source(payload)
    device_source = map_device_source(data_source)
    if device_source is None:
        raise RoutingError("unknown_data_source", f"Unknown data source: {data_source!r}")

    if not user_exists(user_id):
        raise RoutingError("unknown_user", f"User not found: {user_id}")

    return WebhookRoute(
        user_id=user_id,
        device_source=device_source,
        data_structure=resolve_data_structure(payload) or "unknown",
    )
