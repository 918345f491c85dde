"""Canonical, provider-agnostic health records.

Every provider payload is narrowed into one of these models by the schema
transformer; nothing provider-specific is stored past that boundary.
All fields are optional: ``None`` means "not reported", never zero.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, field_validator


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class DataCategory(StrEnum):
    """Canonical categories stored per (user, device)."""

    SLEEP = "sleep"
    PHYSICAL = "physical"
    BODY = "body"
    ACTIVITY_EVENTS = "activity_events"


class CanonicalModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True)

    def to_document(self) -> dict[str, Any]:
        """JSON-safe dict with unreported fields dropped."""
        return self.model_dump(mode="json", exclude_none=True)


class HeartRate(CanonicalModel):
    min_bpm: float | None = None
    max_bpm: float | None = None
    avg_bpm: float | None = None
    resting_bpm: float | None = None


class Hrv(CanonicalModel):
    rmssd_avg_ms: float | None = None
    sdnn_avg_ms: float | None = None


class Breathing(CanonicalModel):
    avg_breaths_per_min: float | None = None
    spo2_avg_percentage: float | None = None
    spo2_min_percentage: float | None = None
    spo2_max_percentage: float | None = None


class BloodPressure(CanonicalModel):
    systolic_mmHg: float | None = None
    diastolic_mmHg: float | None = None


class TimestampedRecord(CanonicalModel):
    last_updated: datetime | None = None

    @field_validator("last_updated")
    @classmethod
    def normalize_last_updated(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)


class SleepRecord(TimestampedRecord):
    duration_minutes: int | None = None
    efficiency_percentage: float | None = None
    sleep_start: datetime | None = None
    sleep_end: datetime | None = None
    light_sleep_minutes: int | None = None
    rem_sleep_minutes: int | None = None
    deep_sleep_minutes: int | None = None
    awake_minutes: int | None = None
    heart_rate: HeartRate | None = None
    hrv: Hrv | None = None
    breathing: Breathing | None = None


class PhysicalRecord(TimestampedRecord):
    steps: int | None = None
    calories_kcal: int | None = None
    active_calories_kcal: int | None = None
    basal_metabolic_rate_kcal: int | None = None
    distance_meters: float | None = None
    floors_climbed: float | None = None
    active_minutes: int | None = None
    moderate_intensity_minutes: int | None = None
    vigorous_intensity_minutes: int | None = None
    heart_rate: HeartRate | None = None
    activity_score: float | None = None


class BodyRecord(TimestampedRecord):
    weight_kg: float | None = None
    height_cm: float | None = None
    bmi: float | None = None
    body_fat_percentage: float | None = None
    muscle_percentage: float | None = None
    water_percentage: float | None = None
    bone_percentage: float | None = None
    waist_cm: float | None = None
    hip_cm: float | None = None
    chest_cm: float | None = None
    blood_pressure: BloodPressure | None = None
    blood_glucose_mg_dl: float | None = None
    water_intake_ml: float | None = None


class ActivityEvent(TimestampedRecord):
    activity_type: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration_minutes: int | None = None
    calories_burned_kcal: int | None = None
    distance_meters: float | None = None
    avg_heart_rate_bpm: float | None = None
    max_heart_rate_bpm: float | None = None

    @field_validator("start_time", "end_time")
    @classmethod
    def normalize_times(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)


SummaryRecord = Union[SleepRecord, PhysicalRecord, BodyRecord]
CanonicalFragment = Union[SleepRecord, PhysicalRecord, BodyRecord, list[ActivityEvent]]

SUMMARY_MODELS: dict[DataCategory, type[TimestampedRecord]] = {
    DataCategory.SLEEP: SleepRecord,
    DataCategory.PHYSICAL: PhysicalRecord,
    DataCategory.BODY: BodyRecord,
}


def fragment_is_empty(fragment: CanonicalFragment | None) -> bool:
    """True when a transform produced nothing worth persisting."""
    if fragment is None:
        return True
    if isinstance(fragment, list):
        return not fragment
    return fragment.is_empty()


def fragment_to_document(fragment: CanonicalFragment) -> Any:
    if isinstance(fragment, list):
        return [event.to_document() for event in fragment]
    return fragment.to_document()


def fragment_from_document(category: DataCategory, document: Any) -> CanonicalFragment | None:
    """Rebuild a stored category document into its canonical model."""
    if document is None:
        return None
    if category == DataCategory.ACTIVITY_EVENTS:
        return [ActivityEvent.model_validate(item) for item in document]
    return SUMMARY_MODELS[category].model_validate(document)


class DeviceConnectionState(BaseModel):
    """One device's connection status plus its merged canonical data."""

    device_source: str
    connected: bool = False
    last_sync: datetime | None = None
    connected_at: datetime | None = None
    revoked_at: datetime | None = None
    sleep: SleepRecord | None = None
    physical: PhysicalRecord | None = None
    body: BodyRecord | None = None
    activity_events: list[ActivityEvent] = []


class UserHealthDocument(BaseModel):
    """Per-user document: device source name -> DeviceConnectionState."""

    user_id: str
    wearables: dict[str, DeviceConnectionState] = {}


class QueueMessage(BaseModel):
    """Envelope placed on the durable queue for one raw webhook."""

    raw_webhook_id: str
    user_id: str
    device_source: str
    data_structure: str
    payload: dict[str, Any]
