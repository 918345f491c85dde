"""Schema transformer: ROOK payload shapes -> canonical health records.

Pure mapper functions with no side effects. Each transformer reads one
provider-defined nested path, copies only the fields that are present and
converts units at this boundary (seconds -> minutes, kcal rounding), so the
canonical model never carries provider units.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from loguru import logger

from app.health.models import (
    ActivityEvent,
    BodyRecord,
    CanonicalFragment,
    DataCategory,
    PhysicalRecord,
    SleepRecord,
)

STRUCTURE_CATEGORIES: dict[str, DataCategory] = {
    "sleep_summary": DataCategory.SLEEP,
    "physical_summary": DataCategory.PHYSICAL,
    "body_summary": DataCategory.BODY,
    "body_metrics_event": DataCategory.BODY,
    "activity_event": DataCategory.ACTIVITY_EVENTS,
}


def category_for(data_structure: str | None) -> DataCategory | None:
    """Map a ROOK data_structure tag to the canonical category it feeds."""
    if not data_structure:
        return None
    return STRUCTURE_CATEGORIES.get(data_structure)


def _dig(payload: Any, *path: str) -> Any:
    current = payload
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _section(parent: dict[str, Any], key: str) -> dict[str, Any]:
    value = parent.get(key)
    return value if isinstance(value, dict) else {}


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _number(value: Any) -> float | None:
    """Numeric field value, or None (with a warning) when it is not a number."""
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        number = value
    elif isinstance(value, str):
        try:
            number = float(value)
        except ValueError:
            number = None
    else:
        number = None
    if number is None or not math.isfinite(number):
        logger.warning(f"[TRANSFORM] Ignoring non-numeric value: {value!r}")
        return None
    return number


def _minutes(seconds: Any) -> int | None:
    number = _number(seconds)
    if number is None:
        return None
    return round_half_up(number / 60)


def _rounded(value: Any) -> int | None:
    number = _number(value)
    if number is None:
        return None
    return round_half_up(number)


def _text(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"[TRANSFORM] Failed to parse timestamp: {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _present(**fields: Any) -> dict[str, Any]:
    """Drop keys whose value was not reported."""
    return {key: value for key, value in fields.items() if value is not None}


def _heart_rate(section: dict[str, Any]) -> dict[str, Any] | None:
    values = _present(
        min_bpm=_number(section.get("hr_minimum_bpm_int")),
        max_bpm=_number(section.get("hr_maximum_bpm_int")),
        avg_bpm=_number(section.get("hr_avg_bpm_int")),
        resting_bpm=_number(section.get("hr_resting_bpm_int")),
    )
    return values or None


def transform_sleep_summary(summary: dict[str, Any]) -> SleepRecord:
    duration = _section(summary, "duration")
    heart_rate = _section(summary, "heart_rate")
    breathing = _section(summary, "breathing")
    scores = _section(summary, "scores")
    metadata = _section(summary, "metadata")

    hrv = _present(
        rmssd_avg_ms=_number(heart_rate.get("hrv_avg_rmssd_float")),
        sdnn_avg_ms=_number(heart_rate.get("hrv_avg_sdnn_float")),
    )
    breathing_values = _present(
        avg_breaths_per_min=_number(breathing.get("breaths_avg_per_min_int")),
        spo2_avg_percentage=_number(breathing.get("saturation_avg_percentage_int")),
        spo2_min_percentage=_number(breathing.get("saturation_minimum_percentage_int")),
        spo2_max_percentage=_number(breathing.get("saturation_maximum_percentage_int")),
    )

    return SleepRecord.model_validate(
        _present(
            duration_minutes=_minutes(duration.get("sleep_duration_seconds_int")),
            efficiency_percentage=_number(scores.get("sleep_efficiency_1_100_score_int")),
            sleep_start=_timestamp(duration.get("sleep_start_datetime_string")),
            sleep_end=_timestamp(duration.get("sleep_end_datetime_string")),
            light_sleep_minutes=_minutes(duration.get("light_sleep_duration_seconds_int")),
            rem_sleep_minutes=_minutes(duration.get("rem_sleep_duration_seconds_int")),
            deep_sleep_minutes=_minutes(duration.get("deep_sleep_duration_seconds_int")),
            awake_minutes=_minutes(duration.get("time_awake_during_sleep_seconds_int")),
            heart_rate=_heart_rate(heart_rate),
            hrv=hrv or None,
            breathing=breathing_values or None,
            last_updated=_timestamp(metadata.get("datetime_string")),
        )
    )


def transform_physical_summary(summary: dict[str, Any]) -> PhysicalRecord:
    activity = _section(summary, "activity")
    calories = _section(summary, "calories")
    distance = _section(summary, "distance")
    metadata = _section(summary, "metadata")

    return PhysicalRecord.model_validate(
        _present(
            steps=_rounded(distance.get("steps_int")),
            distance_meters=_number(distance.get("traveled_distance_meters_float")),
            floors_climbed=_number(distance.get("floors_climbed_float")),
            calories_kcal=_rounded(calories.get("calories_expenditure_kcal_float")),
            active_calories_kcal=_rounded(calories.get("calories_net_active_kcal_float")),
            basal_metabolic_rate_kcal=_rounded(calories.get("calories_basal_metabolic_rate_kcal_float")),
            active_minutes=_minutes(activity.get("active_seconds_int")),
            moderate_intensity_minutes=_minutes(activity.get("moderate_intensity_seconds_int")),
            vigorous_intensity_minutes=_minutes(activity.get("vigorous_intensity_seconds_int")),
            activity_score=_number(_dig(summary, "scores", "activity_score_1_100_score_int")),
            heart_rate=_heart_rate(_section(summary, "heart_rate")),
            last_updated=_timestamp(metadata.get("datetime_string")),
        )
    )


def _body_metrics(body_metrics: dict[str, Any]) -> dict[str, Any]:
    bmi = _number(body_metrics.get("bmi_float"))
    return _present(
        weight_kg=_number(body_metrics.get("weight_kg_float")),
        height_cm=_number(body_metrics.get("height_cm_int")),
        bmi=round(bmi, 2) if bmi is not None else None,
        body_fat_percentage=_number(body_metrics.get("fat_composition_percentage_int")),
        muscle_percentage=_number(body_metrics.get("muscle_composition_percentage_int")),
        water_percentage=_number(body_metrics.get("water_composition_percentage_int")),
        bone_percentage=_number(body_metrics.get("bone_composition_percentage_int")),
        waist_cm=_number(body_metrics.get("waist_circumference_cm_int")),
        hip_cm=_number(body_metrics.get("hip_circumference_cm_int")),
        chest_cm=_number(body_metrics.get("chest_circumference_cm_int")),
    )


def transform_body_summary(summary: dict[str, Any]) -> BodyRecord:
    blood_pressure = _dig(summary, "blood_pressure", "blood_pressure_avg_object")
    if not isinstance(blood_pressure, dict):
        blood_pressure = {}
    metadata = _section(summary, "metadata")

    pressure = _present(
        systolic_mmHg=_number(blood_pressure.get("systolic_mmHg_int")),
        diastolic_mmHg=_number(blood_pressure.get("diastolic_mmHg_int")),
    )

    return BodyRecord.model_validate(
        {
            **_body_metrics(_section(summary, "body_metrics")),
            **_present(
                blood_pressure=pressure or None,
                blood_glucose_mg_dl=_number(_dig(summary, "blood_glucose", "blood_glucose_avg_mg_per_dL_int")),
                water_intake_ml=_number(_dig(summary, "hydration", "water_total_consumption_mL_int")),
                last_updated=_timestamp(metadata.get("datetime_string")),
            ),
        }
    )


def transform_body_metrics_event(event: dict[str, Any]) -> BodyRecord:
    metadata = _section(event, "metadata")
    return BodyRecord.model_validate(
        {
            **_body_metrics(_section(event, "body_metrics")),
            **_present(last_updated=_timestamp(metadata.get("datetime_string"))),
        }
    )


def transform_activity_event(event: dict[str, Any]) -> ActivityEvent:
    activity = _section(event, "activity")
    calories = _section(event, "calories")
    heart_rate = _section(event, "heart_rate")
    metadata = _section(event, "metadata")

    return ActivityEvent.model_validate(
        _present(
            activity_type=_text(activity.get("activity_type_name_string")),
            start_time=_timestamp(activity.get("activity_start_datetime_string")),
            end_time=_timestamp(activity.get("activity_end_datetime_string")),
            duration_minutes=_minutes(activity.get("activity_duration_seconds_int")),
            calories_burned_kcal=_rounded(calories.get("calories_net_active_kcal_float")),
            distance_meters=_number(_dig(event, "distance", "traveled_distance_meters_float")),
            avg_heart_rate_bpm=_number(heart_rate.get("hr_avg_bpm_int")),
            max_heart_rate_bpm=_number(heart_rate.get("hr_maximum_bpm_int")),
            last_updated=_timestamp(metadata.get("datetime_string")),
        )
    )


def _sleep(payload: dict[str, Any]) -> SleepRecord | None:
    summary = _dig(payload, "sleep_health", "summary", "sleep_summary")
    if not isinstance(summary, dict):
        logger.warning("[TRANSFORM] No sleep_summary found in payload")
        return None
    return transform_sleep_summary(summary)


def _physical(payload: dict[str, Any]) -> PhysicalRecord | None:
    summary = _dig(payload, "physical_health", "summary", "physical_summary")
    if not isinstance(summary, dict):
        logger.warning("[TRANSFORM] No physical_summary found in payload")
        return None
    return transform_physical_summary(summary)


def _body(payload: dict[str, Any]) -> BodyRecord | None:
    summary = _dig(payload, "body_health", "summary", "body_summary")
    if not isinstance(summary, dict):
        logger.warning("[TRANSFORM] No body_summary found in payload")
        return None
    return transform_body_summary(summary)


def _body_metrics_event(payload: dict[str, Any]) -> BodyRecord | None:
    events = _dig(payload, "body_health", "events", "body_metrics_event")
    if not isinstance(events, list) or not events or not isinstance(events[0], dict):
        logger.warning("[TRANSFORM] No body_metrics_event found in payload")
        return None
    # ROOK sends one measurement per event document
    return transform_body_metrics_event(events[0])


def _activity_events(payload: dict[str, Any]) -> list[ActivityEvent] | None:
    events = _dig(payload, "physical_health", "events", "activity_event")
    if not isinstance(events, list):
        logger.warning("[TRANSFORM] No activity_event found in payload")
        return None

    transformed: list[ActivityEvent] = []
    for raw_event in events:
        if not isinstance(raw_event, dict):
            continue
        event = transform_activity_event(raw_event)
        if event.start_time is None:
            logger.debug("[TRANSFORM] Dropping activity event without start time")
            continue
        transformed.append(event)
    return transformed


_TRANSFORMERS: dict[str, Callable[[dict[str, Any]], CanonicalFragment | None]] = {
    "sleep_summary": _sleep,
    "physical_summary": _physical,
    "body_summary": _body,
    "body_metrics_event": _body_metrics_event,
    "activity_event": _activity_events,
}


def transform(data_structure: str | None, payload: dict[str, Any]) -> CanonicalFragment | None:
    """Transform a provider payload into a canonical fragment.

    Args:
        data_structure: ROOK ``data_structure`` tag (e.g. "sleep_summary")
        payload: Raw webhook body, treated as opaque until narrowed here

    Returns:
        SleepRecord, PhysicalRecord, BodyRecord, a list of ActivityEvent, or
        None when the structure is unknown or its data section is missing.
    """
    transformer = _TRANSFORMERS.get(data_structure or "")
    if transformer is None:
        logger.warning(f"[TRANSFORM] Unknown data structure: {data_structure}")
        return None

    fragment = transformer(payload)
    if fragment is not None:
        fields = len(fragment) if isinstance(fragment, list) else len(fragment.model_dump(exclude_none=True))
        logger.debug(f"[TRANSFORM] {data_structure} transformed ({fields} field(s)/event(s))")
    return fragment
