"""Health export ingestion core.

Flow: structural check -> shape detection -> per-shape normalize ->
in-batch collapse -> sleep enrichment. Pure: the handler owns all I/O.
"""

from __future__ import annotations

import hashlib
from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Literal

from .dedup import collapse_by_natural_key
from .errors import PartialIngestionError, ValidationError
from .export_mapping import DEFAULT_TABLES, MappingTables
from .export_shapes import (
    METRIC_NORMALIZERS,
    ShapeOutput,
    detect_metric_shape,
    detect_workout_shape,
    normalize_sleep_block,
    normalize_workout_block,
)
from .models import MetricSample, SleepSession, Workout

IngestionStatus = Literal["success", "partial", "failed"]

DUPLICATE_DELIVERY_NOTE = "Duplicate request - already processed"

# Sample stamps plus sleep bed-window bounds.
_POINT_TIME_KEYS: tuple[str, ...] = ("date", "sleepStart", "sleepEnd", "inBedStart", "inBedEnd")


@dataclass(frozen=True)
class NormalizedBatch:
    user_id: str
    metrics: tuple[MetricSample, ...]
    sleep_sessions: tuple[SleepSession, ...]
    workouts: tuple[Workout, ...]
    errors: tuple[PartialIngestionError, ...]
    warnings: tuple[str, ...]
    shape_counts: dict[str, int]
    collapsed_duplicates: int
    structural_error: ValidationError | None = None

    @property
    def record_count(self) -> int:
        return len(self.metrics) + len(self.sleep_sessions) + len(self.workouts)

    def affected_dates(self) -> list[date]:
        """Calendar dates whose daily score depends on this batch."""
        days = {s.sleep_date for s in self.sleep_sessions}
        days.update(w.started_at.date() for w in self.workouts)
        days.update(
            m.recorded_at.date() for m in self.metrics if m.metric_type == "steps"
        )
        return sorted(days)


@dataclass(frozen=True)
class IngestionResult:
    status: IngestionStatus
    # Rows actually written; natural-key duplicates only count as skipped.
    metrics_processed: int = 0
    sleep_sessions_processed: int = 0
    workouts_processed: int = 0
    duplicates_skipped: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    idempotency_key: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "metrics_processed": self.metrics_processed,
            "sleep_sessions_processed": self.sleep_sessions_processed,
            "workouts_processed": self.workouts_processed,
            "duplicates_skipped": self.duplicates_skipped,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


def _structural_failure(user_id: str, message: str, field_name: str) -> NormalizedBatch:
    return NormalizedBatch(
        user_id=user_id,
        metrics=(),
        sleep_sessions=(),
        workouts=(),
        errors=(),
        warnings=(),
        shape_counts={},
        collapsed_duplicates=0,
        structural_error=ValidationError(
            code="missing_data", message=message, field=field_name
        ),
    )


def _list_field(data: dict[str, Any], key: str) -> list[Any] | None:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        return None
    return value


def _mean_in_window(samples: list[MetricSample], session: SleepSession) -> float | None:
    values = [
        float(s.value)
        for s in samples
        if session.bedtime <= s.recorded_at <= session.wake_time
    ]
    if not values:
        return None
    return sum(values) / len(values)


def _enrich_sleep_sessions(
    sessions: list[SleepSession], metrics: list[MetricSample]
) -> list[SleepSession]:
    """Attach overnight HRV, resting HR and respiration from the same delivery."""
    by_type: dict[str, list[MetricSample]] = {}
    for sample in metrics:
        by_type.setdefault(sample.metric_type, []).append(sample)

    enriched: list[SleepSession] = []
    for session in sessions:
        updates: dict[str, Any] = {}
        hrv = _mean_in_window(by_type.get("hrv", []), session)
        if hrv is not None and session.hrv_avg is None:
            updates["hrv_avg"] = round(hrv, 1)
        rhr = _mean_in_window(by_type.get("resting_heart_rate", []), session)
        if rhr is not None and session.resting_hr is None:
            updates["resting_hr"] = round(rhr)
        resp = _mean_in_window(by_type.get("respiratory_rate", []), session)
        if resp is not None and session.respiratory_rate is None:
            updates["respiratory_rate"] = round(resp, 1)
        enriched.append(session.model_copy(update=updates) if updates else session)
    return enriched


def normalize_health_export(
    user_id: str,
    raw_payload: Any,
    tables: MappingTables = DEFAULT_TABLES,
) -> NormalizedBatch:
    """Turn one webhook body into canonical records plus per-record errors."""
    if not isinstance(raw_payload, dict) or not isinstance(raw_payload.get("data"), dict):
        return _structural_failure(user_id, "Payload is missing required 'data' object", "data")

    data = raw_payload["data"]
    collections = _list_field(data, "metrics")
    workout_entries = _list_field(data, "workouts")
    if collections is None:
        return _structural_failure(user_id, "'data.metrics' must be a list", "data.metrics")
    if workout_entries is None:
        return _structural_failure(user_id, "'data.workouts' must be a list", "data.workouts")

    out = ShapeOutput()
    shapes: Counter[str] = Counter()

    for index, collection in enumerate(collections):
        shape = detect_metric_shape(collection, tables)
        shapes[shape] += 1
        name = collection.get("name") if isinstance(collection, dict) else None
        label = name if isinstance(name, str) else f"metrics[{index}]"

        if shape == "sleep_block":
            out.extend(normalize_sleep_block(user_id, collection, tables))
            continue
        if shape == "unrecognized":
            out.errors.append(
                PartialIngestionError(
                    code="unrecognized_shape",
                    message=f"Metric {label}: unrecognized collection shape",
                    record_type="metric",
                )
            )
            continue

        metric_type = tables.metric_type_for(label)
        if metric_type is None:
            out.errors.append(
                PartialIngestionError(
                    code="unmapped_metric",
                    message=f"Unmapped metric (not stored): {label}",
                    record_type="metric",
                    field="name",
                )
            )
            continue
        out.extend(METRIC_NORMALIZERS[shape](user_id, collection, metric_type, tables))

    for index, entry in enumerate(workout_entries):
        shape = detect_workout_shape(entry)
        shapes[shape] += 1
        if shape == "unrecognized":
            out.errors.append(
                PartialIngestionError(
                    code="unrecognized_shape",
                    message=f"Workout[{index}]: start and end are required",
                    record_type="workout",
                )
            )
            continue
        out.extend(normalize_workout_block(user_id, entry, tables))

    metrics, dropped_metrics = collapse_by_natural_key(out.metrics)
    sessions, dropped_sessions = collapse_by_natural_key(out.sleep_sessions)
    workouts, dropped_workouts = collapse_by_natural_key(out.workouts)

    return NormalizedBatch(
        user_id=user_id,
        metrics=tuple(metrics),
        sleep_sessions=tuple(_enrich_sleep_sessions(sessions, metrics)),
        workouts=tuple(workouts),
        errors=tuple(out.errors),
        warnings=tuple(out.warnings),
        shape_counts=dict(shapes),
        collapsed_duplicates=dropped_metrics + dropped_sessions + dropped_workouts,
    )


def determine_status(batch: NormalizedBatch, storage_failures: int = 0) -> IngestionStatus:
    """success: no errors. partial: some records failed. failed: nothing usable.

    ``storage_failures`` counts normalized records the store then rejected.
    """
    if batch.structural_error is not None:
        return "failed"
    has_errors = bool(batch.errors) or storage_failures > 0
    if has_errors and batch.record_count - storage_failures <= 0:
        return "failed"
    if has_errors:
        return "partial"
    return "success"


def delivery_timestamps(raw_payload: Any) -> list[str]:
    """Every sample and workout timestamp string in the payload."""
    if not isinstance(raw_payload, dict) or not isinstance(raw_payload.get("data"), dict):
        return []
    data = raw_payload["data"]
    stamps: list[str] = []
    for collection in data.get("metrics") or []:
        if not isinstance(collection, dict):
            continue
        for point in collection.get("data") or []:
            if not isinstance(point, dict):
                continue
            for key in _POINT_TIME_KEYS:
                if point.get(key) is not None:
                    stamps.append(str(point[key]))
    for entry in data.get("workouts") or []:
        if not isinstance(entry, dict):
            continue
        for key in ("start", "end"):
            if entry.get(key) is not None:
                stamps.append(str(entry[key]))
    return stamps


def delivery_idempotency_key(user_id: str, raw_payload: Any) -> str:
    """Order-insensitive key for one delivery: sha256 over user and timestamps."""
    content = f"{user_id}:{','.join(sorted(delivery_timestamps(raw_payload)))}"
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:32]
