"""Payload shapes for Health Auto Export collections.

A collection is classified by the keys its points carry. Each shape has its
own normalizer. Anything that matches no known shape is reported as an error
entry by the caller; classification itself never raises.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Literal

from pydantic import ValidationError as PydanticValidationError

from .errors import PartialIngestionError
from .export_mapping import MappingTables, convert_unit, sleep_minutes
from .models import MetricSample, SleepSession, Workout
from .utils import as_float, parse_export_timestamp, round_half_up

PayloadShape = Literal[
    "instantaneous",
    "aggregated",
    "sleep_block",
    "workout_block",
    "unrecognized",
]

# Bedtimes before this local hour belong to the previous evening's night.
NIGHT_ROLLOVER_HOUR = 6
# Whole-day aggregates are stamped at 00:00:00 UTC of their calendar date.
DAY_SENTINEL_TIME = time(0, 0, tzinfo=UTC)
# Allowed |total + awake - in_bed| before a warning is recorded.
SLEEP_MINUTES_TOLERANCE = 5

_AGGREGATE_VALUE_KEYS: tuple[str, ...] = ("sum", "total", "Avg", "avg")
_AGGREGATE_MARKER_KEYS: frozenset[str] = frozenset(
    {"Avg", "Min", "Max", "avg", "min", "max", "sum", "total"}
)
_SLEEP_MARKER_KEYS: frozenset[str] = frozenset(
    {"sleepStart", "sleepEnd", "inBed", "inBedStart", "asleep", "totalSleep"}
)


@dataclass
class ShapeOutput:
    metrics: list[MetricSample] = field(default_factory=list)
    sleep_sessions: list[SleepSession] = field(default_factory=list)
    workouts: list[Workout] = field(default_factory=list)
    errors: list[PartialIngestionError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def extend(self, other: "ShapeOutput") -> None:
        self.metrics.extend(other.metrics)
        self.sleep_sessions.extend(other.sleep_sessions)
        self.workouts.extend(other.workouts)
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)


def _points(collection: dict[str, Any]) -> list[dict[str, Any]]:
    data = collection.get("data")
    if not isinstance(data, list):
        return []
    return [p for p in data if isinstance(p, dict)]


def _is_local_midnight(value: Any) -> bool:
    parsed = parse_export_timestamp(value)
    if parsed is None:
        return False
    return (parsed.hour, parsed.minute, parsed.second, parsed.microsecond) == (0, 0, 0, 0)


def detect_metric_shape(collection: Any, tables: MappingTables) -> PayloadShape:
    """Classify one entry of ``data.metrics``."""
    if not isinstance(collection, dict):
        return "unrecognized"
    name = collection.get("name")
    points = _points(collection)
    if not isinstance(name, str) or not points:
        return "unrecognized"

    keys: set[str] = set()
    for point in points:
        keys.update(point.keys())

    if tables.is_sleep_metric(name) or keys & _SLEEP_MARKER_KEYS:
        return "sleep_block"
    if "date" not in keys:
        return "unrecognized"
    if collection.get("aggregation") == "day" or keys & _AGGREGATE_MARKER_KEYS:
        return "aggregated"
    if "qty" in keys:
        metric_type = tables.metric_type_for(name)
        # "Aggregate by day" exports stamp cumulative totals at local midnight.
        if (
            metric_type is not None
            and tables.is_cumulative(metric_type)
            and all(_is_local_midnight(p.get("date")) for p in points)
        ):
            return "aggregated"
        return "instantaneous"
    return "unrecognized"


def detect_workout_shape(entry: Any) -> PayloadShape:
    """Classify one entry of ``data.workouts``."""
    if not isinstance(entry, dict):
        return "unrecognized"
    if "start" in entry and "end" in entry:
        return "workout_block"
    return "unrecognized"


def _to_decimal(value: Any) -> Decimal | None:
    numeric = as_float(value)
    if numeric is None:
        return None
    try:
        return Decimal(str(numeric))
    except InvalidOperation:
        return None


def _metric_error(code: str, message: str, field_name: str | None = None) -> PartialIngestionError:
    return PartialIngestionError(
        code=code, message=message, record_type="metric", field=field_name
    )


def _build_sample(
    user_id: str,
    metric_type: str,
    raw_value: Decimal,
    unit: str | None,
    recorded_at: datetime,
    metadata: dict[str, Any],
    tables: MappingTables,
) -> MetricSample:
    value, canonical_unit = convert_unit(metric_type, raw_value, unit, tables)
    return MetricSample(
        user_id=user_id,
        metric_type=metric_type,
        value=value,
        unit=canonical_unit,
        source=tables.source,
        recorded_at=recorded_at,
        metadata=metadata,
    )


def normalize_instantaneous(
    user_id: str,
    collection: dict[str, Any],
    metric_type: str,
    tables: MappingTables,
) -> ShapeOutput:
    out = ShapeOutput()
    name = collection["name"]
    unit = collection.get("units")
    round_to_minute = tables.is_cumulative(metric_type)

    for index, point in enumerate(_points(collection)):
        value = _to_decimal(point.get("qty"))
        if value is None:
            out.errors.append(
                _metric_error("invalid_value", f"Metric {name}[{index}]: qty is not numeric", "qty")
            )
            continue
        parsed = parse_export_timestamp(point.get("date"))
        if parsed is None:
            out.errors.append(
                _metric_error("invalid_timestamp", f"Metric {name}[{index}]: unparseable date", "date")
            )
            continue

        recorded_at = parsed.astimezone(UTC)
        if round_to_minute:
            # Re-exports of the same cumulative sample jitter by a few seconds.
            recorded_at = recorded_at.replace(second=0, microsecond=0)

        try:
            out.metrics.append(
                _build_sample(
                    user_id,
                    metric_type,
                    value,
                    unit,
                    recorded_at,
                    {"original_name": name, "original_source": point.get("source")},
                    tables,
                )
            )
        except PydanticValidationError as exc:
            out.errors.append(_metric_error("invalid_value", f"Metric {name}[{index}]: {exc}"))
    return out


def normalize_aggregated(
    user_id: str,
    collection: dict[str, Any],
    metric_type: str,
    tables: MappingTables,
) -> ShapeOutput:
    out = ShapeOutput()
    name = collection["name"]
    unit = collection.get("units")

    for index, point in enumerate(_points(collection)):
        raw = point.get("qty")
        if raw is None:
            raw = next((point[k] for k in _AGGREGATE_VALUE_KEYS if point.get(k) is not None), None)
        value = _to_decimal(raw)
        if value is None:
            out.errors.append(
                _metric_error("invalid_value", f"Metric {name}[{index}]: no aggregate value", "qty")
            )
            continue
        parsed = parse_export_timestamp(point.get("date"))
        if parsed is None:
            out.errors.append(
                _metric_error("invalid_timestamp", f"Metric {name}[{index}]: unparseable date", "date")
            )
            continue

        # The device's calendar date, not the UTC date of its local midnight.
        recorded_at = datetime.combine(parsed.date(), DAY_SENTINEL_TIME)
        metadata: dict[str, Any] = {
            "original_name": name,
            "original_source": point.get("source"),
            "aggregation": "day",
        }
        for bound in ("Min", "Max", "min", "max"):
            if as_float(point.get(bound)) is not None:
                metadata[bound.lower()] = as_float(point.get(bound))

        try:
            out.metrics.append(
                _build_sample(user_id, metric_type, value, unit, recorded_at, metadata, tables)
            )
        except PydanticValidationError as exc:
            out.errors.append(_metric_error("invalid_value", f"Metric {name}[{index}]: {exc}"))
    return out


def sleep_date_for(bedtime: datetime) -> date:
    """Night a bed period belongs to: bedtimes after midnight count for the evening before."""
    night = bedtime.date()
    if bedtime.hour < NIGHT_ROLLOVER_HOUR:
        night -= timedelta(days=1)
    return night


def _sleep_error(code: str, message: str, field_name: str | None = None) -> PartialIngestionError:
    return PartialIngestionError(
        code=code, message=message, record_type="sleep_session", field=field_name
    )


def normalize_sleep_block(
    user_id: str,
    collection: dict[str, Any],
    tables: MappingTables,
) -> ShapeOutput:
    out = ShapeOutput()

    for index, point in enumerate(_points(collection)):
        start_raw = point.get("sleepStart") or point.get("inBedStart")
        end_raw = point.get("sleepEnd") or point.get("inBedEnd")
        if not start_raw or not end_raw:
            out.errors.append(
                _sleep_error(
                    "missing_field",
                    f"Sleep[{index}]: sleepStart and sleepEnd are required",
                    "sleepStart" if not start_raw else "sleepEnd",
                )
            )
            continue
        bedtime = parse_export_timestamp(start_raw)
        wake_time = parse_export_timestamp(end_raw)
        if bedtime is None or wake_time is None:
            out.errors.append(
                _sleep_error("invalid_timestamp", f"Sleep[{index}]: unparseable bed window")
            )
            continue

        in_bed = round_half_up((wake_time - bedtime).total_seconds() / 60)
        if in_bed <= 0:
            in_bed = sleep_minutes(point.get("inBed"))

        deep = sleep_minutes(point.get("deep"))
        rem = sleep_minutes(point.get("rem"))
        light = sleep_minutes(point.get("core"))
        asleep = point.get("asleep") or point.get("totalSleep")
        total = sleep_minutes(asleep) if asleep else deep + rem + light
        awake = sleep_minutes(point.get("awake")) or max(0, in_bed - total)

        try:
            session = SleepSession(
                user_id=user_id,
                sleep_date=sleep_date_for(bedtime),
                bedtime=bedtime,
                wake_time=wake_time,
                total_minutes=total,
                in_bed_minutes=in_bed,
                deep_sleep_minutes=deep,
                rem_sleep_minutes=rem,
                light_sleep_minutes=light,
                awake_minutes=awake,
                sleep_latency_minutes=0,
                source=tables.source,
                metadata={"original_source": point.get("source")},
            )
        except PydanticValidationError as exc:
            out.errors.append(_sleep_error("invalid_value", f"Sleep[{index}]: {exc}"))
            continue

        gap = session.minutes_disagreement()
        if gap is not None and gap > SLEEP_MINUTES_TOLERANCE:
            out.warnings.append(
                f"Sleep {session.sleep_date.isoformat()}: total+awake differs from in-bed by {gap} min"
            )
        out.sleep_sessions.append(session)
    return out


def _heart_rate_summary(entry: dict[str, Any]) -> tuple[int | None, int | None]:
    avg_block = entry.get("avgHeartRate")
    max_block = entry.get("maxHeartRate")
    if isinstance(avg_block, dict) or isinstance(max_block, dict):
        avg = as_float(avg_block.get("qty")) if isinstance(avg_block, dict) else None
        peak = as_float(max_block.get("qty")) if isinstance(max_block, dict) else None
        return (
            round_half_up(avg) if avg is not None else None,
            round_half_up(peak) if peak is not None else None,
        )

    series = entry.get("heartRateData")
    if not isinstance(series, list):
        return None, None
    avgs: list[float] = []
    peaks: list[float] = []
    for sample in series:
        if not isinstance(sample, dict):
            continue
        qty = as_float(sample.get("qty"))
        if qty is None:
            qty = as_float(sample.get("Avg"))
        if qty is not None:
            avgs.append(qty)
        peak = as_float(sample.get("Max"))
        if peak is None:
            peak = qty
        if peak is not None:
            peaks.append(peak)
    if not avgs:
        return None, None
    return round_half_up(sum(avgs) / len(avgs)), round_half_up(max(peaks))


def _calories(entry: dict[str, Any]) -> int | None:
    block = entry.get("activeEnergyBurned") or entry.get("activeEnergy")
    if not isinstance(block, dict):
        return None
    qty = as_float(block.get("qty"))
    if not qty:
        return None
    if str(block.get("units") or "").strip().lower() == "kj":
        qty *= 0.239005736
    return round_half_up(qty)


def _workout_error(code: str, message: str, field_name: str | None = None) -> PartialIngestionError:
    return PartialIngestionError(
        code=code, message=message, record_type="workout", field=field_name
    )


def normalize_workout_block(
    user_id: str,
    entry: dict[str, Any],
    tables: MappingTables,
) -> ShapeOutput:
    out = ShapeOutput()
    name = entry.get("name") if isinstance(entry.get("name"), str) else None
    label = name or "unnamed"

    started_at = parse_export_timestamp(entry.get("start"))
    ended_at = parse_export_timestamp(entry.get("end"))
    if started_at is None or ended_at is None:
        out.errors.append(
            _workout_error("invalid_timestamp", f"Workout {label}: unparseable start/end")
        )
        return out

    duration_seconds = as_float(entry.get("duration"))
    if duration_seconds:
        duration = round_half_up(duration_seconds / 60)
    else:
        duration = round_half_up((ended_at - started_at).total_seconds() / 60)

    heart_rate_avg, heart_rate_max = _heart_rate_summary(entry)

    try:
        out.workouts.append(
            Workout(
                user_id=user_id,
                type=tables.workout_type_for(name),
                name=name,
                duration_minutes=duration,
                calories_burned=_calories(entry),
                heart_rate_avg=heart_rate_avg,
                heart_rate_max=heart_rate_max,
                started_at=started_at,
                ended_at=ended_at,
                metadata={
                    "source": tables.source,
                    "original_id": entry.get("id"),
                    "original_source": entry.get("source"),
                },
            )
        )
    except PydanticValidationError as exc:
        out.errors.append(_workout_error("invalid_value", f"Workout {label}: {exc}"))
    return out


MetricNormalizer = Callable[[str, dict[str, Any], str, MappingTables], ShapeOutput]

METRIC_NORMALIZERS: dict[PayloadShape, MetricNormalizer] = {
    "instantaneous": normalize_instantaneous,
    "aggregated": normalize_aggregated,
}
