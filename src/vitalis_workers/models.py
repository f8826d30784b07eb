"""Canonical health records.

Ingestion and manual entry both produce these before anything touches the
store. Records are immutable once validated. Timestamps are normalized to
UTC; naive datetimes are treated as UTC.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _non_empty(value: str, *, field_name: str) -> str:
    cleaned = value.strip()
    if not cleaned:
        raise ValueError(f"{field_name} must not be empty")
    return cleaned


class MetricSample(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    metric_type: str
    value: Decimal
    unit: str | None = None
    source: str = "apple_health"
    recorded_at: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("recorded_at")
    @classmethod
    def normalize_recorded_at(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @field_validator("value")
    @classmethod
    def validate_finite(cls, value: Decimal) -> Decimal:
        if not value.is_finite():
            raise ValueError("value must be finite")
        return value

    @property
    def natural_key(self) -> tuple[str, str, datetime]:
        return (self.user_id, self.metric_type, self.recorded_at)


class SleepSession(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    sleep_date: date
    bedtime: datetime
    wake_time: datetime
    total_minutes: int = Field(ge=0)
    in_bed_minutes: int = Field(ge=0)
    deep_sleep_minutes: int | None = Field(default=None, ge=0)
    rem_sleep_minutes: int | None = Field(default=None, ge=0)
    light_sleep_minutes: int | None = Field(default=None, ge=0)
    awake_minutes: int | None = Field(default=None, ge=0)
    sleep_latency_minutes: int | None = Field(default=None, ge=0)
    hrv_avg: float | None = Field(default=None, ge=0)
    resting_hr: int | None = Field(default=None, ge=0)
    respiratory_rate: float | None = Field(default=None, ge=0)
    sleep_score: int | None = Field(default=None, ge=0, le=100)
    efficiency: float | None = Field(default=None, ge=0)
    source: str = "manual"
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("bedtime", "wake_time")
    @classmethod
    def normalize_times(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @field_validator("source")
    @classmethod
    def validate_source(cls, value: str) -> str:
        return _non_empty(value, field_name="source").lower()

    @model_validator(mode="after")
    def validate_bed_window(self) -> "SleepSession":
        if self.wake_time < self.bedtime:
            raise ValueError("wake_time must be >= bedtime")
        return self

    @property
    def natural_key(self) -> tuple[str, date, str]:
        return (self.user_id, self.sleep_date, self.source)

    def computed_efficiency(self) -> float | None:
        """Asleep share of time in bed, in percent with one decimal."""
        if self.in_bed_minutes <= 0:
            return None
        return round(self.total_minutes / self.in_bed_minutes * 100, 1)

    def minutes_disagreement(self) -> int | None:
        """|total + awake - in_bed|, or None when awake time is unknown."""
        if self.awake_minutes is None:
            return None
        return abs(self.total_minutes + self.awake_minutes - self.in_bed_minutes)


class Workout(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    type: str
    name: str | None = None
    duration_minutes: int = Field(ge=0)
    calories_burned: int | None = Field(default=None, ge=0)
    heart_rate_avg: int | None = Field(default=None, ge=0)
    heart_rate_max: int | None = Field(default=None, ge=0)
    started_at: datetime
    ended_at: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("type")
    @classmethod
    def validate_type(cls, value: str) -> str:
        return _non_empty(value, field_name="type").lower()

    @field_validator("started_at", "ended_at")
    @classmethod
    def normalize_times(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @model_validator(mode="after")
    def validate_window(self) -> "Workout":
        if self.ended_at < self.started_at:
            raise ValueError("ended_at must be >= started_at")
        return self

    @property
    def natural_key(self) -> tuple[str, datetime, str]:
        return (self.user_id, self.started_at, self.type)


class BloodMarker(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    value: float = Field(allow_inf_nan=False)
    unit: str
    category: str | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        return _non_empty(value, field_name="marker.name")

    @field_validator("unit")
    @classmethod
    def normalize_unit(cls, value: str) -> str:
        return value.strip()


class BloodWorkSubmission(BaseModel):
    model_config = ConfigDict(frozen=True)

    test_date: date
    lab_name: str | None = None
    markers: list[BloodMarker] = Field(min_length=1)

    @field_validator("lab_name")
    @classmethod
    def normalize_lab_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None
