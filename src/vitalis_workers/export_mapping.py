"""Lookup tables for Health Auto Export payloads.

Tables are read-only (``MappingProxyType`` inside a frozen dataclass) and are
passed into the normalizer explicitly. Tests and alternative providers build
their own with ``build_mapping_tables``.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import Decimal
from types import MappingProxyType
from typing import Literal

from .utils import round_half_up

UnitTransform = Literal[
    "identity",
    "kj_to_kcal",
    "m_to_km",
    "mi_to_km",
    "fraction_to_percent",
]

_KJ_TO_KCAL = Decimal("0.239005736")
_MI_TO_KM = Decimal("1.609344")
_CONVERTED_PRECISION = Decimal("0.0001")

# Stage values below this are hours (older exporter versions), otherwise minutes.
SLEEP_HOURS_CEILING = 24


@dataclass(frozen=True)
class UnitRule:
    metric_type: str
    source_unit: str
    target_unit: str
    transform: UnitTransform


@dataclass(frozen=True)
class MappingTables:
    version: str
    metric_types: Mapping[str, str]
    workout_types: Mapping[str, str]
    cumulative_metrics: frozenset[str]
    sleep_metric_names: frozenset[str]
    unit_rules: Mapping[tuple[str, str], UnitRule]
    default_workout_type: str = "other"
    source: str = "apple_health"

    def metric_type_for(self, external_name: str) -> str | None:
        return self.metric_types.get(external_name.strip())

    def workout_type_for(self, external_name: str | None) -> str:
        if not external_name:
            return self.default_workout_type
        return self.workout_types.get(external_name.strip(), self.default_workout_type)

    def is_cumulative(self, metric_type: str) -> bool:
        return metric_type in self.cumulative_metrics

    def is_sleep_metric(self, external_name: str) -> bool:
        return external_name.strip() in self.sleep_metric_names

    def unit_rule(self, metric_type: str, unit: str | None) -> UnitRule | None:
        return self.unit_rules.get((metric_type, (unit or "").strip().lower()))


def build_mapping_tables(
    *,
    version: str,
    metric_types: Mapping[str, str],
    workout_types: Mapping[str, str],
    cumulative_metrics: Iterable[str],
    sleep_metric_names: Iterable[str],
    unit_rules: Iterable[UnitRule] = (),
    default_workout_type: str = "other",
    source: str = "apple_health",
) -> MappingTables:
    return MappingTables(
        version=version,
        metric_types=MappingProxyType(dict(metric_types)),
        workout_types=MappingProxyType(dict(workout_types)),
        cumulative_metrics=frozenset(cumulative_metrics),
        sleep_metric_names=frozenset(sleep_metric_names),
        unit_rules=MappingProxyType(
            {(rule.metric_type, rule.source_unit.lower()): rule for rule in unit_rules}
        ),
        default_workout_type=default_workout_type,
        source=source,
    )


_METRIC_TYPES: dict[str, str] = {
    # HRV
    "heart_rate_variability_sdnn": "hrv",
    "heartRateVariabilitySDNN": "hrv",
    "heart_rate_variability": "hrv",
    "heartRateVariability": "hrv",
    "hrv": "hrv",
    "HRV": "hrv",
    # heart rate
    "resting_heart_rate": "resting_heart_rate",
    "restingHeartRate": "resting_heart_rate",
    "heart_rate": "heart_rate",
    "heartRate": "heart_rate",
    "walking_heart_rate_average": "walking_heart_rate",
    "walkingHeartRateAverage": "walking_heart_rate",
    # activity
    "step_count": "steps",
    "stepCount": "steps",
    "steps": "steps",
    "walking_running_distance": "distance",
    "walkingRunningDistance": "distance",
    "flights_climbed": "flights_climbed",
    "flightsClimbed": "flights_climbed",
    "apple_exercise_time": "exercise_minutes",
    "appleExerciseTime": "exercise_minutes",
    "apple_stand_hour": "stand_hours",
    "appleStandHour": "stand_hours",
    # energy
    "active_energy_burned": "calories_active",
    "activeEnergyBurned": "calories_active",
    "active_energy": "calories_active",
    "activeEnergy": "calories_active",
    "basal_energy_burned": "calories_basal",
    "basalEnergyBurned": "calories_basal",
    # respiration
    "respiratory_rate": "respiratory_rate",
    "respiratoryRate": "respiratory_rate",
    "blood_oxygen_saturation": "blood_oxygen",
    "bloodOxygenSaturation": "blood_oxygen",
    "oxygen_saturation": "blood_oxygen",
    "oxygenSaturation": "blood_oxygen",
}

_WORKOUT_TYPES: dict[str, str] = {
    "Running": "running",
    "Outdoor Run": "running",
    "Indoor Run": "running",
    "Treadmill Run": "running",
    "Cycling": "cycling",
    "Indoor Cycling": "cycling",
    "Outdoor Cycling": "cycling",
    "Swimming": "swimming",
    "Pool Swim": "swimming",
    "Open Water Swim": "swimming",
    "Yoga": "yoga",
    "Pilates": "yoga",
    "HIIT": "hiit",
    "High Intensity Interval Training": "hiit",
    "Functional Strength Training": "strength",
    "Traditional Strength Training": "strength",
    "Core Training": "strength",
    "Walking": "walking",
    "Outdoor Walk": "walking",
    "Hiking": "walking",
    "Soccer": "sports",
    "Tennis": "sports",
    "Basketball": "sports",
    "Elliptical": "other",
    "Rowing": "other",
    "Stair Climbing": "other",
    "Cross Training": "other",
    "Dance": "other",
    "Cooldown": "other",
}

_CUMULATIVE_METRICS = (
    "steps",
    "calories_active",
    "calories_basal",
    "distance",
    "exercise_minutes",
    "flights_climbed",
    "stand_hours",
)

_UNIT_RULES = (
    UnitRule("calories_active", "kJ", "kcal", "kj_to_kcal"),
    UnitRule("calories_basal", "kJ", "kcal", "kj_to_kcal"),
    UnitRule("distance", "m", "km", "m_to_km"),
    UnitRule("distance", "mi", "km", "mi_to_km"),
    UnitRule("blood_oxygen", "%", "%", "fraction_to_percent"),
)

DEFAULT_TABLES = build_mapping_tables(
    version="health_auto_export.v1",
    metric_types=_METRIC_TYPES,
    workout_types=_WORKOUT_TYPES,
    cumulative_metrics=_CUMULATIVE_METRICS,
    sleep_metric_names=("sleep_analysis", "sleepAnalysis"),
    unit_rules=_UNIT_RULES,
)


def convert_unit(
    metric_type: str,
    value: Decimal,
    unit: str | None,
    tables: MappingTables,
) -> tuple[Decimal, str | None]:
    """Return (value, unit) in the canonical unit for ``metric_type``."""
    rule = tables.unit_rule(metric_type, unit)
    if rule is None or rule.transform == "identity":
        return value, unit

    if rule.transform == "kj_to_kcal":
        converted = value * _KJ_TO_KCAL
    elif rule.transform == "m_to_km":
        converted = value / 1000
    elif rule.transform == "mi_to_km":
        converted = value * _MI_TO_KM
    elif rule.transform == "fraction_to_percent":
        # Some exporters send SpO2 as 0.97 with a "%" unit.
        if value > 1:
            return value, rule.target_unit
        converted = value * 100
    else:
        raise ValueError(f"Unknown unit transform: {rule.transform}")

    return converted.quantize(_CONVERTED_PRECISION), rule.target_unit


def sleep_minutes(value: float | int | None) -> int:
    """Sleep stage duration in whole minutes. Values under 24 are hours."""
    if not value:
        return 0
    numeric = float(value)
    if numeric < SLEEP_HOURS_CEILING:
        numeric *= 60
    return round_half_up(numeric)
