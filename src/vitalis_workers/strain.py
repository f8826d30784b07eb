"""Workout strain on a 0-21 load scale.

Heart-rate workouts use Banister TRIMP with log scaling. Workouts without
heart rate fall back to duration x type intensity, nudged by calories.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Literal

from .models import Workout
from .utils import clamp, round1, round_half_up

Sex = Literal["male", "female"]

MAX_STRAIN = 21.0
STRAIN_LOG_SCALE = 3.5
NON_HR_DAILY_WEIGHT = 0.7
DEFAULT_RESTING_HR = 60
DEFAULT_MAX_HR = 190

# Banister coefficients (a, b) for a * e^(b * hr_reserve).
_BANISTER: dict[Sex, tuple[float, float]] = {
    "male": (0.64, 1.92),
    "female": (0.86, 1.67),
}

_DEFAULT_INTENSITY: dict[str, float] = {
    "hiit": 1.0,
    "running": 0.85,
    "cycling": 0.75,
    "swimming": 0.80,
    "strength": 0.65,
    "sports": 0.75,
    "yoga": 0.35,
    "walking": 0.40,
    "other": 0.60,
}


@dataclass(frozen=True)
class AthleteProfile:
    age: int | None = None
    sex: Sex = "male"
    resting_hr: int | None = None
    max_hr: int | None = None


@dataclass(frozen=True)
class StrainModel:
    intensity: Mapping[str, float] = field(
        default_factory=lambda: MappingProxyType(dict(_DEFAULT_INTENSITY))
    )
    default_intensity: float = 0.60
    calories_per_minute_baseline: float = 8.0


DEFAULT_STRAIN_MODEL = StrainModel()


def estimate_max_hr(age: int) -> int:
    """Tanaka: 208 - 0.7 * age."""
    return round_half_up(208 - 0.7 * age)


def trimp(duration_minutes: float, hr_avg: float, hr_rest: float, hr_max: float, sex: Sex = "male") -> float:
    if hr_max <= hr_rest:
        return 0.0
    reserve = (hr_avg - hr_rest) / (hr_max - hr_rest)
    a, b = _BANISTER[sex]
    return max(0.0, duration_minutes * reserve * a * math.exp(b * reserve))


def trimp_to_strain(load: float) -> float:
    if load <= 0:
        return 0.0
    return clamp(round1(STRAIN_LOG_SCALE * math.log(load + 1)), 0.0, MAX_STRAIN)


def strain_without_hr(workout: Workout, model: StrainModel = DEFAULT_STRAIN_MODEL) -> float:
    multiplier = model.intensity.get(workout.type, model.default_intensity)
    base = workout.duration_minutes / 60 * 10 * multiplier
    if workout.calories_burned and workout.duration_minutes > 0:
        factor = workout.calories_burned / (
            workout.duration_minutes * model.calories_per_minute_baseline
        )
        base *= clamp(factor, 0.5, 1.5)
    return clamp(round1(base), 0.0, MAX_STRAIN)


def _hr_bounds(profile: AthleteProfile) -> tuple[int, int]:
    rest = profile.resting_hr or DEFAULT_RESTING_HR
    if profile.max_hr:
        peak = profile.max_hr
    elif profile.age:
        peak = estimate_max_hr(profile.age)
    else:
        peak = DEFAULT_MAX_HR
    return rest, peak


def workout_trimp(workout: Workout, profile: AthleteProfile) -> float | None:
    if not workout.heart_rate_avg:
        return None
    rest, peak = _hr_bounds(profile)
    return trimp(workout.duration_minutes, workout.heart_rate_avg, rest, peak, profile.sex)


def daily_strain(
    workouts: Sequence[Workout],
    profile: AthleteProfile = AthleteProfile(),
    model: StrainModel = DEFAULT_STRAIN_MODEL,
) -> float:
    """Combined 0-21 strain for all of a day's workouts."""
    if not workouts:
        return 0.0

    total_trimp = 0.0
    estimated = 0.0
    has_hr = False
    for workout in workouts:
        load = workout_trimp(workout, profile)
        if load is not None:
            total_trimp += round_half_up(load)
            has_hr = True
        else:
            estimated += strain_without_hr(workout, model)

    if has_hr:
        combined = trimp_to_strain(total_trimp) + estimated * NON_HR_DAILY_WEIGHT
    else:
        # Diminishing returns for several untracked sessions.
        combined = math.sqrt(len(workouts)) * (estimated / len(workouts))
    return clamp(round1(combined), 0.0, MAX_STRAIN)
