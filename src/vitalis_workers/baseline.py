"""Rolling personal baselines over a user's recent sleep history.

Baselines are never stored; they are recomputed from the trailing sessions on
every scoring call. History is ordered most recent first.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from .utils import as_float, mean, population_std_dev

BASELINE_WINDOW = 14

# Population fallback for users without history: roughly 7.5h at 85% efficiency.
POPULATION_TOTAL_MINUTES = 450.0
POPULATION_EFFICIENCY = 85.0
POPULATION_HRV = 50.0
POPULATION_HRV_STD_DEV = 10.0

# Recovery baseline needs this many nights with each signal.
RECOVERY_MIN_SAMPLES = 5
HRV_STD_FLOOR = 5.0
RESTING_HR_STD_FLOOR = 3.0


@dataclass(frozen=True)
class PersonalBaseline:
    avg_total_minutes: float
    avg_efficiency: float
    avg_hrv: float
    hrv_std_dev: float
    sample_size: int

    @property
    def is_population_default(self) -> bool:
        return self.sample_size == 0


POPULATION_BASELINE = PersonalBaseline(
    avg_total_minutes=POPULATION_TOTAL_MINUTES,
    avg_efficiency=POPULATION_EFFICIENCY,
    avg_hrv=POPULATION_HRV,
    hrv_std_dev=POPULATION_HRV_STD_DEV,
    sample_size=0,
)


@dataclass(frozen=True)
class RecoveryBaseline:
    hrv_mean: float
    hrv_std_dev: float
    resting_hr_mean: float
    resting_hr_std_dev: float
    bedtime_minutes: float | None
    sample_size: int


def _field(session: Any, name: str) -> Any:
    if isinstance(session, dict):
        return session.get(name)
    return getattr(session, name, None)


def _efficiency(session: Any) -> float | None:
    stored = as_float(_field(session, "efficiency"))
    if stored is not None:
        return stored
    total = as_float(_field(session, "total_minutes"))
    in_bed = as_float(_field(session, "in_bed_minutes"))
    if total is None or not in_bed:
        return None
    return total / in_bed * 100


def _collect(sessions: Sequence[Any], getter) -> list[float]:
    values = []
    for session in sessions:
        value = getter(session)
        if value is not None:
            values.append(value)
    return values


def compute_personal_baseline(
    history: Sequence[Any], window: int = BASELINE_WINDOW
) -> PersonalBaseline:
    """Means over the most recent ``window`` sessions; population values where empty.

    Accepts ``SleepSession`` models or row dicts.
    """
    recent = list(history[: min(window, BASELINE_WINDOW)])
    if not recent:
        return POPULATION_BASELINE

    totals = _collect(recent, lambda s: as_float(_field(s, "total_minutes")))
    efficiencies = _collect(recent, _efficiency)
    hrvs = _collect(recent, lambda s: as_float(_field(s, "hrv_avg")))

    hrv_std = population_std_dev(hrvs) if len(hrvs) >= 2 else None

    return PersonalBaseline(
        avg_total_minutes=mean(totals) if totals else POPULATION_TOTAL_MINUTES,
        avg_efficiency=mean(efficiencies) if efficiencies else POPULATION_EFFICIENCY,
        avg_hrv=mean(hrvs) if hrvs else POPULATION_HRV,
        hrv_std_dev=hrv_std or POPULATION_HRV_STD_DEV,
        sample_size=len(recent),
    )


def bedtime_minutes(session: Any) -> float | None:
    """Clock time of ``bedtime`` in minutes after midnight."""
    bedtime = _field(session, "bedtime")
    if bedtime is None or not hasattr(bedtime, "hour"):
        return None
    return bedtime.hour * 60 + bedtime.minute


def circular_mean_minutes(values: Sequence[float]) -> float | None:
    """Mean clock time in minutes after midnight; 23:30 and 00:30 average to 00:00."""
    if not values:
        return None
    angles = [v / 1440 * 2 * math.pi for v in values]
    sin_sum = sum(math.sin(a) for a in angles)
    cos_sum = sum(math.cos(a) for a in angles)
    if abs(sin_sum) < 1e-9 and abs(cos_sum) < 1e-9:
        return None
    angle = math.atan2(sin_sum, cos_sum)
    if angle < 0:
        angle += 2 * math.pi
    return round(angle / (2 * math.pi) * 1440, 6) % 1440


def compute_recovery_baseline(
    history: Sequence[Any], window: int = BASELINE_WINDOW
) -> RecoveryBaseline | None:
    """HRV and resting-HR reference for recovery trends, or None with too little data."""
    recent = list(history[: min(window, BASELINE_WINDOW)])
    hrvs = _collect(recent, lambda s: as_float(_field(s, "hrv_avg")))
    rhrs = _collect(recent, lambda s: as_float(_field(s, "resting_hr")))
    if len(hrvs) < RECOVERY_MIN_SAMPLES or len(rhrs) < RECOVERY_MIN_SAMPLES:
        return None

    return RecoveryBaseline(
        hrv_mean=mean(hrvs),
        hrv_std_dev=max(HRV_STD_FLOOR, population_std_dev(hrvs) or 0.0),
        resting_hr_mean=mean(rhrs),
        resting_hr_std_dev=max(RESTING_HR_STD_FLOOR, population_std_dev(rhrs) or 0.0),
        bedtime_minutes=circular_mean_minutes(_collect(recent, bedtime_minutes)),
        sample_size=len(recent),
    )
