"""Daily composite scores: sleep, recovery, strain and readiness for one date.

Pure and deterministic: identical inputs give an identical result, so the
upsert by (user_id, date) is idempotent. A missing sleep session yields no
sleep, recovery or readiness score; strain is always computed.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date
from types import MappingProxyType
from typing import Any

from .baseline import POPULATION_BASELINE, PersonalBaseline, RecoveryBaseline, bedtime_minutes
from .models import SleepSession, Workout
from .sleep_scoring import score_sleep
from .strain import DEFAULT_STRAIN_MODEL, AthleteProfile, StrainModel, daily_strain
from .utils import as_float, clamp, round1, round_half_up

SLEEP_WEIGHT_IN_RECOVERY = 0.6
READINESS_RECOVERY_WEIGHT = 0.5
READINESS_SLEEP_WEIGHT = 0.5

RECOVERY_BASE_MIN = 30.0
RECOVERY_BASE_MAX = 50.0
RECOVERY_BASE_NEUTRAL = 40.0

WORKOUT_DAY_STRAIN = (10.0, 18.0)
REST_DAY_STRAIN = (3.0, 8.0)
REST_DAY_STEP_REFERENCE = 15_000


@dataclass(frozen=True)
class RecoverySignals:
    hrv: float | None
    resting_hr: float | None
    baseline: RecoveryBaseline | None
    previous_strain: float | None = None
    bedtime_minutes: float | None = None


# Maps overnight signals to the non-sleep recovery contribution in [30, 50].
RecoveryBaseProvider = Callable[[RecoverySignals], float]


def trend_recovery_base(signals: RecoverySignals) -> float:
    """HRV above / resting HR below personal norm pushes toward 50; 40 when unknown."""
    baseline = signals.baseline
    if baseline is None:
        return RECOVERY_BASE_NEUTRAL

    zs: list[float] = []
    if signals.hrv is not None and baseline.hrv_std_dev > 0:
        zs.append((signals.hrv - baseline.hrv_mean) / baseline.hrv_std_dev)
    if signals.resting_hr is not None and baseline.resting_hr_std_dev > 0:
        zs.append(-(signals.resting_hr - baseline.resting_hr_mean) / baseline.resting_hr_std_dev)
    if not zs:
        return RECOVERY_BASE_NEUTRAL

    z = sum(zs) / len(zs)
    half_span = (RECOVERY_BASE_MAX - RECOVERY_BASE_MIN) / 2
    return round(RECOVERY_BASE_NEUTRAL + half_span * math.tanh(0.75 * z), 2)


# Non-sleep factor weights; sleep enters the recovery blend on its own.
RECOVERY_FACTOR_WEIGHTS: Mapping[str, float] = MappingProxyType({
    "hrv": 0.25,
    "resting_hr": 0.15,
    "strain_impact": 0.15,
    "sleep_consistency": 0.10,
})

# (upper bound inclusive, score); anything above the last bound scores the fallback.
STRAIN_IMPACT_TIERS: tuple[tuple[float, int], ...] = (
    (3, 100), (6, 90), (9, 75), (12, 60), (15, 45), (18, 30),
)
STRAIN_IMPACT_FLOOR = 15
BEDTIME_DEVIATION_TIERS: tuple[tuple[float, int], ...] = (
    (15, 100), (30, 85), (45, 70), (60, 55), (90, 40),
)
BEDTIME_DEVIATION_FLOOR = 25


def _tiered(value: float, tiers: Sequence[tuple[float, int]], floor: int) -> int:
    for bound, score in tiers:
        if value <= bound:
            return score
    return floor


def _z_to_factor(z: float) -> int:
    return int(clamp(round_half_up(75 + 25 * math.tanh(0.75 * z)), 0, 100))


def bedtime_deviation(bedtime: float, usual: float) -> float:
    """Minutes between two clock times, across midnight (23:50 vs 00:10 is 20)."""
    deviation = abs(bedtime - usual) % 1440
    return min(deviation, 1440 - deviation)


def recovery_factors(signals: RecoverySignals) -> dict[str, int]:
    """0-100 score per non-sleep factor that has data."""
    factors: dict[str, int] = {}
    baseline = signals.baseline
    if baseline is not None:
        if signals.hrv is not None and baseline.hrv_std_dev > 0:
            factors["hrv"] = _z_to_factor(
                (signals.hrv - baseline.hrv_mean) / baseline.hrv_std_dev
            )
        if signals.resting_hr is not None and baseline.resting_hr_std_dev > 0:
            factors["resting_hr"] = _z_to_factor(
                -(signals.resting_hr - baseline.resting_hr_mean) / baseline.resting_hr_std_dev
            )
        if signals.bedtime_minutes is not None and baseline.bedtime_minutes is not None:
            factors["sleep_consistency"] = _tiered(
                bedtime_deviation(signals.bedtime_minutes, baseline.bedtime_minutes),
                BEDTIME_DEVIATION_TIERS,
                BEDTIME_DEVIATION_FLOOR,
            )
    if signals.previous_strain is not None:
        factors["strain_impact"] = _tiered(
            signals.previous_strain, STRAIN_IMPACT_TIERS, STRAIN_IMPACT_FLOOR
        )
    return factors


def multifactor_recovery_base(signals: RecoverySignals) -> float:
    """Weighted HRV, resting HR, yesterday's strain and bedtime regularity.

    Weights are renormalized over the factors that have data and the result
    is mapped onto [30, 50]; 40 when none do.
    """
    factors = recovery_factors(signals)
    if not factors:
        return RECOVERY_BASE_NEUTRAL
    total_weight = sum(RECOVERY_FACTOR_WEIGHTS[name] for name in factors)
    average = sum(score * RECOVERY_FACTOR_WEIGHTS[name] for name, score in factors.items())
    average /= total_weight
    span = RECOVERY_BASE_MAX - RECOVERY_BASE_MIN
    return round(RECOVERY_BASE_MIN + span * average / 100, 2)


RECOVERY_BASE_PROVIDERS: Mapping[str, RecoveryBaseProvider] = MappingProxyType({
    "trend": trend_recovery_base,
    "multifactor": multifactor_recovery_base,
})

# (minimum recovery score, category, training recommendation), best first.
RECOVERY_CATEGORIES: tuple[tuple[int, str, str], ...] = (
    (85, "optimal", "Fully recovered: high intensity, intervals, heavy lifting or competition."),
    (70, "good", "Well recovered: tempo work, moderate weights and skill sessions."),
    (50, "moderate", "Recovery is incomplete: easy cardio, light weights, mobility and technique."),
    (0, "low", "Your body needs rest: gentle stretching, walking and extra sleep."),
)


def recovery_category(recovery_score: int) -> tuple[str, str]:
    """Category and training recommendation for a recovery score."""
    for minimum, category, recommendation in RECOVERY_CATEGORIES:
        if recovery_score >= minimum:
            return category, recommendation
    return RECOVERY_CATEGORIES[-1][1], RECOVERY_CATEGORIES[-1][2]


def blend_recovery(sleep_score: int, recovery_base: float) -> int:
    return int(clamp(round_half_up(sleep_score * SLEEP_WEIGHT_IN_RECOVERY + recovery_base), 0, 100))


def blend_readiness(recovery_score: int, sleep_score: int) -> int:
    return round_half_up(
        recovery_score * READINESS_RECOVERY_WEIGHT + sleep_score * READINESS_SLEEP_WEIGHT
    )


def strain_band(raw_strain: float, had_workout: bool, steps: float | None) -> float:
    """Place the day's load inside the workout-day or rest-day band."""
    if had_workout:
        low, high = WORKOUT_DAY_STRAIN
        return round1(low + (high - low) * clamp(raw_strain, 0.0, 21.0) / 21.0)
    low, high = REST_DAY_STRAIN
    if not steps or steps <= 0:
        return low
    return round1(low + (high - low) * min(1.0, steps / REST_DAY_STEP_REFERENCE))


def steps_for_day(rows: Sequence[Mapping[str, Any]]) -> float | None:
    """Step total for one day from stored ``steps`` samples.

    A whole-day aggregate wins when present; otherwise the individual samples
    are summed.
    """
    if not rows:
        return None
    for row in rows:
        if (row.get("metadata") or {}).get("aggregation") == "day":
            return as_float(row.get("value"))
    values = [as_float(row.get("value")) for row in rows]
    return sum(v for v in values if v is not None)


@dataclass(frozen=True)
class DailyScoreResult:
    date: date
    sleep_score: int | None
    recovery_score: int | None
    strain_score: float
    readiness_score: int | None
    components: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DailyScoreEngine:
    strain_model: StrainModel = DEFAULT_STRAIN_MODEL
    recovery_base: RecoveryBaseProvider = trend_recovery_base

    def compute(
        self,
        day: date,
        sleep_session: SleepSession | None,
        workouts: Sequence[Workout],
        *,
        baseline: PersonalBaseline = POPULATION_BASELINE,
        recovery_baseline: RecoveryBaseline | None = None,
        steps: float | None = None,
        profile: AthleteProfile = AthleteProfile(),
        previous_strain: float | None = None,
    ) -> DailyScoreResult:
        raw_strain = daily_strain(workouts, profile, self.strain_model)
        strain_score = strain_band(raw_strain, bool(workouts), steps)
        components: dict[str, Any] = {
            "strain": {
                "raw": raw_strain,
                "workout_count": len(workouts),
                "steps": steps,
                "band": "workout" if workouts else "rest",
            },
        }

        if sleep_session is None:
            components["sleep"] = None
            components["recovery"] = None
            return DailyScoreResult(
                date=day,
                sleep_score=None,
                recovery_score=None,
                strain_score=strain_score,
                readiness_score=None,
                components=components,
            )

        scored = score_sleep(sleep_session, baseline)
        # An explicitly logged score wins over the computed one.
        sleep_score = (
            sleep_session.sleep_score
            if sleep_session.sleep_score is not None
            else scored.total_score
        )
        signals = RecoverySignals(
            hrv=sleep_session.hrv_avg,
            resting_hr=sleep_session.resting_hr,
            baseline=recovery_baseline,
            previous_strain=previous_strain,
            bedtime_minutes=bedtime_minutes(sleep_session),
        )
        base = self.recovery_base(signals)
        recovery_score = blend_recovery(sleep_score, base)
        category, training = recovery_category(recovery_score)
        components["sleep"] = {"computed_score": scored.total_score, **scored.breakdown}
        components["recovery"] = {
            "base": base,
            "sleep_weight": SLEEP_WEIGHT_IN_RECOVERY,
            "factors": recovery_factors(signals),
            "category": category,
            "training_recommendation": training,
        }

        return DailyScoreResult(
            date=day,
            sleep_score=sleep_score,
            recovery_score=recovery_score,
            strain_score=strain_score,
            readiness_score=blend_readiness(recovery_score, sleep_score),
            components=components,
        )


DEFAULT_ENGINE = DailyScoreEngine()


def engine_for(recovery_model: str) -> DailyScoreEngine:
    """Engine using the named recovery base provider."""
    if recovery_model == "trend":
        return DEFAULT_ENGINE
    try:
        provider = RECOVERY_BASE_PROVIDERS[recovery_model]
    except KeyError:
        raise ValueError(f"Unknown recovery model: {recovery_model!r}") from None
    return DailyScoreEngine(recovery_base=provider)


def compute_daily_score(
    day: date,
    sleep_session: SleepSession | None,
    workouts: Sequence[Workout],
    **kwargs: Any,
) -> DailyScoreResult:
    return DEFAULT_ENGINE.compute(day, sleep_session, workouts, **kwargs)
