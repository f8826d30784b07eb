"""Sleep scoring.

``score_sleep`` is the persisted score: a fixed weighted sum of duration,
efficiency and stage composition. The personal baseline only feeds the
deviation indicators in ``breakdown``.

``refine_with_baseline`` is a separate, opt-in seven-component score
(PSQI-style) that does use the baseline. Nothing persists its output as
``sleep_score``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from .baseline import PersonalBaseline
from .models import SleepSession
from .utils import clamp, round_half_up

DURATION_REFERENCE_MINUTES = 480

WEIGHTS: dict[str, float] = {
    "duration": 0.35,
    "efficiency": 0.35,
    "stages": 0.30,
}

DEEP_RATIO_TARGET = 0.15
REM_RATIO_TARGET = 0.20


@dataclass(frozen=True)
class SleepScore:
    total_score: int
    efficiency: float
    breakdown: dict[str, Any] = field(default_factory=dict)


def sleep_efficiency(total_minutes: int, in_bed_minutes: int) -> float:
    """Percent of time in bed spent asleep, one decimal. Zero time in bed gives 0."""
    if in_bed_minutes <= 0:
        return 0.0
    return round(total_minutes / in_bed_minutes * 100, 1)


def duration_component(total_minutes: int) -> float:
    return min(100.0, total_minutes / DURATION_REFERENCE_MINUTES * 100)


def efficiency_component(efficiency: float) -> int:
    if efficiency >= 85:
        return 95
    if efficiency >= 75:
        return 80
    return 65


def stage_component(deep_minutes: int, rem_minutes: int, total_minutes: int) -> int:
    if total_minutes <= 0:
        return 75
    deep_ok = deep_minutes / total_minutes >= DEEP_RATIO_TARGET
    rem_ok = rem_minutes / total_minutes >= REM_RATIO_TARGET
    return 90 if deep_ok and rem_ok else 75


def _deviations(session: SleepSession, efficiency: float, baseline: PersonalBaseline) -> dict[str, Any]:
    hrv: dict[str, Any] | None = None
    if session.hrv_avg is not None:
        delta = session.hrv_avg - baseline.avg_hrv
        hrv = {
            "value": session.hrv_avg,
            "baseline": round(baseline.avg_hrv, 1),
            "delta": round(delta, 1),
            "z_score": round(delta / baseline.hrv_std_dev, 2) if baseline.hrv_std_dev else None,
        }
    return {
        "baseline_source": "population" if baseline.is_population_default else "personal",
        "baseline_sample_size": baseline.sample_size,
        "duration_delta_minutes": round(session.total_minutes - baseline.avg_total_minutes, 1),
        "efficiency_delta": round(efficiency - baseline.avg_efficiency, 1),
        "hrv": hrv,
    }


def score_sleep(session: SleepSession, baseline: PersonalBaseline) -> SleepScore:
    """Score one session 0..100. ``baseline`` never changes ``total_score``."""
    total = session.total_minutes
    deep = session.deep_sleep_minutes or 0
    rem = session.rem_sleep_minutes or 0
    efficiency = sleep_efficiency(total, session.in_bed_minutes)

    duration_score = duration_component(total)
    efficiency_score = efficiency_component(efficiency)
    stage_score = stage_component(deep, rem, total)

    weighted = (
        duration_score * WEIGHTS["duration"]
        + efficiency_score * WEIGHTS["efficiency"]
        + stage_score * WEIGHTS["stages"]
    )
    total_score = int(clamp(round_half_up(weighted), 0, 100))

    breakdown = {
        "duration": {
            "score": round(duration_score, 2),
            "value_minutes": total,
            "weight": WEIGHTS["duration"],
        },
        "efficiency": {
            "score": efficiency_score,
            "value": efficiency,
            "weight": WEIGHTS["efficiency"],
        },
        "stages": {
            "score": stage_score,
            "deep_ratio": round(deep / total, 4) if total else None,
            "rem_ratio": round(rem / total, 4) if total else None,
            "weight": WEIGHTS["stages"],
        },
        "deviations": _deviations(session, efficiency, baseline),
    }
    return SleepScore(total_score=total_score, efficiency=efficiency, breakdown=breakdown)


# --- baseline refinement ---

SleepQuality = Literal["excellent", "good", "fair", "poor"]

REFINED_WEIGHTS: dict[str, float] = {
    "duration": 0.20,
    "efficiency": 0.20,
    "deep_sleep": 0.15,
    "rem_sleep": 0.15,
    "latency": 0.10,
    "awakenings": 0.10,
    "hrv": 0.10,
}

# Fewer personal nights than this and HRV is judged on population tiers.
REFINEMENT_MIN_SESSIONS = 7
RECOMMENDATION_THRESHOLD = 75

RECOMMENDATIONS: dict[str, str] = {
    "duration_short": "Aim for 7-9 hours of sleep. Consider going to bed 30 minutes earlier.",
    "duration_long": "You may be oversleeping. Try maintaining a consistent 7-9 hour schedule.",
    "efficiency": "Improve sleep efficiency by only going to bed when sleepy and keeping a consistent schedule.",
    "deep_sleep": "To increase deep sleep: exercise earlier in the day, avoid alcohol, and keep your room cool.",
    "rem_sleep": "To improve REM sleep: reduce caffeine after noon, limit screens before bed, and keep consistent sleep times.",
    "latency": "Taking long to fall asleep? Try a wind-down routine and avoid screens for an hour before bed.",
    "awakenings": "Reduce nighttime awakenings by keeping the bedroom dark, quiet and cool. Avoid liquids 2 hours before bed.",
    "hrv": "Your HRV is below your baseline, indicating lower recovery. Prioritize rest and stress management today.",
}


@dataclass(frozen=True)
class RefinedSleepScore:
    total_score: int
    components: dict[str, dict[str, Any]]
    quality: SleepQuality
    recommendations: list[str]


def _score_duration(total_minutes: int) -> int:
    hours = total_minutes / 60
    if 7 <= hours <= 9:
        return 100
    if 6 <= hours < 7 or 9 < hours <= 10:
        return 75
    return 50


def _score_efficiency(efficiency: float) -> int:
    if efficiency >= 85:
        return 100
    if efficiency >= 75:
        return 75
    if efficiency >= 65:
        return 50
    return 25


def _score_stage(percent: float, optimal: tuple[float, float], near: tuple[float, float]) -> int:
    if optimal[0] <= percent <= optimal[1]:
        return 100
    if near[0] <= percent < optimal[0] or optimal[1] < percent <= near[1]:
        return 75
    return 50


def _score_latency(minutes: int) -> int:
    if minutes < 15:
        return 100
    if minutes <= 30:
        return 75
    if minutes <= 60:
        return 50
    return 25


def _score_awakenings(minutes: int) -> int:
    if minutes < 5:
        return 100
    if minutes <= 15:
        return 75
    if minutes <= 30:
        return 50
    return 25


def _score_hrv(hrv: float | None, baseline: PersonalBaseline) -> int:
    if hrv is None:
        return 75
    if baseline.sample_size < REFINEMENT_MIN_SESSIONS:
        if hrv >= 60:
            return 100
        if hrv >= 50:
            return 85
        if hrv >= 40:
            return 70
        if hrv >= 30:
            return 55
        return 40
    z = (hrv - baseline.avg_hrv) / (baseline.hrv_std_dev or 10.0)
    if z >= 0.5:
        return 100
    if z >= -0.5:
        return 75
    if z >= -1.0:
        return 50
    return 25


def _quality(score: int) -> SleepQuality:
    if score >= 85:
        return "excellent"
    if score >= 70:
        return "good"
    if score >= 50:
        return "fair"
    return "poor"


def refine_with_baseline(session: SleepSession, baseline: PersonalBaseline) -> RefinedSleepScore:
    """Baseline-aware score with quality label and recommendations."""
    total = session.total_minutes
    efficiency = sleep_efficiency(total, session.in_bed_minutes)
    deep_pct = (session.deep_sleep_minutes or 0) / total * 100 if total else 0.0
    rem_pct = (session.rem_sleep_minutes or 0) / total * 100 if total else 0.0

    scores = {
        "duration": (_score_duration(total), total),
        "efficiency": (_score_efficiency(efficiency) if session.in_bed_minutes else 0, efficiency),
        "deep_sleep": (_score_stage(deep_pct, (15, 20), (10, 25)) if total else 0, round(deep_pct, 1)),
        "rem_sleep": (_score_stage(rem_pct, (20, 25), (15, 30)) if total else 0, round(rem_pct, 1)),
        "latency": (_score_latency(session.sleep_latency_minutes or 0), session.sleep_latency_minutes),
        "awakenings": (_score_awakenings(session.awake_minutes or 0), session.awake_minutes),
        "hrv": (_score_hrv(session.hrv_avg, baseline), session.hrv_avg),
    }
    components = {
        name: {"score": score, "value": value, "weight": REFINED_WEIGHTS[name]}
        for name, (score, value) in scores.items()
    }
    weighted = sum(c["score"] * c["weight"] for c in components.values())
    total_score = int(clamp(round_half_up(weighted), 0, 100))

    recommendations: list[str] = []
    for name, component in components.items():
        if component["score"] >= RECOMMENDATION_THRESHOLD:
            continue
        if name == "duration":
            key = "duration_short" if total < 7 * 60 else "duration_long"
        else:
            key = name
        recommendations.append(RECOMMENDATIONS[key])

    return RefinedSleepScore(
        total_score=total_score,
        components=components,
        quality=_quality(total_score),
        recommendations=recommendations,
    )
