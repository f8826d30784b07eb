"""Daily composite score recomputation.

Called synchronously by every write path for each affected date, and
available as the ``daily_score.recompute`` job for backfills. The caller is
expected to hold the per-user lock when it runs inside a write transaction.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

from ..baseline import (
    BASELINE_WINDOW,
    PersonalBaseline,
    compute_personal_baseline,
    compute_recovery_baseline,
)
from ..biological_age import chronological_age
from ..daily_scores import (
    DEFAULT_ENGINE,
    DailyScoreEngine,
    DailyScoreResult,
    engine_for,
    steps_for_day,
)
from ..locks import acquire_user_lock
from ..models import SleepSession, Workout
from ..registry import register
from ..strain import AthleteProfile
from ..utils import day_window_utc, round_half_up

logger = logging.getLogger(__name__)


def sleep_session_from_row(row: dict[str, Any]) -> SleepSession:
    return SleepSession.model_validate({**row, "user_id": str(row["user_id"])})


def workout_from_row(row: dict[str, Any]) -> Workout:
    return Workout.model_validate({**row, "user_id": str(row["user_id"])})


async def load_sleep_history(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    before: date,
    limit: int = BASELINE_WINDOW,
) -> list[dict[str, Any]]:
    """Sessions strictly before ``before``, most recent first."""
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT sleep_date, bedtime, total_minutes, in_bed_minutes,
                   deep_sleep_minutes, rem_sleep_minutes, hrv_avg, resting_hr,
                   efficiency
            FROM sleep_sessions
            WHERE user_id = %s AND sleep_date < %s
            ORDER BY sleep_date DESC, updated_at DESC
            LIMIT %s
            """,
            (user_id, before, limit),
        )
        return await cur.fetchall()


async def load_personal_baseline(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    before: date,
    window: int = BASELINE_WINDOW,
) -> PersonalBaseline:
    history = await load_sleep_history(conn, user_id, before, window)
    return compute_personal_baseline(history, window)


async def _load_sleep_session(
    conn: psycopg.AsyncConnection[Any], user_id: str, day: date
) -> SleepSession | None:
    # Several sources can report the same night; the latest write wins.
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT *
            FROM sleep_sessions
            WHERE user_id = %s AND sleep_date = %s
            ORDER BY updated_at DESC, id DESC
            LIMIT 1
            """,
            (user_id, day),
        )
        row = await cur.fetchone()
    return sleep_session_from_row(row) if row is not None else None


async def _load_workouts(
    conn: psycopg.AsyncConnection[Any], user_id: str, day: date
) -> list[Workout]:
    start, end = day_window_utc(day)
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT *
            FROM workouts
            WHERE user_id = %s AND started_at >= %s AND started_at < %s
            ORDER BY started_at, id
            """,
            (user_id, start, end),
        )
        rows = await cur.fetchall()
    return [workout_from_row(r) for r in rows]


async def _load_steps(
    conn: psycopg.AsyncConnection[Any], user_id: str, day: date
) -> float | None:
    start, end = day_window_utc(day)
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT value, recorded_at, metadata
            FROM health_metrics
            WHERE user_id = %s AND metric_type = 'steps'
              AND recorded_at >= %s AND recorded_at < %s
            ORDER BY recorded_at, id
            """,
            (user_id, start, end),
        )
        rows = await cur.fetchall()
    return steps_for_day(rows)


async def _load_profile(
    conn: psycopg.AsyncConnection[Any], user_id: str, day: date
) -> AthleteProfile:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            "SELECT date_of_birth, sex FROM users WHERE id = %s",
            (user_id,),
        )
        row = await cur.fetchone()
    if row is None:
        return AthleteProfile()
    return AthleteProfile(
        age=chronological_age(row.get("date_of_birth"), day),
        sex=row.get("sex") or "male",
    )


async def _load_previous_strain(
    conn: psycopg.AsyncConnection[Any], user_id: str, day: date
) -> float | None:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            "SELECT strain_score FROM daily_scores WHERE user_id = %s AND date = %s",
            (user_id, day - timedelta(days=1)),
        )
        row = await cur.fetchone()
    if row is None or row["strain_score"] is None:
        return None
    return float(row["strain_score"])


async def _store_daily_score(
    conn: psycopg.AsyncConnection[Any], user_id: str, result: DailyScoreResult
) -> None:
    async with conn.cursor() as cur:
        await cur.execute(
            """
            INSERT INTO daily_scores (
                user_id, date, sleep_score, recovery_score, strain_score,
                readiness_score, components, computed_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, NOW())
            ON CONFLICT (user_id, date) DO UPDATE SET
                sleep_score = EXCLUDED.sleep_score,
                recovery_score = EXCLUDED.recovery_score,
                strain_score = EXCLUDED.strain_score,
                readiness_score = EXCLUDED.readiness_score,
                components = EXCLUDED.components,
                computed_at = NOW()
            """,
            (
                user_id,
                result.date,
                result.sleep_score,
                result.recovery_score,
                result.strain_score,
                result.readiness_score,
                Json(result.components),
            ),
        )


async def recompute_daily_score(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    day: date,
    *,
    engine: DailyScoreEngine = DEFAULT_ENGINE,
    baseline_window: int = BASELINE_WINDOW,
) -> DailyScoreResult:
    """Recompute and upsert the composite score for one (user, date)."""
    session = await _load_sleep_session(conn, user_id, day)
    workouts = await _load_workouts(conn, user_id, day)
    steps = await _load_steps(conn, user_id, day)
    history = await load_sleep_history(conn, user_id, day, baseline_window)
    profile = await _load_profile(conn, user_id, day)
    previous_strain = await _load_previous_strain(conn, user_id, day)

    recovery_baseline = compute_recovery_baseline(history, baseline_window)
    if recovery_baseline is not None:
        profile = AthleteProfile(
            age=profile.age,
            sex=profile.sex,
            resting_hr=round_half_up(recovery_baseline.resting_hr_mean),
        )

    result = engine.compute(
        day,
        session,
        workouts,
        baseline=compute_personal_baseline(history, baseline_window),
        recovery_baseline=recovery_baseline,
        steps=steps,
        profile=profile,
        previous_strain=previous_strain,
    )
    await _store_daily_score(conn, user_id, result)
    logger.debug(
        "Daily score recomputed for user=%s date=%s (readiness=%s, strain=%.1f)",
        user_id,
        day.isoformat(),
        result.readiness_score,
        result.strain_score,
    )
    return result


@register("daily_score.recompute")
async def handle_daily_score_recompute(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    """Recompute one or more dates: payload {user_id, date} or {user_id, dates: [...]}."""
    user_id = str(payload["user_id"])
    raw_dates = payload.get("dates") or [payload["date"]]
    window = int(payload.get("baseline_window", BASELINE_WINDOW))
    engine = engine_for(payload.get("recovery_model", "trend"))

    days = sorted({r if isinstance(r, date) else date.fromisoformat(str(r)) for r in raw_dates})

    await acquire_user_lock(conn, user_id)
    for day in days:
        await recompute_daily_score(conn, user_id, day, engine=engine, baseline_window=window)
    logger.info("daily_score.recompute completed for user=%s (%d dates)", user_id, len(days))
