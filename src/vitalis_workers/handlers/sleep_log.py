"""Manual sleep entry: validate, score, upsert by natural key, recompute the day."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date
from typing import Any

import psycopg
from psycopg.rows import dict_row
from pydantic import ValidationError as PydanticValidationError

from ..baseline import BASELINE_WINDOW
from ..daily_scores import DEFAULT_ENGINE, DailyScoreEngine, engine_for
from ..dedup import NATURAL_KEYS, SLEEP_COLUMNS, SLEEP_RAW_COLUMNS, insert_sql, record_params
from ..errors import ValidationError
from ..locks import acquire_user_lock
from ..logging import log_extra
from ..metrics import record_upserts
from ..models import SleepSession
from ..registry import register
from ..sleep_scoring import score_sleep
from .daily_score import load_personal_baseline, recompute_daily_score

logger = logging.getLogger(__name__)

REQUIRED_FIELDS: tuple[str, ...] = (
    "bedtime",
    "wake_time",
    "sleep_date",
    "total_minutes",
    "in_bed_minutes",
)

# On re-entry every raw field is replaced and the derived ones recomputed.
UPDATE_COLUMNS: tuple[str, ...] = (*SLEEP_RAW_COLUMNS, "sleep_score", "efficiency", "metadata")


@dataclass(frozen=True)
class SleepLogResult:
    id: int
    sleep_date: date
    sleep_score: int
    efficiency: float | None
    created: bool
    readiness_score: int | None


def parse_sleep_record(user_id: str, record: Mapping[str, Any]) -> SleepSession:
    """Build a SleepSession from caller input or raise ValidationError."""
    for name in REQUIRED_FIELDS:
        if record.get(name) in (None, ""):
            raise ValidationError(
                code="missing_field",
                message=f"{name} is required",
                field=name,
            )
    try:
        return SleepSession.model_validate({**record, "user_id": user_id})
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(p) for p in first.get("loc", ())) or None
        raise ValidationError(
            code="invalid_value",
            message=first.get("msg", str(exc)),
            field=location,
        ) from exc


async def log_sleep_session(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    record: Mapping[str, Any],
    *,
    baseline_window: int = BASELINE_WINDOW,
    engine: DailyScoreEngine = DEFAULT_ENGINE,
) -> SleepLogResult:
    session = parse_sleep_record(user_id, record)

    async with conn.transaction():
        await acquire_user_lock(conn, user_id)

        baseline = await load_personal_baseline(conn, user_id, session.sleep_date, baseline_window)
        scored = score_sleep(session, baseline)
        session = session.model_copy(
            update={
                "sleep_score": session.sleep_score
                if session.sleep_score is not None
                else scored.total_score,
                "efficiency": session.efficiency
                if session.efficiency is not None
                else scored.efficiency,
            }
        )

        key = NATURAL_KEYS["sleep_sessions"]
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                insert_sql(key, SLEEP_COLUMNS, UPDATE_COLUMNS),
                record_params(session, SLEEP_COLUMNS),
            )
            row = await cur.fetchone()

        daily = await recompute_daily_score(
            conn, user_id, session.sleep_date, engine=engine, baseline_window=baseline_window
        )

    created = bool(row["inserted"])
    record_upserts("sleep_session", 1 if created else 0, 0)
    logger.info(
        "Sleep session %s for user=%s date=%s (score=%d)",
        "created" if created else "updated",
        user_id,
        session.sleep_date.isoformat(),
        session.sleep_score,
        extra=log_extra(user_id=user_id),
    )
    return SleepLogResult(
        id=int(row["id"]),
        sleep_date=session.sleep_date,
        sleep_score=session.sleep_score,
        efficiency=session.efficiency,
        created=created,
        readiness_score=daily.readiness_score,
    )


@register("sleep.log")
async def handle_sleep_log(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    """Payload: {user_id, record}."""
    await log_sleep_session(
        conn,
        str(payload["user_id"]),
        payload.get("record") or {},
        baseline_window=int(payload.get("baseline_window", BASELINE_WINDOW)),
        engine=engine_for(payload.get("recovery_model", "trend")),
    )
