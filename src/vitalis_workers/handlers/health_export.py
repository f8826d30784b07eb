"""Webhook delivery ingestion for Health Auto Export payloads."""

from __future__ import annotations

import logging
import time
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

from ..baseline import BASELINE_WINDOW
from ..daily_scores import DEFAULT_ENGINE, DailyScoreEngine, engine_for
from ..dedup import (
    METRIC_COLUMNS,
    NATURAL_KEYS,
    SLEEP_COLUMNS,
    WORKOUT_COLUMNS,
    upsert_records,
)
from ..export_mapping import DEFAULT_TABLES, MappingTables
from ..ingestion_pipeline import (
    DUPLICATE_DELIVERY_NOTE,
    IngestionResult,
    NormalizedBatch,
    delivery_idempotency_key,
    determine_status,
    normalize_health_export,
)
from ..locks import acquire_user_lock
from ..logging import log_extra
from ..metrics import record_delivery, record_upserts
from ..models import SleepSession
from ..registry import register
from ..sleep_scoring import score_sleep
from .daily_score import load_personal_baseline, recompute_daily_score

logger = logging.getLogger(__name__)


async def _prior_delivery_succeeded(
    conn: psycopg.AsyncConnection[Any], user_id: str, idempotency_key: str
) -> bool:
    """True when this delivery already succeeded. Earlier failed attempts are cleared."""
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT id, status
            FROM ingestion_logs
            WHERE user_id = %s AND idempotency_key = %s
            ORDER BY created_at DESC, id DESC
            """,
            (user_id, idempotency_key),
        )
        rows = await cur.fetchall()

    if any(row["status"] == "success" for row in rows):
        return True
    if rows:
        async with conn.cursor() as cur:
            await cur.execute(
                "DELETE FROM ingestion_logs WHERE user_id = %s AND idempotency_key = %s",
                (user_id, idempotency_key),
            )
    return False


async def _write_log(
    conn: psycopg.AsyncConnection[Any], user_id: str, result: IngestionResult
) -> None:
    async with conn.cursor() as cur:
        await cur.execute(
            """
            INSERT INTO ingestion_logs (
                user_id, idempotency_key, status, metrics_processed,
                sleep_sessions_processed, workouts_processed, errors
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                user_id,
                result.idempotency_key,
                result.status,
                result.metrics_processed,
                result.sleep_sessions_processed,
                result.workouts_processed,
                Json(result.errors),
            ),
        )


async def _score_sessions(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    sessions: tuple[SleepSession, ...],
    baseline_window: int,
) -> list[SleepSession]:
    """Fill in derived sleep_score and efficiency before the row is stored."""
    scored: list[SleepSession] = []
    for session in sessions:
        baseline = await load_personal_baseline(conn, user_id, session.sleep_date, baseline_window)
        result = score_sleep(session, baseline)
        scored.append(
            session.model_copy(
                update={
                    "sleep_score": session.sleep_score
                    if session.sleep_score is not None
                    else result.total_score,
                    "efficiency": result.efficiency,
                }
            )
        )
    return scored


def _failed_result(batch: NormalizedBatch, idempotency_key: str) -> IngestionResult:
    error = batch.structural_error
    return IngestionResult(
        status="failed",
        errors=[error.to_dict()] if error is not None else [],
        idempotency_key=idempotency_key,
    )


async def ingest_health_export(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    raw_payload: Any,
    *,
    tables: MappingTables = DEFAULT_TABLES,
    baseline_window: int = BASELINE_WINDOW,
    engine: DailyScoreEngine = DEFAULT_ENGINE,
) -> IngestionResult:
    """Normalize, store and score one webhook delivery.

    Runs in a single transaction under the per-user lock: records, recomputed
    daily scores and the delivery log land together or not at all. Individual
    records that fail are reported in ``errors`` without aborting the rest.
    """
    started = time.monotonic()
    idempotency_key = delivery_idempotency_key(user_id, raw_payload)

    async with conn.transaction():
        await acquire_user_lock(conn, user_id)

        if await _prior_delivery_succeeded(conn, user_id, idempotency_key):
            record_delivery("duplicate")
            logger.info(
                "Duplicate delivery for user=%s skipped (key=%s)",
                user_id,
                idempotency_key,
                extra=log_extra(user_id=user_id, status="duplicate"),
            )
            return IngestionResult(
                status="success",
                warnings=[DUPLICATE_DELIVERY_NOTE],
                idempotency_key=idempotency_key,
            )

        batch = normalize_health_export(user_id, raw_payload, tables)
        if batch.structural_error is not None:
            result = _failed_result(batch, idempotency_key)
            await _write_log(conn, user_id, result)
            record_delivery(result.status)
            logger.warning(
                "Delivery for user=%s rejected: %s",
                user_id,
                batch.structural_error.message,
                extra=log_extra(user_id=user_id, status="failed"),
            )
            return result

        metrics = await upsert_records(
            conn, NATURAL_KEYS["health_metrics"], batch.metrics, METRIC_COLUMNS
        )
        sessions = await _score_sessions(conn, user_id, batch.sleep_sessions, baseline_window)
        sleep = await upsert_records(
            conn, NATURAL_KEYS["sleep_sessions"], sessions, SLEEP_COLUMNS
        )
        workouts = await upsert_records(
            conn, NATURAL_KEYS["workouts"], batch.workouts, WORKOUT_COLUMNS
        )

        for day in batch.affected_dates():
            await recompute_daily_score(
                conn, user_id, day, engine=engine, baseline_window=baseline_window
            )

        for conflict in (*metrics.conflicts, *sleep.conflicts, *workouts.conflicts):
            logger.debug("Skipped %s (%s)", conflict.message, conflict.code)

        storage_errors = [*metrics.errors, *sleep.errors, *workouts.errors]
        result = IngestionResult(
            status=determine_status(batch, len(storage_errors)),
            metrics_processed=metrics.written_count,
            sleep_sessions_processed=sleep.written_count,
            workouts_processed=workouts.written_count,
            duplicates_skipped=(
                batch.collapsed_duplicates + metrics.skipped + sleep.skipped + workouts.skipped
            ),
            errors=[e.to_dict() for e in (*batch.errors, *storage_errors)],
            warnings=list(batch.warnings),
            idempotency_key=idempotency_key,
        )
        await _write_log(conn, user_id, result)

    record_upserts("metric", metrics.inserted, metrics.skipped)
    record_upserts("sleep_session", sleep.inserted, sleep.skipped)
    record_upserts("workout", workouts.inserted, workouts.skipped)
    record_delivery(result.status)

    duration_ms = (time.monotonic() - started) * 1000
    logger.info(
        "Delivery for user=%s ingested: status=%s metrics=%d sleep=%d workouts=%d "
        "duplicates=%d errors=%d (%.0fms)",
        user_id,
        result.status,
        result.metrics_processed,
        result.sleep_sessions_processed,
        result.workouts_processed,
        result.duplicates_skipped,
        len(result.errors),
        duration_ms,
        extra=log_extra(
            user_id=user_id,
            status=result.status,
            duration_ms=round(duration_ms, 1),
            shapes=batch.shape_counts,
        ),
    )
    return result


@register("ingest.health_export")
async def handle_health_export(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    """Job form of a webhook delivery: payload {user_id, payload}."""
    result = await ingest_health_export(
        conn,
        str(payload["user_id"]),
        payload.get("payload"),
        baseline_window=int(payload.get("baseline_window", BASELINE_WINDOW)),
        engine=engine_for(payload.get("recovery_model", "trend")),
    )
    if result.status == "failed":
        logger.warning("ingest.health_export job finished as failed: %s", result.errors)
