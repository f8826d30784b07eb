"""Natural-key deduplication.

Live path: every write is ``INSERT ... ON CONFLICT (<natural key>)`` so
re-delivered payloads are no-ops. Maintenance path: rows that predate the
unique constraints are grouped by natural key and all but the earliest
created row are removed.
"""

from __future__ import annotations

import logging
from collections.abc import Hashable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Protocol, TypeVar

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

from .errors import ConflictError, PartialIngestionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NaturalKey:
    table: str
    columns: tuple[str, ...]
    record_type: str
    constraint: str

    @property
    def column_list(self) -> str:
        return ", ".join(self.columns)


NATURAL_KEYS: Mapping[str, NaturalKey] = MappingProxyType({
    "health_metrics": NaturalKey(
        "health_metrics",
        ("user_id", "metric_type", "recorded_at"),
        "metric",
        "health_metrics_natural_key",
    ),
    "sleep_sessions": NaturalKey(
        "sleep_sessions",
        ("user_id", "sleep_date", "source"),
        "sleep_session",
        "sleep_sessions_natural_key",
    ),
    "workouts": NaturalKey(
        "workouts",
        ("user_id", "started_at", "type"),
        "workout",
        "workouts_natural_key",
    ),
})

METRIC_COLUMNS: tuple[str, ...] = (
    "user_id", "metric_type", "value", "unit", "source", "recorded_at", "metadata",
)
SLEEP_RAW_COLUMNS: tuple[str, ...] = (
    "bedtime", "wake_time", "total_minutes", "in_bed_minutes",
    "deep_sleep_minutes", "rem_sleep_minutes", "light_sleep_minutes",
    "awake_minutes", "sleep_latency_minutes", "hrv_avg", "resting_hr",
    "respiratory_rate",
)
SLEEP_COLUMNS: tuple[str, ...] = (
    "user_id", "sleep_date", *SLEEP_RAW_COLUMNS,
    "sleep_score", "efficiency", "source", "metadata",
)
WORKOUT_COLUMNS: tuple[str, ...] = (
    "user_id", "type", "name", "duration_minutes", "calories_burned",
    "heart_rate_avg", "heart_rate_max", "started_at", "ended_at", "metadata",
)


class _Keyed(Protocol):
    @property
    def natural_key(self) -> Hashable: ...


K = TypeVar("K", bound=_Keyed)


def collapse_by_natural_key(records: Iterable[K]) -> tuple[list[K], int]:
    """Keep the first record per natural key. Returns (kept, dropped_count)."""
    seen: set[Hashable] = set()
    kept: list[K] = []
    dropped = 0
    for record in records:
        key = record.natural_key
        if key in seen:
            dropped += 1
            continue
        seen.add(key)
        kept.append(record)
    return kept, dropped


def insert_sql(key: NaturalKey, columns: Sequence[str], update_columns: Sequence[str] = ()) -> str:
    """Upsert against the natural key.

    Without ``update_columns`` a conflict is a no-op and RETURNING yields no
    row. With them, RETURNING reports whether the row was new via xmax.
    """
    placeholders = ", ".join(["%s"] * len(columns))
    head = f"INSERT INTO {key.table} ({', '.join(columns)}) VALUES ({placeholders})"
    conflict = f"ON CONFLICT ({key.column_list})"
    if not update_columns:
        return f"{head} {conflict} DO NOTHING RETURNING id, true AS inserted"
    assignments = ", ".join(f"{c} = EXCLUDED.{c}" for c in update_columns)
    return (
        f"{head} {conflict} DO UPDATE SET {assignments}, updated_at = clock_timestamp() "
        "RETURNING id, (xmax = 0) AS inserted"
    )


def duplicate_ids_sql(key: NaturalKey) -> str:
    return f"""
        SELECT id FROM (
            SELECT id, ROW_NUMBER() OVER (
                PARTITION BY {key.column_list}
                ORDER BY created_at ASC, id ASC
            ) AS rn
            FROM {key.table}
            WHERE user_id = %s
        ) ranked
        WHERE rn > 1
        ORDER BY id
        LIMIT %s
    """


def duplicate_count_sql(key: NaturalKey) -> str:
    return f"""
        SELECT COALESCE(SUM(n - 1), 0)::bigint AS removable, COUNT(*)::bigint AS groups
        FROM (
            SELECT COUNT(*) AS n
            FROM {key.table}
            WHERE user_id = %s
            GROUP BY {key.column_list}
            HAVING COUNT(*) > 1
        ) dupes
    """


def _param(value: Any) -> Any:
    if isinstance(value, dict):
        return Json(value)
    return value


def record_params(record: Any, columns: Sequence[str]) -> tuple[Any, ...]:
    return tuple(_param(getattr(record, c)) for c in columns)


@dataclass
class UpsertOutcome:
    inserted: int = 0
    updated: int = 0
    errors: list[PartialIngestionError] = field(default_factory=list)
    conflicts: list[ConflictError] = field(default_factory=list)
    written: list[Any] = field(default_factory=list)

    @property
    def skipped(self) -> int:
        """Records absorbed by an existing row with the same natural key."""
        return len(self.conflicts)

    @property
    def written_count(self) -> int:
        return self.inserted + self.updated


async def upsert_records(
    conn: psycopg.AsyncConnection[Any],
    key: NaturalKey,
    records: Sequence[Any],
    columns: Sequence[str],
    update_columns: Sequence[str] = (),
) -> UpsertOutcome:
    """Write records one savepoint at a time; a failing row never aborts its siblings."""
    outcome = UpsertOutcome()
    sql = insert_sql(key, columns, update_columns)
    for record in records:
        try:
            async with conn.transaction():
                async with conn.cursor(row_factory=dict_row) as cur:
                    await cur.execute(sql, record_params(record, columns))
                    row = await cur.fetchone()
        except psycopg.Error as exc:
            logger.warning(
                "Upsert into %s failed for key=%s: %s", key.table, record.natural_key, exc
            )
            outcome.errors.append(
                PartialIngestionError(
                    code="storage_error",
                    message=f"{key.record_type} {record.natural_key!r}: {exc}",
                    record_type=key.record_type,
                )
            )
            continue

        if row is None:
            outcome.conflicts.append(
                ConflictError(
                    code="duplicate_key",
                    message=f"{key.record_type} {record.natural_key!r} already stored",
                    field=key.constraint,
                )
            )
        elif row["inserted"]:
            outcome.inserted += 1
            outcome.written.append(record)
        else:
            outcome.updated += 1
            outcome.written.append(record)
    return outcome
