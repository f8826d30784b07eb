"""Maintenance scan that removes natural-key duplicates left by old writes.

Keeps the earliest created row of every group. Each batch of deletes runs in
its own transaction. As a job the handler is not wrapped by the worker, so
every batch commits and an interrupted scan keeps its progress and can simply
be run again. The scan lock is per (user, table) and per batch: a scan that
finds it taken skips the table instead of waiting.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

from ..dedup import NATURAL_KEYS, duplicate_count_sql, duplicate_ids_sql
from ..locks import set_statement_timeout, try_acquire_scan_lock
from ..metrics import record_dedup_removed
from ..registry import register

logger = logging.getLogger(__name__)

DEDUP_BATCH_SIZE = 500


@dataclass
class TableScan:
    table: str
    removed: int = 0
    batches: int = 0
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "removed": self.removed,
            "batches": self.batches,
            "skipped": self.skipped,
        }


@dataclass
class DedupScanReport:
    user_id: str
    tables: list[TableScan] = field(default_factory=list)

    @property
    def total_removed(self) -> int:
        return sum(t.removed for t in self.tables)

    @property
    def skipped(self) -> list[str]:
        return [t.table for t in self.tables if t.skipped]

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "total_removed": self.total_removed,
            "skipped": self.skipped,
            "tables": [t.to_dict() for t in self.tables],
        }


def _resolve_tables(tables: Sequence[str] | None) -> list[str]:
    if not tables:
        return list(NATURAL_KEYS)
    unknown = [t for t in tables if t not in NATURAL_KEYS]
    if unknown:
        raise ValueError(f"No natural key defined for table(s): {', '.join(unknown)}")
    return list(dict.fromkeys(tables))


async def _scan_table(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    table: str,
    batch_size: int,
    statement_timeout_ms: int | None,
) -> TableScan:
    key = NATURAL_KEYS[table]
    scan = TableScan(table=table)
    select_sql = duplicate_ids_sql(key)

    while True:
        async with conn.transaction():
            if statement_timeout_ms is not None:
                await set_statement_timeout(conn, statement_timeout_ms)
            if not await try_acquire_scan_lock(conn, user_id, table):
                scan.skipped = True
                return scan

            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(select_sql, (user_id, batch_size))
                ids = [row["id"] for row in await cur.fetchall()]
            if not ids:
                return scan

            async with conn.cursor() as cur:
                await cur.execute(
                    f"DELETE FROM {key.table} WHERE user_id = %s AND id = ANY(%s)",
                    (user_id, ids),
                )
                scan.removed += cur.rowcount
            scan.batches += 1

        if len(ids) < batch_size:
            return scan


async def dedup_scan(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    tables: Sequence[str] | None = None,
    *,
    batch_size: int = DEDUP_BATCH_SIZE,
    statement_timeout_ms: int | None = None,
) -> DedupScanReport:
    """Delete all but the earliest row of each natural-key group."""
    report = DedupScanReport(user_id=user_id)
    for table in _resolve_tables(tables):
        scan = await _scan_table(conn, user_id, table, batch_size, statement_timeout_ms)
        report.tables.append(scan)
        if scan.skipped:
            logger.info("Dedup scan skipped %s for user=%s (already running)", table, user_id)
        elif scan.removed:
            logger.info(
                "Dedup scan removed %d duplicate rows from %s for user=%s",
                scan.removed,
                table,
                user_id,
            )
    record_dedup_removed(report.total_removed)
    return report


async def preview_duplicates(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    tables: Sequence[str] | None = None,
) -> dict[str, dict[str, int]]:
    """Count what a scan would remove, per table, without deleting anything."""
    preview: dict[str, dict[str, int]] = {}
    for table in _resolve_tables(tables):
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(duplicate_count_sql(NATURAL_KEYS[table]), (user_id,))
            row = await cur.fetchone()
        preview[table] = {
            "removable": int(row["removable"]) if row else 0,
            "groups": int(row["groups"]) if row else 0,
        }
    return preview


@register("maintenance.dedup_scan", commits_own_work=True)
async def handle_dedup_scan(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    """Payload: {user_id, tables?: [...], dedup_batch_size?: int, statement_timeout_ms?: int}."""
    user_id = str(payload["user_id"])
    report = await dedup_scan(
        conn,
        user_id,
        payload.get("tables"),
        batch_size=int(payload.get("dedup_batch_size", DEDUP_BATCH_SIZE)),
        statement_timeout_ms=payload.get("statement_timeout_ms"),
    )

    async with conn.transaction():
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                INSERT INTO dedup_runs (user_id, started_at, completed_at, details)
                VALUES (%s, NOW(), clock_timestamp(), %s)
                RETURNING id
                """,
                (user_id, Json(report.to_dict())),
            )
            row = await cur.fetchone()
            run_id = int(row["id"]) if row is not None else None

    logger.info(
        "maintenance.dedup_scan completed (run_id=%s, removed=%d, skipped=%s)",
        run_id,
        report.total_removed,
        report.skipped,
    )
