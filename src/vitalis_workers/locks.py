"""Transaction-scoped advisory locks.

Every write path for a user serializes on one lock so that sleep sessions,
workouts and the daily scores derived from them change together. Locks are
released automatically at commit or rollback.
"""

from __future__ import annotations

import logging
from typing import Any

import psycopg
from psycopg.rows import dict_row

logger = logging.getLogger(__name__)

USER_LOCK_PREFIX = "vitalis:user:"
SCAN_LOCK_PREFIX = "vitalis:dedup:"


async def acquire_user_lock(conn: psycopg.AsyncConnection[Any], user_id: str) -> None:
    """Block until this transaction holds the per-user write lock."""
    await conn.execute(
        "SELECT pg_advisory_xact_lock(hashtext(%s))",
        (f"{USER_LOCK_PREFIX}{user_id}",),
    )


async def try_acquire_scan_lock(
    conn: psycopg.AsyncConnection[Any], user_id: str, table: str
) -> bool:
    """Non-blocking single-flight lock for one (user, table) dedup scan."""
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            "SELECT pg_try_advisory_xact_lock(hashtext(%s)) AS acquired",
            (f"{SCAN_LOCK_PREFIX}{user_id}:{table}",),
        )
        row = await cur.fetchone()
    acquired = bool(row and row["acquired"])
    if not acquired:
        logger.info("Dedup scan already running for user=%s table=%s", user_id, table)
    return acquired


async def set_statement_timeout(conn: psycopg.AsyncConnection[Any], timeout_ms: int) -> None:
    """Apply ``statement_timeout`` for the rest of the current transaction."""
    # SET LOCAL does not take bind parameters.
    await conn.execute(f"SET LOCAL statement_timeout = {int(timeout_ms)}")
