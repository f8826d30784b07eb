"""In-memory worker and ingestion counters.

Asyncio is single-threaded, so plain dicts need no locking.
"""

import time

_start_time = time.monotonic()

_metrics: dict = {
    "jobs_processed": 0,
    "jobs_failed": 0,
    "jobs_dead": 0,
    "records_inserted": {},
    "records_skipped_duplicate": {},
    "deliveries": {"success": 0, "partial": 0, "failed": 0, "duplicate": 0},
    "dedup_rows_removed": 0,
    "handlers": {},
}


def record_handler_invocation(handler_name: str, duration_ms: float, success: bool) -> None:
    """Record a single handler invocation with timing."""
    h = _metrics["handlers"].setdefault(handler_name, {
        "invocations": 0,
        "successes": 0,
        "failures": 0,
        "total_duration_ms": 0.0,
    })
    h["invocations"] += 1
    h["total_duration_ms"] += duration_ms
    if success:
        h["successes"] += 1
    else:
        h["failures"] += 1


def record_job_completed() -> None:
    _metrics["jobs_processed"] += 1


def record_job_failed() -> None:
    _metrics["jobs_failed"] += 1


def record_job_dead() -> None:
    _metrics["jobs_dead"] += 1


def record_upserts(record_type: str, inserted: int, skipped: int) -> None:
    """Count natural-key inserts and conflicts for one record type."""
    ins = _metrics["records_inserted"]
    ins[record_type] = ins.get(record_type, 0) + inserted
    dup = _metrics["records_skipped_duplicate"]
    dup[record_type] = dup.get(record_type, 0) + skipped


def record_delivery(status: str) -> None:
    _metrics["deliveries"][status] = _metrics["deliveries"].get(status, 0) + 1


def record_dedup_removed(count: int) -> None:
    _metrics["dedup_rows_removed"] += count


def get_metrics() -> dict:
    """Return a snapshot of current metrics."""
    return {
        "uptime_seconds": round(time.monotonic() - _start_time, 1),
        "jobs_processed": _metrics["jobs_processed"],
        "jobs_failed": _metrics["jobs_failed"],
        "jobs_dead": _metrics["jobs_dead"],
        "records_inserted": dict(_metrics["records_inserted"]),
        "records_skipped_duplicate": dict(_metrics["records_skipped_duplicate"]),
        "deliveries": dict(_metrics["deliveries"]),
        "dedup_rows_removed": _metrics["dedup_rows_removed"],
        "handlers": {
            name: dict(stats)
            for name, stats in _metrics["handlers"].items()
        },
    }
