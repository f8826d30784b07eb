"""Blood work storage and the longevity report built on top of it.

Blood work is append-only. The report always reads the latest result by
``test_date`` and recomputes biological age from it; nothing derived is
persisted.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json
from pydantic import ValidationError as PydanticValidationError

from ..biological_age import BiologicalAgeResult, chronological_age, compute_biological_age
from ..biomarkers import (
    DEFAULT_CATALOG,
    BiomarkerCatalog,
    BloodWorkSummary,
    MarkerAssessment,
    summarize,
)
from ..errors import ValidationError
from ..logging import log_extra
from ..models import BloodWorkSubmission
from ..registry import register

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 20


@dataclass(frozen=True)
class BloodWorkReceipt:
    id: int
    test_date: date
    marker_count: int
    categories: dict[str, int]
    unknown_markers: list[str]


@dataclass(frozen=True)
class LongevityReport:
    user_id: str
    on_date: date
    chronological_age: int | None
    test_date: date | None
    biological_age: BiologicalAgeResult | None
    markers: list[MarkerAssessment] = field(default_factory=list)
    summary: BloodWorkSummary | None = None
    history: list[dict[str, Any]] = field(default_factory=list)

    @property
    def has_blood_work(self) -> bool:
        return self.test_date is not None


def parse_submission(payload: Mapping[str, Any]) -> BloodWorkSubmission:
    try:
        return BloodWorkSubmission.model_validate(payload)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(p) for p in first.get("loc", ())) or None
        code = "missing_field" if first.get("type") == "missing" else "invalid_value"
        raise ValidationError(
            code=code,
            message=f"{location or 'payload'}: {first.get('msg', str(exc))}",
            field=location,
        ) from exc


async def record_blood_work(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    payload: Mapping[str, Any],
    *,
    catalog: BiomarkerCatalog = DEFAULT_CATALOG,
) -> BloodWorkReceipt:
    """Validate and append one lab result. Markers get a category from the catalog."""
    submission = parse_submission(payload)

    stored: list[dict[str, Any]] = []
    unknown: list[str] = []
    for marker in submission.markers:
        definition = catalog.lookup(marker.name)
        if definition is None:
            unknown.append(marker.name)
        stored.append(
            {
                "name": marker.name,
                "value": marker.value,
                "unit": marker.unit,
                "category": marker.category or catalog.category_for(marker.name),
            }
        )

    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            INSERT INTO blood_work (user_id, test_date, lab_name, markers)
            VALUES (%s, %s, %s, %s)
            RETURNING id
            """,
            (user_id, submission.test_date, submission.lab_name, Json(stored)),
        )
        row = await cur.fetchone()

    categories = dict(Counter(m["category"] for m in stored))
    logger.info(
        "Blood work recorded for user=%s test_date=%s (%d markers, %d unknown)",
        user_id,
        submission.test_date.isoformat(),
        len(stored),
        len(unknown),
        extra=log_extra(user_id=user_id),
    )
    return BloodWorkReceipt(
        id=int(row["id"]),
        test_date=submission.test_date,
        marker_count=len(stored),
        categories=categories,
        unknown_markers=unknown,
    )


async def _load_date_of_birth(
    conn: psycopg.AsyncConnection[Any], user_id: str
) -> date | None:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute("SELECT date_of_birth FROM users WHERE id = %s", (user_id,))
        row = await cur.fetchone()
    return row["date_of_birth"] if row is not None else None


async def _load_results(
    conn: psycopg.AsyncConnection[Any], user_id: str, on_date: date, limit: int
) -> list[dict[str, Any]]:
    """Results on or before ``on_date``, latest first; same-day ties by insert order."""
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT id, test_date, lab_name, markers
            FROM blood_work
            WHERE user_id = %s AND test_date <= %s
            ORDER BY test_date DESC, id DESC
            LIMIT %s
            """,
            (user_id, on_date, limit),
        )
        return await cur.fetchall()


def biological_age_history(
    results: list[dict[str, Any]],
    date_of_birth: date | None,
    catalog: BiomarkerCatalog = DEFAULT_CATALOG,
) -> list[dict[str, Any]]:
    """Biological age per stored result, oldest first, calculable results only."""
    history: list[dict[str, Any]] = []
    for result in sorted(results, key=lambda r: (r["test_date"], r["id"])):
        age = chronological_age(date_of_birth, result["test_date"])
        computed = compute_biological_age(age, result["markers"] or [], catalog)
        if not computed.can_calculate:
            continue
        history.append(
            {
                "test_date": result["test_date"].isoformat(),
                "chronological_age": age,
                "biological_age": computed.biological_age,
                "age_difference": computed.age_difference,
            }
        )
    return history


async def get_longevity_report(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    on_date: date | None = None,
    *,
    catalog: BiomarkerCatalog = DEFAULT_CATALOG,
) -> LongevityReport:
    on_date = on_date or datetime.now(UTC).date()
    date_of_birth = await _load_date_of_birth(conn, user_id)
    age = chronological_age(date_of_birth, on_date)
    results = await _load_results(conn, user_id, on_date, HISTORY_LIMIT)

    if not results:
        return LongevityReport(
            user_id=user_id,
            on_date=on_date,
            chronological_age=age,
            test_date=None,
            biological_age=None,
        )

    latest = results[0]
    markers = latest["markers"] or []
    assessments = [
        catalog.assess(str(m.get("name")), float(m.get("value")), str(m.get("unit") or ""))
        for m in markers
        if m.get("name") and m.get("value") is not None
    ]
    return LongevityReport(
        user_id=user_id,
        on_date=on_date,
        chronological_age=age,
        test_date=latest["test_date"],
        biological_age=compute_biological_age(age, markers, catalog),
        markers=assessments,
        summary=summarize(assessments),
        history=biological_age_history(results, date_of_birth, catalog),
    )


@register("blood_work.record")
async def handle_blood_work_record(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    """Payload: {user_id, blood_work: {test_date, lab_name?, markers: [...]}}."""
    await record_blood_work(conn, str(payload["user_id"]), payload.get("blood_work") or {})
