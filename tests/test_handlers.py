"""Handler tests against a fake connection: no database required."""

from datetime import UTC, date, datetime, timedelta

import pytest

from vitalis_workers.errors import ValidationError
from vitalis_workers.handlers.blood_work import get_longevity_report, record_blood_work
from vitalis_workers.handlers.daily_score import handle_daily_score_recompute
from vitalis_workers.handlers.dedup_maintenance import dedup_scan, preview_duplicates
from vitalis_workers.handlers.health_export import ingest_health_export
from vitalis_workers.handlers.sleep_log import log_sleep_session
from vitalis_workers.ingestion_pipeline import DUPLICATE_DELIVERY_NOTE

USER = "user-1"

HEART_RATE_DELIVERY = {
    "data": {
        "metrics": [
            {"name": "heart_rate", "data": [{"date": "2024-01-15 07:30:00 -0800", "qty": 62}]}
        ]
    }
}

PANEL = [
    {"name": "Albumin", "value": 4.5, "unit": "g/dL"},
    {"name": "Creatinine", "value": 0.9, "unit": "mg/dL"},
    {"name": "Fasting Glucose", "value": 85, "unit": "mg/dL"},
    {"name": "hs-CRP", "value": 0.5, "unit": "mg/L"},
    {"name": "Lymphocytes %", "value": 30, "unit": "%"},
    {"name": "MCV", "value": 90, "unit": "fL"},
    {"name": "RDW", "value": 12.8, "unit": "%"},
    {"name": "Alkaline Phosphatase", "value": 70, "unit": "U/L"},
    {"name": "WBC", "value": 5.5, "unit": "K/uL"},
]


def _log_params(cur):
    inserts = cur.statements("INSERT INTO ingestion_logs")
    assert len(inserts) == 1
    return inserts[0][1]


class TestHealthExport:
    @pytest.mark.asyncio
    async def test_successful_prior_delivery_short_circuits(self, fake_conn):
        cur = fake_conn._fake_cursor
        cur.all_results = [[{"id": 1, "status": "success"}]]

        result = await ingest_health_export(fake_conn, USER, HEART_RATE_DELIVERY)

        assert result.status == "success"
        assert result.warnings == [DUPLICATE_DELIVERY_NOTE]
        assert result.metrics_processed == 0
        assert cur.statements("INSERT INTO") == []

    @pytest.mark.asyncio
    async def test_failed_prior_attempt_is_cleared_and_retried(self, fake_conn):
        cur = fake_conn._fake_cursor
        cur.all_results = [[{"id": 1, "status": "failed"}]]
        cur.one_results = [{"id": 10, "inserted": True}]

        result = await ingest_health_export(fake_conn, USER, HEART_RATE_DELIVERY)

        assert result.status == "success"
        assert result.metrics_processed == 1
        assert len(cur.statements("DELETE FROM ingestion_logs")) == 1
        assert _log_params(cur)[2] == "success"

    @pytest.mark.asyncio
    async def test_rows_already_stored_count_as_duplicates(self, fake_conn):
        result = await ingest_health_export(fake_conn, USER, HEART_RATE_DELIVERY)
        assert result.status == "success"
        assert result.metrics_processed == 0
        assert result.duplicates_skipped == 1

    @pytest.mark.asyncio
    async def test_structural_failure_is_logged(self, fake_conn):
        cur = fake_conn._fake_cursor
        result = await ingest_health_export(fake_conn, USER, {"metrics": []})

        assert result.status == "failed"
        assert result.errors[0]["code"] == "missing_data"
        params = _log_params(cur)
        assert params[0] == USER
        assert params[2] == "failed"
        assert len(params[1]) == 32

    @pytest.mark.asyncio
    async def test_runs_under_user_lock(self, fake_conn):
        await ingest_health_export(fake_conn, USER, HEART_RATE_DELIVERY)
        sql, params = fake_conn._fake_cursor.executed[0]
        assert "pg_advisory_xact_lock" in sql
        assert params == (f"vitalis:user:{USER}",)


SLEEP_RECORD = {
    "sleep_date": "2024-01-15",
    "bedtime": "2024-01-15T23:00:00+00:00",
    "wake_time": "2024-01-16T07:20:00+00:00",
    "total_minutes": 480,
    "in_bed_minutes": 500,
    "deep_sleep_minutes": 80,
    "rem_sleep_minutes": 110,
}


def _stored_sleep_row(**overrides):
    bedtime = datetime(2024, 1, 15, 23, 0, tzinfo=UTC)
    row = {
        "id": 7,
        "user_id": USER,
        "sleep_date": date(2024, 1, 15),
        "bedtime": bedtime,
        "wake_time": bedtime + timedelta(minutes=500),
        "total_minutes": 480,
        "in_bed_minutes": 500,
        "deep_sleep_minutes": 80,
        "rem_sleep_minutes": 110,
        "sleep_score": 95,
        "efficiency": 96.0,
        "source": "manual",
        "metadata": {},
    }
    row.update(overrides)
    return row


class TestSleepLog:
    @pytest.mark.asyncio
    async def test_scores_upserts_and_recomputes_day(self, fake_conn):
        cur = fake_conn._fake_cursor
        cur.one_results = [{"id": 7, "inserted": True}, _stored_sleep_row(), None]

        result = await log_sleep_session(fake_conn, USER, SLEEP_RECORD)

        assert result.id == 7
        assert result.created
        assert result.sleep_score == 95
        assert result.efficiency == 96.0
        assert result.readiness_score == 96
        upsert_sql, _ = cur.statements("INSERT INTO sleep_sessions")[0]
        assert "DO UPDATE SET" in upsert_sql
        assert len(cur.statements("INSERT INTO daily_scores")) == 1
        previous = cur.statements("SELECT strain_score FROM daily_scores")
        assert [params for _, params in previous] == [(USER, date(2024, 1, 14))]

    @pytest.mark.asyncio
    async def test_reentry_reports_update(self, fake_conn):
        fake_conn._fake_cursor.one_results = [{"id": 7, "inserted": False}]
        result = await log_sleep_session(fake_conn, USER, SLEEP_RECORD)
        assert not result.created
        assert result.readiness_score is None

    @pytest.mark.asyncio
    async def test_missing_field_rejected_before_any_query(self, fake_conn):
        record = {k: v for k, v in SLEEP_RECORD.items() if k != "bedtime"}
        with pytest.raises(ValidationError) as exc_info:
            await log_sleep_session(fake_conn, USER, record)
        assert exc_info.value.code == "missing_field"
        assert exc_info.value.field == "bedtime"
        fake_conn.transaction.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_value_rejected(self, fake_conn):
        with pytest.raises(ValidationError) as exc_info:
            await log_sleep_session(fake_conn, USER, {**SLEEP_RECORD, "total_minutes": -5})
        assert exc_info.value.code == "invalid_value"
        assert exc_info.value.field == "total_minutes"

    @pytest.mark.asyncio
    async def test_wake_before_bed_rejected(self, fake_conn):
        record = {**SLEEP_RECORD, "wake_time": "2024-01-15T22:00:00+00:00"}
        with pytest.raises(ValidationError) as exc_info:
            await log_sleep_session(fake_conn, USER, record)
        assert exc_info.value.code == "invalid_value"


class TestBloodWork:
    @pytest.mark.asyncio
    async def test_record_categorizes_markers(self, fake_conn):
        fake_conn._fake_cursor.one_results = [{"id": 3}]
        receipt = await record_blood_work(
            fake_conn,
            USER,
            {
                "test_date": "2024-03-01",
                "lab_name": "  Quest ",
                "markers": [
                    {"name": "glucose", "value": 88, "unit": "mg/dL"},
                    {"name": "Zonulin", "value": 40, "unit": "ng/mL"},
                ],
            },
        )
        assert receipt.id == 3
        assert receipt.test_date == date(2024, 3, 1)
        assert receipt.categories == {"metabolic": 1, "other": 1}
        assert receipt.unknown_markers == ["Zonulin"]
        _, params = fake_conn._fake_cursor.statements("INSERT INTO blood_work")[0]
        assert params[2] == "Quest"

    @pytest.mark.asyncio
    async def test_missing_test_date(self, fake_conn):
        with pytest.raises(ValidationError) as exc_info:
            await record_blood_work(fake_conn, USER, {"markers": PANEL})
        assert exc_info.value.code == "missing_field"
        assert exc_info.value.field == "test_date"

    @pytest.mark.asyncio
    async def test_empty_markers(self, fake_conn):
        with pytest.raises(ValidationError) as exc_info:
            await record_blood_work(fake_conn, USER, {"test_date": "2024-03-01", "markers": []})
        assert exc_info.value.code == "invalid_value"
        assert exc_info.value.field == "markers"

    @pytest.mark.asyncio
    async def test_longevity_report_uses_latest_result(self, fake_conn):
        cur = fake_conn._fake_cursor
        cur.one_results = [{"date_of_birth": date(1984, 6, 15)}]
        cur.all_results = [
            [
                {"id": 2, "test_date": date(2024, 3, 1), "lab_name": None, "markers": PANEL},
                {"id": 1, "test_date": date(2023, 3, 1), "lab_name": None, "markers": PANEL},
            ]
        ]

        report = await get_longevity_report(fake_conn, USER, date(2024, 6, 20))

        assert report.has_blood_work
        assert report.chronological_age == 40
        assert report.test_date == date(2024, 3, 1)
        assert report.biological_age.can_calculate
        assert report.summary.total == len(PANEL)
        assert [h["test_date"] for h in report.history] == ["2023-03-01", "2024-03-01"]
        assert [h["chronological_age"] for h in report.history] == [38, 39]

    @pytest.mark.asyncio
    async def test_longevity_report_without_results(self, fake_conn):
        report = await get_longevity_report(fake_conn, USER, date(2024, 6, 20))
        assert not report.has_blood_work
        assert report.biological_age is None
        assert report.chronological_age is None


class TestDedupScan:
    @pytest.mark.asyncio
    async def test_skips_tables_already_being_scanned(self, fake_conn):
        fake_conn._fake_cursor.one_results = [{"acquired": False}] * 3
        report = await dedup_scan(fake_conn, USER)
        assert report.skipped == ["health_metrics", "sleep_sessions", "workouts"]
        assert report.total_removed == 0
        assert fake_conn._fake_cursor.statements("DELETE") == []

    @pytest.mark.asyncio
    async def test_deletes_in_batches(self, fake_conn):
        cur = fake_conn._fake_cursor

        async def _execute(sql, params=None):
            cur.executed.append((sql, params))
            if sql.startswith("DELETE"):
                cur.rowcount = len(params[1])

        cur.execute.side_effect = _execute
        cur.one_results = [{"acquired": True}, {"acquired": True}]
        cur.all_results = [[{"id": 5}, {"id": 6}], [{"id": 9}]]

        report = await dedup_scan(fake_conn, USER, ["workouts"], batch_size=2)

        scan = report.tables[0]
        assert (scan.removed, scan.batches, scan.skipped) == (3, 2, False)
        deletes = cur.statements("DELETE FROM workouts")
        assert [params[1] for _, params in deletes] == [[5, 6], [9]]
        assert fake_conn.transaction.call_count == 2

    @pytest.mark.asyncio
    async def test_unknown_table_rejected(self, fake_conn):
        with pytest.raises(ValueError, match="blood_work"):
            await dedup_scan(fake_conn, USER, ["blood_work"])

    @pytest.mark.asyncio
    async def test_preview_counts(self, fake_conn):
        fake_conn._fake_cursor.one_results = [{"removable": 2, "groups": 1}]
        preview = await preview_duplicates(fake_conn, USER, ["health_metrics"])
        assert preview == {"health_metrics": {"removable": 2, "groups": 1}}


@pytest.mark.asyncio
async def test_daily_score_job_recomputes_each_date_once(fake_conn):
    payload = {"user_id": USER, "dates": ["2024-01-16", "2024-01-15", date(2024, 1, 15)]}
    await handle_daily_score_recompute(fake_conn, payload)
    stored = fake_conn._fake_cursor.statements("INSERT INTO daily_scores")
    assert [params[1] for _, params in stored] == [date(2024, 1, 15), date(2024, 1, 16)]


@pytest.mark.asyncio
async def test_sleep_log_job_rejects_bad_record_through_registry(fake_conn):
    import vitalis_workers.handlers  # noqa: F401
    from vitalis_workers.registry import get_handler

    handler = get_handler("sleep.log")
    with pytest.raises(ValidationError) as exc_info:
        await handler(fake_conn, {"user_id": USER, "record": {"sleep_date": "2024-01-15"}})
    assert exc_info.value.code == "missing_field"
