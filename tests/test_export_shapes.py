"""Tests for payload shape detection and per-shape normalizers."""

from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from vitalis_workers.export_mapping import DEFAULT_TABLES, convert_unit, sleep_minutes
from vitalis_workers.export_shapes import (
    detect_metric_shape,
    detect_workout_shape,
    normalize_aggregated,
    normalize_instantaneous,
    normalize_sleep_block,
    normalize_workout_block,
    sleep_date_for,
)
from vitalis_workers.utils import parse_export_timestamp

USER = "user-1"


def _collection(name, points, **extra):
    return {"name": name, "units": extra.pop("units", None), "data": points, **extra}


class TestDetectMetricShape:
    def test_instantaneous(self):
        coll = _collection("heart_rate", [{"date": "2024-01-15 07:30:00 -0800", "qty": 62}])
        assert detect_metric_shape(coll, DEFAULT_TABLES) == "instantaneous"

    def test_aggregate_keys(self):
        coll = _collection(
            "heart_rate",
            [{"date": "2024-01-15 00:00:00 -0800", "Avg": 60, "Min": 50, "Max": 120}],
        )
        assert detect_metric_shape(coll, DEFAULT_TABLES) == "aggregated"

    def test_day_aggregation_flag(self):
        coll = _collection(
            "heart_rate",
            [{"date": "2024-01-15 09:00:00 -0800", "qty": 61}],
            aggregation="day",
        )
        assert detect_metric_shape(coll, DEFAULT_TABLES) == "aggregated"

    def test_cumulative_metric_at_local_midnight(self):
        coll = _collection("step_count", [{"date": "2024-01-15 00:00:00 -0800", "qty": 8000}])
        assert detect_metric_shape(coll, DEFAULT_TABLES) == "aggregated"

    def test_non_cumulative_metric_at_midnight_stays_instantaneous(self):
        coll = _collection("heart_rate", [{"date": "2024-01-15 00:00:00 -0800", "qty": 55}])
        assert detect_metric_shape(coll, DEFAULT_TABLES) == "instantaneous"

    def test_sleep_block_by_name_and_by_keys(self):
        by_name = _collection("sleep_analysis", [{"date": "2024-01-15 00:00:00 -0800", "qty": 7}])
        by_keys = _collection(
            "something",
            [{"sleepStart": "2024-01-15 23:00:00 -0800", "sleepEnd": "2024-01-16 07:00:00 -0800"}],
        )
        assert detect_metric_shape(by_name, DEFAULT_TABLES) == "sleep_block"
        assert detect_metric_shape(by_keys, DEFAULT_TABLES) == "sleep_block"

    @pytest.mark.parametrize(
        "collection",
        [
            None,
            "heart_rate",
            {"name": "heart_rate"},
            {"name": "heart_rate", "data": []},
            {"name": 42, "data": [{"date": "2024-01-15", "qty": 1}]},
            {"name": "heart_rate", "data": [{"qty": 1}]},
            {"name": "heart_rate", "data": [{"date": "2024-01-15 07:30:00 -0800", "value": 1}]},
        ],
    )
    def test_unrecognized(self, collection):
        assert detect_metric_shape(collection, DEFAULT_TABLES) == "unrecognized"


class TestDetectWorkoutShape:
    def test_workout_block(self):
        assert detect_workout_shape({"start": "a", "end": "b"}) == "workout_block"

    @pytest.mark.parametrize("entry", [None, [], {"start": "a"}, {"end": "b"}])
    def test_unrecognized(self, entry):
        assert detect_workout_shape(entry) == "unrecognized"


class TestNormalizeInstantaneous:
    def test_cumulative_sample_truncated_to_minute(self):
        coll = _collection(
            "step_count",
            [{"date": "2024-01-15 07:30:42 -0800", "qty": 120}],
            units="count",
        )
        out = normalize_instantaneous(USER, coll, "steps", DEFAULT_TABLES)
        assert len(out.metrics) == 1
        assert out.metrics[0].recorded_at == datetime(2024, 1, 15, 15, 30, tzinfo=UTC)
        assert out.metrics[0].value == Decimal("120.0")

    def test_non_cumulative_sample_keeps_seconds(self):
        coll = _collection("heart_rate", [{"date": "2024-01-15 07:30:42 -0800", "qty": 62}])
        out = normalize_instantaneous(USER, coll, "heart_rate", DEFAULT_TABLES)
        assert out.metrics[0].recorded_at == datetime(2024, 1, 15, 15, 30, 42, tzinfo=UTC)

    def test_bad_points_become_errors_siblings_survive(self):
        coll = _collection(
            "heart_rate",
            [
                {"date": "2024-01-15 07:30:00 -0800", "qty": "abc"},
                {"date": "not a date", "qty": 60},
                {"date": "2024-01-15 07:31:00 -0800", "qty": 61},
            ],
        )
        out = normalize_instantaneous(USER, coll, "heart_rate", DEFAULT_TABLES)
        assert [m.value for m in out.metrics] == [Decimal("61.0")]
        assert [e.code for e in out.errors] == ["invalid_value", "invalid_timestamp"]
        assert all(e.record_type == "metric" for e in out.errors)

    def test_distance_in_meters_converted_to_km(self):
        coll = _collection(
            "walking_running_distance",
            [{"date": "2024-01-15 07:30:00 -0800", "qty": 5000}],
            units="m",
        )
        out = normalize_instantaneous(USER, coll, "distance", DEFAULT_TABLES)
        assert out.metrics[0].value == Decimal("5.0000")
        assert out.metrics[0].unit == "km"


class TestNormalizeAggregated:
    def test_day_value_pinned_to_sentinel(self):
        coll = _collection(
            "heart_rate",
            [{"date": "2024-01-15 00:00:00 -0800", "Avg": 60, "Min": 50, "Max": 120}],
        )
        out = normalize_aggregated(USER, coll, "heart_rate", DEFAULT_TABLES)
        sample = out.metrics[0]
        # Local calendar date, even though local midnight is 08:00 UTC.
        assert sample.recorded_at == datetime(2024, 1, 15, 0, 0, tzinfo=UTC)
        assert sample.value == Decimal("60.0")
        assert sample.metadata["aggregation"] == "day"
        assert sample.metadata["min"] == 50.0
        assert sample.metadata["max"] == 120.0

    def test_steps_total_from_qty(self):
        coll = _collection("step_count", [{"date": "2024-01-15 00:00:00 -0800", "qty": 8000}])
        out = normalize_aggregated(USER, coll, "steps", DEFAULT_TABLES)
        assert out.metrics[0].value == Decimal("8000.0")

    def test_missing_aggregate_value_is_error(self):
        coll = _collection("heart_rate", [{"date": "2024-01-15 00:00:00 -0800", "Min": 50}])
        out = normalize_aggregated(USER, coll, "heart_rate", DEFAULT_TABLES)
        assert out.metrics == []
        assert out.errors[0].code == "invalid_value"


class TestSleepDate:
    def test_evening_bedtime_is_same_night(self):
        bedtime = parse_export_timestamp("2024-01-15 23:10:00 -0800")
        assert sleep_date_for(bedtime) == date(2024, 1, 15)

    def test_after_midnight_bedtime_belongs_to_previous_evening(self):
        bedtime = parse_export_timestamp("2024-01-16 00:30:00 -0800")
        assert sleep_date_for(bedtime) == date(2024, 1, 15)

    def test_rollover_hour_boundary(self):
        assert sleep_date_for(parse_export_timestamp("2024-01-16 05:59:00 -0800")) == date(2024, 1, 15)
        assert sleep_date_for(parse_export_timestamp("2024-01-16 06:00:00 -0800")) == date(2024, 1, 16)


class TestNormalizeSleepBlock:
    def _block(self, **point):
        base = {
            "sleepStart": "2024-01-15 23:10:00 -0800",
            "sleepEnd": "2024-01-16 07:10:00 -0800",
            "asleep": 450,
            "deep": 80,
            "rem": 100,
            "core": 270,
            "awake": 30,
        }
        base.update(point)
        return _collection("sleep_analysis", [base])

    def test_one_session_per_bed_period(self):
        out = normalize_sleep_block(USER, self._block(), DEFAULT_TABLES)
        assert len(out.sleep_sessions) == 1
        session = out.sleep_sessions[0]
        assert session.sleep_date == date(2024, 1, 15)
        assert session.in_bed_minutes == 480
        assert session.total_minutes == 450
        assert session.deep_sleep_minutes == 80
        assert session.awake_minutes == 30
        assert session.source == "apple_health"
        assert session.bedtime == datetime(2024, 1, 16, 7, 10, tzinfo=UTC)
        assert out.warnings == []

    def test_stage_hours_converted_to_minutes(self):
        out = normalize_sleep_block(
            USER, self._block(asleep=7.5, deep=1.25, rem=1.5, core=4.75, awake=0.5), DEFAULT_TABLES
        )
        session = out.sleep_sessions[0]
        assert session.total_minutes == 450
        assert session.deep_sleep_minutes == 75
        assert session.rem_sleep_minutes == 90
        assert session.awake_minutes == 30

    def test_minutes_disagreement_is_warning_not_error(self):
        out = normalize_sleep_block(USER, self._block(asleep=400), DEFAULT_TABLES)
        assert len(out.sleep_sessions) == 1
        assert out.errors == []
        assert len(out.warnings) == 1
        assert "50 min" in out.warnings[0]

    def test_missing_bounds_is_error(self):
        coll = _collection("sleep_analysis", [{"sleepStart": "2024-01-15 23:10:00 -0800"}])
        out = normalize_sleep_block(USER, coll, DEFAULT_TABLES)
        assert out.sleep_sessions == []
        assert out.errors[0].code == "missing_field"
        assert out.errors[0].field == "sleepEnd"
        assert out.errors[0].record_type == "sleep_session"


class TestNormalizeWorkoutBlock:
    def test_summary_fields(self):
        entry = {
            "name": "Outdoor Run",
            "start": "2024-01-15 06:00:00 -0800",
            "end": "2024-01-15 06:45:00 -0800",
            "duration": 2700,
            "activeEnergyBurned": {"qty": 500, "units": "kcal"},
            "avgHeartRate": {"qty": 150},
            "maxHeartRate": {"qty": 175},
        }
        out = normalize_workout_block(USER, entry, DEFAULT_TABLES)
        workout = out.workouts[0]
        assert workout.type == "running"
        assert workout.duration_minutes == 45
        assert workout.calories_burned == 500
        assert (workout.heart_rate_avg, workout.heart_rate_max) == (150, 175)
        assert workout.started_at == datetime(2024, 1, 15, 14, 0, tzinfo=UTC)

    def test_kilojoules_and_heart_rate_series(self):
        entry = {
            "name": "Pool Swim",
            "start": "2024-01-15 06:00:00 -0800",
            "end": "2024-01-15 06:30:00 -0800",
            "activeEnergyBurned": {"qty": 2092, "units": "kJ"},
            "heartRateData": [{"Avg": 140, "Max": 160}, {"Avg": 150, "Max": 170}],
        }
        workout = normalize_workout_block(USER, entry, DEFAULT_TABLES).workouts[0]
        assert workout.type == "swimming"
        assert workout.duration_minutes == 30
        assert workout.calories_burned == 500
        assert (workout.heart_rate_avg, workout.heart_rate_max) == (145, 170)

    def test_unknown_name_maps_to_other(self):
        entry = {"name": "Curling", "start": "2024-01-15 06:00:00 -0800", "end": "2024-01-15 07:00:00 -0800"}
        assert normalize_workout_block(USER, entry, DEFAULT_TABLES).workouts[0].type == "other"

    def test_end_before_start_is_error(self):
        entry = {"name": "Yoga", "start": "2024-01-15 07:00:00 -0800", "end": "2024-01-15 06:00:00 -0800"}
        out = normalize_workout_block(USER, entry, DEFAULT_TABLES)
        assert out.workouts == []
        assert out.errors[0].record_type == "workout"


class TestUnits:
    def test_spo2_fraction_to_percent(self):
        assert convert_unit("blood_oxygen", Decimal("0.97"), "%", DEFAULT_TABLES) == (
            Decimal("97.0000"),
            "%",
        )
        assert convert_unit("blood_oxygen", Decimal("98"), "%", DEFAULT_TABLES) == (Decimal("98"), "%")

    def test_miles_to_km(self):
        value, unit = convert_unit("distance", Decimal("1"), "mi", DEFAULT_TABLES)
        assert (value, unit) == (Decimal("1.6093"), "km")

    def test_unknown_unit_is_identity(self):
        assert convert_unit("heart_rate", Decimal("60"), "count/min", DEFAULT_TABLES) == (
            Decimal("60"),
            "count/min",
        )

    @pytest.mark.parametrize(("raw", "minutes"), [(None, 0), (0, 0), (7.5, 450), (1.25, 75), (90, 90)])
    def test_sleep_minutes(self, raw, minutes):
        assert sleep_minutes(raw) == minutes
