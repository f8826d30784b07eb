"""Tests for TRIMP-based and estimated workout strain."""

from datetime import UTC, datetime, timedelta

import pytest

from vitalis_workers.models import Workout
from vitalis_workers.strain import (
    AthleteProfile,
    daily_strain,
    estimate_max_hr,
    strain_without_hr,
    trimp,
    trimp_to_strain,
    workout_trimp,
)

START = datetime(2024, 1, 15, 14, 0, tzinfo=UTC)


def _workout(type_="running", minutes=60, calories=None, hr_avg=None):
    return Workout(
        user_id="u1",
        type=type_,
        duration_minutes=minutes,
        calories_burned=calories,
        heart_rate_avg=hr_avg,
        started_at=START,
        ended_at=START + timedelta(minutes=minutes),
    )


def test_tanaka_max_hr():
    assert estimate_max_hr(40) == 180


def test_trimp_male():
    assert trimp(60, 150, 60, 190) == pytest.approx(100.44, rel=1e-3)


def test_trimp_degenerate_bounds():
    assert trimp(60, 150, 190, 190) == 0.0
    assert trimp(60, 50, 60, 190) == 0.0


def test_trimp_to_strain_log_scale_and_cap():
    assert trimp_to_strain(0) == 0.0
    assert trimp_to_strain(100) == 16.2
    assert trimp_to_strain(10_000) == 21.0


def test_strain_without_hr_uses_type_intensity():
    assert strain_without_hr(_workout("running")) == 8.5
    assert strain_without_hr(_workout("yoga")) == 3.5


def test_low_calories_dampen_estimate():
    assert strain_without_hr(_workout("running", calories=240)) == 4.3


def test_unknown_type_uses_default_intensity():
    assert strain_without_hr(_workout("underwater_hockey")) == 6.0


def test_workout_trimp_needs_heart_rate():
    assert workout_trimp(_workout(), AthleteProfile()) is None
    assert workout_trimp(_workout(hr_avg=150), AthleteProfile(resting_hr=60, max_hr=190)) is not None


def test_daily_strain_without_any_heart_rate():
    assert daily_strain([]) == 0.0
    # sqrt(2) * 8.5
    assert daily_strain([_workout(), _workout()]) == 12.0


def test_daily_strain_mixes_hr_and_estimates():
    profile = AthleteProfile(resting_hr=60, max_hr=190)
    hr_only = daily_strain([_workout(hr_avg=150)], profile)
    mixed = daily_strain([_workout(hr_avg=150), _workout("yoga")], profile)
    assert hr_only == 16.2
    # 3.5 * 0.7 on top
    assert 18.6 <= mixed <= 18.7
