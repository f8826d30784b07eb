"""Tests for PhenoAge biological age and the pillar breakdown."""

from datetime import date

import pytest

from vitalis_workers.biological_age import (
    COMPONENT_RECOMMENDATIONS,
    MISSING_MARKERS_RECOMMENDATION,
    chronological_age,
    component_scores,
    compute_biological_age,
    estimate_percentile,
    extract_phenoage_inputs,
    phenoage,
    recommendations_for,
    resolve_field,
)
from vitalis_workers.errors import NotCalculableError

HEALTHY_PANEL = [
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


def _without(name):
    return [m for m in HEALTHY_PANEL if m["name"] != name]


class TestComputeBiologicalAge:
    def test_healthy_panel_is_younger(self):
        result = compute_biological_age(40, HEALTHY_PANEL)
        assert result.can_calculate
        assert 20.0 <= result.biological_age < 40.0
        assert result.age_difference == pytest.approx(result.biological_age - 40, abs=0.11)
        assert 50 < result.percentile <= 99
        assert result.missing_markers == []
        assert result.recommendations == []
        assert set(result.component_scores) == {"metabolic", "inflammation", "liver", "blood"}

    def test_missing_marker_is_not_calculable(self):
        result = compute_biological_age(40, _without("WBC"))
        assert not result.can_calculate
        assert result.biological_age is None
        assert result.percentile is None
        assert result.missing_markers == ["WBC"]
        assert result.reason == "Missing markers: WBC"
        # pillars still come from whatever is present
        assert "inflammation" in result.component_scores

    def test_implausible_value_is_excluded(self):
        panel = _without("Fasting Glucose") + [{"name": "Glucose", "value": 5000, "unit": "mg/dL"}]
        result = compute_biological_age(40, panel)
        assert not result.can_calculate
        assert result.missing_markers == ["Fasting Glucose"]
        assert [m.name for m in result.excluded_markers] == ["Glucose"]
        assert result.excluded_markers[0].reason == "outside plausible range 20-600"

    def test_absolute_lymphocyte_count_does_not_shadow_percent(self):
        baseline = compute_biological_age(40, HEALTHY_PANEL)
        panel = [{"name": "Absolute Lymphocytes", "value": 1.8, "unit": "K/uL"}] + HEALTHY_PANEL
        result = compute_biological_age(40, panel)
        assert result.biological_age == baseline.biological_age
        assert "Lymphocytes: 30%" in result.component_scores["blood"].factors

    def test_missing_markers_recommend_testing(self):
        result = compute_biological_age(40, _without("WBC"))
        assert result.recommendations[-1] == MISSING_MARKERS_RECOMMENDATION.format(markers="WBC")

    def test_unknown_age(self):
        result = compute_biological_age(None, HEALTHY_PANEL)
        assert not result.can_calculate
        assert result.reason == "Chronological age is unknown"

    def test_to_dict(self):
        payload = compute_biological_age(40, HEALTHY_PANEL).to_dict()
        assert payload["can_calculate"] is True
        assert payload["component_scores"]["blood"]["status"] == "optimal"
        assert payload["excluded_markers"] == []

    def test_older_markers_raise_age(self):
        worse = [dict(m) for m in HEALTHY_PANEL]
        for marker in worse:
            if marker["name"] == "hs-CRP":
                marker["value"] = 8.0
            if marker["name"] == "RDW":
                marker["value"] = 16.0
            if marker["name"] == "Fasting Glucose":
                marker["value"] = 130
        healthy = compute_biological_age(40, HEALTHY_PANEL)
        unhealthy = compute_biological_age(40, worse)
        assert unhealthy.biological_age > healthy.biological_age
        assert len(unhealthy.recommendations) == len(set(unhealthy.recommendations))
        assert COMPONENT_RECOMMENDATIONS["inflammation"] in unhealthy.recommendations


class TestInputs:
    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("Albumin, Serum", "albumin"),
            ("glucose", "glucose"),
            ("Lymphocyte %", "lymphocyte_percent"),
            ("C-Reactive Protein, Cardiac", "crp"),
            ("White Blood Cell Count", "wbc"),
            ("Red Cell Distribution Width", "rdw"),
            ("Vitamin D (25-OH)", None),
            ("Lymphocyte Percentage", "lymphocyte_percent"),
            ("Absolute Lymphocytes", None),
            ("Lymphocytes, Absolute Count", None),
            ("Lymphs #", None),
        ],
    )
    def test_resolve_field(self, name, expected):
        assert resolve_field(name) == expected

    def test_si_units_are_converted(self):
        inputs, excluded = extract_phenoage_inputs(
            [
                {"name": "Albumin", "value": 45, "unit": "g/L"},
                {"name": "Creatinine", "value": 79.56, "unit": "µmol/L"},
                {"name": "Glucose", "value": 4.7, "unit": "mmol/L"},
                {"name": "CRP", "value": 0.05, "unit": "mg/dL"},
            ]
        )
        assert excluded == []
        assert inputs["albumin"] == pytest.approx(4.5)
        assert inputs["creatinine"] == pytest.approx(0.9)
        assert inputs["glucose"] == pytest.approx(84.68, abs=0.01)
        assert inputs["crp"] == pytest.approx(0.5)

    def test_first_plausible_reading_wins(self):
        inputs, excluded = extract_phenoage_inputs(
            [
                {"name": "WBC", "value": 0.0, "unit": "K/uL"},
                {"name": "WBC", "value": 6.0, "unit": "K/uL"},
                {"name": "WBC", "value": 7.0, "unit": "K/uL"},
            ]
        )
        assert inputs == {"wbc": 6.0}
        assert len(excluded) == 1

    def test_phenoage_requires_full_panel(self):
        with pytest.raises(NotCalculableError) as exc_info:
            phenoage({"albumin": 4.5}, 40)
        assert exc_info.value.code == "missing_markers"


class TestPillars:
    def test_scores_and_recommendations(self):
        scores = component_scores({"glucose": 110, "creatinine": 0.9, "crp": 5.0, "wbc": 5.5})
        assert scores["metabolic"].score == 80
        assert scores["metabolic"].status == "good"
        assert scores["inflammation"].score == 65
        assert scores["inflammation"].status == "fair"
        assert "liver" not in scores
        assert recommendations_for(scores) == [COMPONENT_RECOMMENDATIONS["inflammation"]]


class TestAgeHelpers:
    def test_chronological_age(self):
        dob = date(1984, 6, 15)
        assert chronological_age(dob, date(2024, 6, 14)) == 39
        assert chronological_age(dob, date(2024, 6, 15)) == 40
        assert chronological_age(dob, date(1980, 1, 1)) is None
        assert chronological_age(None, date(2024, 1, 1)) is None

    @pytest.mark.parametrize(("difference", "expected"), [(0, 50), (-100, 99), (100, 1)])
    def test_percentile_bounds(self, difference, expected):
        assert estimate_percentile(difference) == expected
