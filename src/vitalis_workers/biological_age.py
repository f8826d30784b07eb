"""PhenoAge biological age (Levine et al. 2018) from a nine-marker blood panel.

Inputs are taken in US lab units and converted to the SI units the published
coefficients expect. A panel missing any of the nine markers, or carrying an
implausible value for one of them, is not calculable: the result says so and
``biological_age`` stays ``None``.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date
from types import MappingProxyType
from typing import Any, Literal

from .biomarkers import DEFAULT_CATALOG, BiomarkerCatalog
from .errors import NotCalculableError
from .utils import round1

PhenoField = Literal[
    "albumin",
    "creatinine",
    "glucose",
    "crp",
    "lymphocyte_percent",
    "mcv",
    "rdw",
    "alkaline_phosphatase",
    "wbc",
]
PillarStatus = Literal["optimal", "good", "fair", "poor"]

REQUIRED_MARKERS: Mapping[PhenoField, str] = MappingProxyType({
    "albumin": "Albumin",
    "creatinine": "Creatinine",
    "glucose": "Fasting Glucose",
    "crp": "CRP (hs-CRP)",
    "lymphocyte_percent": "Lymphocyte %",
    "mcv": "MCV",
    "rdw": "RDW",
    "alkaline_phosphatase": "Alkaline Phosphatase",
    "wbc": "WBC",
})

COEFFICIENTS: Mapping[str, float] = MappingProxyType({
    "intercept": -19.9067,
    "albumin": -0.0336,
    "creatinine": 0.0095,
    "glucose": 0.1953,
    "ln_crp": 0.0954,
    "lymphocyte_percent": -0.0120,
    "mcv": 0.0268,
    "rdw": 0.3306,
    "alkaline_phosphatase": 0.0019,
    "wbc": 0.0554,
    "age": 0.0804,
})

GOMPERTZ_GAMMA = 0.0076927
MORTALITY_HORIZON_MONTHS = 120
PHENOAGE_OFFSET = 141.50
PHENOAGE_LOG_SCALE = -0.00553
PHENOAGE_DIVISOR = 0.09165

AGE_BOUNDS = (20.0, 120.0)
PERCENTILE_SPREAD_YEARS = 7.0
CRP_FLOOR_MG_L = 0.1

# Values outside these (in US units) are treated as entry or unit errors.
PLAUSIBLE_RANGES: Mapping[PhenoField, tuple[float, float]] = MappingProxyType({
    "albumin": (1.0, 7.0),
    "creatinine": (0.1, 15.0),
    "glucose": (20.0, 600.0),
    "crp": (0.0, 300.0),
    "lymphocyte_percent": (1.0, 90.0),
    "mcv": (50.0, 150.0),
    "rdw": (8.0, 30.0),
    "alkaline_phosphatase": (10.0, 1500.0),
    "wbc": (0.5, 100.0),
})

# Catalog name -> PhenoAge field, for exact and alias matches.
_FIELD_BY_CATALOG_NAME: Mapping[str, PhenoField] = MappingProxyType({
    "Albumin": "albumin",
    "Creatinine": "creatinine",
    "Fasting Glucose": "glucose",
    "hs-CRP": "crp",
    "Lymphocytes %": "lymphocyte_percent",
    "MCV": "mcv",
    "RDW": "rdw",
    "Alkaline Phosphatase": "alkaline_phosphatase",
    "WBC": "wbc",
})

# Substring fallbacks for lab spellings like "Albumin, Serum".
_FIELD_PATTERNS: tuple[tuple[str, PhenoField], ...] = (
    ("alkaline phosphatase", "alkaline_phosphatase"),
    ("c-reactive protein", "crp"),
    ("crp", "crp"),
    ("lymphocyte", "lymphocyte_percent"),
    ("corpuscular volume", "mcv"),
    ("distribution width", "rdw"),
    ("white blood cell", "wbc"),
    ("albumin", "albumin"),
    ("creatinine", "creatinine"),
    ("glucose", "glucose"),
)

# Differentials report lymphocytes both as a count and as a percent.
_COUNT_HINTS: tuple[str, ...] = ("absolute", "count", "#", "abs ", "abs.")
_PERCENT_HINTS: tuple[str, ...] = ("%", "percent")

# (unit, factor) converting an SI reading back to the US unit used above.
_TO_US_UNITS: Mapping[PhenoField, Mapping[str, float]] = MappingProxyType({
    "albumin": {"g/l": 0.1},
    "creatinine": {"umol/l": 1 / 88.4, "µmol/l": 1 / 88.4, "μmol/l": 1 / 88.4},
    "glucose": {"mmol/l": 1 / 0.0555},
    "crp": {"mg/dl": 10.0},
})

COMPONENT_THRESHOLD = 70

COMPONENT_RECOMMENDATIONS: Mapping[str, str] = MappingProxyType({
    "metabolic": "Reduce refined carbohydrates and add movement after meals to steady blood glucose.",
    "inflammation": "Raise omega-3 intake and cut processed foods and added sugar to bring inflammation down.",
    "liver": "Limit alcohol and keep protein intake adequate to support liver function.",
    "blood": "Review iron, B12 and folate status with your doctor to support healthy blood cell production.",
})

MISSING_MARKERS_RECOMMENDATION = (
    "Get these markers tested for a full biological age calculation: {markers}. "
    "Most are part of a standard metabolic panel and CBC with differential."
)


@dataclass(frozen=True)
class ExcludedMarker:
    name: str
    value: float
    reason: str


@dataclass(frozen=True)
class ComponentScore:
    score: int
    status: PillarStatus
    factors: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {"score": self.score, "status": self.status, "factors": list(self.factors)}


@dataclass(frozen=True)
class BiologicalAgeResult:
    chronological_age: float | None
    biological_age: float | None
    age_difference: float | None
    can_calculate: bool
    percentile: int | None = None
    component_scores: dict[str, ComponentScore] = field(default_factory=dict)
    recommendations: list[str] = field(default_factory=list)
    missing_markers: list[str] = field(default_factory=list)
    excluded_markers: list[ExcludedMarker] = field(default_factory=list)
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "chronological_age": self.chronological_age,
            "biological_age": self.biological_age,
            "age_difference": self.age_difference,
            "can_calculate": self.can_calculate,
            "percentile": self.percentile,
            "component_scores": {k: v.to_dict() for k, v in self.component_scores.items()},
            "recommendations": list(self.recommendations),
            "missing_markers": list(self.missing_markers),
            "excluded_markers": [
                {"name": m.name, "value": m.value, "reason": m.reason}
                for m in self.excluded_markers
            ],
            "reason": self.reason,
        }


def chronological_age(date_of_birth: date | None, on_date: date) -> int | None:
    """Whole years completed on ``on_date``."""
    if date_of_birth is None or date_of_birth > on_date:
        return None
    years = on_date.year - date_of_birth.year
    if (on_date.month, on_date.day) < (date_of_birth.month, date_of_birth.day):
        years -= 1
    return years


def _marker_attr(marker: Any, name: str) -> Any:
    if isinstance(marker, Mapping):
        return marker.get(name)
    return getattr(marker, name, None)


def resolve_field(name: str, catalog: BiomarkerCatalog = DEFAULT_CATALOG) -> PhenoField | None:
    definition = catalog.lookup(name)
    if definition is not None and definition.name in _FIELD_BY_CATALOG_NAME:
        return _FIELD_BY_CATALOG_NAME[definition.name]
    normalized = name.strip().lower()
    for pattern, pheno_field in _FIELD_PATTERNS:
        if pattern not in normalized:
            continue
        if pheno_field == "lymphocyte_percent" and not _is_percent_reading(normalized):
            return None
        return pheno_field
    return None


def _is_percent_reading(normalized: str) -> bool:
    if any(hint in normalized for hint in _COUNT_HINTS):
        return False
    return any(hint in normalized for hint in _PERCENT_HINTS)


def _to_us_units(pheno_field: PhenoField, value: float, unit: str | None) -> float:
    factors = _TO_US_UNITS.get(pheno_field, {})
    factor = factors.get((unit or "").strip().lower())
    return value * factor if factor is not None else value


def extract_phenoage_inputs(
    markers: Sequence[Any],
    catalog: BiomarkerCatalog = DEFAULT_CATALOG,
) -> tuple[dict[PhenoField, float], list[ExcludedMarker]]:
    """Map named markers onto PhenoAge fields; first plausible reading per field wins."""
    inputs: dict[PhenoField, float] = {}
    excluded: list[ExcludedMarker] = []
    for marker in markers:
        name = str(_marker_attr(marker, "name") or "")
        raw = _marker_attr(marker, "value")
        if not name or raw is None:
            continue
        pheno_field = resolve_field(name, catalog)
        if pheno_field is None or pheno_field in inputs:
            continue
        value = _to_us_units(pheno_field, float(raw), _marker_attr(marker, "unit"))
        low, high = PLAUSIBLE_RANGES[pheno_field]
        if not low <= value <= high:
            excluded.append(
                ExcludedMarker(
                    name=name,
                    value=float(raw),
                    reason=f"outside plausible range {low:g}-{high:g}",
                )
            )
            continue
        inputs[pheno_field] = value
    return inputs, excluded


def phenoage(inputs: Mapping[PhenoField, float], age: float) -> float:
    """Unclamped PhenoAge in years. Raises NotCalculableError on an incomplete panel."""
    missing = [REQUIRED_MARKERS[f] for f in REQUIRED_MARKERS if f not in inputs]
    if missing:
        raise NotCalculableError(
            code="missing_markers",
            message=f"Missing markers: {', '.join(missing)}",
        )

    ln_crp_mg_dl = math.log(max(inputs["crp"], CRP_FLOOR_MG_L) / 10)
    xb = (
        COEFFICIENTS["intercept"]
        + COEFFICIENTS["albumin"] * inputs["albumin"] * 10
        + COEFFICIENTS["creatinine"] * inputs["creatinine"] * 88.4
        + COEFFICIENTS["glucose"] * inputs["glucose"] * 0.0555
        + COEFFICIENTS["ln_crp"] * ln_crp_mg_dl
        + COEFFICIENTS["lymphocyte_percent"] * inputs["lymphocyte_percent"]
        + COEFFICIENTS["mcv"] * inputs["mcv"]
        + COEFFICIENTS["rdw"] * inputs["rdw"]
        + COEFFICIENTS["alkaline_phosphatase"] * inputs["alkaline_phosphatase"]
        + COEFFICIENTS["wbc"] * inputs["wbc"]
        + COEFFICIENTS["age"] * age
    )

    hazard = math.exp(xb) * (math.exp(MORTALITY_HORIZON_MONTHS * GOMPERTZ_GAMMA) - 1) / GOMPERTZ_GAMMA
    mortality = 1 - math.exp(-hazard)
    if mortality >= 1.0:
        return AGE_BOUNDS[1]
    if mortality <= 0.0:
        return AGE_BOUNDS[0]
    return PHENOAGE_OFFSET + math.log(PHENOAGE_LOG_SCALE * math.log(1 - mortality)) / PHENOAGE_DIVISOR


def estimate_percentile(age_difference: float) -> int:
    """Population percentile; a younger biological age ranks higher."""
    z = -age_difference / PERCENTILE_SPREAD_YEARS
    percentile = int(100 / (1 + math.exp(-1.702 * z)) + 0.5)
    return max(1, min(99, percentile))


def _pillar_status(score: float) -> PillarStatus:
    if score >= 90:
        return "optimal"
    if score >= 70:
        return "good"
    if score >= 50:
        return "fair"
    return "poor"


def _band(value: float, low: float, high: float, inside: int, outside: int) -> int:
    return inside if low <= value <= high else outside


def component_scores(inputs: Mapping[PhenoField, float]) -> dict[str, ComponentScore]:
    """Pillar sub-scores from whichever markers are present."""
    factors: dict[str, list[tuple[int, str]]] = {
        "metabolic": [],
        "inflammation": [],
        "liver": [],
        "blood": [],
    }

    if "glucose" in inputs:
        glucose = inputs["glucose"]
        score = 100 if glucose < 100 else 60 if glucose < 126 else 20
        factors["metabolic"].append((score, f"Fasting Glucose: {glucose:g} mg/dL"))
    if "creatinine" in inputs:
        value = inputs["creatinine"]
        factors["metabolic"].append((_band(value, 0.7, 1.2, 100, 50), f"Creatinine: {value:g} mg/dL"))
    if "crp" in inputs:
        crp = inputs["crp"]
        score = 100 if crp < 1 else 70 if crp < 3 else 30
        factors["inflammation"].append((score, f"hs-CRP: {crp:g} mg/L"))
    if "wbc" in inputs:
        value = inputs["wbc"]
        factors["inflammation"].append((_band(value, 4, 10, 100, 50), f"WBC: {value:g} K/uL"))
    if "albumin" in inputs:
        value = inputs["albumin"]
        factors["liver"].append((_band(value, 3.5, 5.5, 100, 50), f"Albumin: {value:g} g/dL"))
    if "alkaline_phosphatase" in inputs:
        value = inputs["alkaline_phosphatase"]
        factors["liver"].append((_band(value, 44, 147, 100, 50), f"ALP: {value:g} U/L"))
    if "lymphocyte_percent" in inputs:
        value = inputs["lymphocyte_percent"]
        factors["blood"].append((_band(value, 20, 40, 100, 60), f"Lymphocytes: {value:g}%"))
    if "mcv" in inputs:
        value = inputs["mcv"]
        factors["blood"].append((_band(value, 80, 100, 100, 60), f"MCV: {value:g} fL"))
    if "rdw" in inputs:
        value = inputs["rdw"]
        factors["blood"].append((_band(value, 11.5, 14.5, 100, 50), f"RDW: {value:g}%"))

    scores: dict[str, ComponentScore] = {}
    for name, entries in factors.items():
        if not entries:
            continue
        avg = sum(s for s, _ in entries) / len(entries)
        scores[name] = ComponentScore(
            score=int(avg + 0.5),
            status=_pillar_status(avg),
            factors=tuple(label for _, label in entries),
        )
    return scores


def recommendations_for(scores: Mapping[str, ComponentScore]) -> list[str]:
    """One catalog entry per component below threshold, never repeated."""
    seen: dict[str, None] = {}
    for name, component in scores.items():
        if component.score < COMPONENT_THRESHOLD and name in COMPONENT_RECOMMENDATIONS:
            seen.setdefault(COMPONENT_RECOMMENDATIONS[name], None)
    return list(seen)


def compute_biological_age(
    chronological_age_years: float | None,
    markers: Sequence[Any],
    catalog: BiomarkerCatalog = DEFAULT_CATALOG,
) -> BiologicalAgeResult:
    inputs, excluded = extract_phenoage_inputs(markers, catalog)
    scores = component_scores(inputs)
    recommendations = recommendations_for(scores)
    missing = [REQUIRED_MARKERS[f] for f in REQUIRED_MARKERS if f not in inputs]
    if missing:
        recommendations.append(MISSING_MARKERS_RECOMMENDATION.format(markers=", ".join(missing)))

    def not_calculable(reason: str) -> BiologicalAgeResult:
        return BiologicalAgeResult(
            chronological_age=chronological_age_years,
            biological_age=None,
            age_difference=None,
            can_calculate=False,
            component_scores=scores,
            recommendations=recommendations,
            missing_markers=missing,
            excluded_markers=excluded,
            reason=reason,
        )

    if chronological_age_years is None:
        return not_calculable("Chronological age is unknown")

    try:
        raw_age = phenoage(inputs, chronological_age_years)
    except NotCalculableError as exc:
        return not_calculable(exc.message)

    bio_age = max(AGE_BOUNDS[0], min(AGE_BOUNDS[1], raw_age))
    difference = bio_age - chronological_age_years
    return BiologicalAgeResult(
        chronological_age=chronological_age_years,
        biological_age=round1(bio_age),
        age_difference=round1(difference),
        can_calculate=True,
        percentile=estimate_percentile(difference),
        component_scores=scores,
        recommendations=recommendations,
        missing_markers=[],
        excluded_markers=excluded,
    )
