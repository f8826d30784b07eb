"""Biomarker reference catalog and marker status classification.

The catalog is an immutable lookup built once and passed to whatever needs
it. Names are matched case-insensitively, including known aliases; markers
the catalog does not know get category ``"other"`` and status ``normal``.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Literal

MarkerStatus = Literal["optimal", "normal", "warning", "critical"]

UNKNOWN_CATEGORY = "other"

CATEGORY_LABELS: Mapping[str, str] = MappingProxyType({
    "metabolic": "Metabolic Health",
    "lipid": "Lipid Panel",
    "inflammation": "Inflammation",
    "hormones": "Hormones",
    "vitamins": "Vitamins & Minerals",
    "blood": "Blood Count",
    "kidney": "Kidney Function",
    "liver": "Liver Function",
    UNKNOWN_CATEGORY: "Other",
})

# Percent outside the reference range at which a value becomes critical.
CRITICAL_BELOW_PERCENT = 30.0
CRITICAL_ABOVE_PERCENT = 50.0

STATUS_POINTS: Mapping[MarkerStatus, int] = MappingProxyType({
    "optimal": 100,
    "normal": 80,
    "warning": 50,
    "critical": 20,
})

Range = tuple[float | None, float | None]


@dataclass(frozen=True)
class BiomarkerDefinition:
    name: str
    category: str
    unit: str
    reference: Range
    optimal: Range
    higher_is_better: bool = False
    aliases: tuple[str, ...] = ()


@dataclass(frozen=True)
class MarkerAssessment:
    name: str
    value: float
    unit: str
    category: str
    status: MarkerStatus
    message: str
    reference: Range = (None, None)
    optimal: Range = (None, None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "value": self.value,
            "unit": self.unit,
            "category": self.category,
            "status": self.status,
            "message": self.message,
            "reference_min": self.reference[0],
            "reference_max": self.reference[1],
            "optimal_min": self.optimal[0],
            "optimal_max": self.optimal[1],
        }


@dataclass(frozen=True)
class BloodWorkSummary:
    optimal: int
    normal: int
    warning: int
    critical: int
    total: int
    overall_score: int


def _in_range(value: float, bounds: Range) -> bool:
    low, high = bounds
    if low is not None and value < low:
        return False
    if high is not None and value > high:
        return False
    return True


def classify_value(value: float, definition: BiomarkerDefinition) -> tuple[MarkerStatus, str]:
    if _in_range(value, definition.optimal):
        return "optimal", "Optimal range"
    if _in_range(value, definition.reference):
        return "normal", "Within normal range"

    ref_min, ref_max = definition.reference
    if ref_min is not None and value < ref_min:
        below = (ref_min - value) / ref_min * 100
        if below > CRITICAL_BELOW_PERCENT:
            return "critical", f"Significantly low ({below:.0f}% below normal)"
        return "warning", "Below optimal" if definition.higher_is_better else "Below normal range"
    if ref_max is not None and value > ref_max:
        above = (value - ref_max) / ref_max * 100
        if above > CRITICAL_ABOVE_PERCENT:
            return "critical", f"Significantly elevated ({above:.0f}% above normal)"
        return "warning", "Elevated (may be fine)" if definition.higher_is_better else "Above normal range"
    return "normal", "Within range"


@dataclass(frozen=True)
class BiomarkerCatalog:
    definitions: Mapping[str, BiomarkerDefinition]
    _index: Mapping[str, BiomarkerDefinition]

    def lookup(self, name: str) -> BiomarkerDefinition | None:
        return self._index.get(name.strip().lower())

    def category_for(self, name: str) -> str:
        definition = self.lookup(name)
        return definition.category if definition is not None else UNKNOWN_CATEGORY

    def assess(self, name: str, value: float, unit: str) -> MarkerAssessment:
        definition = self.lookup(name)
        if definition is None:
            return MarkerAssessment(
                name=name,
                value=value,
                unit=unit,
                category=UNKNOWN_CATEGORY,
                status="normal",
                message="Status cannot be determined for custom marker",
            )
        status, message = classify_value(value, definition)
        return MarkerAssessment(
            name=definition.name,
            value=value,
            unit=unit or definition.unit,
            category=definition.category,
            status=status,
            message=message,
            reference=definition.reference,
            optimal=definition.optimal,
        )


def build_catalog(definitions: Iterable[BiomarkerDefinition]) -> BiomarkerCatalog:
    by_name: dict[str, BiomarkerDefinition] = {}
    index: dict[str, BiomarkerDefinition] = {}
    for definition in definitions:
        if definition.name in by_name:
            raise ValueError(f"Duplicate biomarker definition {definition.name!r}")
        by_name[definition.name] = definition
        for key in (definition.name, *definition.aliases):
            index[key.strip().lower()] = definition
    return BiomarkerCatalog(
        definitions=MappingProxyType(by_name), _index=MappingProxyType(index)
    )


def summarize(assessments: Sequence[MarkerAssessment]) -> BloodWorkSummary:
    counts = {status: 0 for status in STATUS_POINTS}
    for item in assessments:
        counts[item.status] += 1
    total = len(assessments)
    score = 0
    if total:
        points = sum(STATUS_POINTS[s] * n for s, n in counts.items())
        score = int(points / total + 0.5)
    return BloodWorkSummary(
        optimal=counts["optimal"],
        normal=counts["normal"],
        warning=counts["warning"],
        critical=counts["critical"],
        total=total,
        overall_score=score,
    )


def _d(
    name: str,
    category: str,
    unit: str,
    reference: Range,
    optimal: Range,
    *aliases: str,
    higher_is_better: bool = False,
) -> BiomarkerDefinition:
    return BiomarkerDefinition(name, category, unit, reference, optimal, higher_is_better, aliases)


DEFAULT_CATALOG = build_catalog([
    # metabolic
    _d("Fasting Glucose", "metabolic", "mg/dL", (70, 100), (72, 90), "glucose", "fasting blood glucose"),
    _d("HbA1c", "metabolic", "%", (None, 5.7), (None, 5.3), "hemoglobin a1c"),
    _d("Fasting Insulin", "metabolic", "μIU/mL", (2.6, 24.9), (2, 8), "insulin"),
    _d("HOMA-IR", "metabolic", "", (None, 2.5), (None, 1.0)),
    # lipid
    _d("Total Cholesterol", "lipid", "mg/dL", (None, 200), (150, 200), "cholesterol"),
    _d("LDL-C", "lipid", "mg/dL", (None, 100), (None, 70), "ldl", "ldl cholesterol"),
    _d("HDL-C", "lipid", "mg/dL", (40, None), (60, None), "hdl", "hdl cholesterol", higher_is_better=True),
    _d("Triglycerides", "lipid", "mg/dL", (None, 150), (None, 100)),
    _d("ApoB", "lipid", "mg/dL", (None, 100), (None, 80), "apolipoprotein b"),
    _d("Lp(a)", "lipid", "nmol/L", (None, 75), (None, 30), "lipoprotein(a)"),
    # inflammation
    _d("hs-CRP", "inflammation", "mg/L", (None, 3.0), (None, 1.0), "crp", "c-reactive protein", "high-sensitivity crp"),
    _d("Homocysteine", "inflammation", "μmol/L", (5, 15), (5, 10)),
    _d("Ferritin", "inflammation", "ng/mL", (12, 300), (50, 150)),
    # hormones
    _d("TSH", "hormones", "mIU/L", (0.4, 4.0), (1.0, 2.5)),
    _d("Free T4", "hormones", "ng/dL", (0.8, 1.8), (1.0, 1.5)),
    _d("Free T3", "hormones", "pg/mL", (2.3, 4.2), (3.0, 4.0)),
    _d("Testosterone (Total)", "hormones", "ng/dL", (264, 916), (500, 900), "testosterone"),
    _d("Cortisol (AM)", "hormones", "μg/dL", (6.2, 19.4), (10, 18), "cortisol"),
    _d("DHEA-S", "hormones", "μg/dL", (80, 560), (200, 400)),
    # vitamins & minerals
    _d("Vitamin D (25-OH)", "vitamins", "ng/mL", (30, 100), (40, 60), "vitamin d"),
    _d("Vitamin B12", "vitamins", "pg/mL", (200, 900), (500, 800), "b12"),
    _d("Folate", "vitamins", "ng/mL", (3, 20), (10, 20)),
    _d("Iron", "vitamins", "μg/dL", (60, 170), (80, 150)),
    _d("Magnesium", "vitamins", "mg/dL", (1.7, 2.2), (2.0, 2.2)),
    # blood count
    _d("Hemoglobin", "blood", "g/dL", (12, 17.5), (13.5, 16)),
    _d("Hematocrit", "blood", "%", (36, 50), (40, 48)),
    _d("RBC", "blood", "M/μL", (4.0, 5.5), (4.5, 5.2), "red blood cells"),
    _d("WBC", "blood", "K/μL", (4.5, 11.0), (4.5, 8.0), "white blood cell", "white blood cells", "white blood cell count"),
    _d("Platelets", "blood", "K/μL", (150, 400), (180, 350)),
    _d("Lymphocytes %", "blood", "%", (20, 40), (25, 35), "lymphocyte", "lymphocytes", "lymphocyte %", "lymphocyte percent"),
    _d("MCV", "blood", "fL", (80, 100), (82, 92), "mean corpuscular volume"),
    _d("RDW", "blood", "%", (11.5, 14.5), (11.5, 13.0), "rdw-cv", "red cell distribution width"),
    # kidney
    _d("Creatinine", "kidney", "mg/dL", (0.7, 1.3), (0.8, 1.1)),
    _d("BUN", "kidney", "mg/dL", (7, 20), (10, 18), "blood urea nitrogen"),
    _d("eGFR", "kidney", "mL/min", (90, None), (100, None), higher_is_better=True),
    # liver
    _d("ALT", "liver", "U/L", (None, 41), (None, 25)),
    _d("AST", "liver", "U/L", (None, 40), (None, 25)),
    _d("GGT", "liver", "U/L", (None, 65), (None, 30)),
    _d("Albumin", "liver", "g/dL", (3.5, 5.0), (4.0, 5.0), higher_is_better=True),
    _d("Alkaline Phosphatase", "liver", "U/L", (44, 147), (45, 100), "alp"),
])
