"""Error hierarchy and stable code taxonomy for the health core.

Every error carries a machine-readable ``code`` plus the offending ``field``
where one applies. Nothing here is fatal to the worker process: callers
either collect errors per record or turn them into structured results.
"""

from __future__ import annotations

from typing import Any, Literal

ErrorClass = Literal[
    "validation",
    "mapping",
    "partial",
    "not_calculable",
    "conflict",
    "other",
]


class HealthCoreError(Exception):
    error_class: ErrorClass = "other"

    def __init__(
        self,
        *,
        code: str,
        message: str,
        field: str | None = None,
        docs_hint: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.field = field
        self.docs_hint = docs_hint

    def to_dict(self) -> dict[str, Any]:
        entry: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.field is not None:
            entry["field"] = self.field
        if self.docs_hint is not None:
            entry["docs_hint"] = self.docs_hint
        return entry


class ValidationError(HealthCoreError):
    """Missing or malformed required field. Raised before any write."""

    error_class: ErrorClass = "validation"


class PartialIngestionError(HealthCoreError):
    """One record in a batch could not be normalized or stored."""

    error_class: ErrorClass = "partial"

    def __init__(
        self,
        *,
        code: str,
        message: str,
        record_type: str,
        field: str | None = None,
        docs_hint: str | None = None,
    ) -> None:
        super().__init__(code=code, message=message, field=field, docs_hint=docs_hint)
        self.record_type = record_type

    def to_dict(self) -> dict[str, Any]:
        entry = super().to_dict()
        entry["record_type"] = self.record_type
        return entry


class NotCalculableError(HealthCoreError):
    error_class: ErrorClass = "not_calculable"


class ConflictError(HealthCoreError):
    """Natural-key collision. The dedup layer absorbs these."""

    error_class: ErrorClass = "conflict"


ERROR_CLASS_BY_CODE: dict[str, ErrorClass] = {
    "missing_field": "validation",
    "invalid_value": "validation",
    "invalid_timestamp": "validation",
    "missing_data": "validation",
    "unmapped_metric": "mapping",
    "unrecognized_shape": "mapping",
    "record_failed": "partial",
    "storage_error": "partial",
    "missing_markers": "not_calculable",
    "unknown_age": "not_calculable",
    "implausible_marker": "not_calculable",
    "duplicate_key": "conflict",
}


def classify_error_code(error_code: str | None) -> ErrorClass:
    normalized = str(error_code or "").strip().lower()
    if not normalized:
        return "other"
    return ERROR_CLASS_BY_CODE.get(normalized, "other")


def is_caller_fault(error_code: str | None) -> bool:
    """True for codes that should surface as a 4xx-equivalent rejection."""
    return classify_error_code(error_code) == "validation"
