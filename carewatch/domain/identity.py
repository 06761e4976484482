"""
Patient identity resolution across inconsistent record shapes.

The monitoring API has shipped several payload layouts over time. Current
payloads carry the canonical id directly; older ones nest it under a
``patient`` sub-record or inside an object-typed ``patientId``. Canonical ids
are long opaque strings; short patient codes (``PAT-00018``) must never be
mistaken for one.
"""

from collections.abc import Iterable, Mapping
from typing import Any, NamedTuple

# Canonical ids are strictly longer than this
CANONICAL_ID_MIN_EXCLUSIVE = 20

UNRESOLVED = ""


class DisplayName(NamedTuple):
    primary: str
    english: str


def is_canonical_id(candidate: Any, patient_code: Any = None) -> bool:
    """Check the canonical-id rule: a string, longer than 20, not the patient code."""
    return (
        isinstance(candidate, str)
        and len(candidate) > CANONICAL_ID_MIN_EXCLUSIVE
        and candidate != patient_code
    )


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _candidate_ids(record: Mapping[str, Any]) -> Iterable[Any]:
    patient = record.get("patient")
    patient_id = record.get("patientId")
    nested = _mapping(patient)
    reference = _mapping(patient_id)

    # (a) direct field
    yield patient_id if isinstance(patient_id, str) else None
    # (b) nested sub-record, two key spellings
    yield nested.get("_id")
    yield nested.get("id")
    # (c) object-typed reference field, two key spellings
    yield reference.get("_id")
    yield reference.get("id")
    # (d) string-typed reference used directly
    yield patient if isinstance(patient, str) else None


def resolve_patient_id(record: Mapping[str, Any] | None) -> str:
    """
    Return the best canonical patient id in ``record`` or ``""``.

    The empty string is a valid "unknown owner" result, not an error.
    """
    if not record:
        return UNRESOLVED

    patient_code = record.get("patientCode")
    for candidate in _candidate_ids(record):
        if is_canonical_id(candidate, patient_code):
            return candidate
    return UNRESOLVED


def canonical_patient_id(patient: Mapping[str, Any]) -> str:
    """Canonical id of a roster patient entry (``_id`` preferred over ``id``)."""
    code = patient.get("patientCode")
    for key in ("_id", "id"):
        if is_canonical_id(patient.get(key), code):
            return patient[key]
    return UNRESOLVED


def build_code_index(records: Iterable[Mapping[str, Any]]) -> dict[str, str]:
    """Map patient codes to canonical ids for records where both are present."""
    index: dict[str, str] = {}
    for record in records:
        code = record.get("patientCode")
        patient_id = resolve_patient_id(record)
        if code and patient_id:
            index[code] = patient_id
    return index


def resolve_with_code_fallback(
    record: Mapping[str, Any], code_index: Mapping[str, str] | None = None
) -> str:
    """
    Resolve identity, borrowing an id by patient code when direct resolution fails.

    The fallback only applies when the record carries a patient code that was
    seen alongside a canonical id in the same poll cycle.
    """
    patient_id = resolve_patient_id(record)
    if patient_id or not code_index:
        return patient_id
    code = record.get("patientCode")
    return code_index.get(code, UNRESOLVED) if code else UNRESOLVED


def _localized(value: Any) -> Mapping[str, Any] | None:
    if isinstance(value, Mapping) and (value.get("ko") or value.get("en")):
        return value
    return None


def _first_text(*values: Any) -> str:
    for value in values:
        if isinstance(value, str) and value:
            return value
    return ""


def extract_display_name(record: Mapping[str, Any]) -> DisplayName:
    """
    Pick display names from a record.

    Fallback chain: localized name object, then legacy flat name fields,
    then the patient code.
    """
    patient = _mapping(record.get("patient"))
    localized = None
    for value in (
        record.get("name"),
        record.get("patientName"),
        record.get("fullNameData"),
        record.get("fullName"),
        record.get("nameData"),
        record.get("patientNameData"),
        patient.get("fullName"),
        patient.get("fullNameData"),
    ):
        localized = _localized(value)
        if localized:
            break

    code = _first_text(record.get("patientCode"), patient.get("patientCode"))
    if localized:
        english = _first_text(localized.get("en"))
        primary = _first_text(localized.get("ko"), english, code)
        return DisplayName(primary, english)

    primary = _first_text(
        record.get("patientName"),
        record.get("name"),
        record.get("nameKorean"),
        patient.get("nameKorean"),
        patient.get("name"),
    )
    english = _first_text(
        record.get("patientNameEnglish"),
        record.get("nameEnglish"),
        patient.get("nameEnglish"),
    )
    return DisplayName(primary or code, english)
