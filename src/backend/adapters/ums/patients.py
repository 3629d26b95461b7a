from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from common.measure_engine.models import Demographics, Fact, Gender, TestPatient
from .parsing import UMSAdapterError, as_list, parse_decimal, parse_iso_date

# payload key -> (engine collection, start-date key, end-date key)
_COLLECTIONS = (
    ("diagnoses", "conditions", "onsetDate", "abatementDate"),
    ("conditions", "conditions", "onsetDate", "abatementDate"),
    ("encounters", "encounters", "date", "endDate"),
    ("procedures", "procedures", "date", "endDate"),
    ("observations", "observations", "date", None),
    ("medications", "medications", "startDate", "endDate"),
    ("immunizations", "immunizations", "date", None),
)


def patient_from_payload(payload: dict[str, Any]) -> TestPatient:
    """
    Build a TestPatient from the test-patient JSON used by the measure editor.

    Expected shape:
      {
        "id": "...", "name": "...",
        "demographics": {"birthDate": "YYYY-MM-DD", "gender": "female"},
        "diagnoses": [{"code": "...", "system": "...", "display": "...", "onsetDate": "...", "status": "active"}],
        "encounters" / "procedures" / "immunizations": [{"code": "...", "date": "...", "status": "..."}],
        "observations": [{"code": "...", "date": "...", "value": 7.2, "unit": "%"}],
        "medications": [{"code": "...", "startDate": "...", "endDate": "..."}]
      }

    Notes:
    - a fact whose date is missing or unparseable is kept with no date (it never satisfies a window)
    - gender values outside male/female/other map to unknown
    """
    if not isinstance(payload, dict):
        raise UMSAdapterError("Test patient payload must be a JSON object.")
    patient_id = str(payload.get("id") or "").strip()
    if not patient_id:
        raise UMSAdapterError("Test patient missing required field: id")

    demographics_raw = payload.get("demographics") or {}
    if not isinstance(demographics_raw, dict):
        raise UMSAdapterError("demographics must be an object.")

    collections: dict[str, list[Fact]] = {}
    for key, collection, start_key, end_key in _COLLECTIONS:
        for i, raw in enumerate(as_list(payload.get(key), key)):
            collections.setdefault(collection, []).append(_fact(raw, f"{key}[{i}]", start_key, end_key))

    try:
        return TestPatient(
            id=patient_id,
            name=str(payload.get("name") or ""),
            demographics=Demographics(
                birth_date=parse_iso_date(demographics_raw.get("birthDate")),
                gender=_gender(demographics_raw.get("gender")),
            ),
            **{name: tuple(facts) for name, facts in collections.items()},
        )
    except ValidationError as exc:
        raise UMSAdapterError(f"Invalid test patient {patient_id!r}: {exc}") from exc


def patients_from_payload(payload: Any) -> list[TestPatient]:
    """Accepts a list of patients or an object with a `patients` list."""
    if isinstance(payload, dict) and "patients" in payload:
        payload = payload["patients"]
    if isinstance(payload, dict):
        return [patient_from_payload(payload)]
    if not isinstance(payload, list):
        raise UMSAdapterError("Patients payload must be a list or an object with a 'patients' list.")
    return [patient_from_payload(p) for p in payload]


def _fact(raw: Any, where: str, start_key: str, end_key: str | None) -> Fact:
    if not isinstance(raw, dict):
        raise UMSAdapterError(f"{where} must be an object.")
    code = str(raw.get("code") or "").strip()
    if not code:
        raise UMSAdapterError(f"{where} missing required field: code")
    return Fact(
        code=code,
        system=str(raw.get("system") or ""),
        display=str(raw.get("display") or ""),
        date=parse_iso_date(raw.get(start_key, raw.get("date"))),
        end_date=parse_iso_date(raw.get(end_key)) if end_key else None,
        value=parse_decimal(raw.get("value")),
        unit=str(raw.get("unit") or ""),
        status=str(raw.get("status") or ""),
    )


def _gender(value: Any) -> Gender:
    try:
        return Gender(str(value or "unknown").strip().lower())
    except ValueError:
        return Gender.UNKNOWN
