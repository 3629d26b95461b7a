"""UMS measure-spec and test-patient JSON adapters (no I/O)."""

from .measure_spec import measure_spec_from_payload, timing_from_payload
from .parsing import UMSAdapterError
from .patients import patient_from_payload, patients_from_payload

__all__ = [
    "UMSAdapterError",
    "measure_spec_from_payload",
    "patient_from_payload",
    "patients_from_payload",
    "timing_from_payload",
]
