from __future__ import annotations

from typing import Iterable

from ..models import CodeReference

# (substring, canonical) in priority order.
_SYSTEM_ALIASES: tuple[tuple[str, str], ...] = (
    ("icd", "ICD10"),
    ("10-cm", "ICD10"),
    ("snomed", "SNOMED"),
    ("sct", "SNOMED"),
    ("cpt", "CPT"),
    ("hcpcs", "HCPCS"),
    ("loinc", "LOINC"),
    ("rxnorm", "RxNorm"),
    ("rx", "RxNorm"),
    ("cvx", "CVX"),
)


def normalize_code(code: str) -> str:
    """ICD-style codes compare without dots, case-insensitively (E11.9 == e119)."""
    return code.replace(".", "").strip().upper()


def normalize_system(system: str) -> str:
    lower = system.strip().lower()
    if not lower:
        return ""
    for needle, canonical in _SYSTEM_ALIASES:
        if needle in lower:
            return canonical
    return system.strip().upper()


def code_matches(code: str, system: str, targets: Iterable[CodeReference]) -> bool:
    """
    Exact code membership with system normalization.

    A blank system on either side is accepted: hand-authored test patients often omit it.
    """
    norm_code = normalize_code(code)
    norm_system = normalize_system(system)
    for target in targets:
        if normalize_code(target.code) != norm_code:
            continue
        target_system = normalize_system(target.system)
        if not target_system or not norm_system or target_system == norm_system:
            return True
    return False
