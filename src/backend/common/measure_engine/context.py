from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from .config import EvaluationConfig
from .models import (
    CodeReference,
    DataElement,
    MeasurementPeriod,
    MeasureSpec,
    TestPatient,
    ValueSetReference,
)


@dataclass(frozen=True)
class EvaluationContext:
    patient: TestPatient
    period: MeasurementPeriod
    value_sets: tuple[ValueSetReference, ...] = ()
    config: EvaluationConfig = field(default_factory=EvaluationConfig)

    @classmethod
    def for_measure(
        cls,
        measure: MeasureSpec,
        patient: TestPatient,
        period: MeasurementPeriod,
        config: Optional[EvaluationConfig] = None,
    ) -> "EvaluationContext":
        return cls(
            patient=patient,
            period=period,
            value_sets=measure.value_sets,
            config=config or EvaluationConfig(),
        )

    @property
    def birth_date(self) -> Optional[date]:
        return self.patient.demographics.birth_date

    def resolve_value_set(self, ref: ValueSetReference) -> Optional[ValueSetReference]:
        for vs in self.value_sets:
            if vs.matches(ref):
                return vs
        return None

    def codes_for(self, element: DataElement) -> tuple[CodeReference, ...]:
        """Direct codes, inline value-set codes and codes of the measure-level value set it references."""
        codes: list[CodeReference] = list(element.direct_codes)
        if element.value_set is not None:
            codes.extend(element.value_set.codes)
            measure_vs = self.resolve_value_set(element.value_set)
            if measure_vs is not None:
                codes.extend(measure_vs.codes)
        seen: set[tuple[str, str]] = set()
        unique: list[CodeReference] = []
        for ref in codes:
            key = (ref.code, ref.system)
            if key in seen:
                continue
            seen.add(key)
            unique.append(ref)
        return tuple(unique)
