from __future__ import annotations

import datetime
from enum import Enum
from typing import Dict, Iterable, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from .models import (
    POPULATION_ORDER,
    DataElementType,
    LogicalOperator,
    MeasurementPeriod,
    MeasureSpec,
    PopulationType,
    TestPatient,
)


class NodeStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    PARTIAL = "partial"
    NOT_EVALUATED = "not_evaluated"


class NodeKind(str, Enum):
    LEAF = "leaf"
    GROUP = "group"


class FinalOutcome(str, Enum):
    NOT_IN_POPULATION = "not_in_population"
    EXCLUDED = "excluded"
    IN_NUMERATOR = "in_numerator"
    DENOMINATOR_ONLY = "denominator_only"


# Synthetic fact codes used to explain a result rather than cite patient data.
NO_MATCH = "NO_MATCH"
DOSE_COUNT = "DOSE_COUNT"
INSUFFICIENT_DOSES = "INSUFFICIENT_DOSES"
GENDER = "GENDER"
AGE = "AGE"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class ValidationFact(_Frozen):
    code: str
    display: str = ""
    date: Optional[datetime.date] = None
    source: str = ""


class MatchCount(_Frozen):
    met: int
    total: int


class ValidationNode(_Frozen):
    """Output mirror of one criterion: a leaf (element) or a group (clause)."""

    kind: NodeKind
    id: str
    title: str
    description: str = ""
    status: NodeStatus
    met: bool
    facts: Tuple[ValidationFact, ...] = ()

    # Group-only.
    children: Tuple["ValidationNode", ...] = ()
    operator: Optional[LogicalOperator] = None
    match_count: Optional[MatchCount] = None

    # Leaf-only.
    element_type: Optional[DataElementType] = None
    negation: bool = False

    review_flags: Tuple[str, ...] = ()

    def iter_nodes(self) -> Iterable["ValidationNode"]:
        yield self
        for child in self.children:
            yield from child.iter_nodes()

    def leaves(self) -> list["ValidationNode"]:
        return [n for n in self.iter_nodes() if n.kind == NodeKind.LEAF]


ValidationNode.model_rebuild()


class PopulationResult(_Frozen):
    type: PopulationType
    # False when the measure does not define this population.
    present: bool = True
    met: bool
    # Evaluated but not used for classification.
    informational: bool = False
    nodes: Tuple[ValidationNode, ...] = ()


class PatientValidationTrace(_Frozen):
    patient_id: str
    patient_name: str = ""
    measure_id: str
    measure_title: str = ""
    measurement_period: MeasurementPeriod
    populations: Tuple[PopulationResult, ...] = ()
    final_outcome: FinalOutcome
    how_close: Tuple[str, ...] = ()
    narrative: str = ""
    review_flags: Tuple[str, ...] = ()

    def population(self, population_type: PopulationType) -> Optional[PopulationResult]:
        for pop in self.populations:
            if pop.type == population_type:
                return pop
        return None

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)


_NARRATIVES: Dict[FinalOutcome, str] = {
    FinalOutcome.IN_NUMERATOR: "{name} meets all criteria for {title} and is included in the performance numerator.",
    FinalOutcome.DENOMINATOR_ONLY: "{name} is in the denominator for {title} but does not meet numerator criteria.",
    FinalOutcome.EXCLUDED: "{name} meets exclusion criteria and is excluded from {title} performance calculation.",
    FinalOutcome.NOT_IN_POPULATION: "{name} does not meet the initial population criteria for {title}.",
}


def narrative_for(outcome: FinalOutcome, *, patient_name: str, measure_title: str) -> str:
    return _NARRATIVES[outcome].format(name=patient_name, title=measure_title)


def collect_review_flags(populations: Iterable[PopulationResult]) -> Tuple[str, ...]:
    """Unique `<node id>: <flag>` entries in traversal order."""
    seen: Dict[str, None] = {}
    for pop in populations:
        for root in pop.nodes:
            for node in root.iter_nodes():
                for flag in node.review_flags:
                    seen.setdefault(f"{node.id}: {flag}", None)
    return tuple(seen)


def build_trace(
    *,
    measure: MeasureSpec,
    patient: TestPatient,
    period: MeasurementPeriod,
    populations: Iterable[PopulationResult],
    outcome: FinalOutcome,
    how_close: Iterable[str] = (),
) -> PatientValidationTrace:
    """Assemble the immutable trace; populations are emitted in fixed pipeline order."""
    order = {t: i for i, t in enumerate(POPULATION_ORDER)}
    ordered = tuple(sorted(populations, key=lambda p: order[p.type]))
    name = patient.name or patient.id
    title = measure.title or measure.measure_id or measure.id
    return PatientValidationTrace(
        patient_id=patient.id,
        patient_name=patient.name,
        measure_id=measure.measure_id or measure.id,
        measure_title=measure.title,
        measurement_period=period,
        populations=ordered,
        final_outcome=outcome,
        how_close=tuple(how_close),
        narrative=narrative_for(outcome, patient_name=name, measure_title=title),
        review_flags=collect_review_flags(ordered),
    )
