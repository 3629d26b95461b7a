import os
import sys


# Ensure `src/backend` is on sys.path so imports like `import common...` work.
BACKEND_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
if BACKEND_DIR not in sys.path:
    sys.path.insert(0, BACKEND_DIR)

from datetime import date

import pytest

from common.measure_engine.context import EvaluationContext
from common.measure_engine.models import (
    CodeReference,
    DataElement,
    DataElementType,
    Demographics,
    Gender,
    GlobalConstraints,
    LogicalClause,
    LogicalOperator,
    MeasurementPeriod,
    MeasureSpec,
    PopulationDefinition,
    TestPatient,
    ValueSetReference,
)


@pytest.fixture
def period() -> MeasurementPeriod:
    return MeasurementPeriod(start=date(2025, 1, 1), end=date(2025, 12, 31))


@pytest.fixture
def make_element():
    def _make(
        *,
        element_id: str = "el-1",
        element_type: DataElementType = DataElementType.DIAGNOSIS,
        description: str = "",
        codes=(),
        value_set_name: str = "",
        timing=(),
        thresholds=None,
        gender=None,
        negation: bool = False,
        min_occurrences: int = 1,
    ) -> DataElement:
        value_set = None
        if codes or value_set_name:
            value_set = ValueSetReference(
                id=f"vs-{element_id}",
                name=value_set_name,
                codes=tuple(CodeReference(code=c) if isinstance(c, str) else c for c in codes),
            )
        return DataElement(
            id=element_id,
            type=element_type,
            description=description,
            value_set=value_set,
            timing=tuple(timing),
            thresholds=thresholds,
            gender=gender,
            negation=negation,
            min_occurrences=min_occurrences,
        )

    return _make


@pytest.fixture
def make_clause():
    def _make(
        *,
        clause_id: str = "grp",
        operator: LogicalOperator = LogicalOperator.AND,
        children=(),
        sibling_operators=None,
        description: str = "",
    ) -> LogicalClause:
        return LogicalClause(
            id=clause_id,
            operator=operator,
            description=description,
            children=tuple(children),
            sibling_operators=tuple(sibling_operators) if sibling_operators is not None else None,
        )

    return _make


@pytest.fixture
def make_patient():
    def _make(
        *,
        patient_id: str = "p-1",
        name: str = "",
        birth_date: date | None = None,
        gender: Gender = Gender.UNKNOWN,
        **facts,
    ) -> TestPatient:
        return TestPatient(
            id=patient_id,
            name=name,
            demographics=Demographics(birth_date=birth_date, gender=gender),
            **{collection: tuple(items) for collection, items in facts.items()},
        )

    return _make


@pytest.fixture
def make_measure(period):
    def _make(
        *,
        populations,
        measure_id: str = "CMS-TEST",
        title: str = "Test Measure",
        gender: Gender | None = None,
        age_min: int | None = None,
        age_max: int | None = None,
        value_sets=(),
        measurement_period: MeasurementPeriod | None = period,
    ) -> MeasureSpec:
        return MeasureSpec(
            id=measure_id,
            measure_id=measure_id,
            title=title,
            populations=tuple(
                PopulationDefinition(id=pop_type.value, type=pop_type, criteria=criteria)
                for pop_type, criteria in populations.items()
            ),
            value_sets=tuple(value_sets),
            global_constraints=GlobalConstraints(gender=gender, age_min=age_min, age_max=age_max),
            measurement_period=measurement_period,
        )

    return _make


@pytest.fixture
def make_ctx(period):
    def _make(patient: TestPatient, *, value_sets=(), config=None) -> EvaluationContext:
        kwargs = {"patient": patient, "period": period, "value_sets": tuple(value_sets)}
        if config is not None:
            kwargs["config"] = config
        return EvaluationContext(**kwargs)

    return _make
