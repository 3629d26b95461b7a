from __future__ import annotations

import datetime
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"
    NOT = "NOT"


class DataElementType(str, Enum):
    DIAGNOSIS = "diagnosis"
    ENCOUNTER = "encounter"
    PROCEDURE = "procedure"
    OBSERVATION = "observation"
    MEDICATION = "medication"
    DEMOGRAPHIC = "demographic"
    ASSESSMENT = "assessment"
    IMMUNIZATION = "immunization"
    DEVICE = "device"
    COMMUNICATION = "communication"
    ALLERGY = "allergy"
    GOAL = "goal"


class PopulationType(str, Enum):
    INITIAL_POPULATION = "initial_population"
    DENOMINATOR = "denominator"
    DENOMINATOR_EXCLUSION = "denominator_exclusion"
    DENOMINATOR_EXCEPTION = "denominator_exception"
    NUMERATOR = "numerator"
    NUMERATOR_EXCLUSION = "numerator_exclusion"


# Fixed evaluation order of the population pipeline.
POPULATION_ORDER: Tuple[PopulationType, ...] = (
    PopulationType.INITIAL_POPULATION,
    PopulationType.DENOMINATOR,
    PopulationType.DENOMINATOR_EXCLUSION,
    PopulationType.DENOMINATOR_EXCEPTION,
    PopulationType.NUMERATOR,
    PopulationType.NUMERATOR_EXCLUSION,
)


class TimingOperator(str, Enum):
    DURING = "during"
    WITHIN = "within"
    BEFORE_END_OF = "before end of"
    AFTER_START_OF = "after start of"
    BEFORE = "before"
    AFTER = "after"


class TimeUnit(str, Enum):
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"
    YEARS = "years"


class Direction(str, Enum):
    BEFORE = "before"
    AFTER = "after"


class TimingAnchor(str, Enum):
    MEASUREMENT_PERIOD = "Measurement Period"
    MEASUREMENT_PERIOD_START = "Measurement Period start"
    MEASUREMENT_PERIOD_END = "Measurement Period end"
    BIRTH_DATE = "birth date"
    ENCOUNTER = "encounter"
    # Index prescription start date: patient-specific, never resolvable statically.
    IPSD = "IPSD"


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"
    UNKNOWN = "unknown"


class AgeCalculation(str, Enum):
    AT_START = "at_start"
    AT_END = "at_end"
    DURING = "during"
    TURNS_DURING = "turns_during"


class Comparator(str, Enum):
    GT = ">"
    GTE = ">="
    LT = "<"
    LTE = "<="
    EQ = "="
    NE = "!="


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class CodeReference(_Frozen):
    code: str
    system: str = ""
    display: str = ""


class ValueSetReference(_Frozen):
    id: str = ""
    oid: Optional[str] = None
    name: str = ""
    codes: Tuple[CodeReference, ...] = ()

    def matches(self, other: "ValueSetReference") -> bool:
        if self.id and self.id == other.id:
            return True
        if self.oid and self.oid == other.oid:
            return True
        return bool(self.name) and self.name == other.name


class Thresholds(_Frozen):
    age_min: Optional[int] = None
    age_max: Optional[int] = None
    age_calculation: Optional[AgeCalculation] = None
    value_min: Optional[Decimal] = None
    value_max: Optional[Decimal] = None
    unit: str = ""
    comparator: Optional[Comparator] = None

    def has_age(self) -> bool:
        return self.age_min is not None or self.age_max is not None

    def has_value(self) -> bool:
        return self.value_min is not None or self.value_max is not None or self.comparator is not None


class TimingConstraint(_Frozen):
    """A relative timing requirement, e.g. "within 10 years before Measurement Period end".

    Resolved into a concrete date window by `timing.resolve_window`.
    """

    operator: TimingOperator = TimingOperator.DURING
    quantity: Optional[int] = Field(default=None, ge=0)
    unit: Optional[TimeUnit] = None
    # Only meaningful for `within`.
    direction: Direction = Direction.BEFORE
    anchor: TimingAnchor = TimingAnchor.MEASUREMENT_PERIOD
    # Milestone in whole years for the birth-date anchor (2 => 2nd birthday).
    anchor_age: int = Field(default=0, ge=0)
    # Optional codes restricting which encounters may act as an encounter anchor.
    anchor_codes: Tuple[CodeReference, ...] = ()
    offset_quantity: Optional[int] = Field(default=None, ge=0)
    offset_unit: Optional[TimeUnit] = None
    offset_direction: Direction = Direction.AFTER

    @model_validator(mode="after")
    def _check_units(self) -> "TimingConstraint":
        if self.quantity is not None and self.unit is None:
            raise ValueError("Timing quantity requires a unit.")
        if self.offset_quantity is not None and self.offset_unit is None:
            raise ValueError("Timing offset requires an offset unit.")
        return self


class DataElement(_Frozen):
    kind: Literal["element"] = "element"
    id: str
    type: DataElementType
    description: str = ""
    value_set: Optional[ValueSetReference] = None
    direct_codes: Tuple[CodeReference, ...] = ()
    thresholds: Optional[Thresholds] = None
    timing: Tuple[TimingConstraint, ...] = ()
    gender: Optional[Gender] = None
    negation: bool = False
    # Number of qualifying facts required (e.g. vaccine doses).
    min_occurrences: int = Field(default=1, ge=1)

    @property
    def title(self) -> str:
        if self.value_set is not None and self.value_set.name:
            return self.value_set.name
        return self.description[:50] or self.id


class LogicalClause(_Frozen):
    kind: Literal["clause"] = "clause"
    id: str
    operator: LogicalOperator
    description: str = ""
    children: Tuple[Annotated[Union[DataElement, LogicalClause], Field(discriminator="kind")], ...] = ()
    # Per-sibling-pair overrides: entry i joins children[i] and children[i + 1].
    sibling_operators: Optional[Tuple[LogicalOperator, ...]] = None

    @model_validator(mode="after")
    def _check_sibling_operators(self) -> "LogicalClause":
        if self.sibling_operators is None:
            return self
        expected = max(len(self.children) - 1, 0)
        if len(self.sibling_operators) != expected:
            raise ValueError(
                f"Clause {self.id!r} has {len(self.sibling_operators)} sibling operators; expected {expected}."
            )
        if LogicalOperator.NOT in self.sibling_operators:
            raise ValueError(f"Clause {self.id!r}: sibling operators may only be AND or OR.")
        return self

    def operator_for_pair(self, index: int) -> LogicalOperator:
        """Operator joining children[index] and children[index + 1]."""
        if self.sibling_operators:
            return self.sibling_operators[index]
        return self.operator

    @property
    def has_mixed_operators(self) -> bool:
        return bool(self.sibling_operators) and any(op != self.operator for op in self.sibling_operators)


CriterionNode = Union[DataElement, LogicalClause]


class PopulationDefinition(_Frozen):
    id: str = ""
    type: PopulationType
    description: str = ""
    criteria: Optional[LogicalClause] = None


class GlobalConstraints(_Frozen):
    age_min: Optional[int] = None
    age_max: Optional[int] = None
    age_calculation: AgeCalculation = AgeCalculation.DURING
    gender: Optional[Gender] = None

    def has_age_range(self) -> bool:
        return self.age_min is not None or self.age_max is not None


class MeasurementPeriod(_Frozen):
    start: date
    end: date

    @model_validator(mode="after")
    def _check_order(self) -> "MeasurementPeriod":
        if self.start > self.end:
            raise ValueError(
                f"Measurement period start {self.start.isoformat()} is after end {self.end.isoformat()}."
            )
        return self


class MeasureSpec(_Frozen):
    id: str
    measure_id: str = ""
    title: str = ""
    populations: Tuple[PopulationDefinition, ...] = ()
    value_sets: Tuple[ValueSetReference, ...] = ()
    global_constraints: GlobalConstraints = Field(default_factory=GlobalConstraints)
    measurement_period: Optional[MeasurementPeriod] = None

    def population(self, population_type: PopulationType) -> Optional[PopulationDefinition]:
        for pop in self.populations:
            if pop.type == population_type:
                return pop
        return None

    def find_value_set(self, ref: ValueSetReference) -> Optional[ValueSetReference]:
        for vs in self.value_sets:
            if vs.matches(ref):
                return vs
        return None


class Fact(_Frozen):
    code: str
    system: str = ""
    display: str = ""
    date: Optional[datetime.date] = None
    # Period facts (e.g. medications); None means ongoing.
    end_date: Optional[datetime.date] = None
    value: Optional[Decimal] = None
    unit: str = ""
    status: str = ""


# Fact statuses that never count as a qualifying event.
NON_QUALIFYING_STATUSES = frozenset({"not-done", "entered-in-error", "cancelled"})


class Demographics(_Frozen):
    birth_date: Optional[date] = None
    gender: Gender = Gender.UNKNOWN


class TestPatient(_Frozen):
    __test__ = False  # not a pytest test class

    id: str
    name: str = ""
    demographics: Demographics = Field(default_factory=Demographics)
    conditions: Tuple[Fact, ...] = ()
    procedures: Tuple[Fact, ...] = ()
    medications: Tuple[Fact, ...] = ()
    observations: Tuple[Fact, ...] = ()
    encounters: Tuple[Fact, ...] = ()
    immunizations: Tuple[Fact, ...] = ()

    def facts(self, collection: str) -> Tuple[Fact, ...]:
        return getattr(self, collection)


LogicalClause.model_rebuild()
