from datetime import date
from decimal import Decimal

import pytest

from common.measure_engine.config import EvaluationConfig
from common.measure_engine.matcher import (
    EMPTY_VALUE_SET,
    MISSING_BIRTH_DATE,
    NO_DEMOGRAPHIC_CONSTRAINT,
    UNRESOLVABLE_TIMING,
    UNSUPPORTED_ELEMENT_TYPE,
)
from common.measure_engine.matchers.clinical import (
    DiagnosisMatcher,
    EncounterMatcher,
    ImmunizationMatcher,
    MedicationMatcher,
    ObservationMatcher,
    ProcedureMatcher,
    UnsupportedElementMatcher,
    value_satisfies,
)
from common.measure_engine.matchers.codes import code_matches, normalize_code, normalize_system
from common.measure_engine.matchers.demographic import DemographicMatcher, check_age
from common.measure_engine.models import (
    AgeCalculation,
    CodeReference,
    Comparator,
    DataElementType,
    Direction,
    Fact,
    Gender,
    MeasurementPeriod,
    Thresholds,
    TimeUnit,
    TimingAnchor,
    TimingConstraint,
    TimingOperator,
    ValueSetReference,
)
from common.measure_engine.registry import MatcherRegistry, registry
from common.measure_engine.trace import DOSE_COUNT, INSUFFICIENT_DOSES, NO_MATCH, NodeStatus


COLONOSCOPY = "44388"
MMR = "03"


def _codes(match):
    return [f.code for f in match.facts]


def test_age_at_least_65(make_element, make_patient, make_ctx):
    element = make_element(
        element_type=DataElementType.DEMOGRAPHIC,
        description="Age 65 or older",
        thresholds=Thresholds(age_min=65),
    )
    ctx = make_ctx(make_patient(birth_date=date(1960, 5, 1)))
    match = DemographicMatcher().match(element, ctx)
    assert match.met is True
    assert match.status == NodeStatus.PASS


@pytest.mark.parametrize("procedure_date, expected", [(date(2014, 6, 1), False), (date(2016, 6, 1), True)])
def test_colonoscopy_within_ten_years_before_period_end(
    make_element, make_patient, make_ctx, procedure_date, expected
):
    element = make_element(
        element_type=DataElementType.PROCEDURE,
        description="Colonoscopy",
        codes=[COLONOSCOPY],
        timing=[
            TimingConstraint(
                operator=TimingOperator.WITHIN,
                quantity=10,
                unit=TimeUnit.YEARS,
                direction=Direction.BEFORE,
                anchor=TimingAnchor.MEASUREMENT_PERIOD_END,
            )
        ],
    )
    patient = make_patient(procedures=[Fact(code=COLONOSCOPY, date=procedure_date)])
    match = ProcedureMatcher().match(element, make_ctx(patient))
    assert match.met is expected
    assert (NO_MATCH in _codes(match)) is not expected


def _immunization_element(make_element):
    return make_element(
        element_type=DataElementType.IMMUNIZATION,
        description="Two MMR vaccinations",
        codes=[MMR],
        min_occurrences=2,
        timing=[TimingConstraint(operator=TimingOperator.BEFORE, anchor=TimingAnchor.BIRTH_DATE, anchor_age=2)],
    )


def test_doses_before_second_birthday(make_element, make_patient, make_ctx):
    element = _immunization_element(make_element)
    doses = [Fact(code=MMR, date=d) for d in (date(2023, 3, 1), date(2023, 5, 1), date(2024, 1, 20))]
    late = Fact(code=MMR, date=date(2025, 1, 15))
    patient = make_patient(birth_date=date(2023, 1, 15), immunizations=doses + [late])

    match = ImmunizationMatcher().match(element, make_ctx(patient))

    assert match.met is True
    assert match.matched_count == 3
    assert match.facts[0].code == DOSE_COUNT
    assert match.facts[0].display == "3 of 2 required doses found"


def test_single_dose_is_insufficient(make_element, make_patient, make_ctx):
    element = _immunization_element(make_element)
    patient = make_patient(birth_date=date(2023, 1, 15), immunizations=[Fact(code=MMR, date=date(2023, 3, 1))])

    match = ImmunizationMatcher().match(element, make_ctx(patient))

    assert match.met is False
    assert match.status == NodeStatus.FAIL
    assert _codes(match) == [DOSE_COUNT, MMR, INSUFFICIENT_DOSES]


def test_birth_date_anchor_without_birth_date_is_not_evaluated(make_element, make_patient, make_ctx):
    element = _immunization_element(make_element)
    patient = make_patient(immunizations=[Fact(code=MMR, date=date(2023, 3, 1))])

    match = ImmunizationMatcher().match(element, make_ctx(patient))

    assert match.met is False
    assert match.status == NodeStatus.NOT_EVALUATED
    assert UNRESOLVABLE_TIMING in match.review_flags


def test_unresolvable_timing_never_counts_as_met(make_element, make_patient, make_ctx):
    element = _immunization_element(make_element)
    doses = [Fact(code=MMR, date=date(2030, 1, 1)), Fact(code=MMR, date=date(2031, 1, 1))]

    match = ImmunizationMatcher().match(element, make_ctx(make_patient(immunizations=doses)))

    assert match.met is False
    assert match.status == NodeStatus.NOT_EVALUATED
    assert match.matched_count == 2
    assert _codes(match) == [DOSE_COUNT, MMR, MMR]


def test_negated_element_with_unresolvable_timing_is_not_met(make_element, make_patient, make_ctx):
    element = make_element(
        codes=["Z51.5"],
        negation=True,
        timing=[TimingConstraint(operator=TimingOperator.BEFORE, anchor=TimingAnchor.BIRTH_DATE, anchor_age=2)],
    )
    match = DiagnosisMatcher().match(element, make_ctx(make_patient()))
    assert match.met is False
    assert match.status == NodeStatus.NOT_EVALUATED


def test_not_done_immunization_does_not_count(make_element, make_patient, make_ctx):
    element = make_element(element_type=DataElementType.IMMUNIZATION, codes=[MMR])
    patient = make_patient(immunizations=[Fact(code=MMR, date=date(2025, 3, 1), status="not-done")])
    assert ImmunizationMatcher().match(element, make_ctx(patient)).met is False


@pytest.mark.parametrize("facts, expected", [([], True), ([Fact(code="Z51.5", date=date(2025, 6, 1))], False)])
def test_negation(make_element, make_patient, make_ctx, facts, expected):
    element = make_element(description="No hospice", codes=["Z51.5"], negation=True)
    match = DiagnosisMatcher().match(element, make_ctx(make_patient(conditions=facts)))
    assert match.met is expected
    assert match.status == (NodeStatus.PASS if expected else NodeStatus.FAIL)


def test_empty_value_set_is_flagged(make_element, make_patient, make_ctx):
    element = make_element(description="Diabetes", value_set_name="Diabetes")
    patient = make_patient(conditions=[Fact(code="E11.9", date=date(2025, 2, 1))])

    match = DiagnosisMatcher().match(element, make_ctx(patient))

    assert match.met is False
    assert EMPTY_VALUE_SET in match.review_flags
    assert match.facts[-1].code == NO_MATCH
    assert match.facts[-1].display == "No matching diagnosis found for: Diabetes"


def test_codes_resolved_from_measure_value_set(make_element, make_patient, make_ctx):
    element = make_element(value_set_name="Diabetes")
    measure_vs = ValueSetReference(id="other", name="Diabetes", codes=(CodeReference(code="E11.9", system="ICD10CM"),))
    patient = make_patient(conditions=[Fact(code="E119", system="http://hl7.org/fhir/sid/icd-10-cm", date=date(2025, 2, 1))])

    match = DiagnosisMatcher().match(element, make_ctx(patient, value_sets=[measure_vs]))

    assert match.met is True
    assert match.review_flags == ()


def test_untimed_condition_uses_onset_within_period(make_element, make_patient, make_ctx):
    element = make_element(codes=["E11.9"])
    patient = make_patient(conditions=[Fact(code="E11.9", date=date(2024, 2, 1))])
    assert DiagnosisMatcher().match(element, make_ctx(patient)).met is False

    config = EvaluationConfig(default_window_is_measurement_period=False)
    assert DiagnosisMatcher().match(element, make_ctx(patient, config=config)).met is True


def test_ongoing_medication_overlaps_period(make_element, make_patient, make_ctx):
    element = make_element(element_type=DataElementType.MEDICATION, codes=["197361"])
    ongoing = Fact(code="197361", display="Amlodipine 5 MG", date=date(2024, 6, 1))
    stopped = Fact(code="197361", date=date(2023, 1, 1), end_date=date(2023, 12, 31))

    assert MedicationMatcher().match(element, make_ctx(make_patient(medications=[stopped]))).met is False
    match = MedicationMatcher().match(element, make_ctx(make_patient(medications=[ongoing])))
    assert match.met is True
    assert match.facts[0].display == "Amlodipine 5 MG (2024-06-01 to ongoing)"
    assert match.facts[0].source == "Medications"


def test_observation_thresholds(make_element, make_patient, make_ctx):
    element = make_element(
        element_type=DataElementType.OBSERVATION,
        description="HbA1c > 9",
        codes=["4548-4"],
        thresholds=Thresholds(value_min=Decimal("9"), comparator=Comparator.GT, unit="%"),
    )
    high = Fact(code="4548-4", date=date(2025, 5, 1), value=Decimal("9.4"), unit="%")
    low = Fact(code="4548-4", date=date(2025, 5, 1), value=Decimal("7.1"), unit="%")

    assert ObservationMatcher().match(element, make_ctx(make_patient(observations=[low]))).met is False
    match = ObservationMatcher().match(element, make_ctx(make_patient(observations=[high])))
    assert match.met is True
    assert match.facts[0].display == "4548-4: 9.4 %"


@pytest.mark.parametrize(
    "value, thresholds, expected",
    [
        (Decimal("9"), Thresholds(value_min=Decimal("9"), comparator=Comparator.GT), False),
        (Decimal("9"), Thresholds(value_min=Decimal("9"), comparator=Comparator.GTE), True),
        (Decimal("139"), Thresholds(value_max=Decimal("140"), comparator=Comparator.LT), True),
        (Decimal("140"), Thresholds(value_min=Decimal("140"), comparator=Comparator.LTE), True),
        (Decimal("5"), Thresholds(value_min=Decimal("5"), comparator=Comparator.NE), False),
        (Decimal("5"), Thresholds(value_min=Decimal("1"), value_max=Decimal("5")), True),
        (Decimal("6"), Thresholds(value_min=Decimal("1"), value_max=Decimal("5")), False),
        (None, Thresholds(value_min=Decimal("1")), False),
        (None, Thresholds(unit="%"), True),
    ],
)
def test_value_satisfies(value, thresholds, expected):
    assert value_satisfies(value, thresholds) is expected


def test_encounter_anchored_window(make_element, make_patient, make_ctx):
    element = make_element(
        element_type=DataElementType.OBSERVATION,
        codes=["72166-2"],
        timing=[
            TimingConstraint(
                operator=TimingOperator.WITHIN,
                quantity=30,
                unit=TimeUnit.DAYS,
                direction=Direction.AFTER,
                anchor=TimingAnchor.ENCOUNTER,
                anchor_codes=(CodeReference(code="99213"),),
            )
        ],
    )
    observation = Fact(code="72166-2", date=date(2025, 3, 20))
    visit = Fact(code="99213", date=date(2025, 3, 1))
    unrelated = Fact(code="99381", date=date(2025, 3, 15))

    matched = ObservationMatcher().match(element, make_ctx(make_patient(encounters=[visit], observations=[observation])))
    assert matched.met is True

    unanchored = ObservationMatcher().match(
        element, make_ctx(make_patient(encounters=[unrelated], observations=[observation]))
    )
    assert unanchored.status == NodeStatus.NOT_EVALUATED
    assert UNRESOLVABLE_TIMING in unanchored.review_flags


def test_procedure_matches_immunization_collection(make_element, make_patient, make_ctx):
    element = make_element(element_type=DataElementType.PROCEDURE, codes=["90707"])
    patient = make_patient(immunizations=[Fact(code="90707", date=date(2025, 8, 1))])
    match = ProcedureMatcher().match(element, make_ctx(patient))
    assert match.met is True
    assert match.facts[0].source == "Immunizations"


def test_unsupported_element_type(make_element, make_patient, make_ctx):
    element = make_element(element_type=DataElementType.DEVICE, description="Hearing aid")
    match = UnsupportedElementMatcher().match(element, make_ctx(make_patient()))
    assert match.status == NodeStatus.NOT_EVALUATED
    assert match.review_flags == (UNSUPPORTED_ELEMENT_TYPE,)
    assert _codes(match) == [NO_MATCH]


def test_gender_element(make_element, make_patient, make_ctx):
    element = make_element(element_type=DataElementType.DEMOGRAPHIC, gender=Gender.FEMALE)
    assert DemographicMatcher().match(element, make_ctx(make_patient(gender=Gender.FEMALE))).met is True
    match = DemographicMatcher().match(element, make_ctx(make_patient(gender=Gender.MALE)))
    assert match.met is False
    assert match.facts[0].display == "Patient gender: male"


def test_demographic_without_birth_date_is_not_evaluated(make_element, make_patient, make_ctx):
    element = make_element(
        element_type=DataElementType.DEMOGRAPHIC, thresholds=Thresholds(age_min=18), negation=True
    )
    match = DemographicMatcher().match(element, make_ctx(make_patient()))
    assert match.met is False
    assert match.status == NodeStatus.NOT_EVALUATED
    assert MISSING_BIRTH_DATE in match.review_flags


def test_unconstrained_demographic_passes_with_flag(make_element, make_patient, make_ctx):
    element = make_element(element_type=DataElementType.DEMOGRAPHIC)
    match = DemographicMatcher().match(element, make_ctx(make_patient()))
    assert match.met is True
    assert match.review_flags == (NO_DEMOGRAPHIC_CONSTRAINT,)


@pytest.mark.parametrize(
    "birth_date, calculation, expected",
    [
        (date(1950, 6, 1), AgeCalculation.DURING, True),
        (date(1950, 6, 1), AgeCalculation.AT_START, False),
        (date(1950, 6, 1), AgeCalculation.AT_END, True),
        (date(1950, 6, 1), AgeCalculation.TURNS_DURING, True),
        (date(1949, 6, 1), AgeCalculation.TURNS_DURING, False),
    ],
)
def test_age_calculations(period, birth_date, calculation, expected):
    check = check_age(birth_date, period, age_min=75, age_max=75, calculation=calculation)
    assert check.met is expected


def test_age_check_reason_names_failing_bound(period):
    check = check_age(date(2010, 1, 1), period, age_min=50, age_max=74)
    assert check.met is False
    assert check.reason == "Age 15 at Measurement Period end is below minimum 50"


@pytest.mark.parametrize(
    "code, system, target, expected",
    [
        ("E11.9", "ICD-10-CM", CodeReference(code="e119", system="http://hl7.org/fhir/sid/icd-10-cm"), True),
        ("44054006", "http://snomed.info/sct", CodeReference(code="44054006", system="SNOMEDCT"), True),
        ("44054006", "", CodeReference(code="44054006", system="SNOMEDCT"), True),
        ("44054006", "LOINC", CodeReference(code="44054006", system="SNOMEDCT"), False),
        ("E11.9", "ICD10CM", CodeReference(code="E11.8", system="ICD10CM"), False),
    ],
)
def test_code_matches(code, system, target, expected):
    assert code_matches(code, system, [target]) is expected


def test_normalization():
    assert normalize_code(" e11.9 ") == "E119"
    assert normalize_system("http://www.nlm.nih.gov/research/umls/rxnorm") == "RxNorm"
    assert normalize_system("  ") == ""
    assert normalize_system("RX") == "RxNorm"


def test_bare_rx_system_matches_rxnorm_target():
    assert code_matches("197361", "RX", [CodeReference(code="197361", system="RxNorm")]) is True


@pytest.mark.parametrize("calculation", [AgeCalculation.AT_END, AgeCalculation.TURNS_DURING])
def test_leap_day_birthday_counts_on_feb_28(calculation):
    period = MeasurementPeriod(start=date(2024, 3, 1), end=date(2025, 2, 28))
    check = check_age(date(2000, 2, 29), period, age_min=25, age_max=25, calculation=calculation)
    assert check.met is True


def test_registry_covers_every_element_type():
    assert set(registry.types()) == set(DataElementType)
    matchers = registry.create_all()
    assert matchers[DataElementType.DEVICE] is matchers[DataElementType.GOAL]
    assert isinstance(matchers[DataElementType.ENCOUNTER], EncounterMatcher)


def test_registry_rejects_duplicate_types():
    local = MatcherRegistry()
    local.register(DiagnosisMatcher)
    with pytest.raises(ValueError, match="Duplicate matcher"):
        local.register(DiagnosisMatcher)
