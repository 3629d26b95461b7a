from .clinical import (
    AssessmentMatcher,
    DiagnosisMatcher,
    EncounterMatcher,
    ImmunizationMatcher,
    MedicationMatcher,
    ObservationMatcher,
    ProcedureMatcher,
    UnsupportedElementMatcher,
)
from .demographic import DemographicMatcher
