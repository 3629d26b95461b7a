"""Source-agnostic evaluation engine for clinical quality measures.

This package intentionally contains only domain logic:
- Inputs are a measure spec (criteria trees), a test patient and a measurement period.
- No file, network or persistence calls live here.
"""

from .config import EvaluationConfig
from .context import EvaluationContext
from .errors import (
    MeasureEvaluationError,
    MissingMeasurementPeriodError,
    MissingPopulationCriteriaError,
)
from .evaluator import ClauseEvaluator, evaluate_clause
from .models import (
    DataElement,
    Fact,
    LogicalClause,
    MeasurementPeriod,
    MeasureSpec,
    PopulationDefinition,
    TestPatient,
    TimingConstraint,
)
from .pipeline import evaluate_patient
from .runner import MeasureRunner, MeasureRunReport
from .trace import FinalOutcome, NodeStatus, PatientValidationTrace, ValidationNode

# Import built-in matchers so they self-register with the global registry.
from . import matchers as _builtin_matchers  # noqa: F401
