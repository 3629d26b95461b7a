from __future__ import annotations


class MeasureEvaluationError(ValueError):
    """A precondition for evaluating a patient against a measure is missing."""


class MissingMeasurementPeriodError(MeasureEvaluationError):
    pass


class MissingPopulationCriteriaError(MeasureEvaluationError):
    pass
