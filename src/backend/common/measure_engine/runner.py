from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Iterable, Optional

from pydantic import BaseModel, Field

from .config import EvaluationConfig
from .errors import MissingMeasurementPeriodError
from .models import MeasurementPeriod, MeasureSpec, TestPatient
from .pipeline import evaluate_patient
from .trace import FinalOutcome, PatientValidationTrace
from .tree import validate_logic_tree

logger = logging.getLogger(__name__)


class MeasureRunReport(BaseModel):
    measure_id: str
    measurement_period: MeasurementPeriod

    # Same order as the input patients.
    traces: list[PatientValidationTrace] = Field(default_factory=list)
    totals: Dict[FinalOutcome, int] = Field(default_factory=dict)


class MeasureRunner:
    def __init__(self, measure: MeasureSpec, config: Optional[EvaluationConfig] = None):
        self._measure = measure
        self._config = config or EvaluationConfig()

    def lint(self) -> None:
        """Log authoring problems in every population tree; evaluation proceeds regardless."""
        for pop in self._measure.populations:
            if pop.criteria is None:
                continue
            validation = validate_logic_tree(pop.criteria, max_depth=self._config.max_tree_depth_warning)
            for issue in validation.warnings:
                logger.info("Measure %s %s: %s %s", self._measure.id, pop.type.value, issue.code, issue.message)

    def run(
        self,
        patients: Iterable[TestPatient],
        *,
        measurement_period: Optional[MeasurementPeriod] = None,
        max_workers: Optional[int] = None,
    ) -> MeasureRunReport:
        period = measurement_period or self._measure.measurement_period
        if period is None:
            raise MissingMeasurementPeriodError(
                f"Measure {self._measure.id!r} has no measurement period and none was supplied."
            )
        self.lint()

        patients = list(patients)
        if max_workers is not None and max_workers > 1 and len(patients) > 1:
            traces = self._run_parallel(patients, period, max_workers)
        else:
            traces = [evaluate_patient(self._measure, p, period, self._config) for p in patients]

        totals: dict[FinalOutcome, int] = {}
        for trace in traces:
            totals[trace.final_outcome] = totals.get(trace.final_outcome, 0) + 1

        logger.info(
            "Evaluated %d patient(s) against %s: %s",
            len(traces),
            self._measure.id,
            ", ".join(f"{k.value}={v}" for k, v in sorted(totals.items(), key=lambda kv: kv[0].value)) or "none",
        )
        return MeasureRunReport(
            measure_id=self._measure.measure_id or self._measure.id,
            measurement_period=period,
            traces=traces,
            totals=totals,
        )

    def _run_parallel(
        self, patients: list[TestPatient], period: MeasurementPeriod, max_workers: int
    ) -> list[PatientValidationTrace]:
        # Inputs are immutable and evaluation is pure, so patients need no synchronization.
        slots: list[Optional[PatientValidationTrace]] = [None] * len(patients)
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            future_to_index = {
                executor.submit(evaluate_patient, self._measure, patient, period, self._config): i
                for i, patient in enumerate(patients)
            }
            for future in as_completed(future_to_index):
                slots[future_to_index[future]] = future.result()
        return [t for t in slots if t is not None]
