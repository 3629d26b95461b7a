from __future__ import annotations

from datetime import date
from typing import Any, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from adapters.ums import UMSAdapterError, measure_spec_from_payload, patients_from_payload, timing_from_payload
from common.measure_engine.errors import MeasureEvaluationError
from common.measure_engine.models import MeasurementPeriod, MeasureSpec, TimingConstraint
from common.measure_engine.runner import MeasureRunner
from common.measure_engine.timing import ResolvedWindow, describe_timing, resolve_window, reverse_resolve
from common.measure_engine.tree import TreeIssue, describe_clause, validate_logic_tree


router = APIRouter(prefix="/measures", tags=["measures"])


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ValidationRequest(_Request):
    measure: dict[str, Any]
    patients: list[dict[str, Any]] = Field(default_factory=list)
    # Overrides the measure's own period.
    measurement_period: Optional[MeasurementPeriod] = Field(default=None, alias="measurementPeriod")


class LintRequest(_Request):
    measure: dict[str, Any]


class TimingRequest(_Request):
    timing: dict[str, Any]
    measurement_period: MeasurementPeriod = Field(alias="measurementPeriod")
    birth_date: Optional[date] = Field(default=None, alias="birthDate")
    anchor_date: Optional[date] = Field(default=None, alias="anchorDate")


class ReverseTimingRequest(TimingRequest):
    start: Optional[date] = None
    end: Optional[date] = None


def _parse_measure(payload: dict[str, Any]) -> MeasureSpec:
    try:
        return measure_spec_from_payload(payload)
    except UMSAdapterError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


def _parse_timing(payload: dict[str, Any]) -> TimingConstraint:
    try:
        return timing_from_payload(payload)
    except UMSAdapterError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


def _issue(issue: TreeIssue) -> dict[str, Any]:
    return {"code": issue.code, "message": issue.message, "node_id": issue.node_id}


def _window(window: ResolvedWindow) -> dict[str, Any]:
    return {
        "start": window.start.isoformat() if window.start else None,
        "end": window.end.isoformat() if window.end else None,
    }


@router.post("/validate")
def validate_patients(request: ValidationRequest):
    measure = _parse_measure(request.measure)
    try:
        patients = patients_from_payload(request.patients)
    except UMSAdapterError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    try:
        report = MeasureRunner(measure).run(patients, measurement_period=request.measurement_period)
    except MeasureEvaluationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return report.model_dump(mode="json")


@router.post("/lint")
def lint_measure(request: LintRequest):
    measure = _parse_measure(request.measure)
    populations = []
    for pop in measure.populations:
        if pop.criteria is None:
            continue
        result = validate_logic_tree(pop.criteria)
        populations.append(
            {
                "type": pop.type.value,
                "summary": describe_clause(pop.criteria),
                "valid": result.valid,
                "element_count": result.element_count,
                "max_depth": result.max_depth,
                "errors": [_issue(i) for i in result.errors],
                "warnings": [_issue(i) for i in result.warnings],
            }
        )
    return {
        "measure_id": measure.measure_id or measure.id,
        "populations": populations,
        "missing_criteria": [p.type.value for p in measure.populations if p.criteria is None],
    }


@router.post("/timing/resolve")
def resolve_timing(request: TimingRequest):
    timing = _parse_timing(request.timing)
    window = resolve_window(
        timing,
        request.measurement_period,
        birth_date=request.birth_date,
        anchor_date=request.anchor_date,
    )
    return {
        "description": describe_timing(timing),
        "resolvable": window is not None,
        "window": _window(window) if window is not None else None,
    }


@router.post("/timing/reverse")
def reverse_timing(request: ReverseTimingRequest):
    if request.start is not None and request.end is not None and request.start > request.end:
        raise HTTPException(status_code=422, detail="Window start is after window end.")
    template = _parse_timing(request.timing)
    derived = reverse_resolve(
        ResolvedWindow(start=request.start, end=request.end),
        template,
        request.measurement_period,
        birth_date=request.birth_date,
        anchor_date=request.anchor_date,
    )
    if derived is None:
        raise HTTPException(status_code=422, detail="Window cannot be expressed relative to the timing anchor.")
    return {
        "timing": derived.model_dump(mode="json"),
        "description": describe_timing(derived),
    }
