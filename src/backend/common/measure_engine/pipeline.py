"""Population pipeline: pre-checks, fixed-order population evaluation, classification, diagnostics."""

from __future__ import annotations

import logging
from typing import Iterator, Optional

from .config import EvaluationConfig
from .context import EvaluationContext
from .errors import MissingMeasurementPeriodError, MissingPopulationCriteriaError
from .evaluator import ClauseEvaluator
from .matchers.demographic import DemographicCheck, check_age, check_gender
from .models import (
    DataElementType,
    LogicalOperator,
    MeasurementPeriod,
    MeasureSpec,
    PopulationDefinition,
    PopulationType,
    TestPatient,
)
from .trace import (
    FinalOutcome,
    NodeKind,
    NodeStatus,
    PatientValidationTrace,
    PopulationResult,
    ValidationNode,
    build_trace,
)

logger = logging.getLogger(__name__)

GENDER_CHECK_ID = "gender-check"
AGE_CHECK_ID = "age-check"

# Evaluated and reported, but never used for classification.
INFORMATIONAL_POPULATIONS = frozenset({PopulationType.DENOMINATOR_EXCEPTION, PopulationType.NUMERATOR_EXCLUSION})


def evaluate_patient(
    measure: MeasureSpec,
    patient: TestPatient,
    measurement_period: Optional[MeasurementPeriod] = None,
    config: Optional[EvaluationConfig] = None,
) -> PatientValidationTrace:
    """
    Evaluate one patient against a measure and return the full validation trace.

    Every population is evaluated regardless of earlier results so the trace shows the complete
    tree; classification then applies IP/denominator, exclusion, numerator in priority order.

    Raises:
      MissingMeasurementPeriodError: neither the argument nor the measure supplies a period.
      MissingPopulationCriteriaError: no initial population, or a population without a root clause.
    """
    period = measurement_period or measure.measurement_period
    if period is None:
        raise MissingMeasurementPeriodError(
            f"Measure {measure.id!r} has no measurement period and none was supplied."
        )
    _check_populations(measure)

    config = config or EvaluationConfig()
    ctx = EvaluationContext.for_measure(measure, patient, period, config)
    evaluator = ClauseEvaluator(ctx)

    pre_checks = precheck_nodes(measure, ctx)
    ip_def = measure.population(PopulationType.INITIAL_POPULATION)
    if ip_def is None or ip_def.criteria is None:
        raise MissingPopulationCriteriaError(f"Measure {measure.id!r} has no initial population criteria.")
    ip_root = evaluator.evaluate_clause(ip_def.criteria)
    ip_met = all(n.met for n in pre_checks) and ip_root.met
    results: dict[PopulationType, PopulationResult] = {
        PopulationType.INITIAL_POPULATION: PopulationResult(
            type=PopulationType.INITIAL_POPULATION,
            met=ip_met,
            nodes=pre_checks + (ip_root,),
        )
    }

    denom_def = measure.population(PopulationType.DENOMINATOR)
    if _inherits_initial_population(denom_def):
        results[PopulationType.DENOMINATOR] = PopulationResult(
            type=PopulationType.DENOMINATOR,
            present=denom_def is not None,
            met=ip_met,
        )
    else:
        results[PopulationType.DENOMINATOR] = _evaluate_population(evaluator, denom_def)

    for population_type in (
        PopulationType.DENOMINATOR_EXCLUSION,
        PopulationType.DENOMINATOR_EXCEPTION,
        PopulationType.NUMERATOR,
        PopulationType.NUMERATOR_EXCLUSION,
    ):
        definition = measure.population(population_type)
        if definition is None:
            results[population_type] = PopulationResult(
                type=population_type,
                present=False,
                met=False,
                informational=population_type in INFORMATIONAL_POPULATIONS,
            )
        else:
            results[population_type] = _evaluate_population(evaluator, definition)

    for result in results.values():
        logger.debug(
            "Patient %s measure %s: %s present=%s met=%s",
            patient.id,
            measure.id,
            result.type.value,
            result.present,
            result.met,
        )

    outcome = classify(results)
    how_close = how_close_reasons(outcome, results, limit=config.how_close_limit)
    return build_trace(
        measure=measure,
        patient=patient,
        period=period,
        populations=results.values(),
        outcome=outcome,
        how_close=how_close,
    )


def classify(results: dict[PopulationType, PopulationResult]) -> FinalOutcome:
    ip = results[PopulationType.INITIAL_POPULATION]
    denominator = results[PopulationType.DENOMINATOR]
    if not ip.met or not denominator.met:
        return FinalOutcome.NOT_IN_POPULATION
    exclusion = results.get(PopulationType.DENOMINATOR_EXCLUSION)
    if exclusion is not None and exclusion.met:
        return FinalOutcome.EXCLUDED
    numerator = results.get(PopulationType.NUMERATOR)
    if numerator is not None and numerator.met:
        return FinalOutcome.IN_NUMERATOR
    return FinalOutcome.DENOMINATOR_ONLY


def precheck_nodes(measure: MeasureSpec, ctx: EvaluationContext) -> tuple[ValidationNode, ...]:
    """Gender and age pre-checks; each is its own node so simultaneous failures stay visible."""
    constraints = measure.global_constraints
    nodes: list[ValidationNode] = []
    if constraints.gender is not None:
        check = check_gender(ctx.patient.demographics, constraints.gender)
        nodes.append(_precheck_node(GENDER_CHECK_ID, "Gender Requirement", check))
    if constraints.has_age_range():
        check = check_age(
            ctx.birth_date,
            ctx.period,
            age_min=constraints.age_min,
            age_max=constraints.age_max,
            calculation=constraints.age_calculation,
        )
        nodes.append(_precheck_node(AGE_CHECK_ID, "Age Requirement", check))
    return tuple(nodes)


def how_close_reasons(
    outcome: FinalOutcome,
    results: dict[PopulationType, PopulationResult],
    *,
    limit: int = 3,
) -> tuple[str, ...]:
    """Short list of reasons drawn from the nearest unmet population's failing nodes."""
    ip = results[PopulationType.INITIAL_POPULATION]
    if outcome == FinalOutcome.NOT_IN_POPULATION:
        source = ip if not ip.met else results[PopulationType.DENOMINATOR]
    elif outcome == FinalOutcome.DENOMINATOR_ONLY:
        source = results[PopulationType.NUMERATOR]
    else:
        return ()

    reasons: dict[str, None] = {}
    for node in source.nodes:
        for reason in _gaps(node):
            reasons.setdefault(reason, None)
    return tuple(reasons)[:limit]


def _gaps(node: ValidationNode) -> Iterator[str]:
    if node.met:
        return
    label = node.description or node.title
    if node.kind == NodeKind.LEAF:
        if node.id in (GENDER_CHECK_ID, AGE_CHECK_ID):
            yield node.description
        elif node.status == NodeStatus.NOT_EVALUATED:
            yield f"Could not evaluate: {label}"
        elif node.negation:
            yield f"Present but must be absent: {label}"
        else:
            yield f"Missing: {label}"
        return
    if node.operator == LogicalOperator.NOT:
        yield f"Must not meet: {label}"
        return
    for child in node.children:
        yield from _gaps(child)


def _precheck_node(node_id: str, title: str, check: DemographicCheck) -> ValidationNode:
    if not check.evaluable:
        status = NodeStatus.NOT_EVALUATED
    else:
        status = NodeStatus.PASS if check.met else NodeStatus.FAIL
    return ValidationNode(
        kind=NodeKind.LEAF,
        id=node_id,
        title=title,
        description=check.reason,
        status=status,
        met=check.met,
        facts=check.facts,
        element_type=DataElementType.DEMOGRAPHIC,
    )


def _evaluate_population(evaluator: ClauseEvaluator, definition: PopulationDefinition) -> PopulationResult:
    if definition.criteria is None:
        raise MissingPopulationCriteriaError(f"Population {definition.type.value!r} has no root clause.")
    root = evaluator.evaluate_clause(definition.criteria)
    return PopulationResult(
        type=definition.type,
        met=root.met,
        informational=definition.type in INFORMATIONAL_POPULATIONS,
        nodes=(root,),
    )


def _inherits_initial_population(definition: Optional[PopulationDefinition]) -> bool:
    return definition is None or definition.criteria is None or not definition.criteria.children


def _check_populations(measure: MeasureSpec) -> None:
    ip = measure.population(PopulationType.INITIAL_POPULATION)
    if ip is None or ip.criteria is None:
        raise MissingPopulationCriteriaError(f"Measure {measure.id!r} has no initial population criteria.")
    missing = [
        p.type.value
        for p in measure.populations
        if p.criteria is None and p.type != PopulationType.DENOMINATOR
    ]
    if missing:
        raise MissingPopulationCriteriaError(
            f"Measure {measure.id!r} has populations without a root clause: {', '.join(missing)}."
        )

