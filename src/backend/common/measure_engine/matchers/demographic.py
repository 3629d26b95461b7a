from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional, Tuple

from ..context import EvaluationContext
from ..matcher import (
    MISSING_BIRTH_DATE,
    NO_DEMOGRAPHIC_CONSTRAINT,
    ElementMatch,
    ElementMatcher,
)
from ..models import AgeCalculation, DataElement, DataElementType, Demographics, Gender, MeasurementPeriod
from ..registry import register_matcher
from ..timing import birthday, calculate_age
from ..trace import AGE, GENDER, NodeStatus, ValidationFact

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DemographicCheck:
    met: bool
    reason: str
    facts: Tuple[ValidationFact, ...] = ()
    # False when the check could not be computed (e.g. unknown birth date).
    evaluable: bool = True


def check_gender(demographics: Demographics, required: Gender) -> DemographicCheck:
    actual = demographics.gender
    met = actual == required
    if met:
        reason = f"Patient sex ({actual.value}) matches required ({required.value})"
    else:
        reason = f"Patient sex ({actual.value}) does not match required ({required.value})"
    fact = ValidationFact(code=GENDER, display=f"Patient gender: {actual.value}", source="Demographics")
    return DemographicCheck(met=met, reason=reason, facts=(fact,))


def age_range_text(age_min: Optional[int], age_max: Optional[int]) -> str:
    if age_min is not None and age_max is not None:
        return f"{age_min}-{age_max}"
    if age_min is not None:
        return f">= {age_min}"
    if age_max is not None:
        return f"<= {age_max}"
    return "any age"


def check_age(
    birth_date: Optional[date],
    period: MeasurementPeriod,
    *,
    age_min: Optional[int],
    age_max: Optional[int],
    calculation: AgeCalculation = AgeCalculation.DURING,
) -> DemographicCheck:
    """
    Evaluate an age range against the measurement period.

    `during` (the default) checks the minimum at period end and the maximum at period start, so a
    patient who is in range at any point during the period qualifies. `turns_during` requires a
    birthday for some age in [min, max] to fall within the period.
    """
    range_text = age_range_text(age_min, age_max)
    if birth_date is None:
        return DemographicCheck(
            met=False,
            reason=f"Birth date unknown; cannot evaluate age requirement ({range_text})",
            facts=(ValidationFact(code=AGE, display="Birth date not recorded", source="Demographics"),),
            evaluable=False,
        )

    age_start = calculate_age(birth_date, period.start)
    age_end = calculate_age(birth_date, period.end)
    age_fact = ValidationFact(
        code=AGE,
        display=f"Age: {age_start} at MP start, {age_end} at MP end",
        date=birth_date,
        source="Demographics",
    )

    failures: list[str] = []
    if calculation == AgeCalculation.AT_START:
        if age_min is not None and age_start < age_min:
            failures.append(f"Age {age_start} at Measurement Period start is below minimum {age_min}")
        if age_max is not None and age_start > age_max:
            failures.append(f"Age {age_start} at Measurement Period start exceeds maximum {age_max}")
    elif calculation == AgeCalculation.AT_END:
        if age_min is not None and age_end < age_min:
            failures.append(f"Age {age_end} at Measurement Period end is below minimum {age_min}")
        if age_max is not None and age_end > age_max:
            failures.append(f"Age {age_end} at Measurement Period end exceeds maximum {age_max}")
    elif calculation == AgeCalculation.TURNS_DURING:
        low = age_min if age_min is not None else age_max
        high = age_max if age_max is not None else age_min
        if low is not None and high is not None:
            turns = any(period.start <= birthday(birth_date, age) <= period.end for age in range(low, high + 1))
            if not turns:
                failures.append(f"Does not turn {range_text} during the Measurement Period")
    else:
        if age_min is not None and age_end < age_min:
            failures.append(f"Age {age_end} at Measurement Period end is below minimum {age_min}")
        if age_max is not None and age_start > age_max:
            failures.append(f"Age {age_start} at Measurement Period start exceeds maximum {age_max}")

    if failures:
        return DemographicCheck(met=False, reason="; ".join(failures), facts=(age_fact,))
    return DemographicCheck(
        met=True,
        reason=f"Age {age_start}-{age_end} meets requirement ({range_text})",
        facts=(age_fact,),
    )


@register_matcher
class DemographicMatcher(ElementMatcher):
    element_types = (DataElementType.DEMOGRAPHIC,)

    def match(self, element: DataElement, ctx: EvaluationContext) -> ElementMatch:
        checks: list[DemographicCheck] = []
        flags: list[str] = []

        if element.gender is not None:
            checks.append(check_gender(ctx.patient.demographics, element.gender))

        thresholds = element.thresholds
        if thresholds is not None and thresholds.has_age():
            age_check = check_age(
                ctx.birth_date,
                ctx.period,
                age_min=thresholds.age_min,
                age_max=thresholds.age_max,
                calculation=thresholds.age_calculation or AgeCalculation.DURING,
            )
            if not age_check.evaluable:
                logger.warning("Patient %s has no birth date; element %s not evaluated", ctx.patient.id, element.id)
                flags.append(MISSING_BIRTH_DATE)
            checks.append(age_check)

        if not checks:
            flags.append(NO_DEMOGRAPHIC_CONSTRAINT)
            return ElementMatch(met=True, status=NodeStatus.PASS, review_flags=tuple(flags))

        facts = tuple(f for c in checks for f in c.facts)
        met = all(c.met for c in checks)
        if element.negation:
            met = not met

        if not all(c.evaluable for c in checks):
            return ElementMatch(
                met=False, status=NodeStatus.NOT_EVALUATED, facts=facts, review_flags=tuple(flags)
            )
        status = NodeStatus.PASS if met else NodeStatus.FAIL
        return ElementMatch(met=met, status=status, facts=facts, review_flags=tuple(flags))
