from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Optional, Tuple

from ..context import EvaluationContext
from ..matcher import (
    EMPTY_VALUE_SET,
    UNRESOLVABLE_TIMING,
    UNSUPPORTED_ELEMENT_TYPE,
    ElementMatch,
    ElementMatcher,
)
from ..models import (
    NON_QUALIFYING_STATUSES,
    Comparator,
    DataElement,
    DataElementType,
    Fact,
    Thresholds,
    TimingAnchor,
    TimingConstraint,
)
from ..registry import register_matcher
from ..timing import ResolvedWindow, describe_timing, period_window, resolve_window
from ..trace import DOSE_COUNT, INSUFFICIENT_DOSES, NO_MATCH, NodeStatus, ValidationFact
from .codes import code_matches

logger = logging.getLogger(__name__)

_SOURCE_LABELS = {
    "conditions": "Problem List",
    "encounters": "Encounters",
    "procedures": "Procedures",
    "observations": "Observations",
    "medications": "Medications",
    "immunizations": "Immunizations",
}


def value_satisfies(value: Optional[Decimal], thresholds: Optional[Thresholds]) -> bool:
    """
    Check a fact value against element thresholds.

    With a comparator, `>`, `>=`, `=` and `!=` compare against value_min and `<`, `<=` against
    value_max (falling back to the other bound when only one is authored). Without a comparator,
    min/max are inclusive bounds. A fact without a value never satisfies a value threshold.
    """
    if thresholds is None or not thresholds.has_value():
        return True
    if value is None:
        return False

    low, high = thresholds.value_min, thresholds.value_max
    comparator = thresholds.comparator
    if comparator is None:
        return (low is None or value >= low) and (high is None or value <= high)

    if comparator in (Comparator.LT, Comparator.LTE):
        bound = high if high is not None else low
    else:
        bound = low if low is not None else high
    if bound is None:
        return True

    if comparator == Comparator.GT:
        return value > bound
    if comparator == Comparator.GTE:
        return value >= bound
    if comparator == Comparator.LT:
        return value < bound
    if comparator == Comparator.LTE:
        return value <= bound
    if comparator == Comparator.EQ:
        return value == bound
    return value != bound


def is_qualifying_status(fact: Fact) -> bool:
    return fact.status.strip().lower() not in NON_QUALIFYING_STATUSES


class FactMatcher(ElementMatcher):
    """Code + timing + threshold matching against one or more patient fact collections."""

    collections: Tuple[str, ...] = ()
    label: str = "fact"
    # Facts without an end date are treated as ongoing (e.g. active medications).
    open_ended: bool = False

    def match(self, element: DataElement, ctx: EvaluationContext) -> ElementMatch:
        flags: list[str] = []

        codes = ctx.codes_for(element)
        if not codes:
            logger.warning(
                "Element %s (%s) has no codes in its value set; evaluating as no match", element.id, element.title
            )
            flags.append(EMPTY_VALUE_SET)

        windows, unresolved = self._windows(element, ctx)
        all_unresolved = bool(element.timing) and unresolved == len(element.timing)
        if unresolved:
            logger.warning(
                "Element %s: %d of %d timing constraint(s) unresolvable for patient %s",
                element.id,
                unresolved,
                len(element.timing),
                ctx.patient.id,
            )
            flags.append(UNRESOLVABLE_TIMING)

        qualifying: list[tuple[str, Fact]] = []
        if codes:
            for collection in self.collections:
                for fact in ctx.patient.facts(collection):
                    if not is_qualifying_status(fact):
                        continue
                    if not code_matches(fact.code, fact.system, codes):
                        continue
                    # All constraints unresolvable: window filtering is skipped.
                    if windows is not None and not all_unresolved and not self._in_any(fact, windows):
                        continue
                    if not value_satisfies(fact.value, element.thresholds):
                        continue
                    qualifying.append((collection, fact))

        count = len(qualifying)
        if element.negation:
            met = count == 0
            decided = count > 0
        else:
            met = count >= element.min_occurrences
            decided = met

        if all_unresolved or (unresolved and not decided):
            # Candidate facts stay in the trace; a not-evaluable element never counts as met.
            met = False
            status = NodeStatus.NOT_EVALUATED
        else:
            status = NodeStatus.PASS if met else NodeStatus.FAIL

        facts = [
            ValidationFact(
                code=fact.code,
                display=self._display(fact),
                date=fact.date,
                source=_SOURCE_LABELS.get(collection, collection),
            )
            for collection, fact in qualifying
        ]
        evaluation_source = f"{self.label.title()} Evaluation"
        required = element.min_occurrences
        if required > 1:
            facts.insert(
                0,
                ValidationFact(
                    code=DOSE_COUNT,
                    display=f"{count} of {required} required doses found",
                    source=evaluation_source,
                ),
            )
            if 0 < count < required:
                facts.append(
                    ValidationFact(
                        code=INSUFFICIENT_DOSES,
                        display=f"Only {count} of {required} required doses found",
                        source=evaluation_source,
                    )
                )
        if count == 0:
            facts.append(
                ValidationFact(
                    code=NO_MATCH,
                    display=f"No matching {self.label} found for: {element.description or element.title}",
                    source=evaluation_source,
                )
            )

        return ElementMatch(
            met=met,
            status=status,
            facts=tuple(facts),
            matched_count=count,
            review_flags=tuple(flags),
        )

    def _windows(
        self, element: DataElement, ctx: EvaluationContext
    ) -> tuple[Optional[list[ResolvedWindow]], int]:
        """Concrete windows (any-of) plus the number of unresolvable constraints; None means unfiltered."""
        if not element.timing:
            if ctx.config.default_window_is_measurement_period:
                return [period_window(ctx.period)], 0
            return None, 0

        windows: list[ResolvedWindow] = []
        unresolved = 0
        for timing in element.timing:
            if timing.anchor == TimingAnchor.ENCOUNTER:
                resolved = [
                    w
                    for w in (
                        resolve_window(timing, ctx.period, ctx.birth_date, anchor_date=d)
                        for d in self._encounter_anchor_dates(timing, ctx)
                    )
                    if w is not None
                ]
            else:
                window = resolve_window(timing, ctx.period, ctx.birth_date)
                resolved = [window] if window is not None else []
            if not resolved:
                logger.debug("Unresolvable timing for element %s: %s", element.id, describe_timing(timing))
                unresolved += 1
            windows.extend(resolved)
        return windows, unresolved

    @staticmethod
    def _encounter_anchor_dates(timing: TimingConstraint, ctx: EvaluationContext) -> list[date]:
        dates: list[date] = []
        for enc in ctx.patient.encounters:
            if enc.date is None or not is_qualifying_status(enc):
                continue
            if timing.anchor_codes and not code_matches(enc.code, enc.system, timing.anchor_codes):
                continue
            dates.append(enc.date)
        return dates

    def _in_any(self, fact: Fact, windows: list[ResolvedWindow]) -> bool:
        if fact.date is None:
            return False
        if fact.end_date is not None or self.open_ended:
            return any(w.overlaps(fact.date, fact.end_date) for w in windows)
        return any(w.contains(fact.date) for w in windows)

    def _display(self, fact: Fact) -> str:
        text = fact.display or fact.code
        if fact.value is not None:
            text = f"{text}: {fact.value}{' ' + fact.unit if fact.unit else ''}"
        if fact.end_date is not None or (self.open_ended and fact.date is not None):
            end = fact.end_date.isoformat() if fact.end_date else "ongoing"
            start = fact.date.isoformat() if fact.date else "?"
            text = f"{text} ({start} to {end})"
        return text


@register_matcher
class DiagnosisMatcher(FactMatcher):
    element_types = (DataElementType.DIAGNOSIS,)
    collections = ("conditions",)
    label = "diagnosis"


@register_matcher
class EncounterMatcher(FactMatcher):
    element_types = (DataElementType.ENCOUNTER,)
    collections = ("encounters",)
    label = "encounter"


@register_matcher
class ProcedureMatcher(FactMatcher):
    element_types = (DataElementType.PROCEDURE,)
    # Vaccines are frequently authored as procedures.
    collections = ("procedures", "immunizations")
    label = "procedure"


@register_matcher
class ObservationMatcher(FactMatcher):
    element_types = (DataElementType.OBSERVATION,)
    collections = ("observations",)
    label = "observation"


@register_matcher
class MedicationMatcher(FactMatcher):
    element_types = (DataElementType.MEDICATION,)
    collections = ("medications",)
    label = "medication"
    open_ended = True


@register_matcher
class ImmunizationMatcher(FactMatcher):
    element_types = (DataElementType.IMMUNIZATION,)
    collections = ("immunizations",)
    label = "immunization"


@register_matcher
class AssessmentMatcher(FactMatcher):
    element_types = (DataElementType.ASSESSMENT,)
    collections = ("observations", "procedures")
    label = "assessment"


@register_matcher
class UnsupportedElementMatcher(ElementMatcher):
    """Element types test patients carry no facts for; always reported for manual review."""

    element_types = (
        DataElementType.DEVICE,
        DataElementType.COMMUNICATION,
        DataElementType.ALLERGY,
        DataElementType.GOAL,
    )

    def match(self, element: DataElement, ctx: EvaluationContext) -> ElementMatch:
        logger.warning("Element %s has unsupported type %r; not evaluated", element.id, element.type.value)
        fact = ValidationFact(
            code=NO_MATCH,
            display=f"Test patients carry no {element.type.value} data: {element.description or element.title}",
            source="Element Evaluation",
        )
        return ElementMatch(
            met=False,
            status=NodeStatus.NOT_EVALUATED,
            facts=(fact,),
            review_flags=(UNSUPPORTED_ELEMENT_TYPE,),
        )
