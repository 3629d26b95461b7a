from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from .models import (
    Direction,
    MeasurementPeriod,
    TimeUnit,
    TimingAnchor,
    TimingConstraint,
    TimingOperator,
)

logger = logging.getLogger(__name__)


def shift_months(d: date, months: int) -> date:
    """
    Shift `d` by `months` calendar months (negative allowed), clamping the day to the end of the target month.

    Calendar months (not 30/365 day approximations) keep lookbacks like "10 years before 2025-12-31"
    landing on 2015-12-31.
    """
    total_months = (d.year * 12 + (d.month - 1)) + months
    year = total_months // 12
    month = (total_months % 12) + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(d.day, last_day))


def shift(d: date, quantity: int, unit: TimeUnit) -> date:
    if unit == TimeUnit.YEARS:
        return shift_months(d, 12 * quantity)
    if unit == TimeUnit.MONTHS:
        return shift_months(d, quantity)
    if unit == TimeUnit.WEEKS:
        return d + timedelta(weeks=quantity)
    return d + timedelta(days=quantity)


def calculate_age(birth_date: date, at: date) -> int:
    """Completed years at `at`, using the same leap-day rule as `birthday`."""
    age = at.year - birth_date.year
    if at < birthday(birth_date, age):
        age -= 1
    return age


def birthday(birth_date: date, age: int) -> date:
    """Date of the `age`-th birthday (Feb 29 births clamp to Feb 28 in non-leap years)."""
    return shift_months(birth_date, 12 * age)


@dataclass(frozen=True)
class ResolvedWindow:
    """Inclusive date interval; a `None` bound is open (-inf / +inf)."""

    start: Optional[date]
    end: Optional[date]

    def contains(self, d: date) -> bool:
        if self.start is not None and d < self.start:
            return False
        if self.end is not None and d > self.end:
            return False
        return True

    def overlaps(self, start: date, end: Optional[date]) -> bool:
        """True when [start, end] (end None = ongoing) intersects the window."""
        if self.end is not None and start > self.end:
            return False
        if self.start is not None and end is not None and end < self.start:
            return False
        return True

    def describe(self) -> str:
        lo = self.start.isoformat() if self.start else "-inf"
        hi = self.end.isoformat() if self.end else "+inf"
        return f"{lo} to {hi}"


def period_window(period: MeasurementPeriod) -> ResolvedWindow:
    return ResolvedWindow(start=period.start, end=period.end)


def resolve_anchor(
    timing: TimingConstraint,
    period: MeasurementPeriod,
    birth_date: Optional[date] = None,
    anchor_date: Optional[date] = None,
) -> Optional[ResolvedWindow]:
    """Resolve the anchor (with offset) to a concrete interval, or None when it cannot be computed."""
    anchor = timing.anchor
    if anchor == TimingAnchor.MEASUREMENT_PERIOD:
        start, end = period.start, period.end
    elif anchor == TimingAnchor.MEASUREMENT_PERIOD_START:
        start = end = period.start
    elif anchor == TimingAnchor.MEASUREMENT_PERIOD_END:
        start = end = period.end
    elif anchor == TimingAnchor.BIRTH_DATE:
        if birth_date is None:
            return None
        start = end = birthday(birth_date, timing.anchor_age)
    elif anchor == TimingAnchor.ENCOUNTER:
        # Resolved per candidate encounter by the fact matcher.
        if anchor_date is None:
            return None
        start = end = anchor_date
    else:
        return None

    if timing.offset_quantity and timing.offset_unit is not None:
        sign = 1 if timing.offset_direction == Direction.AFTER else -1
        start = shift(start, sign * timing.offset_quantity, timing.offset_unit)
        end = shift(end, sign * timing.offset_quantity, timing.offset_unit)
    return ResolvedWindow(start=start, end=end)


def resolve_window(
    timing: TimingConstraint,
    period: MeasurementPeriod,
    birth_date: Optional[date] = None,
    anchor_date: Optional[date] = None,
) -> Optional[ResolvedWindow]:
    """
    Resolve a relative timing constraint into a concrete window.

    Returns None ("unresolvable") instead of raising when the anchor cannot be computed from the inputs;
    callers treat the element as not evaluated rather than failed.
    """
    anchor = resolve_anchor(timing, period, birth_date=birth_date, anchor_date=anchor_date)
    if anchor is None or anchor.start is None or anchor.end is None:
        logger.debug("Timing anchor %r unresolvable for %s", timing.anchor.value, describe_timing(timing))
        return None

    op = timing.operator
    q = timing.quantity
    unit = timing.unit or TimeUnit.DAYS

    if op == TimingOperator.DURING:
        return anchor
    if op == TimingOperator.WITHIN:
        if q is None:
            return anchor
        if timing.direction == Direction.BEFORE:
            return ResolvedWindow(start=shift(anchor.start, -q, unit), end=anchor.start)
        return ResolvedWindow(start=anchor.end, end=shift(anchor.end, q, unit))
    if op == TimingOperator.BEFORE_END_OF:
        if q is None:
            return ResolvedWindow(start=None, end=anchor.end)
        return ResolvedWindow(start=shift(anchor.end, -q, unit), end=anchor.end)
    if op == TimingOperator.AFTER_START_OF:
        if q is None:
            return ResolvedWindow(start=anchor.start, end=None)
        return ResolvedWindow(start=anchor.start, end=shift(anchor.start, q, unit))
    if op == TimingOperator.BEFORE:
        # Strictly before; with a quantity, at least that long before.
        if q is None:
            return ResolvedWindow(start=None, end=anchor.start - timedelta(days=1))
        return ResolvedWindow(start=None, end=shift(anchor.start, -q, unit))
    if op == TimingOperator.AFTER:
        if q is None:
            return ResolvedWindow(start=anchor.end + timedelta(days=1), end=None)
        return ResolvedWindow(start=shift(anchor.end, q, unit), end=None)
    return None


def reverse_resolve(
    window: ResolvedWindow,
    template: TimingConstraint,
    period: MeasurementPeriod,
    birth_date: Optional[date] = None,
    anchor_date: Optional[date] = None,
) -> Optional[TimingConstraint]:
    """
    Derive a relative constraint that forward-resolves to `window`, keeping the template's anchor fixed.

    Used for editor round-tripping: the user edits concrete dates and the constraint is re-expressed
    relative to the same anchor. When the window's fixed edge does not sit on the anchor point, the
    difference becomes a day offset.
    """
    base = template.model_copy(
        update={"offset_quantity": None, "offset_unit": None, "offset_direction": Direction.AFTER}
    )
    anchor = resolve_anchor(base, period, birth_date=birth_date, anchor_date=anchor_date)
    if anchor is None or anchor.start is None or anchor.end is None:
        return None
    if window.start is None and window.end is None:
        return None

    if window.start == anchor.start and window.end == anchor.end:
        return base.model_copy(update={"operator": TimingOperator.DURING, "quantity": None, "unit": None})

    if window.start is None:
        derived = base.model_copy(
            update={"operator": TimingOperator.BEFORE_END_OF, "quantity": None, "unit": None}
        )
        return _with_offset(derived, anchor.end, window.end)
    if window.end is None:
        derived = base.model_copy(
            update={"operator": TimingOperator.AFTER_START_OF, "quantity": None, "unit": None}
        )
        return _with_offset(derived, anchor.start, window.start)

    forward = template.operator == TimingOperator.AFTER_START_OF or (
        template.operator == TimingOperator.WITHIN and template.direction == Direction.AFTER
    )
    if forward:
        quantity, unit = _derive_span(window.start, window.end, sign=1)
        if template.operator == TimingOperator.AFTER_START_OF:
            derived = base.model_copy(update={"quantity": quantity, "unit": unit})
            return _with_offset(derived, anchor.start, window.start)
        derived = base.model_copy(
            update={"operator": TimingOperator.WITHIN, "direction": Direction.AFTER, "quantity": quantity, "unit": unit}
        )
        return _with_offset(derived, anchor.end, window.start)

    quantity, unit = _derive_span(window.end, window.start, sign=-1)
    if template.operator == TimingOperator.BEFORE_END_OF:
        derived = base.model_copy(update={"quantity": quantity, "unit": unit})
        return _with_offset(derived, anchor.end, window.end)
    derived = base.model_copy(
        update={"operator": TimingOperator.WITHIN, "direction": Direction.BEFORE, "quantity": quantity, "unit": unit}
    )
    return _with_offset(derived, anchor.start, window.end)


def _derive_span(fixed: date, other: date, *, sign: int) -> tuple[int, TimeUnit]:
    """Largest exact unit n such that shift(fixed, sign * n, unit) == other."""
    months = abs((other.year - fixed.year) * 12 + (other.month - fixed.month))
    if months and shift_months(fixed, sign * months) == other:
        if months % 12 == 0:
            return months // 12, TimeUnit.YEARS
        return months, TimeUnit.MONTHS
    days = abs((other - fixed).days)
    if days and days % 7 == 0:
        return days // 7, TimeUnit.WEEKS
    return days, TimeUnit.DAYS


def _with_offset(timing: TimingConstraint, anchor_point: date, edge: Optional[date]) -> TimingConstraint:
    if edge is None or edge == anchor_point:
        return timing
    delta = (edge - anchor_point).days
    return timing.model_copy(
        update={
            "offset_quantity": abs(delta),
            "offset_unit": TimeUnit.DAYS,
            "offset_direction": Direction.AFTER if delta > 0 else Direction.BEFORE,
        }
    )


def _ordinal(n: int) -> str:
    if 10 <= n % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


def _quantity_text(quantity: int, unit: TimeUnit) -> str:
    label = unit.value[:-1] if quantity == 1 else unit.value
    return f"{quantity} {label}"


def describe_anchor(timing: TimingConstraint) -> str:
    if timing.anchor == TimingAnchor.BIRTH_DATE and timing.anchor_age:
        label = f"{_ordinal(timing.anchor_age)} birthday"
    else:
        label = timing.anchor.value
    if timing.offset_quantity and timing.offset_unit is not None:
        label = f"{label} {timing.offset_direction.value} {_quantity_text(timing.offset_quantity, timing.offset_unit)}"
    return label


def describe_timing(timing: TimingConstraint) -> str:
    anchor = describe_anchor(timing)
    op = timing.operator
    q = timing.quantity
    span = _quantity_text(q, timing.unit or TimeUnit.DAYS) if q is not None else ""

    if op == TimingOperator.DURING:
        return f"during {anchor}"
    if op == TimingOperator.WITHIN:
        if not span:
            return f"within {anchor}"
        return f"within {span} {timing.direction.value} {anchor}"
    if op == TimingOperator.BEFORE_END_OF:
        return f"{span} or less before end of {anchor}" if span else f"before end of {anchor}"
    if op == TimingOperator.AFTER_START_OF:
        return f"{span} or less after start of {anchor}" if span else f"after start of {anchor}"
    if op == TimingOperator.BEFORE:
        return f"{span} or more before {anchor}" if span else f"before {anchor}"
    return f"{span} or more after {anchor}" if span else f"after {anchor}"
