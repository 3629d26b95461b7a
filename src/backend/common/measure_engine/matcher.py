from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Tuple

from .context import EvaluationContext
from .models import DataElement, DataElementType
from .trace import NodeStatus, ValidationFact

# Review flags attached to leaf nodes.
EMPTY_VALUE_SET = "empty_value_set"
UNRESOLVABLE_TIMING = "unresolvable_timing"
MISSING_BIRTH_DATE = "missing_birth_date"
UNSUPPORTED_ELEMENT_TYPE = "unsupported_element_type"
NO_DEMOGRAPHIC_CONSTRAINT = "no_demographic_constraint"


@dataclass(frozen=True)
class ElementMatch:
    met: bool
    status: NodeStatus
    facts: Tuple[ValidationFact, ...] = ()
    matched_count: int = 0
    review_flags: Tuple[str, ...] = ()


class ElementMatcher(ABC):
    element_types: Tuple[DataElementType, ...]

    def __init__(self):
        if not getattr(self, "element_types", None):
            raise ValueError("Matcher must define element_types")

    @abstractmethod
    def match(self, element: DataElement, ctx: EvaluationContext) -> ElementMatch:  # pragma: no cover
        raise NotImplementedError
