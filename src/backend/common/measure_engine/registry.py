from __future__ import annotations

from typing import Dict, Iterable, Type

from .matcher import ElementMatcher
from .models import DataElementType


class MatcherRegistry:
    def __init__(self):
        self._matchers: Dict[DataElementType, Type[ElementMatcher]] = {}

    def register(self, matcher_cls: Type[ElementMatcher]) -> None:
        element_types = getattr(matcher_cls, "element_types", None)
        if not element_types:
            raise ValueError("Matcher class missing element_types")
        for element_type in element_types:
            if element_type in self._matchers:
                raise ValueError(f"Duplicate matcher registered for element type: {element_type.value}")
        for element_type in element_types:
            self._matchers[element_type] = matcher_cls

    def create_all(self) -> Dict[DataElementType, ElementMatcher]:
        instances: Dict[Type[ElementMatcher], ElementMatcher] = {}
        out: Dict[DataElementType, ElementMatcher] = {}
        for element_type, cls in self._matchers.items():
            if cls not in instances:
                instances[cls] = cls()
            out[element_type] = instances[cls]
        return out

    def get(self, element_type: DataElementType) -> Type[ElementMatcher]:
        return self._matchers[element_type]

    def types(self) -> Iterable[DataElementType]:
        return self._matchers.keys()


registry = MatcherRegistry()


def register_matcher(matcher_cls: Type[ElementMatcher]) -> Type[ElementMatcher]:
    registry.register(matcher_cls)
    return matcher_cls
