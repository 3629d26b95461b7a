from __future__ import annotations

import logging
from typing import Mapping, Optional

from .context import EvaluationContext
from .matcher import ElementMatcher
from .models import CriterionNode, DataElement, DataElementType, LogicalClause, LogicalOperator
from .registry import registry
from .trace import MatchCount, NodeKind, NodeStatus, ValidationNode

logger = logging.getLogger(__name__)

# Review flags attached to group nodes.
EMPTY_CLAUSE = "empty_clause"
NOT_MULTIPLE_CHILDREN = "not_multiple_children"


def combine(left: bool, right: bool, operator: LogicalOperator) -> bool:
    if operator == LogicalOperator.AND:
        return left and right
    return left or right


def fold_results(clause: LogicalClause, results: list[bool]) -> bool:
    """
    Combine already-evaluated child results left to right.

    Every child has been evaluated before this is called; the fold only derives the boolean.
    Empty clauses: AND is met, OR is not, NOT is met. NOT over several children is NOT(OR(children)).
    """
    if clause.operator == LogicalOperator.NOT:
        return not any(results)
    if not results:
        return clause.operator == LogicalOperator.AND
    met = results[0]
    for i in range(1, len(results)):
        met = combine(met, results[i], clause.operator_for_pair(i - 1))
    return met


def hinges_on_unevaluated(clause: LogicalClause, children: tuple[ValidationNode, ...]) -> bool:
    """True when assuming every not-evaluated child were met would change the clause result."""
    unevaluated = [c.status == NodeStatus.NOT_EVALUATED for c in children]
    if not any(unevaluated):
        return False
    actual = [c.met for c in children]
    optimistic = [m or u for m, u in zip(actual, unevaluated)]
    return fold_results(clause, actual) != fold_results(clause, optimistic)


def group_status(clause: LogicalClause, met: bool, children: tuple[ValidationNode, ...]) -> NodeStatus:
    if hinges_on_unevaluated(clause, children):
        return NodeStatus.NOT_EVALUATED
    if met:
        return NodeStatus.PASS
    if any(c.status == NodeStatus.NOT_EVALUATED for c in children):
        return NodeStatus.NOT_EVALUATED
    if clause.operator != LogicalOperator.NOT and any(c.met for c in children):
        return NodeStatus.PARTIAL
    return NodeStatus.FAIL


class ClauseEvaluator:
    """Evaluates criteria trees for one patient/period into `ValidationNode` trees."""

    def __init__(
        self,
        ctx: EvaluationContext,
        matchers: Optional[Mapping[DataElementType, ElementMatcher]] = None,
    ):
        self._ctx = ctx
        self._matchers = dict(matchers) if matchers is not None else registry.create_all()

    @property
    def ctx(self) -> EvaluationContext:
        return self._ctx

    def evaluate(self, node: CriterionNode) -> ValidationNode:
        if isinstance(node, LogicalClause):
            return self.evaluate_clause(node)
        return self.evaluate_element(node)

    def evaluate_clause(self, clause: LogicalClause) -> ValidationNode:
        children = tuple(self.evaluate(child) for child in clause.children)
        results = [c.met for c in children]
        met = fold_results(clause, results)
        status = group_status(clause, met, children)
        if status == NodeStatus.NOT_EVALUATED:
            met = False

        flags: list[str] = []
        if not children:
            logger.warning("Clause %s (%s) has no children", clause.id, clause.operator.value)
            flags.append(EMPTY_CLAUSE)
        elif clause.operator == LogicalOperator.NOT and len(children) > 1:
            logger.warning("NOT clause %s has %d children; evaluated as NOT(OR(...))", clause.id, len(children))
            flags.append(NOT_MULTIPLE_CHILDREN)

        return ValidationNode(
            kind=NodeKind.GROUP,
            id=clause.id,
            title=clause.description or f"{clause.operator.value} Group",
            description=clause.description,
            status=status,
            met=met,
            children=children,
            operator=clause.operator,
            match_count=MatchCount(met=sum(results), total=len(results)),
            review_flags=tuple(flags),
        )

    def evaluate_element(self, element: DataElement) -> ValidationNode:
        matcher = self._matchers.get(element.type)
        if matcher is None:
            raise KeyError(f"No matcher registered for element type {element.type.value!r}")
        result = matcher.match(element, self._ctx)
        return ValidationNode(
            kind=NodeKind.LEAF,
            id=element.id,
            title=element.title,
            description=element.description,
            status=result.status,
            met=result.met,
            facts=result.facts,
            element_type=element.type,
            negation=element.negation,
            review_flags=result.review_flags,
        )


def evaluate_clause(clause: LogicalClause, ctx: EvaluationContext) -> ValidationNode:
    return ClauseEvaluator(ctx).evaluate_clause(clause)
