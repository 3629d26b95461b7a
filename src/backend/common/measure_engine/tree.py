from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator, Optional, Tuple

from .models import CriterionNode, DataElement, LogicalClause, LogicalOperator

logger = logging.getLogger(__name__)

# Issue codes.
EMPTY_GROUP = "EMPTY_GROUP"
NOT_WITH_MULTIPLE_CHILDREN = "NOT_WITH_MULTIPLE_CHILDREN"
DUPLICATE_ID = "DUPLICATE_ID"
SINGLE_CHILD_GROUP = "SINGLE_CHILD_GROUP"
DEEPLY_NESTED = "DEEPLY_NESTED"
MIXED_OPERATORS = "MIXED_OPERATORS"


@dataclass(frozen=True)
class TreeEntry:
    node: CriterionNode
    depth: int
    path: Tuple[str, ...]


@dataclass(frozen=True)
class TreeIssue:
    code: str
    message: str
    node_id: Optional[str] = None


@dataclass(frozen=True)
class TreeValidation:
    errors: Tuple[TreeIssue, ...]
    warnings: Tuple[TreeIssue, ...]
    element_count: int
    group_count: int
    max_depth: int

    @property
    def valid(self) -> bool:
        return not self.errors


def walk_tree(clause: LogicalClause) -> Iterator[TreeEntry]:
    """Depth-first, document-order walk; the root clause has depth 0."""

    def _walk(node: CriterionNode, depth: int, path: Tuple[str, ...]) -> Iterator[TreeEntry]:
        here = path + (node.id,)
        yield TreeEntry(node=node, depth=depth, path=here)
        if isinstance(node, LogicalClause):
            for child in node.children:
                yield from _walk(child, depth + 1, here)

    yield from _walk(clause, 0, ())


def iter_elements(clause: LogicalClause) -> Iterator[DataElement]:
    for entry in walk_tree(clause):
        if isinstance(entry.node, DataElement):
            yield entry.node


def iter_clauses(clause: LogicalClause) -> Iterator[LogicalClause]:
    for entry in walk_tree(clause):
        if isinstance(entry.node, LogicalClause):
            yield entry.node


def count_elements(clause: LogicalClause) -> int:
    return sum(1 for _ in iter_elements(clause))


def tree_depth(clause: LogicalClause) -> int:
    """Number of nested clause levels (a flat clause has depth 1)."""
    child_depths = [tree_depth(c) for c in clause.children if isinstance(c, LogicalClause)]
    return 1 + max(child_depths, default=0)


def validate_logic_tree(clause: LogicalClause, *, max_depth: int = 4) -> TreeValidation:
    """
    Lint a criteria tree for authoring problems.

    Errors (EMPTY_GROUP, NOT_WITH_MULTIPLE_CHILDREN, DUPLICATE_ID) mark trees whose evaluation relies
    on a fallback; warnings (SINGLE_CHILD_GROUP, DEEPLY_NESTED, MIXED_OPERATORS) are stylistic.
    Evaluation never refuses a tree because of these.
    """
    errors: list[TreeIssue] = []
    warnings: list[TreeIssue] = []
    seen: set[str] = set()
    elements = 0
    groups = 0

    for entry in walk_tree(clause):
        node = entry.node
        if node.id in seen:
            errors.append(TreeIssue(DUPLICATE_ID, f"Duplicate node id: {node.id}", node.id))
        seen.add(node.id)

        if isinstance(node, DataElement):
            elements += 1
            continue

        groups += 1
        if not node.children:
            errors.append(TreeIssue(EMPTY_GROUP, "Group has no children", node.id))
        if node.operator == LogicalOperator.NOT and len(node.children) > 1:
            errors.append(
                TreeIssue(NOT_WITH_MULTIPLE_CHILDREN, "NOT operator should have exactly one child", node.id)
            )
        if len(node.children) == 1 and node.operator != LogicalOperator.NOT:
            warnings.append(TreeIssue(SINGLE_CHILD_GROUP, "Group has only one child; consider flattening", node.id))
        if node.has_mixed_operators:
            warnings.append(
                TreeIssue(
                    MIXED_OPERATORS,
                    "Group mixes AND/OR between siblings; combined strictly left to right",
                    node.id,
                )
            )

    depth = tree_depth(clause)
    if depth > max_depth:
        warnings.append(TreeIssue(DEEPLY_NESTED, f"Tree is deeply nested (depth: {depth}); consider simplifying"))

    for issue in errors:
        logger.warning("Logic tree %s: %s (%s)", clause.id, issue.code, issue.node_id)

    return TreeValidation(
        errors=tuple(errors),
        warnings=tuple(warnings),
        element_count=elements,
        group_count=groups,
        max_depth=depth,
    )


def describe_clause(clause: LogicalClause) -> str:
    """Plain-English rendering; mixed sibling operators are parenthesized in left-to-right fold order."""

    def _describe(node: CriterionNode, nested: bool) -> str:
        if isinstance(node, DataElement):
            text = node.description or f"[{node.type.value}]"
            return f"NOT {text}" if node.negation else text

        if node.operator == LogicalOperator.NOT:
            if len(node.children) == 1:
                return f"NOT ({_describe(node.children[0], False)})"
            inner = " OR ".join(_describe(c, True) for c in node.children)
            return f"NOT ({inner})"

        parts = [_describe(c, True) for c in node.children]
        if not parts:
            return "(always true)" if node.operator == LogicalOperator.AND else "(always false)"
        if len(parts) == 1:
            return parts[0]

        text = parts[0]
        previous: Optional[LogicalOperator] = None
        for i in range(1, len(parts)):
            op = node.operator_for_pair(i - 1)
            if previous is not None and op != previous:
                text = f"({text})"
            text = f"{text} {op.value} {parts[i]}"
            previous = op
        return f"({text})" if nested else text

    return _describe(clause, False)
