"""Effort roll-ups over issue trees."""

from dataclasses import dataclass, replace
from typing import Iterable, Optional

from services.issues import IssueNode


@dataclass(frozen=True)
class Rollup:
    """Summed effort of a node and all of its descendants, in days.

    ``has_data`` is False when every source value in the subtree was unset,
    letting callers tell "nothing recorded" apart from a real zero.
    """

    estimate: float = 0.0
    spent: float = 0.0
    remaining: float = 0.0
    has_data: bool = False

    def __add__(self, other: "Rollup") -> "Rollup":
        return Rollup(
            estimate=self.estimate + other.estimate,
            spent=self.spent + other.spent,
            remaining=self.remaining + other.remaining,
            has_data=self.has_data or other.has_data
        )

    def to_dict(self) -> dict:
        return {
            "aggregatedOriginalEstimate": self.estimate,
            "aggregatedTimeSpent": self.spent,
            "aggregatedTimeRemaining": self.remaining,
            "hasData": self.has_data,
        }


def _own(node: IssueNode) -> Rollup:
    values = (node.original_estimate, node.time_spent, node.time_remaining)
    return Rollup(
        estimate=node.original_estimate or 0.0,
        spent=node.time_spent or 0.0,
        remaining=node.time_remaining or 0.0,
        has_data=any(value is not None for value in values)
    )


def aggregate(node: IssueNode) -> Rollup:
    """Own values (unset counts as 0) plus the roll-up of every child."""
    total = _own(node)
    for child in node.children:
        total = total + aggregate(child)
    return total


def annotate(node: IssueNode) -> IssueNode:
    """Return a copy of the tree with ``aggregated_*`` set on every node.

    The input tree, which may be shared through the cache, is left untouched.
    """
    children = tuple(annotate(child) for child in node.children)
    total = _own(node)
    for child in children:
        total = total + Rollup(
            estimate=child.aggregated_original_estimate,
            spent=child.aggregated_time_spent,
            remaining=child.aggregated_time_remaining
        )
    return replace(
        node,
        children=children,
        aggregated_original_estimate=total.estimate,
        aggregated_time_spent=total.spent,
        aggregated_time_remaining=total.remaining
    )


def project_totals(workstreams: Iterable[IssueNode],
                   loaded_trees: Optional[dict] = None) -> dict:
    """Sum roll-ups across a project's workstreams.

    ``loaded_trees`` maps workstream key to its fully built tree. Only those
    workstreams contribute to the totals; the rest are counted as not loaded.
    """
    loaded_trees = loaded_trees or {}
    workstreams = list(workstreams)
    total = Rollup()
    loaded = 0

    for workstream in workstreams:
        tree = loaded_trees.get(workstream.key)
        if tree is None:
            continue
        total = total + aggregate(tree)
        loaded += 1

    return {
        "totalOriginalEstimateDays": round(total.estimate, 2),
        "totalTimeSpentDays": round(total.spent, 2),
        "totalTimeRemainingDays": round(total.remaining, 2),
        "loadedWorkstreamCount": loaded,
        "totalWorkstreamCount": len(workstreams),
    }
