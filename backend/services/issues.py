"""Issue records shared by the tree, aggregation and orphan services.

Numeric effort fields are fractional working days (8 hour days). Jira
reports them in seconds; the Jira client converts on the way in.
"""

from collections import namedtuple
from dataclasses import dataclass, field
from typing import Iterator, Optional, Tuple

# Representation tags. A "lite" record only carries identity fields
# (key, summary, type); a "full" record carries status, account and effort.
LITE = "lite"
FULL = "full"

NO_ACCOUNT = "None"

ChildLink = namedtuple("ChildLink", ["parent_key", "child_key"])


@dataclass(frozen=True)
class IssueLink:
    """A weak reference from one issue to another (Jira issue link)."""

    linked_issue_key: str
    link_type: str = ""
    direction: str = "outward"

    def to_dict(self) -> dict:
        return {
            "linkedIssueKey": self.linked_issue_key,
            "linkType": self.link_type,
            "direction": self.direction,
        }


@dataclass
class IssueNode:
    """A single tracker issue and, once built into a tree, its children.

    Tree nodes are not mutated after the TreeBuilder assembles them;
    aggregation returns an annotated copy. ``parent`` is only set on linked
    issues by the orphan detector and is never part of equality.
    """

    key: str
    summary: str = ""
    type: str = ""
    status: str = ""
    account: Optional[str] = None
    url: str = ""
    parent_key: Optional[str] = None
    original_estimate: Optional[float] = None
    time_spent: Optional[float] = None
    time_remaining: Optional[float] = None
    children: Tuple["IssueNode", ...] = ()
    links: Tuple[IssueLink, ...] = ()
    child_count: Optional[int] = None
    detail: str = LITE
    aggregated_original_estimate: Optional[float] = None
    aggregated_time_spent: Optional[float] = None
    aggregated_time_remaining: Optional[float] = None
    parent: Optional["IssueNode"] = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        self.children = tuple(self.children)
        self.links = tuple(self.links)
        if self.child_count is None:
            self.child_count = len(self.children)

    @property
    def is_leaf(self) -> bool:
        return not self.children

    def walk(self) -> Iterator["IssueNode"]:
        """Yield this node and every descendant, depth first."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def find(self, key: str) -> Optional["IssueNode"]:
        for node in self.walk():
            if node.key == key:
                return node
        return None

    def ancestors(self, limit: int = 10) -> list:
        """Return the parent chain, nearest first, at most ``limit`` long."""
        chain = []
        seen = {self.key}
        current = self.parent
        while current is not None and len(chain) < limit:
            if current.key in seen:
                break
            chain.append(current)
            seen.add(current.key)
            current = current.parent
        return chain

    def to_dict(self, _seen: Optional[frozenset] = None) -> dict:
        data = {
            "key": self.key,
            "summary": self.summary,
            "type": self.type,
            "status": self.status,
            "account": self.account,
            "url": self.url,
            "parentKey": self.parent_key,
            "originalEstimate": self.original_estimate,
            "timeSpent": self.time_spent,
            "timeRemaining": self.time_remaining,
            "childCount": self.child_count,
            "children": [child.to_dict() for child in self.children],
            "links": [link.to_dict() for link in self.links],
            "detail": self.detail,
        }
        # Aggregates are omitted, not null, until computed
        aggregates = (
            ("aggregatedOriginalEstimate", self.aggregated_original_estimate),
            ("aggregatedTimeSpent", self.aggregated_time_spent),
            ("aggregatedTimeRemaining", self.aggregated_time_remaining),
        )
        for name, value in aggregates:
            if value is not None:
                data[name] = value

        if self.parent is not None:
            seen = (_seen or frozenset()) | {self.key}
            if self.parent.key in seen:
                data["parent"] = {"key": self.parent.key}
            else:
                data["parent"] = self.parent.to_dict(seen)
        return data


@dataclass(frozen=True)
class Project:
    id: str
    key: str
    name: str

    def to_dict(self) -> dict:
        return {"id": self.id, "key": self.key, "name": self.name}


@dataclass(frozen=True)
class ProjectRecord:
    """A project and its top-level workstreams (shallow)."""

    project: Optional[Project]
    issues: Tuple[IssueNode, ...]

    def find_workstream(self, key: str) -> Optional[IssueNode]:
        for issue in self.issues:
            if issue.key == key:
                return issue
        return None


@dataclass
class OrphanReport:
    workstream: IssueNode
    linked_issues_with_ancestors: list

    def to_dict(self) -> dict:
        return {
            "workstream": self.workstream.to_dict(),
            "linkedIssuesWithAncestors": [
                issue.to_dict() for issue in self.linked_issues_with_ancestors
            ],
        }
