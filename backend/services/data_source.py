"""Abstract issue tracker interface consumed by the report engine."""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence

from services.issues import ChildLink, IssueNode, Project


class IssueDataSource(ABC):
    """Read-only access to an issue tracker.

    Every method raises ``DataSourceError`` when the tracker cannot be
    reached or answers with an error. Batched methods take any number of
    keys and are responsible for splitting them into requests the tracker
    accepts; to the caller each batched method counts as one call.
    """

    @abstractmethod
    def projects(self) -> List[Project]:
        """All projects visible to the current credentials."""

    @abstractmethod
    def query_issues(self, jql: str) -> List[IssueNode]:
        """Run a search and return full issue records."""

    @abstractmethod
    def query_issues_lite(self, jql: str) -> List[IssueNode]:
        """Run a search and return lite records (key, summary, type)."""

    @abstractmethod
    def children_of(self, key: str) -> List[IssueNode]:
        """Immediate children of a single issue, as full records."""

    @abstractmethod
    def children_of_many(self, keys: Sequence[str]) -> List[ChildLink]:
        """Parent/child pairs for the immediate children of every key."""

    @abstractmethod
    def details_of_many(self, keys: Sequence[str],
                        fields: Optional[Sequence[str]] = None) -> List[IssueNode]:
        """Full records for the given keys, limited to ``fields`` if given."""

    @abstractmethod
    def issues_by_keys(self, keys: Sequence[str]) -> List[IssueNode]:
        """Full records for the given keys. Unknown keys are skipped."""

    @abstractmethod
    def parent_of_many(self, keys: Sequence[str]) -> Dict[str, Optional[str]]:
        """Map each key to its parent key, or ``None`` when it has none."""
