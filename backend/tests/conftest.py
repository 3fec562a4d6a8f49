"""Shared fixtures for workstream report tests."""

import os
import sys
from dataclasses import replace

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from services.data_source import IssueDataSource
from services.errors import DataSourceError
from services.issues import FULL, LITE, ChildLink, IssueLink, IssueNode, Project

DAY = 24 * 60 * 60


class FakeClock:
    """Manually advanced clock for cache tests."""

    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeDataSource(IssueDataSource):
    """In-memory issue tracker that records every call.

    ``children`` maps a parent key to its child keys; parents are derived
    from it unless given. Method names listed in ``fail`` raise
    ``DataSourceError``.
    """

    def __init__(self, issues=(), children=None, parents=None, projects=(), lite_results=None):
        self.issues = {issue.key: issue for issue in issues}
        self.children = children or {}
        if parents is None:
            parents = {}
            for parent_key, child_keys in self.children.items():
                for child_key in child_keys:
                    parents[child_key] = parent_key
        self.parents = parents
        self._projects = list(projects)
        self.lite_results = lite_results
        self.calls = []
        self.fail = set()

    def _record(self, name, *args):
        self.calls.append((name, args))
        if name in self.fail:
            raise DataSourceError(f"{name} failed")

    def call_count(self, name):
        return sum(1 for call_name, _ in self.calls if call_name == name)

    def _copy(self, key):
        return replace(self.issues[key])

    def projects(self):
        self._record("projects")
        return list(self._projects)

    def query_issues(self, jql):
        self._record("query_issues", jql)
        return [self._copy(key) for key in self.issues]

    def query_issues_lite(self, jql):
        self._record("query_issues_lite", jql)
        if self.lite_results is not None:
            return list(self.lite_results)
        return [
            IssueNode(key=issue.key, summary=issue.summary, type=issue.type,
                      url=issue.url, parent_key=self.parents.get(issue.key), detail=LITE)
            for issue in self.issues.values()
        ]

    def children_of(self, key):
        self._record("children_of", key)
        return [self._copy(child) for child in self.children.get(key, []) if child in self.issues]

    def children_of_many(self, keys):
        self._record("children_of_many", list(keys))
        return [ChildLink(key, child) for key in keys for child in self.children.get(key, [])]

    def details_of_many(self, keys, fields=None):
        self._record("details_of_many", list(keys))
        return [self._copy(key) for key in keys if key in self.issues]

    def issues_by_keys(self, keys):
        self._record("issues_by_keys", list(keys))
        return [self._copy(key) for key in keys if key in self.issues]

    def parent_of_many(self, keys):
        self._record("parent_of_many", list(keys))
        return {key: self.parents.get(key) for key in keys}


def make_issue(key, type="Task", account=None, estimate=None, spent=None,
               remaining=None, links=(), summary=None):
    """Full issue record with effort in days."""
    return IssueNode(
        key=key,
        summary=summary or f"Summary of {key}",
        type=type,
        status="In Progress",
        account=account,
        url=f"https://test.atlassian.net/browse/{key}",
        original_estimate=estimate,
        time_spent=spent,
        time_remaining=remaining,
        links=tuple(IssueLink(linked_issue_key=k) for k in links),
        detail=FULL
    )


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def mock_jira_credentials():
    """Mock Jira credentials for testing."""
    return {
        "server": "https://test.atlassian.net",
        "email": "test@example.com",
        "token": "test-token-123"
    }


@pytest.fixture
def jira_headers(mock_jira_credentials):
    return {
        "X-Jira-Server": mock_jira_credentials["server"],
        "X-Jira-Email": mock_jira_credentials["email"],
        "X-Jira-Token": mock_jira_credentials["token"]
    }


@pytest.fixture
def workstream_source():
    """A workstream with two epics, one of which has two stories.

    WS-1 (Workstream)
      EP-1 (Epic)   -> ST-1, ST-2
      EP-2 (Epic)
    """
    issues = [
        make_issue("WS-1", type="Workstream", account="Foo (Chargeable)",
                   estimate=2.0, spent=1.0, summary="Platform"),
        make_issue("EP-1", type="Epic", estimate=3.0, spent=0.0, links=["LEN-1"]),
        make_issue("EP-2", type="Epic", spent=5.0, links=["LEN-2", "LEN-1"]),
        make_issue("ST-1", type="Story", account="Foo", estimate=1.0, remaining=0.5),
        make_issue("ST-2", type="Story", account="None", estimate=0.5),
        make_issue("LEN-1"),
        make_issue("LEN-2"),
        make_issue("HPD-7", type="Initiative"),
    ]
    children = {
        "WS-1": ["EP-1", "EP-2"],
        "EP-1": ["ST-1", "ST-2"],
    }
    parents = {"EP-1": "WS-1", "EP-2": "WS-1", "ST-1": "EP-1", "ST-2": "EP-1",
               "LEN-1": "HPD-7"}
    projects = [Project(id="10000", key="PROJ", name="Project")]
    lite = [IssueNode(key="WS-1", summary="Platform", type="Workstream", detail=LITE)]
    return FakeDataSource(issues, children=children, parents=parents,
                          projects=projects, lite_results=lite)


@pytest.fixture
def sample_jira_issue():
    """Raw Jira search result with estimates in seconds."""
    return {
        "key": "PROJ-123",
        "fields": {
            "summary": "Implement feature X",
            "issuetype": {"name": "Story"},
            "status": {"name": "In Progress"},
            "parent": {"key": "PROJ-50"},
            "timeoriginalestimate": 57600,
            "timespent": 28800,
            "timeestimate": None,
            "customfield_10026": {"id": 4, "value": "Foo (Chargeable)"},
            "issuelinks": [
                {"type": {"name": "Relates", "outward": "relates to", "inward": "relates to"},
                 "outwardIssue": {"key": "LEN-5"}},
                {"type": {"name": "Blocks", "outward": "blocks", "inward": "is blocked by"},
                 "inwardIssue": {"key": "LEN-6"}}
            ]
        }
    }


@pytest.fixture
def app():
    """Create Flask test app."""
    from app import create_app
    app = create_app()
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(app):
    """Create Flask test client."""
    return app.test_client()
