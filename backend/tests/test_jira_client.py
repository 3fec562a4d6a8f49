"""Tests for JiraIssueDataSource."""

import sys
import os
from unittest.mock import Mock, patch

import pytest
import requests

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from services.errors import DataSourceError, QueryTooLargeError
from services.issues import FULL, LITE, ChildLink
from services.jira_client import JiraIssueDataSource, jql_key_list


def search_response(issues, total=None):
    data = {"issues": issues, "total": len(issues) if total is None else total}
    return Mock(json=lambda: data, raise_for_status=Mock())


def raw_issue(key, parent=None):
    fields = {"summary": key, "issuetype": {"name": "Story"}}
    if parent:
        fields["parent"] = {"key": parent}
    return {"key": key, "fields": fields}


class TestInit:
    """Test data source initialization."""

    def test_init_strips_trailing_slash(self):
        """Server URL should have trailing slash removed."""
        source = JiraIssueDataSource("https://test.atlassian.net/", "a@b.c", "t")
        assert source.server == "https://test.atlassian.net"

    def test_account_field_requested(self, mock_jira_credentials):
        source = JiraIssueDataSource(**mock_jira_credentials, account_field="customfield_1")
        assert "customfield_1" in source.full_fields


class TestParseIssue:
    """Test conversion of Jira search results."""

    def test_parses_full_issue(self, mock_jira_credentials, sample_jira_issue):
        source = JiraIssueDataSource(**mock_jira_credentials)

        issue = source.parse_issue(sample_jira_issue)

        assert issue.key == "PROJ-123"
        assert issue.type == "Story"
        assert issue.status == "In Progress"
        assert issue.parent_key == "PROJ-50"
        assert issue.url == "https://test.atlassian.net/browse/PROJ-123"
        assert issue.detail == FULL

    def test_converts_seconds_to_working_days(self, mock_jira_credentials, sample_jira_issue):
        """Estimates are 8 hour days; unset values stay unset."""
        issue = JiraIssueDataSource(**mock_jira_credentials).parse_issue(sample_jira_issue)

        assert issue.original_estimate == 2.0
        assert issue.time_spent == 1.0
        assert issue.time_remaining is None

    def test_reads_account_option(self, mock_jira_credentials, sample_jira_issue):
        issue = JiraIssueDataSource(**mock_jira_credentials).parse_issue(sample_jira_issue)
        assert issue.account == "Foo (Chargeable)"

    def test_reads_plain_account_and_missing_account(self, mock_jira_credentials):
        source = JiraIssueDataSource(**mock_jira_credentials)

        plain = source.parse_issue({"key": "A-1", "fields": {"customfield_10026": "Bar"}})
        missing = source.parse_issue({"key": "A-2", "fields": {}})

        assert plain.account == "Bar"
        assert missing.account is None

    def test_parses_links_in_both_directions(self, mock_jira_credentials, sample_jira_issue):
        issue = JiraIssueDataSource(**mock_jira_credentials).parse_issue(sample_jira_issue)

        assert [link.to_dict() for link in issue.links] == [
            {"linkedIssueKey": "LEN-5", "linkType": "relates to", "direction": "outward"},
            {"linkedIssueKey": "LEN-6", "linkType": "is blocked by", "direction": "inward"},
        ]

    def test_lite_issue(self, mock_jira_credentials, sample_jira_issue):
        issue = JiraIssueDataSource(**mock_jira_credentials).parse_issue(sample_jira_issue, LITE)

        assert issue.detail == LITE
        assert issue.summary == "Implement feature X"
        assert issue.original_estimate is None
        assert issue.links == ()


class TestRequest:
    """Test error handling around HTTP calls."""

    @patch("services.jira_client.requests.get")
    def test_sends_credentials(self, mock_get, mock_jira_credentials):
        mock_get.return_value = search_response([])
        JiraIssueDataSource(**mock_jira_credentials).query_issues("project = X")

        _, kwargs = mock_get.call_args
        assert kwargs["auth"] == ("test@example.com", "test-token-123")
        assert kwargs["params"]["jql"] == "project = X"
        assert kwargs["timeout"] == 30

    @patch("services.jira_client.requests.get")
    def test_http_error_wrapped(self, mock_get, mock_jira_credentials):
        response = Mock(status_code=404)
        mock_get.return_value = Mock(
            raise_for_status=Mock(side_effect=requests.exceptions.HTTPError(response=response))
        )

        with pytest.raises(DataSourceError) as excinfo:
            JiraIssueDataSource(**mock_jira_credentials).query_issues("project = X")

        assert excinfo.value.status_code == 404
        assert "404" in str(excinfo.value)

    @patch("services.jira_client.requests.get")
    def test_connection_error_wrapped(self, mock_get, mock_jira_credentials):
        mock_get.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(DataSourceError, match="Failed to connect"):
            JiraIssueDataSource(**mock_jira_credentials).projects()


class TestSearch:
    """Test paging and batching of searches."""

    @patch("services.jira_client.requests.get")
    def test_pages_through_results(self, mock_get, mock_jira_credentials):
        first = [raw_issue(f"A-{i}") for i in range(100)]
        second = [raw_issue(f"A-{i}") for i in range(100, 150)]
        mock_get.side_effect = [search_response(first, 150), search_response(second, 150)]

        issues = JiraIssueDataSource(**mock_jira_credentials).query_issues_lite("project = A")

        assert len(issues) == 150
        start_ats = [c.kwargs["params"]["startAt"] for c in mock_get.call_args_list]
        assert start_ats == [0, 100]

    @patch("services.jira_client.requests.get")
    def test_too_many_results(self, mock_get, mock_jira_credentials):
        mock_get.return_value = search_response([], total=6000)

        with pytest.raises(QueryTooLargeError):
            JiraIssueDataSource(**mock_jira_credentials).query_issues("project = A")

    @patch("services.jira_client.requests.get")
    def test_keys_split_into_batches_of_fifty(self, mock_get, mock_jira_credentials):
        mock_get.return_value = search_response([])
        keys = [f"A-{i}" for i in range(120)]

        JiraIssueDataSource(**mock_jira_credentials).details_of_many(keys)

        jqls = sorted((c.kwargs["params"]["jql"] for c in mock_get.call_args_list), key=len)
        assert len(jqls) == 3
        assert [jql.count('"') // 2 for jql in jqls] == [20, 50, 50]

    @patch("services.jira_client.requests.get")
    def test_duplicate_keys_requested_once(self, mock_get, mock_jira_credentials):
        mock_get.return_value = search_response([])

        JiraIssueDataSource(**mock_jira_credentials).details_of_many(["A-1", "A-1", "A-2"])

        assert mock_get.call_count == 1
        assert mock_get.call_args.kwargs["params"]["jql"] == 'key in ("A-1", "A-2")'

    def test_no_keys_no_request(self, mock_jira_credentials):
        source = JiraIssueDataSource(**mock_jira_credentials)
        with patch.object(source, "_request") as mock_request:
            assert source.details_of_many([]) == []
            mock_request.assert_not_called()

    def test_jql_key_list(self):
        assert jql_key_list(["A-1", "B-2"]) == '"A-1", "B-2"'


class TestRelations:
    """Test parent/child lookups."""

    @patch("services.jira_client.requests.get")
    def test_children_of_many(self, mock_get, mock_jira_credentials):
        mock_get.return_value = search_response([
            raw_issue("C-1", parent="P-1"),
            raw_issue("C-2", parent="P-2"),
            raw_issue("C-3"),
        ])

        links = JiraIssueDataSource(**mock_jira_credentials).children_of_many(["P-1", "P-2"])

        assert links == [ChildLink("P-1", "C-1"), ChildLink("P-2", "C-2")]
        assert mock_get.call_args.kwargs["params"]["jql"] == \
            'parent in ("P-1", "P-2") ORDER BY created ASC'

    @patch("services.jira_client.requests.get")
    def test_parent_of_many_defaults_to_none(self, mock_get, mock_jira_credentials):
        mock_get.return_value = search_response([raw_issue("A-1", parent="P-1")])

        parents = JiraIssueDataSource(**mock_jira_credentials).parent_of_many(["A-1", "A-2"])

        assert parents == {"A-1": "P-1", "A-2": None}

    @patch("services.jira_client.requests.get")
    def test_children_of(self, mock_get, mock_jira_credentials):
        mock_get.return_value = search_response([raw_issue("C-1", parent="P-1")])

        children = JiraIssueDataSource(**mock_jira_credentials).children_of("P-1")

        assert [child.key for child in children] == ["C-1"]
        assert mock_get.call_args.kwargs["params"]["jql"] == 'parent = "P-1" ORDER BY created ASC'


class TestProjects:
    """Test project listing."""

    @patch("services.jira_client.requests.get")
    def test_pages_through_projects(self, mock_get, mock_jira_credentials):
        first = {"values": [{"id": i, "key": f"P{i}", "name": f"Project {i}"} for i in range(50)],
                 "isLast": False}
        second = {"values": [{"id": 50, "key": "P50", "name": "Project 50"}], "isLast": True}
        mock_get.side_effect = [
            Mock(json=lambda: first, raise_for_status=Mock()),
            Mock(json=lambda: second, raise_for_status=Mock()),
        ]

        projects = JiraIssueDataSource(**mock_jira_credentials).projects()

        assert len(projects) == 51
        assert projects[-1].to_dict() == {"id": "50", "key": "P50", "name": "Project 50"}
