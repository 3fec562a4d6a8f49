"""Jira REST implementation of ``IssueDataSource``."""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Sequence

import requests

from services.data_source import IssueDataSource
from services.errors import DataSourceError, QueryTooLargeError
from services.issues import FULL, LITE, ChildLink, IssueLink, IssueNode, Project

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 3600 * 8  # one working day
KEY_BATCH_SIZE = 50
PAGE_SIZE = 100
MAX_SEARCH_RESULTS = 5000
MAX_WORKERS = 6

LITE_FIELDS = ["summary", "issuetype", "parent"]
FULL_FIELDS = [
    "summary", "issuetype", "status", "parent", "issuelinks",
    "timeoriginalestimate", "timespent", "timeestimate"
]


def jql_key_list(keys: Sequence[str]) -> str:
    """Render keys as a quoted, comma separated JQL list."""
    return ", ".join(f'"{key}"' for key in keys)


def _chunks(items: Sequence[str], size: int) -> List[List[str]]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def _seconds_to_days(value) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value) / SECONDS_PER_DAY
    except (TypeError, ValueError):
        return None


def _account_name(value) -> Optional[str]:
    """Tempo accounts arrive as option objects, plain strings or nothing."""
    if value is None:
        return None
    if isinstance(value, dict):
        return value.get("value") or value.get("name") or value.get("key")
    return str(value)


def _parse_links(raw_links) -> List[IssueLink]:
    links = []
    for link in raw_links or []:
        link_type = link.get("type", {})
        if link.get("outwardIssue"):
            links.append(IssueLink(
                linked_issue_key=link["outwardIssue"]["key"],
                link_type=link_type.get("outward", link_type.get("name", "")),
                direction="outward"
            ))
        elif link.get("inwardIssue"):
            links.append(IssueLink(
                linked_issue_key=link["inwardIssue"]["key"],
                link_type=link_type.get("inward", link_type.get("name", "")),
                direction="inward"
            ))
    return links


class JiraIssueDataSource(IssueDataSource):
    """Talks to Jira Cloud with an email and API token."""

    def __init__(self, server: str, email: str, token: str,
                 account_field: str = "customfield_10026"):
        self.server = server.rstrip("/")
        self.email = email
        self.token = token
        self.account_field = account_field

    def _request(self, endpoint: str, params: Optional[dict] = None):
        """Make authenticated request to Jira API."""
        try:
            response = requests.get(
                f"{self.server}{endpoint}",
                auth=(self.email, self.token),
                headers={"Accept": "application/json"},
                params=params,
                timeout=30
            )
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            raise DataSourceError(f"Jira API error: {status}", status_code=status) from e
        except requests.exceptions.RequestException as e:
            raise DataSourceError(f"Failed to connect to Jira: {e}") from e
        return response.json()

    @property
    def full_fields(self) -> List[str]:
        return FULL_FIELDS + [self.account_field]

    def issue_url(self, key: str) -> str:
        return f"{self.server}/browse/{key}"

    def parse_issue(self, raw: dict, detail: str = FULL) -> IssueNode:
        """Convert a Jira search result into an ``IssueNode``."""
        fields = raw.get("fields") or {}
        key = raw["key"]
        parent_key = (fields.get("parent") or {}).get("key")

        if detail == LITE:
            return IssueNode(
                key=key,
                summary=fields.get("summary") or "",
                type=(fields.get("issuetype") or {}).get("name", ""),
                url=self.issue_url(key),
                parent_key=parent_key,
                detail=LITE
            )

        return IssueNode(
            key=key,
            summary=fields.get("summary") or "",
            type=(fields.get("issuetype") or {}).get("name", ""),
            status=(fields.get("status") or {}).get("name", ""),
            account=_account_name(fields.get(self.account_field)),
            url=self.issue_url(key),
            parent_key=parent_key,
            original_estimate=_seconds_to_days(fields.get("timeoriginalestimate")),
            time_spent=_seconds_to_days(fields.get("timespent")),
            time_remaining=_seconds_to_days(fields.get("timeestimate")),
            links=_parse_links(fields.get("issuelinks")),
            detail=FULL
        )

    def _search(self, jql: str, fields: Sequence[str]) -> List[dict]:
        """Run a JQL search and page through every result."""
        all_issues = []
        start_at = 0

        while True:
            data = self._request(
                "/rest/api/3/search",
                params={
                    "jql": jql,
                    "startAt": start_at,
                    "maxResults": PAGE_SIZE,
                    "fields": ",".join(fields)
                }
            )

            total = data.get("total", 0)
            if total > MAX_SEARCH_RESULTS:
                raise QueryTooLargeError(
                    f"Query returned too many results ({total} > {MAX_SEARCH_RESULTS})"
                )

            issues = data.get("issues", [])
            all_issues.extend(issues)

            if len(issues) < PAGE_SIZE or len(all_issues) >= total:
                break

            start_at += PAGE_SIZE
            logger.debug(f"Fetching next {PAGE_SIZE} of {total}, startAt: {start_at}")

        return all_issues

    def _search_keys(self, keys: Sequence[str], jql_template: str,
                     fields: Sequence[str]) -> List[dict]:
        """Run ``jql_template`` once per batch of keys, batches in parallel.

        ``jql_template`` receives the quoted key list as ``{keys}``.
        """
        unique_keys = list(dict.fromkeys(keys))
        if not unique_keys:
            return []

        batches = _chunks(unique_keys, KEY_BATCH_SIZE)
        if len(batches) == 1:
            return self._search(jql_template.format(keys=jql_key_list(batches[0])), fields)

        results = []
        with ThreadPoolExecutor(max_workers=MAX_WORKERS) as executor:
            futures = [
                executor.submit(self._search, jql_template.format(keys=jql_key_list(batch)), fields)
                for batch in batches
            ]
            # Keep batch order so results are deterministic
            for future in futures:
                results.extend(future.result())
        return results

    def projects(self) -> List[Project]:
        all_projects = []
        start_at = 0
        max_results = 50

        while True:
            data = self._request(
                "/rest/api/3/project/search",
                params={"startAt": start_at, "maxResults": max_results}
            )
            values = data.get("values", [])
            all_projects.extend(values)

            if data.get("isLast", True) or len(values) < max_results:
                break

            start_at += max_results

        return [
            Project(id=str(project.get("id", "")), key=project["key"],
                    name=project.get("name", ""))
            for project in all_projects
        ]

    def query_issues(self, jql: str) -> List[IssueNode]:
        return [self.parse_issue(raw) for raw in self._search(jql, self.full_fields)]

    def query_issues_lite(self, jql: str) -> List[IssueNode]:
        return [self.parse_issue(raw, LITE) for raw in self._search(jql, LITE_FIELDS)]

    def children_of(self, key: str) -> List[IssueNode]:
        raw_children = self._search(f'parent = "{key}" ORDER BY created ASC', self.full_fields)
        return [self.parse_issue(raw) for raw in raw_children]

    def children_of_many(self, keys: Sequence[str]) -> List[ChildLink]:
        logger.info(f"Fetching all children for {len(keys)} parent issues")
        raw_children = self._search_keys(keys, "parent in ({keys}) ORDER BY created ASC", ["parent"])

        links = []
        for raw in raw_children:
            parent = (raw.get("fields") or {}).get("parent") or {}
            if parent.get("key"):
                links.append(ChildLink(parent_key=parent["key"], child_key=raw["key"]))
        return links

    def details_of_many(self, keys: Sequence[str],
                        fields: Optional[Sequence[str]] = None) -> List[IssueNode]:
        fields = list(fields) if fields else self.full_fields
        raw_issues = self._search_keys(keys, "key in ({keys})", fields)
        return [self.parse_issue(raw) for raw in raw_issues]

    def issues_by_keys(self, keys: Sequence[str]) -> List[IssueNode]:
        return self.details_of_many(keys)

    def parent_of_many(self, keys: Sequence[str]) -> Dict[str, Optional[str]]:
        parents = {key: None for key in keys}
        for raw in self._search_keys(keys, "key in ({keys})", ["parent"]):
            parent = (raw.get("fields") or {}).get("parent") or {}
            parents[raw["key"]] = parent.get("key")
        return parents
