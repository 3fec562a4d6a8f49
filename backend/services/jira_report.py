"""Workstream report service: the entry point used by the API layer."""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import replace
from typing import List, Optional

from services.aggregation import aggregate, annotate, project_totals
from services.cache import DEFAULT_MAX_CACHE_SIZE, ONE_WEEK_SECONDS, TTLCache
from services.data_source import IssueDataSource
from services.errors import NotFoundError, ReportError
from services.issues import IssueNode, OrphanReport, Project, ProjectRecord
from services.orphan_detector import (
    ORPHAN_CACHE_MAX_SIZE, ORPHAN_CACHE_TTL_SECONDS, OrphanDetector,
    find_account_mismatches, find_orphans
)
from services.progress import NullProgressSink, ProgressSink
from services.tree_builder import TreeBuilder

logger = logging.getLogger(__name__)

REQUEST_ALL_TIMEOUT_SECONDS = 5 * 60

DEFAULT_CONFIG = {
    "workstreamIssueType": "Workstream",
    "accountField": "customfield_10026",
    "cacheTtlSeconds": ONE_WEEK_SECONDS,
    "maxCacheSize": DEFAULT_MAX_CACHE_SIZE,
    "issueCacheMaxSize": 10000,
    "orphanCacheTtlSeconds": ORPHAN_CACHE_TTL_SECONDS,
    "orphanCacheMaxSize": ORPHAN_CACHE_MAX_SIZE,
    "requestAllTimeoutSeconds": REQUEST_ALL_TIMEOUT_SECONDS,
    "orphanCheckPrefixes": ["LEN"],
    "validParentPatterns": ["^HPD", "^D[0-9]+"],
}


class ReportCaches:
    """All caches for one Jira server.

    Created once per server and shared across requests, so they outlive the
    per-request service and data source objects.
    """

    def __init__(self, config: Optional[dict] = None, clock=time.time):
        config = {**DEFAULT_CONFIG, **(config or {})}
        ttl = config["cacheTtlSeconds"]
        max_size = config["maxCacheSize"]

        self.projects = TTLCache("projects", ttl, max_size, clock)
        self.project_records = TTLCache("project", ttl, max_size, clock)
        self.workstreams = TTLCache("workstream", ttl, max_size, clock)
        self.issues = TTLCache("issue", ttl, config["issueCacheMaxSize"], clock)
        self.orphans = TTLCache("orphan", config["orphanCacheTtlSeconds"],
                                config["orphanCacheMaxSize"], clock)

    def all(self) -> List[TTLCache]:
        return [self.projects, self.project_records, self.workstreams,
                self.issues, self.orphans]

    def clear(self) -> None:
        for cache in self.all():
            cache.clear()

    def stats(self) -> dict:
        return {cache.name: cache.stats() for cache in self.all()}


def workstreams_jql(project_key: str, issue_type: str) -> str:
    return f'project = "{project_key}" AND issuetype = "{issue_type}" ORDER BY key ASC'


def path_to(node: IssueNode, key: str) -> Optional[List[IssueNode]]:
    """Nodes from ``node`` down to ``key``, or None when ``key`` is not below it."""
    if node.key == key:
        return [node]
    for child in node.children:
        path = path_to(child, key)
        if path:
            return [node] + path
    return None


class JiraReportService:
    """Projects, workstream trees, roll-ups and orphan reports."""

    def __init__(self, data_source: IssueDataSource, caches: ReportCaches,
                 config: Optional[dict] = None):
        self.data_source = data_source
        self.caches = caches
        self.config = {**DEFAULT_CONFIG, **(config or {})}
        self.workstream_type = self.config["workstreamIssueType"]
        self.tree_builder = TreeBuilder(data_source, caches.workstreams, caches.issues)
        self.orphan_detector = OrphanDetector(data_source, self.tree_builder, caches.orphans)

    def get_projects(self) -> List[Project]:
        projects, found = self.caches.projects.get("all")
        if found:
            return projects

        projects = self.data_source.projects()
        self.caches.projects.set("all", projects)
        logger.info(f"Loaded {len(projects)} projects")
        return projects

    def _known_project(self, project_key: str) -> Optional[Project]:
        projects, found = self.caches.projects.get("all")
        if not found:
            return None
        return next((p for p in projects if p.key == project_key), None)

    def get_project_workstreams(self, project_key: str) -> List[IssueNode]:
        """Top-level workstreams of a project, without their descendants."""
        record, found = self.caches.project_records.get(project_key)
        if found:
            return list(record.issues)

        issues = self.data_source.query_issues_lite(
            workstreams_jql(project_key, self.workstream_type)
        )
        # Nested workstreams are reached through their parent's tree
        top_level = tuple(issue for issue in issues if not issue.parent_key)

        record = ProjectRecord(project=self._known_project(project_key), issues=top_level)
        self.caches.project_records.set(project_key, record)
        logger.info(f"Loaded {len(top_level)} workstreams for project {project_key}")
        return list(top_level)

    def _is_known_issue(self, key: str) -> bool:
        for _, record in self.caches.project_records.items():
            if record.find_workstream(key) is not None:
                return True
        return self._find_in_cached_trees(key) is not None

    def _find_in_cached_trees(self, key: str) -> Optional[IssueNode]:
        for _, tree in self.caches.workstreams.items():
            node = tree.find(key)
            if node is not None:
                return node
        return None

    def _require_known(self, key: str) -> None:
        if not self._is_known_issue(key):
            raise NotFoundError(
                f"Workstream {key} not found; load its project's workstreams first"
            )

    def get_workstream_tree(self, workstream_key: str, sink: Optional[ProgressSink] = None,
                            refresh: bool = False) -> IssueNode:
        """Full tree under ``workstream_key`` with roll-ups on every node.

        Subtrees of an already built workstream are served from that tree.
        """
        sink = sink or NullProgressSink()
        self._require_known(workstream_key)

        tree = None if refresh else self.tree_builder.cached_tree(workstream_key)
        if tree is None and not refresh:
            tree = self._find_in_cached_trees(workstream_key)
            if tree is not None:
                logger.info(f"Serving {workstream_key} from an enclosing cached tree")
        if tree is None:
            tree = self.tree_builder.build_tree(workstream_key, sink, refresh=refresh)

        return annotate(tree)

    def detect_orphans(self, workstream_key: str,
                       sink: Optional[ProgressSink] = None) -> OrphanReport:
        self._require_known(workstream_key)
        return self.orphan_detector.detect_orphans(workstream_key, sink)

    def orphan_summary(self, report: OrphanReport) -> dict:
        """Serialisable orphan report plus the orphan and mismatch passes."""
        data = report.to_dict()
        data["workstream"] = annotate(report.workstream).to_dict()
        data["orphans"] = find_orphans(
            report.linked_issues_with_ancestors,
            self.config["orphanCheckPrefixes"],
            self.config["validParentPatterns"]
        )
        data["accountMismatches"] = [
            mismatch.to_dict()
            for mismatch in find_account_mismatches(
                self._mismatch_scope(report.workstream), self.workstream_type
            )
        ]
        return data

    def _mismatch_scope(self, root: IssueNode) -> List[IssueNode]:
        """Workstreams to check when the report is rooted at ``root``.

        A root that is not itself a workstream is checked against its nearest
        enclosing workstream in a cached tree, and skipped when none is known.
        """
        if root.type == self.workstream_type:
            return [root]

        for _, tree in self.caches.workstreams.items():
            path = path_to(tree, root.key) or []
            for node in reversed(path[:-1]):
                if node.type == self.workstream_type:
                    return [replace(node, children=(root,))]

        logger.info(f"No enclosing workstream cached for {root.key}; skipping account check")
        return []

    def find_account_mismatches(self, project_key: str) -> list:
        """Mismatches across a project, using full trees where already built."""
        trees = []
        for workstream in self.get_project_workstreams(project_key):
            tree = self.tree_builder.cached_tree(workstream.key)
            trees.append(tree if tree is not None else workstream)
        return find_account_mismatches(trees, self.workstream_type)

    def request_all_workstreams(self, project_key: str, sink: Optional[ProgressSink] = None,
                                timeout: Optional[float] = None) -> dict:
        """Build every workstream of a project one after another.

        Each build gets ``timeout`` seconds. A build that runs over is
        reported as failed but keeps running in the background, and its
        tree is cached when it finishes.
        """
        sink = sink or NullProgressSink()
        timeout = timeout if timeout is not None else self.config["requestAllTimeoutSeconds"]
        workstreams = self.get_project_workstreams(project_key)
        total = len(workstreams)

        results = []
        failed = []
        trees = {}
        for index, workstream in enumerate(workstreams, start=1):
            sink.processing(
                "requesting_workstream",
                f"Requesting: {workstream.key} - {workstream.summary}",
                phaseProgress=index, phaseTotal=total,
                percent=round(index / total * 100) if total else 100
            )

            executor = ThreadPoolExecutor(max_workers=1)
            future = executor.submit(self.tree_builder.build_tree, workstream.key)
            try:
                tree = future.result(timeout=timeout)
            except FutureTimeoutError:
                logger.warning(f"Timed out after {timeout}s loading workstream {workstream.key}")
                failed.append({"key": workstream.key, "error": "Request timeout"})
                continue
            except ReportError as e:
                logger.error(f"Failed to load workstream {workstream.key}: {e}")
                failed.append({"key": workstream.key, "error": str(e)})
                continue
            finally:
                executor.shutdown(wait=False)

            trees[workstream.key] = tree
            rollup = aggregate(tree)
            results.append({
                "key": workstream.key,
                "summary": workstream.summary,
                "childCount": tree.child_count,
                **rollup.to_dict()
            })

        return {
            "workstreams": results,
            "failed": failed,
            "totals": project_totals(workstreams, trees),
        }

    def clear_cache(self) -> None:
        self.caches.clear()
        logger.info("All report caches cleared")

    def cache_stats(self) -> dict:
        return self.caches.stats()
