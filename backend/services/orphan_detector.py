"""Linked-issue ancestry and account consistency checks for workstreams."""

import logging
import re
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional, Sequence

from services.cache import TTLCache
from services.data_source import IssueDataSource
from services.errors import DataSourceError
from services.issues import NO_ACCOUNT, IssueNode, OrphanReport
from services.progress import NullProgressSink, ProgressSink
from services.tree_builder import MAX_LEVELS, TreeBuilder

logger = logging.getLogger(__name__)

ORPHAN_CACHE_TTL_SECONDS = 30 * 60
ORPHAN_CACHE_MAX_SIZE = 50


def extract_linked_issue_keys(tree: IssueNode) -> List[str]:
    """Every linked issue key referenced anywhere in the tree, deduplicated."""
    keys = {}
    for node in tree.walk():
        for link in node.links:
            keys.setdefault(link.linked_issue_key, None)
    return list(keys)


class OrphanDetector:
    """Reconstructs the ancestor chains of the issues a workstream links to."""

    def __init__(self, data_source: IssueDataSource, tree_builder: TreeBuilder,
                 report_cache: TTLCache, max_levels: int = MAX_LEVELS):
        self.data_source = data_source
        self.tree_builder = tree_builder
        self.report_cache = report_cache
        self.max_levels = max_levels

    def detect_orphans(self, workstream_key: str,
                       sink: Optional[ProgressSink] = None) -> OrphanReport:
        sink = sink or NullProgressSink()

        report, found = self.report_cache.get(workstream_key)
        if found:
            logger.info(f"Using cached orphan data for workstream {workstream_key}")
            sink.processing("cache_hit", f"Orphan data for {workstream_key} loaded from cache")
            return report

        logger.info(f"Starting orphan detection for workstream {workstream_key}")
        sink.processing("initializing", f"Starting orphan detection for workstream {workstream_key}",
                        currentPhase="initializing", phaseProgress=0, phaseTotal=3)

        workstream = self.tree_builder.build_tree(workstream_key, sink)

        linked_keys = extract_linked_issue_keys(workstream)
        logger.info(f"Found {len(linked_keys)} linked issue keys under {workstream_key}")
        sink.processing("fetching_linked_issues",
                        f"Fetching {len(linked_keys)} linked issues and building parent trees",
                        currentPhase="fetching_linked_issues", phaseProgress=1, phaseTotal=3,
                        linksProcessed=len(linked_keys))

        linked_issues, complete = self._resolve_chains(linked_keys, sink)

        report = OrphanReport(workstream=workstream, linked_issues_with_ancestors=linked_issues)
        if complete:
            self.report_cache.set(workstream_key, report)
        else:
            logger.warning(f"Some parent lookups failed for {workstream_key}; report not cached")
        logger.info(f"Orphan detection complete for workstream {workstream_key}")
        return report

    def build_ancestor_chains(self, keys: Sequence[str],
                              sink: Optional[ProgressSink] = None) -> List[IssueNode]:
        """Fetch ``keys`` and walk their parents one batched level at a time.

        Each returned issue has ``parent`` set to its parent record (which in
        turn has its own ``parent``), or ``None`` where the chain ends. A
        failed batch ends the chains of every issue in it.
        """
        issues, _ = self._resolve_chains(keys, sink)
        return issues

    def _resolve_chains(self, keys: Sequence[str], sink: Optional[ProgressSink] = None):
        """Like ``build_ancestor_chains``, also returning False if any batch failed."""
        sink = sink or NullProgressSink()
        if not keys:
            return [], True

        # Copies, so parent pointers never leak into records the source owns
        level_issues = [replace(issue, parent=None)
                        for issue in self.data_source.issues_by_keys(keys)]
        by_key = {issue.key: issue for issue in level_issues}
        logger.info(f"Level 0: fetched {len(level_issues)} linked issues")

        level = 0
        complete = True
        while level_issues:
            if level >= self.max_levels:
                logger.warning(f"Reached maximum level depth ({self.max_levels}), "
                               f"{len(level_issues)} chains left unresolved")
                break
            level += 1

            level_keys = [issue.key for issue in level_issues]
            try:
                parent_keys = self.data_source.parent_of_many(level_keys)
            except DataSourceError as e:
                logger.error(f"Error fetching parent relationships for level {level}: {e}")
                parent_keys = {}
                complete = False

            new_parent_keys = []
            for key in level_keys:
                parent_key = parent_keys.get(key)
                if parent_key and parent_key not in by_key and parent_key not in new_parent_keys:
                    new_parent_keys.append(parent_key)

            parents = []
            if new_parent_keys:
                try:
                    parents = [replace(issue, parent=None)
                               for issue in self.data_source.issues_by_keys(new_parent_keys)]
                except DataSourceError as e:
                    logger.error(f"Error fetching level {level} parents: {e}")
                    parent_keys = {}
                    complete = False

            for parent in parents:
                by_key[parent.key] = parent

            for issue in level_issues:
                parent_key = parent_keys.get(issue.key)
                issue.parent = by_key.get(parent_key) if parent_key else None

            logger.debug(f"Level {level}: fetched {len(parents)} parent issues")
            sink.processing("building_parent_trees", f"Level {level}: fetched {len(parents)} parents",
                            currentPhase="building_parent_trees", currentLevel=level,
                            issuesProcessed=len(by_key))
            level_issues = parents

        return [by_key[key] for key in keys if key in by_key], complete


@dataclass(frozen=True)
class AccountMismatch:
    key: str
    summary: str
    url: str
    workstream_key: str
    workstream_name: str
    issue_account: str
    workstream_account: str

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "summary": self.summary,
            "url": self.url,
            "workstreamKey": self.workstream_key,
            "workstreamName": self.workstream_name,
            "issueAccount": self.issue_account,
            "workstreamAccount": self.workstream_account,
        }


def _is_set(account: Optional[str]) -> bool:
    return bool(account) and account != NO_ACCOUNT


def find_account_mismatches(workstreams: Iterable[IssueNode],
                            workstream_type: str = "Workstream") -> List[AccountMismatch]:
    """Issues whose account differs from that of their nearest workstream.

    Each workstream sets the expected account for its descendants until a
    nested workstream overrides it. Workstreams themselves are never
    reported, and unset or "None" accounts on either side never mismatch.
    """
    mismatches = []
    reported = set()

    def check(issue, workstream_key, workstream_name, expected_account):
        if issue.type == workstream_type:
            expected_account = issue.account or NO_ACCOUNT
            workstream_key = issue.key
            workstream_name = issue.summary
        elif (_is_set(issue.account) and _is_set(expected_account)
                and issue.account != expected_account and issue.key not in reported):
            reported.add(issue.key)
            mismatches.append(AccountMismatch(
                key=issue.key,
                summary=issue.summary,
                url=issue.url,
                workstream_key=workstream_key,
                workstream_name=workstream_name,
                issue_account=issue.account,
                workstream_account=expected_account
            ))

        for child in issue.children:
            check(child, workstream_key, workstream_name, expected_account)

    for workstream in workstreams:
        account = workstream.account or NO_ACCOUNT
        for child in workstream.children:
            check(child, workstream.key, workstream.summary, account)

    return mismatches


def find_orphans(linked_issues: Iterable[IssueNode], check_prefixes: Sequence[str],
                 valid_parent_patterns: Sequence[str],
                 max_levels: int = MAX_LEVELS) -> List[dict]:
    """Linked issues with no recognised ancestor.

    Only issues whose key starts with one of ``check_prefixes`` are checked
    (all of them when no prefixes are given).
    An issue is fine when its own key, or any ancestor key within
    ``max_levels``, matches one of ``valid_parent_patterns``.
    """
    patterns = [re.compile(pattern) for pattern in valid_parent_patterns]

    def is_valid(key):
        return any(pattern.match(key) for pattern in patterns)

    orphans = []
    for issue in linked_issues:
        if check_prefixes and not issue.key.startswith(tuple(check_prefixes)):
            continue
        if is_valid(issue.key):
            continue

        ancestors = issue.ancestors(limit=max_levels)
        if any(is_valid(ancestor.key) for ancestor in ancestors):
            continue

        logger.debug(f"Orphan found: {issue.key}")
        orphans.append({
            "key": issue.key,
            "summary": issue.summary,
            "url": issue.url,
            "ancestorKeys": [ancestor.key for ancestor in ancestors],
        })
    return orphans
