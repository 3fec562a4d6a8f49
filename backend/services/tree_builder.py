"""Batched, level-order retrieval of issue hierarchies.

Fetching a hierarchy one issue at a time costs one request per node. The
builder instead asks the data source for the children of a whole level at
once, so a tree costs one request per level plus a single request for the
field details of every node not already cached.
"""

import logging
from dataclasses import replace
from typing import Dict, List, Optional

from services.cache import TTLCache
from services.data_source import IssueDataSource
from services.errors import DataSourceError, NotFoundError
from services.issues import IssueNode
from services.progress import NullProgressSink, ProgressSink

logger = logging.getLogger(__name__)

MAX_LEVELS = 10


class TreeBuilder:
    """Builds and caches full issue trees rooted at a given key."""

    def __init__(self, data_source: IssueDataSource, tree_cache: TTLCache,
                 issue_cache: TTLCache, max_levels: int = MAX_LEVELS):
        self.data_source = data_source
        self.tree_cache = tree_cache
        self.issue_cache = issue_cache
        self.max_levels = max_levels

    def cached_tree(self, root_key: str) -> Optional[IssueNode]:
        tree, found = self.tree_cache.get(root_key)
        return tree if found else None

    def build_tree(self, root_key: str, sink: Optional[ProgressSink] = None,
                   refresh: bool = False) -> IssueNode:
        """Return the full tree under ``root_key``, from cache when possible.

        If the batched children query fails the builder falls back to the
        root and its immediate children only. That shallow tree is returned
        but not cached. Raises ``NotFoundError`` when the root itself does
        not exist and ``DataSourceError`` when it cannot be fetched.
        """
        sink = sink or NullProgressSink()

        if not refresh:
            cached = self.cached_tree(root_key)
            if cached is not None:
                logger.info(f"Using cached tree for {root_key}")
                sink.processing("cache_hit", f"Loaded {root_key} from cache")
                return cached

        self.tree_cache.cleanup()
        self.issue_cache.cleanup()

        try:
            children_by_parent, keys = self._collect_hierarchy(root_key, sink)
            details = self._fetch_details(keys, sink)
        except DataSourceError as e:
            logger.warning(f"Batched fetch failed for {root_key}, "
                           f"falling back to immediate children: {e}")
            sink.processing("fallback", f"Batched fetch failed, loading immediate children of {root_key}")
            return self._build_shallow(root_key)

        if root_key not in details:
            raise NotFoundError(f"Issue {root_key} not found")

        sink.processing("assembling", f"Assembling tree of {len(keys)} issues", totalIssues=len(keys))
        tree = self._assemble(root_key, children_by_parent, details, frozenset())
        self.tree_cache.set(root_key, tree)
        logger.info(f"Built tree for {root_key} with {len(keys)} issues")
        return tree

    def _collect_hierarchy(self, root_key: str, sink: ProgressSink):
        """Expand the hierarchy level by level.

        Returns the parent -> child keys map and every key seen, root first.
        """
        children_by_parent = {}
        seen = {root_key}
        ordered_keys = [root_key]
        frontier = [root_key]
        level = 0

        while frontier:
            if level >= self.max_levels:
                logger.warning(f"Reached maximum depth ({self.max_levels}) expanding {root_key}; "
                               f"{len(frontier)} issues left unexpanded")
                break

            level += 1
            sink.processing(
                "fetching_children",
                f"Fetching level {level} children for {len(frontier)} issues",
                currentLevel=level, currentIssues=len(frontier), totalIssues=len(seen)
            )
            links = self.data_source.children_of_many(frontier)

            next_frontier = []
            for link in links:
                siblings = children_by_parent.setdefault(link.parent_key, [])
                if link.child_key in siblings:
                    continue
                siblings.append(link.child_key)

                if link.child_key in seen:
                    logger.warning(f"{link.child_key} reached again via {link.parent_key}; "
                                   f"possible cycle under {root_key}")
                    continue
                seen.add(link.child_key)
                ordered_keys.append(link.child_key)
                next_frontier.append(link.child_key)

            logger.debug(f"Level {level}: {len(links)} child links, {len(next_frontier)} new issues")
            frontier = next_frontier

        return children_by_parent, ordered_keys

    def _fetch_details(self, keys: List[str], sink: ProgressSink) -> Dict[str, IssueNode]:
        """Field details for every key, only fetching those not cached."""
        details = {}
        missing = []
        for key in keys:
            issue, found = self.issue_cache.get(key)
            if found:
                details[key] = issue
            else:
                missing.append(key)

        if missing:
            sink.processing(
                "fetching_details",
                f"Fetching details for {len(missing)} of {len(keys)} issues",
                currentIssues=len(missing), totalIssues=len(keys)
            )
            for issue in self.data_source.details_of_many(missing):
                detail = replace(issue, children=(), child_count=0)
                self.issue_cache.set(issue.key, detail)
                details[issue.key] = detail

        return details

    def _assemble(self, key: str, children_by_parent: Dict[str, List[str]],
                  details: Dict[str, IssueNode], path: frozenset) -> IssueNode:
        node = details.get(key)
        if node is None:
            logger.warning(f"No details returned for {key}; using key only")
            node = IssueNode(key=key)

        path = path | {key}
        children = tuple(
            self._assemble(child_key, children_by_parent, details, path)
            for child_key in children_by_parent.get(key, [])
            if child_key not in path
        )
        return replace(node, children=children, child_count=len(children))

    def _build_shallow(self, root_key: str) -> IssueNode:
        root, found = self.issue_cache.get(root_key)
        if not found:
            matches = [issue for issue in self.data_source.details_of_many([root_key])
                       if issue.key == root_key]
            if not matches:
                raise NotFoundError(f"Issue {root_key} not found")
            root = matches[0]

        try:
            children = self.data_source.children_of(root_key)
        except DataSourceError as e:
            logger.error(f"Error fetching children for issue {root_key}: {e}")
            children = []

        children = tuple(replace(child, children=(), child_count=0) for child in children)
        return replace(root, children=children, child_count=len(children))
