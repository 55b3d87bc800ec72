# lineage.py
"""
Graph operations over the prompt version DAG: ancestry walks, common
ancestors, merge analysis and branch merges.

Each call loads the agent's versions and edges into an arena keyed by
version id and walks it with explicit visited sets.
"""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from prompt_release.db.services import VersionStore
from prompt_release.db.versions import VersionDAO, version_dao
from prompt_release.diff import content_conflicts, content_line_equal, diff_prompt_content
from prompt_release.errors import (
    DataIntegrityError,
    MergeConflictError,
    NotFound,
    ValidationError,
)
from prompt_release.models import Branch, LineageNode, MergeAnalysis, PromptContent, PromptVersion, utcnow

logger = logging.getLogger(__name__)


def _recency_key(version: PromptVersion):
    return (version.created_at, version.version_number, version.id)


@dataclass
class VersionGraph:
    versions: Dict[str, PromptVersion]
    parents: Dict[str, List[str]] = field(default_factory=dict)
    children: Dict[str, List[str]] = field(default_factory=dict)

    @classmethod
    def load(cls, dao: VersionDAO, agent_id: str) -> "VersionGraph":
        versions = {v.id: v for v in dao.list_agent_versions(agent_id)}
        graph = cls(versions=versions)
        edges = sorted(dao.list_agent_edges(agent_id), key=lambda e: (e[1], e[2]))
        for parent_id, child_id, _position in edges:
            if parent_id not in versions or child_id not in versions:
                raise DataIntegrityError(
                    "Lineage edge references a version outside the agent",
                    parent_id=parent_id,
                    child_id=child_id,
                )
            graph.parents.setdefault(child_id, []).append(parent_id)
            graph.children.setdefault(parent_id, []).append(child_id)
        for child_ids in graph.children.values():
            child_ids.sort(key=lambda vid: _recency_key(versions[vid]))
        return graph

    def require(self, version_id: str) -> PromptVersion:
        version = self.versions.get(version_id)
        if version is None:
            raise NotFound(f"Prompt version {version_id} not found", version_id=version_id)
        return version

    def assert_acyclic(self, start: str, next_fn: Callable[[str], List[str]]) -> None:
        """Three-colour DFS over everything reachable from start."""
        grey, black = 1, 2
        colour: Dict[str, int] = {start: grey}
        stack = [(start, iter(next_fn(start)))]
        while stack:
            node, neighbours = stack[-1]
            advanced = False
            for nxt in neighbours:
                state = colour.get(nxt)
                if state == grey:
                    raise DataIntegrityError(
                        "Cycle detected in version lineage",
                        version_id=nxt,
                    )
                if state is None:
                    colour[nxt] = grey
                    stack.append((nxt, iter(next_fn(nxt))))
                    advanced = True
                    break
            if not advanced:
                colour[node] = black
                stack.pop()

    def walk(self, start: str, next_fn: Callable[[str], List[str]], max_depth: Optional[int] = None) -> Dict[str, int]:
        """Breadth-first distances from start, excluding start itself."""
        self.assert_acyclic(start, next_fn)
        distances: Dict[str, int] = {}
        visited = {start}
        queue = deque([(start, 0)])
        while queue:
            node, depth = queue.popleft()
            if max_depth is not None and depth >= max_depth:
                continue
            for nxt in next_fn(node):
                if nxt in visited:
                    continue
                visited.add(nxt)
                distances[nxt] = depth + 1
                queue.append((nxt, depth + 1))
        return distances

    def parents_of(self, version_id: str) -> List[str]:
        return self.parents.get(version_id, [])

    def children_of(self, version_id: str) -> List[str]:
        return self.children.get(version_id, [])

    def ancestors(self, version_id: str, max_depth: Optional[int] = None) -> Dict[str, int]:
        return self.walk(version_id, self.parents_of, max_depth)

    def descendants(self, version_id: str, max_depth: Optional[int] = None) -> Dict[str, int]:
        return self.walk(version_id, self.children_of, max_depth)

    def is_ancestor(self, ancestor_id: str, version_id: str) -> bool:
        return ancestor_id == version_id or ancestor_id in self.ancestors(version_id)

    def common_ancestor(self, a: str, b: str) -> Optional[PromptVersion]:
        """
        Lowest common ancestor of a and b (either may be the answer itself).

        Several lowest candidates appear after crossover merges; the most
        recently created one wins, then the highest version number, then id.
        """
        common = (set(self.ancestors(a)) | {a}) & (set(self.ancestors(b)) | {b})
        if not common:
            return None
        lowest = [
            vid for vid in common
            if not any(vid != other and vid in self.ancestors(other) for other in common)
        ]
        return max((self.versions[vid] for vid in lowest), key=_recency_key)


class LineageEngine:
    def __init__(self, db_path: str, store: Optional[VersionStore] = None):
        self.db_path = db_path
        self.store = store or VersionStore(db_path)

    def _graph_for(self, dao: VersionDAO, version_id: str) -> VersionGraph:
        version = dao.get_version(version_id)
        if version is None:
            raise NotFound(f"Prompt version {version_id} not found", version_id=version_id)
        return VersionGraph.load(dao, version.agent_id)

    def _nodes(self, graph: VersionGraph, distances: Dict[str, int], relation: str) -> List[LineageNode]:
        return [
            LineageNode(version=graph.versions[vid], distance=dist, relation=relation)
            for vid, dist in sorted(distances.items(), key=lambda item: (item[1], _recency_key(graph.versions[item[0]])))
        ]

    # -----------------------
    # Walks
    # -----------------------

    def get_ancestors(self, version_id: str, max_depth: Optional[int] = None) -> List[LineageNode]:
        """Versions reachable through parent edges, nearest first."""
        if max_depth is not None and max_depth < 0:
            raise ValidationError("max_depth must be >= 0", max_depth=max_depth)
        graph = self._graph_for(VersionDAO(self.db_path), version_id)
        return self._nodes(graph, graph.ancestors(version_id, max_depth), "ancestor")

    def get_descendants(self, version_id: str, max_depth: Optional[int] = None) -> List[LineageNode]:
        if max_depth is not None and max_depth < 0:
            raise ValidationError("max_depth must be >= 0", max_depth=max_depth)
        graph = self._graph_for(VersionDAO(self.db_path), version_id)
        return self._nodes(graph, graph.descendants(version_id, max_depth), "descendant")

    def get_lineage(self, version_id: str) -> List[LineageNode]:
        """Ancestors (farthest first), the version itself, then descendants (nearest first)."""
        graph = self._graph_for(VersionDAO(self.db_path), version_id)
        ancestors = self._nodes(graph, graph.ancestors(version_id), "ancestor")
        descendants = self._nodes(graph, graph.descendants(version_id), "descendant")
        me = LineageNode(version=graph.versions[version_id], distance=0, relation="self")
        return list(reversed(ancestors)) + [me] + descendants

    def find_common_ancestor(self, version_a: str, version_b: str) -> Optional[PromptVersion]:
        dao = VersionDAO(self.db_path)
        graph = self._graph_for(dao, version_a)
        b = graph.versions.get(version_b)
        if b is None:
            if dao.get_version(version_b) is None:
                raise NotFound(f"Prompt version {version_b} not found", version_id=version_b)
            # different agents never share history
            return None
        return graph.common_ancestor(version_a, version_b)

    # -----------------------
    # Merge
    # -----------------------

    def _branches(self, dao: VersionDAO, source_branch_id: str, target_branch_id: str):
        if source_branch_id == target_branch_id:
            raise ValidationError("Cannot merge a branch into itself", branch_id=source_branch_id)
        branches = []
        for branch_id in (source_branch_id, target_branch_id):
            branch = dao.get_branch(branch_id)
            if branch is None or branch.deleted_at is not None:
                raise NotFound(f"Branch {branch_id} not found", branch_id=branch_id)
            branches.append(branch)
        source, target = branches
        if source.agent_id != target.agent_id:
            raise ValidationError(
                "Branches belong to different agents",
                source_branch_id=source.id,
                target_branch_id=target.id,
            )
        return source, target

    def _analyze(self, dao: VersionDAO, source: Branch, target: Branch) -> MergeAnalysis:
        source_head = dao.latest_version(source.id)
        target_head = dao.latest_version(target.id)

        if source_head is None:
            return MergeAnalysis(False, False, [], None, target_head, None, reason="Source branch has no versions")
        if target_head is None:
            return MergeAnalysis(True, True, [], source_head, None, None, reason="Target branch is empty")

        graph = VersionGraph.load(dao, source.agent_id)
        ancestor = graph.common_ancestor(source_head.id, target_head.id)

        if graph.is_ancestor(target_head.id, source_head.id) or graph.is_ancestor(source_head.id, target_head.id):
            return MergeAnalysis(True, True, [], source_head, target_head, ancestor, reason="Fast-forward")

        if content_line_equal(source_head.content, target_head.content):
            return MergeAnalysis(True, False, [], source_head, target_head, ancestor, reason="Heads have identical content")

        base = ancestor.content if ancestor else PromptContent()
        conflicts = content_conflicts(base, source_head.content, target_head.content)
        if conflicts:
            return MergeAnalysis(
                False, False, conflicts, source_head, target_head, ancestor,
                reason="Both branches modified the same content",
            )
        return MergeAnalysis(True, False, [], source_head, target_head, ancestor, reason="No overlapping changes")

    def can_merge(self, source_branch_id: str, target_branch_id: str) -> MergeAnalysis:
        """Decide whether source can merge into target. Never writes."""
        dao = VersionDAO(self.db_path)
        source, target = self._branches(dao, source_branch_id, target_branch_id)
        return self._analyze(dao, source, target)

    def merge_branch(self, source_branch_id: str, target_branch_id: str, approved_by: str) -> PromptVersion:
        """
        Fold source into target as a new version whose parents are both heads.

        Fast-forwards onto an older target take the source content verbatim;
        every other merge keeps the target content.
        """
        if not approved_by:
            raise ValidationError("approved_by is required")

        with version_dao(self.db_path, immediate=True) as dao:
            source, target = self._branches(dao, source_branch_id, target_branch_id)
            analysis = self._analyze(dao, source, target)
            if analysis.conflicts:
                raise MergeConflictError(
                    f"Cannot merge '{source.name}' into '{target.name}': conflicting changes",
                    conflicts=analysis.conflicts,
                    source_branch_id=source.id,
                    target_branch_id=target.id,
                )
            if not analysis.can_merge:
                raise ValidationError(analysis.reason, source_branch_id=source.id)

            source_head = analysis.source_head
            target_head = analysis.target_head
            parents = [source_head.id] + ([target_head.id] if target_head else [])

            take_source = target_head is None or (
                analysis.fast_forward
                and analysis.common_ancestor is not None
                and analysis.common_ancestor.id == target_head.id
            )
            content = source_head.content if take_source else target_head.content

            merged = self.store._create_version(
                dao,
                target.agent_id,
                target.id,
                content,
                parents,
                approved_by,
                mutation_type="merge",
                mutation_details={
                    "type": "merge",
                    "source_branch": source.name,
                    "target_branch": target.name,
                    "approved_by": approved_by,
                },
            )
            dao.mark_branch_merged(source.id, target.id, utcnow())

        logger.info(
            "Merged branch %s into %s as version %s (fast_forward=%s)",
            source.name,
            target.name,
            merged.id,
            analysis.fast_forward,
        )
        return merged

    # pure helper exposed alongside the graph operations
    diff_prompt_content = staticmethod(diff_prompt_content)
