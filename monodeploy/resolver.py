"""Build order and staleness resolution.

This module handles:
- Cycle detection over the target graph
- Deterministic topological ordering of targets
- Computing which targets must be rebuilt or re-applied

Resolution has no side effects; it only reads the graph and the cache store.
"""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from monodeploy.graph.models import TargetGraph, UnknownTargetError
from monodeploy.manifests.binder import UnresolvedImageError, bind

if TYPE_CHECKING:
    from monodeploy.builds.cache import CacheStore
    from monodeploy.graph.models import Target
    from monodeploy.types import BuildResult

logger = logging.getLogger(__name__)


class CycleError(Exception):
    """Raised when the target graph contains a dependency cycle.

    Attributes:
        path: Targets on the cycle; the first entry is repeated at the end.
    """

    def __init__(self, path: list[str], code: str = "dependency_cycle") -> None:
        super().__init__(f"Dependency cycle: {' -> '.join(path)}")
        self.path = path
        self.code = code


class _Visit(Enum):
    IN_PROGRESS = 1
    DONE = 2


@dataclass
class Resolution:
    """Result of resolving a graph against the cache.

    Attributes:
        order: All target ids in build/apply order.
        stale: Stale target ids, in the same order.
    """

    order: list[str]
    stale: list[str] = field(default_factory=list)

    def is_stale(self, target_id: str) -> bool:
        """Check whether a target must be rebuilt or re-applied."""
        return target_id in set(self.stale)


def check_acyclic(graph: TargetGraph) -> None:
    """Verify the graph is acyclic with an iterative depth-first traversal.

    Raises:
        CycleError: Naming every target on the first cycle found.
        UnknownTargetError: If a dependency is not in the graph.
    """
    state: dict[str, _Visit] = {}

    for root in graph.ids():
        if root in state:
            continue
        state[root] = _Visit.IN_PROGRESS
        path = [root]
        stack = [iter(sorted(graph.dependencies_of(root)))]

        while stack:
            node = path[-1]
            for dep in stack[-1]:
                if dep not in graph:
                    raise UnknownTargetError(dep, referenced_by=node)
                visit = state.get(dep)
                if visit is _Visit.DONE:
                    continue
                if visit is _Visit.IN_PROGRESS:
                    cycle = path[path.index(dep) :] + [dep]
                    raise CycleError(cycle)
                state[dep] = _Visit.IN_PROGRESS
                path.append(dep)
                stack.append(iter(sorted(graph.dependencies_of(dep))))
                break
            else:
                stack.pop()
                state[path.pop()] = _Visit.DONE


def resolve_order(graph: TargetGraph) -> list[str]:
    """Compute a deterministic build/apply order.

    Every target appears after all of its dependencies. Among targets whose
    dependencies are all resolved, the lexicographically smallest id is
    emitted first.

    Args:
        graph: Target graph.

    Returns:
        List of all target ids in order.

    Raises:
        CycleError: If the graph contains a cycle.
        UnknownTargetError: If a dependency is not in the graph.
    """
    check_acyclic(graph)

    remaining = {tid: len(set(graph.dependencies_of(tid))) for tid in graph.ids()}
    dependents: dict[str, list[str]] = {tid: [] for tid in remaining}
    for tid in remaining:
        for dep in set(graph.dependencies_of(tid)):
            dependents[dep].append(tid)

    ready = [tid for tid, count in remaining.items() if count == 0]
    heapq.heapify(ready)
    order: list[str] = []
    while ready:
        tid = heapq.heappop(ready)
        order.append(tid)
        for dependent in dependents[tid]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                heapq.heappush(ready, dependent)

    return order


def _bound_images_changed(
    graph: TargetGraph,
    target: Target,
    cached: BuildResult,
    cache_store: CacheStore,
) -> bool:
    """Return True if a manifest would now bind to different image references.

    The cached reference of a manifest is the digest of its bound documents.
    Images rebuilt in another run change that digest without changing the
    manifest's own fingerprint.
    """
    if target.manifest is None or not target.manifest.images:
        return False
    results: dict[str, BuildResult] = {}
    for _, image_id in target.manifest.images:
        result = cache_store.get(image_id, graph.get(image_id).fingerprint)
        if result is None:
            return True
        results[image_id] = result
    try:
        return bind(target, results).digest != cached.reference
    except UnresolvedImageError:
        return True


def stale_targets(
    graph: TargetGraph,
    cache_store: CacheStore,
    order: list[str] | None = None,
) -> list[str]:
    """Determine which targets must be rebuilt or re-applied.

    A target is stale when the cache store has no entry for its current
    fingerprint, or when any of its dependencies is stale. A manifest is
    also stale when the cached references of its images no longer bind to
    the documents it last applied.

    Args:
        graph: Target graph.
        cache_store: Store holding the last successful result per target.
        order: Precomputed resolve_order(graph), if available.

    Returns:
        Stale target ids in resolve order.
    """
    if order is None:
        order = resolve_order(graph)

    stale: set[str] = set()
    for tid in order:
        target = graph.get(tid)
        if any(dep in stale for dep in graph.dependencies_of(tid)):
            stale.add(tid)
            continue
        cached = cache_store.get(tid, target.fingerprint)
        if cached is None:
            logger.debug(
                "Stale: %s (no cache entry for %s)", tid, target.fingerprint[:23]
            )
            stale.add(tid)
        elif _bound_images_changed(graph, target, cached, cache_store):
            logger.debug("Stale: %s (bound image references changed)", tid)
            stale.add(tid)

    return [tid for tid in order if tid in stale]


def resolve(graph: TargetGraph, cache_store: CacheStore) -> Resolution:
    """Compute order and staleness in one call.

    Raises:
        CycleError: If the graph contains a cycle.
    """
    order = resolve_order(graph)
    stale = stale_targets(graph, cache_store, order=order)
    logger.info("Resolved %d target(s), %d stale", len(order), len(stale))
    return Resolution(order=order, stale=stale)


__all__ = [
    "CycleError",
    "Resolution",
    "check_acyclic",
    "resolve",
    "resolve_order",
    "stale_targets",
]
