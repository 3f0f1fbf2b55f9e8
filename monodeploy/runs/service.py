"""Run orchestration service.

This module provides the high-level run API:
- execute_run(): resolve, build stale images, bind and apply manifests
- Bounded parallel image builds that respect image dependencies
- Skip propagation from failed targets to their dependents
- RunSummary collection for CLI output and exit codes

Structural errors (cycles, unknown targets) are raised before any build
starts. Per-target failures are collected, never raised.
"""

from __future__ import annotations

import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, computed_field

from monodeploy.builds.service import BuildFailure
from monodeploy.manifests.binder import UnresolvedImageError, bind
from monodeploy.resolver import resolve
from monodeploy.types import BuildResult, ExitCode, TargetKind, TargetStatus

if TYPE_CHECKING:
    from collections.abc import Iterable

    from monodeploy.apply.engine import ApplyEngine
    from monodeploy.builds.cache import CacheStore
    from monodeploy.builds.service import ImageBuildAdapter
    from monodeploy.graph.models import Target, TargetGraph

logger = logging.getLogger(__name__)


class TargetOutcome(BaseModel):
    """Outcome of one target within a run.

    Attributes:
        target_id: Target label.
        kind: Target kind.
        status: Final status.
        reference: Image reference, manifest digest or group fingerprint.
        error: Failure cause (failed targets).
        code: Machine-readable error code (failed targets).
        skipped_because: Failed target that caused the skip (skipped targets).
    """

    model_config = ConfigDict(extra="forbid")

    target_id: str
    kind: TargetKind
    status: TargetStatus
    reference: str | None = None
    error: str | None = None
    code: str | None = None
    skipped_because: str | None = None


class RunSummary(BaseModel):
    """Result of a build or apply run.

    Attributes:
        order: Targets in scope, in resolve order.
        stale: Stale targets at the start of the run.
        outcomes: Per-target outcomes in resolve order.
        dry_run: Whether manifests were rendered instead of applied.
        rendered: Bound YAML per manifest target (dry runs only).
    """

    model_config = ConfigDict(extra="forbid")

    order: list[str] = Field(default_factory=list)
    stale: list[str] = Field(default_factory=list)
    outcomes: list[TargetOutcome] = Field(default_factory=list)
    dry_run: bool = False
    rendered: dict[str, str] = Field(default_factory=dict)

    def _count(self, *statuses: TargetStatus) -> int:
        return sum(1 for o in self.outcomes if o.status in statuses)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def succeeded(self) -> int:
        """Targets built or applied in this run, or already up to date."""
        return self._count(TargetStatus.SUCCEEDED, TargetStatus.UP_TO_DATE)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def failed(self) -> int:
        """Targets that failed."""
        return self._count(TargetStatus.FAILED)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def skipped(self) -> int:
        """Targets skipped because a dependency failed."""
        return self._count(TargetStatus.SKIPPED)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def partial(self) -> bool:
        """True when some targets succeeded and others failed or were skipped."""
        return self.succeeded > 0 and (self.failed + self.skipped) > 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def exit_code(self) -> int:
        """Process exit code for this run."""
        failed_kinds = {
            o.kind for o in self.outcomes if o.status is TargetStatus.FAILED
        }
        if TargetKind.IMAGE in failed_kinds:
            return ExitCode.BUILD_FAILURE.value
        if failed_kinds:
            return ExitCode.APPLY_FAILURE.value
        return ExitCode.OK.value

    def outcome_for(self, target_id: str) -> TargetOutcome | None:
        """Return the outcome of a target, or None if it was not in scope."""
        for outcome in self.outcomes:
            if outcome.target_id == target_id:
                return outcome
        return None


class _RunState:
    """Mutable bookkeeping of one run."""

    def __init__(self) -> None:
        self.results: dict[str, BuildResult] = {}
        self.outcomes: dict[str, TargetOutcome] = {}
        # Target id -> failed target at the root of the skip
        self.blocked_by: dict[str, str] = {}

    def record(
        self, target: Target, status: TargetStatus, **fields: str | None
    ) -> None:
        self.outcomes[target.id] = TargetOutcome(
            target_id=target.id, kind=target.kind, status=status, **fields
        )

    def fail(self, target: Target, error: str, code: str) -> None:
        self.blocked_by[target.id] = target.id
        self.record(target, TargetStatus.FAILED, error=error, code=code)

    def skip_if_blocked(self, target: Target, deps: Iterable[str]) -> bool:
        """Mark target skipped if any dependency failed or was skipped."""
        for dep in deps:
            if dep in self.blocked_by:
                root = self.blocked_by[dep]
                self.blocked_by[target.id] = root
                self.record(target, TargetStatus.SKIPPED, skipped_because=root)
                logger.warning("Skipping %s: %s failed", target.id, root)
                return True
        return False


def _build_images(
    graph: TargetGraph,
    image_ids: list[str],
    stale: set[str],
    cache_store: CacheStore,
    adapter: ImageBuildAdapter,
    state: _RunState,
    force: bool,
    max_workers: int,
) -> None:
    """Build stale images in parallel; load fresh ones from the cache."""
    pending: list[str] = []
    for tid in image_ids:
        target = graph.get(tid)
        cached = None if tid in stale else cache_store.get(tid, target.fingerprint)
        if cached is not None:
            state.results[tid] = cached
            state.record(target, TargetStatus.UP_TO_DATE, reference=cached.reference)
        else:
            pending.append(tid)

    if not pending:
        return

    logger.info("Building %d image(s) with %d worker(s)", len(pending), max_workers)
    futures: dict[Future[BuildResult | BuildFailure], str] = {}
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        while pending or futures:
            # Pending stays in resolve order, so skips cascade in one pass
            for tid in list(pending):
                target = graph.get(tid)
                deps = graph.dependencies_of(tid)
                if state.skip_if_blocked(target, deps):
                    pending.remove(tid)
                elif all(dep in state.results for dep in deps):
                    pending.remove(tid)
                    future = executor.submit(adapter.build, target, cache_store, force)
                    futures[future] = tid

            if not futures:
                break

            done, _ = wait(futures, return_when=FIRST_COMPLETED)
            for future in done:
                tid = futures.pop(future)
                target = graph.get(tid)
                outcome = future.result()
                if isinstance(outcome, BuildFailure):
                    state.fail(target, outcome.cause, outcome.code)
                else:
                    state.results[tid] = outcome
                    state.record(
                        target, TargetStatus.SUCCEEDED, reference=outcome.reference
                    )


def _deploy(
    target: Target,
    stale: set[str],
    cache_store: CacheStore,
    engine: ApplyEngine | None,
    state: _RunState,
    summary: RunSummary,
) -> None:
    """Bind and apply one manifest, or complete one group."""
    if target.id not in stale:
        cached = cache_store.get(target.id, target.fingerprint)
        reference = cached.reference if cached is not None else None
        state.record(target, TargetStatus.UP_TO_DATE, reference=reference)
        return

    if target.kind is TargetKind.GROUP:
        reference = target.fingerprint
    else:
        try:
            resolved = bind(target, state.results)
        except UnresolvedImageError as e:
            logger.error("Cannot bind %s: %s", target.id, e)
            state.fail(target, str(e), e.code)
            return
        reference = resolved.digest

        if summary.dry_run:
            summary.rendered[target.id] = resolved.to_yaml()
        else:
            if engine is None:
                raise ValueError("An apply engine is required unless dry_run is set")
            error = engine.apply(resolved)
            if error is not None:
                state.fail(target, error.cause, error.code)
                return

    if not summary.dry_run:
        cache_store.put(
            target.id,
            target.fingerprint,
            BuildResult(
                target_id=target.id,
                reference=reference,
                built_at=datetime.now(timezone.utc),
            ),
        )
    state.record(target, TargetStatus.SUCCEEDED, reference=reference)


def execute_run(
    graph: TargetGraph,
    cache_store: CacheStore,
    adapter: ImageBuildAdapter,
    engine: ApplyEngine | None = None,
    targets: Iterable[str] | None = None,
    apply: bool = True,
    force: bool = False,
    dry_run: bool = False,
    max_workers: int = 2,
) -> RunSummary:
    """Build and (optionally) apply a graph or the closure of some targets.

    Args:
        graph: Loaded target graph.
        cache_store: Store of previous results.
        adapter: Image build adapter.
        engine: Apply engine (required when applying without dry_run).
        targets: Requested targets; the whole graph if None.
        apply: Bind and apply manifests after building; images only if False.
        force: Treat every target in scope as stale.
        dry_run: Render bound manifests instead of applying them.
        max_workers: Maximum concurrent image builds.

    Returns:
        RunSummary with one outcome per processed target.

    Raises:
        CycleError: If the graph in scope contains a cycle.
        UnknownTargetError: If a requested target does not exist.
    """
    if targets is not None:
        graph = graph.subgraph(targets)

    resolution = resolve(graph, cache_store)
    stale = set(resolution.order) if force else set(resolution.stale)

    order = resolution.order
    if not apply:
        order = [tid for tid in order if graph.get(tid).kind is TargetKind.IMAGE]

    summary = RunSummary(
        order=order,
        stale=[tid for tid in order if tid in stale],
        dry_run=dry_run,
    )
    state = _RunState()

    image_ids = [tid for tid in order if graph.get(tid).kind is TargetKind.IMAGE]
    _build_images(
        graph, image_ids, stale, cache_store, adapter, state, force, max_workers
    )

    if apply:
        for tid in order:
            target = graph.get(tid)
            if target.kind is TargetKind.IMAGE:
                continue
            if state.skip_if_blocked(target, graph.dependencies_of(tid)):
                continue
            _deploy(target, stale, cache_store, engine, state, summary)

    summary.outcomes = [state.outcomes[tid] for tid in order if tid in state.outcomes]
    logger.info(
        "Run finished: %d succeeded, %d failed, %d skipped",
        summary.succeeded,
        summary.failed,
        summary.skipped,
    )
    return summary


__all__ = ["RunSummary", "TargetOutcome", "execute_run"]
