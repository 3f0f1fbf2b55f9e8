"""Target and target graph models.

A TargetGraph holds the declared targets of one run and an adjacency index
of their dependencies. Targets never reference each other directly; all
dependency queries go through the graph.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from monodeploy.graph.labels import PUBLIC
from monodeploy.types import TargetKind


class DuplicateTargetError(Exception):
    """Raised when a target identifier is declared twice."""

    def __init__(self, target_id: str, code: str = "duplicate_target") -> None:
        super().__init__(f"Duplicate target: {target_id}")
        self.target_id = target_id
        self.code = code


class UnknownTargetError(Exception):
    """Raised when a target identifier is not in the graph."""

    def __init__(
        self,
        target_id: str,
        referenced_by: str | None = None,
        code: str = "unknown_target",
    ) -> None:
        message = f"Unknown target: {target_id}"
        if referenced_by:
            message += f" (referenced by {referenced_by})"
        super().__init__(message)
        self.target_id = target_id
        self.referenced_by = referenced_by
        self.code = code


@dataclass(frozen=True)
class ImageSpec:
    """Inputs of an image target.

    Attributes:
        package_dir: Directory of the declaring package.
        srcs: Source files/directories relative to package_dir.
        dockerfile: Dockerfile path relative to package_dir.
        repository: Image repository the built image is named under.
        build_args: Build arguments passed to the builder.
        target_stage: Optional multi-stage build target.
    """

    package_dir: Path
    srcs: tuple[str, ...]
    dockerfile: str
    repository: str
    build_args: tuple[tuple[str, str], ...] = ()
    target_stage: str | None = None


@dataclass(frozen=True)
class ManifestSpec:
    """Template and bindings of a manifest target.

    Attributes:
        template_paths: Template files, in declaration order.
        documents: Parsed template documents, in file then document order.
        images: Mapping of placeholder string to image target label.
        namespace: Default namespace for namespaced documents.
    """

    template_paths: tuple[Path, ...]
    documents: tuple[dict[str, Any], ...]
    images: tuple[tuple[str, str], ...] = ()
    namespace: str | None = None

    @property
    def image_map(self) -> dict[str, str]:
        """Return the placeholder mapping as a dict."""
        return dict(self.images)


@dataclass(frozen=True)
class Target:
    """A named build unit.

    Attributes:
        id: Canonical label, e.g. //services/api:server.
        kind: Image, manifest or group.
        deps: Declared dependency labels, in declaration order.
        fingerprint: Hash over the target's declared inputs.
        cluster: Cluster assignment for manifest/group targets.
        visibility: Visibility patterns.
        image: Image inputs (image targets only).
        manifest: Template and bindings (manifest targets only).
    """

    id: str
    kind: TargetKind
    deps: tuple[str, ...] = ()
    fingerprint: str = ""
    cluster: str | None = None
    visibility: tuple[str, ...] = (PUBLIC,)
    image: ImageSpec | None = field(default=None, compare=False)
    manifest: ManifestSpec | None = field(default=None, compare=False)


class TargetGraph:
    """Declared targets and their dependency adjacency index."""

    def __init__(self, targets: Iterable[Target] | None = None) -> None:
        self._targets: dict[str, Target] = {}
        # Forward edges: target id -> declared dependency ids
        self._deps: dict[str, tuple[str, ...]] = {}
        for target in targets or ():
            self.add_target(target)

    def add_target(self, target: Target) -> None:
        """Add a target to the graph.

        Raises:
            DuplicateTargetError: If the identifier already exists.
        """
        if target.id in self._targets:
            raise DuplicateTargetError(target.id)
        self._targets[target.id] = target
        self._deps[target.id] = tuple(target.deps)

    def dependencies_of(self, target_id: str) -> tuple[str, ...]:
        """Return the directly declared dependencies of a target.

        Raises:
            UnknownTargetError: If the target is not in the graph.
        """
        try:
            return self._deps[target_id]
        except KeyError:
            raise UnknownTargetError(target_id) from None

    def dependents_of(self, target_id: str) -> tuple[str, ...]:
        """Return targets that directly depend on a target, sorted by id."""
        if target_id not in self._targets:
            raise UnknownTargetError(target_id)
        return tuple(
            sorted(tid for tid, deps in self._deps.items() if target_id in deps)
        )

    def all_targets(self) -> Iterator[Target]:
        """Yield all targets; each call starts a fresh traversal."""
        yield from list(self._targets.values())

    def get(self, target_id: str) -> Target:
        """Return a target by id.

        Raises:
            UnknownTargetError: If the target is not in the graph.
        """
        try:
            return self._targets[target_id]
        except KeyError:
            raise UnknownTargetError(target_id) from None

    def ids(self) -> list[str]:
        """Return all target ids in ascending order."""
        return sorted(self._targets)

    def __contains__(self, target_id: object) -> bool:
        return target_id in self._targets

    def __len__(self) -> int:
        return len(self._targets)

    def validate_references(self) -> None:
        """Check that every declared dependency exists.

        Raises:
            UnknownTargetError: For the first missing dependency, in id order.
        """
        for target_id in self.ids():
            for dep in self._deps[target_id]:
                if dep not in self._targets:
                    raise UnknownTargetError(dep, referenced_by=target_id)

    def closure(self, target_ids: Iterable[str]) -> set[str]:
        """Return the given targets plus all of their transitive dependencies.

        Raises:
            UnknownTargetError: If a requested or reached target is absent.
        """
        result: set[str] = set()
        stack = list(target_ids)
        while stack:
            target_id = stack.pop()
            if target_id in result:
                continue
            stack.extend(self.dependencies_of(target_id))
            result.add(target_id)
        return result

    def subgraph(self, target_ids: Iterable[str]) -> TargetGraph:
        """Return a new graph restricted to the closure of the given targets."""
        keep = self.closure(target_ids)
        return TargetGraph(t for t in self._targets.values() if t.id in keep)


__all__ = [
    "DuplicateTargetError",
    "ImageSpec",
    "ManifestSpec",
    "Target",
    "TargetGraph",
    "UnknownTargetError",
]
