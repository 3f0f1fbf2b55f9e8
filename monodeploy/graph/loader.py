"""Declaration loading.

This module handles:
- Discovering BUILD.yaml files under the workspace root
- Validating them against the declaration schema
- Resolving labels, cluster assignments and fingerprints
- Building the TargetGraph and checking it for configuration errors

Structural problems are reported before anything is built.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from monodeploy.graph.fingerprint import (
    FingerprintError,
    compute_fingerprint,
    group_inputs,
    hash_sources,
    hash_templates,
    image_inputs,
    manifest_inputs,
)
from monodeploy.graph.labels import (
    LabelError,
    is_visible,
    make_label,
    normalize_label,
    package_of,
)
from monodeploy.graph.models import ImageSpec, ManifestSpec, Target, TargetGraph
from monodeploy.graph.schema import BuildFileSchema, TargetSchema, WorkspaceSchema
from monodeploy.types import TargetKind

logger = logging.getLogger(__name__)

DEFAULT_DOCKERFILE = "Dockerfile"
SKIPPED_DIR_NAMES = {".git", ".hg", "node_modules", "__pycache__"}


class ConfigurationError(Exception):
    """Raised when declarations are invalid."""

    def __init__(
        self,
        message: str,
        path: Path | None = None,
        code: str = "configuration_error",
    ) -> None:
        if path is not None:
            message = f"{path}: {message}"
        super().__init__(message)
        self.path = path
        self.code = code


class VisibilityError(ConfigurationError):
    """Raised when a target depends on a target it cannot see."""

    def __init__(self, target_id: str, dependency_id: str) -> None:
        super().__init__(
            f"{dependency_id} is not visible to {target_id}",
            code="visibility_error",
        )
        self.target_id = target_id
        self.dependency_id = dependency_id


class PlaceholderConflictError(ConfigurationError):
    """Raised when one placeholder is bound inconsistently across clusters.

    Only a placeholder that maps to different images on different clusters
    conflicts. Reusing a placeholder for the same image on several clusters,
    or for different images within one cluster, is accepted.
    """

    def __init__(self, placeholder: str, bindings: list[tuple[str, str, str]]) -> None:
        described = ", ".join(
            f"{manifest} -> {image} on {cluster}"
            for manifest, image, cluster in bindings
        )
        super().__init__(
            f"Placeholder '{placeholder}' is bound to different images "
            f"on different clusters: {described}",
            code="placeholder_conflict",
        )
        self.placeholder = placeholder
        self.bindings = bindings


@dataclass
class Workspace:
    """Loaded workspace: root directory plus cluster declarations."""

    root: Path
    config: WorkspaceSchema = field(default_factory=WorkspaceSchema)

    @property
    def default_cluster(self) -> str | None:
        return self.config.default_cluster


@dataclass
class _Declaration:
    """A target declaration with labels resolved, before fingerprinting."""

    target_id: str
    package: str
    package_dir: Path
    build_file: Path
    schema: TargetSchema
    deps: list[str]
    images: dict[str, str]
    cluster: str | None = None


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the content is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_documents(path: Path) -> list[dict[str, Any]]:
    """Load every document of a multi-document YAML manifest file.

    Empty documents are dropped.

    Raises:
        ConfigurationError: If the file is unreadable or a document is not a mapping.
    """
    try:
        with open(path, encoding="utf-8") as f:
            documents = [doc for doc in yaml.safe_load_all(f) if doc is not None]
    except OSError as e:
        raise ConfigurationError(
            f"Cannot read template: {e}", path=path, code="template_not_found"
        ) from e
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Invalid YAML: {e}", path=path, code="template_parse_error"
        ) from e

    for index, doc in enumerate(documents):
        if not isinstance(doc, dict):
            raise ConfigurationError(
                f"Document {index} is a {type(doc).__name__}, expected a mapping",
                path=path,
                code="template_parse_error",
            )
    return documents


def load_workspace(
    root: Path, workspace_file_name: str = "WORKSPACE.yaml"
) -> Workspace:
    """Load the workspace file, if present.

    Args:
        root: Workspace root directory.
        workspace_file_name: Name of the workspace file.

    Returns:
        Workspace with cluster declarations (empty if there is no file).

    Raises:
        ConfigurationError: If the workspace file is invalid.
    """
    path = root / workspace_file_name
    if not path.exists():
        logger.debug("No workspace file at %s", path)
        return Workspace(root=root)
    try:
        config = WorkspaceSchema.model_validate(load_yaml(path))
    except ValidationError as e:
        raise ConfigurationError(f"Validation error: {e}", path=path) from e
    except (yaml.YAMLError, ValueError) as e:
        raise ConfigurationError(f"Parse error: {e}", path=path) from e
    return Workspace(root=root, config=config)


def discover_build_files(
    root: Path, build_file_name: str = "BUILD.yaml"
) -> list[Path]:
    """Find all declaration files under root, sorted by path.

    Hidden directories and common vendor directories are skipped.
    """
    if not root.is_dir():
        raise ConfigurationError(
            "Workspace root is not a directory", path=root, code="workspace_not_found"
        )
    found: list[Path] = []
    for path in sorted(root.rglob(build_file_name)):
        rel_parts = path.relative_to(root).parts[:-1]
        if any(p.startswith(".") or p in SKIPPED_DIR_NAMES for p in rel_parts):
            continue
        if path.is_file():
            found.append(path)
    return found


def parse_build_file(path: Path) -> BuildFileSchema:
    """Parse and validate a single declaration file.

    Raises:
        ConfigurationError: If the file is not valid YAML or fails validation.
    """
    try:
        return BuildFileSchema.model_validate(load_yaml(path))
    except ValidationError as e:
        raise ConfigurationError(
            f"Validation error: {e}", path=path, code="schema_error"
        ) from e
    except (yaml.YAMLError, ValueError) as e:
        raise ConfigurationError(
            f"Parse error: {e}", path=path, code="parse_error"
        ) from e


def _declare(path: Path, root: Path, schema: TargetSchema) -> _Declaration:
    package = path.parent.relative_to(root).as_posix()
    if package == ".":
        package = ""
    try:
        deps = [normalize_label(d, package) for d in schema.deps]
        images = {
            placeholder: normalize_label(label, package)
            for placeholder, label in (schema.images or {}).items()
        }
    except LabelError as e:
        raise ConfigurationError(str(e), path=path, code=e.code) from e

    # Image bindings are implicit dependencies
    for label in images.values():
        if label not in deps:
            deps.append(label)

    return _Declaration(
        target_id=make_label(package, schema.name),
        package=package,
        package_dir=path.parent,
        build_file=path,
        schema=schema,
        deps=deps,
        images=images,
        cluster=schema.cluster,
    )


def _assign_clusters(
    declarations: dict[str, _Declaration], default_cluster: str | None
) -> None:
    """Resolve each manifest's cluster: own, else its groups', else the default."""
    inherited: dict[str, dict[str, str]] = {}
    for decl in declarations.values():
        if decl.schema.kind != "group" or not decl.cluster:
            continue
        for dep in decl.deps:
            inherited.setdefault(dep, {})[decl.target_id] = decl.cluster

    for decl in declarations.values():
        if decl.schema.kind != "manifest" or decl.cluster:
            continue
        clusters = set(inherited.get(decl.target_id, {}).values())
        if len(clusters) > 1:
            groups = ", ".join(sorted(inherited[decl.target_id]))
            raise ConfigurationError(
                f"{decl.target_id} inherits conflicting clusters "
                f"{sorted(clusters)} from groups {groups}",
                path=decl.build_file,
                code="cluster_conflict",
            )
        decl.cluster = clusters.pop() if clusters else default_cluster


def _build_target(decl: _Declaration) -> Target:
    schema = decl.schema
    kind = TargetKind(schema.kind)
    visibility = tuple(schema.visibility)

    try:
        if kind is TargetKind.IMAGE:
            dockerfile = schema.dockerfile or DEFAULT_DOCKERFILE
            srcs = tuple(schema.srcs) if schema.srcs else (".",)
            hashed = list(srcs) if dockerfile in srcs else [*srcs, dockerfile]
            inputs = image_inputs(
                target_id=decl.target_id,
                deps=decl.deps,
                source_hash=hash_sources(decl.package_dir, hashed),
                dockerfile=dockerfile,
                repository=schema.repository or "",
                build_args=schema.build_args,
                target_stage=schema.target_stage,
            )
            return Target(
                id=decl.target_id,
                kind=kind,
                deps=tuple(decl.deps),
                fingerprint=compute_fingerprint(inputs),
                visibility=visibility,
                image=ImageSpec(
                    package_dir=decl.package_dir,
                    srcs=srcs,
                    dockerfile=dockerfile,
                    repository=schema.repository or "",
                    build_args=tuple(sorted((schema.build_args or {}).items())),
                    target_stage=schema.target_stage,
                ),
            )

        if kind is TargetKind.MANIFEST:
            template_paths = tuple(decl.package_dir / t for t in schema.templates or [])
            documents: list[dict[str, Any]] = []
            for template in template_paths:
                documents.extend(load_documents(template))
            inputs = manifest_inputs(
                target_id=decl.target_id,
                deps=decl.deps,
                template_hash=hash_templates(template_paths, decl.package_dir),
                images=decl.images,
                cluster=decl.cluster,
                namespace=schema.namespace,
            )
            return Target(
                id=decl.target_id,
                kind=kind,
                deps=tuple(decl.deps),
                fingerprint=compute_fingerprint(inputs),
                cluster=decl.cluster,
                visibility=visibility,
                manifest=ManifestSpec(
                    template_paths=template_paths,
                    documents=tuple(documents),
                    images=tuple(sorted(decl.images.items())),
                    namespace=schema.namespace,
                ),
            )

        inputs = group_inputs(decl.target_id, decl.deps, cluster=decl.cluster)
        return Target(
            id=decl.target_id,
            kind=kind,
            deps=tuple(decl.deps),
            fingerprint=compute_fingerprint(inputs),
            cluster=decl.cluster,
            visibility=visibility,
        )
    except FingerprintError as e:
        raise ConfigurationError(str(e), path=decl.build_file, code=e.code) from e


def validate_visibility(graph: TargetGraph) -> None:
    """Check every dependency is visible to the target declaring it.

    Raises:
        VisibilityError: For the first violation, in id order.
    """
    for target_id in graph.ids():
        from_package = package_of(target_id)
        for dep in graph.dependencies_of(target_id):
            dep_target = graph.get(dep)
            if not is_visible(dep, dep_target.visibility, from_package):
                raise VisibilityError(target_id, dep)


def validate_image_bindings(graph: TargetGraph) -> None:
    """Check placeholders bind to image targets and do not conflict.

    Raises:
        ConfigurationError: If a placeholder points at a non-image target.
        PlaceholderConflictError: If one placeholder is bound to different
            images by manifests assigned to different clusters.
    """
    bindings: dict[str, list[tuple[str, str, str]]] = {}
    for target in graph.all_targets():
        if target.manifest is None:
            continue
        for placeholder, image_id in target.manifest.images:
            if graph.get(image_id).kind is not TargetKind.IMAGE:
                raise ConfigurationError(
                    f"{target.id} binds placeholder '{placeholder}' to "
                    f"{image_id}, which is not an image target",
                    code="invalid_image_binding",
                )
            bindings.setdefault(placeholder, []).append(
                (target.id, image_id, target.cluster or "")
            )

    for placeholder in sorted(bindings):
        entries = sorted(bindings[placeholder])
        images = {image for _, image, _ in entries}
        clusters = {cluster for _, _, cluster in entries}
        if len(images) > 1 and len(clusters) > 1:
            raise PlaceholderConflictError(placeholder, entries)


def validate_image_dependencies(graph: TargetGraph) -> None:
    """Check image targets depend only on other image targets.

    Images are built before any manifest is applied, so an image cannot
    wait on a manifest or group.

    Raises:
        ConfigurationError: For the first violation, in id order.
    """
    for target_id in graph.ids():
        if graph.get(target_id).kind is not TargetKind.IMAGE:
            continue
        for dep in graph.dependencies_of(target_id):
            if graph.get(dep).kind is not TargetKind.IMAGE:
                raise ConfigurationError(
                    f"Image target {target_id} depends on non-image target {dep}",
                    code="invalid_image_dependency",
                )


def validate_clusters(graph: TargetGraph, workspace: Workspace) -> None:
    """Check cluster assignments name declared clusters.

    Only enforced when the workspace declares at least one cluster.
    """
    declared = workspace.config.clusters
    if not declared:
        return
    for target in graph.all_targets():
        if target.cluster and target.cluster not in declared:
            raise ConfigurationError(
                f"{target.id} is assigned to undeclared cluster '{target.cluster}'",
                code="unknown_cluster",
            )


def load_graph(
    root: Path,
    build_file_name: str = "BUILD.yaml",
    workspace: Workspace | None = None,
) -> TargetGraph:
    """Load all declarations under root into a validated TargetGraph.

    Cycles are not checked here; the resolver reports them.

    Args:
        root: Workspace root directory.
        build_file_name: Name of the per-directory declaration file.
        workspace: Loaded workspace; an empty one is used if omitted.

    Returns:
        TargetGraph with every target fingerprinted.

    Raises:
        ConfigurationError: If a declaration is invalid.
        DuplicateTargetError: If a label is declared twice.
        UnknownTargetError: If a dependency does not exist.
    """
    if workspace is None:
        workspace = Workspace(root=root)

    declarations: dict[str, _Declaration] = {}
    ordered: list[_Declaration] = []
    for path in discover_build_files(root, build_file_name):
        build_file = parse_build_file(path)
        for schema in build_file.targets:
            decl = _declare(path, root, schema)
            ordered.append(decl)
            declarations.setdefault(decl.target_id, decl)

    logger.debug("Discovered %d target declaration(s)", len(ordered))
    _assign_clusters(declarations, workspace.default_cluster)

    graph = TargetGraph()
    for decl in ordered:
        graph.add_target(_build_target(decl))

    graph.validate_references()
    validate_visibility(graph)
    validate_image_bindings(graph)
    validate_image_dependencies(graph)
    validate_clusters(graph, workspace)

    logger.info("Loaded %d target(s) from %s", len(graph), root)
    return graph


__all__ = [
    "ConfigurationError",
    "PlaceholderConflictError",
    "VisibilityError",
    "Workspace",
    "discover_build_files",
    "load_documents",
    "load_graph",
    "load_workspace",
    "load_yaml",
    "parse_build_file",
    "validate_clusters",
    "validate_image_bindings",
    "validate_image_dependencies",
    "validate_visibility",
]
