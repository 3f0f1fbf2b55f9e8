"""Manifest binding.

This module substitutes image placeholders in a manifest target's template
documents with the content-addressed references produced by image builds.

Only string values exactly equal to a declared placeholder are replaced;
mapping keys and strings that merely contain the placeholder are kept.
Templates are never mutated, and identical inputs give identical output.
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import yaml

from monodeploy.manifests.resources import is_namespaced

if TYPE_CHECKING:
    from monodeploy.graph.models import Target
    from monodeploy.types import BuildResult

logger = logging.getLogger(__name__)


class UnresolvedImageError(Exception):
    """Raised when a placeholder's image target has no build result."""

    def __init__(
        self,
        reference: str,
        image_target: str | None = None,
        target_id: str | None = None,
        code: str = "unresolved_image",
    ) -> None:
        message = f"Unresolved image placeholder: {reference}"
        if image_target:
            message += f" (image target {image_target} has no build result)"
        if target_id:
            message += f" in {target_id}"
        super().__init__(message)
        self.reference = reference
        self.image_target = image_target
        self.target_id = target_id
        self.code = code


class BindError(Exception):
    """Raised when a target cannot be bound at all."""

    def __init__(self, message: str, code: str = "bind_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class ResolvedManifest:
    """Manifest documents with image references bound, ready to apply.

    Attributes:
        target_id: Label of the manifest target.
        documents: Bound documents in template order.
        cluster: Cluster the documents are applied to.
    """

    target_id: str
    documents: tuple[dict[str, Any], ...]
    cluster: str | None = None

    @property
    def digest(self) -> str:
        """Return sha256 over the canonical JSON form of the documents."""
        canonical = json.dumps(
            list(self.documents),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=True,
            default=str,
        )
        return f"sha256:{hashlib.sha256(canonical.encode('utf-8')).hexdigest()}"

    def to_yaml(self) -> str:
        """Render the documents as a multi-document YAML stream."""
        return yaml.safe_dump_all(
            list(self.documents), sort_keys=False, default_flow_style=False
        )


def _substitute(value: Any, replacements: Mapping[str, str], used: set[str]) -> Any:
    """Return value with exact placeholder strings replaced, recursively."""
    if isinstance(value, str):
        if value in replacements:
            used.add(value)
            return replacements[value]
        return value
    if isinstance(value, dict):
        return {k: _substitute(v, replacements, used) for k, v in value.items()}
    if isinstance(value, list):
        return [_substitute(item, replacements, used) for item in value]
    return value


def _apply_namespace(document: dict[str, Any], namespace: str) -> None:
    """Set metadata.namespace on a namespaced document that has none."""
    metadata = document.get("metadata")
    if not isinstance(metadata, dict) or not is_namespaced(document):
        return
    if not metadata.get("namespace"):
        metadata["namespace"] = namespace


def bind(target: Target, build_results: Mapping[str, BuildResult]) -> ResolvedManifest:
    """Bind a manifest target's placeholders to built image references.

    Args:
        target: Manifest target.
        build_results: Build results keyed by image target id.

    Returns:
        ResolvedManifest for the target's cluster.

    Raises:
        UnresolvedImageError: If a referenced image has no successful result.
        BindError: If the target is not a manifest target.
    """
    if target.manifest is None:
        raise BindError(f"{target.id} is not a manifest target", code="not_a_manifest")
    manifest = target.manifest

    replacements: dict[str, str] = {}
    for placeholder, image_id in manifest.images:
        result = build_results.get(image_id)
        if result is None or not result.success:
            raise UnresolvedImageError(
                placeholder, image_target=image_id, target_id=target.id
            )
        replacements[placeholder] = result.reference

    used: set[str] = set()
    documents: list[dict[str, Any]] = []
    for template in manifest.documents:
        document = _substitute(copy.deepcopy(template), replacements, used)
        if manifest.namespace:
            _apply_namespace(document, manifest.namespace)
        documents.append(document)

    for placeholder in sorted(set(replacements) - used):
        logger.warning(
            "Placeholder %r of %s does not occur in any document",
            placeholder,
            target.id,
        )

    logger.debug("Bound %s (%d document(s))", target.id, len(documents))
    return ResolvedManifest(
        target_id=target.id,
        documents=tuple(documents),
        cluster=target.cluster,
    )


__all__ = ["BindError", "ResolvedManifest", "UnresolvedImageError", "bind"]
