"""Fingerprint computation for targets.

This module handles:
- Hashing the source files an image target declares
- Canonical input snapshots for image, manifest and group targets
- Deterministic hash computation over normalized inputs

Fingerprints ensure targets with identical inputs are recognised as
unchanged across runs.
"""

from __future__ import annotations

import hashlib
import json
import stat
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from monodeploy.types import TargetKind

# Schema version for fingerprint format; bump when the format changes
FINGERPRINT_SCHEMA_VERSION = "1"


class FingerprintError(Exception):
    """Raised when the inputs of a target cannot be hashed."""

    def __init__(self, message: str, code: str = "fingerprint_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class TargetInputs:
    """Canonical representation of everything that affects a target's output.

    Attributes:
        schema_version: Version of the fingerprint schema.
        target_id: Label of the target.
        kind: Target kind value.
        attributes: Normalized declared attributes.
        content_hash: Hash of source files or template contents.
        deps: Sorted dependency labels.
    """

    schema_version: str = FINGERPRINT_SCHEMA_VERSION
    target_id: str = ""
    kind: str = ""
    attributes: dict[str, Any] = field(default_factory=dict)
    content_hash: str | None = None
    deps: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


def _validate_path_within_base(path: Path, base: Path) -> Path:
    """Resolve a path and check it stays inside base.

    Raises:
        FingerprintError: If the path escapes base.
    """
    resolved_path = path.resolve()
    try:
        resolved_path.relative_to(base.resolve())
    except ValueError:
        raise FingerprintError(
            f"Source path escapes its package: {path}",
            code="path_traversal",
        ) from None
    return resolved_path


def _hash_file(hasher: Any, rel_path: str, path: Path) -> None:
    # Hash: path\0mode\0content\0
    mode = stat.S_IMODE(path.stat().st_mode)
    hasher.update(rel_path.encode("utf-8"))
    hasher.update(b"\0")
    hasher.update(f"{mode:o}".encode())
    hasher.update(b"\0")
    hasher.update(path.read_bytes())
    hasher.update(b"\0")


def hash_sources(package_dir: Path, srcs: list[str] | tuple[str, ...]) -> str:
    """Compute a deterministic hash over declared source files.

    Each entry in srcs may name a file or a directory (walked recursively).
    The hash covers sorted relative paths, file modes (lower 9 bits) and
    file contents.

    Args:
        package_dir: Directory the sources are relative to.
        srcs: Declared source paths.

    Returns:
        SHA-256 hex digest.

    Raises:
        FingerprintError: If a source is missing or escapes package_dir.
    """
    files: dict[str, Path] = {}
    for src in srcs:
        path = package_dir / src
        _validate_path_within_base(path, package_dir)
        if not path.exists():
            raise FingerprintError(
                f"Source not found: {path}",
                code="source_not_found",
            )
        if path.is_dir():
            for item in path.rglob("*"):
                if item.is_file():
                    files[item.relative_to(package_dir).as_posix()] = item
        else:
            files[path.relative_to(package_dir).as_posix()] = path

    hasher = hashlib.sha256()
    for rel_path in sorted(files):
        _hash_file(hasher, rel_path, files[rel_path])
    return hasher.hexdigest()


def hash_templates(template_paths: list[Path] | tuple[Path, ...], base: Path) -> str:
    """Compute a hash over manifest template files in declaration order.

    Args:
        template_paths: Template file paths.
        base: Directory used to make paths relative.

    Returns:
        SHA-256 hex digest.
    """
    hasher = hashlib.sha256()
    for path in template_paths:
        if path.is_relative_to(base):
            rel_path = path.relative_to(base).as_posix()
        else:
            rel_path = path.as_posix()
        hasher.update(rel_path.encode("utf-8"))
        hasher.update(b"\0")
        hasher.update(path.read_bytes())
        hasher.update(b"\0")
    return hasher.hexdigest()


def image_inputs(
    target_id: str,
    deps: list[str] | tuple[str, ...],
    source_hash: str,
    dockerfile: str,
    repository: str,
    build_args: dict[str, str] | None = None,
    target_stage: str | None = None,
) -> TargetInputs:
    """Create canonical inputs for an image target."""
    attributes: dict[str, Any] = {
        "dockerfile": dockerfile,
        "repository": repository,
    }
    if build_args:
        attributes["build_args"] = dict(sorted(build_args.items()))
    if target_stage:
        attributes["target_stage"] = target_stage
    return TargetInputs(
        target_id=target_id,
        kind=TargetKind.IMAGE.value,
        attributes=attributes,
        content_hash=source_hash,
        deps=sorted(deps),
    )


def manifest_inputs(
    target_id: str,
    deps: list[str] | tuple[str, ...],
    template_hash: str,
    images: dict[str, str] | None = None,
    cluster: str | None = None,
    namespace: str | None = None,
) -> TargetInputs:
    """Create canonical inputs for a manifest target."""
    attributes: dict[str, Any] = {}
    if images:
        attributes["images"] = dict(sorted(images.items()))
    if cluster:
        attributes["cluster"] = cluster
    if namespace:
        attributes["namespace"] = namespace
    return TargetInputs(
        target_id=target_id,
        kind=TargetKind.MANIFEST.value,
        attributes=attributes,
        content_hash=template_hash,
        deps=sorted(deps),
    )


def group_inputs(
    target_id: str,
    deps: list[str] | tuple[str, ...],
    cluster: str | None = None,
) -> TargetInputs:
    """Create canonical inputs for a group target."""
    attributes: dict[str, Any] = {}
    if cluster:
        attributes["cluster"] = cluster
    return TargetInputs(
        target_id=target_id,
        kind=TargetKind.GROUP.value,
        attributes=attributes,
        deps=sorted(deps),
    )


def compute_fingerprint(inputs: TargetInputs) -> str:
    """Compute a fingerprint from target inputs.

    The fingerprint is a SHA-256 hash of the canonical JSON representation
    of the inputs.

    Args:
        inputs: TargetInputs instance.

    Returns:
        Fingerprint as hex string (sha256:...).
    """
    canonical_json = json.dumps(
        inputs.to_dict(),
        sort_keys=True,
        separators=(",", ":"),
    )
    hash_hex = hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()
    return f"sha256:{hash_hex}"


__all__ = [
    "FINGERPRINT_SCHEMA_VERSION",
    "FingerprintError",
    "TargetInputs",
    "compute_fingerprint",
    "group_inputs",
    "hash_sources",
    "hash_templates",
    "image_inputs",
    "manifest_inputs",
]
