"""Source bundle staging for image builds.

This module handles:
- Staging an image target's declared sources into an isolated build context
- Computing a deterministic hash of the staged content
- Managing the staging directory lifecycle

Only declared sources are visible to the image builder.
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import stat
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from monodeploy.graph.models import Target

logger = logging.getLogger(__name__)


class BundleStagingError(Exception):
    """Raised when source bundle staging fails."""

    def __init__(self, message: str, code: str = "bundle_staging_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class SourceBundle:
    """A staged build context for one image target.

    Attributes:
        target_id: Label of the image target.
        fingerprint: Fingerprint of the target's inputs.
        context_dir: Directory holding the staged sources.
        dockerfile: Dockerfile path relative to context_dir.
        repository: Repository to name the image under.
        build_args: Build arguments.
        target_stage: Optional multi-stage build target.
        tree_hash: SHA-256 hex digest of the staged content.
    """

    target_id: str
    fingerprint: str
    context_dir: Path
    dockerfile: str
    repository: str
    build_args: dict[str, str] = field(default_factory=dict)
    target_stage: str | None = None
    tree_hash: str = ""


def _validate_path_within_base(path: Path, base: Path, path_type: str) -> Path:
    """Validate that a path is contained within a base directory.

    Raises:
        BundleStagingError: If path escapes base directory.
    """
    resolved_path = path.resolve()
    try:
        resolved_path.relative_to(base.resolve())
    except ValueError:
        raise BundleStagingError(
            f"{path_type} path traversal detected: {path} resolves outside {base}",
            code="path_traversal",
        ) from None
    return resolved_path


def stage_file(source: Path, dest: Path) -> None:
    """Stage a single file into the build context.

    Raises:
        BundleStagingError: If staging fails.
    """
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, dest)
    except OSError as e:
        raise BundleStagingError(
            f"Failed to stage file {source} -> {dest}: {e}",
            code="file_stage_error",
        ) from e


def stage_directory(source_dir: Path, dest_dir: Path) -> None:
    """Stage a directory tree into the build context.

    Symlinks are copied as their target content and must stay within the
    source tree.

    Raises:
        BundleStagingError: If staging fails or a symlink escapes.
    """
    source_dir_resolved = source_dir.resolve()

    try:
        for item in sorted(source_dir.rglob("*")):
            rel_path = item.relative_to(source_dir)
            dest_path = dest_dir / rel_path

            if item.is_symlink():
                target = item.resolve()
                try:
                    target.relative_to(source_dir_resolved)
                except ValueError:
                    raise BundleStagingError(
                        f"Symlink {item} points outside source tree: {target}",
                        code="symlink_escape",
                    ) from None

            if item.is_dir() and not item.is_symlink():
                dest_path.mkdir(parents=True, exist_ok=True)
            elif item.is_file():
                dest_path.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(item.resolve(), dest_path)

    except OSError as e:
        raise BundleStagingError(
            f"Failed to stage directory {source_dir}: {e}",
            code="dir_stage_error",
        ) from e


def compute_tree_hash(directory: Path) -> str:
    """Compute a deterministic hash of a directory tree.

    The hash is computed over:
    - Sorted file paths (relative to directory)
    - File contents
    - File modes (lower 9 bits: rwxrwxrwx)

    Args:
        directory: Directory to hash.

    Returns:
        SHA-256 hex digest of the tree.
    """
    hasher = hashlib.sha256()

    if not directory.exists():
        return hasher.hexdigest()

    for path in sorted(directory.rglob("*")):
        if not path.is_file():
            continue

        rel_path = path.relative_to(directory).as_posix()
        mode = stat.S_IMODE(path.stat().st_mode)

        # Hash: path\0mode\0content\0
        hasher.update(rel_path.encode("utf-8"))
        hasher.update(b"\0")
        hasher.update(f"{mode:o}".encode())
        hasher.update(b"\0")
        hasher.update(path.read_bytes())
        hasher.update(b"\0")

    return hasher.hexdigest()


def stage_bundle(staging_dir: Path, target: Target) -> SourceBundle:
    """Stage an image target's sources and Dockerfile into staging_dir.

    Args:
        staging_dir: Empty directory to stage into.
        target: Image target.

    Returns:
        SourceBundle describing the staged context.

    Raises:
        BundleStagingError: If the target is not an image, a source is
            missing, or a path escapes the package directory.
    """
    if target.image is None:
        raise BundleStagingError(
            f"{target.id} is not an image target", code="not_an_image"
        )
    image = target.image
    package_dir = image.package_dir
    staging_dir.mkdir(parents=True, exist_ok=True)

    for src in (*image.srcs, image.dockerfile):
        source_path = package_dir / src
        _validate_path_within_base(source_path, package_dir, "source")
        if not source_path.exists():
            raise BundleStagingError(
                f"Source not found: {source_path}",
                code="source_not_found",
            )

        dest_path = staging_dir / src
        _validate_path_within_base(dest_path, staging_dir, "destination")

        logger.debug("Staging %s -> %s", source_path, dest_path)
        if source_path.is_dir():
            stage_directory(source_path, dest_path)
        else:
            stage_file(source_path, dest_path)

    return SourceBundle(
        target_id=target.id,
        fingerprint=target.fingerprint,
        context_dir=staging_dir,
        dockerfile=image.dockerfile,
        repository=image.repository,
        build_args=dict(image.build_args),
        target_stage=image.target_stage,
        tree_hash=compute_tree_hash(staging_dir),
    )


@contextmanager
def staged_bundle(
    target: Target, tmp_dir: Path | None = None
) -> Iterator[SourceBundle]:
    """Stage a bundle into a temporary directory removed on exit.

    Args:
        target: Image target.
        tmp_dir: Parent for the temporary directory (system default if None).

    Yields:
        The staged SourceBundle.
    """
    if tmp_dir is not None:
        tmp_dir.mkdir(parents=True, exist_ok=True)
    staging_dir = Path(tempfile.mkdtemp(prefix="monodeploy_bundle_", dir=tmp_dir))
    try:
        yield stage_bundle(staging_dir, target)
    finally:
        shutil.rmtree(staging_dir, ignore_errors=True)


__all__ = [
    "BundleStagingError",
    "SourceBundle",
    "compute_tree_hash",
    "stage_bundle",
    "stage_directory",
    "stage_file",
    "staged_bundle",
]
