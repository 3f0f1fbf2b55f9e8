"""Image build service module.

This module provides the high-level build API:
- ImageBuildAdapter.build(): build one image target and record the result
- Locking to prevent duplicate builds of the same target
- Conversion of builder errors into per-target BuildFailure values

A failed build is returned, not raised, so one failure never aborts the
other builds of a run. Builds are never retried.
"""

from __future__ import annotations

import fcntl
import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from monodeploy.builds.bundle import BundleStagingError, staged_bundle
from monodeploy.builds.builder import BuildExecutionError
from monodeploy.types import BuildResult, TargetKind

if TYPE_CHECKING:
    from monodeploy.builds.builder import ImageBuilder
    from monodeploy.builds.cache import CacheStore
    from monodeploy.graph.models import Target

logger = logging.getLogger(__name__)


class BuildFailure(Exception):
    """A failed image build, returned by ImageBuildAdapter.build().

    Attributes:
        target_id: Label of the failed target.
        cause: Human-readable cause.
        code: Machine-readable error code of the underlying error.
    """

    def __init__(self, target_id: str, cause: str, code: str = "build_failed") -> None:
        super().__init__(f"Build of {target_id} failed: {cause}")
        self.target_id = target_id
        self.cause = cause
        self.code = code


@contextmanager
def build_lock(
    lock_dir: Path,
    key: str,
    timeout: float | None = None,
) -> Iterator[None]:
    """Acquire a lock for a build key.

    Uses a file-based lock to prevent concurrent builds of the same target
    by processes sharing one cache directory.

    Args:
        lock_dir: Directory for lock files.
        key: Key to lock on (the target id).
        timeout: Lock acquisition timeout in seconds (None = blocking).

    Yields:
        None when lock is acquired.

    Raises:
        TimeoutError: If lock cannot be acquired within timeout.
    """
    lock_dir.mkdir(parents=True, exist_ok=True)

    safe_key = key.lstrip("/").replace(":", "_").replace("/", "_")[:64]
    lock_file = lock_dir / f"build_{safe_key}.lock"

    logger.debug("Acquiring build lock for %s", key)

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    lock_acquired = False
    try:
        if timeout is not None:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    lock_acquired = True
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= timeout:
                        raise TimeoutError(
                            f"Timeout waiting for build lock on {key}"
                        ) from None
                    time.sleep(0.1)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX)
            lock_acquired = True

        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Build lock released for %s", key)
        os.close(fd)


class ImageBuildAdapter:
    """Builds image targets through an ImageBuilder backend.

    Args:
        builder: Backend that produces image references.
        cache_dir: Directory for lock files and staging directories.
        lock_timeout: Seconds to wait for a target's build lock.
    """

    def __init__(
        self,
        builder: ImageBuilder,
        cache_dir: Path,
        lock_timeout: float | None = 300,
    ) -> None:
        self.builder = builder
        self.cache_dir = cache_dir
        self.lock_timeout = lock_timeout

    def build(
        self, target: Target, cache_store: CacheStore, force: bool = False
    ) -> BuildResult | BuildFailure:
        """Build an image target and record the result.

        The cache is checked again after the lock is acquired, so a build
        finished meanwhile by another process is reused.

        Args:
            target: Image target to build.
            cache_store: Store the successful result is written to.
            force: Build even if a result for the fingerprint is cached.

        Returns:
            BuildResult on success, BuildFailure otherwise.
        """
        if target.kind is not TargetKind.IMAGE or target.image is None:
            return BuildFailure(
                target.id, "not an image target", code="not_an_image"
            )

        try:
            with build_lock(
                self.cache_dir / ".locks", target.id, timeout=self.lock_timeout
            ):
                cached = None
                if not force:
                    cached = cache_store.get(target.id, target.fingerprint)
                if cached is not None:
                    logger.info("Cache hit for %s: %s", target.id, cached.reference)
                    return cached

                logger.info("Building %s", target.id)
                staging_root = self.cache_dir / "staging"
                with staged_bundle(target, tmp_dir=staging_root) as bundle:
                    logger.debug(
                        "Staged %s (tree=%s)", target.id, bundle.tree_hash[:16]
                    )
                    reference = self.builder.build_image(bundle)

                result = BuildResult(
                    target_id=target.id,
                    reference=reference,
                    built_at=datetime.now(timezone.utc),
                )
                cache_store.put(target.id, target.fingerprint, result)
                logger.info("Built %s -> %s", target.id, reference)
                return result

        except (BuildExecutionError, BundleStagingError) as e:
            logger.error("Build of %s failed: %s", target.id, e)
            return BuildFailure(target.id, str(e), code=e.code)
        except TimeoutError as e:
            logger.error("Build of %s failed: %s", target.id, e)
            return BuildFailure(target.id, str(e), code="lock_timeout")
        except Exception as e:
            logger.exception("Build of %s failed unexpectedly", target.id)
            return BuildFailure(target.id, f"Build error: {e}", code="build_error")


__all__ = ["BuildFailure", "ImageBuildAdapter", "build_lock"]
