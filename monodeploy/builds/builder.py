"""Image builder backends.

This module handles:
- Composing `docker build` commands from staged source bundles
- Executing builds with subprocess
- Capturing stdout/stderr to log files
- Enforcing build timeouts
- Deriving content-addressed image references

Every backend returns a reference of the form ``repository@sha256:<hex>``.
"""

from __future__ import annotations

import json
import logging
import shlex
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from monodeploy.builds.bundle import SourceBundle
    from monodeploy.config import Settings

logger = logging.getLogger(__name__)


class BuildExecutionError(Exception):
    """Raised when build execution fails."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "build_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


class ImageBuilder(Protocol):
    """Backend that turns a staged bundle into an image reference."""

    def build_image(self, bundle: SourceBundle) -> str:
        """Build the bundle and return its content-addressed reference.

        Raises:
            BuildExecutionError: If the build fails.
        """
        ...


def image_tag(bundle: SourceBundle) -> str:
    """Return the mutable tag a bundle is built under.

    The tag is derived from the target fingerprint so rebuilding the same
    inputs reuses the same tag.
    """
    fingerprint = bundle.fingerprint.removeprefix("sha256:")
    return f"{bundle.repository}:{fingerprint[:16] or 'latest'}"


def compose_build_command(
    bundle: SourceBundle,
    iidfile: Path,
    docker_binary: str = "docker",
) -> list[str]:
    """Compose the `docker build` command for a bundle.

    Args:
        bundle: Staged source bundle.
        iidfile: File docker writes the image id to.
        docker_binary: Docker (or compatible) CLI.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = [
        docker_binary,
        "build",
        "--file",
        str(bundle.context_dir / bundle.dockerfile),
        "--iidfile",
        str(iidfile),
        "--tag",
        image_tag(bundle),
    ]

    if bundle.target_stage:
        cmd.extend(["--target", bundle.target_stage])

    # Sorted for a stable command line
    for key, value in sorted(bundle.build_args.items()):
        cmd.extend(["--build-arg", f"{key}={value}"])

    cmd.append(str(bundle.context_dir))
    return cmd


def _log_path_for(log_dir: Path, target_id: str) -> Path:
    """Return a fresh log file path for one build of a target."""
    safe_name = target_id.lstrip("/").replace("/", "_").replace(":", "__")
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
    return log_dir / f"{safe_name}.{stamp}.log"


def _write_log(log_path: Path, mode: str, text: str) -> None:
    """Write text to a build log, creating its directory.

    Raises:
        BuildExecutionError: If the log cannot be written.
    """
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open(mode) as log_file:
            log_file.write(text)
    except OSError as e:
        raise BuildExecutionError(
            f"Cannot write build log {log_path}: {e}", code="log_error"
        ) from e


def pick_repo_digest(repo_digests: list[str], repository: str) -> str | None:
    """Pick the digest reference for a repository from `docker inspect` output.

    Args:
        repo_digests: RepoDigests list, e.g. ["registry/app@sha256:..."].
        repository: Repository the image was pushed to.

    Returns:
        Matching reference, or None if the repository is not listed.
    """
    for reference in repo_digests:
        name, _, digest = reference.partition("@")
        if name == repository and digest.startswith("sha256:"):
            return reference
    return None


class DockerBuilder:
    """Builds images with the docker CLI.

    Without push the reference uses the local image id; with push the image
    is pushed and referenced by its registry digest.
    """

    def __init__(
        self,
        log_dir: Path,
        docker_binary: str = "docker",
        push: bool = False,
        timeout: int | None = None,
    ) -> None:
        self.log_dir = log_dir
        self.docker_binary = docker_binary
        self.push = push
        self.timeout = timeout

    def _run(self, cmd: list[str], log_path: Path) -> None:
        """Run one command appending its output to log_path.

        Raises:
            BuildExecutionError: On non-zero exit, timeout or spawn failure.
        """
        cmd_str = shlex.join(cmd)
        logger.info("Executing: %s", cmd_str)

        try:
            with log_path.open("a") as log_file:
                log_file.write(f"# Command: {cmd_str}\n")
                log_file.flush()
                result = subprocess.run(
                    cmd,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    timeout=self.timeout,
                    check=False,
                )
        except subprocess.TimeoutExpired as e:
            error_message = f"Build timed out after {self.timeout} seconds"
            logger.error("%s. See log: %s", error_message, log_path)
            _write_log(log_path, "a", f"\n# TIMEOUT after {self.timeout} seconds\n")
            raise BuildExecutionError(
                error_message, exit_code=-1, code="build_timeout"
            ) from e
        except OSError as e:
            error_message = f"Failed to execute build: {e}"
            logger.error(error_message)
            raise BuildExecutionError(
                error_message, exit_code=None, code="execution_error"
            ) from e

        if result.returncode != 0:
            error_message = (
                f"{cmd[1]} failed with exit code {result.returncode} (log: {log_path})"
            )
            logger.error(error_message)
            raise BuildExecutionError(
                error_message, exit_code=result.returncode, code="build_failed"
            )

    def _inspect_repo_digest(self, tag: str, repository: str) -> str:
        """Read the registry digest of a pushed image.

        Raises:
            BuildExecutionError: If the digest cannot be determined.
        """
        try:
            result = subprocess.run(
                [
                    self.docker_binary,
                    "inspect",
                    "--format",
                    "{{json .RepoDigests}}",
                    tag,
                ],
                capture_output=True,
                text=True,
                timeout=60,
                check=True,
            )
            repo_digests = json.loads(result.stdout or "[]") or []
        except subprocess.TimeoutExpired as e:
            raise BuildExecutionError(
                f"docker inspect timed out for {tag}", exit_code=-1, code="timeout"
            ) from e
        except subprocess.CalledProcessError as e:
            raise BuildExecutionError(
                f"docker inspect failed: {e.stderr}",
                exit_code=e.returncode,
                code="inspect_error",
            ) from e
        except (OSError, json.JSONDecodeError) as e:
            raise BuildExecutionError(
                f"Failed to inspect {tag}: {e}", code="inspect_error"
            ) from e

        reference = pick_repo_digest(repo_digests, repository)
        if reference is None:
            raise BuildExecutionError(
                f"No registry digest for {repository} after push",
                code="missing_digest",
            )
        return reference

    def build_image(self, bundle: SourceBundle) -> str:
        """Build (and optionally push) a bundle.

        Args:
            bundle: Staged source bundle.

        Returns:
            Content-addressed image reference.

        Raises:
            BuildExecutionError: If any docker command fails.
        """
        log_path = _log_path_for(self.log_dir, bundle.target_id)
        iidfile = log_path.with_suffix(".iid")

        started_at = datetime.now(timezone.utc)
        _write_log(
            log_path,
            "w",
            f"# Target: {bundle.target_id}\n"
            f"# Fingerprint: {bundle.fingerprint}\n"
            f"# Started: {started_at.isoformat()}\n"
            "# " + "=" * 70 + "\n\n",
        )

        try:
            self._run(
                compose_build_command(bundle, iidfile, self.docker_binary), log_path
            )
            try:
                image_id = iidfile.read_text().strip()
            except OSError as e:
                raise BuildExecutionError(
                    f"Image id file not written: {iidfile}", code="missing_image_id"
                ) from e
        finally:
            iidfile.unlink(missing_ok=True)

        if not image_id.startswith("sha256:"):
            raise BuildExecutionError(
                f"Unexpected image id: {image_id!r}", code="invalid_image_id"
            )

        if self.push:
            tag = image_tag(bundle)
            self._run([self.docker_binary, "push", tag], log_path)
            reference = self._inspect_repo_digest(tag, bundle.repository)
        else:
            reference = f"{bundle.repository}@{image_id}"

        finished_at = datetime.now(timezone.utc)
        duration = (finished_at - started_at).total_seconds()
        _write_log(
            log_path,
            "a",
            f"\n# Finished: {finished_at.isoformat()}\n"
            f"# Reference: {reference}\n"
            f"# Duration: {duration:.1f}s\n",
        )

        return reference


class DigestBuilder:
    """Builder that derives the reference from the bundle content alone.

    No container runtime is invoked. Identical bundles always yield the same
    reference.
    """

    def build_image(self, bundle: SourceBundle) -> str:
        """Return ``repository@sha256:<tree hash>`` for the bundle.

        Raises:
            BuildExecutionError: If the bundle has no tree hash.
        """
        if not bundle.tree_hash:
            raise BuildExecutionError(
                f"Bundle for {bundle.target_id} has no content hash",
                code="empty_bundle",
            )
        reference = f"{bundle.repository}@sha256:{bundle.tree_hash}"
        logger.debug("Digest build %s -> %s", bundle.target_id, reference)
        return reference


def get_builder(settings: Settings) -> ImageBuilder:
    """Create the image builder backend selected in settings.

    Args:
        settings: Application settings.

    Returns:
        ImageBuilder instance.
    """
    if settings.builder == "digest":
        return DigestBuilder()
    return DockerBuilder(
        log_dir=settings.cache_dir / "logs",
        docker_binary=settings.docker_binary,
        push=settings.push_images,
        timeout=settings.build_timeout,
    )


__all__ = [
    "BuildExecutionError",
    "DigestBuilder",
    "DockerBuilder",
    "ImageBuilder",
    "compose_build_command",
    "get_builder",
    "image_tag",
    "pick_repo_digest",
]
