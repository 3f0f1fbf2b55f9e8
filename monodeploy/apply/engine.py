"""Apply engine.

This module routes resolved manifests to the cluster they are assigned to
and turns backend errors into per-target ApplyError values. Applies are not
retried; ordering is the caller's responsibility.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Protocol

from monodeploy.graph.schema import ClusterSchema
from monodeploy.manifests.resources import InvalidDocumentError

if TYPE_CHECKING:
    from monodeploy.config import Settings
    from monodeploy.graph.loader import Workspace
    from monodeploy.manifests.binder import ResolvedManifest

logger = logging.getLogger(__name__)


class ApplyExecutionError(Exception):
    """Raised by cluster backends when an apply fails."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "apply_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


class ApplyError(Exception):
    """A failed apply, returned by ApplyEngine.apply().

    Attributes:
        target_id: Label of the manifest target.
        cause: Human-readable cause.
        code: Machine-readable error code.
    """

    def __init__(self, target_id: str, cause: str, code: str = "apply_failed") -> None:
        super().__init__(f"Apply of {target_id} failed: {cause}")
        self.target_id = target_id
        self.cause = cause
        self.code = code


class ClusterApplier(Protocol):
    """Backend that sends documents to one cluster."""

    def apply_documents(
        self, documents: list[dict[str, Any]], cluster: ClusterSchema
    ) -> None:
        """Apply documents to a cluster.

        Raises:
            ApplyExecutionError: If the cluster rejects the documents.
        """
        ...


class ApplyEngine:
    """Applies resolved manifests through a ClusterApplier.

    When the workspace declares no clusters, a cluster name is used directly
    as the kubeconfig context and an unassigned manifest goes to the current
    context.

    Args:
        applier: Cluster backend.
        clusters: Declared clusters by name.
    """

    def __init__(
        self,
        applier: ClusterApplier,
        clusters: Mapping[str, ClusterSchema] | None = None,
    ) -> None:
        self.applier = applier
        self.clusters = dict(clusters or {})

    def cluster_config(self, name: str | None) -> ClusterSchema | None:
        """Return the configuration of a named cluster, or None if unknown."""
        if name is not None and name in self.clusters:
            return self.clusters[name]
        if self.clusters:
            return None
        return ClusterSchema(context=name)

    def apply(self, resolved: ResolvedManifest) -> ApplyError | None:
        """Apply one resolved manifest.

        Args:
            resolved: Bound documents plus their cluster assignment.

        Returns:
            None on success, ApplyError otherwise.
        """
        cluster = self.cluster_config(resolved.cluster)
        if cluster is None:
            logger.error(
                "No cluster configuration for %s (cluster %r)",
                resolved.target_id,
                resolved.cluster,
            )
            return ApplyError(
                resolved.target_id,
                f"unknown cluster {resolved.cluster!r}",
                code="unknown_cluster",
            )

        logger.info(
            "Applying %s to cluster %s (%d document(s))",
            resolved.target_id,
            resolved.cluster or "<current>",
            len(resolved.documents),
        )
        try:
            self.applier.apply_documents(list(resolved.documents), cluster)
        except (ApplyExecutionError, InvalidDocumentError) as e:
            logger.error("Apply of %s failed: %s", resolved.target_id, e)
            return ApplyError(resolved.target_id, str(e), code=e.code)

        logger.info("Applied %s", resolved.target_id)
        return None


def get_applier(settings: Settings) -> ClusterApplier:
    """Create the cluster backend selected in settings."""
    if settings.applier == "http":
        from monodeploy.apply.http import HttpApplier

        return HttpApplier(timeout=settings.apply_timeout)

    from monodeploy.apply.kubectl import KubectlApplier

    return KubectlApplier(
        kubectl_binary=settings.kubectl_binary, timeout=settings.apply_timeout
    )


def get_apply_engine(settings: Settings, workspace: Workspace) -> ApplyEngine:
    """Create an ApplyEngine for a workspace's declared clusters."""
    return ApplyEngine(get_applier(settings), workspace.config.clusters)


__all__ = [
    "ApplyEngine",
    "ApplyError",
    "ApplyExecutionError",
    "ClusterApplier",
    "get_applier",
    "get_apply_engine",
]
