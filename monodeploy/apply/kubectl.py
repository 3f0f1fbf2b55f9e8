"""kubectl cluster backend.

Pipes documents to `kubectl apply -f -` against a kubeconfig context.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from typing import Any

import yaml

from monodeploy.apply.engine import ApplyExecutionError
from monodeploy.graph.schema import ClusterSchema

logger = logging.getLogger(__name__)


def compose_apply_command(
    cluster: ClusterSchema, kubectl_binary: str = "kubectl"
) -> list[str]:
    """Compose the `kubectl apply` command for a cluster.

    Args:
        cluster: Cluster configuration.
        kubectl_binary: kubectl binary.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = [kubectl_binary, "apply", "-f", "-"]
    if cluster.context:
        cmd.extend(["--context", cluster.context])
    if cluster.namespace:
        cmd.extend(["--namespace", cluster.namespace])
    return cmd


class KubectlApplier:
    """Applies documents with the kubectl CLI."""

    def __init__(
        self, kubectl_binary: str = "kubectl", timeout: int | None = None
    ) -> None:
        self.kubectl_binary = kubectl_binary
        self.timeout = timeout

    def apply_documents(
        self, documents: list[dict[str, Any]], cluster: ClusterSchema
    ) -> None:
        """Apply documents in one kubectl invocation.

        Raises:
            ApplyExecutionError: On non-zero exit, timeout or spawn failure.
        """
        cmd = compose_apply_command(cluster, self.kubectl_binary)
        logger.info("Executing: %s", shlex.join(cmd))
        payload = yaml.safe_dump_all(documents, sort_keys=False)

        try:
            result = subprocess.run(
                cmd,
                input=payload,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise ApplyExecutionError(
                f"kubectl apply timed out after {self.timeout} seconds",
                exit_code=-1,
                code="apply_timeout",
            ) from e
        except OSError as e:
            raise ApplyExecutionError(
                f"Failed to execute kubectl: {e}", code="execution_error"
            ) from e

        if result.returncode != 0:
            raise ApplyExecutionError(
                f"kubectl apply failed with exit code {result.returncode}: "
                f"{result.stderr.strip()}",
                exit_code=result.returncode,
                code="apply_failed",
            )
        for line in result.stdout.splitlines():
            logger.debug("kubectl: %s", line)


__all__ = ["KubectlApplier", "compose_apply_command"]
