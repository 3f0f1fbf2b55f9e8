"""HTTP cluster backend.

Sends each document to the API server as a server-side apply patch.
"""

from __future__ import annotations

import logging
import os
from typing import Any

import httpx
import yaml

from monodeploy.apply.engine import ApplyExecutionError
from monodeploy.graph.schema import ClusterSchema
from monodeploy.manifests.resources import api_path, document_identity

logger = logging.getLogger(__name__)

FIELD_MANAGER = "monodeploy"
APPLY_PATCH_CONTENT_TYPE = "application/apply-patch+yaml"


class HttpApplier:
    """Applies documents with server-side apply over HTTP.

    Args:
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (used in tests).
    """

    def __init__(
        self,
        timeout: float = 300,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self.transport = transport

    def _headers(self, cluster: ClusterSchema) -> dict[str, str]:
        """Build request headers, including the bearer token if configured.

        Raises:
            ApplyExecutionError: If the token variable is not set.
        """
        headers = {
            "Content-Type": APPLY_PATCH_CONTENT_TYPE,
            "Accept": "application/json",
        }
        if cluster.token_env:
            token = os.environ.get(cluster.token_env)
            if not token:
                raise ApplyExecutionError(
                    f"Environment variable {cluster.token_env} is not set",
                    code="missing_token",
                )
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def apply_documents(
        self, documents: list[dict[str, Any]], cluster: ClusterSchema
    ) -> None:
        """Apply documents one request at a time, stopping at the first error.

        Raises:
            ApplyExecutionError: If the server rejects a document or is
                unreachable.
        """
        if not cluster.server:
            raise ApplyExecutionError(
                "Cluster has no server URL configured", code="missing_server"
            )

        headers = self._headers(cluster)
        base_url = cluster.server.rstrip("/")
        namespace = cluster.namespace or "default"

        with httpx.Client(
            verify=cluster.verify_tls, timeout=self.timeout, transport=self.transport
        ) as client:
            for document in documents:
                url = base_url + api_path(document, default_namespace=namespace)
                identity = document_identity(document)
                logger.debug("PATCH %s (%s)", url, identity)
                try:
                    response = client.patch(
                        url,
                        params={"fieldManager": FIELD_MANAGER, "force": "true"},
                        headers=headers,
                        content=yaml.safe_dump(document, sort_keys=False),
                    )
                    response.raise_for_status()
                except httpx.HTTPStatusError as e:
                    raise ApplyExecutionError(
                        f"HTTP error applying {identity}: "
                        f"{e.response.status_code} {e.response.text.strip()}",
                        exit_code=e.response.status_code,
                        code="http_error",
                    ) from e
                except httpx.TimeoutException as e:
                    raise ApplyExecutionError(
                        f"Timeout applying {identity} to {base_url}",
                        code="timeout",
                    ) from e
                except httpx.RequestError as e:
                    raise ApplyExecutionError(
                        f"Network error applying {identity}: {e}",
                        code="network_error",
                    ) from e


__all__ = ["APPLY_PATCH_CONTENT_TYPE", "FIELD_MANAGER", "HttpApplier"]
