"""Kubernetes resource helpers.

Helpers to identify documents and derive the REST path the HTTP applier
sends them to. Only the subset of kinds that appear in deployment manifests
is covered; unknown kinds fall back to the lowercase plural of the kind.
"""

from typing import Any

# Kinds that are not namespaced
CLUSTER_SCOPED_KINDS = frozenset(
    {
        "APIService",
        "ClusterIssuer",
        "ClusterRole",
        "ClusterRoleBinding",
        "CustomResourceDefinition",
        "IngressClass",
        "MutatingWebhookConfiguration",
        "Namespace",
        "Node",
        "PersistentVolume",
        "PriorityClass",
        "StorageClass",
        "ValidatingWebhookConfiguration",
    }
)

_IRREGULAR_PLURALS = {
    "Endpoints": "endpoints",
    "Ingress": "ingresses",
    "IngressClass": "ingressclasses",
    "NetworkPolicy": "networkpolicies",
    "PodSecurityPolicy": "podsecuritypolicies",
    "PriorityClass": "priorityclasses",
    "StorageClass": "storageclasses",
}


class InvalidDocumentError(ValueError):
    """Raised when a document lacks the fields needed to address it."""

    def __init__(self, message: str, code: str = "invalid_document") -> None:
        super().__init__(message)
        self.code = code


def plural_for(kind: str) -> str:
    """Return the REST resource name for a kind, e.g. Deployment -> deployments."""
    if kind in _IRREGULAR_PLURALS:
        return _IRREGULAR_PLURALS[kind]
    lower = kind.lower()
    if lower.endswith("y") and not lower.endswith(("ay", "ey", "oy", "uy")):
        return lower[:-1] + "ies"
    if lower.endswith(("s", "x", "ch", "sh")):
        return lower + "es"
    return lower + "s"


def is_namespaced(document: dict[str, Any]) -> bool:
    """Check whether a document describes a namespaced resource."""
    return document.get("kind") not in CLUSTER_SCOPED_KINDS


def document_identity(document: dict[str, Any]) -> str:
    """Return a readable identity such as ``Deployment/api`` for logging."""
    metadata = document.get("metadata") or {}
    return f"{document.get('kind', '?')}/{metadata.get('name', '?')}"


def api_path(document: dict[str, Any], default_namespace: str = "default") -> str:
    """Return the API server path addressing a document.

    Args:
        document: Kubernetes object with apiVersion, kind and metadata.name.
        default_namespace: Namespace used when the document sets none.

    Returns:
        Path such as /apis/apps/v1/namespaces/api/deployments/api.

    Raises:
        InvalidDocumentError: If apiVersion, kind or metadata.name is missing.
    """
    api_version = document.get("apiVersion")
    kind = document.get("kind")
    metadata = document.get("metadata") or {}
    name = metadata.get("name")
    if not api_version or not kind or not name:
        raise InvalidDocumentError(
            f"Document {document_identity(document)} needs apiVersion, kind "
            "and metadata.name"
        )

    # Core group lives under /api, all others under /apis
    prefix = f"/api/{api_version}" if "/" not in api_version else f"/apis/{api_version}"
    resource = plural_for(kind)
    if not is_namespaced(document):
        return f"{prefix}/{resource}/{name}"

    namespace = metadata.get("namespace") or default_namespace
    return f"{prefix}/namespaces/{namespace}/{resource}/{name}"


__all__ = [
    "CLUSTER_SCOPED_KINDS",
    "InvalidDocumentError",
    "api_path",
    "document_identity",
    "is_namespaced",
    "plural_for",
]
